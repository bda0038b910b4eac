"""Transcript source extractors.

Each extractor implements the ``TranscriptExtractor`` protocol; the router
selects one through a dispatch table keyed on ``SourceType``.
"""

from .base import ExtractionRequest, TranscriptExtractor
from .loom import LoomExtractor
from .mux import MuxExtractor
from .whisper import WhisperExtractor
from .youtube import YouTubeExtractor

__all__ = [
    "ExtractionRequest",
    "LoomExtractor",
    "MuxExtractor",
    "TranscriptExtractor",
    "WhisperExtractor",
    "YouTubeExtractor",
]
