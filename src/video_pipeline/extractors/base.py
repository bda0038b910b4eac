"""Shared contract and helpers for transcript source extractors."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from src.utils.logging import get_logger

from ..errors import ExtractorError, ExtractorErrorCode
from ..schemas import SourceType, TimestampedSegment, TranscriptResult

logger = get_logger(__name__)

T = TypeVar("T")

# Failures worth retrying inside a single extraction attempt
TRANSIENT_CODES = frozenset(
    {ExtractorErrorCode.RATE_LIMITED, ExtractorErrorCode.NETWORK_ERROR}
)


@dataclass
class ExtractionRequest:
    """Input handed to an extractor.

    ``identifier`` is a URL or source id. The paid fallback ignores it and
    transcribes ``media`` instead, naming the result after ``filename``.
    """

    identifier: str
    media: bytes | None = None
    filename: str | None = None
    language: str | None = None


class TranscriptExtractor(Protocol):
    """One transcript source.

    ``extract`` returns a normalized result, returns None when the source is
    reachable but has no captions for this video, or raises an
    ``ExtractorError`` subclass.
    """

    source_type: SourceType

    def recognizes(self, identifier: str) -> bool: ...

    async def extract(self, request: ExtractionRequest) -> TranscriptResult | None: ...


def join_segments(segments: list[TimestampedSegment]) -> str:
    """Full transcript text: segment texts joined by single spaces."""
    return " ".join(s.text.strip() for s in segments if s.text.strip())


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    base_delay_ms: int,
    operation_name: str,
) -> T:
    """Run ``operation``, retrying rate-limit and network ``ExtractorError``s.

    Waits ``base_delay_ms * 2**attempt`` between tries (1s, 2s, 4s with the
    defaults). Other errors and the final failure propagate unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except ExtractorError as e:
            if e.code not in TRANSIENT_CODES or attempt >= max_retries:
                raise
            delay = base_delay_ms * (2**attempt) / 1000
            logger.warning(
                "extractor_retrying",
                operation=operation_name,
                attempt=attempt + 1,
                code=e.code.value,
                delay_seconds=delay,
            )
            attempt += 1
            await asyncio.sleep(delay)
