"""Paid speech-to-text fallback using OpenAI Whisper."""

from pathlib import PurePath
from typing import Any

import openai
from openai import AsyncOpenAI

from src.utils.clients import create_transcription_client
from src.utils.logging import get_logger

from ..config import PipelineConfig
from ..costs import calculate_transcription_cost
from ..errors import (
    ExtractorError,
    ExtractorErrorCode,
    ExtractorNetworkError,
    FileTooLargeError,
    InvalidIdentifierError,
    RateLimitedError,
)
from ..schemas import (
    SourceType,
    TimestampedSegment,
    TranscriptMetadata,
    TranscriptMethod,
    TranscriptResult,
)
from .base import ExtractionRequest, join_segments, retry_with_backoff

logger = get_logger(__name__)

ERROR_MESSAGES = {
    ExtractorErrorCode.API_KEY_MISSING: "Transcription is not configured.",
    ExtractorErrorCode.FILE_TOO_LARGE: "This file is too large to transcribe. Please split it into shorter parts.",
    ExtractorErrorCode.RATE_LIMITED: "The transcription service is busy. Please try again shortly.",
    ExtractorErrorCode.NETWORK_ERROR: "Network error during transcription. Please try again.",
    ExtractorErrorCode.TRANSCRIPTION_FAILED: "Transcription failed. Please try again.",
}


def _map_openai_error(error: Exception) -> ExtractorError:
    if isinstance(error, openai.RateLimitError):
        return RateLimitedError(
            "Whisper rate limit exceeded", source_type=SourceType.UPLOAD, original_error=error
        )
    if isinstance(error, openai.APIConnectionError):
        return ExtractorNetworkError(
            f"Could not reach Whisper: {error}",
            source_type=SourceType.UPLOAD,
            original_error=error,
        )
    if isinstance(error, openai.APIStatusError):
        if error.status_code == 413:
            return FileTooLargeError(
                "Whisper rejected the file as too large",
                source_type=SourceType.UPLOAD,
                original_error=error,
            )
        if error.status_code >= 500:
            return ExtractorNetworkError(
                f"Whisper returned HTTP {error.status_code}",
                source_type=SourceType.UPLOAD,
                original_error=error,
            )
    return ExtractorError(
        f"Whisper transcription failed: {error}",
        code=ExtractorErrorCode.TRANSCRIPTION_FAILED,
        source_type=SourceType.UPLOAD,
        original_error=error,
    )


class WhisperExtractor:
    """Paid fallback that transcribes raw media bytes.

    Never chosen by identifier; the router uses it when free sources have no
    captions (or when paid transcription is forced) and media is available.
    Cost is ``duration_minutes * whisper_cost_per_minute``.
    """

    source_type = SourceType.UPLOAD

    def __init__(self, config: PipelineConfig, client: AsyncOpenAI | None = None):
        self.config = config
        self.client = client
        if self.client is None and config.openai_api_key:
            self.client = create_transcription_client(config)
        logger.info(
            "whisper_extractor_initialized",
            model=config.whisper_model,
            api_key_present=bool(config.openai_api_key),
        )

    def recognizes(self, identifier: str) -> bool:
        return False

    @staticmethod
    def get_error_message(code: ExtractorErrorCode) -> str:
        return ERROR_MESSAGES.get(code, "Transcription failed. Please try again.")

    async def _transcribe(self, filename: str, media: bytes, language: str | None) -> Any:
        kwargs: dict[str, Any] = {
            "file": (filename, media),
            "model": self.config.whisper_model,
            "response_format": "verbose_json",
            "temperature": 0,
        }
        if language:
            kwargs["language"] = language

        try:
            return await self.client.audio.transcriptions.create(**kwargs)
        except openai.OpenAIError as e:
            raise _map_openai_error(e) from e

    async def extract(self, request: ExtractionRequest) -> TranscriptResult:
        """Transcribe uploaded media with Whisper.

        Args:
            request: Request carrying ``media`` bytes and ideally a ``filename``.

        Returns:
            Normalized transcript result with a non-zero cost.

        Raises:
            ExtractorError: API_KEY_MISSING without credentials.
            InvalidIdentifierError: If no media bytes were supplied.
            FileTooLargeError: If the media exceeds the size cap.
            RateLimitedError, ExtractorNetworkError: After retries are exhausted.
        """
        if self.client is None:
            raise ExtractorError(
                "OPENAI_API_KEY is not configured",
                code=ExtractorErrorCode.API_KEY_MISSING,
                source_type=SourceType.UPLOAD,
            )
        if not request.media:
            raise InvalidIdentifierError(
                "Paid transcription requires media bytes",
                source_type=SourceType.UPLOAD,
            )

        size = len(request.media)
        if size > self.config.whisper_max_file_bytes:
            raise FileTooLargeError(
                f"Media is {size / 1024 / 1024:.1f} MB; the limit is "
                f"{self.config.whisper_max_file_mb} MB",
                source_type=SourceType.UPLOAD,
            )

        filename = request.filename or PurePath(request.identifier).name or "upload.mp4"
        logger.info("transcribing_media", filename=filename, size_bytes=size)

        response = await retry_with_backoff(
            lambda: self._transcribe(filename, request.media, request.language),
            max_retries=self.config.extractor_max_retries,
            base_delay_ms=self.config.extractor_retry_delay_ms,
            operation_name="whisper_transcription",
        )

        segments = [
            TimestampedSegment(
                text=getattr(seg, "text", "").strip(),
                start=float(seg.start),
                duration=float(seg.end) - float(seg.start),
            )
            for seg in getattr(response, "segments", None) or []
            if getattr(seg, "text", "").strip()
        ]
        duration = float(
            getattr(response, "duration", None)
            or (segments[-1].start + segments[-1].duration if segments else 0.0)
        )
        transcript = (getattr(response, "text", "") or "").strip() or join_segments(segments)
        if not transcript:
            raise ExtractorError(
                f"Whisper returned an empty transcript for {filename}",
                code=ExtractorErrorCode.TRANSCRIPTION_FAILED,
                source_type=SourceType.UPLOAD,
            )

        cost = calculate_transcription_cost(duration, self.config.whisper_cost_per_minute)
        result = TranscriptResult(
            source_type=SourceType.UPLOAD,
            transcript_method=TranscriptMethod.WHISPER,
            title=PurePath(filename).stem or filename,
            duration_seconds=duration,
            transcript=transcript,
            transcript_with_timestamps=segments,
            metadata=TranscriptMetadata(
                cost_usd=cost,
                model=self.config.whisper_model,
                language=getattr(response, "language", None),
                file_size_bytes=size,
                filename=filename,
            ),
        )

        logger.info(
            "media_transcribed",
            filename=filename,
            duration_seconds=duration,
            segments=len(segments),
            cost_usd=cost,
        )
        return result
