"""YouTube caption extractor backed by the Supadata API."""

import asyncio
import re
from typing import Any

from supadata import Supadata

from src.utils.logging import get_logger

from ..config import PipelineConfig
from ..errors import (
    ExtractorError,
    ExtractorErrorCode,
    ExtractorNetworkError,
    InvalidIdentifierError,
    NoTranscriptError,
    RateLimitedError,
    VideoNotFoundError,
    VideoPrivateError,
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

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
URL_PATTERNS = (
    re.compile(r"youtube\.com/watch\?(?:.*&)?v=([A-Za-z0-9_-]{11})"),
    re.compile(r"youtu\.be/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/embed/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/v/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/shorts/([A-Za-z0-9_-]{11})"),
)

ERROR_MESSAGES = {
    ExtractorErrorCode.INVALID_URL: "Please provide a valid YouTube URL.",
    ExtractorErrorCode.VIDEO_NOT_FOUND: "This YouTube video could not be found. It may have been deleted.",
    ExtractorErrorCode.VIDEO_PRIVATE: "This video is private. Make it public or unlisted and try again.",
    ExtractorErrorCode.NO_TRANSCRIPT: "This video has no captions available.",
    ExtractorErrorCode.AGE_RESTRICTED: "Age-restricted videos cannot be imported.",
    ExtractorErrorCode.RATE_LIMITED: "YouTube is rate limiting requests. Please try again in a few minutes.",
    ExtractorErrorCode.NETWORK_ERROR: "Network error while contacting YouTube. Please try again.",
    ExtractorErrorCode.API_KEY_INVALID: "The transcript service rejected our credentials.",
}


def extract_youtube_video_id(identifier: str) -> str:
    """Pull the 11-character video id out of a YouTube URL or bare id.

    Supports watch?v=, youtu.be/, embed/, v/, shorts/ and mobile URLs.

    Raises:
        InvalidIdentifierError: If no valid id can be found.
    """
    candidate = identifier.strip()
    if VIDEO_ID_PATTERN.match(candidate):
        return candidate

    for pattern in URL_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return match.group(1)

    raise InvalidIdentifierError(
        f"Could not extract a YouTube video id from {identifier!r}",
        source_type=SourceType.YOUTUBE,
    )


# Structured ``error`` codes returned by the Supadata API
SUPADATA_ERROR_CODES: dict[str, tuple[type[ExtractorError], ExtractorErrorCode]] = {
    "transcript-unavailable": (NoTranscriptError, ExtractorErrorCode.NO_TRANSCRIPT),
    "video-not-found": (VideoNotFoundError, ExtractorErrorCode.VIDEO_NOT_FOUND),
    "not-found": (VideoNotFoundError, ExtractorErrorCode.VIDEO_NOT_FOUND),
    "limit-exceeded": (RateLimitedError, ExtractorErrorCode.RATE_LIMITED),
    "unauthorized": (ExtractorError, ExtractorErrorCode.API_KEY_INVALID),
    "upgrade-required": (ExtractorError, ExtractorErrorCode.API_KEY_INVALID),
    "invalid-request": (InvalidIdentifierError, ExtractorErrorCode.INVALID_URL),
}

HTTP_STATUS_CODES: dict[int, tuple[type[ExtractorError], ExtractorErrorCode]] = {
    206: (NoTranscriptError, ExtractorErrorCode.NO_TRANSCRIPT),
    401: (ExtractorError, ExtractorErrorCode.API_KEY_INVALID),
    403: (VideoPrivateError, ExtractorErrorCode.VIDEO_PRIVATE),
    404: (VideoNotFoundError, ExtractorErrorCode.VIDEO_NOT_FOUND),
    429: (RateLimitedError, ExtractorErrorCode.RATE_LIMITED),
}

# Message fallbacks, checked in order, for errors that carry no code or status
MESSAGE_PATTERNS: tuple[tuple[re.Pattern[str], type[ExtractorError], ExtractorErrorCode], ...] = (
    (
        re.compile(r"\b(no transcript|transcript[- ](is )?unavailable|no captions)\b"),
        NoTranscriptError,
        ExtractorErrorCode.NO_TRANSCRIPT,
    ),
    (re.compile(r"\bage[- ]restricted\b"), ExtractorError, ExtractorErrorCode.AGE_RESTRICTED),
    (re.compile(r"\b(private|forbidden)\b"), VideoPrivateError, ExtractorErrorCode.VIDEO_PRIVATE),
    (
        re.compile(r"\b(not found|video (is )?unavailable)\b"),
        VideoNotFoundError,
        ExtractorErrorCode.VIDEO_NOT_FOUND,
    ),
    (re.compile(r"\b(rate limit|too many requests)\b"), RateLimitedError, ExtractorErrorCode.RATE_LIMITED),
    (re.compile(r"\b(unauthorized|api key)\b"), ExtractorError, ExtractorErrorCode.API_KEY_INVALID),
    (
        re.compile(r"\b(timeout|timed out|connection|network)\b"),
        ExtractorNetworkError,
        ExtractorErrorCode.NETWORK_ERROR,
    ),
)


def classify_error(error: Exception) -> ExtractorError:
    """Map a Supadata SDK exception onto the extractor error taxonomy.

    The SDK's structured ``error`` code wins, then the HTTP status of a failed
    request, and only then the message text.
    """
    match = SUPADATA_ERROR_CODES.get(str(getattr(error, "error", "") or "").lower())
    if match is None:
        response = getattr(error, "response", None)
        match = HTTP_STATUS_CODES.get(getattr(response, "status_code", None))
    if match is None:
        text = str(error).lower()
        match = next(
            ((cls, code) for pattern, cls, code in MESSAGE_PATTERNS if pattern.search(text)),
            (ExtractorError, ExtractorErrorCode.UNKNOWN_ERROR),
        )

    cls, code = match
    return cls(str(error), code=code, source_type=SourceType.YOUTUBE, original_error=error)


class YouTubeExtractor:
    """Free caption source for YouTube videos.

    Fetches timestamped captions and video details through Supadata. Missing
    captions raise ``NoTranscriptError`` so the router can move on to the
    paid fallback.
    """

    source_type = SourceType.YOUTUBE

    def __init__(self, config: PipelineConfig):
        """Initialize YouTube extractor with configuration.

        Args:
            config: Configuration object with Supadata API key and retry settings.
        """
        self.config = config
        self.client = Supadata(api_key=config.supadata_api_key)
        logger.info(
            "youtube_extractor_initialized",
            api_key_present=bool(config.supadata_api_key),
        )

    def recognizes(self, identifier: str) -> bool:
        lowered = identifier.lower()
        return (
            "youtube.com" in lowered
            or "youtu.be" in lowered
            or bool(VIDEO_ID_PATTERN.match(identifier.strip()))
        )

    @staticmethod
    def get_error_message(code: ExtractorErrorCode) -> str:
        return ERROR_MESSAGES.get(code, "Failed to import this YouTube video. Please try again.")

    async def _call(self, func: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ExtractorError:
            raise
        except Exception as e:
            raise classify_error(e) from e

    async def _fetch_transcript(self, video_id: str, language: str | None) -> Any:
        kwargs: dict[str, Any] = {"video_id": video_id, "text": False}
        if language:
            kwargs["lang"] = language
        return await self._call(self.client.youtube.transcript, **kwargs)

    async def _fetch_video_info(self, video_id: str) -> Any:
        return await self._call(self.client.youtube.video, id=video_id)

    async def extract(self, request: ExtractionRequest) -> TranscriptResult:
        """Fetch captions and details for a YouTube video.

        Args:
            request: Extraction request whose identifier is a URL or 11-char id.

        Returns:
            Normalized transcript result with zero cost.

        Raises:
            InvalidIdentifierError: If the identifier is not a YouTube video.
            NoTranscriptError: If the video has no captions.
            ExtractorError: For not found, private, rate limited and other failures.
        """
        video_id = extract_youtube_video_id(request.identifier)
        logger.info("fetching_transcript", source="youtube", video_id=video_id)

        try:
            response = await retry_with_backoff(
                lambda: self._fetch_transcript(video_id, request.language),
                max_retries=self.config.extractor_max_retries,
                base_delay_ms=self.config.extractor_retry_delay_ms,
                operation_name="youtube_transcript",
            )
            info = await retry_with_backoff(
                lambda: self._fetch_video_info(video_id),
                max_retries=self.config.extractor_max_retries,
                base_delay_ms=self.config.extractor_retry_delay_ms,
                operation_name="youtube_video_info",
            )

        except NoTranscriptError:
            logger.warning("transcript_unavailable", source="youtube", video_id=video_id)
            raise
        except ExtractorError as e:
            logger.exception(
                "transcript_fetch_error",
                source="youtube",
                video_id=video_id,
                code=e.code.value,
            )
            raise

        segments = [
            TimestampedSegment(
                text=seg.text,
                start=float(seg.offset) / 1000,
                duration=float(seg.duration) / 1000,
            )
            for seg in response.content
        ]
        if not segments:
            raise NoTranscriptError(
                f"Empty transcript for {video_id}",
                source_type=SourceType.YOUTUBE,
            )

        duration = getattr(info, "duration", None) or (
            segments[-1].start + segments[-1].duration
        )
        channel = getattr(info, "channel", None) or {}

        result = TranscriptResult(
            source_type=SourceType.YOUTUBE,
            transcript_method=TranscriptMethod.YOUTUBE_API,
            title=getattr(info, "title", None) or f"YouTube Video {video_id}",
            duration_seconds=float(duration),
            transcript=join_segments(segments),
            transcript_with_timestamps=segments,
            metadata=TranscriptMetadata(
                cost_usd=0.0,
                youtube_video_id=video_id,
                language=getattr(response, "lang", None),
                available_languages=list(getattr(response, "available_langs", None) or []),
                thumbnail_url=getattr(info, "thumbnail", None),
                channel_name=channel.get("name") if isinstance(channel, dict) else None,
            ),
        )

        logger.info(
            "transcript_fetched",
            source="youtube",
            video_id=video_id,
            segments=len(segments),
            lang=result.metadata.language,
        )
        return result
