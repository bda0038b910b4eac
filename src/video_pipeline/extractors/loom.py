"""Loom transcript extractor using the Loom REST API."""

import re
from typing import Any

import httpx

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
from .base import ExtractionRequest, join_segments

logger = get_logger(__name__)

LOOM_ID_PATTERN = re.compile(r"loom\.com/(?:share|embed)/([a-f0-9]+)", re.IGNORECASE)
BARE_ID_PATTERN = re.compile(r"^[a-f0-9]{16,}$", re.IGNORECASE)

ERROR_MESSAGES = {
    ExtractorErrorCode.INVALID_URL: "Please provide a valid Loom share or embed URL.",
    ExtractorErrorCode.VIDEO_NOT_FOUND: "This Loom video could not be found.",
    ExtractorErrorCode.VIDEO_PRIVATE: "This Loom video is private. Update its sharing settings and try again.",
    ExtractorErrorCode.NO_TRANSCRIPT: "This Loom video has no transcript yet.",
    ExtractorErrorCode.API_KEY_MISSING: "Loom integration is not configured.",
    ExtractorErrorCode.API_KEY_INVALID: "The Loom API key was rejected.",
    ExtractorErrorCode.RATE_LIMITED: "Loom is rate limiting requests. Please try again shortly.",
    ExtractorErrorCode.NETWORK_ERROR: "Network error while contacting Loom. Please try again.",
}


def extract_loom_video_id(identifier: str) -> str:
    """Return the Loom video id from a share/embed URL or a bare hex id.

    Raises:
        InvalidIdentifierError: If the identifier is not a Loom video.
    """
    match = LOOM_ID_PATTERN.search(identifier)
    if match:
        return match.group(1)
    if BARE_ID_PATTERN.match(identifier.strip()):
        return identifier.strip()
    raise InvalidIdentifierError(
        f"Could not extract a Loom video id from {identifier!r}",
        source_type=SourceType.LOOM,
    )


def _status_error(
    response: httpx.Response, video_id: str, not_found_code: ExtractorErrorCode
) -> ExtractorError:
    status = response.status_code
    if status == 401:
        return ExtractorError(
            "Loom API key is invalid",
            code=ExtractorErrorCode.API_KEY_INVALID,
            source_type=SourceType.LOOM,
        )
    if status == 403:
        return VideoPrivateError(
            f"Loom video {video_id} is private", source_type=SourceType.LOOM
        )
    if status == 404:
        if not_found_code == ExtractorErrorCode.NO_TRANSCRIPT:
            return NoTranscriptError(
                f"Loom has no transcript for {video_id}", source_type=SourceType.LOOM
            )
        return VideoNotFoundError(
            f"Loom video {video_id} not found", source_type=SourceType.LOOM
        )
    if status == 429:
        return RateLimitedError("Loom API rate limit exceeded", source_type=SourceType.LOOM)
    return ExtractorNetworkError(
        f"Loom API returned HTTP {status}",
        source_type=SourceType.LOOM,
    )


class LoomExtractor:
    """Free caption source for Loom recordings.

    Needs a Loom API key; the transcript sentences carry millisecond
    timestamps which are converted to seconds.
    """

    source_type = SourceType.LOOM

    def __init__(self, config: PipelineConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self.http_client = http_client
        logger.info("loom_extractor_initialized", api_key_present=bool(config.loom_api_key))

    def recognizes(self, identifier: str) -> bool:
        return "loom.com" in identifier.lower()

    @staticmethod
    def get_error_message(code: ExtractorErrorCode) -> str:
        return ERROR_MESSAGES.get(code, "Failed to import this Loom video. Please try again.")

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        path: str,
        video_id: str,
        not_found_code: ExtractorErrorCode,
    ) -> dict[str, Any]:
        try:
            response = await client.get(
                f"{self.config.loom_api_base_url}{path}",
                headers={"Authorization": f"Bearer {self.config.loom_api_key}"},
            )
        except httpx.HTTPError as e:
            raise ExtractorNetworkError(
                f"Could not reach Loom: {e}",
                source_type=SourceType.LOOM,
                original_error=e,
            ) from e

        if response.status_code != 200:
            raise _status_error(response, video_id, not_found_code)
        return response.json()

    async def _fetch(self, client: httpx.AsyncClient, video_id: str) -> TranscriptResult:
        video = await self._get_json(
            client, f"/videos/{video_id}", video_id, ExtractorErrorCode.VIDEO_NOT_FOUND
        )
        transcript = await self._get_json(
            client,
            f"/videos/{video_id}/transcript",
            video_id,
            ExtractorErrorCode.NO_TRANSCRIPT,
        )

        segments = [
            TimestampedSegment(
                text=sentence["text"],
                start=sentence["start_time"] / 1000,
                duration=(sentence["end_time"] - sentence["start_time"]) / 1000,
            )
            for sentence in transcript.get("sentences") or []
            if sentence.get("text")
        ]
        if not segments:
            raise NoTranscriptError(
                f"Loom video {video_id} has an empty transcript",
                source_type=SourceType.LOOM,
            )

        return TranscriptResult(
            source_type=SourceType.LOOM,
            transcript_method=TranscriptMethod.LOOM_API,
            title=video.get("title") or f"Loom Video {video_id}",
            duration_seconds=(video.get("duration") or 0) / 1000,
            transcript=join_segments(segments),
            transcript_with_timestamps=segments,
            metadata=TranscriptMetadata(
                cost_usd=0.0,
                loom_video_id=video_id,
                thumbnail_url=video.get("thumbnail_url"),
                owner_name=(video.get("owner") or {}).get("name"),
                created_at=video.get("created_at"),
            ),
        )

    async def extract(self, request: ExtractionRequest) -> TranscriptResult:
        """Fetch details and transcript for a Loom video.

        Raises:
            ExtractorError: API_KEY_MISSING when no key is configured, plus the
                invalid URL, not found, private, no transcript, rate limited
                and network cases mapped from HTTP status codes.
        """
        if not self.config.loom_api_key:
            raise ExtractorError(
                "LOOM_API_KEY is not configured",
                code=ExtractorErrorCode.API_KEY_MISSING,
                source_type=SourceType.LOOM,
            )

        video_id = extract_loom_video_id(request.identifier)
        logger.info("fetching_transcript", source="loom", video_id=video_id)

        try:
            if self.http_client is not None:
                result = await self._fetch(self.http_client, video_id)
            else:
                async with httpx.AsyncClient(timeout=self.config.http_timeout_seconds) as client:
                    result = await self._fetch(client, video_id)
        except ExtractorError as e:
            logger.warning(
                "transcript_fetch_error",
                source="loom",
                video_id=video_id,
                code=e.code.value,
            )
            raise

        logger.info(
            "transcript_fetched",
            source="loom",
            video_id=video_id,
            segments=len(result.transcript_with_timestamps),
        )
        return result
