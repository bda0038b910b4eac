"""Mux auto-caption extractor.

Mux only has a transcript when a text track was generated for the asset.
When none exists the extractor returns ``None``, which tells the router to
fall back to paid transcription.
"""

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

ASSET_URL_PATTERN = re.compile(r"mux\.com/.*assets/([A-Za-z0-9_-]+)")
STREAM_URL_PATTERN = re.compile(r"stream\.mux\.com/([^/.?#]+)")
BARE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
TIMESTAMP = r"(?:\d+:)?\d{2}:\d{2}[.,]\d{3}"
CUE_TIMING = re.compile(rf"^\s*({TIMESTAMP})\s+-->\s+({TIMESTAMP})")
CUE_TAG = re.compile(r"<[^>]+>")

ERROR_MESSAGES = {
    ExtractorErrorCode.INVALID_ID: "Please provide a valid Mux asset id.",
    ExtractorErrorCode.VIDEO_NOT_FOUND: "This Mux asset could not be found.",
    ExtractorErrorCode.ASSET_NOT_READY: "This Mux asset is still processing. Please try again shortly.",
    ExtractorErrorCode.API_KEY_MISSING: "Mux integration is not configured.",
    ExtractorErrorCode.API_KEY_INVALID: "The Mux credentials were rejected.",
    ExtractorErrorCode.PARSING_ERROR: "The Mux captions could not be read.",
    ExtractorErrorCode.RATE_LIMITED: "Mux is rate limiting requests. Please try again shortly.",
    ExtractorErrorCode.NETWORK_ERROR: "Network error while contacting Mux. Please try again.",
}


def extract_mux_asset_id(identifier: str) -> str:
    """Return the id from a Mux dashboard/API URL, a stream URL or a bare id.

    Raises:
        InvalidIdentifierError: If no asset id can be found.
    """
    match = ASSET_URL_PATTERN.search(identifier) or STREAM_URL_PATTERN.search(identifier)
    if match:
        return match.group(1)
    candidate = identifier.strip()
    if "/" not in candidate and BARE_ID_PATTERN.match(candidate):
        return candidate
    raise InvalidIdentifierError(
        f"Could not extract a Mux asset id from {identifier!r}",
        code=ExtractorErrorCode.INVALID_ID,
        source_type=SourceType.MUX,
    )


def parse_vtt_timestamp(value: str) -> float:
    """Convert ``HH:MM:SS.mmm`` or ``MM:SS.mmm`` to seconds."""
    parts = value.replace(",", ".").split(":")
    seconds = float(parts[-1])
    minutes = int(parts[-2])
    hours = int(parts[-3]) if len(parts) == 3 else 0
    return hours * 3600 + minutes * 60 + seconds


def parse_vtt(content: str) -> list[TimestampedSegment]:
    """Parse WebVTT captions into timestamped segments.

    Raises:
        ExtractorError: PARSING_ERROR if the document is not WebVTT.
    """
    if not content.lstrip("\ufeff").startswith("WEBVTT"):
        raise ExtractorError(
            "Caption file is not WebVTT",
            code=ExtractorErrorCode.PARSING_ERROR,
            source_type=SourceType.MUX,
        )

    segments: list[TimestampedSegment] = []
    for block in re.split(r"\r?\n\s*\r?\n", content):
        lines = block.strip().splitlines()
        for i, line in enumerate(lines):
            timing = CUE_TIMING.match(line)
            if not timing:
                continue
            start = parse_vtt_timestamp(timing.group(1))
            end = parse_vtt_timestamp(timing.group(2))
            text = " ".join(CUE_TAG.sub("", t).strip() for t in lines[i + 1 :]).strip()
            if text:
                segments.append(
                    TimestampedSegment(text=text, start=start, duration=max(end - start, 0.0))
                )
            break

    return segments


class MuxExtractor:
    """Conditional free caption source for Mux-hosted assets.

    Authenticates with the Mux token id/secret pair. Returns ``None`` when the
    asset has no text track.
    """

    source_type = SourceType.MUX

    def __init__(self, config: PipelineConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self.http_client = http_client
        logger.info(
            "mux_extractor_initialized",
            credentials_present=bool(config.mux_token_id and config.mux_token_secret),
        )

    def recognizes(self, identifier: str) -> bool:
        return "mux.com" in identifier.lower() or identifier.strip().startswith("asset_")

    @staticmethod
    def get_error_message(code: ExtractorErrorCode) -> str:
        return ERROR_MESSAGES.get(code, "Failed to import this Mux video. Please try again.")

    def _raise_for_status(self, response: httpx.Response, asset_id: str) -> None:
        status = response.status_code
        if status == 200:
            return
        if status == 401:
            raise ExtractorError(
                "Mux credentials are invalid",
                code=ExtractorErrorCode.API_KEY_INVALID,
                source_type=SourceType.MUX,
            )
        if status == 403:
            raise VideoPrivateError(
                f"Access to Mux asset {asset_id} denied", source_type=SourceType.MUX
            )
        if status == 404:
            raise VideoNotFoundError(
                f"Mux asset {asset_id} not found", source_type=SourceType.MUX
            )
        if status == 429:
            raise RateLimitedError("Mux API rate limit exceeded", source_type=SourceType.MUX)
        raise ExtractorNetworkError(
            f"Mux API returned HTTP {status}", source_type=SourceType.MUX
        )

    async def _get(
        self, client: httpx.AsyncClient, url: str, asset_id: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await client.get(url, **kwargs)
        except httpx.HTTPError as e:
            raise ExtractorNetworkError(
                f"Could not reach Mux: {e}",
                source_type=SourceType.MUX,
                original_error=e,
            ) from e
        self._raise_for_status(response, asset_id)
        return response

    async def _fetch(self, client: httpx.AsyncClient, asset_id: str) -> TranscriptResult | None:
        response = await self._get(
            client,
            f"{self.config.mux_api_base_url}/video/v1/assets/{asset_id}",
            asset_id,
            auth=(self.config.mux_token_id, self.config.mux_token_secret),
        )
        asset = response.json().get("data") or {}

        if asset.get("status") != "ready":
            raise ExtractorError(
                f"Mux asset {asset_id} is {asset.get('status', 'unknown')}",
                code=ExtractorErrorCode.ASSET_NOT_READY,
                source_type=SourceType.MUX,
            )

        track = next(
            (
                t
                for t in asset.get("tracks") or []
                if t.get("type") in ("text", "subtitle") and t.get("status", "ready") == "ready"
            ),
            None,
        )
        playback_ids = asset.get("playback_ids") or []
        playback_id = playback_ids[0]["id"] if playback_ids else None

        if track is None or playback_id is None:
            logger.info("mux_captions_unavailable", asset_id=asset_id)
            return None

        captions = await self._get(
            client,
            f"{self.config.mux_stream_base_url}/{playback_id}/text/{track['id']}.vtt",
            asset_id,
            headers={"Accept": "text/vtt"},
        )
        segments = parse_vtt(captions.text)
        if not segments:
            logger.info("mux_captions_empty", asset_id=asset_id, track_id=track["id"])
            return None

        meta = asset.get("meta") or {}
        return TranscriptResult(
            source_type=SourceType.MUX,
            transcript_method=TranscriptMethod.MUX_AUTO,
            title=meta.get("title") or asset.get("passthrough") or asset_id,
            duration_seconds=float(asset.get("duration") or 0.0),
            transcript=join_segments(segments),
            transcript_with_timestamps=segments,
            metadata=TranscriptMetadata(
                cost_usd=0.0,
                mux_asset_id=asset_id,
                playback_id=playback_id,
                playback_url=f"{self.config.mux_stream_base_url}/{playback_id}.m3u8",
                thumbnail_url=f"https://image.mux.com/{playback_id}/thumbnail.jpg",
                language=track.get("language_code"),
            ),
        )

    async def extract(self, request: ExtractionRequest) -> TranscriptResult | None:
        """Fetch auto-generated captions for a Mux asset.

        Returns:
            Normalized transcript, or None when the asset has no captions.

        Raises:
            ExtractorError: API_KEY_MISSING, INVALID_ID, ASSET_NOT_READY,
                PARSING_ERROR and the HTTP status mapped errors.
        """
        if not (self.config.mux_token_id and self.config.mux_token_secret):
            raise ExtractorError(
                "MUX_TOKEN_ID and MUX_TOKEN_SECRET are not configured",
                code=ExtractorErrorCode.API_KEY_MISSING,
                source_type=SourceType.MUX,
            )

        asset_id = extract_mux_asset_id(request.identifier)
        logger.info("fetching_transcript", source="mux", asset_id=asset_id)

        try:
            if self.http_client is not None:
                result = await self._fetch(self.http_client, asset_id)
            else:
                async with httpx.AsyncClient(timeout=self.config.http_timeout_seconds) as client:
                    result = await self._fetch(client, asset_id)
        except ExtractorError as e:
            logger.warning(
                "transcript_fetch_error",
                source="mux",
                asset_id=asset_id,
                code=e.code.value,
            )
            raise

        if result is not None:
            logger.info(
                "transcript_fetched",
                source="mux",
                asset_id=asset_id,
                segments=len(result.transcript_with_timestamps),
            )
        return result
