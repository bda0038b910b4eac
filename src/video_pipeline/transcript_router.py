"""Transcript router: picks a source extractor and falls back to paid transcription.

Free sources are tried first. A free source that has no captions (a
``NoTranscriptError``, or ``None`` from the conditional Mux source) is not a
failure; it sends the request on to the paid Whisper fallback, which needs
the raw media bytes.
"""

import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

from src.utils.logging import get_logger

from .config import PipelineConfig
from .costs import FREE_SOURCES, calculate_estimated_cost, get_cost_breakdown
from .errors import (
    ExtractorError,
    NoTranscriptError,
    RouterErrorCode,
    TranscriptRouterError,
)
from .extractors import (
    ExtractionRequest,
    LoomExtractor,
    MuxExtractor,
    TranscriptExtractor,
    WhisperExtractor,
    YouTubeExtractor,
)
from .schemas import SourceType, TranscriptResult, Video

logger = get_logger(__name__)

# Detection order for identifiers; the paid fallback is never detected by pattern
SOURCE_PRIORITY = (SourceType.YOUTUBE, SourceType.LOOM, SourceType.MUX)


@dataclass
class RoutingOptions:
    """Per-call routing options.

    Attributes:
        video_buffer: Raw media bytes for the paid fallback.
        filename: Name reported to the paid transcription service.
        force_paid: Skip free sources entirely.
        language: Preferred transcript language, when the source supports it.
    """

    video_buffer: bytes | None = None
    filename: str | None = None
    force_paid: bool = False
    language: str | None = None


class TranscriptRouter:
    """Routes a video to the cheapest transcript source that works.

    Extractors are held in a dispatch table keyed on ``SourceType``; tests and
    alternative deployments can pass their own table.
    """

    def __init__(
        self,
        config: PipelineConfig,
        extractors: dict[SourceType, TranscriptExtractor] | None = None,
    ):
        """Initialize router with configuration.

        Args:
            config: Configuration object with credentials for every source.
            extractors: Optional dispatch table overriding the defaults.
        """
        self.config = config
        self.extractors: dict[SourceType, TranscriptExtractor] = extractors or {
            SourceType.YOUTUBE: YouTubeExtractor(config),
            SourceType.LOOM: LoomExtractor(config),
            SourceType.MUX: MuxExtractor(config),
            SourceType.UPLOAD: WhisperExtractor(config),
        }

    def detect_source_type(
        self,
        identifier: str,
        has_buffer: bool = False,
        force_paid: bool = False,
    ) -> SourceType:
        """Classify an identifier in fixed priority order.

        Raises:
            TranscriptRouterError: UNKNOWN_SOURCE if nothing recognizes the
                identifier and there is no media to transcribe.
        """
        if force_paid:
            return SourceType.UPLOAD

        for source_type in SOURCE_PRIORITY:
            extractor = self.extractors.get(source_type)
            if extractor is not None and extractor.recognizes(identifier):
                return source_type

        if has_buffer:
            return SourceType.UPLOAD

        raise TranscriptRouterError(
            f"Unable to determine transcript source for {identifier!r}",
            code=RouterErrorCode.UNKNOWN_SOURCE,
        )

    async def extract_transcript(
        self,
        identifier: str,
        creator_id: str | None = None,
        options: RoutingOptions | None = None,
    ) -> TranscriptResult:
        """Extract a transcript for a URL or source identifier.

        Args:
            identifier: Video URL or source-specific id.
            creator_id: Owner, for logging and cost attribution.
            options: Media buffer, filename and routing flags.

        Returns:
            Normalized transcript with ``cost_usd`` and ``processing_time_ms``.

        Raises:
            TranscriptRouterError: With the extractor's code for source
                failures, or MISSING_VIDEO_BUFFER when the paid fallback is
                needed but no media was supplied.
        """
        options = options or RoutingOptions()
        source_type = self.detect_source_type(
            identifier,
            has_buffer=options.video_buffer is not None,
            force_paid=options.force_paid,
        )
        return await self._route(source_type, identifier, creator_id, options)

    async def extract_transcript_from_video(
        self,
        video: Video,
        creator_id: str | None = None,
        media: bytes | None = None,
        filename: str | None = None,
    ) -> TranscriptResult:
        """Extract a transcript using the identifiers stored on a video record.

        Raises:
            TranscriptRouterError: MISSING_VIDEO_ID / MISSING_PLAYBACK_ID when
                the record lacks its source identifier, MISSING_VIDEO_BUFFER
                for uploads without media, or any routing failure.
        """
        creator_id = creator_id or video.creator_id
        source_type = video.source_type

        if source_type in (SourceType.YOUTUBE, SourceType.LOOM):
            identifier = (
                video.youtube_video_id if source_type == SourceType.YOUTUBE else video.embed_id
            ) or video.url
            if not identifier:
                raise TranscriptRouterError(
                    f"Video {video.id} has no {source_type.value} identifier",
                    code=RouterErrorCode.MISSING_VIDEO_ID,
                    source_type=source_type,
                )
        elif source_type == SourceType.MUX:
            identifier = video.mux_asset_id
            if not identifier:
                raise TranscriptRouterError(
                    f"Video {video.id} has no Mux asset id",
                    code=RouterErrorCode.MISSING_PLAYBACK_ID,
                    source_type=source_type,
                )
        else:
            identifier = video.storage_path or video.id

        if filename is None and video.storage_path:
            filename = PurePath(video.storage_path).name

        options = RoutingOptions(
            video_buffer=media,
            filename=filename,
            force_paid=source_type == SourceType.UPLOAD,
        )
        return await self._route(source_type, identifier, creator_id, options)

    async def _route(
        self,
        source_type: SourceType,
        identifier: str,
        creator_id: str | None,
        options: RoutingOptions,
    ) -> TranscriptResult:
        logger.info(
            "transcript_routing_started",
            source_type=source_type.value,
            creator_id=creator_id,
            has_buffer=options.video_buffer is not None,
        )

        if source_type in FREE_SOURCES:
            result = await self._run_free(source_type, identifier, options)
            if result is not None:
                return result
            return await self._run_paid(identifier, options, fallback_from=source_type)

        return await self._run_paid(identifier, options, fallback_from=None)

    def _extractor(self, source_type: SourceType) -> TranscriptExtractor:
        extractor = self.extractors.get(source_type)
        if extractor is None:
            raise TranscriptRouterError(
                f"No extractor configured for {source_type.value}",
                code=RouterErrorCode.UNKNOWN_SOURCE,
                source_type=source_type,
            )
        return extractor

    async def _run_free(
        self,
        source_type: SourceType,
        identifier: str,
        options: RoutingOptions,
    ) -> TranscriptResult | None:
        extractor = self._extractor(source_type)
        started = time.perf_counter()
        try:
            result = await extractor.extract(
                ExtractionRequest(identifier=identifier, language=options.language)
            )
        except NoTranscriptError:
            logger.info("free_source_without_transcript", source_type=source_type.value)
            return None
        except ExtractorError as e:
            raise TranscriptRouterError(
                e.message, code=e.code, source_type=source_type, original_error=e
            ) from e
        except Exception as e:
            logger.exception(
                "transcript_extraction_failed",
                source_type=source_type.value,
                error_type=type(e).__name__,
            )
            raise TranscriptRouterError(
                str(e),
                code=RouterErrorCode.EXTRACTION_FAILED,
                source_type=source_type,
                original_error=e,
            ) from e

        if result is None:
            logger.info("free_source_without_captions", source_type=source_type.value)
            return None

        result.metadata.cost_usd = 0.0
        result.metadata.processing_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "transcript_routed",
            source_type=source_type.value,
            method=result.transcript_method.value,
            processing_time_ms=result.metadata.processing_time_ms,
        )
        return result

    async def _run_paid(
        self,
        identifier: str,
        options: RoutingOptions,
        fallback_from: SourceType | None,
    ) -> TranscriptResult:
        if options.video_buffer is None:
            logger.warning(
                "paid_fallback_missing_buffer",
                fallback_from=fallback_from.value if fallback_from else None,
            )
            raise TranscriptRouterError(
                "Paid transcription requires the video file, but none was supplied",
                code=RouterErrorCode.MISSING_VIDEO_BUFFER,
                source_type=fallback_from or SourceType.UPLOAD,
            )

        extractor = self._extractor(SourceType.UPLOAD)
        started = time.perf_counter()
        try:
            result = await extractor.extract(
                ExtractionRequest(
                    identifier=identifier,
                    media=options.video_buffer,
                    filename=options.filename,
                    language=options.language,
                )
            )
        except ExtractorError as e:
            raise TranscriptRouterError(
                e.message, code=e.code, source_type=SourceType.UPLOAD, original_error=e
            ) from e
        except Exception as e:
            logger.exception("paid_transcription_failed", error_type=type(e).__name__)
            raise TranscriptRouterError(
                str(e),
                code=RouterErrorCode.EXTRACTION_FAILED,
                source_type=SourceType.UPLOAD,
                original_error=e,
            ) from e

        if result is None:
            raise TranscriptRouterError(
                "Paid transcription returned no transcript",
                code=RouterErrorCode.EXTRACTION_FAILED,
                source_type=SourceType.UPLOAD,
            )

        result.metadata.processing_time_ms = int((time.perf_counter() - started) * 1000)
        if fallback_from is not None:
            result.source_type = fallback_from
            result.metadata.fallback_from = fallback_from.value

        logger.info(
            "transcript_routed",
            source_type=result.source_type.value,
            method=result.transcript_method.value,
            cost_usd=result.metadata.cost_usd,
            processing_time_ms=result.metadata.processing_time_ms,
        )
        return result

    def calculate_estimated_cost(
        self, source_type: SourceType, duration_seconds: float
    ) -> dict[str, Any]:
        return calculate_estimated_cost(
            source_type, duration_seconds, self.config.whisper_cost_per_minute
        )

    def get_cost_breakdown(self) -> dict[str, Any]:
        return get_cost_breakdown(self.config.whisper_cost_per_minute)
