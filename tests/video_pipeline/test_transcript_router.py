"""Unit tests for the transcript router."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.video_pipeline.errors import (
    ExtractorError,
    ExtractorErrorCode,
    NoTranscriptError,
    RouterErrorCode,
    TranscriptRouterError,
    VideoPrivateError,
)
from src.video_pipeline.extractors import ExtractionRequest
from src.video_pipeline.schemas import SourceType, TranscriptMethod, Video
from src.video_pipeline.transcript_router import RoutingOptions, TranscriptRouter


def make_extractor(source_type: SourceType, recognizes=lambda identifier: False, result=None):
    extractor = MagicMock()
    extractor.source_type = source_type
    extractor.recognizes = MagicMock(side_effect=recognizes)
    extractor.extract = AsyncMock(return_value=result)
    return extractor


@pytest.fixture
def free_result(transcript_factory):
    return transcript_factory(words=40)


@pytest.fixture
def paid_result(transcript_factory):
    return transcript_factory(
        words=40,
        source_type=SourceType.UPLOAD,
        method=TranscriptMethod.WHISPER,
        cost_usd=0.012,
    )


@pytest.fixture
def extractors(free_result, paid_result):
    return {
        SourceType.YOUTUBE: make_extractor(
            SourceType.YOUTUBE, lambda i: "youtube.com" in i or "youtu.be" in i, free_result
        ),
        SourceType.LOOM: make_extractor(SourceType.LOOM, lambda i: "loom.com" in i, free_result),
        SourceType.MUX: make_extractor(SourceType.MUX, lambda i: i.startswith("asset_"), None),
        SourceType.UPLOAD: make_extractor(SourceType.UPLOAD, result=paid_result),
    }


@pytest.fixture
def router(config, extractors):
    return TranscriptRouter(config, extractors=extractors)


@pytest.mark.unit
class TestSourceDetection:
    """Test identifier classification."""

    def test_detects_youtube(self, router):
        """Test YouTube URLs are routed to the YouTube source."""
        assert router.detect_source_type("https://youtu.be/dQw4w9WgXcQ") == SourceType.YOUTUBE

    def test_detects_loom(self, router):
        """Test Loom share links are routed to Loom."""
        assert router.detect_source_type("https://www.loom.com/share/abc123") == SourceType.LOOM

    def test_detects_mux(self, router):
        """Test Mux asset ids are routed to Mux."""
        assert router.detect_source_type("asset_01") == SourceType.MUX

    def test_youtube_has_priority(self, router, extractors):
        """Test the first matching source in priority order wins."""
        extractors[SourceType.LOOM].recognizes.side_effect = lambda identifier: True

        assert router.detect_source_type("https://youtube.com/watch?v=x") == SourceType.YOUTUBE

    def test_unknown_with_buffer_is_upload(self, router):
        """Test an unrecognized identifier with media goes to paid transcription."""
        assert router.detect_source_type("lecture.mp4", has_buffer=True) == SourceType.UPLOAD

    def test_force_paid_overrides_detection(self, router):
        """Test force_paid always selects paid transcription."""
        assert (
            router.detect_source_type("https://youtu.be/dQw4w9WgXcQ", force_paid=True)
            == SourceType.UPLOAD
        )

    def test_unknown_without_buffer_raises(self, router):
        """Test nothing recognizes the identifier and there is no media."""
        with pytest.raises(TranscriptRouterError) as exc_info:
            router.detect_source_type("ftp://example.com/video")

        assert exc_info.value.code == RouterErrorCode.UNKNOWN_SOURCE


@pytest.mark.unit
class TestExtractTranscript:
    """Test routing and fallback."""

    @pytest.mark.asyncio
    async def test_free_source_cost_is_zero(self, router, extractors, free_result):
        """Test a free source result always reports zero cost."""
        free_result.metadata.cost_usd = 0.5

        result = await router.extract_transcript("https://youtu.be/dQw4w9WgXcQ")

        assert result.metadata.cost_usd == 0.0
        assert result.metadata.processing_time_ms >= 0
        extractors[SourceType.UPLOAD].extract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mux_without_captions_and_no_buffer(self, router, extractors):
        """Test Mux with no captions and no media asks for the paid fallback."""
        with pytest.raises(TranscriptRouterError) as exc_info:
            await router.extract_transcript("asset_01")

        error = exc_info.value
        assert error.code == RouterErrorCode.MISSING_VIDEO_BUFFER
        assert error.requires_paid_fallback
        assert error.source_type == SourceType.MUX
        extractors[SourceType.UPLOAD].extract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mux_without_captions_uses_paid_fallback(self, router, extractors):
        """Test Mux with no captions and media is transcribed at a cost."""
        result = await router.extract_transcript(
            "asset_01", options=RoutingOptions(video_buffer=b"media", filename="talk.mp4")
        )

        assert result.metadata.cost_usd > 0
        assert result.transcript_method == TranscriptMethod.WHISPER
        assert result.source_type == SourceType.MUX
        assert result.metadata.fallback_from == "mux"

        request: ExtractionRequest = extractors[SourceType.UPLOAD].extract.await_args.args[0]
        assert request.media == b"media"
        assert request.filename == "talk.mp4"

    @pytest.mark.asyncio
    async def test_no_transcript_falls_back(self, router, extractors):
        """Test NoTranscriptError from a free source triggers the paid fallback."""
        extractors[SourceType.YOUTUBE].extract.side_effect = NoTranscriptError(
            "no captions", source_type=SourceType.YOUTUBE
        )

        result = await router.extract_transcript(
            "https://youtu.be/dQw4w9WgXcQ", options=RoutingOptions(video_buffer=b"media")
        )

        assert result.metadata.fallback_from == "youtube"
        assert result.metadata.cost_usd > 0

    @pytest.mark.asyncio
    async def test_extractor_error_is_wrapped_with_code(self, router, extractors):
        """Test extractor failures keep their code inside the router error."""
        original = VideoPrivateError("private", source_type=SourceType.YOUTUBE)
        extractors[SourceType.YOUTUBE].extract.side_effect = original

        with pytest.raises(TranscriptRouterError) as exc_info:
            await router.extract_transcript("https://youtu.be/dQw4w9WgXcQ")

        assert exc_info.value.code == ExtractorErrorCode.VIDEO_PRIVATE
        assert exc_info.value.original_error is original
        assert not exc_info.value.requires_paid_fallback
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_extraction_failed(self, router, extractors):
        """Test non-extractor exceptions are reported as EXTRACTION_FAILED."""
        extractors[SourceType.LOOM].extract.side_effect = RuntimeError("boom")

        with pytest.raises(TranscriptRouterError) as exc_info:
            await router.extract_transcript("https://www.loom.com/share/abc123")

        assert exc_info.value.code == RouterErrorCode.EXTRACTION_FAILED

    @pytest.mark.asyncio
    async def test_paid_failure_is_wrapped(self, router, extractors):
        """Test paid transcription errors are wrapped with the upload source."""
        extractors[SourceType.UPLOAD].extract.side_effect = ExtractorError(
            "too large", code=ExtractorErrorCode.FILE_TOO_LARGE
        )

        with pytest.raises(TranscriptRouterError) as exc_info:
            await router.extract_transcript("lecture.mp4", options=RoutingOptions(video_buffer=b"x"))

        assert exc_info.value.code == ExtractorErrorCode.FILE_TOO_LARGE
        assert exc_info.value.source_type == SourceType.UPLOAD

    @pytest.mark.parametrize(
        ("code", "retryable"),
        [
            (ExtractorErrorCode.NETWORK_ERROR, True),
            (ExtractorErrorCode.RATE_LIMITED, True),
            (ExtractorErrorCode.INVALID_ID, False),
            (ExtractorErrorCode.FILE_TOO_LARGE, False),
            (RouterErrorCode.EXTRACTION_FAILED, True),
            (RouterErrorCode.UNKNOWN_SOURCE, False),
        ],
    )
    def test_retryable_follows_code(self, code, retryable):
        """Test a router error without a wrapped extractor error is judged by its code."""
        assert TranscriptRouterError("failed", code=code).retryable is retryable


@pytest.mark.unit
class TestExtractFromVideo:
    """Test extraction from stored video records."""

    @pytest.mark.asyncio
    async def test_youtube_record_uses_video_id(self, router, extractors):
        """Test the stored YouTube id is passed to the extractor."""
        video = Video(id="v1", source_type="youtube", youtube_video_id="dQw4w9WgXcQ")

        await router.extract_transcript_from_video(video)

        request = extractors[SourceType.YOUTUBE].extract.await_args.args[0]
        assert request.identifier == "dQw4w9WgXcQ"

    @pytest.mark.asyncio
    async def test_missing_youtube_id(self, router):
        """Test a YouTube record without an id or URL cannot be routed."""
        video = Video(id="v1", source_type="youtube")

        with pytest.raises(TranscriptRouterError) as exc_info:
            await router.extract_transcript_from_video(video)

        assert exc_info.value.code == RouterErrorCode.MISSING_VIDEO_ID

    @pytest.mark.asyncio
    async def test_missing_mux_asset(self, router):
        """Test a Mux record without an asset id cannot be routed."""
        video = Video(id="v1", source_type="mux")

        with pytest.raises(TranscriptRouterError) as exc_info:
            await router.extract_transcript_from_video(video)

        assert exc_info.value.code == RouterErrorCode.MISSING_PLAYBACK_ID

    @pytest.mark.asyncio
    async def test_upload_without_media_needs_buffer(self, router):
        """Test uploads always need the media bytes."""
        video = Video(id="v1", source_type="upload", storage_path="creator/talk.mp4")

        with pytest.raises(TranscriptRouterError) as exc_info:
            await router.extract_transcript_from_video(video)

        assert exc_info.value.requires_paid_fallback

    @pytest.mark.asyncio
    async def test_upload_filename_from_storage_path(self, router, extractors):
        """Test the upload's filename is taken from its storage path."""
        video = Video(id="v1", source_type="upload", storage_path="creator/talk.mp4")

        result = await router.extract_transcript_from_video(video, media=b"bytes")

        request = extractors[SourceType.UPLOAD].extract.await_args.args[0]
        assert request.filename == "talk.mp4"
        assert result.source_type == SourceType.UPLOAD
        assert result.metadata.model_extra.get("fallback_from") is None


@pytest.mark.unit
class TestCostHelpers:
    """Test cost estimation exposed by the router."""

    def test_free_source_estimate(self, router):
        """Test free sources estimate to zero."""
        estimate = router.calculate_estimated_cost(SourceType.LOOM, 600)

        assert estimate == {"cost_usd": 0.0, "formatted": "FREE", "method": "loom_api"}

    def test_upload_estimate(self, router):
        """Test uploads estimate at the per-minute rate."""
        estimate = router.calculate_estimated_cost(SourceType.UPLOAD, 600)

        assert estimate["cost_usd"] == pytest.approx(0.06)
        assert estimate["method"] == "whisper"

    def test_cost_breakdown(self, router):
        """Test the breakdown lists every source."""
        breakdown = router.get_cost_breakdown()

        assert set(breakdown) == {"youtube", "loom", "mux", "upload"}
        assert breakdown["upload"]["cost_per_minute"] == 0.006
