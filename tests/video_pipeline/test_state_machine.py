"""Unit tests for the processing state machine."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.video_pipeline.errors import (
    ExtractorErrorCode,
    FileTooLargeError,
    InvalidIdentifierError,
    ProcessingError,
    RateLimitedError,
    RetryLimitExceededError,
    StateTransitionError,
    TranscriptRouterError,
    VideoNotFoundError,
    VideoPrivateError,
)
from src.video_pipeline.schemas import LastError, ProcessingMetadata, Video, VideoStatus
from src.video_pipeline.state_machine import (
    VALID_TRANSITIONS,
    ProcessingStateMachine,
    calculate_progress,
    forward_path,
    get_estimated_time_remaining,
    get_next_states,
    get_processing_duration,
    get_stage_info,
    is_retryable_state,
    is_stuck,
    is_terminal_state,
    is_valid_transition,
    minutes_in_stage,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def make_video(status: VideoStatus, minutes_ago: float = 0, **fields) -> Video:
    return Video(
        id="video-1",
        source_type="youtube",
        status=status,
        updated_at=NOW - timedelta(minutes=minutes_ago),
        **fields,
    )


@pytest.mark.unit
class TestTransitionGraph:
    """Test the pure transition helpers."""

    @pytest.mark.parametrize("current", list(VideoStatus))
    @pytest.mark.parametrize("target", list(VideoStatus))
    def test_valid_transition_matches_allowed_set(
        self, current: VideoStatus, target: VideoStatus
    ) -> None:
        """Test is_valid_transition is exactly membership in the allowed set."""
        assert is_valid_transition(current, target) == (target in VALID_TRANSITIONS[current])

    def test_happy_path_is_linear(self) -> None:
        """Test the forward path pending -> completed visits every stage once."""
        assert forward_path(VideoStatus.PENDING, VideoStatus.COMPLETED) == [
            VideoStatus.UPLOADING,
            VideoStatus.TRANSCRIBING,
            VideoStatus.PROCESSING,
            VideoStatus.EMBEDDING,
            VideoStatus.COMPLETED,
        ]

    def test_graph_only_cycle_is_failed_to_pending(self) -> None:
        """Test that removing failed -> pending leaves an acyclic graph."""
        edges = {
            state: set(targets) - ({VideoStatus.PENDING} if state == VideoStatus.FAILED else set())
            for state, targets in VALID_TRANSITIONS.items()
        }

        visiting: set[VideoStatus] = set()
        done: set[VideoStatus] = set()

        def has_cycle(state: VideoStatus) -> bool:
            if state in visiting:
                return True
            if state in done:
                return False
            visiting.add(state)
            found = any(has_cycle(nxt) for nxt in edges[state])
            visiting.discard(state)
            done.add(state)
            return found

        assert not any(has_cycle(state) for state in edges)
        assert is_valid_transition(VideoStatus.FAILED, VideoStatus.PENDING)

    def test_completed_has_no_next_states(self) -> None:
        """Test completed is terminal."""
        assert get_next_states(VideoStatus.COMPLETED) == []
        assert is_terminal_state(VideoStatus.COMPLETED)

    def test_failed_is_retryable_not_terminal(self) -> None:
        """Test failed can be retried and so is not terminal."""
        assert is_retryable_state(VideoStatus.FAILED)
        assert not is_terminal_state(VideoStatus.FAILED)
        assert get_next_states(VideoStatus.FAILED) == [VideoStatus.PENDING]

    @pytest.mark.parametrize(
        ("retry_count", "stage", "retryable", "expected"),
        [
            (1, "transcribing", True, False),
            (3, "transcribing", True, True),
            (1, "transcribing", False, True),
            (1, "pending", True, True),
        ],
    )
    def test_failed_terminal_with_metadata(self, retry_count, stage, retryable, expected) -> None:
        """Test a failed video is terminal once its last error rules out a retry."""
        metadata = ProcessingMetadata(
            retry_count=retry_count,
            last_error=LastError(
                stage=stage,
                message="boom",
                timestamp=NOW,
                error_type="ExtractorError",
                retryable=retryable,
            ),
        )

        assert is_terminal_state(VideoStatus.FAILED, metadata) is expected

    def test_stage_info_timeouts(self) -> None:
        """Test stage timeouts used for stuck detection."""
        assert get_stage_info(VideoStatus.UPLOADING).timeout_minutes == 30
        assert get_stage_info(VideoStatus.TRANSCRIBING).timeout_minutes == 60
        assert get_stage_info(VideoStatus.PROCESSING).timeout_minutes == 15
        assert get_stage_info(VideoStatus.EMBEDDING).timeout_minutes == 30

    def test_forward_path_to_unreachable_state_raises(self) -> None:
        """Test there is no forward path out of completed."""
        with pytest.raises(StateTransitionError):
            forward_path(VideoStatus.COMPLETED, VideoStatus.PENDING)


@pytest.mark.unit
class TestProgressHelpers:
    """Test progress and time estimates."""

    def test_progress_values(self) -> None:
        """Test progress percentages per status."""
        assert calculate_progress(VideoStatus.PENDING) == 0
        assert calculate_progress(VideoStatus.TRANSCRIBING) == 40
        assert calculate_progress(VideoStatus.EMBEDDING) == 80
        assert calculate_progress(VideoStatus.COMPLETED) == 100
        assert calculate_progress(VideoStatus.FAILED) == 0

    def test_estimated_time_remaining(self) -> None:
        """Test remaining time sums the timeouts of remaining stages."""
        assert get_estimated_time_remaining(VideoStatus.PENDING) == 30 + 60 + 15 + 30
        assert get_estimated_time_remaining(VideoStatus.PROCESSING) == 15 + 30
        assert get_estimated_time_remaining(VideoStatus.COMPLETED) == 0
        assert get_estimated_time_remaining(VideoStatus.FAILED) == 0

    def test_processing_duration(self) -> None:
        """Test duration runs from processing start to completion."""
        video = make_video(
            VideoStatus.COMPLETED,
            processing_started_at=NOW - timedelta(minutes=5),
            processing_completed_at=NOW,
        )
        assert get_processing_duration(video) == 300.0
        assert get_processing_duration(make_video(VideoStatus.PENDING)) is None


@pytest.mark.unit
class TestStuckDetection:
    """Test stuck classification."""

    def test_transcribing_past_timeout_is_stuck(self) -> None:
        """Test a transcribing video untouched for 65 minutes is stuck."""
        video = make_video(VideoStatus.TRANSCRIBING, minutes_ago=65)

        assert minutes_in_stage(video, NOW) == pytest.approx(65)
        assert is_stuck(video, NOW)

    def test_transcribing_within_timeout_is_not_stuck(self) -> None:
        """Test a transcribing video at 59 minutes is not stuck."""
        assert not is_stuck(make_video(VideoStatus.TRANSCRIBING, minutes_ago=59), NOW)

    @pytest.mark.parametrize(
        "status", [VideoStatus.PENDING, VideoStatus.COMPLETED, VideoStatus.FAILED]
    )
    def test_untimed_states_are_never_stuck(self, status: VideoStatus) -> None:
        """Test stages without a timeout are never stuck."""
        assert not is_stuck(make_video(status, minutes_ago=10_000), NOW)


@pytest.mark.unit
class TestProcessingStateMachine:
    """Test suite for ProcessingStateMachine."""

    @pytest.fixture
    def machine(self, storage) -> ProcessingStateMachine:
        return ProcessingStateMachine(storage)

    @pytest.mark.asyncio
    async def test_update_status_records_stage_timing(self, machine, storage) -> None:
        """Test a valid transition writes status, start time and stage entry."""
        storage.add_video(id="video-1", status="pending")

        video = await machine.update_status("video-1", VideoStatus.UPLOADING)

        assert video.status == VideoStatus.UPLOADING
        assert storage.status_of("video-1") == VideoStatus.UPLOADING
        assert storage.videos["video-1"]["processing_started_at"] is not None
        assert "uploading" in storage.videos["video-1"]["metadata"]["stage_started_at"]

    @pytest.mark.asyncio
    async def test_update_status_records_stage_duration(self, machine, storage) -> None:
        """Test leaving a stage records how long it took."""
        storage.add_video(id="video-1", status="pending")
        await machine.update_status("video-1", VideoStatus.UPLOADING)
        await machine.update_status("video-1", VideoStatus.TRANSCRIBING)

        durations = storage.videos["video-1"]["metadata"]["stage_durations_seconds"]
        assert "uploading" in durations
        assert durations["uploading"] >= 0

    @pytest.mark.asyncio
    async def test_update_status_rejects_invalid_transition(self, machine, storage) -> None:
        """Test skipping a stage raises and leaves the row unchanged."""
        storage.add_video(id="video-1", status="pending")

        with pytest.raises(StateTransitionError) as exc_info:
            await machine.update_status("video-1", VideoStatus.EMBEDDING)

        assert exc_info.value.current_state == VideoStatus.PENDING
        assert exc_info.value.attempted_state == VideoStatus.EMBEDDING
        assert storage.status_of("video-1") == VideoStatus.PENDING

    @pytest.mark.asyncio
    async def test_update_status_lost_race_raises(self, machine, storage) -> None:
        """Test a conditional write that matches no row is reported as a race."""
        storage.add_video(id="video-1", status="pending")
        storage.update_video = AsyncMock(return_value=False)

        with pytest.raises(StateTransitionError, match="concurrently"):
            await machine.update_status("video-1", VideoStatus.UPLOADING)

        storage.update_video.assert_awaited_once()
        assert storage.update_video.await_args.kwargs["expected_status"] == VideoStatus.PENDING

    @pytest.mark.asyncio
    async def test_update_status_missing_video(self, machine) -> None:
        """Test updating an unknown video raises."""
        with pytest.raises(StateTransitionError, match="not found"):
            await machine.update_status("missing", VideoStatus.UPLOADING)

    @pytest.mark.asyncio
    async def test_completion_stamps_completed_at(self, machine, storage) -> None:
        """Test reaching completed stamps processing_completed_at."""
        storage.add_video(id="video-1", status="embedding")

        await machine.update_status("video-1", VideoStatus.COMPLETED)

        assert storage.videos["video-1"]["processing_completed_at"] is not None

    @pytest.mark.asyncio
    async def test_mark_failed_records_last_error(self, machine, storage) -> None:
        """Test failing a video stores a structured last error and bumps retry_count."""
        storage.add_video(id="video-1", status="transcribing")

        video = await machine.mark_failed(
            "video-1", VideoStatus.TRANSCRIBING, "Supadata timeout", TimeoutError("slow")
        )

        assert video.status == VideoStatus.FAILED
        assert video.error_message == "Supadata timeout"
        assert video.metadata.retry_count == 1
        assert video.metadata.last_error.stage == VideoStatus.TRANSCRIBING
        assert video.metadata.last_error.error_type == "TimeoutError"

    @pytest.mark.asyncio
    async def test_mark_failed_rejects_completed_video(self, machine, storage) -> None:
        """Test a completed video cannot be failed."""
        storage.add_video(id="video-1", status="completed")

        with pytest.raises(StateTransitionError):
            await machine.mark_failed("video-1", VideoStatus.EMBEDDING, "late failure")

        assert storage.status_of("video-1") == VideoStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_failed_video_returns_to_pending(self, machine, storage) -> None:
        """Test a failed video with retries left goes back to pending."""
        storage.add_video(id="video-1", status="transcribing")
        await machine.mark_failed("video-1", VideoStatus.TRANSCRIBING, "boom")

        video = await machine.retry_failed_video("video-1")

        assert video.status == VideoStatus.PENDING
        assert video.error_message is None
        assert video.metadata.retried_at is not None
        assert video.metadata.retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_limit_exceeded_leaves_status(self, machine, storage) -> None:
        """Test retrying at the stage's retry ceiling raises a non-retryable error."""
        storage.add_video(
            id="video-1",
            status="failed",
            metadata={
                "retry_count": 3,
                "last_error": {
                    "stage": "embedding",
                    "message": "boom",
                    "timestamp": NOW.isoformat(),
                    "error_type": "EmbeddingError",
                },
            },
        )

        with pytest.raises(RetryLimitExceededError) as exc_info:
            await machine.retry_failed_video("video-1")

        assert exc_info.value.retryable is False
        assert exc_info.value.stage == VideoStatus.EMBEDDING
        assert storage.status_of("video-1") == VideoStatus.FAILED

    @pytest.mark.asyncio
    async def test_pending_stage_failure_has_no_retries(self, machine, storage) -> None:
        """Test a failure recorded against pending uses its ceiling of zero retries."""
        storage.add_video(id="video-1", status="pending")
        await machine.mark_failed("video-1", VideoStatus.PENDING, "source could not be read")

        with pytest.raises(RetryLimitExceededError) as exc_info:
            await machine.retry_failed_video("video-1")

        assert exc_info.value.stage == VideoStatus.PENDING
        assert "exceeded 0 retries" in str(exc_info.value)
        assert storage.status_of("video-1") == VideoStatus.FAILED

    @pytest.mark.parametrize(
        "error",
        [
            VideoNotFoundError("gone"),
            VideoPrivateError("private video"),
            InvalidIdentifierError("bad url"),
            FileTooLargeError("too big"),
            ProcessingError("bad input", stage=VideoStatus.PROCESSING, video_id="video-1", retryable=False),
            TranscriptRouterError(
                "all sources failed",
                code=ExtractorErrorCode.VIDEO_PRIVATE,
                original_error=VideoPrivateError("private video"),
            ),
        ],
        ids=["not-found", "private", "invalid-id", "too-large", "processing", "router"],
    )
    @pytest.mark.asyncio
    async def test_non_retryable_error_blocks_retry(self, machine, storage, error) -> None:
        """Test a failure caused by a non-retryable error is never sent back to pending."""
        storage.add_video(id="video-1", status="transcribing")
        failed = await machine.mark_failed(
            "video-1", VideoStatus.TRANSCRIBING, "unusable input", error
        )

        assert failed.metadata.last_error.retryable is False
        assert failed.metadata.retry_count == 1

        with pytest.raises(RetryLimitExceededError) as exc_info:
            await machine.retry_failed_video("video-1")

        assert "non-retryable" in str(exc_info.value)
        assert storage.status_of("video-1") == VideoStatus.FAILED

    @pytest.mark.asyncio
    async def test_retryable_error_allows_retry(self, machine, storage) -> None:
        """Test a transient extractor failure still returns the video to pending."""
        storage.add_video(id="video-1", status="transcribing")
        failed = await machine.mark_failed(
            "video-1", VideoStatus.TRANSCRIBING, "slow down", RateLimitedError("429")
        )

        assert failed.metadata.last_error.retryable is True

        video = await machine.retry_failed_video("video-1")

        assert video.status == VideoStatus.PENDING

    @pytest.mark.asyncio
    async def test_retry_rejects_non_failed_video(self, machine, storage) -> None:
        """Test only failed videos can be retried."""
        storage.add_video(id="video-1", status="processing")

        with pytest.raises(StateTransitionError):
            await machine.retry_failed_video("video-1")

    @pytest.mark.asyncio
    async def test_advance_to_walks_each_edge(self, machine, storage) -> None:
        """Test advance_to moves forward one legal step at a time."""
        storage.add_video(id="video-1", status="processing")

        video = await machine.advance_to("video-1", VideoStatus.COMPLETED)

        assert video.status == VideoStatus.COMPLETED
        durations = storage.videos["video-1"]["metadata"]["stage_durations_seconds"]
        assert "embedding" in durations

    @pytest.mark.asyncio
    async def test_processing_stats_counts_stuck(self, machine, storage) -> None:
        """Test stats count videos per status and stuck videos."""
        old = (NOW - timedelta(minutes=90)).isoformat()
        storage.add_video(id="a", status="transcribing", updated_at=old)
        storage.add_video(id="b", status="completed", updated_at=old)
        storage.add_video(id="c", status="pending", updated_at=NOW.isoformat())

        stats = await machine.get_processing_stats(now=NOW)

        assert stats.total == 3
        assert stats.by_status["transcribing"] == 1
        assert stats.by_status["failed"] == 0
        assert stats.stuck == 1

    @pytest.mark.asyncio
    async def test_get_stuck_videos(self, machine, storage) -> None:
        """Test only timed stages past their timeout are returned."""
        storage.add_video(
            id="stuck", status="transcribing", updated_at=(NOW - timedelta(minutes=65)).isoformat()
        )
        storage.add_video(
            id="fresh", status="embedding", updated_at=(NOW - timedelta(minutes=5)).isoformat()
        )

        stuck = await machine.get_stuck_videos(now=NOW)

        assert [video.id for video in stuck] == ["stuck"]
