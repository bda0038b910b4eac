"""Processing state machine for the video lifecycle.

Owns every status write for a video. Transitions are validated against a
fixed graph and written conditionally on the status that was read, so two
workers can never both advance the same video: the loser gets a
``StateTransitionError`` and its result is discarded.
"""

from collections import deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from src.utils.logging import get_logger

from .errors import RetryLimitExceededError, StateTransitionError
from .schemas import (
    LastError,
    ProcessingMetadata,
    ProcessingStats,
    StageInfo,
    Video,
    VideoStatus,
)

if TYPE_CHECKING:
    from .storage_service import StorageService

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3

VALID_TRANSITIONS: dict[VideoStatus, frozenset[VideoStatus]] = {
    VideoStatus.PENDING: frozenset({VideoStatus.UPLOADING, VideoStatus.FAILED}),
    VideoStatus.UPLOADING: frozenset({VideoStatus.TRANSCRIBING, VideoStatus.FAILED}),
    VideoStatus.TRANSCRIBING: frozenset({VideoStatus.PROCESSING, VideoStatus.FAILED}),
    VideoStatus.PROCESSING: frozenset({VideoStatus.EMBEDDING, VideoStatus.FAILED}),
    VideoStatus.EMBEDDING: frozenset({VideoStatus.COMPLETED, VideoStatus.FAILED}),
    VideoStatus.COMPLETED: frozenset(),
    VideoStatus.FAILED: frozenset({VideoStatus.PENDING}),
}

STAGE_INFO: dict[VideoStatus, StageInfo] = {
    VideoStatus.PENDING: StageInfo(
        name=VideoStatus.PENDING, retryable=False, max_retries=0, timeout_minutes=0
    ),
    VideoStatus.UPLOADING: StageInfo(
        name=VideoStatus.UPLOADING, retryable=True, max_retries=3, timeout_minutes=30
    ),
    VideoStatus.TRANSCRIBING: StageInfo(
        name=VideoStatus.TRANSCRIBING, retryable=True, max_retries=3, timeout_minutes=60
    ),
    VideoStatus.PROCESSING: StageInfo(
        name=VideoStatus.PROCESSING, retryable=True, max_retries=3, timeout_minutes=15
    ),
    VideoStatus.EMBEDDING: StageInfo(
        name=VideoStatus.EMBEDDING, retryable=True, max_retries=3, timeout_minutes=30
    ),
    VideoStatus.COMPLETED: StageInfo(
        name=VideoStatus.COMPLETED, retryable=False, max_retries=0, timeout_minutes=0
    ),
    VideoStatus.FAILED: StageInfo(
        name=VideoStatus.FAILED, retryable=True, max_retries=0, timeout_minutes=0
    ),
}

# Stages that do work and therefore carry a wall-clock timeout
TIMED_STAGES = (
    VideoStatus.UPLOADING,
    VideoStatus.TRANSCRIBING,
    VideoStatus.PROCESSING,
    VideoStatus.EMBEDDING,
)

STAGE_PROGRESS: dict[VideoStatus, int] = {
    VideoStatus.PENDING: 0,
    VideoStatus.UPLOADING: 20,
    VideoStatus.TRANSCRIBING: 40,
    VideoStatus.PROCESSING: 60,
    VideoStatus.EMBEDDING: 80,
    VideoStatus.COMPLETED: 100,
    VideoStatus.FAILED: 0,
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def is_valid_transition(current: VideoStatus, target: VideoStatus) -> bool:
    """Return True iff ``target`` is in the allowed set of ``current``."""
    return target in VALID_TRANSITIONS.get(VideoStatus(current), frozenset())


def get_next_states(current: VideoStatus) -> list[VideoStatus]:
    return sorted(VALID_TRANSITIONS[VideoStatus(current)], key=lambda s: s.value)


def get_stage_info(status: VideoStatus) -> StageInfo:
    return STAGE_INFO[VideoStatus(status)]


def retry_ceiling(last_error: LastError | None) -> int:
    """Max retries for the stage that last failed (3 when no stage is recorded)."""
    if last_error is None:
        return DEFAULT_MAX_RETRIES
    return STAGE_INFO[last_error.stage].max_retries


def retry_refusal(metadata: ProcessingMetadata) -> str | None:
    """Why a failed video may not go back to pending, or None if it may."""
    last_error = metadata.last_error
    if last_error is not None and not last_error.retryable:
        return f"non-retryable {last_error.error_type} in stage {last_error.stage.value}"

    max_retries = retry_ceiling(last_error)
    if metadata.retry_count >= max_retries:
        stage = last_error.stage.value if last_error else VideoStatus.FAILED.value
        return f"exceeded {max_retries} retries for stage {stage}"
    return None


def is_terminal_state(
    status: VideoStatus, metadata: ProcessingMetadata | None = None
) -> bool:
    """Completed is always terminal; failed only when it cannot be retried.

    Without ``metadata`` only the stage table is consulted. With it, a failed
    video whose last error is non-retryable or whose retries are used up is
    terminal too.
    """
    status = VideoStatus(status)
    if status == VideoStatus.COMPLETED:
        return True
    if status != VideoStatus.FAILED:
        return False
    if not STAGE_INFO[status].retryable:
        return True
    return metadata is not None and retry_refusal(metadata) is not None


def is_retryable_state(status: VideoStatus) -> bool:
    return STAGE_INFO[VideoStatus(status)].retryable


def calculate_progress(status: VideoStatus) -> int:
    """Rough completion percentage for display purposes."""
    return STAGE_PROGRESS[VideoStatus(status)]


def get_estimated_time_remaining(status: VideoStatus) -> int:
    """Worst-case minutes left, summing the timeouts of the remaining stages.

    Args:
        status: Current status of the video.

    Returns:
        Minutes, or 0 for completed and failed videos.
    """
    status = VideoStatus(status)
    if status == VideoStatus.PENDING:
        remaining = TIMED_STAGES
    elif status in TIMED_STAGES:
        remaining = TIMED_STAGES[TIMED_STAGES.index(status) :]
    else:
        return 0

    return sum(STAGE_INFO[stage].timeout_minutes for stage in remaining)


def get_processing_duration(video: Video, now: datetime | None = None) -> float | None:
    """Seconds spent between the first upload and completion (or now)."""
    if video.processing_started_at is None:
        return None

    end = video.processing_completed_at or now or utcnow()
    return (as_utc(end) - as_utc(video.processing_started_at)).total_seconds()


def minutes_in_stage(video: Video, now: datetime | None = None) -> float:
    """Minutes since the video's row was last written."""
    reference = video.updated_at or video.created_at
    if reference is None:
        return 0.0
    return ((now or utcnow()) - as_utc(reference)).total_seconds() / 60


def is_stuck(video: Video, now: datetime | None = None) -> bool:
    """A video is stuck when it has sat in a timed stage past that stage's timeout."""
    if video.status not in TIMED_STAGES:
        return False
    timeout = STAGE_INFO[video.status].timeout_minutes
    return minutes_in_stage(video, now) > timeout


def forward_path(current: VideoStatus, target: VideoStatus) -> list[VideoStatus]:
    """Shortest sequence of legal, non-failure transitions from current to target.

    Raises:
        StateTransitionError: If target cannot be reached without failing.
    """
    current, target = VideoStatus(current), VideoStatus(target)
    if current == target:
        return []

    queue: deque[tuple[VideoStatus, list[VideoStatus]]] = deque([(current, [])])
    seen = {current}
    while queue:
        state, path = queue.popleft()
        for nxt in get_next_states(state):
            if nxt == VideoStatus.FAILED or nxt in seen:
                continue
            if nxt == target:
                return [*path, nxt]
            seen.add(nxt)
            queue.append((nxt, [*path, nxt]))

    raise StateTransitionError(
        f"No forward path from {current.value} to {target.value}",
        current_state=current,
        attempted_state=target,
    )


def _record_stage_change(
    metadata: ProcessingMetadata,
    current: VideoStatus,
    new_status: VideoStatus,
    now: datetime,
) -> None:
    started = metadata.stage_started_at.get(current.value)
    if started is not None:
        metadata.stage_durations_seconds[current.value] = round(
            (now - as_utc(started)).total_seconds(), 3
        )
    metadata.stage_started_at[new_status.value] = now


class ProcessingStateMachine:
    """Validated, conditional status writes for videos.

    All reads and writes go through the storage service. Every write is
    conditioned on the status observed just before it, so a concurrent
    transition makes the slower writer fail loudly instead of merging.
    """

    def __init__(self, storage: "StorageService"):
        self.storage = storage

    async def _get_video(self, video_id: str, attempted: VideoStatus) -> Video:
        video = await self.storage.get_video(video_id)
        if video is None:
            raise StateTransitionError(
                f"Video {video_id} not found",
                current_state=None,
                attempted_state=attempted,
            )
        return video

    async def _write(
        self,
        video: Video,
        new_status: VideoStatus,
        data: dict[str, Any],
    ) -> Video:
        updated = await self.storage.update_video(
            video.id, data, expected_status=video.status
        )
        if not updated:
            raise StateTransitionError(
                f"Video {video.id} changed status concurrently; "
                f"expected {video.status.value}",
                current_state=video.status,
                attempted_state=new_status,
            )
        return Video.model_validate({**video.model_dump(mode="json"), **data})

    async def update_status(
        self,
        video_id: str,
        new_status: VideoStatus,
        error_message: str | None = None,
        metadata_updates: dict[str, Any] | None = None,
        fields: dict[str, Any] | None = None,
    ) -> Video:
        """Move a video to a new status.

        Args:
            video_id: Video to update.
            new_status: Target status; must be reachable in one legal step.
            error_message: Stored as-is (``None`` clears the column).
            metadata_updates: Attribute updates applied to ``ProcessingMetadata``.
            fields: Extra JSON-ready columns written in the same update.

        Returns:
            The video as written.

        Raises:
            StateTransitionError: If the transition is illegal or the video's
                status changed between read and write.
        """
        new_status = VideoStatus(new_status)
        video = await self._get_video(video_id, new_status)
        current = video.status

        if not is_valid_transition(current, new_status):
            logger.warning(
                "invalid_status_transition",
                video_id=video_id,
                current=current.value,
                attempted=new_status.value,
            )
            raise StateTransitionError(
                f"Invalid transition from {current.value} to {new_status.value}",
                current_state=current,
                attempted_state=new_status,
            )

        now = utcnow()
        metadata = video.metadata.model_copy(deep=True)
        _record_stage_change(metadata, current, new_status, now)
        for key, value in (metadata_updates or {}).items():
            setattr(metadata, key, value)

        data: dict[str, Any] = {
            "status": new_status.value,
            "error_message": error_message,
            "updated_at": now.isoformat(),
            "metadata": metadata.to_storage(),
        }
        if new_status == VideoStatus.UPLOADING and video.processing_started_at is None:
            data["processing_started_at"] = now.isoformat()
        if new_status == VideoStatus.COMPLETED:
            data["processing_completed_at"] = now.isoformat()
        if fields:
            data.update(fields)

        written = await self._write(video, new_status, data)
        logger.info(
            "video_status_updated",
            video_id=video_id,
            previous=current.value,
            status=new_status.value,
        )
        return written

    async def mark_failed(
        self,
        video_id: str,
        stage: VideoStatus,
        message: str,
        error: BaseException | None = None,
    ) -> Video:
        """Divert a video to ``failed`` and record a structured last error.

        Raises:
            StateTransitionError: If ``stage`` (or the stored status) may not
                move to failed.
        """
        stage = VideoStatus(stage)
        if not is_valid_transition(stage, VideoStatus.FAILED):
            raise StateTransitionError(
                f"Stage {stage.value} cannot transition to failed",
                current_state=stage,
                attempted_state=VideoStatus.FAILED,
            )

        video = await self._get_video(video_id, VideoStatus.FAILED)
        if not is_valid_transition(video.status, VideoStatus.FAILED):
            raise StateTransitionError(
                f"Video {video_id} is {video.status.value} and cannot be failed",
                current_state=video.status,
                attempted_state=VideoStatus.FAILED,
            )

        now = utcnow()
        metadata = video.metadata.model_copy(deep=True)
        _record_stage_change(metadata, video.status, VideoStatus.FAILED, now)
        metadata.retry_count += 1
        metadata.last_error = LastError(
            stage=stage,
            message=message,
            timestamp=now,
            error_type=type(error).__name__ if error else "ProcessingError",
            retryable=getattr(error, "retryable", True),
        )

        data = {
            "status": VideoStatus.FAILED.value,
            "error_message": message,
            "updated_at": now.isoformat(),
            "metadata": metadata.to_storage(),
        }
        written = await self._write(video, VideoStatus.FAILED, data)
        logger.error(
            "video_marked_failed",
            video_id=video_id,
            stage=stage.value,
            retry_count=metadata.retry_count,
            error=message,
        )
        return written

    async def retry_failed_video(self, video_id: str) -> Video:
        """Send a failed video back to ``pending`` if its stage has retries left.

        Raises:
            StateTransitionError: If the video is not failed.
            RetryLimitExceededError: If ``retry_count`` has reached the stage's
                ceiling. The video is left untouched.
        """
        video = await self._get_video(video_id, VideoStatus.PENDING)
        if video.status != VideoStatus.FAILED:
            raise StateTransitionError(
                f"Only failed videos can be retried (video is {video.status.value})",
                current_state=video.status,
                attempted_state=VideoStatus.PENDING,
            )

        last_error = video.metadata.last_error
        stage = last_error.stage if last_error else VideoStatus.FAILED
        refusal = retry_refusal(video.metadata)

        if refusal is not None:
            logger.warning(
                "retry_refused",
                video_id=video_id,
                stage=stage.value,
                retry_count=video.metadata.retry_count,
                max_retries=retry_ceiling(last_error),
                reason=refusal,
            )
            raise RetryLimitExceededError(
                f"Video {video_id} {refusal}",
                stage=stage,
                video_id=video_id,
            )

        written = await self.update_status(
            video_id,
            VideoStatus.PENDING,
            error_message=None,
            metadata_updates={"retried_at": utcnow()},
        )
        logger.info(
            "video_retry_scheduled",
            video_id=video_id,
            retry_count=video.metadata.retry_count,
        )
        return written

    async def advance_to(self, video_id: str, target: VideoStatus) -> Video:
        """Walk a video forward one legal step at a time until it reaches target."""
        video = await self._get_video(video_id, VideoStatus(target))
        for step in forward_path(video.status, target):
            video = await self.update_status(video_id, step)
        return video

    async def get_videos_by_status(
        self, status: VideoStatus, creator_id: str | None = None
    ) -> list[Video]:
        return await self.storage.list_videos_by_status([VideoStatus(status)], creator_id)

    async def get_processing_stats(
        self, creator_id: str | None = None, now: datetime | None = None
    ) -> ProcessingStats:
        """Count videos per status, plus how many are currently stuck."""
        videos = await self.storage.list_videos_by_status(list(VideoStatus), creator_id)
        stats = ProcessingStats(
            total=len(videos),
            by_status={status.value: 0 for status in VideoStatus},
        )
        for video in videos:
            stats.by_status[video.status.value] += 1
            if is_stuck(video, now):
                stats.stuck += 1
        return stats

    async def get_stuck_videos(
        self, now: datetime | None = None, creator_id: str | None = None
    ) -> list[Video]:
        """Videos sitting in a timed stage longer than its timeout."""
        now = now or utcnow()
        candidates = await self.storage.list_videos_by_status(
            list(TIMED_STAGES), creator_id
        )
        stuck = [video for video in candidates if is_stuck(video, now)]
        if stuck:
            logger.warning(
                "stuck_videos_detected",
                count=len(stuck),
                video_ids=[video.id for video in stuck],
            )
        return stuck
