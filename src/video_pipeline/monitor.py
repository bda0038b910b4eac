"""Stuck-video detection, diagnosis and recovery."""

import math
from datetime import datetime, timedelta

from pydantic import BaseModel

from src.utils.logging import get_logger

from .errors import StateTransitionError
from .jobs import TranscriptionCompleted
from .pipeline import VideoProcessingPipeline
from .schemas import (
    RecoveryAction,
    RecoveryOutcome,
    RecoveryReport,
    Video,
    VideoDiagnostics,
    VideoStatus,
)
from .state_machine import (
    STAGE_INFO,
    TIMED_STAGES,
    as_utc,
    is_stuck,
    minutes_in_stage,
    utcnow,
)

logger = get_logger(__name__)

NO_TRANSCRIPT_MESSAGE = "No viable recovery action (missing transcript)"


class RecoveryOptions(BaseModel):
    """Controls for one recovery sweep.

    Attributes:
        force: Ignore the attempt ceiling and the minimum interval.
        video_ids: Recover these videos instead of every stuck one.
        dry_run: Report the planned actions without changing anything.
    """

    force: bool = False
    video_ids: list[str] | None = None
    dry_run: bool = False


def determine_recovery_action(diagnostics: VideoDiagnostics) -> RecoveryAction:
    """Pick the recovery for a stuck video from what it already has.

    No transcript means there is nothing to resume, so the video fails.
    Missing or partial chunk embeddings are regenerated. A video that has
    everything is only missing its final status write.
    """
    if not diagnostics.has_transcript:
        return RecoveryAction.MARK_FAILED
    if diagnostics.chunk_count == 0:
        return RecoveryAction.RETRY_EMBEDDINGS
    if diagnostics.embedded_chunk_count < diagnostics.chunk_count:
        return RecoveryAction.RETRY_EMBEDDINGS
    return RecoveryAction.FIX_STATUS


class StuckVideoMonitor:
    """Finds videos that exceeded their stage timeout and recovers them.

    Recovery is bounded: each video gets at most ``max_recovery_attempts``
    automatic recoveries, spaced at least ``recovery_min_interval_minutes``
    apart, unless the sweep is forced. Attempts are stamped on the video's
    processing metadata before the action runs.
    """

    def __init__(self, pipeline: VideoProcessingPipeline):
        self.pipeline = pipeline
        self.config = pipeline.config
        self.storage = pipeline.storage_service
        self.state_machine = pipeline.state_machine

    async def get_stuck_videos(
        self, now: datetime | None = None, creator_id: str | None = None
    ) -> list[Video]:
        return await self.state_machine.get_stuck_videos(now, creator_id)

    async def _diagnose(self, video: Video, now: datetime) -> VideoDiagnostics:
        chunk_count = await self.storage.count_chunks(video.id)
        embedded = await self.storage.count_embedded_chunks(video.id) if chunk_count else 0

        diagnostics = VideoDiagnostics(
            video_id=video.id,
            status=video.status,
            is_stuck=is_stuck(video, now),
            minutes_in_stage=round(minutes_in_stage(video, now), 1),
            timeout_minutes=STAGE_INFO[video.status].timeout_minutes,
            has_transcript=bool(video.transcript and video.transcript.strip()),
            chunk_count=chunk_count,
            embedded_chunk_count=embedded,
            last_error=video.metadata.last_error,
            recovery_attempts=video.metadata.recovery_attempts,
        )
        diagnostics.recommended_action = determine_recovery_action(diagnostics)
        return diagnostics

    async def diagnose_video(
        self, video_id: str, now: datetime | None = None
    ) -> VideoDiagnostics | None:
        """Inspect one video.

        Returns:
            Diagnostics with a recommended action, or None if the video does
            not exist.
        """
        video = await self.storage.get_video(video_id)
        if video is None:
            return None
        return await self._diagnose(video, now or utcnow())

    async def _load_targets(
        self, options: RecoveryOptions, now: datetime
    ) -> list[Video]:
        if not options.video_ids:
            return await self.get_stuck_videos(now)

        videos = []
        for video_id in options.video_ids:
            video = await self.storage.get_video(video_id)
            if video is not None:
                videos.append(video)
        return videos

    def _gate(self, video: Video, options: RecoveryOptions, now: datetime) -> str | None:
        """Reason to leave a video alone this sweep, if any."""
        if video.status not in TIMED_STAGES:
            return f"Video is {video.status.value}, not in a processing stage"
        if options.force:
            return None

        attempts = video.metadata.recovery_attempts
        if attempts >= self.config.max_recovery_attempts:
            return (
                f"Max recovery attempts ({self.config.max_recovery_attempts}) reached. "
                "Use force to override."
            )

        last = video.metadata.last_recovery_attempt
        interval = timedelta(minutes=self.config.recovery_min_interval_minutes)
        if last is not None and now - as_utc(last) < interval:
            remaining = math.ceil((interval - (now - as_utc(last))).total_seconds() / 60)
            return f"Rate limited: retry in {remaining} minutes. Use force to override."
        return None

    async def _stamp_attempt(
        self, video: Video, action: RecoveryAction, now: datetime
    ) -> Video:
        metadata = video.metadata.model_copy(deep=True)
        metadata.recovery_attempts += 1
        metadata.last_recovery_attempt = now
        metadata.last_recovery_action = action

        written = await self.storage.update_video(
            video.id,
            {"metadata": metadata.to_storage()},
            expected_status=video.status,
        )
        if not written:
            raise StateTransitionError(
                f"Video {video.id} changed status during recovery",
                current_state=video.status,
                attempted_state=video.status,
            )
        return video.model_copy(update={"metadata": metadata})

    async def _execute(self, video: Video, action: RecoveryAction) -> None:
        if action == RecoveryAction.MARK_FAILED:
            await self.state_machine.mark_failed(
                video.id, video.status, NO_TRANSCRIPT_MESSAGE
            )
            return

        if action == RecoveryAction.FIX_STATUS:
            await self.state_machine.advance_to(video.id, VideoStatus.COMPLETED)
            return

        # Embedding work starts from "processing"; earlier stages that already
        # hold a transcript are walked forward to it
        if video.status in (VideoStatus.UPLOADING, VideoStatus.TRANSCRIBING):
            await self.state_machine.advance_to(video.id, VideoStatus.PROCESSING)
        await self.pipeline.emit(
            TranscriptionCompleted(
                video_id=video.id,
                creator_id=video.creator_id,
                skip_if_exists=False,
                resume=True,
            )
        )

    async def recover_stuck_videos(
        self,
        now: datetime | None = None,
        options: RecoveryOptions | None = None,
    ) -> RecoveryReport:
        """Run one recovery sweep.

        Args:
            now: Reference time for stuck detection and rate limiting.
            options: Force, dry-run and explicit video selection.

        Returns:
            Per-video outcomes and totals.
        """
        now = now or utcnow()
        options = options or RecoveryOptions()
        videos = await self._load_targets(options, now)
        report = RecoveryReport(checked=len(videos), dry_run=options.dry_run)

        logger.info(
            "recovery_started",
            count=len(videos),
            force=options.force,
            dry_run=options.dry_run,
        )

        for video in videos:
            outcome = await self._recover_one(video, options, now)
            report.results.append(outcome)
            if outcome.status == "recovered":
                report.recovered += 1
            elif outcome.status in ("failed", "error"):
                report.failed += 1
            else:
                report.skipped += 1

        report.errors = [
            f"{outcome.video_id}: {outcome.reason}"
            for outcome in report.results
            if outcome.status == "error"
        ]
        logger.info(
            "recovery_completed",
            checked=report.checked,
            recovered=report.recovered,
            failed=report.failed,
            skipped=report.skipped,
            dry_run=report.dry_run,
        )
        return report

    async def _recover_one(
        self, video: Video, options: RecoveryOptions, now: datetime
    ) -> RecoveryOutcome:
        attempts = video.metadata.recovery_attempts
        reason = self._gate(video, options, now)
        if reason is not None:
            logger.info("recovery_skipped", video_id=video.id, reason=reason)
            return RecoveryOutcome(
                video_id=video.id,
                status="skipped",
                reason=reason,
                recovery_attempts=attempts,
            )

        try:
            diagnostics = await self._diagnose(video, now)
            action = diagnostics.recommended_action

            if options.dry_run:
                return RecoveryOutcome(
                    video_id=video.id,
                    status="planned",
                    reason=f"Would trigger: {action.value}",
                    action=action,
                    recovery_attempts=attempts,
                )

            video = await self._stamp_attempt(video, action, now)
            await self._execute(video, action)

        except StateTransitionError as e:
            logger.warning("recovery_skipped", video_id=video.id, reason=str(e))
            return RecoveryOutcome(
                video_id=video.id,
                status="skipped",
                reason=str(e),
                recovery_attempts=attempts,
            )

        except Exception as e:
            logger.exception(
                "recovery_failed",
                video_id=video.id,
                error_type=type(e).__name__,
            )
            return RecoveryOutcome(
                video_id=video.id,
                status="error",
                reason=str(e),
                recovery_attempts=attempts,
            )

        logger.info(
            "recovery_action_triggered",
            video_id=video.id,
            action=action.value,
            attempt=video.metadata.recovery_attempts,
            forced=options.force,
        )
        if action == RecoveryAction.MARK_FAILED:
            status, reason = "failed", NO_TRANSCRIPT_MESSAGE
        else:
            status, reason = "recovered", "Recovery action triggered"
        return RecoveryOutcome(
            video_id=video.id,
            status=status,
            reason=reason,
            action=action,
            recovery_attempts=video.metadata.recovery_attempts,
        )
