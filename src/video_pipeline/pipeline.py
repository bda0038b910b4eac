"""Pipeline orchestrator: job handlers that move a video from pending to completed."""

import asyncio
from pathlib import PurePath
from typing import Any

from src.utils.logging import get_logger

from .chunking_service import (
    ChunkingOptions,
    chunk_transcript,
    get_chunking_stats,
    validate_chunks,
)
from .config import PipelineConfig, get_config
from .cost_ledger import CostLedger
from .embedding_service import EmbeddingService
from .errors import (
    EmbeddingError,
    ProcessingError,
    StateTransitionError,
    TranscriptRouterError,
)
from .jobs import (
    JobDispatcher,
    JobEvent,
    TranscriptionCompleted,
    TranscriptionRequested,
    idempotency_key,
)
from .rate_limiter import RequestRateLimiter
from .schemas import (
    PipelineResult,
    SourceType,
    StageOutcome,
    TranscriptResult,
    Video,
    VideoStatus,
)
from .state_machine import ProcessingStateMachine
from .storage_service import StorageService
from .transcript_router import TranscriptRouter

logger = get_logger(__name__)


class VideoProcessingPipeline:
    """Orchestrates transcription, chunking and embedding for stored videos.

    The work is split into two job handlers. ``handle_transcription_requested``
    takes a pending video through upload and transcription and emits
    ``TranscriptionCompleted``; ``handle_transcription_completed`` chunks,
    embeds and completes it. Handlers are safe to replay: each stage records
    an idempotency key on the video and a replay of an applied key is
    skipped. Every status change goes through the state machine, so a handler
    that loses a race gets a ``StateTransitionError`` and its result is
    dropped rather than merged.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        dispatcher: JobDispatcher | None = None,
    ):
        """Initialize pipeline with all required services.

        Args:
            config: Configuration object. If None, loads from environment.
            dispatcher: Where follow-up events go. Without one, follow-up
                handlers run inline in the same call.
        """
        self.config = config or get_config()
        self.storage_service = StorageService(self.config)
        self.state_machine = ProcessingStateMachine(self.storage_service)
        self.router = TranscriptRouter(self.config)
        self.rate_limiter = RequestRateLimiter(self.config.embedding_requests_per_minute)
        self.embedding_service = EmbeddingService(self.config, self.rate_limiter)
        self.cost_ledger = CostLedger(self.storage_service)
        self.dispatcher = dispatcher

        logger.info(
            "pipeline_initialized",
            max_concurrent_videos=self.config.max_concurrent_videos,
            embedding_model=self.config.embedding_model,
            dispatcher=type(dispatcher).__name__ if dispatcher else None,
        )

    # ==========================================================================
    # Job handlers
    # ==========================================================================

    async def handle_transcription_requested(
        self, event: TranscriptionRequested
    ) -> StageOutcome:
        """Transcribe a pending video and emit ``TranscriptionCompleted``."""
        outcome = await self._transcribe(event)
        if outcome.status == "completed":
            await self.emit(
                TranscriptionCompleted(video_id=event.video_id, creator_id=event.creator_id)
            )
        return outcome

    async def handle_transcription_completed(
        self, event: TranscriptionCompleted
    ) -> StageOutcome:
        """Chunk, embed and complete a video whose transcript is stored.

        Steps:
        1. Chunk the stored transcript and validate the chunks
        2. Replace any earlier chunks of the video
        3. processing -> embedding (already there when resuming)
        4. Embed the chunks and check every vector
        5. Re-check the status, then write the vectors
        6. Record the embedding cost
        7. embedding -> completed with embedding stats

        Args:
            event: The completed-transcription event.

        Returns:
            Outcome with status completed, skipped or failed.
        """
        video_id = event.video_id
        video = await self.storage_service.get_video(video_id)
        if video is None:
            logger.warning("video_not_found", video_id=video_id, job=event.name)
            return StageOutcome(video_id=video_id, status="skipped", error="Video not found")

        key = idempotency_key(video_id, VideoStatus.EMBEDDING, video.metadata.retry_count)
        if key in video.metadata.stage_keys:
            logger.info("stage_already_applied", video_id=video_id, idempotency_key=key)
            return StageOutcome(video_id=video_id, status="skipped", stage=video.status)

        if event.skip_if_exists and await self.storage_service.count_embedded_chunks(video_id):
            logger.info("embeddings_already_exist", video_id=video_id)
            return StageOutcome(video_id=video_id, status="skipped", stage=video.status)

        accepted = {VideoStatus.PROCESSING}
        if event.resume:
            accepted.add(VideoStatus.EMBEDDING)
        if video.status not in accepted:
            logger.info(
                "stage_skipped_unexpected_status",
                video_id=video_id,
                job=event.name,
                status=video.status.value,
            )
            return StageOutcome(video_id=video_id, status="skipped", stage=video.status)

        creator_id = event.creator_id or video.creator_id
        stage = video.status
        logger.info("embedding_stage_started", video_id=video_id, creator_id=creator_id)

        try:
            source = video.transcript_segments or video.transcript
            if not source:
                raise ProcessingError(
                    f"No transcript available for video {video_id}",
                    stage=stage,
                    video_id=video_id,
                    retryable=False,
                )

            chunks = chunk_transcript(source, ChunkingOptions.from_config(self.config))
            validation = validate_chunks(chunks)
            if not validation.valid:
                raise ProcessingError(
                    "; ".join(validation.warnings),
                    stage=stage,
                    video_id=video_id,
                )
            if validation.warnings:
                logger.warning(
                    "chunk_validation_warnings",
                    video_id=video_id,
                    warnings=validation.warnings,
                )
            chunking_stats = get_chunking_stats(chunks)
            logger.info("transcript_chunked", video_id=video_id, **chunking_stats.model_dump())

            stored = await self.storage_service.replace_chunks(video_id, chunks)

            if stage == VideoStatus.PROCESSING:
                await self.state_machine.update_status(video_id, VideoStatus.EMBEDDING)
                stage = VideoStatus.EMBEDDING

            result = await self.embedding_service.generate_embeddings(stored or chunks)
            invalid = [
                item.chunk_index
                for item in result.embeddings
                if not self.embedding_service.validate_embedding(item.embedding)
            ]
            if invalid:
                raise EmbeddingError(
                    f"Invalid embeddings for chunks {invalid} "
                    f"(expected {self.config.embedding_dimensions} dimensions)"
                )

            current = await self.storage_service.get_video(video_id)
            if current is None or current.status != VideoStatus.EMBEDDING:
                raise StateTransitionError(
                    f"Video {video_id} left the embedding stage while embeddings "
                    "were being generated",
                    current_state=current.status if current else None,
                    attempted_state=VideoStatus.COMPLETED,
                )

            await self.storage_service.update_chunk_embeddings(video_id, result.embeddings)
            await self.cost_ledger.record_embeddings(creator_id, video_id, result, key)

            embedding_stats: dict[str, Any] = {
                "chunks": len(chunks),
                "total_words": chunking_stats.total_words,
                "total_tokens": result.total_tokens,
                "total_cost_usd": result.total_cost_usd,
                "model": result.model,
                "processing_time_ms": result.processing_time_ms,
            }
            await self.state_machine.update_status(
                video_id,
                VideoStatus.COMPLETED,
                metadata_updates={
                    "embedding_stats": embedding_stats,
                    "stage_keys": [*current.metadata.stage_keys, key],
                },
            )

        except StateTransitionError as e:
            logger.warning(
                "stage_result_discarded",
                video_id=video_id,
                stage=stage.value,
                reason=str(e),
            )
            return StageOutcome(video_id=video_id, status="skipped", stage=stage, error=str(e))

        except Exception as e:
            logger.exception(
                "embedding_stage_failed",
                video_id=video_id,
                stage=stage.value,
                error_type=type(e).__name__,
            )
            await self._record_failure(video_id, stage, e)
            return StageOutcome(video_id=video_id, status="failed", stage=stage, error=str(e))

        logger.info(
            "video_processed",
            video_id=video_id,
            chunks=len(chunks),
            total_cost_usd=result.total_cost_usd,
        )
        return StageOutcome(
            video_id=video_id,
            status="completed",
            stage=VideoStatus.COMPLETED,
            chunks=len(chunks),
            cost_usd=result.total_cost_usd,
        )

    async def handle(self, event: JobEvent) -> StageOutcome:
        """Run the handler matching an event."""
        if isinstance(event, TranscriptionRequested):
            return await self.handle_transcription_requested(event)
        return await self.handle_transcription_completed(event)

    # ==========================================================================
    # Entry points
    # ==========================================================================

    async def process_video(self, video_id: str) -> StageOutcome:
        """Run every remaining stage for one video in this call.

        Pending videos are transcribed first; videos already in ``processing``
        go straight to chunking and embedding. Anything else is skipped.
        """
        video = await self.storage_service.get_video(video_id)
        if video is None:
            logger.warning("video_not_found", video_id=video_id)
            return StageOutcome(video_id=video_id, status="failed", error="Video not found")

        transcription_cost = 0.0
        if video.status == VideoStatus.PENDING:
            outcome = await self._transcribe(
                TranscriptionRequested(video_id=video_id, creator_id=video.creator_id)
            )
            if outcome.status != "completed":
                return outcome
            transcription_cost = outcome.cost_usd
        elif video.status != VideoStatus.PROCESSING:
            logger.info("video_skipped", video_id=video_id, status=video.status.value)
            return StageOutcome(video_id=video_id, status="skipped", stage=video.status)

        outcome = await self.handle_transcription_completed(
            TranscriptionCompleted(video_id=video_id, creator_id=video.creator_id)
        )
        return outcome.model_copy(
            update={"cost_usd": round(outcome.cost_usd + transcription_cost, 6)}
        )

    async def process_pending(self, creator_id: str | None = None) -> PipelineResult:
        """Process every pending video, several at a time.

        Videos run concurrently up to ``max_concurrent_videos``; the stages of
        one video always run in order.

        Returns:
            PipelineResult with statistics and any errors encountered.
        """
        videos = await self.state_machine.get_videos_by_status(VideoStatus.PENDING, creator_id)
        logger.info("pipeline_started", pending=len(videos), creator_id=creator_id)

        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_videos))

        async def run(video: Video) -> StageOutcome:
            async with semaphore:
                return await self.process_video(video.id)

        outcomes = await asyncio.gather(*(run(video) for video in videos))

        result = PipelineResult(total_videos=len(videos))
        for outcome in outcomes:
            if outcome.status == "completed":
                result.processed += 1
                result.chunks_created += outcome.chunks
            elif outcome.status == "skipped":
                result.skipped += 1
            else:
                result.failed += 1
                result.errors.append(f"{outcome.video_id}: {outcome.error or 'Unknown error'}")
            result.total_cost_usd += outcome.cost_usd
        result.total_cost_usd = round(result.total_cost_usd, 6)

        logger.info(
            "pipeline_completed",
            processed=result.processed,
            failed=result.failed,
            skipped=result.skipped,
            chunks_created=result.chunks_created,
            total_cost_usd=result.total_cost_usd,
        )
        return result

    async def request_transcription(self, video_id: str) -> Video:
        """Emit ``TranscriptionRequested`` for a pending video.

        Raises:
            StateTransitionError: If the video does not exist or is not pending.
        """
        video = await self.storage_service.get_video(video_id)
        if video is None or video.status != VideoStatus.PENDING:
            raise StateTransitionError(
                f"Video {video_id} is not pending",
                current_state=video.status if video else None,
                attempted_state=VideoStatus.UPLOADING,
            )
        await self.emit(TranscriptionRequested(video_id=video_id, creator_id=video.creator_id))
        return video

    async def retry_video(self, video_id: str) -> Video:
        """Send a failed video back to pending and request transcription again.

        Raises:
            StateTransitionError: If the video is not failed.
            RetryLimitExceededError: If the failed stage has no retries left.
        """
        video = await self.state_machine.retry_failed_video(video_id)
        await self.emit(TranscriptionRequested(video_id=video_id, creator_id=video.creator_id))
        return video

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _transcribe(self, event: TranscriptionRequested) -> StageOutcome:
        video_id = event.video_id
        video = await self.storage_service.get_video(video_id)
        if video is None:
            logger.warning("video_not_found", video_id=video_id, job=event.name)
            return StageOutcome(video_id=video_id, status="skipped", error="Video not found")

        key = idempotency_key(video_id, VideoStatus.TRANSCRIBING, video.metadata.retry_count)
        if key in video.metadata.stage_keys:
            logger.info("stage_already_applied", video_id=video_id, idempotency_key=key)
            return StageOutcome(video_id=video_id, status="skipped", stage=video.status)

        if video.status != VideoStatus.PENDING:
            logger.info(
                "stage_skipped_unexpected_status",
                video_id=video_id,
                job=event.name,
                status=video.status.value,
            )
            return StageOutcome(video_id=video_id, status="skipped", stage=video.status)

        creator_id = event.creator_id or video.creator_id
        stage = VideoStatus.PENDING
        logger.info(
            "transcription_stage_started",
            video_id=video_id,
            source_type=video.source_type.value,
            creator_id=creator_id,
        )

        try:
            video = await self.state_machine.update_status(video_id, VideoStatus.UPLOADING)
            stage = VideoStatus.UPLOADING

            media: bytes | None = None
            if video.source_type == SourceType.UPLOAD:
                media = await self._load_media(video, stage)

            video = await self.state_machine.update_status(video_id, VideoStatus.TRANSCRIBING)
            stage = VideoStatus.TRANSCRIBING

            result = await self._extract(video, creator_id, media, stage)

            current = await self.storage_service.get_video(video_id)
            stage_keys = current.metadata.stage_keys if current else video.metadata.stage_keys
            extra = result.metadata.model_extra or {}
            await self.state_machine.update_status(
                video_id,
                VideoStatus.PROCESSING,
                metadata_updates={
                    "transcript_method": result.transcript_method,
                    "transcript_cost_usd": result.metadata.cost_usd,
                    "transcript_language": extra.get("language"),
                    "stage_keys": [*stage_keys, key],
                },
                fields=self._transcript_fields(video, result),
            )
            stage = VideoStatus.PROCESSING

            await self.cost_ledger.record_transcription(creator_id, video_id, result, key)

        except StateTransitionError as e:
            logger.warning(
                "stage_result_discarded",
                video_id=video_id,
                stage=stage.value,
                reason=str(e),
            )
            return StageOutcome(video_id=video_id, status="skipped", stage=stage, error=str(e))

        except Exception as e:
            logger.exception(
                "transcription_stage_failed",
                video_id=video_id,
                stage=stage.value,
                error_type=type(e).__name__,
            )
            await self._record_failure(video_id, stage, e)
            return StageOutcome(video_id=video_id, status="failed", stage=stage, error=str(e))

        logger.info(
            "transcript_saved",
            video_id=video_id,
            method=result.transcript_method.value,
            duration_seconds=result.duration_seconds,
            cost_usd=result.metadata.cost_usd,
        )
        return StageOutcome(
            video_id=video_id,
            status="completed",
            stage=VideoStatus.PROCESSING,
            cost_usd=result.metadata.cost_usd,
        )

    async def _extract(
        self,
        video: Video,
        creator_id: str | None,
        media: bytes | None,
        stage: VideoStatus,
    ) -> TranscriptResult:
        try:
            return await self.router.extract_transcript_from_video(
                video, creator_id, media=media
            )
        except TranscriptRouterError as e:
            if not e.requires_paid_fallback or media is not None or not video.storage_path:
                raise
            logger.info(
                "paid_fallback_loading_media",
                video_id=video.id,
                source_type=video.source_type.value,
            )

        media = await self._load_media(video, stage)
        return await self.router.extract_transcript_from_video(video, creator_id, media=media)

    async def _load_media(self, video: Video, stage: VideoStatus) -> bytes:
        if not video.storage_path:
            raise ProcessingError(
                f"Video {video.id} has no stored media to transcribe",
                stage=stage,
                video_id=video.id,
                retryable=False,
            )
        return await self.storage_service.download_media(video.storage_path)

    @staticmethod
    def _transcript_fields(video: Video, result: TranscriptResult) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "transcript": result.transcript,
            "transcript_segments": [
                segment.model_dump() for segment in result.transcript_with_timestamps
            ],
            "duration_seconds": result.duration_seconds,
        }
        if not video.title and result.title:
            fields["title"] = result.title
        thumbnail = (result.metadata.model_extra or {}).get("thumbnail_url")
        if not video.thumbnail_url and thumbnail:
            fields["thumbnail_url"] = thumbnail
        if video.source_type == SourceType.UPLOAD and not video.title and video.storage_path:
            fields.setdefault("title", PurePath(video.storage_path).stem)
        return fields

    async def emit(self, event: JobEvent) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(event)
            return
        await self.handle(event)

    async def _record_failure(
        self, video_id: str, stage: VideoStatus, error: BaseException
    ) -> None:
        message = str(error) or type(error).__name__
        try:
            await self.state_machine.mark_failed(video_id, stage, message, error=error)
        except StateTransitionError as e:
            logger.warning(
                "failure_not_recorded",
                video_id=video_id,
                stage=stage.value,
                reason=str(e),
            )
