"""Usage and cost ledger writes for transcription and embeddings."""

from datetime import UTC, datetime

from src.utils.logging import get_logger

from .costs import credits_for_cost
from .schemas import EmbeddingBatchResult, TranscriptResult, UsageIncrement
from .storage_service import StorageService

logger = get_logger(__name__)


class CostLedger:
    """Sends per-creator, per-day usage increments to the ledger RPC.

    Aggregation and atomicity belong to the database function. Every
    increment carries an ``idempotency_key`` so a replayed stage can be
    recognized downstream. Ledger failures are logged and never fail the
    video being processed.
    """

    def __init__(self, storage: StorageService):
        self.storage = storage

    async def _send(self, increment: UsageIncrement) -> UsageIncrement | None:
        try:
            await self.storage.increment_usage_metrics(increment)
        except Exception as e:
            logger.exception(
                "usage_tracking_failed",
                creator_id=increment.creator_id,
                category=increment.metadata.get("category"),
                idempotency_key=increment.metadata.get("idempotency_key"),
                error_type=type(e).__name__,
            )
            return None

        logger.info(
            "usage_tracked",
            creator_id=increment.creator_id,
            category=increment.metadata.get("category"),
            transcription_minutes=increment.transcription_minutes,
            ai_credits_used=increment.ai_credits_used,
        )
        return increment

    async def record_transcription(
        self,
        creator_id: str | None,
        video_id: str,
        result: TranscriptResult,
        idempotency_key: str,
    ) -> UsageIncrement | None:
        """Record transcription minutes and cost for one video.

        Returns:
            The increment sent, or None if there is no creator or the write failed.
        """
        if not creator_id:
            logger.debug("usage_tracking_skipped", video_id=video_id, reason="no_creator")
            return None

        increment = UsageIncrement(
            creator_id=creator_id,
            date=datetime.now(UTC).date().isoformat(),
            transcription_minutes=round(result.duration_seconds / 60, 2),
            metadata={
                "category": "transcription",
                "video_id": video_id,
                "source_type": result.source_type.value,
                "transcript_method": result.transcript_method.value,
                "cost_usd": result.metadata.cost_usd,
                "idempotency_key": idempotency_key,
            },
        )
        return await self._send(increment)

    async def record_embeddings(
        self,
        creator_id: str | None,
        video_id: str,
        result: EmbeddingBatchResult,
        idempotency_key: str,
    ) -> UsageIncrement | None:
        """Record embedding tokens as AI credits (1 credit per $0.001, rounded up)."""
        if not creator_id:
            logger.debug("usage_tracking_skipped", video_id=video_id, reason="no_creator")
            return None

        increment = UsageIncrement(
            creator_id=creator_id,
            date=datetime.now(UTC).date().isoformat(),
            ai_credits_used=credits_for_cost(result.total_cost_usd),
            metadata={
                "category": "embeddings",
                "video_id": video_id,
                "model": result.model,
                "total_tokens": result.total_tokens,
                "chunks": result.chunks_processed,
                "cost_usd": result.total_cost_usd,
                "idempotency_key": idempotency_key,
            },
        )
        return await self._send(increment)
