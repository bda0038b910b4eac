"""Storage service for videos, transcript chunks and usage in Supabase."""

from typing import Any

from supabase import Client

from src.utils.clients import create_supabase_client
from src.utils.logging import get_logger

from .config import PipelineConfig
from .schemas import (
    ChunkEmbedding,
    ChunkMetadata,
    TranscriptChunk,
    UsageIncrement,
    Video,
    VideoStatus,
)

logger = get_logger(__name__)

VIDEOS_TABLE = "videos"
CHUNKS_TABLE = "video_chunks"
SEARCH_FUNCTION = "search_video_chunks"
USAGE_FUNCTION = "increment_usage_metrics"
INDEX_STATS_VIEW = "vector_index_stats"


def format_vector(embedding: list[float]) -> str:
    """Render an embedding in pgvector's text format ('[x,y,z]', no spaces)."""
    return f"[{','.join(str(x) for x in embedding)}]"


def parse_vector(value: Any) -> list[float] | None:
    """Accept an embedding column value as returned by PostgREST."""
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip().strip("[]")
        return [float(x) for x in stripped.split(",")] if stripped else []
    return [float(x) for x in value]


def _chunk_from_row(row: dict[str, Any]) -> TranscriptChunk:
    return TranscriptChunk(
        id=str(row["id"]) if row.get("id") is not None else None,
        chunk_index=row["chunk_index"],
        chunk_text=row["chunk_text"],
        start_time_seconds=row.get("start_time_seconds") or 0.0,
        end_time_seconds=row.get("end_time_seconds") or 0.0,
        word_count=row.get("word_count") or 0,
        metadata=ChunkMetadata.model_validate(row.get("metadata") or {}),
    )


class StorageService:
    """Service for reading and writing pipeline state in Supabase.

    This service owns every table access the pipeline makes: video records,
    the ``video_chunks`` table with its embedding column, the similarity
    search RPC, the media bucket for direct uploads and the usage-ledger RPC.
    Status writes accept an expected status so callers get compare-and-set
    semantics on the ``videos`` row.
    """

    def __init__(self, config: PipelineConfig):
        """Initialize storage service with configuration.

        Args:
            config: Configuration object with Supabase credentials.
        """
        self.config = config
        self.client: Client = create_supabase_client(config)
        logger.info(
            "storage_service_initialized",
            supabase_url=config.supabase_url,
        )

    async def get_video(self, video_id: str) -> Video | None:
        """Fetch a single video record.

        Args:
            video_id: Video primary key.

        Returns:
            The video, or None if no row exists.

        Raises:
            Exception: If the query fails.
        """
        try:
            response = (
                self.client.table(VIDEOS_TABLE).select("*").eq("id", video_id).execute()
            )
            if not response.data:
                logger.debug("video_not_found", video_id=video_id)
                return None
            return Video.model_validate(response.data[0])

        except Exception as e:
            logger.exception(
                "video_fetch_failed",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise

    async def update_video(
        self,
        video_id: str,
        data: dict[str, Any],
        expected_status: VideoStatus | None = None,
    ) -> bool:
        """Update columns of a video row.

        Args:
            video_id: Video primary key.
            data: JSON-ready column values.
            expected_status: When given, the update only applies while the row
                still holds this status.

        Returns:
            True if a row was updated, False if the condition did not match.

        Raises:
            Exception: If the database operation fails.
        """
        try:
            query = self.client.table(VIDEOS_TABLE).update(data).eq("id", video_id)
            if expected_status is not None:
                query = query.eq("status", VideoStatus(expected_status).value)
            response = query.execute()

            updated = bool(response.data)
            logger.debug(
                "video_updated",
                video_id=video_id,
                fields=sorted(data),
                expected_status=expected_status.value if expected_status else None,
                updated=updated,
            )
            return updated

        except Exception as e:
            logger.exception(
                "video_update_failed",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise

    async def list_videos_by_status(
        self,
        statuses: list[VideoStatus],
        creator_id: str | None = None,
    ) -> list[Video]:
        """List videos whose status is one of ``statuses``."""
        try:
            query = (
                self.client.table(VIDEOS_TABLE)
                .select("*")
                .in_("status", [VideoStatus(s).value for s in statuses])
            )
            if creator_id:
                query = query.eq("creator_id", creator_id)
            response = query.order("updated_at").execute()
            return [Video.model_validate(row) for row in response.data or []]

        except Exception as e:
            logger.exception(
                "video_list_failed",
                statuses=[VideoStatus(s).value for s in statuses],
                error_type=type(e).__name__,
            )
            raise

    async def get_videos_by_ids(self, video_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Fetch display fields for a set of videos, keyed by id."""
        if not video_ids:
            return {}
        response = (
            self.client.table(VIDEOS_TABLE)
            .select("id, title, url, thumbnail_url, creator_id")
            .in_("id", video_ids)
            .execute()
        )
        return {row["id"]: row for row in response.data or []}

    async def replace_chunks(
        self, video_id: str, chunks: list[TranscriptChunk]
    ) -> list[TranscriptChunk]:
        """Replace every chunk of a video with a freshly chunked set.

        Existing rows are deleted first, so re-running the stage overwrites
        earlier partial output instead of appending to it.

        Args:
            video_id: Owning video.
            chunks: New chunks, without embeddings.

        Returns:
            The inserted chunks with their database ids.

        Raises:
            Exception: If either database operation fails.
        """
        try:
            self.client.table(CHUNKS_TABLE).delete().eq("video_id", video_id).execute()

            if not chunks:
                return []

            rows = [
                {
                    "video_id": video_id,
                    "chunk_index": chunk.chunk_index,
                    "chunk_text": chunk.chunk_text,
                    "start_time_seconds": chunk.start_time_seconds,
                    "end_time_seconds": chunk.end_time_seconds,
                    "word_count": chunk.word_count,
                    "metadata": chunk.metadata.model_dump(),
                }
                for chunk in chunks
            ]
            response = self.client.table(CHUNKS_TABLE).insert(rows).execute()
            inserted = [_chunk_from_row(row) for row in response.data or []]

            logger.info("chunks_saved", video_id=video_id, count=len(inserted))
            return sorted(inserted, key=lambda c: c.chunk_index)

        except Exception as e:
            logger.exception(
                "chunks_save_failed",
                video_id=video_id,
                count=len(chunks),
                error_type=type(e).__name__,
            )
            raise

    async def get_chunks(self, video_id: str) -> list[TranscriptChunk]:
        response = (
            self.client.table(CHUNKS_TABLE)
            .select(
                "id, chunk_index, chunk_text, start_time_seconds, "
                "end_time_seconds, word_count, metadata"
            )
            .eq("video_id", video_id)
            .order("chunk_index")
            .execute()
        )
        return [_chunk_from_row(row) for row in response.data or []]

    async def update_chunk_embeddings(
        self, video_id: str, embeddings: list[ChunkEmbedding]
    ) -> int:
        """Attach embeddings to existing chunk rows, matched by chunk index.

        Returns:
            Number of chunk rows updated.

        Raises:
            Exception: If an update fails.
        """
        updated = 0
        try:
            for item in embeddings:
                response = (
                    self.client.table(CHUNKS_TABLE)
                    .update({"embedding": format_vector(item.embedding)})
                    .eq("video_id", video_id)
                    .eq("chunk_index", item.chunk_index)
                    .execute()
                )
                updated += len(response.data or [])

            logger.info(
                "chunk_embeddings_saved",
                video_id=video_id,
                requested=len(embeddings),
                updated=updated,
            )
            return updated

        except Exception as e:
            logger.exception(
                "chunk_embeddings_save_failed",
                video_id=video_id,
                updated=updated,
                error_type=type(e).__name__,
            )
            raise

    async def count_chunks(self, video_id: str) -> int:
        response = (
            self.client.table(CHUNKS_TABLE)
            .select("id", count="exact")
            .eq("video_id", video_id)
            .execute()
        )
        return response.count or 0

    async def count_embedded_chunks(self, video_id: str) -> int:
        response = (
            self.client.table(CHUNKS_TABLE)
            .select("id", count="exact")
            .eq("video_id", video_id)
            .not_.is_("embedding", "null")
            .execute()
        )
        return response.count or 0

    async def get_chunk(self, chunk_id: str) -> dict[str, Any] | None:
        """Fetch one chunk row including its embedding."""
        response = (
            self.client.table(CHUNKS_TABLE)
            .select("id, video_id, chunk_index, chunk_text, embedding")
            .eq("id", chunk_id)
            .execute()
        )
        if not response.data:
            return None
        row = dict(response.data[0])
        row["embedding"] = parse_vector(row.get("embedding"))
        return row

    async def search_chunks(
        self,
        query_embedding: list[float],
        match_count: int = 5,
        similarity_threshold: float = 0.7,
        filter_video_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Search for similar chunks using vector similarity.

        Calls the ``search_video_chunks`` RPC, which ranks chunks by cosine
        similarity and applies the threshold and optional video filter.

        Args:
            query_embedding: Query embedding vector.
            match_count: Maximum number of results.
            similarity_threshold: Minimum cosine similarity.
            filter_video_ids: Restrict results to these videos (default: all).

        Returns:
            Ranked rows with chunk_id, video_id, chunk_text, timing and similarity.

        Raises:
            Exception: If search operation fails.
        """
        try:
            response = self.client.rpc(
                SEARCH_FUNCTION,
                {
                    "query_embedding": query_embedding,
                    "match_count": match_count,
                    "similarity_threshold": similarity_threshold,
                    "filter_video_ids": filter_video_ids,
                },
            ).execute()

            results: list[dict[str, Any]] = response.data or []
            logger.info(
                "vector_search_completed",
                results=len(results),
                match_count=match_count,
            )
            return results

        except Exception as e:
            logger.exception(
                "vector_search_failed",
                error_type=type(e).__name__,
            )
            raise

    async def get_index_stats(self) -> list[dict[str, Any]]:
        response = self.client.table(INDEX_STATS_VIEW).select("*").execute()
        return response.data or []

    async def download_media(self, storage_path: str) -> bytes:
        """Download an uploaded media file from the configured bucket.

        Raises:
            Exception: If the object cannot be downloaded.
        """
        try:
            data = self.client.storage.from_(self.config.media_bucket).download(
                storage_path
            )
            logger.info(
                "media_downloaded",
                storage_path=storage_path,
                size_bytes=len(data),
            )
            return data

        except Exception as e:
            logger.exception(
                "media_download_failed",
                storage_path=storage_path,
                error_type=type(e).__name__,
            )
            raise

    async def increment_usage_metrics(self, increment: UsageIncrement) -> None:
        """Send one increment to the usage-ledger RPC.

        Raises:
            Exception: If the RPC fails.
        """
        params: dict[str, Any] = {
            "p_creator_id": increment.creator_id,
            "p_date": increment.date,
            "p_metadata": increment.metadata,
        }
        if increment.transcription_minutes is not None:
            params["p_transcription_minutes"] = increment.transcription_minutes
        if increment.ai_credits_used is not None:
            params["p_ai_credits_used"] = increment.ai_credits_used

        try:
            self.client.rpc(USAGE_FUNCTION, params).execute()
        except Exception as e:
            logger.exception(
                "usage_increment_failed",
                creator_id=increment.creator_id,
                error_type=type(e).__name__,
            )
            raise
