"""Similarity search over embedded transcript chunks and RAG context assembly."""

from typing import Any

from pydantic import BaseModel

from src.utils.logging import get_logger

from .config import PipelineConfig
from .embedding_service import EmbeddingService
from .errors import VectorSearchError
from .schemas import VectorSearchResult
from .storage_service import StorageService

logger = get_logger(__name__)


class SearchOptions(BaseModel):
    """Ranking limits for a similarity search."""

    match_count: int = 5
    similarity_threshold: float = 0.7
    filter_video_ids: list[str] | None = None


# ==============================================================================
# Formatting helpers
# ==============================================================================


def format_timestamp(seconds: float) -> str:
    """Format seconds as MM:SS or HH:MM:SS.

    Examples:
        >>> format_timestamp(125)
        "02:05"
        >>> format_timestamp(3725)
        "01:02:05"
    """
    total_seconds = int(max(seconds, 0))
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    secs = total_seconds % 60

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def build_video_url_with_timestamp(video_url: str, seconds: float) -> str:
    """Deep-link a video URL to a start time.

    YouTube links get a ``t`` query parameter, Vimeo a ``#t=Ns`` fragment,
    everything else a ``#t=N`` media fragment.

    Examples:
        >>> build_video_url_with_timestamp("https://youtube.com/watch?v=abc", 90)
        "https://youtube.com/watch?v=abc&t=90"
    """
    start = int(max(seconds, 0))
    lowered = video_url.lower()

    if "youtube.com" in lowered or "youtu.be" in lowered:
        separator = "&" if "?" in video_url else "?"
        return f"{video_url}{separator}t={start}"
    if "vimeo.com" in lowered:
        return f"{video_url}#t={start}s"
    return f"{video_url}#t={start}"


def format_result_for_rag(result: VectorSearchResult) -> str:
    """Single-line citation: ``[Title @ mm:ss] chunk text``."""
    timestamp = format_timestamp(result.start_time_seconds)
    text = " ".join(result.chunk_text.split())
    return f"[{result.video_title} @ {timestamp}] {text}"


def build_rag_context(results: list[VectorSearchResult], max_chunks: int = 5) -> str:
    """Assemble the top results into one context block for answer generation."""
    sections = []
    for i, result in enumerate(results[:max_chunks], 1):
        timestamp = format_timestamp(result.start_time_seconds)
        sections.append(
            f"## Source {i}: {result.video_title} ({timestamp})\n\n{result.chunk_text.strip()}"
        )
    return "\n\n---\n\n".join(sections)


# ==============================================================================
# Search service
# ==============================================================================


class VectorSearchService:
    """Answers natural-language queries against the stored chunk embeddings.

    Queries are embedded with the same model used for chunks, then ranked by
    the database similarity function. Results are re-checked client side so
    every returned result meets the threshold and the count never exceeds
    ``match_count``.
    """

    def __init__(
        self,
        config: PipelineConfig,
        storage: StorageService,
        embedding_service: EmbeddingService,
    ):
        self.config = config
        self.storage = storage
        self.embedding_service = embedding_service

    def default_options(self) -> SearchOptions:
        return SearchOptions(
            match_count=self.config.search_match_count,
            similarity_threshold=self.config.search_similarity_threshold,
        )

    async def _search_by_embedding(
        self,
        embedding: list[float],
        options: SearchOptions,
        exclude_chunk_id: str | None = None,
    ) -> list[VectorSearchResult]:
        request_count = options.match_count + (1 if exclude_chunk_id else 0)
        rows = await self.storage.search_chunks(
            query_embedding=embedding,
            match_count=request_count,
            similarity_threshold=options.similarity_threshold,
            filter_video_ids=options.filter_video_ids,
        )

        rows = [
            row
            for row in rows
            if float(row.get("similarity", 0.0)) >= options.similarity_threshold
            and (exclude_chunk_id is None or str(row.get("chunk_id")) != exclude_chunk_id)
        ]
        rows.sort(key=lambda row: float(row["similarity"]), reverse=True)
        rows = rows[: options.match_count]

        videos = await self.storage.get_videos_by_ids(
            sorted({str(row["video_id"]) for row in rows})
        )
        return [self._to_result(row, videos.get(str(row["video_id"]), {})) for row in rows]

    @staticmethod
    def _to_result(row: dict[str, Any], video: dict[str, Any]) -> VectorSearchResult:
        return VectorSearchResult(
            chunk_id=str(row["chunk_id"]),
            video_id=str(row["video_id"]),
            chunk_text=row.get("chunk_text", ""),
            chunk_index=row.get("chunk_index", 0),
            start_time_seconds=row.get("start_time_seconds") or 0.0,
            end_time_seconds=row.get("end_time_seconds") or 0.0,
            similarity=float(row["similarity"]),
            video_title=video.get("title") or "Untitled Video",
            video_url=video.get("url"),
            video_thumbnail=video.get("thumbnail_url"),
            creator_id=video.get("creator_id"),
        )

    async def search_chunks(
        self, query: str, options: SearchOptions | None = None
    ) -> list[VectorSearchResult]:
        """Search for chunks relevant to a natural-language query.

        Args:
            query: User's search query.
            options: match_count, similarity_threshold and optional video filter.

        Returns:
            Results ordered by descending similarity, all at or above the
            threshold, at most ``match_count`` of them.

        Raises:
            ValueError: If the query is blank.
            VectorSearchError: If embedding or the database lookup fails.

        Examples:
            >>> results = await service.search_chunks(
            ...     "how to price a course", SearchOptions(match_count=3)
            ... )
        """
        options = options or self.default_options()
        logger.info(
            "chunk_search_started",
            query_length=len(query),
            match_count=options.match_count,
            similarity_threshold=options.similarity_threshold,
            filtered=options.filter_video_ids is not None,
        )

        if not query.strip():
            raise ValueError("Search query must not be empty")

        try:
            embedding = await self.embedding_service.generate_query_embedding(query)
            results = await self._search_by_embedding(embedding, options)
        except Exception as e:
            logger.exception("chunk_search_failed", error_type=type(e).__name__)
            raise VectorSearchError(f"Search failed: {e}") from e

        logger.info("chunk_search_completed", results_found=len(results))
        return results

    async def search_within_video(
        self, video_id: str, query: str, options: SearchOptions | None = None
    ) -> list[VectorSearchResult]:
        options = (options or self.default_options()).model_copy(
            update={"filter_video_ids": [video_id]}
        )
        return await self.search_chunks(query, options)

    async def search_across_videos(
        self, video_ids: list[str], query: str, options: SearchOptions | None = None
    ) -> list[VectorSearchResult]:
        options = (options or self.default_options()).model_copy(
            update={"filter_video_ids": video_ids}
        )
        return await self.search_chunks(query, options)

    async def find_related_chunks(
        self, chunk_id: str, options: SearchOptions | None = None
    ) -> list[VectorSearchResult]:
        """Find chunks similar to a stored chunk, excluding the chunk itself.

        Raises:
            VectorSearchError: If the chunk does not exist or has no embedding.
        """
        options = options or self.default_options()
        chunk = await self.storage.get_chunk(chunk_id)
        if chunk is None or not chunk.get("embedding"):
            raise VectorSearchError(f"Chunk {chunk_id} not found or not embedded")

        results = await self._search_by_embedding(
            chunk["embedding"], options, exclude_chunk_id=str(chunk_id)
        )
        logger.info("related_chunks_found", chunk_id=chunk_id, results_found=len(results))
        return results

    async def get_search_stats(self) -> dict[str, Any]:
        """Index statistics as reported by the ``vector_index_stats`` view."""
        rows = await self.storage.get_index_stats()
        return rows[0] if rows else {}
