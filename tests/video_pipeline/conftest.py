"""Shared fixtures for video pipeline tests."""

import copy
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.video_pipeline.config import PipelineConfig
from src.video_pipeline.pipeline import VideoProcessingPipeline
from src.video_pipeline.schemas import (
    ChunkEmbedding,
    SourceType,
    TimestampedSegment,
    TranscriptChunk,
    TranscriptMetadata,
    TranscriptMethod,
    TranscriptResult,
    UsageIncrement,
    Video,
    VideoStatus,
)

EMBEDDING_DIMENSIONS = 8


class InMemoryStorage:
    """Dict-backed stand-in for StorageService with the same async methods.

    Video rows are kept as JSON-ready dicts, and ``update_video`` honours
    ``expected_status`` the way the conditional database update does.
    """

    def __init__(self) -> None:
        self.videos: dict[str, dict[str, Any]] = {}
        self.chunks: dict[str, list[dict[str, Any]]] = {}
        self.usage: list[UsageIncrement] = []
        self.media: dict[str, bytes] = {}
        self.search_rows: list[dict[str, Any]] = []
        self.index_stats: list[dict[str, Any]] = []
        self.fail_usage = False

    def add_video(self, **fields: Any) -> Video:
        row = {"source_type": "youtube", "status": "pending", "metadata": {}, **fields}
        video = Video.model_validate(row)
        self.videos[video.id] = video.model_dump(mode="json")
        return video

    def status_of(self, video_id: str) -> VideoStatus:
        return VideoStatus(self.videos[video_id]["status"])

    async def get_video(self, video_id: str) -> Video | None:
        row = self.videos.get(video_id)
        return Video.model_validate(copy.deepcopy(row)) if row else None

    async def update_video(
        self,
        video_id: str,
        data: dict[str, Any],
        expected_status: VideoStatus | None = None,
    ) -> bool:
        row = self.videos.get(video_id)
        if row is None:
            return False
        if expected_status is not None and row["status"] != VideoStatus(expected_status).value:
            return False
        row.update(copy.deepcopy(data))
        return True

    async def list_videos_by_status(
        self, statuses: list[VideoStatus], creator_id: str | None = None
    ) -> list[Video]:
        wanted = {VideoStatus(status).value for status in statuses}
        return [
            Video.model_validate(copy.deepcopy(row))
            for row in self.videos.values()
            if row["status"] in wanted
            and (creator_id is None or row.get("creator_id") == creator_id)
        ]

    async def get_videos_by_ids(self, video_ids: list[str]) -> dict[str, dict[str, Any]]:
        return {vid: self.videos[vid] for vid in video_ids if vid in self.videos}

    async def replace_chunks(
        self, video_id: str, chunks: list[TranscriptChunk]
    ) -> list[TranscriptChunk]:
        stored = [
            chunk.model_copy(update={"id": f"{video_id}-chunk-{chunk.chunk_index}"})
            for chunk in chunks
        ]
        self.chunks[video_id] = [{"chunk": chunk, "embedding": None} for chunk in stored]
        return stored

    async def get_chunks(self, video_id: str) -> list[TranscriptChunk]:
        return [row["chunk"] for row in self.chunks.get(video_id, [])]

    async def update_chunk_embeddings(
        self, video_id: str, embeddings: list[ChunkEmbedding]
    ) -> int:
        rows = {row["chunk"].chunk_index: row for row in self.chunks.get(video_id, [])}
        updated = 0
        for item in embeddings:
            if item.chunk_index in rows:
                rows[item.chunk_index]["embedding"] = item.embedding
                updated += 1
        return updated

    async def count_chunks(self, video_id: str) -> int:
        return len(self.chunks.get(video_id, []))

    async def count_embedded_chunks(self, video_id: str) -> int:
        return sum(1 for row in self.chunks.get(video_id, []) if row["embedding"] is not None)

    async def get_chunk(self, chunk_id: str) -> dict[str, Any] | None:
        for video_id, rows in self.chunks.items():
            for row in rows:
                chunk = row["chunk"]
                if chunk.id == chunk_id:
                    return {
                        "id": chunk.id,
                        "video_id": video_id,
                        "chunk_index": chunk.chunk_index,
                        "chunk_text": chunk.chunk_text,
                        "embedding": row["embedding"],
                    }
        return None

    async def search_chunks(
        self,
        query_embedding: list[float],
        match_count: int = 5,
        similarity_threshold: float = 0.7,
        filter_video_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        # Returned unranked and unfiltered by threshold so client-side checks are exercised
        return [
            dict(row)
            for row in self.search_rows
            if filter_video_ids is None or row["video_id"] in filter_video_ids
        ]

    async def get_index_stats(self) -> list[dict[str, Any]]:
        return self.index_stats

    async def download_media(self, storage_path: str) -> bytes:
        return self.media[storage_path]

    async def increment_usage_metrics(self, increment: UsageIncrement) -> None:
        if self.fail_usage:
            raise RuntimeError("ledger unavailable")
        self.usage.append(increment)


def make_embedding_client(dimensions: int = EMBEDDING_DIMENSIONS) -> MagicMock:
    """OpenAI-style client whose embeddings.create echoes one vector per input."""

    async def create(input: Any, model: str) -> MagicMock:
        texts = input if isinstance(input, list) else [input]
        data = [
            MagicMock(embedding=[0.1] * dimensions, index=i) for i in range(len(texts))
        ]
        return MagicMock(data=data, usage=MagicMock(total_tokens=10 * len(texts)))

    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=create)
    return client


def make_transcript_result(
    words: int = 120,
    source_type: SourceType = SourceType.YOUTUBE,
    method: TranscriptMethod = TranscriptMethod.YOUTUBE_API,
    cost_usd: float = 0.0,
) -> TranscriptResult:
    """Transcript of ``words`` words in ten-word sentences, one segment per sentence."""
    segments = []
    for i in range(0, words, 10):
        sentence = " ".join(f"word{j}" for j in range(i, min(i + 10, words))) + "."
        segments.append(TimestampedSegment(text=sentence, start=float(i), duration=10.0))

    return TranscriptResult(
        source_type=source_type,
        transcript_method=method,
        title="Pricing Your Course",
        duration_seconds=float(words),
        transcript=" ".join(segment.text for segment in segments),
        transcript_with_timestamps=segments,
        metadata=TranscriptMetadata(
            cost_usd=cost_usd,
            language="en",
            thumbnail_url="https://img.example.com/thumb.jpg",
        ),
    )


@pytest.fixture
def config() -> PipelineConfig:
    """Configuration with small chunk windows and no waiting."""
    return PipelineConfig(
        supabase_url="https://test.supabase.co",
        supabase_key="test_key",
        supadata_api_key="test_supadata_key",
        loom_api_key="",
        loom_api_base_url="https://api.loom.com/v1",
        mux_token_id="",
        mux_token_secret="",
        mux_api_base_url="https://api.mux.com",
        mux_stream_base_url="https://stream.mux.com",
        openai_api_key="test_openai_key",
        whisper_model="whisper-1",
        whisper_cost_per_minute=0.006,
        whisper_max_file_mb=25,
        extractor_max_retries=3,
        extractor_retry_delay_ms=0,
        embedding_provider="openai",
        embedding_api_key="test_embedding_key",
        embedding_model="text-embedding-3-small",
        embedding_dimensions=EMBEDDING_DIMENSIONS,
        embedding_requests_per_minute=0,
        embedding_max_retries=3,
        embedding_retry_delay_ms=0,
        embedding_batch_size=20,
        embedding_cost_per_1k_tokens=0.0001,
        search_match_count=5,
        search_similarity_threshold=0.7,
        rag_context_max_chunks=5,
        min_words=20,
        max_words=40,
        overlap_words=5,
        preserve_sentences=True,
        max_concurrent_videos=2,
        max_recovery_attempts=3,
        recovery_min_interval_minutes=60,
        admin_api_key="admin-secret",
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def embedding_client() -> MagicMock:
    return make_embedding_client()


@pytest.fixture
def transcript_factory():
    """Build TranscriptResult objects of a given length."""
    return make_transcript_result


@pytest.fixture
def mock_router() -> MagicMock:
    """Transcript router returning a 120-word YouTube transcript."""
    router = MagicMock()
    router.extract_transcript_from_video = AsyncMock(return_value=make_transcript_result())
    return router


@pytest.fixture
def pipeline(config, storage, mock_router, embedding_client) -> VideoProcessingPipeline:
    """Pipeline wired to in-memory storage, a mocked router and a fake embedding API."""
    with (
        patch("src.video_pipeline.pipeline.StorageService", return_value=storage),
        patch("src.video_pipeline.pipeline.TranscriptRouter", return_value=mock_router),
        patch(
            "src.video_pipeline.embedding_service.create_embedding_client",
            return_value=embedding_client,
        ),
    ):
        return VideoProcessingPipeline(config)
