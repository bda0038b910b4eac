"""Embedding service for generating chunk and query embeddings via OpenAI-compatible APIs."""

import asyncio
import math
import time

from pydantic import BaseModel

from src.utils.clients import create_embedding_client
from src.utils.logging import get_logger

from .config import PipelineConfig
from .costs import calculate_embedding_cost, estimate_embedding_cost
from .errors import EmbeddingError
from .rate_limiter import RequestRateLimiter
from .schemas import ChunkEmbedding, EmbeddingBatchResult, TranscriptChunk

logger = get_logger(__name__)

# Pause between single-chunk calls after a batch has failed
SEQUENTIAL_FALLBACK_DELAY_SECONDS = 0.1


class EmbeddingOptions(BaseModel):
    """Batching and retry settings for one embedding run."""

    batch_size: int = 20
    max_retries: int = 3
    retry_delay_ms: int = 1000
    model: str | None = None

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "EmbeddingOptions":
        return cls(
            batch_size=config.embedding_batch_size,
            max_retries=config.embedding_max_retries,
            retry_delay_ms=config.embedding_retry_delay_ms,
            model=config.embedding_model,
        )


def validate_embedding(embedding: list[float], dimensions: int = 1536) -> bool:
    """Check a vector has the expected length and only finite numeric components."""
    if len(embedding) != dimensions:
        return False
    return all(
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
        for value in embedding
    )


class EmbeddingService:
    """Service for generating text embeddings.

    Chunks are embedded in batches, one API call per batch. A failed batch
    degrades to sequential single-chunk calls, each retried with exponential
    backoff. Batch calls go through a ``RequestRateLimiter``; pass the same
    limiter to several services to share one requests-per-minute ceiling.
    Supports OpenAI, Ollama and OpenRouter through OpenAI-compatible APIs.
    """

    def __init__(
        self,
        config: PipelineConfig,
        rate_limiter: RequestRateLimiter | None = None,
    ):
        """Initialize embedding service with configuration.

        Args:
            config: Configuration object with embedding provider settings.
            rate_limiter: Shared limiter; a private one is created if omitted.
        """
        self.config = config
        self.client = create_embedding_client(config)
        self.rate_limiter = rate_limiter or RequestRateLimiter(
            config.embedding_requests_per_minute
        )
        logger.info(
            "embedding_service_initialized",
            provider=config.embedding_provider,
            model=config.embedding_model,
            base_url=config.embedding_base_url,
            requests_per_minute=config.embedding_requests_per_minute,
        )

    async def _embed_single(
        self,
        text: str,
        model: str,
        max_retries: int,
        retry_delay_ms: int,
    ) -> tuple[list[float], int]:
        attempts = max(1, max_retries)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.embeddings.create(input=text, model=model)
                return response.data[0].embedding, response.usage.total_tokens

            except Exception as e:
                last_error = e
                logger.warning(
                    "embedding_attempt_failed",
                    attempt=attempt,
                    max_retries=attempts,
                    text_length=len(text),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if attempt < attempts:
                    await asyncio.sleep(retry_delay_ms * 2 ** (attempt - 1) / 1000)

        raise EmbeddingError(
            f"Embedding failed after {attempts} attempts: {last_error}"
        ) from last_error

    async def _embed_batch(
        self, texts: list[str], model: str
    ) -> tuple[list[list[float]], int]:
        response = await self.client.embeddings.create(input=texts, model=model)
        items = sorted(response.data, key=lambda item: item.index)
        if len(items) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings, received {len(items)}"
            )
        return [item.embedding for item in items], response.usage.total_tokens

    async def generate_embeddings(
        self,
        chunks: list[TranscriptChunk],
        options: EmbeddingOptions | None = None,
    ) -> EmbeddingBatchResult:
        """Generate embeddings for transcript chunks.

        Batches are processed in order. Each batch waits on the rate limiter
        before its API call; if the call fails, every chunk in the batch is
        embedded on its own instead.

        Args:
            chunks: Chunks to embed.
            options: Batch size, retry settings and model override.

        Returns:
            Embeddings in chunk order with token totals and cost.

        Raises:
            EmbeddingError: If a single-chunk call exhausts its retries.
        """
        options = options or EmbeddingOptions.from_config(self.config)
        model = options.model or self.config.embedding_model
        batch_size = max(1, options.batch_size)
        started = time.perf_counter()

        logger.info(
            "batch_embedding_started",
            count=len(chunks),
            batch_size=batch_size,
            model=model,
        )

        embeddings: list[ChunkEmbedding] = []
        total_tokens = 0

        for offset in range(0, len(chunks), batch_size):
            batch = chunks[offset : offset + batch_size]
            batch_num = offset // batch_size + 1
            await self.rate_limiter.acquire()

            try:
                vectors, tokens = await self._embed_batch(
                    [chunk.chunk_text for chunk in batch], model
                )
                per_chunk = math.ceil(tokens / len(batch))
                embeddings.extend(
                    ChunkEmbedding(
                        chunk_id=chunk.id,
                        chunk_index=chunk.chunk_index,
                        embedding=vector,
                        model=model,
                        tokens_used=per_chunk,
                    )
                    for chunk, vector in zip(batch, vectors, strict=True)
                )
                total_tokens += tokens
                logger.debug("batch_completed", batch_num=batch_num, count=len(batch))

            except Exception as e:
                logger.warning(
                    "batch_embedding_failed_falling_back",
                    batch_num=batch_num,
                    count=len(batch),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                for position, chunk in enumerate(batch):
                    if position:
                        await asyncio.sleep(SEQUENTIAL_FALLBACK_DELAY_SECONDS)
                    vector, tokens = await self._embed_single(
                        chunk.chunk_text,
                        model,
                        options.max_retries,
                        options.retry_delay_ms,
                    )
                    embeddings.append(
                        ChunkEmbedding(
                            chunk_id=chunk.id,
                            chunk_index=chunk.chunk_index,
                            embedding=vector,
                            model=model,
                            tokens_used=tokens,
                        )
                    )
                    total_tokens += tokens

        result = EmbeddingBatchResult(
            embeddings=embeddings,
            total_tokens=total_tokens,
            total_cost_usd=self.calculate_embedding_cost(total_tokens),
            model=model,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            chunks_processed=len(embeddings),
        )
        logger.info(
            "batch_embedding_completed",
            total_embeddings=len(embeddings),
            total_tokens=total_tokens,
            total_cost_usd=result.total_cost_usd,
        )
        return result

    async def generate_query_embedding(self, query: str) -> list[float]:
        """Embed an ad hoc search query using the single-call retry path.

        Raises:
            ValueError: If the query is blank.
            EmbeddingError: If all retries fail.
        """
        if not query.strip():
            raise ValueError("Query must not be empty")

        embedding, _ = await self._embed_single(
            query,
            self.config.embedding_model,
            self.config.embedding_max_retries,
            self.config.embedding_retry_delay_ms,
        )
        return embedding

    def calculate_embedding_cost(self, total_tokens: int) -> float:
        return calculate_embedding_cost(
            total_tokens, self.config.embedding_cost_per_1k_tokens
        )

    def estimate_embedding_cost(self, text_length: int) -> dict[str, float]:
        return estimate_embedding_cost(
            text_length, self.config.embedding_cost_per_1k_tokens
        )

    def validate_embedding(self, embedding: list[float]) -> bool:
        return validate_embedding(embedding, self.config.embedding_dimensions)
