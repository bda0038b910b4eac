"""Configuration module for the video transcript pipeline."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class PipelineConfig(BaseModel):
    """Configuration for the transcript ingestion and RAG preparation pipeline.

    A config instance carries every credential and tuning knob the pipeline
    needs and is passed explicitly to each service and extractor. Building a
    second instance with different credentials gives an isolated pipeline
    (e.g. per tenant). All settings can be overridden via environment
    variables.
    """

    # Transcript sources
    supadata_api_key: str = Field(
        default_factory=lambda: os.getenv("SUPADATA_API_KEY", "")
    )
    loom_api_key: str = Field(default_factory=lambda: os.getenv("LOOM_API_KEY", ""))
    loom_api_base_url: str = Field(
        default_factory=lambda: os.getenv("LOOM_API_BASE_URL", "https://api.loom.com/v1")
    )
    mux_token_id: str = Field(default_factory=lambda: os.getenv("MUX_TOKEN_ID", ""))
    mux_token_secret: str = Field(
        default_factory=lambda: os.getenv("MUX_TOKEN_SECRET", "")
    )
    mux_api_base_url: str = Field(
        default_factory=lambda: os.getenv("MUX_API_BASE_URL", "https://api.mux.com")
    )
    mux_stream_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "MUX_STREAM_BASE_URL", "https://stream.mux.com"
        )
    )
    openai_api_key: str = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    whisper_model: str = Field(
        default_factory=lambda: os.getenv("WHISPER_MODEL", "whisper-1")
    )
    whisper_cost_per_minute: float = Field(
        default_factory=lambda: float(os.getenv("WHISPER_COST_PER_MINUTE", "0.006"))
    )
    whisper_max_file_mb: int = Field(
        default_factory=lambda: int(os.getenv("WHISPER_MAX_FILE_MB", "25"))
    )
    extractor_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("EXTRACTOR_MAX_RETRIES", "3"))
    )
    extractor_retry_delay_ms: int = Field(
        default_factory=lambda: int(os.getenv("EXTRACTOR_RETRY_DELAY_MS", "1000"))
    )
    http_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    )

    # Chunking settings (word-based)
    min_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_MIN_WORDS", "500"))
    )
    max_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_MAX_WORDS", "1000"))
    )
    overlap_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_OVERLAP_WORDS", "100"))
    )
    preserve_sentences: bool = Field(
        default_factory=lambda: _env_bool("CHUNK_PRESERVE_SENTENCES", "true")
    )

    # Embedding settings
    embedding_provider: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_PROVIDER", "openai")
    )
    embedding_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_BASE_URL", "https://api.openai.com/v1"
        )
    )
    embedding_api_key: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_API_KEY", "")
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_MODEL_CHOICE", "text-embedding-3-small"
        )
    )
    embedding_dimensions: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))
    )
    embedding_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_BATCH_SIZE", "20"))
    )
    embedding_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_MAX_RETRIES", "3"))
    )
    embedding_retry_delay_ms: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_RETRY_DELAY_MS", "1000"))
    )
    embedding_requests_per_minute: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_REQUESTS_PER_MINUTE", "60"))
    )
    embedding_cost_per_1k_tokens: float = Field(
        default_factory=lambda: float(
            os.getenv("EMBEDDING_COST_PER_1K_TOKENS", "0.0001")
        )
    )

    # Search settings
    search_match_count: int = Field(
        default_factory=lambda: int(os.getenv("SEARCH_MATCH_COUNT", "5"))
    )
    search_similarity_threshold: float = Field(
        default_factory=lambda: float(os.getenv("SEARCH_SIMILARITY_THRESHOLD", "0.7"))
    )
    rag_context_max_chunks: int = Field(
        default_factory=lambda: int(os.getenv("RAG_CONTEXT_MAX_CHUNKS", "5"))
    )

    # Database settings
    supabase_url: str = Field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = Field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", "")
    )
    media_bucket: str = Field(default_factory=lambda: os.getenv("MEDIA_BUCKET", "videos"))

    # Operations
    max_concurrent_videos: int = Field(
        default_factory=lambda: int(os.getenv("MAX_CONCURRENT_VIDEOS", "4"))
    )
    max_recovery_attempts: int = Field(
        default_factory=lambda: int(os.getenv("MAX_RECOVERY_ATTEMPTS", "3"))
    )
    recovery_min_interval_minutes: int = Field(
        default_factory=lambda: int(os.getenv("RECOVERY_MIN_INTERVAL_MINUTES", "60"))
    )
    admin_api_key: str = Field(default_factory=lambda: os.getenv("ADMIN_API_KEY", ""))

    @property
    def whisper_max_file_bytes(self) -> int:
        """Upper bound on media accepted by the paid transcription fallback."""
        return self.whisper_max_file_mb * 1024 * 1024


def get_config() -> PipelineConfig:
    """Get validated configuration instance.

    Returns:
        PipelineConfig: Validated configuration object with all settings.

    Raises:
        ValidationError: If environment variables hold values of the wrong type.
    """
    return PipelineConfig()
