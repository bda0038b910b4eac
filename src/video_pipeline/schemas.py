"""Pydantic schemas for the video transcript pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROCESSING_METADATA_VERSION = 1


class VideoStatus(str, Enum):
    """Lifecycle status of a video inside the pipeline."""

    PENDING = "pending"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    PROCESSING = "processing"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceType(str, Enum):
    """Where a video's spoken content comes from."""

    YOUTUBE = "youtube"
    LOOM = "loom"
    MUX = "mux"
    UPLOAD = "upload"


class TranscriptMethod(str, Enum):
    """How a transcript was obtained."""

    YOUTUBE_API = "youtube_api"
    LOOM_API = "loom_api"
    MUX_AUTO = "mux_auto"
    WHISPER = "whisper"


class RecoveryAction(str, Enum):
    """Action the monitor recommends for a stuck video."""

    MARK_FAILED = "mark-failed"
    RETRY_EMBEDDINGS = "retry-embeddings"
    FIX_STATUS = "fix-status"


class LastError(BaseModel):
    """Structured record of the most recent pipeline failure."""

    stage: VideoStatus
    message: str
    timestamp: datetime
    error_type: str
    # False for failures no retry can fix, such as a private video
    retryable: bool = True


class ProcessingMetadata(BaseModel):
    """Typed, versioned view of a video's processing metadata column.

    Every stage handler reads and writes this structure rather than poking
    at raw JSON keys. Keys written by other collaborators are kept as extra
    fields so a round trip never drops them.
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = PROCESSING_METADATA_VERSION
    retry_count: int = 0
    last_error: LastError | None = None
    retried_at: datetime | None = None
    stage_started_at: dict[str, datetime] = Field(default_factory=dict)
    stage_durations_seconds: dict[str, float] = Field(default_factory=dict)
    stage_keys: list[str] = Field(default_factory=list)

    # Transcription details
    transcript_method: TranscriptMethod | None = None
    transcript_cost_usd: float | None = None
    transcript_language: str | None = None

    # Embedding details
    embedding_stats: dict[str, Any] | None = None

    # Stuck-video recovery bookkeeping
    recovery_attempts: int = 0
    last_recovery_attempt: datetime | None = None
    last_recovery_action: RecoveryAction | None = None

    def to_storage(self) -> dict[str, Any]:
        """Serialize for the JSON metadata column."""
        return self.model_dump(mode="json", exclude_none=True)


class TimestampedSegment(BaseModel):
    """A transcript segment with timing in seconds."""

    text: str
    start: float
    duration: float


class Video(BaseModel):
    """A video record as stored in the ``videos`` table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    creator_id: str | None = None
    source_type: SourceType
    status: VideoStatus = VideoStatus.PENDING
    title: str | None = None
    url: str | None = None
    thumbnail_url: str | None = None
    transcript: str | None = None
    transcript_segments: list[TimestampedSegment] | None = None
    error_message: str | None = None
    metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)
    duration_seconds: float | None = None
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    # Source-specific identifiers
    youtube_video_id: str | None = None
    embed_id: str | None = None
    mux_asset_id: str | None = None
    mux_playback_id: str | None = None
    storage_path: str | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        # Rows created by collaborators may hold NULL metadata
        return value if value is not None else {}


class TranscriptMetadata(BaseModel):
    """Cost and timing attached to every transcript result.

    Source-specific fields (language, thumbnail, asset id, ...) ride along as
    extra fields.
    """

    model_config = ConfigDict(extra="allow")

    cost_usd: float = 0.0
    processing_time_ms: int = 0


class TranscriptResult(BaseModel):
    """Normalized output of every source extractor."""

    source_type: SourceType
    transcript_method: TranscriptMethod
    title: str
    duration_seconds: float
    transcript: str
    transcript_with_timestamps: list[TimestampedSegment] = Field(default_factory=list)
    metadata: TranscriptMetadata = Field(default_factory=TranscriptMetadata)


class ChunkMetadata(BaseModel):
    """Overlap bookkeeping for a chunk."""

    has_overlap: bool = False
    overlap_word_count: int = 0
    original_segment_count: int = 0


class TranscriptChunk(BaseModel):
    """Sentence-aligned window of transcript text with a time range."""

    chunk_index: int
    chunk_text: str
    start_time_seconds: float
    end_time_seconds: float
    word_count: int
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    id: str | None = None


class ChunkValidation(BaseModel):
    """Outcome of chunk sanity checks. Warnings never fail a run."""

    valid: bool
    warnings: list[str] = Field(default_factory=list)


class ChunkingStats(BaseModel):
    """Summary numbers for a chunked transcript."""

    total_chunks: int = 0
    total_words: int = 0
    avg_words_per_chunk: float = 0.0
    min_words: int = 0
    max_words: int = 0
    chunks_with_overlap: int = 0
    total_duration_seconds: float = 0.0


class ChunkEmbedding(BaseModel):
    """Embedding vector produced for one chunk."""

    chunk_id: str | None = None
    chunk_index: int
    embedding: list[float]
    model: str
    tokens_used: int


class EmbeddingBatchResult(BaseModel):
    """Aggregate result of embedding a set of chunks."""

    embeddings: list[ChunkEmbedding] = Field(default_factory=list)
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    model: str
    processing_time_ms: int = 0
    chunks_processed: int = 0


class VectorSearchResult(BaseModel):
    """A ranked chunk returned by similarity search, enriched with its video."""

    chunk_id: str
    video_id: str
    chunk_text: str
    chunk_index: int = 0
    start_time_seconds: float = 0.0
    end_time_seconds: float = 0.0
    similarity: float
    video_title: str = "Untitled Video"
    video_url: str | None = None
    video_thumbnail: str | None = None
    creator_id: str | None = None


class UsageIncrement(BaseModel):
    """One increment written to the per-creator, per-day usage ledger."""

    creator_id: str
    date: str
    transcription_minutes: float | None = None
    ai_credits_used: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StageInfo(BaseModel):
    """Static metadata about a lifecycle stage."""

    name: VideoStatus
    retryable: bool
    max_retries: int
    timeout_minutes: int


class ProcessingStats(BaseModel):
    """Counts of videos per status."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    stuck: int = 0


class VideoDiagnostics(BaseModel):
    """What the monitor found when it inspected a video."""

    video_id: str
    status: VideoStatus
    is_stuck: bool
    minutes_in_stage: float
    timeout_minutes: int
    has_transcript: bool
    chunk_count: int
    embedded_chunk_count: int
    recommended_action: RecoveryAction | None = None
    last_error: LastError | None = None
    recovery_attempts: int = 0


class RecoveryOutcome(BaseModel):
    """What a recovery sweep did (or would do) to one video."""

    video_id: str
    status: str  # recovered, failed, skipped, planned, error
    reason: str
    action: RecoveryAction | None = None
    recovery_attempts: int = 0


class RecoveryReport(BaseModel):
    """Outcome of one stuck-video recovery sweep."""

    checked: int = 0
    recovered: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: bool = False
    results: list[RecoveryOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class StageOutcome(BaseModel):
    """Result of running one job handler for one video."""

    video_id: str
    status: str  # completed, skipped, failed
    stage: VideoStatus | None = None
    chunks: int = 0
    cost_usd: float = 0.0
    error: str | None = None


class PipelineResult(BaseModel):
    """Result of processing a batch of videos.

    Summary statistics and error information for a complete pipeline run.
    """

    total_videos: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    chunks_created: int = 0
    total_cost_usd: float = 0.0
    errors: list[str] = Field(default_factory=list)
