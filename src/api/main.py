"""FastAPI application for the video transcript pipeline.

Provides job triggers, status polling, semantic search over embedded chunks
and admin endpoints for stuck-video recovery.
"""

import hmac
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from src.utils.logging import get_logger
from src.video_pipeline.config import PipelineConfig, get_config
from src.video_pipeline.errors import (
    RetryLimitExceededError,
    StateTransitionError,
    VectorSearchError,
)
from src.video_pipeline.jobs import (
    LocalJobDispatcher,
    TranscriptionCompleted,
    TranscriptionRequested,
)
from src.video_pipeline.monitor import RecoveryOptions, StuckVideoMonitor
from src.video_pipeline.pipeline import VideoProcessingPipeline
from src.video_pipeline.schemas import VideoStatus
from src.video_pipeline.state_machine import (
    calculate_progress,
    get_estimated_time_remaining,
    get_next_states,
    get_processing_duration,
    is_terminal_state,
    minutes_in_stage,
    utcnow,
)
from src.video_pipeline.vector_search import (
    VectorSearchService,
    build_rag_context,
    format_result_for_rag,
)

logger = get_logger(__name__)

# Check if we're in production
is_production = os.getenv("ENVIRONMENT") == "production"

if not is_production:
    # Development: prioritize .env file
    project_root = Path(__file__).resolve().parent.parent.parent
    load_dotenv(project_root / ".env", override=True)
else:
    load_dotenv()

# Global services initialized in lifespan
config: PipelineConfig | None = None
dispatcher: LocalJobDispatcher | None = None
pipeline: VideoProcessingPipeline | None = None
search_service: VectorSearchService | None = None
monitor: StuckVideoMonitor | None = None


# ==============================================================================
# Lifespan Management
# ==============================================================================


async def lifespan(app: FastAPI):  # type: ignore[misc]
    """Build the pipeline services on startup; drain background jobs on shutdown."""
    global config, dispatcher, pipeline, search_service, monitor

    logger.info("application_startup_started")

    try:
        config = get_config()
        dispatcher = LocalJobDispatcher()
        pipeline = VideoProcessingPipeline(config, dispatcher)
        dispatcher.register(TranscriptionRequested, pipeline.handle_transcription_requested)
        dispatcher.register(TranscriptionCompleted, pipeline.handle_transcription_completed)
        search_service = VectorSearchService(
            config, pipeline.storage_service, pipeline.embedding_service
        )
        monitor = StuckVideoMonitor(pipeline)

        logger.info(
            "application_startup_completed",
            services=["pipeline", "dispatcher", "search", "monitor"],
        )

    except Exception:
        logger.exception("application_startup_failed")
        raise

    yield  # Application runs here

    logger.info("application_shutdown_started", pending_jobs=dispatcher.pending)
    await dispatcher.drain()
    logger.info("application_shutdown_completed")


# ==============================================================================
# FastAPI Application Setup
# ==============================================================================

app = FastAPI(
    title="Video Transcript Pipeline API",
    description="Transcript ingestion, chunking, embedding and semantic search for videos",
    version="1.0.0",
    lifespan=lifespan,
)

security = HTTPBearer()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==============================================================================
# Authentication
# ==============================================================================


async def verify_admin(
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> None:
    """Require the configured admin API key as the bearer token.

    Raises:
        HTTPException: 500 if no admin key is configured, 401 if it does not match.
    """
    admin_api_key = (config or get_config()).admin_api_key
    if not admin_api_key:
        logger.error("admin_auth_failed", reason="admin_api_key_not_configured")
        raise HTTPException(status_code=500, detail="Server misconfiguration")

    if not hmac.compare_digest(credentials.credentials, admin_api_key):
        logger.warning("admin_auth_failed", reason="invalid_key")
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_pipeline() -> VideoProcessingPipeline:
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


# ==============================================================================
# Request/Response Models
# ==============================================================================


class EmbedRequest(BaseModel):
    """Request model for re-running chunking and embedding."""

    skip_if_exists: bool = False


class SearchRequest(BaseModel):
    """Request model for the search endpoint."""

    query: str
    video_ids: list[str] | None = None
    match_count: int | None = None
    similarity_threshold: float | None = None
    include_context: bool = False


# ==============================================================================
# API Endpoints
# ==============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint.

    Returns:
        Health status and timestamp.
    """
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "services": {
            "pipeline": pipeline is not None,
            "dispatcher": dispatcher is not None,
            "search": search_service is not None,
            "monitor": monitor is not None,
        },
        "pending_jobs": dispatcher.pending if dispatcher else 0,
    }


@app.post("/api/videos/{video_id}/transcribe", status_code=202)
async def transcribe_video(
    video_id: str,
    service: VideoProcessingPipeline = Depends(require_pipeline),
):
    """Queue transcription for a pending video."""
    try:
        video = await service.request_transcription(video_id)
    except StateTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)

    logger.info("transcription_requested", video_id=video_id, creator_id=video.creator_id)
    return {"video_id": video_id, "status": "queued", "job": TranscriptionRequested.name}


@app.post("/api/videos/{video_id}/embed", status_code=202)
async def embed_video(
    video_id: str,
    request: EmbedRequest | None = None,
    service: VideoProcessingPipeline = Depends(require_pipeline),
):
    """Queue chunking and embedding for a video whose transcript is stored."""
    request = request or EmbedRequest()
    video = await service.storage_service.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found")
    if video.status != VideoStatus.PROCESSING:
        raise HTTPException(
            status_code=409,
            detail=f"Video is {video.status.value}; embedding needs processing",
        )

    await service.emit(
        TranscriptionCompleted(
            video_id=video_id,
            creator_id=video.creator_id,
            skip_if_exists=request.skip_if_exists,
        )
    )
    return {"video_id": video_id, "status": "queued", "job": TranscriptionCompleted.name}


@app.post("/api/videos/{video_id}/retry", status_code=202)
async def retry_video(
    video_id: str,
    service: VideoProcessingPipeline = Depends(require_pipeline),
):
    """Send a failed video back through the pipeline."""
    try:
        video = await service.retry_video(video_id)
    except RetryLimitExceededError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except StateTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return {
        "video_id": video_id,
        "status": video.status.value,
        "retry_count": video.metadata.retry_count,
    }


@app.get("/api/videos/{video_id}/status")
async def video_status(
    video_id: str,
    service: VideoProcessingPipeline = Depends(require_pipeline),
):
    """Report a video's lifecycle position for polling clients."""
    video = await service.storage_service.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found")

    last_error = video.metadata.last_error
    terminal = is_terminal_state(video.status, video.metadata)
    return {
        "video_id": video.id,
        "status": video.status.value,
        "progress": calculate_progress(video.status),
        "estimated_time_remaining_minutes": get_estimated_time_remaining(video.status),
        "is_terminal": terminal,
        "next_states": (
            [] if terminal else [status.value for status in get_next_states(video.status)]
        ),
        "processing_duration_seconds": get_processing_duration(video),
        "error_message": video.error_message,
        "last_error": last_error.model_dump(mode="json") if last_error else None,
        "retry_count": video.metadata.retry_count,
        "transcript_method": (
            video.metadata.transcript_method.value
            if video.metadata.transcript_method
            else None
        ),
    }


@app.post("/api/search")
async def search(request: SearchRequest):
    """Semantic search over embedded chunks, optionally with assembled context."""
    if search_service is None:
        raise HTTPException(status_code=503, detail="Search not initialized")

    options = search_service.default_options()
    updates: dict[str, Any] = {
        "match_count": request.match_count,
        "similarity_threshold": request.similarity_threshold,
        "filter_video_ids": request.video_ids,
    }
    options = options.model_copy(update={k: v for k, v in updates.items() if v is not None})

    try:
        results = await search_service.search_chunks(request.query, options)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except VectorSearchError as e:
        raise HTTPException(status_code=502, detail=str(e))

    response: dict[str, Any] = {
        "results": [
            {**result.model_dump(), "citation": format_result_for_rag(result)}
            for result in results
        ],
        "count": len(results),
    }
    if request.include_context:
        max_chunks = config.rag_context_max_chunks if config else 5
        response["context"] = build_rag_context(results, max_chunks)
    return response


@app.get("/api/admin/stuck-videos", dependencies=[Depends(verify_admin)])
async def stuck_videos(creator_id: str | None = None):
    """List videos that have exceeded their stage timeout."""
    if monitor is None:
        raise HTTPException(status_code=503, detail="Monitor not initialized")

    now = utcnow()
    videos = await monitor.get_stuck_videos(now, creator_id)
    return {
        "count": len(videos),
        "videos": [
            {
                "video_id": video.id,
                "title": video.title,
                "status": video.status.value,
                "creator_id": video.creator_id,
                "minutes_in_stage": round(minutes_in_stage(video, now), 1),
                "recovery_attempts": video.metadata.recovery_attempts,
            }
            for video in videos
        ],
    }


@app.get("/api/admin/videos/{video_id}/diagnostics", dependencies=[Depends(verify_admin)])
async def video_diagnostics(video_id: str):
    """Explain why a video is where it is and what recovery would do."""
    if monitor is None:
        raise HTTPException(status_code=503, detail="Monitor not initialized")

    diagnostics = await monitor.diagnose_video(video_id)
    if diagnostics is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return diagnostics.model_dump(mode="json")


@app.post("/api/admin/recover-stuck-videos", dependencies=[Depends(verify_admin)])
async def recover_stuck_videos(options: RecoveryOptions | None = None):
    """Run one recovery sweep over stuck (or explicitly listed) videos."""
    if monitor is None:
        raise HTTPException(status_code=503, detail="Monitor not initialized")

    report = await monitor.recover_stuck_videos(options=options)
    return report.model_dump(mode="json")
