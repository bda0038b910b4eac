"""Job events and an in-process background dispatcher.

Two events drive the pipeline: "transcription requested" enters the router
and "transcription completed" enters chunking and embedding. Delivery is
at-least-once, so handlers must tolerate replays.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar, Protocol

from pydantic import BaseModel

from src.utils.logging import get_logger

from .schemas import VideoStatus

logger = get_logger(__name__)


class TranscriptionRequested(BaseModel):
    name: ClassVar[str] = "video/transcript.extract"

    video_id: str
    creator_id: str | None = None


class TranscriptionCompleted(BaseModel):
    name: ClassVar[str] = "video/transcription.completed"

    video_id: str
    creator_id: str | None = None
    skip_if_exists: bool = False
    # Set by stuck-video recovery to pick up a video left in "embedding"
    resume: bool = False


JobEvent = TranscriptionRequested | TranscriptionCompleted
JobHandler = Callable[[Any], Awaitable[Any]]


def idempotency_key(video_id: str, stage: VideoStatus, attempt: int) -> str:
    """Key identifying one run of one stage for one video."""
    return f"{video_id}:{VideoStatus(stage).value}:{attempt}"


class JobDispatcher(Protocol):
    async def dispatch(self, event: JobEvent) -> None: ...


class LocalJobDispatcher:
    """Runs job handlers as background asyncio tasks in this process.

    Handlers record their own failures on the video; anything that still
    escapes is logged here so a background task never dies silently.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[BaseModel], JobHandler] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def register(self, event_type: type[BaseModel], handler: JobHandler) -> None:
        self._handlers[event_type] = handler

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def dispatch(self, event: JobEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise ValueError(f"No handler registered for {event.name}")

        task = asyncio.create_task(self._run(handler, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("job_dispatched", job=event.name, video_id=event.video_id)

    async def _run(self, handler: JobHandler, event: JobEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.exception(
                "job_failed",
                job=event.name,
                video_id=event.video_id,
                error_type=type(e).__name__,
            )

    async def drain(self) -> None:
        """Wait for every dispatched job, including jobs those jobs dispatch."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
