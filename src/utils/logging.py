"""Shared logging utilities for structured logging across the pipeline.

Every module obtains its logger through ``get_logger`` so that workers, the
CLI and the API all emit the same JSON event stream. Stage handlers bind the
video id and stage to their events, which makes a single video's journey
through the lifecycle easy to follow in aggregated logs.
"""

import logging
import os
import sys

import structlog

_configured = False


def _configure(level_name: str) -> None:
    global _configured

    level = getattr(logging, level_name.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured structured logger instance.

    Structlog is configured on first use with JSON output, ISO timestamps,
    log levels and exception formatting. The level comes from ``LOG_LEVEL``
    (default ``INFO``).

    Args:
        name: Logger name (typically __name__ from the calling module).

    Returns:
        Configured structlog logger instance ready for use.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("transcript_extracted", video_id="abc", method="whisper")
        >>> logger.exception("embedding_failed", chunk_index=3)
    """
    if not _configured:
        _configure(os.getenv("LOG_LEVEL", "INFO"))

    return structlog.get_logger(name)
