"""Pricing helpers for transcription and embeddings."""

import math
from typing import Any

from .schemas import SourceType, TranscriptMethod

WHISPER_PER_MINUTE = 0.006
EMBEDDINGS_PER_1K_TOKENS = 0.0001

FREE_SOURCES = frozenset({SourceType.YOUTUBE, SourceType.LOOM, SourceType.MUX})

SOURCE_METHODS: dict[SourceType, TranscriptMethod] = {
    SourceType.YOUTUBE: TranscriptMethod.YOUTUBE_API,
    SourceType.LOOM: TranscriptMethod.LOOM_API,
    SourceType.MUX: TranscriptMethod.MUX_AUTO,
    SourceType.UPLOAD: TranscriptMethod.WHISPER,
}


def calculate_transcription_cost(
    duration_seconds: float, price_per_minute: float = WHISPER_PER_MINUTE
) -> float:
    """Paid transcription cost, rounded to 4 decimal places."""
    return round(duration_seconds / 60 * price_per_minute, 4)


def calculate_embedding_cost(
    total_tokens: int, price_per_1k_tokens: float = EMBEDDINGS_PER_1K_TOKENS
) -> float:
    """Embedding cost is a pure function of the token count."""
    return total_tokens / 1000 * price_per_1k_tokens


def estimate_embedding_cost(
    text_length: int, price_per_1k_tokens: float = EMBEDDINGS_PER_1K_TOKENS
) -> dict[str, Any]:
    """Rough cost estimate assuming ~4 characters per token."""
    tokens = math.ceil(text_length / 4)
    return {
        "estimated_tokens": tokens,
        "estimated_cost_usd": calculate_embedding_cost(tokens, price_per_1k_tokens),
    }


def credits_for_cost(cost_usd: float) -> int:
    """AI credits charged for a dollar amount (1 credit per $0.001, rounded up)."""
    return math.ceil(round(cost_usd * 1000, 6))


def format_cost(cost_usd: float) -> str:
    """Human-readable cost: ``FREE``, 4 decimals under a cent, else 2."""
    if cost_usd == 0:
        return "FREE"
    if cost_usd < 0.01:
        return f"${cost_usd:.4f}"
    return f"${cost_usd:.2f}"


def should_use_paid_fallback(source_type: SourceType, has_captions: bool) -> bool:
    """Uploads always need paid transcription, other sources only without captions."""
    return SourceType(source_type) == SourceType.UPLOAD or not has_captions


def calculate_estimated_cost(
    source_type: SourceType,
    duration_seconds: float,
    price_per_minute: float = WHISPER_PER_MINUTE,
) -> dict[str, Any]:
    """Expected transcription cost for a video before it is routed.

    Returns:
        Dict with ``cost_usd``, ``formatted`` and ``method``.
    """
    source_type = SourceType(source_type)
    cost = (
        0.0
        if source_type in FREE_SOURCES
        else calculate_transcription_cost(duration_seconds, price_per_minute)
    )
    return {
        "cost_usd": cost,
        "formatted": "FREE" if cost == 0 else f"${cost:.4f}",
        "method": SOURCE_METHODS[source_type].value,
    }


def get_cost_breakdown(price_per_minute: float = WHISPER_PER_MINUTE) -> dict[str, Any]:
    """Per-source pricing table."""
    return {
        SourceType.YOUTUBE.value: {"cost_per_minute": 0.0, "method": "youtube_api"},
        SourceType.LOOM.value: {"cost_per_minute": 0.0, "method": "loom_api"},
        SourceType.MUX.value: {
            "cost_per_minute": 0.0,
            "method": "mux_auto",
            "note": "Falls back to whisper when the asset has no captions",
        },
        SourceType.UPLOAD.value: {"cost_per_minute": price_per_minute, "method": "whisper"},
    }
