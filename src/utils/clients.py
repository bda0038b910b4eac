"""Client construction helpers.

Builds the external service clients (Supabase, OpenAI-compatible APIs)
from an explicit ``PipelineConfig`` instead of reading process-wide globals,
so each pipeline instance can carry its own credentials.
"""

from openai import AsyncOpenAI
from supabase import Client, create_client

from src.video_pipeline.config import PipelineConfig


def create_supabase_client(config: PipelineConfig) -> Client:
    """Create a Supabase client for the configured project.

    Args:
        config: Pipeline configuration with Supabase URL and service key.

    Returns:
        Supabase client instance.

    Raises:
        ValueError: If the Supabase URL or key is missing.
    """
    if not config.supabase_url or not config.supabase_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required")

    return create_client(config.supabase_url, config.supabase_key)


def create_embedding_client(config: PipelineConfig) -> AsyncOpenAI:
    """Create an OpenAI-compatible client for the configured embedding provider.

    Ollama does not need a real API key; every other provider uses
    ``embedding_api_key``.

    Args:
        config: Pipeline configuration with embedding provider settings.

    Returns:
        Configured AsyncOpenAI client instance.
    """
    if config.embedding_provider == "ollama":
        return AsyncOpenAI(base_url=config.embedding_base_url, api_key="ollama")

    return AsyncOpenAI(
        base_url=config.embedding_base_url,
        api_key=config.embedding_api_key,
    )


def create_transcription_client(config: PipelineConfig) -> AsyncOpenAI:
    """Create the OpenAI client used for paid speech-to-text.

    Args:
        config: Pipeline configuration holding ``openai_api_key``.

    Returns:
        AsyncOpenAI client instance.
    """
    return AsyncOpenAI(api_key=config.openai_api_key)
