"""Optional embedding step for knowledge base fragments.

Supports Google (text-embedding-004) and OpenAI (text-embedding-3-small) models.
Embeddings are a capability, not a requirement: when no provider is configured
``build_embedding_fn`` returns None and fragments are stored without vectors.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from openai import AsyncOpenAI

    from app.core.config import Settings

logger = logging.getLogger(__name__)

EmbeddingFn = Callable[[str], Awaitable[list[float]]]

DEFAULT_MODELS = {
    "google": "text-embedding-004",
    "openai": "text-embedding-3-small",
}


def normalize(vector: "NDArray[np.float32]") -> list[float]:
    """L2-normalize a vector so that dot products equal cosine similarity."""
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector.astype(np.float32).tolist()
    return (vector / norm).astype(np.float32).tolist()


def build_embedding_fn(settings: "Settings") -> EmbeddingFn | None:
    """Build the embedding function configured in settings.

    Returns:
        An async ``text -> vector`` callable, or None when embeddings are off.

    Raises:
        ValueError: If the configured provider is not supported.
    """
    provider = settings.embedding_provider
    if not provider:
        return None

    model = settings.embedding_model or DEFAULT_MODELS.get(provider)

    if provider == "google":
        if not settings.google_ai_api_key:
            logger.warning("Google embeddings requested but GOOGLE_AI_API_KEY is not set")
            return None
        import google.generativeai as genai

        genai.configure(api_key=settings.google_ai_api_key)

        async def embed_google(text: str) -> list[float]:
            return await _generate_google_embedding(text, model)

        return embed_google

    if provider == "openai":
        if not settings.openai_api_key:
            logger.warning("OpenAI embeddings requested but OPENAI_API_KEY is not set")
            return None
        from openai import AsyncOpenAI

        # Shared by every call for the life of the process
        client = AsyncOpenAI(api_key=settings.openai_api_key)

        async def embed_openai(text: str) -> list[float]:
            return await _generate_openai_embedding(text, client, model)

        return embed_openai

    raise ValueError(f"Unsupported embedding provider: {provider}")


async def _generate_google_embedding(
    text: str,
    model: str | None = None,
) -> list[float]:
    """Generate an embedding using Google's text-embedding model.

    The SDK call blocks, so it runs in the default executor.

    Args:
        text: Text to embed.
        model: Model name (default: text-embedding-004).

    Returns:
        Normalized embedding vector.
    """
    import google.generativeai as genai

    model_name = model or DEFAULT_MODELS["google"]
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None,
        lambda: genai.embed_content(
            model=f"models/{model_name}",
            content=text,
            task_type="retrieval_document",
        ),
    )
    return normalize(np.array(result["embedding"], dtype=np.float32))


async def _generate_openai_embedding(
    text: str,
    client: "AsyncOpenAI",
    model: str | None = None,
) -> list[float]:
    """Generate an embedding using OpenAI's text-embedding model.

    Args:
        text: Text to embed.
        client: Shared ``AsyncOpenAI`` client.
        model: Model name (default: text-embedding-3-small).

    Returns:
        Normalized embedding vector.
    """
    model_name = model or DEFAULT_MODELS["openai"]

    response = await client.embeddings.create(
        model=model_name,
        input=[text],
    )
    return normalize(np.array(response.data[0].embedding, dtype=np.float32))
