"""External knowledge-answer service.

Asks an OpenAI-compatible chat-completions API (Perplexity by default) for an
answer when the user's own documents do not contain one. Models are tried in
the configured order; the first model that answers wins.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from app.knowledge.errors import KnowledgeSearchError, KnowledgeSearchUnavailable

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.knowledge.assets import KnowledgeAssets
    from app.observability import MetricsBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVIDER = "perplexity"
OPERATION = "chat_completion"

TOP_P = 0.9
FREQUENCY_PENALTY = 1
SEARCH_RECENCY_FILTER = "month"
SEARCH_DOMAIN_FILTER = [
    "hinduism.stackexchange.com",
    "sacred-texts.com",
    "vedabase.io",
]


async def first_successful(
    models: Sequence[str],
    call: Callable[[str], Awaitable[T]],
) -> T:
    """Return the result of the first model whose call succeeds.

    Raises:
        KnowledgeSearchUnavailable: When ``models`` is empty or every call
            raised KnowledgeSearchError.
    """
    errors: list[KnowledgeSearchError] = []
    for model in models:
        try:
            return await call(model)
        except KnowledgeSearchError as e:
            logger.warning(f"Knowledge search model {model} failed: {e.reason}")
            errors.append(e)

    if not errors:
        raise KnowledgeSearchUnavailable("No knowledge search models configured")
    raise KnowledgeSearchUnavailable(
        f"All {len(errors)} knowledge search models failed", errors=errors
    )


class KnowledgeSearchClient:
    """Client for the external knowledge-answer API."""

    def __init__(
        self,
        api_key: str | None,
        models: Sequence[str],
        system_prompts: dict[str, str],
        base_url: str = "https://api.perplexity.ai",
        timeout: float = 30.0,
        max_tokens: int = 500,
        temperature: float = 0.2,
        default_language: str = "en",
        client: httpx.AsyncClient | None = None,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.api_key = api_key
        self.models = list(models)
        self.system_prompts = system_prompts
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.default_language = default_language
        self.metrics = metrics
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        assets: KnowledgeAssets,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsBackend | None = None,
    ) -> KnowledgeSearchClient:
        system_prompts = {
            language: assets.response(language, "system_prompt")
            for language in assets.languages
        }
        return cls(
            api_key=settings.knowledge_search_api_key,
            models=settings.knowledge_search_models,
            system_prompts=system_prompts,
            base_url=settings.knowledge_search_base_url,
            timeout=settings.knowledge_search_timeout_seconds,
            max_tokens=settings.knowledge_search_max_tokens,
            temperature=settings.knowledge_search_temperature,
            default_language=assets.default_language,
            client=client,
            metrics=metrics,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.models)

    async def search(self, query: str, language: str) -> str:
        """Ask the external service for an answer.

        Args:
            query: The user's question, unmodified.
            language: Language code for the system prompt.

        Returns:
            The answer text (possibly empty when the service had nothing).

        Raises:
            KnowledgeSearchUnavailable: Not configured, or every model failed.
        """
        if not self.configured:
            raise KnowledgeSearchUnavailable("Knowledge search API key is not configured")

        system_prompt = self.system_prompts.get(
            language, self.system_prompts.get(self.default_language, "")
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": query},
        ]

        async def call(model: str) -> str:
            return await self._complete(model, messages)

        answer = await first_successful(self.models, call)
        return answer.strip()

    async def _complete(self, model: str, messages: list[dict[str, str]]) -> str:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": TOP_P,
            "return_images": False,
            "return_related_questions": False,
            "search_domain_filter": SEARCH_DOMAIN_FILTER,
            "search_recency_filter": SEARCH_RECENCY_FILTER,
            "frequency_penalty": FREQUENCY_PENALTY,
        }

        start = time.perf_counter()
        status_code = 0
        try:
            response = await self._client.post(
                "/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            status_code = response.status_code
        except httpx.HTTPError as e:
            raise KnowledgeSearchError(model, f"request failed: {e}") from e
        finally:
            self._observe(status_code, start)

        if response.status_code != 200:
            raise KnowledgeSearchError(
                model,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise KnowledgeSearchError(
                model, f"unexpected response shape: {e}", status_code=status_code
            ) from e

        logger.info(f"Knowledge search answered with model {model}")
        return content or ""

    def _observe(self, status_code: int, start: float) -> None:
        if self.metrics is None:
            return
        duration_ms = (time.perf_counter() - start) * 1000
        self.metrics.observe_external_api(PROVIDER, OPERATION, status_code, duration_ms)

    async def aclose(self) -> None:
        await self._client.aclose()
