"""Tests for the external knowledge-answer client."""

import json

import httpx
import pytest

from app.knowledge.errors import KnowledgeSearchError, KnowledgeSearchUnavailable
from app.observability import MetricsCollector
from app.services.knowledge_search import SEARCH_DOMAIN_FILTER, first_successful


def chat_completion(content: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={"choices": [{"message": {"role": "assistant", "content": content}}]},
    )


class TestFirstSuccessful:
    """Tests for the ordered model fallback."""

    async def test_returns_first_success(self):
        calls: list[str] = []

        async def call(model: str) -> str:
            calls.append(model)
            if model == "a":
                raise KnowledgeSearchError(model, "HTTP 503")
            return f"answer from {model}"

        assert await first_successful(["a", "b", "c"], call) == "answer from b"
        assert calls == ["a", "b"]

    async def test_all_models_fail(self):
        async def call(model: str) -> str:
            raise KnowledgeSearchError(model, "HTTP 500", status_code=500)

        with pytest.raises(KnowledgeSearchUnavailable) as exc_info:
            await first_successful(["a", "b"], call)

        assert exc_info.value.configured
        assert [e.model for e in exc_info.value.errors] == ["a", "b"]

    async def test_no_models(self):
        async def call(model: str) -> str:
            raise AssertionError("no model should be called")

        with pytest.raises(KnowledgeSearchUnavailable) as exc_info:
            await first_successful([], call)

        assert not exc_info.value.configured


class TestKnowledgeSearchClient:
    """Tests for KnowledgeSearchClient against a mock transport."""

    async def test_request_shape(self, make_search_client, assets):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return chat_completion("  Dharma is the order that sustains life.  ")

        client = make_search_client(handler)

        answer = await client.search("What is dharma?", "hi")

        assert answer == "Dharma is the order that sustains life."
        assert len(requests) == 1
        request = requests[0]
        assert request.url.path == "/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        payload = json.loads(request.content)
        assert payload["model"] == "sonar"
        assert payload["messages"] == [
            {"role": "system", "content": assets.response("hi", "system_prompt")},
            {"role": "user", "content": "What is dharma?"},
        ]
        assert payload["search_domain_filter"] == SEARCH_DOMAIN_FILTER

    async def test_falls_back_to_next_model(self, make_search_client):
        models: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            model = json.loads(request.content)["model"]
            models.append(model)
            if model == "sonar":
                return httpx.Response(429, text="rate limited")
            return chat_completion("Answer from the second model.")

        client = make_search_client(handler)

        assert await client.search("What is karma?", "en") == "Answer from the second model."
        assert models == ["sonar", "sonar-pro"]

    async def test_transport_and_shape_errors_fall_through(self, make_search_client):
        def handler(request: httpx.Request) -> httpx.Response:
            model = json.loads(request.content)["model"]
            if model == "sonar":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"choices": []})

        client = make_search_client(handler)

        with pytest.raises(KnowledgeSearchUnavailable) as exc_info:
            await client.search("What is karma?", "en")

        errors = exc_info.value.errors
        assert [e.model for e in errors] == ["sonar", "sonar-pro"]
        assert "request failed" in errors[0].reason
        assert "unexpected response shape" in errors[1].reason

    async def test_all_models_fail(self, make_search_client):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="upstream error")

        client = make_search_client(handler)

        with pytest.raises(KnowledgeSearchUnavailable) as exc_info:
            await client.search("What is karma?", "en")

        assert exc_info.value.configured
        assert [e.status_code for e in exc_info.value.errors] == [500, 500]

    async def test_not_configured(self, make_search_client):
        client = make_search_client(api_key=None)

        assert not client.configured
        with pytest.raises(KnowledgeSearchUnavailable) as exc_info:
            await client.search("What is karma?", "en")
        assert not exc_info.value.configured

    async def test_records_external_api_metrics(self, make_search_client):
        metrics = MetricsCollector()

        def handler(request: httpx.Request) -> httpx.Response:
            model = json.loads(request.content)["model"]
            if model == "sonar":
                return httpx.Response(503)
            return chat_completion("ok")

        client = make_search_client(handler, metrics=metrics)
        await client.search("What is karma?", "en")

        rendered = metrics.render_prometheus()
        assert (
            'external_api_requests_total{provider="perplexity",'
            'operation="chat_completion",status="503"} 1'
        ) in rendered
        assert (
            'external_api_requests_total{provider="perplexity",'
            'operation="chat_completion",status="200"} 1'
        ) in rendered
