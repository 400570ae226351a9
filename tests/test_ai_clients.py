"""Tests for embedding and completion providers."""

import json
import math

import httpx
import pytest

from factories import make_settings
from labelops.v1.ai.clients import (
    AIServiceError,
    OpenAICompatibleCompletionProvider,
    OpenAICompatibleEmbeddingProvider,
    StubCompletionProvider,
    StubEmbeddingProvider,
)
from labelops.v1.ai.scoring import parse_scores


@pytest.fixture
def ai_settings():
    return make_settings(
        ai_base_url="https://ai.test/v1",
        ai_api_key="sk-test",
        embedding_model="embed-small",
        app_base_url="https://labelops.test",
    )


def _transport(handler):
    requests = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(record), requests


def _client(transport: httpx.MockTransport) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=transport)


class TestStubProviders:
    async def test_embeddings_are_deterministic_and_normalized(self):
        provider = StubEmbeddingProvider(dimension=64)

        first, second, blank = await provider.embed(["Hello World", " hello world ", "  "])

        assert len(first) == 64
        assert first == second
        assert math.isclose(math.sqrt(sum(x * x for x in first)), 1.0)
        assert blank == []
        assert provider.get_model_version() == "stub-64"

    async def test_completion_is_parseable(self):
        result = await StubCompletionProvider(realism=6, quality=2).complete(
            "any-model", "rate this"
        )

        scores = parse_scores(result.content)
        assert (scores.realism, scores.quality) == (6, 2)
        assert result.total_tokens == result.prompt_tokens + result.completion_tokens


class TestOpenAICompatibleEmbeddings:
    async def test_embeds_batch_in_index_order(self, ai_settings):
        transport, requests = _transport(
            lambda request: httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.3, 0.4]},
                        {"index": 0, "embedding": [0.1, 0.2]},
                    ]
                },
            )
        )
        provider = OpenAICompatibleEmbeddingProvider(ai_settings, http_client=_client(transport))

        vectors = await provider.embed(["first", "second"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        (request,) = requests
        assert str(request.url) == "https://ai.test/v1/embeddings"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["HTTP-Referer"] == "https://labelops.test"
        assert json.loads(request.content) == {
            "model": "embed-small",
            "input": ["first", "second"],
            "encoding_format": "float",
        }
        assert provider.get_model_version() == "embed-small"

    async def test_empty_input_makes_no_request(self, ai_settings):
        transport, requests = _transport(lambda request: httpx.Response(500))
        provider = OpenAICompatibleEmbeddingProvider(ai_settings, http_client=_client(transport))

        assert await provider.embed([]) == []
        assert requests == []

    async def test_missing_vectors_fail_the_batch(self, ai_settings):
        transport, _ = _transport(
            lambda request: httpx.Response(200, json={"data": [{"embedding": [0.1]}]})
        )
        provider = OpenAICompatibleEmbeddingProvider(ai_settings, http_client=_client(transport))

        with pytest.raises(AIServiceError, match="Expected 2 embeddings"):
            await provider.embed(["first", "second"])

    async def test_http_error_status(self, ai_settings):
        transport, _ = _transport(lambda request: httpx.Response(429, text="slow down"))
        provider = OpenAICompatibleEmbeddingProvider(ai_settings, http_client=_client(transport))

        with pytest.raises(AIServiceError) as exc_info:
            await provider.embed(["first"])
        assert exc_info.value.status_code == 429

    async def test_connection_error(self, ai_settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport, _ = _transport(handler)
        provider = OpenAICompatibleEmbeddingProvider(ai_settings, http_client=_client(transport))

        with pytest.raises(AIServiceError, match="failed"):
            await provider.embed(["first"])


class TestOpenAICompatibleCompletions:
    async def test_completes_with_system_prompt(self, ai_settings):
        transport, requests = _transport(
            lambda request: httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": '{"realism": 4, "quality": 5}'}}],
                    "usage": {"prompt_tokens": 30, "completion_tokens": 9, "total_tokens": 39},
                },
            )
        )
        provider = OpenAICompatibleCompletionProvider(ai_settings, http_client=_client(transport))

        result = await provider.complete("model-a", "rate this", system_prompt="be strict")

        assert result.content == '{"realism": 4, "quality": 5}'
        assert (result.prompt_tokens, result.completion_tokens, result.total_tokens) == (
            30,
            9,
            39,
        )
        body = json.loads(requests[0].content)
        assert str(requests[0].url) == "https://ai.test/v1/chat/completions"
        assert body["model"] == "model-a"
        assert body["messages"] == [
            {"role": "system", "content": "be strict"},
            {"role": "user", "content": "rate this"},
        ]

    async def test_empty_choice_is_an_error(self, ai_settings):
        transport, _ = _transport(
            lambda request: httpx.Response(200, json={"choices": []})
        )
        provider = OpenAICompatibleCompletionProvider(ai_settings, http_client=_client(transport))

        with pytest.raises(AIServiceError, match="Empty response"):
            await provider.complete("model-a", "rate this")

    async def test_server_error_keeps_status(self, ai_settings):
        transport, requests = _transport(
            lambda request: httpx.Response(503, json={"error": {"message": "overloaded"}})
        )
        provider = OpenAICompatibleCompletionProvider(ai_settings, http_client=_client(transport))

        with pytest.raises(AIServiceError) as exc_info:
            await provider.complete("model-a", "rate this")
        assert exc_info.value.status_code == 503
        # A failed record is retried by a later slice, not by the client
        assert len(requests) == 1

    async def test_missing_usage_counts_zero_tokens(self, ai_settings):
        transport, _ = _transport(
            lambda request: httpx.Response(
                200, json={"choices": [{"message": {"content": "ok"}}]}
            )
        )
        provider = OpenAICompatibleCompletionProvider(ai_settings, http_client=_client(transport))

        result = await provider.complete("model-a", "rate this")

        assert result.content == "ok"
        assert result.total_tokens == 0
