"""L1 Unit Tests: OpenAI-compatible provider over a mocked httpx transport."""

import json

import httpx
import pytest

from tiermem.core.errors import ProviderError
from tiermem.llm.providers import OpenAICompatProvider, create_provider


def make_provider(handler, **kwargs) -> OpenAICompatProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatProvider("https://llm.test/v1/", client=client, **kwargs)


class TestEmbed:
    async def test_request_and_order(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.0, 1.0]},
                        {"index": 0, "embedding": [1.0, 0.0]},
                    ]
                },
            )

        provider = make_provider(handler, embedding_model="embed-small", dimensions=2)
        vectors = await provider.embed(["a", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert seen["url"] == "https://llm.test/v1/embeddings"
        assert seen["body"] == {"model": "embed-small", "input": ["a", "b"], "dimensions": 2}

    async def test_partial_response_keeps_prefix(self):
        def handler(request):
            return httpx.Response(
                200,
                json={"data": [{"index": 0, "embedding": [1.0]}, {"index": 2, "embedding": [3.0]}]},
            )

        provider = make_provider(handler)
        assert await provider.embed(["a", "b", "c"]) == [[1.0]]

    async def test_empty_input_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await make_provider(handler).embed([]) == []

    async def test_malformed_payload(self):
        provider = make_provider(lambda r: httpx.Response(200, json={"nope": []}))
        with pytest.raises(ProviderError):
            await provider.embed(["a"])


class TestComplete:
    async def test_returns_message_content(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["messages"] == [{"role": "user", "content": "hi"}]
            return httpx.Response(200, json={"choices": [{"message": {"content": "0.7"}}]})

        assert await make_provider(handler).complete("hi") == "0.7"

    async def test_auth_header(self):
        provider = OpenAICompatProvider("https://llm.test/v1", api_key="sk-test")
        assert provider._client.headers["Authorization"] == "Bearer sk-test"
        await provider.close()

    async def test_null_content_is_empty(self):
        provider = make_provider(
            lambda r: httpx.Response(200, json={"choices": [{"message": {"content": None}}]})
        )
        assert await provider.complete("hi") == ""


class TestErrors:
    @pytest.mark.parametrize(
        "status,retryable", [(500, True), (503, True), (429, True), (400, False), (401, False)]
    )
    async def test_http_status(self, status, retryable):
        provider = make_provider(lambda r: httpx.Response(status, text="boom"))
        with pytest.raises(ProviderError) as exc:
            await provider.complete("hi")
        assert exc.value.retryable is retryable

    async def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = make_provider(handler)
        with pytest.raises(ProviderError) as exc:
            await provider.embed(["a"])
        assert exc.value.retryable

    async def test_call_after_error_is_sent(self):
        responses = [
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
        ]
        sent = []

        def handler(request):
            sent.append(request)
            return responses.pop(0)

        provider = make_provider(handler)
        with pytest.raises(ProviderError):
            await provider.complete("hi")
        # the queue owns backoff; the provider never short-circuits a call
        assert await provider.complete("hi") == "ok"
        assert len(sent) == 2


def test_create_provider_from_settings(settings):
    provider = create_provider(settings)
    assert provider.base_url == "https://api.openai.com/v1"
    assert provider.dimensions == settings.embedding_dimension
