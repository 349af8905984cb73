import json

import httpx
import pytest

from ctx_engine.core.errors import ConfigurationError, ProviderError
from ctx_engine.infrastructure.embeddings.gemini import GeminiEmbeddingProvider


def _provider(handler, **kwargs) -> GeminiEmbeddingProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GeminiEmbeddingProvider(api_key="test-key", dimension=3, client=client, **kwargs)


def test_requires_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    with pytest.raises(ConfigurationError):
        GeminiEmbeddingProvider()


def test_reads_api_key_from_environment(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")

    provider = GeminiEmbeddingProvider(model_name="models/gemini-embedding-001")

    assert provider.model_name == "gemini-embedding-001"
    provider.close()


def test_embed_texts_sends_batch_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        count = len(seen["body"]["requests"])
        return httpx.Response(200, json={"embeddings": [{"values": [1, 2, i]} for i in range(count)]})

    provider = _provider(handler)

    vectors = provider.embed_texts(["one", "two"], "RETRIEVAL_DOCUMENT")

    assert vectors == [[1.0, 2.0, 0.0], [1.0, 2.0, 1.0]]
    assert "models/gemini-embedding-001:batchEmbedContents" in seen["url"]
    assert "key=test-key" in seen["url"]
    first = seen["body"]["requests"][0]
    assert first["taskType"] == "RETRIEVAL_DOCUMENT"
    assert first["outputDimensionality"] == 3
    assert first["content"]["parts"][0]["text"] == "one"


def test_empty_input_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert _provider(handler).embed_texts([], "RETRIEVAL_DOCUMENT") == []


def test_http_error_becomes_provider_error():
    provider = _provider(lambda request: httpx.Response(429, text="quota exceeded"))

    with pytest.raises(ProviderError, match="429"):
        provider.embed_texts(["x"], "RETRIEVAL_DOCUMENT")


def test_timeout_becomes_provider_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderError, match="timed out"):
        _provider(handler).embed_texts(["x"], "CODE_RETRIEVAL_QUERY", timeout=0.1)


def test_count_mismatch_is_rejected():
    provider = _provider(lambda request: httpx.Response(200, json={"embeddings": [{"values": [1, 0, 0]}]}))

    with pytest.raises(ProviderError, match="1 embeddings for 2 inputs"):
        provider.embed_texts(["a", "b"], "RETRIEVAL_DOCUMENT")


def test_malformed_response_is_rejected():
    provider = _provider(lambda request: httpx.Response(200, json={"unexpected": True}))

    with pytest.raises(ProviderError, match="Unexpected"):
        provider.embed_texts(["a"], "RETRIEVAL_DOCUMENT")
