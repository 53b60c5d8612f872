"""
Embedding provider tests over ``httpx.MockTransport``.
"""

import json

import httpx
import pytest
from pydantic import SecretStr

from noor_index.config import Settings
from noor_index.embeddings.embedder import (
    EmbeddingError,
    ProviderConfigurationError,
    RateLimitedError,
)
from noor_index.embeddings.providers import (
    BGE_QUERY_INSTRUCTION,
    GeminiEmbeddingProvider,
    HuggingFaceEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)

FAST = dict(max_retries=3, backoff_initial=0, backoff_max=0)


class Recorder:
    """Replays queued responses and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def transport(self):
        return httpx.MockTransport(self)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


class TestOpenAIProvider:
    """Tests for the OpenAI embeddings client."""

    async def test_results_are_ordered_by_index(self):
        """Verify embeddings are returned in input order."""
        recorder = Recorder(
            httpx.Response(
                200,
                json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
            )
        )
        provider = OpenAIEmbeddingProvider("sk-test", transport=recorder.transport, **FAST)

        vectors = await provider.embed_many(["a", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert recorder.requests[0].headers["Authorization"] == "Bearer sk-test"
        assert recorder.body() == {"model": "text-embedding-3-small", "input": ["a", "b"]}

    async def test_batches_requests(self):
        """Verify large inputs are split into several requests."""
        recorder = Recorder(
            httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}, {"index": 1, "embedding": [2.0]}]}),
            httpx.Response(200, json={"data": [{"index": 0, "embedding": [3.0]}]}),
        )
        provider = OpenAIEmbeddingProvider(
            "sk-test", batch_size=2, transport=recorder.transport, **FAST
        )

        assert await provider.embed_many(["a", "b", "c"]) == [[1.0], [2.0], [3.0]]
        assert len(recorder.requests) == 2

    async def test_count_mismatch(self):
        """Verify a short response raises EmbeddingError."""
        recorder = Recorder(httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]}))
        provider = OpenAIEmbeddingProvider("sk-test", transport=recorder.transport, **FAST)

        with pytest.raises(EmbeddingError):
            await provider.embed_many(["a", "b"])

    def test_dimension(self):
        """Verify the provider reports its model dimension."""
        assert OpenAIEmbeddingProvider("k", model="text-embedding-3-large").dimension() == 3072


class TestHuggingFaceProvider:
    """Tests for the Hugging Face Inference client."""

    async def test_query_gets_instruction_prefix(self):
        """Verify queries are embedded with the query instruction."""
        recorder = Recorder(httpx.Response(200, json=[[0.1, 0.2]]))
        provider = HuggingFaceEmbeddingProvider("hf-test", transport=recorder.transport, **FAST)

        await provider.embed_query("mercy")
        await provider.embed_one("mercy")

        assert recorder.body(0) == {"inputs": [f"{BGE_QUERY_INSTRUCTION}mercy"]}
        assert recorder.body(1) == {"inputs": ["mercy"]}
        assert recorder.requests[0].url.path.endswith("/BAAI/bge-m3/pipeline/feature-extraction")

    async def test_nested_rows_are_unwrapped(self):
        """Verify nested response rows are flattened."""
        recorder = Recorder(httpx.Response(200, json=[[[1.0, 2.0]], [[3.0, 4.0]]]))
        provider = HuggingFaceEmbeddingProvider("hf-test", transport=recorder.transport, **FAST)

        assert await provider.embed_many(["a", "b"]) == [[1.0, 2.0], [3.0, 4.0]]

    async def test_model_loading_is_retried(self):
        """Verify a loading model is retried until ready."""
        recorder = Recorder(
            httpx.Response(503, json={"error": "Model is currently loading", "estimated_time": 20.0}),
            httpx.Response(200, json=[[1.0, 0.0]]),
        )
        provider = HuggingFaceEmbeddingProvider("hf-test", transport=recorder.transport, **FAST)

        assert await provider.embed_many(["a"]) == [[1.0, 0.0]]
        assert len(recorder.requests) == 2


class TestRetryPolicy:
    """Tests for retrying transient provider failures."""

    async def test_rate_limit_retries_then_gives_up(self):
        """Verify rate limiting is retried a bounded number of times."""
        recorder = Recorder(httpx.Response(429, json={"error": "slow down"}))
        provider = HuggingFaceEmbeddingProvider("hf-test", transport=recorder.transport, **FAST)

        with pytest.raises(RateLimitedError):
            await provider.embed_many(["a"])
        assert len(recorder.requests) == 3

    async def test_server_error_then_success(self):
        """Verify a transient server error is retried."""
        recorder = Recorder(
            httpx.Response(502, text="bad gateway"),
            httpx.ConnectError("connection reset"),
            httpx.Response(200, json=[[0.5]]),
        )
        provider = HuggingFaceEmbeddingProvider("hf-test", transport=recorder.transport, **FAST)

        assert await provider.embed_many(["a"]) == [[0.5]]
        assert len(recorder.requests) == 3

    async def test_rejected_key_is_not_retried(self):
        """Verify an authentication error fails immediately."""
        recorder = Recorder(httpx.Response(401, json={"error": "invalid token"}))
        provider = HuggingFaceEmbeddingProvider("bad", transport=recorder.transport, **FAST)

        with pytest.raises(ProviderConfigurationError):
            await provider.embed_many(["a"])
        assert len(recorder.requests) == 1


class TestGeminiProvider:
    """Tests for the Gemini embeddings client."""

    async def test_documents_and_queries_use_task_types(self):
        """Verify documents and queries use distinct task types."""
        recorder = Recorder(
            httpx.Response(200, json={"embeddings": [{"values": [1.0, 0.0]}, {"values": [0.0, 1.0]}]}),
            httpx.Response(200, json={"embedding": {"values": [0.5, 0.5]}}),
        )
        provider = GeminiEmbeddingProvider("g-key", transport=recorder.transport, **FAST)

        assert await provider.embed_many(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]
        assert await provider.embed_query("q") == [0.5, 0.5]

        batch, query = recorder.requests
        assert batch.url.path.endswith("/models/embedding-001:batchEmbedContents")
        assert batch.headers["x-goog-api-key"] == "g-key"
        assert {r["taskType"] for r in recorder.body(0)["requests"]} == {"RETRIEVAL_DOCUMENT"}
        assert query.url.path.endswith("/models/embedding-001:embedContent")
        assert recorder.body(1)["taskType"] == "RETRIEVAL_QUERY"
        assert provider.dimension() == 768


class TestFactory:
    """Tests for provider selection from settings."""

    def test_missing_key(self):
        """Verify a missing API key raises ProviderConfigurationError."""
        cfg = Settings(embedding_provider="openai", openai_api_key=None)
        with pytest.raises(ProviderConfigurationError):
            create_embedding_provider(config=cfg)

    def test_unknown_provider(self):
        """Verify an unknown provider name is rejected."""
        with pytest.raises(ProviderConfigurationError):
            create_embedding_provider("word2vec", config=Settings())

    @pytest.mark.parametrize(
        "name, field, expected",
        [
            ("openai", "openai_api_key", OpenAIEmbeddingProvider),
            ("huggingface", "huggingface_api_key", HuggingFaceEmbeddingProvider),
            ("gemini", "gemini_api_key", GeminiEmbeddingProvider),
        ],
    )
    def test_selects_configured_provider(self, name, field, expected):
        """Verify the configured provider is constructed."""
        cfg = Settings(embedding_provider=name, **{field: SecretStr("key")})
        assert isinstance(create_embedding_provider(config=cfg), expected)
