"""
Hosted Embedding Providers

Concrete ``EmbeddingProvider`` implementations for the supported hosted
APIs, plus the factory that selects one from configuration.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config import Settings, settings as default_settings
from .embedder import (
    EmbeddingError,
    EmbeddingProvider,
    HttpEmbeddingProvider,
    ProviderConfigurationError,
)

logger = logging.getLogger("noor.embedder")


# ---------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------

OPENAI_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbeddingProvider(HttpEmbeddingProvider):
    """
    OpenAI embeddings API (or any compatible endpoint).

    OpenAI returns:
        { "data": [ {"index": 0, "embedding": [...]}, ... ] }
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1/embeddings",
        batch_size: int = 20,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.batch_size = batch_size

    def dimension(self) -> int:
        return OPENAI_DIMENSIONS.get(self.model, 1536)

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        headers = {"Authorization": f"Bearer {self.api_key}"}
        all_embeddings: List[List[float]] = []

        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start : start + self.batch_size])
            data = await self._post_json(
                self.base_url,
                {"model": self.model, "input": batch},
                headers,
            )
            embeddings = self._extract_embeddings(data)
            if len(embeddings) != len(batch):
                raise EmbeddingError(
                    f"OpenAI returned {len(embeddings)} embeddings for {len(batch)} inputs."
                )
            all_embeddings.extend(embeddings)

        return all_embeddings

    def _extract_embeddings(self, data: Any) -> List[List[float]]:
        if not isinstance(data, dict) or "data" not in data:
            raise EmbeddingError("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingError("'data' field must be a list.")

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingError(
                    f"Malformed embedding record at index {index}: {record!r}"
                )

        ordered = sorted(records, key=lambda r: r.get("index", 0))
        return [
            self._validate_vector(record["embedding"], i)
            for i, record in enumerate(ordered)
        ]


# ---------------------------------------------------------------------
# Hugging Face Inference
# ---------------------------------------------------------------------

HUGGINGFACE_DIMENSIONS: Dict[str, int] = {
    "BAAI/bge-m3": 1024,
    "BAAI/bge-large-en-v1.5": 1024,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-small-en-v1.5": 384,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
    "intfloat/multilingual-e5-large": 1024,
    "intfloat/multilingual-e5-base": 768,
    "intfloat/multilingual-e5-small": 384,
}

# BGE retrieval models expect this prefix on queries only.
BGE_QUERY_INSTRUCTION = "Represent this sentence for searching relevant passages: "


class HuggingFaceEmbeddingProvider(HttpEmbeddingProvider):
    """
    Hugging Face Inference feature-extraction pipeline.

    A cold model answers 503 with ``estimated_time``; that is surfaced as
    ``ModelLoadingError`` and retried with backoff.
    """

    name = "huggingface"

    def __init__(
        self,
        api_key: str,
        model: str = "BAAI/bge-m3",
        base_url: str = "https://router.huggingface.co/hf-inference/models",
        query_instruction: str = BGE_QUERY_INSTRUCTION,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.query_instruction = query_instruction

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}/pipeline/feature-extraction"

    def dimension(self) -> int:
        return HUGGINGFACE_DIMENSIONS.get(self.model, 1024)

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        data = await self._post_json(
            self.endpoint,
            {"inputs": list(texts)},
            {"Authorization": f"Bearer {self.api_key}"},
        )

        if not isinstance(data, list) or len(data) != len(texts):
            raise EmbeddingError("Unexpected response format from Hugging Face API.")

        vectors: List[List[float]] = []
        for index, item in enumerate(data):
            # Some models return one row per input wrapped in an extra list.
            if isinstance(item, list) and item and isinstance(item[0], list):
                item = item[0]
            vectors.append(self._validate_vector(item, index))
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        return await self.embed_one(f"{self.query_instruction}{text}")


# ---------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------

class GeminiEmbeddingProvider(HttpEmbeddingProvider):
    """
    Google Generative Language embeddings.

    Documents use ``RETRIEVAL_DOCUMENT`` via ``batchEmbedContents`` (at most
    100 requests per call); queries use ``RETRIEVAL_QUERY``.
    """

    name = "gemini"
    max_batch = 100

    def __init__(
        self,
        api_key: str,
        model: str = "embedding-001",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")

    def dimension(self) -> int:
        return 768

    @property
    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    def _request(self, text: str, task_type: str) -> Dict[str, Any]:
        return {
            "model": f"models/{self.model}",
            "content": {"parts": [{"text": text}]},
            "taskType": task_type,
        }

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        url = f"{self.base_url}/models/{self.model}:batchEmbedContents"
        vectors: List[List[float]] = []

        for start in range(0, len(texts), self.max_batch):
            batch = texts[start : start + self.max_batch]
            data = await self._post_json(
                url,
                {"requests": [self._request(t, "RETRIEVAL_DOCUMENT") for t in batch]},
                self._headers,
            )
            embeddings = data.get("embeddings") if isinstance(data, dict) else None
            if not isinstance(embeddings, list) or len(embeddings) != len(batch):
                raise EmbeddingError("Gemini batch response missing 'embeddings'.")
            for index, record in enumerate(embeddings):
                values = record.get("values") if isinstance(record, dict) else None
                vectors.append(self._validate_vector(values, start + index))

        return vectors

    async def embed_query(self, text: str) -> List[float]:
        url = f"{self.base_url}/models/{self.model}:embedContent"
        data = await self._post_json(
            url,
            self._request(text, "RETRIEVAL_QUERY"),
            self._headers,
        )
        embedding = data.get("embedding") if isinstance(data, dict) else None
        values = embedding.get("values") if isinstance(embedding, dict) else None
        return self._validate_vector(values, 0)


# ---------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------

def _require_key(value: Any, env_name: str) -> str:
    if value is None:
        raise ProviderConfigurationError(f"{env_name} is not set.")
    secret = value.get_secret_value()
    if not secret:
        raise ProviderConfigurationError(f"{env_name} is not set.")
    return secret


def create_embedding_provider(
    provider: Optional[str] = None,
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingProvider:
    """
    Build the configured embedding provider.

    Raises
    ------
    ProviderConfigurationError
        If the provider name is unknown or its API key is missing.
    """
    cfg = config or default_settings
    name = (provider or cfg.embedding_provider).strip().lower()

    common: Dict[str, Any] = {
        "timeout": cfg.embedding_timeout,
        "max_retries": cfg.embedding_max_retries,
        "backoff_initial": cfg.embedding_backoff_initial,
        "backoff_max": cfg.embedding_backoff_max,
        "transport": transport,
    }

    if name == "openai":
        instance: EmbeddingProvider = OpenAIEmbeddingProvider(
            api_key=_require_key(cfg.openai_api_key, "OPENAI_API_KEY"),
            model=cfg.openai_embedding_model,
            **common,
        )
    elif name == "huggingface":
        instance = HuggingFaceEmbeddingProvider(
            api_key=_require_key(cfg.huggingface_api_key, "HUGGINGFACE_API_KEY"),
            model=cfg.huggingface_model,
            **common,
        )
    elif name == "gemini":
        instance = GeminiEmbeddingProvider(
            api_key=_require_key(cfg.gemini_api_key, "GEMINI_API_KEY"),
            model=cfg.gemini_embedding_model,
            **common,
        )
    else:
        raise ProviderConfigurationError(f"Unknown embedding provider: {name!r}")

    logger.info("Using embedding provider %s (dimension=%d)", name, instance.dimension())
    return instance
