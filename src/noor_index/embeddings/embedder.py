"""
Embedding Provider Interface

This module defines the small capability interface every embedding backend
implements, and the shared HTTP plumbing used by the hosted providers:

- Transport and status-code classification (rate limit, model loading,
  transient 5xx, configuration problems)
- Bounded exponential-backoff retries for the retryable classes
- Strict response validation, left to each concrete provider

Providers are selected once at startup from explicit configuration (see
``providers.create_embedding_provider``); callers only ever see
``EmbeddingProvider``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import settings

logger = logging.getLogger("noor.embedder")


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class EmbeddingError(RuntimeError):
    """Raised when embedding generation fails."""


class ProviderConfigurationError(EmbeddingError):
    """Raised when credentials or the model name are missing or rejected."""


class RateLimitedError(EmbeddingError):
    """Raised when the provider answers 429."""


class ModelLoadingError(EmbeddingError):
    """Raised when a hosted model is still being loaded (cold start)."""


class TransientProviderError(EmbeddingError):
    """Raised on 5xx responses and network-level failures."""


RETRYABLE_ERRORS = (RateLimitedError, ModelLoadingError, TransientProviderError)


# ---------------------------------------------------------------------
# Capability Interface
# ---------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """
    Embeds texts into fixed-dimension vectors.

    ``embed_query`` may apply a different instruction prefix or task type
    than document embedding; by default it is identical to ``embed_one``.
    """

    name: str = "base"

    @abstractmethod
    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed a batch of document texts, preserving input order."""

    @abstractmethod
    def dimension(self) -> int:
        """Return the vector dimension produced by the configured model."""

    async def embed_one(self, text: str) -> List[float]:
        vectors = await self.embed_many([text])
        if len(vectors) != 1:
            raise EmbeddingError(
                f"Expected exactly one embedding, received {len(vectors)}."
            )
        return vectors[0]

    async def embed_query(self, text: str) -> List[float]:
        return await self.embed_one(text)


# ---------------------------------------------------------------------
# HTTP Base
# ---------------------------------------------------------------------

def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Embedding request failed (%s), retry %d in %.1fs",
        type(exc).__name__,
        retry_state.attempt_number,
        wait,
    )


class HttpEmbeddingProvider(EmbeddingProvider):
    """
    Base class for providers reached over HTTPS.

    Each request is retried on ``RETRYABLE_ERRORS`` with exponential backoff
    up to ``max_retries`` attempts; the final failure is re-raised unchanged.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_initial: Optional[float] = None,
        backoff_max: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout if timeout is not None else settings.embedding_timeout
        self.max_retries = (
            max_retries if max_retries is not None else settings.embedding_max_retries
        )
        self.backoff_initial = (
            backoff_initial
            if backoff_initial is not None
            else settings.embedding_backoff_initial
        )
        self.backoff_max = (
            backoff_max if backoff_max is not None else settings.embedding_backoff_max
        )
        self._transport = transport

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> Any:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(max(1, self.max_retries)),
            wait=wait_exponential(
                multiplier=self.backoff_initial,
                max=self.backoff_max,
            ),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._post_once(url, payload, headers)

    async def _post_once(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> Any:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(url, json=payload, headers=headers)
            except httpx.TransportError as exc:
                raise TransientProviderError(
                    f"{self.name} embedding transport failure: {type(exc).__name__}"
                ) from exc

        self._raise_for_status(response)

        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingError(f"{self.name} returned a non-JSON body.") from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        body = response.text[:500]
        logger.error("%s embedding request returned %d: %s", self.name, status, body)

        if status == 429:
            raise RateLimitedError(f"{self.name} rate limit exceeded.")
        if status == 503 and self._is_model_loading(response):
            raise ModelLoadingError(f"{self.name} model is still loading.")
        if status >= 500:
            raise TransientProviderError(f"{self.name} server error {status}.")
        if status in (401, 403):
            raise ProviderConfigurationError(
                f"{self.name} rejected the API key (HTTP {status})."
            )
        if status == 404:
            raise ProviderConfigurationError(f"{self.name} model not found.")
        raise EmbeddingError(f"{self.name} embedding request failed with HTTP {status}.")

    @staticmethod
    def _is_model_loading(response: httpx.Response) -> bool:
        try:
            data = response.json()
        except ValueError:
            return "loading" in response.text.lower()
        if isinstance(data, dict):
            if "estimated_time" in data:
                return True
            return "loading" in str(data.get("error", "")).lower()
        return False

    @staticmethod
    def _validate_vector(emb: Any, index: int) -> List[float]:
        if (
            not isinstance(emb, list)
            or not emb
            or not all(isinstance(x, (float, int)) for x in emb)
        ):
            raise EmbeddingError(
                f"Invalid embedding vector at index {index}: must be a non-empty float list."
            )
        return [float(x) for x in emb]
