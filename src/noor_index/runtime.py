"""
Component wiring shared by the API process and the operator scripts.

Configuration problems never prevent construction: a missing shard URL
disables the mirror and a missing provider key yields a degraded service
with an empty index.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import settings
from .corpus import CachedCorpusSource
from .db.embedding_repository import EmbeddingRepository
from .embeddings.embedder import EmbeddingProvider, ProviderConfigurationError
from .embeddings.providers import create_embedding_provider
from .index.blob_store import BlobStoreError, FileBlobStore, create_blob_store
from .index.service import VectorService
from .shards.manager import NoShardsConfiguredError, ShardManager

logger = logging.getLogger("noor.runtime")


def create_shard_manager() -> Optional[ShardManager]:
    """Return an initialized ``ShardManager``, or ``None`` without shard URLs."""
    manager = ShardManager()
    try:
        manager.initialize()
    except NoShardsConfiguredError as exc:
        logger.warning("Sharded storage disabled: %s", exc)
        return None
    return manager


def create_provider() -> Optional[EmbeddingProvider]:
    try:
        return create_embedding_provider()
    except ProviderConfigurationError as exc:
        logger.error("Embedding provider credentials are missing: %s", exc)
        return None


def create_vector_service(
    shard_manager: Optional[ShardManager],
    provider: Optional[EmbeddingProvider] = None,
) -> VectorService:
    repository = EmbeddingRepository(shard_manager) if shard_manager else None

    mirror = settings.mirror_to_shards
    if mirror and repository is None:
        logger.error("MIRROR_TO_SHARDS is set but no shards are configured; mirroring disabled.")
        mirror = False

    try:
        blob_store = create_blob_store(shard_manager)
    except BlobStoreError as exc:
        logger.error("Index blob store misconfigured (%s); using the local file store.", exc)
        blob_store = FileBlobStore()

    return VectorService(
        provider=provider if provider is not None else create_provider(),
        corpus=CachedCorpusSource(),
        blob_store=blob_store,
        repository=repository,
        mirror=mirror,
    )
