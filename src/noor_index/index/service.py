"""
Vector Service

Owns the in-memory ANN index and its metadata for the lifetime of the
process and exposes the query-time API.

Lifecycle
---------
construct -> load_or_build -> serve -> shutdown

Builds run as a single background task against a fresh index instance; the
served index is only swapped once the build completes, so searches keep
hitting the previous snapshot while a build is in progress.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..config import settings
from ..corpus import CorpusSource
from ..db.embedding_repository import EmbeddingRepository
from ..embeddings.embedder import EmbeddingError, EmbeddingProvider
from ..embeddings.vectors import normalize_vector
from ..models import Document
from .ann import AnnIndexRepository, IndexPersistenceError
from .blob_store import BlobStore
from .builder import BuildResult, IndexBuilder
from .reconcile import Reconciler

logger = logging.getLogger("noor.service")


class IndexNotLoadedError(RuntimeError):
    """Raised when the service is queried before ``load_or_build``."""


class VectorService:
    """
    Query-time facade over the ANN index.

    Parameters
    ----------
    provider : Optional[EmbeddingProvider]
        ``None`` when provider credentials are missing; the service then
        runs degraded with an empty index.
    corpus : CorpusSource
        Source of documents for builds.
    blob_store : BlobStore
        Durable storage for index snapshots.
    repository : Optional[EmbeddingRepository]
        Sharded mirror, required when ``mirror`` is enabled.
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider],
        corpus: CorpusSource,
        blob_store: BlobStore,
        repository: Optional[EmbeddingRepository] = None,
        mirror: Optional[bool] = None,
        reconcile_interval_seconds: Optional[float] = None,
        builder_options: Optional[Dict[str, Any]] = None,
        ann_factory: Optional[Callable[[int, BlobStore], AnnIndexRepository]] = None,
    ) -> None:
        self._provider = provider
        self._corpus = corpus
        self._blob_store = blob_store
        self._repository = repository
        self._mirror = mirror if mirror is not None else settings.mirror_to_shards
        self._reconcile_interval = (
            reconcile_interval_seconds
            if reconcile_interval_seconds is not None
            else settings.reconcile_interval_seconds
        )
        self._builder_options = dict(builder_options or {})
        self._ann_factory = ann_factory or AnnIndexRepository

        self.ann: Optional[AnnIndexRepository] = (
            self._ann_factory(provider.dimension(), blob_store) if provider else None
        )
        self.loaded = False
        self.metadata: List[Document] = []
        self._by_id: Dict[int, Document] = {}

        self._build_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._reconcile_stop = asyncio.Event()
        self.last_build_error: Optional[str] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_metadata(self, metadata: List[Document]) -> None:
        self.metadata = list(metadata)
        self._by_id = {doc.id: doc for doc in self.metadata}

    def _degrade(self) -> None:
        if self.ann is not None:
            self.ann.init_index(0)
        self._set_metadata([])
        self.loaded = True
        logger.warning(
            "No index available; serving an empty index. "
            "Search returns no results until a build completes."
        )

    @property
    def building(self) -> bool:
        return self._build_task is not None and not self._build_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load_or_build(self, build_if_missing: bool = False) -> None:
        """
        Load the persisted snapshot, or rehydrate from the mirror, or fall
        back to an empty index.

        With ``build_if_missing`` a background build is scheduled when no
        snapshot could be loaded.
        """
        if self.loaded:
            logger.info("Index is already loaded in memory.")
            return

        if self.ann is None:
            logger.error("No embedding provider configured; search is disabled.")
            self._degrade()
            return

        try:
            loaded = await self.ann.load_index()
        except IndexPersistenceError as exc:
            logger.error("Failed to load persisted index: %s", exc)
            loaded = None

        if loaded is not None:
            self._set_metadata(loaded.metadata)
            self.loaded = True
            logger.info("Successfully loaded index with %d documents.", len(self.metadata))
            return

        if self._mirror and self._repository is not None:
            try:
                if await self._rehydrate_from_mirror():
                    return
            except Exception:
                logger.exception("Rehydrating the index from the shard mirror failed")

        self._degrade()
        if build_if_missing:
            self.build_index()

    async def _rehydrate_from_mirror(self) -> bool:
        rows = await self._repository.load_all_embeddings()
        if not rows:
            return False

        self.ann.init_index(len(rows))
        for row in rows:
            self.ann.add_point(normalize_vector(row.embedding), row.id)
        self._set_metadata([row.document for row in rows])
        self.loaded = True
        logger.info("Rehydrated index with %d documents from the shard mirror.", len(rows))

        try:
            await self.ann.save_index(self.metadata)
        except IndexPersistenceError as exc:
            logger.warning("Could not persist rehydrated index: %s", exc)
        return True

    def start_reconciliation(self) -> Optional[asyncio.Task]:
        """Start periodic mirror reconciliation when configured."""
        if not (self._mirror and self._repository and self.ann and self._reconcile_interval):
            return None
        if self._reconcile_task is None or self._reconcile_task.done():
            reconciler = Reconciler(self.ann, self._repository)
            self._reconcile_stop.clear()
            self._reconcile_task = asyncio.create_task(
                reconciler.run_periodic(
                    self._reconcile_interval, lambda: self.metadata, self._reconcile_stop
                )
            )
        return self._reconcile_task

    async def shutdown(self) -> None:
        self._reconcile_stop.set()
        for task in (self._reconcile_task, self._build_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Background task failed during shutdown")
        self._reconcile_task = None
        self._build_task = None
        logger.info("Vector service stopped")

    # ------------------------------------------------------------------
    # Query-time API
    # ------------------------------------------------------------------

    async def search(self, query_text: str, k: int = 5) -> List[Document]:
        """
        Return up to ``k`` documents, best match first.

        Provider failures degrade to an empty result.

        Raises
        ------
        IndexNotLoadedError
            If ``load_or_build`` has not run yet.
        """
        if not self.loaded:
            raise IndexNotLoadedError(
                "Index is not loaded. Ensure the service is initialized."
            )

        if not self.metadata or self.ann is None or self._provider is None:
            logger.warning("Search performed on an empty index. No results will be returned.")
            return []

        try:
            query_vector = await self._provider.embed_query(query_text)
        except EmbeddingError as exc:
            logger.error("Query embedding failed: %s", exc)
            return []

        ids = self.ann.search(normalize_vector(query_vector), k)
        return [self._by_id[i] for i in ids if i in self._by_id]

    def build_index(self) -> bool:
        """
        Schedule a background build and return immediately.

        Returns ``False`` when a build is already running; the request is
        still accepted and the running build continues.
        """
        if self.building:
            logger.info("Index build already in progress.")
            return False
        self._build_task = asyncio.create_task(self._run_build())
        self._build_task.add_done_callback(self._on_build_done)
        return True

    async def _run_build(self) -> BuildResult:
        if self._provider is None:
            raise IndexNotLoadedError("Cannot build: no embedding provider configured.")

        ann = self._ann_factory(self._provider.dimension(), self._blob_store)
        builder = IndexBuilder(
            self._provider,
            self._corpus,
            ann,
            self._repository,
            mirror=self._mirror,
            **self._builder_options,
        )
        result = await builder.build()

        self.ann = ann
        self._set_metadata(result.metadata)
        self.loaded = True

        # The running reconciler still points at the replaced index.
        if self._reconcile_task is not None and not self._reconcile_task.done():
            self._reconcile_task.cancel()
            self._reconcile_task = None
            self.start_reconciliation()
        return result

    def _on_build_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Index build cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self.last_build_error = f"{type(exc).__name__}: {exc}"
            logger.error("Background index build failed: %s", self.last_build_error)
            return
        self.last_build_error = None
        logger.info("Background index build finished with %d documents", len(self.metadata))

    async def wait_for_build(self) -> Optional[BuildResult]:
        """Await the running build, if any. Failures are re-raised."""
        if self._build_task is None:
            return None
        return await self._build_task

    def stats(self) -> Dict[str, Any]:
        return {
            "loaded": self.loaded,
            "documents": len(self.metadata),
            "index_points": self.ann.count if self.ann else 0,
            "capacity": self.ann.capacity if self.ann else 0,
            "dimension": self.ann.dimension if self.ann else None,
            "building": self.building,
            "last_build_error": self.last_build_error,
        }
