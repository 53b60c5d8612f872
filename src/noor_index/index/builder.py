"""
Index Build Orchestrator

Pulls documents from the corpus source, samples them down to the configured
cap, then embeds and inserts them batch by batch in monotonic id order.

Build Lifecycle
---------------
UNINITIALIZED -> SAMPLING_PLANNED -> EMBEDDING <-> CHECKPOINTED -> COMPLETE
                                      |
                                      +-> FAILED (after a best-effort checkpoint)

Because batch N+1 never starts before batch N is fully inserted, the
documents embedded so far always form a contiguous id prefix. Checkpoints
persist that prefix; a restarted build resumes right after it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..config import settings
from ..corpus import CorpusSource, CorpusSourceError
from ..db.embedding_repository import EmbeddingRepository, EmbeddingRow
from ..embeddings.embedder import EmbeddingError, EmbeddingProvider, ProviderConfigurationError
from ..embeddings.vectors import normalize_vector
from ..models import Document
from ..shards.manager import ShardError
from .ann import AnnIndexRepository, IndexPersistenceError
from .reconcile import MirrorOutbox, Reconciler
from .sampling import plan_documents

logger = logging.getLogger("noor.builder")


class IndexBuildError(RuntimeError):
    """Raised when the build cannot proceed."""


class BuildState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SAMPLING_PLANNED = "sampling_planned"
    EMBEDDING = "embedding"
    CHECKPOINTED = "checkpointed"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class BuildResult:
    metadata: List[Document]
    target: int
    resumed_from: int
    embedded: int
    reused: int
    short_circuited: bool = False


class IndexBuilder:
    """
    Builds (or resumes building) the ANN index and, optionally, mirrors
    every embedded row into the sharded ``EmbeddingRepository``.

    One builder instance runs one build; it is not safe to run two builds
    against the same ``AnnIndexRepository`` concurrently.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        corpus: CorpusSource,
        ann: AnnIndexRepository,
        repository: Optional[EmbeddingRepository] = None,
        kinds: Optional[Sequence[str]] = None,
        max_documents: Optional[int] = None,
        batch_size: Optional[int] = None,
        delay_ms: Optional[int] = None,
        checkpoint_every: Optional[int] = None,
        mirror: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._corpus = corpus
        self._ann = ann
        self._repository = repository

        self._kinds = list(kinds) if kinds is not None else settings.corpus_kind_list()
        self._max_documents = (
            max_documents if max_documents is not None else settings.max_documents_to_index
        )
        self._batch_size = max(1, batch_size or settings.embedding_batch_size)
        self._delay_ms = delay_ms if delay_ms is not None else settings.embedding_delay_ms
        self._checkpoint_every = max(
            1, checkpoint_every if checkpoint_every is not None else settings.checkpoint_every
        )
        self._mirror = mirror if mirror is not None else settings.mirror_to_shards
        if self._mirror and repository is None:
            raise IndexBuildError("Mirroring requires an EmbeddingRepository.")
        self._sleep = sleep

        self.state = BuildState.UNINITIALIZED
        self.metadata: List[Document] = []
        self._outbox = MirrorOutbox()
        self._target = 0

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan(self) -> List[Document]:
        """
        Fetch every corpus and sample it down to the global cap.
        """
        corpora = []
        for kind in self._kinds:
            records = await self._corpus.list_documents(kind)
            corpora.append((kind, records))

        documents = plan_documents(corpora, self._max_documents)

        total = sum(len(records) for _, records in corpora)
        logger.info("Data summary: %d documents available, processing %d", total, len(documents))
        for kind, records in corpora:
            sampled = sum(1 for d in documents if d.type.value == kind)
            logger.info("  %s: %d (sampling %d)", kind, len(records), sampled)
        logger.info(
            "  batch size %d, delay between batches %dms", self._batch_size, self._delay_ms
        )

        self.state = BuildState.SAMPLING_PLANNED
        return documents

    @staticmethod
    def _matches_prefix(prefix: Sequence[Document], documents: Sequence[Document]) -> bool:
        if len(prefix) > len(documents):
            return False
        return all(
            doc.id == i and doc.source == documents[i].source and doc.text == documents[i].text
            for i, doc in enumerate(prefix)
        )

    async def _resume_point(self, documents: Sequence[Document]) -> int:
        """
        Load a previous snapshot and return the first position still to embed.

        Any snapshot that is not a prefix of the planned documents is
        discarded and the build starts from zero.
        """
        try:
            loaded = await self._ann.load_index()
        except IndexPersistenceError as exc:
            logger.warning("Existing index could not be loaded (%s); starting fresh.", exc)
            loaded = None

        if loaded is not None:
            prefix = loaded.metadata
            if self._ann.count == len(prefix) and self._matches_prefix(prefix, documents):
                self.metadata = list(prefix)
                self._outbox = MirrorOutbox(loaded.extra.get("pending_mirror", []))
                return len(prefix)
            logger.warning(
                "Existing index (%d points) does not match the planned documents; rebuilding.",
                len(prefix),
            )

        self._ann.init_index(len(documents))
        self.metadata = []
        self._outbox = MirrorOutbox()
        return 0

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build(self) -> BuildResult:
        """
        Run the build to completion.

        Raises
        ------
        Exception
            Any batch failure, after a best-effort checkpoint of everything
            embedded so far.
        """
        try:
            documents = await self.plan()
        except CorpusSourceError:
            self.state = BuildState.FAILED
            logger.error("Corpus source is unreachable; aborting index build.")
            raise

        self._target = len(documents)
        start = await self._resume_point(documents)

        if start > 0 and self._mirror and len(self._outbox):
            drained = await Reconciler(self._ann, self._repository).drain(
                self._outbox, self.metadata
            )
            if drained:
                await self._checkpoint()

        if start >= self._target and start > 0:
            logger.info("Index already complete with %d documents; nothing to do.", start)
            self.state = BuildState.COMPLETE
            return BuildResult(
                metadata=self.metadata,
                target=self._target,
                resumed_from=start,
                embedded=0,
                reused=0,
                short_circuited=True,
            )

        if start > 0:
            logger.info("Resuming index build at document %d of %d", start, self._target)
        else:
            logger.info("Generating embeddings for %d documents...", self._target)

        existing_ids: Set[int] = set()
        if self._mirror:
            existing_ids = await self._repository.get_existing_document_ids()

        embedded = reused = 0
        since_checkpoint = 0
        self.state = BuildState.EMBEDDING

        for batch_start in range(start, self._target, self._batch_size):
            batch = documents[batch_start : batch_start + self._batch_size]
            try:
                batch_embedded, batch_reused = await self._process_batch(batch, existing_ids)
                embedded += batch_embedded
                reused += batch_reused
                since_checkpoint += len(batch)

                if since_checkpoint >= self._checkpoint_every:
                    await self._checkpoint()
                    since_checkpoint = 0
                    self.state = BuildState.EMBEDDING
            except Exception as exc:
                self.state = BuildState.FAILED
                self._log_failure(exc, batch_start)
                await self._checkpoint(best_effort=True)
                self.state = BuildState.FAILED
                raise

            done = len(self.metadata)
            logger.info(
                "Embedded %d/%d documents (%d%%)",
                done,
                self._target,
                round(done / self._target * 100),
            )

            if batch_start + self._batch_size < self._target and self._delay_ms > 0:
                await self._sleep(self._delay_ms / 1000.0)

        await self._checkpoint()
        self.state = BuildState.COMPLETE
        logger.info("Index built with %d documents.", len(self.metadata))

        return BuildResult(
            metadata=self.metadata,
            target=self._target,
            resumed_from=start,
            embedded=embedded,
            reused=reused,
        )

    async def _process_batch(
        self,
        batch: Sequence[Document],
        existing_ids: Set[int],
    ) -> Tuple[int, int]:
        stored: Dict[int, EmbeddingRow] = {}
        if self._mirror:
            reuse_ids = [doc.id for doc in batch if doc.id in existing_ids]
            if reuse_ids:
                stored = await self._repository.fetch_by_ids(reuse_ids)

        to_embed = [doc for doc in batch if doc.id not in stored]
        vectors = (
            await self._provider.embed_many([doc.text for doc in to_embed]) if to_embed else []
        )
        if len(vectors) != len(to_embed):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embeddings for {len(to_embed)} documents."
            )

        fresh = {doc.id: normalize_vector(vec) for doc, vec in zip(to_embed, vectors)}
        new_rows = [EmbeddingRow(id=doc.id, embedding=fresh[doc.id], document=doc) for doc in to_embed]

        if self._mirror and new_rows:
            self._outbox.record(row.id for row in new_rows)

        for doc in batch:
            vector = fresh[doc.id] if doc.id in fresh else normalize_vector(stored[doc.id].embedding)
            self._ann.add_point(vector, doc.id)
            self.metadata.append(doc)

        if self._mirror and new_rows:
            ids = [row.id for row in new_rows]
            await self._repository.insert_batch(new_rows)
            self._outbox.complete(ids)
            existing_ids.update(ids)

        return len(to_embed), len(stored)

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------

    async def _checkpoint(self, best_effort: bool = False) -> None:
        extra = {"target": self._target, "pending_mirror": self._outbox.pending()}
        try:
            await self._ann.save_index(self.metadata, extra)
        except Exception:
            if not best_effort:
                raise
            logger.exception("Best-effort checkpoint failed")
            return

        self.state = BuildState.CHECKPOINTED
        logger.info("Checkpoint saved at %d/%d documents", len(self.metadata), self._target)

    def _log_failure(self, exc: Exception, batch_start: int) -> None:
        if isinstance(exc, ProviderConfigurationError):
            logger.error(
                "Embedding provider credentials are missing or invalid (batch at %d): %s",
                batch_start,
                exc,
            )
        elif isinstance(exc, EmbeddingError):
            logger.error("Embedding failed for batch starting at %d: %s", batch_start, exc)
        elif isinstance(exc, ShardError):
            logger.error("Mirror write failed for batch starting at %d: %s", batch_start, exc)
        else:
            logger.exception("Index build failed at batch starting at %d", batch_start)
