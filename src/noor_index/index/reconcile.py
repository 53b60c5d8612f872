"""
Mirror Outbox and Reconciliation

The ANN index and the sharded relational mirror are written one after the
other, never in one transaction. The outbox records which document ids were
intended for the mirror and not yet confirmed; it is persisted with every
index checkpoint. The reconciler compares the mirror's id set with the
index's point set and re-upserts rows the mirror is missing, using the
vectors stored in the index.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set

from ..db.embedding_repository import EmbeddingRepository, EmbeddingRow
from ..models import Document
from .ann import AnnIndexRepository

logger = logging.getLogger("noor.reconcile")

REPAIR_BATCH_SIZE = 100


class MirrorOutbox:
    """Document ids written to the index whose mirror upsert is unconfirmed."""

    def __init__(self, pending: Iterable[int] = ()) -> None:
        self._pending: Set[int] = {int(i) for i in pending}

    def record(self, ids: Iterable[int]) -> None:
        self._pending.update(ids)

    def complete(self, ids: Iterable[int]) -> None:
        self._pending.difference_update(ids)

    def pending(self) -> List[int]:
        return sorted(self._pending)

    def __len__(self) -> int:
        return len(self._pending)


class ReconciliationReport(NamedTuple):
    missing_in_mirror: List[int]
    missing_in_index: List[int]
    repaired: int


class Reconciler:
    """
    Compares ``EmbeddingRepository.get_existing_document_ids()`` against the
    ANN index and repairs the mirror side.

    Rows present in the mirror but absent from the index are only reported;
    the index is append-only in id order and is repaired by re-running the
    build.
    """

    def __init__(self, ann: AnnIndexRepository, repository: EmbeddingRepository) -> None:
        self._ann = ann
        self._repository = repository

    async def _repair(self, ids: Sequence[int], metadata: Sequence[Document]) -> int:
        by_id: Dict[int, Document] = {doc.id: doc for doc in metadata}
        rows = [
            EmbeddingRow(id=doc_id, embedding=self._ann.reconstruct(doc_id), document=by_id[doc_id])
            for doc_id in ids
            if doc_id in by_id
        ]
        for start in range(0, len(rows), REPAIR_BATCH_SIZE):
            await self._repository.insert_batch(rows[start : start + REPAIR_BATCH_SIZE])
        return len(rows)

    async def reconcile(
        self,
        metadata: Sequence[Document],
        repair: bool = True,
    ) -> ReconciliationReport:
        mirror_ids = await self._repository.get_existing_document_ids()
        index_ids = self._ann.ids()

        missing_in_mirror = sorted(index_ids - mirror_ids)
        missing_in_index = sorted(mirror_ids - index_ids)

        repaired = 0
        if repair and missing_in_mirror:
            repaired = await self._repair(missing_in_mirror, metadata)

        if missing_in_mirror or missing_in_index:
            logger.warning(
                "Reconciliation: %d missing in mirror (%d repaired), %d missing in index",
                len(missing_in_mirror),
                repaired,
                len(missing_in_index),
            )
        else:
            logger.info("Reconciliation: index and mirror agree on %d ids", len(index_ids))

        return ReconciliationReport(
            missing_in_mirror=missing_in_mirror,
            missing_in_index=missing_in_index,
            repaired=repaired,
        )

    async def drain(self, outbox: MirrorOutbox, metadata: Sequence[Document]) -> int:
        """
        Re-upsert every pending outbox id that is in the index and mark it
        complete.
        """
        index_ids = self._ann.ids()
        pending = [doc_id for doc_id in outbox.pending() if doc_id in index_ids]
        if not pending:
            return 0
        repaired = await self._repair(pending, metadata)
        outbox.complete(pending)
        logger.info("Drained %d pending mirror writes", repaired)
        return repaired

    async def run_periodic(
        self,
        interval_seconds: float,
        metadata_provider: Callable[[], Sequence[Document]],
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Reconcile every ``interval_seconds`` until cancelled or ``stop`` is set.
        """
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.reconcile(metadata_provider())
            except Exception:
                logger.exception("Periodic reconciliation failed")
