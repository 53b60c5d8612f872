"""
Offline shard migration.

Routing is a pure function of ``(id, writable shard set)``. When the shard
set changes (a shard is added or retired) existing rows must be moved to
their new owner before the service is restarted; there is no live
rebalancing.

The migrator pages every configured shard in id order, copies each row whose
owner has changed to the new owner with an idempotent upsert and then deletes
it from the source. Progress is tracked as the last id scanned per shard so
an interrupted run can resume.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..db.embedding_repository import EmbeddingRepository, EmbeddingRow
from .manager import ShardManager

logger = logging.getLogger("noor.migration")

DEFAULT_MIGRATION_BATCH_SIZE = 50


@dataclass
class MigrationReport:
    scanned: int = 0
    moved: int = 0
    # shard id -> last id scanned on that shard
    progress: Dict[int, int] = field(default_factory=dict)
    moved_by_target: Dict[int, int] = field(default_factory=dict)


class ShardMigrator:
    """
    Re-routes stored rows after the writable shard set changed.
    """

    def __init__(
        self,
        repository: EmbeddingRepository,
        batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE,
        delete_source: bool = True,
    ) -> None:
        self._repository = repository
        self._shards: ShardManager = repository.shard_manager
        self._batch_size = max(1, batch_size)
        self._delete_source = delete_source

    def plan_moves(self, shard_id: int, rows: List[EmbeddingRow]) -> Dict[int, List[EmbeddingRow]]:
        """Group the rows of ``shard_id`` that belong elsewhere by their new owner."""
        moves: Dict[int, List[EmbeddingRow]] = defaultdict(list)
        for row in rows:
            owner = self._shards.route_document(row.id)
            if owner != shard_id:
                moves[owner].append(row)
        return moves

    async def migrate_shard(
        self,
        shard_id: int,
        report: MigrationReport,
        last_id: Optional[int] = None,
        on_batch: Optional[Callable[[MigrationReport], None]] = None,
    ) -> None:
        while True:
            rows = await self._repository.iter_shard_rows_after(shard_id, last_id, self._batch_size)
            if not rows:
                break

            moves = self.plan_moves(shard_id, rows)
            moving = [row for target_rows in moves.values() for row in target_rows]
            if moving:
                await self._repository.insert_batch(moving)
                if self._delete_source:
                    await self._repository.delete_ids(shard_id, [row.id for row in moving])
                for target, target_rows in moves.items():
                    report.moved_by_target[target] = (
                        report.moved_by_target.get(target, 0) + len(target_rows)
                    )

            last_id = rows[-1].id
            report.scanned += len(rows)
            report.moved += len(moving)
            report.progress[shard_id] = last_id

            logger.info(
                "Shard %d: scanned up to id %d, moved %d rows in this batch",
                shard_id,
                last_id,
                len(moving),
            )
            if on_batch is not None:
                on_batch(report)

    async def migrate(
        self,
        resume_from: Optional[Dict[int, int]] = None,
        on_batch: Optional[Callable[[MigrationReport], None]] = None,
    ) -> MigrationReport:
        """
        Migrate every configured shard, including a retired one.

        Parameters
        ----------
        resume_from : Optional[Dict[int, int]]
            Last id scanned per shard from a previous, interrupted run.
        on_batch : Optional[Callable]
            Called after every batch, e.g. to persist progress.
        """
        resume_from = dict(resume_from or {})
        report = MigrationReport(progress=dict(resume_from))

        for shard_id in self._shards.shard_ids():
            if not self._shards.is_active(shard_id):
                logger.warning("Skipping inactive shard %d", shard_id)
                continue
            start_after = resume_from.get(shard_id)
            if start_after is not None:
                logger.info("Resuming shard %d after id %d", shard_id, start_after)
            await self.migrate_shard(shard_id, report, start_after, on_batch)

        logger.info("Migration finished: scanned %d rows, moved %d", report.scanned, report.moved)
        return report
