"""
Embedding Repository

Sharded relational storage for document embeddings, built on the
``ShardManager``. Rows are placed by ``route_document(id)``; reads fan out
across the writable shards and are merged client-side.

Per-shard failures during reads are logged and tolerated so a single
unavailable shard degrades results instead of failing the caller.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set

import numpy as np
from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.schema import CreateIndex, CreateTable

from ..models import Document
from ..shards.manager import ShardManager
from .models import DocumentEmbedding

logger = logging.getLogger("noor.repository")

embeddings_table = DocumentEmbedding.__table__


class EmbeddingRow(NamedTuple):
    """One document together with its (normalized) embedding vector."""
    id: int
    embedding: Sequence[float]
    document: Document


class ShardStorage(NamedTuple):
    shard_id: int
    database: str
    size_bytes: int


def _row_from_mapping(mapping: Any) -> EmbeddingRow:
    document = Document.model_validate(mapping["metadata"])
    vector = np.asarray(mapping["embedding"], dtype="float32")
    return EmbeddingRow(id=int(mapping["id"]), embedding=vector, document=document)


class EmbeddingRepository:
    """
    Persists ``(id, shard, type, source, text, metadata, vector)`` rows
    across shards and reads them back for ANN rehydration and resumable
    builds.
    """

    def __init__(self, shard_manager: ShardManager) -> None:
        self._shards = shard_manager

    @property
    def shard_manager(self) -> ShardManager:
        return self._shards

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def initialize_schema(self) -> Dict[int, bool]:
        """
        Create the table and its indexes on every configured shard.

        Idempotent. A failing shard (e.g. one that is out of storage) is
        logged and skipped.

        Returns
        -------
        Dict[int, bool]
            Per-shard success flag.
        """

        async def _create(shard_id: int) -> None:
            if self._shards.dialect_name(shard_id) == "postgresql":
                await self._shards.execute(shard_id, "CREATE EXTENSION IF NOT EXISTS vector")
            await self._shards.execute(
                shard_id, CreateTable(embeddings_table, if_not_exists=True)
            )
            for index in sorted(embeddings_table.indexes, key=lambda i: i.name):
                await self._shards.execute(shard_id, CreateIndex(index, if_not_exists=True))

        shard_ids = self._shards.shard_ids()
        _, errors = await self._shards.gather_per_shard(shard_ids, _create)

        status: Dict[int, bool] = {}
        for shard_id in shard_ids:
            if shard_id in errors:
                logger.warning(
                    "Failed to initialize schema on shard %d: %s", shard_id, errors[shard_id]
                )
                status[shard_id] = False
            else:
                logger.info("Schema initialized on shard %d", shard_id)
                status[shard_id] = True
        return status

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _upsert_statement(self, shard_id: int, values: List[Dict[str, Any]]):
        dialect = self._shards.dialect_name(shard_id)
        insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert

        stmt = insert_fn(embeddings_table).values(values)
        excluded = stmt.excluded
        return stmt.on_conflict_do_update(
            index_elements=[embeddings_table.c.id],
            set_={
                "shard_id": excluded["shard_id"],
                "type": excluded["type"],
                "source": excluded["source"],
                "text": excluded["text"],
                "metadata": excluded["metadata"],
                "embedding": excluded["embedding"],
                "updated_at": func.now(),
            },
        )

    async def _insert_on_shard(self, shard_id: int, rows: List[EmbeddingRow]) -> int:
        if not rows:
            return 0

        values = [
            {
                "id": row.id,
                "shard_id": shard_id,
                "type": row.document.type.value,
                "source": row.document.source,
                "text": row.document.text,
                "metadata": row.document.model_dump(mode="json"),
                "embedding": [float(x) for x in row.embedding],
            }
            for row in rows
        ]
        await self._shards.execute(shard_id, self._upsert_statement(shard_id, values))
        return len(rows)

    async def insert_batch(self, rows: Iterable[EmbeddingRow]) -> Dict[int, int]:
        """
        Upsert rows, one multi-row statement per owning shard, all shards
        written concurrently.

        Re-inserting an existing id overwrites it and refreshes
        ``updated_at``, so repeated calls are idempotent.

        Returns
        -------
        Dict[int, int]
            Rows written per shard.

        Raises
        ------
        Exception
            The first per-shard failure, after every shard has finished.
        """
        by_shard: Dict[int, List[EmbeddingRow]] = defaultdict(list)
        for row in rows:
            by_shard[self._shards.route_document(row.id)].append(row)

        if not by_shard:
            return {}

        written, errors = await self._shards.gather_per_shard(
            sorted(by_shard),
            lambda sid: self._insert_on_shard(sid, by_shard[sid]),
        )

        for shard_id, exc in errors.items():
            logger.error(
                "Insert of %d rows failed on shard %d: %s",
                len(by_shard[shard_id]),
                shard_id,
                exc,
            )
        if errors:
            raise next(iter(errors.values()))
        return written

    async def delete_ids(self, shard_id: int, ids: Sequence[int]) -> None:
        if not ids:
            return
        await self._shards.execute(
            shard_id,
            delete(embeddings_table).where(embeddings_table.c.id.in_(list(ids))),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _scan_writable(self, statement, label: str) -> Dict[int, List[Any]]:
        shard_ids = self._shards.writable_shard_ids()
        results, errors = await self._shards.gather_per_shard(
            shard_ids,
            lambda sid: self._shards.execute(sid, statement),
        )
        for shard_id, exc in errors.items():
            logger.warning("Failed to %s from shard %d: %s", label, shard_id, exc)
        return results

    async def load_all_embeddings(self) -> List[EmbeddingRow]:
        """
        Read every row from the writable shards, sorted by id ascending.

        Used once at process start to rehydrate the ANN index.
        """
        statement = select(
            embeddings_table.c.id,
            embeddings_table.c.embedding,
            embeddings_table.c["metadata"],
        ).order_by(embeddings_table.c.id)

        per_shard = await self._scan_writable(statement, "load embeddings")
        rows = [_row_from_mapping(m) for shard_rows in per_shard.values() for m in shard_rows]
        rows.sort(key=lambda r: r.id)
        return rows

    async def get_max_id(self) -> Optional[int]:
        """Largest stored document id, or ``None`` when no rows exist."""
        statement = select(func.max(embeddings_table.c.id).label("max_id"))
        per_shard = await self._scan_writable(statement, "get max id")

        max_id: Optional[int] = None
        for shard_rows in per_shard.values():
            for mapping in shard_rows:
                value = mapping["max_id"]
                if value is not None and (max_id is None or int(value) > max_id):
                    max_id = int(value)
        return max_id

    async def get_existing_document_ids(self) -> Set[int]:
        statement = select(embeddings_table.c.id)
        per_shard = await self._scan_writable(statement, "get ids")
        return {int(m["id"]) for shard_rows in per_shard.values() for m in shard_rows}

    async def fetch_by_ids(self, ids: Iterable[int]) -> Dict[int, EmbeddingRow]:
        """
        Read specific rows from the shards that own them.

        Missing ids are absent from the result.
        """
        by_shard: Dict[int, List[int]] = defaultdict(list)
        for doc_id in ids:
            by_shard[self._shards.route_document(doc_id)].append(doc_id)

        if not by_shard:
            return {}

        def _select(shard_ids: List[int]):
            return select(
                embeddings_table.c.id,
                embeddings_table.c.embedding,
                embeddings_table.c["metadata"],
            ).where(embeddings_table.c.id.in_(shard_ids))

        results, errors = await self._shards.gather_per_shard(
            sorted(by_shard),
            lambda sid: self._shards.execute(sid, _select(by_shard[sid])),
        )
        if errors:
            raise next(iter(errors.values()))

        found: Dict[int, EmbeddingRow] = {}
        for shard_rows in results.values():
            for mapping in shard_rows:
                row = _row_from_mapping(mapping)
                found[row.id] = row
        return found

    async def iter_shard_rows_after(
        self,
        shard_id: int,
        last_id: Optional[int],
        limit: int,
    ) -> List[EmbeddingRow]:
        """
        Page through one shard's rows in id order, starting after ``last_id``.
        """
        statement = select(
            embeddings_table.c.id,
            embeddings_table.c.embedding,
            embeddings_table.c["metadata"],
        ).order_by(embeddings_table.c.id).limit(limit)
        if last_id is not None:
            statement = statement.where(embeddings_table.c.id > last_id)

        rows = await self._shards.execute(shard_id, statement)
        return [_row_from_mapping(m) for m in rows]

    async def get_storage_usage_bytes(self) -> List[ShardStorage]:
        """
        Report the database size of every active shard.
        """
        query = text(
            "SELECT current_database() AS datname, "
            "pg_database_size(current_database()) AS size"
        )
        per_shard = await self._shards.execute_on_all_active(lambda _sid: (query, None))

        usage: List[ShardStorage] = []
        for shard_id in sorted(per_shard):
            rows = per_shard[shard_id]
            if not rows:
                continue
            try:
                size = int(rows[0]["size"])
            except (TypeError, ValueError):
                size = 0
            usage.append(
                ShardStorage(
                    shard_id=shard_id,
                    database=str(rows[0]["datname"]),
                    size_bytes=size,
                )
            )
        return usage
