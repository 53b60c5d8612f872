"""
Index Blob Storage

Durable storage for the serialized ANN index. There is exactly one logical
object per deployment, stored under ``INDEX_BLOB_KEY`` and overwritten on
every save; there is no versioning.

Two backends:
- ``FileBlobStore``: index binary plus a JSON metadata sidecar on disk
- ``DatabaseBlobStore``: a single row in ``vector_index_blob`` on one shard
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.schema import CreateTable

from ..config import settings
from ..db.models import IndexBlob
from ..shards.manager import ShardManager

logger = logging.getLogger("noor.blobs")

INDEX_BLOB_KEY = "ann-index/active"


class BlobStoreError(RuntimeError):
    """Raised when the index blob cannot be written or read."""


class StoredBlob(NamedTuple):
    blob: bytes
    meta: Dict[str, Any]


class BlobStore(ABC):
    """Single-object store for the index binary and its metadata."""

    @abstractmethod
    async def put(self, blob: bytes, meta: Dict[str, Any]) -> None:
        """Overwrite the stored object."""

    @abstractmethod
    async def get(self) -> Optional[StoredBlob]:
        """Return the stored object, or ``None`` when nothing was saved yet."""


# ---------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------

def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class FileBlobStore(BlobStore):
    """
    Stores the index at ``index_path`` and metadata JSON at ``meta_path``.

    Both files are replaced atomically; metadata is written last so a
    reader never sees metadata for an index that was not fully written.
    """

    def __init__(
        self,
        index_path: Optional[str] = None,
        meta_path: Optional[str] = None,
    ) -> None:
        self._index_path = Path(index_path or settings.vector_index_path)
        self._meta_path = Path(meta_path or settings.vector_meta_path)

    async def put(self, blob: bytes, meta: Dict[str, Any]) -> None:
        try:
            _atomic_write(self._index_path, blob)
            _atomic_write(
                self._meta_path,
                json.dumps({"key": INDEX_BLOB_KEY, **meta}).encode("utf-8"),
            )
        except OSError as exc:
            raise BlobStoreError(
                f"Failed to write index blob: {type(exc).__name__}"
            ) from exc

    async def get(self) -> Optional[StoredBlob]:
        if not self._index_path.exists() or not self._meta_path.exists():
            return None

        try:
            blob = self._index_path.read_bytes()
            with self._meta_path.open("r", encoding="utf-8") as f:
                meta = json.load(f)
        except (OSError, ValueError) as exc:
            raise BlobStoreError(
                f"Failed to read index blob: {type(exc).__name__}"
            ) from exc

        meta.pop("key", None)
        return StoredBlob(blob=blob, meta=meta)


# ---------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------

class DatabaseBlobStore(BlobStore):
    """
    Stores the index as one row of ``vector_index_blob`` on a single shard.

    Index binaries can be tens of megabytes; the column is ``BYTEA`` on
    PostgreSQL.
    """

    def __init__(
        self,
        shard_manager: ShardManager,
        shard_id: Optional[int] = None,
        key: str = INDEX_BLOB_KEY,
    ) -> None:
        self._shards = shard_manager
        self._shard_id = shard_id if shard_id is not None else settings.index_blob_shard_id
        self._key = key
        self._schema_ready = False

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        await self._shards.execute(
            self._shard_id, CreateTable(IndexBlob.__table__, if_not_exists=True)
        )
        self._schema_ready = True

    async def put(self, blob: bytes, meta: Dict[str, Any]) -> None:
        await self._ensure_schema()

        table = IndexBlob.__table__
        insert_fn = (
            sqlite_insert if self._shards.dialect_name(self._shard_id) == "sqlite" else pg_insert
        )
        stmt = insert_fn(table).values(
            key=self._key,
            payload=blob,
            meta=meta,
            size_bytes=len(blob),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.key],
            set_={
                "payload": stmt.excluded["payload"],
                "meta": stmt.excluded["meta"],
                "size_bytes": stmt.excluded["size_bytes"],
                "updated_at": func.now(),
            },
        )
        await self._shards.execute(self._shard_id, stmt)
        logger.info("Index blob written to shard %d (%d bytes)", self._shard_id, len(blob))

    async def get(self) -> Optional[StoredBlob]:
        await self._ensure_schema()

        table = IndexBlob.__table__
        rows = await self._shards.execute(
            self._shard_id,
            select(table.c.payload, table.c.meta).where(table.c.key == self._key),
        )
        if not rows:
            return None
        return StoredBlob(blob=bytes(rows[0]["payload"]), meta=dict(rows[0]["meta"]))


def create_blob_store(shard_manager: Optional[ShardManager] = None) -> BlobStore:
    """
    Build the configured blob store (``INDEX_BLOB_BACKEND``).
    """
    backend = settings.index_blob_backend.strip().lower()
    if backend == "database":
        if shard_manager is None:
            raise BlobStoreError("Database blob store requires a shard manager.")
        return DatabaseBlobStore(shard_manager)
    if backend == "file":
        return FileBlobStore()
    raise BlobStoreError(f"Unknown index blob backend: {backend!r}")
