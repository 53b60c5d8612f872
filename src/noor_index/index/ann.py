"""
FAISS ANN Index Repository

This module owns the single process-resident approximate nearest-neighbor
index and its durable serialization.

Key Properties
--------------
- HNSW graph over inner product (vectors are unit-normalized upstream, so
  inner product is cosine similarity)
- Explicit, stable integer ids via IndexIDMap2 (the document id)
- Declared capacity that grows by a fixed factor, never shrinks
- Whole-index serialization to a blob store together with the metadata array
- Single writer, no internal locking
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Set

import faiss
import numpy as np

from ..models import Document
from .blob_store import BlobStore

logger = logging.getLogger("noor.index")

DEFAULT_GROWTH_FACTOR = 5
DEFAULT_HNSW_M = 32
DEFAULT_EF_CONSTRUCTION = 200
DEFAULT_EF_FLOOR = 100
DEFAULT_EF_PER_K = 20


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class AnnIndexError(RuntimeError):
    """Base error for ANN index failures."""


class IndexCapacityError(AnnIndexError):
    """Raised when an insert would exceed the declared capacity."""


class IndexPersistenceError(AnnIndexError):
    """Raised when index persistence fails."""


class LoadedIndex(NamedTuple):
    metadata: List[Document]
    dimension: int
    extra: Dict[str, Any]


# ---------------------------------------------------------------------
# ANN Index Repository
# ---------------------------------------------------------------------

class AnnIndexRepository:
    """
    HNSW index with declared capacity and blob-store persistence.
    """

    def __init__(
        self,
        dimension: int,
        blob_store: BlobStore,
        growth_factor: int = DEFAULT_GROWTH_FACTOR,
        hnsw_m: int = DEFAULT_HNSW_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        ef_floor: int = DEFAULT_EF_FLOOR,
        ef_per_k: int = DEFAULT_EF_PER_K,
    ) -> None:
        if dimension <= 0:
            raise AnnIndexError("Index dimension must be positive.")

        self._dimension = dimension
        self._blob_store = blob_store
        self._growth_factor = growth_factor
        self._hnsw_m = hnsw_m
        self._ef_construction = ef_construction
        self._ef_floor = ef_floor
        self._ef_per_k = ef_per_k

        self._index: faiss.IndexIDMap2 = self._new_index()
        self._capacity = 0
        logger.info("Vector repository initialized with dimension: %d", dimension)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _new_index(self) -> faiss.IndexIDMap2:
        base = faiss.IndexHNSWFlat(self._dimension, self._hnsw_m, faiss.METRIC_INNER_PRODUCT)
        base.hnsw.efConstruction = self._ef_construction
        return faiss.IndexIDMap2(base)

    def _as_row(self, vector: Sequence[float]) -> np.ndarray:
        row = np.asarray(vector, dtype="float32").reshape(1, -1)
        if row.shape[1] != self._dimension:
            raise AnnIndexError(
                f"Vector dimension {row.shape[1]} does not match index dimension {self._dimension}."
            )
        return np.ascontiguousarray(row)

    def _insert(self, row: np.ndarray, doc_id: int) -> None:
        if self._index.ntotal >= self._capacity:
            raise IndexCapacityError(
                f"Adding point {doc_id} exceeds the specified limit of {self._capacity}."
            )
        try:
            self._index.add_with_ids(row, np.asarray([doc_id], dtype="int64"))
        except Exception as exc:
            raise AnnIndexError(
                f"Failed to add vector to FAISS: {type(exc).__name__}"
            ) from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def count(self) -> int:
        return int(self._index.ntotal)

    def init_index(self, capacity: int) -> None:
        """
        Discard all points and declare a new capacity.
        """
        self._index = self._new_index()
        self._capacity = max(0, int(capacity))

    def add_point(self, vector: Sequence[float], doc_id: int) -> None:
        """
        Insert a normalized vector at ``doc_id``.

        When the declared capacity is exhausted, capacity grows by the
        growth factor and the insert is retried once.
        """
        row = self._as_row(vector)
        try:
            self._insert(row, doc_id)
        except IndexCapacityError:
            new_capacity = max(self._capacity, 1) * self._growth_factor
            logger.info("Resizing index from %d to %d", self._capacity, new_capacity)
            self._capacity = new_capacity
            self._insert(row, doc_id)

    def search(self, query_vector: Sequence[float], k: int) -> List[int]:
        """
        Return up to ``k`` ids, best match first.

        Internal failures are logged and yield an empty list.
        """
        try:
            if k <= 0 or self._index.ntotal == 0:
                return []

            q = self._as_row(query_vector)
            hnsw = faiss.downcast_index(self._index.index)
            hnsw.hnsw.efSearch = max(k * self._ef_per_k, self._ef_floor)

            _, labels = self._index.search(q, k)
            return [int(label) for label in labels[0] if label != -1]
        except Exception:
            logger.exception("Error searching index")
            return []

    def ids(self) -> Set[int]:
        """Every document id currently stored in the index."""
        return {int(i) for i in faiss.vector_to_array(self._index.id_map)}

    def reconstruct(self, doc_id: int) -> np.ndarray:
        try:
            return self._index.reconstruct(int(doc_id))
        except Exception as exc:
            raise AnnIndexError(f"Point {doc_id} is not in the index.") from exc

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_index(
        self,
        metadata: Sequence[Document],
        extra: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Serialize the whole index plus ``metadata`` to the blob store,
        overwriting the previous snapshot.

        Returns
        -------
        int
            Size of the serialized index in bytes.
        """
        try:
            blob = faiss.serialize_index(self._index).tobytes()
        except Exception as exc:
            raise IndexPersistenceError(
                f"Failed to serialize FAISS index: {type(exc).__name__}"
            ) from exc

        meta: Dict[str, Any] = dict(extra or {})
        meta.update(
            {
                "dimension": self._dimension,
                "capacity": self._capacity,
                "count": self.count,
                "metadata": [doc.model_dump(mode="json") for doc in metadata],
            }
        )

        try:
            await self._blob_store.put(blob, meta)
        except Exception as exc:
            raise IndexPersistenceError(
                f"Failed to write index blob: {type(exc).__name__}"
            ) from exc

        logger.info("Saved index with %d points (%d bytes)", self.count, len(blob))
        return len(blob)

    async def load_index(self) -> Optional[LoadedIndex]:
        """
        Replace the in-memory index with the persisted snapshot.

        Returns ``None`` when no snapshot exists.
        """
        try:
            stored = await self._blob_store.get()
        except Exception as exc:
            raise IndexPersistenceError(
                f"Failed to read index blob: {type(exc).__name__}"
            ) from exc

        if stored is None:
            return None

        meta = dict(stored.meta)
        dimension = int(meta.pop("dimension", 0))
        if dimension != self._dimension:
            raise IndexPersistenceError(
                f"Stored index dimension {dimension} does not match provider dimension {self._dimension}."
            )

        try:
            # Keep this object: it owns the C++ index.
            index = faiss.deserialize_index(np.frombuffer(stored.blob, dtype="uint8"))
            metadata = [Document.model_validate(m) for m in meta.pop("metadata", [])]
        except Exception as exc:
            raise IndexPersistenceError(
                f"Failed to load FAISS index: {type(exc).__name__}"
            ) from exc

        if not isinstance(index, faiss.IndexIDMap2) or index.d != self._dimension:
            raise IndexPersistenceError(
                f"Stored index is not an id-mapped index of dimension {self._dimension}."
            )

        self._index = index
        self._capacity = max(int(meta.pop("capacity", 0)), int(index.ntotal))
        meta.pop("count", None)

        logger.info("Loaded index with %d points", index.ntotal)
        return LoadedIndex(metadata=metadata, dimension=dimension, extra=meta)
