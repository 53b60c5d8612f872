"""
Shared fixtures: a deterministic stub embedding provider, in-memory corpus
and blob store, and real SQLite shard databases under ``tmp_path``.
"""

import copy
import hashlib
import json
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from noor_index.corpus import CorpusSource
from noor_index.db.embedding_repository import EmbeddingRepository, EmbeddingRow
from noor_index.embeddings.embedder import EmbeddingError, EmbeddingProvider
from noor_index.embeddings.vectors import normalize_vector
from noor_index.index.blob_store import BlobStore, StoredBlob
from noor_index.models import CorpusRecord, Document, DocumentType
from noor_index.shards.manager import ShardConfig, ShardManager, ShardRole

DIM = 8


class StubProvider(EmbeddingProvider):
    """
    Returns a fixed vector per text (explicit overrides first, otherwise a
    pseudo-random vector seeded from the text hash).
    """

    name = "stub"

    def __init__(
        self,
        dim: int = DIM,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        fail_on_call: Optional[int] = None,
    ) -> None:
        self._dim = dim
        self._vectors = dict(vectors or {})
        self.fail_on_call = fail_on_call
        self.calls: List[List[str]] = []
        self.queries: List[str] = []

    def dimension(self) -> int:
        return self._dim

    def vector_for(self, text: str) -> List[float]:
        if text in self._vectors:
            return [float(x) for x in self._vectors[text]]
        seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
        return np.random.default_rng(seed).normal(size=self._dim).tolist()

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            self.calls.append([])
            raise EmbeddingError("injected provider failure")
        self.calls.append(list(texts))
        return [self.vector_for(t) for t in texts]

    async def embed_query(self, text: str) -> List[float]:
        self.queries.append(text)
        return self.vector_for(text)

    @property
    def embedded_texts(self) -> List[str]:
        return [t for call in self.calls for t in call]


class MemoryCorpus(CorpusSource):

    def __init__(self, corpora: Dict[str, List[CorpusRecord]]) -> None:
        self._corpora = corpora

    async def list_documents(self, kind: str) -> List[CorpusRecord]:
        return list(self._corpora.get(kind, []))


class MemoryBlobStore(BlobStore):

    def __init__(self) -> None:
        self.stored: Optional[StoredBlob] = None
        self.puts = 0

    async def put(self, blob: bytes, meta: Dict) -> None:
        # JSON round trip mirrors what the real stores persist.
        self.stored = StoredBlob(blob=bytes(blob), meta=json.loads(json.dumps(meta)))
        self.puts += 1

    async def get(self) -> Optional[StoredBlob]:
        if self.stored is None:
            return None
        return StoredBlob(blob=self.stored.blob, meta=copy.deepcopy(self.stored.meta))


def make_records(kind: str, count: int) -> List[CorpusRecord]:
    return [
        CorpusRecord(
            text=f"{kind} text number {i}",
            citation=f"{kind.title()} {i}",
            type=DocumentType(kind),
            fields={"number": i},
        )
        for i in range(count)
    ]


def make_row(doc_id: int, dim: int = 4) -> EmbeddingRow:
    rng = np.random.default_rng(doc_id)
    return EmbeddingRow(
        id=doc_id,
        embedding=normalize_vector(rng.normal(size=dim)),
        document=Document(
            id=doc_id,
            text=f"text {doc_id}",
            source=f"Source {doc_id}",
            type=DocumentType.HADITH,
            fields={"number": doc_id},
        ),
    )


async def count_rows(repo: EmbeddingRepository, shard_id: int) -> int:
    rows = await repo.shard_manager.execute(
        shard_id, "SELECT COUNT(*) AS n FROM document_embeddings"
    )
    return int(rows[0]["n"])

def sqlite_shard_configs(tmp_path, count: int) -> List[ShardConfig]:
    return [
        ShardConfig(
            id=i,
            role=ShardRole.PRIMARY if i == 0 else ShardRole.SECONDARY,
            url=f"sqlite+aiosqlite:///{tmp_path / f'shard{i}.db'}",
            pool_size=2,
        )
        for i in range(count)
    ]


@pytest.fixture
def stub_provider():
    return StubProvider()


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def corpus():
    return MemoryCorpus(
        {
            "quran": make_records("quran", 30),
            "hadith": make_records("hadith", 20),
            "tafsir": make_records("tafsir", 10),
        }
    )


@pytest.fixture
async def make_shards(tmp_path):
    """Factory for initialized SQLite-backed shard managers."""
    managers: List[ShardManager] = []

    def _make(count: int = 3, retired_shard_id: Optional[int] = None) -> ShardManager:
        manager = ShardManager(
            configs=sqlite_shard_configs(tmp_path, count),
            retired_shard_id=retired_shard_id,
        )
        manager.initialize()
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.shutdown()


@pytest.fixture
async def repository(make_shards):
    repo = EmbeddingRepository(make_shards(3))
    await repo.initialize_schema()
    return repo
