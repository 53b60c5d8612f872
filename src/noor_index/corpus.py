"""
Corpus Source

Yields the raw text + citation pairs that are sampled into the index. Each
corpus kind is fetched once over HTTP and cached as JSON under the data
directory; later calls read the cache, and a failed refresh falls back to
the cached copy when one exists.

Expected payload per kind: a JSON list of objects with ``text`` and
``citation`` (or ``source``); every other key is kept as a type-specific
field.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Optional

import httpx

from .config import settings
from .models import CorpusRecord, DocumentType

logger = logging.getLogger("noor.corpus")


class CorpusSourceError(RuntimeError):
    """Raised when a corpus cannot be fetched and no cache exists."""


class CorpusSource(ABC):

    @abstractmethod
    async def list_documents(self, kind: str) -> List[CorpusRecord]:
        """Return every record of one corpus kind, in a stable order."""


def _parse_records(kind: str, raw: Any) -> List[CorpusRecord]:
    if not isinstance(raw, list):
        raise CorpusSourceError(f"Corpus '{kind}' must be a JSON list.")

    doc_type = DocumentType(kind)
    records: List[CorpusRecord] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        fields = dict(item)
        text = str(fields.pop("text", "") or "").strip()
        citation = fields.pop("citation", None)
        source = fields.pop("source", None)
        citation = str(citation or source or "").strip()
        fields.pop("type", None)
        if not text or not citation:
            continue
        records.append(CorpusRecord(text=text, citation=citation, type=doc_type, fields=fields))
    return records


class CachedCorpusSource(CorpusSource):
    """
    HTTP corpus source with a local JSON cache per kind.
    """

    def __init__(
        self,
        data_dir: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._data_dir = Path(data_dir or settings.corpus_data_dir)
        self._base_url = (base_url or settings.corpus_base_url or "").rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _cache_path(self, kind: str) -> Path:
        return self._data_dir / f"{kind}.json"

    def _read_cache(self, kind: str) -> List[CorpusRecord]:
        with self._cache_path(kind).open("r", encoding="utf-8") as f:
            return _parse_records(kind, json.load(f))

    async def _fetch(self, kind: str) -> Any:
        if not self._base_url:
            raise CorpusSourceError(
                f"No cached '{kind}' corpus and CORPUS_BASE_URL is not set."
            )
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(f"{self._base_url}/{kind}.json")
            response.raise_for_status()
            return response.json()

    async def list_documents(self, kind: str, refresh: bool = False) -> List[CorpusRecord]:
        cache = self._cache_path(kind)
        if cache.exists() and not refresh:
            logger.info("Loaded %s data from cache.", kind)
            return self._read_cache(kind)

        try:
            raw = await self._fetch(kind)
        except (httpx.HTTPError, ValueError, CorpusSourceError) as exc:
            if cache.exists():
                logger.warning("Fetching %s failed (%s); using cached copy.", kind, exc)
                return self._read_cache(kind)
            raise CorpusSourceError(f"Failed to fetch corpus '{kind}': {exc}") from exc

        records = _parse_records(kind, raw)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        with cache.open("w", encoding="utf-8") as f:
            json.dump(raw, f)
        logger.info("%s data cached (%d records).", kind, len(records))
        return records
