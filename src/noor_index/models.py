"""
Document Data Models

This module defines the canonical record that flows through every store in
the system: the corpus document. Its integer ``id`` is the sole join key
between the ANN index, the metadata array and the sharded relational rows.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class DocumentType(str, Enum):
    QURAN = "quran"
    HADITH = "hadith"
    TAFSIR = "tafsir"
    DUA = "dua"
    SEERAH = "seerah"


class CorpusRecord(BaseModel):
    """
    A raw text + citation pair yielded by a corpus source, before an id
    has been assigned.
    """

    text: str = Field(..., min_length=1)
    citation: str = Field(..., min_length=1)
    type: DocumentType
    fields: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class Document(BaseModel):
    """
    A single embedded document.

    This model is the authoritative schema for:
    - the in-memory metadata array (``metadata[id]``)
    - the metadata JSON persisted with the index blob
    - the ``metadata`` column of sharded embedding rows
    """

    id: int = Field(..., ge=0, description="Globally unique, monotonically assigned id.")

    text: str = Field(..., min_length=1, description="Raw text that was embedded.")

    source: str = Field(..., min_length=1, description="Human readable citation.")

    type: DocumentType = Field(..., description="Corpus kind this document came from.")

    fields: Dict[str, Any] = Field(
        default_factory=dict,
        description="Type-specific fields (surah, ayah, book, number, ...).",
    )

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
    )

    @classmethod
    def from_record(cls, doc_id: int, record: CorpusRecord) -> "Document":
        return cls(
            id=doc_id,
            text=record.text,
            source=record.citation,
            type=record.type,
            fields=dict(record.fields),
        )
