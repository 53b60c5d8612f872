"""
SQLAlchemy Models

Defines the schema created on every shard:
- Document embeddings (one row per document, placed by shard routing)
- The serialized ANN index blob (single well-known row)
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import BYTEA, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector


JSONType = JSON().with_variant(JSONB(), "postgresql")
BlobType = LargeBinary().with_variant(BYTEA(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ---------------------------------------------------------------------
# Document Embedding Model
# ---------------------------------------------------------------------

class DocumentEmbedding(Base):
    """
    Embedding row for one corpus document.

    ``id`` is the global document id, assigned by the index build and shared
    with the ANN index; it is never autoincremented.
    """
    __tablename__ = "document_embeddings"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    shard_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False)

    # Unconstrained pgvector column; dimension depends on the provider.
    embedding = Column(Vector(), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_document_embeddings_type", "type"),
        Index("idx_document_embeddings_shard_id", "shard_id"),
    )


# ---------------------------------------------------------------------
# Index Blob Model
# ---------------------------------------------------------------------

class IndexBlob(Base):
    """
    Serialized ANN index plus its metadata array.

    Only one logical row exists per deployment; every save overwrites it.
    """
    __tablename__ = "vector_index_blob"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload: Mapped[bytes] = mapped_column(BlobType, nullable=False)
    meta: Mapped[dict] = mapped_column(JSONType, nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
