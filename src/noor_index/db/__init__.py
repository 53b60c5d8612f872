"""
Database Package

Provides the SQLAlchemy table definitions and the sharded embedding
repository for PostgreSQL with pgvector.
"""

from .models import Base, DocumentEmbedding, IndexBlob
from .embedding_repository import EmbeddingRepository, EmbeddingRow, ShardStorage

__all__ = [
    "Base",
    "DocumentEmbedding",
    "IndexBlob",
    "EmbeddingRepository",
    "EmbeddingRow",
    "ShardStorage",
]
