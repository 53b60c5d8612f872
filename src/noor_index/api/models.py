"""
API Models

Pydantic request/response models for the query-time HTTP surface.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import Document, DocumentType


# ---------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------

class SearchRequest(BaseModel):
    """
    Semantic search request.
    """
    query: str = Field(..., min_length=1)
    k: int = Field(default=5, ge=1, le=100)

    model_config = ConfigDict(extra="forbid")


class SearchResult(BaseModel):
    """
    One retrieved document, best match first.
    """
    id: int = Field(..., ge=0)
    text: str
    source: str
    type: DocumentType
    fields: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_document(cls, doc: Document) -> "SearchResult":
        return cls(**doc.model_dump())


# ---------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------

class BuildAccepted(BaseModel):
    status: Literal["accepted"] = "accepted"
    already_running: bool = False

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    index_loaded: bool
    documents: int = Field(..., ge=0)
    building: bool = False
    last_build_error: Optional[str] = None


class ShardHealthModel(BaseModel):
    id: int
    role: str
    active: bool
    last_error: Optional[str] = None
    total_queries: int = Field(..., ge=0)
    avg_latency_ms: float = Field(..., ge=0.0)


class ShardHealthResponse(BaseModel):
    configured: bool
    retired_shard_id: Optional[int] = None
    shards: List[ShardHealthModel] = Field(default_factory=list)
