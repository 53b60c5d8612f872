"""
Search Routes

Semantic search over the in-memory ANN index.
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from ..index.service import VectorService
from .dependencies import get_vector_service
from .models import SearchRequest, SearchResult

router = APIRouter(prefix="/search", tags=["search"])


@router.post(
    "",
    response_model=List[SearchResult],
    summary="Vector-based semantic search",
    status_code=status.HTTP_200_OK,
)
async def search(
    req: SearchRequest,
    service: Annotated[VectorService, Depends(get_vector_service)],
) -> List[SearchResult]:
    """
    Return up to ``k`` documents ranked by similarity to ``query``.

    An empty or still-building index yields an empty list rather than an
    error; a service that has not loaded its index yet answers 503.
    """
    documents = await service.search(req.query, req.k)
    return [SearchResult.from_document(doc) for doc in documents]
