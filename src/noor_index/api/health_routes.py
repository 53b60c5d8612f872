from typing import Annotated, Optional

from fastapi import APIRouter, Depends

from ..index.service import VectorService
from ..shards.manager import ShardManager
from .dependencies import get_shard_manager, get_vector_service
from .models import HealthResponse, ShardHealthModel, ShardHealthResponse

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=HealthResponse)
def health(
    service: Annotated[VectorService, Depends(get_vector_service)],
) -> HealthResponse:
    stats = service.stats()
    degraded = not stats["loaded"] or stats["documents"] == 0
    return HealthResponse(
        status="degraded" if degraded else "ok",
        index_loaded=stats["loaded"],
        documents=stats["documents"],
        building=stats["building"],
        last_build_error=stats["last_build_error"],
    )


@router.get("/shards", response_model=ShardHealthResponse)
async def shard_health(
    shard_manager: Annotated[Optional[ShardManager], Depends(get_shard_manager)],
) -> ShardHealthResponse:
    if shard_manager is None:
        return ShardHealthResponse(configured=False)

    health = await shard_manager.health_check()
    return ShardHealthResponse(
        configured=True,
        retired_shard_id=shard_manager.retired_shard_id,
        shards=[
            ShardHealthModel(
                id=h.id,
                role=h.role.value,
                active=h.active,
                last_error=h.last_error,
                total_queries=h.total_queries,
                avg_latency_ms=h.avg_latency_ms,
            )
            for h in health
        ],
    )
