from typing import Optional

from fastapi import HTTPException, status

from ..index.service import VectorService
from ..shards.manager import ShardManager

# Set by the application startup hook; tests install their own instances.
_vector_service: Optional[VectorService] = None
_shard_manager: Optional[ShardManager] = None


def set_components(
    service: Optional[VectorService],
    shard_manager: Optional[ShardManager],
) -> None:
    global _vector_service, _shard_manager
    _vector_service = service
    _shard_manager = shard_manager


def get_vector_service() -> VectorService:
    if _vector_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The server is not ready to handle requests.",
        )
    return _vector_service


def get_shard_manager() -> Optional[ShardManager]:
    return _shard_manager


def current_vector_service() -> Optional[VectorService]:
    return _vector_service
