from typing import Annotated

from fastapi import APIRouter, Depends, status

from ..index.service import VectorService
from .dependencies import get_vector_service
from .models import BuildAccepted

router = APIRouter(prefix="/index", tags=["index"])


@router.post(
    "/build",
    response_model=BuildAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a background index build",
)
async def build_index(
    service: Annotated[VectorService, Depends(get_vector_service)],
) -> BuildAccepted:
    """
    Always accepted. Build failures are reported in logs and on ``/health``.
    """
    scheduled = service.build_index()
    return BuildAccepted(already_running=not scheduled)
