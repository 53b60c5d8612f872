"""
Exception handlers for the query-time API.

Readiness failures (index not loaded yet, shard circuit open) answer 503
with the reason; anything else answers an opaque 500 and the traceback is
only logged.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..index.service import IndexNotLoadedError
from ..shards.manager import ShardUnavailableError

logger = logging.getLogger("noor.errors")


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})


async def service_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Map ``IndexNotLoadedError`` and ``ShardUnavailableError`` to 503.

    The message names the missing capability only, so it is safe to return.
    """
    logger.warning(
        "%s %s unavailable: %s", request.method, request.url.path, exc
    )
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "service_unavailable", str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_server_error",
        "Internal server error",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IndexNotLoadedError, service_unavailable_handler)
    app.add_exception_handler(ShardUnavailableError, service_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
