"""
Application Entry Point

Defines the FastAPI application, registers routers and the global exception
handler, and wires the shard manager and vector service at startup.

Startup never fails on missing configuration: without credentials or shard
URLs the service starts degraded with an empty index so health checks stay
reachable.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import health_routes, index_routes, search_routes
from .api.dependencies import current_vector_service, get_shard_manager, set_components
from .core.errors import register_exception_handlers
from .runtime import create_shard_manager, create_vector_service

logger = logging.getLogger("noor.app")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app(wire_components: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    wire_components : bool
        When False the startup hook does not build the shard manager or the
        vector service; tests install their own via ``set_components``.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    app = FastAPI(
        title="noor-index",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    register_exception_handlers(app)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(search_routes.router)
    app.include_router(index_routes.router)

    if not wire_components:
        return app

    # --------------------------------------------------------------
    # Startup / Shutdown
    # --------------------------------------------------------------

    @app.on_event("startup")
    async def _startup() -> None:
        logger.info("Starting noor-index")

        shard_manager = create_shard_manager()
        service = create_vector_service(shard_manager)
        set_components(service, shard_manager)

        await service.load_or_build()
        service.start_reconciliation()
        logger.info("Vector service ready (%d documents)", len(service.metadata))

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        logger.info("Shutting down noor-index")
        service = current_vector_service()
        if service is not None:
            await service.shutdown()
        shard_manager = get_shard_manager()
        if shard_manager is not None:
            await shard_manager.shutdown()
        set_components(None, None)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn)
# ---------------------------------------------------------------------

app = create_app()
