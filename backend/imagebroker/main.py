"""FastAPI application entrypoint and configuration.

This module provides the application factory that sets up logging, the
database pool lifecycle, CORS middleware, the scene and tile routers, and a
health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn imagebroker.main:app --reload

    Or imported and used programmatically:
        >>> from imagebroker.main import create_app
        >>> app = create_app()
"""

import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from imagebroker.api import scenes, tiles
from imagebroker.core import config, errors, logconfig
from imagebroker.db import database

logger = logging.getLogger(__name__)


def create_app(
    scene_store: database.SceneStoreProtocol | None = None,
) -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Without an explicit store, the lifespan opens a DatabasePool at start-up,
    builds the PostGIS-backed scene store on it and closes the pool at
    shutdown. Both are kept on ``app.state``.

    Args:
        scene_store: Store to serve from instead of PostgreSQL.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()

    @contextlib.asynccontextmanager
    async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
        logconfig.configure_logging(settings)
        if scene_store is not None:
            app.state.scene_store = scene_store
            yield
            return
        pool = database.DatabasePool(settings)
        pool.open()
        app.state.db_pool = pool
        app.state.scene_store = database.get_scene_store(pool)
        logger.info("Image broker API started")
        try:
            yield
        finally:
            pool.close()

    app = fastapi.FastAPI(title="Image Broker", version="0.1.0", lifespan=lifespan)
    if scene_store is not None:
        app.state.scene_store = scene_store

    app.include_router(scenes.router)
    app.include_router(tiles.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(errors.BrokerError)
    async def broker_error(
        request: fastapi.Request, exc: errors.BrokerError
    ) -> responses.JSONResponse:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return responses.JSONResponse(status_code=500, content=exc.to_dict())

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
