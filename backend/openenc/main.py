"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
CORS middleware, includes the catalog API routers and exposes a health
check endpoint for monitoring. The chart store and its connection pool are
opened when the application starts and closed when it stops.

Example:
    The application can be run with uvicorn:
        $ uvicorn openenc.main:app --reload
"""

import contextlib
from collections.abc import AsyncIterator

import fastapi
from fastapi.middleware import cors

from openenc.api import charts, layers
from openenc.core import config
from openenc.db import database


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Own the chart store for the lifetime of the application."""
    store = database.get_chart_store(config.get_settings())
    app.state.chart_store = store
    try:
        yield
    finally:
        store.pool.close()


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Sets up CORS middleware, includes the chart and layer routers, and adds
    a health check endpoint. CORS origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    app = fastapi.FastAPI(title="OpenENC", version="0.1.0", lifespan=lifespan)

    app.include_router(charts.router)
    app.include_router(layers.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
