"""Sentinel rollout control API application."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from ..config import Settings, get_settings
from ..controlplane import ControlPlane
from . import routes
from .schemas import HealthResponse

logger = logging.getLogger(__name__)


def create_app(
    control_plane: Optional[ControlPlane] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """
    Create the control API application.

    When no control plane is passed, the application builds one from
    settings on startup and owns its lifecycle.

    Args:
        control_plane: Existing control plane to serve
        settings: Application settings

    Returns:
        FastAPI application
    """
    settings = settings or get_settings()
    owns_plane = control_plane is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan context manager for startup and shutdown events."""
        if owns_plane:
            logger.info("Starting Sentinel rollout control API...")
            logger.info(f"   Version: {settings.version}")
            logger.info(f"   Store: {'sql' if settings.database_url else 'memory'}")
            logger.info(f"   Execution backend: {settings.execution_backend}")
            app.state.control_plane = await ControlPlane.from_settings(settings)
            await app.state.control_plane.start()

        yield

        if owns_plane:
            logger.info("Shutting down Sentinel rollout control API...")
            await app.state.control_plane.stop()

    app = FastAPI(
        title="Sentinel Rollout Controller",
        description="Declarative rollout control plane API",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.control_plane = control_plane

    app.include_router(routes.router, prefix=settings.api_prefix)

    # Mount Prometheus metrics
    app.mount("/metrics", make_asgi_app())

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=settings.version,
            timestamp=datetime.utcnow(),
        )

    return app
