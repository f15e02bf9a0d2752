# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FastAPI Application Factory.

This module provides the application factory for the control plane API.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from mealplane import __version__
from mealplane.api.dependencies import close_services, init_services
from mealplane.api.errors import control_plane_error_handler
from mealplane.api.routes import health
from mealplane.api.v1 import router as v1_router
from mealplane.core.config import get_settings
from mealplane.core.exceptions import ControlPlaneError
from mealplane.domains.container import ControlPlaneServices
from mealplane.infrastructure.background import setup_dramatiq, shutdown_dramatiq
from mealplane.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Initializes logging, the platform database and the Dramatiq broker,
    unless services were injected when the app was created.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    settings = get_settings()
    setup_logging(settings)
    logger.info(
        "Starting control plane API (environment=%s, debug=%s)",
        settings.environment,
        settings.debug,
    )

    # =========================================================================
    # Startup
    # =========================================================================

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = await init_services()
        logger.info("Database connection initialized")

    try:
        setup_dramatiq(settings)
        logger.info("Dramatiq broker initialized")
    except Exception as e:
        logger.warning("Failed to setup Dramatiq: %s", str(e))

    yield

    # =========================================================================
    # Shutdown
    # =========================================================================

    try:
        shutdown_dramatiq()
        logger.info("Dramatiq broker shutdown")
    except Exception as e:
        logger.warning("Error shutting down Dramatiq: %s", str(e))

    if owns_services:
        await close_services()
        app.state.services = None
        logger.info("Database connection closed")

    logger.info("Shutting down control plane API")


def create_app(services: ControlPlaneServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt services. When omitted the lifespan connects to
            the configured database and builds them.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Mealplane Control Plane",
        description="Tenant lifecycle control plane for the school meal platform",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    # =========================================================================
    # State
    # =========================================================================
    app.state.services = services

    # =========================================================================
    # Exception handlers
    # =========================================================================
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)

    # =========================================================================
    # Routes
    # =========================================================================
    app.include_router(health.router, tags=["Health"])
    app.include_router(v1_router)

    return app
