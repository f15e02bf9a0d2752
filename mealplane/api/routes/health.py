# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Health check endpoints.

This module provides health and readiness endpoints for the API.
"""

import logging
import time
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from sqlalchemy import text

from mealplane import __version__
from mealplane.core.config import get_settings
from mealplane.domains.container import ControlPlaneServices
from mealplane.infrastructure.background import get_broker_manager
from mealplane.infrastructure.database.connection import DatabaseError, session_scope
from mealplane.utils.datetime import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()

# Track server start time for uptime calculation
_server_start_time = time.time()


class ComponentHealth(BaseModel):
    """Individual component health status."""
    status: str = Field(description="Component status")
    latency_ms: float | None = Field(None, description="Response latency in ms")
    message: str | None = Field(None, description="Additional status message")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(description="Overall health status")
    timestamp: datetime = Field(description="Current server timestamp")
    version: str = Field(description="API version")
    environment: str = Field(description="Deployment environment")
    uptime_seconds: int = Field(description="Server uptime in seconds")


class ReadinessResponse(BaseModel):
    """Readiness check response model."""
    ready: bool = Field(description="Whether the service is ready")
    checks: dict[str, Any] = Field(description="Individual check results")


async def check_database(services: ControlPlaneServices | None) -> ComponentHealth:
    """Check the platform database through the services' sessionmaker."""
    if services is None:
        return ComponentHealth(status="unhealthy", message="Services not initialized")

    start = time.time()
    try:
        async with session_scope(services.session_factory) as session:
            await session.execute(text("SELECT 1"))
    except DatabaseError as e:
        logger.error("Database health check failed: %s", e)
        return ComponentHealth(status="unhealthy", message=str(e))

    latency = (time.time() - start) * 1000
    return ComponentHealth(status="healthy", latency_ms=round(latency, 2))


def check_broker() -> ComponentHealth:
    """Check the Dramatiq broker."""
    stats = get_broker_manager().get_queue_stats()
    if stats.get("status") == "healthy":
        return ComponentHealth(status="healthy", message=stats.get("broker_type"))
    return ComponentHealth(status="degraded", message=stats.get("error") or stats.get("status"))


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness check; does not touch dependencies."""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        timestamp=utc_now(),
        version=__version__,
        environment=settings.environment,
        uptime_seconds=int(time.time() - _server_start_time),
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Check if the API is ready to accept traffic.

    The database must be reachable. The broker is reported but only the
    background execution path depends on it.
    """
    services = getattr(request.app.state, "services", None)

    db_health = await check_database(services)
    broker_health = check_broker()

    checks: dict[str, Any] = {
        "database": {"status": db_health.status, "latency_ms": db_health.latency_ms},
        "broker": {"status": broker_health.status, "message": broker_health.message},
    }
    return ReadinessResponse(ready=db_health.status == "healthy", checks=checks)
