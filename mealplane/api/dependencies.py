# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FastAPI dependencies.

The services are built once per application and kept on ``app.state``.
Route handlers receive them through these dependency functions.

Example:
    @router.get("/status")
    async def get_status(
        migrations: MigrationService = Depends(get_migration_service),
    ):
        return await migrations.get_status()
"""

import logging

from fastapi import HTTPException, Request, status

from mealplane.core.config import get_settings
from mealplane.domains.configuration import ConfigurationService
from mealplane.domains.container import ControlPlaneServices, build_services
from mealplane.domains.migration import MigrationService
from mealplane.domains.provisioning import ProvisioningOrchestrator
from mealplane.infrastructure.database.connection import (
    close_database,
    get_sessionmaker,
    init_database,
)

logger = logging.getLogger(__name__)


async def init_services() -> ControlPlaneServices:
    """Initialize the database and build the services.

    Returns:
        Services bound to the platform database.
    """
    settings = get_settings()
    await init_database(settings)
    return build_services(get_sessionmaker(), settings)


async def close_services() -> None:
    """Close the platform database connection pool."""
    await close_database()


def get_services(request: Request) -> ControlPlaneServices:
    """Services attached to the application.

    Raises:
        HTTPException: If the services are not initialized.
    """
    services: ControlPlaneServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Control plane services are not initialized",
        )
    return services


def get_migration_service(request: Request) -> MigrationService:
    return get_services(request).migrations


def get_configuration_service(request: Request) -> ConfigurationService:
    return get_services(request).configuration


def get_provisioning_orchestrator(request: Request) -> ProvisioningOrchestrator:
    return get_services(request).provisioning
