# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration API endpoints.

- GET / - List migration definitions
- POST / - Register a migration definition
- POST /templates/{name} - Register a migration generated from a template
- GET /status - Migration status for a scope
- POST /run - Run pending migrations, or one migration
- POST /rollback - Roll back one migration, or down to a target
- POST /{migration_id}/recover - Re-attempt a failed migration
- GET /integrity - Check completed migrations against their dependencies

Scopes: without ``tenantId`` the global migrations are addressed, with it
the tenant-specific migrations of that tenant.

Example:
    POST /api/v1/migrations/run
    {"tenantId": "5b0c..."}
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from mealplane.api.dependencies import get_migration_service
from mealplane.core.exceptions import ValidationError
from mealplane.domains.migration import MigrationService
from mealplane.models.migration import (
    ExecutionResult,
    IntegrityReport,
    MigrationDefinitionCreate,
    MigrationDefinitionResponse,
    MigrationExecutionResponse,
    MigrationTemplateRequest,
    RecoveryResult,
    RollbackMigrationsRequest,
    RunMigrationsRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

TenantQuery = Annotated[str | None, Query(alias="tenantId", description="Tenant scope")]


@router.get(
    "",
    response_model=list[MigrationDefinitionResponse],
    summary="List migration definitions",
)
async def list_definitions(
    migrations: MigrationService = Depends(get_migration_service),
) -> list[MigrationDefinitionResponse]:
    return await migrations.list_definitions()


@router.post(
    "",
    response_model=MigrationDefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register migration",
)
async def create_definition(
    data: MigrationDefinitionCreate,
    migrations: MigrationService = Depends(get_migration_service),
) -> MigrationDefinitionResponse:
    """Register a new migration definition.

    Raises:
        ValidationError: Empty scripts or unknown dependencies (422).
        ConflictError: The id is already registered (409).
    """
    logger.info("Registering migration: name=%s, tenant_specific=%s", data.name, data.tenant_specific)
    return await migrations.create_definition(data)


@router.post(
    "/templates/{template_name}",
    response_model=MigrationDefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register migration from template",
)
async def create_from_template(
    template_name: str,
    data: MigrationTemplateRequest,
    migrations: MigrationService = Depends(get_migration_service),
) -> MigrationDefinitionResponse:
    return await migrations.create_from_template(template_name, data)


@router.get(
    "/status",
    response_model=list[MigrationExecutionResponse],
    summary="Migration status",
)
async def get_status(
    tenant_id: TenantQuery = None,
    migrations: MigrationService = Depends(get_migration_service),
) -> list[MigrationExecutionResponse]:
    return await migrations.get_status(tenant_id)


@router.post(
    "/run",
    response_model=list[ExecutionResult],
    summary="Run migrations",
    description="Run every pending migration of the scope in dependency order, "
    "or only ``migrationId`` when given.",
)
async def run_migrations(
    data: RunMigrationsRequest,
    migrations: MigrationService = Depends(get_migration_service),
) -> list[ExecutionResult]:
    if data.migration_id:
        return [await migrations.run_one(data.migration_id, data.tenant_id)]
    return await migrations.run_pending(data.tenant_id)


@router.post(
    "/rollback",
    response_model=list[ExecutionResult],
    summary="Roll back migrations",
    description="Roll back ``migrationId``, or everything applied after "
    "``toMigrationId``.",
)
async def rollback_migrations(
    data: RollbackMigrationsRequest,
    migrations: MigrationService = Depends(get_migration_service),
) -> list[ExecutionResult]:
    """Roll back migrations in reverse application order.

    Raises:
        ValidationError: Neither migrationId nor toMigrationId is given (422).
        DependentMigrationsExist: Completed dependents remain (409).
    """
    if data.migration_id:
        return [await migrations.rollback(data.migration_id, data.tenant_id)]
    if data.to_migration_id:
        return await migrations.rollback_to(
            tenant_id=data.tenant_id,
            to_migration_id=data.to_migration_id,
        )
    raise ValidationError("migrationId or toMigrationId is required")


@router.post(
    "/{migration_id}/recover",
    response_model=RecoveryResult,
    summary="Recover failed migration",
)
async def recover_migration(
    migration_id: str,
    tenant_id: TenantQuery = None,
    migrations: MigrationService = Depends(get_migration_service),
) -> RecoveryResult:
    return await migrations.recover_failed(migration_id, tenant_id)


@router.get(
    "/integrity",
    response_model=IntegrityReport,
    summary="Check migration integrity",
)
async def check_integrity(
    tenant_id: TenantQuery = None,
    migrations: MigrationService = Depends(get_migration_service),
) -> IntegrityReport:
    return await migrations.check_integrity(tenant_id)
