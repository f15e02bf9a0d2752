# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration store models.

Request and response schemas for migration definitions, executions and
run results, plus the execution state machine.
"""

from datetime import datetime
from enum import Enum

from pydantic import Field, field_validator

from mealplane.models.common import APIModel


class MigrationStatus(str, Enum):
    """Execution status of a migration in one scope."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


MIGRATION_TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.PENDING: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.RUNNING: frozenset({MigrationStatus.COMPLETED, MigrationStatus.FAILED}),
    MigrationStatus.COMPLETED: frozenset({MigrationStatus.ROLLED_BACK}),
    MigrationStatus.FAILED: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.ROLLED_BACK: frozenset({MigrationStatus.RUNNING}),
}


class ResultStatus(str, Enum):
    """Outcome of one migration within a run or rollback request."""

    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    ROLLED_BACK = "rolled_back"


# =============================================================================
# Requests
# =============================================================================


class MigrationDefinitionCreate(APIModel):
    """Request to register a new migration definition."""

    id: str | None = Field(default=None, max_length=255)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    up_sql: str
    down_sql: str
    tenant_specific: bool = False
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("dependencies")
    @classmethod
    def unique_dependencies(cls, value: list[str]) -> list[str]:
        """Drop duplicate dependency ids while keeping declaration order."""
        return list(dict.fromkeys(value))


class MigrationTemplateRequest(APIModel):
    """Request to register a migration generated from a SQL template."""

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    tenant_specific: bool = True
    dependencies: list[str] = Field(default_factory=list)
    params: dict = Field(default_factory=dict)


class RunMigrationsRequest(APIModel):
    """Run all pending migrations in a scope, or a single one."""

    migration_id: str | None = None
    tenant_id: str | None = None


class RollbackMigrationsRequest(APIModel):
    """Roll back one migration, or everything applied after a target."""

    migration_id: str | None = None
    to_migration_id: str | None = None
    tenant_id: str | None = None


# =============================================================================
# Responses
# =============================================================================


class MigrationDefinitionResponse(APIModel):
    """Registered migration definition."""

    id: str
    name: str
    description: str | None = None
    up_sql: str
    down_sql: str
    tenant_specific: bool
    dependencies: list[str]
    created_at: datetime


class MigrationExecutionResponse(APIModel):
    """Persisted execution status of a migration in one scope."""

    migration_id: str
    tenant_id: str | None = None
    status: MigrationStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rolled_back_at: datetime | None = None
    error: str | None = None
    execution_time_ms: int | None = None
    attempts: int = 0


class ExecutionResult(APIModel):
    """Outcome of running or rolling back one migration."""

    migration_id: str
    tenant_id: str | None = None
    status: ResultStatus
    success: bool
    execution_time_ms: int = 0
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


class RecoveryResult(APIModel):
    """Outcome of re-attempting a failed migration."""

    migration_id: str
    tenant_id: str | None = None
    recovered: bool
    result: ExecutionResult


class IntegrityViolation(APIModel):
    """A completed migration whose dependency is not completed."""

    migration_id: str
    tenant_id: str | None = None
    dependency_id: str
    dependency_status: MigrationStatus | None = None


class IntegrityReport(APIModel):
    """Result of an integrity check over one scope."""

    valid: bool
    violations: list[IntegrityViolation] = Field(default_factory=list)
