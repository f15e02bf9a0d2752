# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Exception hierarchy for the tenant lifecycle control plane.

- ControlPlaneError: Base exception for all control plane errors
- ValidationError: Malformed or missing input, rejected before any mutation
- ConflictError: Unique key collision (slug, email, document number, id)
- NotFoundError: Referenced row does not exist
- DependencyNotSatisfied: Migration dependency is not completed
- DependentMigrationsExist: Completed migrations still depend on the target
- InvalidConfigurationValue: One or more configuration values are invalid
- VersionNotFound: Configuration version does not exist for the tenant
- InvalidRequestState: Operation not allowed in the current state
- StepNotRetryable: Provisioning step is not in a retryable state
- ProvisioningError: Provisioning step failed for an unexpected reason
- InternalError: Wraps an underlying database failure
"""

from typing import Any


class ControlPlaneError(Exception):
    """Base exception for all control plane errors.

    Attributes:
        message: Human-readable error description.
        details: Dictionary with additional error context.
    """

    code = "CONTROL_PLANE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize control plane error.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional error context.
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation with details if available."""
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API responses."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(ControlPlaneError):
    """Malformed or missing input. Never persisted."""

    code = "VALIDATION_ERROR"


class ConflictError(ControlPlaneError):
    """Unique key collision, or a limit that forbids creating another row."""

    code = "CONFLICT"


class NotFoundError(ControlPlaneError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"


class DependencyNotSatisfied(ControlPlaneError):
    """A migration dependency has not been completed in the target scope.

    Attributes:
        migration_id: Migration that was requested.
        missing: Dependencies that are not completed.
    """

    code = "DEPENDENCY_NOT_SATISFIED"

    def __init__(self, migration_id: str, missing: list[str]):
        self.migration_id = migration_id
        self.missing = missing
        super().__init__(
            f"Migration {migration_id} has unsatisfied dependencies: {', '.join(missing)}",
            {"migration_id": migration_id, "missing": missing},
        )


class DependentMigrationsExist(ControlPlaneError):
    """Rolling back would orphan completed migrations that depend on the target.

    Attributes:
        migration_id: Migration that was requested for rollback.
        dependents: Completed migrations that must be rolled back first.
    """

    code = "DEPENDENT_MIGRATIONS_EXIST"

    def __init__(self, migration_id: str, dependents: list[str]):
        self.migration_id = migration_id
        self.dependents = dependents
        super().__init__(
            f"Migration {migration_id} is required by: {', '.join(dependents)}",
            {"migration_id": migration_id, "dependents": dependents},
        )


class InvalidConfigurationValue(ControlPlaneError):
    """One or more configuration values failed validation.

    All violations are collected rather than stopping at the first one.

    Attributes:
        errors: List of {category, key, message, code} entries.
    """

    code = "INVALID_CONFIGURATION_VALUE"

    def __init__(self, errors: list[dict[str, Any]]):
        self.errors = errors
        super().__init__(
            f"Configuration validation failed with {len(errors)} error(s)",
            {"errors": errors},
        )


class VersionNotFound(NotFoundError):
    """Configuration version does not exist for the tenant."""

    code = "VERSION_NOT_FOUND"

    def __init__(self, tenant_id: str, version: int):
        self.tenant_id = tenant_id
        self.version = version
        super().__init__(
            f"Configuration version {version} not found for tenant {tenant_id}",
            {"tenant_id": tenant_id, "version": version},
        )


class InvalidRequestState(ControlPlaneError):
    """Operation is not allowed in the entity's current state."""

    code = "INVALID_REQUEST_STATE"


class StepNotRetryable(ControlPlaneError):
    """Provisioning step is not in the failed state."""

    code = "STEP_NOT_RETRYABLE"


class InternalError(ControlPlaneError):
    """Unexpected failure with the original cause preserved.

    Attributes:
        cause: The underlying exception.
    """

    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.cause = cause
        super().__init__(message, details)

    def __str__(self) -> str:
        """Return string representation including the cause."""
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return super().__str__()


class ProvisioningError(InternalError):
    """A provisioning step failed for a reason other than a conflict."""

    code = "PROVISIONING_ERROR"
