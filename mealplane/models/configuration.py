# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration store models.

Request and response schemas for tenant configuration versions,
validation results, diffs, change requests and templates.

A configuration payload is a mapping of category to key/value pairs,
for example ``{"features": {"analytics": true}}``. Top-level scalar keys
are accepted as well and are addressed without a category.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from mealplane.models.common import APIModel


class ChangeRequestStatus(str, Enum):
    """Review status of a configuration change request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


CHANGE_REQUEST_TRANSITIONS: dict[ChangeRequestStatus, frozenset[ChangeRequestStatus]] = {
    ChangeRequestStatus.PENDING: frozenset(
        {ChangeRequestStatus.APPROVED, ChangeRequestStatus.REJECTED}
    ),
    ChangeRequestStatus.APPROVED: frozenset({ChangeRequestStatus.APPLIED}),
}


class VersionSource(str, Enum):
    """What produced a configuration version."""

    INITIAL = "initial"
    UPDATE = "update"
    ROLLBACK = "rollback"
    TEMPLATE = "template"
    IMPORT = "import"
    CHANGE_REQUEST = "change_request"


class IssueCode(str, Enum):
    """Codes attached to validation errors and warnings."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    DEPENDENCY_NOT_MET = "DEPENDENCY_NOT_MET"
    REQUIRED_FIELD_MISSING = "REQUIRED_FIELD_MISSING"
    INVALID_TYPE = "INVALID_TYPE"
    INVALID_VALUE = "INVALID_VALUE"
    DEPRECATED_FIELD = "DEPRECATED_FIELD"
    UNKNOWN_FIELD = "UNKNOWN_FIELD"


class ChangeOperation(str, Enum):
    """Kind of change proposed for a single key."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# =============================================================================
# Validation
# =============================================================================


class ConfigurationIssue(APIModel):
    """Single validation error or warning."""

    category: str | None = None
    key: str
    message: str
    code: IssueCode

    @property
    def path(self) -> str:
        return f"{self.category}.{self.key}" if self.category else self.key


class ValidationResult(APIModel):
    """Outcome of validating a set of configuration changes."""

    is_valid: bool
    errors: list[ConfigurationIssue] = Field(default_factory=list)
    warnings: list[ConfigurationIssue] = Field(default_factory=list)


# =============================================================================
# Versions
# =============================================================================


class ConfigurationVersionResponse(APIModel):
    """Stored configuration version."""

    tenant_id: str
    version: int
    payload: dict[str, Any]
    description: str | None = None
    source: VersionSource
    source_version: int | None = None
    created_by: str | None = None
    created_at: datetime


class ResolvedConfiguration(APIModel):
    """Effective configuration of a tenant.

    Attributes:
        version: Latest version number, None if the tenant has none yet.
        configuration: Defaults overlaid with the tenant overrides.
        provenance: ``default`` or ``tenant`` per ``category.key`` path.
    """

    tenant_id: str
    version: int | None = None
    configuration: dict[str, Any]
    provenance: dict[str, str] = Field(default_factory=dict)


class ValueChange(APIModel):
    """Old and new value of a path that differs between two versions."""

    old_value: Any = None
    new_value: Any = None


class ConfigurationDiff(APIModel):
    """Path-level difference between two configuration versions."""

    tenant_id: str
    from_version: int
    to_version: int
    added: dict[str, Any] = Field(default_factory=dict)
    removed: dict[str, Any] = Field(default_factory=dict)
    changed: dict[str, ValueChange] = Field(default_factory=dict)


class UpdateConfigurationRequest(APIModel):
    """Batch update of configuration values.

    A value of ``None`` removes the tenant override so the key inherits
    the default again.
    """

    configurations: dict[str, Any]
    description: str | None = None
    user_id: str | None = None
    validate_only: bool = False


class RollbackConfigurationRequest(APIModel):
    """Create a new version whose payload equals an earlier version."""

    target_version: int = Field(ge=1)
    reason: str = Field(min_length=1)
    user_id: str | None = None


# =============================================================================
# Change requests
# =============================================================================


class ChangeItem(APIModel):
    """Proposed change to one configuration key."""

    category: str | None = None
    key: str = Field(min_length=1)
    old_value: Any = None
    new_value: Any = None
    operation: ChangeOperation = ChangeOperation.UPDATE


class ChangeRequestCreate(APIModel):
    """Request to propose configuration changes for review."""

    changes: list[ChangeItem]
    description: str | None = None
    requested_by: str = Field(min_length=1)
    auto_apply: bool = False

    @field_validator("changes")
    @classmethod
    def require_changes(cls, value: list[ChangeItem]) -> list[ChangeItem]:
        if not value:
            raise ValueError("At least one change is required")
        return value


class ChangeRequestResponse(APIModel):
    """Stored change request."""

    id: str
    tenant_id: str
    changes: list[ChangeItem]
    description: str | None = None
    requested_by: str
    status: ChangeRequestStatus
    auto_apply: bool
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_comment: str | None = None
    applied_version: int | None = None
    created_at: datetime
    updated_at: datetime


class ApproveChangeRequest(APIModel):
    approver_id: str = Field(min_length=1)


class RejectChangeRequest(APIModel):
    approver_id: str = Field(min_length=1)
    reason: str = Field(min_length=1)


# =============================================================================
# Templates, export and import
# =============================================================================


class ConfigurationTemplate(APIModel):
    """Named configuration preset."""

    id: str
    name: str
    description: str | None = None
    is_default: bool = False
    target_tenant_types: list[str] = Field(default_factory=list)
    configuration: dict[str, Any] = Field(default_factory=dict)


class ApplyTemplateRequest(APIModel):
    user_id: str | None = None


class ConfigurationExport(APIModel):
    """Portable dump of a tenant configuration version."""

    tenant_id: str
    version: int | None = None
    exported_at: datetime
    configuration: dict[str, Any]


class ImportConfigurationRequest(APIModel):
    """Import a previously exported configuration."""

    configuration: dict[str, Any]
    description: str | None = None
    user_id: str | None = None
    validate_only: bool = False
