# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning models.

Request and response schemas for tenant provisioning and deprovisioning
runs, plus the run and step state machines.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, EmailStr, Field, field_validator

from mealplane.models.common import APIModel

SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


class ProvisioningStatus(str, Enum):
    """Overall status of a provisioning or deprovisioning run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PROVISIONING_TRANSITIONS: dict[ProvisioningStatus, frozenset[ProvisioningStatus]] = {
    ProvisioningStatus.PENDING: frozenset(
        {ProvisioningStatus.RUNNING, ProvisioningStatus.CANCELLED}
    ),
    ProvisioningStatus.RUNNING: frozenset(
        {ProvisioningStatus.COMPLETED, ProvisioningStatus.FAILED, ProvisioningStatus.CANCELLED}
    ),
    ProvisioningStatus.FAILED: frozenset(
        {ProvisioningStatus.RUNNING, ProvisioningStatus.CANCELLED}
    ),
}


class StepStatus(str, Enum):
    """Status of a single step within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}),
    StepStatus.FAILED: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.COMPLETED: frozenset({StepStatus.SKIPPED}),
}


class RunKind(str, Enum):
    PROVISIONING = "provisioning"
    DEPROVISIONING = "deprovisioning"


class InstitutionType(str, Enum):
    PREFEITURA = "prefeitura"
    SECRETARIA = "secretaria"
    ORGANIZACAO = "organizacao"
    EMPRESA = "empresa"


# =============================================================================
# Steps and progress
# =============================================================================


class Step(APIModel):
    """One step of a run as stored in the progress record."""

    id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    attempts: int = 0
    result: dict[str, Any] = Field(default_factory=dict)


class ProvisioningProgressResponse(APIModel):
    """Persisted state of a run."""

    id: str
    kind: RunKind
    tenant_id: str | None = None
    institution_id: str | None = None
    template_id: str | None = None
    status: ProvisioningStatus
    current_step: int
    steps: list[Step]
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def step(self, step_id: str) -> Step:
        """Look up a step by id.

        Raises:
            KeyError: If the run has no such step.
        """
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


class ProvisioningResult(APIModel):
    """Outcome of a provisioning call."""

    progress_id: str
    status: ProvisioningStatus
    success: bool
    institution_id: str | None = None
    tenant_id: str | None = None
    admin_user_id: str | None = None
    steps: list[Step] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None


# =============================================================================
# Requests
# =============================================================================


class InstitutionInput(APIModel):
    """Institution to create."""

    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=2, max_length=100, pattern=SLUG_PATTERN)
    legal_name: str | None = Field(default=None, max_length=255)
    document_number: str | None = Field(default=None, max_length=32)
    type: InstitutionType = InstitutionType.PREFEITURA
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    plan_id: str | None = None
    address: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("document_number")
    @classmethod
    def digits_only(cls, value: str | None) -> str | None:
        """Store document numbers (CNPJ) without punctuation."""
        if value is None:
            return None
        digits = "".join(ch for ch in value if ch.isdigit())
        return digits or None


class TenantInput(APIModel):
    """Tenant to create; the subdomain defaults to the slug."""

    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=2, max_length=100, pattern=SLUG_PATTERN)
    subdomain: str | None = Field(default=None, max_length=100, pattern=SLUG_PATTERN)
    settings: dict[str, Any] = Field(default_factory=dict)


class AdminInput(APIModel):
    """First administrator of the institution and tenant."""

    name: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("name", "nome"),
    )
    email: EmailStr
    password: str = Field(
        min_length=6,
        validation_alias=AliasChoices("password", "senha"),
        repr=False,
    )


class ProvisionCompleteRequest(APIModel):
    """Provision an institution, its first tenant and admin user."""

    institution: InstitutionInput
    tenant: TenantInput
    admin: AdminInput
    configuration: dict[str, Any] = Field(default_factory=dict)
    configuration_template: str | None = None


class TemplateProvisionRequest(APIModel):
    """Provision a tenant from a provisioning template.

    When neither ``institution`` nor ``institution_id`` is given, the
    institution is derived from the tenant name and slug.
    """

    tenant: TenantInput
    admin: AdminInput
    institution: InstitutionInput | None = None
    institution_id: str | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)


class AdditionalTenantRequest(APIModel):
    """Add a tenant under an existing institution."""

    tenant: TenantInput
    user_id: str = Field(min_length=1)
    configuration: dict[str, Any] = Field(default_factory=dict)


class InstitutionUserRequest(APIModel):
    """Add a user to an institution, optionally linked to one of its tenants."""

    name: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("name", "nome"),
    )
    email: EmailStr
    password: str = Field(
        min_length=6,
        validation_alias=AliasChoices("password", "senha"),
        repr=False,
    )
    role: str = Field(default="user", max_length=30, validation_alias=AliasChoices("role", "tipo"))
    institution_role: str = Field(default="user", max_length=30)
    tenant_id: str | None = None
    tenant_role: str = Field(default="user", max_length=30)


class InstitutionUserResponse(APIModel):
    """User created under an institution."""

    user_id: str
    institution_id: str
    name: str
    email: str
    role: str
    institution_role: str
    tenant_id: str | None = None


class HierarchyTenant(APIModel):
    id: str
    name: str
    slug: str
    subdomain: str
    status: str


class HierarchyUser(APIModel):
    id: str
    name: str
    email: str
    role: str
    institution_role: str
    tenant_ids: list[str] = Field(default_factory=list)


class InstitutionHierarchy(APIModel):
    """An institution with its tenants and active members."""

    institution_id: str
    name: str
    slug: str
    status: str
    tenants: list[HierarchyTenant] = Field(default_factory=list)
    users: list[HierarchyUser] = Field(default_factory=list)


class DeprovisioningOptions(APIModel):
    """Teardown options.

    Attributes:
        preserve_audit_logs: Keep the tenant's audit trail.
        preserve_backups: Snapshot the tenant before deleting data.
        notify_users: Notify tenant users once the tenant is removed.
        grace_period_hours: Delay before teardown. Zero runs immediately.
    """

    preserve_audit_logs: bool = False
    preserve_backups: bool = False
    notify_users: bool = False
    grace_period_hours: int = Field(default=0, ge=0)


class ScheduleDeprovisioningRequest(APIModel):
    """Record a deprovisioning to be executed later."""

    scheduled_at: datetime | None = None
    options: DeprovisioningOptions = Field(default_factory=DeprovisioningOptions)


class ProvisioningTemplate(APIModel):
    """Predefined institution and tenant defaults."""

    id: str
    name: str
    description: str | None = None
    category: str = "basic"
    institution: dict[str, Any] = Field(default_factory=dict)
    tenant: dict[str, Any] = Field(default_factory=dict)
    configuration_template: str | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)
