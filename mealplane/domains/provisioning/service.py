# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning orchestrator.

Drives tenant provisioning and deprovisioning as persisted step
sequences. A run is a ``tenant_provisioning_progress`` row holding the
ordered step list. For every step:

1. the step is marked ``running`` (own transaction)
2. the step's side effect runs (its own transactions)
3. the step is marked ``completed`` or ``failed`` (own transaction)

A failed step stops the run. Steps check for their target before
creating it, so a retried or recovered run never recreates an
institution, tenant or user that an earlier attempt already created.

Provisioning flow:
    create_institution -> create_tenant -> create_admin_user ->
    run_initial_migrations -> apply_initial_configuration -> complete

Deprovisioning flow:
    snapshot_tenant -> rollback_tenant_migrations -> delete_tenant_data ->
    delete_tenant -> notify

Example:
    >>> orchestrator = ProvisioningOrchestrator(session_factory, migrations, configuration)
    >>> result = await orchestrator.provision_complete(request)
    >>> result.status
    <ProvisioningStatus.COMPLETED: 'completed'>
"""

import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mealplane.core.config import ControlPlaneSettings, get_settings
from mealplane.core.config.yaml_loader import deep_merge
from mealplane.core.exceptions import (
    ConflictError,
    ControlPlaneError,
    InvalidConfigurationValue,
    InvalidRequestState,
    NotFoundError,
    ProvisioningError,
    StepNotRetryable,
    ValidationError,
)
from mealplane.domains.configuration.service import ConfigurationService
from mealplane.domains.directory.passwords import PasswordHasher
from mealplane.domains.directory.service import TenantDirectory
from mealplane.domains.migration.service import MigrationService
from mealplane.domains.provisioning.templates import load_provisioning_templates
from mealplane.infrastructure.database.connection import DatabaseError, session_scope
from mealplane.infrastructure.database.models.provisioning import ProvisioningProgress
from mealplane.infrastructure.sinks import (
    Alert,
    AlertSeverity,
    AlertSink,
    AuditAction,
    AuditEvent,
    AuditSink,
    LoggingAlertSink,
    LoggingAuditSink,
    SnapshotService,
)
from mealplane.models.common import guard_transition
from mealplane.models.provisioning import (
    PROVISIONING_TRANSITIONS,
    STEP_TRANSITIONS,
    AdditionalTenantRequest,
    DeprovisioningOptions,
    HierarchyTenant,
    HierarchyUser,
    InstitutionHierarchy,
    InstitutionInput,
    InstitutionUserRequest,
    InstitutionUserResponse,
    ProvisionCompleteRequest,
    ProvisioningProgressResponse,
    ProvisioningResult,
    ProvisioningStatus,
    ProvisioningTemplate,
    RunKind,
    Step,
    StepStatus,
    TemplateProvisionRequest,
    TenantInput,
)
from mealplane.utils.datetime import ensure_utc, format_iso, hours_from_now, parse_iso, utc_now
from mealplane.utils.logging import bind_context, clear_context

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "slug, email or document number already in use"

# Marker stored in institution and tenant settings so a retried step can
# recognise the rows its own run created.
PROVISIONED_BY = "provisioned_by"

PASS_THROUGH_ERRORS = (ConflictError, InvalidConfigurationValue, ProvisioningError, ValidationError)

PROVISIONING_STEPS: tuple[tuple[str, str], ...] = (
    ("create_institution", "Create institution"),
    ("create_tenant", "Create tenant"),
    ("create_admin_user", "Create admin user"),
    ("run_initial_migrations", "Run initial migrations"),
    ("apply_initial_configuration", "Apply initial configuration"),
    ("complete", "Complete"),
)

ADDITIONAL_TENANT_STEPS: tuple[tuple[str, str], ...] = (
    ("create_tenant", "Create tenant"),
    ("link_tenant_user", "Link tenant administrator"),
    ("run_initial_migrations", "Run initial migrations"),
    ("apply_initial_configuration", "Apply initial configuration"),
    ("complete", "Complete"),
)

DEPROVISIONING_STEPS: tuple[tuple[str, str], ...] = (
    ("snapshot_tenant", "Snapshot tenant"),
    ("rollback_tenant_migrations", "Roll back tenant migrations"),
    ("delete_tenant_data", "Delete tenant data"),
    ("delete_tenant", "Delete tenant"),
    ("notify", "Notify users"),
)


class SkipStep(Exception):
    """Raised by a step handler when the step does not apply to the run."""

    def __init__(self, reason: str, warning: str | None = None) -> None:
        self.reason = reason
        self.warning = warning
        super().__init__(reason)


@dataclass
class RunContext:
    """Mutable view of a run passed to step handlers.

    Attributes:
        progress_id: Run identifier.
        kind: Provisioning or deprovisioning.
        request: Request data captured when the run was created.
        meta: Ids and flags collected by completed steps.
    """

    progress_id: str
    kind: RunKind
    request: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def tenant_id(self) -> str | None:
        return self.meta.get("tenant_id")

    @property
    def institution_id(self) -> str | None:
        return self.meta.get("institution_id")

    def mark_created(self, entity: str) -> None:
        self.meta.setdefault("created", {})[entity] = True

    def was_created(self, entity: str) -> bool:
        return bool(self.meta.get("created", {}).get(entity))


StepHandler = Callable[[RunContext], Awaitable[dict[str, Any]]]


def _initial_steps(definitions: tuple[tuple[str, str], ...]) -> list[dict[str, Any]]:
    return [Step(id=step_id, name=name).model_dump(mode="json") for step_id, name in definitions]


def _load_steps(progress: ProvisioningProgress) -> list[Step]:
    return [Step.model_validate(step) for step in progress.steps]


def _dump_steps(steps: list[Step]) -> list[dict[str, Any]]:
    return [step.model_dump(mode="json") for step in steps]


def _to_result(progress: ProvisioningProgressResponse) -> ProvisioningResult:
    return ProvisioningResult(
        progress_id=progress.id,
        status=progress.status,
        success=progress.status == ProvisioningStatus.COMPLETED,
        institution_id=progress.institution_id,
        tenant_id=progress.tenant_id,
        admin_user_id=progress.meta.get("admin_user_id"),
        steps=progress.steps,
        warnings=progress.warnings,
        error=progress.error,
    )


class ProvisioningOrchestrator:
    """Tenant lifecycle orchestrator.

    Attributes:
        _session_factory: Sessionmaker for the platform database.
        _migrations: Migration executor used for tenant migrations.
        _configuration: Configuration manager used for version 1.
        _hasher: Password hasher for admin accounts.
        _audit: Audit trail sink.
        _alerts: Alert and notification sink.
        _snapshots: Optional backup service.
        _settings: Control plane settings.
        _templates: Provisioning templates keyed by id.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        migrations: MigrationService,
        configuration: ConfigurationService,
        settings: ControlPlaneSettings | None = None,
        hasher: PasswordHasher | None = None,
        audit: AuditSink | None = None,
        alerts: AlertSink | None = None,
        snapshots: SnapshotService | None = None,
        templates: Mapping[str, ProvisioningTemplate] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            session_factory: Sessionmaker for the platform database.
            migrations: Migration executor.
            configuration: Configuration manager.
            settings: Control plane settings. Defaults to the cached settings.
            hasher: Password hasher. Defaults to bcrypt with 12 rounds.
            audit: Audit sink. Defaults to logging.
            alerts: Alert sink. Defaults to logging.
            snapshots: Backup service used when backups are requested.
            templates: Provisioning templates. Loaded from the config
                directory when not given.
        """
        self._settings = settings or get_settings().control_plane
        self._session_factory = session_factory
        self._migrations = migrations
        self._configuration = configuration
        self._hasher = hasher or PasswordHasher()
        self._audit = audit or LoggingAuditSink()
        self._alerts = alerts or LoggingAlertSink()
        self._snapshots = snapshots
        self._templates = (
            dict(templates)
            if templates is not None
            else load_provisioning_templates(self._settings.config_dir)
        )
        self._handlers: dict[str, StepHandler] = {
            "create_institution": self._create_institution,
            "create_tenant": self._create_tenant,
            "create_admin_user": self._create_admin_user,
            "link_tenant_user": self._link_tenant_user,
            "run_initial_migrations": self._run_initial_migrations,
            "apply_initial_configuration": self._apply_initial_configuration,
            "complete": self._complete,
            "snapshot_tenant": self._snapshot_tenant,
            "rollback_tenant_migrations": self._rollback_tenant_migrations,
            "delete_tenant_data": self._delete_tenant_data,
            "delete_tenant": self._delete_tenant,
            "notify": self._notify,
        }

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def provision_complete(
        self,
        data: ProvisionCompleteRequest | Mapping[str, Any],
    ) -> ProvisioningResult:
        """Provision an institution, its first tenant and admin user.

        Input is validated before anything is written. Progress is
        persisted after every step transition.

        Args:
            data: Institution, tenant and admin payloads.

        Returns:
            Result with the final run state.

        Raises:
            ValidationError: Missing or malformed input.
            InvalidConfigurationValue: Initial configuration is invalid.
            ConflictError: Slug, email or document number already in use.
            ProvisioningError: A step failed for another reason.
        """
        progress = await self.prepare_provisioning(data)
        return _to_result(await self.execute_run(progress.id))

    async def prepare_provisioning(
        self,
        data: ProvisionCompleteRequest | Mapping[str, Any],
        template_id: str | None = None,
    ) -> ProvisioningProgressResponse:
        """Validate a request and record a pending provisioning run.

        The run is executed by ``execute_run``, either inline or from a
        background worker.
        """
        request = self._parse(ProvisionCompleteRequest, data)
        configuration = self._initial_configuration(
            request.configuration_template or self._settings.default_configuration_template,
            request.configuration,
        )

        return await self._create_run(
            kind=RunKind.PROVISIONING,
            steps=PROVISIONING_STEPS,
            request_data={
                "institution": request.institution.model_dump(mode="json"),
                "tenant": request.tenant.model_dump(mode="json"),
                "admin": self._admin_data(request),
                "configuration": configuration,
            },
            template_id=template_id,
        )

    async def provision_from_template(
        self,
        template_id: str,
        data: TemplateProvisionRequest | Mapping[str, Any],
    ) -> ProvisioningProgressResponse:
        """Provision a tenant using a provisioning template.

        The template supplies institution and tenant defaults and the
        configuration template; explicit request values win.

        Raises:
            NotFoundError: Unknown template or institution.
            ValidationError: Malformed input.
            ConflictError: Institution tenant limit reached, or a
                duplicate slug, email or document number.
        """
        template = self.get_template(template_id)
        request = self._parse(TemplateProvisionRequest, data)

        if request.institution_id:
            await self._check_tenant_capacity(request.institution_id)
            institution = None
        else:
            base = request.institution or InstitutionInput(
                name=request.tenant.name,
                slug=request.tenant.slug,
                type=template.institution.get("type", "prefeitura"),
            )
            institution = base.model_copy(
                update={
                    "settings": deep_merge(template.institution.get("settings", {}), base.settings),
                    "plan_id": base.plan_id or template.institution.get("plan_id"),
                }
            )

        tenant = request.tenant.model_copy(
            update={"settings": deep_merge(template.tenant.get("settings", {}), request.tenant.settings)}
        )
        configuration = self._initial_configuration(
            template.configuration_template,
            deep_merge(template.configuration, request.configuration),
        )

        progress = await self._create_run(
            kind=RunKind.PROVISIONING,
            steps=PROVISIONING_STEPS,
            request_data={
                "institution": institution.model_dump(mode="json") if institution else None,
                "tenant": tenant.model_dump(mode="json"),
                "admin": self._admin_data(request),
                "configuration": configuration,
            },
            template_id=template_id,
            institution_id=request.institution_id,
        )
        logger.info("Provisioning from template %s started: %s", template_id, progress.id)
        return await self.execute_run(progress.id)

    async def create_additional_tenant(
        self,
        institution_id: str,
        data: AdditionalTenantRequest | Mapping[str, Any],
    ) -> ProvisioningResult:
        """Add a tenant to an existing institution.

        The requesting user becomes the tenant administrator.

        Raises:
            NotFoundError: Unknown institution or user.
            ConflictError: The institution reached its tenant limit.
        """
        request = self._parse(AdditionalTenantRequest, data)
        await self._check_tenant_capacity(institution_id)

        async with session_scope(self._session_factory) as session:
            if await TenantDirectory(session).get_user(request.user_id) is None:
                raise NotFoundError(f"User {request.user_id} not found", {"user_id": request.user_id})

        configuration = self._initial_configuration(
            self._settings.default_configuration_template,
            request.configuration,
        )
        progress = await self._create_run(
            kind=RunKind.PROVISIONING,
            steps=ADDITIONAL_TENANT_STEPS,
            request_data={
                "tenant": request.tenant.model_dump(mode="json"),
                "user_id": request.user_id,
                "configuration": configuration,
            },
            institution_id=institution_id,
        )
        return _to_result(await self.execute_run(progress.id))

    # =========================================================================
    # Institution members
    # =========================================================================

    async def create_institution_user(
        self,
        institution_id: str,
        data: InstitutionUserRequest | Mapping[str, Any],
    ) -> InstitutionUserResponse:
        """Add a user to an institution, optionally linked to one of its tenants.

        The institution's ``max_users`` setting (default from
        ``ControlPlaneSettings.default_max_users``) caps its active members.

        Raises:
            ValidationError: Malformed request.
            NotFoundError: Unknown institution, or a tenant that does not
                belong to it.
            ConflictError: Member limit reached or email already in use.
        """
        request = self._parse(InstitutionUserRequest, data)
        email = str(request.email).lower()
        password_hash = self._hasher.hash(request.password)

        try:
            async with session_scope(self._session_factory) as session:
                directory = TenantDirectory(session)
                institution = await directory.get_institution(institution_id)
                if institution is None:
                    raise NotFoundError(
                        f"Institution {institution_id} not found",
                        {"institution_id": institution_id},
                    )

                limit = int(institution.settings.get("max_users", self._settings.default_max_users))
                count = await directory.count_institution_users(institution_id)
                if count >= limit:
                    raise ConflictError(
                        f"Institution {institution_id} reached its limit of {limit} user(s)",
                        {"institution_id": institution_id, "max_users": limit, "users": count},
                    )

                if request.tenant_id is not None:
                    tenant = await directory.get_tenant(request.tenant_id)
                    if tenant is None or tenant.institution_id != institution_id:
                        raise NotFoundError(
                            f"Tenant {request.tenant_id} not found in institution {institution_id}",
                            {"institution_id": institution_id, "tenant_id": request.tenant_id},
                        )

                if await directory.find_user_by_email(email) is not None:
                    raise ConflictError(f"Email {email} already in use", {"email": email})

                user = await directory.create_user(
                    name=request.name,
                    email=email,
                    password_hash=password_hash,
                    role=request.role,
                )
                await directory.link_institution_user(institution_id, user.id, request.institution_role)
                if request.tenant_id is not None:
                    await directory.link_tenant_user(request.tenant_id, user.id, request.tenant_role)

                created = InstitutionUserResponse(
                    user_id=user.id,
                    institution_id=institution_id,
                    name=user.name,
                    email=user.email,
                    role=user.role,
                    institution_role=request.institution_role,
                    tenant_id=request.tenant_id,
                )
        except DatabaseError as e:
            if isinstance(e.original_error, IntegrityError):
                raise ConflictError(f"Email {email} already in use", {"email": email}) from e
            raise

        logger.info("User %s added to institution %s", created.user_id, institution_id)
        await self._record_audit(
            AuditAction.INSTITUTION_USER_CREATED,
            request.tenant_id,
            {"institution_id": institution_id, "user_id": created.user_id, "email": email},
        )
        return created

    async def get_institution_hierarchy(self, institution_id: str) -> InstitutionHierarchy:
        """An institution with its tenants and active members.

        Raises:
            NotFoundError: Unknown institution.
        """
        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)
            institution = await directory.get_institution(institution_id)
            if institution is None:
                raise NotFoundError(
                    f"Institution {institution_id} not found",
                    {"institution_id": institution_id},
                )
            tenants = await directory.list_tenants(institution_id)
            members = await directory.list_institution_members(institution_id)
            tenant_ids = await directory.list_user_tenant_ids([user.id for user, _ in members])

            return InstitutionHierarchy(
                institution_id=institution.id,
                name=institution.name,
                slug=institution.slug,
                status=institution.status,
                tenants=[HierarchyTenant.model_validate(tenant) for tenant in tenants],
                users=[
                    HierarchyUser(
                        id=user.id,
                        name=user.name,
                        email=user.email,
                        role=user.role,
                        institution_role=link.role,
                        tenant_ids=sorted(tenant_ids[user.id]),
                    )
                    for user, link in members
                ],
            )

    # =========================================================================
    # Progress
    # =========================================================================

    async def get_progress(self, progress_id: str) -> ProvisioningProgressResponse:
        """Latest persisted state of a run.

        Raises:
            NotFoundError: If the run does not exist.
        """
        async with session_scope(self._session_factory) as session:
            progress = await self._get_progress(session, progress_id)
        return ProvisioningProgressResponse.model_validate(progress)

    async def list_progress(
        self,
        status: ProvisioningStatus | None = None,
        kind: RunKind | None = None,
        tenant_id: str | None = None,
    ) -> list[ProvisioningProgressResponse]:
        """Runs matching the filters, newest first."""
        query = select(ProvisioningProgress)
        if status is not None:
            query = query.where(ProvisioningProgress.status == status.value)
        if kind is not None:
            query = query.where(ProvisioningProgress.kind == kind.value)
        if tenant_id is not None:
            query = query.where(ProvisioningProgress.tenant_id == tenant_id)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(query.order_by(ProvisioningProgress.created_at.desc()))
            rows = list(result.scalars())
        return [ProvisioningProgressResponse.model_validate(row) for row in rows]

    def list_templates(self) -> list[ProvisioningTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.id)

    def get_template(self, template_id: str) -> ProvisioningTemplate:
        """Look up a provisioning template.

        Raises:
            NotFoundError: If no template has this id.
        """
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(
                f"Provisioning template {template_id} not found",
                {"template_id": template_id},
            )
        return template

    async def retry_failed_step(self, progress_id: str, step_id: str) -> ProvisioningProgressResponse:
        """Re-run a failed step and continue with the remaining steps.

        Raises:
            NotFoundError: Unknown run or step.
            StepNotRetryable: The step is not ``failed``.
        """
        progress = await self.get_progress(progress_id)
        try:
            step = progress.step(step_id)
        except KeyError:
            raise NotFoundError(
                f"Step {step_id} not found in run {progress_id}",
                {"progress_id": progress_id, "step_id": step_id},
            ) from None

        if step.status != StepStatus.FAILED:
            raise StepNotRetryable(
                f"Step {step_id} is {step.status.value}, only failed steps can be retried",
                {"progress_id": progress_id, "step_id": step_id, "status": step.status.value},
            )

        logger.info("Retrying step %s of run %s", step_id, progress_id)
        return await self.execute_run(progress_id)

    async def recover_failed_provisioning(self, progress_id: str) -> ProvisioningProgressResponse:
        """Resume a failed run from its first step that is not completed.

        Raises:
            NotFoundError: Unknown run.
            InvalidRequestState: The run is not ``failed``.
        """
        progress = await self.get_progress(progress_id)
        if progress.status != ProvisioningStatus.FAILED:
            raise InvalidRequestState(
                f"Run {progress_id} is {progress.status.value}, only failed runs can be recovered",
                {"progress_id": progress_id, "status": progress.status.value},
            )

        logger.info("Recovering run %s", progress_id)
        return await self.execute_run(progress_id)

    async def cancel_provisioning(self, progress_id: str) -> ProvisioningProgressResponse:
        """Stop a pending or running run before its next step.

        Completed steps are not undone.

        Raises:
            NotFoundError: Unknown run.
            InvalidRequestState: The run is not pending or running.
        """
        async with session_scope(self._session_factory) as session:
            progress = await self._get_progress(session, progress_id)
            status = guard_transition(
                ProvisioningStatus(progress.status),
                ProvisioningStatus.CANCELLED,
                PROVISIONING_TRANSITIONS,
                f"Run {progress_id}",
            )
            progress.status = status.value
            progress.completed_at = utc_now()
            tenant_id = progress.tenant_id

        logger.info("Run %s cancelled", progress_id)
        await self._record_audit(
            AuditAction.PROVISIONING_CANCELLED,
            tenant_id,
            {"progress_id": progress_id},
        )
        return await self.get_progress(progress_id)

    async def cleanup_failed_provisioning(self, progress_id: str) -> ProvisioningProgressResponse:
        """Remove what a failed or cancelled run created.

        Tenant migrations are rolled back, then the tenant, institution and
        admin user are deleted in reverse creation order, each only when
        this run created it. Undone steps are marked ``skipped`` and a
        failed run becomes ``cancelled``, so it can no longer be recovered.

        Raises:
            NotFoundError: Unknown run.
            InvalidRequestState: The run is not a failed or cancelled
                provisioning run.
        """
        progress = await self.get_progress(progress_id)
        if progress.kind != RunKind.PROVISIONING or progress.status not in (
            ProvisioningStatus.FAILED,
            ProvisioningStatus.CANCELLED,
        ):
            raise InvalidRequestState(
                f"Run {progress_id} cannot be cleaned up while {progress.status.value}",
                {"progress_id": progress_id, "status": progress.status.value},
            )

        ctx = RunContext(progress.id, progress.kind, {}, copy.deepcopy(progress.meta))
        removed: list[str] = []

        if ctx.tenant_id and ctx.was_created("tenant"):
            await self._migrations.rollback_to(tenant_id=ctx.tenant_id)

        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)
            if ctx.tenant_id and ctx.was_created("tenant"):
                await directory.delete_tenant_data(ctx.tenant_id)
                if await directory.delete_tenant(ctx.tenant_id):
                    removed.append("tenant")
            if ctx.institution_id and ctx.was_created("institution"):
                if await directory.count_tenants(ctx.institution_id) == 0:
                    if await directory.delete_institution(ctx.institution_id):
                        removed.append("institution")
                else:
                    logger.warning(
                        "Institution %s kept during cleanup: it still owns tenants",
                        ctx.institution_id,
                    )
            admin_id = ctx.meta.get("admin_user_id")
            if admin_id and ctx.was_created("user"):
                if await directory.delete_user(admin_id):
                    removed.append("user")

            row = await self._get_progress(session, progress_id)
            steps = _load_steps(row)
            for step in steps:
                if step.status in (StepStatus.COMPLETED, StepStatus.FAILED):
                    step.status = guard_transition(
                        step.status, StepStatus.SKIPPED, STEP_TRANSITIONS, f"Step {step.id}"
                    )
                    step.result = {**step.result, "cleaned_up": True}
            row.steps = _dump_steps(steps)
            row.meta = {**row.meta, "cleanup": {"removed": removed, "at": format_iso(utc_now())}}
            if row.status == ProvisioningStatus.FAILED.value:
                row.status = guard_transition(
                    ProvisioningStatus.FAILED,
                    ProvisioningStatus.CANCELLED,
                    PROVISIONING_TRANSITIONS,
                    f"Run {progress_id}",
                ).value
                row.error = "Cleaned up after failure"
                row.completed_at = utc_now()

        logger.info("Run %s cleaned up, removed: %s", progress_id, removed)
        await self._record_audit(
            AuditAction.PROVISIONING_CLEANED_UP,
            ctx.tenant_id,
            {"progress_id": progress_id, "removed": removed},
        )
        return await self.get_progress(progress_id)

    # =========================================================================
    # Deprovisioning
    # =========================================================================

    async def deprovision_tenant(
        self,
        tenant_id: str,
        options: DeprovisioningOptions | None = None,
    ) -> ProvisioningProgressResponse:
        """Tear a tenant down, or schedule it when a grace period is set.

        Raises:
            NotFoundError: Unknown tenant.
        """
        options = options or DeprovisioningOptions()
        await self._require_tenant(tenant_id)

        if options.grace_period_hours > 0:
            return await self.schedule_deprovisioning(
                tenant_id,
                hours_from_now(options.grace_period_hours),
                options,
            )

        progress = await self._create_run(
            kind=RunKind.DEPROVISIONING,
            steps=DEPROVISIONING_STEPS,
            request_data={"options": options.model_dump(mode="json")},
            tenant_id=tenant_id,
        )
        return await self.execute_run(progress.id)

    async def schedule_deprovisioning(
        self,
        tenant_id: str,
        scheduled_at: datetime | None = None,
        options: DeprovisioningOptions | None = None,
    ) -> ProvisioningProgressResponse:
        """Record a deprovisioning to be run later by ``run_due_deprovisionings``.

        Without an explicit time the grace period from the options (or the
        configured default) is used.

        Raises:
            NotFoundError: Unknown tenant.
        """
        options = options or DeprovisioningOptions()
        await self._require_tenant(tenant_id)

        if scheduled_at is None:
            hours = options.grace_period_hours or self._settings.default_grace_period_hours
            scheduled_at = hours_from_now(hours)

        progress = await self._create_run(
            kind=RunKind.DEPROVISIONING,
            steps=DEPROVISIONING_STEPS,
            request_data={"options": options.model_dump(mode="json")},
            tenant_id=tenant_id,
            meta={"scheduled_at": format_iso(ensure_utc(scheduled_at))},
        )
        logger.info("Deprovisioning of tenant %s scheduled for %s", tenant_id, scheduled_at)
        await self._record_audit(
            AuditAction.DEPROVISIONING_SCHEDULED,
            tenant_id,
            {"progress_id": progress.id, "scheduled_at": format_iso(ensure_utc(scheduled_at))},
        )
        return progress

    async def run_due_deprovisionings(
        self,
        now: datetime | None = None,
    ) -> list[ProvisioningProgressResponse]:
        """Execute scheduled deprovisionings whose time has come.

        A failing run is left ``failed`` and does not stop the others.

        Returns:
            Final state of every run that was started.
        """
        now = ensure_utc(now) or utc_now()
        pending = await self.list_progress(
            status=ProvisioningStatus.PENDING,
            kind=RunKind.DEPROVISIONING,
        )
        due = [
            progress
            for progress in pending
            if progress.meta.get("scheduled_at")
            and parse_iso(progress.meta["scheduled_at"]) <= now
        ]

        results: list[ProvisioningProgressResponse] = []
        for progress in sorted(due, key=lambda p: p.meta["scheduled_at"]):
            try:
                results.append(await self.execute_run(progress.id))
            except ControlPlaneError as e:
                logger.error("Scheduled deprovisioning %s failed: %s", progress.id, e)
                results.append(await self.get_progress(progress.id))
        return results

    # =========================================================================
    # Run engine
    # =========================================================================

    async def execute_run(self, progress_id: str) -> ProvisioningProgressResponse:
        """Run the remaining steps of a run in order.

        Stops at the first failing step, or before the next step when the
        run has been cancelled.

        Returns:
            Final persisted state of the run.

        Raises:
            ConflictError: A step hit a duplicate slug, email or document.
            ProvisioningError: A step failed for another reason; the
                original error is attached as ``cause``.
            ValidationError: A step rejected its input.
        """
        bind_context(progress_id=progress_id)
        try:
            while True:
                started = await self._start_next_step(progress_id)
                if started is None:
                    break
                ctx, step_id = started

                try:
                    result = await self._handlers[step_id](ctx)
                except SkipStep as skip:
                    await self._finish_step(ctx, step_id, StepStatus.SKIPPED, {"reason": skip.reason}, skip.warning)
                    continue
                except Exception as e:
                    error = self._translate_error(step_id, e)
                    error.details.setdefault("progress_id", progress_id)
                    error.details.setdefault("step_id", step_id)
                    await self._fail_step(ctx, step_id, error)
                    if error is e:
                        raise
                    raise error from e

                await self._finish_step(ctx, step_id, StepStatus.COMPLETED, result)
        finally:
            clear_context()

        return await self.get_progress(progress_id)

    async def _start_next_step(self, progress_id: str) -> tuple[RunContext, str] | None:
        """Mark the next unfinished step ``running``.

        Returns:
            The run context and step id, or None when the run is
            cancelled or has no steps left (in which case it is completed).
        """
        async with session_scope(self._session_factory) as session:
            progress = await self._get_progress(session, progress_id)
            status = ProvisioningStatus(progress.status)

            if status in (ProvisioningStatus.CANCELLED, ProvisioningStatus.COMPLETED):
                logger.info("Run %s is %s, no further steps", progress_id, status.value)
                return None

            steps = _load_steps(progress)
            index = next(
                (
                    i
                    for i, step in enumerate(steps)
                    if step.status not in (StepStatus.COMPLETED, StepStatus.SKIPPED)
                ),
                None,
            )

            if index is None:
                if status != ProvisioningStatus.RUNNING:
                    guard_transition(
                        status, ProvisioningStatus.RUNNING, PROVISIONING_TRANSITIONS, f"Run {progress_id}"
                    )
                progress.status = ProvisioningStatus.COMPLETED.value
                progress.completed_at = utc_now()
                progress.error = None
                ctx = RunContext(progress.id, RunKind(progress.kind), progress.request_data, dict(progress.meta))
                finished = True
            else:
                step = steps[index]
                step.status = guard_transition(
                    step.status, StepStatus.RUNNING, STEP_TRANSITIONS, f"Step {step.id}"
                )
                step.started_at = utc_now()
                step.completed_at = None
                step.error = None
                step.attempts += 1

                if status != ProvisioningStatus.RUNNING:
                    progress.status = guard_transition(
                        status, ProvisioningStatus.RUNNING, PROVISIONING_TRANSITIONS, f"Run {progress_id}"
                    ).value
                progress.started_at = progress.started_at or utc_now()
                progress.current_step = index
                progress.error = None
                progress.steps = _dump_steps(steps)
                ctx = RunContext(
                    progress.id,
                    RunKind(progress.kind),
                    copy.deepcopy(progress.request_data),
                    copy.deepcopy(progress.meta),
                )
                finished = False

        if finished:
            await self._on_run_completed(ctx)
            return None

        if ctx.tenant_id:
            bind_context(tenant_id=ctx.tenant_id)
        logger.info("Run %s step %s started", progress_id, steps[index].id)
        return ctx, steps[index].id

    async def _finish_step(
        self,
        ctx: RunContext,
        step_id: str,
        status: StepStatus,
        result: dict[str, Any],
        warning: str | None = None,
    ) -> None:
        async with session_scope(self._session_factory) as session:
            progress = await self._get_progress(session, ctx.progress_id)
            steps = _load_steps(progress)
            for step in steps:
                if step.id == step_id:
                    step.status = guard_transition(
                        step.status, status, STEP_TRANSITIONS, f"Step {step_id}"
                    )
                    step.completed_at = utc_now()
                    step.result = result
            progress.steps = _dump_steps(steps)
            progress.meta = copy.deepcopy(ctx.meta)
            progress.tenant_id = ctx.tenant_id or progress.tenant_id
            progress.institution_id = ctx.institution_id or progress.institution_id
            if warning:
                progress.warnings = [*progress.warnings, warning]

        logger.info("Run %s step %s %s", ctx.progress_id, step_id, status.value)

    async def _fail_step(self, ctx: RunContext, step_id: str, error: ControlPlaneError) -> None:
        message = str(error) if isinstance(error, ProvisioningError) else error.message

        async with session_scope(self._session_factory) as session:
            progress = await self._get_progress(session, ctx.progress_id)
            steps = _load_steps(progress)
            for step in steps:
                if step.id == step_id:
                    step.status = guard_transition(
                        step.status, StepStatus.FAILED, STEP_TRANSITIONS, f"Step {step_id}"
                    )
                    step.completed_at = utc_now()
                    step.error = message
            progress.steps = _dump_steps(steps)
            progress.meta = copy.deepcopy(ctx.meta)
            progress.tenant_id = ctx.tenant_id or progress.tenant_id
            progress.institution_id = ctx.institution_id or progress.institution_id
            progress.error = message
            status = ProvisioningStatus(progress.status)
            if status == ProvisioningStatus.RUNNING:
                progress.status = ProvisioningStatus.FAILED.value

        logger.error("Run %s step %s failed: %s", ctx.progress_id, step_id, message)
        await self._record_audit(
            AuditAction.PROVISIONING_FAILED,
            ctx.tenant_id,
            {"progress_id": ctx.progress_id, "step_id": step_id, "error": message},
        )
        await self._send_alert(
            Alert(
                title=f"{ctx.kind.value.capitalize()} step failed",
                message=f"Step {step_id} of run {ctx.progress_id} failed: {message}",
                severity=AlertSeverity.CRITICAL,
                tenant_id=ctx.tenant_id,
                details={"progress_id": ctx.progress_id, "step_id": step_id},
            )
        )

    async def _on_run_completed(self, ctx: RunContext) -> None:
        logger.info("Run %s completed", ctx.progress_id)
        action = (
            AuditAction.TENANT_PROVISIONED
            if ctx.kind == RunKind.PROVISIONING
            else AuditAction.TENANT_DEPROVISIONED
        )
        await self._record_audit(action, ctx.tenant_id, {"progress_id": ctx.progress_id})

    @staticmethod
    def _translate_error(step_id: str, error: Exception) -> ControlPlaneError:
        """Unique violations become conflicts; other failures wrap their cause.

        Conflicts, request validation errors and provisioning errors raised
        by a step already describe the failure and pass through.
        """
        if isinstance(error, DatabaseError) and isinstance(error.original_error, IntegrityError):
            return ConflictError(DUPLICATE_MESSAGE, {"step_id": step_id})
        if isinstance(error, PASS_THROUGH_ERRORS):
            return error
        details: dict[str, Any] = {"step_id": step_id}
        if isinstance(error, ControlPlaneError):
            details["cause_code"] = error.code
        return ProvisioningError(f"Step {step_id} failed", error, details)

    # =========================================================================
    # Provisioning steps
    # =========================================================================

    async def _create_institution(self, ctx: RunContext) -> dict[str, Any]:
        data = ctx.request.get("institution")

        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)

            if data is None:
                institution = await directory.get_institution(ctx.institution_id or "")
                if institution is None:
                    raise NotFoundError(
                        f"Institution {ctx.institution_id} not found",
                        {"institution_id": ctx.institution_id},
                    )
                return {"institution_id": institution.id, "created": False}

            existing = await directory.find_institution_by_slug(data["slug"])
            if existing is not None:
                if existing.id == ctx.institution_id or existing.settings.get(PROVISIONED_BY) == ctx.progress_id:
                    ctx.meta["institution_id"] = existing.id
                    return {"institution_id": existing.id, "created": False}
                raise ConflictError(
                    f"Institution slug {data['slug']} already in use: {DUPLICATE_MESSAGE}",
                    {"slug": data["slug"]},
                )

            settings = {
                "max_tenants": self._settings.default_max_tenants,
                **data.get("settings", {}),
                PROVISIONED_BY: ctx.progress_id,
            }
            institution = await directory.create_institution(
                name=data["name"],
                slug=data["slug"],
                legal_name=data.get("legal_name"),
                document_number=data.get("document_number"),
                type=data.get("type", "prefeitura"),
                email=data.get("email"),
                phone=data.get("phone"),
                address=data.get("address") or {},
                plan_id=data.get("plan_id"),
                settings=settings,
            )
            institution_id = institution.id

        ctx.meta["institution_id"] = institution_id
        ctx.mark_created("institution")
        return {"institution_id": institution_id, "created": True}

    async def _create_tenant(self, ctx: RunContext) -> dict[str, Any]:
        data = ctx.request["tenant"]

        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)

            existing = await directory.find_tenant_by_slug(data["slug"])
            if existing is not None:
                if existing.id == ctx.tenant_id or existing.settings.get(PROVISIONED_BY) == ctx.progress_id:
                    ctx.meta["tenant_id"] = existing.id
                    return {"tenant_id": existing.id, "created": False}
                raise ConflictError(
                    f"Tenant slug {data['slug']} already in use: {DUPLICATE_MESSAGE}",
                    {"slug": data["slug"]},
                )

            tenant = await directory.create_tenant(
                institution_id=ctx.institution_id,
                name=data["name"],
                slug=data["slug"],
                subdomain=data.get("subdomain") or data["slug"],
                status="provisioning",
                settings={**data.get("settings", {}), PROVISIONED_BY: ctx.progress_id},
            )
            tenant_id = tenant.id

        ctx.meta["tenant_id"] = tenant_id
        ctx.mark_created("tenant")
        bind_context(tenant_id=tenant_id)
        return {"tenant_id": tenant_id, "created": True}

    async def _create_admin_user(self, ctx: RunContext) -> dict[str, Any]:
        data = ctx.request["admin"]
        created = False

        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)

            user = await directory.find_user_by_email(data["email"])
            if user is not None and not (
                user.id == ctx.meta.get("admin_user_id") or user.password_hash == data["password_hash"]
            ):
                raise ConflictError(
                    f"Email {data['email']} already in use: {DUPLICATE_MESSAGE}",
                    {"email": data["email"]},
                )
            if user is None:
                user = await directory.create_user(
                    name=data["name"],
                    email=data["email"],
                    password_hash=data["password_hash"],
                    role="admin",
                )
                created = True

            await directory.link_institution_user(ctx.institution_id, user.id, "institution_admin")
            await directory.link_tenant_user(ctx.tenant_id, user.id, "tenant_admin")
            user_id = user.id

        ctx.meta["admin_user_id"] = user_id
        if created:
            ctx.mark_created("user")
        return {"user_id": user_id, "created": created}

    async def _link_tenant_user(self, ctx: RunContext) -> dict[str, Any]:
        user_id = ctx.request["user_id"]

        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)
            if await directory.get_user(user_id) is None:
                raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})
            await directory.link_tenant_user(ctx.tenant_id, user_id, "tenant_admin")

        ctx.meta["admin_user_id"] = user_id
        return {"user_id": user_id}

    async def _run_initial_migrations(self, ctx: RunContext) -> dict[str, Any]:
        results = await self._migrations.run_pending(ctx.tenant_id)
        failed = [r for r in results if not r.success]
        if failed:
            raise ProvisioningError(
                f"{len(failed)} tenant migration(s) did not complete",
                details={
                    "migrations": {r.migration_id: r.error for r in failed},
                },
            )
        return {"applied": [r.migration_id for r in results]}

    async def _apply_initial_configuration(self, ctx: RunContext) -> dict[str, Any]:
        version = await self._configuration.initialize_configuration(
            ctx.tenant_id,
            ctx.request.get("configuration") or {},
            user_id=ctx.meta.get("admin_user_id"),
        )
        return {"version": version.version}

    async def _complete(self, ctx: RunContext) -> dict[str, Any]:
        async with session_scope(self._session_factory) as session:
            tenant = await TenantDirectory(session).get_tenant(ctx.tenant_id or "")
            if tenant is None:
                raise NotFoundError(f"Tenant {ctx.tenant_id} not found", {"tenant_id": ctx.tenant_id})
            tenant.status = "active"
        return {"tenant_id": ctx.tenant_id}

    # =========================================================================
    # Deprovisioning steps
    # =========================================================================

    def _options(self, ctx: RunContext) -> DeprovisioningOptions:
        return DeprovisioningOptions.model_validate(ctx.request.get("options") or {})

    async def _snapshot_tenant(self, ctx: RunContext) -> dict[str, Any]:
        if not self._options(ctx).preserve_backups:
            raise SkipStep("Backups not requested")
        if self._snapshots is None:
            raise SkipStep(
                "No snapshot service configured",
                warning=f"Backup of tenant {ctx.tenant_id} was requested but no snapshot service is configured",
            )
        snapshot = await self._snapshots.create_snapshot(ctx.tenant_id)
        ctx.meta["snapshot_id"] = snapshot.id
        return {"snapshot_id": snapshot.id, "location": snapshot.location}

    async def _rollback_tenant_migrations(self, ctx: RunContext) -> dict[str, Any]:
        results = await self._migrations.rollback_to(tenant_id=ctx.tenant_id)
        failed = [r for r in results if not r.success]
        if failed:
            raise ProvisioningError(
                f"{len(failed)} tenant migration(s) could not be rolled back",
                details={"migrations": {r.migration_id: r.error for r in failed}},
            )
        return {"rolled_back": [r.migration_id for r in results]}

    async def _delete_tenant_data(self, ctx: RunContext) -> dict[str, Any]:
        options = self._options(ctx)

        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)
            if options.notify_users and "notify_recipients" not in ctx.meta:
                users = await directory.list_tenant_users(ctx.tenant_id)
                ctx.meta["notify_recipients"] = [user.email for user in users]
            removed = await directory.delete_tenant_data(ctx.tenant_id)

        purged = 0
        if not options.preserve_audit_logs:
            purged = await self._audit.purge(ctx.tenant_id)
        return {"rows_removed": removed, "audit_entries_removed": purged}

    async def _delete_tenant(self, ctx: RunContext) -> dict[str, Any]:
        async with session_scope(self._session_factory) as session:
            deleted = await TenantDirectory(session).delete_tenant(ctx.tenant_id)
        return {"deleted": deleted}

    async def _notify(self, ctx: RunContext) -> dict[str, Any]:
        if not self._options(ctx).notify_users:
            raise SkipStep("Notification not requested")
        recipients = ctx.meta.get("notify_recipients", [])
        await self._alerts.send(
            Alert(
                title="Tenant removed",
                message=f"Tenant {ctx.tenant_id} has been deprovisioned",
                tenant_id=ctx.tenant_id,
                recipients=recipients,
            )
        )
        return {"recipients": len(recipients)}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _create_run(
        self,
        kind: RunKind,
        steps: tuple[tuple[str, str], ...],
        request_data: dict[str, Any],
        tenant_id: str | None = None,
        institution_id: str | None = None,
        template_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> ProvisioningProgressResponse:
        run_meta = dict(meta or {})
        if tenant_id:
            run_meta["tenant_id"] = tenant_id
        if institution_id:
            run_meta["institution_id"] = institution_id

        async with session_scope(self._session_factory) as session:
            progress = ProvisioningProgress(
                kind=kind.value,
                tenant_id=tenant_id,
                institution_id=institution_id,
                template_id=template_id,
                status=ProvisioningStatus.PENDING.value,
                current_step=0,
                steps=_initial_steps(steps),
                request_data=request_data,
                warnings=[],
                meta=run_meta,
            )
            session.add(progress)
            await session.flush()

        logger.info("%s run %s created", kind.value.capitalize(), progress.id)
        return ProvisioningProgressResponse.model_validate(progress)

    def _parse(self, model: type, data: Any) -> Any:
        if isinstance(data, model):
            return data
        if data is None:
            raise ValidationError("Request body is required")
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid provisioning request",
                {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

    def _admin_data(self, request: ProvisionCompleteRequest | TemplateProvisionRequest) -> dict[str, Any]:
        return {
            "name": request.admin.name,
            "email": str(request.admin.email).lower(),
            "password_hash": self._hasher.hash(request.admin.password),
        }

    def _initial_configuration(
        self,
        template_id: str | None,
        overrides: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Merge a configuration template and overrides, then validate."""
        payload: dict[str, Any] = {}
        if template_id:
            try:
                payload = copy.deepcopy(self._configuration.get_template(template_id).configuration)
            except NotFoundError as e:
                raise ValidationError(e.message, e.details) from e
        payload = deep_merge(payload, dict(overrides))

        result = self._configuration.validate_changes(payload, {})
        if not result.is_valid:
            raise InvalidConfigurationValue([issue.model_dump(mode="json") for issue in result.errors])
        return payload

    async def _check_tenant_capacity(self, institution_id: str) -> None:
        async with session_scope(self._session_factory) as session:
            directory = TenantDirectory(session)
            institution = await directory.get_institution(institution_id)
            if institution is None:
                raise NotFoundError(
                    f"Institution {institution_id} not found",
                    {"institution_id": institution_id},
                )
            limit = int(institution.settings.get("max_tenants", self._settings.default_max_tenants))
            count = await directory.count_tenants(institution_id)

        if count >= limit:
            raise ConflictError(
                f"Institution {institution_id} reached its limit of {limit} tenant(s)",
                {"institution_id": institution_id, "max_tenants": limit, "tenants": count},
            )

    async def _require_tenant(self, tenant_id: str) -> None:
        async with session_scope(self._session_factory) as session:
            if await TenantDirectory(session).get_tenant(tenant_id) is None:
                raise NotFoundError(f"Tenant {tenant_id} not found", {"tenant_id": tenant_id})

    async def _get_progress(self, session: AsyncSession, progress_id: str) -> ProvisioningProgress:
        progress = await session.get(ProvisioningProgress, progress_id)
        if progress is None:
            raise NotFoundError(f"Run {progress_id} not found", {"progress_id": progress_id})
        return progress

    async def _record_audit(
        self,
        action: AuditAction,
        tenant_id: str | None,
        details: dict[str, Any],
    ) -> None:
        try:
            await self._audit.record(AuditEvent(action=action, tenant_id=tenant_id, details=details))
        except Exception as e:
            logger.warning("Failed to record audit event %s: %s", action.value, str(e))

    async def _send_alert(self, alert: Alert) -> None:
        try:
            await self._alerts.send(alert)
        except Exception as e:
            logger.warning("Failed to send alert '%s': %s", alert.title, str(e))
