# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration store and manager.

Each tenant owns an append-only series of numbered versions. A version
holds the tenant's overrides only; the effective configuration is the
schema defaults overlaid with the latest version's payload.

Every write (update, rollback, template, import, approved change
request) appends version N+1 in a single transaction. Concurrent
writers for the same tenant are serialized by the unique
(tenant_id, version) constraint: the loser retries with the next
number.

Example:
    >>> service = ConfigurationService(session_factory)
    >>> version = await service.update_configuration(
    ...     tenant_id, {"limits": {"maxSchools": 100}}, description="More schools"
    ... )
    >>> version.version
    2
"""

import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mealplane.core.config import ControlPlaneSettings, get_settings
from mealplane.core.exceptions import (
    InvalidConfigurationValue,
    NotFoundError,
    ValidationError,
    VersionNotFound,
)
from mealplane.domains.configuration.payload import (
    apply_changes,
    changes_from_items,
    diff_payloads,
    flatten,
    lookup,
)
from mealplane.domains.configuration.schema import ConfigurationSchema, load_schema
from mealplane.domains.configuration.templates import load_templates
from mealplane.infrastructure.database.connection import DatabaseError, session_scope
from mealplane.infrastructure.database.models.configuration import (
    ConfigurationChangeRequest,
    TenantConfigurationVersion,
)
from mealplane.models.common import guard_transition
from mealplane.models.configuration import (
    CHANGE_REQUEST_TRANSITIONS,
    ChangeItem,
    ChangeOperation,
    ChangeRequestCreate,
    ChangeRequestResponse,
    ChangeRequestStatus,
    ConfigurationDiff,
    ConfigurationExport,
    ConfigurationTemplate,
    ConfigurationVersionResponse,
    ResolvedConfiguration,
    ValidationResult,
    VersionSource,
)
from mealplane.utils.datetime import utc_now

logger = logging.getLogger(__name__)

PayloadBuilder = Callable[[dict[str, Any]], dict[str, Any]]
VersionHook = Callable[[AsyncSession, TenantConfigurationVersion], Awaitable[None]]
AutoApplyPolicy = Callable[[str, str], bool]


def allow_any_requester(tenant_id: str, requester_id: str) -> bool:
    """Default auto-apply policy: any identified requester may auto-apply."""
    return bool(requester_id)


def _issues_to_errors(result: ValidationResult) -> list[dict[str, Any]]:
    return [issue.model_dump(mode="json") for issue in result.errors]


class ConfigurationService:
    """Versioned tenant configuration with validation and approval.

    Attributes:
        _session_factory: Sessionmaker for the platform database.
        _schema: Field definitions and defaults.
        _templates: Configuration templates keyed by id.
        _write_attempts: Attempts for a version write that loses a race.
        _can_auto_apply: Decides whether a requester may skip review.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: ControlPlaneSettings | None = None,
        schema: ConfigurationSchema | None = None,
        templates: Mapping[str, ConfigurationTemplate] | None = None,
        can_auto_apply: AutoApplyPolicy = allow_any_requester,
    ) -> None:
        """Initialize the configuration service.

        Args:
            session_factory: Sessionmaker for the platform database.
            settings: Control plane settings. Defaults to the cached settings.
            schema: Configuration schema. Loaded from the config directory
                when not given.
            templates: Configuration templates. Loaded from the config
                directory when not given.
            can_auto_apply: Predicate (tenant_id, requester_id) used for
                change requests that ask to be applied immediately.
        """
        settings = settings or get_settings().control_plane
        self._session_factory = session_factory
        self._schema = schema or load_schema(settings.config_dir)
        self._templates = dict(templates) if templates is not None else load_templates(
            settings.config_dir
        )
        self._write_attempts = settings.version_write_attempts
        self._can_auto_apply = can_auto_apply

    @property
    def schema(self) -> ConfigurationSchema:
        return self._schema

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_configuration(
        self,
        tenant_id: str,
        include_inheritance: bool = True,
    ) -> ResolvedConfiguration:
        """Effective configuration of a tenant.

        Args:
            tenant_id: Tenant identifier.
            include_inheritance: When False only the tenant overrides are
                returned, all marked as ``tenant``.

        Returns:
            Resolved configuration, provenance and current version.
        """
        async with session_scope(self._session_factory) as session:
            latest = await self._latest(session, tenant_id)

        payload = copy.deepcopy(latest.payload) if latest else {}
        version = latest.version if latest else None

        if not include_inheritance:
            return ResolvedConfiguration(
                tenant_id=tenant_id,
                version=version,
                configuration=payload,
                provenance={path: "tenant" for path in flatten(payload)},
            )

        resolved, provenance = self._schema.resolve(payload)
        return ResolvedConfiguration(
            tenant_id=tenant_id,
            version=version,
            configuration=resolved,
            provenance=provenance,
        )

    async def list_versions(self, tenant_id: str) -> list[ConfigurationVersionResponse]:
        """All versions of a tenant, oldest first."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(TenantConfigurationVersion)
                .where(TenantConfigurationVersion.tenant_id == tenant_id)
                .order_by(TenantConfigurationVersion.version)
            )
            versions = list(result.scalars())
        return [ConfigurationVersionResponse.model_validate(v) for v in versions]

    async def get_version(self, tenant_id: str, version: int) -> ConfigurationVersionResponse:
        """Load a single version.

        Raises:
            VersionNotFound: If the tenant has no such version.
        """
        async with session_scope(self._session_factory) as session:
            row = await self._get_version(session, tenant_id, version)
        return ConfigurationVersionResponse.model_validate(row)

    async def get_diff(
        self,
        tenant_id: str,
        from_version: int,
        to_version: int,
    ) -> ConfigurationDiff:
        """Path-level difference between two versions.

        Raises:
            VersionNotFound: If either version does not exist.
        """
        async with session_scope(self._session_factory) as session:
            old = await self._get_version(session, tenant_id, from_version)
            new = await self._get_version(session, tenant_id, to_version)

        added, removed, changed = diff_payloads(old.payload, new.payload)
        return ConfigurationDiff(
            tenant_id=tenant_id,
            from_version=from_version,
            to_version=to_version,
            added=added,
            removed=removed,
            changed=changed,
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def validate_changes(
        self,
        changes: Mapping[str, Any],
        prior_payload: Mapping[str, Any],
    ) -> ValidationResult:
        """Validate ``changes`` as applied on top of ``prior_payload``."""
        resolved, _ = self._schema.resolve(apply_changes(prior_payload, changes))
        return self._schema.validate(changes, resolved)

    async def update_configuration(
        self,
        tenant_id: str,
        changes: Mapping[str, Any],
        description: str | None = None,
        user_id: str | None = None,
        validate_only: bool = False,
        source: VersionSource = VersionSource.UPDATE,
    ) -> ValidationResult | ConfigurationVersionResponse:
        """Validate and apply a batch of changes as a new version.

        Changes are merged over the prior payload; a ``None`` value removes
        the key so it inherits the default again.

        Args:
            tenant_id: Tenant identifier.
            changes: Nested ``category -> key -> value`` mapping.
            description: Version description.
            user_id: Author of the change.
            validate_only: Only validate, never write.
            source: What produced the version.

        Returns:
            The validation result when ``validate_only`` is set, otherwise
            the new version.

        Raises:
            ValidationError: If ``changes`` is empty.
            InvalidConfigurationValue: If validation fails on a real write.
        """
        if not changes:
            raise ValidationError("No configuration changes given", {"tenant_id": tenant_id})

        if validate_only:
            async with session_scope(self._session_factory) as session:
                latest = await self._latest(session, tenant_id)
            return self.validate_changes(changes, latest.payload if latest else {})

        def build(prior: dict[str, Any]) -> dict[str, Any]:
            result = self.validate_changes(changes, prior)
            if not result.is_valid:
                raise InvalidConfigurationValue(_issues_to_errors(result))
            for warning in result.warnings:
                logger.warning(
                    "Configuration warning for tenant %s: %s (%s)",
                    tenant_id,
                    warning.message,
                    warning.code.value,
                )
            return apply_changes(prior, changes)

        return await self._write_version(
            tenant_id,
            build,
            description=description,
            user_id=user_id,
            source=source,
        )

    async def rollback_configuration(
        self,
        tenant_id: str,
        target_version: int,
        reason: str,
        user_id: str | None = None,
    ) -> ConfigurationVersionResponse:
        """Create version N+1 whose payload equals ``target_version``.

        Only the given tenant is affected; other tenants never change.

        Raises:
            ValidationError: If no reason is given.
            VersionNotFound: If the target version does not exist.
            InvalidConfigurationValue: If the old payload is no longer valid.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rollback reason is required", {"tenant_id": tenant_id})

        async with session_scope(self._session_factory) as session:
            target = await self._get_version(session, tenant_id, target_version)
            target_payload = copy.deepcopy(target.payload)

        result = self.validate_changes(target_payload, {})
        if not result.is_valid:
            raise InvalidConfigurationValue(_issues_to_errors(result))

        version = await self._write_version(
            tenant_id,
            lambda prior: copy.deepcopy(target_payload),
            description=f"Rollback to version {target_version}: {reason}",
            user_id=user_id,
            source=VersionSource.ROLLBACK,
            source_version=target_version,
        )
        logger.info(
            "Configuration of tenant %s rolled back to version %d as version %d",
            tenant_id,
            target_version,
            version.version,
        )
        return version

    async def initialize_configuration(
        self,
        tenant_id: str,
        payload: Mapping[str, Any] | None = None,
        user_id: str | None = None,
        description: str = "Initial configuration",
    ) -> ConfigurationVersionResponse:
        """Write version 1 for a newly provisioned tenant.

        Returns the existing latest version unchanged when the tenant
        already has one, so provisioning can re-run this step.

        Raises:
            InvalidConfigurationValue: If the payload fails validation.
        """
        async with session_scope(self._session_factory) as session:
            latest = await self._latest(session, tenant_id)
        if latest is not None:
            logger.debug("Tenant %s already has configuration version %d", tenant_id, latest.version)
            return ConfigurationVersionResponse.model_validate(latest)

        initial = dict(payload or {})
        result = self.validate_changes(initial, {})
        if not result.is_valid:
            raise InvalidConfigurationValue(_issues_to_errors(result))

        return await self._write_version(
            tenant_id,
            lambda prior: apply_changes(prior, initial),
            description=description,
            user_id=user_id,
            source=VersionSource.INITIAL,
        )

    # =========================================================================
    # Change requests
    # =========================================================================

    async def request_change(
        self,
        tenant_id: str,
        request: ChangeRequestCreate,
    ) -> ChangeRequestResponse:
        """Record a change request for review.

        The proposed values are validated up front. When ``auto_apply``
        is set and the requester passes the auto-apply policy, the request
        is approved and applied immediately.

        Raises:
            InvalidConfigurationValue: If the proposed values are invalid.
        """
        changes = self._changes_from_request(request.changes)

        async with session_scope(self._session_factory) as session:
            latest = await self._latest(session, tenant_id)
            prior = latest.payload if latest else {}

            result = self.validate_changes(changes, prior)
            if not result.is_valid:
                raise InvalidConfigurationValue(_issues_to_errors(result))

            items = [
                item.model_copy(update={"old_value": lookup(prior, item.category, item.key)})
                for item in request.changes
            ]
            row = ConfigurationChangeRequest(
                tenant_id=tenant_id,
                changes=[item.model_dump(mode="json") for item in items],
                description=request.description,
                requested_by=request.requested_by,
                status=ChangeRequestStatus.PENDING.value,
                auto_apply=request.auto_apply,
            )
            session.add(row)
            await session.flush()

        logger.info(
            "Configuration change request %s created for tenant %s by %s",
            row.id,
            tenant_id,
            request.requested_by,
        )

        if request.auto_apply and self._can_auto_apply(tenant_id, request.requested_by):
            return await self.approve_change(row.id, request.requested_by)
        return ChangeRequestResponse.model_validate(row)

    async def approve_change(self, request_id: str, approver_id: str) -> ChangeRequestResponse:
        """Approve a pending request and apply it as a new version.

        Approval and the version write share one transaction, so a request
        is never left approved without its version.

        Raises:
            NotFoundError: If the request does not exist.
            InvalidRequestState: If the request is not pending.
            InvalidConfigurationValue: If the changes no longer validate.
        """
        async with session_scope(self._session_factory) as session:
            request = await self._get_request(session, request_id)
            guard_transition(
                ChangeRequestStatus(request.status),
                ChangeRequestStatus.APPROVED,
                CHANGE_REQUEST_TRANSITIONS,
                f"Change request {request_id}",
            )
            tenant_id = request.tenant_id
            description = request.description
            items = [ChangeItem.model_validate(item) for item in request.changes]

        changes = self._changes_from_request(items)

        async def mark_applied(session: AsyncSession, version: TenantConfigurationVersion) -> None:
            row = await self._get_request(session, request_id)
            status = guard_transition(
                ChangeRequestStatus(row.status),
                ChangeRequestStatus.APPROVED,
                CHANGE_REQUEST_TRANSITIONS,
                f"Change request {request_id}",
            )
            status = guard_transition(
                status,
                ChangeRequestStatus.APPLIED,
                CHANGE_REQUEST_TRANSITIONS,
                f"Change request {request_id}",
            )
            row.status = status.value
            row.reviewed_by = approver_id
            row.reviewed_at = utc_now()
            row.applied_version = version.version

        def build(prior: dict[str, Any]) -> dict[str, Any]:
            result = self.validate_changes(changes, prior)
            if not result.is_valid:
                raise InvalidConfigurationValue(_issues_to_errors(result))
            return apply_changes(prior, changes)

        version = await self._write_version(
            tenant_id,
            build,
            description=description or f"Change request {request_id}",
            user_id=approver_id,
            source=VersionSource.CHANGE_REQUEST,
            on_write=mark_applied,
        )
        logger.info(
            "Change request %s approved by %s and applied as version %d",
            request_id,
            approver_id,
            version.version,
        )

        async with session_scope(self._session_factory) as session:
            request = await self._get_request(session, request_id)
        return ChangeRequestResponse.model_validate(request)

    async def reject_change(
        self,
        request_id: str,
        approver_id: str,
        reason: str,
    ) -> ChangeRequestResponse:
        """Reject a pending request.

        Raises:
            ValidationError: If no reason is given.
            NotFoundError: If the request does not exist.
            InvalidRequestState: If the request is not pending.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", {"request_id": request_id})

        async with session_scope(self._session_factory) as session:
            request = await self._get_request(session, request_id)
            status = guard_transition(
                ChangeRequestStatus(request.status),
                ChangeRequestStatus.REJECTED,
                CHANGE_REQUEST_TRANSITIONS,
                f"Change request {request_id}",
            )
            request.status = status.value
            request.reviewed_by = approver_id
            request.reviewed_at = utc_now()
            request.review_comment = reason

        logger.info("Change request %s rejected by %s", request_id, approver_id)
        return ChangeRequestResponse.model_validate(request)

    async def list_change_requests(
        self,
        tenant_id: str,
        status: ChangeRequestStatus | None = None,
    ) -> list[ChangeRequestResponse]:
        """Change requests of a tenant, newest first."""
        query = select(ConfigurationChangeRequest).where(
            ConfigurationChangeRequest.tenant_id == tenant_id
        )
        if status is not None:
            query = query.where(ConfigurationChangeRequest.status == status.value)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                query.order_by(ConfigurationChangeRequest.created_at.desc())
            )
            requests = list(result.scalars())
        return [ChangeRequestResponse.model_validate(r) for r in requests]

    # =========================================================================
    # Templates, export and import
    # =========================================================================

    def list_templates(self, tenant_type: str | None = None) -> list[ConfigurationTemplate]:
        """Available templates, optionally only those meant for a tenant type.

        Templates without target types apply to every type.
        """
        templates = sorted(self._templates.values(), key=lambda t: (not t.is_default, t.id))
        if tenant_type is None:
            return templates
        return [
            t for t in templates if not t.target_tenant_types or tenant_type in t.target_tenant_types
        ]

    def get_template(self, template_id: str) -> ConfigurationTemplate:
        """Look up a template.

        Raises:
            NotFoundError: If no template has this id.
        """
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(
                f"Configuration template {template_id} not found",
                {"template_id": template_id},
            )
        return template

    async def apply_template(
        self,
        tenant_id: str,
        template_id: str,
        user_id: str | None = None,
    ) -> ConfigurationVersionResponse:
        """Apply a template's configuration as a single update.

        Raises:
            NotFoundError: If the template does not exist.
            InvalidConfigurationValue: If the result fails validation.
        """
        template = self.get_template(template_id)
        return await self.update_configuration(
            tenant_id,
            template.configuration,
            description=f"Applied template {template.name}",
            user_id=user_id,
            source=VersionSource.TEMPLATE,
        )

    async def export_configuration(
        self,
        tenant_id: str,
        version: int | None = None,
    ) -> ConfigurationExport:
        """Export the overrides of a version, the latest by default.

        Raises:
            VersionNotFound: If an explicit version does not exist.
        """
        async with session_scope(self._session_factory) as session:
            if version is None:
                row = await self._latest(session, tenant_id)
            else:
                row = await self._get_version(session, tenant_id, version)

        return ConfigurationExport(
            tenant_id=tenant_id,
            version=row.version if row else None,
            exported_at=utc_now(),
            configuration=copy.deepcopy(row.payload) if row else {},
        )

    async def import_configuration(
        self,
        tenant_id: str,
        data: Mapping[str, Any],
        validate_only: bool = False,
        user_id: str | None = None,
        description: str | None = None,
    ) -> ValidationResult | ConfigurationVersionResponse:
        """Import an exported configuration through the update path.

        Accepts either an export document (with a ``configuration`` key)
        or a raw payload.
        """
        configuration = data.get("configuration", data)
        if not isinstance(configuration, Mapping):
            raise ValidationError("Imported configuration must be an object", {"tenant_id": tenant_id})

        return await self.update_configuration(
            tenant_id,
            configuration,
            description=description or "Imported configuration",
            user_id=user_id,
            validate_only=validate_only,
            source=VersionSource.IMPORT,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    async def _write_version(
        self,
        tenant_id: str,
        build: PayloadBuilder,
        description: str | None,
        user_id: str | None,
        source: VersionSource,
        source_version: int | None = None,
        on_write: VersionHook | None = None,
    ) -> ConfigurationVersionResponse:
        """Append the next version, retrying when another writer wins.

        ``build`` receives the prior payload and returns the new one; it
        is re-run on every attempt so the new version always derives from
        the version it follows.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with session_scope(self._session_factory) as session:
                    latest = await self._latest(session, tenant_id)
                    prior = copy.deepcopy(latest.payload) if latest else {}
                    row = TenantConfigurationVersion(
                        tenant_id=tenant_id,
                        version=(latest.version if latest else 0) + 1,
                        payload=build(prior),
                        description=description,
                        source=source.value,
                        source_version=source_version,
                        created_by=user_id,
                        created_at=utc_now(),
                    )
                    session.add(row)
                    await session.flush()
                    if on_write is not None:
                        await on_write(session, row)
            except DatabaseError as e:
                if isinstance(e.original_error, IntegrityError) and attempt < self._write_attempts:
                    logger.warning(
                        "Configuration version conflict for tenant %s (attempt %d/%d), retrying",
                        tenant_id,
                        attempt,
                        self._write_attempts,
                    )
                    continue
                raise

            logger.info(
                "Configuration version %d written for tenant %s (source=%s)",
                row.version,
                tenant_id,
                source.value,
            )
            return ConfigurationVersionResponse.model_validate(row)

    def _changes_from_request(self, items: list[ChangeItem]) -> dict[str, Any]:
        return changes_from_items(
            [
                (
                    item.category,
                    item.key,
                    None if item.operation == ChangeOperation.DELETE else item.new_value,
                )
                for item in items
            ]
        )

    async def _latest(
        self,
        session: AsyncSession,
        tenant_id: str,
    ) -> TenantConfigurationVersion | None:
        result = await session.execute(
            select(TenantConfigurationVersion)
            .where(TenantConfigurationVersion.tenant_id == tenant_id)
            .order_by(TenantConfigurationVersion.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_version(
        self,
        session: AsyncSession,
        tenant_id: str,
        version: int,
    ) -> TenantConfigurationVersion:
        result = await session.execute(
            select(TenantConfigurationVersion).where(
                TenantConfigurationVersion.tenant_id == tenant_id,
                TenantConfigurationVersion.version == version,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise VersionNotFound(tenant_id, version)
        return row

    async def _get_request(
        self,
        session: AsyncSession,
        request_id: str,
    ) -> ConfigurationChangeRequest:
        request = await session.get(ConfigurationChangeRequest, request_id)
        if request is None:
            raise NotFoundError(
                f"Change request {request_id} not found",
                {"request_id": request_id},
            )
        return request
