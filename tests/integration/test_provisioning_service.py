# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for ProvisioningOrchestrator against SQLite."""

from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import func, select, text

from mealplane.core.exceptions import (
    ConflictError,
    InvalidConfigurationValue,
    InvalidRequestState,
    NotFoundError,
    ProvisioningError,
    StepNotRetryable,
    ValidationError,
)
from mealplane.domains.directory import TenantDirectory
from mealplane.domains.migration import MigrationService
from mealplane.domains.provisioning import ProvisioningOrchestrator
from mealplane.infrastructure.database.connection import session_scope
from mealplane.infrastructure.database.models import ProvisioningProgress, User
from mealplane.infrastructure.sinks import AlertSeverity
from mealplane.models.migration import MigrationDefinitionCreate, MigrationStatus
from mealplane.models.provisioning import (
    DeprovisioningOptions,
    ProvisioningStatus,
    RunKind,
    StepStatus,
)
from mealplane.utils.datetime import utc_now
from tests.conftest import provision_payload

pytestmark = pytest.mark.integration


def tenant_migration(migration_id: str, up_sql: str, down_sql: str) -> MigrationDefinitionCreate:
    return MigrationDefinitionCreate(
        id=migration_id,
        name=migration_id,
        up_sql=up_sql,
        down_sql=down_sql,
        tenant_specific=True,
    )


def step_statuses(progress) -> dict[str, StepStatus]:
    return {step.id: step.status for step in progress.steps}


async def only_run(orchestrator: ProvisioningOrchestrator, **filters: Any):
    runs = await orchestrator.list_progress(**filters)
    assert len(runs) == 1
    return runs[0]


async def count_users(session_factory, email: str) -> int:
    async with session_scope(session_factory) as session:
        result = await session.execute(
            select(func.count()).select_from(User).where(User.email == email)
        )
        return result.scalar_one()


async def mark_step_failed(session_factory, progress_id: str, step_id: str) -> None:
    """Simulate a crash that lost the completion of a step."""
    async with session_scope(session_factory) as session:
        row = await session.get(ProvisioningProgress, progress_id)
        steps = [dict(step) for step in row.steps]
        for step in steps:
            if step["id"] == step_id:
                step["status"] = StepStatus.FAILED.value
        row.steps = steps
        row.status = ProvisioningStatus.FAILED.value


class TestProvisionComplete:
    """Complete provisioning of an institution, tenant and admin."""

    async def test_escola_central(
        self,
        orchestrator: ProvisioningOrchestrator,
        configuration_service,
        session_factory,
        audit_sink,
        escola_central_request: dict[str, Any],
    ) -> None:
        result = await orchestrator.provision_complete(escola_central_request)

        assert result.success is True
        assert result.status == ProvisioningStatus.COMPLETED
        assert all(step.status == StepStatus.COMPLETED for step in result.steps)
        assert [step.id for step in result.steps] == [
            "create_institution",
            "create_tenant",
            "create_admin_user",
            "run_initial_migrations",
            "apply_initial_configuration",
            "complete",
        ]

        async with session_scope(session_factory) as session:
            directory = TenantDirectory(session)
            tenant = await directory.get_tenant(result.tenant_id)
            institution = await directory.get_institution(result.institution_id)
            users = await directory.list_tenant_users(result.tenant_id)
            assert tenant.status == "active"
            assert tenant.institution_id == result.institution_id
            assert institution.slug == "escola-central"
            assert institution.document_number == "12345678000190"
            assert institution.settings["max_tenants"] == 5
            assert [user.email for user in users] == ["admin@escolacentral.edu.br"]
            assert users[0].id == result.admin_user_id

        configuration = await configuration_service.get_configuration(result.tenant_id)
        assert configuration.version == 1
        assert configuration.configuration["limits"]["maxSchools"] == 50
        assert audit_sink.actions() == ["tenant_provisioned"]

    async def test_progress_is_persisted(
        self,
        orchestrator: ProvisioningOrchestrator,
        escola_central_request: dict[str, Any],
    ) -> None:
        result = await orchestrator.provision_complete(escola_central_request)

        progress = await orchestrator.get_progress(result.progress_id)

        assert progress.kind == RunKind.PROVISIONING
        assert progress.tenant_id == result.tenant_id
        assert progress.completed_at is not None
        assert progress.meta["created"] == {"institution": True, "tenant": True, "user": True}

    async def test_password_is_not_stored_in_run(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
        escola_central_request: dict[str, Any],
    ) -> None:
        result = await orchestrator.provision_complete(escola_central_request)

        async with session_scope(session_factory) as session:
            row = await session.get(ProvisioningProgress, result.progress_id)
            admin = row.request_data["admin"]

        assert "password" not in admin
        assert admin["password_hash"].startswith("$2b$")

    async def test_tenant_migrations_run(
        self,
        orchestrator: ProvisioningOrchestrator,
        migration_service: MigrationService,
        escola_central_request: dict[str, Any],
    ) -> None:
        await migration_service.create_definition(
            tenant_migration(
                "001_menus",
                "CREATE TABLE IF NOT EXISTS menus (id INTEGER PRIMARY KEY);",
                "DROP TABLE IF EXISTS menus;",
            )
        )

        result = await orchestrator.provision_complete(escola_central_request)

        step = next(s for s in result.steps if s.id == "run_initial_migrations")
        assert step.result == {"applied": ["001_menus"]}
        status = await migration_service.get_status(result.tenant_id)
        assert [(s.migration_id, s.status) for s in status] == [("001_menus", MigrationStatus.COMPLETED)]

    async def test_configuration_template_and_overrides(
        self,
        orchestrator: ProvisioningOrchestrator,
        configuration_service,
    ) -> None:
        payload = provision_payload()
        payload["configurationTemplate"] = "small-school"
        payload["configuration"] = {"limits": {"maxUsers": 30}}

        result = await orchestrator.provision_complete(payload)

        configuration = await configuration_service.get_configuration(result.tenant_id)
        assert configuration.configuration["limits"]["maxSchools"] == 1
        assert configuration.configuration["limits"]["maxUsers"] == 30
        assert configuration.configuration["features"]["contracts"] is False


class TestValidationBeforeWrite:
    """Bad input is rejected before a run is recorded."""

    async def test_invalid_configuration(self, orchestrator: ProvisioningOrchestrator) -> None:
        payload = provision_payload()
        payload["configuration"] = {"limits": {"maxSchools": 0}}

        with pytest.raises(InvalidConfigurationValue) as exc_info:
            await orchestrator.provision_complete(payload)

        assert exc_info.value.details["errors"][0]["key"] == "maxSchools"
        assert await orchestrator.list_progress() == []

    async def test_unknown_configuration_template(self, orchestrator: ProvisioningOrchestrator) -> None:
        payload = provision_payload()
        payload["configurationTemplate"] = "does-not-exist"

        with pytest.raises(ValidationError):
            await orchestrator.provision_complete(payload)

        assert await orchestrator.list_progress() == []

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda p: p.pop("admin"),
            lambda p: p["admin"].update(password="abc"),
            lambda p: p["admin"].update(email="not-an-email"),
            lambda p: p["tenant"].update(slug="Escola Central"),
        ],
    )
    async def test_malformed_request(self, orchestrator: ProvisioningOrchestrator, mutate) -> None:
        payload = provision_payload()
        mutate(payload)

        with pytest.raises(ValidationError):
            await orchestrator.provision_complete(payload)

    async def test_missing_body(self, orchestrator: ProvisioningOrchestrator) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.provision_complete(None)


class TestFailures:
    """Step failures leave a failed run that can be retried or cleaned up."""

    async def test_duplicate_slug(
        self,
        orchestrator: ProvisioningOrchestrator,
        audit_sink,
        alert_sink,
    ) -> None:
        """A second run with the same slug fails at the first step."""
        await orchestrator.provision_complete(provision_payload())

        with pytest.raises(ConflictError):
            await orchestrator.provision_complete(provision_payload(email="outra@escolacentral.edu.br"))

        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)
        statuses = step_statuses(failed)
        assert statuses["create_institution"] == StepStatus.FAILED
        assert {statuses[s] for s in list(statuses)[1:]} == {StepStatus.PENDING}
        assert "already in use" in failed.error
        assert "provisioning_failed" in audit_sink.actions()
        assert alert_sink.alerts[-1].severity == AlertSeverity.CRITICAL

    async def test_duplicate_tenant_slug(self, orchestrator: ProvisioningOrchestrator) -> None:
        await orchestrator.provision_complete(provision_payload())
        payload = provision_payload("escola-norte")
        payload["tenant"]["slug"] = "escola-central"

        with pytest.raises(ConflictError):
            await orchestrator.provision_complete(payload)

        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)
        assert failed.step("create_institution").status == StepStatus.COMPLETED
        assert failed.step("create_tenant").status == StepStatus.FAILED
        assert {
            failed.step(step_id).status
            for step_id in ("create_admin_user", "run_initial_migrations", "apply_initial_configuration", "complete")
        } == {StepStatus.PENDING}

    async def test_duplicate_document_number(self, orchestrator: ProvisioningOrchestrator) -> None:
        await orchestrator.provision_complete(provision_payload())
        payload = provision_payload("escola-norte")
        payload["institution"]["documentNumber"] = "12345678000190"

        with pytest.raises(ConflictError):
            await orchestrator.provision_complete(payload)

        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)
        assert failed.step("create_institution").status == StepStatus.FAILED

    async def test_retry_failed_migration_step(
        self,
        orchestrator: ProvisioningOrchestrator,
        migration_service: MigrationService,
        session_factory,
        escola_central_request: dict[str, Any],
    ) -> None:
        await migration_service.create_definition(
            tenant_migration(
                "001_menu_index",
                "CREATE INDEX IF NOT EXISTS ix_menu_items ON menu_items (id);",
                "DROP INDEX IF EXISTS ix_menu_items;",
            )
        )

        with pytest.raises(ProvisioningError):
            await orchestrator.provision_complete(escola_central_request)

        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)
        assert failed.step("create_admin_user").status == StepStatus.COMPLETED
        assert failed.step("run_initial_migrations").status == StepStatus.FAILED
        assert failed.step("apply_initial_configuration").status == StepStatus.PENDING

        async with session_scope(session_factory) as session:
            await session.execute(text("CREATE TABLE menu_items (id INTEGER PRIMARY KEY)"))

        progress = await orchestrator.retry_failed_step(failed.id, "run_initial_migrations")

        assert progress.status == ProvisioningStatus.COMPLETED
        assert progress.step("run_initial_migrations").attempts == 2
        assert progress.step("create_tenant").attempts == 1
        assert progress.error is None

    async def test_retry_admin_step_reuses_user(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
        escola_central_request: dict[str, Any],
    ) -> None:
        """Re-running the admin step after a lost completion keeps one user."""
        result = await orchestrator.provision_complete(escola_central_request)
        await mark_step_failed(session_factory, result.progress_id, "create_admin_user")

        progress = await orchestrator.retry_failed_step(result.progress_id, "create_admin_user")

        assert progress.status == ProvisioningStatus.COMPLETED
        assert progress.meta["admin_user_id"] == result.admin_user_id
        assert progress.step("create_admin_user").result["created"] is False
        assert await count_users(session_factory, "admin@escolacentral.edu.br") == 1

    async def test_retry_admin_step_keeps_institution_and_tenant(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
    ) -> None:
        """Retrying a failed admin step does not recreate earlier rows."""
        first = await orchestrator.provision_complete(provision_payload())
        with pytest.raises(ConflictError):
            await orchestrator.provision_complete(
                provision_payload("escola-norte", email="admin@escolacentral.edu.br")
            )
        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)

        async with session_scope(session_factory) as session:
            await TenantDirectory(session).delete_user(first.admin_user_id)
        progress = await orchestrator.retry_failed_step(failed.id, "create_admin_user")

        assert progress.status == ProvisioningStatus.COMPLETED
        assert progress.step("create_institution").attempts == 1
        assert progress.step("create_tenant").attempts == 1
        assert progress.step("create_admin_user").attempts == 2
        assert progress.tenant_id == failed.tenant_id
        async with session_scope(session_factory) as session:
            directory = TenantDirectory(session)
            assert await directory.count_tenants(failed.institution_id) == 1
            assert (await directory.find_tenant_by_slug("escola-norte")).id == failed.tenant_id

    async def test_retry_rejects_non_failed_step(
        self,
        orchestrator: ProvisioningOrchestrator,
        escola_central_request: dict[str, Any],
    ) -> None:
        result = await orchestrator.provision_complete(escola_central_request)

        with pytest.raises(StepNotRetryable):
            await orchestrator.retry_failed_step(result.progress_id, "create_tenant")
        with pytest.raises(NotFoundError):
            await orchestrator.retry_failed_step(result.progress_id, "configure_dns")

    async def test_recover_failed_run(
        self,
        orchestrator: ProvisioningOrchestrator,
        migration_service: MigrationService,
        session_factory,
        escola_central_request: dict[str, Any],
    ) -> None:
        await migration_service.create_definition(
            tenant_migration(
                "001_menu_index",
                "CREATE INDEX IF NOT EXISTS ix_menu_items ON menu_items (id);",
                "DROP INDEX IF EXISTS ix_menu_items;",
            )
        )
        with pytest.raises(ProvisioningError):
            await orchestrator.provision_complete(escola_central_request)
        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)

        async with session_scope(session_factory) as session:
            await session.execute(text("CREATE TABLE menu_items (id INTEGER PRIMARY KEY)"))
        progress = await orchestrator.recover_failed_provisioning(failed.id)

        assert progress.status == ProvisioningStatus.COMPLETED
        with pytest.raises(InvalidRequestState):
            await orchestrator.recover_failed_provisioning(failed.id)

    async def test_unknown_run(self, orchestrator: ProvisioningOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.get_progress("missing")

    @pytest.mark.parametrize(
        "error",
        [
            NotFoundError("Migration scope missing"),
            InvalidRequestState("Migration 001 is running"),
            RuntimeError("disk full"),
        ],
    )
    async def test_step_error_is_wrapped_with_cause(
        self,
        session_factory,
        configuration_service,
        control_plane_settings,
        hasher,
        audit_sink,
        alert_sink,
        escola_central_request: dict[str, Any],
        error: Exception,
    ) -> None:
        """Failures other than conflicts surface as ProvisioningError."""

        class BrokenMigrations(MigrationService):
            async def run_pending(self, tenant_id=None):
                raise error

        orchestrator = ProvisioningOrchestrator(
            session_factory,
            BrokenMigrations(session_factory),
            configuration_service,
            settings=control_plane_settings,
            hasher=hasher,
            audit=audit_sink,
            alerts=alert_sink,
        )

        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.provision_complete(escola_central_request)

        assert exc_info.value.cause is error
        assert exc_info.value.details["step_id"] == "run_initial_migrations"
        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)
        assert failed.step("run_initial_migrations").status == StepStatus.FAILED


class TestCancelAndCleanup:
    """Cancelling runs and removing what they created."""

    async def test_cancel_pending_run(
        self,
        orchestrator: ProvisioningOrchestrator,
        audit_sink,
        escola_central_request: dict[str, Any],
    ) -> None:
        prepared = await orchestrator.prepare_provisioning(escola_central_request)

        cancelled = await orchestrator.cancel_provisioning(prepared.id)
        executed = await orchestrator.execute_run(prepared.id)

        assert cancelled.status == ProvisioningStatus.CANCELLED
        assert executed.status == ProvisioningStatus.CANCELLED
        assert set(step_statuses(executed).values()) == {StepStatus.PENDING}
        assert audit_sink.actions() == ["provisioning_cancelled"]

        with pytest.raises(InvalidRequestState):
            await orchestrator.cancel_provisioning(prepared.id)

    async def test_cancel_during_run_then_cleanup(
        self,
        session_factory,
        configuration_service,
        control_plane_settings,
        hasher,
        audit_sink,
        alert_sink,
        escola_central_request: dict[str, Any],
    ) -> None:
        """A run cancelled mid-flight stops before its next step."""

        class CancellingMigrations(MigrationService):
            orchestrator: ProvisioningOrchestrator

            async def run_pending(self, tenant_id=None):
                running = await self.orchestrator.list_progress(status=ProvisioningStatus.RUNNING)
                await self.orchestrator.cancel_provisioning(running[0].id)
                return await super().run_pending(tenant_id)

        migrations = CancellingMigrations(session_factory)
        orchestrator = ProvisioningOrchestrator(
            session_factory,
            migrations,
            configuration_service,
            settings=control_plane_settings,
            hasher=hasher,
            audit=audit_sink,
            alerts=alert_sink,
        )
        migrations.orchestrator = orchestrator

        result = await orchestrator.provision_complete(escola_central_request)

        assert result.success is False
        assert result.status == ProvisioningStatus.CANCELLED
        statuses = step_statuses(result)
        assert statuses["run_initial_migrations"] == StepStatus.COMPLETED
        assert statuses["apply_initial_configuration"] == StepStatus.PENDING

        cleaned = await orchestrator.cleanup_failed_provisioning(result.progress_id)

        assert cleaned.meta["cleanup"]["removed"] == ["tenant", "institution", "user"]
        assert step_statuses(cleaned)["create_tenant"] == StepStatus.SKIPPED
        assert step_statuses(cleaned)["complete"] == StepStatus.PENDING
        assert "provisioning_cleaned_up" in audit_sink.actions()
        async with session_scope(session_factory) as session:
            directory = TenantDirectory(session)
            assert await directory.find_tenant_by_slug("escola-central") is None
            assert await directory.find_institution_by_slug("escola-central") is None
            assert await directory.find_user_by_email("admin@escolacentral.edu.br") is None

    async def test_cleanup_keeps_rows_the_run_did_not_create(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
    ) -> None:
        first = await orchestrator.provision_complete(provision_payload())
        with pytest.raises(ConflictError):
            await orchestrator.provision_complete(
                provision_payload("escola-norte", email="admin@escolacentral.edu.br")
            )
        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)
        assert failed.step("create_admin_user").status == StepStatus.FAILED

        cleaned = await orchestrator.cleanup_failed_provisioning(failed.id)

        assert cleaned.meta["cleanup"]["removed"] == ["tenant", "institution"]
        async with session_scope(session_factory) as session:
            directory = TenantDirectory(session)
            assert await directory.get_user(first.admin_user_id) is not None
            assert await directory.find_institution_by_slug("escola-norte") is None

    async def test_cleaned_up_run_cannot_be_recovered(
        self,
        orchestrator: ProvisioningOrchestrator,
        migration_service: MigrationService,
        configuration_service,
        escola_central_request: dict[str, Any],
    ) -> None:
        await migration_service.create_definition(
            tenant_migration(
                "001_menu_index",
                "CREATE INDEX IF NOT EXISTS ix_menu_items ON menu_items (id);",
                "DROP INDEX IF EXISTS ix_menu_items;",
            )
        )
        with pytest.raises(ProvisioningError):
            await orchestrator.provision_complete(escola_central_request)
        failed = await only_run(orchestrator, status=ProvisioningStatus.FAILED)

        cleaned = await orchestrator.cleanup_failed_provisioning(failed.id)

        assert cleaned.status == ProvisioningStatus.CANCELLED
        assert cleaned.error == "Cleaned up after failure"
        assert cleaned.meta["cleanup"]["removed"] == ["tenant", "institution", "user"]
        with pytest.raises(InvalidRequestState):
            await orchestrator.recover_failed_provisioning(failed.id)
        with pytest.raises(StepNotRetryable):
            await orchestrator.retry_failed_step(failed.id, "run_initial_migrations")
        assert await configuration_service.list_versions(failed.tenant_id) == []

    async def test_cleanup_requires_failed_or_cancelled_run(
        self,
        orchestrator: ProvisioningOrchestrator,
        escola_central_request: dict[str, Any],
    ) -> None:
        result = await orchestrator.provision_complete(escola_central_request)

        with pytest.raises(InvalidRequestState):
            await orchestrator.cleanup_failed_provisioning(result.progress_id)


class TestTemplatesAndAdditionalTenants:
    """Template provisioning and adding tenants to an institution."""

    async def test_templates_are_loaded(self, orchestrator: ProvisioningOrchestrator) -> None:
        ids = [template.id for template in orchestrator.list_templates()]

        assert ids == ["basic-school-system", "municipality", "school-district"]
        with pytest.raises(NotFoundError):
            orchestrator.get_template("university")

    async def test_provision_from_template(
        self,
        orchestrator: ProvisioningOrchestrator,
        configuration_service,
        session_factory,
    ) -> None:
        payload = provision_payload("sme-campinas")
        del payload["institution"]

        progress = await orchestrator.provision_from_template("municipality", payload)

        assert progress.status == ProvisioningStatus.COMPLETED
        assert progress.template_id == "municipality"
        async with session_scope(session_factory) as session:
            institution = await TenantDirectory(session).get_institution(progress.institution_id)
            assert institution.type == "prefeitura"
            assert institution.settings["max_tenants"] == 10
        configuration = await configuration_service.get_configuration(progress.tenant_id)
        assert configuration.configuration["integrations"]["whatsapp"] is True
        assert configuration.configuration["features"]["analytics"] is True

    async def test_additional_tenant(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
        escola_central_request: dict[str, Any],
    ) -> None:
        first = await orchestrator.provision_complete(escola_central_request)

        result = await orchestrator.create_additional_tenant(
            first.institution_id,
            {
                "tenant": {"name": "Escola Central Anexo", "slug": "escola-central-anexo"},
                "userId": first.admin_user_id,
            },
        )

        assert result.success is True
        assert [step.id for step in result.steps][:2] == ["create_tenant", "link_tenant_user"]
        assert result.institution_id == first.institution_id
        async with session_scope(session_factory) as session:
            directory = TenantDirectory(session)
            assert await directory.count_tenants(first.institution_id) == 2
            users = await directory.list_tenant_users(result.tenant_id)
            assert [user.id for user in users] == [first.admin_user_id]

    async def test_additional_tenant_limit(self, orchestrator: ProvisioningOrchestrator) -> None:
        """The basic template allows a single tenant per institution."""
        payload = provision_payload()
        del payload["institution"]
        progress = await orchestrator.provision_from_template("basic-school-system", payload)

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.create_additional_tenant(
                progress.institution_id,
                {
                    "tenant": {"name": "Anexo", "slug": "escola-central-anexo"},
                    "userId": progress.meta["admin_user_id"],
                },
            )

        assert exc_info.value.details["max_tenants"] == 1

    async def test_additional_tenant_unknown_references(
        self,
        orchestrator: ProvisioningOrchestrator,
        escola_central_request: dict[str, Any],
    ) -> None:
        first = await orchestrator.provision_complete(escola_central_request)
        tenant = {"name": "Anexo", "slug": "escola-central-anexo"}

        with pytest.raises(NotFoundError):
            await orchestrator.create_additional_tenant("missing", {"tenant": tenant, "userId": "u"})
        with pytest.raises(NotFoundError):
            await orchestrator.create_additional_tenant(
                first.institution_id, {"tenant": tenant, "userId": "missing"}
            )


class TestInstitutionMembers:
    """Users added to an institution and its hierarchy."""

    @staticmethod
    async def set_max_users(session_factory, institution_id: str, max_users: int) -> None:
        async with session_scope(session_factory) as session:
            institution = await TenantDirectory(session).get_institution(institution_id)
            institution.settings = {**institution.settings, "max_users": max_users}

    async def test_create_user_linked_to_tenant(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
        audit_sink,
        escola_central_request: dict[str, Any],
    ) -> None:
        first = await orchestrator.provision_complete(escola_central_request)

        created = await orchestrator.create_institution_user(
            first.institution_id,
            {
                "nome": "Joana Lima",
                "email": "Nutricionista@EscolaCentral.edu.br",
                "senha": "cardapio-1",
                "tipo": "nutritionist",
                "tenantId": first.tenant_id,
                "tenantRole": "nutritionist",
            },
        )

        assert created.email == "nutricionista@escolacentral.edu.br"
        assert created.role == "nutritionist"
        assert created.institution_role == "user"
        assert created.tenant_id == first.tenant_id
        assert "institution_user_created" in audit_sink.actions()
        async with session_scope(session_factory) as session:
            directory = TenantDirectory(session)
            assert await directory.count_institution_users(first.institution_id) == 2
            users = await directory.list_tenant_users(first.tenant_id)
            assert created.user_id in [user.id for user in users]
            user = await directory.get_user(created.user_id)
            assert user.password_hash != "cardapio-1"

    async def test_member_limit(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
        escola_central_request: dict[str, Any],
    ) -> None:
        """The provisioned admin already counts against the limit."""
        first = await orchestrator.provision_complete(escola_central_request)
        await self.set_max_users(session_factory, first.institution_id, 1)

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.create_institution_user(
                first.institution_id,
                {"name": "Joana Lima", "email": "joana@escolacentral.edu.br", "password": "cardapio-1"},
            )

        assert exc_info.value.details["max_users"] == 1
        assert await count_users(session_factory, "joana@escolacentral.edu.br") == 0

    async def test_duplicate_email(
        self,
        orchestrator: ProvisioningOrchestrator,
        escola_central_request: dict[str, Any],
    ) -> None:
        first = await orchestrator.provision_complete(escola_central_request)

        with pytest.raises(ConflictError):
            await orchestrator.create_institution_user(
                first.institution_id,
                {"name": "Maria", "email": "ADMIN@escolacentral.edu.br", "password": "cardapio-1"},
            )

    async def test_unknown_references(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
        escola_central_request: dict[str, Any],
    ) -> None:
        first = await orchestrator.provision_complete(escola_central_request)
        other = await orchestrator.provision_complete(provision_payload("escola-norte"))
        user = {"name": "Joana Lima", "email": "joana@escolacentral.edu.br", "password": "cardapio-1"}

        with pytest.raises(NotFoundError):
            await orchestrator.create_institution_user("missing", user)
        with pytest.raises(NotFoundError):
            await orchestrator.create_institution_user(
                first.institution_id, {**user, "tenantId": other.tenant_id}
            )
        with pytest.raises(NotFoundError):
            await orchestrator.create_institution_user(
                first.institution_id, {**user, "tenantId": "missing"}
            )
        assert await count_users(session_factory, "joana@escolacentral.edu.br") == 0

    async def test_hierarchy(
        self,
        orchestrator: ProvisioningOrchestrator,
        escola_central_request: dict[str, Any],
    ) -> None:
        first = await orchestrator.provision_complete(escola_central_request)
        annex = await orchestrator.create_additional_tenant(
            first.institution_id,
            {
                "tenant": {"name": "Escola Central Anexo", "slug": "escola-central-anexo"},
                "userId": first.admin_user_id,
            },
        )
        member = await orchestrator.create_institution_user(
            first.institution_id,
            {"name": "Joana Lima", "email": "joana@escolacentral.edu.br", "password": "cardapio-1"},
        )

        hierarchy = await orchestrator.get_institution_hierarchy(first.institution_id)

        assert hierarchy.slug == "escola-central"
        assert [tenant.slug for tenant in hierarchy.tenants] == [
            "escola-central",
            "escola-central-anexo",
        ]
        users = {user.id: user for user in hierarchy.users}
        admin = users[first.admin_user_id]
        assert admin.institution_role == "institution_admin"
        assert admin.tenant_ids == sorted([first.tenant_id, annex.tenant_id])
        assert users[member.user_id].tenant_ids == []

        with pytest.raises(NotFoundError):
            await orchestrator.get_institution_hierarchy("missing")


class TestDeprovisioning:
    """Tearing tenants down immediately or after a grace period."""

    async def test_immediate_teardown(
        self,
        orchestrator: ProvisioningOrchestrator,
        migration_service: MigrationService,
        session_factory,
        audit_sink,
        alert_sink,
        escola_central_request: dict[str, Any],
    ) -> None:
        await migration_service.create_definition(
            tenant_migration(
                "001_menus",
                "CREATE TABLE IF NOT EXISTS menus (id INTEGER PRIMARY KEY);",
                "DROP TABLE IF EXISTS menus;",
            )
        )
        provisioned = await orchestrator.provision_complete(escola_central_request)

        progress = await orchestrator.deprovision_tenant(
            provisioned.tenant_id,
            DeprovisioningOptions(notify_users=True),
        )

        assert progress.kind == RunKind.DEPROVISIONING
        assert progress.status == ProvisioningStatus.COMPLETED
        assert step_statuses(progress) == {
            "snapshot_tenant": StepStatus.SKIPPED,
            "rollback_tenant_migrations": StepStatus.COMPLETED,
            "delete_tenant_data": StepStatus.COMPLETED,
            "delete_tenant": StepStatus.COMPLETED,
            "notify": StepStatus.COMPLETED,
        }
        status = await migration_service.get_status(provisioned.tenant_id)
        assert status[0].status == MigrationStatus.ROLLED_BACK
        async with session_scope(session_factory) as session:
            assert await TenantDirectory(session).get_tenant(provisioned.tenant_id) is None

        assert audit_sink.purged == [provisioned.tenant_id]
        assert audit_sink.actions() == ["tenant_deprovisioned"]
        assert alert_sink.alerts[-1].recipients == ["admin@escolacentral.edu.br"]

    async def test_preserve_backups_and_audit(
        self,
        orchestrator: ProvisioningOrchestrator,
        audit_sink,
        snapshot_service,
        escola_central_request: dict[str, Any],
    ) -> None:
        provisioned = await orchestrator.provision_complete(escola_central_request)

        progress = await orchestrator.deprovision_tenant(
            provisioned.tenant_id,
            DeprovisioningOptions(preserve_backups=True, preserve_audit_logs=True),
        )

        assert progress.meta["snapshot_id"] == "snap-1"
        assert snapshot_service.snapshots["snap-1"].tenant_id == provisioned.tenant_id
        assert progress.step("notify").status == StepStatus.SKIPPED
        assert audit_sink.purged == []
        assert audit_sink.actions() == ["tenant_provisioned", "tenant_deprovisioned"]

    async def test_backup_without_snapshot_service_warns(
        self,
        session_factory,
        migration_service,
        configuration_service,
        control_plane_settings,
        hasher,
        audit_sink,
        escola_central_request: dict[str, Any],
    ) -> None:
        orchestrator = ProvisioningOrchestrator(
            session_factory,
            migration_service,
            configuration_service,
            settings=control_plane_settings,
            hasher=hasher,
            audit=audit_sink,
        )
        provisioned = await orchestrator.provision_complete(escola_central_request)

        progress = await orchestrator.deprovision_tenant(
            provisioned.tenant_id,
            DeprovisioningOptions(preserve_backups=True),
        )

        assert progress.status == ProvisioningStatus.COMPLETED
        assert progress.step("snapshot_tenant").status == StepStatus.SKIPPED
        assert len(progress.warnings) == 1

    async def test_grace_period_schedules_run(
        self,
        orchestrator: ProvisioningOrchestrator,
        session_factory,
        audit_sink,
        escola_central_request: dict[str, Any],
    ) -> None:
        provisioned = await orchestrator.provision_complete(escola_central_request)

        scheduled = await orchestrator.deprovision_tenant(
            provisioned.tenant_id,
            DeprovisioningOptions(grace_period_hours=24),
        )

        assert scheduled.status == ProvisioningStatus.PENDING
        assert "scheduled_at" in scheduled.meta
        assert audit_sink.actions()[-1] == "deprovisioning_scheduled"
        assert await orchestrator.run_due_deprovisionings(now=utc_now()) == []

        executed = await orchestrator.run_due_deprovisionings(now=utc_now() + timedelta(hours=25))

        assert [run.id for run in executed] == [scheduled.id]
        assert executed[0].status == ProvisioningStatus.COMPLETED
        async with session_scope(session_factory) as session:
            assert await TenantDirectory(session).get_tenant(provisioned.tenant_id) is None

    async def test_scheduled_run_can_be_cancelled(
        self,
        orchestrator: ProvisioningOrchestrator,
        escola_central_request: dict[str, Any],
    ) -> None:
        provisioned = await orchestrator.provision_complete(escola_central_request)
        scheduled = await orchestrator.schedule_deprovisioning(
            provisioned.tenant_id,
            utc_now() + timedelta(hours=1),
        )

        await orchestrator.cancel_provisioning(scheduled.id)

        assert await orchestrator.run_due_deprovisionings(now=utc_now() + timedelta(hours=2)) == []

    async def test_unknown_tenant(self, orchestrator: ProvisioningOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.deprovision_tenant("missing")
        with pytest.raises(NotFoundError):
            await orchestrator.schedule_deprovisioning("missing")


class TestEscolaCentralScenario:
    """Provision, migrate, configure and roll back one tenant."""

    async def test_end_to_end(
        self,
        orchestrator: ProvisioningOrchestrator,
        migration_service: MigrationService,
        configuration_service,
        escola_central_request: dict[str, Any],
    ) -> None:
        provisioned = await orchestrator.provision_complete(escola_central_request)
        tenant_id = provisioned.tenant_id

        for migration_id, dependencies in (
            ("m1_products", []),
            ("m2_menus", ["m1_products"]),
            ("m3_orders", ["m2_menus"]),
        ):
            await migration_service.create_definition(
                MigrationDefinitionCreate(
                    id=migration_id,
                    name=migration_id,
                    up_sql=f"CREATE TABLE IF NOT EXISTS {migration_id} (id INTEGER PRIMARY KEY);",
                    down_sql=f"DROP TABLE IF EXISTS {migration_id};",
                    tenant_specific=True,
                    dependencies=dependencies,
                )
            )

        results = await migration_service.run_pending(tenant_id)
        assert [r.migration_id for r in results] == ["m1_products", "m2_menus", "m3_orders"]
        assert all(r.success for r in results)

        await configuration_service.update_configuration(tenant_id, {"limits": {"maxSchools": 80}})
        await configuration_service.rollback_configuration(tenant_id, 1, "Back to the initial setup")

        versions = await configuration_service.list_versions(tenant_id)
        overrides = await configuration_service.get_configuration(tenant_id, include_inheritance=False)
        assert [v.version for v in versions] == [1, 2, 3]
        assert versions[2].payload == versions[0].payload
        assert overrides.configuration == versions[0].payload
        assert overrides.version == 3
