# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for MigrationService against SQLite.

Scripts use plain DDL so they run on the in-memory database; the
PostgreSQL-only tenant setting is skipped there.
"""

import random
import re
import uuid

import pytest
from sqlalchemy import text, update

from mealplane.core.exceptions import (
    ConflictError,
    DependencyNotSatisfied,
    DependentMigrationsExist,
    InvalidRequestState,
    NotFoundError,
    ValidationError,
)
from mealplane.domains.migration import MigrationService
from mealplane.infrastructure.database.connection import session_scope
from mealplane.infrastructure.database.models import MigrationExecution
from mealplane.models.migration import (
    MigrationDefinitionCreate,
    MigrationStatus,
    MigrationTemplateRequest,
    ResultStatus,
)

pytestmark = pytest.mark.integration


def table_migration(
    migration_id: str,
    table: str | None = None,
    dependencies: list[str] | None = None,
    tenant_specific: bool = False,
    up_sql: str | None = None,
) -> MigrationDefinitionCreate:
    table = table or f"t_{migration_id}"
    return MigrationDefinitionCreate(
        id=migration_id,
        name=f"create {table}",
        up_sql=up_sql or f"CREATE TABLE IF NOT EXISTS {table} (id INTEGER PRIMARY KEY);",
        down_sql=f"DROP TABLE IF EXISTS {table};",
        tenant_specific=tenant_specific,
        dependencies=dependencies or [],
    )


async def table_exists(session_factory, table: str) -> bool:
    async with session_scope(session_factory) as session:
        result = await session.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name"),
            {"name": table},
        )
        return result.scalar_one_or_none() is not None


@pytest.fixture
def tenant_id() -> str:
    return str(uuid.uuid4())


class TestDefinitions:
    """Registering migration definitions."""

    async def test_generated_id_has_timestamp_prefix(self, migration_service: MigrationService) -> None:
        created = await migration_service.create_definition(
            MigrationDefinitionCreate(
                name="add menus",
                up_sql="CREATE TABLE menus (id INTEGER);",
                down_sql="DROP TABLE menus;",
            )
        )

        assert re.match(r"^\d{14}_", created.id)
        assert created.tenant_specific is False

    async def test_duplicate_id_conflicts(self, migration_service: MigrationService) -> None:
        await migration_service.create_definition(table_migration("001_products"))

        with pytest.raises(ConflictError):
            await migration_service.create_definition(table_migration("001_products"))

    @pytest.mark.parametrize(
        ("field", "value"),
        [("up_sql", "  -- nothing\n"), ("down_sql", ";")],
    )
    async def test_empty_scripts_rejected(
        self, migration_service: MigrationService, field: str, value: str
    ) -> None:
        data = table_migration("001_products").model_copy(update={field: value})

        with pytest.raises(ValidationError):
            await migration_service.create_definition(data)

    async def test_unknown_and_self_dependencies_rejected(
        self, migration_service: MigrationService
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await migration_service.create_definition(
                table_migration("002_orders", dependencies=["001_missing"])
            )
        assert exc_info.value.details == {"missing": ["001_missing"]}

        with pytest.raises(ValidationError):
            await migration_service.create_definition(
                table_migration("002_orders", dependencies=["002_orders"])
            )

    async def test_global_cannot_depend_on_tenant_specific(
        self, migration_service: MigrationService
    ) -> None:
        await migration_service.create_definition(table_migration("001_menus", tenant_specific=True))

        with pytest.raises(ValidationError):
            await migration_service.create_definition(
                table_migration("002_reports", dependencies=["001_menus"])
            )

    async def test_create_from_template(self, migration_service: MigrationService) -> None:
        created = await migration_service.create_from_template(
            "add_column",
            MigrationTemplateRequest(
                name="products sku",
                params={"table": "products", "column": "sku", "column_type": "TEXT"},
            ),
        )

        definitions = await migration_service.list_definitions()
        assert [d.id for d in definitions] == [created.id]
        assert created.tenant_specific is True
        assert "ADD COLUMN IF NOT EXISTS sku TEXT" in created.up_sql


class TestRunPending:
    """Running pending migrations in dependency order."""

    async def test_nothing_pending(self, migration_service: MigrationService) -> None:
        assert await migration_service.run_pending() == []

    async def test_runs_in_dependency_order(
        self, migration_service: MigrationService, session_factory
    ) -> None:
        await migration_service.create_definition(table_migration("003_orders", dependencies=[]))
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.create_definition(
            table_migration("002_contracts", dependencies=["001_products", "003_orders"])
        )

        results = await migration_service.run_pending()

        assert [r.migration_id for r in results] == ["003_orders", "001_products", "002_contracts"]
        assert all(r.status == ResultStatus.COMPLETED for r in results)
        assert await table_exists(session_factory, "t_002_contracts")
        assert await migration_service.run_pending() == []

    @pytest.mark.parametrize("seed", [3, 11, 2025])
    async def test_random_dag_completes_in_valid_order(
        self, migration_service: MigrationService, seed: int
    ) -> None:
        rng = random.Random(seed)
        ids: list[str] = []
        dependencies: dict[str, list[str]] = {}
        for index in range(12):
            migration_id = f"m{index:02d}"
            deps = rng.sample(ids, k=min(len(ids), rng.randint(0, 2)))
            dependencies[migration_id] = deps
            await migration_service.create_definition(table_migration(migration_id, dependencies=deps))
            ids.append(migration_id)

        results = await migration_service.run_pending()

        order = [r.migration_id for r in results]
        assert sorted(order) == ids
        for migration_id, deps in dependencies.items():
            for dep in deps:
                assert order.index(dep) < order.index(migration_id)

    async def test_failure_blocks_only_dependent_chain(
        self, migration_service: MigrationService
    ) -> None:
        await migration_service.create_definition(
            table_migration("001_broken", up_sql="CREATE TABLE broken (")
        )
        await migration_service.create_definition(
            table_migration("002_child", dependencies=["001_broken"])
        )
        await migration_service.create_definition(table_migration("003_independent"))

        results = {r.migration_id: r for r in await migration_service.run_pending()}

        assert results["001_broken"].status == ResultStatus.FAILED
        assert results["001_broken"].error
        assert results["002_child"].status == ResultStatus.BLOCKED
        assert results["003_independent"].status == ResultStatus.COMPLETED

        statuses = {s.migration_id: s.status for s in await migration_service.get_status()}
        assert statuses == {
            "001_broken": MigrationStatus.FAILED,
            "002_child": MigrationStatus.PENDING,
            "003_independent": MigrationStatus.COMPLETED,
        }

    async def test_tenant_scopes_are_independent(
        self, migration_service: MigrationService, tenant_id: str
    ) -> None:
        other = str(uuid.uuid4())
        await migration_service.create_definition(table_migration("001_base"))
        await migration_service.create_definition(
            table_migration("002_menus", dependencies=["001_base"], tenant_specific=True)
        )

        blocked = await migration_service.run_pending(tenant_id)
        assert blocked[0].status == ResultStatus.BLOCKED

        await migration_service.run_pending()
        first = await migration_service.run_pending(tenant_id)

        assert [r.status for r in first] == [ResultStatus.COMPLETED]
        other_status = [
            s for s in await migration_service.get_status(other) if s.migration_id == "002_menus"
        ]
        assert other_status[0].status == MigrationStatus.PENDING
        assert other_status[0].tenant_id == other


class TestRunOne:
    """Running a single migration."""

    async def test_dependency_must_be_completed(self, migration_service: MigrationService) -> None:
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.create_definition(
            table_migration("002_orders", dependencies=["001_products"])
        )

        with pytest.raises(DependencyNotSatisfied) as exc_info:
            await migration_service.run_one("002_orders")

        assert exc_info.value.missing == ["001_products"]

    async def test_already_applied_returns_warning(self, migration_service: MigrationService) -> None:
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.run_one("001_products")

        again = await migration_service.run_one("001_products")

        assert again.success
        assert again.warnings == ["Migration already applied"]

    async def test_scope_mismatch(self, migration_service: MigrationService, tenant_id: str) -> None:
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.create_definition(table_migration("002_menus", tenant_specific=True))

        with pytest.raises(ValidationError):
            await migration_service.run_one("001_products", tenant_id)
        with pytest.raises(ValidationError):
            await migration_service.run_one("002_menus")
        with pytest.raises(NotFoundError):
            await migration_service.run_one("999_unknown")


class TestRecovery:
    """Re-attempting failed migrations."""

    async def test_recover_after_fixing_cause(
        self, migration_service: MigrationService, session_factory
    ) -> None:
        await migration_service.create_definition(
            table_migration(
                "001_orders",
                up_sql="CREATE TABLE IF NOT EXISTS orders_v2 AS SELECT * FROM legacy_orders;",
            )
        )
        failed = await migration_service.run_one("001_orders")
        assert failed.status == ResultStatus.FAILED

        async with session_scope(session_factory) as session:
            await session.execute(text("CREATE TABLE legacy_orders (id INTEGER)"))

        recovery = await migration_service.recover_failed("001_orders")

        assert recovery.recovered
        assert recovery.result.status == ResultStatus.COMPLETED
        status = (await migration_service.get_status())[0]
        assert status.status == MigrationStatus.COMPLETED
        assert status.attempts == 2
        assert status.error is None

    async def test_only_failed_can_be_recovered(self, migration_service: MigrationService) -> None:
        await migration_service.create_definition(table_migration("001_products"))

        with pytest.raises(InvalidRequestState):
            await migration_service.recover_failed("001_products")

    async def test_interrupted_run_is_recovered(
        self, migration_service: MigrationService, session_factory
    ) -> None:
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.run_one("001_products")
        async with session_scope(session_factory) as session:
            await session.execute(
                update(MigrationExecution)
                .where(MigrationExecution.migration_id == "001_products")
                .values(status=MigrationStatus.RUNNING.value)
            )

        recovery = await migration_service.recover_failed("001_products")

        assert recovery.recovered


class TestRollback:
    """Rolling migrations back."""

    async def test_rollback_refuses_completed_dependents(
        self, migration_service: MigrationService, session_factory
    ) -> None:
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.create_definition(
            table_migration("002_orders", dependencies=["001_products"])
        )
        await migration_service.run_pending()

        with pytest.raises(DependentMigrationsExist) as exc_info:
            await migration_service.rollback("001_products")
        assert exc_info.value.dependents == ["002_orders"]

        first = await migration_service.rollback("002_orders")
        second = await migration_service.rollback("001_products")

        assert first.status == second.status == ResultStatus.ROLLED_BACK
        assert not await table_exists(session_factory, "t_001_products")

    async def test_global_rollback_blocked_by_tenant_dependents(
        self, migration_service: MigrationService, tenant_id: str
    ) -> None:
        await migration_service.create_definition(table_migration("001_base"))
        await migration_service.create_definition(
            table_migration("002_menus", dependencies=["001_base"], tenant_specific=True)
        )
        await migration_service.run_pending()
        await migration_service.run_pending(tenant_id)

        with pytest.raises(DependentMigrationsExist) as exc_info:
            await migration_service.rollback("001_base")

        assert exc_info.value.dependents == [f"002_menus@{tenant_id}"]

    async def test_rollback_requires_completed(self, migration_service: MigrationService) -> None:
        await migration_service.create_definition(table_migration("001_products"))

        with pytest.raises((InvalidRequestState, NotFoundError)):
            await migration_service.rollback("001_products")

    async def test_failed_down_keeps_migration_completed(
        self, migration_service: MigrationService
    ) -> None:
        data = table_migration("001_products").model_copy(update={"down_sql": "DROP TABLE ("})
        await migration_service.create_definition(data)
        await migration_service.run_pending()

        result = await migration_service.rollback("001_products")

        assert result.status == ResultStatus.FAILED
        status = (await migration_service.get_status())[0]
        assert status.status == MigrationStatus.COMPLETED
        assert status.error

    async def test_overlapping_rollbacks_run_down_script_once(
        self, migration_service: MigrationService, session_factory
    ) -> None:
        """A rollback that read its status before another one finished is refused."""

        class SnapshotMigrations(MigrationService):
            snapshot = None

            async def _load_executions(self, session, tenant_id):
                if self.snapshot is None:
                    self.snapshot = await super()._load_executions(session, tenant_id)
                return self.snapshot

        async with session_scope(session_factory) as session:
            await session.execute(text("CREATE TABLE down_log (migration_id TEXT)"))
        data = table_migration("001_products").model_copy(
            update={"down_sql": "INSERT INTO down_log (migration_id) VALUES ('001_products');"}
        )
        await migration_service.create_definition(data)
        await migration_service.run_pending()

        racing = SnapshotMigrations(session_factory)
        first = await racing.rollback("001_products")
        with pytest.raises(InvalidRequestState):
            await racing.rollback("001_products")

        assert first.status == ResultStatus.ROLLED_BACK
        async with session_scope(session_factory) as session:
            runs = (await session.execute(text("SELECT COUNT(*) FROM down_log"))).scalar_one()
        assert runs == 1
        assert (await migration_service.get_status())[0].status == MigrationStatus.ROLLED_BACK

    async def test_rollback_to_target(self, migration_service: MigrationService, tenant_id: str) -> None:
        for index, migration_id in enumerate(["001_a", "002_b", "003_c"]):
            deps = ["001_a"] if index else []
            await migration_service.create_definition(
                table_migration(migration_id, dependencies=deps, tenant_specific=True)
            )
        await migration_service.run_pending(tenant_id)

        results = await migration_service.rollback_to(tenant_id, "001_a")

        assert [r.migration_id for r in results] == ["003_c", "002_b"]
        statuses = {s.migration_id: s.status for s in await migration_service.get_status(tenant_id)}
        assert statuses == {
            "001_a": MigrationStatus.COMPLETED,
            "002_b": MigrationStatus.ROLLED_BACK,
            "003_c": MigrationStatus.ROLLED_BACK,
        }

    async def test_rollback_everything_and_rerun(
        self, migration_service: MigrationService, tenant_id: str
    ) -> None:
        await migration_service.create_definition(table_migration("001_a", tenant_specific=True))
        await migration_service.create_definition(
            table_migration("002_b", dependencies=["001_a"], tenant_specific=True)
        )
        await migration_service.run_pending(tenant_id)

        results = await migration_service.rollback_to(tenant_id)
        rerun = await migration_service.run_pending(tenant_id)

        assert [r.migration_id for r in results] == ["002_b", "001_a"]
        assert [r.status for r in rerun] == [ResultStatus.COMPLETED, ResultStatus.COMPLETED]

    async def test_rollback_to_unapplied_target(
        self, migration_service: MigrationService, tenant_id: str
    ) -> None:
        await migration_service.create_definition(table_migration("001_a", tenant_specific=True))

        with pytest.raises(NotFoundError):
            await migration_service.rollback_to(tenant_id, "001_a")


class TestIntegrity:
    """Detecting completed migrations with incomplete dependencies."""

    async def test_clean_history_is_valid(self, migration_service: MigrationService) -> None:
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.create_definition(
            table_migration("002_orders", dependencies=["001_products"])
        )
        await migration_service.run_pending()

        assert await migration_service.validate_integrity()

    async def test_violation_reported(
        self, migration_service: MigrationService, session_factory
    ) -> None:
        await migration_service.create_definition(table_migration("001_products"))
        await migration_service.create_definition(
            table_migration("002_orders", dependencies=["001_products"])
        )
        await migration_service.run_pending()
        async with session_scope(session_factory) as session:
            await session.execute(
                update(MigrationExecution)
                .where(MigrationExecution.migration_id == "001_products")
                .values(status=MigrationStatus.ROLLED_BACK.value)
            )

        report = await migration_service.check_integrity()

        assert not report.valid
        assert report.violations[0].migration_id == "002_orders"
        assert report.violations[0].dependency_id == "001_products"
        assert report.violations[0].dependency_status == MigrationStatus.ROLLED_BACK
