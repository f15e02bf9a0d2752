# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration store and executor.

Migrations are either global (applied once, tenant_id NULL) or tenant
specific (applied once per tenant). Each execution goes through three
short transactions:

1. mark the execution ``running`` (visible to other readers)
2. run the script and mark it ``completed`` in the same transaction
3. on failure, mark it ``failed`` with the captured error

so a crash never leaves a script applied without its status, and never
hides a failure.

Example:
    >>> service = MigrationService(session_factory)
    >>> results = await service.run_pending(tenant_id)
"""

import logging
import re
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mealplane.core.exceptions import (
    ConflictError,
    DependencyNotSatisfied,
    DependentMigrationsExist,
    InvalidRequestState,
    NotFoundError,
    ValidationError,
)
from mealplane.domains.migration.graph import MigrationNode, topological_order
from mealplane.domains.migration.sql import split_statements
from mealplane.domains.migration.templates import TENANT_SETTING, generate_from_template
from mealplane.infrastructure.database.connection import DatabaseError, session_scope
from mealplane.infrastructure.database.models.migration import (
    GLOBAL_SCOPE,
    MigrationDefinition,
    MigrationExecution,
    scope_for,
)
from mealplane.models.common import guard_transition
from mealplane.models.migration import (
    MIGRATION_TRANSITIONS,
    ExecutionResult,
    IntegrityReport,
    IntegrityViolation,
    MigrationDefinitionCreate,
    MigrationDefinitionResponse,
    MigrationExecutionResponse,
    MigrationStatus,
    MigrationTemplateRequest,
    RecoveryResult,
    ResultStatus,
)
from mealplane.utils.datetime import elapsed_ms, ensure_utc, utc_now

logger = logging.getLogger(__name__)

ExecutionKey = tuple[str, str]


def build_migration_id(name: str, created_at: datetime | None = None) -> str:
    """Build a migration id as ``YYYYMMDDHHMMSS_<name>``.

    Args:
        name: Human readable migration name.
        created_at: Timestamp used for the prefix. Defaults to now.
    """
    stamp = (created_at or utc_now()).strftime("%Y%m%d%H%M%S")
    slug = re.sub(r"\s+", "_", name.strip().lower())
    return f"{stamp}_{slug}"


def _node(definition: MigrationDefinition) -> MigrationNode:
    return MigrationNode(
        id=definition.id,
        position=definition.position,
        dependencies=tuple(definition.dependencies or ()),
    )


def _status(execution: MigrationExecution | None) -> MigrationStatus:
    if execution is None:
        return MigrationStatus.PENDING
    return MigrationStatus(execution.status)


class MigrationService:
    """Migration store and executor.

    Attributes:
        _session_factory: Sessionmaker for the platform database. Every
            state transition opens its own session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the migration service.

        Args:
            session_factory: Sessionmaker for the platform database.
        """
        self._session_factory = session_factory

    # =========================================================================
    # Definitions
    # =========================================================================

    async def create_definition(
        self,
        data: MigrationDefinitionCreate,
    ) -> MigrationDefinitionResponse:
        """Register a new migration definition.

        Args:
            data: Definition payload.

        Returns:
            The stored definition.

        Raises:
            ValidationError: Empty scripts, unknown dependencies, or a global
                migration depending on a tenant-specific one.
            ConflictError: A definition with the same id already exists.
        """
        if not split_statements(data.up_sql):
            raise ValidationError("up_sql must contain at least one statement", {"field": "up_sql"})
        if not split_statements(data.down_sql):
            raise ValidationError("down_sql must contain at least one statement", {"field": "down_sql"})

        migration_id = data.id or build_migration_id(data.name)
        if migration_id in data.dependencies:
            raise ValidationError("A migration cannot depend on itself", {"migration_id": migration_id})

        async with session_scope(self._session_factory) as session:
            if await session.get(MigrationDefinition, migration_id) is not None:
                raise ConflictError(
                    f"Migration {migration_id} already exists",
                    {"migration_id": migration_id},
                )

            if data.dependencies:
                result = await session.execute(
                    select(MigrationDefinition).where(MigrationDefinition.id.in_(data.dependencies))
                )
                found = {definition.id: definition for definition in result.scalars()}
                missing = [dep for dep in data.dependencies if dep not in found]
                if missing:
                    raise ValidationError(
                        "Migration depends on unknown migrations",
                        {"missing": missing},
                    )
                if not data.tenant_specific:
                    tenant_deps = [dep for dep, d in found.items() if d.tenant_specific]
                    if tenant_deps:
                        raise ValidationError(
                            "A global migration cannot depend on tenant-specific migrations",
                            {"dependencies": tenant_deps},
                        )

            next_position = (
                await session.scalar(select(func.max(MigrationDefinition.position)))
            ) or 0

            definition = MigrationDefinition(
                id=migration_id,
                name=data.name,
                description=data.description,
                up_sql=data.up_sql,
                down_sql=data.down_sql,
                tenant_specific=data.tenant_specific,
                dependencies=list(data.dependencies),
                position=next_position + 1,
                created_at=utc_now(),
            )
            session.add(definition)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"Migration {migration_id} could not be registered concurrently",
                    {"migration_id": migration_id},
                ) from e

        logger.info(
            "Migration definition created: %s (tenant_specific=%s, dependencies=%s)",
            migration_id,
            data.tenant_specific,
            data.dependencies,
        )
        return MigrationDefinitionResponse.model_validate(definition)

    async def create_from_template(
        self,
        template_name: str,
        request: MigrationTemplateRequest,
    ) -> MigrationDefinitionResponse:
        """Render a SQL template and register it as a definition.

        Raises:
            ValidationError: Unknown template or invalid parameters.
        """
        script = generate_from_template(template_name, request.params)
        return await self.create_definition(
            MigrationDefinitionCreate(
                name=request.name,
                description=request.description or f"Generated from template {template_name}",
                up_sql=script.up_sql,
                down_sql=script.down_sql,
                tenant_specific=request.tenant_specific,
                dependencies=request.dependencies,
            )
        )

    async def list_definitions(self) -> list[MigrationDefinitionResponse]:
        """List all definitions in creation order."""
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
        return [MigrationDefinitionResponse.model_validate(d) for d in definitions]

    # =========================================================================
    # Status
    # =========================================================================

    async def get_status(self, tenant_id: str | None = None) -> list[MigrationExecutionResponse]:
        """Execution status per migration.

        Without a tenant, every persisted execution is returned. With a
        tenant, that tenant's executions and the global ones are returned.
        Definitions in scope that never ran are reported as ``pending``.

        Args:
            tenant_id: Optional tenant filter.
        """
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
            executions = await self._load_executions(session, tenant_id)

        statuses: list[MigrationExecutionResponse] = []
        for definition in definitions:
            matching = [e for (mid, _), e in executions.items() if mid == definition.id]
            if tenant_id is not None and definition.tenant_specific:
                matching = [e for e in matching if e.tenant_id == tenant_id]
            for execution in sorted(matching, key=lambda e: e.scope):
                statuses.append(MigrationExecutionResponse.model_validate(execution))

            target_scope = tenant_id if definition.tenant_specific else None
            in_scope = tenant_id is not None or not definition.tenant_specific
            if in_scope and (definition.id, scope_for(target_scope)) not in executions:
                statuses.append(
                    MigrationExecutionResponse(
                        migration_id=definition.id,
                        tenant_id=target_scope,
                        status=MigrationStatus.PENDING,
                    )
                )
        return statuses

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_pending(self, tenant_id: str | None = None) -> list[ExecutionResult]:
        """Run every migration in scope that is not completed.

        The scope is the tenant-specific migrations for ``tenant_id``, or
        the global migrations when no tenant is given. Migrations run in
        dependency order. A failure halts its dependent chain: dependents
        are reported ``blocked``, while independent branches still run.

        Args:
            tenant_id: Tenant to migrate, or None for global migrations.

        Returns:
            One result per migration considered, in execution order.
        """
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
            executions = await self._load_executions(session, tenant_id)

        by_id = {definition.id: definition for definition in definitions}
        completed = self._completed_ids(definitions, executions, tenant_id)
        pending = [
            definition
            for definition in definitions
            if definition.tenant_specific == (tenant_id is not None)
            and definition.id not in completed
        ]

        if not pending:
            logger.info("No pending migrations for scope %s", scope_for(tenant_id))
            return []

        logger.info(
            "Running %d pending migration(s) for scope %s",
            len(pending),
            scope_for(tenant_id),
        )

        results: list[ExecutionResult] = []
        for node in topological_order([_node(d) for d in pending]):
            definition = by_id[node.id]
            current = _status(executions.get((definition.id, scope_for(tenant_id))))
            missing = [dep for dep in node.dependencies if dep not in completed]

            if missing or current == MigrationStatus.RUNNING:
                reason = (
                    f"Blocked by unsatisfied dependencies: {', '.join(missing)}"
                    if missing
                    else "Migration is already running"
                )
                logger.warning("Migration %s skipped: %s", definition.id, reason)
                results.append(
                    ExecutionResult(
                        migration_id=definition.id,
                        tenant_id=tenant_id,
                        status=ResultStatus.BLOCKED,
                        success=False,
                        error=reason,
                    )
                )
                continue

            result = await self._apply(definition, tenant_id)
            results.append(result)
            if result.success:
                completed.add(definition.id)

        return results

    async def run_one(self, migration_id: str, tenant_id: str | None = None) -> ExecutionResult:
        """Run a single migration whose dependencies are satisfied.

        Args:
            migration_id: Migration to run.
            tenant_id: Tenant scope for tenant-specific migrations.

        Raises:
            NotFoundError: Unknown migration.
            ValidationError: Tenant scope does not match the migration.
            DependencyNotSatisfied: A dependency is not completed.
            InvalidRequestState: The migration is currently running.
        """
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
            executions = await self._load_executions(session, tenant_id)

        definition = self._find(definitions, migration_id)
        self._check_scope(definition, tenant_id)

        current = _status(executions.get((migration_id, scope_for(tenant_id))))
        if current == MigrationStatus.COMPLETED:
            return ExecutionResult(
                migration_id=migration_id,
                tenant_id=tenant_id,
                status=ResultStatus.COMPLETED,
                success=True,
                warnings=["Migration already applied"],
            )

        completed = self._completed_ids(definitions, executions, tenant_id)
        missing = [dep for dep in definition.dependencies if dep not in completed]
        if missing:
            raise DependencyNotSatisfied(migration_id, missing)

        return await self._apply(definition, tenant_id)

    async def recover_failed(
        self,
        migration_id: str,
        tenant_id: str | None = None,
    ) -> RecoveryResult:
        """Re-attempt a failed execution from scratch.

        An execution left ``running`` by an interrupted process is first
        marked failed and then re-attempted the same way.

        Raises:
            NotFoundError: Unknown migration.
            InvalidRequestState: The execution is not failed.
            DependencyNotSatisfied: A dependency is no longer completed.
        """
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
            executions = await self._load_executions(session, tenant_id)

        definition = self._find(definitions, migration_id)
        self._check_scope(definition, tenant_id)
        execution = executions.get((migration_id, scope_for(tenant_id)))
        current = _status(execution)

        if current not in (MigrationStatus.FAILED, MigrationStatus.RUNNING):
            raise InvalidRequestState(
                f"Migration {migration_id} is {current.value}, only failed executions can be recovered",
                {"migration_id": migration_id, "status": current.value},
            )

        completed = self._completed_ids(definitions, executions, tenant_id)
        missing = [dep for dep in definition.dependencies if dep not in completed]
        if missing:
            raise DependencyNotSatisfied(migration_id, missing)

        if current == MigrationStatus.RUNNING:
            await self._mark_failed(migration_id, tenant_id, "Interrupted before completion", None)

        logger.info("Recovering migration %s in scope %s", migration_id, scope_for(tenant_id))
        result = await self._apply(definition, tenant_id)
        return RecoveryResult(
            migration_id=migration_id,
            tenant_id=tenant_id,
            recovered=result.success,
            result=result,
        )

    # =========================================================================
    # Rollback
    # =========================================================================

    async def rollback(self, migration_id: str, tenant_id: str | None = None) -> ExecutionResult:
        """Run a completed migration's down script.

        Dependents are never rolled back implicitly; they must be rolled
        back first by the caller.

        Raises:
            NotFoundError: Unknown migration.
            InvalidRequestState: The migration is not completed in scope.
            DependentMigrationsExist: Completed migrations depend on it.
        """
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
            executions = await self._load_executions(session, None)

        definition = self._find(definitions, migration_id)
        self._check_scope(definition, tenant_id)

        current = _status(executions.get((migration_id, scope_for(tenant_id))))
        guard_transition(
            current,
            MigrationStatus.ROLLED_BACK,
            MIGRATION_TRANSITIONS,
            f"Migration {migration_id}",
        )

        dependents = self._completed_dependents(definition, definitions, executions, tenant_id)
        if dependents:
            raise DependentMigrationsExist(migration_id, dependents)

        started = utc_now()
        try:
            async with session_scope(self._session_factory) as session:
                # Re-check under the row lock; a concurrent rollback may have won.
                execution = await self._get_execution(session, migration_id, tenant_id, lock=True)
                guard_transition(
                    _status(execution),
                    MigrationStatus.ROLLED_BACK,
                    MIGRATION_TRANSITIONS,
                    f"Migration {migration_id}",
                )
                await self._execute_script(session, definition.down_sql, tenant_id)
                execution.status = MigrationStatus.ROLLED_BACK.value
                execution.rolled_back_at = utc_now()
                execution.error = None
        except DatabaseError as e:
            error = str(e.original_error or e)
            await self._record_error(migration_id, tenant_id, error)
            logger.error("Rollback of %s failed in scope %s: %s", migration_id, scope_for(tenant_id), error)
            return ExecutionResult(
                migration_id=migration_id,
                tenant_id=tenant_id,
                status=ResultStatus.FAILED,
                success=False,
                execution_time_ms=elapsed_ms(started),
                error=error,
            )

        logger.info("Migration %s rolled back in scope %s", migration_id, scope_for(tenant_id))
        return ExecutionResult(
            migration_id=migration_id,
            tenant_id=tenant_id,
            status=ResultStatus.ROLLED_BACK,
            success=True,
            execution_time_ms=elapsed_ms(started),
        )

    async def rollback_to(
        self,
        tenant_id: str | None = None,
        to_migration_id: str | None = None,
    ) -> list[ExecutionResult]:
        """Roll back completed migrations in reverse application order.

        Stops before ``to_migration_id`` (which stays applied), or rolls
        back every completed migration in scope when no target is given.
        Halts at the first failure.

        Raises:
            NotFoundError: The target is not a completed migration in scope.
        """
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
            executions = await self._load_executions(session, tenant_id)

        positions = {definition.id: definition.position for definition in definitions}
        in_scope = {d.id for d in definitions if d.tenant_specific == (tenant_id is not None)}
        applied = sorted(
            (
                execution
                for (migration_id, scope), execution in executions.items()
                if migration_id in in_scope
                and scope == scope_for(tenant_id)
                and execution.status == MigrationStatus.COMPLETED.value
            ),
            key=lambda e: (ensure_utc(e.completed_at), positions[e.migration_id]),
            reverse=True,
        )

        if to_migration_id is not None and to_migration_id not in {e.migration_id for e in applied}:
            raise NotFoundError(
                f"Migration {to_migration_id} is not applied in scope {scope_for(tenant_id)}",
                {"migration_id": to_migration_id},
            )

        results: list[ExecutionResult] = []
        for execution in applied:
            if execution.migration_id == to_migration_id:
                break
            try:
                result = await self.rollback(execution.migration_id, tenant_id)
            except DependentMigrationsExist as e:
                result = ExecutionResult(
                    migration_id=execution.migration_id,
                    tenant_id=tenant_id,
                    status=ResultStatus.FAILED,
                    success=False,
                    error=e.message,
                )
            results.append(result)
            if not result.success:
                break

        return results

    # =========================================================================
    # Integrity
    # =========================================================================

    async def check_integrity(self, tenant_id: str | None = None) -> IntegrityReport:
        """Find completed migrations whose dependencies are not completed.

        Args:
            tenant_id: Restrict to this tenant (plus global executions).
                Without a tenant every scope is checked.
        """
        async with session_scope(self._session_factory) as session:
            definitions = await self._load_definitions(session)
            executions = await self._load_executions(session, tenant_id)

        by_id = {definition.id: definition for definition in definitions}
        violations: list[IntegrityViolation] = []

        for execution in executions.values():
            if execution.status != MigrationStatus.COMPLETED.value:
                continue
            definition = by_id.get(execution.migration_id)
            if definition is None:
                continue
            for dep in definition.dependencies:
                dependency = by_id.get(dep)
                dep_tenant = execution.tenant_id if dependency and dependency.tenant_specific else None
                dep_execution = executions.get((dep, scope_for(dep_tenant)))
                if _status(dep_execution) != MigrationStatus.COMPLETED:
                    violations.append(
                        IntegrityViolation(
                            migration_id=execution.migration_id,
                            tenant_id=execution.tenant_id,
                            dependency_id=dep,
                            dependency_status=dep_execution.status if dep_execution else None,
                        )
                    )

        for violation in violations:
            logger.warning(
                "Integrity violation: %s completed in scope %s but dependency %s is %s",
                violation.migration_id,
                scope_for(violation.tenant_id),
                violation.dependency_id,
                violation.dependency_status.value if violation.dependency_status else "missing",
            )
        return IntegrityReport(valid=not violations, violations=violations)

    async def validate_integrity(self, tenant_id: str | None = None) -> bool:
        """True when no completed migration has a non-completed dependency."""
        report = await self.check_integrity(tenant_id)
        return report.valid

    # =========================================================================
    # Internals
    # =========================================================================

    async def _apply(self, definition: MigrationDefinition, tenant_id: str | None) -> ExecutionResult:
        started = utc_now()

        async with session_scope(self._session_factory) as session:
            execution = await self._get_execution(
                session, definition.id, tenant_id, create=True, lock=True
            )
            guard_transition(
                _status(execution),
                MigrationStatus.RUNNING,
                MIGRATION_TRANSITIONS,
                f"Migration {definition.id}",
            )
            execution.status = MigrationStatus.RUNNING.value
            execution.started_at = started
            execution.completed_at = None
            execution.error = None
            execution.attempts = (execution.attempts or 0) + 1

        try:
            async with session_scope(self._session_factory) as session:
                await self._execute_script(session, definition.up_sql, tenant_id)
                execution = await self._get_execution(session, definition.id, tenant_id)
                execution.status = MigrationStatus.COMPLETED.value
                execution.completed_at = utc_now()
                execution.execution_time_ms = elapsed_ms(started)
        except DatabaseError as e:
            error = str(e.original_error or e)
            await self._mark_failed(definition.id, tenant_id, error, elapsed_ms(started))
            logger.error(
                "Migration %s failed in scope %s: %s",
                definition.id,
                scope_for(tenant_id),
                error,
            )
            return ExecutionResult(
                migration_id=definition.id,
                tenant_id=tenant_id,
                status=ResultStatus.FAILED,
                success=False,
                execution_time_ms=elapsed_ms(started),
                error=error,
            )

        duration = elapsed_ms(started)
        logger.info(
            "Migration %s completed in scope %s (%d ms)",
            definition.id,
            scope_for(tenant_id),
            duration,
        )
        return ExecutionResult(
            migration_id=definition.id,
            tenant_id=tenant_id,
            status=ResultStatus.COMPLETED,
            success=True,
            execution_time_ms=duration,
        )

    async def _mark_failed(
        self,
        migration_id: str,
        tenant_id: str | None,
        error: str,
        execution_time_ms: int | None,
    ) -> None:
        async with session_scope(self._session_factory) as session:
            execution = await self._get_execution(session, migration_id, tenant_id)
            guard_transition(
                _status(execution),
                MigrationStatus.FAILED,
                MIGRATION_TRANSITIONS,
                f"Migration {migration_id}",
            )
            execution.status = MigrationStatus.FAILED.value
            execution.error = error
            execution.execution_time_ms = execution_time_ms

    async def _record_error(self, migration_id: str, tenant_id: str | None, error: str) -> None:
        async with session_scope(self._session_factory) as session:
            execution = await self._get_execution(session, migration_id, tenant_id)
            execution.error = error

    async def _execute_script(
        self,
        session: AsyncSession,
        script: str,
        tenant_id: str | None,
    ) -> None:
        connection = await session.connection()
        if tenant_id and connection.dialect.name == "postgresql":
            await connection.execute(
                text("SELECT set_config(:name, :value, true)"),
                {"name": TENANT_SETTING, "value": tenant_id},
            )
        for statement in split_statements(script):
            await connection.exec_driver_sql(statement)

    async def _get_execution(
        self,
        session: AsyncSession,
        migration_id: str,
        tenant_id: str | None,
        create: bool = False,
        lock: bool = False,
    ) -> MigrationExecution:
        query = select(MigrationExecution).where(
            MigrationExecution.migration_id == migration_id,
            MigrationExecution.scope == scope_for(tenant_id),
        )
        if lock:
            query = query.with_for_update()
        result = await session.execute(query)
        execution = result.scalar_one_or_none()
        if execution is None:
            if not create:
                raise NotFoundError(
                    f"No execution of {migration_id} in scope {scope_for(tenant_id)}",
                    {"migration_id": migration_id, "tenant_id": tenant_id},
                )
            execution = MigrationExecution(
                migration_id=migration_id,
                tenant_id=tenant_id,
                scope=scope_for(tenant_id),
                status=MigrationStatus.PENDING.value,
                attempts=0,
            )
            session.add(execution)
            await session.flush()
        return execution

    async def _load_definitions(self, session: AsyncSession) -> list[MigrationDefinition]:
        result = await session.execute(
            select(MigrationDefinition).order_by(MigrationDefinition.position)
        )
        return list(result.scalars().all())

    async def _load_executions(
        self,
        session: AsyncSession,
        tenant_id: str | None,
    ) -> dict[ExecutionKey, MigrationExecution]:
        query = select(MigrationExecution)
        if tenant_id is not None:
            query = query.where(
                or_(
                    MigrationExecution.scope == tenant_id,
                    MigrationExecution.scope == GLOBAL_SCOPE,
                )
            )
        result = await session.execute(query)
        return {(e.migration_id, e.scope): e for e in result.scalars().all()}

    @staticmethod
    def _completed_ids(
        definitions: Sequence[MigrationDefinition],
        executions: dict[ExecutionKey, MigrationExecution],
        tenant_id: str | None,
    ) -> set[str]:
        # A dependency is judged in its own scope: tenant ones for this
        # tenant, global ones globally.
        completed: set[str] = set()
        for definition in definitions:
            target = tenant_id if definition.tenant_specific else None
            if definition.tenant_specific and tenant_id is None:
                continue
            if _status(executions.get((definition.id, scope_for(target)))) == MigrationStatus.COMPLETED:
                completed.add(definition.id)
        return completed

    @staticmethod
    def _completed_dependents(
        definition: MigrationDefinition,
        definitions: Sequence[MigrationDefinition],
        executions: dict[ExecutionKey, MigrationExecution],
        tenant_id: str | None,
    ) -> list[str]:
        dependents = {d.id for d in definitions if definition.id in (d.dependencies or ())}
        blocking: list[str] = []
        for (migration_id, scope), execution in executions.items():
            if migration_id not in dependents:
                continue
            if execution.status != MigrationStatus.COMPLETED.value:
                continue
            # A global migration is depended on from every tenant scope
            if definition.tenant_specific and scope != scope_for(tenant_id):
                continue
            label = migration_id if scope == GLOBAL_SCOPE else f"{migration_id}@{scope}"
            blocking.append(label)
        return sorted(blocking)

    @staticmethod
    def _find(definitions: Sequence[MigrationDefinition], migration_id: str) -> MigrationDefinition:
        for definition in definitions:
            if definition.id == migration_id:
                return definition
        raise NotFoundError(f"Migration {migration_id} not found", {"migration_id": migration_id})

    @staticmethod
    def _check_scope(definition: MigrationDefinition, tenant_id: str | None) -> None:
        if definition.tenant_specific and tenant_id is None:
            raise ValidationError(
                f"Migration {definition.id} is tenant-specific and requires a tenant_id",
                {"migration_id": definition.id},
            )
        if not definition.tenant_specific and tenant_id is not None:
            raise ValidationError(
                f"Migration {definition.id} is global and cannot run for a single tenant",
                {"migration_id": definition.id, "tenant_id": tenant_id},
            )
