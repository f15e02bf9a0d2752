# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

Service and API tests run against an in-memory SQLite database created
from the ORM metadata. Each test gets a fresh database.
"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# The broker must be a stub before any actor module is imported.
os.environ.setdefault("WORKER_TEST_MODE", "true")

from mealplane.core.config import ControlPlaneSettings, Settings  # noqa: E402
from mealplane.domains.configuration import ConfigurationService  # noqa: E402
from mealplane.domains.container import ControlPlaneServices  # noqa: E402
from mealplane.domains.directory import PasswordHasher  # noqa: E402
from mealplane.domains.migration import MigrationService  # noqa: E402
from mealplane.domains.provisioning import ProvisioningOrchestrator  # noqa: E402
from mealplane.infrastructure.database.connection import (  # noqa: E402
    create_engine,
    create_sessionmaker,
)
from mealplane.infrastructure.database.models import Base  # noqa: E402
from mealplane.infrastructure.sinks import (  # noqa: E402
    Alert,
    AlertSink,
    AuditEvent,
    AuditSink,
    Snapshot,
    SnapshotService,
)
from mealplane.utils.datetime import utc_now  # noqa: E402

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


# =============================================================================
# Recording collaborators
# =============================================================================


class RecordingAuditSink(AuditSink):
    """Keeps audit events in memory."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []
        self.purged: list[str] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    async def purge(self, tenant_id: str) -> int:
        removed = [e for e in self.events if e.tenant_id == tenant_id]
        self.events = [e for e in self.events if e.tenant_id != tenant_id]
        self.purged.append(tenant_id)
        return len(removed)

    def actions(self) -> list[str]:
        return [event.action.value for event in self.events]


class RecordingAlertSink(AlertSink):
    """Keeps alerts in memory."""

    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    async def send(self, alert: Alert) -> None:
        self.alerts.append(alert)


class InMemorySnapshotService(SnapshotService):
    """Snapshot service that only records requests."""

    def __init__(self) -> None:
        self.snapshots: dict[str, Snapshot] = {}

    async def create_snapshot(self, tenant_id: str) -> Snapshot:
        snapshot = Snapshot(
            id=f"snap-{len(self.snapshots) + 1}",
            tenant_id=tenant_id,
            created_at=utc_now(),
            location=f"memory://{tenant_id}",
        )
        self.snapshots[snapshot.id] = snapshot
        return snapshot

    async def restore_snapshot(self, snapshot_id: str) -> None:
        if snapshot_id not in self.snapshots:
            raise KeyError(snapshot_id)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def control_plane_settings() -> ControlPlaneSettings:
    return ControlPlaneSettings(config_dir=CONFIG_DIR)


@pytest.fixture
def settings(control_plane_settings: ControlPlaneSettings) -> Settings:
    return Settings(
        environment="development",
        debug=True,
        control_plane=control_plane_settings,
    )


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database with the platform schema."""
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_sessionmaker(engine)


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def snapshot_service() -> InMemorySnapshotService:
    return InMemorySnapshotService()


@pytest.fixture
def migration_service(session_factory: async_sessionmaker[AsyncSession]) -> MigrationService:
    return MigrationService(session_factory)


@pytest.fixture
def configuration_service(
    session_factory: async_sessionmaker[AsyncSession],
    control_plane_settings: ControlPlaneSettings,
) -> ConfigurationService:
    return ConfigurationService(session_factory, control_plane_settings)


@pytest.fixture
def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    migration_service: MigrationService,
    configuration_service: ConfigurationService,
    control_plane_settings: ControlPlaneSettings,
    hasher: PasswordHasher,
    audit_sink: RecordingAuditSink,
    alert_sink: RecordingAlertSink,
    snapshot_service: InMemorySnapshotService,
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        session_factory,
        migration_service,
        configuration_service,
        settings=control_plane_settings,
        hasher=hasher,
        audit=audit_sink,
        alerts=alert_sink,
        snapshots=snapshot_service,
    )


@pytest.fixture
def services(
    session_factory: async_sessionmaker[AsyncSession],
    migration_service: MigrationService,
    configuration_service: ConfigurationService,
    orchestrator: ProvisioningOrchestrator,
) -> ControlPlaneServices:
    return ControlPlaneServices(
        session_factory=session_factory,
        migrations=migration_service,
        configuration=configuration_service,
        provisioning=orchestrator,
    )


# =============================================================================
# Request data
# =============================================================================


def provision_payload(slug: str = "escola-central", email: str | None = None) -> dict[str, Any]:
    """camelCase provisioning request body."""
    return {
        "institution": {
            "name": "Escola Central",
            "slug": slug,
            "type": "organizacao",
            "documentNumber": "12.345.678/0001-90" if slug == "escola-central" else None,
            "email": "contato@escolacentral.edu.br",
        },
        "tenant": {"name": "Escola Central", "slug": slug},
        "admin": {
            "name": "Maria Souza",
            "email": email or f"admin@{slug.replace('-', '')}.edu.br",
            "password": "merenda-2025",
        },
    }


@pytest.fixture
def escola_central_request() -> dict[str, Any]:
    return provision_payload()
