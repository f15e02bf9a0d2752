# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Wiring of the control plane services.

The API and the background workers build the same three services on top
of one sessionmaker. Sinks default to logging implementations; deployments
that ship audit entries or notifications elsewhere pass their own.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mealplane.core.config import Settings
from mealplane.domains.configuration import ConfigurationService
from mealplane.domains.directory import PasswordHasher
from mealplane.domains.migration import MigrationService
from mealplane.domains.provisioning import ProvisioningOrchestrator
from mealplane.infrastructure.sinks import AlertSink, AuditSink, SnapshotService


@dataclass(frozen=True)
class ControlPlaneServices:
    """Services sharing one sessionmaker."""

    session_factory: async_sessionmaker[AsyncSession]
    migrations: MigrationService
    configuration: ConfigurationService
    provisioning: ProvisioningOrchestrator


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    hasher: PasswordHasher | None = None,
    audit: AuditSink | None = None,
    alerts: AlertSink | None = None,
    snapshots: SnapshotService | None = None,
) -> ControlPlaneServices:
    """Create the migration, configuration and provisioning services.

    Args:
        session_factory: Sessionmaker for the platform database.
        settings: Application settings.
        hasher: Password hasher for admin accounts.
        audit: Audit sink.
        alerts: Alert sink.
        snapshots: Backup service used by deprovisioning.

    Returns:
        The wired services.
    """
    migrations = MigrationService(session_factory)
    configuration = ConfigurationService(session_factory, settings.control_plane)
    provisioning = ProvisioningOrchestrator(
        session_factory,
        migrations,
        configuration,
        settings=settings.control_plane,
        hasher=hasher,
        audit=audit,
        alerts=alerts,
        snapshots=snapshots,
    )
    return ControlPlaneServices(
        session_factory=session_factory,
        migrations=migrations,
        configuration=configuration,
        provisioning=provisioning,
    )
