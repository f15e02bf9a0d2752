# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Collaborator interfaces used by the tenant lifecycle services.

Audit trail, operator alerts and tenant snapshots are owned by other
systems. The control plane only talks to them through these interfaces;
implementations must be async and raise on failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from mealplane.utils.datetime import format_iso, utc_now


class AuditAction(str, Enum):
    """Lifecycle events written to the audit trail."""

    TENANT_PROVISIONED = "tenant_provisioned"
    PROVISIONING_FAILED = "provisioning_failed"
    PROVISIONING_CANCELLED = "provisioning_cancelled"
    TENANT_DEPROVISIONED = "tenant_deprovisioned"
    DEPROVISIONING_SCHEDULED = "deprovisioning_scheduled"
    PROVISIONING_CLEANED_UP = "provisioning_cleaned_up"
    INSTITUTION_USER_CREATED = "institution_user_created"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """Single audit trail entry.

    Attributes:
        action: What happened.
        tenant_id: Affected tenant, if any.
        actor_id: User that triggered the action, if known.
        details: Additional structured data.
        occurred_at: When the action happened.
    """

    action: AuditAction
    tenant_id: str | None = None
    actor_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "tenant_id": self.tenant_id,
            "actor_id": self.actor_id,
            "details": self.details,
            "occurred_at": format_iso(self.occurred_at),
        }


@dataclass
class Alert:
    """Message for operators or tenant users.

    Attributes:
        title: Short summary.
        message: Body text.
        severity: Alert severity.
        tenant_id: Related tenant, if any.
        recipients: Email addresses to notify. Empty means operators.
        details: Additional structured data.
    """

    title: str
    message: str
    severity: AlertSeverity = AlertSeverity.INFO
    tenant_id: str | None = None
    recipients: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class Snapshot:
    """Reference to a stored tenant backup."""

    id: str
    tenant_id: str
    created_at: datetime = field(default_factory=utc_now)
    location: str | None = None


class AuditSink(ABC):
    """Destination for audit trail entries."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist an audit event."""
        ...

    @abstractmethod
    async def purge(self, tenant_id: str) -> int:
        """Remove a tenant's audit entries.

        Returns:
            Number of entries removed.
        """
        ...


class AlertSink(ABC):
    """Destination for alerts and user notifications."""

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        """Deliver an alert."""
        ...


class SnapshotService(ABC):
    """Backup store for tenant data."""

    @abstractmethod
    async def create_snapshot(self, tenant_id: str) -> Snapshot:
        """Back up a tenant's data before destructive operations."""
        ...

    @abstractmethod
    async def restore_snapshot(self, snapshot_id: str) -> None:
        """Restore a previously created snapshot."""
        ...
