# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Audit, alert and snapshot collaborators."""

from mealplane.infrastructure.sinks.base import (
    Alert,
    AlertSeverity,
    AlertSink,
    AuditAction,
    AuditEvent,
    AuditSink,
    Snapshot,
    SnapshotService,
)
from mealplane.infrastructure.sinks.defaults import LoggingAlertSink, LoggingAuditSink

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertSink",
    "AuditAction",
    "AuditEvent",
    "AuditSink",
    "LoggingAlertSink",
    "LoggingAuditSink",
    "Snapshot",
    "SnapshotService",
]
