# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Log-only sink implementations used when nothing else is configured."""

import logging

from mealplane.infrastructure.sinks.base import (
    Alert,
    AlertSeverity,
    AlertSink,
    AuditEvent,
    AuditSink,
)

logger = logging.getLogger(__name__)

_SEVERITY_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


class LoggingAuditSink(AuditSink):
    """Writes audit events to the application log."""

    async def record(self, event: AuditEvent) -> None:
        logger.info(
            "Audit: %s tenant=%s actor=%s details=%s",
            event.action.value,
            event.tenant_id,
            event.actor_id,
            event.details,
        )

    async def purge(self, tenant_id: str) -> int:
        logger.info("Audit purge requested for tenant %s (log sink keeps no entries)", tenant_id)
        return 0


class LoggingAlertSink(AlertSink):
    """Writes alerts to the application log at a level matching severity."""

    async def send(self, alert: Alert) -> None:
        logger.log(
            _SEVERITY_LEVELS[alert.severity],
            "Alert: %s - %s (tenant=%s, recipients=%d)",
            alert.title,
            alert.message,
            alert.tenant_id,
            len(alert.recipients),
        )
