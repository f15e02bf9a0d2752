# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning background tasks.

The API records a pending run and hands its id to ``execute_provisioning``;
the worker executes the steps. ``run_due_deprovisionings`` is meant to be
triggered periodically (cron or a scheduler) to execute deprovisionings
whose grace period has ended.
"""

import logging
from typing import Any

import dramatiq

from mealplane.core.exceptions import ControlPlaneError
from mealplane.infrastructure.background.broker import Priority, Queues, setup_dramatiq
from mealplane.infrastructure.background.tasks.base import get_worker_services, run_async

# Setup broker before defining actors
setup_dramatiq()

logger = logging.getLogger(__name__)


@dramatiq.actor(
    queue_name=Queues.PROVISIONING,
    max_retries=0,
    time_limit=1800000,  # 30 minutes
    priority=Priority.HIGH,
)
def execute_provisioning(progress_id: str) -> dict[str, Any]:
    """Execute the remaining steps of a provisioning run.

    Failures are persisted on the run itself; retry and recovery go
    through the API, so the actor never retries on its own.

    Args:
        progress_id: Run to execute.

    Returns:
        Final run status.
    """

    async def _execute() -> dict[str, Any]:
        services = get_worker_services()
        try:
            progress = await services.provisioning.execute_run(progress_id)
        except ControlPlaneError as e:
            logger.error("Provisioning run %s failed: %s", progress_id, e.message)
            return {"progress_id": progress_id, "status": "failed", "error": e.message}
        return {"progress_id": progress_id, "status": progress.status.value}

    return run_async(_execute())


@dramatiq.actor(
    queue_name=Queues.MAINTENANCE,
    max_retries=1,
    time_limit=3600000,  # 1 hour
    priority=Priority.NORMAL,
)
def run_due_deprovisionings() -> dict[str, Any]:
    """Execute scheduled deprovisionings whose time has come.

    Returns:
        Count and final status of each run started.
    """

    async def _run() -> dict[str, Any]:
        services = get_worker_services()
        results = await services.provisioning.run_due_deprovisionings()
        logger.info("Executed %d scheduled deprovisioning(s)", len(results))
        return {
            "executed": len(results),
            "runs": {progress.id: progress.status.value for progress in results},
        }

    return run_async(_run())


def get_provisioning_actors() -> list:
    """Get all provisioning actors."""
    return [
        execute_provisioning,
        run_due_deprovisionings,
    ]
