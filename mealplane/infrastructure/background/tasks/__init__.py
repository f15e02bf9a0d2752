# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background task actors for the control plane.

Running Workers:
    dramatiq mealplane.infrastructure.background.tasks --processes 2 --threads 4
"""

from mealplane.infrastructure.background.tasks.provisioning import (
    execute_provisioning,
    get_provisioning_actors,
    run_due_deprovisionings,
)


def get_all_actors() -> list:
    """Get all registered actors."""
    return [*get_provisioning_actors()]


__all__ = [
    "execute_provisioning",
    "get_all_actors",
    "run_due_deprovisionings",
]
