# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant provisioning and deprovisioning.

ProvisioningOrchestrator runs the persisted step sequences that create an
institution, tenant and admin user, or tear a tenant down.
"""

from mealplane.domains.provisioning.service import (
    ADDITIONAL_TENANT_STEPS,
    DEPROVISIONING_STEPS,
    PROVISIONING_STEPS,
    ProvisioningOrchestrator,
)
from mealplane.domains.provisioning.templates import load_provisioning_templates

__all__ = [
    "ADDITIONAL_TENANT_STEPS",
    "DEPROVISIONING_STEPS",
    "PROVISIONING_STEPS",
    "ProvisioningOrchestrator",
    "load_provisioning_templates",
]
