# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant configuration: schema, versions, change requests and templates."""

from mealplane.domains.configuration.payload import apply_changes, diff_payloads, flatten
from mealplane.domains.configuration.schema import ConfigurationSchema, load_schema
from mealplane.domains.configuration.service import ConfigurationService
from mealplane.domains.configuration.templates import load_templates

__all__ = [
    "ConfigurationSchema",
    "ConfigurationService",
    "apply_changes",
    "diff_payloads",
    "flatten",
    "load_schema",
    "load_templates",
]
