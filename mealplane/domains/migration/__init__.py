# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration domain.

MigrationService keeps migration definitions and their per-scope
executions, runs pending migrations in dependency order and rolls them
back. The templates module renders common multi-tenant SQL changes.
"""

from mealplane.domains.migration.graph import MigrationNode, topological_order
from mealplane.domains.migration.service import MigrationService, build_migration_id
from mealplane.domains.migration.templates import (
    TEMPLATES,
    MigrationScript,
    generate_from_template,
)

__all__ = [
    "MigrationService",
    "MigrationNode",
    "MigrationScript",
    "TEMPLATES",
    "build_migration_id",
    "generate_from_template",
    "topological_order",
]
