# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models for the platform database.

Importing this package registers every table on Base.metadata.
"""

from mealplane.infrastructure.database.models.base import (
    Base,
    JSONType,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
    generate_uuid,
)
from mealplane.infrastructure.database.models.configuration import (
    ConfigurationChangeRequest,
    TenantConfigurationVersion,
)
from mealplane.infrastructure.database.models.directory import (
    Institution,
    InstitutionUser,
    Tenant,
    TenantUser,
    User,
)
from mealplane.infrastructure.database.models.migration import (
    GLOBAL_SCOPE,
    MigrationDefinition,
    MigrationExecution,
    scope_for,
)
from mealplane.infrastructure.database.models.provisioning import ProvisioningProgress

__all__ = [
    "Base",
    "JSONType",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "generate_uuid",
    # Migrations
    "GLOBAL_SCOPE",
    "MigrationDefinition",
    "MigrationExecution",
    "scope_for",
    # Configuration
    "TenantConfigurationVersion",
    "ConfigurationChangeRequest",
    # Provisioning
    "ProvisioningProgress",
    # Directory
    "Institution",
    "InstitutionUser",
    "Tenant",
    "TenantUser",
    "User",
]
