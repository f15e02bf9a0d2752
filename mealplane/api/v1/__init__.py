# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""API v1 routes package.

Modules:
    migrations: Migration definitions, execution and rollback.
    configuration: Tenant configuration versions, change requests and templates.
    provisioning: Tenant provisioning and deprovisioning runs.
"""

from fastapi import APIRouter

from mealplane.api.v1 import configuration, migrations, provisioning

# Create the main v1 router
router = APIRouter(prefix="/api/v1")

router.include_router(migrations.router, prefix="/migrations", tags=["Migrations"])
router.include_router(configuration.router, prefix="/tenants", tags=["Configuration"])
router.include_router(provisioning.router, prefix="/provisioning", tags=["Provisioning"])

__all__ = ["router"]
