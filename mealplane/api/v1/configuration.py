# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant configuration API endpoints.

- GET /{tenant_id}/configuration - Effective configuration
- PUT /{tenant_id}/configuration - Update values (new version)
- POST /{tenant_id}/configuration/rollback - Restore an earlier version
- GET /{tenant_id}/configuration/versions - Version history
- GET /{tenant_id}/configuration/diff - Difference between two versions
- GET /{tenant_id}/configuration/export - Export a version
- POST /{tenant_id}/configuration/import - Import an exported configuration
- GET /{tenant_id}/configuration/templates - Available templates
- POST /{tenant_id}/configuration/templates/{template_id} - Apply a template
- GET|POST /{tenant_id}/configuration/change-requests - Change requests
- POST /{tenant_id}/configuration/change-requests/{request_id}/approve
- POST /{tenant_id}/configuration/change-requests/{request_id}/reject

Example:
    PUT /api/v1/tenants/5b0c.../configuration
    {
        "configurations": {"limits": {"maxSchools": 100}},
        "description": "More schools",
        "userId": "admin"
    }
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from mealplane.api.dependencies import get_configuration_service
from mealplane.core.exceptions import NotFoundError
from mealplane.domains.configuration import ConfigurationService
from mealplane.models.configuration import (
    ApplyTemplateRequest,
    ApproveChangeRequest,
    ChangeRequestCreate,
    ChangeRequestResponse,
    ChangeRequestStatus,
    ConfigurationDiff,
    ConfigurationExport,
    ConfigurationTemplate,
    ConfigurationVersionResponse,
    ImportConfigurationRequest,
    RejectChangeRequest,
    ResolvedConfiguration,
    RollbackConfigurationRequest,
    UpdateConfigurationRequest,
    ValidationResult,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/{tenant_id}/configuration",
    response_model=ResolvedConfiguration,
    summary="Get configuration",
)
async def get_configuration(
    tenant_id: str,
    include_inheritance: Annotated[
        bool, Query(alias="includeInheritance", description="Overlay schema defaults")
    ] = True,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ResolvedConfiguration:
    return await configuration.get_configuration(tenant_id, include_inheritance)


@router.put(
    "/{tenant_id}/configuration",
    response_model=ConfigurationVersionResponse | ValidationResult,
    summary="Update configuration",
    description="Write a new version with the given changes. With "
    "``validateOnly`` the changes are only validated.",
)
async def update_configuration(
    tenant_id: str,
    data: UpdateConfigurationRequest,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationVersionResponse | ValidationResult:
    """Update configuration values.

    Raises:
        ValidationError: Empty change set (422).
        InvalidConfigurationValue: One or more values are invalid (422).
    """
    return await configuration.update_configuration(
        tenant_id,
        data.configurations,
        description=data.description,
        user_id=data.user_id,
        validate_only=data.validate_only,
    )


@router.post(
    "/{tenant_id}/configuration/rollback",
    response_model=ConfigurationVersionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Roll back configuration",
)
async def rollback_configuration(
    tenant_id: str,
    data: RollbackConfigurationRequest,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationVersionResponse:
    """Create a new version equal to ``targetVersion``.

    Raises:
        VersionNotFound: The target version does not exist (404).
    """
    logger.info(
        "Rolling back configuration of tenant %s to version %d",
        tenant_id,
        data.target_version,
    )
    return await configuration.rollback_configuration(
        tenant_id,
        data.target_version,
        data.reason,
        user_id=data.user_id,
    )


@router.get(
    "/{tenant_id}/configuration/versions",
    response_model=list[ConfigurationVersionResponse],
    summary="List configuration versions",
)
async def list_versions(
    tenant_id: str,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> list[ConfigurationVersionResponse]:
    return await configuration.list_versions(tenant_id)


@router.get(
    "/{tenant_id}/configuration/versions/{version}",
    response_model=ConfigurationVersionResponse,
    summary="Get configuration version",
)
async def get_version(
    tenant_id: str,
    version: int,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationVersionResponse:
    return await configuration.get_version(tenant_id, version)


@router.get(
    "/{tenant_id}/configuration/diff",
    response_model=ConfigurationDiff,
    summary="Diff configuration versions",
)
async def get_diff(
    tenant_id: str,
    from_version: Annotated[int, Query(alias="from", ge=1)],
    to_version: Annotated[int, Query(alias="to", ge=1)],
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationDiff:
    return await configuration.get_diff(tenant_id, from_version, to_version)


@router.get(
    "/{tenant_id}/configuration/export",
    response_model=ConfigurationExport,
    summary="Export configuration",
)
async def export_configuration(
    tenant_id: str,
    version: Annotated[int | None, Query(ge=1)] = None,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationExport:
    return await configuration.export_configuration(tenant_id, version)


@router.post(
    "/{tenant_id}/configuration/import",
    response_model=ConfigurationVersionResponse | ValidationResult,
    summary="Import configuration",
)
async def import_configuration(
    tenant_id: str,
    data: ImportConfigurationRequest,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationVersionResponse | ValidationResult:
    return await configuration.import_configuration(
        tenant_id,
        data.configuration,
        validate_only=data.validate_only,
        user_id=data.user_id,
        description=data.description,
    )


@router.get(
    "/{tenant_id}/configuration/templates",
    response_model=list[ConfigurationTemplate],
    summary="List configuration templates",
)
async def list_templates(
    tenant_id: str,
    tenant_type: Annotated[str | None, Query(alias="tenantType")] = None,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> list[ConfigurationTemplate]:
    return configuration.list_templates(tenant_type)


@router.post(
    "/{tenant_id}/configuration/templates/{template_id}",
    response_model=ConfigurationVersionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Apply configuration template",
)
async def apply_template(
    tenant_id: str,
    template_id: str,
    data: ApplyTemplateRequest | None = None,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationVersionResponse:
    user_id = data.user_id if data else None
    return await configuration.apply_template(tenant_id, template_id, user_id=user_id)


# =============================================================================
# Change requests
# =============================================================================


@router.get(
    "/{tenant_id}/configuration/change-requests",
    response_model=list[ChangeRequestResponse],
    summary="List change requests",
)
async def list_change_requests(
    tenant_id: str,
    request_status: Annotated[ChangeRequestStatus | None, Query(alias="status")] = None,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> list[ChangeRequestResponse]:
    return await configuration.list_change_requests(tenant_id, request_status)


@router.post(
    "/{tenant_id}/configuration/change-requests",
    response_model=ChangeRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request configuration change",
)
async def request_change(
    tenant_id: str,
    data: ChangeRequestCreate,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ChangeRequestResponse:
    """Propose changes for review, or apply them at once with ``autoApply``.

    Raises:
        InvalidConfigurationValue: Proposed values are invalid (422).
    """
    return await configuration.request_change(tenant_id, data)


async def _request_of_tenant(
    configuration: ConfigurationService,
    tenant_id: str,
    request_id: str,
) -> None:
    requests = await configuration.list_change_requests(tenant_id)
    if not any(r.id == request_id for r in requests):
        raise NotFoundError(
            f"Change request {request_id} not found for tenant {tenant_id}",
            {"tenant_id": tenant_id, "request_id": request_id},
        )


@router.post(
    "/{tenant_id}/configuration/change-requests/{request_id}/approve",
    response_model=ChangeRequestResponse,
    summary="Approve change request",
)
async def approve_change(
    tenant_id: str,
    request_id: str,
    data: ApproveChangeRequest,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ChangeRequestResponse:
    """Approve a pending request and apply it as a new version.

    Raises:
        InvalidRequestState: The request is not pending (409).
    """
    await _request_of_tenant(configuration, tenant_id, request_id)
    return await configuration.approve_change(request_id, data.approver_id)


@router.post(
    "/{tenant_id}/configuration/change-requests/{request_id}/reject",
    response_model=ChangeRequestResponse,
    summary="Reject change request",
)
async def reject_change(
    tenant_id: str,
    request_id: str,
    data: RejectChangeRequest,
    configuration: ConfigurationService = Depends(get_configuration_service),
) -> ChangeRequestResponse:
    await _request_of_tenant(configuration, tenant_id, request_id)
    return await configuration.reject_change(request_id, data.approver_id, data.reason)
