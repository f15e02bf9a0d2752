# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning API endpoints.

- POST /complete - Provision institution, tenant and admin user
- GET /templates - List provisioning templates
- POST /templates/{template_id} - Provision from a template
- POST /institutions/{institution_id}/tenants - Add a tenant to an institution
- POST /institutions/{institution_id}/users - Add a user to an institution
- GET /institutions/{institution_id}/hierarchy - Institution tenants and members
- GET /progress - List runs
- GET /progress/{progress_id} - Run state
- POST /progress/{progress_id}/retry/{step_id} - Retry a failed step
- POST /progress/{progress_id}/cancel - Cancel a pending or running run
- POST /progress/{progress_id}/recover - Resume a failed run
- POST /progress/{progress_id}/cleanup - Remove what a failed run created
- POST /tenants/{tenant_id}/deprovision - Tear a tenant down
- POST /tenants/{tenant_id}/deprovision/schedule - Schedule a teardown

Example:
    POST /api/v1/provisioning/complete
    {
        "institution": {"name": "Escola Central", "slug": "escola-central",
                        "type": "organizacao"},
        "tenant": {"name": "Escola Central", "slug": "escola-central"},
        "admin": {"name": "Admin", "email": "admin@escolacentral.edu.br",
                  "password": "secret123"}
    }
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from mealplane.api.dependencies import get_provisioning_orchestrator
from mealplane.domains.provisioning import ProvisioningOrchestrator
from mealplane.models.provisioning import (
    AdditionalTenantRequest,
    DeprovisioningOptions,
    InstitutionHierarchy,
    InstitutionUserRequest,
    InstitutionUserResponse,
    ProvisionCompleteRequest,
    ProvisioningProgressResponse,
    ProvisioningResult,
    ProvisioningStatus,
    ProvisioningTemplate,
    RunKind,
    ScheduleDeprovisioningRequest,
    TemplateProvisionRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/complete",
    response_model=ProvisioningResult | ProvisioningProgressResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision tenant",
    description="Create an institution, its first tenant and an admin user. "
    "With ``background=true`` the run is queued and its pending state returned.",
)
async def provision_complete(
    data: ProvisionCompleteRequest,
    background: Annotated[bool, Query(description="Execute in a background worker")] = False,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningResult | ProvisioningProgressResponse:
    """Provision a tenant.

    Raises:
        ValidationError: Malformed input (422).
        ConflictError: Slug, email or document number already in use (409).
        ProvisioningError: A step failed (500).
    """
    logger.info(
        "Provisioning requested: institution=%s, tenant=%s",
        data.institution.slug,
        data.tenant.slug,
    )

    if background:
        from mealplane.infrastructure.background.tasks import execute_provisioning

        progress = await orchestrator.prepare_provisioning(data)
        execute_provisioning.send(progress.id)
        return progress

    return await orchestrator.provision_complete(data)


@router.get(
    "/templates",
    response_model=list[ProvisioningTemplate],
    summary="List provisioning templates",
)
async def list_templates(
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> list[ProvisioningTemplate]:
    return orchestrator.list_templates()


@router.post(
    "/templates/{template_id}",
    response_model=ProvisioningProgressResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision from template",
)
async def provision_from_template(
    template_id: str,
    data: TemplateProvisionRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    return await orchestrator.provision_from_template(template_id, data)


@router.post(
    "/institutions/{institution_id}/tenants",
    response_model=ProvisioningResult,
    status_code=status.HTTP_201_CREATED,
    summary="Add tenant to institution",
)
async def create_additional_tenant(
    institution_id: str,
    data: AdditionalTenantRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningResult:
    """Add a tenant under an existing institution.

    Raises:
        NotFoundError: Unknown institution or user (404).
        ConflictError: Tenant limit reached (409).
    """
    return await orchestrator.create_additional_tenant(institution_id, data)


@router.post(
    "/institutions/{institution_id}/users",
    response_model=InstitutionUserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add user to institution",
)
async def create_institution_user(
    institution_id: str,
    data: InstitutionUserRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> InstitutionUserResponse:
    """Create a user under an institution, optionally linked to a tenant.

    Raises:
        NotFoundError: Unknown institution or tenant (404).
        ConflictError: Member limit reached or email in use (409).
    """
    return await orchestrator.create_institution_user(institution_id, data)


@router.get(
    "/institutions/{institution_id}/hierarchy",
    response_model=InstitutionHierarchy,
    summary="Get institution hierarchy",
)
async def get_institution_hierarchy(
    institution_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> InstitutionHierarchy:
    return await orchestrator.get_institution_hierarchy(institution_id)


# =============================================================================
# Progress
# =============================================================================


@router.get(
    "/progress",
    response_model=list[ProvisioningProgressResponse],
    summary="List runs",
)
async def list_progress(
    run_status: Annotated[ProvisioningStatus | None, Query(alias="status")] = None,
    kind: RunKind | None = None,
    tenant_id: Annotated[str | None, Query(alias="tenantId")] = None,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> list[ProvisioningProgressResponse]:
    return await orchestrator.list_progress(run_status, kind, tenant_id)


@router.get(
    "/progress/{progress_id}",
    response_model=ProvisioningProgressResponse,
    summary="Get run",
)
async def get_progress(
    progress_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    return await orchestrator.get_progress(progress_id)


@router.post(
    "/progress/{progress_id}/retry/{step_id}",
    response_model=ProvisioningProgressResponse,
    summary="Retry failed step",
)
async def retry_failed_step(
    progress_id: str,
    step_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    """Re-run a failed step, then the remaining steps.

    Raises:
        StepNotRetryable: The step is not failed (409).
    """
    return await orchestrator.retry_failed_step(progress_id, step_id)


@router.post(
    "/progress/{progress_id}/cancel",
    response_model=ProvisioningProgressResponse,
    summary="Cancel run",
)
async def cancel_provisioning(
    progress_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    return await orchestrator.cancel_provisioning(progress_id)


@router.post(
    "/progress/{progress_id}/recover",
    response_model=ProvisioningProgressResponse,
    summary="Recover failed run",
)
async def recover_failed_provisioning(
    progress_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    return await orchestrator.recover_failed_provisioning(progress_id)


@router.post(
    "/progress/{progress_id}/cleanup",
    response_model=ProvisioningProgressResponse,
    summary="Clean up failed run",
)
async def cleanup_failed_provisioning(
    progress_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    return await orchestrator.cleanup_failed_provisioning(progress_id)


# =============================================================================
# Deprovisioning
# =============================================================================


@router.post(
    "/tenants/{tenant_id}/deprovision",
    response_model=ProvisioningProgressResponse,
    summary="Deprovision tenant",
    description="Tear a tenant down now, or schedule it when "
    "``gracePeriodHours`` is positive.",
)
async def deprovision_tenant(
    tenant_id: str,
    options: DeprovisioningOptions | None = None,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    logger.info("Deprovisioning requested for tenant %s", tenant_id)
    return await orchestrator.deprovision_tenant(tenant_id, options)


@router.post(
    "/tenants/{tenant_id}/deprovision/schedule",
    response_model=ProvisioningProgressResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Schedule deprovisioning",
)
async def schedule_deprovisioning(
    tenant_id: str,
    data: ScheduleDeprovisioningRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> ProvisioningProgressResponse:
    return await orchestrator.schedule_deprovisioning(tenant_id, data.scheduled_at, data.options)
