# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Mapping of domain errors to HTTP responses.

Services raise ControlPlaneError subclasses. The application registers
``control_plane_error_handler`` so every route answers with the same
error body:

    {"detail": {"code": "CONFLICT", "message": "...", "details": {...}}}
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from mealplane.core.exceptions import (
    ConflictError,
    ControlPlaneError,
    DependencyNotSatisfied,
    DependentMigrationsExist,
    InternalError,
    InvalidConfigurationValue,
    InvalidRequestState,
    NotFoundError,
    StepNotRetryable,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses come before their bases.
STATUS_CODES: tuple[tuple[type[ControlPlaneError], int], ...] = (
    (InvalidConfigurationValue, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (DependencyNotSatisfied, status.HTTP_409_CONFLICT),
    (DependentMigrationsExist, status.HTTP_409_CONFLICT),
    (InvalidRequestState, status.HTTP_409_CONFLICT),
    (StepNotRetryable, status.HTTP_409_CONFLICT),
    (InternalError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(error: ControlPlaneError) -> int:
    """HTTP status code for a domain error."""
    for error_type, code in STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: ControlPlaneError) -> HTTPException:
    """Convert a domain error into an HTTPException."""
    return HTTPException(status_code=status_for(error), detail=error.to_dict())


async def control_plane_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Exception handler for ControlPlaneError."""
    if not isinstance(exc, ControlPlaneError):
        raise exc

    http_error = to_http_exception(exc)
    if http_error.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, str(exc))
    else:
        logger.info(
            "%s %s rejected with %d: %s",
            request.method,
            request.url.path,
            http_error.status_code,
            exc.message,
        )
    return JSONResponse(status_code=http_error.status_code, content={"detail": http_error.detail})
