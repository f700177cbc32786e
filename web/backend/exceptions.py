#!/usr/bin/env python3
"""
Error handlers for the web application.

Pipeline errors are mapped onto HTTP status codes; every error body has
the same {"success": false, "error": ..., "type": ...} shape.
"""

import logging
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

from core.exceptions import (
    InvalidTransitionError,
    PipelineError,
    PipelineUnavailableError,
    RecordNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _status_for(exc: PipelineError) -> int:
    if isinstance(exc, RecordNotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, InvalidTransitionError):
        return 409
    if isinstance(exc, PipelineUnavailableError):
        return 503
    return 500


async def pipeline_exception_handler(
    request: Request,
    exc: PipelineError
) -> JSONResponse:
    """
    Handle pipeline exceptions.

    Args:
        request: The FastAPI request.
        exc: The pipeline exception.

    Returns:
        JSONResponse with error details.
    """
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"Pipeline error in {request.url.path}: {exc}", exc_info=True)
    else:
        logger.info(f"Request to {request.url.path} rejected: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": str(exc),
            "type": exc.__class__.__name__
        }
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """
    Handle FastAPI HTTP exceptions with consistent format.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "type": "HTTPException"
        }
    )


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    logger.exception(f"Unexpected error in {request.url.path}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "type": "InternalError"
        }
    )
