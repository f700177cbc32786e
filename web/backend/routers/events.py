#!/usr/bin/env python3
"""
Event endpoints - submit source records to the pipeline.
"""

import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from ..dependencies import get_pipeline
from ..models.requests import EventBatchRequest
from ..models.responses import IngestResponse
from pipeline.runner import OpportunityPipeline

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/api/events", tags=["events"])


def add_rate_limit_handlers(app):
    """Add rate limit exception handlers to the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


async def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": str(exc),
            "type": "RateLimitExceeded"
        }
    )


@router.post("", response_model=IngestResponse)
@limiter.limit("60/minute")
def submit_events(
    request: Request,
    body: EventBatchRequest,
    pipeline: OpportunityPipeline = Depends(get_pipeline)
):
    """
    Submit a batch of source records.

    Every record gets its own result in submission order. Accepted records
    are matched and delivered asynchronously when the pipeline workers are
    running, otherwise within this request.
    """
    if pipeline.running:
        report = pipeline.submit(body.events)
    else:
        report = pipeline.run_pass(body.events).ingest

    logger.info(
        f"Received {len(body.events)} records: {report.accepted} accepted, "
        f"{report.rejected} rejected"
    )
    return IngestResponse(
        success=report.rejected == 0,
        accepted=report.accepted,
        duplicates=report.duplicates,
        rejected=report.rejected,
        results=[r.to_dict() for r in report.results]
    )
