#!/usr/bin/env python3
"""
FastAPI dependencies for dependency injection.

The running pipeline lives on app.state; routes reach it (and the
collaborators it wires) through these functions so tests can swap them
with app.dependency_overrides.
"""

from fastapi import Request

from core.exceptions import PipelineUnavailableError
from core.metrics import PipelineMetrics
from notification.tracker import DeliveryTracker
from pipeline.runner import OpportunityPipeline


def get_pipeline(request: Request) -> OpportunityPipeline:
    """
    FastAPI dependency returning the application's pipeline.

    Usage:
        @router.get("/endpoint")
        def my_endpoint(pipeline: OpportunityPipeline = Depends(get_pipeline)):
            ...
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise PipelineUnavailableError("Pipeline is not initialised")
    return pipeline


def get_tracker(request: Request) -> DeliveryTracker:
    return get_pipeline(request).ctx.tracker


def get_metrics(request: Request) -> PipelineMetrics:
    return get_pipeline(request).ctx.metrics
