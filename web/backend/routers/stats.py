#!/usr/bin/env python3
"""
Stats endpoints - pipeline counters, record states and queue depths.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from ..dependencies import get_metrics, get_pipeline
from ..models.responses import StatsResponse
from core.metrics import PipelineMetrics
from pipeline.runner import OpportunityPipeline

router = APIRouter(tags=["stats"])


@router.get("/api/stats", response_model=StatsResponse)
def get_stats(pipeline: OpportunityPipeline = Depends(get_pipeline)):
    """
    Get overall statistics about the pipeline.

    Returns stage counters (ingested, matched, dispatched, delivered, ...),
    delivery records per status and the current depth of each channel queue.
    """
    return StatsResponse(success=True, stats=pipeline.stats())


@router.get("/metrics", include_in_schema=False)
def get_metrics_exposition(metrics: PipelineMetrics = Depends(get_metrics)):
    """Prometheus scrape endpoint."""
    return Response(content=metrics.render(), media_type=metrics.content_type)
