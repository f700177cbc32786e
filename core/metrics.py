"""Prometheus counters for every pipeline stage.

Each PipelineMetrics owns its own CollectorRegistry so several pipelines
(or tests) in one process never share counters.
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, generate_latest, CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

STAGES = (
    'ingested',
    'rejected',
    'duplicate_events',
    'matched',
    'matching_errors',
    'rematched',
    'deduped',
    'rate_limited',
    'deferred',
    'dispatched',
    'delivered',
    'retried',
    'dead_lettered',
    'backpressure',
)


class PipelineMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.stage_total = Counter(
            "opportunity_pipeline_stage",
            "Items passing through each pipeline stage",
            labelnames=["stage"],
            registry=self.registry,
        )
        self.delivery_outcomes_total = Counter(
            "opportunity_delivery_outcome",
            "Channel adapter outcomes by channel",
            labelnames=["channel", "outcome"],
            registry=self.registry,
        )
        for stage in STAGES:
            self.stage_total.labels(stage=stage)

    def inc(self, stage: str, amount: int = 1) -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown pipeline stage: {stage}")
        self.stage_total.labels(stage=stage).inc(amount)

    def record_outcome(self, channel: str, outcome: str) -> None:
        self.delivery_outcomes_total.labels(channel=channel, outcome=outcome).inc()

    def get(self, stage: str) -> int:
        value = self.registry.get_sample_value(
            "opportunity_pipeline_stage_total", {"stage": stage}
        )
        return int(value or 0)

    def snapshot(self) -> Dict[str, int]:
        return {stage: self.get(stage) for stage in STAGES}

    def render(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST
