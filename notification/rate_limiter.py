"""
Per-(user, channel) fixed-window rate limiting.

Windows are aligned to the Unix epoch, so every worker computes the same
window for the same instant without coordination. Counters live in the
rate_limit_window table and are only ever incremented by conditional
UPDATEs, which makes admission a compare-and-set.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple

from core.exceptions import RateLimitDeferred
from core.matcher.models import Channel, RatePolicy
from database.repository import PipelineRepository

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class RateDecisionStatus(str, Enum):
    ADMITTED = "ADMITTED"
    OVERRIDE = "OVERRIDE"  # High priority admitted past the cap
    DEFERRED = "DEFERRED"


@dataclass(frozen=True)
class RateDecision:
    status: RateDecisionStatus
    user_id: str
    channel: Channel
    window_start: datetime
    window_end: datetime

    @property
    def admitted(self) -> bool:
        return self.status != RateDecisionStatus.DEFERRED

    @property
    def deferral(self) -> Optional[RateLimitDeferred]:
        if self.admitted:
            return None
        return RateLimitDeferred(self.user_id, self.channel.value, self.window_end)


def window_bounds(now: datetime, window_seconds: int) -> Tuple[datetime, datetime]:
    """Start and end of the epoch-aligned window containing now."""
    elapsed = int((now - EPOCH).total_seconds())
    start = EPOCH + timedelta(seconds=elapsed - elapsed % window_seconds)
    return start, start + timedelta(seconds=window_seconds)


class RateLimiter:
    def __init__(self, priority_override_cap: int = 1):
        self.priority_override_cap = priority_override_cap

    def acquire(
        self,
        repo: PipelineRepository,
        user_id: str,
        channel: Channel,
        policy: RatePolicy,
        high_priority: bool,
        now: datetime
    ) -> RateDecision:
        """
        Try to consume one unit of quota.

        Must run in the same unit of work that records the decision on the
        delivery record, so quota and record state commit together.
        """
        start, end = window_bounds(now, policy.window_seconds)
        limits = repo.rate_limits
        limits.ensure_window(user_id, channel.value, start, end)

        if limits.try_increment(user_id, channel.value, policy.window_seconds, start, policy.max_per_window):
            status = RateDecisionStatus.ADMITTED
        elif high_priority and limits.try_increment_override(
            user_id, channel.value, policy.window_seconds, start, self.priority_override_cap
        ):
            status = RateDecisionStatus.OVERRIDE
            logger.info(f"High priority override for {user_id} on {channel.value} in window {start.isoformat()}")
        else:
            status = RateDecisionStatus.DEFERRED
            logger.info(
                f"Rate limit reached for {user_id} on {channel.value} "
                f"({policy.max_per_window}/{policy.window_seconds}s), deferred until {end.isoformat()}"
            )

        return RateDecision(status, user_id, channel, start, end)
