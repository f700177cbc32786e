"""
Notification Module

Dedup, rate limiting, per-channel dispatch, channel adapters and the
delivery record state machine.

Usage:
    from notification import ChannelRegistry, DeliveryOutcome

    registry = ChannelRegistry.from_config(config.channels)
    outcome = registry.get(Channel.EMAIL).attempt_delivery(user_id, payload)
"""

from notification.channels import (
    DeliveryOutcome,
    NotificationChannel,
    EmailChannel,
    HttpGatewayChannel,
    SmsChannel,
    PushChannel,
    ChannelRegistry,
)

from notification.dedup import (
    IdempotencyCache,
    DatabaseIdempotencyCache,
    RedisIdempotencyCache,
)

from notification.rate_limiter import (
    RateLimiter,
    RateDecision,
    RateDecisionStatus,
    window_bounds,
)

from notification.tracker import (
    ALLOWED_TRANSITIONS,
    BackoffPolicy,
    DeliveryTracker,
)

from notification.dispatcher import (
    ChannelQueue,
    DeliveryDispatcher,
    QueueItem,
)

from notification.retry_scheduler import (
    RetryScheduler,
    SchedulerPassResult,
)

from notification.reporting import (
    DeliveryReporter,
    LoggingDeliveryReporter,
)

__all__ = [
    # Channels
    'DeliveryOutcome',
    'NotificationChannel',
    'EmailChannel',
    'HttpGatewayChannel',
    'SmsChannel',
    'PushChannel',
    'ChannelRegistry',
    # Dedup & rate limiting
    'IdempotencyCache',
    'DatabaseIdempotencyCache',
    'RedisIdempotencyCache',
    'RateLimiter',
    'RateDecision',
    'RateDecisionStatus',
    'window_bounds',
    # Tracking & dispatch
    'ALLOWED_TRANSITIONS',
    'BackoffPolicy',
    'DeliveryTracker',
    'ChannelQueue',
    'DeliveryDispatcher',
    'QueueItem',
    'RetryScheduler',
    'SchedulerPassResult',
    # Reporting
    'DeliveryReporter',
    'LoggingDeliveryReporter',
]
