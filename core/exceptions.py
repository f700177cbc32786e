"""
Error taxonomy for the opportunity pipeline.

Per-record failures (validation, matching, channel errors) are isolated to the
record that caused them; PipelineUnavailableError halts acceptance of new work.
"""

from datetime import datetime
from typing import Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""
    pass


class ValidationError(PipelineError):
    """Raised when an inbound source record is malformed."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")

    def to_dict(self) -> dict:
        return {'field': self.field, 'reason': self.reason}


class MatchingError(PipelineError):
    """Raised when an event or preference has an unexpected shape during matching."""

    def __init__(self, event_key: str, reason: str):
        self.event_key = event_key
        self.reason = reason
        super().__init__(f"Matching failed for {event_key}: {reason}")


class ChannelError(PipelineError):
    """Base class for errors raised by channel adapters."""
    pass


class TransientChannelError(ChannelError):
    """Network or provider hiccup; the delivery is retried with backoff."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__(message)


class PermanentChannelError(ChannelError):
    """Invalid recipient, unsubscribed, rejected content; never retried."""
    pass


class RateLimitDeferred(PipelineError):
    """Not a failure: the intent waits for the next rate-limit window."""

    def __init__(self, user_id: str, channel: str, until: datetime):
        self.user_id = user_id
        self.channel = channel
        self.until = until
        super().__init__(f"Rate limit reached for {user_id} on {channel}, deferred until {until.isoformat()}")


class InvalidTransitionError(PipelineError):
    """Raised when a delivery record would move backwards in its state machine."""

    def __init__(self, record_id: str, current: str, target: str):
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(f"Delivery record {record_id} cannot move from {current} to {target}")


class RecordNotFoundError(PipelineError):
    """Raised when a delivery record does not exist."""
    pass


class PipelineUnavailableError(PipelineError):
    """Store or queue subsystem unavailable, or the pipeline is shutting down."""
    pass
