import uuid
from enum import Enum

from sqlalchemy import Column, Integer, Text, JSON, UniqueConstraint, Index

from .base import Base, UTCDateTime, utc_now


class DeliveryStatus(str, Enum):
    """Delivery record lifecycle states."""
    PENDING = "PENDING"
    DEFERRED = "DEFERRED"  # Held back by the rate limiter until the window rolls over
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    FAILED_PERMANENT = "FAILED_PERMANENT"


TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED_PERMANENT})


class DeliveryRecord(Base):
    """
    One delivery of one intent on one channel.

    Mutated only through the delivery tracker. The version column gives
    optimistic concurrency: a concurrent writer gets StaleDataError instead
    of silently overwriting.
    """
    __tablename__ = 'delivery_record'

    id = Column(Text, primary_key=True, default=lambda: str(uuid.uuid4()))

    # Owned by the pipeline; no FK so intents and records are purged independently
    intent_key = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)
    channel = Column(Text, nullable=False)  # email | sms | push

    status = Column(Text, nullable=False, default=DeliveryStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(UTCDateTime)  # Retry time, deferral end, or queue/dispatch lease
    last_error = Column(Text)

    priority = Column(Text, nullable=False, default='normal')
    payload = Column(JSON, nullable=False, default=dict)

    # Rate policy snapshot taken at fan-out (preferences may change later)
    rate_limit_max = Column(Integer, nullable=False)
    rate_limit_window_seconds = Column(Integer, nullable=False)
    quota_window_start = Column(UTCDateTime)  # Set once quota has been consumed

    delivered_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {
        'version_id_col': version,
    }

    __table_args__ = (
        UniqueConstraint('intent_key', 'channel', name='uq_delivery_intent_channel'),
        Index('idx_delivery_status_due', 'status', 'next_retry_at'),
        Index('idx_delivery_user_channel', 'user_id', 'channel', 'created_at'),
    )
