from sqlalchemy import Column, Integer, Text, JSON, Index

from .base import Base, UTCDateTime, utc_now


class NotificationIntent(Base):
    """
    A (user, event version) match pending delivery.

    The primary key is the natural idempotency key, so this table is also the
    durable dedup cache; rows past expires_at no longer block a new claim.
    """
    __tablename__ = 'notification_intent'

    intent_key = Column(Text, primary_key=True)  # "{user_id}|{source}:{id}|v{version}"

    user_id = Column(Text, nullable=False)
    event_ref = Column(Text, nullable=False)  # "{source}:{id}"
    event_version = Column(Integer, nullable=False)

    reason_tags = Column(JSON, nullable=False, default=list)
    priority = Column(Text, nullable=False, default='normal')
    channels = Column(JSON, nullable=False, default=list)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    expires_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index('idx_notification_intent_user', 'user_id', 'created_at'),
        Index('idx_notification_intent_expiry', 'expires_at'),
    )
