"""Data Transfer Objects for the pipeline.

DTOs are used to transfer data outside of the Unit of Work context,
allowing ORM objects to be converted to plain Python objects that
can be safely used after the database session is closed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from core.matcher.models import Channel, EventKind, Priority, RatePolicy


@dataclass(frozen=True)
class CanonicalEvent:
    """Validated, normalised opportunity event."""
    source: str
    external_id: str
    version: int
    kind: EventKind
    skills: FrozenSet[str] = frozenset()
    location: Optional[str] = None
    deadline: Optional[datetime] = None
    title: Optional[str] = None
    company: Optional[str] = None
    url: Optional[str] = None
    job_type: Optional[str] = None
    source_timestamp: Optional[datetime] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_ref(self) -> str:
        return f"{self.source}:{self.external_id}"

    @property
    def event_key(self) -> str:
        return f"{self.event_ref}|v{self.version}"

    @classmethod
    def from_orm(cls, event) -> 'CanonicalEvent':
        return cls(
            source=event.source,
            external_id=event.external_id,
            version=event.version,
            kind=EventKind(event.kind),
            skills=frozenset(event.skills or []),
            location=event.location,
            deadline=event.deadline,
            title=event.title,
            company=event.company,
            url=event.url,
            job_type=event.job_type,
            source_timestamp=event.source_timestamp,
            raw_payload=dict(event.raw_payload or {}),
        )


@dataclass
class DeliveryRecordDTO:
    """Snapshot of a DeliveryRecord taken while the session was open."""
    id: str
    intent_key: str
    user_id: str
    channel: Channel
    status: str
    attempt_count: int
    priority: Priority
    rate_policy: RatePolicy
    payload: Dict[str, Any] = field(default_factory=dict)
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    quota_window_start: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_orm(cls, record) -> 'DeliveryRecordDTO':
        return cls(
            id=record.id,
            intent_key=record.intent_key,
            user_id=record.user_id,
            channel=Channel(record.channel),
            status=record.status,
            attempt_count=record.attempt_count,
            priority=Priority(record.priority),
            rate_policy=RatePolicy(record.rate_limit_max, record.rate_limit_window_seconds),
            payload=dict(record.payload or {}),
            next_retry_at=record.next_retry_at,
            last_error=record.last_error,
            quota_window_start=record.quota_window_start,
            delivered_at=record.delivered_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'intent_key': self.intent_key,
            'user_id': self.user_id,
            'channel': self.channel.value,
            'status': self.status,
            'attempt_count': self.attempt_count,
            'priority': self.priority.value,
            'next_retry_at': self.next_retry_at.isoformat() if self.next_retry_at else None,
            'last_error': self.last_error,
            'delivered_at': self.delivered_at.isoformat() if self.delivered_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
