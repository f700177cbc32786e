#!/usr/bin/env python3
"""
Test suite configuration and utilities.

All tests run against throwaway SQLite databases, so nothing external is
needed:

    python -m pytest tests/ -v

    # Only the end-to-end scenarios
    python -m pytest tests/integration -v
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.matcher.models import Channel, Criteria, UserPreference
from notification.channels import DeliveryOutcome, NotificationChannel

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; pass it wherever a clock callable is accepted."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingChannel(NotificationChannel):
    """
    Channel adapter test double.

    Returns (or raises) the scripted outcomes in order, then DELIVERED.
    Every call is kept in `sent`.
    """

    def __init__(self, channel: Channel, outcomes: Optional[List[Any]] = None):
        super().__init__(dry_run=False)
        self._channel = channel
        self.outcomes = list(outcomes or [])
        self.sent: List[Dict[str, Any]] = []

    @property
    def channel_type(self) -> Channel:
        return self._channel

    def attempt_delivery(self, user_id: str, payload: Dict[str, Any]) -> DeliveryOutcome:
        self.sent.append({'user_id': user_id, 'payload': payload})
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return DeliveryOutcome.DELIVERED


def make_preference(
    user_id: str,
    preference_id: Optional[str] = None,
    skills=(),
    location: Optional[str] = None,
    job_types=(),
    channels=(Channel.EMAIL,),
    contacts: Optional[Dict[str, str]] = None,
    active: bool = True,
    **criteria
) -> UserPreference:
    if contacts is None:
        contacts = {
            Channel.EMAIL.value: f"{user_id}@example.com",
            Channel.SMS.value: "+15550000001",
            Channel.PUSH.value: f"token-{user_id}",
        }
    return UserPreference(
        user_id=user_id,
        preference_id=preference_id or f"{user_id}:default",
        criteria=Criteria(
            skills=frozenset(skills),
            location=location,
            job_types=frozenset(job_types),
            channels=tuple(channels),
            **criteria
        ),
        contacts=contacts,
        active=active,
    )


def job_record(
    external_id: str,
    skills=('python',),
    location: Optional[str] = 'Bengaluru',
    version: int = 1,
    kind: str = 'JOB',
    source: str = 'jobboard',
    **attributes
) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {'title': f"Engineer {external_id}", 'company': 'Acme'}
    if skills:
        attrs['skills'] = list(skills)
    if location:
        attrs['location'] = location
    attrs.update(attributes)
    return {
        'source': source,
        'id': external_id,
        'version': version,
        'kind': kind,
        'attributes': attrs,
        'timestamp': '2026-03-01T09:00:00Z',
    }


def certification_record(external_id: str, deadline: datetime, version: int = 1) -> Dict[str, Any]:
    return {
        'source': 'certs',
        'id': external_id,
        'version': version,
        'kind': 'CERTIFICATION_DEADLINE',
        'attributes': {
            'title': f"Cloud Practitioner {external_id}",
            'deadline': deadline.isoformat(),
        },
    }
