#!/usr/bin/env python3
"""
Matcher Models - Data structures for subscriptions and notification intents.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class EventKind(str, Enum):
    JOB = "JOB"
    INTERNSHIP = "INTERNSHIP"
    CERTIFICATION_DEADLINE = "CERTIFICATION_DEADLINE"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Queue ordering rank; lower is served first."""
        return 0 if self is Priority.HIGH else 1


@dataclass(frozen=True)
class RatePolicy:
    max_per_window: int
    window_seconds: int

    def is_stricter_than(self, other: 'RatePolicy') -> bool:
        if self.max_per_window != other.max_per_window:
            return self.max_per_window < other.max_per_window
        return self.window_seconds > other.window_seconds


@dataclass(frozen=True)
class Criteria:
    """Subscription criteria. Empty filters match everything."""
    skills: FrozenSet[str] = frozenset()
    location: Optional[str] = None
    job_types: FrozenSet[str] = frozenset()
    channels: Tuple[Channel, ...] = (Channel.EMAIL,)
    max_per_window: Optional[int] = None
    window_seconds: Optional[int] = None
    lead_time_days: Optional[int] = None

    @property
    def location_filter(self) -> Optional[str]:
        loc = (self.location or '').strip().lower()
        if not loc or loc == 'any':
            return None
        return loc


@dataclass(frozen=True)
class UserPreference:
    """One saved subscription of a user, as read from the profile service."""
    user_id: str
    preference_id: str
    criteria: Criteria
    contacts: Dict[str, str] = field(default_factory=dict)
    active: bool = True
    updated_at: Optional[datetime] = None

    def contact_for(self, channel: Channel) -> Optional[str]:
        return self.contacts.get(channel.value)


@dataclass(frozen=True)
class SubscriptionMatch:
    """Result of one subscription's predicate against one event."""
    preference: UserPreference
    reason_tags: Tuple[str, ...]
    priority: Priority


def build_intent_key(user_id: str, event_ref: str, event_version: int) -> str:
    return f"{user_id}|{event_ref}|v{event_version}"


@dataclass(frozen=True)
class NotificationIntentDTO:
    """A derived (user, event version) match pending delivery."""
    user_id: str
    event_ref: str
    event_version: int
    reason_tags: Tuple[str, ...]
    priority: Priority
    channels: Tuple[Channel, ...]
    rate_policy: RatePolicy
    created_at: datetime
    contacts: Dict[str, str] = field(default_factory=dict)

    @property
    def intent_key(self) -> str:
        return build_intent_key(self.user_id, self.event_ref, self.event_version)


@dataclass(frozen=True)
class PreferenceSnapshot:
    """Immutable view of active subscriptions used for one matching pass."""
    preferences: Tuple[UserPreference, ...] = ()
    cursor: Optional[str] = None
    refreshed_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self.preferences)
