#!/usr/bin/env python3
"""
Preference Matcher - Evaluate one subscription against one event.

All filters of a subscription must hold for it to match:
skills overlap, location, job type (event kind) and, for certification
deadlines, the lead-time window.
"""
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from core.config_loader import MatchingConfig
from core.exceptions import MatchingError
from core.matcher.dto import CanonicalEvent
from core.matcher.models import EventKind, Priority, SubscriptionMatch, UserPreference

logger = logging.getLogger(__name__)


class PreferenceMatcher:
    """Pure predicate; never mutates the event or the preference."""

    def __init__(self, config: MatchingConfig):
        self.default_lead_time = timedelta(days=config.default_lead_time_days)
        self.imminent_threshold = timedelta(hours=config.imminent_deadline_hours)

    def match(
        self,
        event: CanonicalEvent,
        preference: UserPreference,
        now: datetime
    ) -> Optional[SubscriptionMatch]:
        """
        Returns a SubscriptionMatch if every filter of the subscription holds,
        None otherwise. Raises MatchingError on malformed data.
        """
        try:
            return self._match(event, preference, now)
        except (TypeError, AttributeError, ValueError) as e:
            raise MatchingError(
                event.event_key,
                f"preference {preference.preference_id} of {preference.user_id}: {e}"
            ) from e

    def _match(
        self,
        event: CanonicalEvent,
        preference: UserPreference,
        now: datetime
    ) -> Optional[SubscriptionMatch]:
        criteria = preference.criteria
        tags: List[str] = []
        priority = Priority.NORMAL

        # Skills
        wanted = {s.strip().lower() for s in criteria.skills}
        if wanted and event.skills:
            overlap = wanted & {s.lower() for s in event.skills}
            if not overlap:
                return None
            tags.append(f"skills:{','.join(sorted(overlap))}")

        # Location
        location_filter = criteria.location_filter
        if location_filter is not None:
            event_location = (event.location or '').strip().lower()
            if event_location != location_filter:
                return None
            tags.append(f"location:{event_location}")

        # Job type
        if criteria.job_types:
            kinds = {k.strip().upper() for k in criteria.job_types}
            if event.kind.value not in kinds:
                return None
            tags.append(f"kind:{event.kind.value}")

        # Certification deadline
        if event.kind == EventKind.CERTIFICATION_DEADLINE:
            if event.deadline is None:
                raise ValueError("certification deadline event has no deadline")
            lead_time = (
                timedelta(days=criteria.lead_time_days)
                if criteria.lead_time_days is not None
                else self.default_lead_time
            )
            if not (now <= event.deadline <= now + lead_time):
                return None
            if event.deadline - now <= self.imminent_threshold:
                priority = Priority.HIGH
            tags.append(f"deadline:{event.deadline.date().isoformat()}")

        if not tags:
            tags.append(f"subscription:{preference.preference_id}")

        return SubscriptionMatch(
            preference=preference,
            reason_tags=tuple(tags),
            priority=priority,
        )
