#!/usr/bin/env python3
"""
Matcher Service - Turn events into notification intents.

Every active subscription is evaluated against each event; the matches of
one user collapse into a single intent so a user never hears about the same
event version twice, no matter how many subscriptions fired.

Events are matched in parallel on a thread pool. A MatchingError skips the
event it belongs to and the rest of the batch continues.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence
import logging

from core.config_loader import MatchingConfig, RateLimitConfig
from core.exceptions import MatchingError
from core.matcher.dto import CanonicalEvent
from core.matcher.models import (
    Channel, NotificationIntentDTO, PreferenceSnapshot, Priority, RatePolicy,
    SubscriptionMatch
)
from core.matcher.preference_matcher import PreferenceMatcher

logger = logging.getLogger(__name__)


@dataclass
class MatchBatchResult:
    intents: List[NotificationIntentDTO] = field(default_factory=list)
    failed_events: List[str] = field(default_factory=list)


class MatcherService:
    """
    Rule-based matching of opportunity events against subscriptions.

    Stateless apart from configuration, so one instance is shared by all
    matcher worker threads.
    """

    def __init__(
        self,
        matching_config: MatchingConfig,
        rate_limit_config: RateLimitConfig,
        metrics=None,
        max_workers: int = 4
    ):
        self.matcher = PreferenceMatcher(matching_config)
        self.default_policy = RatePolicy(
            max_per_window=rate_limit_config.default_max_per_window,
            window_seconds=rate_limit_config.default_window_seconds,
        )
        self.metrics = metrics
        self.max_workers = max(1, max_workers)

    def match_event(
        self,
        event: CanonicalEvent,
        snapshot: PreferenceSnapshot,
        now: datetime
    ) -> List[NotificationIntentDTO]:
        """
        Match one event against every subscription in the snapshot.

        Returns one intent per matching user, in snapshot order.
        Raises MatchingError if the event or a preference is malformed.
        """
        by_user: Dict[str, List[SubscriptionMatch]] = {}
        for preference in snapshot.preferences:
            if not preference.active:
                continue
            result = self.matcher.match(event, preference, now)
            if result is not None:
                by_user.setdefault(preference.user_id, []).append(result)

        intents = [
            self._collapse(user_id, matches, event, now)
            for user_id, matches in by_user.items()
        ]
        logger.debug(f"Event {event.event_key} matched {len(intents)} users")
        return intents

    def match_events(
        self,
        events: Sequence[CanonicalEvent],
        snapshot: PreferenceSnapshot,
        now: datetime
    ) -> MatchBatchResult:
        """Match a batch of events in parallel, isolating per-event failures."""
        result = MatchBatchResult()
        if not events:
            return result

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="matcher") as executor:
            futures = [
                (event, executor.submit(self.match_event, event, snapshot, now))
                for event in events
            ]
            for event, future in futures:
                try:
                    intents = future.result()
                except MatchingError as e:
                    logger.warning(f"Skipping event: {e}")
                    result.failed_events.append(event.event_key)
                    self._count('matching_errors')
                    continue
                result.intents.extend(intents)
                self._count('matched', len(intents))

        logger.info(
            f"Matched {len(events)} events into {len(result.intents)} intents "
            f"({len(result.failed_events)} failed)"
        )
        return result

    def _collapse(
        self,
        user_id: str,
        matches: List[SubscriptionMatch],
        event: CanonicalEvent,
        now: datetime
    ) -> NotificationIntentDTO:
        """Merge all matching subscriptions of a user into one intent."""
        reason_tags: List[str] = []
        channels: List[Channel] = []
        contacts: Dict[str, str] = {}
        priority = Priority.NORMAL
        policy: Optional[RatePolicy] = None

        for match in matches:
            criteria = match.preference.criteria
            for tag in match.reason_tags:
                if tag not in reason_tags:
                    reason_tags.append(tag)
            for channel in criteria.channels:
                if channel not in channels:
                    channels.append(channel)
            for channel, address in match.preference.contacts.items():
                contacts.setdefault(channel, address)
            if match.priority == Priority.HIGH:
                priority = Priority.HIGH

            candidate = self._policy_for(criteria)
            if policy is None or candidate.is_stricter_than(policy):
                policy = candidate

        return NotificationIntentDTO(
            user_id=user_id,
            event_ref=event.event_ref,
            event_version=event.version,
            reason_tags=tuple(reason_tags),
            priority=priority,
            channels=tuple(channels),
            rate_policy=policy,
            created_at=now,
            contacts=contacts,
        )

    def _policy_for(self, criteria) -> RatePolicy:
        return RatePolicy(
            max_per_window=(
                criteria.max_per_window
                if criteria.max_per_window is not None
                else self.default_policy.max_per_window
            ),
            window_seconds=(
                criteria.window_seconds
                if criteria.window_seconds is not None
                else self.default_policy.window_seconds
            ),
        )

    def _count(self, stage: str, amount: int = 1) -> None:
        if self.metrics is not None and amount:
            self.metrics.inc(stage, amount)
