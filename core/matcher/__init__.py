"""Matcher Module - rule-based matching of opportunity events to subscriptions."""
from core.matcher.models import (
    EventKind, Channel, Priority, RatePolicy, Criteria, UserPreference,
    SubscriptionMatch, NotificationIntentDTO, PreferenceSnapshot, build_intent_key
)
from core.matcher.dto import CanonicalEvent, DeliveryRecordDTO
from core.matcher.preference_matcher import PreferenceMatcher
from core.matcher.service import MatcherService, MatchBatchResult

__all__ = [
    'MatcherService', 'MatchBatchResult', 'PreferenceMatcher',
    'EventKind', 'Channel', 'Priority', 'RatePolicy', 'Criteria', 'UserPreference',
    'SubscriptionMatch', 'NotificationIntentDTO', 'PreferenceSnapshot', 'build_intent_key',
    'CanonicalEvent', 'DeliveryRecordDTO',
]
