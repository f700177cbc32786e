"""
Unit tests for PreferenceMatcher: one subscription against one event.
"""

import unittest
from datetime import timedelta

from core.config_loader import MatchingConfig
from core.exceptions import MatchingError
from core.matcher.dto import CanonicalEvent
from core.matcher.models import EventKind, Priority
from core.matcher.preference_matcher import PreferenceMatcher
from tests import T0, make_preference


def job_event(skills=('python',), location='Bengaluru', kind=EventKind.JOB, deadline=None):
    return CanonicalEvent(
        source='jobboard',
        external_id='J-1',
        version=1,
        kind=kind,
        skills=frozenset(skills),
        location=location,
        deadline=deadline,
    )


class TestPreferenceMatcher(unittest.TestCase):

    def setUp(self):
        self.matcher = PreferenceMatcher(MatchingConfig())

    def test_skills_and_location_match(self):
        pref = make_preference('u1', skills={'python', 'go'}, location='Bengaluru')
        result = self.matcher.match(job_event(), pref, T0)

        self.assertIsNotNone(result)
        self.assertEqual(result.reason_tags, ('skills:python', 'location:bengaluru'))
        self.assertEqual(result.priority, Priority.NORMAL)

    def test_skills_are_case_insensitive(self):
        pref = make_preference('u1', skills={'Python'})
        result = self.matcher.match(job_event(skills=('PYTHON', 'sql')), pref, T0)
        self.assertEqual(result.reason_tags, ('skills:python',))

    def test_no_skill_overlap(self):
        pref = make_preference('u1', skills={'rust'})
        self.assertIsNone(self.matcher.match(job_event(), pref, T0))

    def test_skill_filter_ignored_when_event_has_no_skills(self):
        pref = make_preference('u1', skills={'rust'}, location='bengaluru')
        result = self.matcher.match(job_event(skills=()), pref, T0)
        self.assertEqual(result.reason_tags, ('location:bengaluru',))

    def test_location_mismatch(self):
        pref = make_preference('u1', location='Pune')
        self.assertIsNone(self.matcher.match(job_event(), pref, T0))

    def test_location_any_matches_everything(self):
        pref = make_preference('u1', location='Any')
        result = self.matcher.match(job_event(location='Lisbon'), pref, T0)
        self.assertEqual(result.reason_tags, ('subscription:u1:default',))

    def test_job_type_filter(self):
        pref = make_preference('u1', job_types={'INTERNSHIP'})
        self.assertIsNone(self.matcher.match(job_event(), pref, T0))

        result = self.matcher.match(job_event(kind=EventKind.INTERNSHIP), pref, T0)
        self.assertEqual(result.reason_tags, ('kind:INTERNSHIP',))

    def test_empty_criteria_match_with_subscription_tag(self):
        pref = make_preference('u1', preference_id='all-jobs')
        result = self.matcher.match(job_event(), pref, T0)
        self.assertEqual(result.reason_tags, ('subscription:all-jobs',))


class TestCertificationDeadlines(unittest.TestCase):

    def setUp(self):
        self.matcher = PreferenceMatcher(MatchingConfig(default_lead_time_days=7, imminent_deadline_hours=72))
        self.pref = make_preference('u1')

    def cert(self, deadline):
        return job_event(skills=(), location=None, kind=EventKind.CERTIFICATION_DEADLINE, deadline=deadline)

    def test_deadline_within_default_lead_time(self):
        result = self.matcher.match(self.cert(T0 + timedelta(days=5)), self.pref, T0)
        self.assertIsNotNone(result)
        self.assertEqual(result.priority, Priority.NORMAL)
        self.assertIn('deadline:2026-03-07', result.reason_tags)

    def test_imminent_deadline_is_high_priority(self):
        # Exactly at the threshold counts as imminent
        result = self.matcher.match(self.cert(T0 + timedelta(hours=72)), self.pref, T0)
        self.assertEqual(result.priority, Priority.HIGH)

    def test_deadline_beyond_lead_time(self):
        self.assertIsNone(self.matcher.match(self.cert(T0 + timedelta(days=10)), self.pref, T0))

    def test_subscription_lead_time_overrides_default(self):
        pref = make_preference('u1', lead_time_days=14)
        result = self.matcher.match(self.cert(T0 + timedelta(days=10)), pref, T0)
        self.assertIsNotNone(result)

    def test_past_deadline(self):
        self.assertIsNone(self.matcher.match(self.cert(T0 - timedelta(hours=1)), self.pref, T0))

    def test_missing_deadline_raises_matching_error(self):
        with self.assertRaises(MatchingError) as ctx:
            self.matcher.match(self.cert(None), self.pref, T0)
        self.assertEqual(ctx.exception.event_key, 'jobboard:J-1|v1')


if __name__ == '__main__':
    unittest.main()
