import unittest
from datetime import timedelta

from core.matcher.dto import CanonicalEvent
from core.matcher.models import Channel, EventKind, NotificationIntentDTO, Priority, RatePolicy
from notification.message_builder import NotificationMessageBuilder, SMS_MAX_LENGTH
from tests import T0


def intent(priority=Priority.NORMAL, tags=('skills:go,python', 'location:bengaluru')):
    return NotificationIntentDTO(
        user_id='u1',
        event_ref='jobboard:J-1',
        event_version=2,
        reason_tags=tags,
        priority=priority,
        channels=(Channel.EMAIL,),
        rate_policy=RatePolicy(5, 86400),
        created_at=T0,
    )


def event(**overrides):
    fields = dict(
        source='jobboard',
        external_id='J-1',
        version=2,
        kind=EventKind.JOB,
        skills=frozenset({'python', 'go'}),
        location='Bengaluru',
        title='Backend Engineer',
        company='Acme',
        url='https://jobs.example.com/J-1',
    )
    fields.update(overrides)
    return CanonicalEvent(**fields)


class TestNotificationMessageBuilder(unittest.TestCase):

    def test_subject(self):
        content = NotificationMessageBuilder.build_content(intent(), event())
        self.assertEqual(NotificationMessageBuilder.build_subject(content), 'New job: Backend Engineer at Acme')

    def test_high_priority_subject(self):
        cert = event(
            kind=EventKind.CERTIFICATION_DEADLINE, title='AWS Solutions Architect', company=None,
            deadline=T0 + timedelta(days=2)
        )
        content = NotificationMessageBuilder.build_content(intent(priority=Priority.HIGH), cert)
        self.assertEqual(
            NotificationMessageBuilder.build_subject(content),
            '[Urgent] Certification deadline: AWS Solutions Architect'
        )

    def test_format_reason(self):
        fmt = NotificationMessageBuilder.format_reason
        self.assertEqual(fmt('skills:go,python'), 'matches your skills: go, python')
        self.assertEqual(fmt('location:bengaluru'), 'in Bengaluru')
        self.assertEqual(fmt('kind:INTERNSHIP'), 'internship opportunities')
        self.assertEqual(fmt('subscription:abc'), 'matches your subscription')

    def test_email_payload(self):
        payload = NotificationMessageBuilder.build_payload(intent(), event(), Channel.EMAIL, 'u1@example.com')

        self.assertEqual(payload['recipient'], 'u1@example.com')
        self.assertIn('Skills: go, python', payload['body'])
        self.assertIn('  - matches your skills: go, python', payload['body'])
        self.assertIn('Details: https://jobs.example.com/J-1', payload['body'])
        metadata = payload['metadata']
        self.assertEqual(metadata['intent_key'], 'u1|jobboard:J-1|v2')
        self.assertEqual(metadata['event_version'], 2)
        self.assertEqual(metadata['content']['opportunity']['kind'], 'JOB')

    def test_sms_body_is_capped(self):
        long_title = 'x' * 400
        payload = NotificationMessageBuilder.build_payload(intent(), event(title=long_title), Channel.SMS, '+1555')
        self.assertEqual(len(payload['body']), SMS_MAX_LENGTH)
        self.assertTrue(payload['body'].endswith('...'))

    def test_missing_recipient_is_kept_as_none(self):
        payload = NotificationMessageBuilder.build_payload(intent(), event(), Channel.PUSH, None)
        self.assertIsNone(payload['recipient'])


if __name__ == '__main__':
    unittest.main()
