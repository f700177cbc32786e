#!/usr/bin/env python3
"""
Tests for the channel adapters and the channel registry.

SMTP and the HTTP gateways are mocked; every provider response must map to
exactly one delivery outcome.
"""

import smtplib
import unittest
from unittest.mock import Mock, patch

import requests

from core.config_loader import ChannelsConfig, EmailChannelConfig, HttpChannelConfig
from core.exceptions import PermanentChannelError, TransientChannelError
from core.matcher.models import Channel
from notification.channels import (
    ChannelRegistry,
    DeliveryOutcome,
    EmailChannel,
    PushChannel,
    SmsChannel,
    _mask_address,
    _mask_email,
)


def payload(recipient='user@example.com'):
    return {
        'recipient': recipient,
        'subject': 'New job: Backend Engineer at Acme',
        'body': 'Backend Engineer',
        'metadata': {
            'intent_key': 'u1|jobboard:J-1|v1',
            'event_ref': 'jobboard:J-1',
            'priority': 'normal',
            'content': {
                'opportunity': {
                    'title': 'Backend <Engineer>',
                    'company': 'Acme',
                    'url': 'javascript:alert(1)',
                    'skills': ['python'],
                },
            },
        },
    }


class TestMasking(unittest.TestCase):

    def test_mask_email(self):
        self.assertEqual(_mask_email('someone@example.com'), '***@example.com')
        self.assertEqual(_mask_email('not-an-email'), '***')

    def test_mask_address(self):
        self.assertEqual(_mask_address('+15550001234'), '***1234')
        self.assertEqual(_mask_address('abc'), '***')


class TestEmailChannel(unittest.TestCase):

    def setUp(self):
        self.config = EmailChannelConfig(
            smtp_server='smtp.example.com',
            smtp_port=587,
            username='mailer',
            password='secret',
        )

    def _mock_smtp(self, mock_smtp_class):
        mock_smtp = Mock()
        mock_smtp_class.return_value.__enter__ = Mock(return_value=mock_smtp)
        mock_smtp_class.return_value.__exit__ = Mock(return_value=False)
        return mock_smtp

    def test_validation(self):
        self.assertTrue(EmailChannel(self.config).validate_config())
        self.assertFalse(EmailChannel(EmailChannelConfig()).validate_config())

    @patch('notification.channels.smtplib.SMTP')
    def test_send_success(self, mock_smtp_class):
        mock_smtp = self._mock_smtp(mock_smtp_class)

        outcome = EmailChannel(self.config, timeout=5).attempt_delivery('u1', payload())

        self.assertEqual(outcome, DeliveryOutcome.DELIVERED)
        mock_smtp_class.assert_called_once_with('smtp.example.com', 587, timeout=5)
        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once_with('mailer', 'secret')
        message = mock_smtp.send_message.call_args[0][0]
        self.assertEqual(message['To'], 'user@example.com')
        html_part = message.get_payload()[1].get_payload(decode=True).decode('utf-8')
        self.assertIn('Backend &lt;Engineer&gt;', html_part)
        self.assertNotIn('javascript:', html_part)

    @patch('notification.channels.smtplib.SMTP')
    def test_recipient_refused_is_permanent(self, mock_smtp_class):
        mock_smtp = self._mock_smtp(mock_smtp_class)
        mock_smtp.send_message.side_effect = smtplib.SMTPRecipientsRefused({'user@example.com': (550, b'no')})

        with self.assertRaises(PermanentChannelError):
            EmailChannel(self.config).attempt_delivery('u1', payload())

    @patch('notification.channels.smtplib.SMTP')
    def test_5xx_reply_is_permanent(self, mock_smtp_class):
        mock_smtp = self._mock_smtp(mock_smtp_class)
        mock_smtp.send_message.side_effect = smtplib.SMTPDataError(554, b'rejected')

        with self.assertRaises(PermanentChannelError):
            EmailChannel(self.config).attempt_delivery('u1', payload())

    @patch('notification.channels.smtplib.SMTP')
    def test_4xx_reply_is_transient(self, mock_smtp_class):
        mock_smtp = self._mock_smtp(mock_smtp_class)
        mock_smtp.send_message.side_effect = smtplib.SMTPDataError(451, b'try later')

        with self.assertRaises(TransientChannelError):
            EmailChannel(self.config).attempt_delivery('u1', payload())

    @patch('notification.channels.smtplib.SMTP')
    def test_auth_failure_is_transient(self, mock_smtp_class):
        mock_smtp = self._mock_smtp(mock_smtp_class)
        mock_smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b'bad credentials')

        with self.assertRaises(TransientChannelError):
            EmailChannel(self.config).attempt_delivery('u1', payload())

    @patch('notification.channels.smtplib.SMTP')
    def test_connection_error_is_transient(self, mock_smtp_class):
        mock_smtp_class.side_effect = ConnectionRefusedError()

        with self.assertRaises(TransientChannelError):
            EmailChannel(self.config).attempt_delivery('u1', payload())

    def test_missing_recipient_is_permanent(self):
        with self.assertRaises(PermanentChannelError):
            EmailChannel(self.config).attempt_delivery('u1', payload(recipient=None))

    @patch('notification.channels.smtplib.SMTP')
    def test_dry_run_never_connects(self, mock_smtp_class):
        outcome = EmailChannel(self.config, dry_run=True).attempt_delivery('u1', payload())
        self.assertEqual(outcome, DeliveryOutcome.DELIVERED)
        mock_smtp_class.assert_not_called()


class TestHttpGatewayChannels(unittest.TestCase):

    def setUp(self):
        self.config = HttpChannelConfig(gateway_url='https://gateway.example.com/send', api_key='k', sender_id='ALERTS')
        self.session = Mock()

    def _respond(self, status):
        response = Mock()
        response.status_code = status
        self.session.post.return_value = response

    def test_sms_success(self):
        self._respond(202)
        channel = SmsChannel(self.config, session=self.session, timeout=3)

        self.assertEqual(channel.attempt_delivery('u1', payload('+15550001234')), DeliveryOutcome.DELIVERED)

        _, kwargs = self.session.post.call_args
        self.assertEqual(kwargs['json']['to'], '+15550001234')
        self.assertEqual(kwargs['json']['from'], 'ALERTS')
        self.assertEqual(kwargs['json']['reference'], 'u1|jobboard:J-1|v1')
        self.assertEqual(kwargs['headers'], {'Authorization': 'Bearer k'})
        self.assertEqual(kwargs['timeout'], 3)

    def test_push_request_shape(self):
        self._respond(200)
        PushChannel(self.config, session=self.session).attempt_delivery('u1', payload('device-token'))

        body = self.session.post.call_args[1]['json']
        self.assertEqual(body['token'], 'device-token')
        self.assertEqual(body['data']['event_ref'], 'jobboard:J-1')

    def test_429_is_throttled(self):
        self._respond(429)
        outcome = SmsChannel(self.config, session=self.session).attempt_delivery('u1', payload('+1555'))
        self.assertEqual(outcome, DeliveryOutcome.THROTTLED)

    def test_5xx_is_transient(self):
        self._respond(503)
        with self.assertRaises(TransientChannelError):
            SmsChannel(self.config, session=self.session).attempt_delivery('u1', payload('+1555'))

    def test_4xx_is_permanent(self):
        self._respond(400)
        with self.assertRaises(PermanentChannelError):
            PushChannel(self.config, session=self.session).attempt_delivery('u1', payload('token'))

    def test_timeout_is_transient(self):
        self.session.post.side_effect = requests.Timeout()
        with self.assertRaises(TransientChannelError):
            SmsChannel(self.config, session=self.session).attempt_delivery('u1', payload('+1555'))

    def test_unconfigured_gateway_is_transient(self):
        channel = SmsChannel(HttpChannelConfig(), session=self.session)
        with self.assertRaises(TransientChannelError):
            channel.attempt_delivery('u1', payload('+1555'))
        self.session.post.assert_not_called()


class TestChannelRegistry(unittest.TestCase):

    def test_from_config_registers_enabled_channels(self):
        config = ChannelsConfig(dry_run=True, push=HttpChannelConfig(enabled=False))
        registry = ChannelRegistry.from_config(config)

        self.assertEqual(registry.channels(), [Channel.EMAIL, Channel.SMS])
        self.assertTrue(registry.get(Channel.EMAIL).dry_run)

    def test_missing_adapter_is_permanent(self):
        registry = ChannelRegistry()
        with self.assertRaises(PermanentChannelError):
            registry.get(Channel.PUSH)

    def test_register_rejects_non_adapters(self):
        with self.assertRaises(ValueError):
            ChannelRegistry().register(object())


if __name__ == '__main__':
    unittest.main()
