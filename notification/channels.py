#!/usr/bin/env python3
"""
Notification Channels - adapters to the external channel providers.

Every adapter turns one rendered payload into exactly one of four outcomes:
DELIVERED, TRANSIENT_FAILURE, PERMANENT_FAILURE or THROTTLED. Adapters may
also raise TransientChannelError / PermanentChannelError to carry an error
message; the dispatcher maps those to outcomes.

Usage:
    from notification.channels import ChannelRegistry

    registry = ChannelRegistry.from_config(config.channels)
    adapter = registry.get(Channel.EMAIL)
    outcome = adapter.attempt_delivery(user_id, payload)
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Any, Optional, List
import html
import logging
import smtplib
import urllib.parse
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

import requests

from core.config_loader import ChannelsConfig, EmailChannelConfig, HttpChannelConfig
from core.exceptions import PermanentChannelError, TransientChannelError
from core.matcher.models import Channel

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    DELIVERED = "DELIVERED"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"
    THROTTLED = "THROTTLED"


def _sanitize_url(url: str) -> Optional[str]:
    """Sanitize and validate URL, returning None if invalid."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ('http', 'https'):
        return None
    return html.escape(url, quote=True)


def _mask_email(email: str) -> str:
    """
    Mask email address for safe logging (PII protection).

    Shows only domain, e.g., "***@example.com"
    """
    if '@' not in email:
        return "***"
    local, domain = email.rsplit('@', 1)
    return f"***@{domain}"


def _mask_address(address: str) -> str:
    """Mask phone numbers and push tokens, keeping the last 4 characters."""
    if len(address) <= 4:
        return "***"
    return f"***{address[-4:]}"


def _recipient(payload: Dict[str, Any], channel: Channel) -> str:
    recipient = (payload.get('recipient') or '').strip()
    if not recipient:
        raise PermanentChannelError(f"No {channel.value} address on file for recipient")
    return recipient


class NotificationChannel(ABC):
    """
    Abstract base class for all channel adapters.

    All adapters must implement this interface so the dispatcher can treat
    them interchangeably.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    @property
    @abstractmethod
    def channel_type(self) -> Channel:
        """Return the channel this adapter delivers on."""
        pass

    @abstractmethod
    def attempt_delivery(self, user_id: str, payload: Dict[str, Any]) -> DeliveryOutcome:
        """
        Deliver one rendered message.

        Args:
            user_id: Owner of the delivery (for logging and provider tagging)
            payload: {'recipient', 'subject', 'body', 'metadata'}

        Returns:
            DeliveryOutcome
        """
        pass

    def validate_config(self) -> bool:
        """
        Validate that the channel is properly configured.

        Returns:
            True if configured correctly, False otherwise
        """
        return True

    def close(self) -> None:
        pass


class EmailChannel(NotificationChannel):
    """Email notification channel via SMTP with STARTTLS."""

    def __init__(self, config: EmailChannelConfig, dry_run: bool = False, timeout: float = 30.0):
        super().__init__(dry_run)
        self.config = config
        self.timeout = timeout

    @property
    def channel_type(self) -> Channel:
        return Channel.EMAIL

    def validate_config(self) -> bool:
        return bool(self.config.smtp_server)

    def attempt_delivery(self, user_id: str, payload: Dict[str, Any]) -> DeliveryOutcome:
        recipient = _recipient(payload, self.channel_type)
        subject = payload.get('subject', '')

        if self.dry_run:
            logger.info(f"[DRY RUN] Email to {_mask_email(recipient)} for {user_id}: {subject}")
            return DeliveryOutcome.DELIVERED

        if not self.validate_config():
            raise TransientChannelError("Email not configured - smtp_server not set")

        msg = MIMEMultipart('alternative')
        msg['From'] = self.config.from_email
        msg['To'] = recipient
        msg['Subject'] = subject
        msg.attach(MIMEText(payload.get('body', ''), 'plain', 'utf-8'))
        content = payload.get('metadata', {}).get('content')
        if content:
            msg.attach(MIMEText(self._build_html_body(subject, content), 'html', 'utf-8'))

        try:
            with smtplib.SMTP(self.config.smtp_server, self.config.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                if self.config.username:
                    server.login(self.config.username, self.config.password or '')
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise PermanentChannelError(f"Recipient refused: {_mask_email(recipient)}") from e
        except smtplib.SMTPResponseException as e:
            # 4xx replies are temporary, 5xx are final
            if 500 <= e.smtp_code < 600 and not isinstance(e, smtplib.SMTPAuthenticationError):
                raise PermanentChannelError(f"SMTP rejected message: {e.smtp_code}") from e
            raise TransientChannelError(f"SMTP temporary failure: {e.smtp_code}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientChannelError(f"SMTP connection failed: {e}") from e

        logger.info(f"Email sent to {_mask_email(recipient)}")
        return DeliveryOutcome.DELIVERED

    def _build_html_body(self, subject: str, content: Dict[str, Any]) -> str:
        """Build HTML email body for an opportunity notification."""
        opp = content.get('opportunity', {})
        safe_subject = html.escape(subject)
        title = html.escape(opp.get('title') or 'New opportunity')
        html_body = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .header {{ background: #4f5bd5; color: white; padding: 20px; border-radius: 8px 8px 0 0; }}
        .content {{ padding: 20px; background: #f9f9f9; }}
        .detail {{ margin: 5px 0; font-size: 14px; }}
        .footer {{ text-align: center; padding: 15px; color: #666; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="header">
        <h1>{safe_subject}</h1>
    </div>
    <div class="content">
        <h2>{title}</h2>
"""
        if opp.get('company'):
            html_body += f'        <div class="detail"><strong>Company:</strong> {html.escape(opp["company"])}</div>\n'
        if opp.get('location'):
            html_body += f'        <div class="detail"><strong>Location:</strong> {html.escape(opp["location"])}</div>\n'
        if opp.get('deadline'):
            html_body += f'        <div class="detail"><strong>Deadline:</strong> {html.escape(opp["deadline"][:10])}</div>\n'
        if opp.get('skills'):
            skills = html.escape(', '.join(opp['skills']))
            html_body += f'        <div class="detail"><strong>Skills:</strong> {skills}</div>\n'
        url = opp.get('url')
        if url:
            safe_url = _sanitize_url(url)
            if safe_url:
                html_body += f'        <div class="detail"><a href="{safe_url}">View opportunity</a></div>\n'

        html_body += """    </div>
    <div class="footer">
        <p>You are receiving this because it matches one of your saved alerts.</p>
    </div>
</body>
</html>"""
        return html_body


class HttpGatewayChannel(NotificationChannel):
    """
    Base for channels delivered through an HTTP provider gateway.

    Status classification: 2xx delivered, 429 throttled, 5xx/timeout/connection
    errors transient, any other 4xx permanent.
    """

    def __init__(
        self,
        config: HttpChannelConfig,
        dry_run: bool = False,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        super().__init__(dry_run)
        self.config = config
        self.timeout = timeout
        self.session = session or requests.Session()

    def validate_config(self) -> bool:
        return bool(self.config.gateway_url)

    @abstractmethod
    def build_request(self, recipient: str, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    def attempt_delivery(self, user_id: str, payload: Dict[str, Any]) -> DeliveryOutcome:
        recipient = _recipient(payload, self.channel_type)

        if self.dry_run:
            logger.info(
                f"[DRY RUN] {self.channel_type.value} to {_mask_address(recipient)} "
                f"for {user_id}: {payload.get('subject', '')}"
            )
            return DeliveryOutcome.DELIVERED

        if not self.validate_config():
            raise TransientChannelError(f"{self.channel_type.value} gateway_url not configured")

        headers = {}
        if self.config.api_key:
            headers['Authorization'] = f"Bearer {self.config.api_key}"

        try:
            response = self.session.post(
                self.config.gateway_url,
                json=self.build_request(recipient, user_id, payload),
                headers=headers,
                timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TransientChannelError(f"{self.channel_type.value} gateway timed out") from e
        except requests.RequestException as e:
            raise TransientChannelError(f"{self.channel_type.value} gateway unreachable: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            logger.info(f"{self.channel_type.value} sent to {_mask_address(recipient)}")
            return DeliveryOutcome.DELIVERED
        if status == 429:
            logger.warning(f"{self.channel_type.value} gateway throttled delivery for {user_id}")
            return DeliveryOutcome.THROTTLED
        if status >= 500:
            raise TransientChannelError(f"{self.channel_type.value} gateway returned {status}")
        raise PermanentChannelError(f"{self.channel_type.value} gateway rejected message: {status}")

    def close(self) -> None:
        self.session.close()


class SmsChannel(HttpGatewayChannel):
    """SMS via an HTTP SMS gateway."""

    @property
    def channel_type(self) -> Channel:
        return Channel.SMS

    def build_request(self, recipient: str, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'to': recipient,
            'from': self.config.sender_id,
            'message': payload.get('body', ''),
            'reference': payload.get('metadata', {}).get('intent_key'),
        }


class PushChannel(HttpGatewayChannel):
    """Mobile push via an HTTP push gateway."""

    @property
    def channel_type(self) -> Channel:
        return Channel.PUSH

    def build_request(self, recipient: str, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        metadata = payload.get('metadata', {})
        return {
            'token': recipient,
            'title': payload.get('subject', ''),
            'body': payload.get('body', ''),
            'data': {
                'intent_key': metadata.get('intent_key'),
                'event_ref': metadata.get('event_ref'),
                'priority': metadata.get('priority'),
            },
        }


class ChannelRegistry:
    """
    Maps each channel to its adapter.

    Allows extending the system with custom adapters (or test doubles)
    without modifying the dispatcher.
    """

    def __init__(self):
        self._adapters: Dict[Channel, NotificationChannel] = {}

    @classmethod
    def from_config(cls, config: ChannelsConfig, timeout: float = 30.0) -> 'ChannelRegistry':
        """Build the built-in adapters for every enabled channel."""
        registry = cls()
        if config.email.enabled:
            registry.register(EmailChannel(config.email, dry_run=config.dry_run, timeout=timeout))
        if config.sms.enabled:
            registry.register(SmsChannel(config.sms, dry_run=config.dry_run, timeout=timeout))
        if config.push.enabled:
            registry.register(PushChannel(config.push, dry_run=config.dry_run, timeout=timeout))

        for adapter in registry._adapters.values():
            if not adapter.dry_run and not adapter.validate_config():
                logger.warning(f"Channel {adapter.channel_type.value} is enabled but not configured")
        return registry

    def register(self, adapter: NotificationChannel, channel: Optional[Channel] = None) -> None:
        if not isinstance(adapter, NotificationChannel):
            raise ValueError("Adapter must extend NotificationChannel")
        channel = channel or adapter.channel_type
        self._adapters[channel] = adapter
        logger.info(f"Registered channel adapter: {channel.value} -> {type(adapter).__name__}")

    def get(self, channel: Channel) -> NotificationChannel:
        """
        Raises:
            PermanentChannelError: If no adapter is registered for the channel
        """
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise PermanentChannelError(
                f"No adapter for channel {channel.value}. "
                f"Available: {', '.join(c.value for c in self._adapters)}"
            )
        return adapter

    def channels(self) -> List[Channel]:
        return list(self._adapters.keys())

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()
