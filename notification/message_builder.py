from typing import List, Optional, Dict, Any

from pydantic import BaseModel

from core.matcher.dto import CanonicalEvent
from core.matcher.models import Channel, EventKind, NotificationIntentDTO, Priority

SMS_MAX_LENGTH = 320
PUSH_TITLE_MAX_LENGTH = 65

KIND_LABELS = {
    EventKind.JOB: "New job",
    EventKind.INTERNSHIP: "New internship",
    EventKind.CERTIFICATION_DEADLINE: "Certification deadline",
}


class OpportunityInfo(BaseModel):
    kind: EventKind
    title: str
    company: Optional[str] = None
    location: Optional[str] = None
    deadline: Optional[str] = None
    url: Optional[str] = None
    skills: List[str] = []


class OpportunityNotificationContent(BaseModel):
    opportunity: OpportunityInfo
    reasons: List[str] = []
    priority: Priority = Priority.NORMAL


class NotificationMessageBuilder:
    @staticmethod
    def format_title(event: CanonicalEvent) -> str:
        if event.title:
            return event.title
        if event.kind == EventKind.CERTIFICATION_DEADLINE:
            return "Certification deadline"
        return "New opportunity"

    @staticmethod
    def format_location(event: CanonicalEvent) -> str:
        return event.location or "Location not specified"

    @staticmethod
    def format_reason(tag: str) -> str:
        """Turn a reason tag such as 'skills:go,python' into readable text."""
        name, _, value = tag.partition(':')
        if name == 'skills':
            return f"matches your skills: {value.replace(',', ', ')}"
        if name == 'location':
            return f"in {value.title()}"
        if name == 'kind':
            return f"{value.replace('_', ' ').lower()} opportunities"
        if name == 'deadline':
            return f"deadline on {value}"
        return "matches your subscription"

    @staticmethod
    def build_content(intent: NotificationIntentDTO, event: CanonicalEvent) -> OpportunityNotificationContent:
        return OpportunityNotificationContent(
            opportunity=OpportunityInfo(
                kind=event.kind,
                title=NotificationMessageBuilder.format_title(event),
                company=event.company,
                location=event.location,
                deadline=event.deadline.isoformat() if event.deadline else None,
                url=event.url,
                skills=sorted(event.skills),
            ),
            reasons=list(intent.reason_tags),
            priority=intent.priority,
        )

    @staticmethod
    def build_subject(content: OpportunityNotificationContent) -> str:
        opp = content.opportunity
        prefix = "[Urgent] " if content.priority == Priority.HIGH else ""
        label = KIND_LABELS[opp.kind]
        if opp.company:
            return f"{prefix}{label}: {opp.title} at {opp.company}"
        return f"{prefix}{label}: {opp.title}"

    @staticmethod
    def build_text_body(content: OpportunityNotificationContent) -> str:
        opp = content.opportunity
        lines = [NotificationMessageBuilder.build_subject(content), ""]
        if opp.company:
            lines.append(f"Company: {opp.company}")
        if opp.location:
            lines.append(f"Location: {opp.location}")
        if opp.deadline:
            lines.append(f"Deadline: {opp.deadline}")
        if opp.skills:
            lines.append(f"Skills: {', '.join(opp.skills)}")
        if content.reasons:
            lines.append("")
            lines.append("Why you're seeing this:")
            for tag in content.reasons:
                lines.append(f"  - {NotificationMessageBuilder.format_reason(tag)}")
        if opp.url:
            lines.append("")
            lines.append(f"Details: {opp.url}")
        return "\n".join(lines)

    @staticmethod
    def build_sms_body(content: OpportunityNotificationContent) -> str:
        opp = content.opportunity
        text = NotificationMessageBuilder.build_subject(content)
        if opp.deadline:
            text += f" (due {opp.deadline[:10]})"
        if opp.url:
            text += f" {opp.url}"
        if len(text) > SMS_MAX_LENGTH:
            text = text[:SMS_MAX_LENGTH - 3] + "..."
        return text

    @staticmethod
    def build_payload(
        intent: NotificationIntentDTO,
        event: CanonicalEvent,
        channel: Channel,
        recipient: Optional[str]
    ) -> Dict[str, Any]:
        """
        Render the message for one channel.

        The payload is stored on the delivery record, so retries resend the
        exact same message.
        """
        content = NotificationMessageBuilder.build_content(intent, event)
        subject = NotificationMessageBuilder.build_subject(content)

        if channel == Channel.SMS:
            body = NotificationMessageBuilder.build_sms_body(content)
        elif channel == Channel.PUSH:
            subject = subject[:PUSH_TITLE_MAX_LENGTH]
            body = NotificationMessageBuilder.build_sms_body(content)
        else:
            body = NotificationMessageBuilder.build_text_body(content)

        return {
            'recipient': recipient,
            'subject': subject,
            'body': body,
            'metadata': {
                'intent_key': intent.intent_key,
                'event_ref': intent.event_ref,
                'event_version': intent.event_version,
                'priority': intent.priority.value,
                'reason_tags': list(intent.reason_tags),
                'content': content.model_dump(mode='json'),
            },
        }
