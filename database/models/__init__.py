from .base import Base, UTCDateTime, utc_now
from .event import OpportunityEvent
from .intent import NotificationIntent
from .delivery import DeliveryRecord, DeliveryStatus, TERMINAL_STATUSES
from .rate_limit import RateLimitWindow

__all__ = [
    'Base',
    'UTCDateTime',
    'utc_now',
    'OpportunityEvent',
    'NotificationIntent',
    'DeliveryRecord',
    'DeliveryStatus',
    'TERMINAL_STATUSES',
    'RateLimitWindow',
]
