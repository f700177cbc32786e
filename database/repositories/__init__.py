from database.repositories.base import BaseRepository
from database.repositories.event import EventRepository
from database.repositories.intent import IntentRepository
from database.repositories.delivery import DeliveryRepository
from database.repositories.rate_limit import RateLimitRepository

__all__ = [
    'BaseRepository',
    'EventRepository',
    'IntentRepository',
    'DeliveryRepository',
    'RateLimitRepository',
]
