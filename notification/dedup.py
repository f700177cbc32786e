"""
Intent deduplication.

The notification_intent table is the durable idempotency cache: its primary
key is the intent key, so a second claim of the same (user, event version)
within the TTL loses the unique insert. Redis can sit in front of it to
answer most duplicate checks without touching the database.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from redis import Redis
from redis.exceptions import RedisError

from core.matcher.models import NotificationIntentDTO
from database.models import NotificationIntent
from database.repository import PipelineRepository

logger = logging.getLogger(__name__)


class IdempotencyCache(ABC):
    def __init__(self, ttl_hours: int = 72):
        self.ttl = timedelta(hours=ttl_hours)

    @abstractmethod
    def claim(self, repo: PipelineRepository, intent: NotificationIntentDTO, now: datetime) -> bool:
        """
        Record the intent as being processed.

        Returns False if the same intent key was already claimed within the TTL.
        Must be called inside the unit of work that creates the delivery records.
        """
        pass

    def release(self, intent: NotificationIntentDTO) -> None:
        """Undo a claim whose unit of work was rolled back."""
        pass


class DatabaseIdempotencyCache(IdempotencyCache):
    def claim(self, repo: PipelineRepository, intent: NotificationIntentDTO, now: datetime) -> bool:
        row = NotificationIntent(
            intent_key=intent.intent_key,
            user_id=intent.user_id,
            event_ref=intent.event_ref,
            event_version=intent.event_version,
            reason_tags=list(intent.reason_tags),
            priority=intent.priority.value,
            channels=[c.value for c in intent.channels],
            created_at=now,
            expires_at=now + self.ttl,
        )
        claimed = repo.intents.claim(row, now)
        if not claimed:
            logger.debug(f"Duplicate intent {intent.intent_key}")
        return claimed


class RedisIdempotencyCache(IdempotencyCache):
    """
    SET NX EX in front of the database cache.

    Redis outages degrade to the database cache; the database claim is
    always made so the durable record exists.
    """

    KEY_PREFIX = "opportunity:intent:"

    def __init__(self, redis: Redis, ttl_hours: int = 72, fallback: DatabaseIdempotencyCache = None):
        super().__init__(ttl_hours)
        self.redis = redis
        self.fallback = fallback or DatabaseIdempotencyCache(ttl_hours)

    @classmethod
    def from_url(cls, url: str, ttl_hours: int = 72) -> 'RedisIdempotencyCache':
        return cls(Redis.from_url(url), ttl_hours)

    def _key(self, intent: NotificationIntentDTO) -> str:
        return f"{self.KEY_PREFIX}{intent.intent_key}"

    def claim(self, repo: PipelineRepository, intent: NotificationIntentDTO, now: datetime) -> bool:
        try:
            acquired = self.redis.set(
                self._key(intent), now.isoformat(), nx=True, ex=int(self.ttl.total_seconds())
            )
        except RedisError as e:
            logger.warning(f"Redis unavailable for dedup, using database only: {e}")
            return self.fallback.claim(repo, intent, now)

        if not acquired:
            logger.debug(f"Duplicate intent {intent.intent_key} (redis)")
            return False
        return self.fallback.claim(repo, intent, now)

    def release(self, intent: NotificationIntentDTO) -> None:
        try:
            self.redis.delete(self._key(intent))
        except RedisError as e:
            logger.warning(f"Could not release dedup key {intent.intent_key}: {e}")

    def close(self) -> None:
        self.redis.close()
