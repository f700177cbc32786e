import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, delete, update

from database.models import NotificationIntent
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class IntentRepository(BaseRepository):
    def get(self, intent_key: str) -> Optional[NotificationIntent]:
        return self.db.get(NotificationIntent, intent_key)

    def claim(self, intent: NotificationIntent, now: datetime) -> bool:
        """
        Store the intent unless an unexpired one with the same key exists.

        Expired rows are refreshed with a conditional UPDATE so two workers
        racing on the same expired key cannot both win.
        """
        if self._add_unique(intent):
            return True

        stmt = (
            update(NotificationIntent)
            .where(
                NotificationIntent.intent_key == intent.intent_key,
                NotificationIntent.expires_at <= now,
            )
            .values(
                reason_tags=intent.reason_tags,
                priority=intent.priority,
                channels=intent.channels,
                created_at=intent.created_at,
                expires_at=intent.expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        result = self.db.execute(
            delete(NotificationIntent).where(NotificationIntent.expires_at <= now)
        )
        return result.rowcount or 0

    def count(self) -> int:
        return len(self.db.execute(select(NotificationIntent.intent_key)).all())
