import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, update

from database.models import RateLimitWindow
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class RateLimitRepository(BaseRepository):
    """
    Compare-and-set counters for fixed rate-limit windows.

    Increments are single conditional UPDATE statements, so concurrent
    workers never lose an update or push a counter past its cap.
    """

    def get_window(
        self, user_id: str, channel: str, window_seconds: int, window_start: datetime
    ) -> Optional[RateLimitWindow]:
        return self.db.get(
            RateLimitWindow, (user_id, channel, window_seconds, window_start), populate_existing=True
        )

    def ensure_window(self, user_id: str, channel: str, window_start: datetime, window_end: datetime) -> None:
        window_seconds = int((window_end - window_start).total_seconds())
        if self.get_window(user_id, channel, window_seconds, window_start) is not None:
            return
        self._add_unique(RateLimitWindow(
            user_id=user_id,
            channel=channel,
            window_seconds=window_seconds,
            window_start=window_start,
            window_end=window_end,
            count=0,
            override_count=0,
            version=0,
        ))

    def try_increment(
        self, user_id: str, channel: str, window_seconds: int, window_start: datetime, cap: int
    ) -> bool:
        return self._conditional_increment(
            user_id, channel, window_seconds, window_start, RateLimitWindow.count, cap
        )

    def try_increment_override(
        self, user_id: str, channel: str, window_seconds: int, window_start: datetime, cap: int
    ) -> bool:
        return self._conditional_increment(
            user_id, channel, window_seconds, window_start, RateLimitWindow.override_count, cap
        )

    def _conditional_increment(self, user_id, channel, window_seconds, window_start, column, cap: int) -> bool:
        stmt = (
            update(RateLimitWindow)
            .where(
                RateLimitWindow.user_id == user_id,
                RateLimitWindow.channel == channel,
                RateLimitWindow.window_seconds == window_seconds,
                RateLimitWindow.window_start == window_start,
                column < cap,
            )
            .values({column.key: column + 1, 'version': RateLimitWindow.version + 1})
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def purge_ended_before(self, cutoff: datetime) -> int:
        result = self.db.execute(
            delete(RateLimitWindow).where(RateLimitWindow.window_end < cutoff)
        )
        return result.rowcount or 0
