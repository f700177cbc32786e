import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, delete, func, update, tuple_

from database.models import OpportunityEvent
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class EventRepository(BaseRepository):
    def insert_if_new(self, event: OpportunityEvent) -> bool:
        """Append an event; False if (source, external_id, version) is already stored."""
        inserted = self._add_unique(event)
        if not inserted:
            logger.debug(f"Event {event.source}:{event.external_id} v{event.version} already ingested")
        return inserted

    def get(self, source: str, external_id: str, version: int) -> Optional[OpportunityEvent]:
        stmt = select(OpportunityEvent).where(
            OpportunityEvent.source == source,
            OpportunityEvent.external_id == external_id,
            OpportunityEvent.version == version,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_ref(self, event_ref: str, version: int) -> Optional[OpportunityEvent]:
        source, _, external_id = event_ref.partition(':')
        return self.get(source, external_id, version)

    def list_unmatched(self, ingested_before: datetime, limit: int = 100) -> List[OpportunityEvent]:
        """Stored events whose matching never completed, oldest first."""
        stmt = (
            select(OpportunityEvent)
            .where(
                OpportunityEvent.matched_at.is_(None),
                OpportunityEvent.ingested_at <= ingested_before,
            )
            .order_by(OpportunityEvent.ingested_at, OpportunityEvent.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_unmatched(self) -> int:
        stmt = select(func.count()).select_from(OpportunityEvent).where(OpportunityEvent.matched_at.is_(None))
        return self.db.execute(stmt).scalar_one()

    def mark_matched(self, identities: Iterable[tuple], now: datetime) -> int:
        """Set matched_at for (source, external_id, version) triples. Returns rows updated."""
        identities = list(identities)
        if not identities:
            return 0
        stmt = (
            update(OpportunityEvent)
            .where(
                tuple_(OpportunityEvent.source, OpportunityEvent.external_id, OpportunityEvent.version).in_(identities),
                OpportunityEvent.matched_at.is_(None),
            )
            .values(matched_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount or 0

    def purge_ingested_before(self, cutoff: datetime) -> int:
        result = self.db.execute(
            delete(OpportunityEvent).where(OpportunityEvent.ingested_at < cutoff)
        )
        return result.rowcount or 0
