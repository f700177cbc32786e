import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, delete, func, or_, and_

from database.models import DeliveryRecord, DeliveryStatus, TERMINAL_STATUSES
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class DeliveryRepository(BaseRepository):
    def create(self, record: DeliveryRecord) -> DeliveryRecord:
        """Insert a record, or return the existing one for the same (intent, channel)."""
        if self._add_unique(record):
            return record
        existing = self.get_for_intent(record.intent_key, record.channel)
        logger.debug(f"Delivery record for {record.intent_key} on {record.channel} already exists")
        return existing

    def get(self, record_id: str) -> Optional[DeliveryRecord]:
        return self.db.get(DeliveryRecord, record_id, populate_existing=True)

    def get_for_intent(self, intent_key: str, channel: str) -> Optional[DeliveryRecord]:
        stmt = select(DeliveryRecord).where(
            DeliveryRecord.intent_key == intent_key,
            DeliveryRecord.channel == channel,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_intent(self, intent_key: str) -> List[DeliveryRecord]:
        stmt = select(DeliveryRecord).where(
            DeliveryRecord.intent_key == intent_key
        ).order_by(DeliveryRecord.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def list_due(
        self,
        statuses: Iterable[DeliveryStatus],
        now: datetime,
        limit: int = 100,
    ) -> List[DeliveryRecord]:
        """Records in one of statuses whose next_retry_at has elapsed, oldest first."""
        stmt = (
            select(DeliveryRecord)
            .where(
                DeliveryRecord.status.in_([s.value for s in statuses]),
                DeliveryRecord.next_retry_at.is_not(None),
                DeliveryRecord.next_retry_at <= now,
            )
            .order_by(DeliveryRecord.created_at, DeliveryRecord.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_records(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DeliveryRecord]:
        stmt = select(DeliveryRecord)
        if status:
            stmt = stmt.where(DeliveryRecord.status == status)
        if user_id:
            stmt = stmt.where(DeliveryRecord.user_id == user_id)
        stmt = stmt.order_by(DeliveryRecord.created_at.desc(), DeliveryRecord.id).limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def count_by_status(self) -> Dict[str, int]:
        stmt = select(DeliveryRecord.status, func.count()).group_by(DeliveryRecord.status)
        return {status: count for status, count in self.db.execute(stmt).all()}

    def list_waiting_for_quota(
        self,
        record: DeliveryRecord,
        priorities: Iterable[str],
        due_by: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[DeliveryRecord]:
        """
        Older DEFERRED records of the same user and channel that have not
        consumed quota yet, oldest first.
        """
        stmt = select(DeliveryRecord).where(
            DeliveryRecord.user_id == record.user_id,
            DeliveryRecord.channel == record.channel,
            DeliveryRecord.status == DeliveryStatus.DEFERRED.value,
            DeliveryRecord.quota_window_start.is_(None),
            DeliveryRecord.priority.in_(list(priorities)),
            DeliveryRecord.id != record.id,
            or_(
                DeliveryRecord.created_at < record.created_at,
                and_(DeliveryRecord.created_at == record.created_at, DeliveryRecord.id < record.id),
            ),
        )
        if due_by is not None:
            stmt = stmt.where(DeliveryRecord.next_retry_at <= due_by)
        stmt = stmt.order_by(DeliveryRecord.created_at, DeliveryRecord.id).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def purge_terminal_before(self, cutoff: datetime) -> int:
        result = self.db.execute(
            delete(DeliveryRecord).where(
                DeliveryRecord.status.in_([s.value for s in TERMINAL_STATUSES]),
                DeliveryRecord.updated_at < cutoff,
            )
        )
        return result.rowcount or 0
