from sqlalchemy.orm import Session

from database.repositories import (
    EventRepository,
    IntentRepository,
    DeliveryRepository,
    RateLimitRepository,
)


class PipelineRepository:
    """Facade over the per-table repositories sharing one Session."""

    def __init__(self, db: Session):
        self.db = db
        self.events = EventRepository(db)
        self.intents = IntentRepository(db)
        self.deliveries = DeliveryRepository(db)
        self.rate_limits = RateLimitRepository(db)

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
