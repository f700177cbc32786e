from sqlalchemy import Column, Integer, Text, JSON, UniqueConstraint, Index

from .base import Base, UTCDateTime, utc_now


class OpportunityEvent(Base):
    """
    Canonical opportunity event, append-only.

    A superseding update from the source is stored as a new row with a
    higher version; the source attributes of a row are never mutated.
    matched_at stays NULL until matching and fan-out completed, which is
    how events interrupted between ingestion and fan-out are found again.
    """
    __tablename__ = 'opportunity_event'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Identity: (source, external_id, version)
    source = Column(Text, nullable=False)
    external_id = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    kind = Column(Text, nullable=False)  # JOB | INTERNSHIP | CERTIFICATION_DEADLINE

    # Matchable attributes
    skills = Column(JSON, nullable=False, default=list)
    location = Column(Text)
    deadline = Column(UTCDateTime)

    # Display attributes
    title = Column(Text)
    company = Column(Text)
    url = Column(Text)
    job_type = Column(Text)

    raw_payload = Column(JSON, nullable=False, default=dict)

    source_timestamp = Column(UTCDateTime)
    ingested_at = Column(UTCDateTime, nullable=False, default=utc_now)
    matched_at = Column(UTCDateTime)  # Set once every intent of the event is fanned out

    __table_args__ = (
        UniqueConstraint('source', 'external_id', 'version', name='uq_opportunity_event_version'),
        Index('idx_opportunity_event_ingested', 'ingested_at'),
        Index('idx_opportunity_event_unmatched', 'matched_at', 'ingested_at'),
    )

    @property
    def event_ref(self) -> str:
        return f"{self.source}:{self.external_id}"
