from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from core.exceptions import ValidationError
from core.matcher.dto import CanonicalEvent
from core.matcher.models import EventKind
from database.models import OpportunityEvent
from database.uow import pipeline_uow
from etl.schemas import SourceRecord

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"


@dataclass
class IngestResult:
    index: int
    status: IngestStatus
    event_key: Optional[str] = None
    errors: List[ValidationError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'status': self.status.value,
            'event_key': self.event_key,
            'errors': [e.to_dict() for e in self.errors],
        }


@dataclass
class IngestReport:
    results: List[IngestResult] = field(default_factory=list)
    events: List[CanonicalEvent] = field(default_factory=list)  # Newly stored, ready for matching

    def _count(self, status: IngestStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def accepted(self) -> int:
        """Accepted records, duplicates included."""
        return self._count(IngestStatus.ACCEPTED) + self._count(IngestStatus.DUPLICATE)

    @property
    def duplicates(self) -> int:
        return self._count(IngestStatus.DUPLICATE)

    @property
    def rejected(self) -> int:
        return self._count(IngestStatus.REJECTED)


def _to_validation_errors(exc: PydanticValidationError) -> List[ValidationError]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get('loc', ())) or 'record'
        errors.append(ValidationError(loc, err.get('msg', 'invalid value')))
    return errors


class EventIngestor:
    """Validates, normalises and appends opportunity events.

    Malformed records are rejected individually and never retried here;
    the rest of the batch continues. Re-delivered (source, id, version)
    triples are reported as DUPLICATE and not handed to the matcher again.

    Usage:
        ingestor = EventIngestor(ctx.session_factory, metrics=ctx.metrics)
        report = ingestor.ingest_batch(records)
        matcher.match_events(report.events, snapshot, now)
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        metrics=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.session_factory = session_factory
        self.metrics = metrics
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def parse(self, raw: Dict[str, Any]) -> Tuple[Optional[CanonicalEvent], List[ValidationError]]:
        """Validate one raw record into a CanonicalEvent, or return its errors."""
        if not isinstance(raw, dict):
            return None, [ValidationError('record', f"expected an object, got {type(raw).__name__}")]

        try:
            record = SourceRecord.model_validate(raw)
        except PydanticValidationError as e:
            return None, _to_validation_errors(e)

        attrs = record.attributes
        errors = []
        if not (attrs.skills or attrs.location or attrs.deadline):
            errors.append(ValidationError('attributes', 'at least one of skills, location or deadline is required'))
        if record.kind == EventKind.CERTIFICATION_DEADLINE and attrs.deadline is None:
            errors.append(ValidationError('attributes.deadline', 'required for CERTIFICATION_DEADLINE events'))
        if errors:
            return None, errors

        event = CanonicalEvent(
            source=record.source,
            external_id=record.id,
            version=record.version,
            kind=record.kind,
            skills=frozenset(attrs.skills),
            location=attrs.location,
            deadline=attrs.deadline,
            title=attrs.title,
            company=attrs.company,
            url=attrs.url,
            job_type=attrs.job_type,
            source_timestamp=record.timestamp,
            raw_payload=record.model_dump(mode='json'),
        )
        return event, []

    def ingest_batch(self, records: Sequence[Dict[str, Any]], now: Optional[datetime] = None) -> IngestReport:
        """Validate and store a batch. Raises PipelineUnavailableError if the store is down."""
        now = now or self.clock()
        report = IngestReport()
        seen = set()
        parsed: List[Tuple[int, CanonicalEvent]] = []

        for index, raw in enumerate(records):
            event, errors = self.parse(raw)
            if errors:
                logger.warning(f"Rejected record #{index}: {'; '.join(str(e) for e in errors)}")
                report.results.append(IngestResult(index, IngestStatus.REJECTED, errors=errors))
                continue
            if event.event_key in seen:
                report.results.append(IngestResult(index, IngestStatus.DUPLICATE, event.event_key))
                continue
            seen.add(event.event_key)
            parsed.append((index, event))

        if parsed:
            with pipeline_uow(self.session_factory) as repo:
                for index, event in parsed:
                    stored = repo.events.insert_if_new(self._to_orm(event, now))
                    if stored:
                        report.results.append(IngestResult(index, IngestStatus.ACCEPTED, event.event_key))
                        report.events.append(event)
                    else:
                        report.results.append(IngestResult(index, IngestStatus.DUPLICATE, event.event_key))

        report.results.sort(key=lambda r: r.index)
        self._count('ingested', len(report.events))
        self._count('duplicate_events', report.duplicates)
        self._count('rejected', report.rejected)
        logger.info(
            f"Ingested batch of {len(records)}: {len(report.events)} new, "
            f"{report.duplicates} duplicates, {report.rejected} rejected"
        )
        return report

    @staticmethod
    def _to_orm(event: CanonicalEvent, now: datetime) -> OpportunityEvent:
        return OpportunityEvent(
            source=event.source,
            external_id=event.external_id,
            version=event.version,
            kind=event.kind.value,
            skills=sorted(event.skills),
            location=event.location,
            deadline=event.deadline,
            title=event.title,
            company=event.company,
            url=event.url,
            job_type=event.job_type,
            raw_payload=event.raw_payload,
            source_timestamp=event.source_timestamp,
            ingested_at=now,
        )

    def _count(self, stage: str, amount: int) -> None:
        if self.metrics is not None and amount:
            self.metrics.inc(stage, amount)
