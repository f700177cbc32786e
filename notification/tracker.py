#!/usr/bin/env python3
"""
Delivery Tracker - the DeliveryRecord state machine.

    PENDING          -> DEFERRED | DISPATCHED
    DEFERRED         -> DEFERRED | DISPATCHED
    DISPATCHED       -> DELIVERED | RETRY_SCHEDULED | FAILED_PERMANENT
    RETRY_SCHEDULED  -> DISPATCHED | FAILED_PERMANENT

Records only move forward; DELIVERED and FAILED_PERMANENT are terminal.
Every write goes through the record's version column, so two workers
touching the same record cannot silently overwrite each other; the loser
gets StaleDataError and the operation is retried against fresh state.

Usage:
    tracker = DeliveryTracker(ctx.session_factory, ctx.config.retry, ctx.config.dispatch)

    dto = tracker.mark_dispatched(record_id, expected_attempt=0, now=now)
    if dto:
        outcome = adapter.attempt_delivery(dto.user_id, dto.payload)
        tracker.record_outcome(record_id, outcome, None, now, expected_attempt=dto.attempt_count)
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_fixed,
    retry_if_exception_type,
    before_sleep_log
)

from core.config_loader import DispatchConfig, RetryConfig
from core.exceptions import InvalidTransitionError, RecordNotFoundError
from core.matcher.dto import DeliveryRecordDTO
from database.models import DeliveryRecord, DeliveryStatus
from database.uow import pipeline_uow
from notification.channels import DeliveryOutcome
from notification.reporting import DeliveryReporter, LoggingDeliveryReporter

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    DeliveryStatus.PENDING: {DeliveryStatus.DEFERRED, DeliveryStatus.DISPATCHED},
    DeliveryStatus.DEFERRED: {DeliveryStatus.DEFERRED, DeliveryStatus.DISPATCHED},
    DeliveryStatus.DISPATCHED: {
        DeliveryStatus.DELIVERED,
        DeliveryStatus.RETRY_SCHEDULED,
        DeliveryStatus.FAILED_PERMANENT,
    },
    DeliveryStatus.RETRY_SCHEDULED: {DeliveryStatus.DISPATCHED, DeliveryStatus.FAILED_PERMANENT},
    DeliveryStatus.DELIVERED: set(),
    DeliveryStatus.FAILED_PERMANENT: set(),
}

DISPATCHABLE_STATUSES = frozenset({
    DeliveryStatus.PENDING,
    DeliveryStatus.DEFERRED,
    DeliveryStatus.RETRY_SCHEDULED,
})

retry_on_conflict = retry(
    retry=retry_if_exception_type(StaleDataError),
    stop=stop_after_attempt(5),
    wait=wait_fixed(0.05),
    before_sleep=before_sleep_log(logger, logging.DEBUG),
    reraise=True
)


def transition(record: DeliveryRecord, target: DeliveryStatus, now: datetime) -> None:
    """Move a record to target, refusing anything the state machine forbids."""
    current = DeliveryStatus(record.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(record.id, current.value, target.value)
    record.status = target.value
    record.updated_at = now


class BackoffPolicy:
    """
    Exponential backoff with a ceiling and proportional jitter.

    delay(n) = min(ceiling, base * 2^(n-1)) + uniform(0, jitter_ratio * that)
    """

    def __init__(
        self,
        base_seconds: float,
        max_seconds: float,
        jitter_ratio: float = 0.0,
        rng: Optional[random.Random] = None
    ):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter_ratio = jitter_ratio
        self.rng = rng or random.Random()

    def delay(self, attempt_count: int) -> timedelta:
        exponent = max(attempt_count, 1) - 1
        seconds = min(self.max_seconds, self.base_seconds * (2 ** exponent))
        if self.jitter_ratio > 0:
            seconds += self.rng.uniform(0, self.jitter_ratio * seconds)
        return timedelta(seconds=seconds)


class DeliveryTracker:
    """Sole writer of DeliveryRecord state after fan-out."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker],
        retry_config: RetryConfig,
        dispatch_config: DispatchConfig,
        reporter: Optional[DeliveryReporter] = None,
        metrics=None,
        rng: Optional[random.Random] = None
    ):
        self.session_factory = session_factory
        self.max_attempts = retry_config.max_attempts
        self.lease = timedelta(seconds=dispatch_config.lease_seconds)
        self.backoff = BackoffPolicy(
            retry_config.base_backoff_seconds,
            retry_config.max_backoff_seconds,
            retry_config.jitter_ratio,
            rng,
        )
        self.reporter = reporter or LoggingDeliveryReporter()
        self.metrics = metrics

    # ------------------------------------------------------------------
    # Helpers used inside a caller's unit of work
    # ------------------------------------------------------------------

    @staticmethod
    def defer(record: DeliveryRecord, until: datetime, now: datetime) -> None:
        transition(record, DeliveryStatus.DEFERRED, now)
        record.next_retry_at = until

    @staticmethod
    def hold(record: DeliveryRecord, until: datetime, now: datetime) -> None:
        """Set a lease/hold without changing status."""
        record.next_retry_at = until
        record.updated_at = now

    # ------------------------------------------------------------------
    # Standalone operations, one unit of work each
    # ------------------------------------------------------------------

    def get(self, record_id: str) -> DeliveryRecordDTO:
        with pipeline_uow(self.session_factory) as repo:
            record = repo.deliveries.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"Delivery record {record_id} not found")
            return DeliveryRecordDTO.from_orm(record)

    @retry_on_conflict
    def mark_dispatched(self, record_id: str, expected_attempt: int, now: datetime) -> Optional[DeliveryRecordDTO]:
        """
        Claim a queued record for one delivery attempt.

        Returns None if the queue item is stale: the record moved on, its
        attempt count changed, or it never consumed rate-limit quota.
        """
        with pipeline_uow(self.session_factory) as repo:
            record = repo.deliveries.get(record_id)
            if record is None:
                logger.warning(f"Queued delivery record {record_id} no longer exists")
                return None
            if (
                DeliveryStatus(record.status) not in DISPATCHABLE_STATUSES
                or record.attempt_count != expected_attempt
                or record.quota_window_start is None
            ):
                logger.debug(
                    f"Skipping stale queue item for {record_id} "
                    f"(status={record.status}, attempt={record.attempt_count}, expected={expected_attempt})"
                )
                return None

            transition(record, DeliveryStatus.DISPATCHED, now)
            record.attempt_count += 1
            record.next_retry_at = now + self.lease
            dto = DeliveryRecordDTO.from_orm(record)

        self._count('dispatched')
        return dto

    def record_outcome(
        self,
        record_id: str,
        outcome: DeliveryOutcome,
        error: Optional[str],
        now: datetime,
        expected_attempt: Optional[int] = None,
        retry_after: Optional[int] = None
    ) -> Optional[DeliveryRecordDTO]:
        """
        Apply an adapter outcome to a DISPATCHED record.

        With expected_attempt, an outcome for an attempt that has since been
        superseded (lease expired and rescheduled) is ignored and None is
        returned. Without it, a record that is not DISPATCHED raises
        InvalidTransitionError.
        """
        result = self._apply_outcome(record_id, outcome, error, now, expected_attempt, retry_after)
        if result is None:
            return None

        dto, stage = result
        self._count(stage)
        if stage == 'delivered':
            self._report(self.reporter.report_delivered, dto)
        elif stage == 'dead_lettered':
            self._report(self.reporter.report_dead_letter, dto)
        return dto

    @retry_on_conflict
    def _apply_outcome(
        self,
        record_id: str,
        outcome: DeliveryOutcome,
        error: Optional[str],
        now: datetime,
        expected_attempt: Optional[int],
        retry_after: Optional[int]
    ) -> Optional[Tuple[DeliveryRecordDTO, str]]:
        with pipeline_uow(self.session_factory) as repo:
            record = repo.deliveries.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"Delivery record {record_id} not found")

            if expected_attempt is not None and (
                record.status != DeliveryStatus.DISPATCHED.value
                or record.attempt_count != expected_attempt
            ):
                logger.warning(
                    f"Ignoring late {outcome.value} for {record_id}: attempt {expected_attempt} "
                    f"superseded (status={record.status}, attempt={record.attempt_count})"
                )
                return None

            if outcome == DeliveryOutcome.DELIVERED:
                transition(record, DeliveryStatus.DELIVERED, now)
                record.delivered_at = now
                record.next_retry_at = None
                record.last_error = None
                stage = 'delivered'

            elif outcome == DeliveryOutcome.PERMANENT_FAILURE:
                transition(record, DeliveryStatus.FAILED_PERMANENT, now)
                record.next_retry_at = None
                record.last_error = error or 'permanent failure'
                stage = 'dead_lettered'

            elif record.attempt_count >= self.max_attempts:
                transition(record, DeliveryStatus.FAILED_PERMANENT, now)
                record.next_retry_at = None
                record.last_error = f"{error or outcome.value.lower()} (gave up after {record.attempt_count} attempts)"
                stage = 'dead_lettered'

            else:
                transition(record, DeliveryStatus.RETRY_SCHEDULED, now)
                delay = self.backoff.delay(record.attempt_count)
                if retry_after is not None:
                    delay = max(delay, timedelta(seconds=retry_after))
                record.next_retry_at = now + delay
                record.last_error = error or outcome.value.lower()
                stage = 'retried'

            logger.info(
                f"Delivery {record_id} ({record.channel}) attempt {record.attempt_count}: "
                f"{outcome.value} -> {record.status}"
            )
            return DeliveryRecordDTO.from_orm(record), stage

    def expire_lease(self, record_id: str, attempt: int, now: datetime) -> Optional[DeliveryRecordDTO]:
        """A DISPATCHED record whose worker never reported back counts as a transient failure."""
        return self.record_outcome(
            record_id,
            DeliveryOutcome.TRANSIENT_FAILURE,
            "dispatch lease expired",
            now,
            expected_attempt=attempt,
        )

    @retry_on_conflict
    def hold_for_backpressure(self, record_id: str, until: datetime, now: datetime) -> None:
        with pipeline_uow(self.session_factory) as repo:
            record = repo.deliveries.get(record_id)
            if record is None or DeliveryStatus(record.status) not in DISPATCHABLE_STATUSES:
                return
            self.hold(record, until, now)

    def _report(self, fn: Callable[[DeliveryRecordDTO], None], dto: DeliveryRecordDTO) -> None:
        try:
            fn(dto)
        except Exception as e:
            logger.error(f"Delivery reporter failed for {dto.id}: {e}")

    def _count(self, stage: str) -> None:
        if self.metrics is not None:
            self.metrics.inc(stage)

    def list_records(self, status: Optional[str] = None, user_id: Optional[str] = None,
                     limit: int = 50, offset: int = 0) -> List[DeliveryRecordDTO]:
        with pipeline_uow(self.session_factory) as repo:
            return [
                DeliveryRecordDTO.from_orm(r)
                for r in repo.deliveries.list_records(status, user_id, limit, offset)
            ]
