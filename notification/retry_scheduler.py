"""
Retry Scheduler - polls the delivery store for work whose time has come.

Three kinds of due records:
  * DISPATCHED with an expired lease: the worker died or hung, so the attempt
    counts as a transient failure.
  * RETRY_SCHEDULED / DEFERRED past next_retry_at: resubmitted to the dispatcher.
  * PENDING past its lease: queued before a crash or a full queue; resubmitted.

When a pipeline is attached through event_recovery, each pass also hands
stored events whose matching never completed back to it.

All state is in the delivery_record table, so a restarted scheduler simply
continues from whatever is due.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from core.config_loader import RetryConfig
from core.exceptions import PipelineError, PipelineUnavailableError
from database.models import DeliveryStatus
from database.uow import pipeline_uow
from notification.dispatcher import DeliveryDispatcher
from notification.tracker import DeliveryTracker

logger = logging.getLogger(__name__)

RESUBMIT_STATUSES = (
    DeliveryStatus.RETRY_SCHEDULED,
    DeliveryStatus.DEFERRED,
    DeliveryStatus.PENDING,
)


@dataclass
class SchedulerPassResult:
    expired_leases: int = 0
    resubmitted: int = 0
    rematched_events: int = 0  # Not counted in total

    @property
    def total(self) -> int:
        return self.expired_leases + self.resubmitted


class RetryScheduler:
    def __init__(
        self,
        session_factory: Optional[sessionmaker],
        dispatcher: DeliveryDispatcher,
        tracker: DeliveryTracker,
        config: RetryConfig,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.event_recovery: Optional[Callable[[datetime], int]] = None

    def run_once(self, now: Optional[datetime] = None) -> SchedulerPassResult:
        """One polling pass over everything due at now."""
        now = now or self.clock()
        result = SchedulerPassResult()
        result.rematched_events = self._recover_events(now)

        with pipeline_uow(self.session_factory) as repo:
            expired = [
                (r.id, r.attempt_count)
                for r in repo.deliveries.list_due([DeliveryStatus.DISPATCHED], now, self.config.batch_size)
            ]
        for record_id, attempt in expired:
            if self.tracker.expire_lease(record_id, attempt, now) is not None:
                result.expired_leases += 1

        with pipeline_uow(self.session_factory) as repo:
            due = [r.id for r in repo.deliveries.list_due(RESUBMIT_STATUSES, now, self.config.batch_size)]
        for record_id in due:
            try:
                status = self.dispatcher.submit_record(record_id, now)
            except PipelineUnavailableError:
                raise
            except PipelineError as e:
                logger.error(f"Could not resubmit delivery {record_id}: {e}")
                continue
            if status is not None:
                result.resubmitted += 1

        if result.total or result.rematched_events:
            logger.info(
                f"Retry pass: {result.expired_leases} expired leases, "
                f"{result.resubmitted} records resubmitted, {result.rematched_events} events rematched"
            )
        return result

    def _recover_events(self, now: datetime) -> int:
        if self.event_recovery is None:
            return 0
        try:
            return self.event_recovery(now)
        except PipelineUnavailableError:
            raise
        except PipelineError as e:
            logger.error(f"Event recovery failed: {e}")
            return 0

    def run_until_idle(self, max_passes: int = 100) -> int:
        """Burst mode: resubmit and deliver until nothing is due. Returns passes run."""
        passes = 0
        while passes < max_passes:
            passes += 1
            result = self.run_once()
            self.dispatcher.process_queued()
            if result.total == 0:
                break
        return passes

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retry-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Retry scheduler started (poll every {self.config.poll_interval_seconds}s)")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except PipelineUnavailableError as e:
                logger.error(f"Retry pass skipped, store unavailable: {e}")
            except Exception as e:
                logger.exception(f"Retry pass failed: {e}")
            self._stop.wait(self.config.poll_interval_seconds)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Retry scheduler stopped")
