"""Opportunity pipeline orchestration.

Ties the stages together: ingest -> match -> dedup/fan-out -> dispatch.
Used by main.py, the notification worker and the web application.

Two ways to drive it:
  * run_pass(records): synchronous, everything on the calling thread plus
    the matcher pool; delivers whatever was queued before returning unless
    the dispatcher workers are running.
  * start() + submit(records): matcher worker threads fed by a bounded
    event queue, dispatcher lanes and the retry scheduler all in the
    background until shutdown().

An event is marked matched only after all of its intents were fanned out.
Events left unmatched by a failure or a crash between ingestion and fan-out
are picked up again by the next run_pass, by start() and by every retry
scheduler pass; intent dedup keeps a second fan-out from notifying twice.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.app_context import AppContext
from core.exceptions import MatchingError, PipelineError, PipelineUnavailableError
from core.matcher.dto import CanonicalEvent
from core.matcher.models import NotificationIntentDTO
from database.uow import pipeline_uow
from etl.ingestor import IngestReport

logger = logging.getLogger(__name__)


@dataclass
class PipelineRunResult:
    """Result of one synchronous pipeline pass."""
    ingest: IngestReport
    intents: int = 0
    deliveries: int = 0
    delivered_now: int = 0
    rematched_events: int = 0
    failed_events: List[str] = field(default_factory=list)
    execution_time: float = 0.0


class OpportunityPipeline:
    def __init__(self, ctx: AppContext):
        self.ctx = ctx
        self._match_queue: queue.Queue = queue.Queue(maxsize=ctx.config.ingestion.match_queue_size)
        self._workers: List[threading.Thread] = []
        self._stop = threading.Event()
        self._accepting = True
        self._started = False
        # Event keys queued or being matched in this process
        self._claimed: set = set()
        self._claim_lock = threading.Lock()
        ctx.scheduler.event_recovery = self.recover_unmatched

    # ------------------------------------------------------------------
    # Synchronous pass
    # ------------------------------------------------------------------

    def run_pass(self, records: Sequence[Dict[str, Any]], now: Optional[datetime] = None) -> PipelineRunResult:
        """
        Ingest, match and fan out a batch; deliver queued work if no workers run.

        Stored events still waiting for a completed match are matched along
        with the batch.
        """
        self._ensure_accepting()
        started = time.time()
        now = now or self.ctx.clock()

        logger.info(f"=== PIPELINE PASS: {len(records)} records ===")
        report = self.ctx.ingestor.ingest_batch(records, now)
        result = PipelineRunResult(ingest=report)

        events = self._claim(report.events)
        try:
            leftovers = self._claim(self._load_unmatched(now))
            events.extend(leftovers)
            result.rematched_events = len(leftovers)
            if leftovers:
                logger.info(f"Matching {len(leftovers)} previously unmatched events")
                self.ctx.metrics.inc('rematched', len(leftovers))
            if events:
                self._match_batch(events, now, result)
        finally:
            self._release(events)

        if not self.ctx.dispatcher.running:
            result.delivered_now = self.ctx.dispatcher.process_queued()

        result.execution_time = time.time() - started
        logger.info(
            f"=== PIPELINE PASS DONE: {report.accepted} accepted ({report.duplicates} duplicate), "
            f"{report.rejected} rejected, {result.intents} intents, {result.deliveries} deliveries "
            f"in {result.execution_time:.2f}s ==="
        )
        return result

    def _match_batch(self, events: List[CanonicalEvent], now: datetime, result: PipelineRunResult) -> None:
        snapshot = self.ctx.preferences.refresh()
        batch = self.ctx.matcher.match_events(events, snapshot, now)
        result.failed_events.extend(batch.failed_events)
        result.intents += len(batch.intents)

        intents_by_event: Dict[str, List[NotificationIntentDTO]] = {e.event_key: [] for e in events}
        for intent in batch.intents:
            intents_by_event[f"{intent.event_ref}|v{intent.event_version}"].append(intent)

        completed = []
        for event in events:
            fanned_out = True
            for intent in intents_by_event[event.event_key]:
                records = self._fan_out(intent, event, now)
                if records is None:
                    fanned_out = False
                    continue
                result.deliveries += len(records)
            if fanned_out:
                completed.append(event)
        self._mark_matched(completed, now)

    def _fan_out(
        self,
        intent: NotificationIntentDTO,
        event: CanonicalEvent,
        now: datetime
    ) -> Optional[list]:
        """Fan out one intent. None if it failed and the event must be matched again."""
        try:
            return self.ctx.dispatcher.fan_out(intent, event, now)
        except PipelineUnavailableError:
            raise
        except PipelineError as e:
            logger.error(f"Fan-out failed for {intent.intent_key}: {e}")
            return None

    # ------------------------------------------------------------------
    # Match bookkeeping
    # ------------------------------------------------------------------

    def _claim(self, events: Iterable[CanonicalEvent]) -> List[CanonicalEvent]:
        """Reserve events for matching in this process, skipping those already reserved."""
        claimed = []
        with self._claim_lock:
            for event in events:
                if event.event_key not in self._claimed:
                    self._claimed.add(event.event_key)
                    claimed.append(event)
        return claimed

    def _release(self, events: Iterable[CanonicalEvent]) -> None:
        with self._claim_lock:
            for event in events:
                self._claimed.discard(event.event_key)

    def _load_unmatched(self, ingested_before: datetime) -> List[CanonicalEvent]:
        with pipeline_uow(self.ctx.session_factory) as repo:
            rows = repo.events.list_unmatched(ingested_before, self.ctx.config.ingestion.rematch_batch_size)
            return [CanonicalEvent.from_orm(row) for row in rows]

    def _mark_matched(self, events: List[CanonicalEvent], now: datetime) -> None:
        if not events:
            return
        with pipeline_uow(self.ctx.session_factory) as repo:
            repo.events.mark_matched(((e.source, e.external_id, e.version) for e in events), now)

    def recover_unmatched(self, now: Optional[datetime] = None, min_age_seconds: Optional[float] = None) -> int:
        """
        Match stored events again whose matching never completed.

        Only events ingested at least min_age_seconds ago (default
        ingestion.rematch_after_seconds) are considered, so events another
        process is still matching are left alone. With workers running the
        events go onto the match queue; otherwise they are matched inline.
        Returns the number of events handed back to matching.
        """
        if not self._accepting:
            return 0
        now = now or self.ctx.clock()
        if min_age_seconds is None:
            min_age_seconds = self.ctx.config.ingestion.rematch_after_seconds
        events = self._claim(self._load_unmatched(now - timedelta(seconds=min_age_seconds)))
        if not events:
            return 0

        logger.info(f"Recovering {len(events)} unmatched events")
        self.ctx.metrics.inc('rematched', len(events))
        if not self._started:
            try:
                self._match_batch(events, now, PipelineRunResult(ingest=IngestReport()))
            finally:
                self._release(events)
            return len(events)

        try:
            self.ctx.preferences.refresh()
        except Exception:
            self._release(events)
            raise
        for index, event in enumerate(events):
            try:
                self._match_queue.put_nowait(event)
            except queue.Full:
                # Left for the next pass
                self._release(events[index:])
                return index
        return len(events)

    # ------------------------------------------------------------------
    # Background mode
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        """Start matcher workers, dispatcher lanes and the scheduler, then recover unmatched events."""
        if self._started:
            return
        self._stop.clear()
        self.ctx.preferences.refresh()
        for index in range(max(1, self.ctx.config.ingestion.matcher_workers)):
            worker = threading.Thread(target=self._match_loop, name=f"matcher-{index}", daemon=True)
            worker.start()
            self._workers.append(worker)
        self.ctx.dispatcher.start()
        self._started = True
        try:
            self.recover_unmatched(min_age_seconds=0)
        except PipelineError as e:
            logger.error(f"Unmatched events left to the retry scheduler: {e}")
        self.ctx.scheduler.start()
        logger.info(f"Pipeline started with {len(self._workers)} matcher workers")

    def submit(self, records: Sequence[Dict[str, Any]], timeout: Optional[float] = None) -> IngestReport:
        """
        Ingest a batch and hand new events to the matcher workers.

        Blocks while the match queue is full; past the timeout the event is
        matched on the calling thread instead.
        """
        self._ensure_accepting()
        if not self._started:
            raise PipelineUnavailableError("Pipeline is not running; call start() or use run_pass()")

        timeout = self.ctx.config.ingestion.submit_timeout_seconds if timeout is None else timeout
        report = self.ctx.ingestor.ingest_batch(records)
        if report.events:
            self.ctx.preferences.refresh()

        for event in self._claim(report.events):
            try:
                self._match_queue.put(event, timeout=timeout)
            except queue.Full:
                logger.warning(f"Match queue full, matching {event.event_key} inline")
                self.ctx.metrics.inc('backpressure')
                try:
                    self._process_event(event)
                finally:
                    self._release([event])
        return report

    def _match_loop(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._match_queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._process_event(event)
            except Exception as e:
                logger.exception(f"Processing of {event.event_key} failed: {e}")
            finally:
                self._release([event])
                self._match_queue.task_done()

    def _process_event(self, event: CanonicalEvent) -> None:
        now = self.ctx.clock()
        snapshot = self.ctx.preferences.snapshot
        try:
            intents = self.ctx.matcher.match_event(event, snapshot, now)
        except MatchingError as e:
            logger.warning(f"Skipping event: {e}")
            self.ctx.metrics.inc('matching_errors')
            self._mark_matched([event], now)
            return
        if intents:
            self.ctx.metrics.inc('matched', len(intents))
        results = [self._fan_out(intent, event, now) for intent in intents]
        if all(records is not None for records in results):
            self._mark_matched([event], now)

    def _match_idle(self) -> bool:
        return self._match_queue.unfinished_tasks == 0

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until matchers and dispatchers have nothing left in memory."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._match_idle() and self.ctx.dispatcher.is_idle():
                return True
            time.sleep(0.05)
        return False

    def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """
        Stop accepting events, drain the match queue and in-flight deliveries
        up to drain_timeout, then stop every worker and release the context.

        Anything unfinished is already durable and resumes on the next start.
        """
        self._accepting = False
        timeout = self.ctx.config.dispatch.drain_timeout_seconds if drain_timeout is None else drain_timeout
        deadline = time.monotonic() + timeout
        logger.info("Pipeline shutting down")

        while self._workers and not self._match_idle() and time.monotonic() < deadline:
            time.sleep(0.05)
        self._stop.set()
        for worker in self._workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()) + 1.0)
        self._workers = []

        self.ctx.scheduler.stop()
        self.ctx.dispatcher.shutdown(max(0.0, deadline - time.monotonic()))
        self.ctx.shutdown()
        self._started = False
        logger.info("Pipeline stopped")

    def _ensure_accepting(self) -> None:
        if not self._accepting:
            raise PipelineUnavailableError("Pipeline is shutting down")

    # ------------------------------------------------------------------
    # Maintenance and observability
    # ------------------------------------------------------------------

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Apply retention: old events, expired intents, old terminal records, ended windows."""
        now = now or self.ctx.clock()
        retention = self.ctx.config.retention
        with pipeline_uow(self.ctx.session_factory) as repo:
            purged = {
                'events': repo.events.purge_ingested_before(now - timedelta(days=retention.event_days)),
                'intents': repo.intents.purge_expired(now),
                'deliveries': repo.deliveries.purge_terminal_before(now - timedelta(days=retention.delivery_days)),
                'rate_limit_windows': repo.rate_limits.purge_ended_before(now),
            }
        logger.info(f"Purged: {purged}")
        return purged

    def stats(self) -> Dict[str, Any]:
        with pipeline_uow(self.ctx.session_factory) as repo:
            by_status = repo.deliveries.count_by_status()
            unmatched = repo.events.count_unmatched()
        return {
            'stages': self.ctx.metrics.snapshot(),
            'deliveries_by_status': by_status,
            'queue_depths': self.ctx.dispatcher.queue_depths(),
            'match_queue_depth': self._match_queue.qsize(),
            'unmatched_events': unmatched,
            'running': self._started,
        }
