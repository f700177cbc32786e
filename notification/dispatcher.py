"""
Delivery Dispatcher - fan-out, rate limiting and per-channel delivery queues.

Each channel owns a bounded ChannelQueue split into lanes; a user always maps
to the same lane, and each lane is drained by one worker thread, so a
user's notifications on a channel leave in order (within a priority class)
while a slow channel never blocks the others.

The database is the source of truth: a queue item only carries the record id
and the attempt count it was queued for. Anything lost from memory (crash,
full queue) is still a durable record with a lease in next_retry_at, which
the retry scheduler picks up once the lease runs out.
"""

import itertools
import logging
import queue
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from core.config_loader import DispatchConfig
from core.exceptions import (
    PermanentChannelError,
    PipelineError,
    PipelineUnavailableError,
    TransientChannelError,
)
from core.matcher.dto import CanonicalEvent, DeliveryRecordDTO
from core.matcher.models import Channel, NotificationIntentDTO, Priority, RatePolicy
from database.models import DeliveryRecord, DeliveryStatus
from database.uow import pipeline_uow
from notification.channels import ChannelRegistry, DeliveryOutcome
from notification.dedup import IdempotencyCache
from notification.message_builder import NotificationMessageBuilder
from notification.rate_limiter import RateLimiter
from notification.tracker import DISPATCHABLE_STATUSES, DeliveryTracker, retry_on_conflict

logger = logging.getLogger(__name__)


@dataclass(order=True)
class QueueItem:
    priority_rank: int
    created_at: datetime
    seq: int
    record_id: str = field(compare=False)
    user_id: str = field(compare=False)
    channel: Channel = field(compare=False)
    expected_attempt: int = field(compare=False)


class ChannelQueue:
    """Bounded priority queue for one channel, sharded into per-user lanes."""

    def __init__(
        self,
        channel: Channel,
        handler: Callable[[QueueItem], None],
        lanes: int = 2,
        maxsize: int = 500
    ):
        self.channel = channel
        self.handler = handler
        self.lanes: List[queue.PriorityQueue] = [
            queue.PriorityQueue(maxsize=maxsize) for _ in range(max(1, lanes))
        ]
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    def lane_for(self, user_id: str) -> int:
        return zlib.crc32(user_id.encode('utf-8')) % len(self.lanes)

    def put(self, item: QueueItem, timeout: float) -> bool:
        """Enqueue, blocking up to timeout. False if the lane stayed full."""
        lane = self.lanes[self.lane_for(item.user_id)]
        try:
            lane.put(item, timeout=timeout)
            return True
        except queue.Full:
            return False

    def qsize(self) -> int:
        return sum(lane.qsize() for lane in self.lanes)

    def is_idle(self) -> bool:
        """True once every queued item has been handled (task_done)."""
        return all(lane.unfinished_tasks == 0 for lane in self.lanes)

    def start(self) -> None:
        self._stop.clear()
        for index, lane in enumerate(self.lanes):
            thread = threading.Thread(
                target=self._run_lane,
                args=(lane,),
                name=f"dispatch-{self.channel.value}-{index}",
                daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def _run_lane(self, lane: queue.PriorityQueue) -> None:
        while not self._stop.is_set():
            try:
                item = lane.get(timeout=0.2)
            except queue.Empty:
                continue
            self._handle(item)
            lane.task_done()

    def _handle(self, item: QueueItem) -> None:
        try:
            self.handler(item)
        except Exception as e:
            # Record stays durable with its lease; the scheduler recovers it
            logger.exception(f"Delivery of {item.record_id} on {self.channel.value} failed: {e}")

    def drain(self) -> int:
        """Process everything queued on the calling thread. Returns items handled."""
        handled = 0
        for lane in self.lanes:
            while True:
                try:
                    item = lane.get_nowait()
                except queue.Empty:
                    break
                self._handle(item)
                lane.task_done()
                handled += 1
        return handled

    def stop(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while self._threads and not self.is_idle() and time.monotonic() < deadline:
            time.sleep(0.05)
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()) + 1.0)
        self._threads = []


class DeliveryDispatcher:
    """
    Creates delivery records for new intents and moves them through the
    channel queues to the adapters.

    Usage:
        dispatcher = DeliveryDispatcher(...)
        dispatcher.start()                       # worker threads
        dispatcher.fan_out(intent, event)        # dedup + records + enqueue
        dispatcher.shutdown()

    Without start(), process_queued() delivers everything queued synchronously.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker],
        registry: ChannelRegistry,
        dedup: IdempotencyCache,
        rate_limiter: RateLimiter,
        tracker: DeliveryTracker,
        config: DispatchConfig,
        metrics=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.dedup = dedup
        self.rate_limiter = rate_limiter
        self.tracker = tracker
        self.config = config
        self.metrics = metrics
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._seq = itertools.count()
        self._accepting = True
        self._started = False
        self.queues: Dict[Channel, ChannelQueue] = {
            channel: ChannelQueue(
                channel,
                self._deliver,
                lanes=config.lanes_per_channel,
                maxsize=config.queue_size
            )
            for channel in Channel
        }
        self.executors: Dict[Channel, ThreadPoolExecutor] = {
            channel: ThreadPoolExecutor(
                max_workers=max(1, config.lanes_per_channel),
                thread_name_prefix=f"adapter-{channel.value}"
            )
            for channel in Channel
        }

    # ------------------------------------------------------------------
    # Fan-out and submission
    # ------------------------------------------------------------------

    def fan_out(
        self,
        intent: NotificationIntentDTO,
        event: CanonicalEvent,
        now: Optional[datetime] = None
    ) -> List[DeliveryRecordDTO]:
        """
        Claim the intent and create one PENDING record per channel.

        Returns [] if the intent is a duplicate within the dedup horizon.
        """
        self._ensure_accepting()
        now = now or self.clock()

        try:
            with pipeline_uow(self.session_factory) as repo:
                if not self.dedup.claim(repo, intent, now):
                    self._count('deduped')
                    return []

                records = []
                for channel in intent.channels:
                    record = repo.deliveries.create(self._new_record(intent, event, channel, now))
                    records.append(DeliveryRecordDTO.from_orm(record))
        except Exception:
            self.dedup.release(intent)
            raise

        logger.info(
            f"Intent {intent.intent_key} fanned out to "
            f"{', '.join(r.channel.value for r in records)}"
        )
        for record in records:
            self.submit_record(record.id, now)
        return records

    def _new_record(
        self,
        intent: NotificationIntentDTO,
        event: CanonicalEvent,
        channel: Channel,
        now: datetime
    ) -> DeliveryRecord:
        recipient = intent.contacts.get(channel.value)
        return DeliveryRecord(
            intent_key=intent.intent_key,
            user_id=intent.user_id,
            channel=channel.value,
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
            next_retry_at=now,
            priority=intent.priority.value,
            payload=NotificationMessageBuilder.build_payload(intent, event, channel, recipient),
            rate_limit_max=intent.rate_policy.max_per_window,
            rate_limit_window_seconds=intent.rate_policy.window_seconds,
            created_at=now,
            updated_at=now,
        )

    def submit_record(self, record_id: str, now: Optional[datetime] = None) -> Optional[DeliveryStatus]:
        """
        Consume quota if needed and place the record on its channel queue.

        Returns the record's status afterwards, or None if it was no longer
        dispatchable. A full queue leaves the record durable with a short
        lease instead of dropping it.
        """
        self._ensure_accepting()
        now = now or self.clock()

        for waiting_id in self._due_predecessors(record_id, now):
            try:
                self._submit_one(waiting_id, now)
            except PipelineUnavailableError:
                raise
            except PipelineError as e:
                logger.error(f"Could not submit waiting delivery {waiting_id}: {e}")
        return self._submit_one(record_id, now)

    def _submit_one(self, record_id: str, now: datetime) -> Optional[DeliveryStatus]:
        prepared = self._prepare(record_id, now)
        if prepared is None:
            return None
        status, item, first_deferral = prepared
        if item is None:
            self._count('rate_limited')
            if first_deferral:
                self._count('deferred')
            return status

        channel_queue = self.queues[item.channel]
        if channel_queue.put(item, timeout=self.config.enqueue_timeout_seconds):
            return status

        logger.warning(
            f"Backpressure on {channel_queue.channel.value}: record {record_id} held for "
            f"{self.config.backpressure_delay_seconds}s"
        )
        self._count('backpressure')
        self.tracker.hold_for_backpressure(
            record_id, now + timedelta(seconds=self.config.backpressure_delay_seconds), now
        )
        return status

    def _due_predecessors(self, record_id: str, now: datetime) -> List[str]:
        """Ids of older deferred records of the same user and channel that are due now."""
        with pipeline_uow(self.session_factory) as repo:
            record = repo.deliveries.get(record_id)
            if record is None or record.quota_window_start is not None:
                return []
            waiting = repo.deliveries.list_waiting_for_quota(
                record, _peer_priorities(Priority(record.priority)), due_by=now
            )
            return [older.id for older in waiting]

    @retry_on_conflict
    def _prepare(self, record_id: str, now: datetime) -> Optional[Tuple[DeliveryStatus, Optional[QueueItem], bool]]:
        with pipeline_uow(self.session_factory) as repo:
            record = repo.deliveries.get(record_id)
            if record is None or DeliveryStatus(record.status) not in DISPATCHABLE_STATUSES:
                return None

            priority = Priority(record.priority)
            if record.quota_window_start is None:
                # Quota goes to the oldest waiting record first
                ahead = repo.deliveries.list_waiting_for_quota(record, _peer_priorities(priority), limit=1)
                if ahead:
                    first_deferral = record.status == DeliveryStatus.PENDING.value
                    until = max(ahead[0].next_retry_at, now)
                    self.tracker.defer(record, until, now)
                    record.last_error = f"waiting behind deferred record {ahead[0].id}"
                    logger.info(f"Record {record.id} deferred behind {ahead[0].id} until {until.isoformat()}")
                    return DeliveryStatus.DEFERRED, None, first_deferral

                decision = self.rate_limiter.acquire(
                    repo,
                    record.user_id,
                    Channel(record.channel),
                    RatePolicy(record.rate_limit_max, record.rate_limit_window_seconds),
                    high_priority=priority == Priority.HIGH,
                    now=now,
                )
                if not decision.admitted:
                    first_deferral = record.status == DeliveryStatus.PENDING.value
                    self.tracker.defer(record, decision.window_end, now)
                    record.last_error = str(decision.deferral)
                    return DeliveryStatus.DEFERRED, None, first_deferral
                record.quota_window_start = decision.window_start

            self.tracker.hold(record, now + timedelta(seconds=self.config.lease_seconds), now)
            item = QueueItem(
                priority_rank=priority.rank,
                created_at=record.created_at,
                seq=next(self._seq),
                record_id=record.id,
                user_id=record.user_id,
                channel=Channel(record.channel),
                expected_attempt=record.attempt_count,
            )
            return DeliveryStatus(record.status), item, False

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _deliver(self, item: QueueItem) -> None:
        dto = self.tracker.mark_dispatched(item.record_id, item.expected_attempt, self.clock())
        if dto is None:
            return

        outcome, error, retry_after = self._attempt(dto)
        if self.metrics is not None:
            self.metrics.record_outcome(dto.channel.value, outcome.value)
        self.tracker.record_outcome(
            dto.id,
            outcome,
            error,
            self.clock(),
            expected_attempt=dto.attempt_count,
            retry_after=retry_after,
        )

    def _attempt(self, dto: DeliveryRecordDTO) -> Tuple[DeliveryOutcome, Optional[str], Optional[int]]:
        """Call the adapter with a bounded timeout and map everything to an outcome."""
        future = None
        try:
            adapter = self.registry.get(dto.channel)
            future = self.executors[dto.channel].submit(adapter.attempt_delivery, dto.user_id, dto.payload)
            outcome = DeliveryOutcome(future.result(timeout=self.config.adapter_timeout_seconds))
        except FutureTimeout:
            future.cancel()
            return (
                DeliveryOutcome.TRANSIENT_FAILURE,
                f"adapter timed out after {self.config.adapter_timeout_seconds}s",
                None,
            )
        except TransientChannelError as e:
            return DeliveryOutcome.TRANSIENT_FAILURE, str(e), e.retry_after
        except PermanentChannelError as e:
            return DeliveryOutcome.PERMANENT_FAILURE, str(e), None
        except Exception as e:
            logger.exception(f"Unexpected error from {dto.channel.value} adapter for {dto.id}")
            return DeliveryOutcome.TRANSIENT_FAILURE, f"unexpected adapter error: {e}", None

        if outcome == DeliveryOutcome.THROTTLED:
            return outcome, "throttled by provider", None
        return outcome, None, None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._started:
            return
        for channel_queue in self.queues.values():
            channel_queue.start()
        self._started = True
        logger.info(
            f"Dispatcher started: {len(self.queues)} channels x "
            f"{self.config.lanes_per_channel} lanes"
        )

    def process_queued(self) -> int:
        """
        Deliver everything currently queued.

        Runs on the calling thread when workers are not started; otherwise
        waits until the workers are idle.
        """
        if self._started:
            deadline = time.monotonic() + self.config.drain_timeout_seconds
            while not self.is_idle() and time.monotonic() < deadline:
                time.sleep(0.05)
            return 0
        return sum(channel_queue.drain() for channel_queue in self.queues.values())

    @property
    def running(self) -> bool:
        return self._started

    def is_idle(self) -> bool:
        return all(q.is_idle() for q in self.queues.values())

    def queue_depths(self) -> Dict[str, int]:
        return {channel.value: q.qsize() for channel, q in self.queues.items()}

    def stop_accepting(self) -> None:
        self._accepting = False

    def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """Stop accepting work, drain in-flight deliveries, stop workers."""
        self.stop_accepting()
        timeout = self.config.drain_timeout_seconds if drain_timeout is None else drain_timeout
        for channel_queue in self.queues.values():
            channel_queue.stop(timeout)
        for executor in self.executors.values():
            executor.shutdown(wait=True, cancel_futures=True)
        self._started = False
        logger.info("Dispatcher stopped")

    def _ensure_accepting(self) -> None:
        if not self._accepting:
            raise PipelineUnavailableError("Dispatcher is shutting down")

    def _count(self, stage: str) -> None:
        if self.metrics is not None:
            self.metrics.inc(stage)


def _peer_priorities(priority: Priority) -> List[str]:
    """Priorities a record of the given priority must not overtake."""
    return [p.value for p in Priority if p.rank <= priority.rank]
