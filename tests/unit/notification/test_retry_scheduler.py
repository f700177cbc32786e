"""Tests for the retry scheduler's polling passes."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from core.exceptions import MatchingError, PipelineUnavailableError, TransientChannelError
from core.matcher.models import Channel
from database.models import DeliveryRecord, DeliveryStatus
from database.uow import pipeline_uow
from tests import T0


def seed_record(ctx, status=DeliveryStatus.PENDING, attempt_count=0, next_retry_at=T0,
                quota=True, user_id='u1', max_per_window=5,
                external_id='J-1', created_at=T0):
    with pipeline_uow(ctx.session_factory) as repo:
        record = repo.deliveries.create(DeliveryRecord(
            intent_key=f"{user_id}|jobboard:{external_id}|v1",
            user_id=user_id,
            channel='email',
            status=status.value,
            attempt_count=attempt_count,
            next_retry_at=next_retry_at,
            priority='normal',
            payload={'recipient': f"{user_id}@example.com", 'subject': 'New match'},
            rate_limit_max=max_per_window,
            rate_limit_window_seconds=86400,
            quota_window_start=T0 if quota else None,
            created_at=created_at,
            updated_at=created_at,
        ))
        return record.id


class TestRunOnce:

    def test_nothing_due(self, ctx):
        seed_record(ctx, DeliveryStatus.RETRY_SCHEDULED, attempt_count=1, next_retry_at=T0 + timedelta(minutes=5))

        result = ctx.scheduler.run_once()

        assert result.total == 0
        assert ctx.dispatcher.queue_depths()['email'] == 0

    def test_due_retry_is_resubmitted_and_delivered(self, ctx, clock, adapters):
        record_id = seed_record(ctx, DeliveryStatus.RETRY_SCHEDULED, attempt_count=1)
        clock.advance(seconds=1)

        assert ctx.scheduler.run_once().resubmitted == 1
        ctx.dispatcher.process_queued()

        dto = ctx.tracker.get(record_id)
        assert dto.status == 'DELIVERED'
        assert dto.attempt_count == 2
        assert len(adapters[Channel.EMAIL].sent) == 1

    def test_retry_does_not_consume_quota_again(self, ctx, clock):
        record_id = seed_record(ctx, DeliveryStatus.RETRY_SCHEDULED, attempt_count=1, max_per_window=1)
        pending_id = seed_record(ctx, DeliveryStatus.PENDING, quota=False, max_per_window=1,
                                 external_id='J-2', created_at=T0 + timedelta(seconds=1))

        ctx.scheduler.run_once(T0 + timedelta(seconds=2))
        ctx.dispatcher.process_queued()

        assert ctx.tracker.get(record_id).status == 'DELIVERED'
        assert ctx.tracker.get(pending_id).status == 'DELIVERED'
        assert ctx.metrics.get('rate_limited') == 0

    def test_expired_lease_counts_as_transient_failure(self, ctx, clock):
        record_id = seed_record(ctx, DeliveryStatus.PENDING)
        ctx.tracker.mark_dispatched(record_id, expected_attempt=0, now=T0)

        # Lease still running
        assert ctx.scheduler.run_once(T0 + timedelta(seconds=60)).expired_leases == 0

        later = T0 + timedelta(seconds=ctx.config.dispatch.lease_seconds + 1)
        result = ctx.scheduler.run_once(later)

        assert result.expired_leases == 1
        dto = ctx.tracker.get(record_id)
        assert dto.status == 'RETRY_SCHEDULED'
        assert dto.last_error == 'dispatch lease expired'
        assert dto.next_retry_at == later + timedelta(seconds=30)

    def test_stale_pending_record_is_recovered(self, ctx, adapters):
        # A queued record lost from memory keeps only its lease in the store
        record_id = seed_record(ctx, DeliveryStatus.PENDING, quota=False)

        assert ctx.scheduler.run_once().resubmitted == 1
        ctx.dispatcher.process_queued()

        assert ctx.tracker.get(record_id).status == 'DELIVERED'

    def test_event_recovery_runs_each_pass(self, ctx):
        ctx.scheduler.event_recovery = Mock(return_value=2)

        result = ctx.scheduler.run_once(T0)

        ctx.scheduler.event_recovery.assert_called_once_with(T0)
        assert result.rematched_events == 2
        assert result.total == 0

    def test_event_recovery_failure_does_not_block_retries(self, ctx):
        ctx.scheduler.event_recovery = Mock(side_effect=MatchingError('jobboard:J-9|v1', 'bad rule'))
        seed_record(ctx, DeliveryStatus.RETRY_SCHEDULED, attempt_count=1)

        result = ctx.scheduler.run_once(T0 + timedelta(seconds=1))

        assert result.rematched_events == 0
        assert result.resubmitted == 1

    def test_event_recovery_store_outage_propagates(self, ctx):
        ctx.scheduler.event_recovery = Mock(side_effect=PipelineUnavailableError("store down"))

        with pytest.raises(PipelineUnavailableError):
            ctx.scheduler.run_once(T0)

    def test_shutdown_dispatcher_propagates(self, ctx):
        seed_record(ctx, DeliveryStatus.RETRY_SCHEDULED, attempt_count=1)
        ctx.dispatcher.stop_accepting()

        with pytest.raises(PipelineUnavailableError):
            ctx.scheduler.run_once(T0 + timedelta(seconds=1))


class TestRunUntilIdle:

    def test_deferred_record_delivered_after_window(self, ctx, clock, adapters):
        record_id = seed_record(ctx, DeliveryStatus.DEFERRED, quota=False,
                                next_retry_at=T0 + timedelta(hours=14))
        clock.advance(hours=14)

        passes = ctx.scheduler.run_until_idle()

        assert passes == 2
        assert ctx.tracker.get(record_id).status == 'DELIVERED'

    def test_retries_until_dead_letter(self, ctx, clock, adapters):
        adapters[Channel.EMAIL].outcomes = [TransientChannelError("smtp unavailable")] * 10
        record_id = seed_record(ctx, DeliveryStatus.PENDING, quota=False)

        for _ in range(ctx.config.retry.max_attempts):
            ctx.scheduler.run_until_idle()
            clock.advance(hours=1)

        dto = ctx.tracker.get(record_id)
        assert dto.status == 'FAILED_PERMANENT'
        assert dto.attempt_count == ctx.config.retry.max_attempts
        assert len(adapters[Channel.EMAIL].sent) == ctx.config.retry.max_attempts
        assert ctx.metrics.get('retried') == ctx.config.retry.max_attempts - 1
        assert ctx.metrics.get('dead_lettered') == 1


class TestBackgroundLoop:

    def test_start_and_stop(self, ctx):
        ctx.scheduler.start()
        assert ctx.scheduler._thread is not None
        ctx.scheduler.stop(timeout=2)
        assert ctx.scheduler._thread is None
