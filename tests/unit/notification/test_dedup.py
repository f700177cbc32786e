"""
Tests for intent deduplication, database-backed and Redis-fronted.
"""

import threading
from datetime import timedelta
from unittest.mock import Mock

from redis.exceptions import ConnectionError as RedisConnectionError

from core.matcher.models import Channel, NotificationIntentDTO, Priority, RatePolicy
from database.uow import pipeline_uow
from notification.dedup import DatabaseIdempotencyCache, RedisIdempotencyCache
from tests import T0


def intent(user_id='u1', version=1):
    return NotificationIntentDTO(
        user_id=user_id,
        event_ref='jobboard:J-1',
        event_version=version,
        reason_tags=('skills:python',),
        priority=Priority.NORMAL,
        channels=(Channel.EMAIL,),
        rate_policy=RatePolicy(5, 86400),
        created_at=T0,
    )


class TestDatabaseIdempotencyCache:

    def test_second_claim_within_ttl_loses(self, ctx):
        cache = DatabaseIdempotencyCache(ttl_hours=72)
        with pipeline_uow(ctx.session_factory) as repo:
            assert cache.claim(repo, intent(), T0) is True
        with pipeline_uow(ctx.session_factory) as repo:
            assert cache.claim(repo, intent(), T0 + timedelta(hours=71)) is False
            assert cache.claim(repo, intent(version=2), T0) is True
            assert cache.claim(repo, intent(user_id='u2'), T0) is True

    def test_claim_after_ttl_succeeds(self, ctx):
        cache = DatabaseIdempotencyCache(ttl_hours=1)
        with pipeline_uow(ctx.session_factory) as repo:
            cache.claim(repo, intent(), T0)
        with pipeline_uow(ctx.session_factory) as repo:
            assert cache.claim(repo, intent(), T0 + timedelta(hours=2)) is True

    def test_claim_rolls_back_with_unit_of_work(self, ctx):
        cache = DatabaseIdempotencyCache()
        try:
            with pipeline_uow(ctx.session_factory) as repo:
                cache.claim(repo, intent(), T0)
                raise RuntimeError("record creation failed")
        except RuntimeError:
            pass
        with pipeline_uow(ctx.session_factory) as repo:
            assert cache.claim(repo, intent(), T0) is True

    def test_concurrent_claims_have_one_winner(self, ctx):
        cache = DatabaseIdempotencyCache()
        workers = 6
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def claim():
            barrier.wait()
            with pipeline_uow(ctx.session_factory) as repo:
                claimed = cache.claim(repo, intent(), T0)
            with lock:
                outcomes.append(claimed)

        threads = [threading.Thread(target=claim) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == [False] * (workers - 1) + [True]


class TestRedisIdempotencyCache:

    def test_set_nx_then_database(self):
        redis = Mock()
        redis.set.return_value = True
        fallback = Mock()
        fallback.claim.return_value = True
        cache = RedisIdempotencyCache(redis, ttl_hours=2, fallback=fallback)
        repo = Mock()

        assert cache.claim(repo, intent(), T0) is True

        redis.set.assert_called_once_with(
            'opportunity:intent:u1|jobboard:J-1|v1', T0.isoformat(), nx=True, ex=7200
        )
        fallback.claim.assert_called_once_with(repo, intent(), T0)

    def test_redis_duplicate_short_circuits(self):
        redis = Mock()
        redis.set.return_value = None
        fallback = Mock()
        cache = RedisIdempotencyCache(redis, fallback=fallback)

        assert cache.claim(Mock(), intent(), T0) is False
        fallback.claim.assert_not_called()

    def test_redis_outage_falls_back_to_database(self, ctx):
        redis = Mock()
        redis.set.side_effect = RedisConnectionError("connection refused")
        cache = RedisIdempotencyCache(redis)

        with pipeline_uow(ctx.session_factory) as repo:
            assert cache.claim(repo, intent(), T0) is True
        with pipeline_uow(ctx.session_factory) as repo:
            assert cache.claim(repo, intent(), T0) is False

    def test_release_deletes_key(self):
        redis = Mock()
        cache = RedisIdempotencyCache(redis)
        cache.release(intent())
        redis.delete.assert_called_once_with('opportunity:intent:u1|jobboard:J-1|v1')

    def test_release_tolerates_outage(self):
        redis = Mock()
        redis.delete.side_effect = RedisConnectionError("down")
        RedisIdempotencyCache(redis).release(intent())
