import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from core.config_loader import AppConfig, PreferencesConfig
from core.matcher import MatcherService
from core.metrics import PipelineMetrics
from core.preferences import (
    FilePreferenceStore,
    HttpPreferenceStore,
    InMemoryPreferenceStore,
    PreferenceCache,
    PreferenceStore,
)
from database.database import build_engine, build_session_factory
from etl.ingestor import EventIngestor
from notification.channels import ChannelRegistry
from notification.dedup import DatabaseIdempotencyCache, IdempotencyCache, RedisIdempotencyCache
from notification.dispatcher import DeliveryDispatcher
from notification.rate_limiter import RateLimiter
from notification.reporting import DeliveryReporter
from notification.retry_scheduler import RetryScheduler
from notification.tracker import DeliveryTracker

logger = logging.getLogger(__name__)


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    This eliminates duplicate wiring code and provides a single source
    of truth for service instantiation. DB access should be obtained
    via pipeline_uow(ctx.session_factory) inside each operation.
    """
    config: AppConfig
    engine: Engine
    session_factory: sessionmaker
    clock: Callable[[], datetime]
    metrics: PipelineMetrics
    preferences: PreferenceCache
    ingestor: EventIngestor
    matcher: MatcherService
    dedup: IdempotencyCache
    rate_limiter: RateLimiter
    registry: ChannelRegistry
    tracker: DeliveryTracker
    dispatcher: DeliveryDispatcher
    scheduler: RetryScheduler

    @classmethod
    def build(
        cls,
        config: AppConfig,
        preference_store: Optional[PreferenceStore] = None,
        registry: Optional[ChannelRegistry] = None,
        reporter: Optional[DeliveryReporter] = None,
        clock: Optional[Callable[[], datetime]] = None,
        engine: Optional[Engine] = None,
        rng: Optional[random.Random] = None
    ) -> "AppContext":
        """Build an AppContext from config.

        Every collaborator can be injected (tests pass fakes and a fixed
        clock); anything not given is built from config.

        Returns:
            Fully wired AppContext instance (workers not started)
        """
        clock = clock or utc_clock
        engine = engine or build_engine(config.database.url, config.database.echo)
        session_factory = build_session_factory(engine)
        metrics = PipelineMetrics()

        store = preference_store or cls._build_preference_store(config.preferences)
        preferences = PreferenceCache(store, clock=clock)

        ingestor = EventIngestor(session_factory, metrics=metrics, clock=clock)
        matcher = MatcherService(
            config.matching,
            config.rate_limit,
            metrics=metrics,
            max_workers=config.ingestion.matcher_workers
        )

        dedup = cls._build_dedup(config)
        rate_limiter = RateLimiter(config.rate_limit.priority_override_cap)
        registry = registry or ChannelRegistry.from_config(
            config.channels, timeout=config.dispatch.adapter_timeout_seconds
        )
        tracker = DeliveryTracker(
            session_factory,
            config.retry,
            config.dispatch,
            reporter=reporter,
            metrics=metrics,
            rng=rng
        )
        dispatcher = DeliveryDispatcher(
            session_factory,
            registry,
            dedup,
            rate_limiter,
            tracker,
            config.dispatch,
            metrics=metrics,
            clock=clock
        )
        scheduler = RetryScheduler(session_factory, dispatcher, tracker, config.retry, clock=clock)

        return cls(
            config=config,
            engine=engine,
            session_factory=session_factory,
            clock=clock,
            metrics=metrics,
            preferences=preferences,
            ingestor=ingestor,
            matcher=matcher,
            dedup=dedup,
            rate_limiter=rate_limiter,
            registry=registry,
            tracker=tracker,
            dispatcher=dispatcher,
            scheduler=scheduler
        )

    @staticmethod
    def _build_preference_store(config: PreferencesConfig) -> PreferenceStore:
        """url takes precedence over file; with neither, an empty in-memory store."""
        if config.url:
            return HttpPreferenceStore(
                config.url,
                api_key=config.api_key,
                request_timeout_seconds=config.request_timeout_seconds
            )
        if config.file:
            return FilePreferenceStore(config.file)
        logger.warning("No preference source configured; using an empty in-memory store")
        return InMemoryPreferenceStore()

    @staticmethod
    def _build_dedup(config: AppConfig) -> IdempotencyCache:
        ttl = config.dedup.ttl_hours
        if config.dedup.backend == "redis":
            if not config.redis.url:
                logger.warning("dedup.backend is redis but no redis.url is set; using database dedup")
                return DatabaseIdempotencyCache(ttl)
            return RedisIdempotencyCache.from_url(config.redis.url, ttl)
        return DatabaseIdempotencyCache(ttl)

    def shutdown(self) -> None:
        """Release connections held by the context."""
        self.registry.close()
        if isinstance(self.dedup, RedisIdempotencyCache):
            self.dedup.close()
        self.engine.dispose()
