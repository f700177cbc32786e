"""
Pytest fixtures.

Every test that needs the store gets its own SQLite file under tmp_path and
a fully wired AppContext with test-double channel adapters and a fixed clock.
"""

import random

import pytest

from core.app_context import AppContext
from core.config_loader import (
    AppConfig,
    DatabaseConfig,
    DispatchConfig,
    RetryConfig,
)
from core.matcher.models import Channel
from core.preferences import InMemoryPreferenceStore
from database.database import init_db
from notification.channels import ChannelRegistry
from pipeline.runner import OpportunityPipeline
from tests import FakeClock, RecordingChannel


def make_config(tmp_path, **sections) -> AppConfig:
    defaults = {
        'database': DatabaseConfig(url=f"sqlite:///{tmp_path / 'pipeline.db'}"),
        'retry': RetryConfig(jitter_ratio=0.0, max_attempts=4),
        'dispatch': DispatchConfig(enqueue_timeout_seconds=0.05, adapter_timeout_seconds=2.0),
    }
    defaults.update(sections)
    return AppConfig(**defaults)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app_config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def adapters():
    return {channel: RecordingChannel(channel) for channel in Channel}


@pytest.fixture
def registry(adapters):
    registry = ChannelRegistry()
    for adapter in adapters.values():
        registry.register(adapter)
    return registry


@pytest.fixture
def preference_store():
    return InMemoryPreferenceStore()


@pytest.fixture
def ctx(app_config, preference_store, registry, clock):
    context = AppContext.build(
        app_config,
        preference_store=preference_store,
        registry=registry,
        clock=clock,
        rng=random.Random(7)
    )
    init_db(context.engine)
    yield context
    context.dispatcher.shutdown(drain_timeout=0)
    context.shutdown()


@pytest.fixture
def pipeline(ctx):
    return OpportunityPipeline(ctx)
