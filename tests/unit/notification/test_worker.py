"""Tests for the standalone delivery worker."""

from datetime import timedelta
from unittest.mock import patch

import yaml

from core.app_context import AppContext
from core.config_loader import load_config
from database.database import init_db
from database.models import DeliveryRecord, DeliveryStatus
from database.uow import pipeline_uow
from notification.worker import start_worker
from tests import T0


def write_config(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump({
        'database': {'url': f"sqlite:///{tmp_path / 'worker.db'}"},
        'channels': {'dry_run': True},
    }))
    return str(path)


def seed_due_retry(config_path):
    ctx = AppContext.build(load_config(config_path))
    try:
        init_db(ctx.engine)
        with pipeline_uow(ctx.session_factory) as repo:
            record = repo.deliveries.create(DeliveryRecord(
                intent_key='u1|jobboard:J-1|v1',
                user_id='u1',
                channel='email',
                status=DeliveryStatus.RETRY_SCHEDULED.value,
                attempt_count=1,
                next_retry_at=T0 - timedelta(minutes=1),
                priority='normal',
                payload={'recipient': 'u1@example.com', 'subject': 'New match', 'body': 'Hello'},
                rate_limit_max=5,
                rate_limit_window_seconds=86400,
                quota_window_start=T0,
                created_at=T0 - timedelta(minutes=5),
                updated_at=T0 - timedelta(minutes=5),
            ))
            record_id = record.id
    finally:
        ctx.shutdown()
    return record_id


def test_burst_delivers_due_records(tmp_path, monkeypatch):
    monkeypatch.delenv('DATABASE_URL', raising=False)
    monkeypatch.delenv('NOTIFICATION_DRY_RUN', raising=False)
    config_path = write_config(tmp_path)
    record_id = seed_due_retry(config_path)

    assert start_worker(config_path, burst=True) == 0

    ctx = AppContext.build(load_config(config_path))
    try:
        dto = ctx.tracker.get(record_id)
    finally:
        ctx.shutdown()
    assert dto.status == 'DELIVERED'
    assert dto.attempt_count == 2


def test_burst_with_nothing_due(tmp_path, monkeypatch):
    monkeypatch.delenv('DATABASE_URL', raising=False)
    config_path = write_config(tmp_path)

    with patch('notification.worker.signal.signal') as mock_signal:
        assert start_worker(config_path, burst=True) == 0
    mock_signal.assert_not_called()
