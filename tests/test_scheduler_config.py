from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from app.services import scheduler_config


@pytest.fixture
def clear_scheduler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    keys = (
        "CELERY_BROKER_URL",
        "CELERY_RESULT_BACKEND",
        "CELERY_TIMEZONE",
        "CELERY_BEAT_MAX_LOOP_INTERVAL",
        "PRUNE_PROCESSED_EVENTS_INTERVAL_SECONDS",
        "EXPIRE_ENTITLEMENTS_INTERVAL_SECONDS",
        "REDIS_URL",
    )
    for key in keys:
        monkeypatch.delenv(key, raising=False)


def test_get_celery_config_prefers_explicit_values(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://fallback.example:6379/9")
    monkeypatch.setenv("CELERY_BROKER_URL", "redis://broker.example:6379/2")
    monkeypatch.setenv("CELERY_RESULT_BACKEND", "redis://backend.example:6379/3")
    monkeypatch.setenv("CELERY_TIMEZONE", "Africa/Lagos")
    monkeypatch.setenv("CELERY_BEAT_MAX_LOOP_INTERVAL", "11")

    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://broker.example:6379/2"
    assert config["result_backend"] == "redis://backend.example:6379/3"
    assert config["timezone"] == "Africa/Lagos"
    assert config["beat_max_loop_interval"] == 11
    assert config["task_acks_late"] is True


def test_get_celery_config_falls_back_to_redis(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://shared.example:6379/5")

    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://shared.example:6379/5"
    assert config["result_backend"] == "redis://shared.example:6379/5"
    assert config["timezone"] == "UTC"
    assert config["beat_max_loop_interval"] == 5


def test_get_celery_config_uses_local_defaults(clear_scheduler_env: None) -> None:
    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://localhost:6379/0"
    assert config["result_backend"] == "redis://localhost:6379/1"


def test_non_integer_env_is_ignored_with_warning(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CELERY_BEAT_MAX_LOOP_INTERVAL", "often")
    with patch.object(scheduler_config.logger, "warning") as logger_mock:
        config = scheduler_config.get_celery_config()

    assert config["beat_max_loop_interval"] == 5
    logger_mock.assert_called_once()


def test_build_beat_schedule_defaults(clear_scheduler_env: None) -> None:
    schedule = scheduler_config.build_beat_schedule()

    assert schedule == {
        "prune_processed_events": {
            "task": "app.tasks.prune_processed_events",
            "schedule": timedelta(days=1),
        },
        "expire_entitlements": {
            "task": "app.tasks.expire_entitlements",
            "schedule": timedelta(hours=1),
        },
    }


def test_build_beat_schedule_env_overrides_and_minimum(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("PRUNE_PROCESSED_EVENTS_INTERVAL_SECONDS", "600")
    monkeypatch.setenv("EXPIRE_ENTITLEMENTS_INTERVAL_SECONDS", "0")

    schedule = scheduler_config.build_beat_schedule()

    assert schedule["prune_processed_events"]["schedule"] == timedelta(seconds=600)
    assert schedule["expire_entitlements"]["schedule"] == timedelta(seconds=1)


def test_celery_app_uses_config_and_schedule() -> None:
    from app.celery_app import celery_app

    assert celery_app.main == "entitlement_sync"
    assert "expire_entitlements" in celery_app.conf.beat_schedule
    assert celery_app.conf.task_acks_late is True
