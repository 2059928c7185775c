import logging
import os
from datetime import timedelta

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_EXPIRE_INTERVAL_SECONDS = 60 * 60


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "beat_max_loop_interval": _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5),
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
    }


def build_beat_schedule() -> dict:
    prune_seconds = max(
        _env_int("PRUNE_PROCESSED_EVENTS_INTERVAL_SECONDS", DEFAULT_PRUNE_INTERVAL_SECONDS),
        1,
    )
    expire_seconds = max(
        _env_int("EXPIRE_ENTITLEMENTS_INTERVAL_SECONDS", DEFAULT_EXPIRE_INTERVAL_SECONDS),
        1,
    )
    return {
        "prune_processed_events": {
            "task": "app.tasks.prune_processed_events",
            "schedule": timedelta(seconds=prune_seconds),
        },
        "expire_entitlements": {
            "task": "app.tasks.expire_entitlements",
            "schedule": timedelta(seconds=expire_seconds),
        },
    }
