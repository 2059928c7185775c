"""Periodic maintenance run by Celery beat.

Run with::

    celery -A app.celery_app worker --beat
"""
import logging

import redis

from app.celery_app import celery_app
from app.config import settings
from app.db import SessionLocal
from app.services.billing.idempotency import processed_events
from app.services.entitlement_cache import EntitlementCache
from app.services.entitlements import entitlements

logger = logging.getLogger(__name__)

_CACHE: EntitlementCache | None = None


def _cache() -> EntitlementCache:
    """One redis client per worker process, reused across task runs."""
    global _CACHE
    if _CACHE is not None:
        return _CACHE
    client = redis.Redis.from_url(
        settings.redis_url, decode_responses=True, socket_timeout=2
    )
    _CACHE = EntitlementCache(client, ttl_seconds=settings.entitlement_cache_ttl_seconds)
    return _CACHE


@celery_app.task(name="app.tasks.prune_processed_events")
def prune_processed_events(older_than_days: int | None = None) -> int:
    days = older_than_days or settings.processed_event_retention_days
    db = SessionLocal()
    try:
        return processed_events.prune(db, older_than_days=days)
    finally:
        db.close()


@celery_app.task(name="app.tasks.expire_entitlements")
def expire_entitlements() -> int:
    cache = _cache()
    db = SessionLocal()
    try:
        keys = entitlements.expire_lapsed(db)
    finally:
        db.close()
    for user_id, product_id in keys:
        cache.invalidate(user_id, product_id)
    return len(keys)
