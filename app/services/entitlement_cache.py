"""Redis cache-aside store for entitlement snapshots.

Cache errors never propagate: a failed read is a miss and a failed write
or delete is logged and skipped, so the durable path always answers.
"""
from __future__ import annotations

import logging
from typing import Any

from redis.exceptions import RedisError

from app.metrics import ENTITLEMENT_CACHE
from app.schemas.entitlement import EntitlementRead

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "entitlement:"
DEFAULT_TTL_SECONDS = 60


def cache_key(user_id: str, product_id: Any) -> str:
    return f"{CACHE_KEY_PREFIX}{user_id}:{product_id}"


class EntitlementCache:
    def __init__(self, client: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._client = client
        self.ttl_seconds = ttl_seconds

    def get(self, user_id: str, product_id: Any) -> EntitlementRead | None:
        key = cache_key(user_id, product_id)
        try:
            raw = self._client.get(key)
        except RedisError as exc:
            ENTITLEMENT_CACHE.labels("error").inc()
            logger.warning("Entitlement cache get failed for %s: %s", key, exc)
            return None
        if not raw:
            ENTITLEMENT_CACHE.labels("miss").inc()
            return None
        try:
            snapshot = EntitlementRead.model_validate_json(raw)
        except ValueError as exc:
            ENTITLEMENT_CACHE.labels("error").inc()
            logger.warning("Discarding undecodable cache entry %s: %s", key, exc)
            self.invalidate(user_id, product_id)
            return None
        ENTITLEMENT_CACHE.labels("hit").inc()
        return snapshot

    def set(self, user_id: str, snapshot: EntitlementRead) -> None:
        key = cache_key(user_id, snapshot.product_id)
        try:
            self._client.setex(key, self.ttl_seconds, snapshot.model_dump_json())
        except RedisError as exc:
            logger.warning("Entitlement cache set failed for %s: %s", key, exc)

    def invalidate(self, user_id: str, product_id: Any) -> None:
        key = cache_key(user_id, product_id)
        try:
            self._client.delete(key)
        except RedisError as exc:
            logger.warning("Entitlement cache delete failed for %s: %s", key, exc)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError as exc:
            logger.warning("Entitlement cache ping failed: %s", exc)
            return False
