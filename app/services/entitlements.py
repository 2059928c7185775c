"""Entitlement store, limit arithmetic and the cached entitlement query."""

import logging
import math
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import error_detail
from app.models.billing import Plan
from app.models.entitlement import (
    ACTIVE_ENTITLEMENT_PREDICATE,
    Entitlement,
    EntitlementAuditAction,
    EntitlementAuditEntry,
    EntitlementStatus,
)
from app.schemas.entitlement import (
    EntitlementRead,
    GrantRead,
    GrantRequest,
    UsageSnapshot,
)
from app.services.common import as_utc, dialect_insert, utcnow
from app.services.entitlement_cache import EntitlementCache

logger = logging.getLogger(__name__)


def not_entitled() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=error_detail(
            "entitlement_not_found", "No active entitlement for this product"
        ),
    )


# ── Limit arithmetic ─────────────────────────────────────


def effective_limits(
    entitlement: Entitlement,
    plan: Plan | None,
    default_soft_limit_percent: float,
) -> tuple[int, int]:
    """Return ``(limit, soft_limit)``; entitlement overrides win over the plan."""
    if entitlement.usage_limit is not None:
        limit = entitlement.usage_limit
    elif plan is not None:
        limit = plan.usage_limit or 0
    else:
        limit = 0
    if entitlement.soft_limit:
        return limit, entitlement.soft_limit
    percent = default_soft_limit_percent
    if plan is not None and plan.soft_limit_percent is not None:
        percent = plan.soft_limit_percent
    soft_limit = math.floor(Decimal(limit) * (1 + Decimal(str(percent))))
    return limit, soft_limit


def is_expired(entitlement: Entitlement, now: datetime) -> bool:
    valid_until = as_utc(entitlement.valid_until)
    return valid_until is not None and valid_until <= now


def build_snapshot(
    entitlement: Entitlement,
    plan: Plan | None,
    default_soft_limit_percent: float,
) -> EntitlementRead:
    limit, soft_limit = effective_limits(entitlement, plan, default_soft_limit_percent)
    used = entitlement.usage_count or 0
    features = dict(plan.feature_flags or {}) if plan is not None else {}
    features.update(entitlement.feature_flags or {})
    return EntitlementRead(
        entitlement_id=entitlement.id,
        product_id=entitlement.product_id,
        plan_id=entitlement.plan_id,
        status=entitlement.status.value,
        features=features,
        usage=UsageSnapshot(
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            soft_limit=soft_limit,
            reset_at=as_utc(entitlement.usage_reset_at),
        ),
        valid_until=as_utc(entitlement.valid_until),
        over_limit=used > limit,
        over_soft_limit=used > soft_limit,
    )


# ── Store ────────────────────────────────────────────────


class Entitlements:
    @staticmethod
    def get_active(
        db: Session, user_id: str, product_id: uuid.UUID, *, lock: bool = False
    ) -> Entitlement | None:
        db.flush()
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.user_id == user_id,
                Entitlement.product_id == product_id,
                Entitlement.status == EntitlementStatus.active,
            )
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        return db.scalars(stmt).first()

    @staticmethod
    def activate(
        db: Session,
        *,
        user_id: str,
        product_id: uuid.UUID,
        plan_id: uuid.UUID,
        subscription_id: uuid.UUID | None = None,
        usage_reset_at: datetime | None = None,
    ) -> tuple[Entitlement, bool]:
        """Upsert the single active row for (user, product) and lock it.

        An existing active row keeps its usage; only the plan and the
        subscription link move. Linking a subscription clears any grant
        expiry, since the subscription now bounds access. Returns the row
        and whether it was created.
        """
        db.flush()
        stmt = (
            dialect_insert(db, Entitlement)
            .values(
                user_id=user_id,
                product_id=product_id,
                plan_id=plan_id,
                subscription_id=subscription_id,
                status=EntitlementStatus.active,
                usage_count=0,
                usage_reset_at=usage_reset_at,
            )
            .on_conflict_do_nothing(
                index_elements=["user_id", "product_id"],
                index_where=ACTIVE_ENTITLEMENT_PREDICATE,
            )
            .returning(Entitlement.id)
        )
        created = db.execute(stmt).first() is not None
        entitlement = Entitlements.get_active(db, user_id, product_id, lock=True)
        if entitlement is None:
            raise RuntimeError(
                f"Active entitlement for {user_id}/{product_id} vanished after upsert"
            )
        entitlement.plan_id = plan_id
        if subscription_id is not None:
            entitlement.subscription_id = subscription_id
            entitlement.valid_until = None
        logger.info(
            "%s entitlement %s",
            "Created" if created else "Updated",
            entitlement.id,
            extra={"user_id": user_id, "product_id": str(product_id)},
        )
        return entitlement, created

    @staticmethod
    def linked_to_subscription(
        db: Session, subscription_id: uuid.UUID
    ) -> list[Entitlement]:
        db.flush()
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.subscription_id == subscription_id,
                Entitlement.status == EntitlementStatus.active,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def revoke_linked(
        db: Session,
        subscription_id: uuid.UUID,
        *,
        keep_product_id: uuid.UUID | None = None,
    ) -> list[Entitlement]:
        """Revoke the subscription's active entitlements, optionally sparing one product."""
        revoked = []
        for entitlement in Entitlements.linked_to_subscription(db, subscription_id):
            if keep_product_id is not None and entitlement.product_id == keep_product_id:
                continue
            entitlement.status = EntitlementStatus.revoked
            revoked.append(entitlement)
            logger.info(
                "Revoked entitlement %s", entitlement.id,
                extra={
                    "user_id": entitlement.user_id,
                    "product_id": str(entitlement.product_id),
                },
            )
        return revoked

    @staticmethod
    def roll_over(
        db: Session,
        subscription_id: uuid.UUID,
        period_start: datetime,
        period_end: datetime,
    ) -> list[Entitlement]:
        """Reset usage when a new billing period has started."""
        rolled = []
        for entitlement in Entitlements.linked_to_subscription(db, subscription_id):
            reset_at = as_utc(entitlement.usage_reset_at)
            if reset_at is not None and period_start < reset_at:
                continue
            entitlement.usage_count = 0
            entitlement.usage_reset_at = period_end
            rolled.append(entitlement)
            logger.info(
                "Rolled over usage for entitlement %s", entitlement.id,
                extra={"user_id": entitlement.user_id},
            )
        return rolled

    @staticmethod
    def expire_lapsed(
        db: Session, now: datetime | None = None
    ) -> list[tuple[str, uuid.UUID]]:
        """Move active entitlements past ``valid_until`` to expired and commit.

        Returns the (user_id, product_id) pairs whose cache entries are stale.
        """
        now = now or utcnow()
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.status == EntitlementStatus.active,
                Entitlement.valid_until.is_not(None),
                Entitlement.valid_until <= now,
            )
            .with_for_update(skip_locked=True)
        )
        keys = []
        for entitlement in db.scalars(stmt).all():
            entitlement.status = EntitlementStatus.expired
            keys.append((entitlement.user_id, entitlement.product_id))
        db.commit()
        if keys:
            logger.info("Expired %s lapsed entitlements", len(keys))
        return keys

    # ── Query and grant ──────────────────────────────────

    @staticmethod
    def check(
        db: Session,
        cache: EntitlementCache,
        user_id: str,
        product_id: uuid.UUID,
    ) -> tuple[EntitlementRead, bool]:
        """Cache-aside read. Returns the snapshot and whether it came from cache."""
        cached = cache.get(user_id, product_id)
        if cached is not None:
            return cached, True
        entitlement = Entitlements.get_active(db, user_id, product_id)
        if entitlement is None or is_expired(entitlement, utcnow()):
            raise not_entitled()
        snapshot = build_snapshot(
            entitlement, entitlement.plan, settings.default_soft_limit_percent
        )
        cache.set(user_id, snapshot)
        return snapshot, False

    @staticmethod
    def grant(
        db: Session,
        cache: EntitlementCache,
        payload: GrantRequest,
        *,
        reset_period_days: int | None = None,
    ) -> GrantRead:
        plan = db.scalars(
            select(Plan).where(
                Plan.id == payload.plan_id,
                Plan.product_id == payload.product_id,
                Plan.is_active.is_(True),
            )
        ).first()
        if plan is None:
            raise HTTPException(
                status_code=404,
                detail=error_detail(
                    "plan_not_found", "Plan not found or inactive for product"
                ),
            )
        days = reset_period_days or settings.usage_reset_period_days
        now = utcnow()
        entitlement, created = Entitlements.activate(
            db,
            user_id=payload.user_id,
            product_id=payload.product_id,
            plan_id=plan.id,
            usage_reset_at=now + timedelta(days=days),
        )
        entitlement.usage_limit = payload.usage_limit
        entitlement.soft_limit = payload.soft_limit
        entitlement.feature_flags = payload.feature_flags
        entitlement.valid_until = payload.valid_until
        db.add(
            EntitlementAuditEntry(
                entitlement_id=entitlement.id,
                user_id=payload.user_id,
                product_id=payload.product_id,
                action=EntitlementAuditAction.granted,
                reason="created" if created else "updated",
                performed_by=payload.performed_by,
            )
        )
        db.commit()
        cache.invalidate(payload.user_id, payload.product_id)
        return GrantRead(
            entitlement_id=entitlement.id,
            user_id=payload.user_id,
            product_id=payload.product_id,
            plan_id=plan.id,
            status="active",
            granted_at=now,
        )


entitlements = Entitlements()
