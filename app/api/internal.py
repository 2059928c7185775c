"""Service-to-service administration: grant, revoke, webhook stats."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_cache, get_db, require_internal_key
from app.schemas.entitlement import (
    GrantRead,
    GrantRequest,
    RevokeRead,
    RevokeRequest,
    WebhookStatsRead,
    WebhookTypeCount,
)
from app.services.billing.idempotency import processed_events
from app.services.entitlement_cache import EntitlementCache
from app.services.entitlements import entitlements as entitlement_service
from app.services.revocation import revocations

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)


@router.post("/entitlements/grant", response_model=GrantRead, status_code=201)
def grant_entitlement(
    payload: GrantRequest,
    db: Session = Depends(get_db),
    cache: EntitlementCache = Depends(get_cache),
) -> GrantRead:
    return entitlement_service.grant(db, cache, payload)


@router.post("/entitlements/revoke", response_model=RevokeRead)
def revoke_entitlement(
    payload: RevokeRequest,
    db: Session = Depends(get_db),
    cache: EntitlementCache = Depends(get_cache),
) -> RevokeRead:
    return revocations.revoke(
        db,
        cache,
        payload.user_id,
        payload.product_id,
        reason=payload.reason,
        performed_by=payload.performed_by,
    )


@router.get("/webhooks/stats", response_model=WebhookStatsRead)
def webhook_stats(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    db: Session = Depends(get_db),
) -> WebhookStatsRead:
    rows = processed_events.stats(db, hours=hours)
    return WebhookStatsRead(
        hours=hours,
        total=sum(count for _, count in rows),
        by_type=[
            WebhookTypeCount(event_type=event_type, count=count)
            for event_type, count in rows
        ],
    )
