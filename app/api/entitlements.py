"""End-user entitlement query and usage recording."""

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from sqlalchemy.orm import Session

from app.api.deps import get_cache, get_current_user_id, get_db
from app.schemas.entitlement import EntitlementRead, UsageCreate, UsageRead
from app.services.entitlement_cache import EntitlementCache
from app.services.entitlements import entitlements as entitlement_service
from app.services.usage import record_usage_event
from app.services.usage import usage as usage_service

router = APIRouter(prefix="/me", tags=["entitlements"])


@router.get("/entitlements", response_model=EntitlementRead)
def get_entitlement(
    response: Response,
    product_id: UUID = Query(...),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    cache: EntitlementCache = Depends(get_cache),
) -> EntitlementRead:
    snapshot, cached = entitlement_service.check(db, cache, user_id, product_id)
    response.headers["X-Cache"] = "HIT" if cached else "MISS"
    return snapshot


@router.post("/usage", response_model=UsageRead)
def record_usage(
    payload: UsageCreate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    cache: EntitlementCache = Depends(get_cache),
) -> UsageRead:
    result = usage_service.record(
        db, cache, user_id, payload.product_id, payload.amount
    )
    background_tasks.add_task(
        record_usage_event,
        user_id,
        payload.product_id,
        payload.amount,
        payload.usage_type,
        payload.metadata,
    )
    return result
