import logging
import uuid
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.config import settings
from app.db import SessionLocal
from app.metrics import USAGE_RECORDED
from app.models.entitlement import Entitlement, UsageEvent
from app.schemas.entitlement import UsageRead
from app.services.common import utcnow
from app.services.entitlement_cache import EntitlementCache
from app.services.entitlements import (
    Entitlements,
    effective_limits,
    is_expired,
    not_entitled,
)

logger = logging.getLogger(__name__)


class Usage:
    @staticmethod
    def record(
        db: Session,
        cache: EntitlementCache,
        user_id: str,
        product_id: uuid.UUID,
        amount: int = 1,
    ) -> UsageRead:
        """Add ``amount`` to the active entitlement's counter and drop its cache entry."""
        if amount < 1:
            raise ValueError("Usage amount must be a positive integer")
        entitlement = Entitlements.get_active(db, user_id, product_id, lock=True)
        if entitlement is None or is_expired(entitlement, utcnow()):
            db.rollback()
            raise not_entitled()
        # Increment in SQL so concurrent writers never lose an update.
        db.execute(
            update(Entitlement)
            .where(Entitlement.id == entitlement.id)
            .values(usage_count=Entitlement.usage_count + amount)
            .execution_options(synchronize_session=False)
        )
        db.refresh(entitlement)
        limit, soft_limit = effective_limits(
            entitlement, entitlement.plan, settings.default_soft_limit_percent
        )
        used = entitlement.usage_count
        db.commit()
        cache.invalidate(user_id, product_id)
        USAGE_RECORDED.inc(amount)
        logger.info(
            "Recorded %s usage (now %s/%s)", amount, used, limit,
            extra={"user_id": user_id, "product_id": str(product_id)},
        )
        return UsageRead(
            used=used,
            remaining=max(0, limit - used),
            over_limit=used > limit,
            soft_limit_remaining=max(0, soft_limit - used),
            over_soft_limit=used > soft_limit,
        )


def record_usage_event(
    user_id: str,
    product_id: uuid.UUID,
    amount: int,
    usage_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    """Append to the usage log after the response is sent.

    Runs as a background task with its own session; failures are logged
    and never reach the caller.
    """
    db = session_factory()
    try:
        db.add(
            UsageEvent(
                user_id=user_id,
                product_id=product_id,
                amount=amount,
                usage_type=usage_type,
                metadata_=metadata,
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "Failed to log usage event",
            extra={"user_id": user_id, "product_id": str(product_id)},
        )
    finally:
        db.close()


usage = Usage()
