import logging
import uuid

from sqlalchemy.orm import Session

from app.models.entitlement import (
    EntitlementAuditAction,
    EntitlementAuditEntry,
    EntitlementStatus,
)
from app.schemas.entitlement import RevokeRead
from app.services.common import utcnow
from app.services.entitlement_cache import EntitlementCache
from app.services.entitlements import Entitlements, not_entitled

logger = logging.getLogger(__name__)

DEFAULT_REASON = "No reason provided"


class Revocations:
    @staticmethod
    def revoke(
        db: Session,
        cache: EntitlementCache,
        user_id: str,
        product_id: uuid.UUID,
        reason: str | None = None,
        performed_by: str = "system",
    ) -> RevokeRead:
        """Suspend the active entitlement and audit who did it and why.

        Raises 404 without writing anything when nothing is active.
        """
        entitlement = Entitlements.get_active(db, user_id, product_id, lock=True)
        if entitlement is None:
            db.rollback()
            raise not_entitled()
        revoked_at = utcnow()
        entitlement.status = EntitlementStatus.suspended
        db.add(
            EntitlementAuditEntry(
                entitlement_id=entitlement.id,
                user_id=user_id,
                product_id=product_id,
                action=EntitlementAuditAction.revoked,
                reason=reason or DEFAULT_REASON,
                performed_by=performed_by or "system",
            )
        )
        entitlement_id = entitlement.id
        db.commit()
        cache.invalidate(user_id, product_id)
        logger.info(
            "Suspended entitlement %s by %s", entitlement_id, performed_by,
            extra={"user_id": user_id, "product_id": str(product_id)},
        )
        return RevokeRead(
            entitlement_id=entitlement_id,
            user_id=user_id,
            product_id=product_id,
            status="suspended",
            revoked_at=revoked_at,
        )


revocations = Revocations()
