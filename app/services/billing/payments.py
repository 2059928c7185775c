import logging
import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.billing import Payment, PaymentStatus
from app.services.common import dialect_insert

logger = logging.getLogger(__name__)


class Payments:
    @staticmethod
    def record_invoice(
        db: Session,
        *,
        user_id: str,
        external_invoice_id: str,
        subscription_id: uuid.UUID | None,
        external_payment_intent_id: str | None,
        amount_paid: int,
        currency: str,
        paid_at: datetime,
    ) -> None:
        """Upsert the payment keyed by invoice; a replay refreshes status only."""
        insert = dialect_insert(db, Payment)
        stmt = insert.values(
            user_id=user_id,
            subscription_id=subscription_id,
            external_invoice_id=external_invoice_id,
            external_payment_intent_id=external_payment_intent_id,
            amount_paid=amount_paid,
            currency=currency,
            status=PaymentStatus.succeeded,
            paid_at=paid_at,
        ).on_conflict_do_update(
            index_elements=["external_invoice_id"],
            set_={
                "status": insert.excluded.status,
                "paid_at": insert.excluded.paid_at,
            },
        )
        db.execute(stmt)
        logger.info(
            "Recorded payment for invoice %s", external_invoice_id,
            extra={"user_id": user_id},
        )


payments = Payments()
