import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.billing import Customer
from app.services.common import dialect_insert, utcnow

logger = logging.getLogger(__name__)


class Customers:
    @staticmethod
    def upsert(
        db: Session, user_id: str, external_customer_id: str, email: str | None
    ) -> None:
        """Link ``user_id`` to the processor's customer, keyed on user_id."""
        insert = dialect_insert(db, Customer)
        stmt = insert.values(
            user_id=user_id,
            external_customer_id=external_customer_id,
            email=email,
        ).on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "external_customer_id": insert.excluded.external_customer_id,
                "email": func.coalesce(insert.excluded.email, Customer.email),
                "updated_at": utcnow(),
            },
        )
        db.execute(stmt)
        logger.info(
            "Upserted customer %s for user", external_customer_id,
            extra={"user_id": user_id},
        )

    @staticmethod
    def find_user_id(db: Session, external_customer_id: str | None) -> str | None:
        if not external_customer_id:
            return None
        return db.scalar(
            select(Customer.user_id).where(
                Customer.external_customer_id == external_customer_id
            )
        )


customers = Customers()
