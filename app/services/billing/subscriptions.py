import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import Plan, Subscription, SubscriptionStatus
from app.services.common import dialect_insert

logger = logging.getLogger(__name__)

_ANY = frozenset(SubscriptionStatus)

# Transitions a processor event may apply. Anything else is a stale or
# out-of-order event and is ignored; canceled is terminal.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.incomplete: _ANY,
    SubscriptionStatus.trialing: frozenset(
        {
            SubscriptionStatus.active,
            SubscriptionStatus.past_due,
            SubscriptionStatus.canceled,
            SubscriptionStatus.unpaid,
        }
    ),
    SubscriptionStatus.active: frozenset(
        {
            SubscriptionStatus.trialing,
            SubscriptionStatus.past_due,
            SubscriptionStatus.canceled,
            SubscriptionStatus.unpaid,
        }
    ),
    SubscriptionStatus.past_due: frozenset(
        {
            SubscriptionStatus.active,
            SubscriptionStatus.canceled,
            SubscriptionStatus.unpaid,
        }
    ),
    SubscriptionStatus.unpaid: frozenset(
        {
            SubscriptionStatus.active,
            SubscriptionStatus.past_due,
            SubscriptionStatus.canceled,
        }
    ),
    SubscriptionStatus.canceled: frozenset(),
}

ENTITLED_STATUSES = frozenset({SubscriptionStatus.active, SubscriptionStatus.trialing})

# Processor statuses without a local equivalent.
_STATUS_ALIASES = {"incomplete_expired": SubscriptionStatus.canceled}


def parse_status(value: str) -> SubscriptionStatus | None:
    if value in _STATUS_ALIASES:
        return _STATUS_ALIASES[value]
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


class Subscriptions:
    @staticmethod
    def get_by_external_id(
        db: Session, external_subscription_id: str, *, lock: bool = False
    ) -> Subscription | None:
        # populate_existing would discard unflushed changes on a loaded row.
        db.flush()
        stmt = (
            select(Subscription)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        return db.scalars(stmt).first()

    @staticmethod
    def ensure(
        db: Session,
        external_subscription_id: str,
        user_id: str,
        external_customer_id: str | None = None,
        tenant_id: str | None = None,
    ) -> tuple[Subscription, bool]:
        """Create the row in ``incomplete`` if missing, then lock it.

        Returns the locked row and whether this call created it.
        """
        db.flush()
        stmt = (
            dialect_insert(db, Subscription)
            .values(
                external_subscription_id=external_subscription_id,
                user_id=user_id,
                external_customer_id=external_customer_id,
                tenant_id=tenant_id,
                status=SubscriptionStatus.incomplete,
                cancel_at_period_end=False,
            )
            .on_conflict_do_nothing(index_elements=["external_subscription_id"])
            .returning(Subscription.id)
        )
        created = db.execute(stmt).first() is not None
        subscription = Subscriptions.get_by_external_id(
            db, external_subscription_id, lock=True
        )
        if subscription is None:
            raise RuntimeError(
                f"Subscription {external_subscription_id} vanished after upsert"
            )
        if created:
            logger.info(
                "Created subscription %s", external_subscription_id,
                extra={"user_id": user_id},
            )
        return subscription, created

    @staticmethod
    def transition(subscription: Subscription, target: SubscriptionStatus) -> bool:
        """Apply ``target`` if allowed from the current status."""
        current = subscription.status
        if target == current:
            return False
        if target not in ALLOWED_TRANSITIONS[current]:
            logger.warning(
                "Ignoring subscription %s transition %s -> %s",
                subscription.external_subscription_id,
                current.value,
                target.value,
            )
            return False
        subscription.status = target
        logger.info(
            "Subscription %s transitioned %s -> %s",
            subscription.external_subscription_id,
            current.value,
            target.value,
        )
        return True

    @staticmethod
    def resolve_plan(db: Session, external_price_id: str | None) -> Plan | None:
        if not external_price_id:
            return None
        return db.scalars(
            select(Plan).where(Plan.external_price_id == external_price_id)
        ).first()


subscriptions = Subscriptions()
