"""Per-event state mutations.

Each handler runs inside the processor's transaction, after the event has
been claimed, and must converge to the same state whatever order related
events arrive in: rows are created with ``ON CONFLICT`` upserts, then
locked and mutated. Handlers never commit. Cache keys to drop are
collected on the context and invalidated by the processor after commit.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.models.billing import Subscription, SubscriptionStatus
from app.schemas.webhook import (
    CheckoutCompletedEvent,
    Invoice,
    InvoicePaidEvent,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
    from_timestamp,
)
from app.services.billing.customers import customers
from app.services.billing.payments import payments
from app.services.billing.subscriptions import (
    ENTITLED_STATUSES,
    parse_status,
    subscriptions,
)
from app.services.common import utcnow
from app.services.entitlements import entitlements

logger = logging.getLogger(__name__)

DEFAULT_RESET_PERIOD_DAYS = 30


class HandlerError(Exception):
    """The event cannot be applied yet; the delivery should be retried."""


class PlanResolutionError(HandlerError):
    pass


@dataclass
class HandlerContext:
    db: Session
    strict_plan_resolution: bool = False
    reset_period_days: int = DEFAULT_RESET_PERIOD_DAYS
    now: datetime = field(default_factory=utcnow)
    invalidations: set[tuple[str, uuid.UUID]] = field(default_factory=set)

    def invalidate(self, user_id: str, product_id: uuid.UUID) -> None:
        self.invalidations.add((user_id, product_id))


def _log_extra(event, user_id: str | None = None) -> dict:
    return {"event_id": event.id, "event_type": event.type, "user_id": user_id}


# ── checkout.session.completed ───────────────────────────


def handle_checkout_completed(ctx: HandlerContext, event: CheckoutCompletedEvent) -> None:
    session = event.data.object
    user_id = session.user_id
    if not user_id:
        raise HandlerError(f"Checkout session {session.id} has no user reference")
    if not session.customer:
        raise HandlerError(f"Checkout session {session.id} has no customer")

    customers.upsert(ctx.db, user_id, session.customer, session.email)
    if session.subscription:
        # Linkage only; status, plan and period arrive with the update event.
        tenant_id = session.metadata.get("tenant_id")
        subscription, _ = subscriptions.ensure(
            ctx.db,
            session.subscription,
            user_id=user_id,
            external_customer_id=session.customer,
            tenant_id=tenant_id,
        )
        if subscription.tenant_id is None and tenant_id:
            subscription.tenant_id = tenant_id
        if subscription.external_customer_id is None:
            subscription.external_customer_id = session.customer
    logger.info("Checkout completed", extra=_log_extra(event, user_id))


# ── customer.subscription.updated / created ──────────────


def _resolve_user_id(ctx: HandlerContext, payload) -> str | None:
    existing = subscriptions.get_by_external_id(ctx.db, payload.id)
    if existing is not None:
        return existing.user_id
    return payload.metadata.get("user_id") or customers.find_user_id(
        ctx.db, payload.customer
    )


def _apply_plan(ctx: HandlerContext, subscription: Subscription, price_id: str | None):
    plan = subscriptions.resolve_plan(ctx.db, price_id)
    if plan is not None:
        return plan
    if price_id is None:
        return subscription.plan
    if ctx.strict_plan_resolution or subscription.plan_id is None:
        raise PlanResolutionError(
            f"Price {price_id} does not match any plan "
            f"for subscription {subscription.external_subscription_id}"
        )
    logger.warning(
        "Price %s does not match any plan; keeping plan %s for subscription %s",
        price_id,
        subscription.plan_id,
        subscription.external_subscription_id,
    )
    return subscription.plan


def handle_subscription_updated(
    ctx: HandlerContext, event: SubscriptionUpdatedEvent
) -> None:
    payload = event.data.object
    user_id = _resolve_user_id(ctx, payload)
    if not user_id:
        raise HandlerError(f"Cannot resolve user for subscription {payload.id}")

    subscription, _ = subscriptions.ensure(
        ctx.db,
        payload.id,
        user_id=user_id,
        external_customer_id=payload.customer,
        tenant_id=payload.metadata.get("tenant_id"),
    )
    if subscription.status == SubscriptionStatus.canceled:
        logger.info(
            "Ignoring update for canceled subscription %s", payload.id,
            extra=_log_extra(event, user_id),
        )
        return

    previous_plan = subscription.plan
    plan = _apply_plan(ctx, subscription, payload.price_id)

    status = parse_status(payload.status)
    if status is None:
        logger.warning(
            "Unknown subscription status %r for %s", payload.status, payload.id,
            extra=_log_extra(event, user_id),
        )
    else:
        subscriptions.transition(subscription, status)

    if plan is not None:
        subscription.plan_id = plan.id
    if payload.customer:
        subscription.external_customer_id = payload.customer
    if payload.metadata.get("tenant_id"):
        subscription.tenant_id = payload.metadata["tenant_id"]
    if payload.current_period_start is not None:
        subscription.current_period_start = from_timestamp(payload.current_period_start)
    if payload.current_period_end is not None:
        subscription.current_period_end = from_timestamp(payload.current_period_end)
    subscription.cancel_at_period_end = payload.cancel_at_period_end
    if payload.canceled_at is not None:
        subscription.canceled_at = from_timestamp(payload.canceled_at)

    if subscription.status not in ENTITLED_STATUSES:
        return
    if plan is None:
        logger.warning(
            "Subscription %s is %s without a plan; no entitlement granted",
            payload.id,
            subscription.status.value,
            extra=_log_extra(event, user_id),
        )
        return

    if previous_plan is not None and previous_plan.product_id != plan.product_id:
        for moved in entitlements.revoke_linked(
            ctx.db, subscription.id, keep_product_id=plan.product_id
        ):
            ctx.invalidate(moved.user_id, moved.product_id)

    reset_at = subscription.current_period_end or ctx.now + timedelta(
        days=ctx.reset_period_days
    )
    entitlements.activate(
        ctx.db,
        user_id=user_id,
        product_id=plan.product_id,
        plan_id=plan.id,
        subscription_id=subscription.id,
        usage_reset_at=reset_at,
    )
    ctx.invalidate(user_id, plan.product_id)


# ── customer.subscription.deleted ────────────────────────


def handle_subscription_deleted(
    ctx: HandlerContext, event: SubscriptionDeletedEvent
) -> None:
    payload = event.data.object
    subscription = subscriptions.get_by_external_id(ctx.db, payload.id, lock=True)
    if subscription is None:
        logger.warning(
            "Subscription %s not found; nothing to cancel", payload.id,
            extra=_log_extra(event),
        )
        return

    subscription.status = SubscriptionStatus.canceled
    subscription.cancel_at_period_end = False
    subscription.canceled_at = (
        from_timestamp(payload.ended_at)
        or from_timestamp(payload.canceled_at)
        or ctx.now
    )
    for entitlement in entitlements.revoke_linked(ctx.db, subscription.id):
        ctx.invalidate(entitlement.user_id, entitlement.product_id)
    logger.info(
        "Subscription %s canceled", payload.id,
        extra=_log_extra(event, subscription.user_id),
    )


# ── invoice.paid ─────────────────────────────────────────


def _service_period(
    ctx: HandlerContext, invoice: Invoice
) -> tuple[datetime | None, datetime | None]:
    """Period paid for by the invoice.

    Line items carry it directly. Without them the invoice's own period
    looks back, so the paid period starts at ``period_end`` and runs one
    billing period forward.
    """
    if invoice.line_period is not None:
        start, end = invoice.line_period
        return from_timestamp(start), from_timestamp(end)
    if invoice.period_start is None or invoice.period_end is None:
        return None, None
    start = from_timestamp(invoice.period_end)
    length = invoice.period_end - invoice.period_start
    if length > 0:
        return start, start + timedelta(seconds=length)
    return start, start + timedelta(days=ctx.reset_period_days)


def handle_invoice_paid(ctx: HandlerContext, event: InvoicePaidEvent) -> None:
    invoice = event.data.object
    subscription = None
    if invoice.subscription:
        subscription = subscriptions.get_by_external_id(
            ctx.db, invoice.subscription, lock=True
        )
        if subscription is None:
            logger.warning(
                "Invoice %s references unknown subscription %s",
                invoice.id,
                invoice.subscription,
                extra=_log_extra(event),
            )

    user_id = customers.find_user_id(ctx.db, invoice.customer)
    if user_id is None and subscription is not None:
        user_id = subscription.user_id

    if subscription is not None:
        period_start, period_end = _service_period(ctx, invoice)
        if period_start is not None and period_end is not None:
            subscription.current_period_start = period_start
            subscription.current_period_end = period_end
        subscriptions.transition(subscription, SubscriptionStatus.active)
        if period_start is not None and period_end is not None:
            for entitlement in entitlements.roll_over(
                ctx.db, subscription.id, period_start, period_end
            ):
                ctx.invalidate(entitlement.user_id, entitlement.product_id)

    if user_id is None:
        logger.warning(
            "Invoice %s has no resolvable user; payment not recorded", invoice.id,
            extra=_log_extra(event),
        )
        return

    payments.record_invoice(
        ctx.db,
        user_id=user_id,
        external_invoice_id=invoice.id,
        subscription_id=subscription.id if subscription is not None else None,
        external_payment_intent_id=invoice.payment_intent,
        amount_paid=invoice.amount_paid,
        currency=invoice.currency,
        paid_at=invoice.paid_at or ctx.now,
    )


EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.paid": handle_invoice_paid,
}
