"""Handlers converge to the same state whatever order related events arrive in."""

import itertools

import pytest
from sqlalchemy import select

from app.models.billing import Customer, Payment, Subscription
from app.models.entitlement import Entitlement
from app.services.common import as_utc


def _state(db_session, user_id: str, sub_id: str) -> dict:
    """Snapshot one run's rows with its identifiers stripped out."""
    db_session.expire_all()
    subscription = db_session.scalars(
        select(Subscription).where(Subscription.external_subscription_id == sub_id)
    ).one()
    customer = db_session.scalars(
        select(Customer).where(Customer.user_id == user_id)
    ).first()
    return {
        "subscription": (
            subscription.user_id == user_id,
            subscription.external_customer_id is not None,
            subscription.status,
            subscription.plan_id,
            as_utc(subscription.current_period_start),
            as_utc(subscription.current_period_end),
            subscription.cancel_at_period_end,
        ),
        "customer": customer.email if customer is not None else None,
        "entitlements": sorted(
            (
                str(e.product_id),
                str(e.plan_id),
                e.status.value,
                e.subscription_id == subscription.id,
                e.usage_count,
                as_utc(e.usage_reset_at),
            )
            for e in db_session.scalars(
                select(Entitlement).where(Entitlement.user_id == user_id)
            )
        ),
        "payments": sorted(
            (p.amount_paid, p.status.value, p.subscription_id == subscription.id)
            for p in db_session.scalars(
                select(Payment).where(Payment.user_id == user_id)
            )
        ),
    }


def _bodies(events, run: int, kinds: tuple[str, ...]) -> list[dict]:
    ids = dict(user_id=f"user_{run}", customer=f"cus_{run}")
    sub_id = f"sub_{run}"
    builders = {
        "checkout": lambda: events.checkout(f"evt_c_{run}", subscription=sub_id, **ids),
        "update": lambda: events.subscription(f"evt_s_{run}", sub_id=sub_id, **ids),
        "invoice": lambda: events.invoice(
            f"evt_i_{run}",
            invoice_id=f"in_{run}",
            customer=ids["customer"],
            subscription=sub_id,
        ),
    }
    return [builders[kind]() for kind in kinds]


def _run(db_session, process, events, run: int, kinds: tuple[str, ...]) -> dict:
    for body in _bodies(events, run, kinds):
        process(body)
    return _state(db_session, f"user_{run}", f"sub_{run}")


def test_checkout_and_update_converge_in_either_order(db_session, process, events, plan):
    forward = _run(db_session, process, events, 1, ("checkout", "update"))
    reverse = _run(db_session, process, events, 2, ("update", "checkout"))

    assert forward == reverse
    assert forward["subscription"][2].value == "active"
    assert forward["customer"] == "buyer@example.com"
    assert forward["entitlements"][0][2] == "active"


def test_invoice_converges_before_or_after_update(db_session, process, events, plan):
    after = _run(db_session, process, events, 1, ("checkout", "update", "invoice"))
    before = _run(db_session, process, events, 2, ("checkout", "invoice", "update"))

    assert after == before
    assert after["payments"] == [(1999, "succeeded", True)]


@pytest.mark.parametrize(
    "kinds",
    [
        order
        for order in itertools.permutations(("checkout", "update", "invoice"))
        if order.index("checkout") < order.index("invoice")
    ],
)
def test_permutations_with_known_customer_converge(
    db_session, process, events, plan, kinds
):
    baseline = _run(db_session, process, events, 0, ("checkout", "update", "invoice"))
    permuted = _run(db_session, process, events, 1, kinds)

    assert permuted == baseline


def test_redelivered_update_after_checkout_is_stable(db_session, process, events, plan):
    first = _run(db_session, process, events, 1, ("update", "checkout"))
    for body in _bodies(events, 1, ("update", "checkout")):
        process(body)

    assert _state(db_session, "user_1", "sub_1") == first
