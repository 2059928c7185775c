"""Typed payment processor events.

Every inbound body is parsed into exactly one variant of
:data:`WebhookEvent`. Supported types get a typed ``data.object``;
anything else becomes :class:`UnrecognizedEvent` so new processor event
types are acknowledged instead of failing validation.
"""
from datetime import UTC, datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


def from_timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


class _Payload(BaseModel):
    # The processor adds fields over time; ignore what we don't read.
    model_config = ConfigDict(extra="ignore")


# ── Payloads ─────────────────────────────────────────────


class CustomerDetails(_Payload):
    email: str | None = None


class CheckoutSession(_Payload):
    id: str
    customer: str | None = None
    subscription: str | None = None
    client_reference_id: str | None = None
    customer_email: str | None = None
    customer_details: CustomerDetails | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("user_id") or self.client_reference_id

    @property
    def email(self) -> str | None:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


class Price(_Payload):
    id: str


class SubscriptionItem(_Payload):
    price: Price | None = None


class SubscriptionItems(_Payload):
    data: list[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(_Payload):
    id: str
    customer: str | None = None
    status: str
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    ended_at: int | None = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def price_id(self) -> str | None:
        for item in self.items.data:
            if item.price is not None:
                return item.price.id
        return None


class StatusTransitions(_Payload):
    paid_at: int | None = None


class LinePeriod(_Payload):
    start: int | None = None
    end: int | None = None


class InvoiceLine(_Payload):
    period: LinePeriod | None = None


class InvoiceLines(_Payload):
    data: list[InvoiceLine] = Field(default_factory=list)


class Invoice(_Payload):
    id: str
    customer: str | None = None
    subscription: str | None = None
    payment_intent: str | None = None
    amount_paid: int = 0
    currency: str = "usd"
    # Billing period just closed; a renewal issued at T1 covers [T0, T1].
    period_start: int | None = None
    period_end: int | None = None
    lines: InvoiceLines | None = None
    status_transitions: StatusTransitions | None = None

    @property
    def line_period(self) -> tuple[int, int] | None:
        """Service period the invoice pays for, taken from its line items."""
        periods = [
            line.period
            for line in (self.lines.data if self.lines else [])
            if line.period is not None
            and line.period.start is not None
            and line.period.end is not None
        ]
        if not periods:
            return None
        return min(p.start for p in periods), max(p.end for p in periods)

    @property
    def paid_at(self) -> datetime | None:
        if self.status_transitions is None:
            return None
        return from_timestamp(self.status_transitions.paid_at)


# ── Envelopes ────────────────────────────────────────────


class EventData(BaseModel, Generic[T]):
    object: T


class EventEnvelope(BaseModel):
    """Fields common to every processor event."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None


class CheckoutCompletedEvent(EventEnvelope):
    type: Literal["checkout.session.completed"]
    data: EventData[CheckoutSession]


class SubscriptionUpdatedEvent(EventEnvelope):
    type: Literal["customer.subscription.updated", "customer.subscription.created"]
    data: EventData[SubscriptionObject]


class SubscriptionDeletedEvent(EventEnvelope):
    type: Literal["customer.subscription.deleted"]
    data: EventData[SubscriptionObject]


class InvoicePaidEvent(EventEnvelope):
    type: Literal["invoice.paid"]
    data: EventData[Invoice]


class UnrecognizedEvent(EventEnvelope):
    data: dict[str, Any] = Field(default_factory=dict)


WebhookEvent = (
    CheckoutCompletedEvent
    | SubscriptionUpdatedEvent
    | SubscriptionDeletedEvent
    | InvoicePaidEvent
    | UnrecognizedEvent
)

EVENT_VARIANTS: dict[str, type[EventEnvelope]] = {
    "checkout.session.completed": CheckoutCompletedEvent,
    "customer.subscription.created": SubscriptionUpdatedEvent,
    "customer.subscription.updated": SubscriptionUpdatedEvent,
    "customer.subscription.deleted": SubscriptionDeletedEvent,
    "invoice.paid": InvoicePaidEvent,
}


def parse_event(body: dict[str, Any]) -> WebhookEvent:
    """Parse a decoded body into its variant.

    Raises ``pydantic.ValidationError`` when the envelope is malformed or a
    recognised type carries a payload that does not match its shape.
    """
    envelope = EventEnvelope.model_validate(body)
    variant = EVENT_VARIANTS.get(envelope.type, UnrecognizedEvent)
    return variant.model_validate(body)
