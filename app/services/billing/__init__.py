from app.services.billing.customers import Customers, customers
from app.services.billing.idempotency import ProcessedEvents, processed_events
from app.services.billing.payments import Payments, payments
from app.services.billing.subscriptions import Subscriptions, subscriptions
from app.services.billing.webhooks import (
    WebhookOutcome,
    WebhookPayloadError,
    WebhookProcessingError,
    WebhookProcessor,
    parse_webhook,
)

__all__ = [
    "Customers",
    "Payments",
    "ProcessedEvents",
    "Subscriptions",
    "WebhookOutcome",
    "WebhookPayloadError",
    "WebhookProcessingError",
    "WebhookProcessor",
    "customers",
    "parse_webhook",
    "payments",
    "processed_events",
    "subscriptions",
]
