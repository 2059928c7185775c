"""Exactly-once application of payment processor events.

Processing order inside one transaction:

1. claim the event id (``processed_events``);
2. dispatch to the handler for the event's type;
3. check the processing deadline;
4. commit, then drop the cache keys the handler touched.

A duplicate claim rolls back and is acknowledged. Any failure rolls back
the claim together with the handler's writes, so a redelivery starts
from scratch.
"""

import enum
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.metrics import WEBHOOK_EVENTS, WEBHOOK_PROCESSING_LATENCY
from app.schemas.webhook import UnrecognizedEvent, WebhookEvent, parse_event
from app.services.billing.handlers import EVENT_HANDLERS, HandlerContext
from app.services.billing.idempotency import processed_events
from app.services.entitlement_cache import EntitlementCache

logger = logging.getLogger(__name__)

DEFAULT_PROCESSING_TIMEOUT_SECONDS = 25.0


class WebhookOutcome(str, enum.Enum):
    processed = "processed"
    duplicate = "duplicate"
    ignored = "ignored"


class WebhookPayloadError(Exception):
    """The body is not a well-formed event; retrying will not help."""


class WebhookProcessingError(Exception):
    """Processing failed and was rolled back; the sender should retry."""


class ProcessingTimeoutError(Exception):
    pass


def parse_webhook(body: dict[str, Any]) -> WebhookEvent:
    try:
        return parse_event(body)
    except ValidationError as exc:
        raise WebhookPayloadError(str(exc)) from exc


class WebhookProcessor:
    def __init__(
        self,
        db: Session,
        cache: EntitlementCache,
        *,
        handlers: Mapping[str, Callable] | None = None,
        processing_timeout_seconds: float = DEFAULT_PROCESSING_TIMEOUT_SECONDS,
        strict_plan_resolution: bool = False,
        reset_period_days: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.cache = cache
        self.handlers = EVENT_HANDLERS if handlers is None else handlers
        self.processing_timeout_seconds = processing_timeout_seconds
        self.strict_plan_resolution = strict_plan_resolution
        self.reset_period_days = reset_period_days
        self.clock = clock

    def process(self, event: WebhookEvent) -> WebhookOutcome:
        extra = {"event_id": event.id, "event_type": event.type}
        started = self.clock()
        ctx = HandlerContext(
            db=self.db,
            strict_plan_resolution=self.strict_plan_resolution,
            reset_period_days=self.reset_period_days,
        )
        try:
            self._apply_statement_timeout()
            if not processed_events.claim(self.db, event.id, event.type):
                self.db.rollback()
                WEBHOOK_EVENTS.labels(event.type, WebhookOutcome.duplicate.value).inc()
                return WebhookOutcome.duplicate

            handler = self.handlers.get(event.type)
            if handler is None or isinstance(event, UnrecognizedEvent):
                outcome = WebhookOutcome.ignored
                logger.info("Acknowledging unhandled event type", extra=extra)
            else:
                outcome = WebhookOutcome.processed
                handler(ctx, event)

            elapsed = self.clock() - started
            if elapsed > self.processing_timeout_seconds:
                raise ProcessingTimeoutError(
                    f"Processing took {elapsed:.2f}s, "
                    f"deadline is {self.processing_timeout_seconds}s"
                )
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            WEBHOOK_EVENTS.labels(event.type, "failed").inc()
            logger.exception("Webhook processing failed; rolled back", extra=extra)
            raise WebhookProcessingError(str(exc)) from exc

        WEBHOOK_PROCESSING_LATENCY.labels(event.type).observe(
            self.clock() - started
        )
        for user_id, product_id in ctx.invalidations:
            self.cache.invalidate(user_id, product_id)
        WEBHOOK_EVENTS.labels(event.type, outcome.value).inc()
        logger.info("Webhook %s", outcome.value, extra=extra)
        return outcome

    def _apply_statement_timeout(self) -> None:
        if self.db.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(self.processing_timeout_seconds * 1000)
        self.db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
