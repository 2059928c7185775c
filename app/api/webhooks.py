"""Payment processor webhook ingestion."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_cache, get_db, get_signature_verifier
from app.config import settings
from app.errors import error_detail
from app.metrics import WEBHOOK_EVENTS
from app.services.billing.webhooks import (
    WebhookPayloadError,
    WebhookProcessingError,
    WebhookProcessor,
    parse_webhook,
)
from app.services.entitlement_cache import EntitlementCache
from app.services.webhook_signature import (
    SignatureVerificationError,
    WebhookSignatureVerifier,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "stripe-signature"


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    cache: EntitlementCache = Depends(get_cache),
    verifier: WebhookSignatureVerifier = Depends(get_signature_verifier),
) -> dict:
    """Verify, deduplicate and apply one processor event.

    2xx tells the processor to stop retrying, so duplicates and unknown
    types answer 200; only a rolled-back failure answers 500.
    """
    if not verifier.is_configured():
        raise HTTPException(status_code=503, detail="Payment webhooks not configured")

    body = await request.body()
    try:
        verifier.verify(body, request.headers.get(SIGNATURE_HEADER))
    except SignatureVerificationError as exc:
        WEBHOOK_EVENTS.labels("unknown", "rejected").inc()
        logger.warning("Webhook signature rejected: %s", exc)
        raise HTTPException(
            status_code=400,
            detail=error_detail("invalid_signature", "Invalid signature"),
        ) from None

    try:
        event = parse_webhook(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON") from None
    except WebhookPayloadError as exc:
        logger.warning("Malformed webhook payload: %s", exc)
        raise HTTPException(
            status_code=400,
            detail=error_detail("invalid_payload", "Malformed event payload"),
        ) from None

    processor = WebhookProcessor(
        db,
        cache,
        processing_timeout_seconds=settings.webhook_processing_timeout_seconds,
        strict_plan_resolution=settings.strict_plan_resolution,
        reset_period_days=settings.usage_reset_period_days,
    )
    try:
        # Row-lock waits must not stall the event loop.
        outcome = await run_in_threadpool(processor.process, event)
    except WebhookProcessingError:
        raise HTTPException(
            status_code=500,
            detail=error_detail(
                "webhook_processing_failed",
                "Event processing failed; retry delivery",
                {"event_id": event.id},
            ),
        ) from None

    status = "ok" if outcome.value == "processed" else outcome.value
    return {"status": status, "event_id": event.id}
