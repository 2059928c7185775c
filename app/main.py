from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import JSONResponse, Response

from app.api.entitlements import router as entitlements_router
from app.api.internal import router as internal_router
from app.api.webhooks import router as webhooks_router
from app.config import Settings, settings, validate_settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware
from app.services.entitlement_cache import EntitlementCache
from app.services.webhook_signature import WebhookSignatureVerifier
from app.telemetry import setup_otel

logger = logging.getLogger(__name__)


def build_clients(app: FastAPI, config: Settings) -> None:
    """Construct process-wide clients once and attach them to ``app.state``."""
    redis_client = redis.Redis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_timeout=2,
        socket_connect_timeout=2,
    )
    app.state.redis = redis_client
    app.state.entitlement_cache = EntitlementCache(
        redis_client, ttl_seconds=config.entitlement_cache_ttl_seconds
    )
    app.state.signature_verifier = WebhookSignatureVerifier(
        config.stripe_webhook_secret,
        tolerance_seconds=config.webhook_tolerance_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    # ── Startup ──────────────────────────────────────────
    warnings = validate_settings(settings)
    for w in warnings:
        logger.warning("Config warning: %s", w)

    logger.info("Application started (pid=%s)", os.getpid())
    yield

    # ── Shutdown ─────────────────────────────────────────
    logger.info("Application shutting down")
    app.state.redis.close()


app = FastAPI(title="Entitlement Sync API", lifespan=lifespan)

configure_logging()
build_clients(app, settings)
setup_otel(app)

# ── Middleware (order matters: last added = first executed) ──
register_error_handlers(app)

cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "X-Cache"],
    )

app.add_middleware(ObservabilityMiddleware)


def _include_api_router(router: Any) -> None:
    app.include_router(router)
    app.include_router(router, prefix="/api/v1")


_include_api_router(webhooks_router)
_include_api_router(entitlements_router)
_include_api_router(internal_router)


# ── Health Checks ────────────────────────────────────────


@app.get("/health")
def health_check() -> dict[str, str]:
    """Liveness probe: always returns ok if the process is running."""
    return {"status": "ok"}


@app.get("/health/ready")
def readiness_check(request: Request) -> JSONResponse:
    """Readiness probe: verifies database and Redis connectivity.

    Redis being down degrades latency, not correctness, so it is reported
    but does not fail readiness.
    """
    checks: dict[str, str] = {}

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            checks["database"] = "ok"
        finally:
            db.close()
    except Exception as e:
        checks["database"] = f"error: {e}"

    cache: EntitlementCache = request.app.state.entitlement_cache
    checks["redis"] = "ok" if cache.ping() else "unavailable"
    checks["webhooks"] = (
        "ok" if request.app.state.signature_verifier.is_configured() else "not_configured"
    )

    ready = checks["database"] == "ok"
    all_ok = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
