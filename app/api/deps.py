"""Shared FastAPI dependencies.

Process-wide clients (cache, signature verifier) are built once in
``app.main`` and stored on ``app.state``; routes receive them from here so
tests can override any of them with ``app.dependency_overrides``.
"""
import hmac

from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt

from app.config import settings
from app.db import SessionLocal
from app.errors import error_detail
from app.observability import extract_bearer_token
from app.services.entitlement_cache import EntitlementCache
from app.services.webhook_signature import WebhookSignatureVerifier


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_cache(request: Request) -> EntitlementCache:
    return request.app.state.entitlement_cache


def get_signature_verifier(request: Request) -> WebhookSignatureVerifier:
    return request.app.state.signature_verifier


def get_current_user_id(authorization: str | None = Header(default=None)) -> str:
    """Return the ``sub`` claim of a valid bearer token."""
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail=error_detail("unauthorized", "Missing bearer token"),
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=503,
            detail=error_detail("auth_not_configured", "Authentication not configured"),
        )
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        raise HTTPException(
            status_code=401,
            detail=error_detail("unauthorized", "Invalid token"),
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=401,
            detail=error_detail("unauthorized", "Token has no subject"),
        )
    return str(subject)


def require_internal_key(
    x_internal_api_key: str | None = Header(default=None),
) -> None:
    """Gate internal routes on the shared service key."""
    if not settings.internal_api_key:
        raise HTTPException(
            status_code=503,
            detail=error_detail(
                "internal_api_not_configured", "Internal API not configured"
            ),
        )
    if not x_internal_api_key or not hmac.compare_digest(
        x_internal_api_key, settings.internal_api_key
    ):
        raise HTTPException(
            status_code=401,
            detail=error_detail("unauthorized", "Invalid internal API key"),
        )
