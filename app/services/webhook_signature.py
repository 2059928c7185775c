"""Stripe-style webhook signature verification.

The ``Stripe-Signature`` header looks like ``t=1700000000,v1=<hex>,v1=<hex>``.
Each ``v1`` is an HMAC-SHA256 over ``"<t>.<raw body>"`` keyed by the
endpoint secret; any one matching signature is accepted while secrets roll.
"""

import hashlib
import hmac
import logging
import time

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


class SignatureVerificationError(Exception):
    pass


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError(
                    "Invalid signature timestamp"
                ) from None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    if timestamp is None:
        raise SignatureVerificationError("Signature header has no timestamp")
    if not signatures:
        raise SignatureVerificationError(
            f"Signature header has no {SIGNATURE_SCHEME} signatures"
        )
    return timestamp, signatures


class WebhookSignatureVerifier:
    def __init__(
        self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS
    ) -> None:
        self._secret = secret
        self.tolerance_seconds = tolerance_seconds

    def is_configured(self) -> bool:
        return bool(self._secret)

    def verify(self, payload: bytes, header: str | None, now: float | None = None) -> int:
        """Check ``header`` against ``payload``; return the signed timestamp.

        Raises SignatureVerificationError on any mismatch, including a
        timestamp outside the tolerance window in either direction.
        """
        if not self.is_configured():
            raise SignatureVerificationError("Webhook secret is not configured")
        if not header:
            raise SignatureVerificationError("Missing signature header")
        timestamp, signatures = _parse_header(header)
        current = time.time() if now is None else now
        if abs(current - timestamp) > self.tolerance_seconds:
            raise SignatureVerificationError("Signature timestamp outside tolerance")
        expected = compute_signature(self._secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise SignatureVerificationError("No matching signature")
        return timestamp

    def sign(self, payload: bytes, timestamp: int | None = None) -> str:
        """Build a header for ``payload``; used by local tooling and tests."""
        ts = int(time.time()) if timestamp is None else timestamp
        return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(self._secret, ts, payload)}"
