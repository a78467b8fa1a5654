"""
Stripe webhook signature verification.

The ``Stripe-Signature`` header looks like ``t=1700000000,v1=<hex>[,v1=<hex>]``.
Each ``v1`` value is an HMAC-SHA256 of ``"{t}.{payload}"`` keyed with the
endpoint's signing secret.
"""

import hashlib
import hmac
import logging
import time

from core.exceptions import WebhookSignatureError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_SCHEME = "v1"


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=signed_payload,
        digestmod=hashlib.sha256,
    ).hexdigest()


def generate_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header for a payload, as the platform would send it."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, timestamp, secret)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Unable to extract timestamp from signature header")
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    if timestamp is None:
        raise WebhookSignatureError("Unable to extract timestamp from signature header")
    if not signatures:
        raise WebhookSignatureError("No signatures found with expected scheme")
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """
    Verify a webhook signature header against the raw payload.

    Args:
        payload: Raw request body
        header: Value of the ``Stripe-Signature`` header
        secret: Endpoint signing secret
        tolerance: Maximum accepted age of the signature, in seconds
        now: Current unix time (defaults to the system clock)

    Raises:
        WebhookSignatureError: If the header is missing or malformed, no
            signature matches, or the timestamp is outside the tolerance
    """
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp, signatures = _parse_header(header)
    expected = compute_signature(payload, timestamp, secret)

    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        logger.warning("Webhook signature verification failed")
        raise WebhookSignatureError("No signatures found matching the expected signature for payload")

    current = time.time() if now is None else now
    if tolerance and timestamp < current - tolerance:
        logger.warning("Webhook signature timestamp outside tolerance")
        raise WebhookSignatureError("Timestamp outside the tolerance zone")
