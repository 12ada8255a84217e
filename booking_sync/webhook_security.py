"""
Webhook Security Module

Signature verification for Cal.com booking webhooks.
- Accepts several signature header spellings used across Cal.com versions
- Header value may be a bare hex digest or a "k=v,k=v" list (t=..., v1=...)
- Constant-time digest comparison
"""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Checked in order; first header present wins
SIGNATURE_HEADERS = (
    "x-cal-signature-256",
    "x-cal-signature",
    "cal-signature",
    "x-webhook-signature",
)

HASH_KEYS = {"v1", "sha256", "signature"}
TIMESTAMP_KEYS = {"t", "timestamp"}


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def get_signature_header(headers: Mapping[str, str]) -> Optional[str]:
    """Return the first non-empty accepted signature header (case-insensitive)"""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name)
        if value:
            return value
    return None


def parse_signature_header(header_value: str) -> tuple[str, Optional[str]]:
    """
    Split a signature header into (hash, timestamp).

    "t=1700000000,v1=abc" -> ("abc", "1700000000")
    "sha256=abc"          -> ("abc", None)
    "abc"                 -> ("abc", None)
    """
    provided_hash: Optional[str] = None
    timestamp: Optional[str] = None

    for part in (p.strip() for p in header_value.split(",")):
        key, _, value = part.partition("=")
        if not value:
            continue
        key = key.strip().lower()
        if key in HASH_KEYS:
            provided_hash = value.strip()
        elif key in TIMESTAMP_KEYS:
            timestamp = value.strip()

    if not provided_hash:
        provided_hash = header_value.strip()

    return provided_hash, timestamp


def digests_match(provided: str, expected_hex: str) -> bool:
    """
    Constant-time comparison over decoded digest bytes.

    Falls back to normalized string equality when the provided value is not hex.
    """
    try:
        provided_bytes = bytes.fromhex(provided.strip())
    except ValueError:
        return provided.strip().lower() == expected_hex.strip().lower()
    return hmac.compare_digest(provided_bytes, bytes.fromhex(expected_hex))


def verify_signature(headers: Mapping[str, str], raw_body: bytes, secret: Optional[str]) -> bool:
    """
    Verify a Cal.com webhook signature.

    Tries HMAC-SHA256(secret, body) first, then HMAC-SHA256(secret, "{t}.{body}")
    when the header carries a timestamp.

    Args:
        headers: Request headers (any mapping; lookup is case-insensitive)
        raw_body: Exact request body bytes
        secret: Shared webhook secret; verification fails closed when missing

    Returns:
        True if the signature matches one of the accepted schemes
    """
    if not secret:
        logger.error("❌ Webhook secret not configured - rejecting signature")
        return False

    incoming = get_signature_header(headers)
    if not incoming:
        logger.warning("🚫 Cal.com webhook missing signature header")
        return False

    provided_hash, timestamp = parse_signature_header(incoming)

    body_only = compute_hmac_sha256(secret, raw_body)
    if digests_match(provided_hash, body_only):
        return True

    if timestamp:
        signed_payload = timestamp.encode("utf-8") + b"." + raw_body
        if digests_match(provided_hash, compute_hmac_sha256(secret, signed_payload)):
            return True

    logger.warning("🚫 Cal.com webhook signature mismatch")
    return False


async def verify_calcom_webhook(request: Request, secret: Optional[str]) -> bytes:
    """
    Verify Cal.com webhook signature against the raw request body.

    Args:
        request: FastAPI request object
        secret: Webhook secret configured in Cal.com

    Returns:
        The verified raw body

    Raises:
        HTTPException: 401 when the signature does not match
    """
    # Get raw body BEFORE any parsing - signature covers exact bytes
    raw_body = await request.body()

    logger.debug(f"📥 Cal.com webhook received ({len(raw_body)} bytes)")

    if not verify_signature(request.headers, raw_body, secret):
        raise HTTPException(status_code=401, detail="Invalid signature")

    logger.debug("✅ Cal.com webhook signature verified")
    return raw_body


def create_webhook_signature(
    secret: str, payload: bytes, timestamp: Optional[int] = None, provider: str = "generic"
) -> str:
    """
    Create a webhook signature for testing or replaying deliveries.

    Args:
        secret: Signing secret
        payload: Request body bytes
        timestamp: When given, signs "{timestamp}.{payload}" and emits "t=...,v1=..."
        provider: 'generic' for a bare hex digest, 'sha256' for "sha256=<hex>"

    Returns:
        Signature header value
    """
    if timestamp is not None:
        signed_payload = str(timestamp).encode("utf-8") + b"." + payload
        return f"t={timestamp},v1={compute_hmac_sha256(secret, signed_payload)}"

    signature = compute_hmac_sha256(secret, payload)
    if provider == "sha256":
        return f"sha256={signature}"
    return signature
