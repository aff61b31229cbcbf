"""
Webhook Security Module

Signature verification for every inbound webhook:
- Stripe (Stripe-Signature: t=...,v1=...)
- Tally (tally-signature: base64 HMAC-SHA256, optional "sha256=" prefix)
- Resend (Svix headers: svix-id, svix-timestamp, svix-signature)

All comparisons are constant-time and timestamped providers are checked
against a replay window.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


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


def compute_hmac_sha256_base64(secret, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload and return base64 encoded"""
    key = secret if isinstance(secret, bytes) else secret.encode("utf-8")
    signature = hmac.new(key, payload, hashlib.sha256).digest()
    return base64.b64encode(signature).decode("utf-8")


def extract_svix_signing_key(secret: str) -> bytes:
    """
    Extract Svix signing key bytes from a "whsec_" style secret.

    - Incoming secret typically looks like: "whsec_BASE64KEY"
    - The HMAC key must be the BASE64-decoded bytes of the part after "whsec_"
    - If not prefixed, attempt base64 decode; if that fails, fall back to UTF-8 bytes
    """
    try:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[6:])
        return base64.b64decode(secret, validate=True)
    except ValueError:
        return secret.encode("utf-8")


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return True  # Timestamp is optional for some providers

    try:
        webhook_time = int(timestamp)
        current_time = int(time.time())
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


# ============================================================================
# STRIPE
# ============================================================================


def parse_stripe_signature_header(signature_header: str) -> tuple[Optional[str], list[str]]:
    """Split "t=...,v1=...,v1=..." into (timestamp, [v1 signatures])"""
    timestamp = None
    signatures = []
    for item in signature_header.split(","):
        if "=" not in item:
            continue
        key, value = item.strip().split("=", 1)
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(raw_body: bytes, signature_header: str, secret: str) -> bool:
    """Check a Stripe-Signature header against the endpoint secret"""
    if not signature_header or not secret:
        return False

    timestamp, signatures = parse_stripe_signature_header(signature_header)
    if not timestamp or not signatures:
        logger.warning("🚫 Stripe webhook invalid signature format")
        return False

    if not verify_timestamp(timestamp):
        return False

    # Stripe signs "timestamp.payload"
    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    expected_signature = compute_hmac_sha256(secret, signed_payload)

    return any(constant_time_compare(expected_signature, sig) for sig in signatures)


async def verify_stripe_webhook(
    request: Request, secret: str, raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify Stripe webhook signature.

    Stripe uses:
    - Header: 'Stripe-Signature' (format: "t=<timestamp>,v1=<signature>")

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    signature_header = request.headers.get("Stripe-Signature", "")

    logger.debug("📥 Stripe webhook received")

    if not signature_header:
        logger.warning("🚫 Stripe webhook missing signature header")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    if not verify_stripe_signature(raw_body, signature_header, secret):
        logger.warning("🚫 Stripe webhook signature mismatch")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, raw_body

    logger.debug("✅ Stripe webhook signature verified")
    return True, raw_body


# ============================================================================
# TALLY
# ============================================================================


def verify_tally_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Tally signs the raw body with base64 HMAC-SHA256, optionally prefixed "sha256=" """
    if not signature or not secret:
        return False

    received = signature.strip()
    if received.startswith("sha256="):
        received = received[len("sha256="):]

    expected = compute_hmac_sha256_base64(secret, raw_body)
    return constant_time_compare(expected, received)


# ============================================================================
# RESEND (SVIX)
# ============================================================================


def verify_svix_signature(
    raw_body: bytes,
    msg_id: str,
    timestamp: str,
    signature_header: str,
    secret: str,
) -> bool:
    """
    Verify a Svix-signed payload.

    Signed content is "msg_id.timestamp.body"; the header holds a space
    separated list of "v1,<base64 signature>" entries.
    """
    if not msg_id or not timestamp or not signature_header or not secret:
        return False

    if not verify_timestamp(timestamp):
        return False

    signing_key = extract_svix_signing_key(secret)
    signed_content = b".".join([msg_id.encode("utf-8"), timestamp.encode("utf-8"), raw_body])
    expected = compute_hmac_sha256_base64(signing_key, signed_content)

    for entry in signature_header.split(" "):
        version, _, received = entry.partition(",")
        if version == "v1" and constant_time_compare(expected, received):
            return True
    return False


async def verify_resend_webhook(
    request: Request, secret: str, raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """Verify Resend webhook (Svix headers). Returns (is_valid, raw_body)"""
    raw_body = await request.body()
    msg_id = request.headers.get("svix-id", "")
    timestamp = request.headers.get("svix-timestamp", "")
    signature_header = request.headers.get("svix-signature", "")

    logger.info(f"📥 Resend webhook received: id={msg_id or 'unknown'}")

    if verify_svix_signature(raw_body, msg_id, timestamp, signature_header, secret):
        logger.debug(f"✅ Resend webhook signature verified: {msg_id}")
        return True, raw_body

    logger.warning(f"🚫 Resend webhook signature verification failed: {msg_id or 'unknown'}")
    if raise_on_failure:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return False, raw_body


def create_webhook_signature(
    secret: str, payload: bytes, provider: str = "generic", timestamp: Optional[str] = None, msg_id: str = ""
) -> str:
    """
    Create a webhook signature for testing or outgoing webhooks.

    Args:
        secret: Signing secret
        payload: Request body bytes
        provider: Provider format ('generic', 'stripe', 'tally', 'svix')

    Returns:
        Signature string in provider's format
    """
    if provider == "stripe":
        ts = timestamp or str(int(time.time()))
        signature = compute_hmac_sha256(secret, ts.encode("utf-8") + b"." + payload)
        return f"t={ts},v1={signature}"

    if provider == "tally":
        return compute_hmac_sha256_base64(secret, payload)

    if provider == "svix":
        ts = timestamp or str(int(time.time()))
        signed_content = b".".join([msg_id.encode("utf-8"), ts.encode("utf-8"), payload])
        return "v1," + compute_hmac_sha256_base64(extract_svix_signing_key(secret), signed_content)

    return compute_hmac_sha256(secret, payload)
