"""Webhook signature verification (HMAC-SHA256 over the raw request body)"""
import hashlib
import hmac
import logging
import re
from typing import Optional

security_logger = logging.getLogger("security")

SIGNATURE_HEADER = "x-webhook-signature"
SIGNATURE_PREFIX = "sha256="

_SIGNATURE_PATTERN = re.compile(r"^sha256=([0-9a-fA-F]+)$")


def generate_signature(raw_body: bytes, secret: str) -> str:
    """Build the `sha256=<hex>` header value for a payload"""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Verify a webhook signature header against the raw request bytes.

    The header must be exactly `sha256=<hex>`; anything else is rejected before
    a digest is computed. `raw_body` must be the bytes as transmitted, never a
    re-serialization of the parsed JSON.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the `x-webhook-signature` header
        secret: Shared webhook secret

    Returns:
        True if the signature matches, False otherwise
    """
    if not signature_header or not secret:
        return False

    match = _SIGNATURE_PATTERN.match(signature_header)
    if not match:
        security_logger.warning("Webhook signature header has an unexpected format")
        return False

    received = match.group(1).lower()
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    return hmac.compare_digest(received, expected)
