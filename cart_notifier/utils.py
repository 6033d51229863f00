"""
Utility functions for webhook authentication and phone handling.
"""

import base64
import hashlib
import hmac
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify a base64 HMAC-SHA256 signature (commerce platform style).

    Args:
        body: Raw request body bytes
        signature: Base64-encoded signature from the X-Shopify-Hmac-Sha256 header
        secret: Tenant's shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying base64 HMAC signature, body length: {len(body)} bytes")

    expected_signature = base64.b64encode(
        hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    ).decode("ascii")

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature.encode("ascii"), (signature or "").encode("utf-8"))
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def verify_hub_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify a provider callback signature of the form ``sha256=<hex digest>``.

    Args:
        body: Raw request body bytes
        signature: Value of the X-Hub-Signature-256 header
        secret: Tenant's provider app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith("sha256="):
        logger.info("Hub signature missing or malformed")
        return False

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    is_valid = hmac.compare_digest(
        expected_signature.encode("ascii"),
        signature[len("sha256="):].encode("utf-8"),
    )
    logger.info(f"Hub signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Strip everything but digits; returns None when no digits remain."""
    if phone is None:
        return None
    digits = _NON_DIGITS.sub("", str(phone))
    return digits or None
