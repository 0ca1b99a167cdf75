"""
Core security module — webhook signature helpers.

Every provider signs its webhook body with an HMAC over the raw bytes
and sends the hex digest in an ``X-<Provider>-Signature`` header.
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def compute_signature(secret: str, payload: bytes, digestmod=hashlib.sha256) -> str:
    """Return the hex HMAC of *payload* keyed with *secret*."""
    return hmac.new(secret.encode(), payload, digestmod).hexdigest()


def verify_hmac_signature(
    secret: str,
    payload: bytes,
    signature: str | None,
    digestmod=hashlib.sha256,
) -> bool:
    """
    Constant-time comparison of *signature* against the expected HMAC.

    A missing secret never validates: an unconfigured provider must not
    accept unsigned webhooks.
    """
    if not secret:
        logger.warning("Webhook secret not configured; rejecting signature")
        return False
    if not signature:
        return False

    expected = compute_signature(secret, payload, digestmod)
    return hmac.compare_digest(expected, signature.strip().lower())
