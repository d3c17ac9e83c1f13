"""HMAC-SHA256 signatures on inbound provider webhooks."""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Blackbox-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check ``signature`` against ``body``.

    With no secret configured every delivery is accepted.
    """
    if not secret:
        logger.debug("No webhook secret configured; skipping signature check")
        return True
    if not signature:
        return False
    expected = compute_signature(secret, body).encode("ascii")
    return hmac.compare_digest(signature.strip().encode("utf-8"), expected)
