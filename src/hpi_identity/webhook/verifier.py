"""Webhook authenticity verification with HMAC-SHA256 signatures."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

from hpi_identity.config import SignatureEncoding, WebhookSecretPolicy
from hpi_identity.errors import AuthError

logger = logging.getLogger(__name__)


def sign_payload(
    secret: str | bytes,
    payload: bytes,
    encoding: SignatureEncoding = SignatureEncoding.HEX,
) -> str:
    """Return the signature a sender holding *secret* would attach to *payload*."""
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    digest = hmac.new(key, payload, hashlib.sha256).digest()
    if encoding is SignatureEncoding.BASE64:
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def signatures_match(expected: str, provided: str) -> bool:
    """Compare two signatures in time that depends only on ``len(expected)``.

    The provided value is cut or padded to the expected length before the
    constant-time comparison, and the length check is folded in afterwards
    without short-circuiting.
    """
    expected_bytes = expected.encode("utf-8")
    provided_bytes = provided.encode("utf-8", errors="replace")
    size = len(expected_bytes)
    candidate = provided_bytes[:size].ljust(size, b"\0")
    same_content = hmac.compare_digest(expected_bytes, candidate)
    same_length = len(provided_bytes) == size
    return same_content & same_length


def verify_webhook(
    payload: bytes,
    provided_digest: str | None,
    secret: str,
    *,
    policy: WebhookSecretPolicy = WebhookSecretPolicy.REQUIRED,
    encoding: SignatureEncoding = SignatureEncoding.HEX,
) -> bool:
    """Decide whether *payload* really came from the holder of *secret*.

    With no secret configured this fails closed by raising
    :class:`AuthError`, unless the development-only ``ALLOW_UNSIGNED``
    policy is selected.
    """
    if not secret:
        if policy is WebhookSecretPolicy.ALLOW_UNSIGNED:
            logger.warning("No webhook secret configured — accepting unsigned payload (development)")
            return True
        logger.error("No webhook secret configured — rejecting webhook")
        raise AuthError("Webhook secret is not configured")

    if not provided_digest:
        logger.warning("Webhook rejected: signature header missing")
        return False

    expected = sign_payload(secret, payload, encoding)
    if signatures_match(expected, provided_digest.strip()):
        return True
    logger.warning("Webhook rejected: signature mismatch (%d byte payload)", len(payload))
    return False
