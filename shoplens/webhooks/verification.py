"""Webhook signature verification: constant-time HMAC-SHA256.

Security contract:
- The HMAC is computed over the exact bytes received, captured before
  any JSON decoding (re-encoding is not byte-stable)
- Comparison uses hmac.compare_digest() (constant-time, no timing attacks)
- Missing shared secret -> verification always fails (fail-closed)
- Digests are never logged
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re

from shoplens.errors import AuthError, Reason

logger = logging.getLogger(__name__)

_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")


def compute_signature(secret: str, body: bytes) -> str:
    """Base64-encoded HMAC-SHA256 of ``body``, the platform's header format."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes | None, signature: str | None, secret: str) -> None:
    """Verify a delivery signature.

    Args:
        body: Raw request body bytes, or None when no capture happened
        signature: Value of the signature header
        secret: Shared secret issued by the platform

    Raises:
        AuthError(MISSING_BODY): no raw byte capture available
        AuthError(SIGNATURE_MISMATCH): signature absent or wrong
    """
    if body is None:
        raise AuthError(Reason.MISSING_BODY, "raw body not captured")
    if not secret:
        logger.warning("Webhook shared secret not configured, rejecting delivery")
        raise AuthError(Reason.SIGNATURE_MISMATCH, "no shared secret")
    claimed = (signature or "").strip()
    if not claimed:
        raise AuthError(Reason.SIGNATURE_MISMATCH, "signature header missing")

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    # Encode the computed digest the same way the claimed one is encoded
    if _HEX_DIGEST.fullmatch(claimed):
        computed, claimed = digest.hex(), claimed.lower()
    else:
        computed = base64.b64encode(digest).decode("ascii")
    if not hmac.compare_digest(computed.encode("ascii"), claimed.encode("utf-8")):
        raise AuthError(Reason.SIGNATURE_MISMATCH)
