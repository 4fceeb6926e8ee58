"""Owner authentication using HMAC-signed tokens.

The sites service does not manage users. Whoever issues tokens (the
dashboard backend, or ``launchpad token`` for scripts) signs the owner id
with LAUNCHPAD_AUTH_SECRET; the service only verifies the signature.

Token Format:
    {owner_id}:{expiry_timestamp}:{hmac_signature}
    Example: "user-42:1735689600:a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6"

Policy:
    - Serving routes never look at tokens; sites are public.
    - Upload, finalize and delete accept anonymous callers unless
      LAUNCHPAD_REQUIRE_AUTH is set. A bad token counts as anonymous and
      is logged.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

from . import config
from .errors import AuthenticationError

_LOG = logging.getLogger(__name__)

TOKEN_LIFETIME: int = 60 * 60 * 24 * 30
"""Token validity period in seconds (30 days)."""


def is_configured() -> bool:
    """Check if token signing is configured (LAUNCHPAD_AUTH_SECRET is set)."""
    return bool(config.AUTH_SECRET)


def _sign(owner_id: str, expires: int) -> str:
    payload = f"{owner_id}:{expires}"
    return hmac.new(
        config.AUTH_SECRET.encode(),
        payload.encode(),
        hashlib.sha256,
    ).hexdigest()[:32]


def generate_token(owner_id: str, lifetime: int = TOKEN_LIFETIME) -> str:
    """Generate a signed token for an owner.

    Raises:
        RuntimeError: No AUTH_SECRET is configured.
        ValueError: Empty owner id.
    """
    if not is_configured():
        raise RuntimeError("LAUNCHPAD_AUTH_SECRET is not set")
    if not owner_id:
        raise ValueError("owner_id is required")
    expires = int(time.time()) + lifetime
    return f"{owner_id}:{expires}:{_sign(owner_id, expires)}"


def verify(token: str) -> str | None:
    """Verify a token's signature and expiry.

    Uses constant-time comparison for the signature check.

    Returns:
        The owner id, or None for invalid or expired tokens.
    """
    if not is_configured() or not token:
        return None
    try:
        owner_id, expires_str, signature = token.rsplit(":", 2)
        expires = int(expires_str)
    except ValueError:
        return None

    if not owner_id or time.time() > expires:
        return None
    if not hmac.compare_digest(signature, _sign(owner_id, expires)):
        return None
    return owner_id


def owner_from_header(authorization: str | None, required: bool | None = None) -> str | None:
    """Resolve the caller's owner id from an Authorization header.

    Supports both "Bearer <token>" and a raw token.

    Raises:
        AuthenticationError: ``required`` (default REQUIRE_AUTH) and no valid token.
    """
    required = config.REQUIRE_AUTH if required is None else required

    owner_id = None
    if authorization:
        token = authorization[7:] if authorization.startswith("Bearer ") else authorization
        owner_id = verify(token.strip())
        if owner_id is None:
            _LOG.warning("Rejected invalid or expired owner token")

    if owner_id is None and required:
        raise AuthenticationError("A valid owner token is required")
    return owner_id
