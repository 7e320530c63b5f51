from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

REFRESH_SECRET_BYTES = 48

def generate_refresh_secret() -> str:
    """Return a new opaque refresh secret (384 bits, URL-safe)."""
    return secrets.token_urlsafe(REFRESH_SECRET_BYTES)

class TokenHasher:
    """One-way digest used as the lookup key for stored refresh tokens.

    Plain SHA-256 hex by default. With a key configured the digest becomes
    HMAC-SHA256, so a leaked table cannot be checked against guessed secrets
    without the key as well.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self._key = secret.encode() if secret else None

    def hash(self, raw_token: str) -> str:
        data = raw_token.encode()
        if self._key is None:
            return hashlib.sha256(data).hexdigest()
        return hmac.new(self._key, data, hashlib.sha256).hexdigest()


def hash_access_token(access_token: str) -> str:
    """Deny-list key for an access token; the bearer value is never stored."""
    return hashlib.sha256(access_token.encode()).hexdigest()
