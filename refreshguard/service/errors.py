from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from refreshguard.storage.models import ExpiryBound


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - invalid_token (401)
    - token_expired (401)
    - token_revoked (401)
    - token_reused (401)
    - token_blacklisted (401)
    - storage_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class RefreshTokenError(ServiceError):
    """A presented refresh or access credential was refused (401).

    Subclasses keep their own error_code for logs and callers inside the
    trust boundary, but ``public_body`` is identical for all of them so a
    client cannot tell an unknown token from an expired, revoked or reused one.
    """

    status_code = 401
    error_code = "unauthorized"

    def public_body(self) -> dict:
        return {
            "status": "error",
            "error": {"code": "unauthorized", "message": "invalid or expired credentials"},
        }


class InvalidTokenError(RefreshTokenError):
    """Token is empty or unknown (401)."""
    error_code = "invalid_token"


class TokenExpiredError(RefreshTokenError):
    """Token ran past its sliding or absolute deadline (401)."""
    error_code = "token_expired"

    def __init__(self, message: str, *, bound: "ExpiryBound", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.bound = bound


class TokenRevokedError(RefreshTokenError):
    """Token was explicitly revoked or already rotated (401)."""
    error_code = "token_revoked"


class TokenReusedError(RefreshTokenError):
    """An already-consumed refresh token was presented again (401)."""
    error_code = "token_reused"


class BlacklistedError(RefreshTokenError):
    """Access token is on the deny-list (401)."""
    error_code = "token_blacklisted"


class StorageUnavailableError(ServiceError):
    """Token store or cache timed out or is unreachable (503).

    Says nothing about the token itself; clients should retry.
    """
    status_code = 503
    error_code = "storage_unavailable"
    retryable = True

    def public_body(self) -> dict:
        return {
            "status": "error",
            "error": {"code": self.error_code, "message": "service temporarily unavailable"},
        }


__all__ = [
    "ServiceError",
    "RefreshTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "TokenReusedError",
    "BlacklistedError",
    "StorageUnavailableError",
]
