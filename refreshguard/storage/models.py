from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TokenState(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class ExpiryBound(str, Enum):
    """Which deadline a token ran past.

    SLIDING means the client was idle too long; ABSOLUTE means the session
    reached its hard lifetime and the user has to log in again.
    """

    SLIDING = "sliding"
    ABSOLUTE = "absolute"


_PROXY_IP_HEADERS = (
    "X-Forwarded-For",
    "Proxy-Client-IP",
    "WL-Proxy-Client-IP",
    "HTTP_CLIENT_IP",
)


@dataclass
class ClientInfo:
    """Audit metadata about the caller. Never used for authorization."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], remote_addr: Optional[str] = None
    ) -> "ClientInfo":
        lowered = {k.lower(): v for k, v in headers.items()}
        ip: Optional[str] = None
        for name in _PROXY_IP_HEADERS:
            candidate = (lowered.get(name.lower()) or "").strip()
            if candidate and candidate.lower() != "unknown":
                ip = candidate
                break
        if ip is None:
            ip = remote_addr or "0.0.0.0"
        # X-Forwarded-For may carry a proxy chain; the first hop is the client
        if "," in ip:
            ip = ip.split(",")[0].strip()
        user_agent = (lowered.get("user-agent") or "").strip() or "Unknown"
        return cls(ip_address=ip, user_agent=user_agent)


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    family_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    max_expiry: datetime
    revoked: bool = False
    replaced_by: Optional[str] = None
    client_info: ClientInfo = field(default_factory=ClientInfo)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.expires_at > self.max_expiry:
            raise ValueError("expires_at must not be later than max_expiry")
        if self.replaced_by is not None and not self.revoked:
            raise ValueError("replaced_by requires revoked=True")

    @classmethod
    def new_family(
        cls,
        user_id: str,
        token_hash: str,
        *,
        now: datetime,
        sliding_window: timedelta,
        absolute_window: timedelta,
        client_info: Optional[ClientInfo] = None,
    ) -> "RefreshTokenRecord":
        """First record of a login: starts the family and fixes max_expiry."""
        record_id = str(uuid.uuid4())
        max_expiry = now + absolute_window
        return cls(
            id=record_id,
            user_id=user_id,
            family_id=record_id,
            token_hash=token_hash,
            issued_at=now,
            expires_at=min(now + sliding_window, max_expiry),
            max_expiry=max_expiry,
            client_info=client_info or ClientInfo(),
            updated_at=now,
        )

    def successor(
        self,
        token_hash: str,
        *,
        now: datetime,
        sliding_window: timedelta,
        client_info: Optional[ClientInfo] = None,
    ) -> "RefreshTokenRecord":
        """Next record of the chain; inherits the family and its max_expiry."""
        return RefreshTokenRecord(
            id=str(uuid.uuid4()),
            user_id=self.user_id,
            family_id=self.family_id,
            token_hash=token_hash,
            issued_at=now,
            expires_at=min(now + sliding_window, self.max_expiry),
            max_expiry=self.max_expiry,
            client_info=client_info or self.client_info,
            updated_at=now,
        )

    def exceeded_bound(self, now: datetime) -> Optional[ExpiryBound]:
        if now > self.max_expiry:
            return ExpiryBound.ABSOLUTE
        if now > self.expires_at:
            return ExpiryBound.SLIDING
        return None

    def state(self, now: datetime) -> TokenState:
        if self.revoked:
            return TokenState.ROTATED if self.replaced_by else TokenState.REVOKED
        if self.exceeded_bound(now) is not None:
            return TokenState.EXPIRED
        return TokenState.ACTIVE

    def is_active(self, now: datetime) -> bool:
        return self.state(now) is TokenState.ACTIVE
