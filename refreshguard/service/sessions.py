from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from refreshguard.logging import get_logger
from refreshguard.service.blacklist import AccessTokenBlacklist
from refreshguard.service.errors import BlacklistedError, RefreshTokenError
from refreshguard.service.rotation import IssuedToken, RotationEngine
from refreshguard.storage.models import ClientInfo

logger = get_logger(__name__)

DEFAULT_ACCESS_TTL_SECONDS = 15 * 60


@dataclass
class AccessToken:
    token: str = field(repr=False)
    expires_at: datetime


class AccessTokenIssuer(Protocol):
    def issue(self, user_id: str, roles: List[str]) -> AccessToken: ...


class RoleLookup(Protocol):
    def get_roles(self, user_id: str) -> List[str]: ...


@dataclass
class SessionTokens:
    refresh: IssuedToken
    access: AccessToken
    roles: List[str] = field(default_factory=list)

    @property
    def refresh_token(self) -> str:
        return self.refresh.raw_token

    @property
    def access_token(self) -> str:
        return self.access.token


class SessionService:
    """Login, refresh and logout on top of the rotation engine and deny-list.

    Engine calls run in a worker thread. A request cancelled mid-rotation
    therefore cannot undo a state change the store has already committed.
    """

    def __init__(
        self,
        engine: RotationEngine,
        blacklist: AccessTokenBlacklist,
        issuer: AccessTokenIssuer,
        roles: RoleLookup,
        *,
        access_token_ttl_seconds: int = DEFAULT_ACCESS_TTL_SECONDS,
    ) -> None:
        self.engine = engine
        self.blacklist = blacklist
        self.issuer = issuer
        self.roles = roles
        self.access_token_ttl_seconds = access_token_ttl_seconds

    async def _access_for(self, user_id: str) -> tuple[AccessToken, List[str]]:
        roles = list(await asyncio.to_thread(self.roles.get_roles, user_id))
        return self.issuer.issue(user_id, roles), roles

    async def login(
        self, user_id: str, client_info: Optional[ClientInfo] = None
    ) -> SessionTokens:
        """Start a session for an already-authenticated user."""
        refresh = await asyncio.to_thread(self.engine.issue, user_id, client_info)
        access, roles = await self._access_for(user_id)
        return SessionTokens(refresh=refresh, access=access, roles=roles)

    async def refresh(
        self, raw_refresh: str, client_info: Optional[ClientInfo] = None
    ) -> SessionTokens:
        refresh = await asyncio.to_thread(self.engine.rotate, raw_refresh, client_info)
        access, roles = await self._access_for(refresh.record.user_id)
        return SessionTokens(refresh=refresh, access=access, roles=roles)

    async def logout(
        self,
        raw_refresh: Optional[str],
        access_token_hash: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
    ) -> bool:
        """Revoke the refresh token and deny the access token until it expires.

        Unknown or already revoked refresh tokens are ignored so logout is
        idempotent. Returns whether a refresh token was revoked by this call.
        """
        revoked = False
        if raw_refresh:
            try:
                revoked = await asyncio.to_thread(self.engine.revoke_token, raw_refresh)
            except RefreshTokenError as exc:
                logger.info("logout_refresh_token_ignored", reason=exc.error_code)
        if access_token_hash:
            if access_expires_at is not None:
                await self.blacklist.blacklist_until(access_token_hash, access_expires_at)
            else:
                await self.blacklist.blacklist(access_token_hash, self.access_token_ttl_seconds)
        logger.info("logout_completed", refresh_revoked=revoked, access_denied=bool(access_token_hash))
        return revoked

    async def logout_everywhere(self, user_id: str) -> int:
        return await asyncio.to_thread(self.engine.revoke_all_for_user, user_id)

    async def authorize(self, access_token_hash: str) -> None:
        """Raise ``BlacklistedError`` if the access token has been revoked."""
        if await self.blacklist.is_blacklisted(access_token_hash):
            raise BlacklistedError("access token revoked")
