from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, TypeVar

from refreshguard.config import RaceLossPolicy, Settings
from refreshguard.logging import get_logger, log_security_event
from refreshguard.service.errors import (
    InvalidTokenError,
    StorageUnavailableError,
    TokenExpiredError,
    TokenReusedError,
    TokenRevokedError,
)
from refreshguard.service.tokens import TokenHasher, generate_refresh_secret
from refreshguard.storage.errors import StorageUnavailable
from refreshguard.storage.models import ClientInfo, RefreshTokenRecord, utcnow

T = TypeVar("T")


class TokenStore(Protocol):
    """Persistence port for refresh token records. Never sees raw secrets."""

    def create(self, record: RefreshTokenRecord) -> str: ...

    def get(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def try_mark_revoked(
        self,
        token_id: str,
        *,
        expected_revoked: bool = False,
        replaced_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool: ...

    def rotate(
        self,
        old_id: str,
        successor: RefreshTokenRecord,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Consume ``old_id`` and insert ``successor`` as one atomic step.

        The insert only happens when the conditional write on ``old_id``
        wins; on False nothing was written.
        """
        ...

    def revoke_all_for_user(self, user_id: str, *, now: Optional[datetime] = None) -> int: ...

    def list_active_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]: ...

    def count_active_for_user(self, user_id: str, now: Optional[datetime] = None) -> int: ...

    def delete_where(
        self, *, now: datetime, revoked_before: datetime, batch_size: int
    ) -> int: ...


@dataclass
class SecurityEvent:
    kind: str
    user_id: str
    family_id: str
    record_id: str
    revoked_count: int
    client_info: ClientInfo
    occurred_at: datetime


@dataclass
class IssuedToken:
    """A freshly minted refresh token. ``raw_token`` is the only copy of the secret."""

    raw_token: str = field(repr=False)
    record: RefreshTokenRecord

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at

    @property
    def max_expiry(self) -> datetime:
        return self.record.max_expiry


class RotationEngine:
    """Issues, rotates, validates and revokes refresh tokens.

    Every successful rotation consumes the presented token through a single
    compare-and-set on the store. Presenting a consumed token again is
    treated as theft and revokes every refresh token the user holds.
    """

    REUSE_EVENT = "refresh_token_reuse_detected"
    RACE_EVENT = "refresh_token_rotation_race_lost"

    def __init__(
        self,
        store: TokenStore,
        *,
        sliding_window: timedelta = timedelta(days=30),
        absolute_window: timedelta = timedelta(days=90),
        hasher: Optional[TokenHasher] = None,
        race_loss_policy: RaceLossPolicy = RaceLossPolicy.REJECT,
        clock: Callable[[], datetime] = utcnow,
        on_security_event: Optional[Callable[[SecurityEvent], None]] = None,
        secret_factory: Callable[[], str] = generate_refresh_secret,
    ) -> None:
        if absolute_window < sliding_window:
            raise ValueError("absolute_window must not be shorter than sliding_window")
        self.store = store
        self.sliding_window = sliding_window
        self.absolute_window = absolute_window
        self.hasher = hasher or TokenHasher()
        self.race_loss_policy = race_loss_policy
        self.clock = clock
        self.on_security_event = on_security_event
        self.secret_factory = secret_factory
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, store: TokenStore, settings: Settings, **kwargs) -> "RotationEngine":
        return cls(
            store,
            sliding_window=settings.sliding_window,
            absolute_window=settings.absolute_window,
            hasher=TokenHasher(settings.token_hash_secret),
            race_loss_policy=settings.race_loss_policy,
            **kwargs,
        )

    def _call(self, operation: str, fn: Callable[..., T], *args, **kwargs) -> T:
        try:
            return fn(*args, **kwargs)
        except StorageUnavailable as exc:
            self.logger.error(
                "token_store_unavailable", operation=operation, error=str(exc)
            )
            raise StorageUnavailableError(
                "token store unavailable", detail={"operation": operation}
            ) from exc

    def _lookup(self, raw_token: str) -> RefreshTokenRecord:
        if not raw_token or not raw_token.strip():
            raise InvalidTokenError("refresh token missing")
        record = self._call(
            "find_by_hash", self.store.find_by_hash, self.hasher.hash(raw_token)
        )
        if record is None:
            raise InvalidTokenError("refresh token not recognized")
        return record

    def _emit(self, kind: str, record: RefreshTokenRecord, revoked_count: int,
              client_info: Optional[ClientInfo], now: datetime) -> None:
        event = SecurityEvent(
            kind=kind,
            user_id=record.user_id,
            family_id=record.family_id,
            record_id=record.id,
            revoked_count=revoked_count,
            client_info=client_info or record.client_info,
            occurred_at=now,
        )
        log_security_event(event)
        if self.on_security_event is None:
            return
        try:
            self.on_security_event(event)
        except Exception as exc:
            self.logger.error(
                "security_event_hook_failed", kind=kind, user_id=record.user_id, error=str(exc)
            )

    def _revoke_family(self, kind: str, record: RefreshTokenRecord,
                       client_info: Optional[ClientInfo], now: datetime) -> int:
        revoked = self._call(
            "revoke_all_for_user", self.store.revoke_all_for_user, record.user_id, now=now
        )
        self._emit(kind, record, revoked, client_info, now)
        return revoked

    def issue(self, user_id: str, client_info: Optional[ClientInfo] = None) -> IssuedToken:
        """Start a new token family for a fresh login."""
        if not user_id:
            raise ValueError("user_id is required")
        now = self.clock()
        raw = self.secret_factory()
        record = RefreshTokenRecord.new_family(
            user_id,
            self.hasher.hash(raw),
            now=now,
            sliding_window=self.sliding_window,
            absolute_window=self.absolute_window,
            client_info=client_info,
        )
        self._call("create", self.store.create, record)
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            family_id=record.family_id,
            record_id=record.id,
            max_expiry=record.max_expiry.isoformat(),
        )
        return IssuedToken(raw_token=raw, record=record)

    def rotate(self, raw_token: str, client_info: Optional[ClientInfo] = None) -> IssuedToken:
        """Exchange a refresh token for its successor.

        Raises:
            InvalidTokenError: empty or unknown token.
            TokenReusedError: token was already consumed, or a concurrent
                rotation of the same token won.
            TokenExpiredError: sliding or absolute deadline has passed.
            StorageUnavailableError: the store timed out; nothing was decided.
        """
        record = self._lookup(raw_token)
        now = self.clock()

        if record.revoked:
            revoked = self._revoke_family(self.REUSE_EVENT, record, client_info, now)
            raise TokenReusedError(
                "refresh token reuse detected",
                detail={"family_id": record.family_id, "revoked_count": revoked},
            )

        bound = record.exceeded_bound(now)
        if bound is not None:
            self.logger.info(
                "refresh_token_expired", user_id=record.user_id, record_id=record.id, bound=bound.value
            )
            raise TokenExpiredError("refresh token expired", bound=bound)

        raw = self.secret_factory()
        successor = record.successor(
            self.hasher.hash(raw),
            now=now,
            sliding_window=self.sliding_window,
            client_info=client_info,
        )
        won = self._call(
            "rotate", self.store.rotate, record.id, successor, now=now
        )
        if not won:
            if self.race_loss_policy is RaceLossPolicy.REVOKE_FAMILY:
                self._revoke_family(self.RACE_EVENT, record, client_info, now)
            else:
                self.logger.warning(
                    self.RACE_EVENT,
                    user_id=record.user_id,
                    family_id=record.family_id,
                    record_id=record.id,
                )
            raise TokenReusedError(
                "refresh token already rotated", detail={"family_id": record.family_id}
            )

        self.logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            family_id=record.family_id,
            record_id=successor.id,
            previous_id=record.id,
        )
        return IssuedToken(raw_token=raw, record=successor)

    def validate(self, raw_token: str) -> RefreshTokenRecord:
        """Check a refresh token without consuming or revoking anything."""
        record = self._lookup(raw_token)
        if record.revoked:
            raise TokenRevokedError("refresh token revoked")
        bound = record.exceeded_bound(self.clock())
        if bound is not None:
            raise TokenExpiredError("refresh token expired", bound=bound)
        return record

    def is_valid(self, raw_token: str) -> bool:
        try:
            self.validate(raw_token)
        except (InvalidTokenError, TokenRevokedError, TokenExpiredError):
            return False
        return True

    def revoke(self, token_id: str) -> bool:
        """Revoke one record. Returns False when it was missing or already revoked."""
        revoked = self._call(
            "try_mark_revoked",
            self.store.try_mark_revoked,
            token_id,
            expected_revoked=False,
            now=self.clock(),
        )
        if revoked:
            self.logger.info("refresh_token_revoked", record_id=token_id)
        return revoked

    def revoke_token(self, raw_token: str) -> bool:
        try:
            record = self._lookup(raw_token)
        except InvalidTokenError:
            return False
        return self.revoke(record.id)

    def revoke_all_for_user(self, user_id: str) -> int:
        revoked = self._call(
            "revoke_all_for_user", self.store.revoke_all_for_user, user_id, now=self.clock()
        )
        self.logger.info("refresh_tokens_revoked_for_user", user_id=user_id, revoked=revoked)
        return revoked

    def list_active_for_user(self, user_id: str) -> List[RefreshTokenRecord]:
        return self._call(
            "list_active_for_user", self.store.list_active_for_user, user_id, self.clock()
        )

    def count_active_for_user(self, user_id: str) -> int:
        return self._call(
            "count_active_for_user", self.store.count_active_for_user, user_id, self.clock()
        )
