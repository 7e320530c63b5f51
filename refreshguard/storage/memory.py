from __future__ import annotations

import contextlib
import dataclasses
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from refreshguard.logging import get_logger
from refreshguard.storage.errors import ConstraintViolation, StorageUnavailable
from refreshguard.storage.models import ClientInfo, RefreshTokenRecord, utcnow

DEFAULT_LOCK_TIMEOUT = 5.0


class MemoryTokenStore:
    """In-process refresh token store for tests and single-node deployments.

    All reads and writes happen under one re-entrant lock, which gives
    ``try_mark_revoked`` and ``rotate`` their compare-and-set guarantee. When
    ``fs_root`` is set the whole state is rewritten to JSON after every
    mutation so a restart keeps revoked records around for reuse detection.
    A mutation whose write fails is undone in memory before the error
    propagates.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self.logger = get_logger(__name__)
        self.records: Dict[str, RefreshTokenRecord] = {}
        self._by_hash: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.lock_timeout = lock_timeout
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextlib.contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.lock_timeout):
            raise StorageUnavailable(
                "memory token store lock timed out", operation=operation
            )
        try:
            yield
        finally:
            self._data_lock.release()

    @staticmethod
    def _copy(record: RefreshTokenRecord) -> RefreshTokenRecord:
        return dataclasses.replace(
            record, client_info=dataclasses.replace(record.client_info)
        )

    def create(self, record: RefreshTokenRecord) -> str:
        with self._locked("create"):
            if record.id in self.records:
                raise ConstraintViolation(
                    "refresh token id already exists", {"id": record.id}
                )
            if record.token_hash in self._by_hash:
                raise ConstraintViolation(
                    "refresh token hash already exists", {"id": record.id}
                )
            self.records[record.id] = self._copy(record)
            self._by_hash[record.token_hash] = record.id
            self._commit([], [record])
            return record.id

    def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._locked("get"):
            record = self.records.get(token_id)
            return self._copy(record) if record else None

    def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._locked("find_by_hash"):
            record_id = self._by_hash.get(token_hash)
            if record_id is None:
                return None
            return self._copy(self.records[record_id])

    def try_mark_revoked(
        self,
        token_id: str,
        *,
        expected_revoked: bool = False,
        replaced_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._locked("try_mark_revoked"):
            record = self.records.get(token_id)
            if record is None or record.revoked != expected_revoked:
                return False
            if record.revoked:
                # expected_revoked=True: already terminal, nothing to change
                return True
            previous = self._copy(record)
            record.revoked = True
            record.replaced_by = replaced_by
            record.updated_at = now or utcnow()
            self._commit([previous], [])
            return True

    def rotate(
        self,
        old_id: str,
        successor: RefreshTokenRecord,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._locked("rotate"):
            record = self.records.get(old_id)
            if record is None or record.revoked:
                return False
            if successor.id in self.records or successor.token_hash in self._by_hash:
                raise ConstraintViolation(
                    "refresh token already exists", {"id": successor.id}
                )
            previous = self._copy(record)
            record.revoked = True
            record.replaced_by = successor.id
            record.updated_at = now or utcnow()
            self.records[successor.id] = self._copy(successor)
            self._by_hash[successor.token_hash] = successor.id
            self._commit([previous], [successor])
            return True

    def revoke_all_for_user(self, user_id: str, *, now: Optional[datetime] = None) -> int:
        with self._locked("revoke_all_for_user"):
            now = now or utcnow()
            previous: List[RefreshTokenRecord] = []
            for record in self.records.values():
                if record.user_id == user_id and not record.revoked:
                    previous.append(self._copy(record))
                    record.revoked = True
                    record.updated_at = now
            if previous:
                self._commit(previous, [])
            return len(previous)

    def _commit(
        self, previous: List[RefreshTokenRecord], inserted: List[RefreshTokenRecord]
    ) -> None:
        """Persist a mutation, undoing it in memory if the write fails."""
        try:
            self._persist_state()
        except StorageUnavailable:
            for record in previous:
                self.records[record.id] = record
            for record in inserted:
                self.records.pop(record.id, None)
                self._by_hash.pop(record.token_hash, None)
            raise

    def list_active_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]:
        now = now or utcnow()
        with self._locked("list_active_for_user"):
            active = [
                self._copy(record)
                for record in self.records.values()
                if record.user_id == user_id and record.is_active(now)
            ]
        active.sort(key=lambda r: r.issued_at, reverse=True)
        return active

    def count_active_for_user(self, user_id: str, now: Optional[datetime] = None) -> int:
        return len(self.list_active_for_user(user_id, now))

    def delete_where(
        self, *, now: datetime, revoked_before: datetime, batch_size: int
    ) -> int:
        with self._locked("delete_where"):
            doomed: List[str] = []
            for record in self.records.values():
                if len(doomed) >= batch_size:
                    break
                if (
                    record.max_expiry < now
                    or record.expires_at < now
                    or (record.revoked and record.updated_at < revoked_before)
                ):
                    doomed.append(record.id)
            for record_id in doomed:
                record = self.records.pop(record_id)
                self._by_hash.pop(record.token_hash, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {"refresh_tokens": [self._serialize_record(r) for r in self.records.values()]}
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageUnavailable(
                f"failed to persist token store state: {exc}", operation="persist"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        records = [self._deserialize_record(r) for r in data.get("refresh_tokens", [])]
        self.records = {r.id: r for r in records}
        self._by_hash = {r.token_hash: r.id for r in records}
        self.logger.info("token_store_state_loaded", records=len(records))
        return True

    @staticmethod
    def _serialize_record(record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "family_id": record.family_id,
            "token_hash": record.token_hash,
            "issued_at": record.issued_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "max_expiry": record.max_expiry.isoformat(),
            "revoked": record.revoked,
            "replaced_by": record.replaced_by,
            "ip_address": record.client_info.ip_address,
            "user_agent": record.client_info.user_agent,
            "updated_at": record.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_record(data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            family_id=data.get("family_id") or data["id"],
            token_hash=data["token_hash"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            max_expiry=datetime.fromisoformat(data["max_expiry"]),
            revoked=bool(data.get("revoked", False)),
            replaced_by=data.get("replaced_by"),
            client_info=ClientInfo(
                ip_address=data.get("ip_address"),
                user_agent=data.get("user_agent"),
            ),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
