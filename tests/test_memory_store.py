import threading
from datetime import datetime, timedelta, timezone

import pytest

from refreshguard.storage.errors import ConstraintViolation, StorageUnavailable
from refreshguard.storage.memory import MemoryTokenStore
from refreshguard.storage.models import ClientInfo, RefreshTokenRecord

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_record(user_id="user-1", token_hash="hash-1", *, issued_at=NOW, days=30) -> RefreshTokenRecord:
    return RefreshTokenRecord.new_family(
        user_id,
        token_hash,
        now=issued_at,
        sliding_window=timedelta(days=days),
        absolute_window=timedelta(days=90),
        client_info=ClientInfo("203.0.113.1", "pytest"),
    )


def test_create_and_find_by_hash(store):
    record = make_record()
    assert store.create(record) == record.id
    found = store.find_by_hash("hash-1")
    assert found == record
    assert store.get(record.id) == record
    assert store.find_by_hash("missing") is None


def test_duplicate_hash_is_a_constraint_violation(store):
    store.create(make_record())
    with pytest.raises(ConstraintViolation):
        store.create(make_record(token_hash="hash-1"))


def test_returned_records_are_copies(store):
    record = make_record()
    store.create(record)
    found = store.find_by_hash("hash-1")
    found.revoked = True
    assert store.find_by_hash("hash-1").revoked is False


def test_try_mark_revoked_is_compare_and_set(store):
    record = make_record()
    store.create(record)

    assert store.try_mark_revoked(record.id, replaced_by="next") is True
    assert store.try_mark_revoked(record.id, replaced_by="other") is False
    stored = store.get(record.id)
    assert stored.revoked is True
    assert stored.replaced_by == "next"
    assert store.try_mark_revoked("missing") is False


def test_find_by_hash_returns_revoked_records(store):
    record = make_record()
    store.create(record)
    store.try_mark_revoked(record.id)
    assert store.find_by_hash("hash-1").revoked is True


def test_revoke_all_for_user_counts_newly_revoked(store):
    first = make_record(token_hash="a")
    store.create(first)
    store.create(make_record(token_hash="b"))
    store.create(make_record(user_id="user-2", token_hash="c"))
    store.try_mark_revoked(first.id)

    assert store.revoke_all_for_user("user-1") == 1
    assert store.count_active_for_user("user-1", NOW) == 0
    assert store.count_active_for_user("user-2", NOW) == 1


def test_list_active_newest_first_and_skips_expired(store):
    old = make_record(token_hash="old", issued_at=NOW - timedelta(days=2))
    new = make_record(token_hash="new", issued_at=NOW - timedelta(days=1))
    stale = make_record(token_hash="stale", issued_at=NOW - timedelta(days=40))
    for record in (old, new, stale):
        store.create(record)

    active = store.list_active_for_user("user-1", NOW)
    assert [r.id for r in active] == [new.id, old.id]


def test_delete_where_respects_batch_size(store):
    for i in range(5):
        store.create(make_record(token_hash=f"h{i}", issued_at=NOW - timedelta(days=100)))
    deleted = store.delete_where(now=NOW, revoked_before=NOW, batch_size=3)
    assert deleted == 3
    assert store.delete_where(now=NOW, revoked_before=NOW, batch_size=3) == 2
    assert store.records == {}


def test_state_persists_across_instances(tmp_path):
    store = MemoryTokenStore(fs_root=str(tmp_path))
    record = make_record()
    store.create(record)
    store.try_mark_revoked(record.id, replaced_by="next")

    reloaded = MemoryTokenStore(fs_root=str(tmp_path))
    stored = reloaded.find_by_hash("hash-1")
    assert stored is not None
    assert stored.revoked is True
    assert stored.replaced_by == "next"
    assert stored.client_info.user_agent == "pytest"
    assert (tmp_path / "state" / "token_store.json").exists()


def test_lock_timeout_raises_storage_unavailable():
    store = MemoryTokenStore(lock_timeout=0.05)
    held = threading.Event()
    release = threading.Event()

    def hold_lock():
        with store._locked("test"):
            held.set()
            release.wait(2)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    held.wait(2)
    try:
        with pytest.raises(StorageUnavailable) as excinfo:
            store.find_by_hash("anything")
        assert excinfo.value.operation == "find_by_hash"
    finally:
        release.set()
        holder.join()


def test_rotate_consumes_and_inserts_together(store):
    record = make_record()
    store.create(record)
    successor = record.successor("hash-2", now=NOW + timedelta(hours=1), sliding_window=timedelta(days=30))
    rotated_at = NOW + timedelta(hours=1)

    assert store.rotate(record.id, successor, now=rotated_at) is True
    old = store.get(record.id)
    assert old.revoked is True
    assert old.replaced_by == successor.id
    assert old.updated_at == rotated_at
    assert store.find_by_hash("hash-2") == successor

    again = record.successor("hash-3", now=rotated_at, sliding_window=timedelta(days=30))
    assert store.rotate(record.id, again) is False
    assert store.find_by_hash("hash-3") is None
    assert store.rotate("missing", again) is False


def test_rotate_rejects_duplicate_successor_without_consuming(store):
    record = make_record()
    store.create(record)
    store.create(make_record(token_hash="hash-2"))
    clash = record.successor("hash-2", now=NOW, sliding_window=timedelta(days=30))

    with pytest.raises(ConstraintViolation):
        store.rotate(record.id, clash)
    assert store.get(record.id).revoked is False


def test_failed_persist_undoes_rotate(tmp_path, monkeypatch):
    store = MemoryTokenStore(fs_root=str(tmp_path))
    record = make_record()
    store.create(record)
    successor = record.successor("hash-2", now=NOW, sliding_window=timedelta(days=30))

    def fail_persist():
        raise StorageUnavailable("disk full", operation="persist")

    monkeypatch.setattr(store, "_persist_state", fail_persist)
    with pytest.raises(StorageUnavailable):
        store.rotate(record.id, successor)

    assert store.get(record.id).revoked is False
    assert store.get(record.id).replaced_by is None
    assert store.get(successor.id) is None
    assert store.find_by_hash("hash-2") is None
    assert [r.id for r in store.list_active_for_user("user-1", NOW)] == [record.id]


def test_failed_persist_undoes_revocations(tmp_path, monkeypatch):
    store = MemoryTokenStore(fs_root=str(tmp_path))
    record = make_record()
    store.create(record)

    def fail_persist():
        raise StorageUnavailable("disk full", operation="persist")

    monkeypatch.setattr(store, "_persist_state", fail_persist)
    with pytest.raises(StorageUnavailable):
        store.try_mark_revoked(record.id)
    with pytest.raises(StorageUnavailable):
        store.revoke_all_for_user("user-1")
    with pytest.raises(StorageUnavailable):
        store.create(make_record(token_hash="hash-9"))

    assert store.get(record.id).revoked is False
    assert store.find_by_hash("hash-9") is None


def test_revocations_use_caller_time(store):
    first = make_record()
    second = make_record(token_hash="hash-2")
    store.create(first)
    store.create(second)
    stamp = NOW + timedelta(hours=5)

    store.try_mark_revoked(first.id, now=stamp)
    assert store.revoke_all_for_user("user-1", now=stamp + timedelta(hours=1)) == 1
    assert store.get(first.id).updated_at == stamp
    assert store.get(second.id).updated_at == stamp + timedelta(hours=1)
