from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import update

from resumable_upload.db import build_engine, build_session_factory, create_schema
from resumable_upload.errors import (
    InvalidChunkIndex,
    InvalidUploadRequest,
    SessionLimitReached,
    SessionLocked,
    SessionMismatch,
    SessionNotFound,
)
from resumable_upload.models import StorageMode, UploadSessionRecord
from resumable_upload.registry import SessionRegistry


def _registry(tmp_path: Path, **kwargs) -> SessionRegistry:
    engine = build_engine(f"sqlite:///{tmp_path / 'registry.db'}")
    create_schema(engine)
    return SessionRegistry(build_session_factory(engine), **kwargs)


def _age_session(registry: SessionRegistry, session_id: str, **values) -> None:
    with registry._session_factory.begin() as db:
        db.execute(update(UploadSessionRecord).where(UploadSessionRecord.id == session_id).values(**values))


def test_create_and_get_session(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    session_id = registry.create("movie.mp4", 10_000_000, 4, "disk")

    snapshot = registry.get(session_id)
    assert snapshot.file_name == "movie.mp4"
    assert snapshot.file_size == 10_000_000
    assert snapshot.total_chunks == 4
    assert snapshot.storage_mode is StorageMode.on_disk
    assert snapshot.received_chunks == ()
    assert snapshot.locked is False
    assert snapshot.missing_chunks == [0, 1, 2, 3]
    assert snapshot.progress == 0.0


def test_unknown_session_and_storage_mode(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    with pytest.raises(SessionNotFound):
        registry.get("missing")
    with pytest.raises(InvalidUploadRequest):
        registry.create("a.bin", 1, 1, "tape")


def test_session_limit(tmp_path: Path) -> None:
    registry = _registry(tmp_path, max_active_sessions=1)
    registry.create("a.bin", 1, 1, "disk")
    with pytest.raises(SessionLimitReached):
        registry.create("b.bin", 1, 1, "disk")


def test_mark_chunk_received_is_idempotent(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    session_id = registry.create("a.bin", 10, 3, "disk")

    assert registry.mark_chunk_received(session_id, 2, 4) is True
    assert registry.mark_chunk_received(session_id, 2, 4) is False
    assert registry.mark_chunk_received(session_id, 0, 4) is True

    snapshot = registry.get(session_id)
    assert snapshot.received_chunks == (0, 2)
    assert snapshot.missing_chunks == [1]
    assert snapshot.is_complete is False

    with pytest.raises(InvalidChunkIndex):
        registry.mark_chunk_received(session_id, 3)


def test_resume_checks_declared_parameters(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    session_id = registry.create("a.bin", 10, 3, "disk")
    registry.mark_chunk_received(session_id, 1)

    snapshot = registry.resume(session_id, "a.bin", 10, 3, StorageMode.on_disk)
    assert snapshot.received_chunks == (1,)

    with pytest.raises(SessionMismatch) as exc_info:
        registry.resume(session_id, "a.bin", 11, 3, "memory")
    assert "file_size" in exc_info.value.detail
    assert "storage_mode" in exc_info.value.detail


def test_status_touches_last_activity(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    session_id = registry.create("a.bin", 10, 3, "disk")
    old = datetime.now(timezone.utc) - timedelta(days=3)
    _age_session(registry, session_id, last_activity=old)

    assert registry.stale_session_ids(datetime.now(timezone.utc) - timedelta(days=1)) == [session_id]
    registry.status(session_id)
    assert registry.stale_session_ids(datetime.now(timezone.utc) - timedelta(days=1)) == []


def test_reconcile_follows_chunk_store(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    session_id = registry.create("a.bin", 10, 3, "disk")
    registry.mark_chunk_received(session_id, 0)
    registry.mark_chunk_received(session_id, 1)

    snapshot = registry.reconcile(session_id, {1, 2, 7})

    assert snapshot.received_chunks == (1, 2)


def test_lock_is_exclusive_and_blocks_chunks(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    session_id = registry.create("a.bin", 10, 3, "disk")

    assert registry.acquire_lock(session_id).locked is True
    with pytest.raises(SessionLocked):
        registry.acquire_lock(session_id)
    with pytest.raises(SessionLocked):
        registry.mark_chunk_received(session_id, 0)
    with pytest.raises(SessionNotFound):
        registry.acquire_lock("missing")

    registry.release_lock(session_id)
    assert registry.mark_chunk_received(session_id, 0) is True


def test_lock_can_be_taken_over_after_failure_or_timeout(tmp_path: Path) -> None:
    registry = _registry(tmp_path, lock_timeout_seconds=60)
    session_id = registry.create("a.bin", 10, 3, "disk")

    registry.acquire_lock(session_id)
    registry.record_merge_failure(session_id, "disk full")
    assert registry.get(session_id).merge_error == "disk full"
    snapshot = registry.acquire_lock(session_id)
    assert snapshot.merge_error is None

    _age_session(registry, session_id, locked_at=datetime.now(timezone.utc) - timedelta(minutes=5))
    assert registry.acquire_lock(session_id).locked is True


def test_stale_sessions_skip_locked_and_recently_active(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    old = datetime.now(timezone.utc) - timedelta(days=3)
    cutoff = datetime.now(timezone.utc) - timedelta(days=1)
    idle = registry.create("idle.bin", 1, 1, "disk")
    locked = registry.create("locked.bin", 1, 1, "disk")
    active = registry.create("active.bin", 1, 1, "disk")
    _age_session(registry, idle, last_activity=old)
    _age_session(registry, locked, last_activity=old, locked=True, locked_at=old)

    assert registry.stale_session_ids(cutoff) == [idle]
    assert registry.delete_if_stale(locked, cutoff) is False
    assert registry.delete_if_stale(active, cutoff) is False
    assert registry.delete_if_stale(idle, cutoff) is True
    assert registry.session_ids() == {locked, active}
    assert registry.count_active() == 2


def test_delete_can_require_unlocked(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    session_id = registry.create("a.bin", 10, 3, "disk")
    registry.mark_chunk_received(session_id, 0)
    registry.acquire_lock(session_id)

    assert registry.delete(session_id, require_unlocked=True) is False
    assert registry.delete(session_id) is True
    assert registry.delete(session_id) is False
    with pytest.raises(SessionNotFound):
        registry.get(session_id)


def test_lock_token_guards_heartbeat_and_release(tmp_path: Path) -> None:
    registry = _registry(tmp_path, lock_timeout_seconds=60)
    session_id = registry.create("a.bin", 10, 3, "disk")

    first = registry.acquire_lock(session_id).lock_token
    assert registry.heartbeat(session_id, first) is True

    _age_session(registry, session_id, locked_at=datetime.now(timezone.utc) - timedelta(minutes=5))
    second = registry.acquire_lock(session_id).lock_token
    assert second != first

    assert registry.heartbeat(session_id, first) is False
    assert registry.record_merge_failure(session_id, "late failure", first) is False
    assert registry.release_lock(session_id, first) is False
    assert registry.get(session_id).merge_error is None

    assert registry.heartbeat(session_id, second) is True
    assert registry.release_lock(session_id, second) is True
    snapshot = registry.get(session_id)
    assert snapshot.locked is False
    assert snapshot.lock_token is None
