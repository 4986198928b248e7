import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import update

from resumable_upload.db import build_engine, build_session_factory, create_schema
from resumable_upload.errors import SessionNotFound
from resumable_upload.maintenance import cleanup_once
from resumable_upload.models import UploadSessionRecord
from resumable_upload.registry import SessionRegistry
from resumable_upload.storage import LocalChunkStorage


class _FakeStorage:
    def __init__(self) -> None:
        self.namespaces: set[str] = set()
        self.broken: set[str] = set()

    def purge(self, session_id: str) -> None:
        if session_id in self.broken:
            raise OSError("permission denied")
        self.namespaces.discard(session_id)

    def list_session_ids(self) -> set[str]:
        return set(self.namespaces)


def _registry(tmp_path: Path) -> SessionRegistry:
    engine = build_engine(f"sqlite:///{tmp_path / 'gc.db'}")
    create_schema(engine)
    return SessionRegistry(build_session_factory(engine))


def _make_idle(registry: SessionRegistry, session_id: str, **extra) -> None:
    old = datetime.now(timezone.utc) - timedelta(days=2)
    with registry._session_factory.begin() as db:
        db.execute(
            update(UploadSessionRecord)
            .where(UploadSessionRecord.id == session_id)
            .values(last_activity=old, **extra)
        )


def test_cleanup_deletes_stale_sessions_and_orphans(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    storage = LocalChunkStorage(str(tmp_path / "chunks"))

    stale = registry.create("stale.bin", 10, 2, "disk")
    storage.write_chunk(stale, 0, b"12345")
    registry.mark_chunk_received(stale, 0, 5)
    _make_idle(registry, stale)

    active = registry.create("active.bin", 10, 2, "disk")
    storage.write_chunk(active, 0, b"12345")
    storage.write_chunk("orphan-session", 0, b"zz")

    stats = cleanup_once(registry, storage, ttl_seconds=3600)

    assert stats == {"stale_sessions_deleted": 1, "orphan_namespaces_deleted": 1, "storage_errors": 0}
    assert storage.list_session_ids() == {active}
    with pytest.raises(SessionNotFound):
        registry.get(stale)
    assert registry.get(active).file_name == "active.bin"


def test_cleanup_skips_sessions_being_finalized(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    storage = _FakeStorage()
    locked = registry.create("locked.bin", 10, 2, "disk")
    storage.namespaces.add(locked)
    _make_idle(registry, locked, locked=True, locked_at=datetime.now(timezone.utc))

    stats = cleanup_once(registry, storage, ttl_seconds=3600)

    assert stats["stale_sessions_deleted"] == 0
    assert registry.get(locked).locked is True
    assert storage.namespaces == {locked}


def test_cleanup_counts_storage_errors_and_keeps_going(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    storage = _FakeStorage()
    first = registry.create("a.bin", 1, 1, "disk")
    second = registry.create("b.bin", 1, 1, "disk")
    for session_id in (first, second):
        storage.namespaces.add(session_id)
        _make_idle(registry, session_id)
    storage.broken.add(first)

    stats = cleanup_once(registry, storage, ttl_seconds=60)

    assert stats["stale_sessions_deleted"] == 2
    # The failed purge is retried by the orphan sweep in the same pass.
    assert stats["storage_errors"] == 2
    assert storage.namespaces == {first}
    assert registry.session_ids() == set()


def test_cleanup_emits_audit_and_summary_events(tmp_path: Path, caplog) -> None:
    caplog.set_level("INFO", logger="rus.audit")
    caplog.set_level("INFO", logger="rus.engine")
    registry = _registry(tmp_path)
    stale = registry.create("stale.bin", 1, 1, "disk")
    _make_idle(registry, stale)

    cleanup_once(registry, _FakeStorage(), ttl_seconds=60)

    events = [json.loads(record.message) for record in caplog.records if record.name in ("rus.audit", "rus.engine")]
    assert {"event": "audit", "action": "session_collected", "session_id": stale, "trace_id": None} in events
    summary = [event for event in events if event.get("event") == "cleanup_completed"]
    assert summary[-1]["stale_sessions_deleted"] == 1
