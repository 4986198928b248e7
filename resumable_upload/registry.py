"""Persistent session registry.

Every public method runs in its own transaction, so each call is an atomic
read-modify-write of a single session. The received-chunk set is stored as one
row per index behind a unique constraint, which makes concurrent acceptance of
distinct indices independent and of the same index collapse into one row.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from resumable_upload.errors import (
    InvalidChunkIndex,
    InvalidUploadRequest,
    SessionLimitReached,
    SessionLocked,
    SessionMismatch,
    SessionNotFound,
)
from resumable_upload.logs import engine_event
from resumable_upload.models import ReceivedChunk, StorageMode, UploadSessionRecord, utc_now


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    file_name: str
    file_size: int
    total_chunks: int
    storage_mode: StorageMode
    received_chunks: tuple[int, ...]
    locked: bool
    merge_error: str | None
    last_activity: datetime | None
    lock_token: str | None = None

    @property
    def is_complete(self) -> bool:
        return len(self.received_chunks) == self.total_chunks

    @property
    def progress(self) -> float:
        if self.total_chunks == 0:
            return 100.0
        return round(len(self.received_chunks) / self.total_chunks * 100, 2)

    @property
    def missing_chunks(self) -> list[int]:
        received = set(self.received_chunks)
        return [idx for idx in range(self.total_chunks) if idx not in received]


def parse_storage_mode(value: StorageMode | str) -> StorageMode:
    try:
        return StorageMode(value)
    except ValueError as exc:
        raise InvalidUploadRequest(f"unsupported storage mode: {value}") from exc


class SessionRegistry:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_active_sessions: int = 0,
        lock_timeout_seconds: int = 3600,
    ) -> None:
        self._session_factory = session_factory
        self.max_active_sessions = max_active_sessions
        self.lock_timeout_seconds = lock_timeout_seconds

    def _load(self, db: Session, session_id: str, for_update: bool = False) -> UploadSessionRecord:
        record = db.get(UploadSessionRecord, session_id, with_for_update=for_update or None)
        if record is None:
            raise SessionNotFound("upload session not found", session_id=session_id)
        return record

    def _snapshot(self, db: Session, record: UploadSessionRecord) -> SessionSnapshot:
        received = db.scalars(
            select(ReceivedChunk.chunk_index)
            .where(ReceivedChunk.session_id == record.id)
            .order_by(ReceivedChunk.chunk_index)
        ).all()
        return SessionSnapshot(
            session_id=record.id,
            file_name=record.file_name,
            file_size=record.file_size,
            total_chunks=record.total_chunks,
            storage_mode=StorageMode(record.storage_mode),
            received_chunks=tuple(received),
            locked=record.locked,
            merge_error=record.merge_error,
            last_activity=record.last_activity,
            lock_token=record.lock_token,
        )

    def create(self, file_name: str, file_size: int, total_chunks: int, storage_mode: StorageMode | str) -> str:
        mode = parse_storage_mode(storage_mode)
        with self._session_factory.begin() as db:
            if self.max_active_sessions > 0:
                active = db.scalar(select(func.count(UploadSessionRecord.id))) or 0
                if active >= self.max_active_sessions:
                    raise SessionLimitReached("too many active upload sessions")
            record = UploadSessionRecord(
                file_name=file_name,
                file_size=file_size,
                total_chunks=total_chunks,
                storage_mode=mode.value,
            )
            db.add(record)
            db.flush()
            return record.id

    def get(self, session_id: str) -> SessionSnapshot:
        with self._session_factory() as db:
            return self._snapshot(db, self._load(db, session_id))

    def status(self, session_id: str) -> SessionSnapshot:
        with self._session_factory.begin() as db:
            record = self._load(db, session_id)
            record.last_activity = utc_now()
            db.flush()
            return self._snapshot(db, record)

    def resume(
        self,
        session_id: str,
        file_name: str,
        file_size: int,
        total_chunks: int,
        storage_mode: StorageMode | str,
    ) -> SessionSnapshot:
        mode = parse_storage_mode(storage_mode)
        with self._session_factory.begin() as db:
            record = self._load(db, session_id)
            declared = {
                "file_name": file_name,
                "file_size": file_size,
                "total_chunks": total_chunks,
                "storage_mode": mode.value,
            }
            mismatched = sorted(field for field, value in declared.items() if getattr(record, field) != value)
            if mismatched:
                raise SessionMismatch(
                    f"resume parameters do not match session: {', '.join(mismatched)}",
                    session_id=session_id,
                )
            record.last_activity = utc_now()
            db.flush()
            return self._snapshot(db, record)

    def mark_chunk_received(self, session_id: str, chunk_index: int, size_bytes: int = 0) -> bool:
        """Add ``chunk_index`` to the received set; False when it was already there."""
        try:
            with self._session_factory.begin() as db:
                record = self._load(db, session_id, for_update=True)
                if chunk_index < 0 or chunk_index >= record.total_chunks:
                    raise InvalidChunkIndex(
                        f"chunk index {chunk_index} outside [0, {record.total_chunks})",
                        session_id=session_id,
                        chunk_index=chunk_index,
                    )
                if record.locked:
                    raise SessionLocked("upload session is being finalized", session_id=session_id)
                record.last_activity = utc_now()
                present = db.scalar(
                    select(ReceivedChunk.id).where(
                        ReceivedChunk.session_id == session_id,
                        ReceivedChunk.chunk_index == chunk_index,
                    )
                )
                if present is not None:
                    return False
                db.add(ReceivedChunk(session_id=session_id, chunk_index=chunk_index, size_bytes=size_bytes))
                return True
        except IntegrityError:
            # A concurrent request inserted the same index first.
            return False

    def reconcile(self, session_id: str, stored_indices: Iterable[int]) -> SessionSnapshot:
        """Make the received set match what the chunk store actually holds."""
        with self._session_factory.begin() as db:
            record = self._load(db, session_id, for_update=True)
            stored = {idx for idx in stored_indices if 0 <= idx < record.total_chunks}
            recorded = set(
                db.scalars(select(ReceivedChunk.chunk_index).where(ReceivedChunk.session_id == session_id)).all()
            )
            added = sorted(stored - recorded)
            removed = sorted(recorded - stored)
            for idx in added:
                db.add(ReceivedChunk(session_id=session_id, chunk_index=idx))
            if removed:
                db.execute(
                    delete(ReceivedChunk).where(
                        ReceivedChunk.session_id == session_id,
                        ReceivedChunk.chunk_index.in_(removed),
                    )
                )
            db.flush()
            if added or removed:
                engine_event(
                    {
                        "event": "session_reconciled",
                        "session_id": session_id,
                        "added_chunks": added,
                        "removed_chunks": removed,
                    }
                )
            return self._snapshot(db, record)

    def acquire_lock(self, session_id: str) -> SessionSnapshot:
        """Compare-and-set the finalize lock.

        A lock is free when unset, when its holder recorded a merge failure, or
        when its last heartbeat is older than ``lock_timeout_seconds``. Each
        acquisition gets a fresh ``lock_token``; later writes by the holder are
        conditional on it, so a holder whose lock was taken over cannot touch
        the new attempt's state.
        """
        now = utc_now()
        stale_before = now - timedelta(seconds=self.lock_timeout_seconds)
        token = str(uuid.uuid4())
        with self._session_factory.begin() as db:
            result = db.execute(
                update(UploadSessionRecord)
                .where(
                    UploadSessionRecord.id == session_id,
                    or_(
                        UploadSessionRecord.locked.is_(False),
                        UploadSessionRecord.merge_error.is_not(None),
                        UploadSessionRecord.locked_at < stale_before,
                    ),
                )
                .values(locked=True, locked_at=now, lock_token=token, merge_error=None, last_activity=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._load(db, session_id)
                raise SessionLocked("upload session is already being finalized", session_id=session_id)
            return self._snapshot(db, self._load(db, session_id))

    def _owned_by(self, session_id: str, token: str | None) -> list:
        conditions = [UploadSessionRecord.id == session_id]
        if token is not None:
            conditions.append(UploadSessionRecord.lock_token == token)
        return conditions

    def heartbeat(self, session_id: str, token: str) -> bool:
        """Refresh ``locked_at``; False when ``token`` no longer holds the lock."""
        now = utc_now()
        with self._session_factory.begin() as db:
            result = db.execute(
                update(UploadSessionRecord)
                .where(*self._owned_by(session_id, token), UploadSessionRecord.locked.is_(True))
                .values(locked_at=now, last_activity=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def release_lock(self, session_id: str, token: str | None = None) -> bool:
        with self._session_factory.begin() as db:
            result = db.execute(
                update(UploadSessionRecord)
                .where(*self._owned_by(session_id, token))
                .values(locked=False, locked_at=None, lock_token=None, merge_error=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def record_merge_failure(self, session_id: str, detail: str, token: str | None = None) -> bool:
        with self._session_factory.begin() as db:
            result = db.execute(
                update(UploadSessionRecord)
                .where(*self._owned_by(session_id, token))
                .values(merge_error=detail[:2000])
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def delete(self, session_id: str, require_unlocked: bool = False) -> bool:
        with self._session_factory.begin() as db:
            conditions = [UploadSessionRecord.id == session_id]
            if require_unlocked:
                conditions.append(UploadSessionRecord.locked.is_(False))
            result = db.execute(delete(UploadSessionRecord).where(*conditions))
            if result.rowcount != 1:
                return False
            db.execute(delete(ReceivedChunk).where(ReceivedChunk.session_id == session_id))
            return True

    def stale_session_ids(self, inactive_before: datetime) -> list[str]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(UploadSessionRecord.id).where(
                        UploadSessionRecord.last_activity < inactive_before,
                        UploadSessionRecord.locked.is_(False),
                    )
                ).all()
            )

    def delete_if_stale(self, session_id: str, inactive_before: datetime) -> bool:
        """Delete the session only if it is still idle and unlocked at delete time."""
        with self._session_factory.begin() as db:
            result = db.execute(
                delete(UploadSessionRecord).where(
                    UploadSessionRecord.id == session_id,
                    UploadSessionRecord.last_activity < inactive_before,
                    UploadSessionRecord.locked.is_(False),
                )
            )
            if result.rowcount != 1:
                return False
            db.execute(delete(ReceivedChunk).where(ReceivedChunk.session_id == session_id))
            return True

    def session_ids(self) -> set[str]:
        with self._session_factory() as db:
            return set(db.scalars(select(UploadSessionRecord.id)).all())

    def count_active(self) -> int:
        with self._session_factory() as db:
            return db.scalar(select(func.count(UploadSessionRecord.id))) or 0
