"""Transport-agnostic upload operations.

``UploadService`` is what the HTTP layer and the in-process client call. It owns
the ordering between the chunk store and the registry: a chunk is written to the
store first and marked received second, so the registry never claims a chunk the
store does not hold.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from resumable_upload.config import Settings, settings
from resumable_upload.errors import (
    ChunkIOFailure,
    ChunkTooLarge,
    InvalidChunkIndex,
    InvalidUploadRequest,
    SessionLocked,
    SessionMismatch,
)
from resumable_upload.limits import PerSessionInflightLimiter
from resumable_upload.logs import audit_event, engine_event
from resumable_upload.maintenance import cleanup_once
from resumable_upload.merge import MergeEngine, MergeResult
from resumable_upload.metrics import (
    bytes_uploaded_total,
    chunk_write_failures_total,
    chunk_write_latency_seconds,
    chunks_skipped_total,
    chunks_uploaded_total,
    sessions_cancelled_total,
    sessions_completed_total,
    sessions_resumed_total,
    sessions_started_total,
)
from resumable_upload.models import StorageMode
from resumable_upload.registry import SessionRegistry, SessionSnapshot, parse_storage_mode
from resumable_upload.storage import ChunkPayload, ChunkStorage, build_storage
from resumable_upload.tracing import tracer


@dataclass(frozen=True)
class ChunkAck:
    session_id: str
    chunk_index: int
    accepted: bool
    already_had: bool


def payload_size(data: ChunkPayload) -> int:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return len(data)
    position = data.tell()
    data.seek(0, os.SEEK_END)
    size = data.tell() - position
    data.seek(position)
    return size


class UploadService:
    def __init__(
        self,
        registry: SessionRegistry,
        storage: ChunkStorage,
        merger: MergeEngine,
        max_chunk_size_bytes: int = 100 * 1024 * 1024,
        max_inflight_chunks_per_session: int = 0,
        session_ttl_seconds: int = 86400,
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.merger = merger
        self.max_chunk_size_bytes = max_chunk_size_bytes
        self.session_ttl_seconds = session_ttl_seconds
        self.limiter = PerSessionInflightLimiter(max_inflight_chunks_per_session)

    @classmethod
    def build(
        cls,
        session_factory: sessionmaker[Session],
        storage: ChunkStorage | None = None,
        config: Settings | None = None,
    ) -> "UploadService":
        config = config or settings
        storage = storage or build_storage()
        registry = SessionRegistry(
            session_factory,
            max_active_sessions=config.max_active_sessions,
            lock_timeout_seconds=config.merge_lock_timeout_seconds,
        )
        merger = MergeEngine(
            registry, storage, completed_root=config.completed_root, block_size=config.merge_block_size_bytes
        )
        return cls(
            registry,
            storage,
            merger,
            max_chunk_size_bytes=config.max_chunk_size_bytes,
            max_inflight_chunks_per_session=config.max_inflight_chunks_per_session,
            session_ttl_seconds=config.session_ttl_seconds,
        )

    def start_session(
        self,
        file_name: str,
        file_size: int,
        total_chunks: int,
        storage_mode: StorageMode | str = StorageMode.on_disk,
    ) -> str:
        if not file_name or not file_name.strip():
            raise InvalidUploadRequest("file_name must not be empty")
        if file_size < 0 or total_chunks < 0:
            raise InvalidUploadRequest("file_size and total_chunks must not be negative")
        if (file_size == 0) != (total_chunks == 0):
            raise InvalidUploadRequest("an empty file has no chunks and a non-empty file has at least one")
        if total_chunks > file_size:
            raise InvalidUploadRequest("total_chunks cannot exceed file_size")
        session_id = self.registry.create(file_name, file_size, total_chunks, storage_mode)
        sessions_started_total.inc()
        audit_event(
            {
                "action": "session_started",
                "session_id": session_id,
                "file_name": file_name,
                "file_size": file_size,
                "total_chunks": total_chunks,
                "storage_mode": parse_storage_mode(storage_mode).value,
            }
        )
        return session_id

    def resume_session(
        self,
        session_id: str,
        file_name: str,
        file_size: int,
        total_chunks: int,
        storage_mode: StorageMode | str = StorageMode.on_disk,
    ) -> list[int]:
        self.registry.resume(session_id, file_name, file_size, total_chunks, storage_mode)
        try:
            stored = self.storage.list_indices(session_id)
        except Exception as exc:
            raise ChunkIOFailure(f"failed to list stored chunks: {exc}", session_id=session_id) from exc
        snapshot = self.registry.reconcile(session_id, stored)
        sessions_resumed_total.inc()
        audit_event(
            {
                "action": "session_resumed",
                "session_id": session_id,
                "received_chunks": len(snapshot.received_chunks),
                "total_chunks": snapshot.total_chunks,
            }
        )
        return list(snapshot.received_chunks)

    def upload_chunk(self, session_id: str, chunk_index: int, total_chunks: int, data: ChunkPayload) -> ChunkAck:
        snapshot = self.registry.get(session_id)
        if total_chunks != snapshot.total_chunks:
            raise SessionMismatch(
                f"chunk declares {total_chunks} total chunks but session has {snapshot.total_chunks}",
                session_id=session_id,
                chunk_index=chunk_index,
            )
        if chunk_index < 0 or chunk_index >= snapshot.total_chunks:
            raise InvalidChunkIndex(
                f"chunk index {chunk_index} outside [0, {snapshot.total_chunks})",
                session_id=session_id,
                chunk_index=chunk_index,
            )
        if snapshot.locked:
            raise SessionLocked("upload session is being finalized", session_id=session_id)
        size = payload_size(data)
        if size == 0:
            raise InvalidUploadRequest("chunk payload is empty", session_id=session_id, chunk_index=chunk_index)
        if size > self.max_chunk_size_bytes:
            raise ChunkTooLarge(
                f"chunk of {size} bytes exceeds the {self.max_chunk_size_bytes} byte limit",
                session_id=session_id,
                chunk_index=chunk_index,
            )

        self.limiter.acquire(session_id)
        try:
            with tracer.start_as_current_span("chunk.write") as span:
                span.set_attribute("upload.session_id", session_id)
                span.set_attribute("upload.chunk_index", chunk_index)
                try:
                    already_had = self.storage.chunk_exists(session_id, chunk_index)
                    if not already_had:
                        started = time.perf_counter()
                        self.storage.write_chunk(session_id, chunk_index, data)
                        chunk_write_latency_seconds.observe(time.perf_counter() - started)
                except Exception as exc:
                    chunk_write_failures_total.inc()
                    raise ChunkIOFailure(
                        f"failed to store chunk {chunk_index}: {exc}", session_id=session_id, chunk_index=chunk_index
                    ) from exc
                span.set_attribute("upload.chunk_already_had", already_had)
            self.registry.mark_chunk_received(session_id, chunk_index, size)
        finally:
            self.limiter.release(session_id)

        if already_had:
            chunks_skipped_total.inc()
        else:
            chunks_uploaded_total.inc()
            bytes_uploaded_total.inc(size)
        return ChunkAck(session_id=session_id, chunk_index=chunk_index, accepted=True, already_had=already_had)

    def get_status(self, session_id: str) -> SessionSnapshot:
        return self.registry.status(session_id)

    def complete(self, session_id: str) -> MergeResult:
        result = self.merger.finalize(session_id)
        sessions_completed_total.inc()
        audit_event(
            {
                "action": "session_completed",
                "session_id": session_id,
                "final_path": result.final_path,
                "total_size": result.total_size,
            }
        )
        return result

    def cancel(self, session_id: str) -> None:
        snapshot = self.registry.get(session_id)
        if snapshot.locked:
            raise SessionLocked("cannot cancel a session that is being finalized", session_id=session_id)
        if not self.registry.delete(session_id, require_unlocked=True):
            # Raises SessionNotFound if a concurrent request removed it; otherwise a finalize won.
            self.registry.get(session_id)
            raise SessionLocked("cannot cancel a session that is being finalized", session_id=session_id)
        sessions_cancelled_total.inc()
        audit_event({"action": "session_cancelled", "session_id": session_id})
        try:
            self.storage.purge(session_id)
        except Exception as exc:
            engine_event(
                {"event": "purge_failed", "session_id": session_id, "detail": str(exc), "error_class": "storage_error"},
                logging.WARNING,
            )

    def collect_garbage(self) -> dict[str, int]:
        return cleanup_once(self.registry, self.storage, self.session_ttl_seconds)
