"""Ordered merge of a fully uploaded session into its final artifact.

States: IDLE -> VERIFYING -> STREAMING -> FINALIZED, or FAILED on any step.
Bytes are streamed into a hidden ``.partial`` file beside the destination and
renamed into place only after every chunk was written and flushed, so a failed
merge never exposes partial output under the declared name. Each attempt writes
its own partial file, named by its lock token, and heartbeats the lock after every
chunk; an attempt that loses the lock stops without publishing.
"""

import enum
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from resumable_upload.errors import IncompleteUpload, MergeIOFailure, SessionLocked, SessionMismatch, UploadError
from resumable_upload.logs import engine_event
from resumable_upload.metrics import merge_duration_seconds, merge_failures_total
from resumable_upload.registry import SessionRegistry
from resumable_upload.storage import ChunkStorage
from resumable_upload.tracing import tracer


class MergeState(str, enum.Enum):
    idle = "IDLE"
    verifying = "VERIFYING"
    streaming = "STREAMING"
    finalized = "FINALIZED"
    failed = "FAILED"


@dataclass(frozen=True)
class MergeResult:
    session_id: str
    final_path: str
    total_size: int


def safe_file_name(file_name: str, fallback: str) -> str:
    name = PurePosixPath(file_name.replace("\\", "/")).name.strip()
    if name in ("", ".", ".."):
        return fallback
    return name


class MergeEngine:
    def __init__(
        self,
        registry: SessionRegistry,
        storage: ChunkStorage,
        completed_root: str,
        block_size: int = 1024 * 1024,
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.completed_root = Path(completed_root)
        self.block_size = block_size

    def _enter(self, session_id: str, state: MergeState, **extra) -> MergeState:
        level = logging.WARNING if state is MergeState.failed else logging.INFO
        engine_event({"event": "merge_state", "session_id": session_id, "state": state.value, **extra}, level)
        return state

    def finalize(self, session_id: str) -> MergeResult:
        self._enter(session_id, MergeState.idle)
        started = time.perf_counter()
        snapshot = self.registry.acquire_lock(session_id)
        token = snapshot.lock_token
        with tracer.start_as_current_span("merge.finalize") as span:
            span.set_attribute("upload.session_id", session_id)
            span.set_attribute("upload.total_chunks", snapshot.total_chunks)
            try:
                present = self._verify(session_id, snapshot.total_chunks)
            except Exception as exc:
                self._fail(session_id, token, f"failed to list stored chunks: {exc}")
                raise MergeIOFailure(f"failed to list stored chunks: {exc}", session_id=session_id) from exc

            if len(present) != snapshot.total_chunks:
                missing = sorted(set(range(snapshot.total_chunks)) - present)
                self.registry.reconcile(session_id, present)
                self.registry.release_lock(session_id, token)
                self._enter(session_id, MergeState.failed, reason="incomplete", missing_chunks=missing)
                raise IncompleteUpload(
                    f"cannot complete upload, missing {len(missing)} of {snapshot.total_chunks} chunks",
                    session_id=session_id,
                    missing=missing,
                )

            self._enter(session_id, MergeState.streaming)
            name = safe_file_name(snapshot.file_name, fallback=session_id)
            final_path = self.completed_root / name
            partial_path = self.completed_root / f".{name}.{token}.partial"
            try:
                self.completed_root.mkdir(parents=True, exist_ok=True)
                written = self._stream(session_id, token, snapshot.total_chunks, partial_path)
                if written != snapshot.file_size:
                    partial_path.unlink(missing_ok=True)
                    self.registry.release_lock(session_id, token)
                    self._enter(session_id, MergeState.failed, reason="size_mismatch", written=written)
                    raise SessionMismatch(
                        f"merged {written} bytes but session declared {snapshot.file_size}",
                        session_id=session_id,
                    )
                if not self.registry.heartbeat(session_id, token):
                    self._lock_lost(session_id)
                os.replace(partial_path, final_path)
            except UploadError:
                partial_path.unlink(missing_ok=True)
                raise
            except Exception as exc:
                partial_path.unlink(missing_ok=True)
                self._fail(session_id, token, str(exc))
                raise MergeIOFailure(f"failed to merge chunks: {exc}", session_id=session_id) from exc

            self._release_chunks(session_id, snapshot.total_chunks)
            self.registry.delete(session_id)
            span.set_attribute("upload.total_size", written)

        merge_duration_seconds.observe(time.perf_counter() - started)
        self._enter(session_id, MergeState.finalized, final_path=str(final_path), total_size=written)
        return MergeResult(session_id=session_id, final_path=str(final_path), total_size=written)

    def _verify(self, session_id: str, total_chunks: int) -> set[int]:
        self._enter(session_id, MergeState.verifying)
        return {idx for idx in self.storage.list_indices(session_id) if 0 <= idx < total_chunks}

    def _stream(self, session_id: str, token: str, total_chunks: int, partial_path: Path) -> int:
        written = 0
        with partial_path.open("wb") as out:
            for index in range(total_chunks):
                for block in self.storage.iter_chunk(session_id, index, self.block_size):
                    out.write(block)
                    written += len(block)
                # A live merge keeps locked_at inside lock_timeout_seconds.
                if not self.registry.heartbeat(session_id, token):
                    self._lock_lost(session_id)
            out.flush()
            os.fsync(out.fileno())
        return written

    def _lock_lost(self, session_id: str) -> None:
        self._enter(session_id, MergeState.failed, reason="lock_lost")
        raise SessionLocked("finalize lock was taken over by another attempt", session_id=session_id)

    def _release_chunks(self, session_id: str, total_chunks: int) -> None:
        try:
            for index in range(total_chunks):
                self.storage.delete_chunk(session_id, index)
            self.storage.purge(session_id)
        except Exception as exc:
            # The namespace has no registry record after this point; the orphan sweep reclaims it.
            engine_event(
                {"event": "chunk_release_failed", "session_id": session_id, "detail": str(exc)},
                logging.WARNING,
            )

    def _fail(self, session_id: str, token: str | None, detail: str) -> None:
        merge_failures_total.inc()
        self.registry.record_merge_failure(session_id, detail, token)
        self._enter(session_id, MergeState.failed, reason="io_error", detail=detail)
