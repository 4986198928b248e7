"""Client-side upload driver.

``UploadDriver`` splits a local file into fixed-size chunks and pushes them
through an ``UploadTransport`` with bounded concurrency. It is a small state
machine::

    idle -> initiating -> uploading -> completed
                 |            |  ^
                 v            v  |
               error <----- paused
                 |
                 +-> uploading / initiating (retry)

Any non-terminal state can move to ``cancelled``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from resumable_upload.chunking import read_chunk, total_chunks_for
from resumable_upload.client import UploadTransport
from resumable_upload.config import ClientSettings, client_settings
from resumable_upload.errors import IncompleteUpload, SessionMismatch, SessionNotFound, UploadError
from resumable_upload.logs import client_event
from resumable_upload.merge import MergeResult
from resumable_upload.models import StorageMode


class UploadState(str, Enum):
    idle = "idle"
    initiating = "initiating"
    uploading = "uploading"
    paused = "paused"
    error = "error"
    completed = "completed"
    cancelled = "cancelled"


_TRANSITIONS: dict[UploadState, frozenset[UploadState]] = {
    UploadState.idle: frozenset({UploadState.initiating, UploadState.cancelled}),
    UploadState.initiating: frozenset({UploadState.uploading, UploadState.error, UploadState.cancelled}),
    UploadState.uploading: frozenset(
        {UploadState.paused, UploadState.error, UploadState.completed, UploadState.cancelled}
    ),
    UploadState.paused: frozenset({UploadState.uploading, UploadState.cancelled}),
    UploadState.error: frozenset({UploadState.uploading, UploadState.initiating, UploadState.cancelled}),
    UploadState.completed: frozenset(),
    UploadState.cancelled: frozenset(),
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: UploadState, requested: UploadState, reason: str = "") -> None:
        message = f"cannot move from {current.value} to {requested.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.requested = requested


class ChunkUploadFailed(Exception):
    """A chunk gave up after exhausting its retries or hit a non-retryable error."""

    def __init__(self, chunk_index: int, cause: BaseException) -> None:
        super().__init__(f"chunk {chunk_index} failed: {cause!r}")
        self.chunk_index = chunk_index
        self.cause = cause


@dataclass(frozen=True)
class UploadProgress:
    session_id: str | None
    state: UploadState
    received: int
    total: int
    failed_chunk: int | None = None
    error: str | None = None
    error_code: str | None = None
    result: MergeResult | None = None

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0 if self.state is UploadState.completed else 0.0
        return round(self.received / self.total * 100, 2)


ProgressCallback = Callable[[UploadProgress], None]


class UploadDriver:
    def __init__(
        self,
        transport: UploadTransport,
        path: str | Path,
        *,
        chunk_size: int,
        concurrency: int = 3,
        max_retries: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        request_timeout_seconds: float | None = 60.0,
        session_id: str | None = None,
        file_name: str | None = None,
        storage_mode: StorageMode | str = StorageMode.on_disk,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.transport = transport
        self.path = Path(path)
        self.file_name = file_name or self.path.name
        self.file_size = self.path.stat().st_size
        self.chunk_size = chunk_size
        self.total_chunks = total_chunks_for(self.file_size, chunk_size)
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.session_id = session_id
        self.storage_mode = StorageMode(storage_mode)
        self.on_progress = on_progress

        self.state = UploadState.idle
        self.failed_chunk: int | None = None
        self.error: BaseException | None = None
        self.result: MergeResult | None = None
        self._accepted: set[int] = set()
        self._inflight: dict[asyncio.Task, int] = {}
        self._initiated = False
        self._finalizing = False
        self._run_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        transport: UploadTransport,
        path: str | Path,
        config: ClientSettings | None = None,
        **overrides,
    ) -> "UploadDriver":
        config = config or client_settings
        options = {
            "chunk_size": config.chunk_size_bytes,
            "concurrency": config.concurrency,
            "max_retries": config.max_retries,
            "backoff_base_seconds": config.backoff_base_seconds,
            "backoff_max_seconds": config.backoff_max_seconds,
            "request_timeout_seconds": config.request_timeout_seconds,
        }
        options.update(overrides)
        return cls(transport, path, **options)

    def progress(self) -> UploadProgress:
        error = self.error
        return UploadProgress(
            session_id=self.session_id,
            state=self.state,
            received=len(self._accepted),
            total=self.total_chunks,
            failed_chunk=self.failed_chunk,
            error=str(error) if error is not None else None,
            error_code=getattr(error, "error_code", None),
            result=self.result,
        )

    def _notify(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress())

    def _transition(self, target: UploadState, reason: str = "") -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target, reason)
        previous, self.state = self.state, target
        client_event(
            {
                "event": "upload_state",
                "session_id": self.session_id,
                "from": previous.value,
                "to": target.value,
                "received": len(self._accepted),
                "total": self.total_chunks,
            }
        )
        self._notify()

    def _require(self, expected: UploadState, target: UploadState) -> None:
        if self.state is not expected:
            raise InvalidTransition(self.state, target)

    def _fail(self, chunk_index: int | None, exc: BaseException) -> None:
        if isinstance(exc, ChunkUploadFailed):
            chunk_index, exc = exc.chunk_index, exc.cause
        self.failed_chunk = chunk_index
        self.error = exc
        client_event(
            {
                "event": "upload_failed",
                "session_id": self.session_id,
                "chunk_index": chunk_index,
                "error_code": getattr(exc, "error_code", None),
                "detail": str(exc),
            },
            logging.WARNING,
        )
        self._transition(UploadState.error)

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max_seconds, self.backoff_base_seconds * (2**attempt))

    async def start(self) -> UploadProgress:
        async with self._run_lock:
            if await self._initiate():
                await self._drive()
        return self.progress()

    def pause(self) -> None:
        """Stop dispatching chunks and cancel the in-flight ones."""
        self._require(UploadState.uploading, UploadState.paused)
        if self._finalizing:
            raise InvalidTransition(self.state, UploadState.paused, "finalize in progress")
        self._transition(UploadState.paused)
        for task in self._inflight:
            task.cancel()

    async def resume(self) -> UploadProgress:
        self._require(UploadState.paused, UploadState.uploading)
        async with self._run_lock:
            self._require(UploadState.paused, UploadState.uploading)
            await self._resync()
            self._transition(UploadState.uploading)
            await self._drive()
        return self.progress()

    async def retry(self) -> UploadProgress:
        self._require(UploadState.error, UploadState.uploading)
        async with self._run_lock:
            self._require(UploadState.error, UploadState.uploading)
            self.failed_chunk = None
            self.error = None
            if self.session_id is None or not self._initiated:
                if not await self._initiate():
                    return self.progress()
            else:
                try:
                    await self._resync()
                except UploadError as exc:
                    self.error = exc
                    raise
                self._transition(UploadState.uploading)
            await self._drive()
        return self.progress()

    async def cancel(self) -> UploadProgress:
        if self._finalizing:
            raise InvalidTransition(self.state, UploadState.cancelled, "finalize in progress")
        self._transition(UploadState.cancelled)
        for task in self._inflight:
            task.cancel()
        if self.session_id is not None:
            try:
                await self.transport.cancel(self.session_id)
            except SessionNotFound:
                pass
        return self.progress()

    async def _initiate(self) -> bool:
        self._transition(UploadState.initiating)
        try:
            if self.session_id is None:
                self.session_id = await self.transport.start_session(
                    self.file_name, self.file_size, self.total_chunks, self.storage_mode
                )
                received: list[int] = []
            else:
                received = await self.transport.resume_session(
                    self.session_id, self.file_name, self.file_size, self.total_chunks, self.storage_mode
                )
        except UploadError as exc:
            if self.state is UploadState.initiating:
                self._fail(None, exc)
            return False
        self._initiated = True
        self._accepted = set(received)
        if self.state is not UploadState.initiating:
            return False
        self._transition(UploadState.uploading)
        return True

    async def _resync(self) -> None:
        snapshot = await self.transport.get_status(self.session_id)
        if snapshot.total_chunks != self.total_chunks:
            raise SessionMismatch(
                f"server expects {snapshot.total_chunks} chunks, local file has {self.total_chunks}",
                session_id=self.session_id,
            )
        self._accepted = set(snapshot.received_chunks)
        self._notify()

    async def _drive(self) -> None:
        resyncs = 0
        while self.state is UploadState.uploading:
            failure = await self._pump()
            if self.state is not UploadState.uploading:
                return
            if failure is not None:
                self._fail(*failure)
                return
            try:
                result = await self._finalize()
            except IncompleteUpload as exc:
                resyncs += 1
                if resyncs > self.max_retries:
                    self._fail(None, exc)
                    return
                client_event(
                    {"event": "upload_resync", "session_id": self.session_id, "missing_chunks": exc.missing}
                )
                try:
                    await self._resync()
                except UploadError as resync_exc:
                    self._fail(None, resync_exc)
                    return
                continue
            except UploadError as exc:
                if self.state is UploadState.uploading:
                    self._fail(None, exc)
                return
            self.result = result
            if self.state is UploadState.uploading:
                self._transition(UploadState.completed)
            return

    async def _pump(self) -> tuple[int, BaseException] | None:
        pending = deque(idx for idx in range(self.total_chunks) if idx not in self._accepted)
        failure: tuple[int, BaseException] | None = None
        try:
            while self.state is UploadState.uploading and (pending or self._inflight):
                while pending and len(self._inflight) < self.concurrency:
                    index = pending.popleft()
                    self._inflight[asyncio.create_task(self._send_chunk(index))] = index
                done, _ = await asyncio.wait(list(self._inflight), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    index = self._inflight.pop(task)
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        failure = (index, exc)
                        break
                    self._accepted.add(index)
                    self._notify()
                if failure is not None:
                    break
        finally:
            await self._drain()
        return failure

    async def _drain(self) -> None:
        if not self._inflight:
            return
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for task in tasks:
            index = self._inflight.pop(task)
            if not task.cancelled() and task.exception() is None:
                self._accepted.add(index)

    async def _send_chunk(self, index: int) -> None:
        data = await asyncio.to_thread(read_chunk, self.path, index, self.chunk_size)
        attempt = 0
        while True:
            try:
                await asyncio.wait_for(
                    self.transport.upload_chunk(self.session_id, index, self.total_chunks, data),
                    timeout=self.request_timeout_seconds,
                )
                return
            except asyncio.TimeoutError as exc:
                cause: BaseException = exc
            except UploadError as exc:
                if not exc.retryable:
                    raise ChunkUploadFailed(index, exc) from exc
                cause = exc
            if attempt >= self.max_retries:
                raise ChunkUploadFailed(index, cause) from cause
            delay = self._backoff(attempt)
            attempt += 1
            client_event(
                {
                    "event": "chunk_retry",
                    "session_id": self.session_id,
                    "chunk_index": index,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "detail": repr(cause),
                },
                logging.WARNING,
            )
            await asyncio.sleep(delay)

    async def _finalize(self) -> MergeResult:
        self._finalizing = True
        try:
            attempt = 0
            while True:
                try:
                    return await self.transport.complete(self.session_id)
                except IncompleteUpload:
                    raise
                except UploadError as exc:
                    if not exc.retryable or attempt >= self.max_retries:
                        raise
                    delay = self._backoff(attempt)
                    attempt += 1
                    client_event(
                        {
                            "event": "complete_retry",
                            "session_id": self.session_id,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "error_code": exc.error_code,
                        },
                        logging.WARNING,
                    )
                    await asyncio.sleep(delay)
        finally:
            self._finalizing = False
