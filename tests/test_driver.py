import asyncio
import shutil
from pathlib import Path

import httpx
import pytest

from resumable_upload.client import HttpUploadTransport, LocalUploadTransport
from resumable_upload.config import ClientSettings, Settings
from resumable_upload.db import Base, build_engine, build_session_factory, create_schema, engine
from resumable_upload.driver import InvalidTransition, UploadDriver, UploadProgress, UploadState
from resumable_upload.errors import ChunkIOFailure, InvalidChunkIndex, SessionNotFound
from resumable_upload.main import app
from resumable_upload.service import UploadService
from resumable_upload.storage import LocalChunkStorage

PAYLOAD = b"abcdefghijklmnopqrstuvwxyz"


def _service(tmp_path: Path) -> UploadService:
    db_engine = build_engine(f"sqlite:///{tmp_path / 'driver.db'}")
    create_schema(db_engine)
    config = Settings(
        completed_root=str(tmp_path / "completed"),
        storage_root=str(tmp_path / "chunks"),
        max_inflight_chunks_per_session=0,
    )
    return UploadService.build(
        build_session_factory(db_engine), storage=LocalChunkStorage(config.storage_root), config=config
    )


def _source(tmp_path: Path, payload: bytes = PAYLOAD) -> Path:
    path = tmp_path / "source.bin"
    path.write_bytes(payload)
    return path


def _driver(transport, path: Path, **kwargs) -> UploadDriver:
    options = {"chunk_size": 4, "concurrency": 2, "max_retries": 3, "backoff_base_seconds": 0.0}
    options.update(kwargs)
    return UploadDriver(transport, path, **options)


class _ScriptedTransport(LocalUploadTransport):
    """In-process transport that can fail, stall or gate individual chunks."""

    def __init__(self, service: UploadService) -> None:
        super().__init__(service)
        self.failures: dict[int, list[Exception]] = {}
        self.stall_once: set[int] = set()
        self.gate: asyncio.Event | None = None
        self.gated_from = 0
        self.waiting: set[int] = set()
        self.cancelled: list[int] = []
        self.attempts: dict[int, int] = {}
        self.before_complete = None
        self.complete_gate: asyncio.Event | None = None
        self.completing: asyncio.Event | None = None

    async def upload_chunk(self, session_id, chunk_index, total_chunks, data):
        self.attempts[chunk_index] = self.attempts.get(chunk_index, 0) + 1
        pending = self.failures.get(chunk_index)
        if pending:
            raise pending.pop(0)
        if chunk_index in self.stall_once:
            self.stall_once.discard(chunk_index)
            await asyncio.sleep(10)
        if self.gate is not None and chunk_index >= self.gated_from:
            self.waiting.add(chunk_index)
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled.append(chunk_index)
                raise
            finally:
                self.waiting.discard(chunk_index)
        return await super().upload_chunk(session_id, chunk_index, total_chunks, data)

    async def complete(self, session_id):
        if self.before_complete is not None:
            hook, self.before_complete = self.before_complete, None
            hook(session_id)
        if self.complete_gate is not None:
            self.completing.set()
            await self.complete_gate.wait()
        return await super().complete(session_id)


def test_driver_uploads_and_completes(tmp_path: Path) -> None:
    service = _service(tmp_path)
    updates: list[UploadProgress] = []
    driver = _driver(LocalUploadTransport(service), _source(tmp_path), on_progress=updates.append)

    progress = asyncio.run(driver.start())

    assert progress.state is UploadState.completed
    assert progress.total == 7
    assert progress.received == 7
    assert progress.percentage == 100.0
    assert Path(progress.result.final_path).read_bytes() == PAYLOAD
    states = [update.state for update in updates]
    assert states[0] is UploadState.initiating
    assert states[-1] is UploadState.completed
    assert [update.received for update in updates if update.state is UploadState.uploading] == sorted(
        update.received for update in updates if update.state is UploadState.uploading
    )


def test_driver_uploads_empty_file(tmp_path: Path) -> None:
    service = _service(tmp_path)
    driver = _driver(LocalUploadTransport(service), _source(tmp_path, b""))

    progress = asyncio.run(driver.start())

    assert progress.state is UploadState.completed
    assert progress.total == 0
    assert Path(progress.result.final_path).read_bytes() == b""


def test_driver_retries_transient_failures(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    transport.failures[1] = [ChunkIOFailure("disk busy"), ChunkIOFailure("disk busy")]
    driver = _driver(transport, _source(tmp_path))

    progress = asyncio.run(driver.start())

    assert progress.state is UploadState.completed
    assert transport.attempts[1] == 3


def test_driver_treats_timeouts_as_retryable(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    transport.stall_once.add(0)
    driver = _driver(transport, _source(tmp_path), request_timeout_seconds=0.05)

    progress = asyncio.run(driver.start())

    assert progress.state is UploadState.completed
    assert transport.attempts[0] == 2


def test_driver_enters_error_after_retries_and_can_retry(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    transport.failures[2] = [ChunkIOFailure("disk busy") for _ in range(3)]
    driver = _driver(transport, _source(tmp_path), max_retries=2)

    async def scenario() -> tuple[UploadProgress, UploadProgress]:
        failed = await driver.start()
        recovered = await driver.retry()
        return failed, recovered

    failed, recovered = asyncio.run(scenario())

    assert failed.state is UploadState.error
    assert failed.failed_chunk == 2
    assert failed.error_code == "chunk_io_failure"
    assert transport.attempts[2] == 4
    assert recovered.state is UploadState.completed
    assert recovered.failed_chunk is None
    assert Path(recovered.result.final_path).read_bytes() == PAYLOAD


def test_driver_does_not_retry_non_retryable_errors(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    transport.failures[0] = [InvalidChunkIndex("bad index")]
    driver = _driver(transport, _source(tmp_path), concurrency=1)

    progress = asyncio.run(driver.start())

    assert progress.state is UploadState.error
    assert progress.failed_chunk == 0
    assert progress.error_code == "invalid_chunk_index"
    assert transport.attempts[0] == 1


def test_pause_cancels_inflight_chunks_and_resume_finishes(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    transport.gated_from = 2
    driver = _driver(transport, _source(tmp_path))

    async def scenario() -> tuple[UploadProgress, UploadProgress]:
        transport.gate = asyncio.Event()
        running = asyncio.create_task(driver.start())
        while len(transport.waiting) < 2:
            await asyncio.sleep(0.01)
        driver.pause()
        paused = await running
        transport.gate.set()
        finished = await driver.resume()
        return paused, finished

    paused, finished = asyncio.run(scenario())

    assert paused.state is UploadState.paused
    assert paused.received == 2
    assert sorted(transport.cancelled) == [2, 3]
    assert finished.state is UploadState.completed
    assert Path(finished.result.final_path).read_bytes() == PAYLOAD


def test_resume_existing_session_skips_received_chunks(tmp_path: Path) -> None:
    service = _service(tmp_path)
    source = _source(tmp_path)
    session_id = service.start_session("source.bin", len(PAYLOAD), 7)
    service.upload_chunk(session_id, 0, 7, PAYLOAD[0:4])
    service.upload_chunk(session_id, 5, 7, PAYLOAD[20:24])
    transport = _ScriptedTransport(service)
    driver = _driver(transport, source, session_id=session_id)

    progress = asyncio.run(driver.start())

    assert progress.state is UploadState.completed
    assert progress.session_id == session_id
    assert sorted(transport.attempts) == [1, 2, 3, 4, 6]


def test_incomplete_complete_triggers_resync(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    transport.before_complete = lambda session_id: service.storage.delete_chunk(session_id, 3)
    driver = _driver(transport, _source(tmp_path))

    progress = asyncio.run(driver.start())

    assert progress.state is UploadState.completed
    assert transport.attempts[3] == 2
    assert Path(progress.result.final_path).read_bytes() == PAYLOAD


def test_cancel_removes_server_session(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    transport.failures[0] = [InvalidChunkIndex("bad index")]
    driver = _driver(transport, _source(tmp_path), concurrency=1)

    async def scenario() -> UploadProgress:
        await driver.start()
        return await driver.cancel()

    progress = asyncio.run(scenario())

    assert progress.state is UploadState.cancelled
    with pytest.raises(SessionNotFound):
        service.get_status(progress.session_id)
    with pytest.raises(InvalidTransition):
        asyncio.run(driver.retry())


def test_illegal_transitions_raise(tmp_path: Path) -> None:
    service = _service(tmp_path)
    driver = _driver(LocalUploadTransport(service), _source(tmp_path))

    with pytest.raises(InvalidTransition):
        driver.pause()
    with pytest.raises(InvalidTransition):
        asyncio.run(driver.resume())

    asyncio.run(driver.start())
    assert driver.state is UploadState.completed
    with pytest.raises(InvalidTransition):
        asyncio.run(driver.cancel())
    with pytest.raises(InvalidTransition):
        asyncio.run(driver.start())


def test_driver_reads_client_settings(tmp_path: Path) -> None:
    service = _service(tmp_path)
    config = ClientSettings(chunk_size_bytes=10, concurrency=5, max_retries=1)

    driver = UploadDriver.from_settings(LocalUploadTransport(service), _source(tmp_path), config)

    assert driver.total_chunks == 3
    assert driver.concurrency == 5
    assert driver.max_retries == 1


def test_driver_over_http_transport(tmp_path: Path) -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    shutil.rmtree(Path("data"), ignore_errors=True)
    source = _source(tmp_path)

    async def scenario() -> UploadProgress:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
            transport = HttpUploadTransport(client)
            with pytest.raises(SessionNotFound):
                await transport.get_status("missing")
            driver = _driver(transport, source, concurrency=3)
            return await driver.start()

    progress = asyncio.run(scenario())

    assert progress.state is UploadState.completed
    assert Path(progress.result.final_path).read_bytes() == PAYLOAD


def test_cancel_is_rejected_while_complete_is_in_flight(tmp_path: Path) -> None:
    service = _service(tmp_path)
    transport = _ScriptedTransport(service)
    driver = _driver(transport, _source(tmp_path))

    async def scenario() -> UploadProgress:
        transport.complete_gate = asyncio.Event()
        transport.completing = asyncio.Event()
        running = asyncio.create_task(driver.start())
        await transport.completing.wait()
        with pytest.raises(InvalidTransition):
            await driver.cancel()
        assert driver.state is UploadState.uploading
        transport.complete_gate.set()
        return await running

    progress = asyncio.run(scenario())

    assert progress.state is UploadState.completed
    assert Path(progress.result.final_path).read_bytes() == PAYLOAD
    with pytest.raises(SessionNotFound):
        service.get_status(progress.session_id)
