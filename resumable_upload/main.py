import asyncio
import tempfile
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from resumable_upload.config import settings
from resumable_upload.db import SessionLocal, create_schema, engine
from resumable_upload.errors import ChunkTooLarge, IncompleteUpload, InvalidUploadRequest, UploadError
from resumable_upload.logs import log_event
from resumable_upload.metrics import http_request_duration_seconds, metrics_response
from resumable_upload.models import StorageMode
from resumable_upload.schemas import (
    CancelSessionResponse,
    CleanupResponse,
    CompleteSessionResponse,
    ErrorResponse,
    ResumeSessionRequest,
    ResumeSessionResponse,
    SessionStatusResponse,
    StartSessionRequest,
    StartSessionResponse,
    UploadChunkResponse,
)
from resumable_upload.service import UploadService
from resumable_upload.tracing import current_trace_id, setup_tracing

service = UploadService.build(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(service.collect_garbage)
            except Exception as exc:
                log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.auto_create_schema:
        create_schema(engine)
    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)

RETRY_AFTER_SECONDS = "1"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _session_id(request: Request) -> str | None:
    return request.path_params.get("session_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        413: "payload_too_large",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _check_received_size(received: int, session_id: str, chunk_index: int) -> None:
    if received > settings.max_chunk_size_bytes:
        raise ChunkTooLarge("chunk exceeds the chunk size limit", session_id=session_id, chunk_index=chunk_index)


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
SESSION_ERROR_RESPONSES = {
    **COMMON_ERROR_RESPONSES,
    404: {"model": ErrorResponse, "description": "Upload session not found"},
    409: {"model": ErrorResponse, "description": "Session mismatch, locked or incomplete"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-RUS-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "session_id": exc.session_id or _session_id(request),
            "chunk_index": exc.chunk_index,
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_code": exc.error_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": exc.detail,
        }
    )
    content = {
        "detail": exc.detail,
        "error_code": exc.error_code,
        "request_id": _request_id(request),
        "session_id": exc.session_id or _session_id(request),
        "chunk_index": exc.chunk_index,
        "trace_id": current_trace_id(),
    }
    if isinstance(exc, IncompleteUpload):
        content["missing_chunks"] = exc.missing
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if exc.retryable else {}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc.detail),
            "error_code": _error_code_for_status(exc.status_code),
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "trace_id": current_trace_id(),
        },
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "internal server error",
            "error_code": "internal_error",
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "trace_id": current_trace_id(),
        },
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/v1/admin/cleanup", response_model=CleanupResponse, responses={**COMMON_ERROR_RESPONSES})
def run_cleanup() -> CleanupResponse:
    stats = service.collect_garbage()
    return CleanupResponse(status="ok", **stats)


@app.post(
    "/v1/uploads/start",
    response_model=StartSessionResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 429: {"model": ErrorResponse, "description": "Too many active sessions"}},
)
def start_session(payload: StartSessionRequest) -> StartSessionResponse:
    session_id = service.start_session(
        payload.file_name, payload.file_size, payload.total_chunks, payload.storage_mode
    )
    return StartSessionResponse(
        session_id=session_id, total_chunks=payload.total_chunks, storage_mode=payload.storage_mode
    )


@app.post(
    "/v1/uploads/{session_id}/resume",
    response_model=ResumeSessionResponse,
    responses={**SESSION_ERROR_RESPONSES},
)
def resume_session(session_id: str, payload: ResumeSessionRequest) -> ResumeSessionResponse:
    received = service.resume_session(
        session_id, payload.file_name, payload.file_size, payload.total_chunks, payload.storage_mode
    )
    return ResumeSessionResponse(session_id=session_id, received_chunks=received)


@app.put(
    "/v1/uploads/{session_id}/chunks/{chunk_index}",
    response_model=UploadChunkResponse,
    status_code=202,
    responses={
        **SESSION_ERROR_RESPONSES,
        413: {"model": ErrorResponse, "description": "Chunk too large"},
        429: {"model": ErrorResponse, "description": "Throttled request"},
        503: {"model": ErrorResponse, "description": "Chunk storage failure"},
    },
)
async def upload_chunk(
    session_id: str,
    chunk_index: int,
    request: Request,
    total_chunks: int = Header(alias="X-Total-Chunks"),
    content_length: int = Header(default=0),
) -> UploadChunkResponse:
    snapshot = await run_in_threadpool(service.registry.get, session_id)
    if content_length > settings.max_chunk_size_bytes:
        raise ChunkTooLarge("declared content-length exceeds the chunk size limit", session_id=session_id)

    if snapshot.storage_mode is StorageMode.in_memory:
        body = bytearray()
        async for block in request.stream():
            body.extend(block)
            _check_received_size(len(body), session_id, chunk_index)
        if content_length and content_length != len(body):
            raise InvalidUploadRequest("content-length mismatch", session_id=session_id, chunk_index=chunk_index)
        ack = await run_in_threadpool(service.upload_chunk, session_id, chunk_index, total_chunks, bytes(body))
    else:
        with tempfile.TemporaryFile() as spool:
            received = 0
            async for block in request.stream():
                received += len(block)
                _check_received_size(received, session_id, chunk_index)
                await run_in_threadpool(spool.write, block)
            if content_length and content_length != received:
                raise InvalidUploadRequest("content-length mismatch", session_id=session_id, chunk_index=chunk_index)
            await run_in_threadpool(spool.seek, 0)
            ack = await run_in_threadpool(service.upload_chunk, session_id, chunk_index, total_chunks, spool)

    return UploadChunkResponse(
        session_id=ack.session_id,
        chunk_index=ack.chunk_index,
        accepted=ack.accepted,
        already_had=ack.already_had,
    )


@app.get(
    "/v1/uploads/{session_id}/status",
    response_model=SessionStatusResponse,
    responses={**SESSION_ERROR_RESPONSES},
)
def session_status(session_id: str) -> SessionStatusResponse:
    snapshot = service.get_status(session_id)
    return SessionStatusResponse(
        session_id=snapshot.session_id,
        file_name=snapshot.file_name,
        file_size=snapshot.file_size,
        total_chunks=snapshot.total_chunks,
        storage_mode=snapshot.storage_mode,
        received_chunks=list(snapshot.received_chunks),
        is_complete=snapshot.is_complete,
        progress=snapshot.progress,
    )


@app.post(
    "/v1/uploads/{session_id}/complete",
    response_model=CompleteSessionResponse,
    responses={**SESSION_ERROR_RESPONSES},
)
def complete_session(session_id: str) -> CompleteSessionResponse:
    result = service.complete(session_id)
    return CompleteSessionResponse(
        session_id=result.session_id, final_path=result.final_path, total_size=result.total_size
    )


@app.delete(
    "/v1/uploads/{session_id}",
    response_model=CancelSessionResponse,
    responses={**SESSION_ERROR_RESPONSES},
)
def cancel_session(session_id: str) -> CancelSessionResponse:
    service.cancel(session_id)
    return CancelSessionResponse(session_id=session_id)
