"""Error taxonomy shared by the upload engine, the HTTP adapter and the client.

Each error carries a stable ``error_code`` that travels in the JSON error envelope,
so the client can raise the same class the server raised.
"""


class UploadError(Exception):
    error_code = "upload_error"
    status_code = 500
    retryable = False

    def __init__(self, detail: str, *, session_id: str | None = None, chunk_index: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.session_id = session_id
        self.chunk_index = chunk_index


class SessionNotFound(UploadError):
    error_code = "session_not_found"
    status_code = 404


class SessionMismatch(UploadError):
    error_code = "session_mismatch"
    status_code = 409


class InvalidChunkIndex(UploadError):
    error_code = "invalid_chunk_index"
    status_code = 400


class SessionLocked(UploadError):
    error_code = "session_locked"
    status_code = 409
    retryable = True


class IncompleteUpload(UploadError):
    error_code = "incomplete_upload"
    status_code = 409
    retryable = True

    def __init__(self, detail: str, *, session_id: str | None = None, missing: list[int] | None = None) -> None:
        super().__init__(detail, session_id=session_id)
        self.missing = missing or []


class ChunkIOFailure(UploadError):
    error_code = "chunk_io_failure"
    status_code = 503
    retryable = True


class MergeIOFailure(UploadError):
    error_code = "merge_io_failure"
    status_code = 500
    retryable = True


class InvalidUploadRequest(UploadError):
    error_code = "invalid_upload_request"
    status_code = 400


class ChunkTooLarge(UploadError):
    error_code = "chunk_too_large"
    status_code = 413


class SessionLimitReached(UploadError):
    error_code = "session_limit_reached"
    status_code = 429
    retryable = True


class Throttled(UploadError):
    error_code = "throttled"
    status_code = 429
    retryable = True


ERRORS_BY_CODE: dict[str, type[UploadError]] = {
    cls.error_code: cls
    for cls in (
        SessionNotFound,
        SessionMismatch,
        InvalidChunkIndex,
        SessionLocked,
        IncompleteUpload,
        ChunkIOFailure,
        MergeIOFailure,
        InvalidUploadRequest,
        ChunkTooLarge,
        SessionLimitReached,
        Throttled,
    )
}


def error_from_payload(payload: dict, status_code: int) -> UploadError:
    detail = str(payload.get("detail") or f"http {status_code}")
    error_cls = ERRORS_BY_CODE.get(str(payload.get("error_code")), UploadError)
    session_id = payload.get("session_id")
    if error_cls is IncompleteUpload:
        return IncompleteUpload(detail, session_id=session_id, missing=list(payload.get("missing_chunks") or []))
    error = error_cls(detail, session_id=session_id, chunk_index=payload.get("chunk_index"))
    if error_cls is UploadError:
        error.status_code = status_code
        error.retryable = status_code >= 500
    return error


class TransportFailure(UploadError):
    """Raised client-side when a request never produced a response."""

    error_code = "transport_failure"
    status_code = 503
    retryable = True
