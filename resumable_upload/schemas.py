from pydantic import BaseModel, Field

from resumable_upload.models import StorageMode


class StartSessionRequest(BaseModel):
    file_name: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    total_chunks: int = Field(ge=0)
    storage_mode: StorageMode = StorageMode.on_disk


class ResumeSessionRequest(StartSessionRequest):
    pass


class StartSessionResponse(BaseModel):
    session_id: str
    total_chunks: int
    storage_mode: StorageMode


class ResumeSessionResponse(BaseModel):
    session_id: str
    received_chunks: list[int]
    resumed: bool = True


class UploadChunkResponse(BaseModel):
    session_id: str
    chunk_index: int
    accepted: bool
    already_had: bool


class SessionStatusResponse(BaseModel):
    session_id: str
    file_name: str
    file_size: int
    total_chunks: int
    storage_mode: StorageMode
    received_chunks: list[int]
    is_complete: bool
    progress: float


class CompleteSessionResponse(BaseModel):
    session_id: str
    final_path: str
    total_size: int


class CancelSessionResponse(BaseModel):
    session_id: str
    cancelled: bool = True


class CleanupResponse(BaseModel):
    status: str
    stale_sessions_deleted: int
    orphan_namespaces_deleted: int
    storage_errors: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    session_id: str | None = None
    chunk_index: int | None = None
    missing_chunks: list[int] | None = None
