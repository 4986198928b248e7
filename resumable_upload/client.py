"""Transports the upload driver talks through.

``HttpUploadTransport`` speaks the service's HTTP API with httpx and turns error
envelopes back into the exception classes the server raised.
``LocalUploadTransport`` calls an in-process ``UploadService`` from worker threads.
"""

from __future__ import annotations

import asyncio

import httpx

from resumable_upload.errors import TransportFailure, error_from_payload
from resumable_upload.merge import MergeResult
from resumable_upload.models import StorageMode
from resumable_upload.registry import SessionSnapshot
from resumable_upload.service import ChunkAck, UploadService


class UploadTransport:
    async def start_session(
        self, file_name: str, file_size: int, total_chunks: int, storage_mode: StorageMode
    ) -> str:
        raise NotImplementedError

    async def resume_session(
        self, session_id: str, file_name: str, file_size: int, total_chunks: int, storage_mode: StorageMode
    ) -> list[int]:
        raise NotImplementedError

    async def upload_chunk(self, session_id: str, chunk_index: int, total_chunks: int, data: bytes) -> ChunkAck:
        raise NotImplementedError

    async def get_status(self, session_id: str) -> SessionSnapshot:
        raise NotImplementedError

    async def complete(self, session_id: str) -> MergeResult:
        raise NotImplementedError

    async def cancel(self, session_id: str) -> None:
        raise NotImplementedError


class LocalUploadTransport(UploadTransport):
    def __init__(self, service: UploadService) -> None:
        self.service = service

    async def start_session(self, file_name, file_size, total_chunks, storage_mode) -> str:
        return await asyncio.to_thread(self.service.start_session, file_name, file_size, total_chunks, storage_mode)

    async def resume_session(self, session_id, file_name, file_size, total_chunks, storage_mode) -> list[int]:
        return await asyncio.to_thread(
            self.service.resume_session, session_id, file_name, file_size, total_chunks, storage_mode
        )

    async def upload_chunk(self, session_id, chunk_index, total_chunks, data) -> ChunkAck:
        return await asyncio.to_thread(self.service.upload_chunk, session_id, chunk_index, total_chunks, data)

    async def get_status(self, session_id) -> SessionSnapshot:
        return await asyncio.to_thread(self.service.get_status, session_id)

    async def complete(self, session_id) -> MergeResult:
        return await asyncio.to_thread(self.service.complete, session_id)

    async def cancel(self, session_id) -> None:
        await asyncio.to_thread(self.service.cancel, session_id)


class HttpUploadTransport(UploadTransport):
    def __init__(self, client: httpx.AsyncClient, base_url: str = "") -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            payload = response.json()
        except ValueError:
            payload = {"detail": response.text}
        if not isinstance(payload, dict):
            payload = {"detail": str(payload)}
        raise error_from_payload(payload, response.status_code)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, self._url(path), **kwargs)
        except httpx.TransportError as exc:
            raise TransportFailure(f"{method} {path} failed: {exc!r}") from exc
        self._raise_for_error(response)
        return response.json()

    async def start_session(self, file_name, file_size, total_chunks, storage_mode) -> str:
        payload = await self._request(
            "POST",
            "/v1/uploads/start",
            json={
                "file_name": file_name,
                "file_size": file_size,
                "total_chunks": total_chunks,
                "storage_mode": StorageMode(storage_mode).value,
            },
        )
        return payload["session_id"]

    async def resume_session(self, session_id, file_name, file_size, total_chunks, storage_mode) -> list[int]:
        payload = await self._request(
            "POST",
            f"/v1/uploads/{session_id}/resume",
            json={
                "file_name": file_name,
                "file_size": file_size,
                "total_chunks": total_chunks,
                "storage_mode": StorageMode(storage_mode).value,
            },
        )
        return list(payload["received_chunks"])

    async def upload_chunk(self, session_id, chunk_index, total_chunks, data) -> ChunkAck:
        payload = await self._request(
            "PUT",
            f"/v1/uploads/{session_id}/chunks/{chunk_index}",
            content=data,
            headers={"X-Total-Chunks": str(total_chunks), "Content-Type": "application/octet-stream"},
        )
        return ChunkAck(
            session_id=payload["session_id"],
            chunk_index=payload["chunk_index"],
            accepted=payload["accepted"],
            already_had=payload["already_had"],
        )

    async def get_status(self, session_id) -> SessionSnapshot:
        payload = await self._request("GET", f"/v1/uploads/{session_id}/status")
        return SessionSnapshot(
            session_id=payload["session_id"],
            file_name=payload["file_name"],
            file_size=payload["file_size"],
            total_chunks=payload["total_chunks"],
            storage_mode=StorageMode(payload["storage_mode"]),
            received_chunks=tuple(payload["received_chunks"]),
            locked=False,
            merge_error=None,
            last_activity=None,
        )

    async def complete(self, session_id) -> MergeResult:
        payload = await self._request("POST", f"/v1/uploads/{session_id}/complete")
        return MergeResult(
            session_id=payload["session_id"], final_path=payload["final_path"], total_size=payload["total_size"]
        )

    async def cancel(self, session_id) -> None:
        await self._request("DELETE", f"/v1/uploads/{session_id}")
