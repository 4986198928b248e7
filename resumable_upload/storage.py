import os
import re
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from resumable_upload.config import settings

NAMESPACE_PREFIX = "uploads/"
_CHUNK_NAME = re.compile(r"^chunk_(\d+)$")

ChunkPayload = bytes | BinaryIO


def _index_from_name(name: str) -> int | None:
    match = _CHUNK_NAME.match(name)
    return int(match.group(1)) if match else None


class ChunkStorage:
    """Chunk blobs keyed by ``(session_id, index)`` under ``uploads/<session_id>/``."""

    def namespace(self, session_id: str) -> str:
        return f"{NAMESPACE_PREFIX}{session_id}/"

    def chunk_key(self, session_id: str, chunk_index: int) -> str:
        return f"{self.namespace(session_id)}chunk_{chunk_index}"

    def write_chunk(self, session_id: str, chunk_index: int, data: ChunkPayload) -> int:
        raise NotImplementedError

    def chunk_exists(self, session_id: str, chunk_index: int) -> bool:
        raise NotImplementedError

    def list_indices(self, session_id: str) -> set[int]:
        raise NotImplementedError

    def iter_chunk(self, session_id: str, chunk_index: int, block_size: int = 1024 * 1024) -> Iterator[bytes]:
        raise NotImplementedError

    def delete_chunk(self, session_id: str, chunk_index: int) -> None:
        raise NotImplementedError

    def purge(self, session_id: str) -> None:
        raise NotImplementedError

    def list_session_ids(self) -> set[str]:
        raise NotImplementedError


class LocalChunkStorage(ChunkStorage):
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _session_dir(self, session_id: str) -> Path:
        return self.root / self.namespace(session_id)

    def _chunk_path(self, session_id: str, chunk_index: int) -> Path:
        return self.root / self.chunk_key(session_id, chunk_index)

    def write_chunk(self, session_id: str, chunk_index: int, data: ChunkPayload) -> int:
        target = self._chunk_path(session_id, chunk_index)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Written beside the target and renamed in, so a torn write never looks like a chunk.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                if isinstance(data, (bytes, bytearray, memoryview)):
                    handle.write(data)
                else:
                    shutil.copyfileobj(data, handle)
                handle.flush()
                os.fsync(handle.fileno())
                written = handle.tell()
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return written

    def chunk_exists(self, session_id: str, chunk_index: int) -> bool:
        return self._chunk_path(session_id, chunk_index).is_file()

    def list_indices(self, session_id: str) -> set[int]:
        base = self._session_dir(session_id)
        if not base.is_dir():
            return set()
        indices: set[int] = set()
        for path in base.iterdir():
            index = _index_from_name(path.name)
            if index is not None and path.is_file():
                indices.add(index)
        return indices

    def iter_chunk(self, session_id: str, chunk_index: int, block_size: int = 1024 * 1024) -> Iterator[bytes]:
        with self._chunk_path(session_id, chunk_index).open("rb") as handle:
            while True:
                block = handle.read(block_size)
                if not block:
                    break
                yield block

    def delete_chunk(self, session_id: str, chunk_index: int) -> None:
        self._chunk_path(session_id, chunk_index).unlink(missing_ok=True)

    def purge(self, session_id: str) -> None:
        target = self._session_dir(session_id)
        if target.exists():
            shutil.rmtree(target)

    def list_session_ids(self) -> set[str]:
        base = self.root / NAMESPACE_PREFIX
        if not base.is_dir():
            return set()
        return {path.name for path in base.iterdir() if path.is_dir()}


class S3ChunkStorage(ChunkStorage):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def write_chunk(self, session_id: str, chunk_index: int, data: ChunkPayload) -> int:
        body = bytes(data) if isinstance(data, (bytes, bytearray, memoryview)) else data.read()
        self.client.put_object(Bucket=self.bucket, Key=self.chunk_key(session_id, chunk_index), Body=body)
        return len(body)

    def _list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def chunk_exists(self, session_id: str, chunk_index: int) -> bool:
        key = self.chunk_key(session_id, chunk_index)
        return key in self._list_keys(key)

    def list_indices(self, session_id: str) -> set[int]:
        prefix = self.namespace(session_id)
        indices: set[int] = set()
        for key in self._list_keys(prefix):
            index = _index_from_name(key[len(prefix) :])
            if index is not None:
                indices.add(index)
        return indices

    def iter_chunk(self, session_id: str, chunk_index: int, block_size: int = 1024 * 1024) -> Iterator[bytes]:
        obj = self.client.get_object(Bucket=self.bucket, Key=self.chunk_key(session_id, chunk_index))
        yield from obj["Body"].iter_chunks(block_size)

    def delete_chunk(self, session_id: str, chunk_index: int) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=self.chunk_key(session_id, chunk_index))

    def purge(self, session_id: str) -> None:
        for key in self._list_keys(self.namespace(session_id)):
            self.client.delete_object(Bucket=self.bucket, Key=key)

    def list_session_ids(self) -> set[str]:
        session_ids: set[str] = set()
        for key in self._list_keys(NAMESPACE_PREFIX):
            parts = key[len(NAMESPACE_PREFIX) :].split("/", 1)
            if len(parts) == 2 and parts[0]:
                session_ids.add(parts[0])
        return session_ids


def build_storage() -> ChunkStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalChunkStorage(settings.storage_root)
    if backend == "s3":
        return S3ChunkStorage(settings.s3_bucket, settings.aws_region)
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3ChunkStorage(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
