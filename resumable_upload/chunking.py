import math
from pathlib import Path


def total_chunks_for(file_size: int, chunk_size: int) -> int:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if file_size < 0:
        raise ValueError("file_size must not be negative")
    return math.ceil(file_size / chunk_size)


def chunk_range(index: int, file_size: int, chunk_size: int) -> tuple[int, int]:
    """Return the ``[start, end)`` byte offsets of chunk ``index``."""
    total = total_chunks_for(file_size, chunk_size)
    if index < 0 or index >= total:
        raise IndexError(f"chunk index {index} outside [0, {total})")
    start = index * chunk_size
    return start, min(start + chunk_size, file_size)


def read_chunk(path: str | Path, index: int, chunk_size: int) -> bytes:
    source = Path(path)
    start, end = chunk_range(index, source.stat().st_size, chunk_size)
    with source.open("rb") as handle:
        handle.seek(start)
        return handle.read(end - start)
