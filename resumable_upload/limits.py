from threading import Lock

from resumable_upload.errors import Throttled
from resumable_upload.metrics import inflight_chunks, throttled_requests_total


class PerSessionInflightLimiter:
    """Caps concurrent chunk writes per session; a limit of 0 or less disables the cap."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._counts: dict[str, int] = {}
        self._lock = Lock()

    def acquire(self, session_id: str) -> None:
        with self._lock:
            current = self._counts.get(session_id, 0)
            if self.limit > 0 and current >= self.limit:
                throttled_requests_total.inc()
                raise Throttled("per-session inflight chunk limit reached", session_id=session_id)
            self._counts[session_id] = current + 1
            inflight_chunks.inc()

    def release(self, session_id: str) -> None:
        with self._lock:
            current = self._counts.get(session_id, 0)
            next_value = max(0, current - 1)
            if next_value == 0:
                self._counts.pop(session_id, None)
            else:
                self._counts[session_id] = next_value
            if current > 0:
                inflight_chunks.dec()

    def inflight(self, session_id: str) -> int:
        with self._lock:
            return self._counts.get(session_id, 0)
