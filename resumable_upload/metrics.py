from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

sessions_started_total = Counter("upload_sessions_started_total", "Total upload sessions started")
sessions_resumed_total = Counter("upload_sessions_resumed_total", "Total upload sessions resumed")
sessions_completed_total = Counter("upload_sessions_completed_total", "Total upload sessions merged")
sessions_cancelled_total = Counter("upload_sessions_cancelled_total", "Total upload sessions cancelled")
sessions_collected_total = Counter("upload_sessions_collected_total", "Total idle sessions garbage collected")
chunks_uploaded_total = Counter("chunks_uploaded_total", "Total chunks persisted")
chunks_skipped_total = Counter("chunks_skipped_total", "Total duplicate chunk uploads skipped")
bytes_uploaded_total = Counter("bytes_uploaded_total", "Total chunk bytes persisted")
chunk_write_failures_total = Counter("chunk_write_failures_total", "Total failed chunk writes")
merge_failures_total = Counter("merge_failures_total", "Total failed merge attempts")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")

inflight_chunks = Gauge("inflight_chunks", "Current inflight chunk writes")

chunk_write_latency_seconds = Histogram("chunk_write_latency_seconds", "Chunk storage write latency in seconds")
merge_duration_seconds = Histogram("merge_duration_seconds", "Merge duration in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
