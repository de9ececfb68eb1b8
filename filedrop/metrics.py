from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

chunks_received_total = Counter("chunks_received_total", "Total chunks written to slots")
bytes_received_total = Counter("bytes_received_total", "Total chunk payload bytes written")
duplicate_chunks_total = Counter("duplicate_chunks_total", "Chunks resent for an index already received")
chunk_write_failures_total = Counter("chunk_write_failures_total", "Chunk slot writes that failed", ["reason"])
chunks_throttled_total = Counter("chunks_throttled_total", "Chunks turned away with 429", ["reason"])

assemblies_completed_total = Counter("assemblies_completed_total", "Uploads merged and published")
assembly_failures_total = Counter("assembly_failures_total", "Merges that aborted", ["reason"])
slot_cleanup_failures_total = Counter("slot_cleanup_failures_total", "Slots left behind after a successful merge")
sweep_deleted_total = Counter("sweep_deleted_total", "Temp files removed by the maintenance sweep")

active_assemblies = Gauge("active_assemblies", "Uploads currently tracked in memory")
task_queue_depth = Gauge("task_queue_depth", "Current task queue depth")
inflight_chunks = Gauge("inflight_chunks", "Current inflight chunk tasks")
worker_count = Gauge("worker_count", "Configured worker count")
worker_busy_count = Gauge("worker_busy_count", "Approximate busy workers")

slot_write_latency_seconds = Histogram("slot_write_latency_seconds", "Chunk slot write latency in seconds")
merge_latency_seconds = Histogram("merge_latency_seconds", "Assembly merge latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
