from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock

from fastapi import HTTPException

from filedrop.config import settings
from filedrop.logs import log_event
from filedrop.metrics import (
    chunks_throttled_total,
    inflight_chunks,
    task_queue_depth,
    worker_busy_count,
    worker_count,
)

THROTTLE_HEADERS_BASE = {"Retry-After": "1"}


class ChunkWorkerPool:
    """Thread pool that runs slot writes and merges off the event loop.

    A chunk is turned away with 429 when too many chunks are waiting for a
    worker or when too many slot writes are already running. The client keeps
    the chunk and resends it after ``Retry-After``; nothing was stored.
    """

    def __init__(self, workers: int, queue_limit: int, inflight_limit: int) -> None:
        self.workers = workers
        self.queue_limit = queue_limit
        self.inflight_limit = inflight_limit
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="filedrop-chunk")
        self._lock = Lock()
        self._waiting = 0
        self._writing = 0
        worker_count.set(workers)

    def _throttle(self, reason: str, detail: str, file_name: str | None) -> HTTPException:
        chunks_throttled_total.labels(reason=reason).inc()
        log_event(
            {
                "event": "chunk_throttled",
                "reason": reason,
                "file_name": file_name,
                "waiting_chunks": self._waiting,
                "writing_chunks": self._writing,
            }
        )
        return HTTPException(
            status_code=429,
            detail=detail,
            headers={**THROTTLE_HEADERS_BASE, "X-RateLimit-Reason": reason},
        )

    def _reserve(self, file_name: str | None) -> None:
        with self._lock:
            if self._waiting >= self.queue_limit:
                raise self._throttle("chunk_queue_full", "too many chunks are waiting to be stored", file_name)
            if self._writing >= self.inflight_limit:
                raise self._throttle("chunk_writers_busy", "all chunk writers are busy", file_name)
            self._waiting += 1
            task_queue_depth.set(self._waiting)

    def _started(self) -> None:
        with self._lock:
            self._waiting -= 1
            self._writing += 1
            task_queue_depth.set(self._waiting)
            inflight_chunks.set(self._writing)
            worker_busy_count.set(min(self._writing, self.workers))

    def _finished(self) -> None:
        with self._lock:
            self._writing -= 1
            inflight_chunks.set(self._writing)
            worker_busy_count.set(min(self._writing, self.workers))

    def snapshot(self) -> tuple[int, int, int]:
        with self._lock:
            return self._waiting, self._writing, self.workers

    def submit_chunk(self, file_name: str | None, fn, *args) -> Future:
        self._reserve(file_name)

        def run():
            self._started()
            try:
                return fn(*args)
            finally:
                self._finished()

        return self.executor.submit(run)


chunk_workers = ChunkWorkerPool(
    workers=settings.worker_count,
    queue_limit=settings.task_queue_maxsize,
    inflight_limit=settings.max_global_inflight_chunks,
)
