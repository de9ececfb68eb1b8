import asyncio
import io
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse

from filedrop.catalog import FileCatalog, is_previewable, media_type
from filedrop.chunk_store import ChunkStore
from filedrop.config import settings
from filedrop.errors import ClientProtocolError, UploadError
from filedrop.logs import audit_event, log_event, trace_id
from filedrop.maintenance import sweep_once
from filedrop.merger import Merger
from filedrop.metrics import http_request_duration_seconds, metrics_response
from filedrop.schemas import (
    AbandonUploadResponse,
    AssemblyStatusResponse,
    CleanupResponse,
    DeleteFileResponse,
    ErrorResponse,
    FileEntryResponse,
    FileListResponse,
    UploadChunkResponse,
)
from filedrop.service import UploadOutcome, UploadService, UploadStatus
from filedrop.tracing import setup_tracing
from filedrop.tracker import AssemblyTracker
from filedrop.ui import ui_html
from filedrop.worker import chunk_workers

chunk_store = ChunkStore(
    settings.storage_root,
    slot_suffix=settings.slot_suffix,
    buffer_size=settings.copy_buffer_bytes,
    max_chunk_bytes=settings.max_chunk_bytes,
    max_total_chunks=settings.max_total_chunks,
)
tracker = AssemblyTracker(
    total_conflict_policy=settings.total_conflict_policy,
    max_total_chunks=settings.max_total_chunks,
)
merger = Merger(chunk_store, buffer_size=settings.copy_buffer_bytes)
catalog = FileCatalog(chunk_store)
uploads = UploadService(chunk_store, tracker, merger)


def run_sweep() -> dict[str, int]:
    return sweep_once(
        chunk_store,
        tracker,
        stale_assembly_ttl_seconds=settings.stale_assembly_ttl_seconds,
        stale_slot_ttl_seconds=settings.stale_slot_ttl_seconds,
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    chunk_store.ensure_root()

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                await asyncio.to_thread(run_sweep)
            except Exception as exc:
                log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})

    if settings.cleanup_on_startup:
        try:
            await asyncio.to_thread(run_sweep)
        except Exception as exc:
            log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _file_name(request: Request) -> str | None:
    return request.path_params.get("file_name")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        406: "not_acceptable",
        409: "conflict",
        413: "payload_too_large",
        429: "throttled",
        500: "internal_error",
        503: "storage_unavailable",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(
    request: Request,
    status_code: int,
    detail: str,
    *,
    error_code: str | None = None,
    retry_action: str | None = None,
    file_name: str | None = None,
    error_class: str | None = None,
    logged: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    file_name = file_name or _file_name(request)
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "file_name": file_name,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class or ("client_error" if status_code < 500 else "server_error"),
            "detail": logged or detail,
        }
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error_code": error_code or _error_code_for_status(status_code),
            "retry_action": retry_action,
            "request_id": _request_id(request),
            "file_name": file_name,
            "trace_id": trace_id(),
        },
        headers=headers or {},
    )


COMMON_ERROR_RESPONSES = {
    429: {"model": ErrorResponse, "description": "Throttled request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}

UPLOAD_ERROR_RESPONSES = {
    **COMMON_ERROR_RESPONSES,
    400: {"model": ErrorResponse, "description": "Malformed chunk request"},
    409: {"model": ErrorResponse, "description": "Upload state conflict"},
    503: {"model": ErrorResponse, "description": "Storage unavailable, retry the chunk"},
}

# The status route lists at most this many missing indexes; missing_chunk_count has the full figure.
STATUS_MISSING_LIMIT = 1000


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Filedrop-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "file_name": _file_name(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    return _error_response(
        request,
        exc.status_code,
        exc.detail,
        error_code=exc.error_code,
        retry_action=exc.retry_action,
        file_name=exc.file_name,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    )
    return _error_response(
        request, 400, detail, error_code=ClientProtocolError.error_code, retry_action=ClientProtocolError.retry_action
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(
        request,
        exc.status_code,
        str(exc.detail),
        retry_action="retry_chunk" if exc.status_code == 429 else None,
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    return _error_response(request, 500, "internal server error", error_class="unhandled_exception", logged=str(exc))


@app.get("/health")
def health() -> dict[str, str | int]:
    queued, inflight, workers = chunk_workers.snapshot()
    return {"status": "ok", "queued_chunks": queued, "inflight_chunks": inflight, "workers": workers}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_root": settings.storage_root,
        "total_conflict_policy": settings.total_conflict_policy,
    }


@app.get("/", response_class=HTMLResponse)
@app.get("/ui", response_class=HTMLResponse)
@app.get("/console", response_class=HTMLResponse)
def web_console() -> HTMLResponse:
    return HTMLResponse(content=ui_html())


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/v1/admin/cleanup", response_model=CleanupResponse, responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(request: Request) -> CleanupResponse:
    stats = run_sweep()
    audit_event({"event": "audit", "action": "cleanup", "request_id": _request_id(request), **stats})
    return CleanupResponse(status="ok", **stats)


def _chunk_response(outcome: UploadOutcome) -> UploadChunkResponse:
    if outcome.status is UploadStatus.upload_completed:
        message = f"file {outcome.file_name} uploaded"
    else:
        message = f"chunk {outcome.chunk_index} uploaded"
    return UploadChunkResponse(
        file_name=outcome.file_name,
        chunk_index=outcome.chunk_index,
        status=outcome.status.value,
        completion=outcome.completion.value,
        received_chunks=outcome.received_chunks,
        total_chunks=outcome.total_chunks,
        duplicate=outcome.duplicate,
        size_bytes=outcome.size_bytes,
        message=message,
    )


async def _receive_chunk(
    request: Request, response: Response, file_name: str, chunk_index: int, total_chunks: int, reader
) -> UploadChunkResponse:
    future = chunk_workers.submit_chunk(file_name, uploads.receive_chunk, file_name, chunk_index, total_chunks, reader)
    outcome = await asyncio.wrap_future(future)
    if outcome.status is UploadStatus.upload_completed:
        response.status_code = 201
        audit_event(
            {
                "event": "audit",
                "action": "upload_complete",
                "request_id": _request_id(request),
                "file_name": outcome.file_name,
                "total_chunks": outcome.total_chunks,
                "size_bytes": outcome.size_bytes,
                "cleanup_failures": outcome.cleanup_failures,
            }
        )
    return _chunk_response(outcome)


@app.post("/upload", response_model=UploadChunkResponse, status_code=202, responses={**UPLOAD_ERROR_RESPONSES})
async def upload_chunk_form(
    request: Request,
    response: Response,
    filename: str = Form(...),
    chunkIndex: int = Form(...),
    totalChunks: int = Form(...),
    file: UploadFile = File(...),
) -> UploadChunkResponse:
    try:
        return await _receive_chunk(request, response, filename, chunkIndex, totalChunks, file.file)
    finally:
        await file.close()


@app.put(
    "/v1/files/{file_name}/chunks/{chunk_index}",
    response_model=UploadChunkResponse,
    status_code=202,
    responses={**UPLOAD_ERROR_RESPONSES},
)
async def upload_chunk(
    file_name: str,
    chunk_index: int,
    request: Request,
    response: Response,
    total_chunks: int = Query(...),
    content_length: int = Header(default=0),
) -> UploadChunkResponse:
    body = await request.body()
    if content_length and content_length != len(body):
        raise ClientProtocolError("content-length mismatch", file_name=file_name)
    return await _receive_chunk(request, response, file_name, chunk_index, total_chunks, io.BytesIO(body))


@app.get(
    "/v1/uploads/{file_name}",
    response_model=AssemblyStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not tracked"}},
)
def assembly_status(file_name: str) -> AssemblyStatusResponse:
    state = uploads.status(file_name)
    return AssemblyStatusResponse(
        file_name=state.file_name,
        phase=state.phase.value,
        total_chunks=state.total,
        received_chunk_indexes=sorted(state.received),
        missing_chunk_indexes=state.missing(limit=STATUS_MISSING_LIMIT),
        missing_chunk_count=state.missing_count(),
    )


@app.delete(
    "/v1/uploads/{file_name}",
    response_model=AbandonUploadResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Upload not tracked"},
        409: {"model": ErrorResponse, "description": "Upload is being assembled"},
    },
)
def abandon_upload(request: Request, file_name: str) -> AbandonUploadResponse:
    result = uploads.abandon(file_name)
    audit_event(
        {
            "event": "audit",
            "action": "upload_abandon",
            "request_id": _request_id(request),
            "file_name": file_name,
            "slots_deleted": result.slots_deleted,
        }
    )
    return AbandonUploadResponse(
        file_name=result.file_name,
        was_tracked=result.was_tracked,
        slots_deleted=result.slots_deleted,
        status="ABANDONED",
    )


@app.get("/v1/files", response_model=FileListResponse, responses={**COMMON_ERROR_RESPONSES})
def list_files() -> FileListResponse:
    return FileListResponse(
        files=[
            FileEntryResponse(
                name=entry.name,
                size_bytes=entry.size_bytes,
                modified_at=entry.modified_at,
                media_type=entry.media_type,
                previewable=is_previewable(entry.media_type),
            )
            for entry in catalog.list()
        ]
    )


@app.get(
    "/v1/files/{file_name}/download",
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "File not found"}},
)
@app.get("/download/{file_name}", include_in_schema=False)
def download_file(request: Request, file_name: str) -> FileResponse:
    path = catalog.resolve(file_name)
    audit_event({"event": "audit", "action": "download", "request_id": _request_id(request), "file_name": file_name})
    return FileResponse(path, media_type="application/octet-stream", filename=file_name)


@app.get(
    "/v1/files/{file_name}/preview",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "File not found"},
        406: {"model": ErrorResponse, "description": "File type cannot be previewed"},
    },
)
@app.get("/preview/{file_name}", include_in_schema=False)
def preview_file(file_name: str) -> FileResponse:
    path = catalog.resolve(file_name)
    content_type = media_type(file_name)
    if not is_previewable(content_type):
        raise HTTPException(status_code=406, detail="file type not supported for preview")
    return FileResponse(path, media_type=content_type)


@app.delete(
    "/v1/files/{file_name}",
    response_model=DeleteFileResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "File not found"}},
)
@app.delete("/delete/{file_name}", response_model=DeleteFileResponse, include_in_schema=False)
def delete_file(request: Request, file_name: str) -> DeleteFileResponse:
    catalog.delete(file_name)
    audit_event({"event": "audit", "action": "delete", "request_id": _request_id(request), "file_name": file_name})
    return DeleteFileResponse(file_name=file_name, status="DELETED")
