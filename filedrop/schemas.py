from datetime import datetime

from pydantic import BaseModel


class UploadChunkResponse(BaseModel):
    file_name: str
    chunk_index: int
    status: str
    completion: str
    received_chunks: int
    total_chunks: int
    duplicate: bool = False
    size_bytes: int | None = None
    message: str


class AssemblyStatusResponse(BaseModel):
    file_name: str
    phase: str
    total_chunks: int
    received_chunk_indexes: list[int]
    missing_chunk_indexes: list[int]
    missing_chunk_count: int


class AbandonUploadResponse(BaseModel):
    file_name: str
    was_tracked: bool
    slots_deleted: int
    status: str


class FileEntryResponse(BaseModel):
    name: str
    size_bytes: int
    modified_at: datetime
    media_type: str
    previewable: bool


class FileListResponse(BaseModel):
    files: list[FileEntryResponse]


class DeleteFileResponse(BaseModel):
    file_name: str
    status: str


class CleanupResponse(BaseModel):
    status: str
    stale_assemblies_abandoned: int
    temp_files_deleted: int
    cleanup_failures: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    retry_action: str | None = None
    request_id: str | None = None
    file_name: str | None = None
