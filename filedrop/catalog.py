from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from filedrop.chunk_store import ChunkStore, validate_file_name
from filedrop.errors import InvalidFileName, NotFound

DEFAULT_MEDIA_TYPE = "application/octet-stream"

MEDIA_TYPES = {
    ".txt": "text/plain",
    ".png": "image/png",
    ".jpg": "image/jpg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".mp4": "video/mp4",
    ".avi": "video/avi",
    ".mov": "video/mov",
    ".mkv": "video/mkv",
    ".mp3": "audio/mp3",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/msword",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.ms-excel",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.ms-powerpoint",
    ".zip": "application/zip",
    ".tar": "application/x-tar",
    ".gz": "application/x-tar",
    ".bz2": "application/x-tar",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
}


def media_type(file_name: str) -> str:
    # Extension match is case-sensitive.
    return MEDIA_TYPES.get(os.path.splitext(file_name)[1], DEFAULT_MEDIA_TYPE)


def is_previewable(content_type: str) -> bool:
    return content_type == "text/plain" or content_type.startswith(("image/", "video/"))


@dataclass(frozen=True)
class FileEntry:
    name: str
    size_bytes: int
    modified_at: datetime
    media_type: str


class FileCatalog:
    """Published artifacts in the storage root; temp slots are never listed."""

    def __init__(self, store: ChunkStore) -> None:
        self.store = store

    @property
    def root(self) -> Path:
        return self.store.root

    def list(self) -> list[FileEntry]:
        if not self.root.exists():
            return []
        entries: list[FileEntry] = []
        with os.scandir(self.root) as it:
            for item in it:
                if not item.is_file(follow_symlinks=False) or self.store.is_temp_name(item.name):
                    continue
                try:
                    stat = item.stat()
                except FileNotFoundError:
                    continue
                entries.append(
                    FileEntry(
                        name=item.name,
                        size_bytes=stat.st_size,
                        modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        media_type=media_type(item.name),
                    )
                )
        return sorted(entries, key=lambda entry: entry.name)

    def names(self) -> list[str]:
        return [entry.name for entry in self.list()]

    def resolve(self, file_name: str) -> Path:
        try:
            validate_file_name(file_name, self.store.slot_suffix)
        except InvalidFileName as exc:
            raise NotFound(f"file {file_name!r} not found", file_name=file_name) from exc
        path = self.root / file_name
        if not path.is_file():
            raise NotFound(f"file {file_name!r} not found", file_name=file_name)
        return path

    def delete(self, file_name: str) -> None:
        path = self.resolve(file_name)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFound(f"file {file_name!r} not found", file_name=file_name) from exc
