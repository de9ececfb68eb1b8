from __future__ import annotations

import errno
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from filedrop.errors import CannotCreateSlot, ClientProtocolError, InvalidFileName, MissingSlot, WriteFailed
from filedrop.logs import assembly_event
from filedrop.metrics import (
    bytes_received_total,
    chunk_write_failures_total,
    chunks_received_total,
    slot_write_latency_seconds,
)

# Leaves room for the "_{index}.{token}.part.tmp" staging suffix under NAME_MAX.
MAX_FILE_NAME_BYTES = 200
DEFAULT_BUFFER_SIZE = 64 * 1024


@dataclass(frozen=True)
class ChunkAck:
    file_name: str
    index: int
    size_bytes: int
    path: str


@dataclass(frozen=True)
class SlotInfo:
    file_name: str
    index: int
    size_bytes: int
    modified_at: float
    path: str


@dataclass(frozen=True)
class TempFile:
    name: str
    path: str
    modified_at: float


def validate_file_name(file_name: str, slot_suffix: str = ".tmp") -> str:
    if not file_name or file_name in (".", ".."):
        raise InvalidFileName("file name is empty or reserved", file_name=file_name)
    if any(ch in file_name for ch in ("/", "\\", "\x00")):
        raise InvalidFileName("file name must not contain path separators", file_name=file_name)
    if len(file_name.encode("utf-8")) > MAX_FILE_NAME_BYTES:
        raise InvalidFileName(f"file name exceeds {MAX_FILE_NAME_BYTES} bytes", file_name=file_name)
    if file_name.endswith(slot_suffix):
        raise InvalidFileName(f"file names ending in {slot_suffix} are reserved", file_name=file_name)
    return file_name


def validate_chunk_position(file_name: str, index: int, total: int, max_total: int | None = None) -> None:
    if total < 1:
        raise ClientProtocolError("total chunks must be a positive integer", file_name=file_name)
    if max_total is not None and total > max_total:
        raise ClientProtocolError(f"total chunks {total} exceeds the limit of {max_total}", file_name=file_name)
    if index < 0 or index >= total:
        raise ClientProtocolError(f"chunk index {index} out of range for total {total}", file_name=file_name)


class ChunkStore:
    """Durable per-chunk slots in a flat directory.

    A slot for ``(file_name, index)`` lives at ``{file_name}_{index}{suffix}``.
    Writes land in a uniquely named staging file first and are renamed over
    the slot once the whole payload is on disk, so a slot is either absent or
    holds one complete payload.
    """

    def __init__(
        self,
        root: str,
        slot_suffix: str = ".tmp",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        max_chunk_bytes: int | None = None,
        max_total_chunks: int | None = None,
    ) -> None:
        self.root = Path(root)
        self.slot_suffix = slot_suffix
        self.buffer_size = max(1, buffer_size)
        self.max_chunk_bytes = max_chunk_bytes
        self.max_total_chunks = max_total_chunks
        self._slot_re = re.compile(rf"^(?P<file_name>.+)_(?P<index>\d+){re.escape(slot_suffix)}$")

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CannotCreateSlot(f"cannot create storage root {self.root}: {exc}") from exc

    def is_temp_name(self, name: str) -> bool:
        return name.endswith(self.slot_suffix)

    def slot_name(self, file_name: str, index: int) -> str:
        return f"{file_name}_{index}{self.slot_suffix}"

    def slot_path(self, file_name: str, index: int) -> Path:
        return self.root / self.slot_name(file_name, index)

    def staging_path(self, file_name: str, label: str) -> Path:
        return self.root / f"{file_name}.{uuid.uuid4().hex}.{label}{self.slot_suffix}"

    def parse_slot_name(self, name: str) -> tuple[str, int] | None:
        match = self._slot_re.match(name)
        if not match:
            return None
        return match.group("file_name"), int(match.group("index"))

    def put(self, file_name: str, index: int, total: int, reader: BinaryIO) -> ChunkAck:
        validate_file_name(file_name, self.slot_suffix)
        validate_chunk_position(file_name, index, total, self.max_total_chunks)

        target = self.slot_path(file_name, index)
        staging = self.staging_path(f"{file_name}_{index}", "part")
        try:
            first = reader.read(self.buffer_size)
        except OSError as exc:
            self._log_write_failure("write_failed", file_name, index, staging, exc)
            raise WriteFailed(f"failed writing chunk {index}", file_name=file_name) from exc
        # An empty payload is only valid for a zero-byte file sent as one chunk.
        if not first and total != 1:
            raise ClientProtocolError("chunk payload is empty", file_name=file_name)

        start = time.perf_counter()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            handle = open(staging, "xb")
        except OSError as exc:
            self._log_write_failure("cannot_create_slot", file_name, index, staging, exc)
            if exc.errno == errno.ENAMETOOLONG:
                raise ClientProtocolError(
                    f"slot name for chunk {index} is too long for the filesystem", file_name=file_name
                ) from exc
            raise CannotCreateSlot(f"cannot create slot for chunk {index}", file_name=file_name) from exc

        try:
            with handle:
                size = self._copy(first, reader, handle, file_name)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(staging, target)
        except OSError as exc:
            self._discard(staging)
            self._log_write_failure("write_failed", file_name, index, staging, exc)
            if exc.errno == errno.ENAMETOOLONG:
                raise ClientProtocolError(
                    f"slot name for chunk {index} is too long for the filesystem", file_name=file_name
                ) from exc
            raise WriteFailed(f"failed writing chunk {index}", file_name=file_name) from exc
        except BaseException:
            self._discard(staging)
            raise

        slot_write_latency_seconds.observe(time.perf_counter() - start)
        chunks_received_total.inc()
        bytes_received_total.inc(size)
        assembly_event(
            {
                "event": "chunk_stored",
                "file_name": file_name,
                "chunk_index": index,
                "total_chunks": total,
                "size_bytes": size,
            }
        )
        return ChunkAck(file_name=file_name, index=index, size_bytes=size, path=str(target))

    def _copy(self, block: bytes, reader: BinaryIO, writer: BinaryIO, file_name: str) -> int:
        written = 0
        while block:
            written += len(block)
            if self.max_chunk_bytes is not None and written > self.max_chunk_bytes:
                raise ClientProtocolError(
                    f"chunk payload exceeds {self.max_chunk_bytes} bytes", file_name=file_name
                )
            writer.write(block)
            block = reader.read(self.buffer_size)
        return written

    def _log_write_failure(self, reason: str, file_name: str, index: int, path: Path, exc: OSError) -> None:
        chunk_write_failures_total.labels(reason=reason).inc()
        assembly_event(
            {
                "event": "slot_write_failed",
                "reason": reason,
                "file_name": file_name,
                "chunk_index": index,
                "path": str(path),
                "error": str(exc),
            },
            level=logging.ERROR,
        )

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            # The sweeper removes staging files it finds later.
            pass

    def has_slot(self, file_name: str, index: int) -> bool:
        return self.slot_path(file_name, index).is_file()

    def missing_slots(self, file_name: str, total: int) -> list[int]:
        return [index for index in range(total) if not self.has_slot(file_name, index)]

    def open_slot(self, file_name: str, index: int) -> BinaryIO:
        try:
            return open(self.slot_path(file_name, index), "rb")
        except FileNotFoundError as exc:
            raise MissingSlot(f"chunk {index} has no stored slot", file_name=file_name, index=index) from exc

    def delete_slot(self, file_name: str, index: int) -> bool:
        path = self.slot_path(file_name, index)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def delete_slots(self, file_name: str) -> int:
        deleted = 0
        for slot in self.list_slots():
            if slot.file_name != file_name:
                continue
            if self.delete_slot(slot.file_name, slot.index):
                deleted += 1
        return deleted

    def list_slots(self) -> list[SlotInfo]:
        slots: list[SlotInfo] = []
        for entry in self._scan():
            parsed = self.parse_slot_name(entry.name)
            if parsed is None:
                continue
            try:
                stat = entry.stat()
            except FileNotFoundError:
                continue
            slots.append(
                SlotInfo(
                    file_name=parsed[0],
                    index=parsed[1],
                    size_bytes=stat.st_size,
                    modified_at=stat.st_mtime,
                    path=entry.path,
                )
            )
        return sorted(slots, key=lambda slot: (slot.file_name, slot.index))

    def list_temp_files(self) -> list[TempFile]:
        files: list[TempFile] = []
        for entry in self._scan():
            if not self.is_temp_name(entry.name):
                continue
            try:
                modified_at = entry.stat().st_mtime
            except FileNotFoundError:
                continue
            files.append(TempFile(name=entry.name, path=entry.path, modified_at=modified_at))
        return sorted(files, key=lambda item: item.name)

    def _scan(self) -> list[os.DirEntry]:
        if not self.root.exists():
            return []
        with os.scandir(self.root) as it:
            return [entry for entry in it if entry.is_file(follow_symlinks=False)]
