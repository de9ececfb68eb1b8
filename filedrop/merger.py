from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from filedrop.chunk_store import DEFAULT_BUFFER_SIZE, ChunkStore
from filedrop.errors import CleanupWarning, MergeWriteFailed, MissingSlot
from filedrop.logs import assembly_event
from filedrop.metrics import (
    assemblies_completed_total,
    assembly_failures_total,
    merge_latency_seconds,
    slot_cleanup_failures_total,
)


@dataclass(frozen=True)
class MergeResult:
    file_name: str
    path: str
    size_bytes: int
    chunk_count: int
    cleanup_failures: list[CleanupWarning] = field(default_factory=list)


class Merger:
    """Concatenates a completed chunk set into the published artifact.

    Slots are copied in ascending index order into a staging file which is
    renamed onto ``{root}/{file_name}`` only after every byte is on disk.
    Slots are removed after the rename; if anything fails before it, the
    canonical path keeps whatever it held before and the slots stay for
    inspection.
    """

    def __init__(self, store: ChunkStore, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.store = store
        self.buffer_size = max(1, buffer_size)

    def artifact_path(self, file_name: str) -> Path:
        return self.store.root / file_name

    def assemble(self, file_name: str, total: int) -> MergeResult:
        start = time.perf_counter()
        missing = self.store.missing_slots(file_name, total)
        if missing:
            assembly_failures_total.labels(reason="missing_slot").inc()
            raise MissingSlot(
                f"chunks {missing} have no stored slot, resend the whole file",
                file_name=file_name,
                index=missing[0],
            )

        staging = self.store.staging_path(file_name, "assembling")
        try:
            handle = open(staging, "xb")
        except OSError as exc:
            self._log_write_failure("cannot_create_artifact", file_name, staging, exc)
            raise MergeWriteFailed("cannot create artifact", file_name=file_name) from exc

        try:
            with handle:
                for index in range(total):
                    with self.store.open_slot(file_name, index) as slot:
                        shutil.copyfileobj(slot, handle, self.buffer_size)
                handle.flush()
                os.fsync(handle.fileno())
                size = handle.tell()
            os.replace(staging, self.artifact_path(file_name))
        except MissingSlot:
            self._discard(staging)
            assembly_failures_total.labels(reason="missing_slot").inc()
            raise
        except OSError as exc:
            self._discard(staging)
            self._log_write_failure("write_failed", file_name, staging, exc)
            raise MergeWriteFailed("failed writing artifact", file_name=file_name) from exc
        except BaseException:
            self._discard(staging)
            raise

        cleanup_failures = self._remove_slots(file_name, total)
        merge_latency_seconds.observe(time.perf_counter() - start)
        assemblies_completed_total.inc()
        assembly_event(
            {
                "event": "assembly_published",
                "file_name": file_name,
                "total_chunks": total,
                "size_bytes": size,
                "cleanup_failures": len(cleanup_failures),
            }
        )
        return MergeResult(
            file_name=file_name,
            path=str(self.artifact_path(file_name)),
            size_bytes=size,
            chunk_count=total,
            cleanup_failures=cleanup_failures,
        )

    def _remove_slots(self, file_name: str, total: int) -> list[CleanupWarning]:
        failures: list[CleanupWarning] = []
        for index in range(total):
            try:
                self.store.delete_slot(file_name, index)
            except OSError as exc:
                warning = CleanupWarning(str(self.store.slot_path(file_name, index)), str(exc))
                failures.append(warning)
                slot_cleanup_failures_total.inc()
                assembly_event(
                    {
                        "event": "slot_cleanup_failed",
                        "file_name": file_name,
                        "chunk_index": index,
                        "detail": warning.reason,
                    },
                    level=logging.WARNING,
                )
        return failures

    def _log_write_failure(self, reason: str, file_name: str, path: Path, exc: OSError) -> None:
        assembly_failures_total.labels(reason=reason).inc()
        assembly_event(
            {
                "event": "merge_write_failed",
                "reason": reason,
                "file_name": file_name,
                "path": str(path),
                "error": str(exc),
            },
            level=logging.ERROR,
        )

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            pass
