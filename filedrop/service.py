from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import BinaryIO

from filedrop.chunk_store import ChunkStore, validate_file_name
from filedrop.errors import AssemblyInProgress, ClientProtocolError, NotFound
from filedrop.logs import assembly_event
from filedrop.merger import Merger
from filedrop.tracing import tracer
from filedrop.tracker import AssemblyPhase, AssemblyState, AssemblyTracker, Completion


class UploadStatus(str, enum.Enum):
    chunk_accepted = "CHUNK_ACCEPTED"
    upload_completed = "UPLOAD_COMPLETED"


@dataclass(frozen=True)
class UploadOutcome:
    file_name: str
    chunk_index: int
    status: UploadStatus
    completion: Completion
    received_chunks: int
    total_chunks: int
    duplicate: bool = False
    size_bytes: int | None = None
    cleanup_failures: int = 0


@dataclass(frozen=True)
class AbandonResult:
    file_name: str
    was_tracked: bool
    slots_deleted: int


class UploadService:
    def __init__(self, store: ChunkStore, tracker: AssemblyTracker, merger: Merger) -> None:
        self.store = store
        self.tracker = tracker
        self.merger = merger

    def receive_chunk(self, file_name: str, index: int, total: int, reader: BinaryIO | None) -> UploadOutcome:
        """Store one chunk and, if it completes the file, merge and publish it.

        Returns an accepted or completed outcome; every failure is raised as an
        ``UploadError`` whose ``retry_action`` tells the client whether to
        resend the chunk or the whole file.
        """
        validate_file_name(file_name, self.store.slot_suffix)
        if reader is None:
            raise ClientProtocolError("chunk payload is missing", file_name=file_name)
        self.tracker.admit(file_name, index, total)

        with tracer.start_as_current_span("chunk_store.put"):
            self.store.put(file_name, index, total, reader)
        try:
            arrival = self.tracker.record_arrival(file_name, index, total)
        except ClientProtocolError:
            # The slot was written for an upload the tracker no longer agrees with.
            self.store.delete_slot(file_name, index)
            raise

        if arrival.completion is not Completion.now_complete:
            return UploadOutcome(
                file_name=file_name,
                chunk_index=index,
                status=UploadStatus.chunk_accepted,
                completion=arrival.completion,
                received_chunks=arrival.received,
                total_chunks=arrival.total,
                duplicate=arrival.duplicate,
            )

        try:
            with tracer.start_as_current_span("merger.assemble"):
                result = self.merger.assemble(file_name, arrival.total)
        except Exception as exc:
            self.tracker.abandon(file_name)
            assembly_event(
                {
                    "event": "assembly_failed",
                    "file_name": file_name,
                    "total_chunks": arrival.total,
                    "error_class": type(exc).__name__,
                    "detail": str(exc),
                },
                level=logging.ERROR,
            )
            raise
        self.tracker.close(file_name)
        return UploadOutcome(
            file_name=file_name,
            chunk_index=index,
            status=UploadStatus.upload_completed,
            completion=arrival.completion,
            received_chunks=arrival.received,
            total_chunks=arrival.total,
            duplicate=arrival.duplicate,
            size_bytes=result.size_bytes,
            cleanup_failures=len(result.cleanup_failures),
        )

    def status(self, file_name: str) -> AssemblyState:
        state = self.tracker.get(file_name)
        if state is None:
            raise NotFound(f"no upload in progress for {file_name!r}", file_name=file_name)
        return state

    def abandon(self, file_name: str) -> AbandonResult:
        validate_file_name(file_name, self.store.slot_suffix)
        state = self.tracker.get(file_name)
        if state is not None and state.phase is AssemblyPhase.complete:
            raise AssemblyInProgress("upload is being assembled and cannot be abandoned", file_name=file_name)
        dropped = self.tracker.abandon(file_name)
        deleted = self.store.delete_slots(file_name)
        if dropped is None and deleted == 0:
            raise NotFound(f"no upload in progress for {file_name!r}", file_name=file_name)
        assembly_event({"event": "assembly_abandoned", "file_name": file_name, "slots_deleted": deleted})
        return AbandonResult(file_name=file_name, was_tracked=dropped is not None, slots_deleted=deleted)
