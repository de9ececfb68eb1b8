from __future__ import annotations

import logging
import os
import time

from filedrop.chunk_store import ChunkStore
from filedrop.logs import assembly_event
from filedrop.metrics import sweep_deleted_total
from filedrop.tracker import AssemblyTracker


def sweep_once(
    store: ChunkStore,
    tracker: AssemblyTracker,
    stale_assembly_ttl_seconds: int,
    stale_slot_ttl_seconds: int,
    now: float | None = None,
) -> dict[str, int]:
    """Abandon idle assemblies and remove old temp files from the storage root.

    Only names in the temp namespace are considered; published artifacts are
    never touched. Slots of assemblies still being tracked are kept no matter
    how old they are.
    """
    now = time.time() if now is None else now

    abandoned = 0
    deleted = 0
    failures = 0
    for file_name in tracker.stale(stale_assembly_ttl_seconds):
        if tracker.abandon(file_name) is None:
            continue
        abandoned += 1
        try:
            deleted += store.delete_slots(file_name)
        except OSError as exc:
            failures += 1
            _sweep_failed(file_name, exc)

    active_names = {state.file_name for state in tracker.active()}
    cutoff = now - stale_slot_ttl_seconds
    for temp in store.list_temp_files():
        if temp.modified_at >= cutoff:
            continue
        parsed = store.parse_slot_name(temp.name)
        if parsed is not None and parsed[0] in active_names:
            continue
        try:
            os.unlink(temp.path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            failures += 1
            _sweep_failed(temp.name, exc)
            continue
        deleted += 1

    sweep_deleted_total.inc(deleted)
    stats = {
        "stale_assemblies_abandoned": abandoned,
        "temp_files_deleted": deleted,
        "cleanup_failures": failures,
    }
    assembly_event({"event": "sweep_completed", **stats})
    return stats


def _sweep_failed(name: str, exc: OSError) -> None:
    assembly_event(
        {"event": "sweep_delete_failed", "name": name, "detail": str(exc), "error_class": "maintenance_error"},
        level=logging.WARNING,
    )
