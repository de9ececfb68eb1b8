from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from itertools import islice
from threading import Lock

from filedrop.chunk_store import validate_chunk_position
from filedrop.errors import AssemblyInProgress, ClientProtocolError, TotalMismatch
from filedrop.logs import assembly_event
from filedrop.metrics import active_assemblies, duplicate_chunks_total


class Completion(str, enum.Enum):
    incomplete = "INCOMPLETE"
    now_complete = "NOW_COMPLETE"
    already_complete = "ALREADY_COMPLETE"


class AssemblyPhase(str, enum.Enum):
    receiving = "RECEIVING"
    complete = "COMPLETE"


class TotalConflictPolicy(str, enum.Enum):
    adopt_first = "adopt_first"
    reject = "reject"


@dataclass
class AssemblyState:
    file_name: str
    total: int
    received: set[int] = field(default_factory=set)
    phase: AssemblyPhase = AssemblyPhase.receiving
    created_at: float = 0.0
    updated_at: float = 0.0

    def missing(self, limit: int | None = None) -> list[int]:
        gaps = (index for index in range(self.total) if index not in self.received)
        return list(islice(gaps, limit))

    def missing_count(self) -> int:
        return self.total - len(self.received)

    def copy(self) -> AssemblyState:
        return replace(self, received=set(self.received))


@dataclass(frozen=True)
class Arrival:
    file_name: str
    index: int
    completion: Completion
    received: int
    total: int
    duplicate: bool = False


@dataclass
class _Entry:
    lock: Lock = field(default_factory=Lock)
    users: int = 0
    state: AssemblyState | None = None


class AssemblyTracker:
    """In-memory bookkeeping of which chunks have arrived per file name.

    Each file name gets its own lock; the registry lock is held only long
    enough to find or create that lock, so uploads of different files never
    wait on each other. Completion is a count of distinct indices, so resends
    and out-of-order arrival cannot complete an upload early.
    """

    def __init__(
        self,
        total_conflict_policy: str = TotalConflictPolicy.adopt_first.value,
        max_total_chunks: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.total_conflict_policy = TotalConflictPolicy(total_conflict_policy)
        self.max_total_chunks = max_total_chunks
        self._clock = clock
        self._registry_lock = Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def _locked(self, file_name: str) -> Iterator[_Entry]:
        with self._registry_lock:
            entry = self._entries.get(file_name)
            if entry is None:
                entry = self._entries[file_name] = _Entry()
            entry.users += 1
        try:
            with entry.lock:
                yield entry
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0 and entry.state is None:
                    self._entries.pop(file_name, None)

    def admit(self, file_name: str, index: int, total: int) -> None:
        """Reject a chunk before it is written, without touching state."""
        validate_chunk_position(file_name, index, total, self.max_total_chunks)
        with self._locked(file_name) as entry:
            state = entry.state
            if state is None:
                return
            if state.phase is AssemblyPhase.complete:
                raise AssemblyInProgress("upload is being assembled, chunks are not accepted", file_name=file_name)
            self._check_against_state(state, index, total, warn=False)

    def record_arrival(self, file_name: str, index: int, total: int) -> Arrival:
        validate_chunk_position(file_name, index, total, self.max_total_chunks)
        now = self._clock()
        with self._locked(file_name) as entry:
            state = entry.state
            if state is None:
                state = AssemblyState(file_name=file_name, total=total, created_at=now, updated_at=now)
                entry.state = state
                active_assemblies.inc()
                assembly_event({"event": "assembly_started", "file_name": file_name, "total_chunks": total})
            elif state.phase is AssemblyPhase.complete:
                return Arrival(
                    file_name=file_name,
                    index=index,
                    completion=Completion.already_complete,
                    received=len(state.received),
                    total=state.total,
                    duplicate=index in state.received,
                )
            else:
                self._check_against_state(state, index, total)

            duplicate = index in state.received
            if duplicate:
                duplicate_chunks_total.inc()
            state.received.add(index)
            state.updated_at = now
            completion = Completion.incomplete
            if len(state.received) == state.total:
                state.phase = AssemblyPhase.complete
                completion = Completion.now_complete
            return Arrival(
                file_name=file_name,
                index=index,
                completion=completion,
                received=len(state.received),
                total=state.total,
                duplicate=duplicate,
            )

    def _check_against_state(self, state: AssemblyState, index: int, total: int, warn: bool = True) -> None:
        if total != state.total:
            if self.total_conflict_policy is TotalConflictPolicy.reject:
                raise TotalMismatch(
                    f"total chunks {total} conflicts with {state.total} declared earlier", file_name=state.file_name
                )
            if warn:
                assembly_event(
                    {
                        "event": "total_conflict",
                        "file_name": state.file_name,
                        "declared_total": total,
                        "adopted_total": state.total,
                    },
                    level=logging.WARNING,
                )
        if index >= state.total:
            raise ClientProtocolError(
                f"chunk index {index} out of range for total {state.total}", file_name=state.file_name
            )

    def close(self, file_name: str) -> bool:
        with self._locked(file_name) as entry:
            if entry.state is None or entry.state.phase is not AssemblyPhase.complete:
                return False
            entry.state = None
            active_assemblies.dec()
            return True

    def abandon(self, file_name: str) -> AssemblyState | None:
        with self._locked(file_name) as entry:
            state = entry.state
            if state is None:
                return None
            entry.state = None
            active_assemblies.dec()
            return state.copy()

    def get(self, file_name: str) -> AssemblyState | None:
        with self._locked(file_name) as entry:
            return entry.state.copy() if entry.state else None

    def active(self) -> list[AssemblyState]:
        with self._registry_lock:
            names = sorted(self._entries)
        states = [self.get(name) for name in names]
        return [state for state in states if state is not None]

    def stale(self, older_than_seconds: float) -> list[str]:
        cutoff = self._clock() - older_than_seconds
        return [
            state.file_name
            for state in self.active()
            if state.phase is AssemblyPhase.receiving and state.updated_at < cutoff
        ]

    def reset(self) -> None:
        with self._registry_lock:
            self._entries.clear()
        active_assemblies.set(0)
