import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from filedrop.errors import AssemblyInProgress, ClientProtocolError, TotalMismatch
from filedrop.tracker import AssemblyPhase, AssemblyTracker, Completion


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_completes_once_every_distinct_index_arrived() -> None:
    tracker = AssemblyTracker()

    first = tracker.record_arrival("a.bin", 2, 3)
    second = tracker.record_arrival("a.bin", 0, 3)
    last = tracker.record_arrival("a.bin", 1, 3)

    assert first.completion is Completion.incomplete
    assert second.completion is Completion.incomplete
    assert last.completion is Completion.now_complete
    assert last.received == 3
    assert tracker.get("a.bin").phase is AssemblyPhase.complete


def test_resend_does_not_change_count_or_complete() -> None:
    tracker = AssemblyTracker()
    tracker.record_arrival("a.bin", 0, 3)

    for _ in range(5):
        arrival = tracker.record_arrival("a.bin", 0, 3)
        assert arrival.completion is Completion.incomplete
        assert arrival.received == 1
        assert arrival.duplicate is True

    assert tracker.get("a.bin").missing() == [1, 2]


def test_last_index_arriving_first_does_not_complete() -> None:
    tracker = AssemblyTracker()

    arrival = tracker.record_arrival("a.bin", 1, 2)

    assert arrival.completion is Completion.incomplete


def test_arrivals_after_completion_report_already_complete() -> None:
    tracker = AssemblyTracker()
    tracker.record_arrival("a.bin", 0, 1)

    again = tracker.record_arrival("a.bin", 0, 1)

    assert again.completion is Completion.already_complete
    with pytest.raises(AssemblyInProgress):
        tracker.admit("a.bin", 0, 1)


def test_close_starts_a_fresh_upload_for_the_same_name() -> None:
    tracker = AssemblyTracker()
    tracker.record_arrival("a.bin", 0, 1)

    assert tracker.close("a.bin") is True
    assert tracker.get("a.bin") is None

    arrival = tracker.record_arrival("a.bin", 0, 2)
    assert arrival.completion is Completion.incomplete
    assert arrival.total == 2


def test_close_ignores_uploads_still_receiving() -> None:
    tracker = AssemblyTracker()
    tracker.record_arrival("a.bin", 0, 2)

    assert tracker.close("a.bin") is False
    assert tracker.get("a.bin") is not None


def test_conflicting_total_adopts_first_and_logs(caplog) -> None:
    caplog.set_level("INFO", logger="filedrop.assembly")
    tracker = AssemblyTracker()
    tracker.record_arrival("a.bin", 0, 2)

    arrival = tracker.record_arrival("a.bin", 1, 5)

    assert arrival.total == 2
    assert arrival.completion is Completion.now_complete
    events = [json.loads(r.message) for r in caplog.records if r.name == "filedrop.assembly"]
    conflict = [e for e in events if e["event"] == "total_conflict"]
    assert conflict and conflict[-1]["adopted_total"] == 2 and conflict[-1]["declared_total"] == 5


def test_conflicting_total_rejected_without_mutation() -> None:
    tracker = AssemblyTracker(total_conflict_policy="reject")
    tracker.record_arrival("a.bin", 0, 3)

    with pytest.raises(TotalMismatch):
        tracker.record_arrival("a.bin", 1, 4)
    with pytest.raises(TotalMismatch):
        tracker.admit("a.bin", 1, 4)

    assert tracker.get("a.bin").received == {0}


def test_index_beyond_adopted_total_is_rejected() -> None:
    tracker = AssemblyTracker()
    tracker.record_arrival("a.bin", 0, 2)

    with pytest.raises(ClientProtocolError):
        tracker.record_arrival("a.bin", 3, 4)

    assert tracker.get("a.bin").received == {0}


@pytest.mark.parametrize(("index", "total"), [(-1, 2), (2, 2), (0, 0)])
def test_malformed_arrival_creates_no_state(index: int, total: int) -> None:
    tracker = AssemblyTracker()

    with pytest.raises(ClientProtocolError):
        tracker.record_arrival("a.bin", index, total)

    assert tracker.get("a.bin") is None


def test_concurrent_arrivals_complete_exactly_once() -> None:
    tracker = AssemblyTracker()
    total = 64
    indexes = list(range(total)) * 4

    with ThreadPoolExecutor(max_workers=16) as pool:
        arrivals = list(pool.map(lambda i: tracker.record_arrival("race.bin", i, total), indexes))

    completions = [a.completion for a in arrivals]
    assert completions.count(Completion.now_complete) == 1
    assert tracker.get("race.bin").received == set(range(total))


def test_different_files_do_not_block_each_other() -> None:
    tracker = AssemblyTracker()
    done = threading.Event()

    def _other_file() -> None:
        tracker.record_arrival("b.bin", 0, 2)
        done.set()

    with tracker._locked("a.bin"):
        worker = threading.Thread(target=_other_file)
        worker.start()
        assert done.wait(timeout=5)
    worker.join()


def test_stale_and_abandon() -> None:
    clock = _Clock()
    tracker = AssemblyTracker(clock=clock)
    tracker.record_arrival("old.bin", 0, 2)
    clock.now += 100
    tracker.record_arrival("new.bin", 0, 2)
    tracker.record_arrival("done.bin", 0, 1)

    assert tracker.stale(older_than_seconds=50) == ["old.bin"]

    dropped = tracker.abandon("old.bin")
    assert dropped is not None and dropped.received == {0}
    assert tracker.abandon("old.bin") is None
    assert [state.file_name for state in tracker.active()] == ["done.bin", "new.bin"]


def test_total_over_limit_creates_no_state() -> None:
    tracker = AssemblyTracker(max_total_chunks=100)

    with pytest.raises(ClientProtocolError):
        tracker.admit("big.bin", 0, 101)
    with pytest.raises(ClientProtocolError):
        tracker.record_arrival("big.bin", 0, 10**9)

    assert tracker.get("big.bin") is None
    assert tracker.record_arrival("big.bin", 99, 100).completion is Completion.incomplete


def test_missing_indexes_can_be_truncated() -> None:
    tracker = AssemblyTracker()
    tracker.record_arrival("a.bin", 1, 5000)

    state = tracker.get("a.bin")
    assert state.missing(limit=3) == [0, 2, 3]
    assert len(state.missing()) == 4999
    assert state.missing_count() == 4999
