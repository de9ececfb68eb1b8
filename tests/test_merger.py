import io
import json
import logging
import shutil
from pathlib import Path

import pytest

from filedrop.chunk_store import ChunkStore
from filedrop.errors import IncompleteAssembly, MergeWriteFailed
from filedrop.merger import Merger


def _store_chunks(store: ChunkStore, file_name: str, payloads: list[bytes]) -> None:
    total = len(payloads)
    for index in reversed(range(total)):
        store.put(file_name, index, total, io.BytesIO(payloads[index]))


def _temp_names(root: Path) -> list[str]:
    return sorted(p.name for p in root.iterdir() if p.name.endswith(".tmp"))


def test_assemble_concatenates_in_index_order_and_removes_slots(tmp_path: Path) -> None:
    store = ChunkStore(str(tmp_path))
    merger = Merger(store, buffer_size=3)
    _store_chunks(store, "report.pdf", [b"AAAA", b"BB", b"CCCCCC"])

    result = merger.assemble("report.pdf", 3)

    assert (tmp_path / "report.pdf").read_bytes() == b"AAAABBCCCCCC"
    assert result.size_bytes == 12
    assert result.chunk_count == 3
    assert result.cleanup_failures == []
    assert _temp_names(tmp_path) == []


def test_missing_slot_leaves_previous_artifact_untouched(tmp_path: Path) -> None:
    store = ChunkStore(str(tmp_path))
    merger = Merger(store)
    (tmp_path / "a.bin").write_bytes(b"previous upload")
    _store_chunks(store, "a.bin", [b"x", b"y", b"z"])
    store.delete_slot("a.bin", 1)

    with pytest.raises(IncompleteAssembly) as exc_info:
        merger.assemble("a.bin", 3)

    assert exc_info.value.retry_action == "restart_upload"
    assert (tmp_path / "a.bin").read_bytes() == b"previous upload"
    assert _temp_names(tmp_path) == ["a.bin_0.tmp", "a.bin_2.tmp"]


def test_missing_slot_leaves_no_artifact(tmp_path: Path) -> None:
    store = ChunkStore(str(tmp_path))
    merger = Merger(store)
    store.put("a.bin", 0, 2, io.BytesIO(b"x"))

    with pytest.raises(IncompleteAssembly):
        merger.assemble("a.bin", 2)

    assert not (tmp_path / "a.bin").exists()


def test_write_failure_discards_staging_and_keeps_slots(tmp_path: Path, monkeypatch) -> None:
    store = ChunkStore(str(tmp_path))
    merger = Merger(store)
    _store_chunks(store, "a.bin", [b"one", b"two"])
    calls = {"count": 0}
    real_copy = shutil.copyfileobj

    def _flaky_copy(src, dst, length=0):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OSError("disk full")
        real_copy(src, dst, length)

    monkeypatch.setattr("filedrop.merger.shutil.copyfileobj", _flaky_copy)

    with pytest.raises(MergeWriteFailed) as exc_info:
        merger.assemble("a.bin", 2)

    assert exc_info.value.detail == "failed writing artifact"
    assert not (tmp_path / "a.bin").exists()
    assert _temp_names(tmp_path) == ["a.bin_0.tmp", "a.bin_1.tmp"]


def test_cleanup_failure_is_reported_not_raised(tmp_path: Path, monkeypatch) -> None:
    store = ChunkStore(str(tmp_path))
    merger = Merger(store)
    _store_chunks(store, "a.bin", [b"one", b"two"])
    real_delete = store.delete_slot

    def _delete_slot(file_name: str, index: int) -> bool:
        if index == 1:
            raise PermissionError("read-only slot")
        return real_delete(file_name, index)

    monkeypatch.setattr(store, "delete_slot", _delete_slot)

    result = merger.assemble("a.bin", 2)

    assert (tmp_path / "a.bin").read_bytes() == b"onetwo"
    assert len(result.cleanup_failures) == 1
    assert result.cleanup_failures[0].path.endswith("a.bin_1.tmp")
    assert _temp_names(tmp_path) == ["a.bin_1.tmp"]


def test_republish_replaces_existing_artifact(tmp_path: Path) -> None:
    store = ChunkStore(str(tmp_path))
    merger = Merger(store)
    (tmp_path / "a.bin").write_bytes(b"old contents that are longer")
    _store_chunks(store, "a.bin", [b"new"])

    merger.assemble("a.bin", 1)

    assert (tmp_path / "a.bin").read_bytes() == b"new"


def test_artifact_create_failure_logs_path_but_hides_it(tmp_path: Path, monkeypatch, caplog) -> None:
    store = ChunkStore(str(tmp_path))
    merger = Merger(store)
    _store_chunks(store, "a.bin", [b"one"])
    caplog.set_level(logging.ERROR, logger="filedrop.assembly")
    monkeypatch.setattr(store, "staging_path", lambda file_name, label: tmp_path / "no-such-dir" / "a.bin.x.tmp")

    with pytest.raises(MergeWriteFailed) as exc_info:
        merger.assemble("a.bin", 1)

    assert exc_info.value.detail == "cannot create artifact"
    assert exc_info.value.retry_action == "restart_upload"
    events = [json.loads(record.message) for record in caplog.records if record.name == "filedrop.assembly"]
    failed = [event for event in events if event["event"] == "merge_write_failed"]
    assert failed[-1]["reason"] == "cannot_create_artifact"
    assert failed[-1]["path"] == str(tmp_path / "no-such-dir" / "a.bin.x.tmp")
    assert _temp_names(tmp_path) == ["a.bin_0.tmp"]
