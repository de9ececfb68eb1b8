from pathlib import Path

import pytest

from filedrop.catalog import FileCatalog, is_previewable, media_type
from filedrop.chunk_store import ChunkStore
from filedrop.errors import NotFound


def _catalog(root: Path) -> FileCatalog:
    return FileCatalog(ChunkStore(str(root)))


def test_list_excludes_temp_namespace_and_directories(tmp_path: Path) -> None:
    (tmp_path / "b.txt").write_bytes(b"hello")
    (tmp_path / "a.png").write_bytes(b"png")
    (tmp_path / "a.png_0.tmp").write_bytes(b"slot")
    (tmp_path / "a.png.abc.assembling.tmp").write_bytes(b"staging")
    (tmp_path / "nested").mkdir()

    entries = _catalog(tmp_path).list()

    assert [entry.name for entry in entries] == ["a.png", "b.txt"]
    assert entries[1].size_bytes == 5
    assert entries[1].media_type == "text/plain"


def test_list_on_missing_root_is_empty(tmp_path: Path) -> None:
    assert _catalog(tmp_path / "missing").names() == []


def test_delete_removes_artifact(tmp_path: Path) -> None:
    (tmp_path / "a.bin").write_bytes(b"x")
    catalog = _catalog(tmp_path)

    catalog.delete("a.bin")

    assert catalog.names() == []


@pytest.mark.parametrize("file_name", ["missing.bin", "../etc/passwd", "a.bin_0.tmp", ""])
def test_delete_unknown_reports_not_found(tmp_path: Path, file_name: str) -> None:
    (tmp_path / "a.bin_0.tmp").write_bytes(b"slot")

    with pytest.raises(NotFound) as exc_info:
        _catalog(tmp_path).delete(file_name)

    assert exc_info.value.status_code == 404
    assert (tmp_path / "a.bin_0.tmp").exists()


def test_resolve_returns_artifact_path(tmp_path: Path) -> None:
    (tmp_path / "report.pdf").write_bytes(b"%PDF")

    assert _catalog(tmp_path).resolve("report.pdf") == tmp_path / "report.pdf"


@pytest.mark.parametrize(
    ("file_name", "expected"),
    [
        ("notes.txt", "text/plain"),
        ("photo.jpeg", "image/jpeg"),
        ("clip.mkv", "video/mkv"),
        ("song.mp3", "audio/mp3"),
        ("report.pdf", "application/pdf"),
        ("sheet.xlsx", "application/vnd.ms-excel"),
        ("archive.gz", "application/x-tar"),
        ("index.htm", "text/html"),
        ("noext", "application/octet-stream"),
        ("NOTES.TXT", "application/octet-stream"),
    ],
)
def test_media_type_table(file_name: str, expected: str) -> None:
    assert media_type(file_name) == expected


def test_previewable_types() -> None:
    assert is_previewable("text/plain")
    assert is_previewable("image/png")
    assert is_previewable("video/mp4")
    assert not is_previewable("text/html")
    assert not is_previewable("application/pdf")
