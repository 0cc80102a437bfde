"""Tests for on-disk record files and the git-backed page store."""

import shutil
from pathlib import Path

import pytest
from pydantic import ValidationError

import file_store
from file_store import GitRepository, InvalidPageName, PageFiles, RecordFile, _write_json
from schemas import Book, BookUpdate


def _book(book_id: str) -> Book:
    return Book(
        id=book_id,
        title="Dune",
        authors=["Frank Herbert"],
        publisher="Chilton",
        publish_year=1965,
        quantity=1,
        created_at="2024-01-01T00:00:00.000Z",
    )


def test_record_file_missing_or_corrupt_reads_empty(tmp_path: Path) -> None:
    records = RecordFile(tmp_path / "books.json", Book)
    assert records.all() == []

    records.path.write_text("{not json", encoding="utf-8")
    assert records.all() == []


def test_record_file_add_update_delete(tmp_path: Path) -> None:
    records = RecordFile(tmp_path / "books.json", Book)
    records.add(_book("a"))
    records.add(_book("b"))

    updated = records.update("a", BookUpdate(quantity=4))
    assert updated is not None and updated.quantity == 4
    assert records.update("zzz", BookUpdate(quantity=4)) is None

    records.delete("b")
    assert [b.id for b in records.all()] == ["a"]
    assert records.get("a").quantity == 4
    assert not (tmp_path / "books.json.tmp").exists()


def test_page_names_are_validated(tmp_path: Path) -> None:
    pages = PageFiles(tmp_path, GitRepository(tmp_path))
    assert pages.path_for("donationRequests") == tmp_path / "donationRequests.json"
    assert pages.path_for("v1.2") == tmp_path / "v1.2.json"
    for bad in ("", ".", "..", "../etc", "a/b", ".git"):
        with pytest.raises(InvalidPageName):
            pages.path_for(bad)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_repository_is_initialized_once(tmp_path: Path) -> None:
    repo = GitRepository(tmp_path / "repo")
    repo.ensure_initialized()
    assert (tmp_path / "repo" / ".git").is_dir()
    # a second call leaves the existing repository alone
    repo.ensure_initialized()
    assert (tmp_path / "repo" / ".git").is_dir()


def test_record_file_update_rejects_invalid_merge(tmp_path: Path) -> None:
    records = RecordFile(tmp_path / "books.json", Book)
    records.add(_book("a"))
    before = records.path.read_bytes()

    with pytest.raises(ValidationError):
        records.update("a", BookUpdate(quantity=None, title=None))

    assert records.path.read_bytes() == before
    assert records.get("a").quantity == 1


def test_failed_json_write_leaves_no_temp_file(tmp_path: Path, monkeypatch) -> None:
    target = tmp_path / "page1.json"
    target.write_text('{"v": 1}', encoding="utf-8")

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(file_store.os, "replace", fail_replace)
    with pytest.raises(OSError, match="disk full"):
        _write_json(target, {"v": 2})

    assert target.read_text(encoding="utf-8") == '{"v": 1}'
    assert list(tmp_path.glob("*.tmp")) == []


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_unchanged_page_write_adds_no_commit(tmp_path: Path) -> None:
    repo = GitRepository(tmp_path)
    repo.ensure_initialized()
    pages = PageFiles(tmp_path, repo)

    pages.write("page1", {"v": 1})
    pages.write("page1", {"v": 1})
    assert len(repo.history(pages.path_for("page1"))) == 1

    pages.write("page1", {"v": 2})
    assert len(repo.history(pages.path_for("page1"))) == 2
