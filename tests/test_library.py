from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import pytest

import txtnav.library as library_module
from txtnav.library import BookNotFoundError, Library, default_library_root


def _write_book(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_import_copies_file_and_persists(tmp_path: Path) -> None:
    source = _write_book(tmp_path, "长篇小说.txt", "第一章 开始\n正文")
    library = Library(tmp_path / "lib")

    book = library.import_book(source)

    assert book.title == "长篇小说"
    assert book.last_read_line == 0
    cached = library.get_document_path(book.id)
    assert cached.read_text(encoding="utf-8") == "第一章 开始\n正文"
    payload = json.loads((tmp_path / "lib" / "library.json").read_text(encoding="utf-8"))
    assert payload[0]["id"] == book.id
    assert payload[0]["title"] == "长篇小说"

    reopened = Library(tmp_path / "lib")
    assert [entry.id for entry in reopened.list_books()] == [book.id]


def test_update_progress_orders_books_by_last_read(tmp_path: Path, monkeypatch) -> None:
    clock = {"now": 100.0}
    monkeypatch.setattr(library_module, "time", SimpleNamespace(time=lambda: clock["now"]))
    library = Library(tmp_path / "lib")
    first = library.import_book(_write_book(tmp_path, "a.txt", "a"))
    clock["now"] = 200.0
    second = library.import_book(_write_book(tmp_path, "b.txt", "b"))
    assert [book.id for book in library.list_books()] == [second.id, first.id]

    clock["now"] = 300.0
    library.update_progress(first.id, 42)

    books = library.list_books()
    assert [book.id for book in books] == [first.id, second.id]
    assert books[0].last_read_line == 42
    assert Library(tmp_path / "lib").get_book(first.id).last_read_line == 42


def test_update_progress_ignores_unknown_books(tmp_path: Path) -> None:
    library = Library(tmp_path / "lib")
    library.update_progress("missing", 3)
    assert library.list_books() == []


def test_unknown_book_raises(tmp_path: Path) -> None:
    library = Library(tmp_path / "lib")
    with pytest.raises(BookNotFoundError):
        library.get_document_path("nope")


def test_delete_book_removes_cached_copy(tmp_path: Path) -> None:
    library = Library(tmp_path / "lib")
    book = library.import_book(_write_book(tmp_path, "a.txt", "a"))
    cached = library.get_document_path(book.id)

    assert library.delete_book(book.id) is True
    assert not cached.exists()
    assert library.list_books() == []
    assert library.delete_book(book.id) is False


def test_corrupt_library_file_loads_empty(tmp_path: Path) -> None:
    root = tmp_path / "lib"
    root.mkdir()
    (root / "library.json").write_text("{not json", encoding="utf-8")
    assert Library(root).list_books() == []


def test_invalid_entries_are_skipped(tmp_path: Path) -> None:
    root = tmp_path / "lib"
    root.mkdir()
    entries = [
        {"id": "a", "title": "A", "cached_file_name": "a.txt", "last_read_line": 7},
        {"id": "a", "title": "dup", "cached_file_name": "dup.txt"},
        {"title": "no id", "cached_file_name": "x.txt"},
        {"id": "b", "cached_file_name": "b.txt", "last_read_line": "12"},
        "garbage",
    ]
    (root / "library.json").write_text(json.dumps(entries), encoding="utf-8")

    books = {book.id: book for book in Library(root).list_books()}

    assert set(books) == {"a", "b"}
    assert books["a"].last_read_line == 7
    assert books["b"].title == "b"
    assert books["b"].last_read_line == 0


def test_import_missing_file_raises(tmp_path: Path) -> None:
    library = Library(tmp_path / "lib")
    with pytest.raises(FileNotFoundError):
        library.import_book(tmp_path / "missing.txt")


def test_default_root_honours_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TXTNAV_HOME", str(tmp_path / "custom"))
    assert default_library_root() == tmp_path / "custom"
