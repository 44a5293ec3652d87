from __future__ import annotations

import json
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

LIBRARY_FILENAME = "library.json"
BOOKS_DIRNAME = "books"
LIBRARY_ROOT_ENV = "TXTNAV_HOME"


class BookNotFoundError(KeyError):
    """Raised when a book id is not present in the library."""


def default_library_root() -> Path:
    override = os.getenv(LIBRARY_ROOT_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".txtnav"


@dataclass(slots=True)
class BookInfo:
    id: str
    title: str
    cached_file_name: str
    last_read_line: int = 0
    added_at: float = 0.0
    last_read_at: float = 0.0

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "cached_file_name": self.cached_file_name,
            "last_read_line": self.last_read_line,
            "added_at": self.added_at,
            "last_read_at": self.last_read_at,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "BookInfo | None":
        if not isinstance(payload, Mapping):
            return None
        book_id = payload.get("id")
        cached = payload.get("cached_file_name")
        if not isinstance(book_id, str) or not book_id.strip():
            return None
        if not isinstance(cached, str) or not cached.strip():
            return None
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            title = Path(cached).stem
        line = payload.get("last_read_line")
        added_at = payload.get("added_at")
        last_read_at = payload.get("last_read_at")
        return cls(
            id=book_id,
            title=title,
            cached_file_name=cached,
            last_read_line=line if isinstance(line, int) and not isinstance(line, bool) else 0,
            added_at=float(added_at) if isinstance(added_at, (int, float)) else 0.0,
            last_read_at=float(last_read_at) if isinstance(last_read_at, (int, float)) else 0.0,
        )


class Library:
    """Book list stored as ``library.json`` with cached copies under ``books/``."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.books_dir = root / BOOKS_DIRNAME
        self.library_path = root / LIBRARY_FILENAME
        self.lock = threading.Lock()
        self.books_dir.mkdir(parents=True, exist_ok=True)
        self._books = self._load()

    def list_books(self) -> list[BookInfo]:
        with self.lock:
            snapshot = list(self._books)
        snapshot.sort(key=lambda book: book.last_read_at, reverse=True)
        return snapshot

    def get_book(self, book_id: str) -> BookInfo:
        with self.lock:
            for book in self._books:
                if book.id == book_id:
                    return book
        raise BookNotFoundError(book_id)

    def get_document_path(self, book_id: str) -> Path:
        return self.books_dir / self.get_book(book_id).cached_file_name

    def import_book(self, source: Path, title: str | None = None) -> BookInfo:
        if not source.is_file():
            raise FileNotFoundError(f"Book file not found: {source}")
        book_id = uuid.uuid4().hex
        file_name = f"{book_id}.txt"
        shutil.copyfile(source, self.books_dir / file_name)
        now = time.time()
        book = BookInfo(
            id=book_id,
            title=(title or source.stem).strip() or book_id,
            cached_file_name=file_name,
            last_read_line=0,
            added_at=now,
            last_read_at=now,
        )
        with self.lock:
            self._books.append(book)
            self._save()
        return book

    def update_progress(self, book_id: str, line: int) -> None:
        with self.lock:
            for book in self._books:
                if book.id == book_id:
                    book.last_read_line = max(0, int(line))
                    book.last_read_at = time.time()
                    self._save()
                    return

    def delete_book(self, book_id: str) -> bool:
        with self.lock:
            for book in self._books:
                if book.id != book_id:
                    continue
                cached = self.books_dir / book.cached_file_name
                try:
                    cached.unlink()
                except FileNotFoundError:
                    pass
                self._books.remove(book)
                self._save()
                return True
        return False

    def _load(self) -> list[BookInfo]:
        try:
            raw = json.loads(self.library_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return []
        if not isinstance(raw, list):
            return []
        books: list[BookInfo] = []
        seen: set[str] = set()
        for entry in raw:
            book = BookInfo.from_payload(entry)
            if book is None or book.id in seen:
                continue
            seen.add(book.id)
            books.append(book)
        return books

    def _save(self) -> None:
        payload = [book.to_payload() for book in self._books]
        self.library_path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
