from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from .chapters import Chapter
from .ingest import Document, read_document
from .library import BookInfo, Library
from .logging_utils import debug_log
from .reconcile import (
    PositionReconciler,
    ReadingPosition,
    ReconcilePolicy,
    Scheduler,
    ThreadingScheduler,
    Viewport,
)
from .settings import ReaderSettings, SettingsStore
from .spacing import display_to_source_line, render


class NoOpenDocumentError(RuntimeError):
    """Raised when a navigation call arrives while no document is open."""


class ReaderSession:
    """The currently open book: its parsed document, display text and position.

    Opening a book parses it on a worker thread; a newer open supersedes an
    older one still in flight. Only one document is open at a time.
    """

    def __init__(
        self,
        library: Library,
        settings_store: SettingsStore,
        viewport_factory: Callable[[Document], Viewport],
        *,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] | None = None,
        policy: ReconcilePolicy | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.library = library
        self.settings_store = settings_store
        self._viewport_factory = viewport_factory
        self._owns_scheduler = scheduler is None
        self._scheduler: Scheduler = scheduler or ThreadingScheduler()
        self._clock = clock
        self._policy = policy
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="txtnav-parse")
        self._lock = threading.RLock()
        self._open_token = 0
        self._settings = settings_store.load()
        self._book: BookInfo | None = None
        self._document: Document | None = None
        self._viewport: Viewport | None = None
        self._reconciler: PositionReconciler | None = None
        self._display_cache: tuple[float, str] | None = None

    @property
    def settings(self) -> ReaderSettings:
        return self._settings

    @property
    def book(self) -> BookInfo | None:
        return self._book

    @property
    def document(self) -> Document | None:
        return self._document

    @property
    def viewport(self) -> Viewport | None:
        return self._viewport

    @property
    def reconciler(self) -> PositionReconciler:
        with self._lock:
            if self._reconciler is None:
                raise NoOpenDocumentError("No document is open.")
            return self._reconciler

    def open_async(self, book_id: str) -> Future[Document]:
        with self._lock:
            book = self.library.get_book(book_id)
            path = self.library.get_document_path(book_id)
            self._close_document()
            self._open_token += 1
            token = self._open_token
        return self._executor.submit(self._load, token, book, path)

    def open(self, book_id: str) -> Document:
        return self.open_async(book_id).result()

    def _load(self, token: int, book: BookInfo, path: Path) -> Document:
        document = read_document(path, book.title)
        with self._lock:
            if token != self._open_token:
                debug_log(f"discarding superseded parse of {book.title!r}")
                return document
            # progress may have moved since the open was requested
            book = self.library.get_book(book.id)
            viewport = self._viewport_factory(document)
            book_id = book.id
            reconciler = PositionReconciler(
                document.chapters,
                document.line_count,
                viewport,
                lambda line: self.library.update_progress(book_id, line),
                scheduler=self._scheduler,
                clock=self._clock,
                policy=self._policy,
            )
            self._book = book
            self._document = document
            self._viewport = viewport
            self._reconciler = reconciler
            self._display_cache = None
            restore_line = book.last_read_line
        # The first jump runs outside the session lock. A close or newer open
        # in between has already closed this reconciler.
        reconciler.open(restore_line)
        return document

    def close(self) -> None:
        with self._lock:
            self._open_token += 1
            self._close_document()

    def shutdown(self) -> None:
        self.close()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _close_document(self) -> None:
        if self._reconciler is not None:
            self._reconciler.close()
        if self._owns_scheduler and isinstance(self._scheduler, ThreadingScheduler):
            self._scheduler.cancel_all()
        self._book = None
        self._document = None
        self._viewport = None
        self._reconciler = None
        self._display_cache = None

    def display_text(self) -> str:
        with self._lock:
            if self._document is None:
                return ""
            spacing = self._settings.paragraph_spacing
            if self._display_cache is None or self._display_cache[0] != spacing:
                self._display_cache = (spacing, render(self._document.lines, spacing))
            return self._display_cache[1]

    def reload_settings(self) -> ReaderSettings:
        with self._lock:
            self._settings = self.settings_store.load()
            return self._settings

    def update_settings(self, settings: ReaderSettings) -> ReaderSettings:
        with self._lock:
            self.settings_store.save(settings)
            self._settings = settings
            return settings

    def set_paragraph_spacing(self, spacing: float) -> str:
        with self._lock:
            self.update_settings(self._settings.updated({"paragraph_spacing": float(spacing)}))
            return self.display_text()

    def on_visible_line(self, line: int, *, display: bool = False) -> bool:
        with self._lock:
            if display:
                line = display_to_source_line(line, self._settings.paragraph_spacing)
            return self.reconciler.on_visible_line(line)

    def position(self) -> ReadingPosition:
        return self.reconciler.position

    def current_chapter(self) -> Chapter:
        return self.reconciler.current_chapter

    def go_to_chapter(self, ordinal: int) -> ReadingPosition:
        return self.reconciler.go_to_chapter(ordinal)

    def select_toc_entry(self, ordinal: int) -> ReadingPosition:
        return self.reconciler.select_toc_entry(ordinal)

    def next_chapter(self) -> ReadingPosition:
        return self.reconciler.next_chapter()

    def previous_chapter(self) -> ReadingPosition:
        return self.reconciler.previous_chapter()
