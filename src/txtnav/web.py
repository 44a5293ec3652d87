from __future__ import annotations

import math
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from .ingest import Document
from .library import BookInfo, BookNotFoundError, Library
from .navigation import filter_chapters
from .reconcile import JumpResult, ReconcilePolicy
from .session import NoOpenDocumentError, ReaderSession
from .settings import SETTINGS_FILENAME, SettingsStore
from .spacing import display_to_source_line, render, source_to_display_line


@dataclass(slots=True)
class WebConfig:
    root: Path
    settings_path: Path | None = None
    max_retries: int = 10
    retry_delay: float = 0.1
    debounce: float = 0.5


class RemoteViewport:
    """Viewport living in a browser that polls for jump requests.

    It is not ready until the client reports how many source lines it has
    laid out. A jump is handed to the client through ``take_pending_jump``
    and only counts as landed once the client reports that exact line as
    visible; until then every attempt answers NOT_READY, so the reconciler
    keeps dropping scroll feedback from the old position.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._line_count = 0
        self._pending_jump: int | None = None
        self._requested: int | None = None
        self._landed: int | None = None

    @property
    def line_count(self) -> int:
        with self._lock:
            return self._line_count

    def report_layout(self, line_count: int) -> None:
        with self._lock:
            self._line_count = max(0, line_count)

    def report_visible_line(self, line: int) -> None:
        with self._lock:
            self._landed = line if line == self._requested else None

    def jump_to_line(self, line: int) -> JumpResult:
        with self._lock:
            if line < 0 or line >= self._line_count:
                return JumpResult.NOT_READY
            if line == self._requested and line == self._landed:
                self._requested = None
                self._landed = None
                return JumpResult.ACCEPTED
            if line != self._requested:
                self._requested = line
                self._pending_jump = line
                self._landed = None
            return JumpResult.NOT_READY

    def take_pending_jump(self) -> int | None:
        with self._lock:
            line = self._pending_jump
            self._pending_jump = None
            return line


def _book_payload(book: BookInfo) -> dict[str, object]:
    return book.to_payload()


def _document_payload(document: Document) -> dict[str, object]:
    return {
        "title": document.title,
        "encoding": document.encoding,
        "line_count": document.line_count,
        "chapters": document.chapters.to_payload(),
    }


def _int_field(payload: dict[str, object], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise HTTPException(status_code=400, detail=f"'{key}' must be an integer.")
    return value


def create_app(config: WebConfig) -> FastAPI:
    root = config.root.expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    library = Library(root)
    settings_store = SettingsStore(config.settings_path or root / SETTINGS_FILENAME)
    settings_store.ensure_valid()
    policy = ReconcilePolicy(
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
        debounce=config.debounce,
    )
    session = ReaderSession(
        library,
        settings_store,
        lambda _document: RemoteViewport(),
        policy=policy,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        session.shutdown()

    app = FastAPI(title="txtnav Reader", lifespan=lifespan)
    app.state.library = library
    app.state.session = session

    def _require_book(book_id: str) -> BookInfo:
        try:
            return library.get_book(book_id)
        except BookNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Book not found") from exc

    def _require_open(book_id: str) -> ReaderSession:
        _require_book(book_id)
        current = session.book
        if current is None or current.id != book_id:
            raise HTTPException(status_code=409, detail="Book is not open")
        return session

    def _position_payload() -> dict[str, object]:
        try:
            reconciler = session.reconciler
        except NoOpenDocumentError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        position = reconciler.position
        spacing = session.settings.paragraph_spacing
        pending = None
        viewport = session.viewport
        if isinstance(viewport, RemoteViewport):
            pending = viewport.take_pending_jump()
        return {
            "line": position.line,
            "display_line": source_to_display_line(position.line, spacing),
            "chapter": position.chapter,
            "chapter_title": reconciler.current_chapter_title,
            "state": reconciler.state.name,
            "jump_to": pending,
            "jump_to_display": (
                source_to_display_line(pending, spacing) if pending is not None else None
            ),
        }

    @app.get("/api/books")
    def api_books() -> JSONResponse:
        return JSONResponse({"books": [_book_payload(book) for book in library.list_books()]})

    @app.post("/api/books")
    def api_import_book(payload: dict[str, object] = Body(...)) -> JSONResponse:
        raw_path = payload.get("path")
        if not isinstance(raw_path, str) or not raw_path.strip():
            raise HTTPException(status_code=400, detail="'path' is required.")
        title = payload.get("title")
        try:
            book = library.import_book(
                Path(raw_path).expanduser(),
                title=title if isinstance(title, str) else None,
            )
        except FileNotFoundError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"book": _book_payload(book)}, status_code=201)

    @app.delete("/api/books/{book_id}")
    def api_delete_book(book_id: str) -> JSONResponse:
        _require_book(book_id)
        current = session.book
        if current is not None and current.id == book_id:
            session.close()
        deleted = library.delete_book(book_id)
        return JSONResponse({"deleted": deleted, "book": book_id})

    @app.post("/api/books/{book_id}/open")
    def api_open_book(book_id: str) -> JSONResponse:
        _require_book(book_id)
        try:
            document = session.open(book_id)
        except OSError as exc:
            raise HTTPException(status_code=500, detail=f"Failed to read book: {exc}") from exc
        payload = _document_payload(document)
        payload["position"] = _position_payload()
        return JSONResponse(payload)

    @app.get("/api/books/{book_id}/text")
    def api_book_text(
        book_id: str,
        spacing: float | None = Query(None),
    ) -> PlainTextResponse:
        active = _require_open(book_id)
        if spacing is None:
            return PlainTextResponse(active.display_text())
        if not math.isfinite(spacing):
            raise HTTPException(status_code=400, detail="'spacing' must be a finite number.")
        document = active.document
        if document is None:
            raise HTTPException(status_code=409, detail="Book is not open")
        return PlainTextResponse(render(document.lines, spacing))

    @app.get("/api/books/{book_id}/chapters")
    def api_chapters(book_id: str, q: str | None = Query(None)) -> JSONResponse:
        active = _require_open(book_id)
        document = active.document
        if document is None:
            raise HTTPException(status_code=409, detail="Book is not open")
        matches = filter_chapters(document.chapters, q)
        return JSONResponse(
            {
                "query": q or "",
                "current": active.current_chapter().index,
                "chapters": [
                    {"index": chapter.index, "title": chapter.title, "start_line": chapter.start_line}
                    for chapter in matches
                ],
            }
        )

    @app.post("/api/books/{book_id}/layout")
    def api_layout(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        active = _require_open(book_id)
        line_count = _int_field(payload, "line_count")
        viewport = active.viewport
        if isinstance(viewport, RemoteViewport):
            viewport.report_layout(line_count)
        return JSONResponse({"line_count": line_count})

    @app.post("/api/books/{book_id}/visible-line")
    def api_visible_line(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        active = _require_open(book_id)
        line = _int_field(payload, "line")
        if payload.get("display"):
            line = display_to_source_line(line, active.settings.paragraph_spacing)
        viewport = active.viewport
        if isinstance(viewport, RemoteViewport):
            viewport.report_visible_line(line)
        accepted = active.on_visible_line(line)
        result = _position_payload()
        result["accepted"] = accepted
        return JSONResponse(result)

    @app.post("/api/books/{book_id}/chapter")
    def api_chapter(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        active = _require_open(book_id)
        direction = payload.get("direction")
        if direction == "next":
            active.next_chapter()
        elif direction == "previous":
            active.previous_chapter()
        elif direction is None:
            active.go_to_chapter(_int_field(payload, "ordinal"))
        else:
            raise HTTPException(status_code=400, detail="'direction' must be 'next' or 'previous'.")
        return JSONResponse(_position_payload())

    @app.get("/api/books/{book_id}/position")
    def api_position(book_id: str) -> JSONResponse:
        _require_open(book_id)
        return JSONResponse(_position_payload())

    @app.get("/api/settings")
    def api_settings() -> JSONResponse:
        return JSONResponse(session.reload_settings().as_payload())

    @app.put("/api/settings")
    def api_update_settings(payload: dict[str, object] = Body(...)) -> JSONResponse:
        settings = session.update_settings(session.settings.updated(payload))
        return JSONResponse(settings.as_payload())

    return app
