from __future__ import annotations

import json
import time
from pathlib import Path

import pytest
from fastapi import HTTPException

from txtnav.reconcile import JumpResult
from txtnav.web import RemoteViewport, WebConfig, create_app


def _find_route(app, path: str, method: str):
    method = method.upper()
    for route in app.router.routes:
        if getattr(route, "path", None) == path and method in getattr(route, "methods", set()):
            return route.endpoint
    raise RuntimeError(f"Route {method} {path} not found")


def _body(response) -> dict:
    return json.loads(response.body)


@pytest.fixture()
def app(tmp_path: Path):
    app = create_app(WebConfig(root=tmp_path / "lib", max_retries=200, retry_delay=0.01))
    yield app
    app.state.session.shutdown()


def _import(app, tmp_path: Path) -> str:
    source = tmp_path / "三体.txt"
    lines = ["第一章 科学边界"] + [f"内容 {i}" for i in range(9)] + ["第二章 台球"] + [f"内容 {i}" for i in range(9)]
    source.write_text("\n".join(lines), encoding="utf-8")
    response = _find_route(app, "/api/books", "POST")({"path": str(source)})
    assert response.status_code == 201
    return _body(response)["book"]["id"]


def _wait_for_tracking(app, book_id: str) -> list[int]:
    """Poll like a browser: scroll to each requested jump and report it."""
    position_route = _find_route(app, "/api/books/{book_id}/position", "GET")
    visible = _find_route(app, "/api/books/{book_id}/visible-line", "POST")
    jumps: list[int] = []
    deadline = time.monotonic() + 3.0
    while time.monotonic() < deadline:
        payload = _body(position_route(book_id))
        if payload["state"] == "tracking":
            return jumps
        if payload["jump_to"] is not None:
            jumps.append(payload["jump_to"])
            visible(book_id, {"line": payload["jump_to"]})
        time.sleep(0.01)
    raise AssertionError("restore did not finish")


def test_remote_viewport_waits_for_layout_and_landing() -> None:
    viewport = RemoteViewport()
    assert viewport.jump_to_line(0) is JumpResult.NOT_READY
    assert viewport.take_pending_jump() is None

    viewport.report_layout(10)
    assert viewport.jump_to_line(12) is JumpResult.NOT_READY
    assert viewport.jump_to_line(4) is JumpResult.NOT_READY
    assert viewport.take_pending_jump() == 4
    assert viewport.take_pending_jump() is None

    viewport.report_visible_line(0)
    assert viewport.jump_to_line(4) is JumpResult.NOT_READY
    assert viewport.take_pending_jump() is None
    viewport.report_visible_line(4)
    assert viewport.jump_to_line(4) is JumpResult.ACCEPTED


def test_remote_viewport_new_target_replaces_pending_jump() -> None:
    viewport = RemoteViewport()
    viewport.report_layout(10)
    viewport.jump_to_line(4)
    viewport.report_visible_line(4)
    assert viewport.jump_to_line(7) is JumpResult.NOT_READY
    assert viewport.take_pending_jump() == 7
    assert viewport.jump_to_line(7) is JumpResult.NOT_READY


def test_reading_flow(app, tmp_path: Path) -> None:
    book_id = _import(app, tmp_path)
    books = _body(_find_route(app, "/api/books", "GET")())["books"]
    assert [book["title"] for book in books] == ["三体"]

    opened = _body(_find_route(app, "/api/books/{book_id}/open", "POST")(book_id))
    assert opened["line_count"] == 20
    assert [chapter["start_line"] for chapter in opened["chapters"]] == [0, 10]
    assert opened["position"]["state"] == "initializing"

    _find_route(app, "/api/books/{book_id}/layout", "POST")(book_id, {"line_count": 20})
    jumps = _wait_for_tracking(app, book_id)
    assert 0 in jumps

    visible = _find_route(app, "/api/books/{book_id}/visible-line", "POST")
    payload = _body(visible(book_id, {"line": 12}))
    assert payload["accepted"] is True
    assert payload["chapter"] == 1
    assert payload["chapter_title"] == "第二章 台球"
    assert _body(visible(book_id, {"line": 13}))["accepted"] is False

    chapter = _find_route(app, "/api/books/{book_id}/chapter", "POST")
    payload = _body(chapter(book_id, {"direction": "previous"}))
    assert payload["line"] == 0
    assert payload["chapter"] == 0
    stored = app.state.library.get_book(book_id)
    assert stored.last_read_line == 0


def test_text_endpoint_renders_spacing(app, tmp_path: Path) -> None:
    book_id = _import(app, tmp_path)
    _find_route(app, "/api/books/{book_id}/open", "POST")(book_id)
    text_route = _find_route(app, "/api/books/{book_id}/text", "GET")

    plain = text_route(book_id, spacing=None).body.decode("utf-8")
    spaced = text_route(book_id, spacing=1.0).body.decode("utf-8")

    assert plain.startswith("第一章 科学边界\n内容 0")
    assert spaced.startswith("第一章 科学边界\n\n内容 0")

    _find_route(app, "/api/settings", "PUT")({"paragraph_spacing": 2})
    stored = text_route(book_id, spacing=None).body.decode("utf-8")
    assert stored.startswith("第一章 科学边界\n\n\n内容 0")


def test_errors(app, tmp_path: Path) -> None:
    open_route = _find_route(app, "/api/books/{book_id}/open", "POST")
    with pytest.raises(HTTPException) as excinfo:
        open_route("missing")
    assert excinfo.value.status_code == 404

    book_id = _import(app, tmp_path)
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/books/{book_id}/position", "GET")(book_id)
    assert excinfo.value.status_code == 409

    open_route(book_id)
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/books/{book_id}/visible-line", "POST")(book_id, {"line": "x"})
    assert excinfo.value.status_code == 400
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/books/{book_id}/chapter", "POST")(book_id, {"direction": "up"})
    assert excinfo.value.status_code == 400
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/books", "POST")({"path": str(tmp_path / "missing.txt")})
    assert excinfo.value.status_code == 400


def test_delete_open_book(app, tmp_path: Path) -> None:
    book_id = _import(app, tmp_path)
    _find_route(app, "/api/books/{book_id}/open", "POST")(book_id)

    payload = _body(_find_route(app, "/api/books/{book_id}", "DELETE")(book_id))

    assert payload == {"deleted": True, "book": book_id}
    assert app.state.session.document is None
    assert _body(_find_route(app, "/api/books", "GET")())["books"] == []


def _poll_position(app, book_id: str, done) -> dict:
    position_route = _find_route(app, "/api/books/{book_id}/position", "GET")
    deadline = time.monotonic() + 3.0
    while time.monotonic() < deadline:
        payload = _body(position_route(book_id))
        if done(payload):
            return payload
        time.sleep(0.01)
    raise AssertionError("position never reached the expected state")


def test_scroll_reports_before_the_jump_lands_keep_restored_line(app, tmp_path: Path) -> None:
    source = tmp_path / "长篇.txt"
    source.write_text("\n".join(f"第{i + 1}章 标题" for i in range(42)), encoding="utf-8")
    book_id = _body(_find_route(app, "/api/books", "POST")({"path": str(source)}))["book"]["id"]
    app.state.library.update_progress(book_id, 30)
    visible = _find_route(app, "/api/books/{book_id}/visible-line", "POST")

    _find_route(app, "/api/books/{book_id}/open", "POST")(book_id)
    _find_route(app, "/api/books/{book_id}/layout", "POST")(book_id, {"line_count": 42})
    assert _body(visible(book_id, {"line": 0}))["accepted"] is False

    requested = _poll_position(app, book_id, lambda payload: payload["jump_to"] is not None)
    assert requested["jump_to"] == 30
    stale = _body(visible(book_id, {"line": 0}))
    assert stale["accepted"] is False
    assert stale["state"] == "initializing"
    assert stale["line"] == 30
    assert app.state.library.get_book(book_id).last_read_line == 30

    assert _body(visible(book_id, {"line": 30}))["accepted"] is False
    settled = _poll_position(app, book_id, lambda payload: payload["state"] == "tracking")
    assert settled["line"] == 30
    assert app.state.library.get_book(book_id).last_read_line == 30

    assert _body(visible(book_id, {"line": 31}))["accepted"] is True
    assert app.state.library.get_book(book_id).last_read_line == 31


def test_non_finite_spacing_is_rejected(app, tmp_path: Path) -> None:
    book_id = _import(app, tmp_path)
    _find_route(app, "/api/books/{book_id}/open", "POST")(book_id)
    text_route = _find_route(app, "/api/books/{book_id}/text", "GET")
    settings_route = _find_route(app, "/api/settings", "PUT")

    with pytest.raises(HTTPException) as excinfo:
        text_route(book_id, spacing=float("nan"))
    assert excinfo.value.status_code == 400

    settings_route({"paragraph_spacing": 1})
    stored = _body(settings_route({"paragraph_spacing": float("inf")}))
    assert stored["paragraph_spacing"] == 1.0
    assert text_route(book_id, spacing=None).body.decode("utf-8").startswith("第一章 科学边界\n\n内容 0")


def test_chapter_search_keeps_original_ordinals(app, tmp_path: Path) -> None:
    book_id = _import(app, tmp_path)
    _find_route(app, "/api/books/{book_id}/open", "POST")(book_id)
    chapters_route = _find_route(app, "/api/books/{book_id}/chapters", "GET")

    everything = _body(chapters_route(book_id, q=None))
    assert [chapter["index"] for chapter in everything["chapters"]] == [0, 1]
    assert everything["current"] == 0

    found = _body(chapters_route(book_id, q="台球"))
    assert found["chapters"] == [{"index": 1, "title": "第二章 台球", "start_line": 10}]
    assert _body(chapters_route(book_id, q="三体"))["chapters"] == []

    chapter = _find_route(app, "/api/books/{book_id}/chapter", "POST")
    payload = _body(chapter(book_id, {"ordinal": found["chapters"][0]["index"]}))
    assert payload["line"] == 10
    assert payload["chapter_title"] == "第二章 台球"
