from __future__ import annotations

import argparse
import math
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.table import Table

from .chapters import heading_kind
from .ingest import Document, read_document
from .library import BookNotFoundError, Library, default_library_root
from .logging_utils import build_uvicorn_log_config, set_debug_logging
from .navigation import filter_chapters
from .spacing import render
from .web import WebConfig, create_app


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover - installed without a source tree
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("txtnav")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"txtnav {__version__}",
    )


def _add_debug_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print debug logging (encoding choice, restore retries).",
    )


def _add_root_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--root",
        help="Library directory (default: $TXTNAV_HOME or ~/.txtnav).",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description=(
            "Plain-text book reader tools. Subcommands: info, toc, render, add, list, remove, web."
        ),
    )
    _add_version_flag(ap)
    _add_debug_flag(ap)
    ap.add_argument("input_path", help="Path to a .txt file to summarize")
    return ap


def build_toc_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="List detected chapters of a text file.")
    _add_version_flag(ap)
    _add_debug_flag(ap)
    ap.add_argument("input_path", help="Path to a .txt file")
    ap.add_argument(
        "-f",
        "--filter",
        help="Only list chapters whose title contains this text (case-insensitive).",
    )
    return ap


def build_render_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Print a text file as the reader displays it, with paragraph spacing.",
    )
    _add_version_flag(ap)
    _add_debug_flag(ap)
    ap.add_argument("input_path", help="Path to a .txt file")
    ap.add_argument(
        "-s",
        "--spacing",
        type=float,
        default=0.0,
        help="Paragraph spacing; values >= 0.5 insert floor(spacing) blank lines (default: 0).",
    )
    ap.add_argument(
        "--chapter",
        type=int,
        help="Only print this chapter (1-based).",
    )
    return ap


def build_add_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Copy a text file into the library.")
    _add_version_flag(ap)
    _add_root_flag(ap)
    ap.add_argument("input_path", help="Path to a .txt file")
    ap.add_argument("--title", help="Title to store (default: file name)")
    return ap


def build_list_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="List books in the library, most recently read first.")
    _add_version_flag(ap)
    _add_root_flag(ap)
    return ap


def build_remove_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Remove a book from the library.")
    _add_version_flag(ap)
    _add_root_flag(ap)
    ap.add_argument("book_id", help="Book id as shown by `txtnav list`")
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Serve the library over HTTP for a browser reader.")
    _add_version_flag(ap)
    _add_debug_flag(ap)
    _add_root_flag(ap)
    ap.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the web server (default: 127.0.0.1).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=2468,
        help="Port for the web server (default: 2468).",
    )
    return ap


def _resolve_root(value: str | None) -> Path:
    if value:
        return Path(value).expanduser().resolve()
    return default_library_root().resolve()


def _load_input(value: str) -> Document:
    path = Path(value).expanduser()
    if not path.is_file():
        raise SystemExit(f"Input file not found: {path}")
    try:
        return read_document(path)
    except OSError as exc:
        raise SystemExit(f"Failed to read {path}: {exc}") from exc


def _run_info(args: argparse.Namespace, console: Console) -> int:
    set_debug_logging(bool(args.debug))
    document = _load_input(args.input_path)
    console.print(f"[bold]{document.title}[/bold]")
    console.print(f"Encoding: {document.encoding}")
    console.print(f"Lines: {document.line_count:,}")
    console.print(f"Chapters: {len(document.chapters):,}")
    return 0


def _run_toc(args: argparse.Namespace, console: Console) -> int:
    set_debug_logging(bool(args.debug))
    document = _load_input(args.input_path)
    table = Table(title=document.title)
    table.add_column("#", justify="right")
    table.add_column("Line", justify="right")
    table.add_column("Kind")
    table.add_column("Title")
    for chapter in filter_chapters(document.chapters, args.filter):
        kind = heading_kind(chapter.title) or "whole book"
        table.add_row(str(chapter.index + 1), str(chapter.start_line + 1), kind, chapter.title)
    console.print(table)
    return 0


def _run_render(args: argparse.Namespace) -> int:
    set_debug_logging(bool(args.debug))
    if not math.isfinite(args.spacing):
        raise SystemExit(f"--spacing must be a finite number, got {args.spacing}.")
    document = _load_input(args.input_path)
    lines = document.lines
    if args.chapter is not None:
        total = len(document.chapters)
        if args.chapter < 1 or args.chapter > total:
            raise SystemExit(f"--chapter {args.chapter} out of range (1..{total}).")
        start = document.chapters[args.chapter - 1].start_line
        end = (
            document.chapters[args.chapter].start_line
            if args.chapter < total
            else document.line_count
        )
        lines = lines[start:end]
    sys.stdout.write(render(lines, args.spacing))
    sys.stdout.write("\n")
    return 0


def _run_add(args: argparse.Namespace, console: Console) -> int:
    library = Library(_resolve_root(args.root))
    source = Path(args.input_path).expanduser()
    try:
        book = library.import_book(source, title=args.title)
    except FileNotFoundError as exc:
        raise SystemExit(str(exc)) from exc
    console.print(f"Added [bold]{book.title}[/bold] ({book.id})")
    return 0


def _run_list(args: argparse.Namespace, console: Console) -> int:
    library = Library(_resolve_root(args.root))
    books = library.list_books()
    if not books:
        console.print(f"No books in {library.root}")
        return 0
    table = Table()
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("Last line", justify="right")
    for book in books:
        table.add_row(book.id, book.title, str(book.last_read_line + 1))
    console.print(table)
    return 0


def _run_remove(args: argparse.Namespace, console: Console) -> int:
    library = Library(_resolve_root(args.root))
    try:
        book = library.get_book(args.book_id)
    except BookNotFoundError as exc:
        raise SystemExit(f"Unknown book id: {args.book_id}") from exc
    library.delete_book(book.id)
    console.print(f"Removed {book.title}")
    return 0


def _run_web(args: argparse.Namespace) -> None:
    set_debug_logging(bool(args.debug))
    root = _resolve_root(args.root)
    app = create_app(WebConfig(root=root))
    print(f"Serving txtnav library from {root}")
    print(f"Web URL: http://{args.host}:{args.port}/")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if args.debug else "info",
        log_config=build_uvicorn_log_config(debug=bool(args.debug)),
    )


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    console = Console()

    if argv and argv[0] == "toc":
        return _run_toc(build_toc_parser().parse_args(argv[1:]), console)
    if argv and argv[0] == "render":
        return _run_render(build_render_parser().parse_args(argv[1:]))
    if argv and argv[0] == "add":
        return _run_add(build_add_parser().parse_args(argv[1:]), console)
    if argv and argv[0] in {"list", "ls"}:
        return _run_list(build_list_parser().parse_args(argv[1:]), console)
    if argv and argv[0] in {"remove", "rm"}:
        return _run_remove(build_remove_parser().parse_args(argv[1:]), console)
    if argv and argv[0] == "web":
        _run_web(build_web_parser().parse_args(argv[1:]))
        return 0
    if argv and argv[0] == "info":
        argv = argv[1:]

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    return _run_info(parser.parse_args(argv), console)


if __name__ == "__main__":
    raise SystemExit(main())
