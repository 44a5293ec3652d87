from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .chapters import ChapterIndex, segment
from .logging_utils import debug_log

_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")

_BOMS: tuple[tuple[bytes, str, str], ...] = (
    (b"\xef\xbb\xbf", "utf-8", "utf-8-sig"),
    (b"\xff\xfe", "utf-16-le", "utf-16-le"),
    (b"\xfe\xff", "utf-16-be", "utf-16-be"),
)

LEGACY_CJK_ENCODING = "gbk"


@dataclass(frozen=True)
class DecodedText:
    text: str
    encoding: str


@dataclass(frozen=True)
class Document:
    """One opened plain-text book: decoded text, its lines and chapter index."""

    title: str
    text: str
    encoding: str
    lines: tuple[str, ...]
    chapters: ChapterIndex

    @property
    def line_count(self) -> int:
        return len(self.lines)


def _contains_cjk_ideograph(text: str) -> bool:
    return any(0x4E00 <= ord(ch) <= 0x9FFF for ch in text)


def _decode_with_bom(data: bytes) -> DecodedText | None:
    for bom, codec, label in _BOMS:
        if data.startswith(bom):
            return DecodedText(data[len(bom) :].decode(codec, errors="replace"), label)
    return None


def _decode_cjk_utf8(data: bytes) -> DecodedText | None:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if not _contains_cjk_ideograph(text):
        return None
    return DecodedText(text, "utf-8")


def _decode_legacy_cjk(data: bytes) -> DecodedText | None:
    try:
        return DecodedText(data.decode(LEGACY_CJK_ENCODING), LEGACY_CJK_ENCODING)
    except UnicodeDecodeError:
        return None


def _decode_lossy_utf8(data: bytes) -> DecodedText | None:
    return DecodedText(data.decode("utf-8", errors="replace"), "utf-8")


# Tried in order; the first attempt returning a value wins. The last one
# always succeeds.
DECODE_CHAIN: tuple[Callable[[bytes], DecodedText | None], ...] = (
    _decode_with_bom,
    _decode_cjk_utf8,
    _decode_legacy_cjk,
    _decode_lossy_utf8,
)


def decode_text(data: bytes) -> DecodedText:
    for attempt in DECODE_CHAIN:
        decoded = attempt(data)
        if decoded is not None:
            return decoded
    # unreachable: the lossy attempt never declines
    return DecodedText(data.decode("utf-8", errors="replace"), "utf-8")


def split_lines(text: str) -> tuple[str, ...]:
    """Split on CRLF, CR or LF alike, keeping empty lines.

    A text without line breaks (including the empty string) is one line.
    """
    return tuple(_LINE_BREAK_RE.split(text))


def decode(data: bytes) -> tuple[DecodedText, tuple[str, ...]]:
    decoded = decode_text(bytes(data))
    lines = split_lines(decoded.text)
    debug_log(f"decoded {len(data)} bytes as {decoded.encoding} ({len(lines)} lines)")
    return decoded, lines


def parse_document(data: bytes, title: str) -> Document:
    decoded, lines = decode(data)
    chapters = segment(lines, title)
    debug_log(f"{title!r}: {len(chapters)} chapter(s)")
    return Document(
        title=title,
        text=decoded.text,
        encoding=decoded.encoding,
        lines=lines,
        chapters=chapters,
    )


def read_document(path: Path | str, title: str | None = None) -> Document:
    """Read and parse a text file; I/O errors are left to the caller."""
    source = Path(path)
    data = source.read_bytes()
    return parse_document(data, title or source.stem)
