from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence

_CN_NUMERALS = "零一二三四五六七八九十百千万"
_CN_UNITS = "章节回卷部集篇"

# Ordered heading catalog. Each pattern is matched against the start of a
# trimmed line; the first family that matches names the heading kind.
HEADING_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("numbered", re.compile(rf"第[{_CN_NUMERALS}0-9]+[{_CN_UNITS}]\s*.*", re.IGNORECASE)),
    ("western", re.compile(r"chapter\s*\d+.*", re.IGNORECASE)),
    ("bracketed", re.compile(r"【\s*\d+\s*】.*", re.IGNORECASE)),
    ("main-text", re.compile(r"正文\s*第.*", re.IGNORECASE)),
    ("preface", re.compile(r"(?:序[章言幕]?|楔子).*", re.IGNORECASE)),
    ("epilogue", re.compile(r"尾声.*", re.IGNORECASE)),
    ("extra", re.compile(r"番外.*", re.IGNORECASE)),
)


@dataclass(frozen=True)
class Chapter:
    title: str
    start_line: int
    index: int


class ChapterIndex(Sequence[Chapter]):
    """Immutable, non-empty list of chapters ordered by start line."""

    __slots__ = ("_chapters", "_starts")

    def __init__(self, chapters: Iterable[Chapter]) -> None:
        items = tuple(chapters)
        if not items:
            raise ValueError("A chapter index needs at least one chapter.")
        previous = -1
        for position, chapter in enumerate(items):
            if chapter.index != position:
                raise ValueError(
                    f"Chapter {chapter.title!r} has index {chapter.index}, expected {position}."
                )
            if chapter.start_line < 0 or chapter.start_line <= previous:
                raise ValueError("Chapter start lines must be non-negative and strictly increasing.")
            previous = chapter.start_line
        self._chapters = items
        self._starts = tuple(chapter.start_line for chapter in items)

    def __getitem__(self, item):  # type: ignore[override]
        return self._chapters[item]

    def __len__(self) -> int:
        return len(self._chapters)

    def __iter__(self) -> Iterator[Chapter]:
        return iter(self._chapters)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ChapterIndex):
            return self._chapters == other._chapters
        if isinstance(other, (list, tuple)):
            return list(self._chapters) == list(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._chapters)

    def __repr__(self) -> str:
        return f"ChapterIndex({list(self._chapters)!r})"

    @property
    def start_lines(self) -> tuple[int, ...]:
        return self._starts

    def titles(self) -> list[str]:
        return [chapter.title for chapter in self._chapters]

    def to_payload(self) -> list[dict[str, object]]:
        return [
            {"index": chapter.index, "title": chapter.title, "start_line": chapter.start_line}
            for chapter in self._chapters
        ]


def heading_kind(line: str) -> str | None:
    """Return the catalog family a line belongs to, or None for body text."""
    candidate = line.strip()
    if not candidate:
        return None
    for kind, pattern in HEADING_PATTERNS:
        if pattern.match(candidate):
            return kind
    return None


def is_heading(line: str) -> bool:
    return heading_kind(line) is not None


def segment(lines: Sequence[str], fallback_title: str) -> ChapterIndex:
    chapters: list[Chapter] = []
    for line_no, line in enumerate(lines):
        if heading_kind(line) is None:
            continue
        chapters.append(Chapter(title=line.strip(), start_line=line_no, index=len(chapters)))
    if not chapters:
        chapters.append(Chapter(title=fallback_title, start_line=0, index=0))
    return ChapterIndex(chapters)
