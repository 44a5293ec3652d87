from __future__ import annotations

from bisect import bisect_right

from .chapters import Chapter, ChapterIndex


def chapter_at(index: ChapterIndex, line: int) -> int:
    """Ordinal of the chapter containing ``line``.

    Lines before the first heading belong to chapter 0.
    """
    position = bisect_right(index.start_lines, line) - 1
    return max(position, 0)


def start_line_of(index: ChapterIndex, ordinal: int) -> int:
    if ordinal < 0 or ordinal >= len(index):
        raise IndexError(f"Chapter ordinal {ordinal} out of range (0..{len(index) - 1}).")
    return index[ordinal].start_line


def clamp_ordinal(index: ChapterIndex, ordinal: int) -> int:
    return min(max(ordinal, 0), len(index) - 1)


def next_ordinal(index: ChapterIndex, ordinal: int) -> int:
    return clamp_ordinal(index, ordinal + 1)


def previous_ordinal(index: ChapterIndex, ordinal: int) -> int:
    return clamp_ordinal(index, ordinal - 1)


def filter_chapters(index: ChapterIndex, query: str | None) -> list[Chapter]:
    """Chapters whose title contains ``query``, ignoring case.

    A blank query keeps every chapter. Matches keep their original ``index``
    so a picked entry can be passed straight to chapter navigation.
    """
    if query is None or not query.strip():
        return list(index)
    needle = query.casefold()
    return [chapter for chapter in index if needle in chapter.title.casefold()]
