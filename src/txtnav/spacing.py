from __future__ import annotations

import math
from typing import Sequence

SPACING_THRESHOLD = 0.5


def blank_lines_for(spacing: float) -> int:
    """Number of blank lines inserted between two source lines."""
    if spacing < SPACING_THRESHOLD:
        return 0
    return max(1, math.floor(spacing))


def display_stride(spacing: float) -> int:
    return blank_lines_for(spacing) + 1


def render(lines: Sequence[str], spacing: float) -> str:
    """Join source lines for display, padding paragraphs with blank lines.

    Below the threshold the source form is returned unchanged. No padding
    follows the final line.
    """
    separator = "\n" * display_stride(spacing)
    return separator.join(lines)


def source_to_display_line(line: int, spacing: float) -> int:
    return line * display_stride(spacing)


def display_to_source_line(display_line: int, spacing: float) -> int:
    # Blank padding lines belong to the paragraph above them.
    if display_line <= 0:
        return 0
    return display_line // display_stride(spacing)
