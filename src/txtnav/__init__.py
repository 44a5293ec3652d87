from .chapters import Chapter, ChapterIndex, segment
from .ingest import DecodedText, Document, decode, parse_document, read_document
from .navigation import chapter_at, start_line_of
from .reconcile import (
    JumpResult,
    PositionReconciler,
    ReadingPosition,
    ReconcilePolicy,
)
from .spacing import render

__all__ = [
    "Chapter",
    "ChapterIndex",
    "segment",
    "DecodedText",
    "Document",
    "decode",
    "parse_document",
    "read_document",
    "chapter_at",
    "start_line_of",
    "JumpResult",
    "PositionReconciler",
    "ReadingPosition",
    "ReconcilePolicy",
    "render",
]
