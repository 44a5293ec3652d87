"""Reading-position reconciliation for one open document.

Three signals move the reading position: the line persisted from the last
session, chapter commands issued by the reader, and the line the viewport
reports while the reader scrolls. ``PositionReconciler`` merges them into a
single authoritative position.

Restoring a line (on open and after every chapter command) goes through
``InitializingScroll``: the viewport may not have laid out its text yet, so
jumps are retried a bounded number of times. Scroll feedback is ignored
until the jump has landed, then accepted at most once per debounce window.
Deferred callbacks carry the generation they were scheduled under and do
nothing once a newer command has bumped it.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, ClassVar, Protocol, Union

from .chapters import Chapter, ChapterIndex
from .logging_utils import debug_log
from .navigation import chapter_at, clamp_ordinal, next_ordinal, previous_ordinal


class JumpResult(Enum):
    ACCEPTED = "accepted"
    NOT_READY = "not_ready"


class Viewport(Protocol):
    @property
    def line_count(self) -> int: ...

    def jump_to_line(self, line: int) -> JumpResult: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> None: ...


class ThreadingScheduler:
    """Runs each deferred callback on its own ``threading.Timer``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: set[threading.Timer] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> None:
        timer: threading.Timer

        def _fire() -> None:
            with self._lock:
                self._timers.discard(timer)
            callback()

        timer = threading.Timer(max(0.0, delay), _fire)
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class ManualScheduler:
    """Scheduler with a virtual clock, advanced explicitly by the caller."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[tuple[float, int, Callable[[], None]]] = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        return len(self._queue)

    def call_later(self, delay: float, callback: Callable[[], None]) -> None:
        due = self._now + max(0.0, delay)
        heapq.heappush(self._queue, (due, next(self._counter), callback))

    def advance(self, seconds: float) -> int:
        deadline = self._now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= deadline:
            due, _, callback = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            callback()
            ran += 1
        self._now = max(self._now, deadline)
        return ran

    def run_until_idle(self, limit: int = 10_000) -> int:
        ran = 0
        while self._queue:
            if ran >= limit:
                raise RuntimeError("Scheduled callbacks did not settle.")
            due, _, callback = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            callback()
            ran += 1
        return ran


@dataclass(frozen=True)
class ReconcilePolicy:
    max_retries: int = 10
    retry_delay: float = 0.1
    debounce: float = 0.5
    # Extra tick between a landed jump and tracking, so the scroll event the
    # jump itself produces is not taken as reader input.
    settle_delay: float = 0.0


@dataclass
class ReadingPosition:
    line: int = 0
    chapter: int = 0


@dataclass(frozen=True)
class Idle:
    name: ClassVar[str] = "idle"


@dataclass(frozen=True)
class InitializingScroll:
    target: int
    retries_left: int
    name: ClassVar[str] = "initializing"


@dataclass(frozen=True)
class Tracking:
    last_accepted_at: float | None = None
    name: ClassVar[str] = "tracking"


ReconciliationState = Union[Idle, InitializingScroll, Tracking]


def clamp_restore_line(line: int | None, line_count: int) -> int:
    """Persisted lines outside the document restore to the top."""
    if line is None or line < 0 or line >= line_count:
        return 0
    return line


class PositionReconciler:
    def __init__(
        self,
        chapters: ChapterIndex,
        line_count: int,
        viewport: Viewport,
        progress_sink: Callable[[int], None],
        *,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] | None = None,
        policy: ReconcilePolicy | None = None,
    ) -> None:
        self._chapters = chapters
        self._line_count = max(1, line_count)
        self._viewport = viewport
        self._progress_sink = progress_sink
        self._scheduler: Scheduler = scheduler or ThreadingScheduler()
        self._clock = clock or time.monotonic
        self._policy = policy or ReconcilePolicy()
        self._lock = threading.RLock()
        self._state: ReconciliationState = Idle()
        self._position = ReadingPosition()
        self._generation = 0
        self._closed = False

    @property
    def state(self) -> ReconciliationState:
        with self._lock:
            return self._state

    @property
    def position(self) -> ReadingPosition:
        with self._lock:
            return replace(self._position)

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def chapters(self) -> ChapterIndex:
        return self._chapters

    @property
    def current_chapter(self) -> Chapter:
        with self._lock:
            return self._chapters[self._position.chapter]

    @property
    def current_chapter_title(self) -> str:
        return self.current_chapter.title

    def open(self, persisted_line: int | None) -> ReadingPosition:
        with self._lock:
            if self._closed:
                return replace(self._position)
            target = clamp_restore_line(persisted_line, self._line_count)
            if target != persisted_line:
                debug_log(f"persisted line {persisted_line} outside 0..{self._line_count - 1}; restoring 0")
            self._set_position(target)
            self._begin_jump(target)
            return replace(self._position)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._generation += 1
            self._state = Idle()

    def on_visible_line(self, line: int) -> bool:
        """Feed the line the viewport currently shows; True when accepted."""
        with self._lock:
            state = self._state
            if self._closed or not isinstance(state, Tracking):
                return False
            now = self._clock()
            if (
                state.last_accepted_at is not None
                and now - state.last_accepted_at < self._policy.debounce
            ):
                return False
            self._state = Tracking(last_accepted_at=now)
            self._set_position(self._clamp_line(line))
            self._progress_sink(self._position.line)
            return True

    def go_to_chapter(self, ordinal: int) -> ReadingPosition:
        with self._lock:
            if self._closed:
                return replace(self._position)
            target = self._chapters[clamp_ordinal(self._chapters, ordinal)]
            self._position = ReadingPosition(line=target.start_line, chapter=target.index)
            self._progress_sink(target.start_line)
            self._begin_jump(target.start_line)
            return replace(self._position)

    def select_toc_entry(self, ordinal: int) -> ReadingPosition:
        return self.go_to_chapter(ordinal)

    def next_chapter(self) -> ReadingPosition:
        with self._lock:
            current = self._position.chapter
            target = next_ordinal(self._chapters, current)
            if target == current:
                return replace(self._position)
            return self.go_to_chapter(target)

    def previous_chapter(self) -> ReadingPosition:
        with self._lock:
            current = self._position.chapter
            target = previous_ordinal(self._chapters, current)
            if target == current:
                return replace(self._position)
            return self.go_to_chapter(target)

    def _clamp_line(self, line: int) -> int:
        return min(max(line, 0), self._line_count - 1)

    def _set_position(self, line: int) -> None:
        self._position = ReadingPosition(line=line, chapter=chapter_at(self._chapters, line))

    def _begin_jump(self, target: int) -> None:
        self._generation += 1
        self._state = InitializingScroll(target=target, retries_left=max(1, self._policy.max_retries))
        self._attempt_jump(self._generation)

    def _attempt_jump(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            state = self._state
            if not isinstance(state, InitializingScroll):
                return
            result = self._viewport.jump_to_line(state.target)
            if result is JumpResult.ACCEPTED:
                self._scheduler.call_later(
                    self._policy.settle_delay, lambda: self._finish_jump(generation)
                )
                return
            retries_left = state.retries_left - 1
            if retries_left <= 0:
                debug_log(f"viewport never became ready for line {state.target}; giving up restore")
                self._state = Tracking()
                return
            self._state = InitializingScroll(target=state.target, retries_left=retries_left)
            self._scheduler.call_later(
                self._policy.retry_delay, lambda: self._attempt_jump(generation)
            )

    def _finish_jump(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if isinstance(self._state, InitializingScroll):
                self._state = Tracking()
