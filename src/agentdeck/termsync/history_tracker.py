"""Capture-and-diff engine that keeps a client buffer in step with a tmux pane.

Attaching a client straight to tmux corrupts a pre-populated buffer because
tmux draws with absolute cursor positions that assume an empty screen. Instead
we poll the pane and turn successive captures into minimal frames:

1. Lines that scrolled from the viewport into tmux history since the last
   capture are appended to the client's scrollback, verbatim and in order.
2. Each viewport row is compared with the client's copy of that row; only
   differing rows are rewritten, each preceded by an explicit cursor move in
   the client's own coordinates.

The baseline (``last_viewport_lines``, ``last_history_index``) is an immutable
snapshot that only moves when a frame is committed, so a failed capture or a
frame that was never delivered leaves the tracker exactly where it was.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .tmux import TmuxExecutor, split_capture


HIDE_CURSOR = "\x1b[?25l"
ROW_END = "\x1b[0m\x1b[K"  # reset SGR, clear to end of line
CLEAR_BELOW = "\x1b[J"


def _move(row: int) -> str:
    # row is 0-based, ANSI rows are 1-based
    return f"\x1b[{row + 1};1H"


@dataclass(frozen=True)
class RowUpdate:
    row: int
    text: str


@dataclass(frozen=True)
class PaneCapture:
    """One point-in-time snapshot of a pane."""

    viewport: Tuple[str, ...]
    history_size: int
    history_lines: Tuple[str, ...] = ()
    alternate_on: bool = False


@dataclass(frozen=True)
class TrackerSnapshot:
    viewport_lines: Tuple[str, ...] = ()
    history_index: int = 0
    in_alt_screen: bool = False

    @property
    def synced(self) -> bool:
        return bool(self.viewport_lines)


@dataclass(frozen=True)
class DiffFrame:
    """Minimal update that moves the client from ``base`` to ``baseline``."""

    full: bool
    history: Tuple[str, ...]
    updates: Tuple[RowUpdate, ...]
    base: TrackerSnapshot
    baseline: TrackerSnapshot
    client_rows: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.full and not self.history and not self.updates

    @property
    def line_count(self) -> int:
        return len(self.history) + len(self.updates)

    def to_ansi(self) -> str:
        """Render for an xterm-compatible client."""
        if self.is_empty:
            return ""
        out: List[str] = []
        rows = len(self.base.viewport_lines)
        if self.history and rows:
            # Write each chunk into the top rows, then scroll it off the bottom
            # so the client pushes exactly those rows into its scrollback.
            for start in range(0, len(self.history), rows):
                chunk = self.history[start:start + rows]
                for i, line in enumerate(chunk):
                    out.append(_move(i) + line + ROW_END)
                out.append(_move(rows - 1) + "\n" * len(chunk))
        for update in self.updates:
            out.append(_move(update.row) + update.text + ROW_END)
        if self.full:
            height = len(self.baseline.viewport_lines)
            if max(self.client_rows, rows) > height:
                out.append(_move(height) + CLEAR_BELOW)
        out.append(HIDE_CURSOR)
        return "".join(out)


class HistoryTracker:
    """Owns one pane's diff baseline.

    ``capture`` does the I/O, ``diff`` is pure, ``commit`` swaps the baseline
    in one assignment. Callers emit the frame between ``diff`` and ``commit``.
    """

    def __init__(self, target: str, rows: int = 0) -> None:
        self.target = target
        self.viewport_rows = rows
        self._lock = threading.Lock()
        self._state = TrackerSnapshot()

    @property
    def last_viewport_lines(self) -> List[str]:
        return list(self._state.viewport_lines)

    @property
    def last_history_index(self) -> int:
        return self._state.history_index

    @property
    def in_alt_screen(self) -> bool:
        return self._state.in_alt_screen

    def snapshot(self) -> TrackerSnapshot:
        return self._state

    def pending_history(self, history_size: int) -> int:
        """Lines that scrolled into history since the last committed capture."""
        state = self._state
        if not state.synced or history_size <= state.history_index:
            return 0
        return history_size - state.history_index

    def capture(self, executor: TmuxExecutor) -> PaneCapture:
        """Read the pane through ``executor`` without touching tracker state.

        Raises:
            CaptureError: If any tmux call fails; the message names the call.
        """
        info = executor.pane_info(self.target)
        history_lines: Tuple[str, ...] = ()
        gap = 0 if info.alternate_on else self.pending_history(info.history_size)
        if gap > 0:
            raw = executor.capture_range(self.target, -gap, -1)
            history_lines = tuple(split_capture(raw))[-gap:]
        viewport = tuple(split_capture(executor.capture_viewport(self.target)))
        return PaneCapture(
            viewport=viewport,
            history_size=info.history_size,
            history_lines=history_lines,
            alternate_on=info.alternate_on,
        )

    def history_shrank(self, capture: PaneCapture) -> bool:
        """True when tmux history got shorter (clear-history) since the baseline."""
        state = self._state
        return state.synced and capture.history_size < state.history_index

    def diff(self, capture: PaneCapture) -> DiffFrame:
        base = self._state
        new_lines: Sequence[str] = capture.viewport
        new_index = max(base.history_index, capture.history_size)
        baseline = TrackerSnapshot(tuple(new_lines), new_index, capture.alternate_on)

        left_alt_screen = base.in_alt_screen and not capture.alternate_on
        if not base.synced or left_alt_screen:
            updates = tuple(RowUpdate(i, line) for i, line in enumerate(new_lines))
            return DiffFrame(True, (), updates, base, baseline, self.viewport_rows)

        history: Tuple[str, ...] = () if capture.alternate_on else tuple(capture.history_lines)
        rows = len(base.viewport_lines)
        scrolled = min(len(history), rows)
        shifted = list(base.viewport_lines[scrolled:]) + [""] * scrolled

        if len(new_lines) != rows:
            # Geometry changed; there is no corresponding row to compare with
            updates = tuple(RowUpdate(i, line) for i, line in enumerate(new_lines))
            return DiffFrame(True, history, updates, base, baseline, self.viewport_rows)

        updates = tuple(
            RowUpdate(i, line) for i, line in enumerate(new_lines) if line != shifted[i]
        )
        return DiffFrame(False, history, updates, base, baseline, self.viewport_rows)

    def commit(self, frame: DiffFrame) -> bool:
        """Adopt ``frame.baseline``; refused if the baseline moved since ``diff``."""
        with self._lock:
            if self._state is not frame.base:
                return False
            self._state = frame.baseline
            return True

    def reset(self) -> None:
        """Forget the baseline so the next capture is emitted as a full viewport.

        History is not re-appended: the client is expected to hold its own
        preloaded scrollback.
        """
        with self._lock:
            self._state = TrackerSnapshot()

    def set_viewport_rows(self, rows: int) -> None:
        self.viewport_rows = rows
