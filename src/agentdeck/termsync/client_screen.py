"""Client-side mirror of what an xterm-compatible terminal shows.

Feeds emitted events through a pyte HistoryScreen, so the rows a real
client would display (and the lines it would have scrolled into its
scrollback) can be inspected without a UI.

DIMENSION ORDERING:
- Our API uses: (cols, rows)
- pyte uses: columns (width), lines (height)
"""

from __future__ import annotations

from typing import Callable, List, Optional

import pyte
from pyte import modes

from .events import EventKind, SessionEvent
from .history_tracker import DiffFrame


class ClientScreen:
    def __init__(
        self,
        cols: int = 80,
        rows: int = 24,
        history: int = 10000,
        debug_logger: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.cols = cols
        self.rows = rows
        self.history_limit = history
        self._debug_logger = debug_logger
        self._new_screen()

    def _new_screen(self) -> None:
        # pyte.HistoryScreen(columns, lines) - note the order!
        self._screen = pyte.HistoryScreen(self.cols, self.rows, history=self.history_limit)
        self._stream = pyte.ByteStream(self._screen)

    def feed(self, data) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8", errors="replace")
        if data:
            self._stream.feed(data)

    def apply(self, frame: DiffFrame) -> None:
        """Render ``frame`` the way a client would receive it."""
        text = frame.to_ansi()
        if self._debug_logger and text:
            self._debug_logger(
                f"[ClientScreen] frame full={frame.full} history={len(frame.history)} updates={len(frame.updates)}"
            )
        self.feed(text)

    def apply_event(self, event: SessionEvent) -> None:
        if event.kind is EventKind.FRAME:
            self.apply(event.payload)
        elif event.kind is EventKind.HISTORY:
            if event.meta.get("replace"):
                self.reset()
            self.feed(event.payload)
        elif event.kind is EventKind.DATA:
            self.feed(event.payload)
        elif event.kind is EventKind.RESIZE:
            cols, rows = event.payload
            self.resize(cols, rows)

    def reset(self) -> None:
        """Clear the screen and the scrollback."""
        self._new_screen()

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows
        # CRITICAL: pyte.Screen.resize(lines, columns) not (columns, lines)!
        self._screen.resize(lines=rows, columns=cols)

    def _render(self, line) -> str:
        return "".join(line[x].data for x in range(self._screen.columns)).rstrip()

    def display(self) -> List[str]:
        """Visible rows, trailing blanks stripped."""
        return [row.rstrip() for row in self._screen.display]

    def history_lines(self) -> List[str]:
        """Lines scrolled off the top, oldest first."""
        return [self._render(line) for line in self._screen.history.top]

    def text(self, include_history: bool = False) -> str:
        lines = self.display()
        if include_history:
            lines = self.history_lines() + lines
        while lines and not lines[-1]:
            lines.pop()
        return "\n".join(lines)

    @property
    def cursor_hidden(self) -> bool:
        return modes.DECTCEM not in self._screen.mode
