"""Per-category line buffers shared by every Terminal of a process.

Poll threads of different sessions write concurrently, so all access goes
through one lock. Each category keeps at most ``max_lines`` lines.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List


CATEGORIES = ("events", "errors", "debug", "frames", "troubleshooting")


class LogManager:
    def __init__(self, max_lines: int = 2000, categories: Iterable[str] = CATEGORIES) -> None:
        self.max_lines = max_lines
        self._lock = threading.Lock()
        self._buffers: Dict[str, Deque[str]] = {name: deque(maxlen=max_lines) for name in categories}

    def _buffer(self, category: str) -> Deque[str]:
        buf = self._buffers.get(category)
        if buf is None:
            buf = self._buffers[category] = deque(maxlen=self.max_lines)
        return buf

    def add(self, category: str, message: str) -> None:
        """Append ``message``; multi-line messages are stored line by line."""
        with self._lock:
            self._buffer(category).extend(message.splitlines() or [message])

    def replace(self, category: str, message: str) -> None:
        with self._lock:
            buf = self._buffer(category)
            buf.clear()
            buf.extend(message.splitlines() or [message])

    def recent(self, category: str, limit: int = 50) -> List[str]:
        with self._lock:
            lines = list(self._buffers.get(category, ()))
        return lines[-limit:] if limit > 0 else []

    def text(self, category: str) -> str:
        with self._lock:
            return "\n".join(self._buffers.get(category, ()))

    def categories(self) -> List[str]:
        with self._lock:
            return list(self._buffers)

    def debug_logger(self, category: str = "debug") -> Callable[[str], None]:
        """A ``debug_logger`` callable writing into ``category``."""
        return lambda msg: self.add(category, msg)
