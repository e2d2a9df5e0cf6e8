"""Events pushed from a Terminal to the UI layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict


class EventKind(str, Enum):
    FRAME = "frame"  # DiffFrame from the capture loop
    HISTORY = "history"  # sanitized scrollback preload (attach / manual refresh)
    DATA = "data"  # raw stream (plain shell, degraded direct attach)
    RESIZE = "resize"  # resize acknowledgement
    EXIT = "exit"
    CONNECTION_LOST = "connection-lost"
    RECONNECTING = "reconnecting"
    CONNECTION_RESTORED = "connection-restored"
    CONNECTION_FAILED = "connection-failed"
    DEBUG = "debug"


@dataclass(frozen=True)
class SessionEvent:
    session_id: str
    kind: EventKind
    payload: Any = None
    meta: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[SessionEvent], None]


def null_sink(event: SessionEvent) -> None:
    return None
