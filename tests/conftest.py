"""Shared fakes: a scripted tmux pane and an event recorder."""

from typing import List, Set

import pytest

from agentdeck.termsync.config import SyncConfig
from agentdeck.termsync.errors import CaptureError
from agentdeck.termsync.events import EventKind, SessionEvent
from agentdeck.termsync.tmux import TmuxExecutor


class FakePane(TmuxExecutor):
    """In-memory pane that answers the tmux commands the tracker issues.

    ``history`` grows as lines scroll off the top of ``viewport``; any
    operation named in ``fail`` raises CaptureError like a dead pane would.
    """

    def __init__(self, viewport: List[str], history: List[str] = None) -> None:
        self.viewport = list(viewport)
        self.history = list(history or [])
        self.alternate_on = False
        self.fail: Set[str] = set()
        self.calls: List[List[str]] = []

    def scroll(self, *lines: str) -> None:
        for line in lines:
            self.history.append(self.viewport.pop(0))
            self.viewport.append(line)

    def run(self, operation, target, args):
        self.calls.append(list(args))
        if operation in self.fail:
            raise CaptureError(operation, target, "can't find pane")
        if operation == "display-message":
            return f"{len(self.history)},{int(self.alternate_on)},80,{len(self.viewport)}\n"
        if operation == "capture-pane":
            if "-S" not in args:
                return "\n".join(self.viewport) + "\n"
            start, end = args[args.index("-S") + 1], args[args.index("-E") + 1]
            if start == "-":
                return "\n".join(self.history + self.viewport) + "\n"
            size = len(self.history)
            return "\n".join(self.history[size + int(start):size + int(end) + 1]) + "\n"
        return ""

    def ran(self, operation: str) -> bool:
        return any(call[0] == operation for call in self.calls)


class EventRecorder:
    def __init__(self) -> None:
        self.events: List[SessionEvent] = []

    def __call__(self, event: SessionEvent) -> None:
        self.events.append(event)

    def of(self, kind: EventKind) -> List[SessionEvent]:
        return [e for e in self.events if e.kind is kind]

    def kinds(self) -> List[EventKind]:
        return [e.kind for e in self.events if e.kind is not EventKind.DEBUG]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def fast_config():
    """Background polling effectively disabled; tests drive poll_once()."""
    return SyncConfig(
        poll_interval=3600.0,
        remote_poll_interval=3600.0,
        resize_settle_delay=0.0,
        base_backoff=0.0,
        max_backoff=0.0,
    )


@pytest.fixture
def make_pane():
    return FakePane
