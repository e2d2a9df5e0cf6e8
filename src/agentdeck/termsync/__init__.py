"""
Terminal synchronization - keeps client buffers in step with tmux panes.

Captures local or remote panes, diffs successive captures and pushes
minimal frames to the client instead of piping tmux's raw output.
"""

from .config import SyncConfig
from .errors import (
    CaptureError,
    ConstructionError,
    HostConnectError,
    RemoteCommandError,
    SessionNotFoundError,
    StateError,
    TermSyncError,
    TransportError,
)
from .events import EventKind, SessionEvent
from .history_tracker import DiffFrame, HistoryTracker, PaneCapture
from .pty_process import PseudoTerminalProcess, RemotePseudoTerminal
from .terminal import ConnectionState, Terminal, TerminalState
from .terminal_manager import TerminalManager

__all__ = [
    "CaptureError",
    "ConnectionState",
    "ConstructionError",
    "DiffFrame",
    "EventKind",
    "HistoryTracker",
    "HostConnectError",
    "PaneCapture",
    "PseudoTerminalProcess",
    "RemoteCommandError",
    "RemotePseudoTerminal",
    "SessionEvent",
    "SessionNotFoundError",
    "StateError",
    "SyncConfig",
    "TermSyncError",
    "Terminal",
    "TerminalManager",
    "TerminalState",
    "TransportError",
]
