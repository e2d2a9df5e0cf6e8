"""Error taxonomy for terminal synchronization.

- ConstructionError: spawn/connect failed, the attach attempt is over
  (HostConnectError for SSH hosts).
- CaptureError: one multiplexer call failed; transient, retried next cycle.
- StateError: operation on a closed or unattached terminal.
- TransportError: the pty, channel or connection died (or refused a write).
"""

from __future__ import annotations

from typing import Optional


class TermSyncError(Exception):
    """Base exception for all synchronization errors."""

    pass


class ConstructionError(TermSyncError):
    """Raised when a process or connection cannot be created."""

    pass


class CaptureError(TermSyncError):
    """Raised when a multiplexer command fails.

    The message always starts with the failing operation so callers (and
    users) can tell a capture-pane failure from a display-message one.
    """

    def __init__(self, operation: str, target: str, detail: str = "") -> None:
        self.operation = operation
        self.target = target
        self.detail = detail.strip()
        msg = f"{operation} failed for {target!r}"
        if self.detail:
            msg = f"{msg}: {self.detail}"
        super().__init__(msg)


class StateError(TermSyncError):
    """Raised when an operation's precondition (open, attached) is violated."""

    pass


class SessionNotFoundError(StateError):
    """Raised when the registry has no terminal for a session id."""

    pass


class TransportError(TermSyncError):
    """Raised when the pty, remote channel or control connection is unusable."""

    pass


class RemoteCommandError(TransportError):
    """Raised when a one-shot remote command fails."""

    def __init__(self, host_id: str, message: str, exit_status: Optional[int] = None) -> None:
        self.host_id = host_id
        self.exit_status = exit_status
        super().__init__(f"[{host_id}] {message}")


class HostConnectError(ConstructionError):
    """Raised when a control connection to a host cannot be established."""

    def __init__(self, host_id: str, message: str) -> None:
        self.host_id = host_id
        super().__init__(f"[{host_id}] {message}")
