"""Multiplexer command surface - capture, display-message, resize, send-keys.

PUBLIC API:
  - TmuxExecutor: command builder shared by local and remote execution
  - LocalTmuxExecutor: runs tmux through subprocess on this machine
  - RemoteTmuxExecutor: runs tmux on a pooled SSH connection
  - PaneInfo: parsed display-message output
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from .errors import CaptureError, ConstructionError, TransportError

if TYPE_CHECKING:
    from ..ssh.pool import ConnectionPool


PANE_INFO_FORMAT = "#{history_size},#{alternate_on},#{pane_width},#{pane_height}"


@dataclass(frozen=True)
class PaneInfo:
    history_size: int
    alternate_on: bool
    width: int
    height: int

    @classmethod
    def parse(cls, line: str) -> "PaneInfo":
        parts = line.strip().split(",")
        if len(parts) < 4:
            raise ValueError(f"unexpected pane info {line.strip()!r}")
        return cls(
            history_size=int(parts[0] or 0),
            alternate_on=parts[1] == "1",
            width=int(parts[2] or 0),
            height=int(parts[3] or 0),
        )


def split_capture(output: str) -> List[str]:
    """Split capture-pane output into rows (one trailing newline per row)."""
    if output.endswith("\n"):
        output = output[:-1]
    return output.split("\n")


class TmuxExecutor:
    """Builds tmux invocations; subclasses decide where they run."""

    tmux_path: str = "tmux"
    is_remote: bool = False
    host_id: str = ""

    def run(self, operation: str, target: str, args: List[str]) -> str:
        raise NotImplementedError

    def pane_info(self, target: str) -> PaneInfo:
        out = self.run("display-message", target, ["display-message", "-p", "-t", target, PANE_INFO_FORMAT])
        try:
            return PaneInfo.parse(out)
        except ValueError as e:
            raise CaptureError("display-message", target, str(e)) from e

    def capture_viewport(self, target: str) -> str:
        # -p = stdout, -e = keep SGR styling
        return self.run("capture-pane", target, ["capture-pane", "-p", "-e", "-t", target])

    def capture_range(self, target: str, start: int, end: int) -> str:
        """Capture lines ``start``..``end`` (negative = scrollback, -1 is the newest)."""
        return self.run(
            "capture-pane",
            target,
            ["capture-pane", "-p", "-e", "-t", target, "-S", str(start), "-E", str(end)],
        )

    def capture_scrollback(self, target: str) -> str:
        return self.run("capture-pane", target, ["capture-pane", "-p", "-e", "-t", target, "-S", "-", "-E", "-"])

    def resize_window(self, target: str, cols: int, rows: int) -> None:
        self.run("resize-window", target, ["resize-window", "-t", target, "-x", str(cols), "-y", str(rows)])

    def has_session(self, target: str) -> bool:
        try:
            self.run("has-session", target, ["has-session", "-t", target])
        except CaptureError:
            return False
        return True

    def send_keys(self, target: str, keys: str, literal: bool = True) -> None:
        args = ["send-keys", "-t", target]
        if literal:
            args.append("-l")
        args.append(keys)
        self.run("send-keys", target, args)

    def attach_command(self, target: str) -> List[str]:
        return [self.tmux_path, "attach-session", "-t", target]

    def attach_command_line(self, target: str) -> str:
        """Attach command as a single shell string, every argument quoted."""
        return shlex.join(self.attach_command(target))


class LocalTmuxExecutor(TmuxExecutor):
    def __init__(self, tmux_path: str = "tmux") -> None:
        self.tmux_path = tmux_path

    def run(self, operation: str, target: str, args: List[str]) -> str:
        cmd = [self.tmux_path] + args
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
        except OSError as e:
            raise CaptureError(operation, target, str(e)) from e
        if result.returncode != 0:
            raise CaptureError(operation, target, result.stderr or f"exit {result.returncode}")
        return result.stdout


class RemoteTmuxExecutor(TmuxExecutor):
    is_remote = True

    def __init__(
        self,
        pool: "ConnectionPool",
        host_id: str,
        tmux_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.pool = pool
        self.host_id = host_id
        self.tmux_path = tmux_path or pool.tmux_path(host_id)
        self.timeout = timeout

    def run(self, operation: str, target: str, args: List[str]) -> str:
        command = shlex.join([self.tmux_path] + args)
        try:
            return self.pool.run_command(self.host_id, command, timeout=self.timeout)
        except (ConstructionError, TransportError) as e:
            raise CaptureError(operation, target, str(e)) from e
