"""Pseudo-terminal transports: a local forked process or a pooled SSH channel.

Both expose the same surface to a Terminal:
- raw byte ``write``; output delivered by a background reader thread
- ``resize(cols, rows)`` serialized under a lock, safe alongside I/O
- ``close()`` that is idempotent and never raises

DIMENSION ORDERING:
- Our API uses: (cols, rows) = (WIDTH, HEIGHT)
- PTY uses: (rows, cols) = (HEIGHT, WIDTH) in the winsize struct
"""

from __future__ import annotations

import errno
import fcntl
import os
import pty
import select
import shlex
import signal
import struct
import sys
import termios
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from .config import SyncConfig
from .errors import ConstructionError, TransportError
from .tmux import RemoteTmuxExecutor

if TYPE_CHECKING:
    import paramiko

    from ..ssh.pool import ConnectionPool


OutputCallback = Callable[[bytes], None]
ExitCallback = Callable[[int], None]

READ_CHUNK = 32 * 1024


def _pack_winsize(cols: int, rows: int) -> bytes:
    return struct.pack("HHHH", rows, cols, 0, 0)


class PtyTransport:
    """Common surface of local and remote pseudo-terminals."""

    kind = "pty"
    cols: int = 0
    rows: int = 0

    def start_reader(self, on_output: OutputCallback, on_exit: Optional[ExitCallback] = None) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def resize(self, cols: int, rows: int) -> None:
        raise NotImplementedError

    def get_winsize(self) -> Optional[Tuple[int, int]]:
        raise NotImplementedError

    def is_alive(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


@dataclass
class PseudoTerminalProcess(PtyTransport):
    """A local child process attached to a pty we own the master side of."""

    command: List[str]
    env: Optional[dict] = None
    initial_size: Optional[Tuple[int, int]] = None  # (cols, rows), applied before exec
    name: str = ""
    pid: Optional[int] = None
    master_fd: Optional[int] = None
    kind: str = field(default="local", init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _reader_thread: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _exit_code: Optional[int] = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.initial_size:
            self.cols, self.rows = self.initial_size

    @classmethod
    def spawn_shell(
        cls,
        shell: Optional[str] = None,
        cols: int = 0,
        rows: int = 0,
        config: Optional[SyncConfig] = None,
    ) -> "PseudoTerminalProcess":
        """Spawn a login shell with a fixed TERM/COLORTERM environment."""
        config = config or SyncConfig()
        shell = shell or os.environ.get("SHELL") or "/bin/sh"
        size = (cols, rows) if cols > 0 and rows > 0 else None
        proc = cls(command=[shell, "-l"], env=config.terminal_env(), initial_size=size, name="shell")
        proc.start()
        return proc

    @classmethod
    def spawn_command(cls, command: List[str], config: Optional[SyncConfig] = None) -> "PseudoTerminalProcess":
        config = config or SyncConfig()
        proc = cls(command=list(command), env=config.terminal_env())
        proc.start()
        return proc

    @classmethod
    def spawn_with_size(
        cls,
        cols: int,
        rows: int,
        command: List[str],
        config: Optional[SyncConfig] = None,
    ) -> "PseudoTerminalProcess":
        """Spawn with the window size set before the child runs.

        tmux reads the terminal size once at startup; a resize racing the
        exec leaves it rendering into a 0x0 client.
        """
        config = config or SyncConfig()
        proc = cls(command=list(command), env=config.terminal_env(), initial_size=(cols, rows))
        proc.start()
        return proc

    def start(self) -> None:
        """Fork the command under a new pty.

        Raises:
            ConstructionError: If the fork or the exec fails.
        """
        if self.pid is not None:
            return
        if not self.command:
            raise ConstructionError("empty command")

        # Child reports exec failure through a close-on-exec pipe
        err_r, err_w = os.pipe()
        try:
            pid, master = pty.fork()
        except OSError as e:
            os.close(err_r)
            os.close(err_w)
            raise ConstructionError(f"pty fork failed for {self.command[0]}: {e}") from e

        if pid == 0:
            # Child: never return into the parent's code
            try:
                os.close(err_r)
                if self.initial_size:
                    self._apply_child_winsize(*self.initial_size)
                try:
                    if self.env is not None:
                        os.execvpe(self.command[0], self.command, self.env)
                    else:
                        os.execvp(self.command[0], self.command)
                except OSError as e:
                    os.write(err_w, str(e.errno or errno.ENOENT).encode())
            finally:
                os._exit(127)

        os.close(err_w)
        try:
            report = os.read(err_r, 32)
        finally:
            os.close(err_r)
        if report:
            try:
                os.waitpid(pid, 0)
            except ChildProcessError:
                pass
            os.close(master)
            code = int(report.decode() or errno.ENOENT)
            raise ConstructionError(f"cannot exec {self.command[0]}: {os.strerror(code)}")

        self.pid = pid
        self.master_fd = master

    @staticmethod
    def _apply_child_winsize(cols: int, rows: int) -> None:
        """Set the winsize inside the child, before exec."""
        winsize = _pack_winsize(cols, rows)
        for fd in (sys.stdin.fileno(), 0):
            try:
                fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
                return
            except (OSError, ValueError):
                continue

    def start_reader(self, on_output: OutputCallback, on_exit: Optional[ExitCallback] = None) -> None:
        if self._reader_thread is not None or self.master_fd is None:
            return
        self._stop_event.clear()
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            args=(on_output, on_exit),
            name=f"pty-reader-{self.name or self.pid}",
            daemon=True,
        )
        self._reader_thread.start()

    def _reader_loop(self, on_output: OutputCallback, on_exit: Optional[ExitCallback]) -> None:
        fd = self.master_fd
        if fd is None:
            return
        while not self._stop_event.is_set():
            try:
                r, _, _ = select.select([fd], [], [], 0.05)
            except (OSError, ValueError):
                break
            if fd not in r:
                continue
            try:
                data = os.read(fd, READ_CHUNK)
            except OSError:
                # EIO once the child side is gone
                break
            if not data:
                break
            on_output(data)
        if self._stop_event.is_set() or on_exit is None:
            return
        on_exit(self._reap())

    def _reap(self) -> int:
        if self._exit_code is not None:
            return self._exit_code
        if self.pid is None:
            return -1
        try:
            _, status = os.waitpid(self.pid, 0)
        except ChildProcessError:
            return self._exit_code if self._exit_code is not None else -1
        self._exit_code = os.waitstatus_to_exitcode(status)
        return self._exit_code

    def write(self, data: bytes) -> int:
        if isinstance(data, str):
            data = data.encode()
        fd = self.master_fd
        if fd is None or self._closed:
            raise TransportError("pty is closed")
        try:
            return os.write(fd, data)
        except OSError as e:
            raise TransportError(f"pty write failed: {e}") from e

    def resize(self, cols: int, rows: int) -> None:
        """Set the window size; concurrent calls apply in lock order, last one wins."""
        with self._lock:
            if self.master_fd is None or self._closed:
                raise TransportError("pty is closed")
            try:
                fcntl.ioctl(self.master_fd, termios.TIOCSWINSZ, _pack_winsize(cols, rows))
            except OSError as e:
                raise TransportError(f"pty resize failed: {e}") from e
            self.cols, self.rows = cols, rows
            if self.pid:
                try:
                    os.kill(self.pid, signal.SIGWINCH)
                except ProcessLookupError:
                    pass

    def get_winsize(self) -> Optional[Tuple[int, int]]:
        """Return current PTY winsize as (cols, rows) if available."""
        if self.master_fd is None:
            return None
        try:
            data = fcntl.ioctl(self.master_fd, termios.TIOCGWINSZ, _pack_winsize(0, 0))
        except OSError:
            return None
        rows, cols, _, _ = struct.unpack("HHHH", data)
        return cols, rows

    def is_alive(self) -> bool:
        if self.pid is None or self._exit_code is not None:
            return False
        try:
            pid, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            return False
        if pid == 0:
            return True
        self._exit_code = os.waitstatus_to_exitcode(status)
        return False

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop_event.set()
        reader = self._reader_thread
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=0.5)

        if self.pid is not None and self._exit_code is None:
            try:
                os.kill(self.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            self._reap()

        if self.master_fd is not None:
            try:
                os.close(self.master_fd)
            except OSError:
                pass
            self.master_fd = None


class RemotePseudoTerminal(PtyTransport):
    """A pty-allocating channel opened over a pooled control connection."""

    kind = "remote"

    def __init__(self, channel: "paramiko.Channel", host_id: str, command: str, cols: int = 0, rows: int = 0) -> None:
        self.channel = channel
        self.host_id = host_id
        self.command = command
        self.cols = cols
        self.rows = rows
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._reader_thread: Optional[threading.Thread] = None
        self._closed = False

    @classmethod
    def spawn(
        cls,
        pool: "ConnectionPool",
        host_id: str,
        command: List[str],
        cols: int,
        rows: int,
        config: Optional[SyncConfig] = None,
    ) -> "RemotePseudoTerminal":
        """Run ``command`` on ``host_id`` under a remote pty of the given size.

        Raises:
            ConstructionError: If the host is unreachable or the channel is refused.
        """
        return cls._open(pool, host_id, shlex.join(command), cols, rows, config)

    @classmethod
    def _open(
        cls,
        pool: "ConnectionPool",
        host_id: str,
        command_line: str,
        cols: int,
        rows: int,
        config: Optional[SyncConfig],
    ) -> "RemotePseudoTerminal":
        config = config or SyncConfig()
        try:
            channel = pool.start_interactive_session(host_id, command_line, cols=cols, rows=rows, term=config.term)
        except TransportError as e:
            raise ConstructionError(str(e)) from e
        return cls(channel, host_id, command_line, cols, rows)

    @classmethod
    def attach(
        cls,
        pool: "ConnectionPool",
        host_id: str,
        target: str,
        cols: int,
        rows: int,
        config: Optional[SyncConfig] = None,
    ) -> "RemotePseudoTerminal":
        """Attach to a remote tmux session; ``target`` is quoted against injection."""
        command_line = RemoteTmuxExecutor(pool, host_id).attach_command_line(target)
        return cls._open(pool, host_id, command_line, cols, rows, config)

    def start_reader(self, on_output: OutputCallback, on_exit: Optional[ExitCallback] = None) -> None:
        if self._reader_thread is not None:
            return
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            args=(on_output, on_exit),
            name=f"ssh-reader-{self.host_id}",
            daemon=True,
        )
        self._reader_thread.start()

    def _reader_loop(self, on_output: OutputCallback, on_exit: Optional[ExitCallback]) -> None:
        channel = self.channel
        while not self._stop_event.is_set():
            try:
                r, _, _ = select.select([channel], [], [], 0.05)
            except (OSError, ValueError):
                break
            if channel not in r:
                if channel.closed:
                    break
                continue
            try:
                data = channel.recv(READ_CHUNK)
            except OSError:
                break
            if not data:
                break
            on_output(data)
        if self._stop_event.is_set() or on_exit is None:
            return
        code = channel.recv_exit_status() if channel.exit_status_ready() else -1
        on_exit(code)

    def write(self, data: bytes) -> int:
        if isinstance(data, str):
            data = data.encode()
        if self._closed or self.channel.closed:
            raise TransportError(f"[{self.host_id}] channel is closed")
        try:
            self.channel.sendall(data)
        except OSError as e:
            raise TransportError(f"[{self.host_id}] channel write failed: {e}") from e
        return len(data)

    def resize(self, cols: int, rows: int) -> None:
        with self._lock:
            if self._closed or self.channel.closed:
                raise TransportError(f"[{self.host_id}] channel is closed")
            try:
                self.channel.resize_pty(width=cols, height=rows)
            except Exception as e:  # paramiko raises SSHException or socket errors
                raise TransportError(f"[{self.host_id}] remote resize failed: {e}") from e
            self.cols, self.rows = cols, rows

    def get_winsize(self) -> Optional[Tuple[int, int]]:
        if self._closed:
            return None
        return self.cols, self.rows

    def is_alive(self) -> bool:
        if self._closed or self.channel.closed:
            return False
        transport = self.channel.get_transport()
        return bool(transport and transport.is_active())

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop_event.set()
        reader = self._reader_thread
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=0.5)
        try:
            self.channel.close()
        except Exception:
            pass
