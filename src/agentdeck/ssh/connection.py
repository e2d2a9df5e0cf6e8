"""One persistent paramiko control connection to a host.

Every remote command and interactive channel for that host is multiplexed
over the single Transport held here.
"""

from __future__ import annotations

import socket
import threading
import time
from typing import Callable, Optional

import paramiko

from ..termsync.errors import ConstructionError, HostConnectError, RemoteCommandError, TransportError
from .config import HostConfig


DEFAULT_PATH_PREFIX = "/opt/homebrew/bin:/usr/local/bin"


class HostConnection:
    def __init__(
        self,
        config: HostConfig,
        path_prefix: str = DEFAULT_PATH_PREFIX,
        debug_logger: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config
        self.path_prefix = path_prefix
        self.debug_logger = debug_logger or (lambda msg: None)
        self.client: Optional[paramiko.SSHClient] = None
        self.last_error: Optional[str] = None
        self.last_check: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def host_id(self) -> str:
        return self.config.host_id

    def connect(self) -> None:
        """Open the control connection.

        Raises:
            ConstructionError: For jump hosts (unsupported by this transport).
            HostConnectError: If the host is unreachable or authentication fails.
        """
        cfg = self.config
        if cfg.jump_host:
            raise ConstructionError(f"[{cfg.host_id}] jump hosts are not supported ({cfg.jump_host})")

        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": cfg.host,
            "port": cfg.port,
            "timeout": cfg.connect_timeout,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if cfg.user:
            connect_kwargs["username"] = cfg.user
        if cfg.password:
            connect_kwargs["password"] = cfg.password
        if cfg.key_path:
            connect_kwargs["key_filename"] = cfg.key_path

        try:
            client.connect(**connect_kwargs)
        except (paramiko.SSHException, socket.error) as e:
            client.close()
            self._record(f"connect failed: {e}")
            raise HostConnectError(cfg.host_id, f"connect to {cfg.target}:{cfg.port} failed: {e}") from e

        transport = client.get_transport()
        if transport and cfg.keepalive:
            transport.set_keepalive(cfg.keepalive)
        with self._lock:
            self.client = client
        self._record(None)
        self.debug_logger(f"[SSH] connected {cfg.host_id} ({cfg.target}:{cfg.port})")

    def _record(self, error: Optional[str]) -> None:
        self.last_error = error
        self.last_check = time.time()

    def is_connected(self) -> bool:
        client = self.client
        if client is None:
            return False
        transport = client.get_transport()
        return bool(transport and transport.is_active())

    def wrap(self, command: str) -> str:
        """Prefix the remote PATH so Homebrew-installed tools resolve on macOS."""
        if not self.path_prefix:
            return command
        return f"PATH={self.path_prefix}:$PATH {command}"

    def _transport(self) -> paramiko.Transport:
        client = self.client
        transport = client.get_transport() if client else None
        if transport is None or not transport.is_active():
            raise TransportError(f"[{self.host_id}] connection is not active")
        return transport

    def run(self, command: str, timeout: Optional[float] = None) -> str:
        """Run one command and return its stdout.

        Raises:
            RemoteCommandError: On a non-zero exit or a channel failure.
        """
        client = self.client
        transport = client.get_transport() if client else None
        if transport is None or not transport.is_active():
            raise RemoteCommandError(self.host_id, "connection is not active")
        try:
            channel = transport.open_session(timeout=timeout)
            if timeout is not None:
                channel.settimeout(timeout)
            channel.exec_command(self.wrap(command))
            stdout = channel.makefile("rb").read()
            stderr = channel.makefile_stderr("rb").read()
            status = channel.recv_exit_status()
            channel.close()
        except (paramiko.SSHException, socket.error) as e:
            self._record(str(e))
            raise RemoteCommandError(self.host_id, f"{command.split(' ', 1)[0]}: {e}") from e

        out = stdout.decode("utf-8", errors="replace")
        if status != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() or f"exit status {status}"
            raise RemoteCommandError(self.host_id, detail, exit_status=status)
        return out

    def open_pty_channel(self, command: str, cols: int, rows: int, term: str = "xterm-256color") -> paramiko.Channel:
        """Open a pty-allocating channel running ``command`` over the control connection."""
        transport = self._transport()
        try:
            channel = transport.open_session()
            channel.get_pty(term=term, width=cols or 80, height=rows or 24)
            channel.exec_command(self.wrap(command))
        except (paramiko.SSHException, socket.error) as e:
            self._record(str(e))
            raise TransportError(f"[{self.host_id}] interactive session failed: {e}") from e
        return channel

    def test(self) -> bool:
        """Cheap liveness probe; the outcome is kept in last_error/last_check."""
        try:
            self.run("true", timeout=self.config.connect_timeout)
        except RemoteCommandError as e:
            self._record(str(e))
            return False
        self._record(None)
        return True

    def close(self) -> None:
        with self._lock:
            client, self.client = self.client, None
        if client is not None:
            client.close()
            self.debug_logger(f"[SSH] closed {self.host_id}")
