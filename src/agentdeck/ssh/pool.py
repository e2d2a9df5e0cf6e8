"""Connection pool: one reusable control connection per remote host.

Connections are created lazily and removed only by ``close``/``close_all``.
A host whose connection failed (or later died) stays failed until the
caller closes its entry; the pool never retries behind the caller's back.

Locking: ``_mu`` guards the host maps and is only held for dictionary
access. Connecting happens under the host's own slot lock, so a slow or
unreachable host never blocks lookups for the others.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import paramiko

from ..termsync.errors import ConstructionError, HostConnectError, RemoteCommandError, TransportError
from .config import HostConfig
from .connection import DEFAULT_PATH_PREFIX, HostConnection


@dataclass(frozen=True)
class HostStatus:
    host_id: str
    connected: bool
    last_error: Optional[str]
    last_check: Optional[float]


class _HostSlot:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.connection: Optional[HostConnection] = None
        self.failed = False
        self.closed = False
        self.last_error: Optional[str] = None
        self.last_check: Optional[float] = None

    def record(self, error: Optional[str]) -> None:
        self.last_error = error
        self.last_check = time.time()


ConnectionFactory = Callable[[HostConfig], HostConnection]


class ConnectionPool:
    def __init__(
        self,
        path_prefix: str = DEFAULT_PATH_PREFIX,
        connection_factory: Optional[ConnectionFactory] = None,
        debug_logger: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.path_prefix = path_prefix
        self.debug_logger = debug_logger or (lambda msg: None)
        self._factory = connection_factory or (
            lambda cfg: HostConnection(cfg, path_prefix=self.path_prefix, debug_logger=self.debug_logger)
        )
        self._mu = threading.Lock()
        self._slots: Dict[str, _HostSlot] = {}
        self._configs: Dict[str, HostConfig] = {}

    # Host registry

    def register(self, host_id: str, config: HostConfig) -> None:
        """Add (or replace) a host's settings without connecting."""
        with self._mu:
            self._configs[host_id] = config

    def get_config(self, host_id: str) -> Optional[HostConfig]:
        with self._mu:
            return self._configs.get(host_id)

    def list_hosts(self) -> List[str]:
        with self._mu:
            return sorted(self._configs)

    def is_configured(self, host_id: str) -> bool:
        with self._mu:
            return host_id in self._configs

    def tmux_path(self, host_id: str) -> str:
        cfg = self.get_config(host_id)
        return (cfg.tmux_path if cfg else "") or "tmux"

    # Connections

    def _slot(self, host_id: str) -> _HostSlot:
        with self._mu:
            slot = self._slots.get(host_id)
            if slot is None:
                slot = _HostSlot()
                self._slots[host_id] = slot
            return slot

    def get_connection(self, host_id: str) -> HostConnection:
        """Return the host's live connection, connecting on first use.

        Raises:
            HostConnectError: If connecting fails, or the host failed earlier
                and its entry has not been closed since.
            ConstructionError: If the host's settings cannot be used.
        """
        slot = self._slot(host_id)
        with slot.lock:
            if slot.failed:
                raise HostConnectError(host_id, f"host is marked failed ({slot.last_error}); close it before retrying")
            conn = slot.connection
            if conn is not None:
                if conn.is_connected():
                    return conn
                slot.failed = True
                slot.record("connection lost")
                raise HostConnectError(host_id, "connection lost; close it before retrying")

            cfg = self.get_config(host_id) or HostConfig(host_id=host_id, host=host_id)
            conn = self._factory(cfg)
            try:
                conn.connect()
            except ConstructionError as e:
                slot.failed = True
                slot.record(str(e))
                raise
            if slot.closed:
                # close() raced the connect; the entry is gone
                conn.close()
                raise HostConnectError(host_id, "closed while connecting")
            slot.connection = conn
            slot.record(None)
            return conn

    def get_if_exists(self, host_id: str) -> Optional[HostConnection]:
        """Live connection for ``host_id`` without connecting, or None."""
        with self._mu:
            slot = self._slots.get(host_id)
        conn = slot.connection if slot else None
        if conn is not None and conn.is_connected():
            return conn
        return None

    def run_command(self, host_id: str, command: str, timeout: Optional[float] = None) -> str:
        """Run ``command`` once on ``host_id`` and return stdout.

        Raises:
            HostConnectError: If no connection can be had.
            RemoteCommandError: If the command fails; the message carries the host id.
        """
        conn = self.get_connection(host_id)
        try:
            return conn.run(command, timeout=timeout)
        except RemoteCommandError as e:
            self._slot(host_id).record(str(e))
            raise

    def start_interactive_session(
        self,
        host_id: str,
        command: str,
        cols: int = 80,
        rows: int = 24,
        term: str = "xterm-256color",
    ) -> paramiko.Channel:
        """Open a pty channel for ``command`` over the host's control connection.

        Raises:
            HostConnectError: If no connection can be had.
            TransportError: If the channel is refused.
        """
        conn = self.get_connection(host_id)
        try:
            return conn.open_pty_channel(command, cols, rows, term=term)
        except TransportError as e:
            self._slot(host_id).record(str(e))
            raise

    def test_connection(self, host_id: str) -> bool:
        """Probe ``host_id``; the outcome shows up in ``status()``."""
        slot = self._slot(host_id)
        try:
            conn = self.get_connection(host_id)
        except ConstructionError as e:
            slot.record(str(e))
            return False
        ok = conn.test()
        slot.record(conn.last_error)
        if not ok:
            self.debug_logger(f"[SSH] probe failed for {host_id}: {conn.last_error}")
        return ok

    def health_check(self) -> Dict[str, Optional[str]]:
        """Probe every registered host concurrently; host id -> error or None."""
        hosts = self.list_hosts()
        if not hosts:
            return {}
        with ThreadPoolExecutor(max_workers=min(8, len(hosts))) as executor:
            outcomes = dict(zip(hosts, executor.map(self.test_connection, hosts)))
        results: Dict[str, Optional[str]] = {}
        for host_id, ok in outcomes.items():
            with self._mu:
                slot = self._slots.get(host_id)
            results[host_id] = None if ok else (slot.last_error if slot else "unreachable")
        return results

    def status(self) -> List[HostStatus]:
        """Snapshot of every known host, registered or connected."""
        with self._mu:
            host_ids = sorted(set(self._configs) | set(self._slots))
            slots = dict(self._slots)
        statuses = []
        for host_id in host_ids:
            slot = slots.get(host_id)
            if slot is None:
                statuses.append(HostStatus(host_id, False, None, None))
                continue
            conn = slot.connection
            connected = bool(conn and not slot.failed and conn.is_connected())
            statuses.append(HostStatus(host_id, connected, slot.last_error, slot.last_check))
        return statuses

    def close(self, host_id: str) -> None:
        """Drop the host's entry and close its connection. Safe to repeat."""
        with self._mu:
            slot = self._slots.pop(host_id, None)
        if slot is None:
            return
        slot.closed = True
        conn, slot.connection = slot.connection, None
        if conn is not None:
            conn.close()

    def close_all(self) -> None:
        with self._mu:
            host_ids = list(self._slots)
        for host_id in host_ids:
            self.close(host_id)
