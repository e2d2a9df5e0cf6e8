"""Session registry: exactly one Terminal per session id.

``get_or_create`` is the only way a Terminal comes to exist, and lookup
plus insertion happen under one lock. Removal happens before teardown, so
a terminal that is half-way through ``close`` is never handed out again.

Shared dependencies (event sink, connection pool, config) are broadcast to
the current terminals and applied to every terminal created afterwards.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .config import SyncConfig
from .errors import SessionNotFoundError
from .events import EventSink
from .terminal import Terminal

if TYPE_CHECKING:
    from ..ssh.pool import ConnectionPool
    from .log_manager import LogManager


class TerminalManager:
    """Owns the session id -> Terminal map.

    Responsibilities:
    - Create terminals on first use and hand out the same instance after
    - Close one or all terminals
    - Broadcast shared dependencies
    - Route refresh, resize and write calls by session id
    """

    def __init__(
        self,
        event_sink: Optional[EventSink] = None,
        pool: Optional["ConnectionPool"] = None,
        config: Optional[SyncConfig] = None,
        debug_logger: Optional[Callable[[str], None]] = None,
        log_manager: Optional["LogManager"] = None,
    ) -> None:
        """Initialize the registry.

        Args:
            event_sink: Receives every terminal's SessionEvents
            pool: ConnectionPool for remote sessions
            config: Tuning constants handed to each terminal
            debug_logger: Optional callback for debug messages
            log_manager: Optional LogManager shared by all terminals
        """
        self._mu = threading.Lock()
        self.terminals: Dict[str, Terminal] = {}
        self._event_sink = event_sink
        self._pool = pool
        self._config = config or SyncConfig()
        self._debug_logger = debug_logger or (lambda msg: None)
        self._log_manager = log_manager

    def get_or_create(self, session_id: str) -> Terminal:
        """Return the session's terminal, creating it on first call."""
        with self._mu:
            term = self.terminals.get(session_id)
            if term is not None:
                return term
            term = Terminal(
                session_id,
                event_sink=self._event_sink,
                pool=self._pool,
                config=self._config,
                debug_logger=self._debug_logger,
                log_manager=self._log_manager,
            )
            self.terminals[session_id] = term
        self._debug_logger(f"Created terminal '{session_id}'")
        return term

    def get(self, session_id: str) -> Optional[Terminal]:
        with self._mu:
            return self.terminals.get(session_id)

    def _require(self, session_id: str) -> Terminal:
        term = self.get(session_id)
        if term is None:
            raise SessionNotFoundError(f"terminal not found: {session_id}")
        return term

    def close(self, session_id: str) -> bool:
        """Remove and close one terminal.

        Returns:
            True if the session existed
        """
        with self._mu:
            term = self.terminals.pop(session_id, None)
        if term is None:
            return False
        term.close()
        self._debug_logger(f"Removed terminal '{session_id}'")
        return True

    def close_all(self) -> None:
        with self._mu:
            terms = list(self.terminals.values())
            self.terminals.clear()
        for term in terms:
            term.close()
        if terms:
            self._debug_logger(f"Closed {len(terms)} terminal(s)")

    def count(self) -> int:
        with self._mu:
            return len(self.terminals)

    def list_terminals(self) -> List[str]:
        with self._mu:
            return list(self.terminals.keys())

    def _snapshot(self) -> List[Terminal]:
        with self._mu:
            return list(self.terminals.values())

    # Broadcast

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        with self._mu:
            self._event_sink = sink
        for term in self._snapshot():
            term.set_event_sink(sink)

    def set_connection_pool(self, pool: Optional["ConnectionPool"]) -> None:
        with self._mu:
            self._pool = pool
        for term in self._snapshot():
            term.set_connection_pool(pool)

    def set_config(self, config: SyncConfig) -> None:
        with self._mu:
            self._config = config
        for term in self._snapshot():
            term.set_config(config)

    # Routing

    def trigger_manual_refresh(self, session_id: str) -> None:
        """Raises SessionNotFoundError for unknown ids, else whatever the terminal raises."""
        self._require(session_id).trigger_manual_refresh()

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        self._require(session_id).resize(cols, rows)

    def write(self, session_id: str, data) -> None:
        self._require(session_id).write(data)
