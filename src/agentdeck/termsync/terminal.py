"""One session's synchronizer: transport, capture loop and refresh policy.

Modes:
- polling (``attach``): the pty runs ``tmux attach`` for input only; its
  output is discarded and the display is rebuilt from captures diffed by a
  HistoryTracker. Remote sessions use the pooled connection for captures
  and a pooled pty channel for input (or ``send-keys`` when none opens).
- shell (``start_shell``): a plain login shell streamed as raw data.
- direct (``attach_direct``): degraded raw attach with the seam filter.

Lifecycle: Unattached -> Attached -> Closed. A transport that dies returns
the terminal to Unattached so the caller can attach again; Closed is final.

Locks:
- ``_lock`` guards the attachment fields and is never held across I/O.
- ``_emit_lock`` orders frame emission against tracker resets, so a frame
  computed from a baseline that was reset meanwhile is dropped, not sent.
- ``_resize_lock`` keeps whole resizes in request order.
"""

from __future__ import annotations

import codecs
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .config import SyncConfig
from .errors import CaptureError, ConstructionError, StateError, TransportError
from .events import EventKind, EventSink, SessionEvent, null_sink
from .history_tracker import DiffFrame, HistoryTracker
from .pty_process import PseudoTerminalProcess, PtyTransport, RemotePseudoTerminal
from .sanitize import normalize_crlf, sanitize_history, strip_seam_sequences
from .tmux import LocalTmuxExecutor, RemoteTmuxExecutor, TmuxExecutor

if TYPE_CHECKING:
    from ..ssh.pool import ConnectionPool
    from .log_manager import LogManager


class TerminalState(str, Enum):
    UNATTACHED = "unattached"
    ATTACHED = "attached"
    CLOSED = "closed"


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class _StreamDecoder:
    """UTF-8 decoder that keeps partial sequences across reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, data: bytes) -> str:
        return self._decoder.decode(data)


class Terminal:
    def __init__(
        self,
        session_id: str,
        event_sink: Optional[EventSink] = None,
        pool: Optional["ConnectionPool"] = None,
        config: Optional[SyncConfig] = None,
        debug_logger: Optional[Callable[[str], None]] = None,
        log_manager: Optional["LogManager"] = None,
    ) -> None:
        self.session_id = session_id
        self._sink: EventSink = event_sink or null_sink
        self._pool = pool
        self.config = config or SyncConfig()
        self._debug_logger = debug_logger or (lambda msg: None)
        self._log_manager = log_manager

        self._lock = threading.Lock()
        self._emit_lock = threading.Lock()
        self._resize_lock = threading.Lock()
        self._state = TerminalState.UNATTACHED
        self._generation = 0
        self._mode: Optional[str] = None
        self._transport: Optional[PtyTransport] = None
        self._executor: Optional[TmuxExecutor] = None
        self._tracker: Optional[HistoryTracker] = None
        self._target = ""
        self._host_id = ""
        self.cols = 0
        self.rows = 0

        self._stop = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None
        self._lines_since_refresh = 0
        self._consecutive_errors = 0
        self._reconnect_attempts = 0
        self._conn_state: Optional[ConnectionState] = None

    # Shared dependencies (broadcast by TerminalManager)

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        self._sink = sink or null_sink

    def set_connection_pool(self, pool: Optional["ConnectionPool"]) -> None:
        with self._lock:
            self._pool = pool

    def set_config(self, config: SyncConfig) -> None:
        self.config = config

    # Introspection

    @property
    def state(self) -> TerminalState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is TerminalState.CLOSED

    @property
    def mode(self) -> Optional[str]:
        return self._mode

    @property
    def target(self) -> str:
        return self._target

    @property
    def host_id(self) -> str:
        return self._host_id

    @property
    def is_remote(self) -> bool:
        return bool(self._host_id)

    @property
    def tracker(self) -> Optional[HistoryTracker]:
        return self._tracker

    @property
    def transport(self) -> Optional[PtyTransport]:
        return self._transport

    @property
    def lines_since_refresh(self) -> int:
        return self._lines_since_refresh

    @property
    def connection_state(self) -> Optional[ConnectionState]:
        return self._conn_state

    def info(self) -> Dict[str, Any]:
        """Point-in-time state used by diagnostics."""
        with self._lock:
            tracker = self._tracker
            transport = self._transport
            info: Dict[str, Any] = {
                "session_id": self.session_id,
                "state": self._state.value,
                "mode": self._mode,
                "target": self._target,
                "host_id": self._host_id,
                "size": (self.cols, self.rows),
                "transport": transport.kind if transport else None,
                "lines_since_refresh": self._lines_since_refresh,
                "consecutive_errors": self._consecutive_errors,
                "connection": self._conn_state.value if self._conn_state else None,
            }
        if transport is not None:
            info["pty_size"] = transport.get_winsize()
        if tracker is not None:
            info["tracker_rows"] = len(tracker.last_viewport_lines)
            info["tracker_history_index"] = tracker.last_history_index
            info["alt_screen"] = tracker.in_alt_screen
        return info

    # Logging and events

    def _log(self, message: str) -> None:
        line = f"[{self.session_id}] {message}"
        self._debug_logger(line)
        if self._log_manager is not None:
            self._log_manager.add("debug", line)
        self._emit(EventKind.DEBUG, message)

    def _log_error(self, message: str) -> None:
        if self._log_manager is not None:
            self._log_manager.add("errors", f"[{self.session_id}] {message}")
        self._log(message)

    def _emit(self, kind: EventKind, payload: Any = None, **meta: Any) -> bool:
        event = SessionEvent(self.session_id, kind, payload, dict(meta))
        try:
            self._sink(event)
        except Exception as e:  # a misbehaving UI must not kill the capture loop
            self._debug_logger(f"[{self.session_id}] event sink failed on {kind.value}: {e}")
            if self._log_manager is not None:
                self._log_manager.add("errors", f"[{self.session_id}] event sink failed on {kind.value}: {e}")
            return False
        if self._log_manager is not None and kind is not EventKind.DEBUG:
            self._log_manager.add("events", f"[{self.session_id}] {kind.value}")
        return True

    def _check_open(self) -> None:
        if self._state is TerminalState.CLOSED:
            raise StateError("terminal closed")

    # Plain shell

    def start_shell(self, cols: int = 0, rows: int = 0, shell: Optional[str] = None) -> None:
        """Spawn a login shell and stream its output as ``data`` events.

        Raises:
            StateError: If the terminal is closed.
            ConstructionError: If the shell cannot be spawned.
        """
        with self._lock:
            self._check_open()
            if self._transport is not None:
                return
        proc = PseudoTerminalProcess.spawn_shell(shell=shell, cols=cols, rows=rows, config=self.config)
        generation = self._adopt(proc, mode="shell", cols=cols, rows=rows)
        if generation is None:
            return
        decoder = _StreamDecoder()
        proc.start_reader(
            lambda data: self._emit(EventKind.DATA, decoder.decode(data)),
            lambda code: self._detach(generation, f"process exited with code {code}"),
        )
        self._log(f"started shell {proc.command[0]} ({cols}x{rows})")

    def _adopt(self, transport: PtyTransport, mode: str, cols: int, rows: int) -> Optional[int]:
        """Install a freshly spawned transport, or close it if we lost a race."""
        with self._lock:
            if self._state is not TerminalState.UNATTACHED or self._transport is not None:
                lost = True
            else:
                lost = False
                self._generation += 1
                self._state = TerminalState.ATTACHED
                self._transport = transport
                self._mode = mode
                self.cols, self.rows = cols, rows
                generation = self._generation
        if lost:
            transport.close()
            self._check_open()
            return None
        return generation

    # Polling attach

    def _make_executor(self, host_id: str) -> TmuxExecutor:
        if not host_id:
            return LocalTmuxExecutor()
        if self._pool is None:
            raise StateError("connection pool not configured")
        return RemoteTmuxExecutor(self._pool, host_id, timeout=self.config.remote_command_timeout)

    def attach(self, target: str, cols: int = 0, rows: int = 0, host_id: str = "") -> None:
        """Attach to ``target`` in polling mode.

        Sequence: size the tmux window to the client, preload the sanitized
        scrollback as a ``history`` event, open the input transport, then
        start the capture loop. The first frame is a full viewport.

        Raises:
            StateError: If the terminal is closed, or a remote attach has no pool.
            ConstructionError: If the local ``tmux attach`` cannot be spawned.
        """
        with self._lock:
            self._check_open()
            if self._state is TerminalState.ATTACHED:
                return
        executor = self._make_executor(host_id)
        tag = "[REMOTE]" if host_id else "[POLL]"
        self._log(f"{tag} attaching target={target} host={host_id or 'local'} size={cols}x{rows}")

        if cols > 0 and rows > 0:
            try:
                executor.resize_window(target, cols, rows)
            except CaptureError as e:
                self._log(f"{tag} {e}")
            time.sleep(self.config.resize_settle_delay)

        history = self._fetch_history(executor, target, tag)
        if history:
            self._emit(EventKind.HISTORY, history, reason="attach")
            time.sleep(self.config.resize_settle_delay)

        transport = self._open_attach_transport(executor, target, cols, rows, host_id, tag)

        with self._lock:
            if self._state is not TerminalState.UNATTACHED:
                raced = True
            else:
                raced = False
                self._generation += 1
                generation = self._generation
                self._state = TerminalState.ATTACHED
                self._mode = "polling"
                self._transport = transport
                self._executor = executor
                self._tracker = HistoryTracker(target, rows)
                self._target = target
                self._host_id = host_id
                self.cols, self.rows = cols, rows
                self._lines_since_refresh = 0
                self._consecutive_errors = 0
                self._reconnect_attempts = 0
                self._conn_state = ConnectionState.CONNECTED if host_id else None
                self._stop = stop = threading.Event()
        if raced:
            if transport is not None:
                transport.close()
            self._check_open()
            return

        if transport is not None:
            on_exit = self._remote_channel_exit if host_id else self._detach
            transport.start_reader(lambda data: None, lambda code: on_exit(generation, f"tmux client exited ({code})"))
        self._start_polling(generation, stop)
        mode = "interactive" if transport is not None else "read-only"
        self._log(f"{tag} attached target={target} ({mode})")

    def _fetch_history(self, executor: TmuxExecutor, target: str, tag: str) -> str:
        try:
            raw = executor.capture_scrollback(target)
        except CaptureError as e:
            self._log(f"{tag} history preload skipped: {e}")
            return ""
        if not raw:
            return ""
        return normalize_crlf(sanitize_history(raw))

    def _open_attach_transport(
        self,
        executor: TmuxExecutor,
        target: str,
        cols: int,
        rows: int,
        host_id: str,
        tag: str,
    ) -> Optional[PtyTransport]:
        if host_id:
            try:
                return RemotePseudoTerminal.attach(self._pool, host_id, target, cols, rows, self.config)
            except (ConstructionError, TransportError) as e:
                # Captures still work; input falls back to send-keys
                self._log(f"{tag} interactive channel unavailable, read-only: {e}")
                return None
        command = executor.attach_command(target)
        if cols > 0 and rows > 0:
            return PseudoTerminalProcess.spawn_with_size(cols, rows, command, self.config)
        return PseudoTerminalProcess.spawn_command(command, self.config)

    def _start_polling(self, generation: int, stop: threading.Event) -> None:
        thread = threading.Thread(
            target=self._poll_loop,
            args=(generation, stop),
            name=f"tmux-poll-{self.session_id}",
            daemon=True,
        )
        with self._lock:
            self._poll_thread = thread
        thread.start()

    def _poll_loop(self, generation: int, stop: threading.Event) -> None:
        interval = self.config.remote_poll_interval if self._host_id else self.config.poll_interval
        while not stop.wait(interval):
            try:
                keep_going = self.poll_once(generation, stop)
            except Exception as e:  # loop boundary: log and keep the session alive
                self._log_error(f"[POLL] unexpected error: {e!r}")
                keep_going = True
            if not keep_going:
                break
        self._log("[POLL] capture loop stopped")

    def poll_once(self, generation: Optional[int] = None, stop: Optional[threading.Event] = None) -> bool:
        """Run one capture cycle; False once polling for this attachment should end."""
        with self._lock:
            if generation is None:
                generation = self._generation
            if stop is None:
                stop = self._stop
            if self._generation != generation or self._state is not TerminalState.ATTACHED:
                return False
            executor, tracker = self._executor, self._tracker
        if executor is None or tracker is None:
            return False

        try:
            capture = tracker.capture(executor)
        except CaptureError as e:
            return self._capture_failed(generation, stop, e)
        self._consecutive_errors = 0

        if tracker.history_shrank(capture):
            self._log(f"[POLL] history shrank {tracker.last_history_index} -> {capture.history_size}, resetting")
            with self._emit_lock:
                tracker.reset()
        if capture.alternate_on != tracker.in_alt_screen and tracker.snapshot().synced:
            self._log(f"[POLL] alt-screen {tracker.in_alt_screen} -> {capture.alternate_on}")

        frame = tracker.diff(capture)
        refresh_due = False
        with self._emit_lock:
            if self._generation != generation or tracker.snapshot() is not frame.base:
                # Reset or detached while capturing; the next cycle starts over
                return self._generation == generation
            if not frame.is_empty:
                if not self._emit(EventKind.FRAME, frame, full=frame.full, lines=frame.line_count):
                    return True
                self._log_frame(frame)
            tracker.commit(frame)
            self._lines_since_refresh += frame.line_count
            refresh_due = self._lines_since_refresh >= self.config.idle_refresh_lines

        if refresh_due:
            try:
                self._refresh(generation, executor, tracker, reason="idle")
            except (CaptureError, StateError) as e:
                self._log(f"[REFRESH] idle refresh failed: {e}")
        return True

    def _log_frame(self, frame: DiffFrame) -> None:
        if self._log_manager is not None:
            self._log_manager.add(
                "frames",
                f"[{self.session_id}] full={frame.full} history={len(frame.history)} updates={len(frame.updates)}",
            )

    def _capture_failed(self, generation: int, stop: threading.Event, error: CaptureError) -> bool:
        self._consecutive_errors += 1
        self._log(f"[POLL] {error} ({self._consecutive_errors}/{self.config.max_consecutive_errors})")
        if self._consecutive_errors < self.config.max_consecutive_errors:
            return True
        executor, target = self._executor, self._target
        if not self._host_id:
            if executor is not None and executor.has_session(target):
                return True
            self._detach(generation, "tmux session ended")
            return False

        if self._host_alive():
            # Host is fine, only this session's pane failed
            if executor is not None and executor.has_session(target):
                return True
            self._detach(generation, "remote tmux session ended")
            return False

        with self._lock:
            if self._generation != generation:
                return False
            self._conn_state = ConnectionState.DISCONNECTED
        self._log_error(f"[REMOTE] connection lost to {self._host_id}: {error}")
        self._emit(EventKind.CONNECTION_LOST, self._host_id, error=str(error))
        return self._reconnect(generation, stop)

    def _host_alive(self) -> bool:
        """True if the pooled connection shared with other sessions still answers."""
        pool = self._pool
        if pool is None:
            return False
        conn = pool.get_if_exists(self._host_id)
        return conn is not None and conn.test()

    def _reconnect(self, generation: int, stop: threading.Event) -> bool:
        host_id, target, executor = self._host_id, self._target, self._executor
        pool = self._pool
        attempts = self.config.max_reconnect_attempts
        for attempt in range(1, attempts + 1):
            with self._lock:
                if self._generation != generation:
                    return False
                self._conn_state = ConnectionState.RECONNECTING
                self._reconnect_attempts = attempt
            self._emit(EventKind.RECONNECTING, host_id, attempt=attempt, max_attempts=attempts)
            delay = self.config.backoff_for(attempt)
            self._log(f"[RECONNECT] attempt {attempt}/{attempts} in {delay:.1f}s")
            if stop.wait(delay):
                return False
            if pool is None or executor is None:
                break
            # Only a stale entry is dropped; another session may have reconnected
            if not self._host_alive():
                pool.close(host_id)
            if not pool.test_connection(host_id):
                continue
            if not executor.has_session(target):
                self._log(f"[RECONNECT] host {host_id} is back but {target} is gone")
                self._detach(generation, "remote tmux session ended")
                return False
            with self._lock:
                if self._generation != generation:
                    return False
                self._conn_state = ConnectionState.CONNECTED
                self._consecutive_errors = 0
                self._reconnect_attempts = 0
            self._emit(EventKind.CONNECTION_RESTORED, host_id)
            self._log(f"[RECONNECT] restored {host_id}")
            self._reopen_remote_channel(generation)
            return True

        with self._lock:
            if self._generation != generation:
                return False
            self._conn_state = ConnectionState.FAILED
        self._log_error(f"[RECONNECT] giving up on {host_id} after {attempts} attempts")
        self._emit(EventKind.CONNECTION_FAILED, host_id, attempts=attempts)
        return False

    def _reopen_remote_channel(self, generation: int) -> None:
        with self._lock:
            if self._generation != generation or self._transport is not None:
                return
            host_id, target, cols, rows = self._host_id, self._target, self.cols, self.rows
        try:
            channel = RemotePseudoTerminal.attach(self._pool, host_id, target, cols, rows, self.config)
        except (ConstructionError, TransportError) as e:
            self._log(f"[REMOTE] interactive channel still unavailable: {e}")
            return
        with self._lock:
            if self._generation != generation or self._transport is not None:
                lost = True
            else:
                lost = False
                self._transport = channel
        if lost:
            channel.close()
            return
        channel.start_reader(lambda data: None, lambda code: self._remote_channel_exit(generation, f"channel closed ({code})"))

    def _remote_channel_exit(self, generation: int, reason: str) -> None:
        """The input channel died; captures carry on and input uses send-keys."""
        with self._lock:
            if self._generation != generation:
                return
            transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
        self._log(f"[REMOTE] {reason}; input falls back to send-keys")

    def _detach(self, generation: int, reason: str) -> None:
        """Drop the attachment after its transport or session died."""
        with self._lock:
            if self._generation != generation or self._state is not TerminalState.ATTACHED:
                return
            self._generation += 1
            self._state = TerminalState.UNATTACHED
            transport, self._transport = self._transport, None
            stop = self._stop
            self._executor = None
            self._tracker = None
            self._target = ""
            self._mode = None
            self._conn_state = None
        stop.set()
        if transport is not None:
            transport.close()
        self._log(f"detached: {reason}")
        self._emit(EventKind.EXIT, reason)

    # Refresh

    def _refresh(self, generation: int, executor: TmuxExecutor, tracker: HistoryTracker, reason: str) -> None:
        raw = executor.capture_scrollback(tracker.target)
        history = normalize_crlf(sanitize_history(raw))
        with self._emit_lock:
            if self._state is TerminalState.CLOSED:
                raise StateError("terminal closed")
            if self._generation != generation:
                raise StateError("no tmux session attached")
            self._lines_since_refresh = 0
            tracker.reset()
            self._emit(EventKind.HISTORY, history, reason=reason, replace=True)
        self._log(f"[REFRESH] {reason} refresh, next frame is a full viewport")

    def trigger_manual_refresh(self) -> None:
        """Re-sync the client from a fresh full capture.

        On success the idle counter and the tracker are reset together and
        the scrollback is re-sent; on failure neither is touched.

        Raises:
            StateError: If closed ("terminal closed") or unattached
                ("no tmux session attached").
            CaptureError: If the capture fails.
        """
        with self._lock:
            self._check_open()
            if not self._target or self._executor is None or self._tracker is None:
                raise StateError("no tmux session attached")
            generation, executor, tracker = self._generation, self._executor, self._tracker
        self._refresh(generation, executor, tracker, reason="manual")

    def get_scrollback(self) -> str:
        """Fresh sanitized scrollback for a client that re-flowed after a resize."""
        with self._lock:
            self._check_open()
            executor, target = self._executor, self._target
        if executor is None or not target:
            return ""
        return normalize_crlf(sanitize_history(executor.capture_scrollback(target)))

    # Degraded direct attach

    def attach_direct(self, target: str, cols: int = 0, rows: int = 0) -> None:
        """Pipe the raw ``tmux attach`` stream to the client.

        Only the first ``seam_filter_limit`` bytes are filtered for
        sequences that would wipe a pre-populated client buffer.
        """
        with self._lock:
            self._check_open()
            if self._transport is not None:
                return
        command = LocalTmuxExecutor().attach_command(target)
        if cols > 0 and rows > 0:
            proc = PseudoTerminalProcess.spawn_with_size(cols, rows, command, self.config)
        else:
            proc = PseudoTerminalProcess.spawn_command(command, self.config)
        generation = self._adopt(proc, mode="direct", cols=cols, rows=rows)
        if generation is None:
            return
        with self._lock:
            self._target = target

        decoder = _StreamDecoder()
        seen = [0]
        limit = self.config.seam_filter_limit

        def on_output(data: bytes) -> None:
            text = decoder.decode(data)
            if seen[0] < limit:
                seen[0] += len(data)
                filtered = strip_seam_sequences(text)
                if filtered != text:
                    self._log(f"[SEAM] filtered {len(text) - len(filtered)} bytes")
                text = filtered
            if text:
                self._emit(EventKind.DATA, text)

        proc.start_reader(on_output, lambda code: self._detach(generation, f"tmux client exited ({code})"))
        self._log(f"[SEAM] direct attach to {target}")

    # Input and sizing

    def write(self, data) -> None:
        """Send input to the session.

        Raises:
            StateError: If closed or unattached.
            TransportError: If the transport refuses the write.
            CaptureError: If the send-keys fallback fails.
        """
        with self._lock:
            self._check_open()
            transport, executor, target = self._transport, self._executor, self._target
        if transport is not None:
            transport.write(data)
            return
        if executor is not None and target:
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="replace")
            executor.send_keys(target, data, literal=True)
            return
        raise StateError("no tmux session attached")

    def resize(self, cols: int, rows: int) -> None:
        """Resize the transport and the pane; the next frame is a full viewport.

        Calls are applied whole and in order, so the last size requested is
        the one the pty and the pane end with.

        Raises:
            StateError: If the terminal is closed.
        """
        with self._resize_lock:
            self._resize(cols, rows)

    def _resize(self, cols: int, rows: int) -> None:
        with self._lock:
            self._check_open()
            if (cols, rows) == (self.cols, self.rows):
                return
            self.cols, self.rows = cols, rows
            transport, executor, tracker, target = self._transport, self._executor, self._tracker, self._target

        if transport is not None:
            try:
                transport.resize(cols, rows)
            except TransportError as e:
                self._log_error(f"[RESIZE] pty resize failed: {e}")
        if executor is not None and target:
            try:
                executor.resize_window(target, cols, rows)
            except CaptureError as e:
                self._log(f"[RESIZE] {e}")
        if tracker is not None:
            # Content reflows at the new width
            with self._emit_lock:
                tracker.reset()
                tracker.set_viewport_rows(rows)
        self._emit(EventKind.RESIZE, (cols, rows))
        self._log(f"[RESIZE] {cols}x{rows}")

    # Teardown

    def close(self) -> None:
        """Stop polling and release the transport. Safe to call twice."""
        with self._lock:
            if self._state is TerminalState.CLOSED:
                return
            self._state = TerminalState.CLOSED
            self._generation += 1
            transport, self._transport = self._transport, None
            thread, self._poll_thread = self._poll_thread, None
            stop = self._stop
            self._executor = None
            self._target = ""
        stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        if transport is not None:
            transport.close()
        self._debug_logger(f"[{self.session_id}] closed")

