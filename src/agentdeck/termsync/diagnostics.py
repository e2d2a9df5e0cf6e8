"""Diagnostics and troubleshooting snapshot generation.

Collects per-session synchronizer state, connection pool status and the
recent log categories into one text report that can be written to disk.
"""

from __future__ import annotations

from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from ..ssh.pool import ConnectionPool
    from .client_screen import ClientScreen
    from .log_manager import LogManager
    from .terminal_manager import TerminalManager


def _version(dist: str) -> str:
    try:
        return metadata.version(dist)
    except metadata.PackageNotFoundError:
        return "unknown"


def collect_versions() -> Dict[str, str]:
    return {name: _version(name) for name in ("agentdeck-termsync", "pyte", "paramiko", "typer")}


class DiagnosticsManager:
    """Manages diagnostic snapshot generation and export.

    Responsibilities:
    - Generate troubleshooting snapshots
    - Include the client view of attached sessions when a mirror is given
    - Export snapshots to files
    """

    def __init__(
        self,
        terminal_manager: TerminalManager,
        log_manager: LogManager,
        pool: Optional[ConnectionPool] = None,
        version_info: Optional[Dict[str, str]] = None,
    ):
        """Initialize diagnostics manager.

        Args:
            terminal_manager: TerminalManager instance for terminal state
            log_manager: LogManager instance for log access
            pool: ConnectionPool whose host status is reported
            version_info: Dictionary of version information (collected if omitted)
        """
        self.terminal_manager = terminal_manager
        self.log_manager = log_manager
        self.pool = pool
        self.version_info = version_info if version_info is not None else collect_versions()
        self.screens: Dict[str, ClientScreen] = {}

    def attach_screen(self, session_id: str, screen: ClientScreen) -> None:
        """Include ``screen``'s rendered view for ``session_id`` in snapshots."""
        self.screens[session_id] = screen

    def generate_snapshot(self) -> str:
        """Generate a complete troubleshooting snapshot.

        Returns:
            Formatted snapshot text
        """
        lines: List[str] = []

        lines.append(f"timestamp: {datetime.now(timezone.utc).isoformat()}")
        lines.append("versions:")
        for name, version in sorted(self.version_info.items()):
            lines.append(f"  {name}: {version}")

        lines.append("terminals:")
        for session_id in self.terminal_manager.list_terminals():
            term = self.terminal_manager.get(session_id)
            if term is None:
                continue
            info = term.info()
            cols, rows = info["size"]
            lines.append(
                f"  - {session_id}: state={info['state']} mode={info['mode'] or '-'} "
                f"target={info['target'] or '-'} host={info['host_id'] or 'local'} size={cols}x{rows}"
            )
            pty_size = info.get("pty_size")
            lines.append(
                f"    transport={info['transport'] or 'none'} pty_size={pty_size or 'n/a'} "
                f"connection={info['connection'] or 'n/a'} errors={info['consecutive_errors']}"
            )
            if "tracker_rows" in info:
                lines.append(
                    f"    tracker: rows={info['tracker_rows']} history_index={info['tracker_history_index']} "
                    f"alt_screen={info['alt_screen']} lines_since_refresh={info['lines_since_refresh']}"
                )
            screen = self.screens.get(session_id)
            if screen is not None:
                lines.append("    client_view:")
                for row in screen.display():
                    lines.append(f"      |{row}")

        if self.pool is not None:
            lines.append("hosts:")
            for status in self.pool.status():
                checked = (
                    datetime.fromtimestamp(status.last_check, timezone.utc).isoformat() if status.last_check else "never"
                )
                lines.append(
                    f"  - {status.host_id}: connected={status.connected} "
                    f"last_check={checked} last_error={status.last_error or '-'}"
                )

        # Recent logs
        lines.append("---- recent events ----")
        lines.append(self._recent_log_text("events"))
        lines.append("---- recent errors ----")
        lines.append(self._recent_log_text("errors"))
        lines.append("---- recent debug ----")
        lines.append(self._recent_log_text("debug"))
        lines.append("---- recent frames ----")
        lines.append(self._recent_log_text("frames"))

        return "\n".join(lines)

    def update_troubleshooting_log(self) -> str:
        """Generate snapshot and replace the troubleshooting log with it."""
        snapshot = self.generate_snapshot()
        self.log_manager.replace("troubleshooting", snapshot)
        return snapshot

    def export_to_file(self, target_dir: str = "troubleshooting") -> Optional[str]:
        """Export troubleshooting snapshot to file.

        Returns:
            Path to saved file, or None if export failed
        """
        snapshot = self.update_troubleshooting_log()
        try:
            dir_path = Path(target_dir)
            dir_path.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            target_file = dir_path / f"termsync_snapshot_{timestamp}.txt"
            target_file.write_text(snapshot, encoding="utf-8")
            return str(target_file)
        except OSError as e:
            self.log_manager.add("errors", f"snapshot export failed: {e}")
            return None

    def _recent_log_text(self, category: str, limit: int = 50) -> str:
        recent = self.log_manager.recent(category, limit)
        if not recent:
            return f"(no {category})"
        return "\n".join(recent)
