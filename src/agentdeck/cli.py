"""CLI for the agentdeck-termsync command."""

import sys
import time
from dataclasses import replace
from typing import List, Optional

import typer

from .ssh import ConnectionPool, HostConfig
from .termsync.client_screen import ClientScreen
from .termsync.config import SyncConfig
from .termsync.diagnostics import DiagnosticsManager
from .termsync.errors import TermSyncError
from .termsync.events import EventKind, SessionEvent
from .termsync.log_manager import LogManager
from .termsync.terminal import ConnectionState, TerminalState
from .termsync.terminal_manager import TerminalManager


app = typer.Typer(
    help="Keep a terminal view in sync with a local or remote tmux pane",
    add_completion=False,
)


def _build_pool(ssh: Optional[List[str]], log_manager: LogManager, config: SyncConfig) -> ConnectionPool:
    pool = ConnectionPool(path_prefix=config.remote_path_prefix, debug_logger=log_manager.debug_logger())
    for spec in ssh or []:
        try:
            cfg = HostConfig.parse(spec)
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--ssh")
        pool.register(cfg.host_id, cfg)
    return pool


def _size(config: SyncConfig, cols: int, rows: int):
    return cols or config.default_cols, rows or config.default_rows


SSH_HELP = "Host definition ID=user@host[:port] (repeatable)"


@app.command()
def attach(
    target: str = typer.Argument(..., help="tmux session or pane target"),
    host: str = typer.Option("", "--host", "-H", help="Host id for a remote session"),
    ssh: Optional[List[str]] = typer.Option(None, "--ssh", help=SSH_HELP),
    cols: int = typer.Option(0, "--cols", help="Client width (default from config)"),
    rows: int = typer.Option(0, "--rows", help="Client height (default from config)"),
):
    """
    Stream synchronized frames for TARGET to stdout until interrupted.

    Examples:
        # Local session
        agentdeck-termsync attach work

        # Remote session over a pooled SSH connection
        agentdeck-termsync attach work --host box --ssh box=me@box.local
    """
    config = SyncConfig.from_env()
    cols, rows = _size(config, cols, rows)
    log_manager = LogManager()
    pool = _build_pool(ssh, log_manager, config)

    def sink(event: SessionEvent) -> None:
        if event.kind is EventKind.FRAME:
            sys.stdout.write(event.payload.to_ansi())
        elif event.kind in (EventKind.HISTORY, EventKind.DATA):
            sys.stdout.write(event.payload)
        elif event.kind in (EventKind.EXIT, EventKind.CONNECTION_FAILED):
            typer.echo(f"\r\n[{event.kind.value}] {event.payload}", err=True)
        else:
            return
        sys.stdout.flush()

    manager = TerminalManager(event_sink=sink, pool=pool, config=config, log_manager=log_manager)
    term = manager.get_or_create(target)
    try:
        term.attach(target, cols, rows, host_id=host)
        while term.state is TerminalState.ATTACHED and term.connection_state is not ConnectionState.FAILED:
            time.sleep(0.2)
    except TermSyncError as e:
        typer.echo(f"attach failed: {e}", err=True)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        manager.close_all()
        pool.close_all()


@app.command()
def snapshot(
    target: str = typer.Argument(..., help="tmux session or pane target"),
    host: str = typer.Option("", "--host", "-H", help="Host id for a remote session"),
    ssh: Optional[List[str]] = typer.Option(None, "--ssh", help=SSH_HELP),
    cols: int = typer.Option(0, "--cols", help="Client width (default from config)"),
    rows: int = typer.Option(0, "--rows", help="Client height (default from config)"),
    cycles: int = typer.Option(1, "--cycles", "-n", help="Capture cycles to run"),
    history: bool = typer.Option(False, "--history", help="Include mirrored scrollback"),
    report: str = typer.Option("", "--report", help="Also write a troubleshooting snapshot into this directory"),
):
    """
    Print the client view that the synchronized frames produce for TARGET.
    """
    config = SyncConfig.from_env()
    cols, rows = _size(config, cols, rows)
    # Cycles are driven here, not by the background loop
    config = replace(config, poll_interval=3600.0, remote_poll_interval=3600.0)
    log_manager = LogManager()
    pool = _build_pool(ssh, log_manager, config)
    screen = ClientScreen(cols, rows)
    manager = TerminalManager(event_sink=screen.apply_event, pool=pool, config=config, log_manager=log_manager)
    term = manager.get_or_create(target)
    try:
        term.attach(target, cols, rows, host_id=host)
        for i in range(max(cycles, 1)):
            if i:
                time.sleep(config.resize_settle_delay)
            term.poll_once()
        if report:
            diagnostics = DiagnosticsManager(manager, log_manager, pool=pool)
            diagnostics.attach_screen(target, screen)
            path = diagnostics.export_to_file(report)
            typer.echo(f"report: {path or 'export failed'}", err=True)
    except TermSyncError as e:
        typer.echo(f"snapshot failed: {e}", err=True)
        raise typer.Exit(1)
    finally:
        manager.close_all()
        pool.close_all()
    typer.echo(screen.text(include_history=history))


@app.command()
def hosts(
    ssh: Optional[List[str]] = typer.Option(None, "--ssh", help=SSH_HELP),
    probe: bool = typer.Option(True, "--probe/--no-probe", help="Connect to each host first"),
):
    """
    Show connection status for the given hosts.
    """
    config = SyncConfig.from_env()
    log_manager = LogManager()
    pool = _build_pool(ssh, log_manager, config)
    try:
        if probe:
            pool.health_check()
        for status in pool.status():
            mark = "up" if status.connected else "down"
            detail = f"  ({status.last_error})" if status.last_error else ""
            typer.echo(f"{status.host_id}: {mark}{detail}")
    finally:
        pool.close_all()


if __name__ == "__main__":
    app()
