"""Tuning constants for the capture loop and transports.

None of these values carry correctness; they only trade latency for load.
Defaults match what the desktop client shipped with and can be overridden
through ``AGENTDECK_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional


ENV_PREFIX = "AGENTDECK_"


@dataclass(frozen=True)
class SyncConfig:
    poll_interval: float = 0.08  # ~12.5 fps locally
    remote_poll_interval: float = 0.10  # slower for SSH latency
    idle_refresh_lines: int = 2000
    max_consecutive_errors: int = 3
    max_reconnect_attempts: int = 5
    base_backoff: float = 0.5
    max_backoff: float = 30.0
    resize_settle_delay: float = 0.05
    remote_command_timeout: float = 10.0  # bounds a capture on a half-open link
    seam_filter_limit: int = 4096
    term: str = "xterm-256color"
    colorterm: str = "truecolor"
    default_cols: int = 80
    default_rows: int = 24
    remote_path_prefix: str = "/opt/homebrew/bin:/usr/local/bin"

    def backoff_for(self, attempt: int) -> float:
        """Delay before reconnection ``attempt`` (1-based), doubling up to max_backoff."""
        delay = self.base_backoff * (2 ** max(attempt - 1, 0))
        return min(delay, self.max_backoff)

    def terminal_env(self, base: Optional[Mapping[str, str]] = None) -> dict:
        """Environment for spawned processes with a fixed terminal type."""
        env = dict(os.environ if base is None else base)
        env["TERM"] = self.term
        env["COLORTERM"] = self.colorterm
        return env

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        """Build a config from defaults plus ``AGENTDECK_<FIELD>`` overrides.

        Raises:
            ValueError: If an override cannot be parsed as the field's type.
        """
        environ = os.environ if environ is None else environ
        config = cls()
        overrides = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            current = getattr(config, f.name)
            try:
                overrides[f.name] = type(current)(raw)
            except ValueError as e:
                raise ValueError(f"invalid {ENV_PREFIX}{f.name.upper()}={raw!r}: {e}") from e
        return replace(config, **overrides) if overrides else config
