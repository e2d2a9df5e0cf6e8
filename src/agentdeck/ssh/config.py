"""Per-host connection settings consumed by the connection pool."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional


_SPEC_RE = re.compile(r"^(?:(?P<user>[^@]+)@)?(?P<host>[^:@]+)(?::(?P<port>\d+))?$")


@dataclass(frozen=True)
class HostConfig:
    host_id: str
    host: str
    user: str = ""
    port: int = 22
    identity_file: str = ""
    password: str = ""
    jump_host: str = ""
    tmux_path: str = "tmux"
    connect_timeout: float = 10.0
    keepalive: int = 30

    @property
    def target(self) -> str:
        """``user@host`` (or just ``host``) for display."""
        return f"{self.user}@{self.host}" if self.user else self.host

    @property
    def key_path(self) -> str:
        """Identity file with ``~`` expanded; empty when unset."""
        if not self.identity_file:
            return ""
        return os.path.expanduser(self.identity_file)

    @classmethod
    def parse(cls, spec: str, tmux_path: Optional[str] = None) -> "HostConfig":
        """Parse ``ID=user@host[:port]`` (or ``user@host[:port]``, id = host).

        Raises:
            ValueError: If the spec is malformed.
        """
        host_id, sep, rest = spec.partition("=")
        if not sep:
            rest, host_id = spec, ""
        m = _SPEC_RE.match(rest.strip())
        if not m:
            raise ValueError(f"invalid host spec {spec!r}, expected ID=user@host[:port]")
        host = m.group("host")
        return cls(
            host_id=host_id.strip() or host,
            host=host,
            user=m.group("user") or "",
            port=int(m.group("port") or 22),
            tmux_path=tmux_path or "tmux",
        )
