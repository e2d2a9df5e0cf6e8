"""SSH control connections shared by every remote terminal on a host."""

from .config import HostConfig
from .connection import HostConnection
from .pool import ConnectionPool, HostStatus

__all__ = ["ConnectionPool", "HostConfig", "HostConnection", "HostStatus"]
