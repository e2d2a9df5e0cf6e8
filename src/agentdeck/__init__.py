"""Agent Deck terminal synchronization."""

__version__ = "0.1.0"
