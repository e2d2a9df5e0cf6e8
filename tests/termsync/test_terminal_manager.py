"""Tests for TerminalManager - single ownership of each session's Terminal."""

import threading
from unittest.mock import MagicMock

import pytest

from agentdeck.termsync.config import SyncConfig
from agentdeck.termsync.errors import SessionNotFoundError, StateError
from agentdeck.termsync.terminal_manager import TerminalManager


class TestGetOrCreate:
    def test_same_instance_for_same_id(self):
        manager = TerminalManager()

        first = manager.get_or_create("a")
        second = manager.get_or_create("a")

        assert first is second
        assert manager.count() == 1

    def test_concurrent_creation_builds_one_terminal(self):
        """Many threads racing on a brand-new id all get the same Terminal."""
        manager = TerminalManager()
        barrier = threading.Barrier(16)
        results = []

        def worker():
            barrier.wait()
            results.append(manager.get_or_create("race"))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(results) == 16
        assert all(term is results[0] for term in results)
        assert manager.count() == 1

    def test_dependencies_applied_to_new_terminals(self):
        sink = MagicMock()
        pool = MagicMock()
        config = SyncConfig(poll_interval=1.0)
        manager = TerminalManager(event_sink=sink, pool=pool, config=config)

        term = manager.get_or_create("a")

        assert term._sink is sink
        assert term._pool is pool
        assert term.config is config


class TestClose:
    def test_entry_removed_before_teardown(self):
        manager = TerminalManager()
        term = manager.get_or_create("a")
        seen = []
        original_close = term.close

        def checking_close():
            seen.append(manager.get("a"))
            original_close()

        term.close = checking_close
        assert manager.close("a") is True

        assert seen == [None]
        assert term.is_closed

    def test_close_unknown_id(self):
        assert TerminalManager().close("missing") is False

    def test_closed_terminal_never_handed_out_again(self):
        manager = TerminalManager()
        old = manager.get_or_create("a")

        manager.close("a")
        new = manager.get_or_create("a")

        assert new is not old
        assert not new.is_closed

    def test_close_all(self):
        manager = TerminalManager()
        terms = [manager.get_or_create(name) for name in ("a", "b", "c")]

        manager.close_all()

        assert manager.count() == 0
        assert all(t.is_closed for t in terms)
        manager.close_all()


class TestBroadcast:
    def test_sink_reaches_existing_and_future_terminals(self):
        manager = TerminalManager()
        before = manager.get_or_create("a")
        sink = MagicMock()

        manager.set_event_sink(sink)
        after = manager.get_or_create("b")

        assert before._sink is sink
        assert after._sink is sink

    def test_pool_and_config_broadcast(self):
        manager = TerminalManager()
        term = manager.get_or_create("a")
        pool = MagicMock()
        config = SyncConfig(idle_refresh_lines=10)

        manager.set_connection_pool(pool)
        manager.set_config(config)

        assert term._pool is pool
        assert term.config is config
        assert manager.get_or_create("b").config is config


class TestRouting:
    def test_refresh_unknown_session(self):
        with pytest.raises(SessionNotFoundError, match="not found"):
            TerminalManager().trigger_manual_refresh("missing")

    def test_refresh_error_comes_from_terminal(self):
        manager = TerminalManager()
        manager.get_or_create("a")

        with pytest.raises(StateError, match="no tmux session"):
            manager.trigger_manual_refresh("a")

    def test_resize_and_write_unknown_session(self):
        manager = TerminalManager()

        with pytest.raises(SessionNotFoundError):
            manager.resize("missing", 80, 24)
        with pytest.raises(SessionNotFoundError):
            manager.write("missing", "ls")

    def test_list_terminals(self):
        manager = TerminalManager()
        manager.get_or_create("a")
        manager.get_or_create("b")

        assert sorted(manager.list_terminals()) == ["a", "b"]
