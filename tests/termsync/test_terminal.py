"""Tests for Terminal - attach sequence, capture loop, refresh and teardown.

tmux is replaced by a scripted FakePane and the pty by a MagicMock; the
background loop is parked (poll interval of an hour) and cycles are driven
with poll_once().
"""

import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from agentdeck.termsync.errors import CaptureError, ConstructionError, StateError, TransportError
from agentdeck.termsync.events import EventKind
from agentdeck.termsync.terminal import ConnectionState, Terminal, TerminalState


@pytest.fixture
def local(make_pane, recorder, fast_config):
    pane = make_pane(["$ ", "", ""], history=["old 1", "old 2"])
    transport = MagicMock(kind="local")
    with patch("agentdeck.termsync.terminal.LocalTmuxExecutor", return_value=pane), patch(
        "agentdeck.termsync.terminal.PseudoTerminalProcess"
    ) as proc_cls:
        proc_cls.spawn_with_size.return_value = transport
        proc_cls.spawn_command.return_value = transport
        proc_cls.spawn_shell.return_value = transport
        term = Terminal("s1", event_sink=recorder, config=fast_config)
        term.pane = pane
        term.proc_cls = proc_cls
        term.mock_transport = transport
        yield term
        term.close()


@pytest.fixture
def attached(local):
    local.attach("work", 80, 3)
    return local


class TestAttach:
    def test_attach_sequence(self, local, recorder, fast_config):
        local.attach("work", 80, 3)

        assert local.pane.calls[0] == ["resize-window", "-t", "work", "-x", "80", "-y", "3"]
        local.proc_cls.spawn_with_size.assert_called_once_with(
            80, 3, ["tmux", "attach-session", "-t", "work"], fast_config
        )
        local.mock_transport.start_reader.assert_called_once()
        assert local.state is TerminalState.ATTACHED
        assert local.mode == "polling"

        history = recorder.of(EventKind.HISTORY)
        assert len(history) == 1
        assert history[0].payload.startswith("old 1\r\nold 2\r\n$ ")
        assert history[0].meta["reason"] == "attach"

    def test_first_poll_emits_full_viewport_after_history(self, attached, recorder):
        assert attached.poll_once() is True

        frames = recorder.of(EventKind.FRAME)
        assert len(frames) == 1
        assert frames[0].payload.full
        assert recorder.kinds().index(EventKind.HISTORY) < recorder.kinds().index(EventKind.FRAME)

    def test_unchanged_pane_emits_nothing(self, attached, recorder):
        attached.poll_once()
        recorder.clear()

        attached.poll_once()

        assert recorder.of(EventKind.FRAME) == []

    def test_failed_preload_does_not_fail_attach(self, local, recorder):
        local.pane.fail.add("capture-pane")

        local.attach("work", 80, 3)

        assert local.state is TerminalState.ATTACHED
        assert recorder.of(EventKind.HISTORY) == []

    def test_spawn_failure_propagates(self, local):
        local.proc_cls.spawn_with_size.side_effect = ConstructionError("cannot exec tmux")

        with pytest.raises(ConstructionError):
            local.attach("work", 80, 3)

        assert local.state is TerminalState.UNATTACHED

    def test_second_attach_is_a_no_op(self, attached):
        attached.attach("other", 80, 3)

        assert attached.target == "work"
        assert attached.proc_cls.spawn_with_size.call_count == 1

    def test_attach_without_size_spawns_plain(self, local):
        local.attach("work")

        local.proc_cls.spawn_command.assert_called_once()
        assert not local.pane.ran("resize-window")


class TestManualRefresh:
    def test_closed_terminal(self):
        term = Terminal("x")
        term.close()

        with pytest.raises(StateError, match="closed"):
            term.trigger_manual_refresh()

    def test_no_tmux_session(self):
        term = Terminal("x")

        with pytest.raises(StateError, match="no tmux session"):
            term.trigger_manual_refresh()

    def test_invalid_session_leaves_counter_and_tracker(self, attached):
        attached.poll_once()
        attached._lines_since_refresh = 500
        before = attached.tracker.snapshot()
        attached.pane.fail.add("capture-pane")

        for _ in range(2):
            with pytest.raises(CaptureError, match="capture-pane"):
                attached.trigger_manual_refresh()

        assert attached.lines_since_refresh == 500
        assert attached.tracker.snapshot() is before

    def test_success_resets_counter_and_tracker(self, attached, recorder):
        attached.poll_once()
        attached._lines_since_refresh = 500
        recorder.clear()

        attached.trigger_manual_refresh()

        assert attached.lines_since_refresh == 0
        assert not attached.tracker.snapshot().synced
        history = recorder.of(EventKind.HISTORY)
        assert history[0].meta == {"reason": "manual", "replace": True}

        attached.poll_once()
        assert recorder.of(EventKind.FRAME)[-1].payload.full


class TestCaptureLoop:
    def test_counter_accumulates_diff_lines(self, attached):
        attached.poll_once()
        assert attached.lines_since_refresh == 3

        attached.pane.scroll("x")
        attached.poll_once()

        # one history line + one changed row
        assert attached.lines_since_refresh == 5

    def test_idle_refresh_when_threshold_crossed(self, attached, recorder):
        attached.set_config(replace(attached.config, idle_refresh_lines=5))
        attached.poll_once()
        recorder.clear()

        attached.pane.scroll("x", "y")
        attached.poll_once()

        assert attached.lines_since_refresh == 0
        assert recorder.of(EventKind.HISTORY)[0].meta["reason"] == "idle"
        assert not attached.tracker.snapshot().synced

    def test_history_shrink_resets(self, attached, recorder):
        attached.poll_once()
        recorder.clear()

        attached.pane.history = []
        attached.poll_once()

        assert recorder.of(EventKind.FRAME)[0].payload.full

    def test_transient_capture_error_is_retried(self, attached):
        attached.poll_once()
        attached.pane.fail.add("display-message")

        for _ in range(5):
            assert attached.poll_once() is True

        assert attached.state is TerminalState.ATTACHED

    def test_session_gone_detaches(self, attached, recorder):
        attached.set_config(replace(attached.config, max_consecutive_errors=2))
        attached.poll_once()
        attached.pane.fail.update({"display-message", "has-session"})

        assert attached.poll_once() is True
        assert attached.poll_once() is False

        assert attached.state is TerminalState.UNATTACHED
        assert recorder.of(EventKind.EXIT)[0].payload == "tmux session ended"
        attached.mock_transport.close.assert_called_once()
        with pytest.raises(StateError, match="no tmux session"):
            attached.trigger_manual_refresh()

    def test_failing_sink_does_not_commit(self, attached):
        def broken(event):
            if event.kind is EventKind.FRAME:
                raise RuntimeError("ui gone")

        attached.set_event_sink(broken)

        assert attached.poll_once() is True
        assert not attached.tracker.snapshot().synced

    def test_transport_exit_returns_to_unattached(self, attached, recorder):
        on_exit = attached.mock_transport.start_reader.call_args[0][1]

        on_exit(0)

        assert attached.state is TerminalState.UNATTACHED
        assert recorder.of(EventKind.EXIT)
        attached.attach("work", 80, 3)
        assert attached.state is TerminalState.ATTACHED


class TestInputAndResize:
    def test_write_goes_to_transport(self, attached):
        attached.write("ls\r")

        attached.mock_transport.write.assert_called_once_with("ls\r")

    def test_write_unattached(self):
        with pytest.raises(StateError):
            Terminal("x").write("ls")

    def test_resize_propagates_and_resets(self, attached, recorder):
        attached.poll_once()

        attached.resize(120, 40)

        attached.mock_transport.resize.assert_called_once_with(120, 40)
        assert ["resize-window", "-t", "work", "-x", "120", "-y", "40"] in attached.pane.calls
        assert not attached.tracker.snapshot().synced
        assert attached.tracker.viewport_rows == 40
        assert recorder.of(EventKind.RESIZE)[-1].payload == (120, 40)

    def test_repeated_resize_is_idempotent(self, attached):
        attached.resize(120, 40)
        attached.resize(120, 40)

        assert attached.mock_transport.resize.call_count == 1

    def test_transport_resize_failure_is_not_raised(self, attached):
        attached.mock_transport.resize.side_effect = TransportError("pty is closed")

        attached.resize(100, 30)

        assert (attached.cols, attached.rows) == (100, 30)

    def test_overlapping_resizes_end_at_last_size(self, attached):
        """A slow first resize cannot land after a later one."""
        entered = threading.Event()
        release = threading.Event()
        applied = []

        def slow_resize(cols, rows):
            if (cols, rows) == (80, 24):
                entered.set()
                release.wait(2.0)
            applied.append((cols, rows))

        attached.mock_transport.resize.side_effect = slow_resize
        first = threading.Thread(target=attached.resize, args=(80, 24))
        first.start()
        assert entered.wait(2.0)
        second = threading.Thread(target=attached.resize, args=(120, 40))
        second.start()
        time.sleep(0.1)
        release.set()
        first.join(2.0)
        second.join(2.0)

        assert applied == [(80, 24), (120, 40)]
        assert (attached.cols, attached.rows) == (120, 40)
        assert attached.pane.calls[-1] == ["resize-window", "-t", "work", "-x", "120", "-y", "40"]
        assert attached.tracker.viewport_rows == 40


class TestClose:
    def test_close_is_idempotent(self, attached):
        attached.close()
        attached.close()

        attached.mock_transport.close.assert_called_once()
        assert attached.is_closed

    def test_operations_after_close_fail_fast(self, attached):
        attached.close()

        with pytest.raises(StateError, match="closed"):
            attached.write("x")
        with pytest.raises(StateError, match="closed"):
            attached.resize(10, 10)
        with pytest.raises(StateError, match="closed"):
            attached.attach("work", 80, 3)
        assert attached.poll_once() is False


class TestShellAndDirect:
    def test_shell_streams_decoded_data(self, local, recorder):
        local.start_shell(80, 24)
        on_output = local.mock_transport.start_reader.call_args[0][0]

        on_output(b"hi \xc3")
        on_output(b"\xa9")

        assert [e.payload for e in recorder.of(EventKind.DATA)] == ["hi ", "©"]
        assert local.mode == "shell"

    def test_direct_attach_filters_only_the_seam(self, local, recorder):
        local.set_config(replace(local.config, seam_filter_limit=8))
        local.attach_direct("work", 80, 24)
        on_output = local.mock_transport.start_reader.call_args[0][0]

        on_output(b"\x1b[2J\x1b[Hhello")
        on_output(b"\x1b[2Jlater")

        assert [e.payload for e in recorder.of(EventKind.DATA)] == ["hello", "\x1b[2Jlater"]


@pytest.fixture
def remote(make_pane, recorder, fast_config):
    pane = make_pane(["$ ", ""])
    pool = MagicMock()
    pool.test_connection.return_value = True
    # The pooled connection is gone, so capture failures mean connection loss
    pool.get_if_exists.return_value = None
    config = replace(fast_config, max_consecutive_errors=1, max_reconnect_attempts=2)
    with patch("agentdeck.termsync.terminal.RemoteTmuxExecutor", return_value=pane) as executor_cls, patch(
        "agentdeck.termsync.terminal.RemotePseudoTerminal"
    ) as remote_cls:
        remote_cls.attach.side_effect = ConstructionError("channel refused")
        term = Terminal("r1", event_sink=recorder, pool=pool, config=config)
        term.pane = pane
        term.pool = pool
        term.remote_cls = remote_cls
        term.executor_cls = executor_cls
        yield term
        term.close()


class TestRemote:
    def test_attach_without_pool(self):
        with pytest.raises(StateError, match="connection pool"):
            Terminal("x").attach("work", host_id="box")

    def test_read_only_fallback_uses_send_keys(self, remote):
        remote.attach("work", 80, 2, host_id="box")

        assert remote.transport is None
        assert remote.connection_state is ConnectionState.CONNECTED
        remote.write("ls\r")
        assert ["send-keys", "-t", "work", "-l", "ls\r"] in remote.pane.calls

    def test_interactive_channel_used_when_available(self, remote):
        channel = MagicMock(kind="remote")
        remote.remote_cls.attach.side_effect = None
        remote.remote_cls.attach.return_value = channel

        remote.attach("work", 80, 2, host_id="box")
        remote.write("ls\r")

        channel.write.assert_called_once_with("ls\r")

    def test_reconnect_restores_connection(self, remote, recorder):
        remote.attach("work", 80, 2, host_id="box")
        remote.poll_once()
        remote.pane.fail.add("display-message")

        assert remote.poll_once() is True

        kinds = recorder.kinds()
        lost = kinds.index(EventKind.CONNECTION_LOST)
        assert kinds.index(EventKind.RECONNECTING) > lost
        assert kinds.index(EventKind.CONNECTION_RESTORED) > lost
        remote.pool.close.assert_called_with("box")
        assert remote.connection_state is ConnectionState.CONNECTED

    def test_remote_commands_are_time_bounded(self, remote):
        remote.attach("work", 80, 2, host_id="box")

        remote.executor_cls.assert_called_once_with(remote.pool, "box", timeout=remote.config.remote_command_timeout)

    def test_pane_failure_on_live_host_keeps_connection(self, remote, recorder):
        remote.pool.get_if_exists.return_value = MagicMock(**{"test.return_value": True})
        remote.attach("work", 80, 2, host_id="box")
        remote.pane.fail.add("display-message")

        assert remote.poll_once() is True

        remote.pool.close.assert_not_called()
        assert recorder.of(EventKind.CONNECTION_LOST) == []
        assert remote.connection_state is ConnectionState.CONNECTED

    def test_reconnect_gives_up(self, remote, recorder):
        remote.pool.test_connection.return_value = False
        remote.attach("work", 80, 2, host_id="box")
        remote.pane.fail.add("display-message")

        assert remote.poll_once() is False

        assert len(recorder.of(EventKind.RECONNECTING)) == 2
        assert recorder.of(EventKind.CONNECTION_FAILED)[0].meta["attempts"] == 2
        assert remote.connection_state is ConnectionState.FAILED

    def test_host_back_but_session_gone(self, remote, recorder):
        remote.attach("work", 80, 2, host_id="box")
        remote.pane.fail.update({"display-message", "has-session"})

        assert remote.poll_once() is False

        assert recorder.of(EventKind.EXIT)[0].payload == "remote tmux session ended"
        assert remote.state is TerminalState.UNATTACHED
