"""Tests for the execution event loop."""

from __future__ import annotations

import threading
import time

import pytest

from fakes import CommandRemote, FakeConnection, SilentRemote
from fleetrun.core.channel import (
    ChannelKind, ChannelOptions, Closed, Data, Eof, ExitSignal, ExitStatus,
    Stream, close_channel, exec_command, open_channel, send,
)
from fleetrun.core.errors import ChannelError, ChannelErrorKind, ExecErrorKind
from fleetrun.core.loop import CLOSED_WITHOUT_STATUS, ChannelState, ExecResult


def _watched(conn: FakeConnection, timeout=None):
    channel = open_channel(conn, ChannelKind.EXEC, ChannelOptions(timeout=timeout))
    conn.loop.watch(channel)
    return channel


@pytest.mark.parametrize("code", [0, 1, 2, 127, 255])
@pytest.mark.parametrize("order", ["status_first", "data_first", "eof_last"])
def test_exit_status_is_reported_whatever_the_interleaving(conn: FakeConnection, code: int, order: str) -> None:
    """Any exit status N ends as ExitStatus(N), regardless of event order before Closed."""
    channel = _watched(conn)
    cid = channel.id
    events = {
        "status_first": [ExitStatus(cid, code), Data(cid, Stream.STDOUT, b"out"), Eof(cid)],
        "data_first": [Data(cid, Stream.STDOUT, b"out"), Eof(cid), ExitStatus(cid, code)],
        "eof_last": [Data(cid, Stream.STDOUT, b"o"), ExitStatus(cid, code),
                     Data(cid, Stream.STDOUT, b"ut"), Eof(cid)],
    }[order]
    conn.push(*events, Closed(cid))

    result = conn.loop.wait(channel)

    assert isinstance(result, ExecResult)
    assert result.terminal == ExitStatus(cid, code)
    assert result.exit_code == code
    assert result.stdout == b"out"
    assert result.success is (code == 0)


def test_channels_are_isolated(conn: FakeConnection) -> None:
    """Interleaved events for several channels never leak into each other."""
    a, b = _watched(conn), _watched(conn)
    conn.push(
        Data(a.id, Stream.STDOUT, b"a1"),
        Data(b.id, Stream.STDOUT, b"b1"),
        Data(b.id, Stream.STDERR, b"b-err"),
        Data(a.id, Stream.STDOUT, b"a2"),
        ExitStatus(b.id, 3), Eof(a.id), ExitStatus(a.id, 0),
        Closed(a.id), Closed(b.id),
    )

    outcomes = conn.loop.run()

    assert outcomes[a.id].stdout == b"a1a2"
    assert outcomes[a.id].stderr == b""
    assert outcomes[a.id].exit_code == 0
    assert outcomes[b.id].stdout == b"b1"
    assert outcomes[b.id].stderr == b"b-err"
    assert outcomes[b.id].exit_code == 3


def test_close_without_status(conn: FakeConnection) -> None:
    channel = _watched(conn)
    conn.push(Data(channel.id, Stream.STDOUT, b"partial"), Closed(channel.id))

    result = conn.loop.wait(channel)

    assert result.terminal == CLOSED_WITHOUT_STATUS
    assert result.exit_code is None
    assert result.stdout == b"partial"
    assert result.error.kind == ExecErrorKind.UNKNOWN_OUTCOME
    # remote closure is loop state; releasing our end still reaches the connection
    assert not channel.closed
    close_channel(channel)
    assert conn.channels[channel.id].closed


def test_exit_signal(conn: FakeConnection) -> None:
    channel = _watched(conn)
    conn.push(Data(channel.id, Stream.STDERR, b"bye\n"), ExitSignal(channel.id, "KILL"), Closed(channel.id))

    result = conn.loop.wait(channel)

    assert result.terminal == ExitSignal(channel.id, "KILL")
    assert result.error.kind == ExecErrorKind.SIGNALED
    assert result.error.signal == "KILL"
    with pytest.raises(Exception) as excinfo:
        result.check()
    assert "bye" in str(excinfo.value)


def test_second_exit_report_is_ignored(conn: FakeConnection, log_messages) -> None:
    channel = _watched(conn)
    conn.push(ExitStatus(channel.id, 4), ExitStatus(channel.id, 0), Closed(channel.id))

    assert conn.loop.wait(channel).exit_code == 4
    assert any("second exit report" in m for m in log_messages)


def test_events_for_unknown_channels_are_discarded(conn: FakeConnection, log_messages) -> None:
    channel = _watched(conn)
    conn.push(
        Data(99, Stream.STDOUT, b"stray"),
        Data(channel.id, Stream.STDOUT, b"mine"),
        ExitStatus(channel.id, 0),
        Closed(channel.id),
    )

    result = conn.loop.wait(channel)

    assert result.stdout == b"mine"
    assert any("inactive channel 99" in m for m in log_messages)


def test_events_after_close_are_discarded(conn: FakeConnection, log_messages) -> None:
    a, b = _watched(conn), _watched(conn)
    conn.push(Closed(a.id), Data(a.id, Stream.STDOUT, b"late"), ExitStatus(b.id, 0), Closed(b.id))

    outcomes = conn.loop.run()

    assert outcomes[a.id].stdout == b""
    assert outcomes[b.id].exit_code == 0
    assert any("inactive channel" in m for m in log_messages)


def test_timeout_closes_channel_then_send_fails() -> None:
    """A channel with a 100ms deadline on a command that never exits times out."""
    conn = FakeConnection(handler=lambda command: SilentRemote())
    channel = _watched(conn, timeout=0.1)
    exec_command(channel, "sleep 5")

    started = time.monotonic()
    outcome = conn.loop.wait(channel)
    elapsed = time.monotonic() - started

    assert isinstance(outcome, ChannelError)
    assert outcome.kind == ChannelErrorKind.TIMEOUT
    assert elapsed < 1.0
    assert conn.channels[channel.id].closed
    with pytest.raises(ChannelError) as excinfo:
        send(channel, b"more input")
    assert excinfo.value.kind == ChannelErrorKind.CLOSED


def test_timeout_of_one_channel_leaves_others_running() -> None:
    conn = FakeConnection(handler=lambda command: SilentRemote())
    slow = _watched(conn, timeout=0.05)
    fast = _watched(conn)
    exec_command(slow, "sleep 5")
    exec_command(fast, "true")

    def finish_fast():
        time.sleep(0.15)
        conn.push(ExitStatus(fast.id, 0), Closed(fast.id))

    threading.Thread(target=finish_fast).start()
    outcomes = conn.loop.run()

    assert outcomes[slow.id].kind == ChannelErrorKind.TIMEOUT
    assert outcomes[fast.id].exit_code == 0


def test_cancel_closes_every_active_channel() -> None:
    cancel = threading.Event()
    conn = FakeConnection(handler=lambda command: SilentRemote(), cancel_event=cancel)
    a, b = _watched(conn), _watched(conn)
    threading.Timer(0.05, cancel.set).start()

    outcomes = conn.loop.run()

    for channel in (a, b):
        assert outcomes[channel.id] == ChannelError(ChannelErrorKind.CLOSED, "cancelled")
        assert channel.closed


def test_state_transitions(conn: FakeConnection) -> None:
    channel = _watched(conn)
    assert conn.loop.state(channel) == ChannelState.OPEN

    conn.push(Data(channel.id, Stream.STDOUT, b"x\n"))
    assert conn.loop.read_line(channel) == b"x\n"
    assert conn.loop.state(channel) == ChannelState.RUNNING

    conn.push(ExitStatus(channel.id, 0), Closed(channel.id))
    conn.loop.wait(channel)
    assert conn.loop.state(channel) == ChannelState.CLOSED


def test_read_returns_short_only_at_eof(conn: FakeConnection) -> None:
    channel = _watched(conn)
    conn.push(Data(channel.id, Stream.STDOUT, b"abc"), Data(channel.id, Stream.STDOUT, b"def"), Eof(channel.id))

    assert conn.loop.read(channel, 4) == b"abcd"
    assert conn.loop.read(channel, 4) == b"ef"
    assert conn.loop.read(channel, 4) == b""


def test_wait_on_unwatched_channel_raises(conn: FakeConnection) -> None:
    channel = open_channel(conn)
    with pytest.raises(ChannelError) as excinfo:
        conn.loop.wait(channel)
    assert excinfo.value.kind == ChannelErrorKind.CLOSED


def test_stdout_and_stderr_are_kept_apart() -> None:
    conn = FakeConnection(handler=lambda command: CommandRemote(b"out\n", b"err\n", 1))
    channel = _watched(conn)
    exec_command(channel, "false")

    result = conn.loop.wait(channel)

    assert result.text() == "out\n"
    assert result.text(Stream.STDERR) == "err\n"
    assert result.error.code == 1
    assert "err" in result.error.message
