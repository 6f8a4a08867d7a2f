"""
SSH channels for fleetrun.
A channel is one multiplexed stream inside a Connection, running exactly one
command or one SCP session. Output is never read here; it arrives as
ChannelEvents consumed by the Connection's EventLoop.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from loguru import logger

from .errors import ChannelError, ChannelErrorKind

DEFAULT_WINDOW_SIZE = 128 * 1024
DEFAULT_MAX_PACKET_SIZE = 32 * 1024


class ChannelKind(str, Enum):
    EXEC = "exec"
    SCP = "scp"


class ChannelType(str, Enum):
    SESSION = "session"
    SUBSYSTEM = "subsystem"


class Stream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


# ============ Events ============

@dataclass(frozen=True)
class Data:
    channel_id: int
    stream: Stream
    data: bytes


@dataclass(frozen=True)
class Eof:
    channel_id: int


@dataclass(frozen=True)
class ExitStatus:
    channel_id: int
    code: int


@dataclass(frozen=True)
class ExitSignal:
    channel_id: int
    name: str


@dataclass(frozen=True)
class Closed:
    channel_id: int


ChannelEvent = Union[Data, Eof, ExitStatus, ExitSignal, Closed]


# ============ Channels ============

@dataclass(frozen=True)
class ChannelOptions:
    """Options for opening a channel. Built once per call."""
    type: ChannelType = ChannelType.SESSION
    timeout: Optional[float] = None  # None means unbounded
    initial_window_size: int = DEFAULT_WINDOW_SIZE
    max_packet_size: int = DEFAULT_MAX_PACKET_SIZE


@dataclass(eq=False)
class Channel:
    """An open channel. `id` is unique only within its connection."""
    connection: Any
    id: int
    kind: ChannelKind
    type: ChannelType = ChannelType.SESSION
    deadline: Optional[float] = None
    closed: bool = field(default=False)

    def remaining(self) -> Optional[float]:
        """Seconds left before the channel deadline, or None if unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


def open_channel(connection, kind: ChannelKind = ChannelKind.EXEC,
                 options: Optional[ChannelOptions] = None) -> Channel:
    """
    Open a channel on a connection.
    Raises ChannelError(open_failed | timeout).
    """
    options = options or ChannelOptions()
    channel_id = connection.open_channel(
        window_size=options.initial_window_size,
        max_packet_size=options.max_packet_size,
        timeout=options.timeout,
    )
    deadline = None
    if options.timeout is not None:
        deadline = time.monotonic() + options.timeout
    logger.debug(f"channel {channel_id}: opened ({kind.value}) on {connection.host}")
    return Channel(
        connection=connection,
        id=channel_id,
        kind=kind,
        type=options.type,
        deadline=deadline,
    )


def exec_command(channel: Channel, command: str, timeout: Optional[float] = None):
    """Start remote execution. Output is delivered through the event loop."""
    _ensure_open(channel)
    if channel.type == ChannelType.SUBSYSTEM:
        channel.connection.invoke_subsystem(channel.id, command, timeout)
    else:
        channel.connection.exec(channel.id, command, timeout)


def send(channel: Channel, data: bytes, stream: Stream = Stream.STDOUT,
         timeout: Optional[float] = None):
    """
    Push bytes to the remote side of a channel.
    Raises ChannelError(send_failed | closed | timeout).
    """
    _ensure_open(channel)
    if timeout is None:
        timeout = channel.remaining()
    channel.connection.send(channel.id, stream, data, timeout)


def send_eof(channel: Channel):
    """Signal that no more input will be sent."""
    _ensure_open(channel)
    channel.connection.send_eof(channel.id)


def close_channel(channel: Channel):
    """Tear down a channel. Closing an already-closed channel is a no-op."""
    if channel.closed:
        return
    channel.closed = True
    channel.connection.close_channel(channel.id)
    logger.debug(f"channel {channel.id}: closed")


def execute(connection, command: str, options: Optional[ChannelOptions] = None):
    """
    Run one command on its own channel and wait for it to finish.
    Returns the ExecResult; raises ChannelError on open/send failure or when
    the channel deadline passes. The channel is closed on every path.
    """
    channel = open_channel(connection, ChannelKind.EXEC, options)
    loop = connection.loop
    try:
        loop.watch(channel)
        exec_command(channel, command, channel.remaining())
        send_eof(channel)
        outcome = loop.wait(channel)
    finally:
        loop.forget(channel)
        close_channel(channel)
    if isinstance(outcome, ChannelError):
        raise outcome
    return outcome


def _ensure_open(channel: Channel):
    if channel.closed:
        raise ChannelError(ChannelErrorKind.CLOSED, f"channel {channel.id} is closed")
