"""
Execution event loop for fleetrun.
Reduces the interleaved ChannelEvent stream of one Connection into one result
per channel. The loop is the only mutator of the per-channel accumulators.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Union

from loguru import logger

from .channel import (
    Channel, ChannelEvent, Closed, Data, Eof, ExitSignal, ExitStatus, Stream,
    close_channel,
)
from .errors import ChannelError, ChannelErrorKind, ExecError, ExecErrorKind

# Upper bound on a single blocking receive, so deadlines and cancellation
# are noticed even when no events arrive.
MAX_WAIT = 0.25


class ClosedWithoutStatus:
    """The remote closed the channel without reporting an exit status."""

    def __repr__(self):
        return "ClosedWithoutStatus()"

    def __eq__(self, other):
        return isinstance(other, ClosedWithoutStatus)

    def __hash__(self):
        return hash(ClosedWithoutStatus)


CLOSED_WITHOUT_STATUS = ClosedWithoutStatus()

Terminal = Union[ExitStatus, ExitSignal, ClosedWithoutStatus]


class ChannelState(str, Enum):
    OPEN = "open"
    RUNNING = "running"
    TERMINATING = "terminating"
    CLOSED = "closed"


@dataclass(frozen=True)
class ExecResult:
    """Final outcome of one channel."""
    channel_id: int
    stdout: bytes
    stderr: bytes
    terminal: Terminal

    @property
    def exit_code(self) -> Optional[int]:
        if isinstance(self.terminal, ExitStatus):
            return self.terminal.code
        return None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def error(self) -> Optional[ExecError]:
        terminal = self.terminal
        if isinstance(terminal, ExitStatus):
            if terminal.code == 0:
                return None
            return ExecError(
                ExecErrorKind.NONZERO_EXIT,
                self._describe(f"exit status {terminal.code}"),
                code=terminal.code,
            )
        if isinstance(terminal, ExitSignal):
            return ExecError(
                ExecErrorKind.SIGNALED,
                self._describe(f"killed by signal {terminal.name}"),
                signal=terminal.name,
            )
        return ExecError(
            ExecErrorKind.UNKNOWN_OUTCOME,
            self._describe("channel closed without exit status"),
        )

    def check(self) -> 'ExecResult':
        """Raise the ExecError for an unsuccessful result, else return self."""
        error = self.error
        if error is not None:
            raise error
        return self

    def text(self, stream: Stream = Stream.STDOUT) -> str:
        data = self.stdout if stream == Stream.STDOUT else self.stderr
        return data.decode('utf-8', errors='replace')

    def _describe(self, what: str) -> str:
        stderr = self.text(Stream.STDERR).strip()
        if stderr:
            return f"{what}: {stderr.splitlines()[-1]}"
        return what


Outcome = Union[ExecResult, ChannelError]


@dataclass
class _Accumulator:
    channel: Channel
    state: ChannelState = ChannelState.OPEN
    stdout: bytearray = field(default_factory=bytearray)
    stderr: bytearray = field(default_factory=bytearray)
    eof: bool = False
    terminal: Optional[Terminal] = None
    outcome: Optional[Outcome] = None


class EventLoop:
    """
    Services every watched channel of one connection.

    `source` must provide `next_event(timeout) -> ChannelEvent | None`, blocking
    for at most `timeout` seconds. Events for channels that are not watched, or
    that already finished, are discarded as protocol anomalies.
    """

    def __init__(self, source, cancel_event: Optional[threading.Event] = None):
        self.source = source
        self.cancel_event = cancel_event
        self._accs: Dict[int, _Accumulator] = {}

    def watch(self, channel: Channel):
        """Start accumulating events for a freshly opened channel."""
        self._accs[channel.id] = _Accumulator(channel)

    def forget(self, channel: Channel):
        """Drop all state kept for a channel."""
        acc = self._accs.get(channel.id)
        if acc is not None and acc.channel is channel:
            del self._accs[channel.id]

    def state(self, channel: Channel) -> ChannelState:
        acc = self._accs.get(channel.id)
        if acc is None or acc.channel is not channel:
            return ChannelState.CLOSED
        return acc.state

    def wait(self, channel: Channel) -> Outcome:
        """Service events until `channel` finishes, then return its outcome."""
        acc = self._get(channel)
        self._pump(lambda: acc.outcome is not None)
        del self._accs[channel.id]
        return acc.outcome

    def run(self) -> Dict[int, Outcome]:
        """Service events until every watched channel finishes."""
        self._pump(lambda: not self._has_active())
        outcomes = {cid: acc.outcome for cid, acc in self._accs.items()}
        self._accs.clear()
        return outcomes

    def read(self, channel: Channel, size: int) -> bytes:
        """
        Consume up to `size` bytes of the channel's stdout.
        Returns fewer bytes only once the remote sent EOF or closed.
        Raises ChannelError when the channel timed out or was cancelled.
        """
        acc = self._get(channel)
        self._pump(lambda: len(acc.stdout) >= size or self._drained(acc))
        self._raise_if_failed(acc)
        chunk = bytes(acc.stdout[:size])
        del acc.stdout[:size]
        return chunk

    def read_line(self, channel: Channel) -> bytes:
        """Consume stdout through the next newline (included, if present)."""
        acc = self._get(channel)
        self._pump(lambda: b"\n" in acc.stdout or self._drained(acc))
        self._raise_if_failed(acc)
        end = acc.stdout.find(b"\n")
        end = len(acc.stdout) if end < 0 else end + 1
        line = bytes(acc.stdout[:end])
        del acc.stdout[:end]
        return line

    def stderr(self, channel: Channel) -> bytes:
        """Stderr collected so far for a watched channel."""
        acc = self._accs.get(channel.id)
        return bytes(acc.stderr) if acc else b""

    # ============ Internals ============

    def _get(self, channel: Channel) -> _Accumulator:
        acc = self._accs.get(channel.id)
        if acc is None or acc.channel is not channel:
            raise ChannelError(ChannelErrorKind.CLOSED, f"channel {channel.id} is not watched")
        return acc

    def _has_active(self) -> bool:
        return any(acc.outcome is None for acc in self._accs.values())

    @staticmethod
    def _drained(acc: _Accumulator) -> bool:
        return acc.eof or acc.outcome is not None

    @staticmethod
    def _raise_if_failed(acc: _Accumulator):
        if isinstance(acc.outcome, ChannelError):
            raise acc.outcome

    def _pump(self, done):
        while not done():
            if not self._has_active():
                break
            if self.cancel_event is not None and self.cancel_event.is_set():
                self._abort_all(ChannelError(ChannelErrorKind.CLOSED, "cancelled"))
                continue
            timeout = self._next_timeout()
            if timeout is not None and timeout <= 0:
                self._expire()
                continue
            wait = MAX_WAIT if timeout is None else min(timeout, MAX_WAIT)
            event = self.source.next_event(wait)
            if event is not None:
                self._fold(event)

    def _next_timeout(self) -> Optional[float]:
        deadlines = [acc.channel.deadline for acc in self._accs.values()
                     if acc.outcome is None and acc.channel.deadline is not None]
        if not deadlines:
            return None
        return min(deadlines) - time.monotonic()

    def _fold(self, event: ChannelEvent):
        acc = self._accs.get(event.channel_id)
        if acc is None or acc.outcome is not None:
            logger.warning(f"discarding {type(event).__name__} for inactive channel {event.channel_id}")
            return

        if isinstance(event, Data):
            if acc.state == ChannelState.OPEN:
                acc.state = ChannelState.RUNNING
            if event.stream == Stream.STDERR:
                acc.stderr += event.data
            else:
                acc.stdout += event.data
        elif isinstance(event, Eof):
            acc.eof = True
            if acc.state == ChannelState.OPEN:
                acc.state = ChannelState.RUNNING
        elif isinstance(event, (ExitStatus, ExitSignal)):
            if acc.terminal is not None:
                logger.warning(f"channel {event.channel_id}: ignoring second exit report {event!r}")
                return
            acc.terminal = event
            acc.state = ChannelState.TERMINATING
        elif isinstance(event, Closed):
            if acc.terminal is None:
                acc.terminal = CLOSED_WITHOUT_STATUS
            acc.state = ChannelState.CLOSED
            acc.outcome = ExecResult(
                channel_id=acc.channel.id,
                stdout=bytes(acc.stdout),
                stderr=bytes(acc.stderr),
                terminal=acc.terminal,
            )
        else:
            logger.warning(f"discarding unrecognised event {event!r}")

    def _expire(self):
        now = time.monotonic()
        for acc in list(self._accs.values()):
            deadline = acc.channel.deadline
            if acc.outcome is None and deadline is not None and deadline <= now:
                logger.debug(f"channel {acc.channel.id}: deadline passed, closing")
                self._abort(acc, ChannelError(ChannelErrorKind.TIMEOUT,
                                              f"channel {acc.channel.id} timed out"))

    def _abort_all(self, error: ChannelError):
        for acc in list(self._accs.values()):
            if acc.outcome is None:
                self._abort(acc, error)

    @staticmethod
    def _abort(acc: _Accumulator, error: ChannelError):
        acc.state = ChannelState.CLOSED
        acc.outcome = error
        close_channel(acc.channel)
