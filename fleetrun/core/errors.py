"""
Error taxonomy for fleetrun.
Every failure carries a kind so callers can tell an unreachable host from a
failed command from a rejected transfer.
"""

from enum import Enum
from typing import Optional


class ConnectErrorKind(str, Enum):
    AUTH_FAILED = "auth_failed"
    NETWORK_UNREACHABLE = "network_unreachable"
    TIMEOUT = "timeout"


class ChannelErrorKind(str, Enum):
    OPEN_FAILED = "open_failed"
    SEND_FAILED = "send_failed"
    CLOSED = "closed"
    TIMEOUT = "timeout"


class ExecErrorKind(str, Enum):
    NONZERO_EXIT = "nonzero_exit"
    SIGNALED = "signaled"
    UNKNOWN_OUTCOME = "unknown_outcome"


class ScpErrorKind(str, Enum):
    ACK_REJECTED = "ack_rejected"
    PROTOCOL_VIOLATION = "protocol_violation"
    IO_ERROR = "io_error"


class FleetError(Exception):
    """Base class for all fleetrun failures."""

    def __init__(self, kind: Enum, message: str = ""):
        # args stay (kind, message) so copy and pickle rebuild the same error
        super().__init__(kind, message)
        self.kind = kind
        self.message = message

    def __str__(self):
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value

    def __eq__(self, other):
        return (
            type(self) is type(other)
            and self.kind == other.kind
            and self.message == other.message
        )

    def __hash__(self):
        return hash((type(self), self.kind, self.message))


class ConnectError(FleetError):
    """Opening the SSH transport to a host failed."""


class ChannelError(FleetError):
    """A channel could not be opened, written to, or did not finish in time."""


class ExecError(FleetError):
    """A remote command finished, but not successfully."""

    def __init__(self, kind: ExecErrorKind, message: str = "",
                 code: Optional[int] = None, signal: Optional[str] = None):
        super().__init__(kind, message)
        self.code = code
        self.signal = signal


class ScpError(FleetError):
    """An SCP transfer was rejected, desynchronized, or hit a local I/O error."""

    def __init__(self, kind: ScpErrorKind, message: str = "", fatal: bool = True):
        super().__init__(kind, message)
        self.fatal = fatal
