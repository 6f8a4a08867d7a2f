"""
SSH connections for fleetrun.
A Connection owns one authenticated paramiko transport to a single host and
is the event source for every channel multiplexed over it.
"""

import select
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

import paramiko
from loguru import logger

from .channel import ChannelEvent, Closed, Data, Eof, ExitStatus, Stream
from .errors import (
    ChannelError, ChannelErrorKind, ConnectError, ConnectErrorKind,
)
from .loop import EventLoop

# How long to sleep between channel polls when nothing is readable.
POLL_INTERVAL = 0.05
RECV_CHUNK = 32 * 1024

HOST_KEY_POLICIES = {
    'auto_add': paramiko.AutoAddPolicy,
    'warn': paramiko.WarningPolicy,
    'reject': paramiko.RejectPolicy,
}


@dataclass(frozen=True)
class AuthMaterial:
    """Credentials and host-key policy, passed through to paramiko unexamined."""
    username: Optional[str] = None
    password: Optional[str] = None
    key_file: Optional[str] = None
    pkey: Optional[paramiko.PKey] = field(default=None, repr=False)
    allow_agent: bool = True
    look_for_keys: bool = True
    host_key_policy: str = 'auto_add'
    known_hosts: Optional[str] = None


@dataclass
class _ChannelSlot:
    chan: paramiko.Channel
    eof_reported: bool = False
    status_reported: bool = False


class Connection:
    """
    One authenticated SSH transport. Closed exactly once; any use after
    disconnect() is a programming error and raises RuntimeError.
    """

    def __init__(self, host: str, port: int, auth: AuthMaterial,
                 client: paramiko.SSHClient,
                 cancel_event: Optional[threading.Event] = None):
        self.host = host
        self.port = port
        self.auth = auth
        self._client = client
        self._transport = client.get_transport()
        self._slots: Dict[int, _ChannelSlot] = {}
        self._pending: Deque[ChannelEvent] = deque()
        self._closed = False
        self.loop = EventLoop(self, cancel_event)

    @property
    def is_active(self) -> bool:
        return not self._closed and self._transport is not None and self._transport.is_active()

    # ============ Channel operations ============

    def open_channel(self, window_size: int, max_packet_size: int,
                     timeout: Optional[float]) -> int:
        self._ensure_open()
        try:
            chan = self._transport.open_session(
                window_size=window_size,
                max_packet_size=max_packet_size,
                timeout=timeout,
            )
        except paramiko.ChannelException as e:
            raise ChannelError(ChannelErrorKind.OPEN_FAILED, str(e)) from e
        except paramiko.SSHException as e:
            if 'timeout' in str(e).lower():
                raise ChannelError(ChannelErrorKind.TIMEOUT, str(e)) from e
            raise ChannelError(ChannelErrorKind.OPEN_FAILED, str(e)) from e
        except EOFError as e:
            raise ChannelError(ChannelErrorKind.OPEN_FAILED, "transport closed") from e
        self._slots[chan.get_id()] = _ChannelSlot(chan)
        return chan.get_id()

    def exec(self, channel_id: int, command: str, timeout: Optional[float] = None):
        chan = self._chan(channel_id)
        chan.settimeout(timeout)
        try:
            chan.exec_command(command)
        except (paramiko.SSHException, socket.error) as e:
            raise ChannelError(ChannelErrorKind.SEND_FAILED, f"exec rejected: {e}") from e

    def invoke_subsystem(self, channel_id: int, name: str, timeout: Optional[float] = None):
        chan = self._chan(channel_id)
        chan.settimeout(timeout)
        try:
            chan.invoke_subsystem(name)
        except (paramiko.SSHException, socket.error) as e:
            raise ChannelError(ChannelErrorKind.SEND_FAILED, f"subsystem rejected: {e}") from e

    def send(self, channel_id: int, stream: Stream, data: bytes,
             timeout: Optional[float] = None):
        chan = self._chan(channel_id)
        if chan.closed:
            raise ChannelError(ChannelErrorKind.CLOSED, f"channel {channel_id} is closed")
        chan.settimeout(timeout)
        try:
            if stream == Stream.STDERR:
                chan.sendall_stderr(data)
            else:
                chan.sendall(data)
        except socket.timeout as e:
            raise ChannelError(ChannelErrorKind.TIMEOUT, f"send on channel {channel_id} timed out") from e
        except (socket.error, paramiko.SSHException) as e:
            if chan.closed:
                raise ChannelError(ChannelErrorKind.CLOSED, str(e)) from e
            raise ChannelError(ChannelErrorKind.SEND_FAILED, str(e)) from e

    def send_eof(self, channel_id: int):
        chan = self._chan(channel_id)
        if chan.closed:
            raise ChannelError(ChannelErrorKind.CLOSED, f"channel {channel_id} is closed")
        chan.shutdown_write()

    def close_channel(self, channel_id: int):
        slot = self._slots.pop(channel_id, None)
        if slot is not None:
            slot.chan.close()

    # ============ Event source ============

    def next_event(self, timeout: Optional[float]) -> Optional[ChannelEvent]:
        """
        Return the next channel event, waiting at most `timeout` seconds.
        Returns None if nothing arrived in time.
        """
        self._ensure_open()
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if not self._pending:
                self._poll()
            if self._pending:
                return self._pending.popleft()
            remaining = POLL_INTERVAL
            if deadline is not None:
                remaining = min(POLL_INTERVAL, deadline - time.monotonic())
                if remaining <= 0:
                    return None
            self._wait_readable(remaining)

    def _poll(self):
        for channel_id, slot in list(self._slots.items()):
            chan = slot.chan
            # recv() hands window credit back to the remote as bytes are consumed.
            while chan.recv_ready():
                self._pending.append(Data(channel_id, Stream.STDOUT, chan.recv(RECV_CHUNK)))
            while chan.recv_stderr_ready():
                self._pending.append(Data(channel_id, Stream.STDERR, chan.recv_stderr(RECV_CHUNK)))
            if chan.eof_received and not slot.eof_reported:
                slot.eof_reported = True
                self._pending.append(Eof(channel_id))
            if chan.exit_status_ready() and not slot.status_reported and chan.exit_status != -1:
                slot.status_reported = True
                self._pending.append(ExitStatus(channel_id, chan.exit_status))
            if chan.closed and not chan.recv_ready() and not chan.recv_stderr_ready():
                del self._slots[channel_id]
                # releases the pipe select() created through fileno()
                chan.close()
                self._pending.append(Closed(channel_id))

    def _wait_readable(self, timeout: float):
        # After EOF a channel's pipe stays readable forever, so only select on
        # channels that may still deliver data.
        fds = [slot.chan for slot in self._slots.values() if not slot.chan.eof_received]
        if fds:
            select.select(fds, [], [], timeout)
        else:
            time.sleep(timeout)

    # ============ Lifecycle ============

    def disconnect(self):
        """Close the transport. Calling this twice is a programming error."""
        self._ensure_open()
        self._closed = True
        for slot in self._slots.values():
            slot.chan.close()
        self._slots.clear()
        self._pending.clear()
        self._client.close()
        logger.debug(f"SSH: disconnected from {self.host}:{self.port}")

    def _chan(self, channel_id: int) -> paramiko.Channel:
        self._ensure_open()
        slot = self._slots.get(channel_id)
        if slot is None:
            raise ChannelError(ChannelErrorKind.CLOSED, f"channel {channel_id} is closed")
        return slot.chan

    def _ensure_open(self):
        if self._closed:
            raise RuntimeError(f"connection to {self.host}:{self.port} used after disconnect")


def connect(host: str, auth: AuthMaterial, timeout: Optional[float] = 30,
            port: int = 22, cancel_event: Optional[threading.Event] = None) -> Connection:
    """
    Open and authenticate an SSH connection. Never retries.
    Raises ConnectError(auth_failed | network_unreachable | timeout).
    """
    client = paramiko.SSHClient()
    if auth.known_hosts:
        client.load_host_keys(auth.known_hosts)
    else:
        client.load_system_host_keys()
    policy = HOST_KEY_POLICIES.get(auth.host_key_policy)
    if policy is None:
        raise ValueError(f"unknown host key policy: {auth.host_key_policy}")
    client.set_missing_host_key_policy(policy())

    connect_kwargs = {
        'hostname': host,
        'port': port,
        'username': auth.username,
        'timeout': timeout,
        'banner_timeout': timeout,
        'auth_timeout': timeout,
        'allow_agent': auth.allow_agent,
        'look_for_keys': auth.look_for_keys,
    }
    if auth.pkey is not None:
        connect_kwargs['pkey'] = auth.pkey
    if auth.key_file:
        connect_kwargs['key_filename'] = auth.key_file
    if auth.password:
        connect_kwargs['password'] = auth.password

    logger.debug(f"SSH: connecting to {host}:{port} ({auth.username})")
    try:
        client.connect(**connect_kwargs)
    except paramiko.AuthenticationException as e:
        client.close()
        raise ConnectError(ConnectErrorKind.AUTH_FAILED, f"{host}: {e}") from e
    except socket.timeout as e:
        client.close()
        raise ConnectError(ConnectErrorKind.TIMEOUT, f"{host}: connection timed out") from e
    except (paramiko.SSHException, OSError) as e:
        client.close()
        raise ConnectError(ConnectErrorKind.NETWORK_UNREACHABLE, f"{host}: {e}") from e
    logger.debug(f"SSH: connected to {host}:{port}")
    return Connection(host, port, auth, client, cancel_event)
