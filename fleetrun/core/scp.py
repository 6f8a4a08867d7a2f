"""
SCP transfers for fleetrun.
Speaks the scp wire protocol over an exec channel running the remote `scp`
binary in sink (-t) or source (-f) mode:

    'C'|'D' <octal-mode> ' ' <size> ' ' <name> '\\n'   file / directory
    'E' '\\n'                                         end of directory
    'T' <mtime> ' 0 ' <atime> ' 0\\n'                  timestamps (-p)
    0x00 | 0x01 <msg> '\\n' | 0x02 <msg> '\\n'          acknowledgements

File payloads are followed by a single 0x00 byte.
"""

import os
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional

from loguru import logger

from .channel import (
    ChannelKind, ChannelOptions, close_channel, exec_command, open_channel,
    send, send_eof,
)
from .errors import ChannelError, ScpError, ScpErrorKind

ACK_OK = b"\x00"
ACK_WARNING = b"\x01"
ACK_FATAL = b"\x02"

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755
CHUNK_SIZE = 32 * 1024

HEADER_RE = re.compile(r'^([CD])([0-7]{3,4}) (\d+) (.+)$')
TIMES_RE = re.compile(r'^T(\d+) (\d+) (\d+) (\d+)$')


class EntryKind(str, Enum):
    FILE = "file"
    DIR = "dir"


@dataclass(frozen=True)
class ManifestEntry:
    """
    One entry of an upload manifest. `path` is slash-separated and relative;
    directories must precede their children.
    """
    path: str
    kind: EntryKind
    data: Optional[bytes] = None
    mode: Optional[int] = None


@dataclass(frozen=True)
class TransferReport:
    paths: tuple
    bytes: int


def walk_local(path: str) -> Iterator[ManifestEntry]:
    """
    Lazily build an upload manifest for a local file or directory tree.
    Children are visited in lexicographic order so transfers are deterministic.
    """
    path = os.path.abspath(path)
    yield from _walk(path, os.path.basename(path.rstrip(os.sep)) or path)


def _walk(path: str, rel: str) -> Iterator[ManifestEntry]:
    st = os.stat(path)
    mode = st.st_mode & 0o7777
    if os.path.isdir(path):
        yield ManifestEntry(rel, EntryKind.DIR, mode=mode)
        for name in sorted(os.listdir(path)):
            yield from _walk(os.path.join(path, name), f"{rel}/{name}")
    else:
        with open(path, 'rb') as f:
            data = f.read()
        yield ManifestEntry(rel, EntryKind.FILE, data=data, mode=mode)


def scp_command(mode: str, path: str, recursive: bool = False) -> str:
    """Build the remote scp invocation; `mode` is 't' (sink) or 'f' (source)."""
    flags = "-r " if recursive else ""
    return f"scp {flags}-{mode} {shlex.quote(path)}"


def parse_header(line: str):
    """
    Parse a C/D header line (without the trailing newline).
    Returns (kind, mode, size, name); raises ScpError(protocol_violation).
    """
    match = HEADER_RE.match(line)
    if not match:
        raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION, f"bad header: {line!r}")
    code, mode, size, name = match.groups()
    if name in ('.', '..') or '/' in name or '\x00' in name:
        raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION, f"unsafe name in header: {name!r}")
    kind = EntryKind.FILE if code == 'C' else EntryKind.DIR
    return kind, int(mode, 8), int(size), name


def format_header(kind: EntryKind, mode: int, size: int, name: str) -> bytes:
    if '\n' in name or '\x00' in name or '/' in name or name in ('', '.', '..'):
        raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION, f"name cannot be sent: {name!r}")
    code = 'C' if kind == EntryKind.FILE else 'D'
    return f"{code}{mode & 0o7777:04o} {size} {name}\n".encode('utf-8')


class ScpEngine:
    """
    Runs SCP sessions on one connection. `wrap` turns the bare scp command into
    the command actually executed (e.g. to apply a Context).
    """

    def __init__(self, connection, options: Optional[ChannelOptions] = None,
                 wrap: Optional[Callable[[str], str]] = None):
        self.connection = connection
        self.options = options
        self.wrap = wrap or (lambda command: command)

    # ============ Upload ============

    def upload(self, manifest: Iterable[ManifestEntry], remote_path: str,
               recursive: bool = False) -> TransferReport:
        """Send every manifest entry to `remote_path`."""
        command = self.wrap(scp_command('t', remote_path, recursive))
        channel, loop = self._open(command)
        sent: List[str] = []
        total = 0
        try:
            self._await_ack(channel)
            stack: List[str] = []
            for entry in self._entries(manifest):
                parts = entry.path.strip('/').split('/')
                parent, name = parts[:-1], parts[-1]
                while stack and stack != parent[:len(stack)]:
                    self._end_directory(channel, stack)
                if stack != parent:
                    raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION,
                                   f"manifest entry {entry.path!r} is outside the open directory")
                if entry.kind == EntryKind.DIR:
                    if not recursive:
                        raise ScpError(ScpErrorKind.IO_ERROR, f"{entry.path}: is a directory")
                    mode = DEFAULT_DIR_MODE if entry.mode is None else entry.mode
                    send(channel, format_header(EntryKind.DIR, mode, 0, name))
                    self._await_ack(channel)
                    stack.append(name)
                else:
                    data = entry.data or b""
                    mode = DEFAULT_FILE_MODE if entry.mode is None else entry.mode
                    send(channel, format_header(EntryKind.FILE, mode, len(data), name))
                    self._await_ack(channel)
                    view = memoryview(data)
                    for offset in range(0, len(data), CHUNK_SIZE):
                        send(channel, view[offset:offset + CHUNK_SIZE])
                    send(channel, ACK_OK)
                    self._await_ack(channel)
                    total += len(data)
                sent.append(entry.path)
            while stack:
                self._end_directory(channel, stack)
            send_eof(channel)
            self._finish(channel, loop)
        finally:
            loop.forget(channel)
            close_channel(channel)
        logger.debug(f"scp: uploaded {len(sent)} entries ({total} bytes) to {remote_path}")
        return TransferReport(tuple(sent), total)

    def _entries(self, manifest: Iterable[ManifestEntry]) -> Iterator[ManifestEntry]:
        iterator = iter(manifest)
        while True:
            try:
                entry = next(iterator)
            except StopIteration:
                return
            except OSError as e:
                raise ScpError(ScpErrorKind.IO_ERROR, str(e)) from e
            yield entry

    def _end_directory(self, channel, stack: List[str]):
        send(channel, b"E\n")
        self._await_ack(channel)
        stack.pop()

    # ============ Download ============

    def download(self, remote_path: str, local_path: str,
                 recursive: bool = False) -> TransferReport:
        """Fetch `remote_path` into `local_path`."""
        command = self.wrap(scp_command('f', remote_path, recursive))
        channel, loop = self._open(command)
        sink = _LocalSink(local_path)
        total = 0
        try:
            send(channel, ACK_OK)
            while True:
                line = loop.read_line(channel)
                if not line:
                    break
                code = line[:1]
                if code in (ACK_WARNING, ACK_FATAL):
                    message = line[1:].rstrip(b"\n").decode('utf-8', errors='replace')
                    raise ScpError(ScpErrorKind.ACK_REJECTED, message, fatal=code == ACK_FATAL)
                text = self._decode_line(channel, line)
                if code == b"T":
                    if not TIMES_RE.match(text):
                        self._reject(channel, f"bad time header: {text!r}")
                    send(channel, ACK_OK)
                elif code == b"E":
                    if text != "E" or not sink.depth:
                        self._reject(channel, f"unexpected end of directory: {text!r}")
                    sink.leave()
                    send(channel, ACK_OK)
                else:
                    try:
                        kind, mode, size, name = parse_header(text)
                    except ScpError as e:
                        self._reject(channel, e.message)
                    if kind == EntryKind.DIR:
                        if not recursive:
                            self._reject(channel, f"{name}: directory received without recursive mode")
                        try:
                            sink.enter(name, mode)
                        except (OSError, ValueError) as e:
                            self._reject(channel, f"{name}: {e}", ScpErrorKind.IO_ERROR)
                        send(channel, ACK_OK)
                    else:
                        send(channel, ACK_OK)
                        self._receive_file(channel, sink, name, mode, size)
                        total += size
            self._finish(channel, loop)
        finally:
            loop.forget(channel)
            close_channel(channel)
        logger.debug(f"scp: downloaded {len(sink.written)} entries ({total} bytes) from {remote_path}")
        return TransferReport(tuple(sink.written), total)

    def _receive_file(self, channel, sink: '_LocalSink', name: str, mode: int, size: int):
        loop = self.connection.loop
        failure: Optional[Exception] = None
        try:
            handle = sink.open_file(name, mode)
        except (OSError, ValueError) as e:
            handle, failure = None, e
        try:
            remaining = size
            while remaining:
                chunk = loop.read(channel, min(CHUNK_SIZE, remaining))
                if not chunk:
                    raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION,
                                   f"{name}: remote closed with {remaining} bytes outstanding")
                remaining -= len(chunk)
                if handle is not None and failure is None:
                    try:
                        handle.write(chunk)
                    except OSError as e:
                        failure = e
        finally:
            if handle is not None:
                handle.close()
        # The payload is always drained first so the stream stays in sync.
        self._await_ack(channel)
        if failure is not None:
            self._reject(channel, f"{name}: {failure}", ScpErrorKind.IO_ERROR)
        send(channel, ACK_OK)

    # ============ Shared ============

    def _open(self, command: str):
        channel = open_channel(self.connection, ChannelKind.SCP, self.options)
        loop = self.connection.loop
        loop.watch(channel)
        try:
            exec_command(channel, command, channel.remaining())
        except ChannelError:
            loop.forget(channel)
            close_channel(channel)
            raise
        logger.debug(f"scp: channel {channel.id} running {command!r}")
        return channel, loop

    def _await_ack(self, channel):
        loop = self.connection.loop
        byte = loop.read(channel, 1)
        if byte == ACK_OK:
            return
        if byte in (ACK_WARNING, ACK_FATAL):
            message = loop.read_line(channel).rstrip(b"\n").decode('utf-8', errors='replace')
            raise ScpError(ScpErrorKind.ACK_REJECTED, message, fatal=byte == ACK_FATAL)
        if not byte:
            stderr = loop.stderr(channel).decode('utf-8', errors='replace').strip()
            raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION,
                           stderr or "remote closed while awaiting acknowledgement")
        raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION, f"unexpected acknowledgement byte {byte!r}")

    def _decode_line(self, channel, line: bytes) -> str:
        if not line.endswith(b"\n"):
            raise ScpError(ScpErrorKind.PROTOCOL_VIOLATION, f"truncated line: {line!r}")
        try:
            return line[:-1].decode('utf-8')
        except UnicodeDecodeError:
            self._reject(channel, f"undecodable line: {line!r}")

    def _reject(self, channel, message: str,
                kind: ScpErrorKind = ScpErrorKind.PROTOCOL_VIOLATION):
        """Tell the remote we are giving up, then raise."""
        try:
            send(channel, ACK_FATAL + message.encode('utf-8', errors='replace') + b"\n")
        except ChannelError as e:
            logger.debug(f"scp: could not report failure to remote: {e}")
        raise ScpError(kind, message)

    def _finish(self, channel, loop):
        outcome = loop.wait(channel)
        if isinstance(outcome, ChannelError):
            raise outcome
        outcome.check()


class _LocalSink:
    """Writes a downloaded tree below a local target path."""

    def __init__(self, target: str):
        self.target = target
        self.stack: List[str] = []
        self.written: List[str] = []

    @property
    def depth(self) -> int:
        return len(self.stack)

    def _resolve(self, name: str) -> str:
        if self.stack:
            return os.path.join(self.stack[-1], name)
        if os.path.isdir(self.target):
            return os.path.join(self.target, name)
        return self.target

    def enter(self, name: str, mode: int):
        path = self._resolve(name)
        if not os.path.isdir(path):
            os.mkdir(path, mode | 0o700)
        self.stack.append(path)
        self.written.append(path)

    def leave(self):
        self.stack.pop()

    def open_file(self, name: str, mode: int):
        path = self._resolve(name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        self.written.append(path)
        return os.fdopen(fd, 'wb')
