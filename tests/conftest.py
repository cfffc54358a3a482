"""Shared fixtures: an in-memory SFTP server and fake connections.

``FakeTransport`` is a connection factory.  Every ``FakeConnection`` it
builds talks to the same ``FakeFS``, so a file written through one call can
be read back through another, just like separate connections to one host.
"""

from __future__ import annotations

import errno
import io
import posixpath
import stat
from collections import defaultdict
from pathlib import Path
from typing import Any

import pytest

from sftpfutures.client import SFTPClient
from sftpfutures.config import ConnectConfig
from sftpfutures.connection import ConnectionClosedError, ConnectionState


# ---------------------------------------------------------------------------
# In-memory filesystem
# ---------------------------------------------------------------------------


class FakeAttrs:
    """Stand-in for ``paramiko.SFTPAttributes``."""

    def __init__(self, mode: int, size: int = 0, filename: str = "") -> None:
        self.st_mode = mode
        self.st_size = size
        self.st_uid = 1000
        self.st_gid = 1000
        self.st_atime = 1700000000
        self.st_mtime = 1700000000
        self.filename = filename
        self.longname = f"-rw-r--r-- 1 tester tester {size} {filename}" if filename else ""


def _missing(path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, "No such file", path)


class FakeFS:
    """Remote filesystem state shared by every channel of a FakeTransport."""

    def __init__(self) -> None:
        self.files: dict[str, bytearray] = {}
        self.dirs: set[str] = {"/", "/home", "/home/tester"}
        self.specials: set[str] = set()
        self.cwd = "/home/tester"
        self.max_read: int | None = None
        self.read_error: Exception | None = None
        self.size_overrides: dict[str, int] = {}
        self.read_calls: list[tuple[str, int, int]] = []
        self.write_calls: list[tuple[str, int, int]] = []
        self.open_files: list[FakeRemoteFile] = []

    def resolve(self, path: str) -> str:
        return posixpath.normpath(posixpath.join(self.cwd, path))


class FakeRemoteFile:
    """Stand-in for ``paramiko.SFTPFile``."""

    def __init__(self, fs: FakeFS, path: str, mode: str) -> None:
        self.fs = fs
        self.path = path
        self.mode = mode
        self.pos = 0
        self.closed = False
        self.prefetched: int | None = None
        self.pipelined = False
        if "w" in mode:
            fs.files[path] = bytearray()
        fs.open_files.append(self)

    def __enter__(self) -> FakeRemoteFile:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def stat(self) -> FakeAttrs:
        size = self.fs.size_overrides.get(self.path, len(self.fs.files[self.path]))
        return FakeAttrs(stat.S_IFREG | 0o644, size)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> None:
        if whence == io.SEEK_SET:
            self.pos = offset
        elif whence == io.SEEK_CUR:
            self.pos += offset
        else:
            self.pos = len(self.fs.files[self.path]) + offset

    def tell(self) -> int:
        return self.pos

    def read(self, size: int | None = None) -> bytes:
        if self.fs.read_error is not None:
            raise self.fs.read_error
        data = self.fs.files[self.path]
        if size is None:
            size = len(data) - self.pos
        if self.fs.max_read is not None:
            size = min(size, self.fs.max_read)
        self.fs.read_calls.append((self.path, self.pos, size))
        chunk = bytes(data[self.pos:self.pos + size])
        self.pos += len(chunk)
        return chunk

    def write(self, data: bytes) -> None:
        buf = self.fs.files[self.path]
        self.fs.write_calls.append((self.path, self.pos, len(data)))
        if len(buf) < self.pos:
            buf.extend(b"\x00" * (self.pos - len(buf)))
        buf[self.pos:self.pos + len(data)] = data
        self.pos += len(data)

    def flush(self) -> None:
        pass

    def prefetch(self, file_size: int | None = None) -> None:
        self.prefetched = file_size

    def set_pipelined(self, pipelined: bool = True) -> None:
        self.pipelined = pipelined

    def close(self) -> None:
        self.closed = True


class FakeSFTP:
    """Stand-in for ``paramiko.SFTPClient`` over a FakeFS."""

    def __init__(self, fs: FakeFS) -> None:
        self.fs = fs
        self.closed = False

    def stat(self, path: str) -> FakeAttrs:
        full = self.fs.resolve(path)
        if full in self.fs.dirs:
            return FakeAttrs(stat.S_IFDIR | 0o755, 4096)
        if full in self.fs.specials:
            return FakeAttrs(stat.S_IFLNK | 0o777)
        if full in self.fs.files:
            return FakeAttrs(stat.S_IFREG | 0o644, len(self.fs.files[full]))
        raise _missing(path)

    def listdir_attr(self, path: str) -> list[FakeAttrs]:
        full = self.fs.resolve(path)
        if full not in self.fs.dirs:
            raise _missing(path)
        entries = []
        for child in sorted(self.fs.dirs | set(self.fs.files)):
            if child != full and posixpath.dirname(child) == full:
                name = posixpath.basename(child)
                if child in self.fs.dirs:
                    entries.append(FakeAttrs(stat.S_IFDIR | 0o755, 4096, name))
                else:
                    entries.append(FakeAttrs(stat.S_IFREG | 0o644, len(self.fs.files[child]), name))
        return entries

    def open(self, path: str, mode: str = "r") -> FakeRemoteFile:
        full = self.fs.resolve(path)
        if "r" in mode and full not in self.fs.files:
            raise _missing(path)
        if "w" in mode and posixpath.dirname(full) not in self.fs.dirs:
            raise _missing(path)
        return FakeRemoteFile(self.fs, full, mode)

    def remove(self, path: str) -> None:
        full = self.fs.resolve(path)
        if full not in self.fs.files:
            raise _missing(path)
        del self.fs.files[full]

    def rename(self, src: str, dest: str) -> None:
        full_src, full_dest = self.fs.resolve(src), self.fs.resolve(dest)
        if full_src not in self.fs.files:
            raise _missing(src)
        self.fs.files[full_dest] = self.fs.files.pop(full_src)

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        full = self.fs.resolve(path)
        if full in self.fs.dirs or full in self.fs.files:
            raise OSError(errno.EEXIST, "Failure", path)
        if posixpath.dirname(full) not in self.fs.dirs:
            raise _missing(path)
        self.fs.dirs.add(full)

    def rmdir(self, path: str) -> None:
        full = self.fs.resolve(path)
        if full not in self.fs.dirs:
            raise _missing(path)
        if any(posixpath.dirname(p) == full for p in (self.fs.dirs | set(self.fs.files)) - {full}):
            raise OSError(errno.ENOTEMPTY, "Failure", path)
        self.fs.dirs.remove(full)

    def normalize(self, path: str) -> str:
        return self.fs.resolve(path)

    def get(self, remotepath: str, localpath: str, callback=None) -> None:
        full = self.fs.resolve(remotepath)
        if full not in self.fs.files:
            raise _missing(remotepath)
        data = bytes(self.fs.files[full])
        Path(localpath).write_bytes(data)
        if callback:
            callback(len(data), len(data))

    def put(self, localpath: str, remotepath: str, callback=None) -> FakeAttrs:
        data = Path(localpath).read_bytes()
        full = self.fs.resolve(remotepath)
        self.fs.files[full] = bytearray(data)
        if callback:
            callback(len(data), len(data))
        return FakeAttrs(stat.S_IFREG | 0o644, len(data))

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fake connections
# ---------------------------------------------------------------------------


class FakeChannel:
    def __init__(self, exit_status: int, output: bytes = b"") -> None:
        self.exit_status = exit_status
        self.closed = False
        self.combined = False
        self._output = io.BytesIO(output)
        self.drained = not output

    def set_combine_stderr(self, combine: bool) -> None:
        self.combined = combine

    def recv(self, nbytes: int) -> bytes:
        chunk = self._output.read(nbytes)
        if not chunk:
            self.drained = True
        return chunk

    def recv_exit_status(self) -> int:
        return self.exit_status

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    """Implements the SSHConnection surface without a network.

    ``connect()`` fires its signals synchronously.
    """

    def __init__(self, transport: FakeTransport) -> None:
        self.transport = transport
        self.state = ConnectionState.DISCONNECTED
        self.listeners: dict[str, list] = defaultdict(list)
        self.config: ConnectConfig | None = None
        self.close_calls = 0
        self.sftp_channels: list[FakeSFTP] = []
        self.channels: list[FakeChannel] = []
        self.commands: list[str] = []

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def on(self, event: str, callback) -> FakeConnection:
        self.listeners[event].append(callback)
        return self

    def remove_all_listeners(self, event: str | None = None) -> FakeConnection:
        if event is None:
            self.listeners.clear()
        else:
            self.listeners.pop(event, None)
        return self

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self.listeners.get(event, ())):
            listener(*args)

    def connect(self, config: ConnectConfig) -> None:
        self.config = config
        self.state = ConnectionState.CONNECTING
        if self.transport.connect_error is not None:
            self.state = ConnectionState.ERROR
            self.emit("error", self.transport.connect_error)
        elif self.transport.end_before_ready:
            self.state = ConnectionState.ENDED
            self.emit("end")
        else:
            self.state = ConnectionState.READY
            self.emit("ready")

    def open_sftp(self, callback) -> None:
        if self.transport.sftp_error is not None:
            callback(self.transport.sftp_error, None)
            return
        if self.state is not ConnectionState.READY:
            callback(ConnectionClosedError("not ready"), None)
            return
        sftp = FakeSFTP(self.transport.fs)
        self.sftp_channels.append(sftp)
        callback(None, sftp)

    def exec_command(self, command: str, callback) -> None:
        self.commands.append(command)
        if self.transport.exec_error is not None:
            callback(self.transport.exec_error, None)
            return
        channel = FakeChannel(self.transport.exit_status, self.transport.exec_output)
        self.channels.append(channel)
        callback(None, channel)

    def close(self) -> None:
        self.close_calls += 1
        was_live = self.state in (ConnectionState.CONNECTING, ConnectionState.READY)
        self.state = ConnectionState.ENDED
        if was_live:
            self.emit("end")


class FakeTransport:
    """Connection factory; records every connection it hands out."""

    def __init__(self) -> None:
        self.fs = FakeFS()
        self.connections: list[FakeConnection] = []
        self.connect_error: Exception | None = None
        self.end_before_ready = False
        self.sftp_error: Exception | None = None
        self.exec_error: Exception | None = None
        self.exit_status = 0
        self.exec_output = b""

    def __call__(self) -> FakeConnection:
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def connect_config() -> ConnectConfig:
    return ConnectConfig(host="example.org", username="tester")


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def fs(fake_transport: FakeTransport) -> FakeFS:
    return fake_transport.fs


@pytest.fixture()
def client(connect_config: ConnectConfig, fake_transport: FakeTransport) -> SFTPClient:
    """An SFTPClient with a small chunk size, wired to the fake transport."""
    return SFTPClient(connect_config, chunk_size=8, connection_factory=fake_transport)


@pytest.fixture()
def session(connect_config: ConnectConfig, fake_transport: FakeTransport) -> FakeConnection:
    """A ready connection owned by the test, as a caller-held session.

    It is ``fake_transport.connections[0]``; any connection the client makes
    on its own comes after it.
    """
    conn = fake_transport()
    conn.connect(connect_config)
    conn.remove_all_listeners()
    return conn


@pytest.fixture()
def sftp(fs: FakeFS) -> FakeSFTP:
    """A bare SFTP channel on the shared in-memory filesystem."""
    return FakeSFTP(fs)
