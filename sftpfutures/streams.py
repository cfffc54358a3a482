"""File-like handles on remote files that outlive the call that opened them."""

from __future__ import annotations

import io
import logging
import threading
from typing import Any

from sftpfutures.connection import SSHConnection

logger = logging.getLogger(__name__)


class RemoteStream(io.RawIOBase):
    """A remote file opened over its own SFTP channel.

    Closing the stream closes the file and the channel, and also the
    connection if one was handed over with *owner*.  Any I/O error does the
    same before it propagates, since the stream is unusable afterwards.
    """

    def __init__(
        self,
        remote_file: Any,
        sftp: Any,
        path: str,
        mode: str,
        owner: SSHConnection | None = None,
    ) -> None:
        super().__init__()
        self._file = remote_file
        self._sftp = sftp
        self._owner = owner
        self._release_lock = threading.Lock()
        self._released = False
        self.path = path
        self.mode = mode

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<RemoteStream {self.path!r} mode={self.mode!r} {state}>"

    @property
    def owns_connection(self) -> bool:
        return self._owner is not None

    def readable(self) -> bool:
        return "r" in self.mode and not self.closed

    def writable(self) -> bool:
        return ("w" in self.mode or "a" in self.mode) and not self.closed

    def seekable(self) -> bool:
        return not self.closed

    def readinto(self, buffer: Any) -> int:
        self._check_closed()
        if not self.readable():
            raise io.UnsupportedOperation("stream not opened for reading")
        try:
            data = self._file.read(len(buffer))
        except Exception:
            self.close()
            raise
        n = len(data)
        buffer[:n] = data
        return n

    def read(self, size: int = -1) -> bytes:
        self._check_closed()
        if not self.readable():
            raise io.UnsupportedOperation("stream not opened for reading")
        try:
            return self._file.read(None if size is None or size < 0 else size)
        except Exception:
            self.close()
            raise

    def write(self, data: Any) -> int:
        self._check_closed()
        if not self.writable():
            raise io.UnsupportedOperation("stream not opened for writing")
        payload = bytes(data)
        try:
            self._file.write(payload)
        except Exception:
            self.close()
            raise
        return len(payload)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._check_closed()
        self._file.seek(offset, whence)
        return self._file.tell()

    def tell(self) -> int:
        self._check_closed()
        return self._file.tell()

    def flush(self) -> None:
        if not self._released:
            self._file.flush()

    def close(self) -> None:
        """Close the file, its channel, and the owned connection (once)."""
        with self._release_lock:
            if self._released:
                return
            self._released = True
        try:
            try:
                self._file.close()
            finally:
                self._sftp.close()
        finally:
            if self._owner is not None:
                logger.debug("Stream %s closed, closing %r", self.path, self._owner)
                self._owner.close()
            super().close()

    def _check_closed(self) -> None:
        if self.closed:
            raise ValueError("I/O operation on closed remote stream")
