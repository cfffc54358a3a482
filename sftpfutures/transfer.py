"""Chunked transfer loops for whole-file buffers and streams.

All loops here are strictly sequential: the next read or write is issued
only after the previous one returned, so offsets only ever move forward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import IO, Any, Callable

from sftpfutures.utils.path_helpers import human_readable_size

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024  # one SFTP read/write request
STREAM_CHUNK_SIZE = 256 * 1024  # per read/write call when piping streams

ProgressCallback = Callable[[int, int], None]


class TransferError(OSError):
    """Raised when a transfer cannot make progress (e.g. the file shrank)."""


class InvalidStreamError(ValueError):
    """Raised when a stream argument cannot be used in the requested direction."""


# ---------------------------------------------------------------------------
# Chunk cursor
# ---------------------------------------------------------------------------


@dataclass
class ChunkCursor:
    """Bookkeeping for one buffer transfer: how much is left and where we are."""

    remaining: int
    offset: int
    buffer: bytearray | memoryview

    def next_length(self, chunk_size: int) -> int:
        return min(chunk_size, self.remaining)

    def advance(self, count: int) -> None:
        """Move forward by *count* bytes.

        Raises:
            TransferError: *count* is zero (no progress) or overshoots.
        """
        if count <= 0:
            raise TransferError(
                f"Unexpected end of file at offset {self.offset} "
                f"with {self.remaining} byte(s) outstanding"
            )
        if count > self.remaining:
            raise TransferError(f"Transferred {count} bytes but only {self.remaining} were requested")
        self.offset += count
        self.remaining -= count

    @property
    def done(self) -> bool:
        return self.remaining == 0


# ---------------------------------------------------------------------------
# Buffer loops
# ---------------------------------------------------------------------------


def read_buffer(sftp: Any, remote_path: str, chunk_size: int = CHUNK_SIZE) -> bytes:
    """Read the whole of *remote_path* into memory.

    The file is stat'ed through its open handle, a buffer of exactly that
    size is allocated, and bounded reads fill it until nothing is left.
    Short reads just mean another trip round the loop.  On a read error the
    handle is left for channel teardown to clean up.
    """
    fh = sftp.open(remote_path, "rb")
    size = fh.stat().st_size or 0
    if size == 0:
        fh.close()
        return b""

    cursor = ChunkCursor(remaining=size, offset=0, buffer=bytearray(size))
    reads = 0
    while not cursor.done:
        fh.seek(cursor.offset)
        data = fh.read(cursor.next_length(chunk_size))
        start = cursor.offset
        cursor.advance(len(data))
        cursor.buffer[start:cursor.offset] = data
        reads += 1

    fh.close()
    logger.debug(
        "Read %s from %s in %d call(s)", human_readable_size(size), remote_path, reads
    )
    return bytes(cursor.buffer)


def write_buffer(sftp: Any, remote_path: str, data: bytes, chunk_size: int = CHUNK_SIZE) -> bool:
    """Write *data* to *remote_path*, replacing its contents.

    Writes are split into chunks of at most *chunk_size* bytes so that a
    single request never exceeds what the server will accept.
    """
    view = memoryview(data).cast("B")
    cursor = ChunkCursor(remaining=len(view), offset=0, buffer=view)
    fh = sftp.open(remote_path, "wb")
    writes = 0
    while not cursor.done:
        length = cursor.next_length(chunk_size)
        fh.seek(cursor.offset)
        fh.write(bytes(view[cursor.offset:cursor.offset + length]))
        cursor.advance(length)
        writes += 1
    fh.close()
    logger.debug(
        "Wrote %s to %s in %d call(s)", human_readable_size(len(view)), remote_path, writes
    )
    return True


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------


def ensure_writable(stream: Any) -> None:
    """Raise :class:`InvalidStreamError` unless *stream* can be written to."""
    if getattr(stream, "closed", False):
        raise InvalidStreamError("Stream must be a writable stream")
    check = getattr(stream, "writable", None)
    ok = check() if callable(check) else callable(getattr(stream, "write", None))
    if not ok:
        raise InvalidStreamError("Stream must be a writable stream")


def ensure_readable(stream: Any) -> None:
    """Raise :class:`InvalidStreamError` unless *stream* can be read from."""
    if getattr(stream, "closed", False):
        raise InvalidStreamError("Stream must be a readable stream")
    check = getattr(stream, "readable", None)
    ok = check() if callable(check) else callable(getattr(stream, "read", None))
    if not ok:
        raise InvalidStreamError("Stream must be a readable stream")


def copy_stream(
    src: IO[bytes],
    dst: IO[bytes],
    chunk_size: int = STREAM_CHUNK_SIZE,
    on_progress: ProgressCallback | None = None,
    total: int = 0,
) -> int:
    """Copy *src* into *dst* chunk by chunk; returns the byte count.

    ``on_progress(transferred, total)`` is called after every chunk.
    """
    transferred = 0
    while True:
        chunk = src.read(chunk_size)
        if not chunk:
            break
        dst.write(chunk)
        transferred += len(chunk)
        if on_progress:
            try:
                on_progress(transferred, total)
            except Exception:
                logger.exception("Exception in on_progress callback")
    return transferred


def download_to_stream(
    sftp: Any,
    remote_path: str,
    writable: IO[bytes],
    on_progress: ProgressCallback | None = None,
) -> bool:
    """Pipe the contents of *remote_path* into *writable*."""
    size = sftp.stat(remote_path).st_size or 0
    with sftp.open(remote_path, "rb") as remote_fh:
        if size > 0:
            remote_fh.prefetch(size)
        copied = copy_stream(remote_fh, writable, on_progress=on_progress, total=size)
    logger.info("Streamed %s from %s", human_readable_size(copied), remote_path)
    return True


def upload_from_stream(
    sftp: Any,
    remote_path: str,
    readable: IO[bytes],
    on_progress: ProgressCallback | None = None,
) -> bool:
    """Write everything *readable* yields to *remote_path*."""
    with sftp.open(remote_path, "wb") as remote_fh:
        # up to 100 write requests in flight; close() collects the ACKs and
        # raises if any of them failed
        remote_fh.set_pipelined(True)
        copied = copy_stream(readable, remote_fh, on_progress=on_progress)
    logger.info("Streamed %s to %s", human_readable_size(copied), remote_path)
    return True
