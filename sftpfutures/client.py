"""Future-returning SFTP client.

Each method performs one remote operation and returns a
:class:`concurrent.futures.Future`.  Pass ``session`` (a ready
:class:`~sftpfutures.connection.SSHConnection`, e.g. from
:meth:`SFTPClient.session`) to reuse a connection; otherwise every call
connects, does its work and disconnects.

Example::

    client = SFTPClient({"host": "example.org", "username": "me"})
    data = client.get_buffer("/etc/motd").result(timeout=30)
"""

from __future__ import annotations

import logging
import stat as _stat
from concurrent.futures import Future
from pathlib import Path
from typing import IO, Any, Callable, Mapping

from paramiko import sftp as paramiko_sftp

from sftpfutures.config import ConnectConfig, ProfileStore, coerce_config
from sftpfutures.connection import ConnectionClosedError, SSHConnection
from sftpfutures.runner import (
    Body,
    CommandRunner,
    ConnectionManager,
    Settlement,
    SftpBody,
    failed_future,
    sftp_task,
)
from sftpfutures.streams import RemoteStream
from sftpfutures.transfer import (
    CHUNK_SIZE,
    ProgressCallback,
    download_to_stream,
    ensure_readable,
    ensure_writable,
    read_buffer,
    upload_from_stream,
    write_buffer,
)
from sftpfutures.utils.path_helpers import shell_quote, validate_remote_path

logger = logging.getLogger(__name__)

_ATTR_FIELDS = (
    ("mode", "st_mode"),
    ("uid", "st_uid"),
    ("gid", "st_gid"),
    ("size", "st_size"),
    ("atime", "st_atime"),
    ("mtime", "st_mtime"),
)


def attrs_to_dict(attrs: Any) -> dict[str, Any]:
    """Copy the stat fields of a ``paramiko.SFTPAttributes`` into a dict."""
    return {name: getattr(attrs, field, None) for name, field in _ATTR_FIELDS}


def entry_type(attrs: Any) -> str:
    """Classify *attrs* as ``"directory"``, ``"file"`` or ``"other"``."""
    mode = attrs.st_mode
    if mode is None:
        return "other"
    if _stat.S_ISDIR(mode):
        return "directory"
    if _stat.S_ISREG(mode):
        return "file"
    return "other"


class SFTPClient:
    """Runs SFTP operations and remote commands, one future per call."""

    MODES = {
        "READ": paramiko_sftp.SFTP_FLAG_READ,
        "WRITE": paramiko_sftp.SFTP_FLAG_WRITE,
        "APPEND": paramiko_sftp.SFTP_FLAG_APPEND,
        "CREATE": paramiko_sftp.SFTP_FLAG_CREATE,
        "TRUNC": paramiko_sftp.SFTP_FLAG_TRUNC,
        "EXCL": paramiko_sftp.SFTP_FLAG_EXCL,
    }
    CODES = {
        "OK": paramiko_sftp.SFTP_OK,
        "EOF": paramiko_sftp.SFTP_EOF,
        "NO_SUCH_FILE": paramiko_sftp.SFTP_NO_SUCH_FILE,
        "PERMISSION_DENIED": paramiko_sftp.SFTP_PERMISSION_DENIED,
        "FAILURE": paramiko_sftp.SFTP_FAILURE,
        "BAD_MESSAGE": paramiko_sftp.SFTP_BAD_MESSAGE,
        "NO_CONNECTION": paramiko_sftp.SFTP_NO_CONNECTION,
        "CONNECTION_LOST": paramiko_sftp.SFTP_CONNECTION_LOST,
        "OP_UNSUPPORTED": paramiko_sftp.SFTP_OP_UNSUPPORTED,
    }

    def __init__(
        self,
        config: ConnectConfig | Mapping[str, Any],
        chunk_size: int = CHUNK_SIZE,
        connection_factory: Callable[[], SSHConnection] = SSHConnection,
    ) -> None:
        """Create a client; nothing is connected until a method is called.

        Args:
            config: Connection parameters, as a :class:`ConnectConfig` or a
                mapping accepted by :meth:`ConnectConfig.from_mapping`.
            chunk_size: Largest single read/write used by the buffer methods.
            connection_factory: Makes new connections (tests swap in fakes).
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.config = coerce_config(config)
        self.chunk_size = chunk_size
        self._connection_factory = connection_factory
        self._runner = CommandRunner(self.config, ConnectionManager(connection_factory))

    @classmethod
    def from_profile(cls, name: str, store: ProfileStore | None = None, **kwargs: Any) -> SFTPClient:
        """Create a client from a profile saved in a :class:`ProfileStore`."""
        store = store or ProfileStore()
        kwargs.setdefault("chunk_size", store.get("transfer_chunk_size", CHUNK_SIZE))
        return cls(store.connect_config(name), **kwargs)

    def __repr__(self) -> str:
        return f"<SFTPClient {self.config.username}@{self.config.host}:{self.config.port}>"

    # ------------------------------------------------------------------
    # Command plumbing
    # ------------------------------------------------------------------

    def cmd(self, body: Body, session: SSHConnection | None = None, persist: bool = False) -> Future:
        """Run ``body(resolve, reject, connection)``; see :meth:`CommandRunner.run`."""
        return self._runner.run(body, session, persist)

    def sftp_cmd(self, body: SftpBody, session: SSHConnection | None = None, persist: bool = False) -> Future:
        """Run an SFTP body; see :meth:`CommandRunner.run_sftp`."""
        return self._runner.run_sftp(body, session, persist)

    def exec_cmd(self, command: str, session: SSHConnection | None = None, persist: bool = False) -> Future:
        """Run *command* remotely; resolves ``True`` on exit status 0."""
        return self._runner.run_exec(command, session, persist)

    def _sftp_call(
        self,
        fn: Callable[[Any], Any],
        session: SSHConnection | None,
        *paths: str,
    ) -> Future:
        for path in paths:
            if not validate_remote_path(path):
                return failed_future(ValueError(f"Invalid remote path: {path!r}"))
        return self._runner.run_sftp(sftp_task(fn), session)

    def session(self, config: ConnectConfig | Mapping[str, Any] | None = None) -> Future:
        """Open a connection for the caller to reuse across calls.

        Resolves with a ready :class:`SSHConnection`.  The caller owns it and
        must ``close()`` it.  If the handshake fails it is closed here.
        """
        conf = coerce_config(config) if config is not None else self.config
        conn = self._connection_factory()
        future: Future = Future()
        future.set_running_or_notify_cancel()

        def _on_settle(failed: bool) -> None:
            if failed:
                conn.close()

        settlement = Settlement(future, _on_settle)

        def _ready() -> None:
            conn.remove_all_listeners()
            settlement.resolve(conn)

        conn.on("ready", _ready)
        conn.on("end", lambda: settlement.reject(ConnectionClosedError("Connection closed")))
        conn.on("error", settlement.reject)
        try:
            conn.connect(conf)
        except Exception as exc:
            settlement.reject(exc)
        return future

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def ls(self, path: str, session: SSHConnection | None = None) -> Future:
        """Describe *path*; directories also list their ``entries``."""

        def _ls(sftp: Any) -> dict[str, Any]:
            attrs = sftp.stat(path)
            kind = entry_type(attrs)
            result: dict[str, Any] = {"path": path, "type": kind, "attrs": attrs_to_dict(attrs)}
            if kind == "directory":
                result["entries"] = [
                    {
                        "filename": entry.filename,
                        "longname": getattr(entry, "longname", None),
                        "attrs": attrs_to_dict(entry),
                    }
                    for entry in sftp.listdir_attr(path)
                ]
                logger.debug("Listed %d entries in %s", len(result["entries"]), path)
            return result

        return self._sftp_call(_ls, session, path)

    def stat(self, path: str, session: SSHConnection | None = None) -> Future:
        """Resolve with the attributes of *path* plus its ``path`` and ``type``."""

        def _stat_path(sftp: Any) -> dict[str, Any]:
            attrs = sftp.stat(path)
            result = attrs_to_dict(attrs)
            result["path"] = path
            result["type"] = entry_type(attrs)
            return result

        return self._sftp_call(_stat_path, session, path)

    def realpath(self, path: str, session: SSHConnection | None = None) -> Future:
        """Resolve with the canonical absolute form of *path*."""
        return self._sftp_call(lambda sftp: sftp.normalize(path), session, path)

    def pwd(self, session: SSHConnection | None = None) -> Future:
        """Resolve with the remote working directory."""
        return self.realpath(".", session)

    # ------------------------------------------------------------------
    # Whole-file transfers
    # ------------------------------------------------------------------

    def get_buffer(self, path: str, session: SSHConnection | None = None) -> Future:
        """Resolve with the whole of remote *path* as ``bytes``."""
        return self._sftp_call(lambda sftp: read_buffer(sftp, path, self.chunk_size), session, path)

    def put_buffer(self, data: bytes, path: str, session: SSHConnection | None = None) -> Future:
        """Replace remote *path* with *data*; resolves ``True``."""
        return self._sftp_call(lambda sftp: write_buffer(sftp, path, data, self.chunk_size), session, path)

    def get(
        self,
        remote: str,
        local: str | Path,
        session: SSHConnection | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Future:
        """Copy remote file *remote* to local path *local*."""

        def _get(sftp: Any) -> bool:
            sftp.get(remote, str(local), callback=on_progress)
            logger.info("Download complete: %s → %s", remote, local)
            return True

        return self._sftp_call(_get, session, remote)

    def put(
        self,
        local: str | Path,
        remote: str,
        session: SSHConnection | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Future:
        """Copy local file *local* to remote path *remote*."""

        def _put(sftp: Any) -> bool:
            sftp.put(str(local), remote, callback=on_progress)
            logger.info("Upload complete: %s → %s", local, remote)
            return True

        return self._sftp_call(_put, session, remote)

    # ------------------------------------------------------------------
    # Filesystem changes
    # ------------------------------------------------------------------

    def rm(self, path: str, session: SSHConnection | None = None) -> Future:
        """Remove the remote file *path*."""

        def _rm(sftp: Any) -> bool:
            sftp.remove(path)
            return True

        return self._sftp_call(_rm, session, path)

    def mv(self, src: str, dest: str, session: SSHConnection | None = None) -> Future:
        """Rename remote *src* to *dest*."""

        def _mv(sftp: Any) -> bool:
            sftp.rename(src, dest)
            return True

        return self._sftp_call(_mv, session, src, dest)

    def rmdir(self, path: str, session: SSHConnection | None = None) -> Future:
        """Remove the empty remote directory *path*."""

        def _rmdir(sftp: Any) -> bool:
            sftp.rmdir(path)
            return True

        return self._sftp_call(_rmdir, session, path)

    def mkdir(self, path: str, session: SSHConnection | None = None) -> Future:
        """Create the remote directory *path*; its parent must exist."""

        def _mkdir(sftp: Any) -> bool:
            sftp.mkdir(path)
            return True

        return self._sftp_call(_mkdir, session, path)

    def mkdirp(self, path: str, session: SSHConnection | None = None) -> Future:
        """Create *path* and any missing parents with ``mkdir -p``."""
        if not validate_remote_path(path):
            return failed_future(ValueError(f"Invalid remote path: {path!r}"))
        return self.exec_cmd(f"mkdir -p {shell_quote(path)}", session)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def get_stream(self, path: str, writable: IO[bytes], session: SSHConnection | None = None) -> Future:
        """Pipe remote *path* into the local *writable* stream."""
        try:
            ensure_writable(writable)
        except ValueError as exc:
            return failed_future(exc)
        return self._sftp_call(lambda sftp: download_to_stream(sftp, path, writable), session, path)

    def put_stream(self, path: str, readable: IO[bytes], session: SSHConnection | None = None) -> Future:
        """Write everything from the local *readable* stream to remote *path*."""
        try:
            ensure_readable(readable)
        except ValueError as exc:
            return failed_future(exc)
        return self._sftp_call(lambda sftp: upload_from_stream(sftp, path, readable), session, path)

    def create_read_stream(self, path: str, session: SSHConnection | None = None) -> Future:
        """Resolve with a readable :class:`RemoteStream` on remote *path*.

        Without *session* the stream owns its connection; closing the stream
        disconnects.
        """
        return self._open_stream(path, "rb", session)

    def create_write_stream(self, path: str, session: SSHConnection | None = None) -> Future:
        """Resolve with a writable :class:`RemoteStream` on remote *path*."""
        return self._open_stream(path, "wb", session)

    def _open_stream(self, path: str, mode: str, session: SSHConnection | None) -> Future:
        if not validate_remote_path(path):
            return failed_future(ValueError(f"Invalid remote path: {path!r}"))

        def _body(resolve, reject, conn: SSHConnection):
            owner = conn if session is None else None

            def _open(sftp: Any) -> RemoteStream:
                try:
                    remote_file = sftp.open(path, mode)
                except Exception:
                    sftp.close()
                    raise
                logger.debug("Opened %s stream on %s", mode, path)
                return RemoteStream(remote_file, sftp, path, mode, owner=owner)

            return sftp_task(_open, close_channel=False)(resolve, reject, conn)

        return self._runner.run_sftp(_body, session, persist=True)
