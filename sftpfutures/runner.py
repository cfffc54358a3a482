"""Connection lifecycle and command orchestration.

Every public operation goes through :class:`CommandRunner`:

1. :class:`ConnectionManager` hands out a :class:`Lease`: either a fresh
   connection the core owns, or the caller's session, which it borrows.
2. A :class:`Settlement` cell is wired to the returned future.  The first
   outcome wins; anything after that is dropped.
3. On settlement the lease is released (closed or kept) *before* the future
   completes, so a caller observing the result never races the teardown.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable

from sftpfutures.config import ConnectConfig
from sftpfutures.connection import ConnectionClosedError, SSHConnection

logger = logging.getLogger(__name__)

_DRAIN_CHUNK = 32 * 1024

Resolve = Callable[[Any], None]
Reject = Callable[[BaseException], None]
Body = Callable[[Resolve, Reject, SSHConnection], None]
ChannelCallback = Callable[[Exception | None, Any], None]
SftpBody = Callable[[Resolve, Reject, SSHConnection], ChannelCallback]


class RemoteCommandError(Exception):
    """Raised when a remote command exits with a nonzero status."""

    def __init__(self, command: str, exit_status: int) -> None:
        super().__init__(f"Command {command!r} exited with status {exit_status}")
        self.command = command
        self.exit_status = exit_status


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


class Ownership(Enum):
    """Who is responsible for closing a connection."""

    OWNED = auto()
    BORROWED = auto()


@dataclass(frozen=True)
class Lease:
    """A connection together with who must close it."""

    connection: SSHConnection
    ownership: Ownership
    persist: bool = False

    @property
    def owned(self) -> bool:
        return self.ownership is Ownership.OWNED


class ConnectionManager:
    """Decides whether an operation gets a new connection or a borrowed one."""

    def __init__(self, connection_factory: Callable[[], SSHConnection] = SSHConnection) -> None:
        self._connection_factory = connection_factory

    def acquire(self, session: SSHConnection | None = None, persist: bool = False) -> Lease:
        if session is not None:
            return Lease(session, Ownership.BORROWED, persist)
        return Lease(self._connection_factory(), Ownership.OWNED, persist)

    def release(self, lease: Lease, failed: bool) -> None:
        """Close *lease* if the core owns it and nobody asked to keep it.

        A persistent lease survives only a successful operation.
        """
        if not lease.owned:
            return
        if lease.persist and not failed:
            logger.debug("Keeping %r open for the caller", lease.connection)
            return
        try:
            lease.connection.close()
        except Exception:
            logger.exception("Error while closing %r", lease.connection)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class Settlement:
    """Single-assignment result cell in front of a :class:`Future`.

    ``on_settle(failed)`` runs exactly once, before the future completes.
    """

    def __init__(self, future: Future, on_settle: Callable[[bool], None] | None = None) -> None:
        self._future = future
        self._on_settle = on_settle
        self._lock = threading.Lock()
        self._settled = False

    @property
    def settled(self) -> bool:
        with self._lock:
            return self._settled

    def _claim(self) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
            return True

    def _teardown(self, failed: bool) -> None:
        if self._on_settle is None:
            return
        try:
            self._on_settle(failed)
        except Exception:
            logger.exception("Teardown after settlement failed")

    def resolve(self, value: Any = None) -> bool:
        """Settle with *value*.  Returns False if already settled."""
        if not self._claim():
            logger.debug("Ignoring late resolve(%r)", value)
            return False
        self._teardown(False)
        self._future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        """Settle with *error*.  Returns False if already settled."""
        if not self._claim():
            logger.debug("Ignoring late reject(%r)", error)
            return False
        self._teardown(True)
        self._future.set_exception(error)
        return True


def failed_future(error: BaseException) -> Future:
    """Return a future already settled with *error*."""
    future: Future = Future()
    future.set_exception(error)
    return future


# ---------------------------------------------------------------------------
# CommandRunner
# ---------------------------------------------------------------------------


class CommandRunner:
    """Runs one unit of work per call and returns a future for its result."""

    def __init__(self, config: ConnectConfig, manager: ConnectionManager | None = None) -> None:
        self._config = config
        self._manager = manager or ConnectionManager()

    @property
    def config(self) -> ConnectConfig:
        return self._config

    def run(
        self,
        body: Body,
        session: SSHConnection | None = None,
        persist: bool = False,
    ) -> Future:
        """Run ``body(resolve, reject, connection)`` against a connection.

        Without *session* a new connection is made and closed after the
        future settles, unless *persist* is set and the body succeeded.
        A *session* is never closed here.
        """
        lease = self._manager.acquire(session, persist)
        future: Future = Future()
        future.set_running_or_notify_cancel()
        settlement = Settlement(future, lambda failed: self._manager.release(lease, failed))

        if not lease.owned:
            threading.Thread(
                target=self._invoke,
                args=(body, settlement, lease.connection),
                name="sftp-command",
                daemon=True,
            ).start()
            return future

        conn = lease.connection
        conn.on("ready", lambda: self._invoke(body, settlement, conn))
        conn.on("end", lambda: settlement.reject(ConnectionClosedError("Connection closed")))
        conn.on("error", settlement.reject)
        try:
            conn.connect(self._config)
        except Exception as exc:
            settlement.reject(exc)
        return future

    @staticmethod
    def _invoke(body: Body, settlement: Settlement, conn: SSHConnection) -> None:
        try:
            body(settlement.resolve, settlement.reject, conn)
        except Exception as exc:
            logger.debug("Command body raised %r", exc)
            settlement.reject(exc)

    def run_sftp(
        self,
        body: SftpBody,
        session: SSHConnection | None = None,
        persist: bool = False,
    ) -> Future:
        """Like :meth:`run`, but opens an SFTP sub-channel first.

        ``body(resolve, reject, connection)`` returns a ``callback(err, sftp)``
        which receives the sub-channel, or the error that prevented opening it.
        """

        def _open_then_call(resolve: Resolve, reject: Reject, conn: SSHConnection) -> None:
            callback = body(resolve, reject, conn)

            def _guarded(err: Exception | None, sftp: Any) -> None:
                try:
                    callback(err, sftp)
                except Exception as exc:
                    reject(exc)

            conn.open_sftp(_guarded)

        return self.run(_open_then_call, session, persist)

    def run_exec(
        self,
        command: str,
        session: SSHConnection | None = None,
        persist: bool = False,
    ) -> Future:
        """Run *command* remotely; resolves ``True`` on exit status 0.

        Combined stdout and stderr is read to EOF and discarded.
        """

        def _exec(resolve: Resolve, reject: Reject, conn: SSHConnection) -> None:
            def _on_started(err: Exception | None, channel: Any) -> None:
                if err is not None:
                    reject(err)
                    return
                try:
                    channel.set_combine_stderr(True)
                    while channel.recv(_DRAIN_CHUNK):
                        pass
                    exit_status = channel.recv_exit_status()
                finally:
                    channel.close()
                logger.debug("%r exited with status %d", command, exit_status)
                if exit_status != 0:
                    reject(RemoteCommandError(command, exit_status))
                else:
                    resolve(True)

            conn.exec_command(command, _on_started)

        return self.run(_exec, session, persist)


def sftp_task(fn: Callable[[Any], Any], close_channel: bool = True) -> SftpBody:
    """Adapt a plain ``fn(sftp) -> value`` to the :meth:`CommandRunner.run_sftp` shape.

    An open error or an exception from *fn* rejects; a return value resolves.
    The SFTP channel is closed once *fn* is done unless *close_channel* is
    False, in which case *fn* must hand it on (or close it) itself.
    """

    def _body(resolve: Resolve, reject: Reject, conn: SSHConnection) -> ChannelCallback:
        def _callback(err: Exception | None, sftp: Any) -> None:
            if err is not None:
                reject(err)
                return
            try:
                result = fn(sftp)
            except Exception as exc:
                if close_channel:
                    _close_channel(sftp)
                reject(exc)
                return
            if close_channel:
                _close_channel(sftp)
            resolve(result)

        return _callback

    return _body


def _close_channel(sftp: Any) -> None:
    try:
        sftp.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SFTP channel: %s", exc)
