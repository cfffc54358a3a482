"""SSH transport handle for sftpfutures.

Wraps a ``paramiko.SSHClient`` in an object with an explicit lifecycle
(``DISCONNECTED → CONNECTING → READY → ENDED | ERROR``) and three signals
that the command runner subscribes to:

- ``ready``: the handshake and authentication finished.
- ``end``: the connection went away (closed, or the transport died).
- ``error``: connecting failed; the listener receives the exception.

Connecting happens on a daemon thread so that :meth:`SSHConnection.connect`
never blocks the caller.  Signals fire from that thread (or from the
liveness watcher thread for ``end``).
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable

import keyring
import keyring.errors
import paramiko

from sftpfutures.config import ConnectConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

Listener = Callable[..., None]
ChannelCallback = Callable[[Exception | None, Any], None]

_KEYRING_SERVICE = "sftpfutures"
_SIGNALS = ("ready", "end", "error")


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(Exception):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can decide to trust it
    and save it via :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class ConnectionClosedError(Exception):
    """Raised when the connection ends before an operation could settle."""


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging instead of raising on cleanup noise."""
    try:
        client.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def _known_hosts_path(config: ConnectConfig) -> Path:
    if config.known_hosts:
        return Path(config.known_hosts).expanduser()
    return Path.home() / ".ssh" / "known_hosts"


def accept_host_key(hostname: str, key: paramiko.PKey, known_hosts: str | None = None) -> None:
    """Append *key* for *hostname* to the known_hosts file and save.

    Creates the file and its directory if they do not exist.
    """
    path = Path(known_hosts).expanduser() if known_hosts else Path.home() / ".ssh" / "known_hosts"
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(path)) if path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(path))
    logger.info("Saved host key for %s to %s", hostname, path)


def store_password(config: ConnectConfig, password: str) -> None:
    """Store *password* in the OS keyring for ``config.username@config.host``."""
    keyring.set_password(_KEYRING_SERVICE, config.account, password)
    logger.debug("Password stored in keyring for %s", config.account)


def delete_password(config: ConnectConfig) -> None:
    """Remove the stored password for *config* from the OS keyring."""
    try:
        keyring.delete_password(_KEYRING_SERVICE, config.account)
    except keyring.errors.PasswordDeleteError:
        logger.debug("No keyring entry to delete for %s", config.account)
        return
    logger.debug("Password deleted from keyring for %s", config.account)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    READY = auto()
    ENDED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SSHConnection
# ---------------------------------------------------------------------------

_WINDOW_SIZE = 64 * 1024 * 1024  # 64 MB
_LIVENESS_CHECK_INTERVAL = 5  # seconds between transport liveness checks


class SSHConnection:
    """One authenticated SSH connection plus the ability to open SFTP
    sub-channels and run remote commands.

    Thread-safety:
    - ``_lock`` protects state transitions and the listener table.
    - Listeners are always called without the lock held.
    """

    def __init__(self) -> None:
        self._client: paramiko.SSHClient | None = None
        self._config: ConnectConfig | None = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._watch_thread: threading.Thread | None = None

    def __repr__(self) -> str:
        host = self._config.host if self._config else "?"
        return f"<SSHConnection {host} {self.state.name}>"

    # ------------------------------------------------------------------
    # State and signals
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    def on(self, event: str, callback: Listener) -> SSHConnection:
        """Subscribe *callback* to *event* (``ready``, ``end`` or ``error``)."""
        if event not in _SIGNALS:
            raise ValueError(f"Unknown connection event: {event!r}")
        with self._lock:
            self._listeners[event].append(callback)
        return self

    def remove_all_listeners(self, event: str | None = None) -> SSHConnection:
        """Drop listeners for *event*, or for every event when omitted."""
        with self._lock:
            if event is None:
                self._listeners.clear()
            else:
                self._listeners.pop(event, None)
        return self

    def _emit(self, event: str, *args: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, ()))
        logger.debug("%r emitting %s to %d listener(s)", self, event, len(listeners))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception("Exception in %s listener", event)

    # ------------------------------------------------------------------
    # Connect / close
    # ------------------------------------------------------------------

    def connect(self, config: ConnectConfig) -> None:
        """Start connecting with *config* on a daemon thread.

        Returns immediately; the outcome is reported through the ``ready``
        or ``error`` signal.
        """
        with self._lock:
            if self._state is not ConnectionState.DISCONNECTED:
                raise RuntimeError(f"connect() called on a connection in state {self._state.name}")
            self._config = config
            self._state = ConnectionState.CONNECTING

        threading.Thread(
            target=self._connect_worker,
            name=f"ssh-connect-{config.host}",
            daemon=True,
        ).start()

    def _connect_worker(self) -> None:
        try:
            client = self._do_connect(self._config)
        except Exception as exc:
            with self._lock:
                if self._state is not ConnectionState.CONNECTING:
                    # close() already ended this connection
                    logger.debug("Handshake with %s failed after close: %s", self._config.host, exc)
                    return
                self._state = ConnectionState.ERROR
            logger.warning("Connection to %s failed: %s", self._config.host, exc)
            self._emit("error", exc)
            return

        with self._lock:
            if self._state is not ConnectionState.CONNECTING:
                # close() raced the handshake
                _close_client_safely(client)
                return
            self._client = client
            self._state = ConnectionState.READY
            self._stop_event.clear()

        self._start_watch_thread()
        logger.info("Connected to %s", self._config.host)
        self._emit("ready")

    def _do_connect(self, config: ConnectConfig) -> paramiko.SSHClient:
        """Open and authenticate a paramiko client for *config*.

        Raises:
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            paramiko.AuthenticationException: Wrong credentials.
            socket.timeout: Connection timed out.
            OSError: Network-level failure.
        """
        logger.info("Connecting to %s@%s:%d", config.username, config.host, config.port)

        client = paramiko.SSHClient()
        known_hosts = _known_hosts_path(config)
        if known_hosts.exists():
            client.load_host_keys(str(known_hosts))

        if config.auto_add_host_keys:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(_CapturingPolicy())

        connect_kwargs: dict[str, Any] = {
            "hostname": config.host,
            "port": config.port,
            "username": config.username,
            "timeout": config.timeout,
            "allow_agent": True,
            "look_for_keys": config.auth_type != "password",
        }

        if config.auth_type == "password":
            password = config.password
            if password is None and config.use_keyring:
                password = keyring.get_password(_KEYRING_SERVICE, config.account)
            if password:
                connect_kwargs["password"] = password
        elif config.auth_type == "key" and config.key_path:
            connect_kwargs["key_filename"] = str(Path(config.key_path).expanduser())
        connect_kwargs.update(config.extra)

        try:
            client.connect(**connect_kwargs)
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {config.host}; check {known_hosts}",
                hostname=config.host,
            ) from exc
        except Exception:
            _close_client_safely(client)
            raise

        transport = client.get_transport()
        if transport:
            if config.keepalive_interval:
                transport.set_keepalive(config.keepalive_interval)
            transport.default_window_size = _WINDOW_SIZE
        return client

    def close(self) -> None:
        """Stop further I/O and release the underlying client.

        Safe to call more than once; only the first call has an effect.
        """
        with self._lock:
            previous = self._state
            if previous in (ConnectionState.ENDED, ConnectionState.DISCONNECTED):
                return
            self._stop_event.set()
            client, self._client = self._client, None
            self._state = ConnectionState.ENDED

        if client is not None:
            _close_client_safely(client)
        watcher = self._watch_thread
        if watcher and watcher.is_alive() and watcher is not threading.current_thread():
            watcher.join(timeout=_LIVENESS_CHECK_INTERVAL + 1)
        self._watch_thread = None
        logger.debug("Closed %r (was %s)", self, previous.name)

        if previous in (ConnectionState.CONNECTING, ConnectionState.READY):
            self._emit("end")

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def _start_watch_thread(self) -> None:
        self._watch_thread = threading.Thread(
            target=self._watch_loop,
            name=f"ssh-watch-{self._config.host}",
            daemon=True,
        )
        self._watch_thread.start()

    def _watch_loop(self) -> None:
        """Fire ``end`` once if the transport dies underneath us."""
        while not self._stop_event.wait(timeout=_LIVENESS_CHECK_INTERVAL):
            with self._lock:
                if self._state is not ConnectionState.READY:
                    return
                transport = self._client.get_transport() if self._client else None
                alive = transport is not None and transport.is_active()
                if not alive:
                    self._state = ConnectionState.ENDED
                    client, self._client = self._client, None

            if not alive:
                logger.warning("Transport for %s lost", self._config.host)
                if client is not None:
                    _close_client_safely(client)
                self._emit("end")
                return

    # ------------------------------------------------------------------
    # Sub-channels
    # ------------------------------------------------------------------

    def _ready_client(self) -> paramiko.SSHClient:
        with self._lock:
            if self._state is not ConnectionState.READY or self._client is None:
                raise ConnectionClosedError(f"Connection is not ready (state: {self._state.name})")
            return self._client

    def open_sftp(self, callback: ChannelCallback) -> None:
        """Open an SFTP sub-channel and hand it to ``callback(err, sftp)``.

        Failures are delivered through *callback* with ``sftp`` set to None.
        """
        try:
            sftp = self._ready_client().open_sftp()
        except Exception as exc:
            logger.warning("Could not open SFTP channel: %s", exc)
            callback(exc, None)
            return
        callback(None, sftp)

    def exec_command(self, command: str, callback: ChannelCallback) -> None:
        """Start *command* on a new session channel; ``callback(err, channel)``."""
        try:
            transport = self._ready_client().get_transport()
            if transport is None:
                raise ConnectionClosedError("SSH transport unavailable")
            channel = transport.open_session()
            channel.exec_command(command)
        except Exception as exc:
            logger.error("exec_command(%r) failed to start: %s", command, exc)
            callback(exc, None)
            return
        callback(None, channel)
