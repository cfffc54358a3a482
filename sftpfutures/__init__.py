"""sftpfutures: one future per SFTP operation, over paramiko."""

from __future__ import annotations

from sftpfutures.client import SFTPClient
from sftpfutures.config import ConnectConfig, ProfileStore
from sftpfutures.connection import (
    ConnectionClosedError,
    ConnectionState,
    SSHConnection,
    UnknownHostError,
    accept_host_key,
)
from sftpfutures.runner import CommandRunner, ConnectionManager, Lease, Ownership, RemoteCommandError
from sftpfutures.streams import RemoteStream
from sftpfutures.transfer import InvalidStreamError, TransferError

__version__ = "0.3.0"

__all__ = [
    "CommandRunner",
    "ConnectConfig",
    "ConnectionClosedError",
    "ConnectionManager",
    "ConnectionState",
    "InvalidStreamError",
    "Lease",
    "Ownership",
    "ProfileStore",
    "RemoteCommandError",
    "RemoteStream",
    "SFTPClient",
    "SSHConnection",
    "TransferError",
    "UnknownHostError",
    "accept_host_key",
]
