"""Remote path validation, quoting and formatting utilities."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB")."""
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* can be sent to the SFTP server.

    Rejects empty paths and paths containing null bytes.  Relative paths and
    ``..`` components are allowed; the server resolves them.
    """
    if not isinstance(path, str) or not path:
        logger.warning("Remote path rejected: empty or not a string: %r", path)
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected: contains null byte: %r", path)
        return False
    return True


def shell_quote(value: str) -> str:
    """Wrap *value* in single quotes for a POSIX shell, escaping embedded quotes."""
    return "'" + value.replace("'", "'\\''") + "'"
