"""Connection configuration and saved profiles for sftpfutures.

:class:`ConnectConfig` is the immutable bag of parameters handed to every new
connection.  :class:`ProfileStore` keeps named profiles and a few settings as
JSON files under ``~/.sftpfutures/``.  Passwords are never written to disk;
they are delegated to ``keyring``.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "transfer_chunk_size": 32768,
    "ssh_timeout": 15,
    "keepalive_interval": 30,
}

AUTH_TYPES = ("password", "key", "agent")


# ---------------------------------------------------------------------------
# ConnectConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectConfig:
    """Parameters for one SSH connection.

    ``extra`` is passed straight through to ``paramiko.SSHClient.connect``
    for anything not covered by the named fields.
    """

    host: str
    port: int = 22
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    key_path: str | None = None
    auth_type: str = "agent"
    timeout: float = 15.0
    keepalive_interval: int = 30
    known_hosts: str | None = None
    auto_add_host_keys: bool = False
    use_keyring: bool = True
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.auth_type not in AUTH_TYPES:
            raise ValueError(f"auth_type must be one of {AUTH_TYPES}, got {self.auth_type!r}")
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    @property
    def account(self) -> str:
        """Keyring account key for this configuration (user@host)."""
        return f"{self.username}@{self.host}"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ConnectConfig:
        """Build a config from a plain mapping.

        Unknown keys are collected into ``extra``; ``hostname`` and ``user``
        are accepted as aliases for ``host`` and ``username``.
        """
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        extra: dict[str, Any] = dict(data.get("extra", {}))
        for key, value in data.items():
            if key == "extra":
                continue
            key = {"hostname": "host", "user": "username"}.get(key, key)
            if key in known:
                values[key] = value
            else:
                extra[key] = value
        if "host" not in values:
            raise ValueError("Connection config requires a 'host'")
        if "auth_type" not in values:
            if values.get("password") is not None:
                values["auth_type"] = "password"
            elif values.get("key_path"):
                values["auth_type"] = "key"
        return cls(extra=extra, **values)


def coerce_config(config: ConnectConfig | Mapping[str, Any]) -> ConnectConfig:
    """Return *config* as a :class:`ConnectConfig`."""
    if isinstance(config, ConnectConfig):
        return config
    return ConnectConfig.from_mapping(config)


# ---------------------------------------------------------------------------
# ProfileStore
# ---------------------------------------------------------------------------


class ProfileStore:
    """Settings and named connection profiles, kept as JSON in one directory.

    ``settings.json`` holds a flat object of settings (see ``DEFAULT_CONFIG``);
    ``profiles.json`` maps profile names to connection fields.  Every change
    rewrites the whole file through a temporary file and ``os.replace``.  A
    file that is unreadable or has the wrong shape is logged and reset.
    """

    SETTINGS_FILE = "settings.json"
    PROFILES_FILE = "profiles.json"

    def __init__(self, base_dir: Path | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else Path.home() / ".sftpfutures"
        self.base_dir.mkdir(parents=True, exist_ok=True)

        stored = self._read(self.SETTINGS_FILE)
        self._settings: dict[str, Any] = {**DEFAULT_CONFIG, **(stored or {})}
        if stored is None:
            self._write(self.SETTINGS_FILE, self._settings)

        profiles = self._read(self.PROFILES_FILE)
        self._profiles: dict[str, dict[str, Any]] = profiles or {}
        if profiles is None and (self.base_dir / self.PROFILES_FILE).exists():
            self._write(self.PROFILES_FILE, self._profiles)

    def __repr__(self) -> str:
        return f"<ProfileStore {self.base_dir} ({len(self._profiles)} profiles)>"

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _read(self, name: str) -> dict[str, Any] | None:
        """Return the JSON object stored in *name*, or None if missing or bad."""
        path = self.base_dir / name
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable %s (%s), resetting it", path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("%s does not hold a JSON object, resetting it", path)
            return None
        return data

    def _write(self, name: str, data: dict[str, Any]) -> None:
        path = self.base_dir / name
        fd, tmp = tempfile.mkstemp(dir=self.base_dir, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except OSError as exc:
            logger.error("Could not save %s: %s", path, exc)
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._settings[key] = value
        self._write(self.SETTINGS_FILE, self._settings)
        logger.debug("Setting %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        return dict(self._settings)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        """All profiles, sorted by name, each including its ``name``."""
        return [{"name": name, **entry} for name, entry in sorted(self._profiles.items())]

    def get_profile(self, name: str) -> dict[str, Any] | None:
        entry = self._profiles.get(name)
        return None if entry is None else {"name": name, **entry}

    def save_profile(self, profile: Mapping[str, Any]) -> None:
        """Create or replace the profile called ``profile["name"]``.

        ``password`` is never written; keep it in the keyring with
        :func:`sftpfutures.connection.store_password`.

        Raises:
            ValueError: ``name`` or ``host`` is missing.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")
        if not profile.get("host"):
            raise ValueError(f"Profile {name!r} must have a 'host' field")

        self._profiles[name] = {k: v for k, v in profile.items() if k not in ("name", "password")}
        self._write(self.PROFILES_FILE, self._profiles)
        logger.info("Saved profile %s", name)

    def delete_profile(self, name: str) -> bool:
        """Remove profile *name*; returns False if there was no such profile."""
        if self._profiles.pop(name, None) is None:
            logger.warning("No profile named %s to delete", name)
            return False
        self._write(self.PROFILES_FILE, self._profiles)
        logger.info("Deleted profile %s", name)
        return True

    def connect_config(self, name: str) -> ConnectConfig:
        """Build a :class:`ConnectConfig` from profile *name*.

        ``ssh_timeout`` and ``keepalive_interval`` settings apply when the
        profile leaves them out.

        Raises:
            KeyError: No profile called *name* exists.
        """
        if name not in self._profiles:
            raise KeyError(f"No saved profile named {name!r}")
        values = {
            "timeout": self.get("ssh_timeout"),
            "keepalive_interval": self.get("keepalive_interval"),
            **self._profiles[name],
        }
        return ConnectConfig.from_mapping(values)
