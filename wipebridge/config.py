"""Persistent settings and SSH bridge-host profiles.

Everything lives under ``~/.wipebridge/``:

- ``config.json``: tunables for the bridge and the overwrite engine
- ``hosts.json``: saved bridge hosts (never passwords, those go to ``keyring``)
- ``disclaimer_acknowledged``: flag file written once the security note is read
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "adb_path": "adb",
    "wipe_root": "/sdcard",
    "passes": 3,
    "chunk_size_mb": 1024,
    "fill_percent": 95,
    "write_increment_mb": 64,
    "low_space_floor_mb": 100,
    "command_timeout": 30,
    "idle_timeout": 120,
    "ssh_timeout": 15,
    "estimated_write_mbps": 30,
    "log_dir": None,
}

# Keys a host profile may carry; anything else is dropped before saving.
HOST_FIELDS = ("name", "host", "port", "username", "auth_type", "key_path")
AUTH_TYPES = ("key", "password")


class ConfigManager:
    """Loads and saves WipeBridge settings.

    A missing or unreadable file is replaced with defaults and logged.
    Saves go to a temp file that is then renamed over the original.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base = Path(base_dir) if base_dir else Path.home() / ".wipebridge"
        self._config_path = self._base / "config.json"
        self._hosts_path = self._base / "hosts.json"
        self._disclaimer_flag = self._base / "disclaimer_acknowledged"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config = self._load_config()
        self._hosts = self._load_hosts()

    @property
    def base_dir(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Could not save %s: %s", path.name, exc)
            raise

    def _read_json(self, path: Path, expected: type) -> Any | None:
        """Return the parsed file, or None if it is missing or unusable."""
        if not path.exists():
            return None
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable %s, starting over: %s", path.name, exc)
            return None
        if not isinstance(loaded, expected):
            logger.warning(
                "Unexpected %s in %s, starting over", type(loaded).__name__, path.name
            )
            return None
        return loaded

    def _load_config(self) -> dict[str, Any]:
        stored = self._read_json(self._config_path, dict)
        config = dict(DEFAULT_CONFIG)
        if stored is None:
            self._write_json(self._config_path, config)
        else:
            config.update(stored)
        return config

    def _load_hosts(self) -> list[dict[str, Any]]:
        stored = self._read_json(self._hosts_path, list)
        if stored is None:
            if self._hosts_path.exists():
                self._write_json(self._hosts_path, [])
            return []
        return [p for p in stored if isinstance(p, dict) and p.get("name")]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def get_number(self, key: str) -> float:
        """Return *key* as a number, falling back to the built-in default.

        Non-numeric values are logged and ignored.
        """
        value = self._config.get(key)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric %s=%r in config.json", key, value)
            return float(DEFAULT_CONFIG[key])

    def set(self, key: str, value: Any) -> None:
        """Set *key* and save immediately."""
        self._config[key] = value
        self._write_json(self._config_path, self._config)
        logger.debug("Setting %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        return dict(self._config)

    @property
    def log_dir(self) -> Path:
        """Audit log directory: ``log_dir`` if set, else ``<base>/logs``."""
        configured = self._config.get("log_dir")
        return Path(configured).expanduser() if configured else self._base / "logs"

    # ------------------------------------------------------------------
    # Security note
    # ------------------------------------------------------------------

    def is_disclaimer_acknowledged(self) -> bool:
        return self._disclaimer_flag.exists()

    def acknowledge_disclaimer(self) -> None:
        self._disclaimer_flag.touch()
        logger.info("Security note acknowledged")

    def reset_disclaimer(self) -> None:
        self._disclaimer_flag.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Bridge hosts
    # ------------------------------------------------------------------

    def get_hosts(self) -> list[dict[str, Any]]:
        return [dict(p) for p in self._hosts]

    def get_host(self, name: str) -> dict[str, Any] | None:
        for profile in self._hosts:
            if profile["name"] == name:
                return dict(profile)
        return None

    def save_host(self, profile: dict[str, Any]) -> None:
        """Add or replace the bridge host called ``profile["name"]``.

        Only the keys in :data:`HOST_FIELDS` are kept, so a password passed
        in by mistake never reaches ``hosts.json``.

        Raises:
            ValueError: the profile has no name, or an invalid port or
                auth type.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Host profile must have a non-empty 'name' field")
        if profile.get("auth_type", "key") not in AUTH_TYPES:
            raise ValueError(f"auth_type must be one of {AUTH_TYPES}")
        port = profile.get("port", 22)
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError(f"Invalid port {port!r}")

        clean = {k: profile[k] for k in HOST_FIELDS if k in profile}
        self._hosts = [p for p in self._hosts if p["name"] != name] + [clean]
        self._write_json(self._hosts_path, self._hosts)
        logger.info("Saved bridge host %s", name)

    def delete_host(self, name: str) -> bool:
        """Remove the bridge host *name*; return False if there was none."""
        remaining = [p for p in self._hosts if p["name"] != name]
        if len(remaining) == len(self._hosts):
            return False
        self._hosts = remaining
        self._write_json(self._hosts_path, self._hosts)
        logger.info("Removed bridge host %s", name)
        return True
