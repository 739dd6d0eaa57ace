"""``adb`` client used by every other component.

Wraps a transport (local or SSH) and exposes the handful of bridge
operations WipeBridge needs.  Transport failures are translated into the
domain errors of :mod:`wipebridge.errors` here, so nothing above this layer
has to know what an adb error string looks like.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterator

from wipebridge import remote
from wipebridge.errors import (
    BridgeUnavailable,
    DeviceLost,
    InvalidConfig,
    WriteFailed,
)
from wipebridge.transport import (
    CommandFailed,
    CommandNotFound,
    CommandResult,
    CommandTimeout,
    LocalTransport,
    NotConnectedError,
)
from wipebridge.utils.path_helpers import is_valid_serial, posix_join, validate_remote_path

logger = logging.getLogger(__name__)

READY_STATE = "device"

# adb's own complaints when the device vanished mid-command
_DEVICE_LOST_RE = re.compile(
    r"device '?[^']*'? not found"
    r"|device offline"
    r"|no devices/emulators found"
    r"|error: closed"
    r"|protocol fault"
    r"|device still authorizing",
    re.IGNORECASE,
)

# Tried in order; some are blocked by permissions on certain OEM builds
_RESET_INTENTS = (
    ("android.settings.MASTER_CLEAR", "Factory Reset"),
    ("android.settings.BACKUP_AND_RESET_SETTINGS", "Backup & Reset"),
    ("android.settings.PRIVACY_SETTINGS", "Privacy Settings"),
    ("android.settings.INTERNAL_STORAGE_SETTINGS", "Storage Settings"),
)
_INTENT_DENIED_RE = re.compile(r"Permission Denial|SecurityException|Error:")


@dataclass
class DeviceHandle:
    """One row of ``adb devices -l``."""

    serial: str
    state: str
    model: str = ""
    product: str = ""
    transport_id: str = ""
    extras: dict[str, str] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        """True when adb reports the device as authorized and online."""
        return self.state == READY_STATE


@dataclass
class BridgeStatus:
    """Result of :meth:`AdbBridge.status`."""

    installed: bool
    version: str | None
    devices_connected: int


def parse_devices(output: str) -> list[DeviceHandle]:
    """Parse ``adb devices [-l]`` output into handles (all states)."""
    devices: list[DeviceHandle] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial = parts[0]
        # "no permissions (...)" spans several tokens
        if parts[1] == "no" and len(parts) > 2 and parts[2].startswith("permissions"):
            state = "no permissions"
            rest = []
        else:
            state = parts[1]
            rest = parts[2:]
        extras = dict(token.split(":", 1) for token in rest if ":" in token)
        devices.append(
            DeviceHandle(
                serial=serial,
                state=state,
                model=extras.pop("model", ""),
                product=extras.pop("product", ""),
                transport_id=extras.pop("transport_id", ""),
                extras=extras,
            )
        )
    return devices


class AdbBridge:
    """Runs ``adb`` commands through a transport.

    Every device-scoped method takes the serial explicitly; the bridge
    keeps no notion of a "current" device.
    """

    def __init__(
        self,
        transport=None,
        adb_path: str = "adb",
        command_timeout: float = 30.0,
    ) -> None:
        """Initialise the bridge.

        Args:
            transport: A ``LocalTransport`` or ``SSHTransport``; defaults
                to a local transport.
            adb_path: Name or path of the adb executable on the transport's
                host.
            command_timeout: Default timeout for one-shot commands.
        """
        self._transport = transport or LocalTransport()
        self.adb_path = adb_path
        self.command_timeout = command_timeout

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _argv(self, *args: str) -> list[str]:
        return [self.adb_path, *args]

    @staticmethod
    def _check_serial(serial: str) -> None:
        if not is_valid_serial(serial):
            raise InvalidConfig(f"Invalid device identifier: {serial!r}")

    def _run(self, argv: list[str], timeout: float | None = None) -> CommandResult:
        timeout = timeout or self.command_timeout
        try:
            return self._transport.run(argv, timeout)
        except CommandNotFound as exc:
            raise BridgeUnavailable(
                f"{self.adb_path!r} is not installed or not in PATH"
            ) from exc
        except NotConnectedError as exc:
            raise BridgeUnavailable(str(exc)) from exc
        except CommandTimeout as exc:
            raise DeviceLost(f"Device did not respond: {exc}") from exc

    def _raise_for_result(self, serial: str, command: str, result: CommandResult) -> None:
        if result.exit_code == 0:
            return
        if _DEVICE_LOST_RE.search(result.output):
            raise DeviceLost(f"Device {serial} disconnected: {result.output.strip()}")
        raise WriteFailed(
            f"Command {command!r} on {serial} failed with status "
            f"{result.exit_code}: {result.output.strip()}"
        )

    # ------------------------------------------------------------------
    # Bridge-level operations
    # ------------------------------------------------------------------

    def list_devices(self) -> list[DeviceHandle]:
        """Return every device adb can see, in any state."""
        result = self._run(self._argv("devices", "-l"))
        if result.exit_code != 0:
            raise BridgeUnavailable(f"'adb devices' failed: {result.output.strip()}")
        devices = parse_devices(result.stdout)
        logger.debug("adb reports %d device(s)", len(devices))
        return devices

    def status(self) -> BridgeStatus:
        """Report whether adb is installed, its version and ready-device count."""
        try:
            result = self._run(self._argv("version"))
        except BridgeUnavailable:
            return BridgeStatus(installed=False, version=None, devices_connected=0)
        if result.exit_code != 0:
            return BridgeStatus(installed=False, version=None, devices_connected=0)
        version = next(iter(result.stdout.splitlines()), None)
        ready = [d for d in self.list_devices() if d.is_ready]
        return BridgeStatus(installed=True, version=version, devices_connected=len(ready))

    # ------------------------------------------------------------------
    # Device-scoped operations
    # ------------------------------------------------------------------

    def shell(self, serial: str, command: str, timeout: float | None = None) -> str:
        """Run *command* in ``adb shell`` on *serial* and return stdout.

        Raises:
            DeviceLost: The device vanished or stopped answering.
            WriteFailed: The command exited non-zero.
        """
        self._check_serial(serial)
        result = self._run(self._argv("-s", serial, "shell", command), timeout)
        self._raise_for_result(serial, command, result)
        return result.stdout.replace("\r\n", "\n")

    def stream_shell(self, serial: str, command: str, idle_timeout: float) -> Iterator[str]:
        """Run *command* on *serial*, yielding output lines as they arrive.

        Raises (from the generator):
            DeviceLost: No output for *idle_timeout* seconds, or adb
                reports the device gone.
            WriteFailed: The command exited non-zero.
        """
        self._check_serial(serial)
        argv = self._argv("-s", serial, "shell", command)
        try:
            yield from self._transport.stream(argv, idle_timeout)
        except CommandNotFound as exc:
            raise BridgeUnavailable(
                f"{self.adb_path!r} is not installed or not in PATH"
            ) from exc
        except NotConnectedError as exc:
            raise DeviceLost(f"Bridge host connection lost: {exc}") from exc
        except CommandTimeout as exc:
            raise DeviceLost(f"Device {serial} stopped responding: {exc}") from exc
        except CommandFailed as exc:
            if _DEVICE_LOST_RE.search(exc.output):
                raise DeviceLost(f"Device {serial} disconnected: {exc.output.strip()}") from exc
            raise WriteFailed(
                f"Command on {serial} failed with status {exc.exit_code}: "
                f"{exc.output.strip()[-300:]}"
            ) from exc

    def query_space(self, serial: str, path: str, flag: str | None = None) -> str:
        """Return raw ``df`` output for *path* on *serial*.

        *flag* is ``"-h"``, ``"-k"`` or ``None`` (plain ``df``).
        """
        command = f"df {flag} {path}" if flag else f"df {path}"
        return self.shell(serial, command)

    def get_properties(self, serial: str, *names: str) -> dict[str, str]:
        """Read system properties via ``getprop``."""
        return {
            name: self.shell(serial, f"getprop {name}").strip()
            for name in names
        }

    def open_reset_settings(self, serial: str) -> str:
        """Open the factory-reset screen (or the closest reachable one).

        Returns the name of the screen that was opened.  The reset itself
        must be confirmed by the operator on the device.
        """
        self._check_serial(serial)
        for intent, name in _RESET_INTENTS:
            result = self._run(
                self._argv("-s", serial, "shell", "am", "start", "-a", intent)
            )
            if result.exit_code == 0 and not _INTENT_DENIED_RE.search(result.output):
                logger.info("Opened %s on %s", name, serial)
                return name
            logger.debug("Intent %s refused on %s", intent, serial)

        self.shell(serial, "am start -n com.android.settings/.Settings")
        logger.info("Opened main Settings on %s", serial)
        return "Settings"

    def revoke_debugging(self, serial: str) -> bool:
        """Switch off USB debugging on *serial*.

        Returns True if the device acknowledged the change, False if the
        connection dropped while it was applied (adbd stopping can do
        that).

        Raises:
            WriteFailed: The setting was refused; some builds need root.
        """
        try:
            self.shell(serial, remote.disable_adb())
        except DeviceLost as exc:
            logger.warning("%s dropped off while disabling debugging: %s", serial, exc)
            return False
        logger.info("Disabled USB debugging on %s", serial)
        return True

    def remove_stale_sessions(
        self, serial: str, wipe_root: str, timeout: float | None = None
    ) -> list[str]:
        """Delete wipe directories left under *wipe_root* by interrupted runs.

        Only entries named like a session directory (or the fixed
        directory of older wipe scripts) are touched.  Returns the paths
        removed.

        Raises:
            InvalidConfig: *wipe_root* is not safe to delete under.
        """
        if not validate_remote_path(wipe_root):
            raise InvalidConfig(f"Refusing to clean up under unsafe path {wipe_root!r}")
        listing = self.shell(serial, remote.list_dir(wipe_root))
        stale = [
            posix_join(wipe_root, name)
            for name in (line.strip() for line in listing.splitlines())
            if remote.is_leftover(name)
        ]
        stale = [path for path in stale if validate_remote_path(path)]
        if not stale:
            logger.info("No leftover wipe directories under %s on %s", wipe_root, serial)
            return []
        self.shell(serial, remote.remove_paths(stale), timeout)
        logger.info("Removed %d leftover wipe director(ies) from %s", len(stale), serial)
        return stale
