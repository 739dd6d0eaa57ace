"""Target-device validation and exclusive ownership.

A wipe must only ever touch the device the operator named.  When no
identifier is given and more than one device is attached, validation fails
with :exc:`AmbiguousDevice` instead of guessing.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from wipebridge.bridge import AdbBridge, DeviceHandle
from wipebridge.errors import (
    AmbiguousDevice,
    DeviceBusy,
    DeviceNotAuthorized,
    DeviceNotFound,
    InvalidConfig,
    NoDeviceFound,
)
from wipebridge.utils.path_helpers import is_valid_serial

logger = logging.getLogger(__name__)

_DESCRIBE_PROPS = {
    "model": "ro.product.model",
    "brand": "ro.product.brand",
    "android_version": "ro.build.version.release",
}

_STATE_HINTS = {
    "unauthorized": "accept the USB debugging prompt on the phone",
    "offline": "reconnect the cable and unlock the phone",
    "no permissions": "check udev rules / USB permissions on this computer",
    "recovery": "reboot the phone into Android",
    "sideload": "reboot the phone into Android",
    "bootloader": "reboot the phone into Android",
}


class DeviceSession:
    """Validates targets and hands out one lease per device serial.

    One instance should be shared by every wipe running in the process so
    that two sessions can never drive the same phone at once.
    """

    def __init__(self, bridge: AdbBridge) -> None:
        self._bridge = bridge
        self._lock = threading.Lock()
        self._leased: set[str] = set()

    @property
    def bridge(self) -> AdbBridge:
        return self._bridge

    def validate(self, identifier: str | None) -> DeviceHandle:
        """Resolve *identifier* to exactly one ready device.

        Raises:
            InvalidConfig: *identifier* is not a well-formed serial.
            NoDeviceFound: adb lists no devices.
            AmbiguousDevice: no identifier and several devices attached.
            DeviceNotFound: *identifier* is not attached.
            DeviceNotAuthorized: the device is attached but not ready.
        """
        if identifier is not None and not is_valid_serial(identifier):
            raise InvalidConfig(f"Invalid device identifier: {identifier!r}")

        devices = self._bridge.list_devices()
        if not devices:
            raise NoDeviceFound(
                "No device connected. Connect the phone via USB, enable USB "
                "debugging and authorize this computer."
            )

        if identifier is None:
            if len(devices) > 1:
                serials = ", ".join(d.serial for d in devices)
                raise AmbiguousDevice(
                    f"{len(devices)} devices attached ({serials}); "
                    "specify which one to wipe with --device"
                )
            handle = devices[0]
        else:
            handle = next((d for d in devices if d.serial == identifier), None)
            if handle is None:
                listed = ", ".join(d.serial for d in devices)
                raise DeviceNotFound(
                    f"Device {identifier!r} not found (attached: {listed})"
                )

        if not handle.is_ready:
            hint = _STATE_HINTS.get(handle.state, "check the connection")
            raise DeviceNotAuthorized(
                f"Device {handle.serial} is {handle.state!r}; {hint}"
            )

        logger.info("Validated device %s (%s)", handle.serial, handle.model or "unknown model")
        return handle

    def describe(self, handle: DeviceHandle) -> dict[str, str]:
        """Model, brand and Android version of *handle* via ``getprop``."""
        props = self._bridge.get_properties(handle.serial, *_DESCRIBE_PROPS.values())
        return {key: props.get(prop, "") for key, prop in _DESCRIBE_PROPS.items()}

    @contextmanager
    def lease(self, handle: DeviceHandle) -> Iterator[DeviceHandle]:
        """Hold exclusive use of *handle*'s serial for the ``with`` body.

        Raises:
            DeviceBusy: another session already holds this serial.
        """
        with self._lock:
            if handle.serial in self._leased:
                raise DeviceBusy(f"Device {handle.serial} is already being wiped")
            self._leased.add(handle.serial)
        logger.debug("Leased %s", handle.serial)
        try:
            yield handle
        finally:
            with self._lock:
                self._leased.discard(handle.serial)
            logger.debug("Released lease on %s", handle.serial)

    def is_leased(self, serial: str) -> bool:
        with self._lock:
            return serial in self._leased
