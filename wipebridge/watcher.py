"""Background device watcher for WipeBridge.

Polls ``adb devices`` on a daemon thread and reports serials that appear,
disappear or change state.  Used to wait for a phone to come back after
it has been reset or re-plugged.

Callbacks are invoked from the watcher thread.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from wipebridge.bridge import AdbBridge, DeviceHandle
from wipebridge.errors import WipeError

logger = logging.getLogger(__name__)

_DEFAULT_INTERVAL = 2.0  # seconds between polls


class DeviceWatcher:
    """Reports device arrivals and departures.

    Usage::

        watcher = DeviceWatcher(
            bridge,
            on_device_found=lambda d: print("found", d.serial),
            on_device_lost=lambda serial: print("lost", serial),
        )
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        bridge: AdbBridge,
        interval: float = _DEFAULT_INTERVAL,
        on_device_found: Callable[[DeviceHandle], None] | None = None,
        on_device_lost: Callable[[str], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        self._bridge = bridge
        self.interval = interval
        self.on_device_found = on_device_found
        self.on_device_lost = on_device_lost
        self.on_error = on_error

        self._stop_event = threading.Event()
        self._worker_thread: threading.Thread | None = None
        self._known: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._worker_thread and self._worker_thread.is_alive())

    def start(self) -> None:
        """Begin polling in a daemon thread."""
        if self.running:
            logger.warning("Device watcher already running")
            return
        self._stop_event.clear()
        self._known = {}
        self._worker_thread = threading.Thread(
            target=self._run,
            name="device-watcher",
            daemon=True,
        )
        self._worker_thread.start()
        logger.info("Device watcher started")

    def stop(self) -> None:
        """Signal the watcher to stop and wait briefly for it."""
        self._stop_event.set()
        if self._worker_thread:
            self._worker_thread.join(timeout=self.interval + 3)
        logger.info("Device watcher stopped")

    def poll(self) -> list[DeviceHandle]:
        """Poll once, fire callbacks for changes, and return the device list."""
        devices = self._bridge.list_devices()
        current = {d.serial: d.state for d in devices}

        for device in devices:
            if self._known.get(device.serial) != device.state:
                logger.info("Device %s is now %r", device.serial, device.state)
                self._emit_found(device)

        for serial in set(self._known) - set(current):
            logger.info("Device %s disappeared", serial)
            self._emit_lost(serial)

        self._known = current
        return devices

    def wait_for(self, serial: str, timeout: float | None = None) -> DeviceHandle | None:
        """Block until *serial* is listed as ready, or *timeout* elapses.

        Polls on the calling thread; returns ``None`` on timeout or stop.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._stop_event.is_set():
            try:
                for device in self.poll():
                    if device.serial == serial and device.is_ready:
                        return device
            except WipeError as exc:
                self._emit_error(str(exc))
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._stop_event.wait(min(self.interval, remaining))
            else:
                self._stop_event.wait(self.interval)
        return None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll()
            except WipeError as exc:
                logger.warning("Device poll failed: %s", exc)
                self._emit_error(str(exc))
            except Exception as exc:
                logger.exception("Unhandled error in device watcher")
                self._emit_error(str(exc))
            self._stop_event.wait(self.interval)

    def _emit_found(self, device: DeviceHandle) -> None:
        if self.on_device_found:
            try:
                self.on_device_found(device)
            except Exception:
                logger.exception("Exception in on_device_found callback")

    def _emit_lost(self, serial: str) -> None:
        if self.on_device_lost:
            try:
                self.on_device_lost(serial)
            except Exception:
                logger.exception("Exception in on_device_lost callback")

    def _emit_error(self, message: str) -> None:
        if self.on_error:
            try:
                self.on_error(message)
            except Exception:
                logger.exception("Exception in on_error callback")
