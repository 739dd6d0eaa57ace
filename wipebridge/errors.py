"""Error taxonomy for WipeBridge.

Every error the engine surfaces to a caller derives from :class:`WipeError`,
which carries enough context for the operator to decide what to do next:
the pass in progress (if any), bytes written so far, and the CLI exit code.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit status for the ``wipebridge`` command."""

    OK = 0
    ERROR = 1
    # 2 is reserved for click usage errors
    NO_DEVICE = 3
    AMBIGUOUS_DEVICE = 4
    INSUFFICIENT_SPACE = 5
    INVALID_CONFIG = 6
    ABORTED = 7
    DEVICE_LOST = 8
    STORAGE_QUERY_FAILED = 9
    WRITE_FAILED = 10
    BRIDGE_UNAVAILABLE = 11
    DEVICE_BUSY = 12


class WipeError(Exception):
    """Base class for all WipeBridge errors."""

    exit_code = ExitCode.ERROR

    def __init__(
        self,
        message: str,
        *,
        pass_number: int | None = None,
        bytes_written: int = 0,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.pass_number = pass_number
        self.bytes_written = bytes_written

    @property
    def kind(self) -> str:
        """Short name of the error class, used in logs and audit records."""
        return type(self).__name__


# ---------------------------------------------------------------------------
# Device selection
# ---------------------------------------------------------------------------


class DeviceError(WipeError):
    """A problem locating or addressing the target device."""

    exit_code = ExitCode.NO_DEVICE


class NoDeviceFound(DeviceError):
    """The bridge reports no attached devices at all."""


class DeviceNotFound(DeviceError):
    """The requested identifier is not in the bridge's device list."""


class DeviceNotAuthorized(DeviceError):
    """The device is attached but not in the ready (``device``) state."""


class AmbiguousDevice(DeviceError):
    """No identifier was given and more than one device is attached."""

    exit_code = ExitCode.AMBIGUOUS_DEVICE


class DeviceBusy(DeviceError):
    """Another session already owns this device."""

    exit_code = ExitCode.DEVICE_BUSY


# ---------------------------------------------------------------------------
# Sizing / configuration
# ---------------------------------------------------------------------------


class InvalidConfig(WipeError, ValueError):
    """A wipe parameter is out of bounds or malformed."""

    exit_code = ExitCode.INVALID_CONFIG


class StorageQueryFailed(WipeError):
    """Free/total space could not be determined from ``df`` output."""

    exit_code = ExitCode.STORAGE_QUERY_FAILED


class InsufficientSpace(WipeError):
    """The device does not have room for the requested wipe."""

    exit_code = ExitCode.INSUFFICIENT_SPACE


# ---------------------------------------------------------------------------
# Mid-run failures
# ---------------------------------------------------------------------------


class WriteFailed(WipeError):
    """A remote write, sync or delete command was rejected."""

    exit_code = ExitCode.WRITE_FAILED


class DeviceLost(WipeError):
    """The device dropped off the bridge or stopped responding."""

    exit_code = ExitCode.DEVICE_LOST


class BridgeUnavailable(WipeError):
    """The ``adb`` binary (or the SSH bridge host) cannot be reached."""

    exit_code = ExitCode.BRIDGE_UNAVAILABLE


class CleanupFailed(WipeError):
    """Removal of the remote temp directory failed.

    Never raised out of the engine; reported as a warning next to the
    terminal outcome.
    """
