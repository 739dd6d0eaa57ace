"""WipeBridge: overwrite the free space of an Android phone over adb."""

from __future__ import annotations

__version__ = "1.0.0"

from wipebridge.bridge import AdbBridge, DeviceHandle
from wipebridge.engine import OverwriteEngine, WipeConfig, WipeMode, WipeResult

__all__ = [
    "AdbBridge",
    "DeviceHandle",
    "OverwriteEngine",
    "WipeConfig",
    "WipeMode",
    "WipeResult",
    "__version__",
]
