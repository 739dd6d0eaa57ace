"""Remote path and size helpers shared by the bridge, probe and engine."""

from __future__ import annotations

import logging
import posixpath
import re
import shlex
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

# adb serials: USB serials, emulator-5554, 192.168.1.1:5555, mDNS service names
_SERIAL_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def posix_join(*parts: str) -> str:
    """Join on-device path parts with forward slashes, whatever the host OS."""
    return posixpath.join(*parts)


def human_readable_size(size_bytes: int | float) -> str:
    """Format *size_bytes* as "9.5 GB" style text (1024-based, KB/MB/GB labels)."""
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def to_mib(size_bytes: int) -> int:
    """Whole MiB contained in *size_bytes* (rounded down)."""
    return size_bytes // MIB


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to pass to ``rm -rf`` on the device.

    Rejects relative paths, null bytes, newlines, traversal sequences
    (``..``) and the filesystem root.
    """
    if "\x00" in path or "\n" in path:
        logger.warning("Refusing to delete %r: control character in path", path)
        return False
    if not path.startswith("/"):
        logger.warning("Refusing to delete %r: path is not absolute", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Refusing to delete %r: path contains '..'", path)
        return False
    if PurePosixPath(path) == PurePosixPath("/"):
        logger.warning("Refusing to delete the filesystem root")
        return False
    return True


def is_valid_serial(serial: str) -> bool:
    """Return True if *serial* looks like an adb device identifier."""
    return bool(_SERIAL_RE.match(serial))


def quote(path: str) -> str:
    """Shell-quote *path* for use inside an ``adb shell`` command line."""
    return shlex.quote(path)
