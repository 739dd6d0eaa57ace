"""Free/total space measurement on the target device.

``df`` output varies a lot between Android builds: toybox prints
human-readable sizes with ``-h`` and 1K blocks with ``-k``, old toolbox
builds print ``Size Used Free Blksize`` without a ``Use%`` column, some
Samsung builds reject flags entirely, and long filesystem names get wrapped
onto their own line.  :class:`StorageProbe` tries each presentation in turn
and only gives up when none of them parse.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field

from wipebridge.bridge import AdbBridge, DeviceHandle
from wipebridge.errors import StorageQueryFailed, WriteFailed
from wipebridge.utils.path_helpers import KIB, human_readable_size

logger = logging.getLogger(__name__)

DEFAULT_MOUNT = "/sdcard"

_SIZE_RE = re.compile(r"^(\d+(?:[.,]\d+)?)\s*([KMGTPE])?(i?B)?$", re.IGNORECASE)
_BLOCKS_RE = re.compile(r"^(\d+)([KMG])?-blocks$", re.IGNORECASE)
_UNIT_POWERS = {"K": 1, "M": 2, "G": 3, "T": 4, "P": 5, "E": 6}

_TOTAL_COLUMNS = ("size", "blocks")
_AVAIL_COLUMNS = ("avail", "available", "free")


@dataclass(frozen=True)
class StorageSnapshot:
    """Total and available bytes on the user-data mount at one instant."""

    total_bytes: int
    available_bytes: int
    taken_at: float = field(default_factory=time.time, compare=False)

    def __post_init__(self) -> None:
        if self.total_bytes < 0 or self.available_bytes < 0:
            raise ValueError("Storage sizes cannot be negative")
        if self.available_bytes > self.total_bytes:
            raise ValueError("Available space cannot exceed total space")

    @property
    def used_bytes(self) -> int:
        return self.total_bytes - self.available_bytes

    @property
    def percent_used(self) -> int:
        if self.total_bytes == 0:
            return 0
        return round(self.used_bytes * 100 / self.total_bytes)

    def __str__(self) -> str:
        return (
            f"{human_readable_size(self.available_bytes)} free of "
            f"{human_readable_size(self.total_bytes)}"
        )


def parse_size(token: str, default_unit: int = KIB) -> int:
    """Convert a ``df`` size field to bytes.

    Accepts ``"1.2G"``, ``"512M"``, ``"100K"``, ``"4.0GiB"``, ``"2048B"``
    and bare numbers, which are multiplied by *default_unit* (1K blocks
    unless the header says otherwise).

    Raises:
        ValueError: *token* is not a size.
    """
    match = _SIZE_RE.match(token.strip())
    if not match:
        raise ValueError(f"Not a size: {token!r}")
    value = float(match.group(1).replace(",", "."))
    unit, byte_suffix = match.group(2), match.group(3)
    if unit:
        multiplier = 1024 ** _UNIT_POWERS[unit.upper()]
    elif byte_suffix:
        multiplier = 1
    else:
        multiplier = default_unit
    return int(round(value * multiplier))


def _header_columns(header: str) -> list[str]:
    """Lower-cased header names with "Mounted on" folded into one column."""
    return header.replace("Mounted on", "Mounted_on").lower().split()


def _block_size(column: str) -> int | None:
    match = _BLOCKS_RE.match(column)
    if not match:
        return None
    size = int(match.group(1))
    if match.group(2):
        size *= 1024 ** _UNIT_POWERS[match.group(2).upper()]
    return size


def parse_df(output: str) -> StorageSnapshot:
    """Parse ``df`` output for a single mount into a snapshot.

    Raises:
        ValueError: the size fields cannot be located.
    """
    lines = [line for line in output.replace("\r", "").splitlines() if line.strip()]
    header_index = next(
        (i for i, line in enumerate(lines) if line.lstrip().lower().startswith("filesystem")),
        None,
    )

    if header_index is None:
        # Header omitted: assume "fs size used avail ..."
        columns: list[str] = []
        data_lines = lines
    else:
        columns = _header_columns(lines[header_index])
        data_lines = lines[header_index + 1:]

    if not data_lines:
        raise ValueError("df printed no data rows")

    tokens = data_lines[0].split()
    # Long filesystem names wrap onto their own line
    if len(tokens) == 1 and len(data_lines) > 1:
        tokens = tokens + data_lines[1].split()

    total_index, avail_index, unit = 1, 3, KIB
    if columns:
        try:
            total_index = next(
                i for i, c in enumerate(columns)
                if c in _TOTAL_COLUMNS or _block_size(c) is not None
            )
            avail_index = next(i for i, c in enumerate(columns) if c in _AVAIL_COLUMNS)
        except StopIteration:
            raise ValueError(f"Unrecognised df header: {lines[header_index]!r}") from None
        unit = _block_size(columns[total_index]) or KIB

    if len(tokens) <= max(total_index, avail_index):
        raise ValueError(f"Too few df columns: {' '.join(tokens)!r}")

    total = parse_size(tokens[total_index], unit)
    available = parse_size(tokens[avail_index], unit)
    if total <= 0:
        raise ValueError(f"df reported zero total size: {' '.join(tokens)!r}")
    if available > total:
        # Rounding in -h output can push avail a hair over size
        logger.debug("Clamping available %d to total %d", available, total)
        available = total
    return StorageSnapshot(total_bytes=total, available_bytes=available)


class StorageProbe:
    """Measures free space on a device's user-data mount."""

    FLAG_VARIANTS: tuple[str | None, ...] = ("-h", "-k", None)

    def __init__(self, bridge: AdbBridge, mount: str = DEFAULT_MOUNT) -> None:
        self._bridge = bridge
        self.mount = mount

    def snapshot(self, handle: DeviceHandle) -> StorageSnapshot:
        """Return the current storage snapshot for *handle*.

        Tries ``df -h``, then ``df -k``, then bare ``df``.

        Raises:
            StorageQueryFailed: no variant produced parseable output.
            DeviceLost: the device stopped responding.
        """
        failures: list[str] = []
        for flag in self.FLAG_VARIANTS:
            label = f"df {flag}" if flag else "df"
            try:
                output = self._bridge.query_space(handle.serial, self.mount, flag)
            except WriteFailed as exc:
                logger.debug("%s rejected on %s: %s", label, handle.serial, exc)
                failures.append(f"{label}: rejected")
                continue
            try:
                snapshot = parse_df(output)
            except ValueError as exc:
                logger.debug("%s output unparseable on %s: %s", label, handle.serial, exc)
                failures.append(f"{label}: {exc}")
                continue
            logger.debug("Storage on %s via %s: %s", handle.serial, label, snapshot)
            return snapshot

        raise StorageQueryFailed(
            f"Could not read storage of {self.mount} on {handle.serial} "
            f"({'; '.join(failures)})"
        )
