"""Shell command lines for the on-device wipe protocol.

Each step of a pass is one ``adb shell`` invocation.  Numbers are computed
on the host and baked into ``echo`` markers so the output can be parsed by
:mod:`wipebridge.progress` without any shell arithmetic on the device.
"""

from __future__ import annotations

import re

from wipebridge.utils.path_helpers import MIB, posix_join, quote, to_mib

DD_BLOCK_SIZE = MIB
SESSION_PREFIX = ".wipebridge-"

# Session directories, plus the fixed names older wipe scripts used
_LEFTOVER_RE = re.compile(r"^(\.wipebridge-[0-9a-f]{12}|wipe_temp|secure_wipe_[A-Za-z0-9_.-]+)$")


def session_path(wipe_root: str, session_id: str) -> str:
    return posix_join(wipe_root, f"{SESSION_PREFIX}{session_id}")


def pass_dir(session_dir: str, pass_number: int) -> str:
    return posix_join(session_dir, f"pass_{pass_number}")


def chunk_path(session_dir: str, pass_number: int, chunk: int) -> str:
    return posix_join(pass_dir(session_dir, pass_number), f"chunk_{chunk}.bin")


def make_dir(path: str) -> str:
    return f"mkdir -p {quote(path)}"


def remove_dir(path: str) -> str:
    return f"rm -rf {quote(path)} && sync"


def start_pass(session_dir: str, pass_number: int, total_passes: int) -> str:
    return (
        f"{make_dir(pass_dir(session_dir, pass_number))} && "
        f'echo "=== PASS {pass_number} of {total_passes} ==="'
    )


def write_chunk(
    session_dir: str,
    pass_number: int,
    chunk: int,
    chunk_bytes: int,
    written_after: int,
    target_bytes: int,
) -> str:
    """Write *chunk_bytes* of random data, then report cumulative progress.

    The ``PROGRESS`` marker is only printed if ``dd`` succeeded, so its
    byte count is exact.
    """
    target_mb = to_mib(target_bytes)
    written_mb = to_mib(written_after)
    percent = written_after * 100 // target_bytes if target_bytes else 100
    path = quote(chunk_path(session_dir, pass_number, chunk))
    return (
        f"dd if=/dev/urandom of={path} bs={DD_BLOCK_SIZE} count={chunk_bytes // DD_BLOCK_SIZE} 2>&1 && "
        f'echo "PROGRESS: Pass {pass_number} - {written_mb}MB / {target_mb}MB ({percent}%)"'
    )


def sync_pass(pass_number: int) -> str:
    return f'echo "Syncing pass {pass_number}..." && sync'


def delete_pass(session_dir: str, pass_number: int, written: int) -> str:
    return (
        f'echo "Cleaning up pass {pass_number}..." && '
        f"{remove_dir(pass_dir(session_dir, pass_number))} && "
        f'echo "PASS_COMPLETE: Pass {pass_number} done - wrote {to_mib(written)}MB"'
    )


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def disable_adb() -> str:
    return "settings put global adb_enabled 0"


def list_dir(path: str) -> str:
    return f"ls -1a {quote(path)}"


def is_leftover(name: str) -> bool:
    """True for a wipe-root entry that only a wipe could have created."""
    return bool(_LEFTOVER_RE.match(name))


def remove_paths(paths: list[str]) -> str:
    return " && ".join(f"rm -rf {quote(p)}" for p in paths) + " && sync"
