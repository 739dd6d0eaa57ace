"""Shared fixtures: a fake adb reachable through the transport interface.

``FakeAdb`` answers the argv lists :class:`wipebridge.bridge.AdbBridge`
builds, so tests exercise the real bridge, parsers and error mapping.
Each attached ``FakePhone`` simulates a storage partition: ``dd`` consumes
free space, ``rm -rf`` gives it back, and every shell command is recorded.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

import paramiko
import pytest

from wipebridge.bridge import AdbBridge
from wipebridge.config import ConfigManager
from wipebridge.device import DeviceSession
from wipebridge.transport import CommandFailed, CommandNotFound, CommandResult
from wipebridge.utils.path_helpers import GIB, KIB, MIB

_DD_RE = re.compile(r"^dd if=/dev/urandom of=(?P<path>\S+) bs=(?P<bs>\d+) count=(?P<count>\d+)")

ShellHook = Callable[["FakePhone", str], None]


class Disconnect(Exception):
    """Raised by a hook to make the phone vanish before a shell segment."""


@dataclass
class FakePhone:
    serial: str
    state: str = "device"
    model: str = "Pixel_7"
    total_bytes: int = 64 * GIB
    available_bytes: int = 10 * GIB
    props: dict[str, str] = field(default_factory=lambda: {
        "ro.product.model": "Pixel 7",
        "ro.product.brand": "google",
        "ro.build.version.release": "14",
    })
    files: dict[str, int] = field(default_factory=dict)
    dirs: set[str] = field(default_factory=set)
    commands: list[str] = field(default_factory=list)
    syncs: int = 0
    broken_df_flags: set[str] = field(default_factory=set)
    fail_rm: bool = False
    hooks: list[ShellHook] = field(default_factory=list)
    settings: dict[str, str] = field(default_factory=lambda: {"global/adb_enabled": "1"})
    # "ok", "denied", or "drop" (adbd stops before answering)
    settings_response: str = "ok"

    def writes(self) -> list[str]:
        return [c for c in self.commands if "dd if=" in c]

    def deletes(self) -> list[str]:
        return [c for c in self.commands if "rm -rf" in c]

    def paths_under(self, prefix: str) -> list[str]:
        found = [p for p in self.files if p == prefix or p.startswith(prefix + "/")]
        found += [d for d in self.dirs if d == prefix or d.startswith(prefix + "/")]
        return found


class FakeAdb:
    """Stands in for LocalTransport/SSHTransport in front of ``adb``."""

    name = "fake"

    def __init__(self, *phones: FakePhone, installed: bool = True) -> None:
        self.phones: dict[str, FakePhone] = {p.serial: p for p in phones}
        self.installed = installed
        self.argv_log: list[list[str]] = []

    def add(self, phone: FakePhone) -> FakePhone:
        self.phones[phone.serial] = phone
        return phone

    # ------------------------------------------------------------------
    # Transport interface
    # ------------------------------------------------------------------

    def run(self, argv: list[str], timeout: float) -> CommandResult:
        self.argv_log.append(list(argv))
        if not self.installed:
            raise CommandNotFound(f"{argv[0]!r} not found")
        args = argv[1:]
        if args == ["version"]:
            return CommandResult("Android Debug Bridge version 1.0.41\nVersion 34.0.5\n", "", 0)
        if args[:1] == ["devices"]:
            return CommandResult(self._devices_output(), "", 0)
        if args[:1] == ["-s"] and args[2] == "shell":
            serial = args[1]
            command = shlex.join(args[3:]) if len(args) > 4 else args[3]
            lines, code = self._shell(serial, command)
            out = "\n".join(lines) + ("\n" if lines else "")
            return CommandResult(out, "", code)
        return CommandResult("", f"unknown command {argv!r}", 1)

    def stream(self, argv: list[str], idle_timeout: float) -> Iterator[str]:
        self.argv_log.append(list(argv))
        serial, command = argv[2], argv[4]
        lines, code = self._shell(serial, command)
        yield from lines
        if code != 0:
            raise CommandFailed(argv, code, "\n".join(lines[-20:]))

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _devices_output(self) -> str:
        rows = ["List of devices attached"]
        for phone in list(self.phones.values()):
            if phone.state == "device":
                rows.append(
                    f"{phone.serial}\tdevice usb:1-1 product:panther model:{phone.model} "
                    f"device:panther transport_id:1"
                )
            else:
                rows.append(f"{phone.serial}\t{phone.state}")
        return "\n".join(rows) + "\n"

    def _shell(self, serial: str, command: str) -> tuple[list[str], int]:
        phone = self.phones.get(serial)
        if phone is None or phone.state != "device":
            return [f"error: device '{serial}' not found"], 1
        phone.commands.append(command)
        output: list[str] = []
        for segment in command.split(" && "):
            try:
                for hook in phone.hooks:
                    hook(phone, segment)
            except Disconnect:
                del self.phones[serial]
                output.append(f"error: device '{serial}' not found")
                return output, 1
            lines, code = self._segment(phone, segment.strip())
            output.extend(lines)
            if code != 0:
                return output, code
        return output, 0

    def _segment(self, phone: FakePhone, segment: str) -> tuple[list[str], int]:
        if segment.startswith("echo "):
            return [shlex.split(segment)[1]], 0
        if segment == "sync":
            phone.syncs += 1
            return [], 0
        if segment.startswith("mkdir -p "):
            phone.dirs.add(shlex.split(segment)[2])
            return [], 0
        if segment.startswith("rm -rf "):
            if phone.fail_rm:
                return ["rm: Permission denied"], 1
            target = shlex.split(segment)[2]
            for path in phone.paths_under(target):
                size = phone.files.pop(path, None)
                if size is not None:
                    phone.available_bytes += size
                phone.dirs.discard(path)
            return [], 0
        if segment.startswith("getprop "):
            return [phone.props.get(segment.split()[1], "")], 0
        if segment.startswith("df"):
            return self._df(phone, segment.split()[1:-1])
        match = _DD_RE.match(segment)
        if match:
            return self._dd(phone, match)
        if segment.startswith("am start"):
            return ["Starting: Intent { act=android.settings.MASTER_CLEAR }"], 0
        if segment.startswith("settings put "):
            return self._settings_put(phone, shlex.split(segment)[2:])
        if segment.startswith("ls -1a "):
            return self._ls(phone, shlex.split(segment)[2])
        return [f"/system/bin/sh: {segment.split()[0]}: not found"], 127

    def _settings_put(self, phone: FakePhone, args: list[str]) -> tuple[list[str], int]:
        namespace, key, value = args
        if phone.settings_response == "denied":
            return [
                "Security exception: Permission denial: writing to settings requires "
                "android.permission.WRITE_SECURE_SETTINGS"
            ], 255
        phone.settings[f"{namespace}/{key}"] = value
        if phone.settings_response == "drop":
            phone.state = "offline"
            return ["error: closed"], 1
        return [], 0

    def _ls(self, phone: FakePhone, path: str) -> tuple[list[str], int]:
        prefix = path.rstrip("/") + "/"
        children = {
            p[len(prefix):].split("/", 1)[0]
            for p in list(phone.files) + list(phone.dirs)
            if p.startswith(prefix)
        }
        return [".", "..", *sorted(children)], 0

    def _df(self, phone: FakePhone, flags: list[str]) -> tuple[list[str], int]:
        flag = flags[0] if flags else ""
        if flag in phone.broken_df_flags:
            return [f"df: Unknown option '{flag}'"], 1
        total_k = phone.total_bytes // KIB
        avail_k = phone.available_bytes // KIB
        used_k = total_k - avail_k
        pct = used_k * 100 // total_k
        if flag == "-h":
            header = "Filesystem      Size  Used Avail Use% Mounted on"
            row = f"/dev/fuse  {total_k}K {used_k}K {avail_k}K {pct}% /storage/emulated"
        else:
            header = "Filesystem     1K-blocks     Used Available Use% Mounted on"
            row = f"/dev/fuse  {total_k} {used_k} {avail_k} {pct}% /storage/emulated"
        return [header, row], 0

    def _dd(self, phone: FakePhone, match: re.Match[str]) -> tuple[list[str], int]:
        path = match.group("path")
        block = int(match.group("bs"))
        count = int(match.group("count"))
        wanted = block * count
        if wanted > phone.available_bytes:
            written = phone.available_bytes // block * block
            phone.files[path] = written
            phone.available_bytes -= written
            blocks = written // block
            return [
                f"dd: {path}: No space left on device",
                f"{blocks}+0 records in",
                f"{blocks}+0 records out",
                f"{written} bytes ({written // MIB} M) copied, 2.0 s, 30 M/s",
            ], 1
        phone.files[path] = wanted
        phone.available_bytes -= wanted
        return [
            f"{count}+0 records in",
            f"{count}+0 records out",
            f"{wanted} bytes ({wanted // MIB} M) copied, 2.0 s, 30 M/s",
        ], 0


class LinkDrops(FakeAdb):
    """FakeAdb whose first streamed ``dd`` dies with a raw SSH error.

    Stands in for a bridge host link that fails in a way the transport
    did not translate.
    """

    def __init__(self, *phones: FakePhone, error: Exception | None = None) -> None:
        super().__init__(*phones)
        self.error = error or paramiko.SSHException("Channel closed.")

    def stream(self, argv: list[str], idle_timeout: float) -> Iterator[str]:
        if "dd if=" in argv[4]:
            self.argv_log.append(list(argv))
            raise self.error
        yield from super().stream(argv, idle_timeout)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def phone() -> FakePhone:
    """One authorized phone with 10 GiB free."""
    return FakePhone(serial="R58M123ABC")


@pytest.fixture()
def fake_adb(phone: FakePhone) -> FakeAdb:
    return FakeAdb(phone)


@pytest.fixture()
def bridge(fake_adb: FakeAdb) -> AdbBridge:
    return AdbBridge(fake_adb)


@pytest.fixture()
def devices(bridge: AdbBridge) -> DeviceSession:
    return DeviceSession(bridge)


@pytest.fixture()
def settings(tmp_path: Path) -> ConfigManager:
    """ConfigManager backed by a temporary directory."""
    return ConfigManager(base_dir=tmp_path / "config")
