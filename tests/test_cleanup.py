"""Tests for wipebridge/cleanup.py and wipebridge/audit.py."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from wipebridge.audit import AuditLog
from wipebridge.bridge import AdbBridge
from wipebridge.cleanup import CleanupGuard
from wipebridge.errors import CleanupFailed, WriteFailed
from wipebridge.transport import NotConnectedError

from conftest import FakeAdb, FakePhone

SESSION_DIR = "/sdcard/.wipebridge-abc123"


class TestCleanupGuard:
    def test_directory_created_and_removed(self, bridge: AdbBridge, phone: FakePhone) -> None:
        with CleanupGuard(bridge, phone.serial, SESSION_DIR) as guard:
            assert SESSION_DIR in phone.dirs
            phone.files[f"{SESSION_DIR}/pass_1/chunk_1.bin"] = 10
        assert guard.released
        assert guard.warning is None
        assert phone.paths_under(SESSION_DIR) == []

    def test_removed_when_body_raises(self, bridge: AdbBridge, phone: FakePhone) -> None:
        with pytest.raises(RuntimeError):
            with CleanupGuard(bridge, phone.serial, SESSION_DIR):
                raise RuntimeError("write failed")
        assert phone.paths_under(SESSION_DIR) == []
        assert phone.commands[-1] == f"rm -rf {SESSION_DIR} && sync"

    def test_release_is_idempotent(self, bridge: AdbBridge, phone: FakePhone) -> None:
        guard = CleanupGuard(bridge, phone.serial, SESSION_DIR)
        guard.acquire()
        guard.release()
        guard.release()
        assert len(phone.deletes()) == 1

    def test_removal_failure_becomes_warning(self, bridge: AdbBridge, phone: FakePhone) -> None:
        with CleanupGuard(bridge, phone.serial, SESSION_DIR) as guard:
            phone.fail_rm = True
        assert isinstance(guard.warning, CleanupFailed)
        assert SESSION_DIR in str(guard.warning)

    def test_second_release_returns_first_warning(
        self, bridge: AdbBridge, phone: FakePhone
    ) -> None:
        guard = CleanupGuard(bridge, phone.serial, SESSION_DIR)
        phone.fail_rm = True
        first = guard.release()
        assert guard.release() is first

    def test_failed_acquire_still_attempts_removal(self, phone: FakePhone) -> None:
        guard = CleanupGuard(AdbBridge(_MkdirFails(phone)), phone.serial, SESSION_DIR)
        with pytest.raises(WriteFailed):
            guard.acquire()
        assert guard.released
        assert not guard.acquired
        assert phone.deletes() == [f"rm -rf {SESSION_DIR} && sync"]

    @pytest.mark.parametrize(
        "error", [OSError("Socket is closed"), NotConnectedError("SSH link to lab-pi failed")]
    )
    def test_transport_error_on_removal_becomes_warning(
        self, phone: FakePhone, error: Exception
    ) -> None:
        fake = _RmRaises(phone, error=error)
        with CleanupGuard(AdbBridge(fake), phone.serial, SESSION_DIR) as guard:
            pass
        assert isinstance(guard.warning, CleanupFailed)
        assert guard.released

    def test_transport_error_on_acquire_still_attempts_removal(self, phone: FakePhone) -> None:
        fake = _RmRaises(phone, error=OSError("Socket is closed"), on="mkdir")
        guard = CleanupGuard(AdbBridge(fake), phone.serial, SESSION_DIR)
        with pytest.raises(OSError):
            guard.acquire()
        assert guard.released
        assert not guard.acquired

    @pytest.mark.parametrize("path", ["relative/dir", "/", "/sdcard/../data", "/sdcard/a\nb"])
    def test_unsafe_paths_refused(self, bridge: AdbBridge, path: str) -> None:
        with pytest.raises(ValueError):
            CleanupGuard(bridge, "R58M123ABC", path)


class _MkdirFails(FakeAdb):
    """Fake adb whose ``mkdir`` fails with a read-only filesystem."""

    def _segment(self, phone, segment):
        if segment.startswith("mkdir"):
            return ["mkdir: /sdcard: Read-only file system"], 1
        return super()._segment(phone, segment)


class _RmRaises(FakeAdb):
    """Fake adb whose transport blows up on a given command."""

    def __init__(self, *phones, error: Exception, on: str = "rm -rf") -> None:
        super().__init__(*phones)
        self.error = error
        self.on = on

    def run(self, argv, timeout):
        if self.on in argv[-1]:
            raise self.error
        return super().run(argv, timeout)


class TestAuditLog:
    def test_records_appended_as_json_lines(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path / "logs" / "wipe.jsonl")
        audit.record("s1", "session_start", passes=3)
        audit.record("s1", "session_end", outcome="COMPLETED")

        lines = (tmp_path / "logs" / "wipe.jsonl").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["session"] == "s1"
        assert first["event"] == "session_start"
        assert first["passes"] == 3
        assert "time" in first

    def test_read_filters_by_session(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path / "wipe.jsonl")
        audit.record("s1", "plan")
        audit.record("s2", "plan")
        assert [e["session"] for e in audit.read("s2")] == ["s2"]
        assert len(audit.read()) == 2

    def test_corrupt_lines_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "wipe.jsonl"
        path.write_text('{"session": "s1", "event": "plan"}\nnot json\n', encoding="utf-8")
        assert len(AuditLog(path).read()) == 1

    def test_unwritable_path_does_not_raise(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        AuditLog(blocker / "wipe.jsonl").record("s1", "plan")

    def test_for_today_names_file_by_date(self, tmp_path: Path) -> None:
        audit = AuditLog.for_today(tmp_path)
        assert audit.path.parent == tmp_path
        assert audit.path.name.startswith("wipe-")
        assert audit.path.suffix == ".jsonl"
