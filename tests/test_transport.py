"""Tests for wipebridge/transport.py — LocalTransport and SSHTransport."""

from __future__ import annotations

import io
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from wipebridge.transport import (
    CommandFailed,
    CommandNotFound,
    CommandTimeout,
    ConnectionState,
    LocalTransport,
    NotConnectedError,
    SSHTransport,
    UnknownHostError,
    _RaiseUnknownHost,
    accept_host_key,
    key_fingerprint,
)


# ---------------------------------------------------------------------------
# LocalTransport
# ---------------------------------------------------------------------------


class TestLocalRun:
    def test_captures_output_and_status(self) -> None:
        result = LocalTransport().run(["sh", "-c", "echo out; echo err >&2; exit 4"], 5)
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert result.exit_code == 4
        assert "out" in result.output and "err" in result.output

    def test_missing_executable(self) -> None:
        with pytest.raises(CommandNotFound):
            LocalTransport().run(["definitely-not-a-real-adb-binary"], 5)

    def test_timeout(self) -> None:
        with pytest.raises(CommandTimeout):
            LocalTransport().run(["sh", "-c", "sleep 5"], 0.2)


class TestLocalStream:
    def test_yields_lines_in_order(self) -> None:
        lines = list(LocalTransport().stream(["sh", "-c", "echo a; echo b >&2; echo c"], 5))
        assert lines == ["a", "b", "c"]

    def test_nonzero_exit_raises_after_output(self) -> None:
        seen: list[str] = []
        with pytest.raises(CommandFailed) as info:
            for line in LocalTransport().stream(["sh", "-c", "echo oops; exit 3"], 5):
                seen.append(line)
        assert seen == ["oops"]
        assert info.value.exit_code == 3
        assert "oops" in info.value.output

    def test_idle_timeout(self) -> None:
        seen: list[str] = []
        with pytest.raises(CommandTimeout):
            for line in LocalTransport().stream(["sh", "-c", "echo first; sleep 5"], 0.5):
                seen.append(line)
        assert seen == ["first"]

    def test_missing_executable(self) -> None:
        with pytest.raises(CommandNotFound):
            list(LocalTransport().stream(["definitely-not-a-real-adb-binary"], 5))

    def test_non_executable_file(self, tmp_path) -> None:
        script = tmp_path / "adb"
        script.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
        script.chmod(0o644)
        with pytest.raises(CommandNotFound, match="cannot be executed"):
            LocalTransport().run([str(script), "version"], 5)
        with pytest.raises(CommandNotFound, match="cannot be executed"):
            list(LocalTransport().stream([str(script), "version"], 5))


# ---------------------------------------------------------------------------
# SSHTransport
# ---------------------------------------------------------------------------


def _channel(stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0) -> MagicMock:
    channel = MagicMock()
    channel.makefile.return_value = io.BytesIO(stdout)
    channel.makefile_stderr.return_value = io.BytesIO(stderr)
    channel.recv_exit_status.return_value = exit_code
    return channel


@pytest.fixture()
def ssh_client() -> MagicMock:
    client = MagicMock()
    client.get_transport.return_value.is_active.return_value = True
    with patch("wipebridge.transport.paramiko.SSHClient", return_value=client):
        yield client


@pytest.fixture()
def connected(ssh_client: MagicMock) -> SSHTransport:
    transport = SSHTransport("lab-pi.local", username="pi")
    transport.connect()
    return transport


class TestSSHConnect:
    def test_connect_sets_state(self, ssh_client: MagicMock) -> None:
        states: list[ConnectionState] = []
        transport = SSHTransport("lab-pi.local", on_state_change=lambda s, m: states.append(s))
        transport.connect()
        assert transport.state is ConnectionState.CONNECTED
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    def test_password_comes_from_keyring(self, ssh_client: MagicMock) -> None:
        transport = SSHTransport("lab-pi.local", username="pi", auth_type="password")
        with patch("wipebridge.transport.keyring.get_password", return_value="s3cret") as get:
            transport.connect()
        get.assert_called_once_with("WipeBridge", "pi@lab-pi.local")
        assert ssh_client.connect.call_args.kwargs["password"] == "s3cret"

    def test_unknown_host_propagates(self, ssh_client: MagicMock) -> None:
        ssh_client.connect.side_effect = UnknownHostError("unknown", hostname="lab-pi.local")
        transport = SSHTransport("lab-pi.local")
        with pytest.raises(UnknownHostError):
            transport.connect()
        assert transport.state is ConnectionState.ERROR

    def test_network_failure(self, ssh_client: MagicMock) -> None:
        ssh_client.connect.side_effect = OSError("no route to host")
        transport = SSHTransport("lab-pi.local")
        with pytest.raises(OSError):
            transport.connect()
        assert transport.state is ConnectionState.ERROR

    def test_disconnect(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        connected.disconnect()
        ssh_client.close.assert_called_once()
        assert connected.state is ConnectionState.DISCONNECTED


class TestSSHCommands:
    def test_run_before_connect(self) -> None:
        with pytest.raises(NotConnectedError):
            SSHTransport("lab-pi.local").run(["adb", "devices"], 5)

    def test_run_quotes_argv(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        channel = _channel(b"List of devices attached\n")
        ssh_client.get_transport.return_value.open_session.return_value = channel
        result = connected.run(["adb", "-s", "R58M", "shell", "echo hi && sync"], 5)
        channel.exec_command.assert_called_once_with("adb -s R58M shell 'echo hi && sync'")
        assert result.stdout == "List of devices attached\n"
        assert result.exit_code == 0
        channel.close.assert_called_once()

    def test_run_exit_127_is_not_found(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        ssh_client.get_transport.return_value.open_session.return_value = _channel(
            stderr=b"sh: adb: not found\n", exit_code=127
        )
        with pytest.raises(CommandNotFound):
            connected.run(["adb", "version"], 5)

    def test_stream_yields_lines(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        channel = _channel(b"a\nb\n")
        ssh_client.get_transport.return_value.open_session.return_value = channel
        assert list(connected.stream(["adb", "shell", "x"], 5)) == ["a", "b"]
        channel.set_combine_stderr.assert_called_once_with(True)

    def test_stream_failure(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        ssh_client.get_transport.return_value.open_session.return_value = _channel(
            b"dd: Read-only file system\n", exit_code=1
        )
        with pytest.raises(CommandFailed, match="Read-only"):
            list(connected.stream(["adb", "shell", "dd"], 5))

    def test_dropped_link_moves_to_error(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        ssh_client.get_transport.return_value.is_active.return_value = False
        with pytest.raises(NotConnectedError):
            connected.run(["adb", "devices"], 5)
        assert connected.state is ConnectionState.ERROR

    def test_refused_channel_is_not_connected(
        self, connected: SSHTransport, ssh_client: MagicMock
    ) -> None:
        ssh_client.get_transport.return_value.open_session.side_effect = paramiko.SSHException(
            "Channel closed."
        )
        with pytest.raises(NotConnectedError, match="Channel closed"):
            connected.run(["adb", "devices"], 5)
        assert connected.state is ConnectionState.ERROR

    def test_exec_failure_closes_channel(
        self, connected: SSHTransport, ssh_client: MagicMock
    ) -> None:
        channel = _channel()
        channel.exec_command.side_effect = paramiko.SSHException("Channel closed.")
        ssh_client.get_transport.return_value.open_session.return_value = channel
        with pytest.raises(NotConnectedError):
            list(connected.stream(["adb", "shell", "dd"], 5))
        channel.close.assert_called_once()
        assert connected.state is ConnectionState.ERROR

    def test_link_dies_mid_stream(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        channel = _channel()
        channel.makefile.return_value = MagicMock(
            readline=MagicMock(side_effect=[b"first\n", EOFError()])
        )
        ssh_client.get_transport.return_value.open_session.return_value = channel
        seen: list[str] = []
        with pytest.raises(NotConnectedError):
            for line in connected.stream(["adb", "shell", "dd"], 5):
                seen.append(line)
        assert seen == ["first"]

    def test_socket_error_during_read(self, connected: SSHTransport, ssh_client: MagicMock) -> None:
        channel = _channel()
        channel.makefile.return_value = MagicMock(
            read=MagicMock(side_effect=ConnectionResetError("reset by peer"))
        )
        ssh_client.get_transport.return_value.open_session.return_value = channel
        with pytest.raises(NotConnectedError, match="reset by peer"):
            connected.run(["adb", "devices"], 5)


class TestHostKeys:
    @pytest.fixture(scope="class")
    def rsa_key(self) -> paramiko.RSAKey:
        return paramiko.RSAKey.generate(1024)

    def test_fingerprint_format(self, rsa_key: paramiko.RSAKey) -> None:
        fingerprint = key_fingerprint(rsa_key)
        assert fingerprint.startswith("SHA256:")
        assert not fingerprint.endswith("=")
        assert len(fingerprint) == len("SHA256:") + 43

    def test_unknown_host_carries_key(self, rsa_key: paramiko.RSAKey) -> None:
        with pytest.raises(UnknownHostError) as info:
            _RaiseUnknownHost().missing_host_key(MagicMock(), "lab-pi.local", rsa_key)
        assert info.value.hostname == "lab-pi.local"
        assert info.value.key is rsa_key
        assert info.value.fingerprint in str(info.value)

    def test_accept_host_key_writes_known_hosts(
        self, rsa_key: paramiko.RSAKey, tmp_path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        accept_host_key("lab-pi.local", rsa_key)
        saved = paramiko.HostKeys(str(tmp_path / ".ssh" / "known_hosts"))
        assert saved.lookup("lab-pi.local")["ssh-rsa"].asbytes() == rsa_key.asbytes()
