"""Command transports for reaching the ``adb`` binary.

Two implementations share one interface:

- :class:`LocalTransport` runs ``adb`` on this machine via ``subprocess``.
- :class:`SSHTransport` runs ``adb`` on a remote bridge host (a lab machine
  the phone is plugged into) over SSH.  Passwords live in the OS keyring.

Both offer a one-shot :meth:`run` and a line-streaming :meth:`stream` that
gives up when the command stays silent for longer than ``idle_timeout``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import queue
import shlex
import socket
import subprocess
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterator, Optional

import keyring
import paramiko
from keyring.errors import PasswordDeleteError

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

_KEYRING_SERVICE = "WipeBridge"
_KEEPALIVE_INTERVAL = 30  # seconds
_TAIL_LINES = 20

# What paramiko raises when the link dies under an open channel
_LINK_ERRORS = (paramiko.SSHException, EOFError, OSError)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TransportError(Exception):
    """Base class for transport failures."""


class CommandNotFound(TransportError):
    """The bridge executable does not exist on the target host."""


class CommandTimeout(TransportError):
    """A command exceeded its timeout or went silent for too long."""


class CommandFailed(TransportError):
    """A command exited with a non-zero status."""

    def __init__(self, argv: list[str], exit_code: int, output: str) -> None:
        super().__init__(
            f"{shlex.join(argv)!r} exited with status {exit_code}: {output.strip()[-300:]}"
        )
        self.argv = argv
        self.exit_code = exit_code
        self.output = output


class NotConnectedError(TransportError):
    """Raised when a command is issued on a non-connected SSH transport."""


class UnknownHostError(TransportError):
    """Raised when the bridge host key is not in known_hosts.

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it via :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


@dataclass
class CommandResult:
    """Captured output of a one-shot command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def output(self) -> str:
        """stdout and stderr joined, for error messages."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


# ---------------------------------------------------------------------------
# Local transport
# ---------------------------------------------------------------------------


class LocalTransport:
    """Runs bridge commands as local child processes."""

    name = "local"

    def run(self, argv: list[str], timeout: float) -> CommandResult:
        """Run *argv* to completion and return its output.

        Raises:
            CommandNotFound: The executable is missing or cannot be run.
            CommandTimeout: The command ran longer than *timeout* seconds.
        """
        logger.debug("run: %s", shlex.join(argv))
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise CommandNotFound(f"{argv[0]!r} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(
                f"{shlex.join(argv)!r} timed out after {timeout:.0f}s"
            ) from exc
        except OSError as exc:
            raise CommandNotFound(f"{argv[0]!r} cannot be executed: {exc}") from exc
        return CommandResult(proc.stdout, proc.stderr, proc.returncode)

    def stream(self, argv: list[str], idle_timeout: float) -> Iterator[str]:
        """Yield output lines of *argv* as they arrive (stderr merged).

        A reader thread feeds a queue so the consumer can wait with a
        timeout; silence longer than *idle_timeout* kills the child and
        raises :exc:`CommandTimeout`.  A non-zero exit raises
        :exc:`CommandFailed` after all output has been yielded.
        """
        logger.debug("stream: %s", shlex.join(argv))
        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise CommandNotFound(f"{argv[0]!r} not found") from exc
        except OSError as exc:
            raise CommandNotFound(f"{argv[0]!r} cannot be executed: {exc}") from exc

        lines: queue.Queue[str | None] = queue.Queue()

        def _reader() -> None:
            assert proc.stdout is not None
            try:
                for raw in proc.stdout:
                    lines.put(raw.rstrip("\n"))
            finally:
                lines.put(None)  # EOF sentinel

        reader = threading.Thread(target=_reader, name="bridge-reader", daemon=True)
        reader.start()

        tail: list[str] = []
        try:
            while True:
                try:
                    line = lines.get(timeout=idle_timeout)
                except queue.Empty:
                    raise CommandTimeout(
                        f"No output from {shlex.join(argv)!r} for {idle_timeout:.0f}s"
                    ) from None
                if line is None:
                    break
                tail = (tail + [line])[-_TAIL_LINES:]
                yield line

            exit_code = proc.wait(timeout=idle_timeout)
            if exit_code != 0:
                raise CommandFailed(argv, exit_code, "\n".join(tail))
        finally:
            if proc.poll() is None:
                logger.debug("Killing unfinished bridge process %d", proc.pid)
                proc.kill()
                proc.wait()
            reader.join(timeout=1)


# ---------------------------------------------------------------------------
# SSH transport
# ---------------------------------------------------------------------------


def known_hosts_file() -> Path:
    return Path.home() / ".ssh" / "known_hosts"


def key_fingerprint(key: paramiko.PKey) -> str:
    """OpenSSH-style ``SHA256:...`` fingerprint of *key*."""
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


class _RaiseUnknownHost(paramiko.MissingHostKeyPolicy):
    """Turns an unknown bridge host into :exc:`UnknownHostError`."""

    def missing_host_key(self, client, hostname, key) -> None:
        fingerprint = key_fingerprint(key)
        raise UnknownHostError(
            f"Bridge host {hostname} is not in {known_hosts_file()}\n"
            f"{key.get_name()} key fingerprint is {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Trust *key* for *hostname* from now on (adds it to known_hosts)."""
    path = known_hosts_file()
    path.parent.mkdir(mode=0o700, exist_ok=True)
    host_keys = paramiko.HostKeys()
    if path.exists():
        host_keys.load(str(path))
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(path))
    logger.info("Trusted %s key %s for %s", key.get_name(), key_fingerprint(key), hostname)


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


class SSHTransport:
    """Runs adb on a bridge host through one SSH connection.

    Every command gets its own channel.  A dropped link moves the transport
    to ``ERROR`` and stays there until :meth:`connect` is called again; it
    is never re-established automatically.
    """

    name = "ssh"

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "root",
        auth_type: str = "key",
        key_path: str | None = None,
        timeout: float = 15.0,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Set up the transport; nothing is opened until :meth:`connect`.

        Args:
            host: Bridge host name or address.
            port: SSH port.
            username: Login on the bridge host.
            auth_type: ``"key"`` (agent, default keys or *key_path*) or
                ``"password"`` (looked up in the keyring).
            key_path: Private key file for key auth.
            timeout: TCP/handshake timeout in seconds.
            on_state_change: Called with ``(state, message)`` on transitions.
        """
        self.host = host
        self.port = port
        self.username = username
        self.auth_type = auth_type
        self.key_path = key_path
        self.timeout = timeout
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    @property
    def profile_key(self) -> str:
        """Keyring account name, ``user@host``."""
        return f"{self.username}@{self.host}"

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def _enter(self, state: ConnectionState, message: str | None = None) -> None:
        # callers hold self._lock
        self._state = state
        logger.debug("%s: %s%s", self.host, state.name, f" ({message})" if message else "")
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(state, message)
        except Exception:
            logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _connect_options(self) -> dict:
        options = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "allow_agent": self.auth_type == "key",
            "look_for_keys": self.auth_type == "key" and not self.key_path,
        }
        if self.auth_type == "password":
            password = keyring.get_password(_KEYRING_SERVICE, self.profile_key)
            if password is None:
                logger.warning("No keyring password stored for %s", self.profile_key)
            options["password"] = password
        elif self.key_path:
            options["key_filename"] = str(Path(self.key_path).expanduser())
        return options

    def connect(self) -> None:
        """Open the SSH connection to the bridge host.

        Raises:
            UnknownHostError: The host key is unknown or has changed.
            paramiko.AuthenticationException: Credentials were refused.
            OSError: The host could not be reached.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                return
            self._enter(ConnectionState.CONNECTING)

        client = paramiko.SSHClient()
        try:
            if known_hosts_file().exists():
                client.load_host_keys(str(known_hosts_file()))
            client.set_missing_host_key_policy(_RaiseUnknownHost())
            logger.info("Connecting to bridge host %s:%d", self.profile_key, self.port)
            client.connect(**self._connect_options())
        except paramiko.BadHostKeyException as exc:
            self._abandon(client, exc)
            raise UnknownHostError(
                f"Host key for {self.host} has CHANGED; check {known_hosts_file()}",
                hostname=self.host,
            ) from exc
        except Exception as exc:
            self._abandon(client, exc)
            raise

        link = client.get_transport()
        if link is not None:
            link.set_keepalive(_KEEPALIVE_INTERVAL)
        with self._lock:
            self._client = client
            self._enter(ConnectionState.CONNECTED)

    def _abandon(self, client: paramiko.SSHClient, exc: BaseException) -> None:
        try:
            client.close()
        except (OSError, paramiko.SSHException) as close_exc:
            logger.debug("Ignoring error while closing SSH client: %s", close_exc)
        with self._lock:
            self._enter(ConnectionState.ERROR, str(exc))

    def disconnect(self) -> None:
        with self._lock:
            client, self._client = self._client, None
            if client is not None:
                try:
                    client.close()
                except (OSError, paramiko.SSHException) as exc:
                    logger.debug("Ignoring error while closing SSH client: %s", exc)
            self._enter(ConnectionState.DISCONNECTED)

    @contextmanager
    def _channel(self, argv: list[str], timeout: float) -> Iterator[tuple[paramiko.Channel, str]]:
        """Open a fresh channel for *argv*; it is closed on exit."""
        with self._lock:
            client = self._client if self._state is ConnectionState.CONNECTED else None
            if client is None:
                raise NotConnectedError(f"Not connected to {self.host} ({self._state.name})")
        link = client.get_transport()
        if link is None or not link.is_active():
            with self._lock:
                self._enter(ConnectionState.ERROR, "link dropped")
            raise NotConnectedError(f"SSH link to {self.host} dropped")

        command = shlex.join(argv)
        logger.debug("%s$ %s", self.host, command)
        try:
            channel = link.open_session()
        except _LINK_ERRORS as exc:
            raise self._link_lost(exc) from exc
        try:
            channel.settimeout(timeout)
            yield channel, command
        except _LINK_ERRORS as exc:
            # socket.timeout never reaches here, the body turns it into CommandTimeout
            raise self._link_lost(exc) from exc
        finally:
            channel.close()

    def _link_lost(self, exc: BaseException) -> NotConnectedError:
        logger.warning("SSH link to %s failed: %s", self.host, exc)
        with self._lock:
            self._enter(ConnectionState.ERROR, str(exc) or type(exc).__name__)
        return NotConnectedError(f"SSH link to {self.host} failed: {exc}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def run(self, argv: list[str], timeout: float) -> CommandResult:
        with self._channel(argv, timeout) as (channel, command):
            try:
                channel.exec_command(command)
                stdout = channel.makefile("rb").read()
                stderr = channel.makefile_stderr("rb").read()
                exit_code = channel.recv_exit_status()
            except socket.timeout as exc:
                raise CommandTimeout(
                    f"{command!r} timed out after {timeout:.0f}s on {self.host}"
                ) from exc
        if exit_code == 127:
            raise CommandNotFound(f"{argv[0]!r} not found on {self.host}")
        return CommandResult(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            exit_code,
        )

    def stream(self, argv: list[str], idle_timeout: float) -> Iterator[str]:
        tail: list[str] = []
        with self._channel(argv, idle_timeout) as (channel, command):
            channel.set_combine_stderr(True)
            channel.exec_command(command)
            output = channel.makefile("rb")
            while True:
                try:
                    raw = output.readline()
                except socket.timeout as exc:
                    raise CommandTimeout(
                        f"No output from {command!r} for {idle_timeout:.0f}s on {self.host}"
                    ) from exc
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                tail = (tail + [line])[-_TAIL_LINES:]
                yield line
            exit_code = channel.recv_exit_status()
        if exit_code == 127:
            raise CommandNotFound(f"{argv[0]!r} not found on {self.host}")
        if exit_code != 0:
            raise CommandFailed(argv, exit_code, "\n".join(tail))

    # ------------------------------------------------------------------
    # Keyring
    # ------------------------------------------------------------------

    def store_password(self, password: str) -> None:
        keyring.set_password(_KEYRING_SERVICE, self.profile_key, password)
        logger.debug("Stored keyring password for %s", self.profile_key)

    def delete_password(self) -> None:
        try:
            keyring.delete_password(_KEYRING_SERVICE, self.profile_key)
        except PasswordDeleteError:
            logger.debug("No keyring password to delete for %s", self.profile_key)
