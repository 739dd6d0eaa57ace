"""Secure overwrite engine for WipeBridge.

Fills free space on the device's user-data partition with random data,
pass after pass, then deletes it again:

- Every pass is write → sync → delete → sync, strictly in that order, and a
  pass never starts before the previous one's delete has been flushed.
- Writes are issued in bounded increments with a free-space check before
  each, so the device never drops below the low-space floor because of us.
- Cancellation is cooperative (``threading.Event``): the in-flight
  increment finishes, the pass is synced and deleted, then the session
  directory is removed before ``aborted`` is reported.
- The session directory is owned by a :class:`CleanupGuard`, so it is
  removed on completion, cancellation and failure alike.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable

from wipebridge import remote
from wipebridge.audit import AuditLog
from wipebridge.bridge import AdbBridge, DeviceHandle
from wipebridge.cleanup import CleanupGuard
from wipebridge.config import DEFAULT_CONFIG, ConfigManager
from wipebridge.device import DeviceSession
from wipebridge.errors import (
    CleanupFailed,
    ExitCode,
    InsufficientSpace,
    InvalidConfig,
    WipeError,
    WriteFailed,
)
from wipebridge.progress import Phase, ProgressEvent, ProgressStream
from wipebridge.storage import StorageProbe, StorageSnapshot
from wipebridge.utils.path_helpers import GIB, MIB, human_readable_size

logger = logging.getLogger(__name__)

MIN_PASSES = 1
MAX_PASSES = 20
MIN_CHUNK_SIZE = 64 * MIB
MAX_CHUNK_SIZE = 10 * GIB
MIN_FILL_PERCENT = 1
MAX_FILL_PERCENT = 99
LOW_SPACE_FLOOR = 100 * MIB
DEFAULT_WRITE_INCREMENT = 64 * MIB

EventCallback = Callable[[ProgressEvent], None]

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class WipeMode(Enum):
    """Quick writes a fixed chunk per pass; full fills most of free space."""

    QUICK = "quick"
    FULL = "full"


class SessionState(Enum):
    """Lifecycle state of a WipeSession."""

    IDLE = auto()
    VALIDATING = auto()
    SIZING = auto()
    PASS_RUNNING = auto()
    SYNCING = auto()
    DELETING = auto()
    PLANNED = auto()      # dry run finished
    COMPLETED = auto()
    ABORTED = auto()
    FAILED = auto()


TERMINAL_STATES = frozenset(
    {SessionState.PLANNED, SessionState.COMPLETED, SessionState.ABORTED, SessionState.FAILED}
)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _unexpected(exc: Exception) -> WipeError:
    """Wrap a non-domain exception so it can travel in a WipeResult."""
    error = WipeError(f"Unexpected error: {type(exc).__name__}: {exc}")
    error.__cause__ = exc
    return error


# ---------------------------------------------------------------------------
# Configuration and plans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WipeConfig:
    """What the operator asked for.  Checked by :meth:`validate`, never clamped."""

    mode: WipeMode = WipeMode.QUICK
    passes: int = 3
    chunk_size_bytes: int = GIB
    fill_percent: int = 95

    @classmethod
    def build(
        cls,
        mode: str | WipeMode,
        passes: int,
        chunk_size_mb: int | None = None,
        fill_percent: int | None = None,
    ) -> "WipeConfig":
        """Build and validate a config from CLI-style values."""
        try:
            wipe_mode = WipeMode(mode)
        except ValueError:
            raise InvalidConfig(f"Invalid wipe mode {mode!r}; use 'quick' or 'full'") from None
        kwargs: dict = {"mode": wipe_mode, "passes": passes}
        if chunk_size_mb is not None:
            if not _is_int(chunk_size_mb):
                raise InvalidConfig(f"Chunk size must be a whole number of MB, got {chunk_size_mb!r}")
            kwargs["chunk_size_bytes"] = chunk_size_mb * MIB
        if fill_percent is not None:
            kwargs["fill_percent"] = fill_percent
        return cls(**kwargs).validate()

    def validate(self) -> "WipeConfig":
        """Return self if every bound holds, else raise :exc:`InvalidConfig`."""
        if not isinstance(self.mode, WipeMode):
            raise InvalidConfig(f"Invalid wipe mode {self.mode!r}")
        if not _is_int(self.passes) or not MIN_PASSES <= self.passes <= MAX_PASSES:
            raise InvalidConfig(
                f"Passes must be between {MIN_PASSES} and {MAX_PASSES}, got {self.passes!r}"
            )
        if self.mode is WipeMode.QUICK:
            size = self.chunk_size_bytes
            if not _is_int(size) or not MIN_CHUNK_SIZE <= size <= MAX_CHUNK_SIZE:
                raise InvalidConfig(
                    f"Chunk size must be between {MIN_CHUNK_SIZE // MIB} and "
                    f"{MAX_CHUNK_SIZE // MIB} MB, got {size!r} bytes"
                )
            if size % MIB:
                raise InvalidConfig(f"Chunk size must be a whole number of MB, got {size} bytes")
        else:
            pct = self.fill_percent
            if not _is_int(pct) or not MIN_FILL_PERCENT <= pct <= MAX_FILL_PERCENT:
                raise InvalidConfig(
                    f"Fill percent must be between {MIN_FILL_PERCENT} and "
                    f"{MAX_FILL_PERCENT}, got {pct!r}"
                )
        return self


@dataclass(frozen=True)
class PassPlan:
    """Bytes to write in each pass and the free-space floor to respect."""

    target_bytes: int
    floor_bytes: int = LOW_SPACE_FLOOR


@dataclass(frozen=True)
class WipePlan:
    """Everything a run will do; a dry run reports exactly this."""

    session_id: str
    device: DeviceHandle
    snapshot: StorageSnapshot
    config: WipeConfig
    pass_plan: PassPlan
    write_increment: int
    remote_dir: str
    estimated_write_mbps: float = 30.0

    @property
    def total_bytes(self) -> int:
        return self.pass_plan.target_bytes * self.config.passes

    @property
    def estimated_seconds(self) -> float:
        if self.estimated_write_mbps <= 0:
            return 0.0
        return self.total_bytes / (self.estimated_write_mbps * MIB)

    def describe(self) -> str:
        return (
            f"{self.config.passes} pass(es) x {human_readable_size(self.pass_plan.target_bytes)} "
            f"on {self.device.serial} ({self.snapshot}); "
            f"~{self.estimated_seconds / 60:.0f} min"
        )


@dataclass
class WipeResult:
    """Terminal report of a WipeSession."""

    session_id: str
    state: SessionState
    plan: WipePlan | None = None
    error: WipeError | None = None
    pass_number: int | None = None
    passes_completed: int = 0
    bytes_written: int = 0
    cleanup_warning: CleanupFailed | None = None
    dry_run: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.PLANNED)

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return ExitCode.OK
        if self.state is SessionState.ABORTED:
            return ExitCode.ABORTED
        if self.error is not None:
            return self.error.exit_code
        return ExitCode.ERROR

    def summary(self) -> str:
        """One human-readable paragraph for the operator."""
        if self.state is SessionState.PLANNED:
            head = "Dry run complete, nothing was written"
        elif self.state is SessionState.COMPLETED:
            head = f"Wipe complete: {self.passes_completed} pass(es)"
        elif self.state is SessionState.ABORTED:
            head = f"Wipe aborted after {self.passes_completed} complete pass(es)"
        else:
            head = f"Wipe failed: {self.error}"
        parts = [head]
        if self.pass_number and not self.succeeded:
            parts.append(f"pass in progress: {self.pass_number}")
        if not self.dry_run:
            parts.append(f"data written: {human_readable_size(self.bytes_written)}")
            parts.append(f"time: {int(self.duration // 60)}m {int(self.duration % 60)}s")
        if self.cleanup_warning:
            parts.append(f"warning: {self.cleanup_warning}")
        return "; ".join(parts)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class OverwriteEngine:
    """Creates wipe sessions bound to one bridge and its settings."""

    def __init__(
        self,
        bridge: AdbBridge,
        devices: DeviceSession | None = None,
        settings: ConfigManager | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        """Initialise the engine.

        Args:
            bridge: The adb bridge to drive.
            devices: Shared device validator/lease holder; one is created
                if omitted.  Share a single instance between engines that
                may run concurrently.
            settings: Tunables (``wipe_root``, ``write_increment_mb``, ...);
                built-in defaults when omitted.
            audit: Where to append the durable session record.
        """
        values = dict(DEFAULT_CONFIG)
        if settings is not None:
            values.update(settings.get_all())

        self.bridge = bridge
        self.devices = devices or DeviceSession(bridge)
        self.probe = StorageProbe(bridge, values["wipe_root"])
        self.audit = audit
        self.wipe_root = values["wipe_root"]
        self.write_increment = int(values["write_increment_mb"]) * MIB
        self.floor_bytes = int(values["low_space_floor_mb"]) * MIB
        self.idle_timeout = float(values["idle_timeout"])
        self.command_timeout = float(values["command_timeout"])
        self.estimated_write_mbps = float(values["estimated_write_mbps"])

        if self.write_increment < MIB:
            raise InvalidConfig("write_increment_mb must be at least 1")

    def create_session(
        self,
        identifier: str | None,
        config: WipeConfig,
        on_event: EventCallback | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> "WipeSession":
        """Return a new, single-use session for *identifier*."""
        return WipeSession(self, identifier, config, on_event=on_event, on_log=on_log)

    def run(
        self,
        identifier: str | None,
        config: WipeConfig,
        dry_run: bool = False,
        on_event: EventCallback | None = None,
    ) -> WipeResult:
        """Create a session and run it to a terminal state."""
        return self.create_session(identifier, config, on_event=on_event).run(dry_run=dry_run)


class WipeSession:
    """One wipe of one device.  Not reusable: create a new session per run.

    ``cancel()`` may be called from any thread.
    """

    def __init__(
        self,
        engine: OverwriteEngine,
        identifier: str | None,
        config: WipeConfig,
        on_event: EventCallback | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.identifier = identifier
        self.config = config
        self.on_event = on_event
        self.on_log = on_log

        self._engine = engine
        self._cancel_event = threading.Event()
        self._used = False
        self._used_lock = threading.Lock()
        self._state = SessionState.IDLE
        self._serial: str | None = None
        self._pass_number: int | None = None
        self._pass_written = 0
        self._total_written = 0
        self._passes_completed = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pass_number(self) -> int | None:
        return self._pass_number

    @property
    def finished(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        if not self._cancel_event.is_set():
            logger.info("Cancellation requested for session %s", self.id)
        self._cancel_event.set()

    def plan(self) -> WipePlan:
        """Validate the config and device and size the job, without writing."""
        self.config.validate()
        handle = self._validate()
        return self._size(handle)

    def run(self, dry_run: bool = False) -> WipeResult:
        """Run the session to a terminal state and return the result.

        Never raises on a failed wipe; failures, including unexpected
        ones, are reported in the result after the remote directory has
        been cleaned up.

        Raises:
            RuntimeError: the session has already been run.
        """
        with self._used_lock:
            if self._used:
                raise RuntimeError("WipeSession is single-use; create a new session")
            self._used = True

        result = WipeResult(session_id=self.id, state=self._state, dry_run=dry_run)
        self._audit(
            "session_start",
            device=self.identifier,
            mode=getattr(self.config.mode, "value", self.config.mode),
            passes=self.config.passes,
            dry_run=dry_run,
        )

        try:
            self.config.validate()
            handle = self._validate()
            with self._engine.devices.lease(handle):
                plan = result.plan = self._size(handle)
                if dry_run:
                    logger.info("Dry run for %s: %s", handle.serial, plan.describe())
                    return self._finish(result, SessionState.PLANNED)
                if self.cancelled:
                    return self._finish(result, SessionState.ABORTED)
                return self._execute(plan, result)
        except WipeError as exc:
            return self._finish(result, SessionState.FAILED, error=exc)
        except Exception as exc:
            logger.exception("Unexpected error in session %s", self.id)
            return self._finish(result, SessionState.FAILED, error=_unexpected(exc))

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _validate(self) -> DeviceHandle:
        self._transition(SessionState.VALIDATING)
        handle = self._engine.devices.validate(self.identifier)
        self._serial = handle.serial
        return handle

    def _size(self, handle: DeviceHandle) -> WipePlan:
        self._transition(SessionState.SIZING)
        engine = self._engine
        snapshot = engine.probe.snapshot(handle)
        available = snapshot.available_bytes
        floor = engine.floor_bytes

        if available < floor:
            raise InsufficientSpace(
                f"Storage critically low: {human_readable_size(available)} free, "
                f"at least {human_readable_size(floor)} required"
            )

        if self.config.mode is WipeMode.QUICK:
            target = self.config.chunk_size_bytes
            if available < target:
                raise InsufficientSpace(
                    f"Not enough storage space: {human_readable_size(available)} free, "
                    f"{human_readable_size(target)} requested per pass; use a smaller "
                    "chunk size or free up space"
                )
        else:
            target = (available * self.config.fill_percent // 100) // MIB * MIB
            if target < floor:
                raise InsufficientSpace(
                    f"Not enough space for a meaningful wipe: target "
                    f"{human_readable_size(target)} is below the "
                    f"{human_readable_size(floor)} minimum"
                )

        plan = WipePlan(
            session_id=self.id,
            device=handle,
            snapshot=snapshot,
            config=self.config,
            pass_plan=PassPlan(target_bytes=target, floor_bytes=floor),
            write_increment=engine.write_increment,
            remote_dir=remote.session_path(engine.wipe_root, self.id),
            estimated_write_mbps=engine.estimated_write_mbps,
        )
        self._audit(
            "plan",
            total_bytes=snapshot.total_bytes,
            available_bytes=available,
            target_bytes=target,
            passes=self.config.passes,
            remote_dir=plan.remote_dir,
        )
        return plan

    def _execute(self, plan: WipePlan, result: WipeResult) -> WipeResult:
        engine = self._engine
        stream = ProgressStream(
            total_passes=self.config.passes,
            target_bytes=plan.pass_plan.target_bytes,
            on_log=self.on_log,
        )
        guard = CleanupGuard(
            engine.bridge, plan.device.serial, plan.remote_dir, timeout=engine.command_timeout
        )
        error: WipeError | None = None

        try:
            with guard:
                for pass_number in range(1, self.config.passes + 1):
                    if self.cancelled:
                        break
                    self._run_pass(plan, stream, pass_number)
        except WipeError as exc:
            error = exc
        except Exception as exc:
            # the guard has already removed the remote directory
            logger.exception("Unexpected error in session %s", self.id)
            error = _unexpected(exc)

        result.cleanup_warning = guard.warning
        if error is not None:
            if error.pass_number is None:
                error.pass_number = self._pass_number
            error.bytes_written = error.bytes_written or self._total_written + self._pass_written
            return self._finish(result, SessionState.FAILED, error=error)
        if self._passes_completed < self.config.passes:
            self._emit(stream.finish(
                Phase.ABORTED,
                f"Aborted after {self._passes_completed} of {self.config.passes} passes",
            ))
            return self._finish(result, SessionState.ABORTED)
        self._emit(stream.finish(
            Phase.WIPE_COMPLETE, f"All {self.config.passes} passes finished"
        ))
        return self._finish(result, SessionState.COMPLETED)

    def _run_pass(self, plan: WipePlan, stream: ProgressStream, pass_number: int) -> None:
        started = time.monotonic()
        self._pass_number = pass_number
        self._pass_written = 0
        self._transition(SessionState.PASS_RUNNING)
        self._step(stream, remote.start_pass(plan.remote_dir, pass_number, self.config.passes))

        truncated = self._write_pass(plan, stream, pass_number)

        self._transition(SessionState.SYNCING)
        self._step(stream, remote.sync_pass(pass_number))

        self._transition(SessionState.DELETING)
        self._step(stream, remote.delete_pass(plan.remote_dir, pass_number, self._pass_written))

        self._total_written += self._pass_written
        written = self._pass_written
        self._pass_written = 0
        if not self.cancelled or written >= plan.pass_plan.target_bytes or truncated:
            self._passes_completed += 1
        self._audit(
            "pass_complete",
            pass_number=pass_number,
            bytes_written=written,
            target_bytes=plan.pass_plan.target_bytes,
            truncated=truncated,
            cancelled=self.cancelled,
            duration=round(time.monotonic() - started, 1),
        )

    def _write_pass(self, plan: WipePlan, stream: ProgressStream, pass_number: int) -> bool:
        """Write the pass in increments; return True if stopped by low space."""
        engine = self._engine
        target = plan.pass_plan.target_bytes
        floor = plan.pass_plan.floor_bytes
        chunk = 0

        while self._pass_written < target:
            if self.cancelled:
                logger.info("Stopping pass %d writes on cancellation", pass_number)
                return False

            snapshot = engine.probe.snapshot(plan.device)
            room = snapshot.available_bytes - floor
            size = min(plan.write_increment, target - self._pass_written, room)
            size -= size % MIB
            if size <= 0:
                if self._pass_written == 0:
                    raise InsufficientSpace(
                        f"Free space {human_readable_size(snapshot.available_bytes)} is at "
                        f"the {human_readable_size(floor)} floor; pass {pass_number} "
                        "could not write anything",
                        pass_number=pass_number,
                    )
                self._low_space_stop(pass_number, snapshot)
                return True

            chunk += 1
            try:
                self._step(stream, remote.write_chunk(
                    plan.remote_dir, pass_number, chunk, size, self._pass_written + size, target
                ))
            except WriteFailed:
                if not stream.low_space:
                    raise
                # dd hit ENOSPC despite the guard: keep what landed and stop
                partial = min(stream.last_copied_bytes, size)
                self._pass_written += partial
                self._low_space_stop(pass_number, None)
                return True
            self._pass_written += size
        return False

    def _low_space_stop(self, pass_number: int, snapshot: StorageSnapshot | None) -> None:
        logger.warning(
            "Storage critically low, stopping pass %d early after %s",
            pass_number,
            human_readable_size(self._pass_written),
        )
        self._audit(
            "low_space_stop",
            pass_number=pass_number,
            bytes_written=self._pass_written,
            available_bytes=snapshot.available_bytes if snapshot else None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _step(self, stream: ProgressStream, command: str) -> None:
        """Run one remote command, forwarding events as lines arrive."""
        stream.begin_step()
        lines = self._engine.bridge.stream_shell(
            self._serial, command, self._engine.idle_timeout
        )
        try:
            for event in stream.consume(lines):
                self._emit(event)
        except WriteFailed as exc:
            if stream.low_space or not stream.errors:
                raise
            raise WriteFailed(
                f"Device reported: {'; '.join(stream.errors[-3:])}",
                pass_number=self._pass_number or None,
            ) from exc

    def _transition(self, state: SessionState) -> None:
        self._state = state
        logger.info(
            "Session %s → %s%s",
            self.id,
            state.name,
            f" (pass {self._pass_number})" if self._pass_number else "",
        )
        self._audit("state", state=state.name, pass_number=self._pass_number)

    def _finish(
        self,
        result: WipeResult,
        state: SessionState,
        error: WipeError | None = None,
    ) -> WipeResult:
        result.error = error
        result.pass_number = self._pass_number
        result.passes_completed = self._passes_completed
        result.bytes_written = self._total_written + self._pass_written
        result.finished_at = time.time()
        self._transition(state)
        if error is not None:
            logger.error("Session %s failed: %s", self.id, error)
        self._audit(
            "session_end",
            outcome=state.name,
            pass_number=result.pass_number,
            passes_completed=result.passes_completed,
            bytes_written=result.bytes_written,
            duration=round(result.duration, 1),
            error=error.kind if error else None,
            cause=str(error) if error else None,
            cleanup_warning=str(result.cleanup_warning) if result.cleanup_warning else None,
        )
        result.state = state
        return result

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_event:
            try:
                self.on_event(event)
            except Exception:
                logger.exception("Exception in on_event callback")

    def _audit(self, event: str, **fields) -> None:
        if self._engine.audit is not None:
            self._engine.audit.record(self.id, event, **fields)
