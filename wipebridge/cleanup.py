"""Scoped ownership of a wipe session's remote temp directory."""

from __future__ import annotations

import logging

from wipebridge import remote
from wipebridge.bridge import AdbBridge
from wipebridge.errors import CleanupFailed, WipeError
from wipebridge.transport import TransportError
from wipebridge.utils.path_helpers import validate_remote_path

logger = logging.getLogger(__name__)


class CleanupGuard:
    """Creates a remote directory on entry and removes it on every exit.

    Usage::

        with CleanupGuard(bridge, serial, "/sdcard/.wipebridge-1a2b") as guard:
            ...  # write into guard.remote_dir
        if guard.warning:
            log it; the wipe outcome stands

    Removal failures never propagate, including raw transport and socket
    errors: they are kept as a :exc:`CleanupFailed` in :attr:`warning`.
    :meth:`release` is idempotent.
    """

    def __init__(
        self,
        bridge: AdbBridge,
        serial: str,
        remote_dir: str,
        timeout: float = 60.0,
    ) -> None:
        if not validate_remote_path(remote_dir):
            raise ValueError(f"Refusing to manage unsafe remote path {remote_dir!r}")
        self._bridge = bridge
        self.serial = serial
        self.remote_dir = remote_dir
        self.timeout = timeout
        self.acquired = False
        self.released = False
        self.warning: CleanupFailed | None = None

    def __enter__(self) -> "CleanupGuard":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False

    def acquire(self) -> None:
        """Create the remote directory.

        If creation fails the guard still tries to remove whatever may have
        been created, then re-raises.
        """
        try:
            self._bridge.shell(self.serial, remote.make_dir(self.remote_dir), self.timeout)
        except (WipeError, TransportError, OSError):
            self.release()
            raise
        self.acquired = True
        logger.debug("Created %s on %s", self.remote_dir, self.serial)

    def release(self) -> CleanupFailed | None:
        """Remove the remote directory; return a warning instead of raising.

        A second call does nothing and returns the first call's outcome.
        """
        if self.released:
            return self.warning
        self.released = True
        try:
            self._bridge.shell(self.serial, remote.remove_dir(self.remote_dir), self.timeout)
        except (WipeError, TransportError, OSError) as exc:
            self.warning = CleanupFailed(
                f"Could not remove {self.remote_dir} from {self.serial}: {exc}"
            )
            logger.warning("%s", self.warning)
        else:
            logger.info("Removed %s from %s", self.remote_dir, self.serial)
        return self.warning
