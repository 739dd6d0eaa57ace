"""Durable, append-only record of wipe sessions.

One JSON object per line.  Each record is flushed and fsynced as it is
written so a run can be audited even if the process is killed halfway.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class AuditLog:
    """Appends wipe records to a JSON-lines file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def for_today(cls, log_dir: Path) -> "AuditLog":
        """Audit log in *log_dir* named after today's date."""
        stamp = datetime.now().strftime("%Y-%m-%d")
        return cls(Path(log_dir) / f"wipe-{stamp}.jsonl")

    def record(self, session_id: str, event: str, **fields: Any) -> None:
        """Append one record.

        Failures to write are logged, never raised: losing an audit line
        must not abort a wipe that is already touching the device.
        """
        entry = {
            "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "session": session_id,
            "event": event,
            **fields,
        }
        line = json.dumps(entry, default=str)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
                    fh.flush()
                    os.fsync(fh.fileno())
            except OSError as exc:
                logger.error("Could not write audit record to %s: %s", self.path, exc)

    def read(self, session_id: str | None = None) -> list[dict[str, Any]]:
        """Return recorded entries, optionally for one session only."""
        if not self.path.exists():
            return []
        entries = []
        for raw in self.path.read_text(encoding="utf-8").splitlines():
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt audit line in %s", self.path)
                continue
            if session_id is None or entry.get("session") == session_id:
                entries.append(entry)
        return entries
