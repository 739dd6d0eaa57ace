"""Turns remote wipe output into structured progress events.

Every output line is cleaned of terminal escape sequences and mapped to
exactly one :class:`LineTag` by :func:`classify`.  :class:`ProgressStream`
folds the tagged lines into :class:`ProgressEvent` objects, keeping the
per-pass byte counter monotonic and capped at the pass target.

The classifier understands both the markers emitted by
:mod:`wipebridge.remote` and those printed by the legacy on-device shell
scripts, so logs from either can be replayed through it.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator

from wipebridge.utils.path_helpers import MIB, human_readable_size

logger = logging.getLogger(__name__)

# CSI sequences (colours, cursor movement), OSC titles, and lone escapes
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")


class LineTag(Enum):
    """Closed set of line classifications."""

    PASS_START = "pass_start"
    WRITING = "writing"
    PROGRESS = "progress"
    COPIED = "copied"
    SYNCING = "syncing"
    DELETING = "deleting"
    PASS_COMPLETE = "pass_complete"
    WIPE_COMPLETE = "wipe_complete"
    LOW_SPACE = "low_space"
    ERROR = "error"
    NOISE = "noise"
    LOG = "log"


class Phase(Enum):
    """Phase reported in a :class:`ProgressEvent`."""

    WRITING = "writing"
    SYNCING = "syncing"
    DELETING = "deleting"
    PASS_COMPLETE = "pass_complete"
    WIPE_COMPLETE = "wipe_complete"
    ABORTED = "aborted"


# Order matters: the first matching pattern wins.
_PATTERNS: tuple[tuple[LineTag, re.Pattern[str]], ...] = (
    (LineTag.PASS_START, re.compile(r"^=== PASS (?P<pass>\d+) of (?P<total>\d+) ===$")),
    (LineTag.PROGRESS, re.compile(
        r"^PROGRESS: Pass (?P<pass>\d+) - (?P<written>\d+)MB / (?P<target>\d+)MB(?: \((?P<pct>\d+)%\))?$"
    )),
    (LineTag.PASS_COMPLETE, re.compile(
        r"^(?:PASS_COMPLETE: Pass (?P<pass>\d+) done - wrote (?P<written>\d+)MB"
        r"|PASS_DONE: (?P<done>\d+)"
        r"|Pass (?P<legacy>\d+) complete)$"
    )),
    (LineTag.WIPE_COMPLETE, re.compile(r"^(?:WIPE_COMPLETE:.*|COMPLETE)$")),
    (LineTag.LOW_SPACE, re.compile(r"Storage critically low|No space left on device", re.IGNORECASE)),
    (LineTag.ERROR, re.compile(
        r"Permission denied|Read-only file system|Input/output error|I/O error"
        r"|Operation not permitted|^error:|^dd: ",
        re.IGNORECASE,
    )),
    (LineTag.COPIED, re.compile(r"^(?P<bytes>\d+) bytes\b.*\b(?:copied|transferred)")),
    (LineTag.NOISE, re.compile(r"^\d+\+\d+ records (?:in|out)$")),
    (LineTag.WRITING, re.compile(r"^Writing\b")),
    (LineTag.SYNCING, re.compile(r"^Syncing\b")),
    (LineTag.DELETING, re.compile(r"^(?:Deleting|Cleaning up)\b")),
)


@dataclass(frozen=True)
class TaggedLine:
    """One cleaned output line and its classification."""

    tag: LineTag
    text: str
    fields: dict[str, str] = field(default_factory=dict)

    def int_field(self, *names: str) -> int | None:
        """First of *names* present in the match, as an int."""
        for name in names:
            value = self.fields.get(name)
            if value is not None:
                return int(value)
        return None


def strip_ansi(text: str) -> str:
    """Remove terminal control sequences and carriage returns."""
    return _ANSI_RE.sub("", text).replace("\r", "")


def classify(raw: str) -> TaggedLine:
    """Map one raw output line to exactly one tag."""
    text = strip_ansi(raw).strip()
    for tag, pattern in _PATTERNS:
        match = pattern.search(text)
        if match:
            found = {k: v for k, v in match.groupdict().items() if v is not None}
            return TaggedLine(tag, text, found)
    return TaggedLine(LineTag.LOG, text)


@dataclass(frozen=True)
class ProgressEvent:
    """A progress report for the UI or log consumer."""

    pass_number: int
    total_passes: int
    bytes_written: int
    target_bytes: int
    phase: Phase
    message: str
    timestamp: float = field(default_factory=time.time, compare=False)

    @property
    def pass_fraction(self) -> float:
        """Fraction of the current pass written (0.0 – 1.0)."""
        if self.target_bytes <= 0:
            return 1.0
        return min(1.0, self.bytes_written / self.target_bytes)

    @property
    def overall_fraction(self) -> float:
        """Fraction of the whole wipe done, counting completed passes."""
        if self.phase is Phase.WIPE_COMPLETE:
            return 1.0
        if self.total_passes <= 0:
            return 0.0
        if self.phase is Phase.PASS_COMPLETE:
            return min(1.0, self.pass_number / self.total_passes)
        done = max(self.pass_number - 1, 0)
        return min(1.0, (done + self.pass_fraction) / self.total_passes)

    def __str__(self) -> str:
        return (
            f"[pass {self.pass_number}/{self.total_passes}] {self.phase.value}: "
            f"{human_readable_size(self.bytes_written)} / "
            f"{human_readable_size(self.target_bytes)}: {self.message}"
        )


class ProgressStream:
    """Folds tagged output lines into an ordered stream of events.

    One instance follows a whole wipe: the engine hands it the output of
    each remote step in turn via :meth:`consume`.  ``low_space`` and
    ``error`` lines emit no event; they are recorded for the engine to
    inspect after the step.
    """

    def __init__(
        self,
        total_passes: int,
        target_bytes: int,
        on_log: Callable[[str], None] | None = None,
    ) -> None:
        self.total_passes = total_passes
        self.target_bytes = target_bytes
        self.on_log = on_log

        self.pass_number = 0
        self.bytes_written = 0
        self.low_space = False
        self.last_copied_bytes = 0
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def consume(self, lines: Iterable[str]) -> Iterator[ProgressEvent]:
        """Yield events for *lines*, each as soon as its line arrives."""
        for raw in lines:
            event = self.feed(raw)
            if event is not None:
                yield event

    def feed(self, raw: str) -> ProgressEvent | None:
        """Classify a single line and return the event it triggers, if any."""
        line = classify(raw)
        handler = getattr(self, f"_on_{line.tag.value}")
        return handler(line)

    def begin_step(self) -> None:
        """Reset per-step flags before the next remote command."""
        self.low_space = False
        self.last_copied_bytes = 0
        self.errors = []

    def finish(self, phase: Phase, message: str) -> ProgressEvent:
        """Build a terminal event (``wipe_complete`` or ``aborted``)."""
        return self._event(phase, message)

    # ------------------------------------------------------------------
    # Tag handlers
    # ------------------------------------------------------------------

    def _event(self, phase: Phase, message: str) -> ProgressEvent:
        return ProgressEvent(
            pass_number=self.pass_number,
            total_passes=self.total_passes,
            bytes_written=self.bytes_written,
            target_bytes=self.target_bytes,
            phase=phase,
            message=message,
        )

    def _advance(self, written: int) -> None:
        # Never move backwards within a pass, never past the target
        self.bytes_written = min(max(self.bytes_written, written), self.target_bytes)

    def _on_pass_start(self, line: TaggedLine) -> ProgressEvent:
        self.pass_number = line.int_field("pass") or self.pass_number + 1
        self.total_passes = line.int_field("total") or self.total_passes
        self.bytes_written = 0
        return self._event(Phase.WRITING, line.text)

    def _on_writing(self, line: TaggedLine) -> ProgressEvent:
        return self._event(Phase.WRITING, line.text)

    def _on_progress(self, line: TaggedLine) -> ProgressEvent:
        number = line.int_field("pass")
        if number is not None and number != self.pass_number:
            self.pass_number = number
            self.bytes_written = 0
        self._advance((line.int_field("written") or 0) * MIB)
        return self._event(Phase.WRITING, line.text)

    def _on_copied(self, line: TaggedLine) -> None:
        self.last_copied_bytes = line.int_field("bytes") or 0
        logger.debug("device: %s", line.text)

    def _on_syncing(self, line: TaggedLine) -> ProgressEvent:
        return self._event(Phase.SYNCING, line.text)

    def _on_deleting(self, line: TaggedLine) -> ProgressEvent:
        return self._event(Phase.DELETING, line.text)

    def _on_pass_complete(self, line: TaggedLine) -> ProgressEvent:
        number = line.int_field("pass", "done", "legacy")
        if number is not None:
            self.pass_number = number
        written = line.int_field("written")
        if written is not None:
            self._advance(written * MIB)
        return self._event(Phase.PASS_COMPLETE, line.text)

    def _on_wipe_complete(self, line: TaggedLine) -> ProgressEvent:
        return self._event(Phase.WIPE_COMPLETE, line.text)

    def _on_low_space(self, line: TaggedLine) -> None:
        self.low_space = True
        logger.warning("device: %s", line.text)

    def _on_error(self, line: TaggedLine) -> None:
        self.errors.append(line.text)
        logger.warning("device: %s", line.text)

    def _on_noise(self, line: TaggedLine) -> None:
        logger.debug("device: %s", line.text)

    def _on_log(self, line: TaggedLine) -> None:
        if not line.text:
            return
        logger.debug("device: %s", line.text)
        if self.on_log:
            try:
                self.on_log(line.text)
            except Exception:
                logger.exception("Exception in on_log callback")
