"""Completion markers embedded in a task's raw output stream.

An agent reports its outcome by printing one of two literal lines::

    TASK_DONE:<task_id>
    TASK_FAIL:<task_id>:<reason>

Output arrives in arbitrary chunks, possibly with terminal escape codes, so
each task keeps a bounded rolling buffer of cleaned text and is rescanned on
every chunk. Each task yields at most one signal. If the process exits
before a marker appears, a failure is synthesized from the exit status.
"""

from __future__ import annotations

import dataclasses
import logging
import re

from .errors import ProcessExitError
from .terminal import append_bounded, strip_control_sequences

logger = logging.getLogger(__name__)

DONE_PREFIX = "TASK_DONE:"
FAIL_PREFIX = "TASK_FAIL:"
DEFAULT_BUFFER_CHARS = 4000


def done_marker(task_id: str) -> str:
    return f"{DONE_PREFIX}{task_id}"


def fail_marker(task_id: str, reason: str) -> str:
    return f"{FAIL_PREFIX}{task_id}:{reason}"


def marker_instructions(task_id: str) -> str:
    """Prompt suffix telling an agent how to report its outcome.

    The markers are quoted inline so an echoed prompt never contains a
    marker line of its own.
    """
    return (
        "\n\nWhen you have finished, print a line containing exactly "
        f"`{done_marker(task_id)}`. If you cannot complete the task, print a line "
        f"containing exactly `{fail_marker(task_id, '<short reason>')}` instead."
    )


@dataclasses.dataclass(frozen=True)
class TaskSignal:
    """Terminal outcome detected for one task."""

    task_id: str
    success: bool
    reason: str | None = None
    exit_code: int | None = None
    synthesized: bool = False


class MarkerScanner:
    """Marker detection for a single task's output stream."""

    def __init__(self, task_id: str, buffer_chars: int = DEFAULT_BUFFER_CHARS) -> None:
        self.task_id = task_id
        self.buffer_chars = buffer_chars
        self.buffer = ""
        self.notified = False
        self._skipping_line = False

        tid = re.escape(task_id)
        # While streaming a marker only counts once its line is terminated.
        self._done_streaming = re.compile(rf"^[ \t]*{re.escape(DONE_PREFIX)}{tid}[ \t]*(?=\n)", re.M)
        self._fail_streaming = re.compile(rf"^[ \t]*{re.escape(FAIL_PREFIX)}{tid}:([^\n]*)(?=\n)", re.M)
        self._done_final = re.compile(rf"^[ \t]*{re.escape(DONE_PREFIX)}{tid}[ \t]*$", re.M)
        self._fail_final = re.compile(rf"^[ \t]*{re.escape(FAIL_PREFIX)}{tid}:([^\n]*)$", re.M)

    def feed(self, chunk: str) -> TaskSignal | None:
        if self.notified:
            return None
        text = strip_control_sequences(chunk)
        if self._skipping_line:
            newline = text.find("\n")
            if newline < 0:
                return None
            text = text[newline + 1 :]
            self._skipping_line = False

        combined = self.buffer + text
        self.buffer = append_bounded("", combined, self.buffer_chars)
        cut = len(combined) - len(self.buffer)
        if cut and combined[cut - 1] != "\n":
            # The trim fell mid-line; the buffer must start at a line start.
            newline = self.buffer.find("\n")
            if newline >= 0:
                self.buffer = self.buffer[newline + 1 :]
            else:
                self.buffer = ""
                self._skipping_line = True
        return self._scan(self._done_streaming, self._fail_streaming)

    def finish(self, exit_code: int | None) -> TaskSignal | None:
        """Handle process exit; synthesizes a failure if nothing fired."""
        if self.notified:
            return None
        signal = self._scan(self._done_final, self._fail_final)
        if signal is not None:
            return signal
        self.notified = True
        reason = str(ProcessExitError(self.task_id, exit_code))
        logger.warning("Task %s: %s", self.task_id, reason)
        return TaskSignal(
            task_id=self.task_id,
            success=False,
            reason=reason,
            exit_code=exit_code,
            synthesized=True,
        )

    def _scan(self, done_re: re.Pattern[str], fail_re: re.Pattern[str]) -> TaskSignal | None:
        done = done_re.search(self.buffer)
        fail = fail_re.search(self.buffer)
        if done is None and fail is None:
            return None

        self.notified = True
        if fail is None or (done is not None and done.start() < fail.start()):
            logger.info("Task %s reported completion", self.task_id)
            return TaskSignal(task_id=self.task_id, success=True)

        reason = fail.group(1).strip() or "Task reported failure"
        logger.info("Task %s reported failure: %s", self.task_id, reason)
        return TaskSignal(task_id=self.task_id, success=False, reason=reason)


class OutputProtocolDetector:
    """Routes output chunks to per-task marker scanners."""

    def __init__(self, buffer_chars: int = DEFAULT_BUFFER_CHARS) -> None:
        self.buffer_chars = buffer_chars
        self._scanners: dict[str, MarkerScanner] = {}

    def _scanner(self, task_id: str) -> MarkerScanner:
        scanner = self._scanners.get(task_id)
        if scanner is None:
            scanner = MarkerScanner(task_id, self.buffer_chars)
            self._scanners[task_id] = scanner
        return scanner

    def feed(self, task_id: str, chunk: str) -> TaskSignal | None:
        return self._scanner(task_id).feed(chunk)

    def process_exited(self, task_id: str, exit_code: int | None) -> TaskSignal | None:
        return self._scanner(task_id).finish(exit_code)

    def has_notified(self, task_id: str) -> bool:
        scanner = self._scanners.get(task_id)
        return scanner is not None and scanner.notified

    def forget(self, task_id: str) -> None:
        self._scanners.pop(task_id, None)

    def reset(self) -> None:
        self._scanners.clear()
