"""Reference execution layer: one agent subprocess per assigned task.

Each task's combined stdout/stderr is pumped line by line on its own
thread through the marker detector and the liveness classifier. The first
marker (or the synthesized exit failure) is forwarded to the scheduler.
"""

from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Protocol

from .classifier import AgentStateClassifier
from .config import ForgeSettings
from .models import AssignedTask, AssignmentBatch
from .protocol import OutputProtocolDetector, TaskSignal, marker_instructions
from .worktree import sanitize_fragment

logger = logging.getLogger(__name__)

_TERMINATE_GRACE_S = 5.0


class TaskCallbacks(Protocol):
    def task_running(self, task_id: str, handle: str | None = None, session_id: str | None = None) -> None: ...

    def task_completed(self, task_id: str, handle: str | None = None, session_id: str | None = None) -> None: ...

    def task_failed(
        self,
        task_id: str,
        handle: str | None = None,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> None: ...


def build_agent_prompt(task: AssignedTask) -> str:
    return f"{task.prompt}{marker_instructions(task.id)}"


class SubprocessExecutionLayer:
    """Runs each assigned task as ``<agent command> <prompt>``."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        settings: ForgeSettings | None = None,
        log_dir: Path | str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = list(command)
        self.settings = settings or ForgeSettings()
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.env = env
        self._callbacks: TaskCallbacks | None = None

        self._lock = threading.Lock()
        self._detectors: dict[str, OutputProtocolDetector] = {}
        self._procs: dict[tuple[str, str], subprocess.Popen[str]] = {}
        self._threads: list[threading.Thread] = []

    def bind(self, callbacks: TaskCallbacks) -> None:
        self._callbacks = callbacks

    def _require_callbacks(self) -> TaskCallbacks:
        if self._callbacks is None:
            raise RuntimeError("Execution layer is not bound to a scheduler")
        return self._callbacks

    def _detector(self, session_id: str) -> OutputProtocolDetector:
        with self._lock:
            detector = self._detectors.get(session_id)
            if detector is None:
                detector = OutputProtocolDetector(self.settings.marker_buffer_chars)
                self._detectors[session_id] = detector
            return detector

    # -- AssignmentSink ---------------------------------------------------

    def assign(self, batch: AssignmentBatch) -> None:
        for task in batch.tasks:
            self._launch(batch.session_id, task)

    def _launch(self, session_id: str, task: AssignedTask) -> None:
        callbacks = self._require_callbacks()
        cmd = [*self.command, build_agent_prompt(task)]
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=task.working_directory,
                env=self.env,
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=1,
                errors="replace",
            )
        except OSError as exc:
            logger.error("Failed to start agent for task %s: %s", task.id, exc)
            callbacks.task_failed(task.id, None, f"Failed to start agent: {exc}", session_id=session_id)
            return

        handle = f"pid:{proc.pid}"
        with self._lock:
            self._procs[(session_id, task.id)] = proc
        callbacks.task_running(task.id, handle, session_id=session_id)

        thread = threading.Thread(
            target=self._pump,
            args=(session_id, task, proc, handle),
            name=f"taskforge-task-{task.id}",
            daemon=True,
        )
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def _log_path(self, session_id: str, task_id: str) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / sanitize_fragment(session_id) / f"task-{sanitize_fragment(task_id)}.log"

    def _pump(self, session_id: str, task: AssignedTask, proc: subprocess.Popen[str], handle: str) -> None:
        detector = self._detector(session_id)
        classifier = AgentStateClassifier(
            self.settings.classifier_buffer_chars,
            self.settings.classifier_recent_chars,
        )
        log_path = self._log_path(session_id, task.id)
        log_file: IO[str] | None = None
        try:
            if log_path is not None:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = log_path.open("w", encoding="utf-8")

            assert proc.stdout is not None
            for line in iter(proc.stdout.readline, ""):
                if log_file is not None:
                    log_file.write(line)
                    log_file.flush()
                event = classifier.feed(line)
                if event is not None:
                    logger.debug("Task %s agent %s -> %s", task.id, event.previous.value, event.state.value)
                signal = detector.feed(task.id, line)
                if signal is not None:
                    self._report(session_id, handle, signal)

            rc = proc.wait()
            signal = detector.process_exited(task.id, rc)
            if signal is not None:
                self._report(session_id, handle, signal)
        finally:
            if log_file is not None:
                log_file.close()
            if proc.stdout is not None:
                with contextlib.suppress(Exception):
                    proc.stdout.close()
            with self._lock:
                self._procs.pop((session_id, task.id), None)

    def _report(self, session_id: str, handle: str, signal: TaskSignal) -> None:
        callbacks = self._require_callbacks()
        if signal.success:
            callbacks.task_completed(signal.task_id, handle, session_id=session_id)
        else:
            callbacks.task_failed(signal.task_id, handle, signal.reason, session_id=session_id)

    # -- lifecycle --------------------------------------------------------

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._procs)

    def terminate_all(self) -> int:
        """Stop every live agent process; returns how many were signalled."""
        with self._lock:
            procs = list(self._procs.values())
        for proc in procs:
            if proc.poll() is not None:
                continue
            proc.terminate()
        for proc in procs:
            try:
                proc.wait(timeout=_TERMINATE_GRACE_S)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if procs:
            logger.info("Terminated %d agent process(es)", len(procs))
        return len(procs)

    def join(self, timeout: float | None = None) -> None:
        """Wait for output pumps to drain."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
