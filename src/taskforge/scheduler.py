"""Session orchestration: planning, admission control, dependencies, timeouts.

The :class:`Scheduler` owns one live session and its tasks. Every mutation
happens under a single re-entrant lock; anything that leaves the scheduler
(assignment batches, notifications, history records) is queued while the
lock is held and delivered after it is released, so collaborators may call
straight back into the scheduler.

Planning and worktree creation block on external processes and run on a
worker pool. The timeout tick is a daemon thread calling
:meth:`Scheduler.check_timeouts` every ``timeout_check_interval_s``.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Protocol

from .config import ForgeSettings
from .errors import DependencyError, ParseError, PlannerError, PlanningCancelled, TaskTimeoutError, VcsError
from .models import (
    ACTIVE_TASK_STATUSES,
    AssignedTask,
    AssignmentBatch,
    Session,
    SessionRecord,
    SessionStatus,
    Task,
    TaskRecord,
    TaskStatus,
)
from .plan_parser import parse_plan
from .planner import Planner, build_plan_request
from .worktree import WorktreeManager

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled by user"
DEFAULT_FAILURE_REASON = "Task reported failure"


# -----------------------------
# Collaborator protocols
# -----------------------------


class AssignmentSink(Protocol):
    """Execution layer side of the assignment signal."""

    def assign(self, batch: AssignmentBatch) -> None: ...


class SessionHistory(Protocol):
    """Persistence collaborator receiving finished-session summaries."""

    def append(self, project_id: str, record: SessionRecord) -> None: ...


class SessionNotifier(Protocol):
    def session_updated(self, session: Session) -> None: ...

    def tasks_updated(self, session_id: str, tasks: Sequence[Task]) -> None: ...

    def session_completed(self, session: Session) -> None: ...

    def session_failed(self, session: Session, message: str) -> None: ...


class LoggingNotifier:
    """Default notifier: reports session progress through logging."""

    def session_updated(self, session: Session) -> None:
        logger.info("Session %s is %s", session.id, session.status.value)

    def tasks_updated(self, session_id: str, tasks: Sequence[Task]) -> None:
        counts: dict[str, int] = {}
        for task in tasks:
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        summary = ", ".join(f"{n} {status}" for status, n in sorted(counts.items()))
        logger.debug("Session %s tasks: %s", session_id, summary or "none")

    def session_completed(self, session: Session) -> None:
        logger.info("Session %s completed (cost $%.4f)", session.id, session.total_cost)

    def session_failed(self, session: Session, message: str) -> None:
        logger.error("Session %s failed: %s", session.id, message)


@dataclasses.dataclass(frozen=True)
class SessionSnapshot:
    session: Session | None
    tasks: tuple[Task, ...]


# -----------------------------
# Graph passes
# -----------------------------


def propagate_blocking(tasks: dict[str, Task]) -> list[str]:
    """Block every pending task that can never become ready.

    Repeats full scans until one produces no change, so blocking flows
    through any depth of dependents in a single call. Returns the ids that
    were blocked, in the order they were blocked.
    """
    blocked: list[str] = []
    changed = True
    while changed:
        changed = False
        for task in tasks.values():
            if task.status != TaskStatus.PENDING:
                continue
            reason = _blocking_reason(task, tasks)
            if reason is None:
                continue
            task.status = TaskStatus.BLOCKED
            task.error = reason
            task.started_at = None
            blocked.append(task.id)
            changed = True
    return blocked


def _blocking_reason(task: Task, tasks: dict[str, Task]) -> str | None:
    for dep_id in task.depends_on:
        dep = tasks.get(dep_id)
        if dep is None:
            return str(DependencyError(task.id, dep_id))
        if dep.status in (TaskStatus.FAILED, TaskStatus.BLOCKED):
            return str(DependencyError(task.id, dep_id, dep.status.value))
    return None


def ready_tasks(tasks: dict[str, Task]) -> list[Task]:
    """Pending tasks whose dependencies have all completed, in plan order."""
    return [
        task
        for task in tasks.values()
        if task.status == TaskStatus.PENDING
        and all(dep in tasks and tasks[dep].status == TaskStatus.COMPLETED for dep in task.depends_on)
    ]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------
# Scheduler
# -----------------------------


class Scheduler:
    """Drives one idea-to-completion session at a time."""

    def __init__(
        self,
        planner: Planner,
        sink: AssignmentSink,
        *,
        history: SessionHistory | None = None,
        notifier: SessionNotifier | None = None,
        worktrees: WorktreeManager | None = None,
        settings: ForgeSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        executor: Executor | None = None,
        auto_tick: bool = True,
    ) -> None:
        self.settings = settings or ForgeSettings()
        self.planner = planner
        self.sink = sink
        self.history = history
        self.notifier: SessionNotifier = notifier or LoggingNotifier()
        self.worktrees = worktrees
        self._clock = clock

        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent + 1,
            thread_name_prefix="taskforge",
        )

        self._lock = threading.RLock()
        self._settled_cond = threading.Condition(self._lock)
        self._outbox: list[Callable[[], object]] = []

        self._session: Session | None = None
        self._tasks: dict[str, Task] = {}
        self._cancel_event: threading.Event | None = None
        self._settled_id: str | None = None

        self._auto_tick = auto_tick
        self._tick_stop = threading.Event()
        self._ticker: threading.Thread | None = None
        self._closed = False

    # -- outbox -----------------------------------------------------------

    def _queue(self, fn: Callable[..., object], *args: object) -> None:
        self._outbox.append(partial(fn, *args))

    def _drain(self) -> None:
        with self._lock:
            pending, self._outbox = self._outbox, []
        for deliver in pending:
            try:
                deliver()
            except Exception:
                logger.exception("Scheduler collaborator call failed")

    def _queue_session_update(self, session: Session) -> None:
        self._queue(self.notifier.session_updated, dataclasses.replace(session))

    def _queue_tasks_update(self, session: Session) -> None:
        copies = tuple(dataclasses.replace(t, depends_on=list(t.depends_on)) for t in self._tasks.values())
        self._queue(self.notifier.tasks_updated, session.id, copies)

    def _queue_settled(self, session_id: str) -> None:
        self._queue(self._mark_settled, session_id)

    def _mark_settled(self, session_id: str) -> None:
        with self._settled_cond:
            self._settled_id = session_id
            self._settled_cond.notify_all()

    def _submit(self, fn: Callable[..., object], *args: object) -> Future[object]:
        def run() -> object:
            try:
                return fn(*args)
            except Exception:
                logger.exception("Background scheduler work failed")
                raise

        return self._executor.submit(run)

    # -- session lifecycle ------------------------------------------------

    def start(self, idea: str, cwd: Path | str, project_id: str | None = None) -> str:
        """Plan and start a session; blocks for the planning call.

        A previous live session is cancelled first. Returns the new
        session id. Planning and parse failures fail the session and are
        reported to the notifier rather than raised.
        """
        if self._closed:
            raise RuntimeError("Scheduler is closed")
        self.cancel()

        cancel_event = threading.Event()
        with self._lock:
            session = Session(
                id=uuid.uuid4().hex,
                idea=idea,
                cwd=str(cwd),
                status=SessionStatus.DECOMPOSING,
                project_id=project_id,
                started_at=_utc_now(),
            )
            self._session = session
            self._tasks = {}
            self._cancel_event = cancel_event
            logger.info("Session %s started: decomposing idea (%d chars)", session.id, len(idea))
            self._queue_session_update(session)
        self._drain()
        self._ensure_ticker()

        try:
            response = self.planner.plan(build_plan_request(idea, str(cwd)), cancel_event)
        except PlanningCancelled:
            logger.debug("Planning for session %s was cancelled", session.id)
            return session.id
        except PlannerError as exc:
            if not cancel_event.is_set():
                self._fail_planning(session, str(exc))
            return session.id
        except Exception as exc:
            logger.exception("Planner raised unexpectedly for session %s", session.id)
            if not cancel_event.is_set():
                self._fail_planning(session, f"Planning failed: {type(exc).__name__}: {exc}")
            return session.id
        if cancel_event.is_set():
            return session.id

        logger.debug("Planner response preview: %s", response.text[:500])
        try:
            specs = parse_plan(response.text)
        except ParseError as exc:
            self._fail_planning(session, str(exc), cost=response.cost_usd)
            return session.id

        with self._lock:
            if self._session is not session or cancel_event.is_set():
                return session.id
            session.add_cost(response.cost_usd)
            self._tasks = {spec.id: Task.from_spec(spec) for spec in specs}
            session.status = SessionStatus.RUNNING
            logger.info("Session %s planned %d task(s)", session.id, len(self._tasks))
            self._queue_session_update(session)
            self._queue_tasks_update(session)
            self._schedule(session)
        self._drain()
        return session.id

    def submit(self, idea: str, cwd: Path | str, project_id: str | None = None) -> Future[object]:
        """Run :meth:`start` on the worker pool."""
        return self._submit(self.start, idea, cwd, project_id)

    def _fail_planning(self, session: Session, message: str, cost: float | None = None) -> None:
        with self._lock:
            if self._session is not session or session.is_final:
                return
            session.add_cost(cost)
            session.status = SessionStatus.FAILED
            session.error = message
            session.finished_at = _utc_now()
            logger.error("Session %s failed during planning: %s", session.id, message)
            self._queue_session_update(session)
            self._queue(self.notifier.session_failed, dataclasses.replace(session), message)
            self._queue_settled(session.id)
        self._drain()

    def cancel(self) -> bool:
        """Cancel the live session. Returns False when there was nothing to cancel."""
        with self._lock:
            session = self._session
            if session is None or session.is_final:
                return False
            if self._cancel_event is not None:
                self._cancel_event.set()

            changed = False
            for task in self._tasks.values():
                if task.is_final:
                    continue
                task.status = TaskStatus.FAILED
                task.error = CANCELLED_REASON
                task.started_at = None
                changed = True
            if changed:
                self._queue_tasks_update(session)

            session.status = SessionStatus.FAILED
            session.error = CANCELLED_REASON
            session.finished_at = _utc_now()
            logger.warning("Session %s cancelled", session.id)
            self._queue_session_update(session)
            self._queue_settled(session.id)
        self._drain()
        return True

    # -- scheduling pass --------------------------------------------------

    def _is_live(self, session_id: str | None) -> bool:
        session = self._session
        if session is None or session.status != SessionStatus.RUNNING:
            return False
        return session_id is None or session_id == session.id

    def _schedule(self, session: Session) -> None:
        """Block, admit and finalize. Caller holds the lock."""
        if self._session is not session or session.status != SessionStatus.RUNNING:
            return

        blocked = propagate_blocking(self._tasks)
        for task_id in blocked:
            logger.warning("Task %s blocked: %s", task_id, self._tasks[task_id].error)

        active = sum(1 for t in self._tasks.values() if t.status in ACTIVE_TASK_STATUSES)
        budget = self.settings.max_concurrent - active
        admitted = ready_tasks(self._tasks)[: max(budget, 0)]
        for task in admitted:
            task.status = TaskStatus.ASSIGNED

        if blocked or admitted:
            self._queue_tasks_update(session)

        if admitted:
            ids = [t.id for t in admitted]
            logger.info("Session %s assigning task(s) %s", session.id, ", ".join(ids))
            if self.worktrees is not None and self.settings.isolate_tasks:
                self._queue(self._submit, self._isolate_and_assign, session.id, ids)
            else:
                self._emit_batch(session, {task_id: session.cwd for task_id in ids})

        self._maybe_finalize(session)

    def _isolate_and_assign(self, session_id: str, task_ids: Sequence[str]) -> None:
        """Create worktrees off the lock, then emit the batch."""
        with self._lock:
            if not self._is_live(session_id):
                return
            session = self._session
            assert session is not None
            base = session.cwd

        directories: dict[str, str] = {}
        for task_id in task_ids:
            path: Path | None = None
            try:
                assert self.worktrees is not None
                path = self.worktrees.create(base, session_id, task_id)
            except VcsError as exc:
                logger.warning("Task %s runs unisolated: %s", task_id, exc)
            except Exception:
                logger.exception("Worktree setup for task %s failed; running unisolated", task_id)
            directories[task_id] = str(path) if path is not None else base

        with self._lock:
            if self._session is not session or not self._is_live(session_id):
                return
            self._emit_batch(session, directories)
        self._drain()

    def _emit_batch(self, session: Session, directories: dict[str, str]) -> None:
        """Queue one assignment batch for still-assigned tasks. Caller holds the lock."""
        assigned: list[AssignedTask] = []
        for task_id, directory in directories.items():
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.ASSIGNED:
                continue
            task.working_directory = directory
            assigned.append(AssignedTask(id=task.id, title=task.title, prompt=task.prompt, working_directory=directory))
        if not assigned:
            return
        batch = AssignmentBatch(session_id=session.id, tasks=tuple(assigned), working_directory=session.cwd)
        self._queue(self.sink.assign, batch)

    def _maybe_finalize(self, session: Session) -> None:
        if session.status != SessionStatus.RUNNING or not self._tasks:
            return
        if not all(task.is_final for task in self._tasks.values()):
            return

        failed = sum(1 for t in self._tasks.values() if t.status == TaskStatus.FAILED)
        blocked = sum(1 for t in self._tasks.values() if t.status == TaskStatus.BLOCKED)
        session.finished_at = _utc_now()
        if failed or blocked:
            session.status = SessionStatus.FAILED
            session.error = f"{failed} failed, {blocked} blocked"
            logger.info("Session %s finished with failures: %s", session.id, session.error)
        else:
            session.status = SessionStatus.COMPLETED
            logger.info("Session %s completed all %d task(s)", session.id, len(self._tasks))

        record = self._record(session)
        if record is not None and self.history is not None and session.project_id:
            self._queue(self.history.append, session.project_id, record)
        self._queue_session_update(session)
        if session.status == SessionStatus.COMPLETED:
            self._queue(self.notifier.session_completed, dataclasses.replace(session))
        else:
            self._queue(self.notifier.session_failed, dataclasses.replace(session), session.error or "")
        self._queue_settled(session.id)

    def _record(self, session: Session) -> SessionRecord | None:
        if session.status not in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            return None
        return SessionRecord(
            id=session.id,
            idea=session.idea,
            status=session.status.value,
            cost=session.total_cost,
            started_at=session.started_at or "",
            finished_at=session.finished_at or _utc_now(),
            tasks=[
                TaskRecord(
                    id=t.id,
                    title=t.title,
                    prompt=t.prompt,
                    depends_on=list(t.depends_on),
                    status=t.status.value,
                )
                for t in self._tasks.values()
                if t.is_final
            ],
        )

    # -- execution callbacks ----------------------------------------------

    def _callback_target(self, task_id: str, session_id: str | None, event: str) -> tuple[Session, Task] | None:
        session = self._session
        if session is None or (session_id is not None and session_id != session.id):
            logger.debug("Ignoring %s callback for task %s of stale session %s", event, task_id, session_id)
            return None
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Ignoring %s callback for unknown task %s", event, task_id)
            return None
        if task.is_final:
            logger.debug("Ignoring %s callback for task %s already %s", event, task_id, task.status.value)
            return None
        return session, task

    def task_running(self, task_id: str, handle: str | None = None, session_id: str | None = None) -> None:
        with self._lock:
            target = self._callback_target(task_id, session_id, "running")
            if target is None:
                return
            session, task = target
            task.status = TaskStatus.RUNNING
            task.handle = handle
            task.started_at = self._clock()
            logger.info("Task %s running (%s)", task_id, handle or "no handle")
            self._queue_tasks_update(session)
        self._drain()

    def task_completed(self, task_id: str, handle: str | None = None, session_id: str | None = None) -> None:
        with self._lock:
            target = self._callback_target(task_id, session_id, "completed")
            if target is None:
                return
            session, task = target
            task.status = TaskStatus.COMPLETED
            task.handle = handle or task.handle
            task.error = None
            task.started_at = None
            logger.info("Task %s completed", task_id)
            self._queue_tasks_update(session)
            self._schedule(session)
        self._drain()

    def task_failed(
        self,
        task_id: str,
        handle: str | None = None,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> None:
        with self._lock:
            target = self._callback_target(task_id, session_id, "failed")
            if target is None:
                return
            session, task = target
            task.status = TaskStatus.FAILED
            task.handle = handle or task.handle
            task.error = reason or DEFAULT_FAILURE_REASON
            task.started_at = None
            logger.info("Task %s failed: %s", task_id, task.error)
            self._queue_tasks_update(session)
            self._schedule(session)
        self._drain()

    # -- timeouts ---------------------------------------------------------

    def check_timeouts(self) -> list[str]:
        """Fail every running task past its deadline; returns their ids."""
        timed_out: list[str] = []
        with self._lock:
            session = self._session
            if session is None or session.status != SessionStatus.RUNNING:
                return timed_out
            limit = self.settings.task_timeout_s
            now = self._clock()
            for task in self._tasks.values():
                if task.status != TaskStatus.RUNNING or task.started_at is None:
                    continue
                elapsed = now - task.started_at
                if elapsed <= limit:
                    continue
                task.status = TaskStatus.FAILED
                task.error = str(TaskTimeoutError(task.id, limit, elapsed))
                task.started_at = None
                timed_out.append(task.id)
                logger.warning("Task %s timed out after %.0fs", task.id, elapsed)
            if timed_out:
                self._queue_tasks_update(session)
                self._schedule(session)
        self._drain()
        return timed_out

    def _ensure_ticker(self) -> None:
        if not self._auto_tick or self._ticker is not None:
            return
        self._ticker = threading.Thread(target=self._tick_loop, name="taskforge-timeouts", daemon=True)
        self._ticker.start()

    def _tick_loop(self) -> None:
        interval = self.settings.timeout_check_interval_s
        while not self._tick_stop.wait(interval):
            try:
                self.check_timeouts()
            except Exception:
                logger.exception("Timeout check failed")

    # -- observation ------------------------------------------------------

    @property
    def session_id(self) -> str | None:
        with self._lock:
            return self._session.id if self._session else None

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            session = dataclasses.replace(self._session) if self._session else None
            tasks = tuple(dataclasses.replace(t, depends_on=list(t.depends_on)) for t in self._tasks.values())
        return SessionSnapshot(session=session, tasks=tasks)

    def session_record(self) -> SessionRecord | None:
        """Summary of the live session once it has finished, else None."""
        with self._lock:
            if self._session is None:
                return None
            return self._record(self._session)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the live session has settled. Returns False on timeout."""
        with self._settled_cond:
            session = self._session
            if session is None:
                return False
            return self._settled_cond.wait_for(lambda: self._settled_id == session.id, timeout)

    # -- maintenance ------------------------------------------------------

    def cleanup_worktrees(self, session_id: str | None = None, base_path: Path | str | None = None) -> list[str]:
        """Remove every task worktree of a session (the live one by default)."""
        if self.worktrees is None:
            return []
        with self._lock:
            session = self._session
            if session_id is None:
                if session is None:
                    return []
                session_id = session.id
            if base_path is None:
                if session is None:
                    raise ValueError("base_path is required when no session is live")
                base_path = session.cwd
        return self.worktrees.cleanup_session(base_path, session_id)

    def close(self) -> None:
        self._closed = True
        self._tick_stop.set()
        if self._ticker is not None:
            self._ticker.join(timeout=self.settings.timeout_check_interval_s + 1)
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> Scheduler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
