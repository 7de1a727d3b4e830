# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for the taskforge test suite.

This module provides:
- Deterministic test environment setup
- A temporary git repository with one commit
- Inline executor, fake clock and recording collaborators for the Scheduler
"""
from __future__ import annotations

import json
import os
import shutil
import subprocess
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Any

import pytest

from taskforge.config import ForgeSettings
from taskforge.errors import PlannerError, PlanningCancelled
from taskforge.models import AssignmentBatch, Session, SessionRecord, Task
from taskforge.planner import PlanRequest, PlanResponse
from taskforge.scheduler import Scheduler


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
        "GIT_TERMINAL_PROMPT": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Fixtures: git
# ---------------------------------------------------------------------------


def run_git(args: list[str], cwd: Path) -> tuple[int, str, str]:
    """Run a git command and return (rc, stdout, stderr)."""
    result = subprocess.run(["git"] + args, cwd=cwd, capture_output=True, text=True)
    return result.returncode, result.stdout, result.stderr


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository with an initial commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(["init"], repo)
    run_git(["config", "user.email", "test@test.com"], repo)
    run_git(["config", "user.name", "Test"], repo)
    run_git(["config", "commit.gpgsign", "false"], repo)

    (repo / "README.md").write_text("# Test Repo\n")
    run_git(["add", "README.md"], repo)
    rc, _, err = run_git(["commit", "-m", "Initial commit"], repo)
    assert rc == 0, err
    return repo


@pytest.fixture
def worktrees_root(tmp_path: Path) -> Path:
    return tmp_path / "forge" / "worktrees"


# ---------------------------------------------------------------------------
# Scheduler test doubles
# ---------------------------------------------------------------------------


class ImmediateExecutor(Executor):
    """Executor that runs work inline so dispatch order is deterministic."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future[Any]:
        future: Future[Any] = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def plan_text(*tasks: dict[str, Any], prose: bool = False) -> str:
    """Render a planner response holding the given task dicts."""
    body = json.dumps({"tasks": list(tasks)}, indent=2)
    if prose:
        return f"Here is the plan you asked for:\n\n```json\n{body}\n```\n\nLet me know if you need changes."
    return body


class FakePlanner:
    """Planner returning canned responses; optionally blocks until cancelled."""

    def __init__(self, text: str = "", cost: float = 0.0, error: Exception | None = None, block: bool = False) -> None:
        self.text = text
        self.cost = cost
        self.error = error
        self.block = block
        self.requests: list[PlanRequest] = []
        self.entered = threading.Event()

    def plan(self, request: PlanRequest, cancel: threading.Event) -> PlanResponse:
        self.requests.append(request)
        self.entered.set()
        if self.block:
            if cancel.wait(timeout=5):
                raise PlanningCancelled("Planning call cancelled")
            raise PlannerError("planner was never cancelled")
        if self.error is not None:
            raise self.error
        return PlanResponse(text=self.text, cost_usd=self.cost)


class RecordingSink:
    def __init__(self) -> None:
        self.batches: list[AssignmentBatch] = []

    def assign(self, batch: AssignmentBatch) -> None:
        self.batches.append(batch)

    @property
    def assigned_ids(self) -> list[str]:
        return [t.id for b in self.batches for t in b.tasks]


class RecordingNotifier:
    def __init__(self) -> None:
        self.sessions: list[Session] = []
        self.task_updates: list[tuple[str, list[Task]]] = []
        self.completed: list[Session] = []
        self.failed: list[tuple[Session, str]] = []

    def session_updated(self, session: Session) -> None:
        self.sessions.append(session)

    def tasks_updated(self, session_id: str, tasks: Any) -> None:
        self.task_updates.append((session_id, list(tasks)))

    def session_completed(self, session: Session) -> None:
        self.completed.append(session)

    def session_failed(self, session: Session, message: str) -> None:
        self.failed.append((session, message))


class RecordingHistory:
    def __init__(self) -> None:
        self.records: list[tuple[str, SessionRecord]] = []

    def append(self, project_id: str, record: SessionRecord) -> None:
        self.records.append((project_id, record))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def immediate_executor() -> ImmediateExecutor:
    return ImmediateExecutor()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def history() -> RecordingHistory:
    return RecordingHistory()


@pytest.fixture
def make_scheduler(
    tmp_path: Path,
    fake_clock: FakeClock,
    immediate_executor: ImmediateExecutor,
    sink: RecordingSink,
    notifier: RecordingNotifier,
    history: RecordingHistory,
) -> Iterator[Callable[..., Scheduler]]:
    """Factory for a Scheduler wired to the recording doubles."""
    created: list[Scheduler] = []

    def factory(planner: Any, **kwargs: Any) -> Scheduler:
        settings_overrides = kwargs.pop("settings", {})
        settings = ForgeSettings(forge_home=tmp_path / "forge", **settings_overrides)
        kwargs.setdefault("sink", sink)
        scheduler = Scheduler(
            planner,
            kwargs.pop("sink"),
            history=kwargs.pop("history", history),
            notifier=kwargs.pop("notifier", notifier),
            settings=settings,
            clock=fake_clock,
            executor=kwargs.pop("executor", immediate_executor),
            auto_tick=False,
            **kwargs,
        )
        created.append(scheduler)
        return scheduler

    yield factory

    for scheduler in created:
        scheduler.close()


@pytest.fixture
def make_plan() -> Callable[..., str]:
    return plan_text


@pytest.fixture
def make_planner() -> type[FakePlanner]:
    return FakePlanner
