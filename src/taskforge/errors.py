"""Exception taxonomy for the orchestration core.

Only ``ParseError`` and ``PlannerError`` ever escape to the session level.
The task-level errors are mostly used to render the reason strings stored on
tasks, so the wording lives in one place.
"""

from __future__ import annotations


class ForgeError(Exception):
    """Base exception for all taskforge errors."""

    pass


class ParseError(ForgeError):
    """Raised when no valid task plan can be recovered from planner output."""

    pass


class CircularDependencyError(ParseError):
    """Raised when the parsed dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class PlannerError(ForgeError):
    """Raised when the external planning call fails."""

    pass


class PlanningCancelled(ForgeError):
    """Raised when an in-flight planning call is aborted."""

    pass


class DependencyError(ForgeError):
    """A task can never run because of one of its dependencies."""

    def __init__(self, task_id: str, dependency_id: str, dependency_status: str | None = None) -> None:
        self.task_id = task_id
        self.dependency_id = dependency_id
        self.dependency_status = dependency_status
        if dependency_status is None:
            message = f"Dependency {dependency_id} not found"
        else:
            message = f"Dependency {dependency_id} ended as {dependency_status}"
        super().__init__(message)


class TaskTimeoutError(ForgeError):
    """A running task exceeded its deadline."""

    def __init__(self, task_id: str, timeout_s: float, elapsed_s: float | None = None) -> None:
        self.task_id = task_id
        self.timeout_s = timeout_s
        self.elapsed_s = elapsed_s
        minutes = round(timeout_s / 60)
        if minutes >= 1:
            message = f"Task timed out after {minutes} minutes"
        else:
            message = f"Task timed out after {timeout_s:g} seconds"
        super().__init__(message)


class ProcessExitError(ForgeError):
    """The hosting process ended without emitting a completion marker."""

    def __init__(self, task_id: str, exit_code: int | None) -> None:
        self.task_id = task_id
        self.exit_code = exit_code
        status = "unknown status" if exit_code is None else f"exit code {exit_code}"
        super().__init__(f"Process exited with {status} before reporting TASK_DONE")


class VcsError(ForgeError):
    """A version-control command needed for isolation failed."""

    def __init__(self, message: str, command: list[str] | None = None, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr
