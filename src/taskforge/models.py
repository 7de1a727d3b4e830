"""Session and task state for the orchestration core.

Runtime state is plain dataclasses mutated only by the scheduler. The
summary handed to the persistence collaborator is a pydantic model so it
serializes with the camelCase keys external storage expects.
"""

from __future__ import annotations

import dataclasses
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    IDLE = "idle"
    DECOMPOSING = "decomposing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


FINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED})
ACTIVE_TASK_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.RUNNING})
FINAL_SESSION_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


@dataclasses.dataclass(frozen=True)
class TaskSpec:
    """A normalized task as recovered from planner output."""

    id: str
    title: str
    prompt: str
    depends_on: tuple[str, ...] = ()


@dataclasses.dataclass
class Task:
    id: str
    title: str
    prompt: str
    depends_on: list[str] = dataclasses.field(default_factory=list)

    # runtime
    status: TaskStatus = TaskStatus.PENDING
    error: str | None = None
    handle: str | None = None
    started_at: float | None = None  # monotonic clock, only while running
    working_directory: str | None = None

    @classmethod
    def from_spec(cls, spec: TaskSpec) -> Task:
        return cls(id=spec.id, title=spec.title, prompt=spec.prompt, depends_on=list(spec.depends_on))

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_TASK_STATUSES


@dataclasses.dataclass
class Session:
    id: str
    idea: str
    cwd: str
    status: SessionStatus = SessionStatus.IDLE
    error: str | None = None
    total_cost: float = 0.0
    project_id: str | None = None
    started_at: str | None = None  # ISO-8601 UTC
    finished_at: str | None = None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_SESSION_STATUSES

    def add_cost(self, amount: float | None) -> None:
        if amount:
            self.total_cost += float(amount)


@dataclasses.dataclass(frozen=True)
class AssignedTask:
    id: str
    title: str
    prompt: str
    working_directory: str


@dataclasses.dataclass(frozen=True)
class AssignmentBatch:
    """One admission batch handed to the execution layer."""

    session_id: str
    tasks: tuple[AssignedTask, ...]
    working_directory: str

    def to_dict(self) -> dict[str, object]:
        return {
            "sessionId": self.session_id,
            "tasks": [
                {"id": t.id, "title": t.title, "prompt": t.prompt, "workingDirectory": t.working_directory}
                for t in self.tasks
            ],
            "workingDirectory": self.working_directory,
        }


class _RecordBase(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TaskRecord(_RecordBase):
    id: str
    title: str
    prompt: str
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    status: Literal["completed", "failed", "blocked"]


class SessionRecord(_RecordBase):
    """Summary of a finished session, as appended to project history."""

    id: str
    idea: str
    status: Literal["completed", "failed"]
    cost: float = 0.0
    started_at: str = Field(..., alias="startedAt")
    finished_at: str = Field(..., alias="finishedAt")
    tasks: list[TaskRecord] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)
