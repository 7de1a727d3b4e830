"""taskforge: decompose an idea into a task graph and run it with parallel coding agents."""

from taskforge.classifier import AgentState, AgentStateClassifier, AgentStateEvent, ClassifierState, classify
from taskforge.config import AgentSettings, ForgeSettings, PlannerSettings, load_settings
from taskforge.errors import (
    CircularDependencyError,
    DependencyError,
    ForgeError,
    ParseError,
    PlannerError,
    PlanningCancelled,
    ProcessExitError,
    TaskTimeoutError,
    VcsError,
)
from taskforge.models import (
    AssignedTask,
    AssignmentBatch,
    Session,
    SessionRecord,
    SessionStatus,
    Task,
    TaskRecord,
    TaskSpec,
    TaskStatus,
)
from taskforge.plan_parser import parse_plan
from taskforge.protocol import MarkerScanner, OutputProtocolDetector, TaskSignal
from taskforge.scheduler import Scheduler
from taskforge.worktree import CommandResult, WorktreeManager

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Errors
    "CircularDependencyError",
    "DependencyError",
    "ForgeError",
    "ParseError",
    "PlannerError",
    "PlanningCancelled",
    "ProcessExitError",
    "TaskTimeoutError",
    "VcsError",
    # Config
    "AgentSettings",
    "ForgeSettings",
    "PlannerSettings",
    "load_settings",
    # Models
    "AssignedTask",
    "AssignmentBatch",
    "Session",
    "SessionRecord",
    "SessionStatus",
    "Task",
    "TaskRecord",
    "TaskSpec",
    "TaskStatus",
    # Components
    "AgentState",
    "AgentStateClassifier",
    "AgentStateEvent",
    "ClassifierState",
    "classify",
    "CommandResult",
    "MarkerScanner",
    "OutputProtocolDetector",
    "TaskSignal",
    "WorktreeManager",
    "Scheduler",
    "parse_plan",
]
