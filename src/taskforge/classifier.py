"""Coarse liveness classification of an agent's terminal output.

This is presentation-only: it never drives task state. The core is the pure
function :func:`classify`, which maps (previous state, new chunk) to
(new state, optional event). :class:`AgentStateClassifier` is a small
stateful wrapper around it for streaming use.
"""

from __future__ import annotations

import dataclasses
import re
from enum import Enum

from .terminal import append_bounded, strip_control_sequences

DEFAULT_BUFFER_CHARS = 2000
DEFAULT_RECENT_CHARS = 500
MIN_STARTUP_MATCHES = 2


class AgentState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    IDLE = "idle"
    EXITED = "exited"


# Banner fragments and product names printed when the agent CLI boots.
STARTUP_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"╭.*╮"),
    re.compile(r"╰.*╯"),
    re.compile(r"claude", re.I),
    re.compile(r"anthropic", re.I),
)

BUSY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]"),
    re.compile(r"Thinking"),
    re.compile(r"Reading"),
    re.compile(r"Writing"),
    re.compile(r"Searching"),
    re.compile(r"Running"),
    re.compile(r"Editing"),
)

# A shell prompt came back: the agent process is gone.
EXIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\$\s*$", re.M),
    re.compile(r"\[Process exited\]"),
)

IDLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^>\s*$", re.M),
    re.compile(r"❯\s*$", re.M),
)

_LIVE_GROUPS: tuple[tuple[AgentState, tuple[re.Pattern[str], ...]], ...] = (
    (AgentState.ACTIVE, BUSY_PATTERNS),
    (AgentState.EXITED, EXIT_PATTERNS),
    (AgentState.IDLE, IDLE_PATTERNS),
)


@dataclasses.dataclass(frozen=True)
class ClassifierState:
    buffer: str = ""
    detected: bool = False
    last_state: AgentState | None = None

    @property
    def current(self) -> AgentState:
        return self.last_state or AgentState.STARTING


@dataclasses.dataclass(frozen=True)
class AgentStateEvent:
    state: AgentState
    previous: AgentState


def count_startup_matches(text: str) -> int:
    return sum(1 for pattern in STARTUP_PATTERNS if pattern.search(text))


def _candidate(recent: str) -> AgentState | None:
    for state, patterns in _LIVE_GROUPS:
        if any(p.search(recent) for p in patterns):
            return state
    return None


def _transition(state: ClassifierState, buffer: str, detected: bool, candidate: AgentState | None) -> tuple[ClassifierState, AgentStateEvent | None]:
    if candidate is None or candidate == state.last_state:
        return dataclasses.replace(state, buffer=buffer, detected=detected), None
    event = AgentStateEvent(state=candidate, previous=state.current)
    return ClassifierState(buffer=buffer, detected=detected, last_state=candidate), event


def classify(
    state: ClassifierState,
    chunk: str,
    *,
    buffer_chars: int = DEFAULT_BUFFER_CHARS,
    recent_chars: int = DEFAULT_RECENT_CHARS,
) -> tuple[ClassifierState, AgentStateEvent | None]:
    """Fold one output chunk into the classifier state.

    Until the agent is detected (two distinct startup signatures somewhere
    in the buffer) nothing is emitted. After that only the last
    ``recent_chars`` of the buffer are inspected, with busy indicators
    taking precedence over a returned shell prompt, and both over the idle
    prompt. An event is returned only when the state actually changes.
    """
    buffer = append_bounded(state.buffer, strip_control_sequences(chunk), buffer_chars)

    if not state.detected:
        if count_startup_matches(buffer) >= MIN_STARTUP_MATCHES:
            return _transition(state, buffer, True, AgentState.ACTIVE)
        return dataclasses.replace(state, buffer=buffer), None

    return _transition(state, buffer, True, _candidate(buffer[-recent_chars:]))


class AgentStateClassifier:
    """Streaming wrapper holding the classifier state for one output stream."""

    def __init__(self, buffer_chars: int = DEFAULT_BUFFER_CHARS, recent_chars: int = DEFAULT_RECENT_CHARS) -> None:
        self.buffer_chars = buffer_chars
        self.recent_chars = recent_chars
        self.state = ClassifierState()

    @property
    def current(self) -> AgentState:
        return self.state.current

    @property
    def detected(self) -> bool:
        return self.state.detected

    def feed(self, chunk: str) -> AgentStateEvent | None:
        self.state, event = classify(
            self.state,
            chunk,
            buffer_chars=self.buffer_chars,
            recent_chars=self.recent_chars,
        )
        return event

    def reset(self) -> None:
        self.state = ClassifierState()
