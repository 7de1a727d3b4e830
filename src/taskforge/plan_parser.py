"""Recover a task graph from free-form planner output.

The planner is asked for a bare JSON object, but models wrap it in prose,
fence it in markdown, or emit several objects. Extraction tries, in order:

1. the first fenced ```json block,
2. the smallest object holding a ``"tasks": [`` array,
3. the first balanced ``{...}`` span in the text.

The first strategy that yields a valid plan envelope wins; failures fall
through to the next strategy. The recovered tasks are then normalized
(text coercion, dependency defaults) and checked for cycles.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from typing import Any

from jsonschema import Draft202012Validator

from .errors import CircularDependencyError, ParseError
from .models import TaskSpec

logger = logging.getLogger(__name__)

PLAN_ENVELOPE_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "TaskPlan",
    "type": "object",
    "required": ["tasks"],
    "properties": {"tasks": {"type": "array"}},
}

_ENVELOPE_VALIDATOR = Draft202012Validator(PLAN_ENVELOPE_SCHEMA)

_FENCED_JSON_RE = re.compile(r"```json[ \t]*\r?\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_TASKS_KEY_RE = re.compile(r'"tasks"\s*:\s*\[')

_DEPENDENCY_KEYS = ("depends_on", "dependencies", "dependsOn")


def _interpret(candidate: str) -> dict[str, Any] | None:
    """Parse candidate text as a plan envelope, or return None."""
    try:
        obj = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    return _as_envelope(obj)


def _as_envelope(obj: Any) -> dict[str, Any] | None:
    if isinstance(obj, dict) and isinstance(obj.get("task_plan"), dict) and "tasks" not in obj:
        obj = obj["task_plan"]
    if not _ENVELOPE_VALIDATOR.is_valid(obj):
        return None
    return obj


def _from_fenced_block(text: str) -> dict[str, Any] | None:
    match = _FENCED_JSON_RE.search(text)
    if not match:
        return None
    return _interpret(match.group(1).strip())


def _from_tasks_key(text: str) -> dict[str, Any] | None:
    """Find the smallest object that owns a ``"tasks": [`` key.

    For each occurrence of the key, walk outward over the preceding opening
    braces and decode from each one; the nearest brace that decodes to an
    envelope is the smallest enclosing value.
    """
    decoder = json.JSONDecoder()
    for key_match in _TASKS_KEY_RE.finditer(text):
        pos = text.rfind("{", 0, key_match.start())
        while pos != -1:
            try:
                obj, end = decoder.raw_decode(text, pos)
            except json.JSONDecodeError:
                obj, end = None, pos
            if end > key_match.start():
                envelope = _as_envelope(obj)
                if envelope is not None:
                    return envelope
            pos = text.rfind("{", 0, pos)
    return None


def _from_balanced_braces(text: str) -> dict[str, Any] | None:
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_str = False
    esc = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
        else:
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return _interpret(text[start : i + 1])
    return None


_STRATEGIES: tuple[tuple[str, Callable[[str], dict[str, Any] | None]], ...] = (
    ("fenced_block", _from_fenced_block),
    ("tasks_key", _from_tasks_key),
    ("balanced_braces", _from_balanced_braces),
)


def extract_plan_payload(raw_text: str) -> dict[str, Any]:
    """Return the first plan envelope any extraction strategy recovers.

    Raises:
        ParseError: If no strategy recovers an object with a ``tasks`` array.
    """
    text = raw_text or ""
    for name, strategy in _STRATEGIES:
        payload = strategy(text)
        if payload is not None:
            logger.debug("Plan payload recovered via %s strategy", name)
            return payload
    raise ParseError("Failed to parse tasks from response")


def _as_text(value: Any) -> str:
    if value is None or value is False:
        return ""
    return str(value).strip()


def _dependencies(item: dict[str, Any]) -> tuple[str, ...]:
    for key in _DEPENDENCY_KEYS:
        if key in item:
            value = item[key]
            if isinstance(value, list):
                return tuple(s for s in (_as_text(v) for v in value) if s)
            return ()
    return ()


def normalize_tasks(raw_tasks: Sequence[Any]) -> list[TaskSpec]:
    """Coerce raw task entries into TaskSpecs.

    Non-object entries are skipped; a blank id becomes the entry's 1-based
    position. Duplicate ids and an empty result are errors.
    """
    specs: list[TaskSpec] = []
    for index, item in enumerate(raw_tasks, start=1):
        if not isinstance(item, dict):
            logger.warning("Skipping non-object task entry at position %d", index)
            continue
        task_id = _as_text(item.get("id")) or str(index)
        specs.append(
            TaskSpec(
                id=task_id,
                title=_as_text(item.get("title")),
                prompt=_as_text(item.get("prompt")),
                depends_on=_dependencies(item),
            )
        )

    if not specs:
        raise ParseError("No tasks found in response")

    seen: set[str] = set()
    for spec in specs:
        if spec.id in seen:
            raise ParseError(f"Duplicate task id in plan: {spec.id}")
        seen.add(spec.id)
    return specs


def apply_sequential_fallback(specs: list[TaskSpec]) -> list[TaskSpec]:
    """Chain tasks in order when the plan declares no dependencies at all."""
    if len(specs) <= 1 or any(spec.depends_on for spec in specs):
        return specs
    logger.info("Plan declared no dependencies; chaining %d tasks sequentially", len(specs))
    chained = [specs[0]]
    for previous, spec in zip(specs, specs[1:]):
        chained.append(TaskSpec(id=spec.id, title=spec.title, prompt=spec.prompt, depends_on=(previous.id,)))
    return chained


def find_dependency_cycle(specs: Sequence[TaskSpec]) -> list[str] | None:
    """Return one dependency cycle as a closed id path, or None.

    Edges to ids that are not in the plan are ignored; those surface later
    as blocked tasks.
    """
    graph = {spec.id: [d for d in spec.depends_on] for spec in specs}
    visiting: set[str] = set()
    done: set[str] = set()

    # Explicit stack so plan size is not limited by the recursion limit.
    for root in graph:
        if root in done:
            continue
        path = [root]
        visiting.add(root)
        pending = [iter(graph[root])]
        while pending:
            for dep in pending[-1]:
                if dep not in graph or dep in done:
                    continue
                if dep in visiting:
                    return path[path.index(dep) :] + [dep]
                visiting.add(dep)
                path.append(dep)
                pending.append(iter(graph[dep]))
                break
            else:
                node = path.pop()
                visiting.discard(node)
                done.add(node)
                pending.pop()
    return None


def parse_plan(raw_text: str) -> list[TaskSpec]:
    """Parse planner output into a validated, dependency-ordered task list.

    Raises:
        ParseError: If no plan can be recovered, it has zero tasks, ids
            collide, or the dependency graph is cyclic.
    """
    payload = extract_plan_payload(raw_text)
    specs = apply_sequential_fallback(normalize_tasks(payload["tasks"]))
    cycle = find_dependency_cycle(specs)
    if cycle:
        raise CircularDependencyError(cycle)
    return specs
