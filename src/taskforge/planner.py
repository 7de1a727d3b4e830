"""The planning call: one request/response exchange with a text model.

The scheduler only depends on the :class:`Planner` protocol. The bundled
:class:`ClaudeCliPlanner` drives the ``claude`` CLI in print mode, with the
prompt on stdin and JSON output on stdout.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import subprocess
import threading
import time
from collections.abc import Sequence
from typing import Any, Protocol

from .errors import PlannerError, PlanningCancelled

logger = logging.getLogger(__name__)

PLANNER_SYSTEM_PROMPT = (
    "You are a task decomposition assistant. You receive an idea and break it into concrete "
    "tasks for AI coding agents. You MUST respond with ONLY valid JSON, nothing else. "
    "Do not use any tools. Your response must be a single JSON object with a \"tasks\" array."
)

_POLL_INTERVAL_S = 0.2
_KILL_GRACE_S = 5.0


@dataclasses.dataclass(frozen=True)
class PlanRequest:
    idea: str
    working_directory: str
    prompt: str
    system_prompt: str = PLANNER_SYSTEM_PROMPT


@dataclasses.dataclass(frozen=True)
class PlanResponse:
    text: str
    cost_usd: float = 0.0
    input_tokens: int | None = None
    output_tokens: int | None = None


class Planner(Protocol):
    def plan(self, request: PlanRequest, cancel: threading.Event) -> PlanResponse: ...


def build_planning_prompt(idea: str, working_directory: str) -> str:
    return (
        "You are a project orchestrator. Decompose this idea into concrete, independent tasks for "
        "AI coding agents. Each task should be self-contained and include enough context in its "
        "prompt for an agent to execute it. Output ONLY valid JSON:\n"
        '{ "tasks": [{ "id": "1", "title": "...", "prompt": "Detailed instructions for the agent...", '
        '"depends_on": [] }] }\n'
        "\n"
        "Rules:\n"
        "- Keep tasks small and focused (each should take an agent a few minutes)\n"
        "- Use depends_on to enforce execution precedence whenever one task relies on another\n"
        "- Only keep depends_on empty for truly independent tasks\n"
        "- Task prompts should be detailed and self-contained\n"
        "\n"
        f"Idea: {idea}\n"
        f"Working directory: {working_directory}"
    )


def build_plan_request(idea: str, working_directory: str) -> PlanRequest:
    return PlanRequest(
        idea=idea,
        working_directory=working_directory,
        prompt=build_planning_prompt(idea, working_directory),
    )


# -----------------------------
# Pricing
# -----------------------------

# USD per million tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4-0-20250514": (15.0, 75.0),
    "claude-sonnet-4-0-20250514": (3.0, 15.0),
    "claude-haiku-3-5-20241022": (0.25, 1.25),
}
_FAMILY_FALLBACK = (
    ("opus", "claude-opus-4-0-20250514"),
    ("sonnet", "claude-sonnet-4-0-20250514"),
    ("haiku", "claude-haiku-3-5-20241022"),
)
_DEFAULT_PRICING = MODEL_PRICING["claude-sonnet-4-0-20250514"]


def _pricing_for(model: str) -> tuple[float, float]:
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    lowered = model.lower()
    for family, key in _FAMILY_FALLBACK:
        if family in lowered:
            return MODEL_PRICING[key]
    return _DEFAULT_PRICING


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_rate, output_rate = _pricing_for(model)
    return (input_tokens / 1_000_000) * input_rate + (output_tokens / 1_000_000) * output_rate


# -----------------------------
# CLI planner
# -----------------------------


def parse_cli_output(stdout: str, model: str) -> PlanResponse:
    """Turn ``--output-format json`` output into a PlanResponse.

    Output that is not a JSON result object is passed through as raw text
    and left to the plan parser.
    """
    text = stdout.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return PlanResponse(text=text)
    if not isinstance(data, dict) or "result" not in data:
        return PlanResponse(text=text)

    if data.get("is_error"):
        raise PlannerError(f"Planner reported an error: {data.get('result') or data.get('subtype')}")

    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    input_tokens = usage.get("input_tokens")
    output_tokens = usage.get("output_tokens")

    cost = data.get("total_cost_usd")
    if not isinstance(cost, (int, float)):
        if isinstance(input_tokens, int) and isinstance(output_tokens, int):
            cost = calculate_cost(model, input_tokens, output_tokens)
        else:
            cost = 0.0

    return PlanResponse(
        text=str(data.get("result") or ""),
        cost_usd=float(cost),
        input_tokens=input_tokens if isinstance(input_tokens, int) else None,
        output_tokens=output_tokens if isinstance(output_tokens, int) else None,
    )


class ClaudeCliPlanner:
    """Planner backed by a non-interactive ``claude -p`` invocation."""

    def __init__(self, command: Sequence[str] = ("claude",), model: str = "sonnet", timeout_s: float = 600.0) -> None:
        self.command = list(command)
        self.model = model
        self.timeout_s = timeout_s

    def build_command(self, request: PlanRequest) -> list[str]:
        return [
            *self.command,
            "-p",
            "--output-format",
            "json",
            "--max-turns",
            "1",
            "--model",
            self.model,
            "--append-system-prompt",
            request.system_prompt,
        ]

    def plan(self, request: PlanRequest, cancel: threading.Event) -> PlanResponse:
        cmd = self.build_command(request)
        logger.info("Requesting plan via %s (model=%s)", self.command[0], self.model)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=request.working_directory,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise PlannerError(f"Failed to start planner: {exc}") from exc

        deadline = time.monotonic() + self.timeout_s
        pending_input: str | None = request.prompt
        while True:
            try:
                stdout, stderr = proc.communicate(input=pending_input, timeout=_POLL_INTERVAL_S)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                if cancel.is_set():
                    self._terminate(proc)
                    raise PlanningCancelled("Planning call cancelled") from None
                if time.monotonic() > deadline:
                    self._terminate(proc)
                    raise PlannerError(f"Planner timed out after {self.timeout_s:g} seconds") from None

        if cancel.is_set():
            raise PlanningCancelled("Planning call cancelled")
        if proc.returncode != 0:
            detail = (stderr or stdout or "").strip()
            raise PlannerError(f"Planner exited with code {proc.returncode}: {detail[:500]}")

        response = parse_cli_output(stdout or "", self.model)
        logger.debug("Planner response preview: %s", response.text[:500])
        return response

    @staticmethod
    def _terminate(proc: subprocess.Popen[Any]) -> None:
        proc.terminate()
        try:
            proc.communicate(timeout=_KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
