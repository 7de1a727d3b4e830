"""Settings for the orchestrator, loadable from JSON or YAML."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_IGNORED_FILES: tuple[str, ...] = (".env", ".env.local", ".env.development", ".env.production")


def _default_forge_home() -> Path:
    override = os.environ.get("TASKFORGE_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".forge"


class _SettingsBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PlannerSettings(_SettingsBase):
    command: list[str] = Field(default_factory=lambda: ["claude"], min_length=1)
    model: str = Field("sonnet", min_length=1)
    timeout_s: float = Field(600.0, gt=0)


class AgentSettings(_SettingsBase):
    command: list[str] = Field(
        default_factory=lambda: ["claude", "-p", "--dangerously-skip-permissions"],
        min_length=1,
    )
    log_dir: Path | None = None


class ForgeSettings(_SettingsBase):
    max_concurrent: int = Field(3, ge=1)
    task_timeout_s: float = Field(15 * 60.0, gt=0)
    timeout_check_interval_s: float = Field(5.0, gt=0)

    marker_buffer_chars: int = Field(4000, ge=64)
    classifier_buffer_chars: int = Field(2000, ge=64)
    classifier_recent_chars: int = Field(500, ge=1)

    isolate_tasks: bool = True
    forge_home: Path = Field(default_factory=_default_forge_home)
    ignored_files: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORED_FILES))

    planner: PlannerSettings = Field(default_factory=PlannerSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)

    @property
    def worktrees_root(self) -> Path:
        return self.forge_home / "worktrees"


def _load_json_or_yaml(path: Path) -> dict[str, Any]:
    content = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(content)
    else:
        data = json.loads(content)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file must contain a mapping: {path}")
    return data


def load_settings(path: Path | str | None = None, **overrides: Any) -> ForgeSettings:
    """Load settings from a file and apply keyword overrides.

    Overrides whose value is None are ignored so CLI flags can be passed
    through unconditionally.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data = _load_json_or_yaml(Path(path))
    for key, value in overrides.items():
        if value is not None:
            data[key] = value
    return ForgeSettings.model_validate(data)
