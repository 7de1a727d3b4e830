"""JSON-file project history: finished-session summaries keyed by project id.

File layout::

    {"version": 1, "projects": {"<project_id>": [<session record>, ...]}}

Writes go through a temp file, fsync and rename so a crash mid-write
never leaves a truncated history behind.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from .errors import ForgeError
from .models import SessionRecord

logger = logging.getLogger(__name__)

HISTORY_VERSION = 1


class HistoryWriteError(ForgeError):
    """Raised when the history file cannot be written."""

    pass


def atomic_write_text(path: Path | str, content: str, encoding: str = "utf-8") -> None:
    """Write text to a file atomically (temp file + fsync + rename).

    Raises:
        HistoryWriteError: If the write fails; the temp file is removed.
    """
    path = Path(path)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass
        raise HistoryWriteError(f"Failed to write {path}: {e}") from e


class JsonSessionHistory:
    """Persistence collaborator appending records to one JSON file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"version": HISTORY_VERSION, "projects": {}}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise HistoryWriteError(f"History file is not valid JSON: {self.path}: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("projects"), dict):
            raise HistoryWriteError(f"Unexpected history layout in {self.path}")
        return data

    def append(self, project_id: str, record: SessionRecord) -> None:
        with self._lock:
            data = self._read()
            data["projects"].setdefault(project_id, []).append(record.to_json_dict())
            atomic_write_text(self.path, json.dumps(data, indent=2, sort_keys=True) + "\n")
        logger.info("Recorded session %s in project %s history", record.id, project_id)

    def sessions(self, project_id: str) -> list[SessionRecord]:
        with self._lock:
            data = self._read()
        return [SessionRecord.model_validate(item) for item in data["projects"].get(project_id, [])]

    def projects(self) -> list[str]:
        with self._lock:
            data = self._read()
        return sorted(data["projects"])
