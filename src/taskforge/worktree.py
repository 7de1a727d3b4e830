"""Per-task git worktrees under ``<forge_home>/worktrees/<session>/task-<id>``.

Every git invocation returns a :class:`CommandResult`; nothing here assumes
a command succeeded. Creation degrades to "no isolation" when the base path
is not a repository with history. Removal is best-effort: when
``git worktree remove`` fails the directory is deleted by hand and the
repository's worktree bookkeeping pruned, so a half-removed worktree never
lingers in ``git worktree list``.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from .errors import VcsError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "forge/task-"
TASK_DIR_PREFIX = "task-"


def sanitize_fragment(text: str) -> str:
    """Make text safe for use in a branch name and a directory name."""
    frag = re.sub(r"[^A-Za-z0-9._-]+", "-", str(text).strip())
    frag = frag.strip("-.")
    return frag or "task"


@dataclasses.dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()


class WorktreeManager:
    """Creates and tears down isolated working copies for tasks."""

    def __init__(
        self,
        root: Path | str,
        *,
        ignored_files: Sequence[str] = (),
        git_binary: str = "git",
    ) -> None:
        self.root = Path(root)
        self.ignored_files = tuple(ignored_files)
        self.git_binary = git_binary

    # -- git plumbing -----------------------------------------------------

    def _git(self, args: Sequence[str], cwd: Path | str) -> CommandResult:
        cmd = (self.git_binary, *args)
        try:
            proc = subprocess.run(list(cmd), cwd=str(cwd), text=True, encoding="utf-8", errors="replace", capture_output=True)
        except OSError as exc:
            logger.debug("git %s failed to start in %s: %s", " ".join(args), cwd, exc)
            return CommandResult(args=cmd, returncode=127, stderr=str(exc))
        result = CommandResult(args=cmd, returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")
        logger.debug("git %s (cwd=%s) -> rc=%d", " ".join(args), cwd, result.returncode)
        return result

    def is_repo(self, path: Path | str) -> bool:
        if not Path(path).is_dir():
            return False
        result = self._git(["rev-parse", "--is-inside-work-tree"], path)
        return result.ok and result.stdout.strip() == "true"

    def has_commits(self, path: Path | str) -> bool:
        return self._git(["rev-parse", "--verify", "--quiet", "HEAD"], path).ok

    def repo_root(self, path: Path | str) -> Path | None:
        result = self._git(["rev-parse", "--show-toplevel"], path)
        if not result.ok or not result.stdout.strip():
            return None
        return Path(result.stdout.strip())

    # -- naming -----------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        return self.root / sanitize_fragment(session_id)

    def path_for(self, session_id: str, task_id: str) -> Path:
        return self.session_dir(session_id) / f"{TASK_DIR_PREFIX}{sanitize_fragment(task_id)}"

    @staticmethod
    def branch_for(task_id: str) -> str:
        return f"{BRANCH_PREFIX}{sanitize_fragment(task_id)}"

    # -- lifecycle --------------------------------------------------------

    def create(self, base_path: Path | str, session_id: str, task_id: str) -> Path | None:
        """Create an isolated worktree for a task.

        Returns None when isolation is impossible (not a repository, or no
        commits yet); the caller should run the task in ``base_path``.

        Raises:
            VcsError: If the worktree directory cannot be created, or git
                refuses both a new branch and attaching to an existing
                branch of the same name.
        """
        if not self.is_repo(base_path) or not self.has_commits(base_path):
            logger.warning("Isolation unavailable for task %s: %s is not a git repository with commits", task_id, base_path)
            return None

        git_root = self.repo_root(base_path)
        if git_root is None:
            return None

        worktree_path = self.path_for(session_id, task_id)
        try:
            worktree_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise VcsError(f"Cannot prepare worktree directory for task {task_id}: {exc}", stderr=str(exc)) from exc
        branch = self.branch_for(task_id)

        first = self._git(["worktree", "add", "-b", branch, str(worktree_path)], git_root)
        if not first.ok:
            # Branch probably exists from an earlier run; attach to it instead.
            second = self._git(["worktree", "add", str(worktree_path), branch], git_root)
            if not second.ok:
                raise VcsError(
                    f"Failed to create worktree for task {task_id}: {second.output or first.output}",
                    command=list(second.args),
                    returncode=second.returncode,
                    stderr=second.stderr,
                )

        self.copy_ignored_files(git_root, worktree_path)
        logger.info("Task %s isolated in %s (branch %s)", task_id, worktree_path, branch)
        return worktree_path

    def copy_ignored_files(self, git_root: Path | str, worktree_path: Path | str) -> list[str]:
        """Copy allow-listed untracked config files into a worktree."""
        copied: list[str] = []
        for name in self.ignored_files:
            src = Path(git_root) / name
            if not src.is_file():
                continue
            try:
                shutil.copy2(src, Path(worktree_path) / name)
                copied.append(name)
            except OSError as exc:
                logger.warning("Failed to copy %s into %s: %s", name, worktree_path, exc)
        return copied

    def remove(self, base_path: Path | str, session_id: str, task_id: str) -> None:
        """Remove a task's worktree and branch. Never raises."""
        worktree_path = self.path_for(session_id, task_id)
        git_root = self.repo_root(base_path) if self.is_repo(base_path) else None
        if git_root is None:
            return
        self._remove_worktree(git_root, worktree_path, self.branch_for(task_id))

    def _remove_worktree(self, git_root: Path, worktree_path: Path, branch: str) -> None:
        result = self._git(["worktree", "remove", "--force", str(worktree_path)], git_root)
        if not result.ok:
            logger.warning("git worktree remove failed for %s; falling back to manual cleanup", worktree_path)
            if worktree_path.exists():
                shutil.rmtree(worktree_path, ignore_errors=True)
            self._git(["worktree", "prune"], git_root)

        branch_result = self._git(["branch", "-D", branch], git_root)
        if not branch_result.ok:
            logger.debug("Branch %s not deleted: %s", branch, branch_result.output)

    def cleanup_session(self, base_path: Path | str, session_id: str) -> list[str]:
        """Remove every task worktree of a session, then the session directory.

        Returns the task directory names that were processed.
        """
        session_dir = self.session_dir(session_id)
        if not session_dir.exists():
            return []

        git_root = self.repo_root(base_path) if self.is_repo(base_path) else None
        if git_root is None:
            shutil.rmtree(session_dir, ignore_errors=True)
            return []

        processed: list[str] = []
        for entry in sorted(session_dir.iterdir()):
            if not entry.name.startswith(TASK_DIR_PREFIX):
                continue
            fragment = entry.name[len(TASK_DIR_PREFIX) :]
            self._remove_worktree(git_root, entry, f"{BRANCH_PREFIX}{fragment}")
            processed.append(entry.name)

        shutil.rmtree(session_dir, ignore_errors=True)
        self._git(["worktree", "prune"], git_root)
        logger.info("Cleaned up %d worktree(s) for session %s", len(processed), session_id)
        return processed
