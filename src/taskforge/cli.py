"""taskforge CLI: decompose an idea and run it with parallel coding agents.

Commands:
    run: Plan an idea, execute its tasks with the configured agent, and wait.
    parse: Run the plan parser on a saved planner response.
    cleanup: Remove the task worktrees left behind by a session.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from . import __version__
from .config import ForgeSettings, load_settings
from .errors import ParseError
from .history import JsonSessionHistory
from .models import SessionStatus, TaskStatus
from .plan_parser import parse_plan
from .planner import ClaudeCliPlanner
from .runner import SubprocessExecutionLayer
from .scheduler import Scheduler
from .worktree import WorktreeManager

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument("--config", type=Path, default=None, help="Settings file (JSON/YAML)")
    shared.add_argument("--cwd", type=Path, default=Path.cwd(), help="Base working directory (default: current)")
    shared.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (can be repeated)")

    parser = argparse.ArgumentParser(
        prog="taskforge",
        description="Decompose an idea into tasks and run them with parallel coding agents",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Plan and execute an idea", parents=[shared])
    run.add_argument("idea", help="Natural-language description of the work")
    run.add_argument("--max-concurrent", type=int, default=None, help="Concurrent task limit (default: 3)")
    run.add_argument("--task-timeout", type=float, default=None, help="Per-task timeout in seconds (default: 900)")
    run.add_argument("--no-isolate", action="store_true", help="Run every task in the base directory")
    run.add_argument("--project-id", default=None, help="Record the finished session under this project")
    run.add_argument("--history", type=Path, default=None, help="History file (default: <forge_home>/history.json)")
    run.add_argument("--json", action="store_true", help="Print the session summary as JSON")

    parse = subparsers.add_parser("parse", help="Parse a saved planner response", parents=[shared])
    parse.add_argument("file", type=Path, help="File holding the raw planner output")
    parse.add_argument("--json", action="store_true", help="Print the task graph as JSON")

    cleanup = subparsers.add_parser("cleanup", help="Remove a session's task worktrees", parents=[shared])
    cleanup.add_argument("session_id", help="Session id printed by `taskforge run`")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the taskforge CLI.

    Returns:
        Exit code: 0 on success, 1 on failure, 130 when interrupted.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    try:
        if args.command == "run":
            return _cmd_run(args)
        elif args.command == "parse":
            return _cmd_parse(args)
        elif args.command == "cleanup":
            return _cmd_cleanup(args)
        else:
            parser.error(f"Unknown command: {args.command}")
            return 2
    except ValidationError as e:
        logger.error("Invalid settings: %s", e)
        return 1
    except Exception as e:
        logger.error("Error: %s", e)
        if args.verbose >= 2:
            import traceback

            traceback.print_exc()
        return 1


def _settings_from_args(args: argparse.Namespace) -> ForgeSettings:
    overrides: dict[str, Any] = {}
    if getattr(args, "max_concurrent", None) is not None:
        overrides["max_concurrent"] = args.max_concurrent
    if getattr(args, "task_timeout", None) is not None:
        overrides["task_timeout_s"] = args.task_timeout
    if getattr(args, "no_isolate", False):
        overrides["isolate_tasks"] = False
    return load_settings(args.config, **overrides)


def _cmd_run(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    cwd = args.cwd.resolve()

    history = None
    if args.project_id:
        history = JsonSessionHistory(args.history or settings.forge_home / "history.json")

    worktrees = None
    if settings.isolate_tasks:
        worktrees = WorktreeManager(settings.worktrees_root, ignored_files=settings.ignored_files)

    planner = ClaudeCliPlanner(
        settings.planner.command,
        model=settings.planner.model,
        timeout_s=settings.planner.timeout_s,
    )
    runner = SubprocessExecutionLayer(settings.agent.command, settings=settings, log_dir=settings.agent.log_dir)

    with Scheduler(planner, runner, history=history, worktrees=worktrees, settings=settings) as scheduler:
        runner.bind(scheduler)
        future = scheduler.submit(args.idea, cwd, project_id=args.project_id)
        try:
            future.result()
            scheduler.wait()
        except KeyboardInterrupt:
            print("Interrupted; cancelling session", file=sys.stderr)
            scheduler.cancel()
            runner.terminate_all()
            return EXIT_INTERRUPTED
        runner.join(timeout=5)

        snapshot = scheduler.snapshot()
        record = scheduler.session_record()

    session = snapshot.session
    if session is None:
        return 1

    if args.json:
        payload: dict[str, Any] = record.to_json_dict() if record is not None else {"id": session.id, "status": session.status.value}
        if session.error:
            payload["error"] = session.error
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(f"Session {session.id}: {session.status.value}")
        for task in snapshot.tasks:
            line = f"  [{task.status.value:>9}] {task.id}: {task.title}"
            if task.error and task.status != TaskStatus.COMPLETED:
                line += f" ({task.error})"
            print(line)
        if session.error:
            print(f"Error: {session.error}")
        print(f"Planning cost: ${session.total_cost:.4f}")

    return 0 if session.status == SessionStatus.COMPLETED else 1


def _cmd_parse(args: argparse.Namespace) -> int:
    text = args.file.read_text(encoding="utf-8")
    try:
        specs = parse_plan(text)
    except ParseError as e:
        print(f"Parse failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        payload = [
            {"id": s.id, "title": s.title, "prompt": s.prompt, "depends_on": list(s.depends_on)}
            for s in specs
        ]
        print(json.dumps({"tasks": payload}, indent=2))
    else:
        for spec in specs:
            deps = ", ".join(spec.depends_on) or "-"
            print(f"{spec.id}: {spec.title} (depends on: {deps})")
    return 0


def _cmd_cleanup(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    manager = WorktreeManager(settings.worktrees_root, ignored_files=settings.ignored_files)
    removed = manager.cleanup_session(args.cwd.resolve(), args.session_id)
    print(f"Removed {len(removed)} worktree(s) for session {args.session_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
