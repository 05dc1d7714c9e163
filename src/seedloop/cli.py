from __future__ import annotations

import argparse
from dataclasses import asdict
import json
from pathlib import Path
from typing import cast

from seedloop.clock import to_iso, utc_now
from seedloop.config import AppConfig, load_config
from seedloop.dashboard_tui import run_dashboard
from seedloop.git_ops import GitWorkspace
from seedloop.models import (
    EFFORT_ESTIMATES,
    TASK_PRIORITIES,
    TASK_TYPES,
    EffortEstimate,
    Task,
    TaskMetadata,
    TaskPriority,
    TaskType,
)
from seedloop.observability import configure_logging
from seedloop.process_lock import runner_process_lock
from seedloop.recovery import RecoveryLog, RecoveryPolicy
from seedloop.runner import build_agent_runner
from seedloop.scheduler import RepositoryStateCache
from seedloop.task_store import TaskStore, next_task_id


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="seedloop")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", help="Create state directories, clone the workspace, and seed task files"
    )
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser("run", help="Select and execute tasks in a loop")
    _add_common_arguments(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")

    tasks_parser = subparsers.add_parser("tasks", help="Inspect and edit the task list")
    _add_common_arguments(tasks_parser)
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command", required=True)

    list_parser = tasks_subparsers.add_parser("list", help="List tasks")
    list_parser.add_argument("--json", action="store_true", help="Print tasks as JSON")
    list_parser.add_argument("--status", type=str, help="Only show tasks with this status")

    add_parser = tasks_subparsers.add_parser("add", help="Append a pending task")
    add_parser.add_argument("description", type=str)
    add_parser.add_argument("--priority", choices=TASK_PRIORITIES, default="medium")
    add_parser.add_argument("--type", dest="task_type", choices=TASK_TYPES, default="feature")
    add_parser.add_argument("--effort", choices=EFFORT_ESTIMATES, default="medium")
    add_parser.add_argument(
        "--depends-on",
        type=int,
        action="append",
        help="Task id that must be done first (repeatable)",
    )

    tasks_subparsers.add_parser(
        "recover",
        help="Reset stale in-progress tasks and demote repeatedly failing ones",
    )

    dashboard_parser = subparsers.add_parser("dashboard", help="Open the terminal dashboard")
    _add_common_arguments(dashboard_parser)
    dashboard_parser.add_argument(
        "--refresh-seconds",
        type=int,
        default=5,
        help="Seconds between automatic refreshes",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("seedloop.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low or high, default high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(getattr(args, "verbose", None), state_dir=config.runtime.base_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "tasks":
        _cmd_tasks(config, args)
        return
    if args.command == "dashboard":
        _cmd_dashboard(config, refresh_seconds=int(args.refresh_seconds))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    config.files.memory_dir.mkdir(parents=True, exist_ok=True)
    workspace = GitWorkspace(config.repo)
    workspace.ensure_workspace()

    store = _task_store(config)
    if not config.files.tasks.exists():
        store.save_tasks([])
    super_tasks = store.load_super_tasks()

    print(f"Initialized seedloop base dir: {config.runtime.base_dir}")
    print(f"Repo: {config.repo.full_name}")
    print(f"Workspace: {workspace.path}")
    print(f"Tasks: {config.files.tasks}")
    print(f"Super tasks: {config.files.super_tasks} ({len(super_tasks)} defined)")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    with runner_process_lock(state_dir=config.runtime.base_dir, command="run"):
        build_agent_runner(config).run(once=once)


def _cmd_tasks(config: AppConfig, args: argparse.Namespace) -> None:
    store = _task_store(config)
    if args.tasks_command == "list":
        _cmd_tasks_list(store, as_json=bool(args.json), status=args.status)
        return
    if args.tasks_command == "add":
        _cmd_tasks_add(
            store,
            description=str(args.description),
            priority=str(args.priority),
            task_type=str(args.task_type),
            effort=str(args.effort),
            dependencies=tuple(args.depends_on or ()),
        )
        return
    if args.tasks_command == "recover":
        _cmd_tasks_recover(config, store)
        return
    raise RuntimeError(f"Unknown tasks command: {args.tasks_command}")


def _cmd_tasks_list(store: TaskStore, *, as_json: bool, status: str | None) -> None:
    tasks = [task for task in store.load_tasks() if status is None or task.status == status]
    if as_json:
        print(json.dumps([asdict(task) for task in tasks], indent=2, sort_keys=True))
        return
    if not tasks:
        print("No tasks.")
        return
    print("id\tstatus\tpriority\ttype\tfailures\tdescription")
    for task in tasks:
        print(
            f"{task.id}\t{task.status}\t{task.priority}\t{task.type}\t"
            f"{task.metadata.failure_count}\t{task.description}"
        )


def _cmd_tasks_add(
    store: TaskStore,
    *,
    description: str,
    priority: str,
    task_type: str,
    effort: str,
    dependencies: tuple[int, ...],
) -> None:
    description = description.strip()
    if not description:
        raise ValueError("Task description must be non-empty")
    tasks = store.load_tasks()
    known_ids = {task.id for task in tasks}
    unknown = [dep for dep in dependencies if dep not in known_ids]
    if unknown:
        raise ValueError(f"Unknown dependency task ids: {', '.join(str(dep) for dep in unknown)}")

    now = to_iso(utc_now())
    task = Task(
        id=next_task_id(tasks),
        description=description,
        priority=cast(TaskPriority, priority),
        type=cast(TaskType, task_type),
        estimated_effort=cast(EffortEstimate, effort),
        dependencies=list(dependencies),
        created_at=now,
        updated_at=now,
        metadata=TaskMetadata(generation_source="manual"),
    )
    tasks.append(task)
    store.save_tasks(tasks)
    print(f"Added task #{task.id}: {task.description}")


def _cmd_tasks_recover(config: AppConfig, store: TaskStore) -> None:
    tasks = store.load_tasks()
    recovery = RecoveryPolicy(GitWorkspace(config.repo), RecoveryLog(config.files.recovery_log))
    recovered = recovery.recover_stale_tasks(tasks)
    if recovered:
        store.save_tasks(tasks)
    print(f"Recovered {recovered} task(s).")


def _cmd_dashboard(config: AppConfig, *, refresh_seconds: int) -> None:
    if refresh_seconds < 1:
        raise ValueError("--refresh-seconds must be >= 1")
    state_cache = RepositoryStateCache(
        config.files.repository_state,
        workspace_dir=config.repo.workspace_dir,
        ttl_hours=config.scheduler.repository_state_ttl_hours,
    )
    run_dashboard(
        store=_task_store(config),
        recovery_log=RecoveryLog(config.files.recovery_log),
        repo_state=state_cache.get,
        refresh_seconds=refresh_seconds,
    )


def _task_store(config: AppConfig) -> TaskStore:
    return TaskStore(config.files.tasks, config.files.super_tasks)
