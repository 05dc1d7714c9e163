from __future__ import annotations

from dataclasses import asdict
import json
import logging
from pathlib import Path
from typing import cast

from seedloop.clock import Clock, to_iso, utc_now
from seedloop.models import (
    EFFORT_ESTIMATES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    TASK_TYPES,
    EffortEstimate,
    Milestone,
    SuperTask,
    SuperTaskMetrics,
    SuperTaskStatus,
    Task,
    TaskMetadata,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from seedloop.observability import log_event


LOGGER = logging.getLogger("seedloop.task_store")

_SUPER_TASK_STATUSES: tuple[SuperTaskStatus, ...] = ("active", "completed", "paused")


class TaskStoreError(RuntimeError):
    pass


class TaskStore:
    """Flat JSON persistence for the task list and the super-task list.

    Every save rewrites the whole file. There is no concurrency check; the runner is the only
    writer and holds the process lock while it runs.
    """

    def __init__(self, tasks_path: Path, super_tasks_path: Path, *, clock: Clock = utc_now) -> None:
        self._tasks_path = tasks_path
        self._super_tasks_path = super_tasks_path
        self._clock = clock

    @property
    def tasks_path(self) -> Path:
        return self._tasks_path

    def load_tasks(self) -> list[Task]:
        if not self._tasks_path.exists():
            return []
        raw = _read_json(self._tasks_path)
        items = _unwrap_list(raw, "tasks", self._tasks_path)
        now = to_iso(self._clock())
        tasks = [task_from_dict(item, now=now) for item in items]
        _check_unique_ids([task.id for task in tasks], self._tasks_path)
        return tasks

    def save_tasks(self, tasks: list[Task]) -> None:
        payload = {"tasks": [task_to_dict(task) for task in tasks]}
        _write_json(self._tasks_path, payload)
        log_event(LOGGER, "tasks_saved", path=str(self._tasks_path), count=len(tasks))

    def load_super_tasks(self) -> list[SuperTask]:
        if not self._super_tasks_path.exists():
            defaults = default_super_tasks(now=to_iso(self._clock()))
            self.save_super_tasks(defaults)
            log_event(LOGGER, "super_tasks_seeded", path=str(self._super_tasks_path))
            return defaults
        raw = _read_json(self._super_tasks_path)
        items = _unwrap_list(raw, "super_tasks", self._super_tasks_path)
        now = to_iso(self._clock())
        return [super_task_from_dict(item, now=now) for item in items]

    def save_super_tasks(self, super_tasks: list[SuperTask]) -> None:
        payload = {"super_tasks": [asdict(item) for item in super_tasks]}
        _write_json(self._super_tasks_path, payload)


def task_to_dict(task: Task) -> dict[str, object]:
    return asdict(task)


def task_from_dict(raw: object, *, now: str) -> Task:
    """Build a task, applying the defaults older task files are missing."""
    data = _as_object_dict(raw, "task")
    task_id = data.get("id")
    if isinstance(task_id, bool) or not isinstance(task_id, int):
        raise TaskStoreError(f"task id must be an integer: {task_id!r}")
    description = data.get("description")
    if not isinstance(description, str) or not description:
        raise TaskStoreError(f"task #{task_id} must have a non-empty description")

    metadata_raw = data.get("metadata")
    metadata_data = _as_object_dict(metadata_raw, "metadata") if metadata_raw is not None else {}

    return Task(
        id=task_id,
        description=description,
        priority=cast(TaskPriority, _choice(data, "priority", TASK_PRIORITIES, "medium")),
        status=cast(TaskStatus, _choice(data, "status", TASK_STATUSES, "pending")),
        type=cast(TaskType, _choice(data, "type", TASK_TYPES, "feature")),
        estimated_effort=cast(
            EffortEstimate, _choice(data, "estimated_effort", EFFORT_ESTIMATES, "medium")
        ),
        parent_id=_optional_int(data, "parent_id"),
        children=_int_list(data, "children"),
        dependencies=_int_list(data, "dependencies"),
        tags=_str_list(data, "tags"),
        created_at=_str_or(data, "created_at", now),
        updated_at=_str_or(data, "updated_at", now),
        completed_at=_optional_str(data, "completed_at"),
        metadata=TaskMetadata(
            failure_count=_optional_int(metadata_data, "failure_count") or 0,
            last_attempt=_optional_str(metadata_data, "last_attempt"),
            blocked_reason=_optional_str(metadata_data, "blocked_reason"),
            context=_str_list(metadata_data, "context"),
            impact=_str_or(metadata_data, "impact", "medium"),
            complexity=_str_or(metadata_data, "complexity", "moderate"),
            generation_source=_optional_str(metadata_data, "generation_source"),
            iteration_count=_optional_int(metadata_data, "iteration_count"),
            ci_failure_count=_optional_int(metadata_data, "ci_failure_count"),
            workflow_decisions=_optional_int(metadata_data, "workflow_decisions"),
        ),
    )


def super_task_from_dict(raw: object, *, now: str) -> SuperTask:
    data = _as_object_dict(raw, "super task")
    super_id = data.get("id")
    if isinstance(super_id, bool) or not isinstance(super_id, int):
        raise TaskStoreError(f"super task id must be an integer: {super_id!r}")
    milestones_raw = data.get("milestones", [])
    if not isinstance(milestones_raw, list):
        raise TaskStoreError(f"super task #{super_id} milestones must be a list")
    metrics_raw = data.get("metrics")
    metrics_data = _as_object_dict(metrics_raw, "metrics") if metrics_raw is not None else {}
    return SuperTask(
        id=super_id,
        title=_str_or(data, "title", f"Super task {super_id}"),
        description=_str_or(data, "description", ""),
        long_term_vision=_str_or(data, "long_term_vision", ""),
        priority=cast(TaskPriority, _choice(data, "priority", TASK_PRIORITIES, "medium")),
        status=cast(SuperTaskStatus, _choice(data, "status", _SUPER_TASK_STATUSES, "active")),
        subtasks=_int_list(data, "subtasks"),
        milestones=[_milestone_from_dict(item) for item in milestones_raw],
        completion_criteria=_str_list(data, "completion_criteria"),
        metrics=SuperTaskMetrics(
            progress_percentage=_optional_int(metrics_data, "progress_percentage") or 0,
            completed_tasks=_optional_int(metrics_data, "completed_tasks") or 0,
            total_tasks=_optional_int(metrics_data, "total_tasks") or 0,
            blocked_tasks=_optional_int(metrics_data, "blocked_tasks") or 0,
        ),
        created_at=_str_or(data, "created_at", now),
        updated_at=_str_or(data, "updated_at", now),
    )


def _milestone_from_dict(raw: object) -> Milestone:
    data = _as_object_dict(raw, "milestone")
    milestone_id = _optional_int(data, "id")
    if milestone_id is None:
        raise TaskStoreError("milestone id must be an integer")
    completed = data.get("completed", False)
    return Milestone(
        id=milestone_id,
        name=_str_or(data, "name", f"Milestone {milestone_id}"),
        description=_str_or(data, "description", ""),
        criteria=_str_list(data, "criteria"),
        completed=completed if isinstance(completed, bool) else False,
        completed_at=_optional_str(data, "completed_at"),
        dependent_tasks=_int_list(data, "dependent_tasks"),
    )


def default_super_tasks(*, now: str) -> list[SuperTask]:
    return [
        SuperTask(
            id=1,
            title="Self-Evolving AI Development Platform",
            description="Build a comprehensive autonomous development platform",
            long_term_vision=(
                "Create an AI system capable of complete autonomous software development "
                "lifecycle management"
            ),
            priority="critical",
            status="active",
            milestones=[
                Milestone(
                    id=1,
                    name="Basic Automation",
                    description="Core task execution and git workflow",
                    criteria=["Can execute tasks", "Can create PRs", "Can merge code"],
                    completed=True,
                    completed_at=now,
                ),
                Milestone(
                    id=2,
                    name="Intelligent Task Management",
                    description="Smart task selection and hierarchy",
                    criteria=[
                        "Hierarchical tasks",
                        "Intelligent selection",
                        "Dependency management",
                    ],
                ),
            ],
            completion_criteria=[
                "Full autonomous development capability",
                "Self-improvement and evolution",
                "Advanced research capabilities",
            ],
            created_at=now,
            updated_at=now,
        )
    ]


def next_task_id(tasks: list[Task]) -> int:
    return max((task.id for task in tasks), default=0) + 1


def find_task(tasks: list[Task], task_id: int) -> Task | None:
    for task in tasks:
        if task.id == task_id:
            return task
    return None


def _read_json(path: Path) -> object:
    try:
        return cast(object, json.loads(path.read_text(encoding="utf-8")))
    except json.JSONDecodeError as exc:
        raise TaskStoreError(f"{path} is not valid JSON: {exc}") from exc


def _write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp_path.replace(path)


def _unwrap_list(raw: object, key: str, path: Path) -> list[object]:
    if isinstance(raw, list):
        return cast(list[object], raw)
    if isinstance(raw, dict):
        items = raw.get(key)
        if isinstance(items, list):
            return cast(list[object], items)
    raise TaskStoreError(f"{path} must contain a list or an object with a {key!r} list")


def _check_unique_ids(ids: list[int], path: Path) -> None:
    seen: set[int] = set()
    for task_id in ids:
        if task_id in seen:
            raise TaskStoreError(f"{path} contains duplicate task id {task_id}")
        seen.add(task_id)


def _as_object_dict(value: object, label: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise TaskStoreError(f"{label} must be a JSON object")
    if not all(isinstance(key, str) for key in value.keys()):
        raise TaskStoreError(f"{label} must have string keys")
    return cast(dict[str, object], value)


def _choice(data: dict[str, object], key: str, allowed: tuple[str, ...], default: str) -> str:
    value = data.get(key)
    if value is None or value == "":
        return default
    if not isinstance(value, str) or value not in allowed:
        raise TaskStoreError(f"{key} must be one of {', '.join(allowed)}; got {value!r}")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise TaskStoreError(f"{key} must be an integer")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TaskStoreError(f"{key} must be a string")
    return value or None


def _str_or(data: dict[str, object], key: str, default: str) -> str:
    value = _optional_str(data, key)
    return value if value is not None else default


def _int_list(data: dict[str, object], key: str) -> list[int]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise TaskStoreError(f"{key} must be a list of integers")
    out: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise TaskStoreError(f"{key} must be a list of integers")
        out.append(item)
    return out


def _str_list(data: dict[str, object], key: str) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise TaskStoreError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise TaskStoreError(f"{key} must be a list of strings")
        out.append(item)
    return out
