from __future__ import annotations

from datetime import datetime, timezone
import json
from pathlib import Path

import pytest

from seedloop.models import Task, TaskMetadata
from seedloop.task_store import (
    TaskStore,
    TaskStoreError,
    find_task,
    next_task_id,
    task_from_dict,
)


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "tasks.json", tmp_path / "super-tasks.json", clock=lambda: NOW)


def test_load_tasks_missing_file_is_empty(tmp_path: Path) -> None:
    assert _store(tmp_path).load_tasks() == []


def test_save_and_load_tasks_preserves_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = Task(
        id=3,
        description="Add retries",
        priority="high",
        status="in-progress",
        type="fix",
        estimated_effort="small",
        parent_id=1,
        dependencies=[2],
        tags=["net"],
        created_at="2025-01-01T00:00:00.000Z",
        updated_at="2025-01-02T00:00:00.000Z",
        metadata=TaskMetadata(failure_count=2, last_attempt="2025-01-02T00:00:00.000Z"),
    )

    store.save_tasks([task])
    raw = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    loaded = store.load_tasks()

    assert list(raw) == ["tasks"]
    assert raw["tasks"][0]["estimated_effort"] == "small"
    assert loaded == [task]


def test_load_tasks_applies_migration_defaults(tmp_path: Path) -> None:
    (tmp_path / "tasks.json").write_text(
        json.dumps([{"id": 1, "description": "Legacy task"}]), encoding="utf-8"
    )

    [task] = _store(tmp_path).load_tasks()

    assert task.priority == "medium"
    assert task.status == "pending"
    assert task.type == "feature"
    assert task.estimated_effort == "medium"
    assert task.children == []
    assert task.metadata.failure_count == 0
    assert task.metadata.impact == "medium"
    assert task.metadata.complexity == "moderate"
    assert task.created_at == "2025-03-01T12:00:00.000Z"


def test_load_tasks_rejects_duplicate_ids(tmp_path: Path) -> None:
    (tmp_path / "tasks.json").write_text(
        json.dumps({"tasks": [{"id": 1, "description": "a"}, {"id": 1, "description": "b"}]}),
        encoding="utf-8",
    )

    with pytest.raises(TaskStoreError, match="duplicate task id 1"):
        _store(tmp_path).load_tasks()


def test_load_tasks_rejects_invalid_json_and_shapes(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(TaskStoreError, match="not valid JSON"):
        _store(tmp_path).load_tasks()

    path.write_text(json.dumps({"items": []}), encoding="utf-8")
    with pytest.raises(TaskStoreError, match="'tasks' list"):
        _store(tmp_path).load_tasks()


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"id": "1", "description": "x"}, "task id must be an integer"),
        ({"id": 1, "description": ""}, "non-empty description"),
        ({"id": 1, "description": "x", "status": "paused"}, "status must be one of"),
        ({"id": 1, "description": "x", "dependencies": [True]}, "list of integers"),
        ({"id": 1, "description": "x", "metadata": []}, "metadata must be a JSON object"),
    ],
)
def test_task_from_dict_validates(raw: dict[str, object], message: str) -> None:
    with pytest.raises(TaskStoreError, match=message):
        task_from_dict(raw, now="2025-01-01T00:00:00.000Z")


def test_load_super_tasks_seeds_defaults_once(tmp_path: Path) -> None:
    store = _store(tmp_path)

    seeded = store.load_super_tasks()
    assert (tmp_path / "super-tasks.json").exists()
    assert [item.id for item in seeded] == [1]
    assert seeded[0].status == "active"
    assert seeded[0].milestones[0].completed is True

    seeded[0].subtasks.append(7)
    store.save_super_tasks(seeded)
    reloaded = store.load_super_tasks()
    assert reloaded[0].subtasks == [7]
    assert reloaded == seeded


def test_next_task_id_and_find_task() -> None:
    tasks = [Task(id=4, description="a"), Task(id=9, description="b")]

    assert next_task_id([]) == 1
    assert next_task_id(tasks) == 10
    assert find_task(tasks, 9) is tasks[1]
    assert find_task(tasks, 5) is None
