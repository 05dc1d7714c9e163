from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from seedloop.models import RepositoryState, SuperTask, Task, TaskStatus
from seedloop.recovery import RecoveryLog
from seedloop.scheduler import score_task
from seedloop.task_store import TaskStore


_STATUS_FILTERS: tuple[TaskStatus | None, ...] = (
    None,
    "pending",
    "in-progress",
    "blocked",
    "done",
    "cancelled",
)
_DESCRIPTION_MAX_CHARS = 72
_RECOVERY_TAIL_LINES = 8


@dataclass(frozen=True)
class TaskCounts:
    total: int
    pending: int
    in_progress: int
    blocked: int
    done: int


class DashboardApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("s", "cycle_status_filter", "Status Filter"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    #recovery {
        height: 10;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        recovery_log: RecoveryLog,
        repo_state: Callable[[], RepositoryState] | None = None,
        refresh_seconds: int = 5,
    ) -> None:
        super().__init__()
        self._store = store
        self._recovery_log = recovery_log
        self._repo_state = repo_state
        self._refresh_seconds = refresh_seconds
        self._status_filter: TaskStatus | None = None
        self._load_error: str | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Tasks", classes="panel-title")
            yield DataTable(id="tasks-table")
            yield Static("Super Tasks", classes="panel-title")
            yield DataTable(id="super-tasks-table")
            yield Static("Recent Recovery Actions", classes="panel-title")
            yield Static("", id="recovery")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#tasks-table", DataTable).add_columns(
            "ID", "Status", "Priority", "Type", "Failures", "Score", "Description"
        )
        self.query_one("#super-tasks-table", DataTable).add_columns(
            "ID", "Title", "Status", "Progress", "Done", "Total", "Blocked"
        )
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    @property
    def status_filter(self) -> TaskStatus | None:
        return self._status_filter

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_status_filter(self) -> None:
        self._status_filter = next_status_filter(self._status_filter)
        self.refresh_data()

    def refresh_data(self) -> None:
        try:
            tasks = self._store.load_tasks()
            super_tasks = self._store.load_super_tasks()
        except Exception as exc:  # noqa: BLE001
            self._load_error = f"{type(exc).__name__}: {exc}"
            tasks, super_tasks = [], []
        else:
            self._load_error = None

        scores = self._scores(tasks)
        self.query_one("#summary", Static).update(
            summary_text(
                count_tasks(tasks),
                status_filter=self._status_filter,
                error=self._load_error,
            )
        )
        self._refresh_tasks_table(tasks, scores)
        self._refresh_super_tasks_table(super_tasks)
        recovery_lines = self._recovery_log.tail(_RECOVERY_TAIL_LINES)
        self.query_one("#recovery", Static).update(
            "\n".join(recovery_lines) if recovery_lines else "No recovery actions recorded"
        )

    def _scores(self, tasks: list[Task]) -> dict[int, int]:
        if self._repo_state is None:
            return {}
        repo_state = self._repo_state()
        return {task.id: score_task(task, repo_state).score for task in tasks}

    def _refresh_tasks_table(self, tasks: list[Task], scores: dict[int, int]) -> None:
        table = self.query_one("#tasks-table", DataTable)
        table.clear(columns=False)
        for task in visible_tasks(tasks, self._status_filter):
            score = scores.get(task.id)
            table.add_row(
                str(task.id),
                task.status,
                task.priority,
                task.type,
                str(task.metadata.failure_count),
                str(score) if score is not None else "-",
                _truncate(task.description, _DESCRIPTION_MAX_CHARS),
            )

    def _refresh_super_tasks_table(self, super_tasks: list[SuperTask]) -> None:
        table = self.query_one("#super-tasks-table", DataTable)
        table.clear(columns=False)
        for super_task in super_tasks:
            metrics = super_task.metrics
            table.add_row(
                str(super_task.id),
                super_task.title,
                super_task.status,
                f"{metrics.progress_percentage}%",
                str(metrics.completed_tasks),
                str(metrics.total_tasks),
                str(metrics.blocked_tasks),
            )


def run_dashboard(
    *,
    store: TaskStore,
    recovery_log: RecoveryLog,
    repo_state: Callable[[], RepositoryState] | None,
    refresh_seconds: int,
) -> None:
    app = DashboardApp(
        store=store,
        recovery_log=recovery_log,
        repo_state=repo_state,
        refresh_seconds=refresh_seconds,
    )
    app.run()


def count_tasks(tasks: list[Task]) -> TaskCounts:
    return TaskCounts(
        total=len(tasks),
        pending=sum(1 for task in tasks if task.status == "pending"),
        in_progress=sum(1 for task in tasks if task.status == "in-progress"),
        blocked=sum(1 for task in tasks if task.status == "blocked"),
        done=sum(1 for task in tasks if task.status == "done"),
    )


def visible_tasks(tasks: list[Task], status_filter: TaskStatus | None) -> list[Task]:
    """Open work first, then by id."""
    selected = [task for task in tasks if status_filter is None or task.status == status_filter]
    return sorted(selected, key=lambda task: (task.status in ("done", "cancelled"), task.id))


def next_status_filter(current: TaskStatus | None) -> TaskStatus | None:
    try:
        idx = _STATUS_FILTERS.index(current)
    except ValueError:
        return None
    return _STATUS_FILTERS[(idx + 1) % len(_STATUS_FILTERS)]


def summary_text(counts: TaskCounts, *, status_filter: TaskStatus | None, error: str | None) -> str:
    parts = [
        f"filter={status_filter or 'all'}",
        f"total={counts.total}",
        f"pending={counts.pending}",
        f"in-progress={counts.in_progress}",
        f"blocked={counts.blocked}",
        f"done={counts.done}",
    ]
    if error is not None:
        parts.append(f"error={error}")
    return " | ".join(parts) + "\nKeys: r refresh | s status filter | q quit"


def _truncate(text: str, limit: int) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= limit:
        return flattened
    return flattened[: limit - 3] + "..."
