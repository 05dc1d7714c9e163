from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import time
from typing import Callable, Literal

from seedloop.ci_monitor import CIMonitor
from seedloop.clock import Clock, to_iso, utc_now
from seedloop.config import AppConfig
from seedloop.git_ops import GitWorkspace, WorkspaceCorruptionError
from seedloop.github_gateway import GitHubGateway
from seedloop.memory import MemoryStore
from seedloop.models import Task
from seedloop.observability import log_event
from seedloop.patching import PatchApplier
from seedloop.progress_log import ProgressLog
from seedloop.prompts import build_system_preamble
from seedloop.recovery import RecoveryLog, RecoveryPolicy
from seedloop.scheduler import RepositoryStateCache, TaskScheduler, update_super_task_progress
from seedloop.shell import CommandError
from seedloop.task_store import TaskStore
from seedloop.text_generation import CodexTextGenerator, TextGenerator
from seedloop.tool_commands import ToolExecutor
from seedloop.workflow import WorkflowEngine, WorkflowResult


LOGGER = logging.getLogger("seedloop.runner")

TRANSIENT_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504, 529})
_TRANSIENT_MARKERS = (
    "overloaded",
    "rate limit",
    "timed out",
    "connection reset",
    "temporarily unavailable",
)
_HTTP_STATUS_RE = re.compile(r"\b(?:HTTP|status)[ :=]*(\d{3})\b", re.IGNORECASE)

CycleOutcome = Literal["idle", "decomposed", "executed", "emergency_reset"]


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    task_id: int | None = None
    workflow: WorkflowResult | None = None
    generated_tasks: int = 0
    recovered_tasks: int = 0


def is_transient_error(exc: BaseException) -> bool:
    """Classify upstream failures worth retrying with backoff, following the cause chain."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current)
        if isinstance(current, CommandError):
            text = f"{text}\n{current.stderr}\n{current.stdout}"
        for match in _HTTP_STATUS_RE.finditer(text):
            if int(match.group(1)) in TRANSIENT_HTTP_STATUSES:
                return True
        lowered = text.lower()
        if any(marker in lowered for marker in _TRANSIENT_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def backoff_delay(consecutive_failures: int, *, base_seconds: int, max_seconds: int) -> int:
    exponent = max(consecutive_failures - 1, 0)
    return min(max_seconds, base_seconds * 2**exponent)


class AgentRunner:
    def __init__(
        self,
        config: AppConfig,
        *,
        store: TaskStore,
        scheduler: TaskScheduler,
        recovery: RecoveryPolicy,
        engine: WorkflowEngine,
        workspace: GitWorkspace,
        memory: MemoryStore,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._scheduler = scheduler
        self._recovery = recovery
        self._engine = engine
        self._workspace = workspace
        self._memory = memory
        self._sleep = sleep
        self._clock = clock

    def run(self, *, once: bool) -> None:
        runtime = self._config.runtime
        cycles = 0
        consecutive_failures = 0
        while True:
            cycles += 1
            try:
                self.run_cycle()
            except Exception as exc:  # noqa: BLE001
                consecutive_failures += 1
                transient = is_transient_error(exc)
                delay = (
                    backoff_delay(
                        consecutive_failures,
                        base_seconds=runtime.backoff_base_seconds,
                        max_seconds=runtime.backoff_max_seconds,
                    )
                    if transient
                    else runtime.poll_interval_seconds
                )
                log_event(
                    LOGGER,
                    "cycle_failed",
                    level=logging.ERROR,
                    cycle=cycles,
                    transient=transient,
                    consecutive_failures=consecutive_failures,
                    retry_in_seconds=delay,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                consecutive_failures = 0
                delay = runtime.poll_interval_seconds

            if once or (runtime.max_cycles is not None and cycles >= runtime.max_cycles):
                return
            self._sleep(delay)

    def run_cycle(self) -> CycleResult:
        log_event(LOGGER, "cycle_started")
        try:
            self._workspace.ensure_workspace()
        except WorkspaceCorruptionError as exc:
            log_event(LOGGER, "workspace_corrupted", level=logging.ERROR, error=str(exc))
            self._recovery.perform_emergency_reset()
            return CycleResult(outcome="emergency_reset")

        tasks = self._store.load_tasks()
        super_tasks = self._store.load_super_tasks()

        recovered = self._recovery.recover_stale_tasks(tasks)
        generated = self._refill_backlog(tasks)
        if recovered or generated:
            self._store.save_tasks(tasks)

        task = self._scheduler.select_next(tasks, super_tasks)
        self._store.save_tasks(tasks)
        if task is None:
            log_event(LOGGER, "no_task_selected", task_count=len(tasks))
            return CycleResult(outcome="idle", generated_tasks=generated, recovered_tasks=recovered)

        subtasks = self._scheduler.create_subtasks_for_task(task)
        if subtasks:
            tasks.extend(subtasks)
            self._store.save_tasks(tasks)
            return CycleResult(
                outcome="decomposed",
                task_id=task.id,
                generated_tasks=generated + len(subtasks),
                recovered_tasks=recovered,
            )

        self._start(task)
        self._store.save_tasks(tasks)
        result = self._engine.execute(task)

        now = to_iso(self._clock())
        if result.merged:
            self._scheduler.mark_task_complete(task.id, tasks, super_tasks)
        else:
            update_super_task_progress(super_tasks, tasks, now=now)
        self._store.save_tasks(tasks)
        self._store.save_super_tasks(super_tasks)
        return CycleResult(
            outcome="executed",
            task_id=task.id,
            workflow=result,
            generated_tasks=generated,
            recovered_tasks=recovered,
        )

    def _start(self, task: Task) -> None:
        now = to_iso(self._clock())
        task.status = "in-progress"
        task.metadata.last_attempt = now
        task.updated_at = now

    def _refill_backlog(self, tasks: list[Task]) -> int:
        if not self._scheduler.should_generate_new_tasks(tasks):
            return 0
        open_descriptions = {task.description for task in tasks if task.status not in ("done", "cancelled")}
        added = 0
        research = self._scheduler.plan_research_task(tasks)
        if research is not None:
            tasks.append(research)
            open_descriptions.add(research.description)
            added += 1
        for candidate in self._scheduler.generate_new_tasks(tasks, self._memory.load_context()):
            if candidate.description in open_descriptions:
                continue
            tasks.append(candidate)
            open_descriptions.add(candidate.description)
            added += 1
        return added


def build_agent_runner(config: AppConfig, *, text: TextGenerator | None = None) -> AgentRunner:
    """Wire the production collaborators for one repository."""
    repo = config.repo
    files = config.files
    workspace = GitWorkspace(repo)
    github = GitHubGateway(owner=repo.owner, name=repo.name)
    recovery = RecoveryPolicy(workspace, RecoveryLog(files.recovery_log))
    memory = MemoryStore(files.memory_dir)
    if text is None:
        text = CodexTextGenerator(
            config.codex,
            cwd=repo.workspace_dir,
            system_preamble=build_system_preamble(
                repo_full_name=repo.full_name, objectives=repo.objectives
            ),
        )
    engine = WorkflowEngine(
        repo=repo,
        workflow=config.workflow,
        ci=config.ci,
        workspace=workspace,
        github=github,
        ci_monitor=CIMonitor(github, config.ci),
        text=text,
        patcher=PatchApplier(workspace),
        recovery=recovery,
        tools=ToolExecutor(repo.workspace_dir),
        memory=memory,
        progress=ProgressLog(files.progress),
    )
    scheduler = TaskScheduler(
        config.scheduler,
        RepositoryStateCache(
            files.repository_state,
            workspace_dir=repo.workspace_dir,
            ttl_hours=config.scheduler.repository_state_ttl_hours,
        ),
    )
    return AgentRunner(
        config,
        store=TaskStore(files.tasks, files.super_tasks),
        scheduler=scheduler,
        recovery=recovery,
        engine=engine,
        workspace=workspace,
        memory=memory,
    )
