from __future__ import annotations

from dataclasses import asdict, dataclass
import json
import logging
from pathlib import Path
import re
from typing import cast

from seedloop.clock import Clock, hours_since, parse_iso, to_iso, utc_now
from seedloop.config import SchedulerConfig
from seedloop.models import (
    EffortEstimate,
    RepositoryState,
    SuperTask,
    Task,
    TaskMetadata,
    TaskPriority,
    TaskSuggestion,
)
from seedloop.observability import log_event
from seedloop.task_store import find_task, next_task_id


LOGGER = logging.getLogger("seedloop.scheduler")

PRIORITY_WEIGHTS: dict[TaskPriority, int] = {"critical": 100, "high": 75, "medium": 50, "low": 25}
MAX_GENERATED_TASKS = 3
MAX_RESEARCH_TOPICS = 3
RESEARCH_INTERVAL_DAYS = 7

_DEFAULT_CAPABILITIES = (
    "task management",
    "git automation",
    "ai code generation",
    "code review",
    "ci/cd integration",
)
_DEFAULT_MISSING_TOOLS = (
    "advanced testing framework",
    "performance monitoring",
    "security scanning",
    "dependency management",
    "documentation generator",
)
_DEFAULT_CONCERNS = (
    "monolithic structure",
    "limited error recovery",
    "basic memory management",
)
_DEFAULT_OPPORTUNITIES = (
    "microservices architecture",
    "advanced ai techniques",
    "real-time monitoring",
    "distributed execution",
)


@dataclass(frozen=True)
class ScoredTask:
    task: Task
    score: int
    rationale: str


def score_task(task: Task, repo_state: RepositoryState) -> ScoredTask:
    score = PRIORITY_WEIGHTS[task.priority]
    reasons: list[str] = []
    if task.type == "tool" and repo_state.missing_tools:
        score += 30
        reasons.append("Tool development prioritized for capability expansion.")
    if task.type == "refactor" and repo_state.technical_debt > 5:
        score += 25
        reasons.append("Refactoring needed due to technical debt.")
    if task.estimated_effort == "small":
        score += 20
        reasons.append("Quick win opportunity.")
    if task.metadata.impact in ("high", "critical"):
        score += 15
        reasons.append("High impact task.")
    failures = task.metadata.failure_count
    score -= 10 * failures
    if failures > 0:
        reasons.append("Previous failures reduce priority.")
    return ScoredTask(task=task, score=score, rationale=" ".join(reasons))


def is_task_blocked(task: Task, tasks_by_id: dict[int, Task]) -> bool:
    for dep_id in task.dependencies:
        dependency = tasks_by_id.get(dep_id)
        if dependency is None or dependency.status != "done":
            return True
    return False


def needs_refactoring(repo_state: RepositoryState) -> bool:
    return (
        repo_state.technical_debt > 5
        or len(repo_state.architectural_concerns) > 3
        or repo_state.codebase_size > 20
    )


class RepositoryStateCache:
    """Repository analysis persisted to JSON and recomputed once it is older than the TTL."""

    def __init__(
        self,
        path: Path,
        *,
        workspace_dir: Path,
        ttl_hours: int = 24,
        clock: Clock = utc_now,
    ) -> None:
        self._path = path
        self._workspace_dir = workspace_dir
        self._ttl_hours = ttl_hours
        self._clock = clock

    def get(self) -> RepositoryState:
        cached = self._load()
        if cached is not None:
            age = hours_since(cached.last_analysis, now=self._clock())
            if age is not None and age <= self._ttl_hours:
                return cached
        return self.analyze()

    def analyze(self) -> RepositoryState:
        src_dir = self._workspace_dir / "src"
        codebase_size = sum(1 for _ in src_dir.rglob("*.py")) if src_dir.is_dir() else 0
        state = RepositoryState(
            codebase_size=codebase_size,
            test_coverage=60,
            technical_debt=3,
            capabilities=_DEFAULT_CAPABILITIES,
            missing_tools=_DEFAULT_MISSING_TOOLS,
            architectural_concerns=_DEFAULT_CONCERNS,
            opportunity_areas=_DEFAULT_OPPORTUNITIES,
            last_analysis=to_iso(self._clock()),
        )
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(asdict(state), indent=2, sort_keys=True) + "\n")
        except OSError as exc:
            log_event(
                LOGGER,
                "repository_state_save_failed",
                level=logging.WARNING,
                path=str(self._path),
                error_type=type(exc).__name__,
            )
        log_event(LOGGER, "repository_analyzed", codebase_size=codebase_size)
        return state

    def _load(self) -> RepositoryState | None:
        if not self._path.exists():
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            data = cast(dict[str, object], raw)
            return RepositoryState(
                codebase_size=int(cast(int, data["codebase_size"])),
                test_coverage=int(cast(int, data["test_coverage"])),
                technical_debt=int(cast(int, data["technical_debt"])),
                capabilities=tuple(cast(list[str], data["capabilities"])),
                missing_tools=tuple(cast(list[str], data["missing_tools"])),
                architectural_concerns=tuple(cast(list[str], data["architectural_concerns"])),
                opportunity_areas=tuple(cast(list[str], data["opportunity_areas"])),
                last_analysis=str(data["last_analysis"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            log_event(
                LOGGER,
                "repository_state_unreadable",
                level=logging.WARNING,
                path=str(self._path),
                error_type=type(exc).__name__,
            )
            return None


class TaskScheduler:
    def __init__(
        self,
        config: SchedulerConfig,
        state_cache: RepositoryStateCache,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._state_cache = state_cache
        self._clock = clock

    def repository_state(self) -> RepositoryState:
        return self._state_cache.get()

    def rank(self, tasks: list[Task]) -> list[ScoredTask]:
        repo_state = self.repository_state()
        by_id = {task.id: task for task in tasks}
        candidates = [
            score_task(task, repo_state)
            for task in tasks
            if task.status == "pending" and not is_task_blocked(task, by_id)
        ]
        if self._config.exclude_negative_scores:
            candidates = [item for item in candidates if item.score >= 0]
        return sorted(candidates, key=lambda item: item.score, reverse=True)

    def select_next(self, tasks: list[Task], super_tasks: list[SuperTask]) -> Task | None:
        pending = [task for task in tasks if task.status == "pending"]
        if not pending:
            return None
        by_id = {task.id: task for task in tasks}
        blocked = [task for task in pending if is_task_blocked(task, by_id)]
        if len(blocked) == len(pending):
            self.handle_blocked_situation(blocked)
            return None

        ranked = self.rank(tasks)
        if not ranked:
            log_event(LOGGER, "no_eligible_tasks", pending=len(pending), blocked=len(blocked))
            return None
        # sorted() is stable, so equal scores keep file order.
        best = ranked[0]
        log_event(
            LOGGER,
            "task_selected",
            task_id=best.task.id,
            score=best.score,
            rationale=best.rationale,
            candidates=len(pending),
            blocked=len(blocked),
            super_tasks=len(super_tasks),
        )
        return best.task

    def handle_blocked_situation(self, blocked: list[Task]) -> None:
        log_event(LOGGER, "all_tasks_blocked", level=logging.WARNING, blocked=len(blocked))
        for task in blocked:
            if task.metadata.failure_count >= 2:
                task.type = "research"
                task.metadata.blocked_reason = "Multiple failures - needs research"
                task.updated_at = to_iso(self._clock())
                log_event(LOGGER, "task_converted_to_research", task_id=task.id)

    def should_generate_new_tasks(self, tasks: list[Task]) -> bool:
        pending = [task for task in tasks if task.status == "pending"]
        repo_state = self.repository_state()
        if not pending:
            return True
        if repo_state.missing_tools and not any(task.type == "tool" for task in pending):
            return True
        if needs_refactoring(repo_state) and not any(task.type == "refactor" for task in pending):
            return True
        return len(pending) < 3

    def generate_task_suggestions(self, repo_state: RepositoryState) -> list[TaskSuggestion]:
        suggestions: list[TaskSuggestion] = []
        if repo_state.test_coverage < 80:
            suggestions.append(
                TaskSuggestion(
                    description="Improve test coverage to reach 80%+ threshold",
                    rationale=f"Current coverage is {repo_state.test_coverage}%, below target",
                    priority="high",
                    type="feature",
                    estimated_effort="medium",
                    impact="high",
                    urgency=8,
                    prerequisites=("testing framework",),
                )
            )
        if repo_state.technical_debt > 5:
            suggestions.append(
                TaskSuggestion(
                    description="Refactor codebase to reduce technical debt",
                    rationale=(
                        f"Technical debt score is {repo_state.technical_debt}, needs reduction"
                    ),
                    priority="medium",
                    type="refactor",
                    estimated_effort="large",
                    impact="medium",
                    urgency=6,
                )
            )
        for tool in repo_state.missing_tools:
            suggestions.append(
                TaskSuggestion(
                    description=f"Implement {tool} capability",
                    rationale="Missing tool that would accelerate development",
                    priority="high",
                    type="tool",
                    estimated_effort="medium",
                    impact="high",
                    urgency=9,
                )
            )
        return sorted(suggestions, key=lambda item: item.urgency, reverse=True)

    def generate_new_tasks(self, tasks: list[Task], memory_text: str | None) -> list[Task]:
        repo_state = self.repository_state()
        now = to_iso(self._clock())
        next_id = next_task_id(tasks)
        created: list[Task] = []
        for suggestion in self.generate_task_suggestions(repo_state)[:MAX_GENERATED_TASKS]:
            created.append(
                Task(
                    id=next_id,
                    description=suggestion.description,
                    priority=suggestion.priority,
                    status="pending",
                    type=suggestion.type,
                    estimated_effort=suggestion.estimated_effort,
                    dependencies=_dependency_ids(suggestion.dependencies, tasks),
                    created_at=now,
                    updated_at=now,
                    metadata=TaskMetadata(
                        impact=suggestion.impact,
                        complexity=_complexity_for_effort(suggestion.estimated_effort),
                        generation_source="intelligent",
                        context=[suggestion.rationale],
                    ),
                )
            )
            next_id += 1

        if memory_text and len(created) < 2:
            insight = extract_insight_from_memory(memory_text)
            if insight is not None:
                created.append(
                    Task(
                        id=next_id,
                        description=insight,
                        priority="medium",
                        created_at=now,
                        updated_at=now,
                        metadata=TaskMetadata(generation_source="memory-insight"),
                    )
                )

        log_event(
            LOGGER,
            "tasks_generated",
            count=len(created),
            types=[task.type for task in created],
        )
        return created

    def create_subtasks_for_task(self, task: Task) -> list[Task]:
        if task.metadata.complexity != "expert" and task.estimated_effort != "epic":
            return []
        subtasks = _decompose(task, now=to_iso(self._clock()))
        task.type = "super"
        task.status = "in-progress"
        task.children = [subtask.id for subtask in subtasks]
        task.updated_at = to_iso(self._clock())
        log_event(LOGGER, "task_decomposed", task_id=task.id, subtasks=len(subtasks))
        return subtasks

    def mark_task_complete(
        self, task_id: int, tasks: list[Task], super_tasks: list[SuperTask]
    ) -> None:
        task = find_task(tasks, task_id)
        if task is None:
            return
        now = to_iso(self._clock())
        task.status = "done"
        task.completed_at = now
        task.updated_at = now
        if task.parent_id is not None:
            self._check_parent_completion(task.parent_id, tasks, now=now)
        update_super_task_progress(super_tasks, tasks, now=now)

    def _check_parent_completion(self, parent_id: int, tasks: list[Task], *, now: str) -> None:
        parent = find_task(tasks, parent_id)
        if parent is None or not parent.children:
            return
        by_id = {task.id: task for task in tasks}
        if all(
            (child := by_id.get(child_id)) is not None and child.status == "done"
            for child_id in parent.children
        ):
            parent.status = "done"
            parent.completed_at = now
            parent.updated_at = now
            log_event(LOGGER, "parent_task_completed", task_id=parent.id)

    def should_conduct_research(self, tasks: list[Task]) -> bool:
        repo_state = self.repository_state()
        if len(repo_state.missing_tools) > 3:
            return True
        if len(repo_state.architectural_concerns) > 2:
            return True
        if sum(1 for task in tasks if task.metadata.failure_count > 1) > 2:
            return True
        last = _last_research_at(tasks)
        if last is None:
            return False
        elapsed = hours_since(last, now=self._clock())
        return elapsed is not None and elapsed > RESEARCH_INTERVAL_DAYS * 24

    def research_topics(self, tasks: list[Task]) -> list[str]:
        repo_state = self.repository_state()
        topics: list[str] = []
        if "advanced testing framework" in repo_state.missing_tools:
            topics.append("Modern testing frameworks for Python applications")
        if repo_state.technical_debt > 5:
            topics.append("Code refactoring strategies for AI-driven development systems")
        if any(task.metadata.failure_count > 0 for task in tasks):
            topics.append("Error recovery patterns in autonomous software development")
        if "monolithic structure" in repo_state.architectural_concerns:
            topics.append("Microservices architecture patterns for AI development platforms")
        topics.append("Latest advances in AI-powered software development")
        topics.append("Self-modifying code systems and safety patterns")
        return topics[:MAX_RESEARCH_TOPICS]

    def plan_research_task(self, tasks: list[Task]) -> Task | None:
        if any(task.type == "research" and task.status == "pending" for task in tasks):
            return None
        if not self.should_conduct_research(tasks):
            return None
        topics = self.research_topics(tasks)
        now = to_iso(self._clock())
        task = Task(
            id=next_task_id(tasks),
            description=f"Research: {'; '.join(topics)}",
            priority="medium",
            type="research",
            estimated_effort="small",
            created_at=now,
            updated_at=now,
            metadata=TaskMetadata(generation_source="research", context=list(topics)),
        )
        log_event(LOGGER, "research_task_planned", task_id=task.id, topics=topics)
        return task


def update_super_task_progress(super_tasks: list[SuperTask], tasks: list[Task], *, now: str) -> None:
    by_id = {task.id: task for task in tasks}
    for super_task in super_tasks:
        if not super_task.subtasks:
            continue
        statuses = [by_id[sid].status for sid in super_task.subtasks if sid in by_id]
        total = len(super_task.subtasks)
        completed = statuses.count("done")
        super_task.metrics.total_tasks = total
        super_task.metrics.completed_tasks = completed
        super_task.metrics.blocked_tasks = statuses.count("blocked")
        super_task.metrics.progress_percentage = round(completed / total * 100)
        super_task.updated_at = now
        if completed == total and super_task.status != "completed":
            super_task.status = "completed"
            log_event(LOGGER, "super_task_completed", super_task_id=super_task.id)


def _decompose(task: Task, *, now: str) -> list[Task]:
    base = task.id * 1000
    if "testing framework" in task.description.lower():
        return [
            Task(
                id=base + 1,
                description="Set up unit testing infrastructure",
                priority="high",
                type="subtask",
                estimated_effort="small",
                parent_id=task.id,
                created_at=now,
                updated_at=now,
                metadata=TaskMetadata(impact="high"),
            ),
            Task(
                id=base + 2,
                description="Implement integration testing framework",
                priority="medium",
                type="subtask",
                estimated_effort="medium",
                parent_id=task.id,
                dependencies=[base + 1],
                created_at=now,
                updated_at=now,
            ),
        ]
    steps: tuple[tuple[str, EffortEstimate], ...] = (
        ("Design the approach for", "small"),
        ("Implement the core of", "medium"),
        ("Test and document", "small"),
    )
    subtasks: list[Task] = []
    for offset, (verb, effort) in enumerate(steps, start=1):
        subtasks.append(
            Task(
                id=base + offset,
                description=f"{verb}: {task.description}",
                priority=task.priority,
                type="subtask",
                estimated_effort=effort,
                parent_id=task.id,
                dependencies=[base + offset - 1] if offset > 1 else [],
                created_at=now,
                updated_at=now,
                metadata=TaskMetadata(impact=task.metadata.impact),
            )
        )
    return subtasks


def _complexity_for_effort(effort: str) -> str:
    if effort == "large":
        return "expert"
    if effort == "medium":
        return "moderate"
    return "simple"


def _dependency_ids(names: tuple[str, ...], tasks: list[Task]) -> list[int]:
    ids: list[int] = []
    for name in names:
        needle = name.lower()
        for task in tasks:
            if needle in task.description.lower() or any(needle in tag.lower() for tag in task.tags):
                ids.append(task.id)
                break
    return ids


def _last_research_at(tasks: list[Task]) -> str | None:
    latest: str | None = None
    latest_at = None
    for task in tasks:
        if task.type != "research" or task.status != "done":
            continue
        completed = parse_iso(task.completed_at)
        if completed is not None and (latest_at is None or completed > latest_at):
            latest, latest_at = task.completed_at, completed
    return latest


_FAILURE_WORDS = (
    "failed", "error", "exception", "timeout", "crash", "bug",
    "issue", "problem", "fix", "broken", "unstable",
)
_SUCCESS_WORDS = (
    "completed", "success", "merged", "implemented", "added",
    "improved", "optimized", "enhanced", "fixed",
)
_KEYWORD_INSIGHTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("security", "vulnerability"), "Implement security enhancements based on identified concerns"),
    (("performance", "optimization"), "Add performance monitoring and optimization features"),
    (("documentation", "readme"), "Improve documentation based on recent development activities"),
    (("refactor", "cleanup"), "Refactor codebase to improve maintainability"),
)


def extract_insight_from_memory(memory: str) -> str | None:
    if len(memory) < 50:
        return None
    lower = memory.lower()
    failures = sum(len(re.findall(word, lower)) for word in _FAILURE_WORDS)
    successes = sum(len(re.findall(word, lower)) for word in _SUCCESS_WORDS)

    if "test" in lower and "coverage" in lower:
        return "Expand test coverage based on recent development patterns"
    for keywords, insight in _KEYWORD_INSIGHTS:
        if any(keyword in lower for keyword in keywords):
            return insight
    if failures > successes * 2:
        return "Improve error handling and recovery mechanisms based on failure patterns"
    if "ci" in lower or "pipeline" in lower:
        return "Enhance CI/CD pipeline based on development workflow"
    if "monitoring" in lower or "logging" in lower:
        return "Add comprehensive monitoring and observability features"

    recent = [line for line in memory.splitlines() if "Task" in line or "PR" in line][-5:]
    joined = " ".join(recent).lower()
    if "database" in joined or "storage" in joined:
        return "Implement data management and storage improvements"
    if "api" in joined or "endpoint" in joined:
        return "Enhance API design and endpoint functionality"
    if "ui" in joined or "interface" in joined:
        return "Improve user interface and experience features"
    return "Analyze codebase patterns and implement systematic improvements"
