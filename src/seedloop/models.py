from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


TaskPriority = Literal["critical", "high", "medium", "low"]
TaskStatus = Literal["pending", "in-progress", "blocked", "done", "cancelled"]
TaskType = Literal["feature", "refactor", "fix", "research", "tool", "super", "subtask", "standard"]
EffortEstimate = Literal["small", "medium", "large", "epic"]
SuperTaskStatus = Literal["active", "completed", "paused"]
CIState = Literal["pending", "success", "failure", "error"]
WorkflowDecisionName = Literal["continue", "complete", "fix_ci", "restart", "block"]
ModelTier = Literal["important", "routine"]
MessageRole = Literal["user", "assistant"]

TASK_PRIORITIES: tuple[TaskPriority, ...] = ("critical", "high", "medium", "low")
TASK_STATUSES: tuple[TaskStatus, ...] = ("pending", "in-progress", "blocked", "done", "cancelled")
TASK_TYPES: tuple[TaskType, ...] = (
    "feature",
    "refactor",
    "fix",
    "research",
    "tool",
    "super",
    "subtask",
    "standard",
)
EFFORT_ESTIMATES: tuple[EffortEstimate, ...] = ("small", "medium", "large", "epic")


@dataclass
class TaskMetadata:
    failure_count: int = 0
    last_attempt: str | None = None
    blocked_reason: str | None = None
    context: list[str] = field(default_factory=list)
    impact: str = "medium"
    complexity: str = "moderate"
    generation_source: str | None = None
    iteration_count: int | None = None
    ci_failure_count: int | None = None
    workflow_decisions: int | None = None


@dataclass
class Task:
    id: int
    description: str
    priority: TaskPriority = "medium"
    status: TaskStatus = "pending"
    type: TaskType = "feature"
    estimated_effort: EffortEstimate = "medium"
    parent_id: int | None = None
    children: list[int] = field(default_factory=list)
    dependencies: list[int] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None
    metadata: TaskMetadata = field(default_factory=TaskMetadata)


@dataclass
class Milestone:
    id: int
    name: str
    description: str
    criteria: list[str] = field(default_factory=list)
    completed: bool = False
    completed_at: str | None = None
    dependent_tasks: list[int] = field(default_factory=list)


@dataclass
class SuperTaskMetrics:
    progress_percentage: int = 0
    completed_tasks: int = 0
    total_tasks: int = 0
    blocked_tasks: int = 0


@dataclass
class SuperTask:
    id: int
    title: str
    description: str
    long_term_vision: str = ""
    priority: TaskPriority = "medium"
    status: SuperTaskStatus = "active"
    subtasks: list[int] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    completion_criteria: list[str] = field(default_factory=list)
    metrics: SuperTaskMetrics = field(default_factory=SuperTaskMetrics)
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class RepositoryState:
    codebase_size: int
    test_coverage: int
    technical_debt: int
    capabilities: tuple[str, ...]
    missing_tools: tuple[str, ...]
    architectural_concerns: tuple[str, ...]
    opportunity_areas: tuple[str, ...]
    last_analysis: str


@dataclass(frozen=True)
class TaskSuggestion:
    description: str
    rationale: str
    priority: TaskPriority
    type: TaskType
    estimated_effort: EffortEstimate
    impact: str
    urgency: int
    dependencies: tuple[str, ...] = ()
    prerequisites: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChatMessage:
    role: MessageRole
    content: str


@dataclass(frozen=True)
class DecisionRecord:
    iteration: int
    decision: WorkflowDecisionName
    reasoning: str
    timestamp: str
    context_snapshot: str | None = None


@dataclass(frozen=True)
class CIStatus:
    state: CIState
    conclusion: str | None = None
    description: str | None = None
    target_url: str | None = None


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    state: str
    head_ref: str
    head_sha: str
    base_ref: str
    merged: bool
    mergeable: bool | None
    mergeable_state: str
    html_url: str = ""


@dataclass(frozen=True)
class WorkflowRunSnapshot:
    run_id: int
    name: str
    event: str
    status: str
    conclusion: str | None
    html_url: str
    head_sha: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class WorkflowJobSnapshot:
    job_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
    started_at: str = ""
    completed_at: str = ""


@dataclass(frozen=True)
class CheckRunSnapshot:
    name: str
    status: str
    conclusion: str | None
    title: str | None = None


@dataclass(frozen=True)
class CommitStatusSnapshot:
    context: str
    state: str
    description: str | None
    target_url: str | None = None
