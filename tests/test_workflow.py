from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path

import pytest

from seedloop.config import CIConfig, RepoConfig, WorkflowConfig
from seedloop.git_ops import BranchValidation, WorkspaceCorruptionError
from seedloop.github_gateway import PullRequestConflictError
from seedloop.memory import MemoryStore
from seedloop.models import ChatMessage, CIStatus, DecisionRecord, ModelTier, PullRequest, Task
from seedloop.progress_log import ProgressLog
from seedloop.recovery import RecoveryLog, RecoveryPolicy
from seedloop.tool_commands import ToolCommand, ToolResult
from seedloop.workflow import (
    WorkflowEngine,
    WorkflowState,
    _parse_assessment,
    classify_ci_decision,
    heuristic_needs_more_work,
    workflow_insights,
)


NOW = datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc)

PATCH = "diff --git a/app.py b/app.py\n--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-old\n+new\n"
FIXED_PATCH = "diff --git a/app.py b/app.py\n--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-old\n+fixed\n"
APPROVED_REVIEW = "- [✓] correct\n- [✓] tested\nAPPROVE"
NEEDS_WORK_REVIEW = "- [✓] correct\n- [✗] missing tests for the parser\nNEEDS_WORK"
COMPLETE = json.dumps(
    {"needsMoreWork": False, "reasoning": "All done.", "recommendedAction": "complete", "priority": "low"}
)
CONTINUE = json.dumps(
    {"needsMoreWork": True, "reasoning": "Edge cases remain. More later", "recommendedAction": "continue", "priority": "high"}
)


def _kind(prompt: str) -> str:
    if "Generate a git patch" in prompt:
        return "patch"
    if prompt.startswith("Review this patch"):
        return "review"
    if prompt.startswith("Fix the issues identified"):
        return "code_fix"
    if "Assess whether more work is needed" in prompt:
        return "assessment"
    if prompt.startswith("CI failure analysis required"):
        return "ci_analysis"
    if prompt.startswith("Generate a fix for the CI failure"):
        return "ci_fix"
    if prompt.startswith("Summarize the completion"):
        return "summary"
    if "failed with error:" in prompt:
        return "recovery"
    raise AssertionError(f"unexpected prompt: {prompt[:80]}")


class ScriptedText:
    """Replies per prompt kind; queued replies first, then the kind's default."""

    def __init__(self, **queued: list[str | Exception]) -> None:
        self.defaults: dict[str, str | Exception] = {
            "patch": PATCH,
            "review": APPROVED_REVIEW,
            "code_fix": FIXED_PATCH,
            "assessment": COMPLETE,
            "ci_analysis": "Flaky import. GENERATE_FIX",
            "ci_fix": FIXED_PATCH,
            "summary": "Implemented the feature with tests.",
            "recovery": "RESTART_TASK: try again",
        }
        self.queued = {kind: list(replies) for kind, replies in queued.items()}
        self.calls: list[tuple[str, ModelTier, list[ChatMessage]]] = []

    def generate(self, tier: ModelTier, messages: Sequence[ChatMessage]) -> str:
        kind = _kind(messages[-1].content)
        self.calls.append((kind, tier, list(messages)))
        queue = self.queued.get(kind)
        reply = queue.pop(0) if queue else self.defaults[kind]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.calls]


class FakeWorkspace:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.commits: list[str] = []
        self.remote_branch: str | None = None
        self.validation = BranchValidation(valid=True, commits_ahead=1)
        self.commit_error: Exception | None = None
        self.fail_commit_after = 10**6

    def sync_with_remote(self) -> None:
        self.calls.append("sync")

    def find_remote_task_branch(self, task_id: int) -> str | None:
        return self.remote_branch

    def checkout_remote_branch(self, branch: str) -> None:
        self.calls.append(f"checkout:{branch}")

    def create_feature_branch(self, task_id: int) -> str:
        branch = f"feature/task-{task_id}-abc123"
        self.calls.append(f"create:{branch}")
        return branch

    def commit_and_push(self, message: str, branch: str) -> None:
        if self.commit_error is not None and len(self.commits) >= self.fail_commit_after:
            raise self.commit_error
        self.commits.append(message)

    def validate_branch_for_pr(self, branch: str) -> BranchValidation:
        return self.validation

    def recreate_branch_from_default(self, branch: str) -> None:
        self.calls.append(f"recreate:{branch}")

    def remove_checkout(self) -> None:
        self.calls.append("remove")

    def ensure_workspace(self) -> None:
        self.calls.append("ensure")


class FakeGitHub:
    def __init__(self) -> None:
        self.existing: PullRequest | None = None
        self.create_error: Exception | None = None
        self.created: list[dict[str, str]] = []

    def find_pull_request_by_head(self, *, head: str, base: str) -> PullRequest | None:
        return self.existing

    def create_pull_request(self, *, title: str, head: str, base: str, body: str) -> PullRequest:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"title": title, "head": head, "base": base, "body": body})
        return PullRequest(number=42, html_url="https://github.com/acme/widgets/pull/42")


class FakeCIMonitor:
    def __init__(self, results: list[bool]) -> None:
        self.results = list(results)
        self.titles: list[str] = []

    def wait_for_ci_and_merge(self, pr_number: int, *, commit_title: str) -> bool:
        self.titles.append(commit_title)
        return self.results.pop(0) if self.results else False

    def get_ci_status(self, pr_number: int) -> CIStatus:
        return CIStatus(state="failure", conclusion="failure", description="test_parser failed")

    def failure_logs(self, pr_number: int) -> str:
        return "FAILED tests/test_parser.py::test_empty"


class FakePatcher:
    def __init__(self) -> None:
        self.applied: list[str] = []

    def apply(self, patch_text: str, *, task_id: int) -> str:
        self.applied.append(patch_text)
        return "index"


class FakeTools:
    def __init__(self) -> None:
        self.executed: list[ToolCommand] = []

    def execute(self, command: ToolCommand, *, task_id: int) -> ToolResult:
        self.executed.append(command)
        return ToolResult(success=True, message="Tests passed", action="TESTS_PASSED", stdout="3 passed")


@dataclass
class Harness:
    engine: WorkflowEngine
    text: ScriptedText
    workspace: FakeWorkspace
    github: FakeGitHub
    ci: FakeCIMonitor
    patcher: FakePatcher
    tools: FakeTools
    memory: MemoryStore
    progress: ProgressLog
    recovery_log: RecoveryLog


def _harness(
    tmp_path: Path,
    *,
    text: ScriptedText | None = None,
    ci_results: list[bool] | None = None,
    max_attempts: int = 3,
    max_iterations: int = 10,
) -> Harness:
    text = text or ScriptedText()
    workspace = FakeWorkspace()
    github = FakeGitHub()
    ci_monitor = FakeCIMonitor([True] if ci_results is None else ci_results)
    patcher = FakePatcher()
    tools = FakeTools()
    memory = MemoryStore(tmp_path / "memory", clock=lambda: NOW)
    progress = ProgressLog(tmp_path / "PROGRESS.md", clock=lambda: NOW)
    recovery_log = RecoveryLog(tmp_path / "recovery.log", clock=lambda: NOW)
    engine = WorkflowEngine(
        repo=RepoConfig(owner="acme", name="widgets", workspace_dir=tmp_path / "ws", objectives=("be useful",)),
        workflow=WorkflowConfig(max_iterations=max_iterations),
        ci=CIConfig(max_attempts=max_attempts),
        workspace=workspace,  # type: ignore[arg-type]
        github=github,  # type: ignore[arg-type]
        ci_monitor=ci_monitor,  # type: ignore[arg-type]
        text=text,
        patcher=patcher,  # type: ignore[arg-type]
        recovery=RecoveryPolicy(workspace, recovery_log, clock=lambda: NOW),  # type: ignore[arg-type]
        tools=tools,  # type: ignore[arg-type]
        memory=memory,
        progress=progress,
        clock=lambda: NOW,
    )
    return Harness(engine, text, workspace, github, ci_monitor, patcher, tools, memory, progress, recovery_log)


def _task(*, effort: str = "small", failures: int = 0) -> Task:
    task = Task(
        id=5,
        description="Add a CSV exporter",
        status="in-progress",
        estimated_effort=effort,  # type: ignore[arg-type]
    )
    task.metadata.failure_count = failures
    return task


def test_happy_path_merges_and_records_completion(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    task = _task()

    result = h.engine.execute(task)

    assert result.merged
    assert result.pr_number == 42
    assert result.iterations == 1
    assert task.status == "done"
    assert task.completed_at == "2026-04-02T09:00:00.000Z"
    assert task.metadata.iteration_count == 1
    assert task.metadata.ci_failure_count == 0
    assert task.metadata.workflow_decisions == 1
    assert h.workspace.commits == ["Initial implementation: Add a CSV exporter"]
    assert h.patcher.applied == [PATCH]
    assert h.github.created[0]["title"] == "Task #5: Add a CSV exporter"
    assert h.github.created[0]["head"] == "feature/task-5-abc123"
    assert h.ci.titles == ["Task #5: Add a CSV exporter (#42)"]
    assert h.text.kinds() == ["patch", "review", "assessment", "summary"]
    assert [tier for _, tier, _ in h.text.calls][-1] == "routine"

    progress = (tmp_path / "PROGRESS.md").read_text(encoding="utf-8")
    assert "Task #5 (PR #42)" in progress
    assert "Implemented the feature with tests." in progress
    assert "WORKFLOW INSIGHTS:" in progress
    assert "Recent system memory (1 total entries)" in h.memory.load_context()


def test_context_messages_carry_objectives_memory_and_notes(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    task = _task()
    task.metadata.context.append("Restarted by LLM: try a smaller patch")

    h.engine.execute(task)

    _, _, messages = h.text.calls[0]
    assert messages[0].content == "Repository objectives:\n- be useful"
    assert messages[1].content == "System initialization - no previous memory"
    assert messages[2].content == "Task notes:\n- Restarted by LLM: try a smaller patch"


def test_existing_remote_branch_is_reused(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    h.workspace.remote_branch = "feature/task-5-old"

    h.engine.execute(_task())

    assert "checkout:feature/task-5-old" in h.workspace.calls
    assert not any(call.startswith("create:") for call in h.workspace.calls)


def test_rejected_review_applies_fixed_patch(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(review=[NEEDS_WORK_REVIEW]))

    h.engine.execute(_task())

    assert h.text.kinds()[:3] == ["patch", "review", "code_fix"]
    assert h.patcher.applied == [FIXED_PATCH]


def test_prose_review_with_approve_verdict_merges(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(review=["The patch is correct and well tested.\n\nAPPROVE"]))
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "merged"
    assert task.metadata.failure_count == 0
    assert h.text.kinds()[:3] == ["patch", "review", "assessment"]
    assert h.patcher.applied == [PATCH]


def test_prose_review_without_verdict_runs_code_fix(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(review=["I am unsure whether empty files are handled."]))
    task = _task()

    result = h.engine.execute(task)

    assert result.merged
    assert task.metadata.failure_count == 0
    assert h.text.kinds()[:3] == ["patch", "review", "code_fix"]
    assert h.patcher.applied == [FIXED_PATCH]


def test_assessment_continue_runs_second_iteration_with_tool_results(tmp_path: Path) -> None:
    text = ScriptedText(assessment=[f"{CONTINUE}\nRUN_TESTS: test_exporter - check exporter", COMPLETE])
    h = _harness(tmp_path, text=text)
    task = _task()

    result = h.engine.execute(task)

    assert result.merged
    assert result.iterations == 2
    assert len(h.tools.executed) == 1
    assert h.workspace.commits == [
        "Initial implementation: Add a CSV exporter",
        "Iteration 2: Edge cases remain...",
    ]
    second_patch_messages = [messages for kind, _, messages in h.text.calls if kind == "patch"][1]
    assert any(message.content.startswith("Tool results from the previous iteration") for message in second_patch_messages)
    assert len(h.github.created) == 1


def test_unparseable_assessment_falls_back_to_heuristic(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(assessment=["I think it is fine"]))
    task = _task(effort="small")

    result = h.engine.execute(task)

    assert result.merged
    assert result.iterations == 1


def test_ci_failure_is_fixed_then_merged(tmp_path: Path) -> None:
    h = _harness(tmp_path, ci_results=[False, True])
    task = _task()

    result = h.engine.execute(task)

    assert result.merged
    assert task.metadata.ci_failure_count == 1
    assert h.workspace.commits[-1] == "Fix CI failure - Iteration 1: Add a CSV exporter"
    assert "ci_analysis" in h.text.kinds()
    analysis_prompt = [messages for kind, _, messages in h.text.calls if kind == "ci_analysis"][0][-1].content
    assert "FAILED tests/test_parser.py::test_empty" in analysis_prompt
    assert "- Description: test_parser failed" in analysis_prompt


def test_ci_failure_restart_regenerates_patch(tmp_path: Path) -> None:
    h = _harness(
        tmp_path,
        text=ScriptedText(ci_analysis=["The approach is wrong. RESTART_ITERATION"]),
        ci_results=[False, True],
    )

    result = h.engine.execute(_task())

    assert result.merged
    assert h.workspace.commits[-1] == "Restart iteration 1: Add a CSV exporter"
    assert h.text.kinds().count("patch") == 2


def test_ci_failure_block_stops_remediation(tmp_path: Path) -> None:
    h = _harness(
        tmp_path,
        text=ScriptedText(ci_analysis=["Needs secrets configured. BLOCK_TASK"]),
        ci_results=[False],
    )
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "ci_blocked"
    assert task.status == "blocked"
    assert task.metadata.blocked_reason == "CI failures after 1 attempts: test_parser failed"
    assert len(h.ci.titles) == 1


def test_exhausted_ci_attempts_leave_task_in_progress(tmp_path: Path) -> None:
    h = _harness(tmp_path, ci_results=[False, False], max_attempts=2)
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "ci_blocked"
    assert task.status == "in-progress"
    assert task.metadata.blocked_reason == "CI did not pass for PR #42 after 1 remediation attempts"
    assert len(h.ci.titles) == 2


def test_default_ci_attempts_exhaust_after_two_triage_rounds(tmp_path: Path) -> None:
    h = _harness(tmp_path, ci_results=[False, False, False])
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "ci_blocked"
    assert not result.merged
    assert task.status != "done"
    assert len(h.ci.titles) == 3
    assert h.text.kinds().count("ci_analysis") == 2
    assert task.metadata.blocked_reason == "CI did not pass for PR #42 after 2 remediation attempts"


def test_generation_failure_routes_to_recovery_block(tmp_path: Path) -> None:
    text = ScriptedText(patch=["I cannot produce a patch."], recovery=["BLOCK_TASK: needs API credentials"])
    h = _harness(tmp_path, text=text)
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "recovered"
    assert result.error is not None and "patch_generation" in result.error
    assert task.status == "blocked"
    assert task.metadata.failure_count == 1
    assert task.metadata.blocked_reason == "needs API credentials"
    assert h.github.created == []
    assert "BLOCK_TASK on task" in h.recovery_log.tail()[-1]


def test_recovery_restart_resets_failures(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(patch=[RuntimeError("model overloaded")]))
    task = _task(failures=1)

    h.engine.execute(task)

    assert task.status == "pending"
    assert task.metadata.failure_count == 0
    assert task.metadata.context == ["Restarted by LLM: try again"]


def test_recovery_nuke_below_threshold_leaves_task_pending(tmp_path: Path) -> None:
    text = ScriptedText(patch=[RuntimeError("boom")], recovery=["NUKE_BRANCH: messy history"])
    h = _harness(tmp_path, text=text)
    task = _task()

    h.engine.execute(task)

    assert task.status == "pending"
    assert not any(call.startswith("recreate:") for call in h.workspace.calls)


def test_recovery_nuke_recreates_branch_after_repeated_failures(tmp_path: Path) -> None:
    text = ScriptedText(patch=[RuntimeError("boom")], recovery=["NUKE_BRANCH: messy history"])
    h = _harness(tmp_path, text=text)
    task = _task(failures=2)

    h.engine.execute(task)

    assert "recreate:feature/task-5-abc123" in h.workspace.calls
    assert task.metadata.failure_count == 4
    assert task.metadata.blocked_reason == "Branch nuked due to unrecoverable state"


def test_recovery_generation_failure_makes_task_pending(tmp_path: Path) -> None:
    text = ScriptedText(patch=[RuntimeError("boom")], recovery=[RuntimeError("still down")])
    h = _harness(tmp_path, text=text)
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "recovered"
    assert task.status == "pending"
    assert task.metadata.failure_count == 1


def test_max_iterations_exceeded_is_recovered(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(assessment=[CONTINUE, CONTINUE]), max_iterations=2)
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "recovered"
    assert result.error == "Maximum iterations (2) reached without completion"
    assert result.iterations == 2


def test_later_iteration_failure_proceeds_to_ci(tmp_path: Path) -> None:
    text = ScriptedText(patch=[PATCH, "no diff here"], assessment=[CONTINUE])
    h = _harness(tmp_path, text=text)

    result = h.engine.execute(_task())

    assert result.merged
    assert result.iterations == 2
    assert len(h.workspace.commits) == 1


def test_invalid_branch_blocks_pull_request(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(recovery=["BLOCK_TASK: nothing to merge"]))
    h.workspace.validation = BranchValidation(valid=False, reason="Branch has no commits ahead of main")
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "recovered"
    assert result.error == "PR creation validation failed: Branch has no commits ahead of main"
    assert task.status == "blocked"


def test_conflicting_pull_request_reuses_existing(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    h.github.create_error = PullRequestConflictError("feature/task-5-abc123", "A pull request already exists")

    class Lookup:
        calls = 0

        def __call__(self, *, head: str, base: str) -> PullRequest | None:
            Lookup.calls += 1
            return PullRequest(number=77, html_url="") if Lookup.calls > 1 else None

    h.github.find_pull_request_by_head = Lookup()  # type: ignore[method-assign]

    result = h.engine.execute(_task())

    assert result.merged
    assert result.pr_number == 77


def test_no_commits_between_is_not_retried(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(recovery=["BLOCK_TASK: empty"]))
    h.github.create_error = PullRequestConflictError("feature/task-5-abc123", "No commits between main and feature")

    result = h.engine.execute(_task())

    assert result.outcome == "recovered"
    assert result.error is not None and result.error.startswith("No commits between")


def test_workspace_corruption_triggers_emergency_reset(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    h.workspace.commit_error = WorkspaceCorruptionError("index.lock is corrupt")
    h.workspace.fail_commit_after = 0
    task = _task()

    result = h.engine.execute(task)

    assert result.outcome == "emergency_reset"
    assert task.status == "pending"
    assert task.metadata.blocked_reason == "Workspace reset after corruption: index.lock is corrupt"
    assert h.workspace.calls[-2:] == ["remove", "ensure"]
    assert "EMERGENCY_RESET on workspace" in h.recovery_log.tail()[-1]


def test_summary_failure_uses_fallback_text(tmp_path: Path) -> None:
    h = _harness(tmp_path, text=ScriptedText(summary=[RuntimeError("rate limit")]))

    h.engine.execute(_task())

    progress = (tmp_path / "PROGRESS.md").read_text(encoding="utf-8")
    assert "Task #5 merged in PR #42: Add a CSV exporter" in progress


def _state(**overrides: object) -> WorkflowState:
    state = WorkflowState(task=_task(effort="medium"), max_iterations=5)
    for key, value in overrides.items():
        setattr(state, key, value)
    return state


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({"iteration": 1}, True),
        ({"iteration": 2}, False),
        ({"iteration": 3, "last_failure_reason": "lint"}, True),
        ({"iteration": 5, "last_failure_reason": "lint"}, False),
        ({"iteration": 1, "ci_failure_count": 4}, False),
    ],
)
def test_heuristic_needs_more_work(overrides: dict[str, object], expected: bool) -> None:
    assert heuristic_needs_more_work(_state(**overrides)) is expected


@pytest.mark.parametrize(
    ("analysis", "expected"),
    [
        ("root cause found, generate_fix", "fix_ci"),
        ("RESTART_ITERATION please", "restart"),
        ("BLOCK_TASK", "block"),
        ("no idea", "block"),
    ],
)
def test_classify_ci_decision(analysis: str, expected: str) -> None:
    assert classify_ci_decision(analysis) == expected


def test_workflow_insights_summarizes_decisions() -> None:
    start = "2026-04-02T09:00:00.000Z"
    end = (NOW + timedelta(seconds=95)).strftime("%Y-%m-%dT%H:%M:%S.000Z")
    state = _state(
        iteration=2,
        ci_failure_count=1,
        decision_history=[
            DecisionRecord(iteration=1, decision="continue", reasoning="r", timestamp=start, context_snapshot=""),
            DecisionRecord(iteration=2, decision="complete", reasoning="r", timestamp=end, context_snapshot=""),
        ],
    )

    insights = workflow_insights(state)

    assert "- Completed in 2 iterations" in insights
    assert "- Key decisions: continue -> complete" in insights
    assert "- Iterative improvements: 1" in insights
    assert "- Total development time: 95s" in insights


def test_parse_assessment_defaults_optional_fields() -> None:
    assessment = _parse_assessment('```json\n{"needsMoreWork": true, "reasoning": "  "}\n```')

    assert assessment.needs_more_work is True
    assert assessment.reasoning == "No reasoning given"
    assert assessment.recommended_action == "unknown"
