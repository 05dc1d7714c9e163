from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Literal

from seedloop.ci_monitor import CIMonitor
from seedloop.clock import Clock, parse_iso, to_iso, utc_now
from seedloop.config import CIConfig, RepoConfig, WorkflowConfig
from seedloop.git_ops import GitWorkspace, WorkspaceCorruptionError
from seedloop.github_gateway import GitHubGateway, PullRequestConflictError
from seedloop.memory import MemoryStore
from seedloop.models import ChatMessage, DecisionRecord, ModelTier, Task, WorkflowDecisionName
from seedloop.observability import log_event
from seedloop.patching import PatchApplier
from seedloop.progress_log import ProgressLog
from seedloop.prompts import (
    build_assessment_prompt,
    build_ci_failure_analysis_prompt,
    build_ci_fix_prompt,
    build_code_fix_prompt,
    build_patch_prompt,
    build_pr_body,
    build_recovery_prompt,
    build_review_prompt,
    build_summary_prompt,
    build_tool_results_message,
)
from seedloop.protocols import extract_diff, extract_json_object, parse_review_checklist, unwrap
from seedloop.recovery import RecoveryPolicy
from seedloop.text_generation import TextGenerator
from seedloop.tool_commands import (
    BlockTask,
    NukeBranch,
    RestartTask,
    ToolCommand,
    ToolExecutor,
    is_execution_command,
    parse_tool_command,
    parse_tool_commands,
)


LOGGER = logging.getLogger("seedloop.workflow")

MAX_TOOL_REQUESTS_PER_ITERATION = 3
HEURISTIC_CI_FAILURE_LIMIT = 3
_REASONING_PREVIEW_CHARS = 300
_COMMIT_REASONING_CHARS = 50

WorkflowOutcome = Literal["merged", "ci_blocked", "recovered", "emergency_reset"]


class WorkflowError(RuntimeError):
    pass


class MaxIterationsExceededError(WorkflowError):
    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(f"Maximum iterations ({max_iterations}) reached without completion")


class PullRequestEligibilityError(WorkflowError):
    pass


@dataclass
class WorkflowState:
    task: Task
    max_iterations: int
    branch: str | None = None
    iteration: int = 0
    decision_history: list[DecisionRecord] = field(default_factory=list)
    ci_failure_count: int = 0
    last_failure_reason: str | None = None
    pr_number: int | None = None
    current_patch: str | None = None
    context_messages: list[ChatMessage] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowResult:
    task_id: int
    outcome: WorkflowOutcome
    iterations: int
    pr_number: int | None = None
    error: str | None = None

    @property
    def merged(self) -> bool:
        return self.outcome == "merged"


@dataclass(frozen=True)
class _Assessment:
    needs_more_work: bool
    reasoning: str
    recommended_action: str
    priority: str


class WorkflowEngine:
    """Runs one task from branch setup through review iterations, CI, and merge.

    Any exception escaping the loop is routed to task recovery; a corrupted workspace triggers an
    emergency reset instead.
    """

    def __init__(
        self,
        *,
        repo: RepoConfig,
        workflow: WorkflowConfig,
        ci: CIConfig,
        workspace: GitWorkspace,
        github: GitHubGateway,
        ci_monitor: CIMonitor,
        text: TextGenerator,
        patcher: PatchApplier,
        recovery: RecoveryPolicy,
        tools: ToolExecutor,
        memory: MemoryStore,
        progress: ProgressLog,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repo
        self._workflow = workflow
        self._ci = ci
        self._workspace = workspace
        self._github = github
        self._ci_monitor = ci_monitor
        self._text = text
        self._patcher = patcher
        self._recovery = recovery
        self._tools = tools
        self._memory = memory
        self._progress = progress
        self._clock = clock

    def execute(self, task: Task) -> WorkflowResult:
        state = WorkflowState(task=task, max_iterations=self._workflow.max_iterations)
        log_event(LOGGER, "task_execution_started", task_id=task.id, priority=task.priority, type=task.type)
        try:
            self._initialize(state)
            self._iterate(state)
            merged = self._monitor_ci(state)
            if merged:
                self._finalize(state)
                return self._result(state, "merged")
            self._mark_ci_blocked(state)
            return self._result(state, "ci_blocked")
        except WorkspaceCorruptionError as exc:
            log_event(
                LOGGER,
                "workspace_corrupted",
                level=logging.ERROR,
                task_id=task.id,
                branch=state.branch,
                error=str(exc),
            )
            self._recovery.perform_emergency_reset()
            task.status = "pending"
            task.metadata.blocked_reason = f"Workspace reset after corruption: {exc}"
            task.updated_at = to_iso(self._clock())
            return self._result(state, "emergency_reset", error=str(exc))
        except Exception as exc:  # noqa: BLE001
            self._recover(state, exc)
            return self._result(state, "recovered", error=str(exc))

    def _result(self, state: WorkflowState, outcome: WorkflowOutcome, *, error: str | None = None) -> WorkflowResult:
        log_event(
            LOGGER,
            "task_execution_finished",
            level=logging.INFO if outcome == "merged" else logging.WARNING,
            task_id=state.task.id,
            outcome=outcome,
            iterations=state.iteration,
            pr_number=state.pr_number,
            status=state.task.status,
        )
        return WorkflowResult(
            task_id=state.task.id,
            outcome=outcome,
            iterations=state.iteration,
            pr_number=state.pr_number,
            error=error,
        )

    def _initialize(self, state: WorkflowState) -> None:
        task = state.task
        self._workspace.sync_with_remote()
        existing = self._workspace.find_remote_task_branch(task.id)
        if existing is not None:
            self._workspace.checkout_remote_branch(existing)
            state.branch = existing
        else:
            state.branch = self._workspace.create_feature_branch(task.id)

        objectives = "\n".join(f"- {objective}" for objective in self._repo.objectives)
        state.context_messages = [
            ChatMessage(role="user", content=f"Repository objectives:\n{objectives or '- none'}"),
            ChatMessage(role="user", content=self._memory.load_context()),
        ]
        if task.metadata.context:
            notes = "\n".join(f"- {note}" for note in task.metadata.context)
            state.context_messages.append(ChatMessage(role="user", content=f"Task notes:\n{notes}"))
        log_event(LOGGER, "workflow_initialized", task_id=task.id, branch=state.branch, reused=existing is not None)

    def _iterate(self, state: WorkflowState) -> None:
        task = state.task
        while state.iteration < state.max_iterations:
            state.iteration += 1
            log_event(
                LOGGER,
                "iteration_started",
                task_id=task.id,
                iteration=state.iteration,
                max_iterations=state.max_iterations,
            )
            try:
                self._generate_and_review_patch(state)
                self._apply_current_patch(state)
                self._commit_and_push(state, self._iteration_commit_message(state))
                if state.iteration == 1:
                    state.pr_number = self._open_pull_request(state)
            except WorkspaceCorruptionError:
                raise
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "iteration_failed",
                    level=logging.ERROR,
                    task_id=task.id,
                    iteration=state.iteration,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if state.iteration == 1 or state.pr_number is None:
                    raise
                log_event(LOGGER, "iteration_loop_stopped", task_id=task.id, pr_number=state.pr_number)
                return

            if not self._needs_more_work(state):
                log_event(LOGGER, "implementation_complete", task_id=task.id, iterations=state.iteration)
                return

        raise MaxIterationsExceededError(state.max_iterations)

    def _generate(self, state: WorkflowState, tier: ModelTier, prompt: str) -> str:
        return self._text.generate(tier, [*state.context_messages, ChatMessage(role="user", content=prompt)])

    def _generate_and_review_patch(self, state: WorkflowState) -> None:
        task = state.task
        raw_patch = self._generate(state, "important", build_patch_prompt(task=task, iteration=state.iteration))
        patch = unwrap(extract_diff(raw_patch), step="patch_generation")

        feedback = self._generate(state, "important", build_review_prompt(patch=patch))
        review = unwrap(
            parse_review_checklist(feedback, pass_threshold=self._workflow.review_pass_threshold),
            step="patch_review",
        )
        log_event(
            LOGGER,
            "patch_reviewed",
            task_id=task.id,
            iteration=state.iteration,
            approved=review.approved,
            score=review.score,
            issues=len(review.issues),
            verdict=review.verdict,
        )
        if not review.approved or review.issues:
            fixed = self._generate(
                state, "important", build_code_fix_prompt(patch=patch, review_feedback=feedback)
            )
            patch = unwrap(extract_diff(fixed), step="patch_fix")
        state.current_patch = patch

    def _apply_current_patch(self, state: WorkflowState) -> None:
        if not state.current_patch:
            raise WorkflowError("No patch available to apply")
        self._patcher.apply(state.current_patch, task_id=state.task.id)

    def _commit_and_push(self, state: WorkflowState, message: str) -> None:
        if state.branch is None:
            raise WorkflowError("No branch to commit to")
        self._workspace.commit_and_push(message, state.branch)
        log_event(
            LOGGER,
            "iteration_committed",
            task_id=state.task.id,
            iteration=state.iteration,
            branch=state.branch,
        )

    def _iteration_commit_message(self, state: WorkflowState) -> str:
        description = state.task.description
        if state.iteration == 1:
            return f"Initial implementation: {description}"
        last = state.decision_history[-1] if state.decision_history else None
        if last is not None and last.decision == "continue":
            first_sentence = last.reasoning.split(".")[0]
            return f"Iteration {state.iteration}: {first_sentence[:_COMMIT_REASONING_CHARS]}..."
        return f"Iteration {state.iteration}: Enhanced implementation for {description}"

    def _open_pull_request(self, state: WorkflowState) -> int:
        task = state.task
        branch = state.branch
        if branch is None:
            raise PullRequestEligibilityError("No branch to open a pull request from")
        default = self._repo.default_branch

        validation = self._workspace.validate_branch_for_pr(branch)
        if not validation.valid:
            raise PullRequestEligibilityError(f"PR creation validation failed: {validation.reason}")

        existing = self._github.find_pull_request_by_head(head=branch, base=default)
        if existing is not None:
            log_event(LOGGER, "pull_request_reused", task_id=task.id, pr_number=existing.number, branch=branch)
            return existing.number

        try:
            pr = self._github.create_pull_request(
                title=f"Task #{task.id}: {task.description}",
                head=branch,
                base=default,
                body=build_pr_body(task=task),
            )
        except PullRequestConflictError as exc:
            if exc.no_commits_between:
                raise PullRequestEligibilityError(f"No commits between {branch} and {default}") from exc
            existing = self._github.find_pull_request_by_head(head=branch, base=default)
            if existing is None:
                raise
            log_event(LOGGER, "pull_request_reused", task_id=task.id, pr_number=existing.number, branch=branch)
            return existing.number
        return pr.number

    def _needs_more_work(self, state: WorkflowState) -> bool:
        heuristic = heuristic_needs_more_work(state)
        try:
            response = self._generate(
                state,
                "important",
                build_assessment_prompt(
                    task=state.task,
                    iteration=state.iteration,
                    max_iterations=state.max_iterations,
                    ci_failure_count=state.ci_failure_count,
                    last_failure_reason=state.last_failure_reason,
                    branch=state.branch or "",
                    history=state.decision_history,
                ),
            )
            assessment = _parse_assessment(response)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "assessment_failed",
                level=logging.WARNING,
                task_id=state.task.id,
                iteration=state.iteration,
                error_type=type(exc).__name__,
            )
            self._record(
                state,
                "continue" if heuristic else "complete",
                "Heuristic assessment used after the LLM assessment failed",
                snapshot=f"Heuristic fallback: {type(exc).__name__}",
            )
            return heuristic

        self._run_requested_tools(state, response)
        needs_more = heuristic or assessment.needs_more_work
        self._record(
            state,
            "continue" if needs_more else "complete",
            assessment.reasoning,
            snapshot=f"LLM assessment: {assessment.recommended_action} ({assessment.priority}), heuristic={heuristic}",
        )
        log_event(
            LOGGER,
            "assessment_completed",
            task_id=state.task.id,
            iteration=state.iteration,
            llm_needs_more_work=assessment.needs_more_work,
            heuristic_needs_more_work=heuristic,
            recommended_action=assessment.recommended_action,
        )
        return needs_more

    def _run_requested_tools(self, state: WorkflowState, response: str) -> None:
        commands = [command for command in parse_tool_commands(response) if is_execution_command(command)]
        if not commands:
            return
        rendered: list[str] = []
        for command in commands[:MAX_TOOL_REQUESTS_PER_ITERATION]:
            try:
                result = self._tools.execute(command, task_id=state.task.id)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "tool_execution_failed",
                    level=logging.WARNING,
                    task_id=state.task.id,
                    tool=command.kind,
                    error_type=type(exc).__name__,
                )
                rendered.append(f"[{command.kind}] failed: {exc}")
                continue
            rendered.append(result.render())
        state.context_messages.append(ChatMessage(role="user", content=build_tool_results_message(rendered)))

    def _monitor_ci(self, state: WorkflowState) -> bool:
        pr_number = state.pr_number
        if pr_number is None:
            raise WorkflowError("No PR number available for merging")
        attempts = self._ci.max_attempts
        commit_title = f"Task #{state.task.id}: {state.task.description} (#{pr_number})"
        for attempt in range(1, attempts + 1):
            log_event(LOGGER, "ci_attempt_started", pr_number=pr_number, attempt=attempt, max_attempts=attempts)
            if self._ci_monitor.wait_for_ci_and_merge(pr_number, commit_title=commit_title):
                log_event(LOGGER, "github_pr_merged", task_id=state.task.id, pr_number=pr_number)
                return True
            if attempt == attempts:
                break
            if not self._handle_ci_failure(state):
                log_event(LOGGER, "ci_remediation_failed", level=logging.ERROR, pr_number=pr_number, attempt=attempt)
                return False
        log_event(LOGGER, "ci_attempts_exhausted", level=logging.ERROR, pr_number=pr_number, attempts=attempts)
        return False

    def _handle_ci_failure(self, state: WorkflowState) -> bool:
        task = state.task
        pr_number = state.pr_number
        if pr_number is None:
            return False
        try:
            ci_status = self._ci_monitor.get_ci_status(pr_number)
            state.ci_failure_count += 1
            state.last_failure_reason = ci_status.description or "Unknown CI failure"
            analysis = self._generate(
                state,
                "important",
                build_ci_failure_analysis_prompt(
                    task=task,
                    pr_number=pr_number,
                    iteration=state.iteration,
                    branch=state.branch or "",
                    ci_failure_count=state.ci_failure_count,
                    state=ci_status.state,
                    conclusion=ci_status.conclusion,
                    description=ci_status.description,
                    logs=self._ci_failure_logs(pr_number),
                    history=state.decision_history,
                ),
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ci_failure_analysis_failed",
                level=logging.ERROR,
                task_id=task.id,
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        decision = classify_ci_decision(analysis)
        self._record(
            state,
            decision,
            analysis[:_REASONING_PREVIEW_CHARS],
            snapshot=f"CI failure {state.ci_failure_count}: {state.last_failure_reason}",
        )
        log_event(
            LOGGER,
            "ci_failure_triaged",
            task_id=task.id,
            pr_number=pr_number,
            decision=decision,
            ci_failure_count=state.ci_failure_count,
        )
        if decision == "fix_ci":
            return self._apply_ci_fix(state, analysis)
        if decision == "restart":
            return self._restart_iteration(state)
        task.status = "blocked"
        task.metadata.blocked_reason = (
            f"CI failures after {state.ci_failure_count} attempts: {state.last_failure_reason}"
        )
        task.updated_at = to_iso(self._clock())
        return False

    def _ci_failure_logs(self, pr_number: int) -> str:
        logs = self._ci_monitor.failure_logs(pr_number)
        if not logs or "No CI workflows found" in logs or "No failed workflows found" in logs:
            return (
                f"No detailed CI failure logs available for PR #{pr_number}. Workflows may not have "
                "started, may still be running, or may use a non-standard configuration."
            )
        return logs

    def _apply_ci_fix(self, state: WorkflowState, analysis: str) -> bool:
        try:
            raw_patch = self._generate(
                state,
                "important",
                build_ci_fix_prompt(task=state.task, iteration=state.iteration, analysis=analysis),
            )
            state.current_patch = unwrap(extract_diff(raw_patch), step="ci_fix")
            self._apply_current_patch(state)
            self._commit_and_push(
                state, f"Fix CI failure - Iteration {state.iteration}: {state.task.description}"
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ci_fix_failed",
                level=logging.ERROR,
                task_id=state.task.id,
                pr_number=state.pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True

    def _restart_iteration(self, state: WorkflowState) -> bool:
        try:
            self._generate_and_review_patch(state)
            self._apply_current_patch(state)
            self._commit_and_push(state, f"Restart iteration {state.iteration}: {state.task.description}")
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ci_restart_iteration_failed",
                level=logging.ERROR,
                task_id=state.task.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True

    def _mark_ci_blocked(self, state: WorkflowState) -> None:
        task = state.task
        if task.status == "blocked":
            return
        # Left in-progress so stale-task recovery can pick it up again later.
        task.metadata.blocked_reason = (
            f"CI did not pass for PR #{state.pr_number} after {state.ci_failure_count} remediation attempts"
        )
        task.updated_at = to_iso(self._clock())

    def _finalize(self, state: WorkflowState) -> None:
        task = state.task
        if state.pr_number is None:
            raise WorkflowError("Cannot finalize a task without a merged PR")
        try:
            summary = self._generate(state, "routine", build_summary_prompt(pr_number=state.pr_number, task=task))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "summary_generation_failed",
                level=logging.WARNING,
                task_id=task.id,
                error_type=type(exc).__name__,
            )
            summary = f"Task #{task.id} merged in PR #{state.pr_number}: {task.description}"

        full_summary = f"{summary.strip()}\n\n{workflow_insights(state)}"
        try:
            self._progress.append(
                full_summary,
                task_id=task.id,
                pr_number=state.pr_number,
                iterations=state.iteration,
                ci_failures=state.ci_failure_count,
            )
            self._memory.record(full_summary, task_id=task.id, pr_number=state.pr_number)
        except OSError as exc:
            log_event(
                LOGGER,
                "completion_record_failed",
                level=logging.WARNING,
                task_id=task.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

        now = to_iso(self._clock())
        task.status = "done"
        task.completed_at = now
        task.updated_at = now
        task.metadata.blocked_reason = None
        task.metadata.iteration_count = state.iteration
        task.metadata.ci_failure_count = state.ci_failure_count
        task.metadata.workflow_decisions = len(state.decision_history)
        log_event(
            LOGGER,
            "task_completed",
            task_id=task.id,
            pr_number=state.pr_number,
            branch=state.branch,
            iterations=state.iteration,
            decisions=len(state.decision_history),
            ci_failures=state.ci_failure_count,
        )

    def _recover(self, state: WorkflowState, exc: Exception) -> None:
        task = state.task
        now = to_iso(self._clock())
        log_event(
            LOGGER,
            "task_execution_failed",
            level=logging.ERROR,
            task_id=task.id,
            branch=state.branch,
            iteration=state.iteration,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        task.metadata.failure_count += 1
        task.metadata.last_attempt = now
        task.updated_at = now

        try:
            response = self._generate(
                state,
                "important",
                build_recovery_prompt(task=task, error=exc, branch=state.branch, iteration=state.iteration),
            )
            self._apply_recovery_command(state, parse_tool_command(response))
        except Exception as recovery_exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "recovery_action_failed",
                level=logging.ERROR,
                task_id=task.id,
                error_type=type(recovery_exc).__name__,
                error=str(recovery_exc),
            )
            task.status = "pending"
        log_event(LOGGER, "branch_preserved", task_id=task.id, branch=state.branch)

    def _apply_recovery_command(self, state: WorkflowState, command: ToolCommand | None) -> None:
        task = state.task
        if isinstance(command, NukeBranch) and state.branch is not None:
            if not self._recovery.nuke_branch_if_stuck(task, state.branch):
                task.status = "pending"
        elif isinstance(command, RestartTask):
            self._recovery.restart_task(task, command.reason)
        elif isinstance(command, BlockTask):
            self._recovery.block_task(task, command.reason)
        else:
            task.status = "pending"
        log_event(
            LOGGER,
            "recovery_command_applied",
            task_id=task.id,
            command=command.kind if command is not None else None,
            status=task.status,
        )

    def _record(self, state: WorkflowState, decision: WorkflowDecisionName, reasoning: str, *, snapshot: str) -> None:
        state.decision_history.append(
            DecisionRecord(
                iteration=state.iteration,
                decision=decision,
                reasoning=reasoning,
                timestamp=to_iso(self._clock()),
                context_snapshot=snapshot,
            )
        )


def heuristic_needs_more_work(state: WorkflowState) -> bool:
    if state.iteration >= state.max_iterations:
        return False
    if state.ci_failure_count > HEURISTIC_CI_FAILURE_LIMIT:
        return False
    has_recent_failure = state.last_failure_reason is not None
    return has_recent_failure or (state.iteration < 2 and state.task.estimated_effort != "small")


def classify_ci_decision(analysis: str) -> WorkflowDecisionName:
    upper = analysis.upper()
    if "GENERATE_FIX" in upper:
        return "fix_ci"
    if "RESTART_ITERATION" in upper:
        return "restart"
    return "block"


def workflow_insights(state: WorkflowState) -> str:
    decisions = [record.decision for record in state.decision_history]
    elapsed_seconds = 0
    if len(state.decision_history) > 1:
        first = parse_iso(state.decision_history[0].timestamp)
        last = parse_iso(state.decision_history[-1].timestamp)
        if first is not None and last is not None:
            elapsed_seconds = round((last - first).total_seconds())
    return "\n".join(
        [
            "WORKFLOW INSIGHTS:",
            f"- Completed in {state.iteration} iterations",
            f"- Decision history: {len(decisions)} decisions made",
            f"- CI failure count: {state.ci_failure_count}",
            f"- Key decisions: {' -> '.join(decisions) or 'none'}",
            f"- Iterative improvements: {decisions.count('continue')}",
            f"- Total development time: {elapsed_seconds}s",
        ]
    )


def _parse_assessment(response: str) -> _Assessment:
    payload = unwrap(extract_json_object(response), step="completion_assessment")
    needs_more_work = payload.get("needsMoreWork")
    if not isinstance(needs_more_work, bool):
        raise WorkflowError("Assessment JSON is missing boolean needsMoreWork")
    reasoning = payload.get("reasoning")
    action = payload.get("recommendedAction")
    priority = payload.get("priority")
    return _Assessment(
        needs_more_work=needs_more_work,
        reasoning=reasoning if isinstance(reasoning, str) and reasoning.strip() else "No reasoning given",
        recommended_action=action if isinstance(action, str) else "unknown",
        priority=priority if isinstance(priority, str) else "unknown",
    )
