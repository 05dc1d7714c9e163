from __future__ import annotations

from collections.abc import Sequence

from seedloop.models import DecisionRecord, Task


def _bullets(items: Sequence[str]) -> str:
    if not items:
        return "- (none configured)"
    return "\n".join(f"- {item}" for item in items)


def _recent_decisions(history: Sequence[DecisionRecord], *, limit: int = 3) -> str:
    recent = history[-limit:]
    if not recent:
        return "- none yet"
    return "\n".join(f"- {d.iteration}: {d.decision} - {d.reasoning}" for d in recent)


def build_system_preamble(*, repo_full_name: str, objectives: Sequence[str]) -> str:
    return f"""
You are an autonomous software engineer working on repository {repo_full_name}.
You improve the codebase in small, reviewed increments delivered as pull requests.

Core objectives:
{_bullets(objectives)}

Engineering rules:
- Write clean, typed, tested Python that follows the existing code patterns.
- Break large problems into small tasks; defer what you cannot yet solve and say why.
- Never regress existing behavior.

Response rules:
1. When asked for code, return ONLY a unified diff (git patch) with no explanations.
2. When asked for JSON, return ONLY valid JSON.
3. When reviewing, use the exact checklist format requested.
4. When summarizing, return ONLY the summary text.
5. Work only on feature branches, never on the default branch.

Tool commands, one per line, `KEYWORD: <argument> - <reason>`:
Recovery:
- NUKE_BRANCH: <reason>
- RESTART_TASK: <reason>
- BLOCK_TASK: <reason>
Execution:
- EXECUTE_SCRIPT: <script_path> - <reason>
- RUN_TESTS: [test_pattern] - <reason>
- INSTALL_PACKAGE: <package_name> - <reason>
- BUILD_PROJECT: <reason>
Introspection:
- SEARCH_CODEBASE: <query> - <reason>
- ANALYZE_CAPABILITIES: <reason>
- INSPECT_STRUCTURE: <file_path> - <reason>
""".strip()


def build_patch_prompt(*, task: Task, iteration: int) -> str:
    prompt = f"""
Task: {task.description}

Generate a git patch that implements this task.

Requirements:
- Clear names, type hints on new functions, specific error messages.
- Logging where it helps debugging.
- Tests for new behavior under tests/.
- Follow existing patterns, imports and module layout.

Patch format:
- Standard unified diff with `diff --git` headers and accurate hunk line numbers.
- No trailing whitespace, LF line endings.

Return ONLY the patch content, without markdown or commentary.
""".strip()
    if iteration <= 1:
        return prompt
    return f"""
{prompt}

Iteration context:
This is iteration {iteration}. Earlier iterations are already committed on the branch.
Provide only the changes needed now: remaining requirements, fixes for issues found in review or
testing, missing tests, edge cases and error handling.
""".strip()


def build_review_prompt(*, patch: str) -> str:
    return f"""
Review this patch.

Evaluation criteria, one line each, marked ✓ or ✗:
- [✓/✗] Implements the intended functionality correctly and completely
- [✓/✗] Follows clean code principles (clear naming, single responsibility, no duplication)
- [✓/✗] Has type hints and proper error handling
- [✓/✗] Has appropriate logging
- [✓/✗] Is consistent with existing code patterns and architecture
- [✓/✗] Is secure (no injection risks, validated input, safe operations)
- [✓/✗] Includes tests for new functionality
- [✓/✗] Documents complex logic
- [✓/✗] Is maintainable and readable
- [✓/✗] Handles edge cases and error conditions

For each ✗ give specific, actionable feedback on the same line.
Add `Suggestion:` lines for optional improvements.
End with exactly one verdict: APPROVE (all ✓), NEEDS_WORK (minor issues) or REJECT (major problems).

Patch to review:
{patch}
""".strip()


def build_code_fix_prompt(*, patch: str, review_feedback: str) -> str:
    return f"""
Fix the issues identified in the code review.

Original patch:
{patch}

Review feedback:
{review_feedback}

Requirements:
- Address every ✗ item.
- Keep the original intent.
- The result must apply to the same base as the original patch.

Return ONLY the corrected patch in unified diff format.
""".strip()


def build_assessment_prompt(
    *,
    task: Task,
    iteration: int,
    max_iterations: int,
    ci_failure_count: int,
    last_failure_reason: str | None,
    branch: str,
    history: Sequence[DecisionRecord],
) -> str:
    return f"""
Task: {task.description}
Priority: {task.priority}
Type: {task.type}
Estimated effort: {task.estimated_effort}

Current status:
- Iteration: {iteration}/{max_iterations}
- CI failures: {ci_failure_count}
- Last failure: {last_failure_reason or "None"}
- Branch: {branch}

Recent workflow decisions:
{_recent_decisions(history)}

Assess whether more work is needed, considering completion criteria, code quality gaps, test
coverage, integration points, and the risk of leaving the task incomplete versus over-engineering.

If running an execution or introspection tool would inform the next iteration, add up to three
tool command lines after the JSON.

Return JSON:
{{
  "needsMoreWork": true or false,
  "reasoning": "analysis of completion status",
  "recommendedAction": "continue | complete | fix | optimize",
  "priority": "high | medium | low"
}}
""".strip()


def build_ci_failure_analysis_prompt(
    *,
    task: Task,
    pr_number: int,
    iteration: int,
    branch: str,
    ci_failure_count: int,
    state: str,
    conclusion: str | None,
    description: str | None,
    logs: str,
    history: Sequence[DecisionRecord],
) -> str:
    return f"""
CI failure analysis required.

Task: {task.description}
PR: #{pr_number}
Iteration: {iteration}
Branch: {branch}
Failure count: {ci_failure_count}

CI status:
- State: {state}
- Conclusion: {conclusion or "unknown"}
- Description: {description or "none"}

CI failure logs:
{logs}

Previous decisions:
{_recent_decisions(history)}

Identify the root cause (syntax or import errors, failing tests, lint, dependency or configuration
problems, infrastructure limits) and choose exactly one action:
- GENERATE_FIX: the issue is specific and can be fixed with a targeted patch
- RESTART_ITERATION: the approach needs to be reconsidered
- BLOCK_TASK: the problem needs human intervention

Analysis and decision:
""".strip()


def build_ci_fix_prompt(*, task: Task, iteration: int, analysis: str) -> str:
    return f"""
Generate a fix for the CI failure analysed below.

Analysis: {analysis}

Task: {task.description}
Current iteration: {iteration}

The fix must be minimal and targeted: compile errors, failing tests, lint or formatting issues.
Do not break existing functionality.

Return ONLY the patch in unified diff format.
""".strip()


def build_summary_prompt(*, pr_number: int, task: Task) -> str:
    return f"""
Summarize the completion of PR #{pr_number} for task: {task.description}

Cover what was implemented, key design decisions, new interfaces, reliability or security changes,
test coverage, and any technical debt addressed or introduced. Keep it concise.

Return ONLY the summary text.
""".strip()


def build_recovery_prompt(*, task: Task, error: BaseException, branch: str | None, iteration: int) -> str:
    return f"""
Task #{task.id} failed with error: {error}

Failure count: {task.metadata.failure_count}
Task description: {task.description}
Branch: {branch or "none"}
Iteration: {iteration}

Available recovery actions:
- NUKE_BRANCH: <reason> - reset the branch to a clean state
- RESTART_TASK: <reason> - retry the task from the beginning
- BLOCK_TASK: <reason> - mark the task as blocked

Analyze the error and respond with one tool command and its reason.
""".strip()


def build_pr_body(*, task: Task) -> str:
    return f"""
Autonomous implementation of task #{task.id}

## Task Description
{task.description}

## Implementation
Created by the iterative development workflow:
- generated patches with automated review and fix passes
- one commit per iteration on this branch

This PR is merged automatically once CI passes.
""".strip()


def build_tool_results_message(results: Sequence[str]) -> str:
    body = "\n\n".join(results)
    return f"Tool results from the previous iteration:\n\n{body}"
