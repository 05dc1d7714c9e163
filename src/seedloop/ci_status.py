"""Reduce the CI signals GitHub reports for one commit to a single verdict.

Workflow runs are authoritative when any relevant run exists for the commit. Legacy check runs
and commit statuses are only consulted when no workflow signal is present.
"""

from __future__ import annotations

from collections.abc import Iterable

from seedloop.config import CIConfig
from seedloop.models import CheckRunSnapshot, CIStatus, CommitStatusSnapshot, WorkflowRunSnapshot


_FAILED_RUN_CONCLUSIONS = frozenset({"failure", "cancelled", "timed_out"})
_ACTIVE_RUN_STATUSES = frozenset({"queued", "in_progress", "waiting", "pending", "requested"})


def is_relevant_workflow(name: str, ci: CIConfig) -> bool:
    if name in ci.workflow_names:
        return True
    return any(keyword in name for keyword in ci.workflow_name_keywords)


def relevant_runs(
    runs: Iterable[WorkflowRunSnapshot], *, head_sha: str, ci: CIConfig
) -> tuple[WorkflowRunSnapshot, ...]:
    return tuple(
        run
        for run in runs
        if run.head_sha == head_sha
        and run.event == "pull_request"
        and is_relevant_workflow(run.name, ci)
    )


def is_failed_run(run: WorkflowRunSnapshot) -> bool:
    return run.status == "completed" and run.conclusion in _FAILED_RUN_CONCLUSIONS


def reconcile_workflow_runs(runs: tuple[WorkflowRunSnapshot, ...]) -> CIStatus | None:
    if not runs:
        return None
    for run in runs:
        if is_failed_run(run):
            return CIStatus(
                state="failure",
                conclusion=run.conclusion,
                description=f"Workflow '{run.name}' {run.conclusion}",
                target_url=run.html_url or None,
            )
    for run in runs:
        if run.status in _ACTIVE_RUN_STATUSES:
            return CIStatus(
                state="pending",
                description=f"Workflow '{run.name}' {run.status}",
                target_url=run.html_url or None,
            )
    all_completed = all(run.status == "completed" for run in runs)
    if all_completed and any(run.conclusion == "success" for run in runs):
        return CIStatus(state="success", conclusion="success", description="All workflows passed")
    return CIStatus(state="pending", description="Waiting for workflow results")


def reconcile_legacy(
    checks: Iterable[CheckRunSnapshot], statuses: Iterable[CommitStatusSnapshot]
) -> CIStatus:
    failure: CIStatus | None = None
    pending: CIStatus | None = None

    for check in checks:
        if check.status != "completed":
            pending = pending or CIStatus(state="pending", description=f"Check '{check.name}' running")
        elif check.conclusion != "success":
            failure = failure or CIStatus(
                state="failure",
                conclusion=check.conclusion,
                description=check.title or f"Check '{check.name}' {check.conclusion}",
            )

    for status in statuses:
        if status.state in ("failure", "error"):
            failure = failure or CIStatus(
                state="failure",
                conclusion=status.state,
                description=status.description or f"Status '{status.context}' {status.state}",
                target_url=status.target_url,
            )
        elif status.state == "pending":
            pending = pending or CIStatus(
                state="pending",
                description=status.description or f"Status '{status.context}' pending",
                target_url=status.target_url,
            )

    if failure is not None:
        return failure
    if pending is not None:
        return pending
    return CIStatus(state="success", conclusion="success", description="All checks passed")


def reconcile(
    *,
    head_sha: str,
    runs: Iterable[WorkflowRunSnapshot],
    checks: Iterable[CheckRunSnapshot],
    statuses: Iterable[CommitStatusSnapshot],
    ci: CIConfig,
) -> CIStatus:
    workflow_status = reconcile_workflow_runs(relevant_runs(runs, head_sha=head_sha, ci=ci))
    if workflow_status is not None:
        return workflow_status
    return reconcile_legacy(checks, statuses)
