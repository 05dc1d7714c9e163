from __future__ import annotations

import logging
import time
from typing import Callable

from seedloop.ci_status import is_failed_run, reconcile, relevant_runs
from seedloop.config import CIConfig
from seedloop.github_gateway import GitHubGateway
from seedloop.models import CIStatus, PullRequestSnapshot
from seedloop.observability import log_event


LOGGER = logging.getLogger("seedloop.ci_monitor")

_MAX_ERROR_LINES = 50
_MAX_TAIL_LINES = 100
_ERROR_MARKERS = ("error", "fail", "✗", "×")


class CIMonitor:
    def __init__(
        self,
        github: GitHubGateway,
        ci: CIConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._github = github
        self._ci = ci
        self._sleep = sleep
        self._monotonic = monotonic

    def get_pr_status(self, pr_number: int) -> PullRequestSnapshot:
        return self._github.get_pull_request(pr_number)

    def get_ci_status(self, pr_number: int, *, head_sha: str | None = None) -> CIStatus:
        if head_sha is None:
            head_sha = self._github.get_pull_request(pr_number).head_sha
        runs = self._github.list_workflow_runs_for_head(head_sha)
        if relevant_runs(runs, head_sha=head_sha, ci=self._ci):
            return reconcile(head_sha=head_sha, runs=runs, checks=(), statuses=(), ci=self._ci)
        return reconcile(
            head_sha=head_sha,
            runs=runs,
            checks=self._github.list_check_runs(head_sha),
            statuses=self._github.list_commit_statuses(head_sha),
            ci=self._ci,
        )

    def wait_for_ci_and_merge(self, pr_number: int, *, commit_title: str) -> bool:
        """Poll until the PR merges, CI fails, or the wait budget runs out."""
        max_wait_seconds = self._ci.max_wait_minutes * 60
        poll_seconds = self._ci.poll_interval_seconds
        started = self._monotonic()
        log_event(
            LOGGER,
            "ci_monitor_started",
            pr_number=pr_number,
            max_wait_minutes=self._ci.max_wait_minutes,
            poll_interval_seconds=poll_seconds,
        )

        while self._monotonic() - started < max_wait_seconds:
            try:
                pr_status = self.get_pr_status(pr_number)
                if pr_status.merged:
                    log_event(LOGGER, "ci_monitor_finished", pr_number=pr_number, outcome="merged")
                    return True
                ci_status = self.get_ci_status(pr_number, head_sha=pr_status.head_sha)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "ci_poll_failed",
                    level=logging.WARNING,
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._sleep(poll_seconds)
                continue

            if ci_status.state == "success" and pr_status.mergeable:
                merged = self._merge(pr_status, commit_title=commit_title)
                log_event(
                    LOGGER,
                    "ci_monitor_finished",
                    pr_number=pr_number,
                    outcome="merged" if merged else "merge_failed",
                )
                return merged

            if ci_status.state in ("failure", "error"):
                log_event(
                    LOGGER,
                    "ci_monitor_finished",
                    level=logging.WARNING,
                    pr_number=pr_number,
                    outcome="ci_failed",
                    state=ci_status.state,
                    conclusion=ci_status.conclusion,
                    description=ci_status.description,
                )
                return False

            log_event(
                LOGGER,
                "ci_pending",
                pr_number=pr_number,
                elapsed_seconds=round(self._monotonic() - started),
                description=ci_status.description,
            )
            self._sleep(poll_seconds)

        log_event(
            LOGGER,
            "ci_monitor_finished",
            level=logging.WARNING,
            pr_number=pr_number,
            outcome="timed_out",
        )
        return False

    def _merge(self, pr_status: PullRequestSnapshot, *, commit_title: str) -> bool:
        if not self._github.merge_pull_request(pr_status.number, commit_title=commit_title):
            return False
        try:
            self._github.delete_branch_ref(pr_status.head_ref)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "branch_ref_delete_failed",
                level=logging.WARNING,
                branch=pr_status.head_ref,
                error_type=type(exc).__name__,
            )
        return True

    def failure_logs(self, pr_number: int) -> str:
        try:
            head_sha = self._github.get_pull_request(pr_number).head_sha
            runs = relevant_runs(
                self._github.list_workflow_runs_for_head(head_sha), head_sha=head_sha, ci=self._ci
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ci_failure_logs_unavailable",
                level=logging.WARNING,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            return f"Failed to fetch workflow logs: {exc}"

        if not runs:
            return "No CI workflows found for this PR"
        failed_runs = [run for run in runs if is_failed_run(run)]
        if not failed_runs:
            return "No failed workflows found for this PR"

        sections: list[str] = []
        for run in failed_runs:
            sections.append(f"=== WORKFLOW: {run.name or 'Unknown'} ({run.conclusion}) ===")
            sections.append(f"URL: {run.html_url}")
            try:
                jobs = self._github.list_workflow_jobs(run.run_id)
            except Exception as exc:  # noqa: BLE001
                sections.append(f"Failed to fetch jobs for workflow {run.name}: {exc}")
                continue
            for job in jobs:
                if job.conclusion not in ("failure", "cancelled"):
                    continue
                sections.append(f"--- JOB: {job.name} ({job.conclusion}) ---")
                try:
                    sections.append(summarize_job_log(self._github.get_job_log(job.job_id)))
                except Exception as exc:  # noqa: BLE001
                    sections.append(f"Failed to fetch job logs: {exc}")
        return "\n".join(sections)


def summarize_job_log(raw_log: str) -> str:
    lines = raw_log.splitlines()
    error_lines = [
        line
        for line in lines
        if any(marker in line.lower() for marker in _ERROR_MARKERS)
    ][:_MAX_ERROR_LINES]
    parts: list[str] = []
    if error_lines:
        parts.append("ERROR LINES:")
        parts.extend(error_lines)
    parts.append(f"LAST {_MAX_TAIL_LINES} LINES:")
    parts.extend(lines[-_MAX_TAIL_LINES:])
    return "\n".join(parts)
