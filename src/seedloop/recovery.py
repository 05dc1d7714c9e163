from __future__ import annotations

import logging
from pathlib import Path

from seedloop.clock import Clock, hours_since, to_iso, utc_now
from seedloop.git_ops import GitWorkspace
from seedloop.models import Task
from seedloop.observability import log_event


LOGGER = logging.getLogger("seedloop.recovery")

NUKE_FAILURE_THRESHOLD = 3
NUKE_STUCK_HOURS = 24.0
STALE_TASK_HOURS = 48.0
RESEARCH_PREFIX = "Research: "


class RecoveryLog:
    """Append-only `<ts> - <Task #id|System>: <ACTION> on <target>` lines."""

    def __init__(self, path: Path, *, clock: Clock = utc_now) -> None:
        self.path = path
        self._clock = clock

    def append(self, task: Task | None, target: str, action: str) -> None:
        who = f"Task #{task.id}" if task is not None else "System"
        line = f"{to_iso(self._clock())} - {who}: {action} on {target}\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError as exc:
            log_event(
                LOGGER,
                "recovery_log_write_failed",
                level=logging.WARNING,
                path=str(self.path),
                error_type=type(exc).__name__,
            )
            return
        log_event(
            LOGGER,
            "recovery_action_applied",
            task_id=task.id if task is not None else None,
            action=action,
            target=target,
        )

    def tail(self, limit: int = 10) -> list[str]:
        if not self.path.exists():
            return []
        lines = [line for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()]
        return lines[-limit:]


class RecoveryPolicy:
    def __init__(self, workspace: GitWorkspace, log: RecoveryLog, *, clock: Clock = utc_now) -> None:
        self._workspace = workspace
        self._log = log
        self._clock = clock

    def should_nuke(self, task: Task) -> bool:
        meta = task.metadata
        if meta.failure_count >= NUKE_FAILURE_THRESHOLD:
            return True
        elapsed = hours_since(meta.last_attempt, now=self._clock())
        if elapsed is not None and elapsed > NUKE_STUCK_HOURS and task.status == "in-progress":
            return True
        return task.status == "blocked" and "unrecoverable" in (meta.blocked_reason or "")

    def nuke_reason(self, task: Task) -> str:
        meta = task.metadata
        if meta.failure_count >= NUKE_FAILURE_THRESHOLD:
            return f"Multiple failures ({meta.failure_count})"
        elapsed = hours_since(meta.last_attempt, now=self._clock())
        if elapsed is not None and elapsed > NUKE_STUCK_HOURS:
            return f"Stuck for {round(elapsed)} hours"
        return meta.blocked_reason or "Unrecoverable state detected"

    def nuke_branch_if_stuck(self, task: Task, branch: str) -> bool:
        """Recreate the local branch from the default branch when the task looks stuck.

        The remote branch and any open pull request are left alone.
        """
        if not self.should_nuke(task):
            return False
        log_event(
            LOGGER,
            "branch_nuke_started",
            level=logging.WARNING,
            task_id=task.id,
            branch=branch,
            reason=self.nuke_reason(task),
        )
        try:
            self._workspace.recreate_branch_from_default(branch)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "branch_nuke_failed",
                level=logging.ERROR,
                task_id=task.id,
                branch=branch,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        task.metadata.failure_count += 1
        task.metadata.last_attempt = to_iso(self._clock())
        task.metadata.blocked_reason = "Branch nuked due to unrecoverable state"
        task.updated_at = task.metadata.last_attempt
        self._log.append(task, branch, "BRANCH_NUKED")
        return True

    def attempt_task_recovery(self, task: Task) -> bool:
        meta = task.metadata
        now = self._clock()
        if meta.failure_count >= NUKE_FAILURE_THRESHOLD:
            task.type = "research"
            task.status = "pending"
            meta.blocked_reason = "Converted to research due to repeated failures"
            if not task.description.startswith(RESEARCH_PREFIX):
                task.description = f"{RESEARCH_PREFIX}{task.description}"
            task.updated_at = to_iso(now)
            self._log.append(task, "task", "CONVERTED_TO_RESEARCH")
            return True

        elapsed = hours_since(meta.last_attempt, now=now)
        if elapsed is not None and elapsed > STALE_TASK_HOURS and task.status == "in-progress":
            task.status = "pending"
            meta.blocked_reason = None
            meta.last_attempt = None
            task.updated_at = to_iso(now)
            self._log.append(task, "task", "RESET_STALE_TASK")
            return True
        return False

    def recover_stale_tasks(self, tasks: list[Task]) -> int:
        recovered = 0
        for task in tasks:
            if task.status == "in-progress" and self.attempt_task_recovery(task):
                recovered += 1
        return recovered

    def restart_task(self, task: Task, reason: str) -> None:
        task.status = "pending"
        task.metadata.failure_count = 0
        task.metadata.last_attempt = None
        task.metadata.context.append(f"Restarted by LLM: {reason}")
        task.updated_at = to_iso(self._clock())
        self._log.append(task, "task", "RESTART_TASK")

    def block_task(self, task: Task, reason: str) -> None:
        task.status = "blocked"
        task.metadata.blocked_reason = reason
        task.metadata.context.append(f"Blocked by LLM: {reason}")
        task.updated_at = to_iso(self._clock())
        self._log.append(task, "task", "BLOCK_TASK")

    def perform_emergency_reset(self) -> None:
        log_event(LOGGER, "emergency_reset_started", level=logging.WARNING)
        try:
            self._workspace.sync_with_remote()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "emergency_reset_sync_failed",
                level=logging.WARNING,
                error_type=type(exc).__name__,
            )
        self._workspace.remove_checkout()
        self._workspace.ensure_workspace()
        self._log.append(None, "workspace", "EMERGENCY_RESET")
