from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import shutil

from seedloop.clock import Clock, utc_now
from seedloop.config import RepoConfig
from seedloop.observability import log_event
from seedloop.shell import CommandError, run


LOGGER = logging.getLogger("seedloop.git_ops")


class WorkspaceCorruptionError(RuntimeError):
    pass


@dataclass(frozen=True)
class BranchValidation:
    valid: bool
    reason: str | None = None
    commits_ahead: int = 0


def task_branch_prefix(task_id: int) -> str:
    return f"feature/task-{task_id}-"


class GitWorkspace:
    """The single working checkout the active task is implemented in."""

    def __init__(self, repo: RepoConfig, *, clock: Clock = utc_now) -> None:
        self.repo = repo
        self._clock = clock

    @property
    def path(self) -> Path:
        return self.repo.workspace_dir

    def _git(self, *args: str) -> str:
        return run(["git", "-C", str(self.path), *args])

    def ensure_workspace(self) -> None:
        if not (self.path / ".git").exists():
            self.clone()
            return
        try:
            status = self.status_porcelain()
        except CommandError as exc:
            raise WorkspaceCorruptionError(f"git status failed in {self.path}") from exc
        if status:
            log_event(LOGGER, "git_workspace_dirty", workspace=str(self.path), entries=len(status))
            self._git("reset", "--hard", "HEAD")
            self._git("clean", "-fd")

    def clone(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        log_event(LOGGER, "git_workspace_cloned", workspace=str(self.path))
        run(["git", "clone", self.repo.effective_remote_url, str(self.path)])

    def remove_checkout(self) -> None:
        if self.path.exists():
            log_event(LOGGER, "git_workspace_removed", workspace=str(self.path))
            shutil.rmtree(self.path)

    def sync_with_remote(self) -> None:
        remote = self.repo.remote_name
        default = self.repo.default_branch
        log_event(LOGGER, "git_sync_with_remote", workspace=str(self.path), default_branch=default)
        self._git("fetch", remote, "--prune")
        self._git("checkout", "-B", default, f"{remote}/{default}")
        self._git("reset", "--hard", f"{remote}/{default}")
        self._git("clean", "-fd")

    def create_feature_branch(self, task_id: int) -> str:
        self.sync_with_remote()
        millis = int(self._clock().timestamp() * 1000)
        branch = f"{task_branch_prefix(task_id)}{millis}"
        self._git("checkout", "-b", branch)
        current = self.current_branch()
        if current != branch:
            raise RuntimeError(f"Branch creation failed: expected {branch}, got {current}")
        log_event(LOGGER, "git_branch_created", task_id=task_id, branch=branch)
        return branch

    def find_remote_task_branch(self, task_id: int) -> str | None:
        remote = self.repo.remote_name
        pattern = f"{remote}/{task_branch_prefix(task_id)}*"
        out = self._git("branch", "-r", "--list", pattern)
        branches = sorted(
            line.strip()[len(remote) + 1 :] for line in out.splitlines() if line.strip()
        )
        if not branches:
            return None
        return branches[-1]

    def checkout_remote_branch(self, branch: str) -> None:
        remote = self.repo.remote_name
        log_event(LOGGER, "git_branch_reused", branch=branch)
        self._git("checkout", "-B", branch, f"{remote}/{branch}")
        self._git("reset", "--hard", f"{remote}/{branch}")

    def recreate_branch_from_default(self, branch: str) -> None:
        self.sync_with_remote()
        if self.local_branch_exists(branch):
            self.delete_branch(branch)
        remote = self.repo.remote_name
        self._git("checkout", "-b", branch, f"{remote}/{self.repo.default_branch}")
        log_event(LOGGER, "git_branch_recreated", branch=branch)

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def stage_all(self) -> None:
        self._git("add", "-A")

    def apply_patch_file(self, patch_file: Path, flags: tuple[str, ...]) -> None:
        self._git("apply", *flags, str(patch_file))

    def list_staged_files(self) -> tuple[str, ...]:
        out = self._git("diff", "--cached", "--name-only").strip()
        if not out:
            return ()
        return tuple(line for line in out.splitlines() if line.strip())

    def commit(self, message: str) -> None:
        self.stage_all()
        if not self.list_staged_files():
            raise RuntimeError("No staged changes to commit")
        log_event(LOGGER, "git_commit", workspace=str(self.path), message=message)
        self._git("commit", "-m", message)

    def push(self, branch: str) -> None:
        log_event(LOGGER, "git_push", branch=branch)
        try:
            self._git("push", "-u", self.repo.remote_name, branch)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_push_failed",
                level=logging.WARNING,
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def commit_and_push(self, message: str, branch: str) -> None:
        self.commit(message)
        self.push(branch)

    def diff(self, base: str | None = None) -> str:
        if base is None:
            return self._git("diff", "HEAD")
        return self._git("diff", f"{base}...HEAD")

    def status_porcelain(self) -> tuple[str, ...]:
        out = self._git("status", "--porcelain")
        return tuple(line for line in out.splitlines() if line.strip())

    def commit_count_between(self, base: str, head: str) -> int:
        out = self._git("rev-list", "--count", f"{base}..{head}").strip()
        return int(out) if out.isdigit() else 0

    def local_branch_exists(self, branch: str) -> bool:
        out = self._git("branch", "--list", branch)
        return bool(out.strip())

    def remote_branch_exists(self, branch: str) -> bool:
        out = self._git("ls-remote", "--heads", self.repo.remote_name, branch)
        return bool(out.strip())

    def delete_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_branch_deleted", branch=branch)
        self._git("branch", "-D", branch)

    def validate_branch_for_pr(self, branch: str) -> BranchValidation:
        if not self.local_branch_exists(branch):
            return BranchValidation(valid=False, reason=f"Branch {branch} does not exist locally")
        remote = self.repo.remote_name
        self._git("fetch", remote, "--prune")
        ahead = self.commit_count_between(f"{remote}/{self.repo.default_branch}", branch)
        if ahead < 1:
            return BranchValidation(
                valid=False,
                reason=f"Branch {branch} has no commits ahead of {self.repo.default_branch}",
            )
        if not self.remote_branch_exists(branch):
            return BranchValidation(
                valid=False,
                reason=f"Branch {branch} has not been pushed to {remote}",
                commits_ahead=ahead,
            )
        return BranchValidation(valid=True, commits_ahead=ahead)
