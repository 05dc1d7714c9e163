from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from seedloop.config import RepoConfig
from seedloop.git_ops import GitWorkspace, WorkspaceCorruptionError, task_branch_prefix
from seedloop.shell import CommandError


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _workspace(tmp_path: Path) -> GitWorkspace:
    repo = RepoConfig(owner="acme", name="widget", workspace_dir=tmp_path / "ws")
    return GitWorkspace(repo, clock=lambda: NOW)


class ScriptedGit:
    """Answers git invocations by matching on the arguments after ``-C <path>``."""

    def __init__(self, responses: dict[tuple[str, ...], str] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[list[str]] = []
        self.failing: set[tuple[str, ...]] = set()

    def __call__(self, cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        self.calls.append(cmd)
        args = tuple(cmd[3:]) if cmd[:2] == ["git", "-C"] else tuple(cmd[1:])
        if args in self.failing:
            raise CommandError(cmd, 128, "", "fatal: broken")
        return self.responses.get(args, "")

    def git_args(self) -> list[tuple[str, ...]]:
        return [tuple(cmd[3:]) for cmd in self.calls if cmd[:2] == ["git", "-C"]]


def test_ensure_workspace_clones_when_missing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    fake = ScriptedGit()
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    workspace.ensure_workspace()

    assert fake.calls == [
        ["git", "clone", "git@github.com:acme/widget.git", str(tmp_path / "ws")]
    ]


def test_ensure_workspace_cleans_dirty_checkout(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    (tmp_path / "ws" / ".git").mkdir(parents=True)
    fake = ScriptedGit({("status", "--porcelain"): " M app.py\n?? junk.txt\n"})
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    workspace.ensure_workspace()

    assert fake.git_args() == [
        ("status", "--porcelain"),
        ("reset", "--hard", "HEAD"),
        ("clean", "-fd"),
    ]


def test_ensure_workspace_signals_corruption(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    (tmp_path / "ws" / ".git").mkdir(parents=True)
    fake = ScriptedGit()
    fake.failing.add(("status", "--porcelain"))
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    with pytest.raises(WorkspaceCorruptionError, match="git status failed"):
        workspace.ensure_workspace()


def test_create_feature_branch_syncs_then_names_branch(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    workspace = _workspace(tmp_path)
    millis = int(NOW.timestamp() * 1000)
    branch = f"feature/task-7-{millis}"
    fake = ScriptedGit({("rev-parse", "--abbrev-ref", "HEAD"): f"{branch}\n"})
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    out = workspace.create_feature_branch(7)

    assert out == branch
    assert fake.git_args() == [
        ("fetch", "origin", "--prune"),
        ("checkout", "-B", "main", "origin/main"),
        ("reset", "--hard", "origin/main"),
        ("clean", "-fd"),
        ("checkout", "-b", branch),
        ("rev-parse", "--abbrev-ref", "HEAD"),
    ]


def test_create_feature_branch_verifies_checkout(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    fake = ScriptedGit({("rev-parse", "--abbrev-ref", "HEAD"): "main\n"})
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    with pytest.raises(RuntimeError, match="Branch creation failed"):
        workspace.create_feature_branch(7)


def test_find_remote_task_branch_picks_latest(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    fake = ScriptedGit(
        {
            ("branch", "-r", "--list", "origin/feature/task-3-*"): (
                "  origin/feature/task-3-100\n  origin/feature/task-3-200\n"
            )
        }
    )
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    assert workspace.find_remote_task_branch(3) == "feature/task-3-200"
    assert workspace.find_remote_task_branch(4) is None
    assert task_branch_prefix(3) == "feature/task-3-"


def test_commit_refuses_empty_changes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    fake = ScriptedGit()
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    with pytest.raises(RuntimeError, match="No staged changes"):
        workspace.commit("msg")


def test_commit_and_push(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    fake = ScriptedGit({("diff", "--cached", "--name-only"): "app.py\n"})
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    workspace.commit_and_push("Task #1: iteration 1", "feature/task-1-5")

    assert fake.git_args() == [
        ("add", "-A"),
        ("diff", "--cached", "--name-only"),
        ("commit", "-m", "Task #1: iteration 1"),
        ("push", "-u", "origin", "feature/task-1-5"),
    ]


def test_recreate_branch_from_default_deletes_existing_local_branch(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    workspace = _workspace(tmp_path)
    fake = ScriptedGit({("branch", "--list", "feature/task-1-5"): "  feature/task-1-5\n"})
    monkeypatch.setattr("seedloop.git_ops.run", fake)

    workspace.recreate_branch_from_default("feature/task-1-5")

    args = fake.git_args()
    assert ("branch", "-D", "feature/task-1-5") in args
    assert args[-1] == ("checkout", "-b", "feature/task-1-5", "origin/main")
    assert not any(arg[:1] == ("push",) for arg in args)


@pytest.mark.parametrize(
    ("responses", "valid", "reason"),
    [
        ({}, False, "does not exist locally"),
        ({("branch", "--list", "b"): "  b\n", ("rev-list", "--count", "origin/main..b"): "0\n"}, False, "no commits ahead"),
        ({("branch", "--list", "b"): "  b\n", ("rev-list", "--count", "origin/main..b"): "2\n"}, False, "has not been pushed"),
        (
            {
                ("branch", "--list", "b"): "  b\n",
                ("rev-list", "--count", "origin/main..b"): "2\n",
                ("ls-remote", "--heads", "origin", "b"): "abc\trefs/heads/b\n",
            },
            True,
            None,
        ),
    ],
)
def test_validate_branch_for_pr(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    responses: dict[tuple[str, ...], str],
    valid: bool,
    reason: str | None,
) -> None:
    workspace = _workspace(tmp_path)
    monkeypatch.setattr("seedloop.git_ops.run", ScriptedGit(responses))

    result = workspace.validate_branch_for_pr("b")

    assert result.valid is valid
    if reason is None:
        assert result.reason is None
        assert result.commits_ahead == 2
    else:
        assert result.reason is not None and reason in result.reason


def test_remove_checkout(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    (tmp_path / "ws" / "sub").mkdir(parents=True)

    workspace.remove_checkout()
    workspace.remove_checkout()

    assert not (tmp_path / "ws").exists()
