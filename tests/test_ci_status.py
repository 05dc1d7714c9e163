from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from seedloop.ci_status import is_relevant_workflow, reconcile, reconcile_legacy, relevant_runs
from seedloop.config import CIConfig
from seedloop.models import CheckRunSnapshot, CommitStatusSnapshot, WorkflowRunSnapshot


CI = CIConfig()
SHA = "abc123"


def _run(
    run_id: int,
    *,
    name: str = "Development Testing CI",
    status: str = "completed",
    conclusion: str | None = "success",
    event: str = "pull_request",
    head_sha: str = SHA,
) -> WorkflowRunSnapshot:
    return WorkflowRunSnapshot(
        run_id=run_id,
        name=name,
        event=event,
        status=status,
        conclusion=conclusion,
        html_url=f"https://example/runs/{run_id}",
        head_sha=head_sha,
        created_at="",
        updated_at="",
    )


run_states = st.sampled_from(
    [
        ("completed", "success"),
        ("completed", "failure"),
        ("completed", "cancelled"),
        ("completed", "timed_out"),
        ("completed", "skipped"),
        ("in_progress", None),
        ("queued", None),
    ]
)
legacy_checks = st.lists(
    st.builds(
        CheckRunSnapshot,
        name=st.sampled_from(["build", "lint"]),
        status=st.sampled_from(["completed", "in_progress"]),
        conclusion=st.sampled_from(["success", "failure", None]),
    ),
    max_size=4,
)
legacy_statuses = st.lists(
    st.builds(
        CommitStatusSnapshot,
        context=st.sampled_from(["ci/a", "ci/b"]),
        state=st.sampled_from(["success", "pending", "failure", "error"]),
        description=st.none(),
    ),
    max_size=4,
)


def test_is_relevant_workflow_by_name_or_keyword() -> None:
    assert is_relevant_workflow("Development Testing CI", CI)
    assert is_relevant_workflow("Unit Test Suite", CI)
    assert not is_relevant_workflow("Deploy docs", CI)


def test_relevant_runs_filters_sha_event_and_name() -> None:
    runs = [
        _run(1),
        _run(2, head_sha="other"),
        _run(3, event="push"),
        _run(4, name="Deploy docs"),
    ]

    assert [run.run_id for run in relevant_runs(runs, head_sha=SHA, ci=CI)] == [1]


@given(states=st.lists(run_states, min_size=1, max_size=6), checks=legacy_checks, statuses=legacy_statuses)
def test_any_failed_workflow_run_means_failure(
    states: list[tuple[str, str | None]],
    checks: list[CheckRunSnapshot],
    statuses: list[CommitStatusSnapshot],
) -> None:
    runs = [_run(idx, status=status, conclusion=conclusion) for idx, (status, conclusion) in enumerate(states)]

    result = reconcile(head_sha=SHA, runs=runs, checks=checks, statuses=statuses, ci=CI)

    has_failed = any(
        status == "completed" and conclusion in ("failure", "cancelled", "timed_out")
        for status, conclusion in states
    )
    if has_failed:
        assert result.state == "failure"
    else:
        assert result.state in ("pending", "success")
    if result.state == "success":
        assert all(status == "completed" for status, _ in states)


@given(checks=legacy_checks, statuses=legacy_statuses)
def test_legacy_signals_only_apply_without_workflow_runs(
    checks: list[CheckRunSnapshot], statuses: list[CommitStatusSnapshot]
) -> None:
    irrelevant = [_run(1, event="push", conclusion="failure")]

    result = reconcile(head_sha=SHA, runs=irrelevant, checks=checks, statuses=statuses, ci=CI)

    assert result == reconcile_legacy(checks, statuses)


def test_workflow_runs_override_legacy_failures() -> None:
    result = reconcile(
        head_sha=SHA,
        runs=[_run(1)],
        checks=[CheckRunSnapshot(name="old", status="completed", conclusion="failure")],
        statuses=[CommitStatusSnapshot(context="ci/x", state="error", description="boom")],
        ci=CI,
    )

    assert result.state == "success"


def test_legacy_precedence_failure_then_pending_then_success() -> None:
    failing = reconcile_legacy(
        [CheckRunSnapshot(name="build", status="in_progress", conclusion=None)],
        [CommitStatusSnapshot(context="ci/x", state="error", description="boom")],
    )
    pending = reconcile_legacy(
        [CheckRunSnapshot(name="build", status="in_progress", conclusion=None)], []
    )
    passing = reconcile_legacy([], [])

    assert failing.state == "failure"
    assert failing.description == "boom"
    assert pending.state == "pending"
    assert passing.state == "success"
