from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import urlencode

from seedloop.models import (
    CheckRunSnapshot,
    CommitStatusSnapshot,
    PullRequest,
    PullRequestSnapshot,
    WorkflowJobSnapshot,
    WorkflowRunSnapshot,
)
from seedloop.observability import log_event
from seedloop.shell import CommandError, run


LOGGER = logging.getLogger("seedloop.github_gateway")


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub polling failure; caller should retry next poll."""


class PullRequestConflictError(RuntimeError):
    """GitHub refused to create a pull request (HTTP 422)."""

    def __init__(self, head: str, message: str) -> None:
        self.head = head
        self.message = message
        super().__init__(f"Pull request for {head} rejected: {message}")

    @property
    def no_commits_between(self) -> bool:
        return "no commits between" in self.message.lower()


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        try:
            payload = self._api_json(
                "POST",
                path,
                payload={"title": title, "head": head, "base": base, "body": body},
            )
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for PR")
            number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except CommandError as exc:
            detail = f"{exc.stderr}\n{exc.stdout}"
            log_event(
                LOGGER,
                "github_pr_create_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
                error=_preview_for_log(detail),
            )
            if "HTTP 422" in detail or "Validation Failed" in detail:
                raise PullRequestConflictError(head, detail.strip()) from exc
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def find_pull_request_by_head(self, *, head: str, base: str | None = None) -> PullRequest | None:
        query_items: dict[str, str] = {
            "state": "open",
            "head": f"{self.owner}:{head}",
            "per_page": "100",
        }
        if base is not None:
            query_items["base"] = base
        path = f"/repos/{self.owner}/{self.name}/pulls?{urlencode(query_items)}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")

        candidates: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            number = _as_int(item_obj.get("number"), field="number")
            html_url = _as_string(item_obj.get("html_url"))
            candidates.append(PullRequest(number=number, html_url=html_url))

        selected = max(candidates, key=lambda pr: pr.number) if candidates else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            found=selected is not None,
            pr_number=selected.number if selected else None,
        )
        return selected

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head/base")

        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            state=_as_string(payload_obj.get("state")),
            head_ref=_as_string(head.get("ref")),
            head_sha=_as_string(head.get("sha")),
            base_ref=_as_string(base.get("ref")),
            merged=_as_bool(payload_obj.get("merged")),
            mergeable=_as_optional_bool(payload_obj.get("mergeable")),
            mergeable_state=_as_string(payload_obj.get("mergeable_state")).strip().lower(),
            html_url=_as_string(payload_obj.get("html_url")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            mergeable=snapshot.mergeable,
            merged=snapshot.merged,
        )
        return snapshot

    def merge_pull_request(self, pr_number: int, *, commit_title: str) -> bool:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        try:
            payload = self._api_json(
                "PUT",
                path,
                payload={"merge_method": "squash", "commit_title": commit_title},
            )
        except CommandError as exc:
            log_event(
                LOGGER,
                "github_pr_merge_failed",
                level=logging.WARNING,
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=_preview_for_log(exc.stderr),
            )
            return False
        except ValueError as exc:
            log_event(
                LOGGER,
                "github_pr_merge_failed",
                level=logging.WARNING,
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=_preview_for_log(str(exc)),
            )
            return False
        payload_obj = _as_object_dict(payload) or {}
        merged = payload_obj.get("merged") is True
        if merged:
            log_event(
                LOGGER,
                "github_pr_merged",
                pr_number=pr_number,
                sha=_as_optional_str(payload_obj.get("sha")),
            )
        return merged

    def delete_branch_ref(self, branch: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{branch}"
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_branch_ref_deleted", branch=branch)

    def list_workflow_runs_for_head(self, head_sha: str) -> tuple[WorkflowRunSnapshot, ...]:
        query = urlencode({"head_sha": head_sha, "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/actions/runs?{query}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for workflow runs")
        runs_payload = payload_obj.get("workflow_runs")
        if not isinstance(runs_payload, list):
            raise RuntimeError("Unexpected GitHub response: expected workflow_runs list")

        runs: list[WorkflowRunSnapshot] = []
        for item in runs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            runs.append(
                WorkflowRunSnapshot(
                    run_id=_as_int(item_obj.get("id"), field="id"),
                    name=_as_string(item_obj.get("name")),
                    event=_as_string(item_obj.get("event")).strip().lower(),
                    status=_as_string(item_obj.get("status")).strip().lower(),
                    conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                    html_url=_as_string(item_obj.get("html_url")),
                    head_sha=_as_string(item_obj.get("head_sha")),
                    created_at=_as_string(item_obj.get("created_at")),
                    updated_at=_as_string(item_obj.get("updated_at")),
                )
            )

        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_runs",
            head_sha=head_sha,
            count=len(runs),
        )
        return tuple(sorted(runs, key=lambda run: run.run_id))

    def list_workflow_jobs(self, run_id: int) -> tuple[WorkflowJobSnapshot, ...]:
        path = f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}/jobs?per_page=100"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for workflow jobs")
        jobs_payload = payload_obj.get("jobs")
        if not isinstance(jobs_payload, list):
            raise RuntimeError("Unexpected GitHub response: expected jobs list")

        jobs: list[WorkflowJobSnapshot] = []
        for item in jobs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            jobs.append(
                WorkflowJobSnapshot(
                    job_id=_as_int(item_obj.get("id"), field="id"),
                    name=_as_string(item_obj.get("name")),
                    status=_as_string(item_obj.get("status")).strip().lower(),
                    conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                    html_url=_as_string(item_obj.get("html_url")),
                    started_at=_as_string(item_obj.get("started_at")),
                    completed_at=_as_string(item_obj.get("completed_at")),
                )
            )

        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_jobs",
            run_id=run_id,
            count=len(jobs),
        )
        return tuple(sorted(jobs, key=lambda job: job.job_id))

    def get_job_log(self, job_id: int) -> str:
        path = f"/repos/{self.owner}/{self.name}/actions/jobs/{job_id}/logs"
        return self._api_text("GET", path)

    def list_check_runs(self, head_sha: str) -> tuple[CheckRunSnapshot, ...]:
        path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/check-runs?per_page=100"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for check runs")
        runs_payload = payload_obj.get("check_runs")
        if not isinstance(runs_payload, list):
            raise RuntimeError("Unexpected GitHub response: expected check_runs list")

        checks: list[CheckRunSnapshot] = []
        for item in runs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            output_obj = _as_object_dict(item_obj.get("output"))
            checks.append(
                CheckRunSnapshot(
                    name=_as_string(item_obj.get("name")),
                    status=_as_string(item_obj.get("status")).strip().lower(),
                    conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                    title=_as_optional_str(output_obj.get("title")) if output_obj else None,
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="check_runs",
            head_sha=head_sha,
            count=len(checks),
        )
        return tuple(checks)

    def list_commit_statuses(self, head_sha: str) -> tuple[CommitStatusSnapshot, ...]:
        path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/status"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for commit status")
        statuses_payload = payload_obj.get("statuses")
        if not isinstance(statuses_payload, list):
            raise RuntimeError("Unexpected GitHub response: expected statuses list")

        statuses: list[CommitStatusSnapshot] = []
        for item in statuses_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            statuses.append(
                CommitStatusSnapshot(
                    context=_as_string(item_obj.get("context")),
                    state=_as_string(item_obj.get("state")).strip().lower(),
                    description=_as_optional_str(item_obj.get("description")),
                    target_url=_as_optional_str(item_obj.get("target_url")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="commit_statuses",
            head_sha=head_sha,
            count=len(statuses),
        )
        return tuple(statuses)

    def _api_text(self, method: str, path: str) -> str:
        method_upper = method.upper()
        if method_upper != "GET":
            raise ValueError("_api_text currently only supports GET")
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        raw = run(cmd, check=False)
        try:
            status_code, _headers, body = _parse_http_response(raw)
            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise RuntimeError(
                    f"GitHub API text request failed with status {status_code}: {message}"
                )
            return body
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                level=logging.WARNING,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_poll_get_failed",
                    level=logging.WARNING,
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload)
        if not raw.strip():
            return None
        return json.loads(raw)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitHub response type for bool field")


def _as_optional_bool(value: object) -> bool | None:
    if value is None:
        return None
    return _as_bool(value)
