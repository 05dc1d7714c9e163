from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int = 60
    backoff_base_seconds: int = 30
    backoff_max_seconds: int = 900
    max_cycles: int | None = None


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    workspace_dir: Path
    default_branch: str = "main"
    remote_name: str = "origin"
    remote_url: str | None = None
    objectives: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_remote_url(self) -> str:
        if self.remote_url:
            return self.remote_url
        return f"git@github.com:{self.owner}/{self.name}.git"


@dataclass(frozen=True)
class CodexConfig:
    enabled: bool = True
    important_model: str | None = None
    routine_model: str | None = None
    sandbox: str | None = None
    profile: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class CIConfig:
    max_wait_minutes: int = 30
    poll_interval_seconds: int = 30
    max_attempts: int = 3
    workflow_names: tuple[str, ...] = ("Development Testing CI",)
    workflow_name_keywords: tuple[str, ...] = ("CI", "Test")


@dataclass(frozen=True)
class WorkflowConfig:
    max_iterations: int = 10
    review_pass_threshold: int = 80


@dataclass(frozen=True)
class SchedulerConfig:
    exclude_negative_scores: bool = False
    repository_state_ttl_hours: int = 24


@dataclass(frozen=True)
class FilesConfig:
    tasks: Path
    super_tasks: Path
    progress: Path
    recovery_log: Path
    memory_dir: Path
    repository_state: Path


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    codex: CodexConfig
    ci: CIConfig
    workflow: WorkflowConfig
    scheduler: SchedulerConfig
    files: FilesConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(cast(dict[str, object], data))


def parse_config(data: dict[str, object]) -> AppConfig:
    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    codex_data = _optional_table(data, "codex") or {}
    ci_data = _optional_table(data, "ci") or {}
    workflow_data = _optional_table(data, "workflow") or {}
    scheduler_data = _optional_table(data, "scheduler") or {}
    files_data = _optional_table(data, "files") or {}

    base_dir = Path(_require_str(runtime_data, "base_dir")).expanduser()
    runtime = RuntimeConfig(
        base_dir=base_dir,
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 60),
        backoff_base_seconds=_int_with_default(runtime_data, "backoff_base_seconds", 30),
        backoff_max_seconds=_int_with_default(runtime_data, "backoff_max_seconds", 900),
        max_cycles=_optional_positive_int(runtime_data, "max_cycles"),
    )
    if runtime.poll_interval_seconds < 1:
        raise ConfigError("runtime.poll_interval_seconds must be >= 1")
    if runtime.backoff_base_seconds < 1:
        raise ConfigError("runtime.backoff_base_seconds must be >= 1")
    if runtime.backoff_max_seconds < runtime.backoff_base_seconds:
        raise ConfigError("runtime.backoff_max_seconds must be >= runtime.backoff_base_seconds")

    repo = RepoConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        workspace_dir=_path_with_default(repo_data, "workspace_dir", base_dir / "workspace"),
        default_branch=_str_with_default(repo_data, "default_branch", "main"),
        remote_name=_str_with_default(repo_data, "remote_name", "origin"),
        remote_url=_optional_str(repo_data, "remote_url"),
        objectives=_tuple_of_str(repo_data, "objectives"),
    )

    codex = CodexConfig(
        enabled=_bool_with_default(codex_data, "enabled", True),
        important_model=_optional_str(codex_data, "important_model"),
        routine_model=_optional_str(codex_data, "routine_model"),
        sandbox=_optional_str(codex_data, "sandbox"),
        profile=_optional_str(codex_data, "profile"),
        extra_args=_tuple_of_str(codex_data, "extra_args"),
    )

    ci = CIConfig(
        max_wait_minutes=_int_with_default(ci_data, "max_wait_minutes", 30),
        poll_interval_seconds=_int_with_default(ci_data, "poll_interval_seconds", 30),
        max_attempts=_int_with_default(ci_data, "max_attempts", 3),
        workflow_names=_tuple_of_str_with_default(
            ci_data, "workflow_names", ("Development Testing CI",)
        ),
        workflow_name_keywords=_tuple_of_str_with_default(
            ci_data, "workflow_name_keywords", ("CI", "Test")
        ),
    )
    if ci.max_wait_minutes < 1:
        raise ConfigError("ci.max_wait_minutes must be >= 1")
    if ci.poll_interval_seconds < 1:
        raise ConfigError("ci.poll_interval_seconds must be >= 1")
    if ci.max_attempts < 1:
        raise ConfigError("ci.max_attempts must be >= 1")

    workflow = WorkflowConfig(
        max_iterations=_int_with_default(workflow_data, "max_iterations", 10),
        review_pass_threshold=_int_with_default(workflow_data, "review_pass_threshold", 80),
    )
    if workflow.max_iterations < 1:
        raise ConfigError("workflow.max_iterations must be >= 1")
    if not 0 <= workflow.review_pass_threshold <= 100:
        raise ConfigError("workflow.review_pass_threshold must be between 0 and 100")

    scheduler = SchedulerConfig(
        exclude_negative_scores=_bool_with_default(
            scheduler_data, "exclude_negative_scores", False
        ),
        repository_state_ttl_hours=_int_with_default(
            scheduler_data, "repository_state_ttl_hours", 24
        ),
    )
    if scheduler.repository_state_ttl_hours < 1:
        raise ConfigError("scheduler.repository_state_ttl_hours must be >= 1")

    files = FilesConfig(
        tasks=_file_path(files_data, "tasks", base_dir, "tasks.json"),
        super_tasks=_file_path(files_data, "super_tasks", base_dir, "super-tasks.json"),
        progress=_file_path(files_data, "progress", base_dir, "PROGRESS.md"),
        recovery_log=_file_path(files_data, "recovery_log", base_dir, "recovery.log"),
        memory_dir=_file_path(files_data, "memory_dir", base_dir, "memory"),
        repository_state=_file_path(
            files_data, "repository_state", base_dir, "repository-state.json"
        ),
    )

    return AppConfig(
        runtime=runtime,
        repo=repo,
        codex=codex,
        ci=ci,
        workflow=workflow,
        scheduler=scheduler,
        files=files,
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _optional_positive_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be an integer >= 1 if provided")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _path_with_default(data: dict[str, object], key: str, default: Path) -> Path:
    value = _optional_str(data, key)
    if value is None:
        return default
    return Path(value).expanduser()


def _file_path(data: dict[str, object], key: str, base_dir: Path, default_name: str) -> Path:
    value = _optional_str(data, key)
    if value is None:
        return base_dir / default_name
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return base_dir / path
