"""Tool commands the text service may request, and their execution inside the workspace."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
import re
import sys
from typing import Callable, Literal, TypeGuard

from seedloop.observability import log_event
from seedloop.shell import CommandResult, run_capture


LOGGER = logging.getLogger("seedloop.tool_commands")

_TOOL_TIMEOUT_SECONDS = 600.0
_SEARCH_INCLUDES = ("*.py", "*.toml", "*.cfg", "*.json", "*.md")


@dataclass(frozen=True)
class NukeBranch:
    reason: str
    kind: Literal["NUKE_BRANCH"] = "NUKE_BRANCH"


@dataclass(frozen=True)
class RestartTask:
    reason: str
    kind: Literal["RESTART_TASK"] = "RESTART_TASK"


@dataclass(frozen=True)
class BlockTask:
    reason: str
    kind: Literal["BLOCK_TASK"] = "BLOCK_TASK"


@dataclass(frozen=True)
class ExecuteScript:
    script_path: str
    reason: str
    kind: Literal["EXECUTE_SCRIPT"] = "EXECUTE_SCRIPT"


@dataclass(frozen=True)
class RunTests:
    pattern: str | None
    reason: str
    kind: Literal["RUN_TESTS"] = "RUN_TESTS"


@dataclass(frozen=True)
class InstallPackage:
    package: str
    reason: str
    kind: Literal["INSTALL_PACKAGE"] = "INSTALL_PACKAGE"


@dataclass(frozen=True)
class BuildProject:
    reason: str
    kind: Literal["BUILD_PROJECT"] = "BUILD_PROJECT"


@dataclass(frozen=True)
class SearchCodebase:
    query: str
    reason: str
    kind: Literal["SEARCH_CODEBASE"] = "SEARCH_CODEBASE"


@dataclass(frozen=True)
class AnalyzeCapabilities:
    reason: str
    kind: Literal["ANALYZE_CAPABILITIES"] = "ANALYZE_CAPABILITIES"


@dataclass(frozen=True)
class InspectStructure:
    file_path: str
    reason: str
    kind: Literal["INSPECT_STRUCTURE"] = "INSPECT_STRUCTURE"


RecoveryCommand = NukeBranch | RestartTask | BlockTask
ExecutionCommand = (
    ExecuteScript
    | RunTests
    | InstallPackage
    | BuildProject
    | SearchCodebase
    | AnalyzeCapabilities
    | InspectStructure
)
ToolCommand = RecoveryCommand | ExecutionCommand


def _reason_only(pattern: str) -> re.Pattern[str]:
    return re.compile(rf"{pattern}:\s*(.+)", re.IGNORECASE)


def _arg_and_reason(pattern: str, arg: str = r"[^\s]+") -> re.Pattern[str]:
    return re.compile(rf"{pattern}:\s*({arg})\s*-\s*(.+)", re.IGNORECASE)


# Checked in this order against the whole text; the first pattern that matches wins.
_COMMAND_TABLE: tuple[tuple[re.Pattern[str], Callable[[re.Match[str]], ToolCommand]], ...] = (
    (_reason_only("NUKE_BRANCH"), lambda m: NukeBranch(reason=m.group(1).strip())),
    (_reason_only("RESTART_TASK"), lambda m: RestartTask(reason=m.group(1).strip())),
    (_reason_only("BLOCK_TASK"), lambda m: BlockTask(reason=m.group(1).strip())),
    (
        _arg_and_reason("EXECUTE_SCRIPT"),
        lambda m: ExecuteScript(script_path=m.group(1).strip(), reason=m.group(2).strip()),
    ),
    (
        _arg_and_reason("RUN_TESTS", arg=r"[^\s-]*"),
        lambda m: RunTests(pattern=m.group(1).strip() or None, reason=m.group(2).strip()),
    ),
    (
        _arg_and_reason("INSTALL_PACKAGE"),
        lambda m: InstallPackage(package=m.group(1).strip(), reason=m.group(2).strip()),
    ),
    (_reason_only("BUILD_PROJECT"), lambda m: BuildProject(reason=m.group(1).strip())),
    (
        _arg_and_reason("SEARCH_CODEBASE"),
        lambda m: SearchCodebase(query=m.group(1).strip(), reason=m.group(2).strip()),
    ),
    (_reason_only("ANALYZE_CAPABILITIES"), lambda m: AnalyzeCapabilities(reason=m.group(1).strip())),
    (
        _arg_and_reason("INSPECT_STRUCTURE"),
        lambda m: InspectStructure(file_path=m.group(1).strip(), reason=m.group(2).strip()),
    ),
)


def parse_tool_command(text: str) -> ToolCommand | None:
    for pattern, build in _COMMAND_TABLE:
        match = pattern.search(text)
        if match:
            return build(match)
    return None


def parse_tool_commands(text: str) -> list[ToolCommand]:
    """Parse one command per line, keeping line order."""
    commands: list[ToolCommand] = []
    for line in text.splitlines():
        command = parse_tool_command(line)
        if command is not None:
            commands.append(command)
    return commands


def is_execution_command(command: ToolCommand) -> TypeGuard[ExecutionCommand]:
    return not isinstance(command, NukeBranch | RestartTask | BlockTask)


@dataclass(frozen=True)
class ToolResult:
    success: bool
    message: str
    action: str
    stdout: str = ""
    stderr: str = ""

    def render(self, *, limit: int = 2000) -> str:
        body = self.stdout.strip() or self.stderr.strip()
        if len(body) > limit:
            body = f"{body[:limit]}..."
        return f"[{self.action}] {self.message}\n{body}".rstrip()


class ToolExecutor:
    def __init__(
        self,
        workspace_dir: Path,
        *,
        python: str = sys.executable,
        timeout_seconds: float = _TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self._workspace_dir = workspace_dir
        self._python = python
        self._timeout_seconds = timeout_seconds

    def execute(self, command: ExecutionCommand, *, task_id: int | None = None) -> ToolResult:
        log_event(LOGGER, "tool_requested", tool=command.kind, task_id=task_id, reason=command.reason)
        if isinstance(command, ExecuteScript):
            result = self._execute_script(command)
        elif isinstance(command, RunTests):
            result = self._run_tests(command)
        elif isinstance(command, InstallPackage):
            result = self._install_package(command)
        elif isinstance(command, BuildProject):
            result = self._build_project(command)
        elif isinstance(command, SearchCodebase):
            result = self._search_codebase(command)
        elif isinstance(command, AnalyzeCapabilities):
            result = self._analyze_capabilities(command)
        else:
            result = self._inspect_structure(command)
        log_event(
            LOGGER,
            "tool_finished",
            level=logging.INFO if result.success else logging.WARNING,
            tool=command.kind,
            task_id=task_id,
            action=result.action,
            success=result.success,
        )
        return result

    def _run(self, argv: list[str]) -> CommandResult:
        return run_capture(argv, cwd=self._workspace_dir, timeout_seconds=self._timeout_seconds)

    def _resolve(self, relative: str) -> Path | None:
        root = self._workspace_dir.resolve()
        candidate = (root / relative).resolve()
        if candidate != root and root not in candidate.parents:
            return None
        return candidate

    def _execute_script(self, command: ExecuteScript) -> ToolResult:
        script = self._resolve(command.script_path)
        if script is None or not script.is_file():
            return ToolResult(
                success=False,
                message=f"Script not found: {command.script_path}",
                action="SCRIPT_NOT_FOUND",
            )
        result = self._run([self._python, str(script)])
        if not result.ok:
            return ToolResult(
                success=False,
                message=f"Script {command.script_path} exited with {result.returncode}",
                action="SCRIPT_ERROR",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return ToolResult(
            success=True,
            message=f"Script {command.script_path} executed successfully: {command.reason}",
            action="SCRIPT_EXECUTED",
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def _run_tests(self, command: RunTests) -> ToolResult:
        argv = [self._python, "-m", "pytest", "-q"]
        if command.pattern:
            argv.extend(["-k", command.pattern])
        result = self._run(argv)
        scope = f" for pattern {command.pattern}" if command.pattern else ""
        if result.ok:
            return ToolResult(
                success=True,
                message=f"Tests passed{scope}: {command.reason}",
                action="TESTS_PASSED",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return ToolResult(
            success=False,
            message=f"Tests failed{scope}: {command.reason}",
            action="TESTS_FAILED",
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def _install_package(self, command: InstallPackage) -> ToolResult:
        result = self._run([self._python, "-m", "pip", "install", command.package])
        if result.ok:
            return ToolResult(
                success=True,
                message=f"Package {command.package} installed successfully: {command.reason}",
                action="PACKAGE_INSTALLED",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return ToolResult(
            success=False,
            message=f"Package {command.package} installation failed: {command.reason}",
            action="PACKAGE_INSTALL_FAILED",
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def _build_project(self, command: BuildProject) -> ToolResult:
        result = self._run([self._python, "-m", "compileall", "-q", "."])
        if result.ok:
            return ToolResult(
                success=True,
                message=f"Project built successfully: {command.reason}",
                action="BUILD_SUCCESS",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return ToolResult(
            success=False,
            message=f"Project build failed: {command.reason}",
            action="BUILD_FAILED",
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def _search_codebase(self, command: SearchCodebase) -> ToolResult:
        argv = ["grep", "-rn", "--exclude-dir=.git"]
        argv.extend(f"--include={pattern}" for pattern in _SEARCH_INCLUDES)
        argv.extend(["--", command.query, "."])
        result = self._run(argv)
        # grep exits 1 when nothing matched.
        if result.returncode > 1:
            return ToolResult(
                success=False,
                message=f'Error searching codebase for "{command.query}"',
                action="SEARCH_ERROR",
                stderr=result.stderr,
            )
        matches = [line for line in result.stdout.splitlines() if line.strip()]
        return ToolResult(
            success=True,
            message=f'Found {len(matches)} matches for "{command.query}": {command.reason}',
            action="CODEBASE_SEARCHED",
            stdout=result.stdout,
        )

    def _analyze_capabilities(self, command: AnalyzeCapabilities) -> ToolResult:
        root = self._workspace_dir
        python_files = [path for path in root.rglob("*.py") if ".git" not in path.parts]
        test_files = [path for path in python_files if path.name.startswith("test_")]
        history = self._run(["git", "log", "--oneline", "-10"])
        sections = [
            f"python_files: {len(python_files)}",
            f"test_files: {len(test_files)}",
            "recent_commits:",
            history.stdout.strip() if history.ok else "Git history unavailable",
        ]
        return ToolResult(
            success=True,
            message=f"Analyzed current capabilities: {command.reason}",
            action="CAPABILITIES_ANALYZED",
            stdout="\n".join(sections),
        )

    def _inspect_structure(self, command: InspectStructure) -> ToolResult:
        path = self._resolve(command.file_path)
        if path is None or not path.is_file():
            return ToolResult(
                success=False,
                message=f"File not found: {command.file_path}",
                action="FILE_NOT_FOUND",
            )
        content = path.read_text(encoding="utf-8", errors="replace")
        lines = content.splitlines()
        analysis = {
            "total_lines": len(lines),
            "non_empty_lines": sum(1 for line in lines if line.strip()),
            "functions": len(re.findall(r"^\s*(?:async\s+)?def\s+\w+", content, re.MULTILINE)),
            "classes": len(re.findall(r"^\s*class\s+\w+", content, re.MULTILINE)),
            "imports": len(re.findall(r"^\s*(?:import|from)\s+\S+", content, re.MULTILINE)),
        }
        return ToolResult(
            success=True,
            message=f"Inspected {command.file_path} structure: {command.reason}",
            action="STRUCTURE_INSPECTED",
            stdout=json.dumps(analysis, indent=2),
        )
