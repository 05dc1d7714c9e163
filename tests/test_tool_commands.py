from __future__ import annotations

import json
from pathlib import Path

import pytest

from seedloop.shell import CommandResult
from seedloop.tool_commands import (
    AnalyzeCapabilities,
    BlockTask,
    BuildProject,
    ExecuteScript,
    InspectStructure,
    InstallPackage,
    NukeBranch,
    RestartTask,
    RunTests,
    SearchCodebase,
    ToolExecutor,
    ToolResult,
    is_execution_command,
    parse_tool_command,
    parse_tool_commands,
)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("NUKE_BRANCH: branch history is tangled", NukeBranch(reason="branch history is tangled")),
        ("restart_task: wrong approach", RestartTask(reason="wrong approach")),
        ("I think BLOCK_TASK: needs human input", BlockTask(reason="needs human input")),
        (
            "EXECUTE_SCRIPT: scripts/gen.py - regenerate fixtures",
            ExecuteScript(script_path="scripts/gen.py", reason="regenerate fixtures"),
        ),
        ("RUN_TESTS: test_parser - check parser", RunTests(pattern="test_parser", reason="check parser")),
        ("RUN_TESTS: - everything", RunTests(pattern=None, reason="everything")),
        (
            "INSTALL_PACKAGE: requests - http client",
            InstallPackage(package="requests", reason="http client"),
        ),
        ("BUILD_PROJECT: verify syntax", BuildProject(reason="verify syntax")),
        (
            "SEARCH_CODEBASE: load_config - find callers",
            SearchCodebase(query="load_config", reason="find callers"),
        ),
        ("ANALYZE_CAPABILITIES: survey", AnalyzeCapabilities(reason="survey")),
        (
            "INSPECT_STRUCTURE: src/app.py - size check",
            InspectStructure(file_path="src/app.py", reason="size check"),
        ),
        ("Nothing to do here", None),
    ],
)
def test_parse_tool_command(text: str, expected: object) -> None:
    assert parse_tool_command(text) == expected


def test_parse_tool_command_first_table_entry_wins() -> None:
    text = "BLOCK_TASK: stuck\nNUKE_BRANCH: reset"

    assert parse_tool_command(text) == NukeBranch(reason="reset")
    assert parse_tool_commands(text) == [BlockTask(reason="stuck"), NukeBranch(reason="reset")]


def test_is_execution_command() -> None:
    assert is_execution_command(BuildProject(reason="x"))
    assert not is_execution_command(RestartTask(reason="x"))


def test_tool_result_render_truncates() -> None:
    result = ToolResult(success=True, message="ok", action="BUILD_SUCCESS", stdout="x" * 10)

    assert result.render(limit=4) == "[BUILD_SUCCESS] ok\nxxxx..."
    assert ToolResult(success=False, message="m", action="A").render() == "[A] m"


class FakeRunner:
    def __init__(self, result: CommandResult) -> None:
        self.result = result
        self.calls: list[tuple[list[str], Path | None]] = []

    def __call__(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        _ = input_text, timeout_seconds
        self.calls.append((argv, cwd))
        return self.result


def _executor(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, result: CommandResult) -> tuple[ToolExecutor, FakeRunner]:
    fake = FakeRunner(result)
    monkeypatch.setattr("seedloop.tool_commands.run_capture", fake)
    return ToolExecutor(tmp_path, python="py"), fake


def test_execute_script_checks_path_and_exit_code(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    executor, fake = _executor(monkeypatch, tmp_path, CommandResult(1, "", "Traceback"))
    (tmp_path / "gen.py").write_text("print(1)\n", encoding="utf-8")

    missing = executor.execute(ExecuteScript(script_path="nope.py", reason="r"))
    escaped = executor.execute(ExecuteScript(script_path="../outside.py", reason="r"))
    failed = executor.execute(ExecuteScript(script_path="gen.py", reason="r"))

    assert missing.action == "SCRIPT_NOT_FOUND"
    assert escaped.action == "SCRIPT_NOT_FOUND"
    assert failed.action == "SCRIPT_ERROR"
    assert failed.stderr == "Traceback"
    assert fake.calls == [(["py", str((tmp_path / "gen.py").resolve())], tmp_path)]


def test_run_tests_and_build(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    executor, fake = _executor(monkeypatch, tmp_path, CommandResult(0, "3 passed", ""))

    tests = executor.execute(RunTests(pattern="parser", reason="r"))
    build = executor.execute(BuildProject(reason="r"))

    assert tests.action == "TESTS_PASSED"
    assert "for pattern parser" in tests.message
    assert build.action == "BUILD_SUCCESS"
    assert [call[0] for call in fake.calls] == [
        ["py", "-m", "pytest", "-q", "-k", "parser"],
        ["py", "-m", "compileall", "-q", "."],
    ]


def test_failed_commands_map_to_failure_actions(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    executor, _ = _executor(monkeypatch, tmp_path, CommandResult(2, "", "boom"))

    assert executor.execute(RunTests(pattern=None, reason="r")).action == "TESTS_FAILED"
    assert executor.execute(InstallPackage(package="x", reason="r")).action == "PACKAGE_INSTALL_FAILED"
    assert executor.execute(BuildProject(reason="r")).action == "BUILD_FAILED"
    assert executor.execute(SearchCodebase(query="q", reason="r")).action == "SEARCH_ERROR"


def test_search_codebase_counts_matches(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    executor, fake = _executor(monkeypatch, tmp_path, CommandResult(0, "./a.py:1:x\n./b.py:2:x\n", ""))

    result = executor.execute(SearchCodebase(query="x", reason="callers"))

    assert result.action == "CODEBASE_SEARCHED"
    assert result.message == 'Found 2 matches for "x": callers'
    assert fake.calls[0][0][-3:] == ["--", "x", "."]

    fake.result = CommandResult(1, "", "")
    assert executor.execute(SearchCodebase(query="zzz", reason="r")).message.startswith("Found 0 matches")


def test_analyze_capabilities(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    executor, _ = _executor(monkeypatch, tmp_path, CommandResult(0, "abc first commit", ""))
    (tmp_path / "tests").mkdir()
    (tmp_path / "app.py").write_text("", encoding="utf-8")
    (tmp_path / "tests" / "test_app.py").write_text("", encoding="utf-8")

    result = executor.execute(AnalyzeCapabilities(reason="r"))

    assert result.action == "CAPABILITIES_ANALYZED"
    assert "python_files: 2" in result.stdout
    assert "test_files: 1" in result.stdout
    assert "abc first commit" in result.stdout


def test_inspect_structure(tmp_path: Path) -> None:
    (tmp_path / "mod.py").write_text(
        "import os\nfrom pathlib import Path\n\n\nclass A:\n    def f(self):\n        pass\n\n"
        "async def g():\n    pass\n",
        encoding="utf-8",
    )
    executor = ToolExecutor(tmp_path)

    result = executor.execute(InspectStructure(file_path="mod.py", reason="r"))
    missing = executor.execute(InspectStructure(file_path="none.py", reason="r"))

    assert result.action == "STRUCTURE_INSPECTED"
    assert json.loads(result.stdout) == {
        "total_lines": 10,
        "non_empty_lines": 7,
        "functions": 2,
        "classes": 1,
        "imports": 2,
    }
    assert missing.action == "FILE_NOT_FOUND"
