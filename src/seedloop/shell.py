from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import subprocess


class CommandError(RuntimeError):
    def __init__(self, argv: list[str], returncode: int, stdout: str, stderr: str) -> None:
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


LOGGER = logging.getLogger("seedloop.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    result = run_capture(argv, cwd=cwd, input_text=input_text)
    if check and not result.ok:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            result.returncode,
            _preview(result.stderr),
            _preview(result.stdout),
        )
        raise CommandError(argv, result.returncode, result.stdout, result.stderr)
    return result.stdout


def run_capture(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    timeout_seconds: float | None = None,
) -> CommandResult:
    """Run a command and return its exit status and output without raising on failure."""
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        stdout = exc.stdout if isinstance(exc.stdout, str) else ""
        return CommandResult(
            returncode=124,
            stdout=stdout,
            stderr=f"timed out after {timeout_seconds}s",
        )
    return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
