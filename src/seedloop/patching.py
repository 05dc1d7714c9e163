from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path, PurePosixPath
import re
import tempfile
from typing import TYPE_CHECKING, Callable

from seedloop.observability import log_event
from seedloop.shell import CommandError

if TYPE_CHECKING:
    from seedloop.git_ops import GitWorkspace


LOGGER = logging.getLogger("seedloop.patching")

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_DIFF_GIT_RE = re.compile(r"^diff --git a/(\S+) b/(\S+)")


class PatchValidationError(ValueError):
    pass


class PatchApplyError(RuntimeError):
    def __init__(self, failures: tuple[tuple[str, str], ...]) -> None:
        self.failures = failures
        detail = "; ".join(f"{name}: {reason}" for name, reason in failures)
        super().__init__(f"All patch strategies failed ({detail})")


class PatchReconstructionError(RuntimeError):
    pass


def validate_patch(patch_text: str) -> None:
    if not patch_text.strip():
        raise PatchValidationError("Patch is empty")
    if "diff --git" not in patch_text and "@@" not in patch_text:
        raise PatchValidationError("Patch has neither a 'diff --git' header nor a '@@' hunk marker")


@dataclass(frozen=True)
class PatchStrategy:
    name: str
    apply: Callable[[GitWorkspace, Path, str], None]


def _apply_with_index(git: GitWorkspace, patch_file: Path, patch_text: str) -> None:
    git.apply_patch_file(patch_file, ("--index",))


def _apply_then_stage(git: GitWorkspace, patch_file: Path, patch_text: str) -> None:
    git.apply_patch_file(patch_file, ())
    git.stage_all()


def _apply_ignoring_whitespace(git: GitWorkspace, patch_file: Path, patch_text: str) -> None:
    git.apply_patch_file(patch_file, ("--ignore-whitespace", "--whitespace=nowarn"))
    git.stage_all()


def _apply_by_line_reconstruction(git: GitWorkspace, patch_file: Path, patch_text: str) -> None:
    apply_unified_diff(git.path, patch_text)
    git.stage_all()


DEFAULT_STRATEGIES: tuple[PatchStrategy, ...] = (
    PatchStrategy(name="index", apply=_apply_with_index),
    PatchStrategy(name="plain_then_stage", apply=_apply_then_stage),
    PatchStrategy(name="ignore_whitespace", apply=_apply_ignoring_whitespace),
    PatchStrategy(name="line_reconstruction", apply=_apply_by_line_reconstruction),
)


class PatchApplier:
    """Applies a patch by trying each strategy in order until one succeeds."""

    def __init__(
        self, git: GitWorkspace, strategies: tuple[PatchStrategy, ...] = DEFAULT_STRATEGIES
    ) -> None:
        self._git = git
        self._strategies = strategies

    def apply(self, patch_text: str, *, task_id: int) -> str:
        validate_patch(patch_text)
        failures: list[tuple[str, str]] = []
        with tempfile.TemporaryDirectory(prefix="seedloop-patch-") as tmp_dir:
            patch_file = Path(tmp_dir) / f"task-{task_id}.patch"
            patch_file.write_text(patch_text, encoding="utf-8")
            for strategy in self._strategies:
                try:
                    strategy.apply(self._git, patch_file, patch_text)
                except (CommandError, PatchReconstructionError) as exc:
                    reason = _first_line(exc.stderr if isinstance(exc, CommandError) else str(exc))
                    failures.append((strategy.name, reason))
                    log_event(
                        LOGGER,
                        "patch_strategy_failed",
                        level=logging.WARNING,
                        task_id=task_id,
                        strategy=strategy.name,
                        reason=reason,
                    )
                    continue
                log_event(
                    LOGGER,
                    "patch_applied",
                    task_id=task_id,
                    strategy=strategy.name,
                    attempts=len(failures) + 1,
                )
                return strategy.name
        raise PatchApplyError(tuple(failures))


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return "<no output>"


@dataclass
class _Hunk:
    old_start: int
    lines: list[str] = field(default_factory=list)
    old_missing_newline: bool = False
    new_missing_newline: bool = False

    @property
    def old_lines(self) -> list[str]:
        return [line[1:] for line in self.lines if line[:1] in (" ", "-")]

    @property
    def new_lines(self) -> list[str]:
        return [line[1:] for line in self.lines if line[:1] in (" ", "+")]


@dataclass
class _FilePatch:
    old_path: str | None
    new_path: str | None
    hunks: list[_Hunk] = field(default_factory=list)


def parse_unified_diff(patch_text: str) -> list[_FilePatch]:
    lines = patch_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    files: list[_FilePatch] = []
    current: _FilePatch | None = None
    idx = 0
    while idx < len(lines):
        line = lines[idx]
        git_header = _DIFF_GIT_RE.match(line)
        if git_header:
            current = _FilePatch(old_path=git_header.group(1), new_path=git_header.group(2))
            files.append(current)
        elif line.startswith("new file mode") and current is not None:
            current.old_path = None
        elif line.startswith("deleted file mode") and current is not None:
            current.new_path = None
        elif line.startswith("--- ") and idx + 1 < len(lines) and lines[idx + 1].startswith("+++ "):
            old_path = _strip_diff_path(line[4:])
            new_path = _strip_diff_path(lines[idx + 1][4:])
            if current is None or current.hunks:
                current = _FilePatch(old_path=old_path, new_path=new_path)
                files.append(current)
            else:
                current.old_path = old_path
                current.new_path = new_path
            idx += 1
        elif line.startswith("@@"):
            if current is None:
                raise PatchReconstructionError("hunk found before any file header")
            header = _HUNK_HEADER_RE.match(line)
            if header is None:
                raise PatchReconstructionError(f"malformed hunk header: {line}")
            hunk = _Hunk(old_start=int(header.group(1)))
            idx = _read_hunk_body(lines, idx + 1, hunk)
            current.hunks.append(hunk)
            continue
        idx += 1

    if not files:
        raise PatchReconstructionError("patch contains no file sections")
    return files


def _read_hunk_body(lines: list[str], idx: int, hunk: _Hunk) -> int:
    while idx < len(lines):
        line = lines[idx]
        if line.startswith("@@") or _DIFF_GIT_RE.match(line):
            break
        if line.startswith("--- ") and idx + 1 < len(lines) and lines[idx + 1].startswith("+++ "):
            break
        if line.startswith("\\"):
            if hunk.lines:
                marker_on = hunk.lines[-1][:1]
                if marker_on == "-":
                    hunk.old_missing_newline = True
                elif marker_on == "+":
                    hunk.new_missing_newline = True
                else:
                    hunk.old_missing_newline = True
                    hunk.new_missing_newline = True
        elif line == "":
            hunk.lines.append(" ")
        elif line[:1] in (" ", "-", "+"):
            hunk.lines.append(line)
        else:
            break
        idx += 1
    return idx


def _strip_diff_path(raw: str) -> str | None:
    path = raw.split("\t", 1)[0].strip()
    if path == "/dev/null":
        return None
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def apply_unified_diff(root: Path, patch_text: str) -> None:
    """Apply a unified diff by rewriting file contents line by line.

    Every file is computed in memory first so a failing hunk leaves the tree untouched.
    """
    writes: dict[Path, str] = {}
    deletes: list[Path] = []
    for file_patch in parse_unified_diff(patch_text):
        source_rel = file_patch.old_path
        target_rel = file_patch.new_path
        if source_rel is None and target_rel is None:
            raise PatchReconstructionError("file section has no paths")

        if source_rel is None:
            original_lines: list[str] = []
            trailing_newline = True
        else:
            source = _resolve_inside(root, source_rel)
            if source in writes:
                original_text = writes[source]
            elif source.exists():
                original_text = source.read_text(encoding="utf-8")
            else:
                raise PatchReconstructionError(f"{source_rel} does not exist")
            original_lines, trailing_newline = _split_lines(original_text)

        if target_rel is None:
            deletes.append(_resolve_inside(root, source_rel or ""))
            continue

        new_lines, trailing_newline = _apply_hunks(
            original_lines, file_patch.hunks, trailing_newline, path=target_rel
        )
        target = _resolve_inside(root, target_rel)
        text = "\n".join(new_lines)
        if new_lines and trailing_newline:
            text += "\n"
        writes[target] = text
        if source_rel is not None and source_rel != target_rel:
            deletes.append(_resolve_inside(root, source_rel))

    for path in deletes:
        writes.pop(path, None)
        if path.exists():
            path.unlink()
    for path, text in writes.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")


def _split_lines(text: str) -> tuple[list[str], bool]:
    if not text:
        return [], True
    trailing = text.endswith("\n")
    lines = text.split("\n")
    if trailing:
        lines.pop()
    return lines, trailing


def _apply_hunks(
    original: list[str], hunks: list[_Hunk], trailing_newline: bool, *, path: str
) -> tuple[list[str], bool]:
    result = list(original)
    # Offset between positions in the original file and positions in ``result``.
    shift = 0
    cursor = 0
    for hunk in hunks:
        old = hunk.old_lines
        new = hunk.new_lines
        if not old:
            position = min(max(hunk.old_start + shift, 0), len(result))
        else:
            found = _locate(result, old, expected=hunk.old_start - 1 + shift, floor=cursor)
            if found is None:
                raise PatchReconstructionError(
                    f"{path}: hunk at line {hunk.old_start} does not match file contents"
                )
            position = found
        result[position : position + len(old)] = new
        shift += len(new) - len(old)
        cursor = position + len(new)
        if hunk.new_missing_newline:
            trailing_newline = False
        elif hunk.old_missing_newline:
            trailing_newline = True
    return result, trailing_newline


def _locate(lines: list[str], needle: list[str], *, expected: int, floor: int) -> int | None:
    last_start = len(lines) - len(needle)
    if last_start < floor:
        return None
    candidates = sorted(
        range(floor, last_start + 1), key=lambda start: (abs(start - expected), start)
    )
    for start in candidates:
        if lines[start : start + len(needle)] == needle:
            return start
    stripped = [line.rstrip() for line in needle]
    for start in candidates:
        if [line.rstrip() for line in lines[start : start + len(needle)]] == stripped:
            return start
    return None


def _resolve_inside(root: Path, relative: str) -> Path:
    pure = PurePosixPath(relative)
    if pure.is_absolute() or ".." in pure.parts:
        raise PatchReconstructionError(f"refusing to write outside the workspace: {relative}")
    return root.joinpath(*pure.parts)
