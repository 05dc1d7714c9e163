from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Generic, Literal, TypeVar, cast


T = TypeVar("T")

ReviewVerdict = Literal["APPROVE", "NEEDS_WORK", "REJECT"]

_FENCED_DIFF_RE = re.compile(r"```diff\s*(.*?)\s*```", re.DOTALL)
_FENCED_ANY_RE = re.compile(r"```[\w-]*\s*(.*?)\s*```", re.DOTALL)
_FENCED_JSON_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_DIFF_START_PREFIXES = ("diff --git", "--- ", "+++ ")
_PASS_GLYPHS = ("✓", "✔", "☑")
_FAIL_GLYPHS = ("✗", "✘", "❌", "☒")
_SUGGESTION_RE = re.compile(r"^\s*[-*]?\s*(?:suggestion|recommendation)\s*:\s*(.+)$", re.IGNORECASE)
_VERDICT_RE = re.compile(r"\b(APPROVE|NEEDS_WORK|REJECT)\b")
_SEVERE_ISSUE_RE = re.compile(r"security|critical|bug", re.IGNORECASE)
_HUNK_HEADER_RE = re.compile(r"^@@ -\d+(?:,(\d+))? \+\d+(?:,(\d+))? @@")


@dataclass(frozen=True)
class ParseOk(Generic[T]):
    value: T
    raw: str


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str


class GenerationProtocolError(RuntimeError):
    """Raised when generated text cannot be read as the structure a step needs."""

    def __init__(self, step: str, error: ParseError) -> None:
        self.step = step
        self.reason = error.reason
        self.raw = error.raw
        super().__init__(f"{step}: {error.reason}")


@dataclass(frozen=True)
class ReviewOutcome:
    approved: bool
    score: int
    passed: int
    total: int
    issues: tuple[str, ...]
    suggestions: tuple[str, ...]
    verdict: ReviewVerdict | None


def unwrap(result: ParseOk[T] | ParseError, *, step: str) -> T:
    if isinstance(result, ParseError):
        raise GenerationProtocolError(step, result)
    return result.value


def clean_patch(patch: str) -> str:
    """Trim trailing whitespace while keeping every hunk at its declared line count."""
    lines = patch.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    while lines and not lines[0].strip():
        lines.pop(0)
    if not lines:
        return ""

    cleaned: list[str] = []
    old_left = 0
    new_left = 0
    for line in lines:
        if old_left > 0 or new_left > 0:
            body = line.rstrip("\r") or " "
            tag = body[0]
            if tag in " -+\\":
                if tag == " " and not body.strip():
                    body = " "
                if tag in " -":
                    old_left -= 1
                if tag in " +":
                    new_left -= 1
                cleaned.append(body)
                continue
            old_left = new_left = 0
        line = line.rstrip()
        header = _HUNK_HEADER_RE.match(line)
        if header:
            old_left = int(header.group(1) or "1")
            new_left = int(header.group(2) or "1")
        cleaned.append(line)

    # Blank context lines dropped from the end of the final hunk.
    if old_left > 0 and old_left == new_left:
        cleaned.extend([" "] * old_left)
    return "\n".join(cleaned) + "\n"


def extract_diff(text: str) -> ParseOk[str] | ParseError:
    """Pull a unified diff out of free text, trying progressively looser heuristics."""
    match = _FENCED_DIFF_RE.search(text)
    if match:
        return _diff_result(match.group(1), text)

    match = _FENCED_ANY_RE.search(text)
    if match:
        return _diff_result(match.group(1), text)

    lines = text.split("\n")
    for idx, line in enumerate(lines):
        if line.startswith(_DIFF_START_PREFIXES):
            return _diff_result("\n".join(lines[idx:]), text)

    if "@@" in text:
        return _diff_result(text, text)

    return ParseError(reason="no diff content found", raw=text)


def _diff_result(candidate: str, raw: str) -> ParseOk[str] | ParseError:
    cleaned = clean_patch(candidate)
    if not cleaned:
        return ParseError(reason="diff block is empty", raw=raw)
    return ParseOk(value=cleaned, raw=raw)


def extract_json_array(text: str) -> ParseOk[list[object]] | ParseError:
    match = _FENCED_JSON_RE.search(text)
    content = match.group(1) if match else text

    start = content.find("[")
    end = content.rfind("]")
    if start != -1 and end > start:
        try:
            parsed = json.loads(content[start : end + 1])
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return ParseOk(value=parsed, raw=text)

    try:
        parsed = json.loads(content.strip())
    except json.JSONDecodeError as exc:
        return ParseError(reason=f"invalid JSON: {exc.msg}", raw=text)
    if isinstance(parsed, list):
        return ParseOk(value=parsed, raw=text)
    if isinstance(parsed, dict):
        return ParseOk(value=[parsed], raw=text)
    return ParseError(reason=f"expected a JSON array, got {type(parsed).__name__}", raw=text)


def extract_json_object(text: str) -> ParseOk[dict[str, object]] | ParseError:
    content = text.strip()
    match = _FENCED_JSON_RE.search(content) or _FENCED_ANY_RE.search(content)
    if match:
        content = match.group(1).strip()

    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end <= start:
        return ParseError(reason="no JSON object found", raw=text)
    try:
        parsed = json.loads(content[start : end + 1])
    except json.JSONDecodeError as exc:
        return ParseError(reason=f"invalid JSON: {exc.msg}", raw=text)
    if not isinstance(parsed, dict):
        return ParseError(reason="expected a JSON object", raw=text)
    return ParseOk(value={str(key): value for key, value in parsed.items()}, raw=text)


def parse_review_checklist(text: str, *, pass_threshold: int = 80) -> ParseOk[ReviewOutcome] | ParseError:
    passed = 0
    total = 0
    issues: list[str] = []
    suggestions: list[str] = []

    for line in text.splitlines():
        fail_at = _first_glyph(line, _FAIL_GLYPHS)
        pass_at = _first_glyph(line, _PASS_GLYPHS)
        if fail_at is not None and (pass_at is None or fail_at < pass_at):
            total += 1
            remainder = line[fail_at + 1 :].strip(" \t]-:")
            if remainder:
                issues.append(remainder)
            continue
        if pass_at is not None:
            total += 1
            passed += 1
            continue
        suggestion = _SUGGESTION_RE.match(line)
        if suggestion:
            suggestions.append(suggestion.group(1).strip())

    verdicts = _VERDICT_RE.findall(text)
    verdict = cast(ReviewVerdict, verdicts[-1]) if verdicts else None

    if total == 0:
        # Prose-only review: the verdict word decides, and no verdict means another fix pass.
        approved = verdict == "APPROVE"
        return ParseOk(
            value=ReviewOutcome(
                approved=approved,
                score=100 if approved else 0,
                passed=0,
                total=0,
                issues=(),
                suggestions=tuple(suggestions),
                verdict=verdict,
            ),
            raw=text,
        )

    score = round(passed / total * 100)
    severe = any(_SEVERE_ISSUE_RE.search(issue) for issue in issues)
    return ParseOk(
        value=ReviewOutcome(
            approved=score >= pass_threshold and not severe,
            score=score,
            passed=passed,
            total=total,
            issues=tuple(issues),
            suggestions=tuple(suggestions),
            verdict=verdict,
        ),
        raw=text,
    )


def _first_glyph(line: str, glyphs: tuple[str, ...]) -> int | None:
    positions = [line.find(glyph) for glyph in glyphs if glyph in line]
    if not positions:
        return None
    return min(positions)
