from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import re

from seedloop.clock import Clock, to_iso, utc_now
from seedloop.observability import log_event


LOGGER = logging.getLogger("seedloop.progress_log")

MAX_PROGRESS_BYTES = 2 * 1024 * 1024
_ENTRY_SEPARATOR = "\n---\n"
_HEADER_RE = re.compile(r"^## (\S+)")


@dataclass(frozen=True)
class ProgressEntry:
    timestamp: str
    content: str


class ProgressLog:
    def __init__(self, path: Path, *, clock: Clock = utc_now, max_bytes: int = MAX_PROGRESS_BYTES) -> None:
        self.path = path
        self._clock = clock
        self._max_bytes = max_bytes

    def append(
        self,
        content: str,
        *,
        task_id: int | None = None,
        pr_number: int | None = None,
        iterations: int | None = None,
        ci_failures: int | None = None,
    ) -> None:
        now = to_iso(self._clock())
        header = f"## {now}"
        if task_id is not None and task_id > 0:
            header += f" - Task #{task_id}"
        if pr_number is not None and pr_number > 0:
            header += f" (PR #{pr_number})"

        details: list[str] = []
        if iterations:
            details.append(f"{iterations} iterations")
        if ci_failures:
            details.append(f"{ci_failures} CI failures")
        detail_line = f"\n*{' / '.join(details)}*\n" if details else ""

        self._ensure_file(started=now)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(f"{header}\n{detail_line}\n{content.strip()}\n{_ENTRY_SEPARATOR}")
        log_event(LOGGER, "progress_logged", task_id=task_id, pr_number=pr_number, content_chars=len(content))
        self._rotate_if_needed(now)

    def recent(self, limit: int = 5) -> list[ProgressEntry]:
        """Newest first."""
        if not self.path.exists():
            return []
        sections = self.path.read_text(encoding="utf-8").split(_ENTRY_SEPARATOR)
        entries: list[ProgressEntry] = []
        for section in sections:
            lines = section.strip().splitlines()
            header_idx = next((i for i, line in enumerate(lines) if line.startswith("## ")), None)
            if header_idx is None:
                continue
            match = _HEADER_RE.match(lines[header_idx])
            if match is None:
                continue
            body = "\n".join(lines[header_idx + 1 :]).strip()
            entries.append(ProgressEntry(timestamp=match.group(1), content=body))
        return list(reversed(entries[-limit:]))

    def _ensure_file(self, *, started: str) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            f"# Evolution Progress\n\nAutonomous task completions, newest last.\n\n**Started:** {started}\n"
            f"{_ENTRY_SEPARATOR}",
            encoding="utf-8",
        )

    def _rotate_if_needed(self, now: str) -> None:
        if self.path.stat().st_size <= self._max_bytes:
            return
        archive = self.path.with_name(f"{self.path.stem}-{now[:10]}{self.path.suffix}")
        self.path.rename(archive)
        self.path.write_text(
            f"# Evolution Progress (Continued)\n\nPrevious entries archived to: {archive.name}\n\n"
            f"**Continued:** {now}\n{_ENTRY_SEPARATOR}",
            encoding="utf-8",
        )
        log_event(LOGGER, "progress_log_rotated", archive=str(archive))
