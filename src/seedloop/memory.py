from __future__ import annotations

from dataclasses import asdict, dataclass, field
import json
import logging
from pathlib import Path
from typing import Literal

from seedloop.clock import Clock, to_iso, utc_now
from seedloop.observability import log_event


LOGGER = logging.getLogger("seedloop.memory")

MAX_ACTIVE_SUMMARIES = 20
MAX_CONTEXT_SUMMARIES = 5
MAX_CONTEXT_CHARS = 3000
EMPTY_MEMORY_TEXT = "System initialization - no previous memory"

MemoryKind = Literal["task_completion", "system_change"]
Importance = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class MemorySummary:
    timestamp: str
    kind: MemoryKind
    content: str
    task_id: int | None = None
    pr_number: int | None = None
    importance: Importance = "medium"
    files_changed: tuple[str, ...] = field(default_factory=tuple)


class MemoryStore:
    """Summaries of finished work, one JSON file each, newest first when loaded.

    Only the newest summaries stay in the directory; older ones move to `archives/`.
    """

    def __init__(self, directory: Path, *, clock: Clock = utc_now) -> None:
        self.directory = directory
        self._clock = clock

    @property
    def archive_dir(self) -> Path:
        return self.directory / "archives"

    @property
    def latest_path(self) -> Path:
        return self.directory / "latest.txt"

    def load_context(self) -> str:
        files = self._summary_files()
        if not files:
            return EMPTY_MEMORY_TEXT

        sections: list[str] = []
        total = 0
        for path in files[:MAX_CONTEXT_SUMMARIES]:
            try:
                summary = _summary_from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as exc:
                log_event(
                    LOGGER,
                    "memory_file_unreadable",
                    level=logging.WARNING,
                    path=str(path),
                    error_type=type(exc).__name__,
                )
                continue
            text = f"[{summary.timestamp}] {summary.content}"
            if total + len(text) > MAX_CONTEXT_CHARS:
                continue
            sections.append(text)
            total += len(text)

        if not sections:
            return "No readable memory summaries available"
        joined = "\n---\n".join(sections)
        return f"Recent system memory ({len(files)} total entries):\n{joined}"

    def record(
        self,
        content: str,
        *,
        task_id: int | None = None,
        pr_number: int | None = None,
        importance: Importance = "medium",
    ) -> Path:
        now = to_iso(self._clock())
        summary = MemorySummary(
            timestamp=now,
            kind="task_completion" if task_id is not None else "system_change",
            content=content.strip(),
            task_id=task_id,
            pr_number=pr_number,
            importance=importance,
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{now.replace(':', '-').replace('.', '-')}.json"
        payload = asdict(summary)
        payload["files_changed"] = list(summary.files_changed)
        path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        self.latest_path.write_text(content, encoding="utf-8")
        archived = self._archive_old()
        log_event(
            LOGGER,
            "memory_recorded",
            path=str(path),
            task_id=task_id,
            content_chars=len(content),
            archived=archived,
        )
        return path

    def _summary_files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        # File names are ISO timestamps, so name order is chronological.
        return sorted(self.directory.glob("*.json"), key=lambda path: path.name, reverse=True)

    def _archive_old(self) -> int:
        stale = self._summary_files()[MAX_ACTIVE_SUMMARIES:]
        if not stale:
            return 0
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        for path in stale:
            path.rename(self.archive_dir / path.name)
        return len(stale)


def _summary_from_dict(raw: object) -> MemorySummary:
    if not isinstance(raw, dict):
        raise ValueError("memory summary must be a JSON object")
    timestamp = raw.get("timestamp")
    content = raw.get("content")
    if not isinstance(timestamp, str) or not isinstance(content, str):
        raise ValueError("memory summary requires string timestamp and content")
    kind = raw.get("kind")
    importance = raw.get("importance")
    task_id = raw.get("task_id")
    pr_number = raw.get("pr_number")
    files_changed = raw.get("files_changed")
    return MemorySummary(
        timestamp=timestamp,
        kind=kind if kind in ("task_completion", "system_change") else "system_change",
        content=content,
        task_id=task_id if isinstance(task_id, int) else None,
        pr_number=pr_number if isinstance(pr_number, int) else None,
        importance=importance if importance in ("low", "medium", "high") else "medium",
        files_changed=tuple(item for item in files_changed if isinstance(item, str))
        if isinstance(files_changed, list)
        else (),
    )
