from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
import json
import logging
from pathlib import Path
import tempfile
from typing import cast

from seedloop.config import CodexConfig
from seedloop.models import ChatMessage, ModelTier
from seedloop.observability import log_event
from seedloop.shell import run


LOGGER = logging.getLogger("seedloop.text_generation")


class TextGenerationError(RuntimeError):
    pass


class TextGenerator(ABC):
    @abstractmethod
    def generate(self, tier: ModelTier, messages: Sequence[ChatMessage]) -> str:
        """Return the assistant reply for the ordered conversation, never empty."""


class CodexTextGenerator(TextGenerator):
    def __init__(self, config: CodexConfig, *, cwd: Path, system_preamble: str) -> None:
        self._config = config
        self._cwd = cwd
        self._system_preamble = system_preamble

    def generate(self, tier: ModelTier, messages: Sequence[ChatMessage]) -> str:
        if not self._config.enabled:
            raise TextGenerationError("Codex is disabled in config")
        if not messages:
            raise TextGenerationError("Cannot generate text from an empty conversation")

        prompt = render_conversation(self._system_preamble, messages)
        log_event(
            LOGGER,
            "codex_invocation_started",
            tier=tier,
            message_count=len(messages),
            prompt_chars=len(prompt),
        )
        with tempfile.TemporaryDirectory(prefix="seedloop_codex_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--output-last-message",
                str(output_path),
                "-",
            ]
            self._append_common_options(cmd, tier)
            raw_events = run(cmd, cwd=self._cwd, input_text=prompt)
            text = output_path.read_text(encoding="utf-8").strip() if output_path.exists() else ""

        if not text:
            text = _extract_final_agent_message(raw_events) or ""
        if not text.strip():
            log_event(LOGGER, "codex_empty_response", level=logging.WARNING, tier=tier)
            raise TextGenerationError("Codex returned an empty response")
        log_event(LOGGER, "codex_invocation_finished", tier=tier, response_chars=len(text))
        return text

    def _append_common_options(self, cmd: list[str], tier: ModelTier) -> None:
        model = self._config.important_model if tier == "important" else self._config.routine_model
        if model:
            cmd.extend(["--model", model])
        if self._config.sandbox:
            cmd.extend(["--sandbox", self._config.sandbox])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def render_conversation(system_preamble: str, messages: Sequence[ChatMessage]) -> str:
    """Flatten a chat transcript into one prompt; the last message is the current request."""
    parts = [system_preamble.strip()]
    history = messages[:-1]
    if history:
        parts.append("Conversation so far:")
        for message in history:
            parts.append(f"[{message.role}]\n{message.content.strip()}")
    parts.append("Current request:")
    parts.append(messages[-1].content.strip())
    return "\n\n".join(parts) + "\n"


def _extract_final_agent_message(raw_events: str) -> str | None:
    last_message: str | None = None
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is None or payload.get("type") != "item.completed":
            continue
        item_obj = _as_object_dict(payload.get("item"))
        if item_obj is None:
            continue
        message_text = item_obj.get("text")
        if item_obj.get("type") == "agent_message" and isinstance(message_text, str):
            last_message = message_text
    return last_message


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
