from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import secrets
from typing import Iterator

from seedloop.clock import to_iso, utc_now
from seedloop.observability import log_event


LOGGER = logging.getLogger("seedloop.process_lock")

RUNNER_LOCK_FILENAME = "runner.lock"


class ProcessLockError(RuntimeError):
    """Raised when another runner already holds the lock."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None
    command: str | None
    started_at: str | None
    token: str | None


_NO_OWNER = LockOwner(pid=None, command=None, started_at=None, token=None)


@contextmanager
def runner_process_lock(*, state_dir: Path, command: str) -> Iterator[LockOwner]:
    lock = RunnerLock(state_dir / RUNNER_LOCK_FILENAME, command=command)
    owner = lock.acquire()
    try:
        yield owner
    finally:
        lock.release()


class RunnerLock:
    """An O_EXCL lock file naming the owning pid; a dead owner's file is reclaimed."""

    def __init__(self, path: Path, *, command: str) -> None:
        self.path = path
        self._command = command
        self._token: str | None = None

    def acquire(self) -> LockOwner:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._reclaim_if_owner_dead():
                    continue
                raise ProcessLockError(self._held_message()) from None

            owner = LockOwner(
                pid=os.getpid(),
                command=self._command,
                started_at=to_iso(utc_now()),
                token=secrets.token_hex(16),
            )
            try:
                os.write(fd, (json.dumps(owner.__dict__, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except OSError:
                os.close(fd)
                self.path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = owner.token
            log_event(LOGGER, "runner_lock_acquired", path=str(self.path), command=self._command)
            return owner

        raise ProcessLockError(self._held_message())

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        if read_lock_owner(self.path).token != token:
            return
        self.path.unlink(missing_ok=True)
        log_event(LOGGER, "runner_lock_released", path=str(self.path))

    def _reclaim_if_owner_dead(self) -> bool:
        owner = read_lock_owner(self.path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            return False
        log_event(LOGGER, "runner_lock_reclaimed", level=logging.WARNING, path=str(self.path), stale_pid=owner.pid)
        return True

    def _held_message(self) -> str:
        owner = read_lock_owner(self.path)
        parts = []
        if owner.pid is not None:
            parts.append(f"pid={owner.pid}")
        if owner.command:
            parts.append(f"command={owner.command}")
        detail = f" ({', '.join(parts)})" if parts else ""
        return (
            f"Another seedloop runner appears active{detail}. Lock file: {self.path}. "
            "Remove the lock file if no runner is alive, then retry."
        )


def read_lock_owner(path: Path) -> LockOwner:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return _NO_OWNER
    if not isinstance(payload, dict):
        return _NO_OWNER
    pid = payload.get("pid")
    command = payload.get("command")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return LockOwner(
        pid=pid if isinstance(pid, int) else None,
        command=command if isinstance(command, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
