from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import os
from pathlib import Path


_LOCK_FILENAME = "worker.lock"


class ProcessLockError(RuntimeError):
    """Another worker process already drives this state directory."""


@dataclass(frozen=True)
class LockHolder:
    pid: int | None
    command: str | None
    acquired_at: str | None


@contextmanager
def worker_process_lock(*, base_dir: Path, command: str) -> Iterator[Path]:
    """Hold `<base_dir>/worker.lock` for the duration of the block.

    A lock left behind by a process that no longer exists is taken over.
    """
    lock_path = base_dir / _LOCK_FILENAME
    base_dir.mkdir(parents=True, exist_ok=True)
    _acquire(lock_path, command=command)
    try:
        yield lock_path
    finally:
        _release(lock_path)


def read_lock_holder(lock_path: Path) -> LockHolder | None:
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError:
        return LockHolder(pid=None, command=None, acquired_at=None)
    try:
        payload = json.loads(text) if text else None
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        return LockHolder(pid=None, command=None, acquired_at=None)
    pid = payload.get("pid")
    command = payload.get("command")
    acquired_at = payload.get("acquired_at")
    return LockHolder(
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
        command=command if isinstance(command, str) else None,
        acquired_at=acquired_at if isinstance(acquired_at, str) else None,
    )


def _acquire(lock_path: Path, *, command: str) -> None:
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "command": command,
            "acquired_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
        sort_keys=True,
    )
    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            holder = read_lock_holder(lock_path)
            if holder is not None and _is_stale(holder):
                lock_path.unlink(missing_ok=True)
                continue
            raise ProcessLockError(_describe_conflict(lock_path, holder)) from None
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload + "\n")
        return
    raise ProcessLockError(_describe_conflict(lock_path, read_lock_holder(lock_path)))


def _release(lock_path: Path) -> None:
    holder = read_lock_holder(lock_path)
    if holder is None or holder.pid != os.getpid():
        # Someone else took the lock over; leave their file alone.
        return
    lock_path.unlink(missing_ok=True)


def _is_stale(holder: LockHolder) -> bool:
    if holder.pid is None or holder.pid == os.getpid():
        return False
    return not _pid_is_running(holder.pid)


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True


def _describe_conflict(lock_path: Path, holder: LockHolder | None) -> str:
    detail = ""
    if holder is not None and holder.pid is not None:
        detail = f" (pid={holder.pid}"
        if holder.command:
            detail += f", command={holder.command}"
        detail += ")"
    return (
        f"Another helicone-integrator worker appears active{detail}. Lock file: {lock_path}. "
        "Stop the other worker, or remove the lock file if it is stale."
    )
