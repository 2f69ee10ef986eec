from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import os
from pathlib import Path
import secrets
import threading
import time
from typing import Iterator


_RETRY_INTERVAL_SECONDS = 0.5
_THREAD_LOCKS: dict[Path, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


class ProcessLockError(RuntimeError):
    """Raised when the serialization lock cannot be acquired in time."""


@dataclass(frozen=True)
class _LockOwner:
    pid: int | None
    command: str | None
    started_at: str | None
    token: str | None


@contextmanager
def serialization_lock(
    *,
    base_dir: Path,
    name: str,
    command: str,
    wait_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> Iterator[None]:
    """Hold ``<base_dir>/<name>.lock`` exclusively across threads and processes.

    Waits up to ``wait_seconds`` for the current holder before giving up with
    :class:`ProcessLockError`.
    """
    lock_path = base_dir / f"{name}.lock"
    thread_lock = _thread_lock_for(lock_path)
    deadline = monotonic() + max(wait_seconds, 0.0)
    if wait_seconds > 0:
        acquired = thread_lock.acquire(timeout=wait_seconds)
    else:
        acquired = thread_lock.acquire(blocking=False)
    if not acquired:
        raise ProcessLockError(
            f"Timed out after {wait_seconds}s waiting for the in-process {name} lock."
        )
    try:
        lock = _FileLock(lock_path=lock_path, command=command)
        while True:
            try:
                lock.acquire()
                break
            except ProcessLockError:
                if monotonic() >= deadline:
                    raise
                sleep(_RETRY_INTERVAL_SECONDS)
        try:
            yield
        finally:
            lock.release()
    finally:
        thread_lock.release()


def _thread_lock_for(lock_path: Path) -> threading.Lock:
    key = lock_path.resolve()
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[key] = lock
        return lock


class _FileLock:
    def __init__(self, *, lock_path: Path, command: str) -> None:
        self._lock_path = lock_path
        self._command = command
        self._inode: int | None = None
        self._token: str | None = None

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._token = None
        for _ in range(2):
            try:
                fd = os.open(
                    self._lock_path,
                    os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                    0o644,
                )
            except FileExistsError:
                if self._clear_stale_lock_if_dead_owner():
                    continue
                raise ProcessLockError(self._active_lock_error_message()) from None

            try:
                self._inode = os.fstat(fd).st_ino
                lock_token = secrets.token_hex(16)
                payload = {
                    "pid": os.getpid(),
                    "command": self._command,
                    "started_at": _utc_now_iso8601(),
                    "token": lock_token,
                }
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except Exception:
                try:
                    os.close(fd)
                finally:
                    try:
                        os.unlink(self._lock_path)
                    except FileNotFoundError:
                        pass
                self._inode = None
                self._token = None
                raise
            else:
                os.close(fd)
                self._token = lock_token
                return

        raise ProcessLockError(self._active_lock_error_message())

    def release(self) -> None:
        inode, token = self._inode, self._token
        self._inode = None
        self._token = None
        if inode is None or token is None:
            return
        try:
            current = self._lock_path.stat()
        except FileNotFoundError:
            return
        # Never remove a lock file another process has since recreated.
        if current.st_ino != inode or _read_lock_owner(self._lock_path).token != token:
            return
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            pass

    def _clear_stale_lock_if_dead_owner(self) -> bool:
        owner = _read_lock_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid():
            return False
        if _pid_is_running(owner.pid):
            return False
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True

    def _active_lock_error_message(self) -> str:
        owner = _read_lock_owner(self._lock_path)
        owner_parts: list[str] = []
        if owner.pid is not None:
            owner_parts.append(f"pid={owner.pid}")
        if owner.command:
            owner_parts.append(f"command={owner.command}")
        owner_detail = f" ({', '.join(owner_parts)})" if owner_parts else ""
        return (
            f"Another agentqueue process holds the lock{owner_detail}. "
            f"Lock file: {self._lock_path}. "
            "If this lock is stale, stop running agentqueue processes and remove the lock file."
        )


def _read_lock_owner(lock_path: Path) -> _LockOwner:
    empty = _LockOwner(pid=None, command=None, started_at=None, token=None)
    try:
        payload_text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return empty
    if not payload_text:
        return empty
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return empty
    if not isinstance(payload, dict):
        return empty
    raw_pid = payload.get("pid")
    raw_command = payload.get("command")
    raw_started_at = payload.get("started_at")
    raw_token = payload.get("token")
    return _LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) else None,
        command=raw_command if isinstance(raw_command, str) else None,
        started_at=raw_started_at if isinstance(raw_started_at, str) else None,
        token=raw_token if isinstance(raw_token, str) else None,
    )


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


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
