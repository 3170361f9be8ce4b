"""
Daemon pid file handling.

The pid file doubles as the singleton lock: the running daemon holds an
exclusive ``flock`` on it, so a stale file left by a crash never blocks a
new start.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class DaemonLock:
    """Exclusive lock on the daemon pid file.

    ``acquire`` locks the file and writes the current pid into it;
    ``release`` removes the file. Usable as a context manager.
    """

    def __init__(self, pid_path: Path) -> None:
        self._pid_path = pid_path
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> int:
        """Lock the pid file and return the pid written to it.

        Raises ``RuntimeError`` if another daemon holds the lock.
        """
        self._pid_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._pid_path), os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            owner = read_pid_file(self._pid_path)
            raise RuntimeError(
                f"chatbridge is already running (pid={owner or '?'}, pid file: {self._pid_path})"
            )
        pid = os.getpid()
        os.ftruncate(fd, 0)
        os.write(fd, f"{pid}\n".encode("ascii"))
        os.fsync(fd)
        self._fd = fd
        return pid

    def release(self) -> None:
        if self._fd is None:
            return
        # Unlink while still holding the lock so a new daemon never sees our file.
        remove_pid_file(self._pid_path)
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
        except OSError as exc:
            logger.debug("Releasing %s: %s", self._pid_path, exc)
        self._fd = None

    def __enter__(self) -> "DaemonLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def read_pid_file(path: Path) -> Optional[int]:
    """Read PID from file. Returns None if missing/invalid."""
    try:
        pid = int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return pid if pid > 0 else None


def remove_pid_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def is_pid_running(pid: int) -> bool:
    """Check whether a PID exists (not whether it is our daemon)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def signal_daemon(pid_path: Path, signum: int) -> Optional[int]:
    """Send *signum* to the daemon recorded in *pid_path*.

    Returns the pid signalled, or None when no live daemon is recorded.
    A pid file pointing at a dead process is removed.
    """
    pid = read_pid_file(pid_path)
    if pid is None:
        return None
    if not is_pid_running(pid):
        remove_pid_file(pid_path)
        return None
    os.kill(pid, signum)
    return pid
