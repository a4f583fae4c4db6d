"""Cross-process locks keyed by Pod UID and container."""

from __future__ import annotations

import fcntl
import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def lock_path(lock_dir: Path, pod_uid: str, container: str) -> Path:
    """Return the lock file path for one (pod UID, container) pair.

    Args:
        lock_dir: Directory holding lock files.
        pod_uid: Pod UID.
        container: Container name.

    Returns:
        Path of the lock file.
    """
    name = f"{_UNSAFE.sub('_', pod_uid)}_{_UNSAFE.sub('_', container)}.lock"
    return lock_dir / name


class FileLock:
    """Exclusive flock on a lock file.

    Invocations of sshpod are separate processes, so mutual exclusion lives
    in the filesystem. The kernel drops the lock when the holder exits, so a
    crashed invocation never leaves a stale lock behind.
    """

    def __init__(self, path: Path) -> None:
        """Prepare the lock.

        Args:
            path: Lock file path; created on first use.
        """
        self.path = path
        self._fd: int | None = None

    def acquire(self) -> None:
        """Block until the lock is held."""
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                logger.info("waiting for another sshpod on %s", self.path.name)
                fcntl.flock(fd, fcntl.LOCK_EX)
        except BaseException:
            os.close(fd)
            raise
        self._fd = fd

    def release(self) -> None:
        """Release the lock if held."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def endpoint_lock(lock_dir: Path, pod_uid: str, container: str) -> FileLock:
    """Return the lock guarding one container's scratch directory.

    Args:
        lock_dir: Directory holding lock files.
        pod_uid: Pod UID.
        container: Container name.

    Returns:
        Unacquired FileLock.
    """
    return FileLock(lock_path(lock_dir, pod_uid, container))
