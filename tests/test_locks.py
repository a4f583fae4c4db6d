"""Tests for endpoint locks."""

from __future__ import annotations

import threading
import time
from pathlib import Path

from sshpod.locks import FileLock, endpoint_lock, lock_path


class TestLockPath:
    """Tests for lock_path."""

    def test_name(self, tmp_path: Path) -> None:
        path = lock_path(tmp_path, "3f2a-11", "app")
        assert path == tmp_path / "3f2a-11_app.lock"

    def test_unsafe_characters_replaced(self, tmp_path: Path) -> None:
        path = lock_path(tmp_path, "../uid", "a/b c")
        assert path.parent == tmp_path
        assert path.name == ".._uid_a_b_c.lock"


class TestFileLock:
    """Tests for FileLock."""

    def test_creates_directory_and_file(self, tmp_path: Path) -> None:
        lock = endpoint_lock(tmp_path / "locks", "uid", "app")

        with lock:
            assert lock.path.exists()
        assert lock.path.parent == tmp_path / "locks"

    def test_release_is_idempotent(self, tmp_path: Path) -> None:
        lock = FileLock(tmp_path / "x.lock")
        lock.acquire()
        lock.release()
        lock.release()

    def test_reacquire_after_release(self, tmp_path: Path) -> None:
        lock = FileLock(tmp_path / "x.lock")
        with lock:
            pass
        with lock:
            pass

    def test_mutual_exclusion(self, tmp_path: Path) -> None:
        """Holders of the same lock never overlap."""
        path = tmp_path / "x.lock"
        active = 0
        overlaps = 0
        guard = threading.Lock()

        def worker() -> None:
            nonlocal active, overlaps
            with FileLock(path):
                with guard:
                    active += 1
                    if active > 1:
                        overlaps += 1
                time.sleep(0.02)
                with guard:
                    active -= 1

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == 0

    def test_different_endpoints_do_not_block(self, tmp_path: Path) -> None:
        first = endpoint_lock(tmp_path, "uid", "app")
        second = endpoint_lock(tmp_path, "uid", "sidecar")

        with first:
            acquired = threading.Event()

            def take_second() -> None:
                with second:
                    acquired.set()

            t = threading.Thread(target=take_second)
            t.start()
            assert acquired.wait(timeout=5)
            t.join()
