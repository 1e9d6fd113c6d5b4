import json
import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from skillpack.errors import FilesystemFailure, ValidationFailure
from skillpack.locking import LockHandle, acquire_lock, has_lock, lock_path_for, read_lock, release_lock


def _write_lock(path: Path, *, timestamp: str, pid: int = 999999) -> None:
    path.write_text(
        json.dumps(
            {
                "pid": pid,
                "timestamp": timestamp,
                "operationType": "update",
                "skillPath": str(path.parent / "tool"),
                "packagePath": None,
            }
        ),
        encoding="utf-8",
    )


class TestLocking(unittest.TestCase):
    def test_acquire_writes_record_beside_skill(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            lock = acquire_lock(skill, operation="update", package_path=Path(td) / "tool.skill")
            self.assertIsInstance(lock, LockHandle)
            self.assertEqual(lock.path, Path(td) / "tool.skillpack.lock")

            raw = json.loads(lock.path.read_text(encoding="utf-8"))
            self.assertEqual(raw["pid"], os.getpid())
            self.assertEqual(raw["operationType"], "update")
            self.assertEqual(raw["skillPath"], str(skill))
            self.assertTrue(raw["packagePath"].endswith("tool.skill"))
            self.assertTrue(has_lock(skill))

            release_lock(lock)
            self.assertFalse(lock.path.exists())
            self.assertFalse(has_lock(skill))

    def test_second_acquire_fails_and_is_not_reentrant(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            first = acquire_lock(skill, operation="update")
            second = acquire_lock(skill, operation="update")

            self.assertIsInstance(first, LockHandle)
            self.assertIsInstance(second, ValidationFailure)
            self.assertIn("currently being updated", second.message)
            self.assertIn(f"PID: {os.getpid()}", second.message)
            self.assertIn("rm ", second.details["hint"])
            release_lock(first)

    def test_release_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock = acquire_lock(Path(td) / "tool", operation="install")
            release_lock(lock)
            release_lock(lock)
            release_lock(lock.path)
            release_lock(None)

    def test_stale_lock_is_reclaimed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            _write_lock(lock_path_for(skill), timestamp="2000-01-01T00:00:00.000000Z")
            self.assertFalse(has_lock(skill))

            lock = acquire_lock(skill, operation="update")
            self.assertIsInstance(lock, LockHandle)
            self.assertEqual(read_lock(lock.path).pid, os.getpid())
            release_lock(lock)

    def test_fresh_foreign_lock_is_respected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            first = acquire_lock(skill, operation="update")
            result = acquire_lock(skill, operation="update", stale_after_s=3600)
            self.assertIsInstance(result, ValidationFailure)
            release_lock(first)

    def test_staleness_threshold_is_tunable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            first = acquire_lock(skill, operation="update")
            reclaimed = acquire_lock(skill, operation="update", stale_after_s=-1)
            self.assertIsInstance(first, LockHandle)
            self.assertIsInstance(reclaimed, LockHandle)
            release_lock(reclaimed)

    def test_unreadable_lock_falls_back_to_mtime(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            lock_path_for(skill).write_text("{not json", encoding="utf-8")
            result = acquire_lock(skill, operation="update")
            self.assertIsInstance(result, ValidationFailure)
            self.assertIn("PID: unknown", result.message)

    def test_lock_that_vanished_is_not_unlinked_on_retry(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            lock_path = lock_path_for(skill)
            # Another process already holds a fresh lock by the time the age is read.
            _write_lock(lock_path, timestamp="2000-01-01T00:00:00.000000Z", pid=424242)
            with patch("skillpack.locking._lock_age_s", return_value=None):
                result = acquire_lock(skill, operation="update")

            self.assertIsInstance(result, ValidationFailure)
            self.assertIn("PID: 424242", result.message)
            self.assertTrue(lock_path.exists())
            self.assertEqual(read_lock(lock_path).pid, 424242)

    def test_lock_released_mid_acquire_is_retried(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            lock_path = lock_path_for(skill)
            _write_lock(lock_path, timestamp="2000-01-01T00:00:00.000000Z")

            def released(path: Path, record: object) -> None:
                path.unlink()
                return None

            with patch("skillpack.locking._lock_age_s", side_effect=released):
                lock = acquire_lock(skill, operation="install")

            self.assertIsInstance(lock, LockHandle)
            self.assertEqual(read_lock(lock_path).pid, os.getpid())
            release_lock(lock)

    def test_missing_scope_directory(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            result = acquire_lock(Path(td) / "missing" / "tool", operation="install")
            self.assertIsInstance(result, FilesystemFailure)

    def test_concurrent_acquire_has_exactly_one_winner(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = Path(td) / "tool"
            n = 8
            barrier = threading.Barrier(n)
            results: list[object] = []
            guard = threading.Lock()

            def worker() -> None:
                barrier.wait()
                r = acquire_lock(skill, operation="update")
                with guard:
                    results.append(r)

            threads = [threading.Thread(target=worker) for _ in range(n)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            winners = [r for r in results if isinstance(r, LockHandle)]
            self.assertEqual(len(winners), 1)
            self.assertEqual(len(results), n)
            self.assertTrue(all(isinstance(r, ValidationFailure) for r in results if r not in winners))
            release_lock(winners[0])


if __name__ == "__main__":
    unittest.main()
