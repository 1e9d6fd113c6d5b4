import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from _support import make_package, make_zip, skill_md, snapshot, write_skill

from skillpack.errors import FilesystemFailure, SecurityFailure, ValidationFailure
from skillpack.installer import (
    InstallCancelled,
    InstallDryRunPreview,
    InstallFailed,
    InstallOverwriteRequired,
    InstallRollbackFailed,
    InstallRolledBack,
    InstallSuccess,
    install_skill,
)
from skillpack.locking import acquire_lock, release_lock
from skillpack.pipeline import CancellationToken


class _Env:
    def __init__(self, td: str) -> None:
        self.root = Path(td)
        self.scope = self.root / "skills"
        self.backups = self.root / "backups"
        self.packages = self.root / "packages"

    def install(self, package: Path, **kwargs):
        kwargs.setdefault("scope", str(self.scope))
        kwargs.setdefault("backup_dir", self.backups)
        return install_skill(package, **kwargs)


class TestInstall(unittest.TestCase):
    def test_fresh_install(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            pkg = make_package(env.packages, "tool", files={"scripts/run.py": "print(1)\n"})

            outcome = env.install(pkg)

            self.assertIsInstance(outcome, InstallSuccess)
            self.assertEqual(outcome.skill_path, env.scope / "tool")
            self.assertEqual(outcome.file_count, 2)
            self.assertFalse(outcome.was_overwritten)
            self.assertEqual((env.scope / "tool" / "scripts" / "run.py").read_text(encoding="utf-8"), "print(1)\n")
            # No lock, staging directory or backup is left behind.
            self.assertEqual(sorted(p.name for p in env.scope.iterdir()), ["tool"])
            self.assertFalse(env.backups.exists())

    def test_project_scope_uses_cwd(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            pkg = make_package(env.packages, "tool")
            outcome = install_skill(pkg, scope="project", cwd=env.root / "repo", backup_dir=env.backups)
            self.assertIsInstance(outcome, InstallSuccess)
            self.assertTrue((env.root / "repo" / ".claude" / "skills" / "tool" / "SKILL.md").is_file())

    def test_existing_install_requires_force(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            before = snapshot(env.scope)
            pkg = make_package(env.packages, "tool", files={"old.txt": "newer content"})

            outcome = env.install(pkg)

            self.assertIsInstance(outcome, InstallOverwriteRequired)
            self.assertEqual(outcome.existing_path, env.scope / "tool")
            by_path = {f.path: f for f in outcome.files}
            self.assertTrue(by_path["old.txt"].would_modify)
            self.assertEqual(snapshot(env.scope), before)

    def test_force_overwrites_and_discards_backup(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            pkg = make_package(env.packages, "tool", files={"new.txt": "new"})

            outcome = env.install(pkg, force=True)

            self.assertIsInstance(outcome, InstallSuccess)
            self.assertTrue(outcome.was_overwritten)
            self.assertEqual(sorted(snapshot(env.scope / "tool")), ["SKILL.md", "new.txt"])
            self.assertEqual(list(env.backups.glob("*.skill")), [])

    def test_dry_run_changes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            before = snapshot(env.scope)
            pkg = make_package(env.packages, "tool", files={"old.txt": "x", "new.txt": "y"})

            outcome = env.install(pkg, dry_run=True)

            self.assertIsInstance(outcome, InstallDryRunPreview)
            self.assertTrue(outcome.would_overwrite)
            self.assertEqual(outcome.conflicts, ("SKILL.md", "old.txt"))
            self.assertEqual(sorted(outcome.files), ["SKILL.md", "new.txt", "old.txt"])
            self.assertEqual(snapshot(env.scope), before)
            self.assertEqual(sorted(p.name for p in env.scope.iterdir()), ["tool"])

    def test_dry_run_into_missing_scope_creates_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            pkg = make_package(env.packages, "tool")
            outcome = env.install(pkg, dry_run=True)
            self.assertIsInstance(outcome, InstallDryRunPreview)
            self.assertFalse(outcome.would_overwrite)
            self.assertFalse(env.scope.exists())

    def test_invalid_package(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            pkg = make_package(env.packages, "tool", manifest="no frontmatter here\n")
            outcome = env.install(pkg)
            self.assertIsInstance(outcome, InstallFailed)
            self.assertIsInstance(outcome.failure, ValidationFailure)
            self.assertEqual(outcome.failure.field, "package_content")
            self.assertFalse(env.scope.exists())

    def test_zip_slip_package(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            env.packages.mkdir()
            pkg = make_zip(
                env.packages / "pkg.skill",
                {"pkg/SKILL.md": skill_md("pkg"), "pkg/../../../etc/passwd": "x"},
            )
            outcome = env.install(pkg)
            self.assertIsInstance(outcome, InstallFailed)
            self.assertIsInstance(outcome.failure, SecurityFailure)
            self.assertFalse(env.scope.exists())

    def test_locked_target(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            env.scope.mkdir(parents=True)
            held = acquire_lock(env.scope / "tool", operation="install")
            try:
                outcome = env.install(make_package(env.packages, "tool"))
            finally:
                release_lock(held)
            self.assertIsInstance(outcome, InstallFailed)
            self.assertIn("currently being updated", outcome.failure.message)
            self.assertFalse((env.scope / "tool").exists())

    def test_cancelled_before_start(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            token = CancellationToken()
            token.cancel()
            outcome = env.install(make_package(env.packages, "tool"), token=token)
            self.assertIsInstance(outcome, InstallCancelled)
            self.assertFalse(env.scope.exists())

    def test_failed_verification_restores_previous_install(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            before = snapshot(env.scope / "tool")
            pkg = make_package(env.packages, "tool", files={"new.txt": "new"})

            with patch("skillpack.installer.validate_skill_directory", side_effect=[[], ["SKILL.md is corrupt"]]):
                outcome = env.install(pkg, force=True)

            self.assertIsInstance(outcome, InstallRolledBack)
            self.assertTrue(outcome.restored_previous)
            self.assertIn("SKILL.md is corrupt", outcome.failure_reason)
            self.assertEqual(snapshot(env.scope / "tool"), before)
            self.assertEqual(sorted(p.name for p in env.scope.iterdir()), ["tool"])


class TestInstallSwapFailures(unittest.TestCase):
    def _failing_rename(self, fail_from: int, fail_until: int | None = None):
        real_rename = os.rename
        calls = []

        def rename(src, dst):
            calls.append((src, dst))
            n = len(calls)
            if n >= fail_from and (fail_until is None or n <= fail_until):
                raise OSError(errno.ENOSPC, "No space left on device", str(dst))
            return real_rename(src, dst)

        return rename

    def test_failed_swap_restores_previous_install(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            before = snapshot(env.scope / "tool")
            pkg = make_package(env.packages, "tool", files={"new.txt": "new"})

            with patch("os.rename", side_effect=self._failing_rename(2, 2)):
                outcome = env.install(pkg, force=True)

            self.assertIsInstance(outcome, InstallRolledBack)
            self.assertTrue(outcome.restored_previous)
            self.assertIn("No space left on device", outcome.failure_reason)
            self.assertEqual(snapshot(env.scope / "tool"), before)
            self.assertEqual(sorted(p.name for p in env.scope.iterdir()), ["tool"])

    def test_failed_swap_falls_back_to_backup(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            before = snapshot(env.scope / "tool")
            pkg = make_package(env.packages, "tool", files={"new.txt": "new"})

            with patch("os.rename", side_effect=self._failing_rename(2)):
                outcome = env.install(pkg, force=True)

            self.assertIsInstance(outcome, InstallRolledBack)
            self.assertTrue(outcome.restored_previous)
            self.assertEqual(snapshot(env.scope / "tool"), before)

    def test_failed_swap_and_restore_keeps_backup(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            pkg = make_package(env.packages, "tool", files={"new.txt": "new"})
            restore_failed = FilesystemFailure(operation="restore", path=env.backups, message="disk full")

            with (
                patch("os.rename", side_effect=self._failing_rename(2)),
                patch("skillpack.installer.restore_backup", return_value=restore_failed),
            ):
                outcome = env.install(pkg, force=True)

            self.assertIsInstance(outcome, InstallRollbackFailed)
            failure = outcome.failure
            self.assertEqual(failure.rollback_failure_reason, "disk full")
            self.assertIsNotNone(failure.backup_path)
            self.assertTrue(failure.backup_path.is_file())
            self.assertIn(str(failure.backup_path), failure.recovery_instructions)

    def test_failed_first_rename_is_a_filesystem_failure(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = _Env(td)
            write_skill(env.scope, "tool", files={"old.txt": "old"})
            before = snapshot(env.scope / "tool")
            pkg = make_package(env.packages, "tool", files={"new.txt": "new"})

            denied = OSError(errno.EACCES, "Permission denied", str(env.scope / "tool"))
            with patch("os.rename", side_effect=denied):
                outcome = env.install(pkg, force=True)

            self.assertIsInstance(outcome, InstallFailed)
            self.assertIsInstance(outcome.failure, FilesystemFailure)
            self.assertTrue(outcome.failure.message.startswith("Permission denied: "))
            self.assertEqual(snapshot(env.scope / "tool"), before)
            self.assertFalse(env.backups.exists() and any(env.backups.glob("*.skill")))


if __name__ == "__main__":
    unittest.main()
