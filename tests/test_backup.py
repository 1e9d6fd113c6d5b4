import os
import stat
import tempfile
import unittest
import zipfile
from pathlib import Path

from _support import snapshot, write_skill

from skillpack.backup import (
    BackupCreated,
    create_backup,
    generate_backup_path,
    list_backups,
    parse_backup_name,
    remove_backup,
    restore_backup,
    validate_backup_dir,
)
from skillpack.errors import CONTAINMENT_VIOLATION, BackupCreationFailure, SecurityFailure


class TestCreateBackup(unittest.TestCase):
    def test_archives_whole_tree(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = write_skill(Path(td) / "skills", "tool", files={"scripts/run.py": "print(1)\n", ".hidden": "x"})
            backups = Path(td) / "backups"

            created = create_backup(skill, "tool", backup_dir=backups)

            self.assertIsInstance(created, BackupCreated)
            self.assertEqual(created.file_count, 3)
            self.assertEqual(created.path.parent, backups)
            self.assertTrue(created.path.name.startswith("tool-"))
            self.assertEqual(stat.S_IMODE(created.path.stat().st_mode), 0o600)
            self.assertEqual(stat.S_IMODE(backups.stat().st_mode), 0o700)
            with zipfile.ZipFile(created.path) as zf:
                names = set(zf.namelist())
            self.assertIn("tool/scripts/run.py", names)
            self.assertIn("tool/.hidden", names)

    def test_missing_skill(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            result = create_backup(Path(td) / "nope", "nope", backup_dir=Path(td) / "backups")
        self.assertIsInstance(result, BackupCreationFailure)

    def test_symlinked_backup_dir_fails_closed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = write_skill(Path(td) / "skills", "tool")
            real = Path(td) / "real"
            real.mkdir()
            link = Path(td) / "backups"
            link.symlink_to(real, target_is_directory=True)

            self.assertFalse(validate_backup_dir(link).valid)
            result = create_backup(skill, "tool", backup_dir=link)
            self.assertIsInstance(result, BackupCreationFailure)
            self.assertIn("symbolic link", result.reason)
            self.assertEqual(list(real.iterdir()), [])

    def test_generate_path_creates_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            backups = Path(td) / "backups"
            path = generate_backup_path("tool", backups)
            self.assertFalse(backups.exists())
            self.assertEqual(path.parent, backups)
            self.assertEqual(parse_backup_name(path.name)[0], "tool")


class TestRestoreBackup(unittest.TestCase):
    def test_restore_replaces_current_tree(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = write_skill(Path(td) / "skills", "tool", files={"a.txt": "original"})
            before = snapshot(skill)
            backups = Path(td) / "backups"
            created = create_backup(skill, "tool", backup_dir=backups)

            (skill / "a.txt").write_text("changed", encoding="utf-8")
            (skill / "new.txt").write_text("new", encoding="utf-8")

            self.assertIsNone(restore_backup(created.path, skill, backup_dir=backups))
            self.assertEqual(snapshot(skill), before)

    def test_restore_refuses_backup_outside_backup_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = write_skill(Path(td) / "skills", "tool")
            stray = Path(td) / "tool-20240101-000000-deadbeef.skill"
            stray.write_bytes(b"")
            result = restore_backup(stray, skill, backup_dir=Path(td) / "backups")
        self.assertIsInstance(result, SecurityFailure)
        self.assertEqual(result.reason, CONTAINMENT_VIOLATION)


class TestListAndRemove(unittest.TestCase):
    def test_list_newest_first_and_filter(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            backups = Path(td) / "backups"
            backups.mkdir()
            for name in (
                "tool-20240101-000000-00000001.skill",
                "tool-20240301-120000-00000002.skill",
                "other-20240201-000000-00000003.skill",
                "not-a-backup.txt",
            ):
                (backups / name).write_bytes(b"x")

            all_backups = list_backups(backup_dir=backups)
            tool_backups = list_backups("tool", backup_dir=backups)

        self.assertEqual([b.skill_name for b in all_backups], ["tool", "other", "tool"])
        self.assertEqual(len(tool_backups), 2)
        self.assertEqual(tool_backups[0].created_at.month, 3)

    def test_remove_only_inside_backup_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            backups = Path(td) / "backups"
            backups.mkdir()
            inside = backups / "tool-20240101-000000-00000001.skill"
            inside.write_bytes(b"x")
            outside = Path(td) / "keep.skill"
            outside.write_bytes(b"x")

            self.assertTrue(remove_backup(inside, backup_dir=backups))
            self.assertFalse(inside.exists())
            self.assertFalse(remove_backup(outside, backup_dir=backups))
            self.assertTrue(outside.exists())
            self.assertFalse(remove_backup(inside, backup_dir=backups))

    def test_list_missing_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(list_backups(backup_dir=os.path.join(td, "nope")), [])


if __name__ == "__main__":
    unittest.main()
