import tempfile
import unittest
from pathlib import Path

from _support import skill_md, snapshot, write_skill

from skillpack.diff import (
    TreeInfo,
    compare_trees,
    compare_versions,
    detect_downgrade,
    format_change,
    summarize_changes,
    tree_info,
)


class TestCompareTrees(unittest.TestCase):
    def test_update_scenario(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            installed = write_skill(Path(td) / "installed", "foo", files={"README.md": "readme\n"})
            incoming = write_skill(Path(td) / "incoming", "foo", files={"README.md": "readme\n", "NOTES.md": "n\n"})
            (incoming / "SKILL.md").write_text(skill_md("foo", description="Now does more things."), encoding="utf-8")
            before = snapshot(installed), snapshot(incoming)

            comparison = compare_trees(installed, incoming)

            self.assertEqual([c.path for c in comparison.files_modified], ["SKILL.md"])
            self.assertEqual([c.path for c in comparison.files_added], ["NOTES.md"])
            self.assertEqual(comparison.files_removed, ())
            self.assertEqual((snapshot(installed), snapshot(incoming)), before)

    def test_counts_match_differing_paths(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            a = write_skill(Path(td) / "a", "tool", files={"same.txt": "s", "gone.txt": "g", "edit.txt": "v1"})
            b = write_skill(Path(td) / "b", "tool", files={"same.txt": "s", "edit.txt": "v2", "sub/new.txt": "new"})

            c = compare_trees(a, b)

        self.assertEqual(c.added_count + c.removed_count + c.modified_count, 3)
        changed = {x.path for x in c.files_added + c.files_removed + c.files_modified}
        self.assertEqual(changed, {"gone.txt", "edit.txt", "sub/new.txt"})
        self.assertNotIn("same.txt", changed)
        self.assertNotIn("SKILL.md", changed)
        self.assertTrue(c.has_changes)

    def test_same_size_edit_is_detected_by_hash(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            a = write_skill(Path(td) / "a", "tool", files={"x.txt": "aaaa"})
            b = write_skill(Path(td) / "b", "tool", files={"x.txt": "bbbb"})
            c = compare_trees(a, b)
        self.assertEqual([m.path for m in c.files_modified], ["x.txt"])
        self.assertEqual(c.files_modified[0].size_delta, 0)

    def test_summary_and_formatting(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            a = write_skill(Path(td) / "a", "tool", files={"gone.txt": "12345", "grow.txt": "1"})
            b = write_skill(Path(td) / "b", "tool", files={"grow.txt": "123", "new.txt": "12"})
            c = compare_trees(a, b)
            s = summarize_changes(c)

        self.assertEqual(s.bytes_added, 2 + 2)
        self.assertEqual(s.bytes_removed, 5)
        self.assertEqual(s.net_size_change, c.size_change)
        self.assertEqual(c.size_change, -1)
        self.assertEqual(format_change(c.files_added[0]), "+ new.txt (+2 bytes)")
        self.assertEqual(format_change(c.files_removed[0]), "- gone.txt (-5 bytes)")


class TestVersions(unittest.TestCase):
    def test_compare_versions(self) -> None:
        self.assertEqual(compare_versions("1.2.0", "1.10.0"), -1)
        self.assertEqual(compare_versions("v2.0", "2.0.0"), 0)
        self.assertEqual(compare_versions("1.0.0-rc.1", "1.0.0"), -1)
        self.assertEqual(compare_versions("1.0.0-alpha", "1.0.0-beta"), -1)
        self.assertEqual(compare_versions("1.0.0-rc.2", "1.0.0-rc.10"), -1)

    def test_downgrade_detection(self) -> None:
        newer = TreeInfo(path=Path("."), file_count=1, size=1, version="2.0.0")
        older = TreeInfo(path=Path("."), file_count=1, size=1, version="1.5.0")
        unversioned = TreeInfo(path=Path("."), file_count=1, size=1)

        downgrade = detect_downgrade(newer, older)
        self.assertIsNotNone(downgrade)
        self.assertIn("2.0.0", downgrade.message)
        self.assertIsNone(detect_downgrade(older, newer))
        self.assertIsNone(detect_downgrade(unversioned, older))

    def test_tree_info_reads_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = write_skill(Path(td), "tool", version="3.1.4", files={"a.txt": "abc"})
            info = tree_info(skill)
        self.assertEqual(info.version, "3.1.4")
        self.assertEqual(info.file_count, 2)


if __name__ == "__main__":
    unittest.main()
