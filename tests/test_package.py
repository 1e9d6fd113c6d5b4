import tempfile
import unittest
import zipfile
from pathlib import Path

from _support import write_skill

from skillpack.errors import PackageError
from skillpack.package import SkillPackageError, collect_files, package_skill
from skillpack.pipeline import CheckedPackage, check_package


class TestSkillPackage(unittest.TestCase):
    def test_package_nests_files_under_skill_name(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = write_skill(Path(td) / "src", "example-skill", files={"fetch_example.py": "print('ok')\n"})

            pkg = package_skill(root, output_dir=Path(td) / "dist")

            with zipfile.ZipFile(pkg.output_path, "r") as zf:
                names = sorted(zf.namelist())

            self.assertEqual(names, ["example-skill/", "example-skill/SKILL.md", "example-skill/fetch_example.py"])
            self.assertEqual(pkg.file_count, 2)
            self.assertEqual(len(pkg.sha256), 64)

    def test_package_skips_repository_metadata(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = write_skill(
                Path(td) / "src",
                "tool",
                files={".git/HEAD": "ref", "__pycache__/x.pyc": "", "lib/util.py": "x = 1\n"},
            )
            rels = [p.relative_to(root).as_posix() for p in collect_files(root)]
        self.assertEqual(rels, ["lib/util.py", "SKILL.md"])

    def test_package_output_is_installable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = write_skill(Path(td) / "src", "tool", files={"a.txt": "a"})
            pkg = package_skill(root, output_dir=Path(td))
            checked = check_package(pkg.output_path)
            try:
                self.assertIsInstance(checked, CheckedPackage)
                self.assertEqual(checked.root, "tool")
            finally:
                checked.archive.close()

    def test_package_refuses_existing_output_without_force(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = write_skill(Path(td) / "src", "tool")
            out = Path(td) / "dist"
            package_skill(root, output_dir=out)

            with self.assertRaises(SkillPackageError):
                package_skill(root, output_dir=out)
            package_skill(root, output_dir=out, force=True)

    def test_package_rejects_invalid_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "tool"
            root.mkdir()
            (root / "SKILL.md").write_text("# Example\n", encoding="utf-8")

            with self.assertRaises(PackageError):
                package_skill(root, output_dir=Path(td))
            pkg = package_skill(root, output_dir=Path(td), skip_validation=True)
            self.assertTrue(pkg.output_path.is_file())

    def test_package_rejects_invalid_directory_name(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "Example_Skill"
            root.mkdir()
            (root / "SKILL.md").write_text("# Example\n", encoding="utf-8")

            with self.assertRaises(SkillPackageError):
                package_skill(root, output_dir=Path(td), skip_validation=True)


if __name__ == "__main__":
    unittest.main()
