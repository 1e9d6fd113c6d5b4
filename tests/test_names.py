import tempfile
import unittest
import zipfile
from pathlib import Path

from skillpack.errors import PATH_TRAVERSAL, SecurityFailure, ValidationFailure
from skillpack.names import name_error, validate_package_file, validate_scope_selector, validate_skill_name


class TestSkillNames(unittest.TestCase):
    def test_accepts_lowercase_hyphenated_names(self) -> None:
        for name in ("a", "pdf-tools", "x1-y2-z3", "a" * 64):
            self.assertIsNone(validate_skill_name(name), name)

    def test_traversal_shaped_names_are_security_failures(self) -> None:
        for name in ("../../../etc/passwd", "a/b", "a\\b", "..", "C:evil", "x\x00y"):
            problem = validate_skill_name(name)
            self.assertIsInstance(problem, SecurityFailure, name)
            self.assertEqual(problem.reason, PATH_TRAVERSAL)

    def test_malformed_names_are_validation_failures(self) -> None:
        cases = {
            "": "empty",
            "Foo": "lowercase",
            "-foo": "start with a hyphen",
            "foo-": "end with a hyphen",
            "foo--bar": "consecutive hyphens",
            "foo_bar": "lowercase letters, digits",
            "a" * 65: "64 characters",
            "my-claude-helper": "reserved word",
            "café": "ASCII",
        }
        for name, fragment in cases.items():
            problem = validate_skill_name(name)
            self.assertIsInstance(problem, ValidationFailure, name)
            self.assertEqual(problem.field, "skill_name")
            self.assertIn(fragment, problem.message)

    def test_name_error_is_none_for_valid_name(self) -> None:
        self.assertIsNone(name_error("data-cleaner"))


class TestScopeSelector(unittest.TestCase):
    def test_none_and_paths_are_legal(self) -> None:
        self.assertIsNone(validate_scope_selector(None))
        self.assertIsNone(validate_scope_selector("project"))
        self.assertIsNone(validate_scope_selector("~/somewhere/skills"))

    def test_empty_and_nul_are_rejected(self) -> None:
        self.assertEqual(validate_scope_selector("  ").field, "scope")
        self.assertEqual(validate_scope_selector("a\x00b").field, "scope")


class TestPackageFile(unittest.TestCase):
    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path, problem = validate_package_file(Path(td) / "nope.skill")
            self.assertIsNone(path)
            self.assertEqual(problem.field, "package_path")
            self.assertIn("not found", problem.message)

    def test_wrong_extension(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "thing.zip"
            p.write_bytes(b"PK")
            _, problem = validate_package_file(p)
            self.assertIn(".skill extension", problem.message)

    def test_directory_is_not_a_package(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            d = Path(td) / "dir.skill"
            d.mkdir()
            _, problem = validate_package_file(d)
            self.assertIn("not a file", problem.message)

    def test_non_zip_content(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "thing.skill"
            p.write_text("definitely not a zip", encoding="utf-8")
            _, problem = validate_package_file(p)
            self.assertEqual(problem.field, "package_content")

    def test_valid_package_resolves(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "thing.skill"
            with zipfile.ZipFile(p, "w") as zf:
                zf.writestr("thing/SKILL.md", "---\nname: thing\n---\n")
            path, problem = validate_package_file(p)
            self.assertIsNone(problem)
            self.assertEqual(path, p.resolve())


if __name__ == "__main__":
    unittest.main()
