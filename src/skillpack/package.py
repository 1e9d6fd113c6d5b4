from __future__ import annotations

import hashlib
import logging
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path

from .errors import PackageError
from .manifest import MANIFEST_FILENAME, validate_skill_directory
from .names import PACKAGE_EXTENSION, name_error
from .security import MAX_SKILL_SIZE

logger = logging.getLogger(__name__)

# Directory/file names to skip anywhere in the tree.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    ".DS_Store",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "venv",
    "node_modules",
    ".idea",
    ".vscode",
}


@dataclass(frozen=True)
class SkillPackage:
    root: Path
    output_path: Path
    sha256: str
    size_bytes: int
    file_count: int
    warnings: list[str]


class SkillPackageError(PackageError):
    pass


def _should_exclude(path: Path, root: Path, exclude: set[str]) -> bool:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return True
    return any(p in exclude for p in rel.parts)


def collect_files(root: Path, *, exclude: set[str] | None = None) -> list[Path]:
    """Regular files under ``root`` in archive order; symlinks are never followed."""
    exclude = DEFAULT_EXCLUDE_NAMES if exclude is None else exclude
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        dirnames[:] = [d for d in dirnames if not (base / d).is_symlink() and d not in exclude]
        for name in filenames:
            p = base / name
            if p.is_symlink() or _should_exclude(p, root, exclude):
                continue
            if p.is_file():
                files.append(p)
    files.sort(key=lambda p: p.relative_to(root).as_posix().lower())
    return files


def write_archive(
    root: Path,
    files: list[Path],
    dest: Path,
    *,
    archive_root: str,
    file_mode: int | None = None,
) -> int:
    """Zip ``files`` under a single ``{archive_root}/`` directory into ``dest``.

    The archive is written next to ``dest`` first and moved into place once
    complete, so a reader never sees a half-written package.
    """
    tmp = dest.with_name(dest.name + ".tmp")
    count = 0
    try:
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(zipfile.ZipInfo(f"{archive_root}/"), b"")
            for p in files:
                arcname = f"{archive_root}/{p.relative_to(root).as_posix()}"
                zf.write(p, arcname=arcname)
                count += 1
        if file_mode is not None:
            os.chmod(tmp, file_mode)
        tmp.replace(dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    return count


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def package_skill(
    root: Path,
    *,
    output_dir: Path | None = None,
    force: bool = False,
    skip_validation: bool = False,
    max_size: int = MAX_SKILL_SIZE,
) -> SkillPackage:
    """Build ``{name}.skill`` from the skill directory ``root``."""
    root = Path(root).expanduser().resolve()
    if not root.exists():
        raise SkillPackageError(f"Path does not exist: {root}")
    if not root.is_dir():
        raise SkillPackageError(f"Not a directory: {root}")

    skill_md = root / MANIFEST_FILENAME
    if not skill_md.is_file():
        raise SkillPackageError(f"Missing required file: {skill_md}")

    name = root.name
    reason = name_error(name)
    if reason is not None:
        raise SkillPackageError(f"Invalid skill directory name {name!r}: {reason}")

    if not skip_validation:
        issues = validate_skill_directory(root)
        if issues:
            raise SkillPackageError("Skill validation failed: " + "; ".join(issues))

    out_dir = Path(output_dir).expanduser().resolve() if output_dir is not None else Path.cwd()
    out_dir.mkdir(parents=True, exist_ok=True)
    output_path = out_dir / f"{name}{PACKAGE_EXTENSION}"
    if output_path.exists() and not force:
        raise SkillPackageError(f"Output file already exists: {output_path} (use --force to overwrite)")
    if output_path == root or root in output_path.parents:
        raise SkillPackageError("Output path must not be inside the skill directory")

    files = collect_files(root)
    file_count = write_archive(root, files, output_path, archive_root=name)
    size_bytes = output_path.stat().st_size

    warnings: list[str] = []
    if size_bytes > max_size:
        warnings.append(f"Package is {size_bytes} bytes which exceeds the {max_size} byte limit.")
    logger.info("packaged %s (%d files, %d bytes) -> %s", name, file_count, size_bytes, output_path)

    return SkillPackage(
        root=root,
        output_path=output_path,
        sha256=_sha256_file(output_path),
        size_bytes=size_bytes,
        file_count=file_count,
        warnings=warnings,
    )
