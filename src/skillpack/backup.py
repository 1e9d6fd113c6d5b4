from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from platformdirs import user_data_path

from .archive import PackageArchive, UnsafeEntryError
from .errors import (
    CONTAINMENT_VIOLATION,
    BackupCreationFailure,
    FilesystemFailure,
    PackageError,
    SecurityFailure,
    failure_from_os_error,
)
from .names import PACKAGE_EXTENSION
from .package import collect_files, write_archive
from .scope import is_strictly_within

logger = logging.getLogger(__name__)

DIRECTORY_MODE = 0o700
FILE_MODE = 0o600
MAX_COLLISION_RETRIES = 3
MAX_SUFFIX = 100

_BACKUP_NAME_RE = re.compile(r"^(?P<name>.+)-(?P<date>\d{8})-(?P<time>\d{6})-[0-9a-f]{8}(?:-\d+)?\.skill$")


@dataclass(frozen=True)
class BackupCreated:
    path: Path
    size: int
    file_count: int


@dataclass(frozen=True)
class BackupInfo:
    path: Path
    skill_name: str
    created_at: datetime
    size: int


@dataclass(frozen=True)
class BackupDirValidation:
    path: Path
    errors: tuple[str, ...]
    warnings: tuple[str, ...]

    @property
    def valid(self) -> bool:
        return not self.errors


def default_backup_dir() -> Path:
    return user_data_path("skillpack") / "backups"


def backup_root(backup_dir: str | Path | None = None) -> Path:
    return Path(backup_dir).expanduser() if backup_dir is not None else default_backup_dir()


def validate_backup_dir(backup_dir: str | Path | None = None) -> BackupDirValidation:
    """Refuse symlinked or non-directory backup locations; warn on loose permissions."""
    root = backup_root(backup_dir)
    errors: list[str] = []
    warnings: list[str] = []
    for p in (root.parent, root):
        try:
            st = os.lstat(p)
        except FileNotFoundError:
            continue
        except OSError as e:
            errors.append(f"Cannot access {p}: {e.strerror or e}")
            continue
        if stat.S_ISLNK(st.st_mode):
            errors.append(f"Security error: {p} is a symbolic link")
        elif not stat.S_ISDIR(st.st_mode):
            errors.append(f"{p} exists but is not a directory")
        elif p == root and st.st_mode & 0o004:
            warnings.append(f"{p} is world-readable (mode: {oct(st.st_mode & 0o777)})")
    return BackupDirValidation(path=root, errors=tuple(errors), warnings=tuple(warnings))


def ensure_backup_dir(backup_dir: str | Path | None = None) -> Path:
    validation = validate_backup_dir(backup_dir)
    if not validation.valid:
        raise PackageError("; ".join(validation.errors))
    root = validation.path
    root.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)
    return root


def check_backup_writable(backup_dir: str | Path | None = None) -> str | None:
    """Probe the backup directory with a throwaway file. Returns an error or ``None``."""
    try:
        root = ensure_backup_dir(backup_dir)
    except PackageError as e:
        return str(e)
    except OSError as e:
        return f"Cannot access backup directory: {e.strerror or e}"
    probe = root / f".write-test-{secrets.token_hex(4)}"
    try:
        fd = os.open(probe, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
        os.write(fd, b"test")
        os.close(fd)
        probe.unlink()
    except OSError as e:
        return f"Cannot write to backup directory: {e.strerror or e}"
    return None


def backup_filename(skill_name: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{skill_name}-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}{PACKAGE_EXTENSION}"


def generate_backup_path(skill_name: str, backup_dir: str | Path | None = None) -> Path:
    """A backup path that does not exist yet. Nothing is created."""
    root = backup_root(backup_dir)
    for _ in range(MAX_COLLISION_RETRIES):
        candidate = root / backup_filename(skill_name)
        if not candidate.exists():
            return candidate
        logger.warning("backup filename collision: %s, retrying", candidate.name)

    base = root / backup_filename(skill_name)
    for suffix in range(1, MAX_SUFFIX + 1):
        candidate = base.with_name(f"{base.stem}-{suffix}{PACKAGE_EXTENSION}")
        if not candidate.exists():
            return candidate
    raise PackageError(f"Unable to generate a unique backup filename for {skill_name}")


def is_backup_contained(backup_path: Path, backup_dir: str | Path | None = None) -> bool:
    root = backup_root(backup_dir)
    return is_strictly_within(os.path.abspath(backup_path), os.path.abspath(root))


def create_backup(
    skill_path: Path,
    skill_name: str,
    *,
    backup_dir: str | Path | None = None,
) -> BackupCreated | BackupCreationFailure:
    """Archive ``skill_path`` into the backup directory.

    The archive is complete on disk before this returns success. Symlinks in
    the skill are not archived.
    """
    skill_path = Path(skill_path)
    if not skill_path.is_dir() or skill_path.is_symlink():
        return BackupCreationFailure(backup_path=None, reason=f"Skill path is not a directory: {skill_path}")

    validation = validate_backup_dir(backup_dir)
    if not validation.valid:
        return BackupCreationFailure(backup_path=None, reason="; ".join(validation.errors))
    error = check_backup_writable(backup_dir)
    if error is not None:
        return BackupCreationFailure(backup_path=None, reason=error)

    try:
        backup_path = generate_backup_path(skill_name, backup_dir)
    except PackageError as e:
        return BackupCreationFailure(backup_path=None, reason=str(e))
    if not is_backup_contained(backup_path, backup_dir):
        return BackupCreationFailure(
            backup_path=backup_path, reason="Security error: generated backup path escapes backup directory"
        )

    try:
        files = collect_files(skill_path, exclude=set())
        count = write_archive(skill_path, files, backup_path, archive_root=skill_name, file_mode=FILE_MODE)
        size = backup_path.stat().st_size
    except OSError as e:
        return BackupCreationFailure(backup_path=backup_path, reason=str(e))

    logger.debug("backed up %s to %s (%d files)", skill_path, backup_path, count)
    return BackupCreated(path=backup_path, size=size, file_count=count)


def restore_backup(
    backup_path: Path,
    skill_path: Path,
    *,
    backup_dir: str | Path | None = None,
) -> FilesystemFailure | SecurityFailure | None:
    """Put the backed-up tree back at ``skill_path``.

    Whatever currently occupies ``skill_path`` is removed first; the archive
    root is extracted into the skill's parent directory.
    """
    backup_path = Path(backup_path)
    skill_path = Path(skill_path)
    if not is_backup_contained(backup_path, backup_dir):
        return SecurityFailure(
            reason=CONTAINMENT_VIOLATION,
            message=f"Backup path escapes backup directory: {backup_path}",
            details={"backup_path": str(backup_path)},
        )
    try:
        with PackageArchive(backup_path) as archive:
            root = archive.root_directory()
            if root != skill_path.name:
                return FilesystemFailure(
                    operation="restore",
                    path=backup_path,
                    message=f'Backup root "{root}" does not match skill "{skill_path.name}"',
                )
            if skill_path.is_symlink() or skill_path.is_file():
                skill_path.unlink()
            elif skill_path.exists():
                shutil.rmtree(skill_path)
            archive.extract_to(skill_path.parent)
    except (PackageError, UnsafeEntryError) as e:
        return FilesystemFailure(operation="restore", path=backup_path, message=str(e))
    except OSError as e:
        return failure_from_os_error(e, operation="restore", path=skill_path)
    logger.info("restored %s from %s", skill_path, backup_path)
    return None


def remove_backup(backup_path: Path, *, backup_dir: str | Path | None = None) -> bool:
    """Delete a backup file. Only regular files inside the backup directory are touched."""
    backup_path = Path(backup_path)
    if not is_backup_contained(backup_path, backup_dir):
        logger.warning("refusing to remove %s: outside backup directory", backup_path)
        return False
    try:
        st = os.lstat(backup_path)
    except FileNotFoundError:
        return False
    if not stat.S_ISREG(st.st_mode):
        logger.warning("refusing to remove %s: not a regular file", backup_path)
        return False
    backup_path.unlink()
    return True


def parse_backup_name(filename: str) -> tuple[str, datetime] | None:
    m = _BACKUP_NAME_RE.match(filename)
    if m is None:
        return None
    created = datetime.strptime(m.group("date") + m.group("time"), "%Y%m%d%H%M%S")
    return m.group("name"), created.replace(tzinfo=timezone.utc)


def list_backups(skill_name: str | None = None, *, backup_dir: str | Path | None = None) -> list[BackupInfo]:
    """Backups in the backup directory, newest first."""
    root = backup_root(backup_dir)
    if not root.is_dir():
        return []
    out: list[BackupInfo] = []
    for p in root.iterdir():
        parsed = parse_backup_name(p.name)
        if parsed is None or not p.is_file() or p.is_symlink():
            continue
        name, created = parsed
        if skill_name is not None and name != skill_name:
            continue
        out.append(BackupInfo(path=p, skill_name=name, created_at=created, size=p.stat().st_size))
    out.sort(key=lambda b: (b.created_at, b.path.name), reverse=True)
    return out
