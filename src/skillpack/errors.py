"""Failure records returned by the pipelines and exceptions raised by the API.

Pipelines never raise for expected failures: every phase returns either a
value or one of the frozen failure records below. Only ``skillpack.api`` and
``skillpack.cli`` turn those records into exceptions or exit codes.
"""

from __future__ import annotations

import errno
from dataclasses import dataclass
from dataclasses import field as dc_field
from pathlib import Path
from typing import Any, ClassVar, Union


class SkillpackError(RuntimeError):
    code: ClassVar[str] = "SKILLPACK_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SkillpackError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, issues: list[dict[str, str]] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class FileSystemError(SkillpackError):
    code = "FILE_SYSTEM_ERROR"

    def __init__(self, message: str, path: str | Path | None = None) -> None:
        super().__init__(message)
        self.path = str(path) if path is not None else None


class PackageError(SkillpackError):
    code = "PACKAGE_ERROR"


class SecurityError(SkillpackError):
    code = "SECURITY_ERROR"

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class CancellationError(SkillpackError):
    code = "CANCELLED"

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


# Reasons carried by SecurityFailure.
PATH_TRAVERSAL = "path-traversal"
CASE_MISMATCH = "case-mismatch"
SYMLINK_ESCAPE = "symlink-escape"
ZIP_ENTRY_ESCAPE = "zip-entry-escape"
HARD_LINK_DETECTED = "hard-link-detected"
CONTAINMENT_VIOLATION = "containment-violation"


@dataclass(frozen=True)
class ValidationFailure:
    kind: ClassVar[str] = "validation-error"
    field: str
    message: str
    details: dict[str, Any] = dc_field(default_factory=dict)


@dataclass(frozen=True)
class SkillNotFound:
    kind: ClassVar[str] = "skill-not-found"
    skill_name: str
    searched_path: Path

    @property
    def message(self) -> str:
        return f'Skill "{self.skill_name}" not found in {self.searched_path}'


@dataclass(frozen=True)
class SecurityFailure:
    kind: ClassVar[str] = "security-error"
    reason: str
    message: str
    details: dict[str, Any] = dc_field(default_factory=dict)


@dataclass(frozen=True)
class FilesystemFailure:
    kind: ClassVar[str] = "filesystem-error"
    operation: str
    path: Path
    message: str


@dataclass(frozen=True)
class PackageMismatch:
    kind: ClassVar[str] = "package-mismatch"
    installed_name: str
    package_name: str
    message: str


@dataclass(frozen=True)
class BackupCreationFailure:
    kind: ClassVar[str] = "backup-creation-error"
    backup_path: Path | None
    reason: str

    @property
    def message(self) -> str:
        return f"Failed to create backup: {self.reason}"


@dataclass(frozen=True)
class RollbackFailure:
    kind: ClassVar[str] = "rollback-error"
    skill_name: str
    update_failure_reason: str
    backup_path: Path | None
    rollback_succeeded: bool = True

    @property
    def message(self) -> str:
        return (
            f'Operation on "{self.skill_name}" failed and was rolled back: '
            f"{self.update_failure_reason}"
        )


@dataclass(frozen=True)
class CriticalFailure:
    kind: ClassVar[str] = "critical-error"
    skill_name: str
    skill_path: Path
    update_failure_reason: str
    rollback_failure_reason: str
    backup_path: Path | None
    recovery_instructions: str

    @property
    def message(self) -> str:
        return (
            f'Critical: operation on "{self.skill_name}" failed ({self.update_failure_reason}) '
            f"and rollback also failed ({self.rollback_failure_reason}). "
            f"{self.recovery_instructions}"
        )


@dataclass(frozen=True)
class PartialRemoval:
    kind: ClassVar[str] = "partial-removal"
    skill_name: str
    files_removed: int
    files_remaining: int
    last_error: str

    @property
    def message(self) -> str:
        return (
            f'Partial removal of "{self.skill_name}": {self.files_removed} removed, '
            f"{self.files_remaining} remaining ({self.last_error})"
        )


@dataclass(frozen=True)
class TimeoutFailure:
    kind: ClassVar[str] = "timeout"
    operation: str
    timeout_s: float

    @property
    def message(self) -> str:
        return f"Operation {self.operation} timed out after {self.timeout_s:g}s"


Failure = Union[
    ValidationFailure,
    SkillNotFound,
    SecurityFailure,
    FilesystemFailure,
    PackageMismatch,
    BackupCreationFailure,
    RollbackFailure,
    CriticalFailure,
    PartialRemoval,
    TimeoutFailure,
]

FAILURE_TYPES = (
    ValidationFailure,
    SkillNotFound,
    SecurityFailure,
    FilesystemFailure,
    PackageMismatch,
    BackupCreationFailure,
    RollbackFailure,
    CriticalFailure,
    PartialRemoval,
    TimeoutFailure,
)


def is_failure(value: object) -> bool:
    return isinstance(value, FAILURE_TYPES)


def failure_from_os_error(err: OSError, *, operation: str, path: str | Path) -> FilesystemFailure:
    path = Path(path)
    if err.errno in (errno.EACCES, errno.EPERM):
        message = f"Permission denied: {path}"
    elif err.errno == errno.ENOENT:
        message = f"No such file or directory: {path}"
    elif err.errno == errno.ENOSPC:
        message = f"No space left on device: {path}"
    else:
        message = f"{err.strerror or err}: {path}"
    return FilesystemFailure(operation=operation, path=path, message=message)


PACKAGE_FIELDS = frozenset({"package_content", "package_path", "package_structure"})


def to_exception(failure: Failure) -> SkillpackError:
    """Map a failure record onto the public exception hierarchy."""
    if isinstance(failure, SecurityFailure):
        return SecurityError(failure.message, reason=failure.reason)
    if isinstance(failure, ValidationFailure):
        if failure.field in PACKAGE_FIELDS:
            return PackageError(failure.message)
        issues = [{"field": failure.field, "message": failure.message}]
        issues += [{"field": failure.field, "message": str(i)} for i in failure.details.get("issues", [])]
        return ValidationError(failure.message, issues=issues)
    if isinstance(failure, (PackageMismatch, RollbackFailure)):
        return PackageError(failure.message)
    if isinstance(failure, SkillNotFound):
        return FileSystemError(failure.message, path=failure.searched_path)
    if isinstance(failure, FilesystemFailure):
        return FileSystemError(failure.message, path=failure.path)
    if isinstance(failure, BackupCreationFailure):
        return FileSystemError(failure.message, path=failure.backup_path)
    if isinstance(failure, CriticalFailure):
        return FileSystemError(failure.message, path=failure.skill_path)
    if isinstance(failure, (PartialRemoval, TimeoutFailure)):
        return FileSystemError(failure.message)
    raise TypeError(f"not a failure record: {failure!r}")
