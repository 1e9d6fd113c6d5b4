"""Install a ``.skill`` package into a scope.

Phases: validate, inspect package, resolve target, (preview), lock, stage,
back up any existing installation, swap in, verify, clean up.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from . import audit
from .archive import UnsafeEntryError, staging_directory
from .backup import BackupCreated, create_backup, remove_backup, restore_backup
from .errors import (
    CancellationError,
    CriticalFailure,
    Failure,
    FilesystemFailure,
    TimeoutFailure,
    ValidationFailure,
    failure_from_os_error,
    is_failure,
)
from .files import regular_files
from .locking import LOCK_STALE_AFTER_S, LockHandle, acquire_lock, release_lock
from .manifest import validate_skill_directory
from .names import validate_scope_selector
from .pipeline import (
    EXTRACTION_TIMEOUT_S,
    CancelSignal,
    CheckedPackage,
    Deadline,
    DeadlineExceeded,
    SwapError,
    check_package,
    checkpoint,
    safe_remove_tree,
    swap_in,
)
from .scope import Scope, ensure_directory, resolve_scope, validate_install_path
from .security import check_hard_links, check_symlink_escape, verify_containment

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT_S = 5 * 60


@dataclass(frozen=True)
class FileComparison:
    path: str
    exists_in_target: bool
    package_size: int
    target_size: int | None

    @property
    def would_modify(self) -> bool:
        return self.exists_in_target and self.package_size != self.target_size


@dataclass(frozen=True)
class InstallSuccess:
    skill_name: str
    skill_path: Path
    file_count: int
    size: int
    was_overwritten: bool
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class InstallDryRunPreview:
    skill_name: str
    target_path: Path
    files: tuple[str, ...]
    total_size: int
    would_overwrite: bool
    conflicts: tuple[str, ...]


@dataclass(frozen=True)
class InstallOverwriteRequired:
    skill_name: str
    existing_path: Path
    files: tuple[FileComparison, ...]


@dataclass(frozen=True)
class InstallCancelled:
    skill_name: str | None
    reason: str
    cleanup_performed: bool


@dataclass(frozen=True)
class InstallRolledBack:
    skill_name: str
    skill_path: Path
    failure_reason: str
    restored_previous: bool


@dataclass(frozen=True)
class InstallRollbackFailed:
    failure: CriticalFailure


@dataclass(frozen=True)
class InstallFailed:
    failure: Failure


InstallOutcome = Union[
    InstallSuccess,
    InstallDryRunPreview,
    InstallOverwriteRequired,
    InstallCancelled,
    InstallRolledBack,
    InstallRollbackFailed,
    InstallFailed,
]


class _Abort(Exception):
    def __init__(self, outcome: InstallOutcome) -> None:
        super().__init__(type(outcome).__name__)
        self.outcome = outcome


class InstallPipeline:
    def __init__(
        self,
        package_path: str | Path,
        *,
        scope: str | None = None,
        cwd: str | Path | None = None,
        home: str | Path | None = None,
        force: bool = False,
        dry_run: bool = False,
        backup_dir: str | Path | None = None,
        stale_after_s: float = LOCK_STALE_AFTER_S,
        token: CancelSignal | None = None,
        timeout_s: float = INSTALL_TIMEOUT_S,
    ) -> None:
        self.package_path = package_path
        self.scope_selector = scope
        self.cwd = cwd
        self.home = home
        self.force = force
        self.dry_run = dry_run
        self.backup_dir = backup_dir
        self.stale_after_s = stale_after_s
        self.token = token
        self.deadline = Deadline(timeout_s)

        self.package: CheckedPackage | None = None
        self.scope: Scope | None = None
        self.lock: LockHandle | None = None
        self.backup_path: Path | None = None

    @property
    def skill_name(self) -> str | None:
        return self.package.root if self.package else None

    def _checkpoint(self, phase: str) -> None:
        checkpoint(self.token, self.deadline, phase, operation="install")

    def run(self) -> InstallOutcome:
        outcome: InstallOutcome | None = None
        try:
            outcome = self._run()
        except _Abort as e:
            outcome = e.outcome
        except CancellationError as e:
            outcome = InstallCancelled(skill_name=self.skill_name, reason=str(e), cleanup_performed=True)
        except DeadlineExceeded as e:
            outcome = InstallFailed(e.failure)
        except OSError as e:
            logger.debug("install of %s hit an unexpected OS error", self.package_path, exc_info=True)
            outcome = InstallFailed(failure_from_os_error(e, operation="install", path=e.filename or self.package_path))
        finally:
            self._cleanup(keep_backup=outcome is None or isinstance(outcome, InstallRollbackFailed))
        self._audit(outcome)
        return outcome

    def _fail(self, failure: Failure) -> _Abort:
        return _Abort(InstallFailed(failure))

    def _run(self) -> InstallOutcome:
        self._checkpoint("validation")
        bad_scope = validate_scope_selector(self.scope_selector)
        if bad_scope is not None:
            raise self._fail(bad_scope)

        checked = check_package(self.package_path, force=self.force)
        if is_failure(checked):
            raise self._fail(checked)  # type: ignore[arg-type]
        assert isinstance(checked, CheckedPackage)
        self.package = checked
        name = checked.root

        self.scope = resolve_scope(self.scope_selector, cwd=self.cwd, home=self.home)
        target = self.scope.path / name
        path_check = validate_install_path(self.scope.path)
        if not path_check.valid:
            raise self._fail(
                FilesystemFailure(operation="install", path=self.scope.path, message="; ".join(path_check.errors))
            )

        exists = os.path.lexists(target)
        if exists:
            escaped = check_symlink_escape(target, self.scope.path)
            if escaped is not None:
                raise self._fail(escaped)
        comparisons = self._compare(target) if exists else ()

        if self.dry_run:
            entries = [e for e in checked.archive.entries if not e.is_dir]
            return InstallDryRunPreview(
                skill_name=name,
                target_path=target,
                files=tuple(e.relative_path for e in entries),
                total_size=checked.total_size,
                would_overwrite=exists,
                conflicts=tuple(c.path for c in comparisons if c.exists_in_target),
            )
        if exists and not self.force:
            return InstallOverwriteRequired(skill_name=name, existing_path=target, files=comparisons)

        self._checkpoint("preparation")
        ensure_directory(self.scope.path)
        lock = acquire_lock(target, operation="install", package_path=checked.path, stale_after_s=self.stale_after_s)
        if not isinstance(lock, LockHandle):
            raise self._fail(lock)
        self.lock = lock

        return self._stage_and_swap(target, existed=exists)

    def _compare(self, target: Path) -> tuple[FileComparison, ...]:
        assert self.package is not None
        existing = regular_files(target) if target.is_dir() else {}
        out = []
        for entry in self.package.archive.entries:
            if entry.is_dir:
                continue
            current = existing.get(entry.relative_path)
            out.append(
                FileComparison(
                    path=entry.relative_path,
                    exists_in_target=current is not None,
                    package_size=entry.size,
                    target_size=current.size if current is not None else None,
                )
            )
        return tuple(out)

    def _stage_and_swap(self, target: Path, *, existed: bool) -> InstallOutcome:
        assert self.package is not None and self.scope is not None
        name = self.package.root
        warnings = list(self.package.warnings)
        extract_deadline = Deadline(min(EXTRACTION_TIMEOUT_S, self.deadline.remaining_s))

        with staging_directory(prefix=f".{name}.staging-", dir=self.scope.path) as staging:
            try:
                self.package.archive.extract_to(staging)
            except UnsafeEntryError as e:
                raise self._fail(ValidationFailure(field="package_content", message=str(e)))
            except OSError as e:
                raise self._fail(failure_from_os_error(e, operation="extract", path=staging))
            if extract_deadline.expired:
                raise DeadlineExceeded(TimeoutFailure(operation="extract", timeout_s=extract_deadline.budget_s))

            staged = staging / name
            issues = validate_skill_directory(staged)
            if issues:
                raise self._fail(
                    ValidationFailure(
                        field="package_content", message="; ".join(issues), details={"issues": issues}
                    )
                )

            if existed:
                report, hard_links = check_hard_links(target, force=self.force)
                if hard_links is not None:
                    raise self._fail(hard_links)
                if report.warning:
                    warnings.append(report.warning)
                contained = verify_containment(target, self.scope.path)
                if contained is not None:
                    raise self._fail(contained)
                created = create_backup(target, name, backup_dir=self.backup_dir)
                if not isinstance(created, BackupCreated):
                    raise self._fail(created)
                self.backup_path = created.path

            self._checkpoint("installation")
            aside = staging / f".{name}.previous"
            try:
                swap_in(target, staged, aside)
            except SwapError as e:
                if not e.parked:
                    raise self._fail(failure_from_os_error(e.cause, operation="install", path=target))
                reason = f"Could not move package into place: {e.cause.strerror or e.cause}"
                return self._rollback(target, aside, reason)

            issues = validate_skill_directory(target)
            if issues:
                return self._rollback(target, aside, "Post-installation validation failed: " + "; ".join(issues))

        files = regular_files(target)
        return InstallSuccess(
            skill_name=name,
            skill_path=target,
            file_count=len(files),
            size=sum(f.size for f in files.values()),
            was_overwritten=existed,
            warnings=tuple(warnings),
        )

    def _rollback(self, target: Path, aside: Path, reason: str) -> InstallOutcome:
        assert self.package is not None
        name = self.package.root
        logger.warning("install of %s failed, rolling back: %s", name, reason)
        removal = safe_remove_tree(target)
        if removal.status != "success":
            return self._critical(target, reason, "; ".join(removal.errors) or "could not remove new files")

        if os.path.lexists(aside):
            try:
                os.rename(aside, target)
                return InstallRolledBack(
                    skill_name=name, skill_path=target, failure_reason=reason, restored_previous=True
                )
            except OSError as e:
                logger.warning("could not move previous install back: %s", e)
                if self.backup_path is None:
                    return self._critical(target, reason, str(e))

        if self.backup_path is not None:
            restore_failure = restore_backup(self.backup_path, target, backup_dir=self.backup_dir)
            if restore_failure is not None:
                return self._critical(target, reason, restore_failure.message)
            return InstallRolledBack(skill_name=name, skill_path=target, failure_reason=reason, restored_previous=True)

        return InstallRolledBack(skill_name=name, skill_path=target, failure_reason=reason, restored_previous=False)

    def _critical(self, target: Path, reason: str, rollback_reason: str) -> InstallOutcome:
        assert self.package is not None
        if self.backup_path is not None:
            instructions = (
                f"Restore manually: remove {target} and unzip {self.backup_path} into {target.parent}"
            )
        else:
            instructions = f"Remove {target} manually and reinstall the package"
        return InstallRollbackFailed(
            CriticalFailure(
                skill_name=self.package.root,
                skill_path=target,
                update_failure_reason=reason,
                rollback_failure_reason=rollback_reason,
                backup_path=self.backup_path,
                recovery_instructions=instructions,
            )
        )

    def _cleanup(self, *, keep_backup: bool) -> None:
        release_lock(self.lock)
        self.lock = None
        if self.package is not None:
            self.package.archive.close()
        # The pre-overwrite backup only outlives the run when it is needed for manual recovery.
        if self.backup_path is not None and not keep_backup:
            remove_backup(self.backup_path, backup_dir=self.backup_dir)

    def _audit(self, outcome: InstallOutcome) -> None:
        name = self.skill_name or str(self.package_path)
        scope = str(self.scope) if self.scope else (self.scope_selector or "project")
        if isinstance(outcome, InstallSuccess):
            audit.record("install", name, scope, "success", files=outcome.file_count, size=outcome.size,
                         path=outcome.skill_path)
        elif isinstance(outcome, (InstallDryRunPreview, InstallOverwriteRequired)):
            return
        elif isinstance(outcome, InstallFailed):
            audit.record("install", name, scope, "failed", error=outcome.failure.message)
        elif isinstance(outcome, InstallRollbackFailed):
            audit.record("install", name, scope, "critical", error=outcome.failure.message)
        elif isinstance(outcome, InstallRolledBack):
            audit.record("install", name, scope, "rolled_back", error=outcome.failure_reason)
        else:
            audit.record("install", name, scope, "cancelled", error=outcome.reason)


def install_skill(package_path: str | Path, **kwargs: Any) -> InstallOutcome:
    return InstallPipeline(package_path, **kwargs).run()
