"""Replace an installed skill with the contents of a newer package.

The update is reversible: the installed tree is archived before anything is
touched, the new tree is staged and validated beside it, and the swap is two
renames inside the scope directory. If the swapped-in tree fails validation
the previous tree is put back, from the parked copy or from the backup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from . import audit
from .archive import UnsafeEntryError, staging_directory
from .backup import BackupCreated, create_backup, generate_backup_path, remove_backup, restore_backup
from .diff import (
    ChangeSummary,
    Downgrade,
    TreeInfo,
    VersionComparison,
    compare_trees,
    detect_downgrade,
    summarize_changes,
    tree_info,
)
from .discovery import SkillFound, discover_skill
from .errors import (
    CancellationError,
    CriticalFailure,
    Failure,
    PackageMismatch,
    RollbackFailure,
    TimeoutFailure,
    ValidationFailure,
    failure_from_os_error,
    is_failure,
)
from .locking import LOCK_STALE_AFTER_S, LockHandle, acquire_lock, release_lock
from .manifest import validate_skill_directory
from .names import validate_scope_selector, validate_skill_name
from .pipeline import (
    BACKUP_TIMEOUT_S,
    UPDATE_TIMEOUT_S,
    CancelSignal,
    CheckedPackage,
    ConfirmFn,
    Deadline,
    DeadlineExceeded,
    SwapError,
    check_package,
    checkpoint,
    confirm_or_cancel,
    safe_remove_tree,
    swap_in,
)
from .scope import Scope, resolve_scope
from .security import check_hard_links, check_symlink_escape, verify_containment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateSuccess:
    skill_name: str
    skill_path: Path
    previous: TreeInfo
    current: TreeInfo
    comparison: VersionComparison
    backup_path: Path | None
    backup_kept: bool
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class UpdateDryRunPreview:
    skill_name: str
    skill_path: Path
    current: TreeInfo
    incoming: TreeInfo
    comparison: VersionComparison
    summary: ChangeSummary
    backup_path: Path | None  # where a backup would be written; not created
    downgrade: Downgrade | None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class UpdateCancelled:
    skill_name: str
    reason: str
    cleanup_performed: bool


@dataclass(frozen=True)
class UpdateRolledBack:
    failure: RollbackFailure


@dataclass(frozen=True)
class UpdateRollbackFailed:
    failure: CriticalFailure


@dataclass(frozen=True)
class UpdateFailed:
    failure: Failure


UpdateOutcome = Union[
    UpdateSuccess,
    UpdateDryRunPreview,
    UpdateCancelled,
    UpdateRolledBack,
    UpdateRollbackFailed,
    UpdateFailed,
]


class _Abort(Exception):
    def __init__(self, failure: Failure) -> None:
        super().__init__(getattr(failure, "message", ""))
        self.failure = failure


def _build_prompt(name: str, comparison: VersionComparison, downgrade: Downgrade | None) -> str:
    lines = [
        f'Update skill "{name}"?',
        f"  {comparison.added_count} added, {comparison.removed_count} removed, "
        f"{comparison.modified_count} modified ({comparison.size_change:+d} bytes)",
    ]
    if downgrade is not None:
        lines.append(f"  Warning: {downgrade.message}")
    return "\n".join(lines)


class UpdatePipeline:
    def __init__(
        self,
        skill_name: str,
        package_path: str | Path,
        *,
        scope: str | None = None,
        cwd: str | Path | None = None,
        home: str | Path | None = None,
        force: bool = False,
        dry_run: bool = False,
        no_backup: bool = False,
        keep_backup: bool = False,
        confirm: ConfirmFn | None = None,
        backup_dir: str | Path | None = None,
        stale_after_s: float = LOCK_STALE_AFTER_S,
        token: CancelSignal | None = None,
        timeout_s: float = UPDATE_TIMEOUT_S,
    ) -> None:
        self.skill_name = skill_name
        self.package_path = package_path
        self.scope_selector = scope
        self.cwd = cwd
        self.home = home
        self.force = force
        self.dry_run = dry_run
        self.no_backup = no_backup
        self.keep_backup = keep_backup
        self.confirm = confirm
        self.backup_dir = backup_dir
        self.stale_after_s = stale_after_s
        self.token = token
        self.deadline = Deadline(timeout_s)

        self.scope: Scope | None = None
        self.package: CheckedPackage | None = None
        self.lock: LockHandle | None = None
        self.backup_path: Path | None = None
        self.warnings: list[str] = []

    def _checkpoint(self, phase: str) -> None:
        checkpoint(self.token, self.deadline, phase, operation="update")

    def run(self) -> UpdateOutcome:
        outcome: UpdateOutcome | None = None
        try:
            outcome = self._run()
        except _Abort as e:
            outcome = UpdateFailed(e.failure)
        except CancellationError as e:
            outcome = UpdateCancelled(skill_name=self.skill_name, reason=str(e), cleanup_performed=True)
        except DeadlineExceeded as e:
            outcome = UpdateFailed(e.failure)
        except OSError as e:
            logger.debug("update of %s hit an unexpected OS error", self.skill_name, exc_info=True)
            outcome = UpdateFailed(failure_from_os_error(e, operation="update", path=e.filename or self.skill_name))
        finally:
            self._cleanup(outcome)
        self._audit(outcome)
        return outcome

    # Phases

    def _run(self) -> UpdateOutcome:
        self._checkpoint("validation")
        self._validate_inputs()
        skill_path = self._discover()

        self._checkpoint("package validation")
        package = self._validate_package()

        self._checkpoint("security checks")
        self._security_checks(skill_path)

        assert self.scope is not None
        # A real update stages inside the scope so the final swap is a same-filesystem rename.
        stage_in = None if self.dry_run else self.scope.path
        with staging_directory(prefix=f".{self.skill_name}.staging-", dir=stage_in) as staging:
            staged = self._extract(package, staging)

            self._checkpoint("version analysis")
            current = tree_info(skill_path)
            incoming = tree_info(staged)
            comparison = compare_trees(skill_path, staged)
            downgrade = detect_downgrade(current, incoming)
            if downgrade is not None:
                self.warnings.append(downgrade.message)

            if self.dry_run:
                projected = None if self.no_backup else generate_backup_path(self.skill_name, self.backup_dir)
                return UpdateDryRunPreview(
                    skill_name=self.skill_name,
                    skill_path=skill_path,
                    current=current,
                    incoming=incoming,
                    comparison=comparison,
                    summary=summarize_changes(comparison),
                    backup_path=projected,
                    downgrade=downgrade,
                    warnings=tuple(self.warnings),
                )

            self._prepare(skill_path, comparison, downgrade)
            return self._execute(skill_path, staged, staging, current, comparison)

    def _validate_inputs(self) -> None:
        bad_name = validate_skill_name(self.skill_name)
        if bad_name is not None:
            raise _Abort(bad_name)
        bad_scope = validate_scope_selector(self.scope_selector)
        if bad_scope is not None:
            raise _Abort(bad_scope)

    def _discover(self) -> Path:
        self.scope = resolve_scope(self.scope_selector, cwd=self.cwd, home=self.home)
        found = discover_skill(self.skill_name, self.scope)
        if not isinstance(found, SkillFound):
            raise _Abort(found)
        logger.debug("found %s at %s", self.skill_name, found.path)
        return found.path

    def _validate_package(self) -> CheckedPackage:
        checked = check_package(self.package_path, force=self.force)
        if is_failure(checked):
            raise _Abort(checked)  # type: ignore[arg-type]
        assert isinstance(checked, CheckedPackage)
        self.package = checked
        self.warnings.extend(checked.warnings)
        if checked.root != self.skill_name:
            raise _Abort(
                PackageMismatch(
                    installed_name=self.skill_name,
                    package_name=checked.root,
                    message=(
                        f'Package contains skill "{checked.root}" but the installed skill is '
                        f'"{self.skill_name}"'
                    ),
                )
            )
        return checked

    def _security_checks(self, skill_path: Path) -> None:
        assert self.scope is not None
        escaped = check_symlink_escape(skill_path, self.scope.path)
        if escaped is not None:
            raise _Abort(escaped)
        report, hard_links = check_hard_links(skill_path, force=self.force)
        if hard_links is not None:
            raise _Abort(hard_links)
        if report.warning:
            self.warnings.append(report.warning)
        # Zip entries and package resource limits were checked when the package was opened.
        contained = verify_containment(skill_path, self.scope.path)
        if contained is not None:
            raise _Abort(contained)

    def _extract(self, package: CheckedPackage, staging: Path) -> Path:
        try:
            package.archive.extract_to(staging)
        except UnsafeEntryError as e:
            raise _Abort(ValidationFailure(field="package_content", message=str(e)))
        except OSError as e:
            raise _Abort(failure_from_os_error(e, operation="extract", path=staging))
        staged = staging / package.root
        issues = validate_skill_directory(staged)
        if issues:
            raise _Abort(
                ValidationFailure(field="package_content", message="; ".join(issues), details={"issues": issues})
            )
        return staged

    def _prepare(self, skill_path: Path, comparison: VersionComparison, downgrade: Downgrade | None) -> None:
        self._checkpoint("preparation")
        lock = acquire_lock(
            skill_path,
            operation="update",
            package_path=self.package.path if self.package else None,
            stale_after_s=self.stale_after_s,
        )
        if not isinstance(lock, LockHandle):
            raise _Abort(lock)
        self.lock = lock

        if not self.no_backup:
            backup_deadline = Deadline(min(BACKUP_TIMEOUT_S, self.deadline.remaining_s))
            created = create_backup(skill_path, self.skill_name, backup_dir=self.backup_dir)
            if not isinstance(created, BackupCreated):
                raise _Abort(created)
            self.backup_path = created.path
            if backup_deadline.expired:
                raise DeadlineExceeded(TimeoutFailure(operation="backup", timeout_s=backup_deadline.budget_s))

        if not self.force:
            confirm_or_cancel(self.confirm, _build_prompt(self.skill_name, comparison, downgrade), self.token)
        else:
            self._checkpoint("execution")

    def _execute(
        self,
        skill_path: Path,
        staged: Path,
        staging: Path,
        previous: TreeInfo,
        comparison: VersionComparison,
    ) -> UpdateOutcome:
        aside = staging / f".{self.skill_name}.previous"
        try:
            swap_in(skill_path, staged, aside)
        except SwapError as e:
            if not e.parked:
                raise _Abort(failure_from_os_error(e.cause, operation="update", path=skill_path))
            reason = f"Could not move new version into place: {e.cause.strerror or e.cause}"
            return self._rollback(skill_path, aside, reason)

        issues = validate_skill_directory(skill_path)
        if issues:
            return self._rollback(skill_path, aside, "Post-update validation failed: " + "; ".join(issues))

        logger.info("updated %s (%d added, %d removed, %d modified)", self.skill_name,
                    comparison.added_count, comparison.removed_count, comparison.modified_count)
        return UpdateSuccess(
            skill_name=self.skill_name,
            skill_path=skill_path,
            previous=previous,
            current=tree_info(skill_path),
            comparison=comparison,
            backup_path=self.backup_path,
            backup_kept=self.backup_path is not None and self.keep_backup,
            warnings=tuple(self.warnings),
        )

    def _rollback(self, skill_path: Path, aside: Path, reason: str) -> UpdateOutcome:
        logger.warning("update of %s failed, rolling back: %s", self.skill_name, reason)
        removal = safe_remove_tree(skill_path)
        if removal.status == "success" and os.path.lexists(aside):
            try:
                os.rename(aside, skill_path)
                return UpdateRolledBack(
                    RollbackFailure(skill_name=self.skill_name, update_failure_reason=reason,
                                    backup_path=self.backup_path)
                )
            except OSError as e:
                logger.warning("could not move previous tree back: %s", e)

        if self.backup_path is None:
            return self._critical(skill_path, reason, "no backup available")
        restore_failure = restore_backup(self.backup_path, skill_path, backup_dir=self.backup_dir)
        if restore_failure is not None:
            return self._critical(skill_path, reason, restore_failure.message)
        return UpdateRolledBack(
            RollbackFailure(skill_name=self.skill_name, update_failure_reason=reason, backup_path=self.backup_path)
        )

    def _critical(self, skill_path: Path, reason: str, rollback_reason: str) -> UpdateOutcome:
        if self.backup_path is not None:
            instructions = (
                f"To recover manually: remove {skill_path}, then unzip {self.backup_path} "
                f"into {skill_path.parent}"
            )
        else:
            instructions = f"No backup was taken; reinstall {self.skill_name} from a known good package"
        return UpdateRollbackFailed(
            CriticalFailure(
                skill_name=self.skill_name,
                skill_path=skill_path,
                update_failure_reason=reason,
                rollback_failure_reason=rollback_reason,
                backup_path=self.backup_path,
                recovery_instructions=instructions,
            )
        )

    def _cleanup(self, outcome: UpdateOutcome | None) -> None:
        release_lock(self.lock)
        self.lock = None
        if self.package is not None:
            self.package.archive.close()
        if self.backup_path is None:
            return
        keep = (
            outcome is None
            or isinstance(outcome, UpdateRollbackFailed)
            or (isinstance(outcome, UpdateSuccess) and self.keep_backup)
        )
        if not keep:
            remove_backup(self.backup_path, backup_dir=self.backup_dir)

    def _audit(self, outcome: UpdateOutcome) -> None:
        scope = str(self.scope) if self.scope else (self.scope_selector or "project")
        if isinstance(outcome, UpdateDryRunPreview):
            return
        if isinstance(outcome, UpdateSuccess):
            c = outcome.comparison
            audit.record("update", self.skill_name, scope, "success", added=c.added_count,
                         removed=c.removed_count, modified=c.modified_count, size=c.size_change,
                         backup=outcome.backup_path if outcome.backup_kept else None)
        elif isinstance(outcome, UpdateCancelled):
            audit.record("update", self.skill_name, scope, "cancelled", error=outcome.reason)
        elif isinstance(outcome, UpdateRolledBack):
            audit.record("update", self.skill_name, scope, "rolled_back", error=outcome.failure.update_failure_reason)
        elif isinstance(outcome, UpdateRollbackFailed):
            audit.record("update", self.skill_name, scope, "critical", error=outcome.failure.message,
                         backup=outcome.failure.backup_path)
        else:
            audit.record("update", self.skill_name, scope, "failed", error=outcome.failure.message)


def update_skill(skill_name: str, package_path: str | Path, **kwargs: Any) -> UpdateOutcome:
    return UpdatePipeline(skill_name, package_path, **kwargs).run()
