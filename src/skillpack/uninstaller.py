from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Union

from . import audit
from .discovery import SkillFound, discover_skill
from .errors import (
    CancellationError,
    Failure,
    FileSystemError,
    PartialRemoval,
    SecurityFailure,
    SkillNotFound,
    TimeoutFailure,
    ValidationFailure,
    failure_from_os_error,
    is_failure,
    to_exception,
)
from .files import iter_tree, summarize_tree
from .locking import LOCK_STALE_AFTER_S, LockHandle, acquire_lock, release_lock
from .manifest import MANIFEST_FILENAME
from .names import validate_scope_selector, validate_skill_name
from .pipeline import (
    UNINSTALL_TIMEOUT_S,
    CancelSignal,
    ConfirmFn,
    Deadline,
    DeadlineExceeded,
    checkpoint,
    confirm_or_cancel,
    safe_remove_tree,
)
from .scope import Scope, resolve_scope
from .security import check_hard_links, check_symlink_escape, check_tree_limits, scan_symlinks, verify_containment

logger = logging.getLogger(__name__)

LARGE_FILE_BYTES = 10 * 1024 * 1024
MAX_REPORTED = 5
_TEMP_FILE_RE = re.compile(r"(\.swp|\.swo|~|\.tmp|\.temp)$|^(\.DS_Store|Thumbs\.db)$")


@dataclass(frozen=True)
class UninstallSuccess:
    skill_name: str
    skill_path: Path
    files_removed: int
    bytes_freed: int
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class UninstallDryRunPreview:
    skill_name: str
    skill_path: Path
    files: tuple[str, ...]
    file_count: int
    total_size: int
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class UninstallCancelled:
    skill_name: str
    reason: str


@dataclass(frozen=True)
class UninstallFailed:
    skill_name: str
    failure: Failure


UninstallOutcome = Union[UninstallSuccess, UninstallDryRunPreview, UninstallCancelled, UninstallFailed]


@dataclass(frozen=True)
class BatchUninstallResult:
    removed: tuple[str, ...]
    not_found: tuple[str, ...]
    dry_run: bool
    results: tuple[UninstallOutcome, ...]

    @property
    def files_removed(self) -> int:
        return sum(r.files_removed for r in self.results if isinstance(r, UninstallSuccess))

    @property
    def bytes_freed(self) -> int:
        return sum(r.bytes_freed for r in self.results if isinstance(r, UninstallSuccess))


def detect_unexpected_files(skill_path: Path) -> list[str]:
    """Signs that the directory is a working copy rather than an installed skill."""
    git_dir = node_modules = False
    large: list[str] = []
    temp: list[str] = []
    for info in iter_tree(skill_path):
        name = info.relative_path.rsplit("/", 1)[-1]
        if info.is_directory and name == ".git":
            git_dir = True
        elif info.is_directory and name == "node_modules":
            node_modules = True
        elif info.is_regular_file:
            if info.size > LARGE_FILE_BYTES:
                large.append(info.relative_path)
            if _TEMP_FILE_RE.search(name):
                temp.append(info.relative_path)

    warnings: list[str] = []
    if git_dir:
        warnings.append("Skill contains a .git directory; this may be a development repository.")
    if node_modules:
        warnings.append("Skill contains a node_modules directory.")
    if large:
        warnings.append(f"Skill contains {len(large)} file(s) larger than 10 MB: {', '.join(large[:MAX_REPORTED])}")
    if temp:
        warnings.append(f"Skill contains {len(temp)} temporary file(s): {', '.join(temp[:MAX_REPORTED])}")
    return warnings


class _Abort(Exception):
    def __init__(self, failure: Failure) -> None:
        super().__init__(getattr(failure, "message", ""))
        self.failure = failure


class UninstallPipeline:
    def __init__(
        self,
        skill_name: str,
        *,
        scope: str | None = None,
        cwd: str | Path | None = None,
        home: str | Path | None = None,
        force: bool = False,
        dry_run: bool = False,
        confirm: ConfirmFn | None = None,
        stale_after_s: float = LOCK_STALE_AFTER_S,
        token: CancelSignal | None = None,
        timeout_s: float = UNINSTALL_TIMEOUT_S,
    ) -> None:
        self.skill_name = skill_name
        self.scope_selector = scope
        self.cwd = cwd
        self.home = home
        self.force = force
        self.dry_run = dry_run
        self.confirm = confirm
        self.stale_after_s = stale_after_s
        self.token = token
        self.timeout_s = timeout_s
        self.deadline = Deadline(timeout_s)

        self.scope: Scope | None = None
        self.lock: LockHandle | None = None
        self.warnings: list[str] = []

    def run(self) -> UninstallOutcome:
        try:
            outcome = self._run()
        except _Abort as e:
            outcome = UninstallFailed(self.skill_name, e.failure)
        except CancellationError as e:
            outcome = UninstallCancelled(self.skill_name, str(e))
        except DeadlineExceeded as e:
            outcome = UninstallFailed(self.skill_name, e.failure)
        except OSError as e:
            logger.debug("uninstall of %s hit an unexpected OS error", self.skill_name, exc_info=True)
            outcome = UninstallFailed(
                self.skill_name, failure_from_os_error(e, operation="uninstall", path=e.filename or self.skill_name)
            )
        finally:
            release_lock(self.lock)
            self.lock = None
        self._audit(outcome)
        return outcome

    def _checkpoint(self, phase: str) -> None:
        checkpoint(self.token, self.deadline, phase, operation="uninstall")

    def _run(self) -> UninstallOutcome:
        self._checkpoint("validation")
        for problem in (validate_skill_name(self.skill_name), validate_scope_selector(self.scope_selector)):
            if problem is not None:
                raise _Abort(problem)

        self.scope = resolve_scope(self.scope_selector, cwd=self.cwd, home=self.home)
        found = discover_skill(self.skill_name, self.scope)
        if not isinstance(found, SkillFound):
            raise _Abort(found)
        skill_path = found.path

        self._checkpoint("pre-removal checks")
        self._pre_removal_checks(found)
        self._security_checks(skill_path)

        summary = summarize_tree(skill_path)
        if self.dry_run:
            files = tuple(f.relative_path for f in iter_tree(skill_path) if not f.is_directory)
            return UninstallDryRunPreview(
                skill_name=self.skill_name,
                skill_path=skill_path,
                files=files,
                file_count=summary.file_count,
                total_size=summary.total_size,
                warnings=tuple(self.warnings),
            )

        lock = acquire_lock(skill_path, operation="uninstall", stale_after_s=self.stale_after_s)
        if not isinstance(lock, LockHandle):
            raise _Abort(lock)
        self.lock = lock

        if not self.force:
            confirm_or_cancel(
                self.confirm,
                f'Remove skill "{self.skill_name}" ({summary.file_count} files, {summary.total_size} bytes)?',
                self.token,
            )
        else:
            self._checkpoint("removal")

        # Containment is re-checked immediately before deletion.
        contained = verify_containment(skill_path, self.scope.path)
        if contained is not None:
            raise _Abort(contained)

        result = safe_remove_tree(skill_path, deadline=self.deadline)
        if result.status == "timeout":
            raise _Abort(TimeoutFailure(operation="uninstall", timeout_s=self.timeout_s))
        if result.status != "success":
            raise _Abort(
                PartialRemoval(
                    skill_name=self.skill_name,
                    files_removed=result.files_removed,
                    files_remaining=result.remaining,
                    last_error=result.errors[-1] if result.errors else "unknown error",
                )
            )
        logger.info("removed %s (%d files, %d bytes)", skill_path, result.files_removed, result.bytes_freed)
        return UninstallSuccess(
            skill_name=self.skill_name,
            skill_path=skill_path,
            files_removed=result.files_removed,
            bytes_freed=result.bytes_freed,
            warnings=tuple(self.warnings),
        )

    def _pre_removal_checks(self, found: SkillFound) -> None:
        problems: list[str] = []
        if not found.has_manifest:
            problems.append(f"{MANIFEST_FILENAME} not found in {found.path}; this may not be a skill directory")
        problems.extend(detect_unexpected_files(found.path))
        _, limits = check_tree_limits(summarize_tree(found.path), force=self.force)
        if limits is not None:
            problems.append(limits.message)

        if not problems:
            return
        if self.force:
            for p in problems:
                logger.warning("%s: %s", self.skill_name, p)
            self.warnings.extend(problems)
            return
        raise _Abort(
            ValidationFailure(
                field="pre_removal",
                message="; ".join(problems) + ". Use --force to remove anyway.",
                details={"issues": problems},
            )
        )

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
        links = scan_symlinks(skill_path)
        self.warnings.extend(links.warnings)
        contained = verify_containment(skill_path, self.scope.path)
        if contained is not None:
            raise _Abort(contained)

    def _audit(self, outcome: UninstallOutcome) -> None:
        scope = str(self.scope) if self.scope else (self.scope_selector or "project")
        if isinstance(outcome, UninstallDryRunPreview):
            return
        if isinstance(outcome, UninstallSuccess):
            audit.record("uninstall", self.skill_name, scope, "success", removed=outcome.files_removed,
                         size=outcome.bytes_freed, path=outcome.skill_path)
        elif isinstance(outcome, UninstallCancelled):
            audit.record("uninstall", self.skill_name, scope, "cancelled", error=outcome.reason)
        else:
            status = "not_found" if isinstance(outcome.failure, SkillNotFound) else "failed"
            audit.record("uninstall", self.skill_name, scope, status, error=outcome.failure.message)


def uninstall_skill(skill_name: str, **kwargs: Any) -> UninstallOutcome:
    return UninstallPipeline(skill_name, **kwargs).run()


def uninstall_skills(names: Iterable[str], *, force: bool = False, dry_run: bool = False, **kwargs: Any) -> BatchUninstallResult:
    """Uninstall several skills in order.

    Traversal-shaped names are rejected before any name touches the
    filesystem. A missing skill, or (without ``force``) a skill that fails
    validation, is recorded under ``not_found`` and the batch moves on; any
    other failure is raised and stops the batch.
    """
    names = list(names)
    for name in names:
        problem = validate_skill_name(name)
        if isinstance(problem, SecurityFailure):
            raise to_exception(problem)

    removed: list[str] = []
    not_found: list[str] = []
    results: list[UninstallOutcome] = []
    for name in names:
        outcome = UninstallPipeline(name, force=force, dry_run=dry_run, **kwargs).run()
        results.append(outcome)
        if isinstance(outcome, (UninstallSuccess, UninstallDryRunPreview)):
            removed.append(name)
            continue
        if isinstance(outcome, UninstallCancelled):
            raise CancellationError(outcome.reason)

        failure = outcome.failure
        if isinstance(failure, SkillNotFound):
            not_found.append(name)
        elif isinstance(failure, ValidationFailure):
            if force:
                raise FileSystemError(failure.message)
            not_found.append(name)
        elif is_failure(failure):
            raise to_exception(failure)

    return BatchUninstallResult(
        removed=tuple(removed),
        not_found=tuple(not_found),
        dry_run=dry_run,
        results=tuple(results),
    )
