from __future__ import annotations

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .archive import PackageArchive, open_package
from .errors import CancellationError, Failure, PackageError, TimeoutFailure, ValidationFailure
from .manifest import Manifest, validate_manifest_text
from .names import validate_package_file, validate_skill_name
from .scope import is_path_within
from .security import check_resource_limits, check_zip_entries

logger = logging.getLogger(__name__)

UPDATE_TIMEOUT_S = 5 * 60
BACKUP_TIMEOUT_S = 2 * 60
EXTRACTION_TIMEOUT_S = 2 * 60
UNINSTALL_TIMEOUT_S = 5 * 60

ConfirmFn = Callable[[str], bool]


class CancelSignal(Protocol):
    def is_set(self) -> bool:
        ...


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a pipeline.

    Pipelines look at it at phase boundaries only; once the destructive step
    has started it runs to completion (or rollback).
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def check_cancelled(token: CancelSignal | None, phase: str = "") -> None:
    if token is not None and token.is_set():
        logger.debug("cancelled before %s", phase or "next phase")
        raise CancellationError(f"Operation cancelled{' before ' + phase if phase else ''}")


class Deadline:
    def __init__(self, budget_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_s = budget_s
        self._clock = clock
        self._end = clock() + budget_s

    @property
    def expired(self) -> bool:
        return self._clock() >= self._end

    @property
    def remaining_s(self) -> float:
        return max(0.0, self._end - self._clock())


@dataclass(frozen=True)
class RemovalResult:
    status: str  # "success" | "partial" | "timeout"
    files_removed: int
    directories_removed: int
    bytes_freed: int
    remaining: int
    errors: tuple[str, ...]


def safe_remove_tree(root: Path, *, deadline: Deadline | None = None) -> RemovalResult:
    """Delete ``root`` bottom-up without following symlinks.

    Every unlink is preceded by a check that the entry's parent still
    resolves inside ``root``, so a directory swapped for a symlink mid-walk
    cannot redirect deletion elsewhere. Per-entry errors are collected and
    reported as a partial result instead of aborting the walk.
    """
    root = Path(root)
    real_root = os.path.realpath(root)
    files_removed = dirs_removed = bytes_freed = 0
    errors: list[str] = []

    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        if deadline is not None and deadline.expired:
            return RemovalResult(
                "timeout", files_removed, dirs_removed, bytes_freed, _count_remaining(root), tuple(errors)
            )
        here = Path(dirpath)
        if not is_path_within(os.path.realpath(here), real_root):
            errors.append(f"Skipped {here}: resolves outside {root}")
            continue

        for name in filenames + [d for d in dirnames if (here / d).is_symlink()]:
            p = here / name
            try:
                st = os.lstat(p)
                os.unlink(p)
            except FileNotFoundError:
                continue
            except OSError as e:
                errors.append(f"{p}: {e.strerror or e}")
                continue
            files_removed += 1
            if stat.S_ISREG(st.st_mode):
                bytes_freed += st.st_size

        for name in dirnames:
            p = here / name
            if p.is_symlink():
                continue
            try:
                os.rmdir(p)
            except FileNotFoundError:
                continue
            except OSError as e:
                errors.append(f"{p}: {e.strerror or e}")
                continue
            dirs_removed += 1

    if os.path.lexists(root):
        try:
            if root.is_symlink():
                root.unlink()
            else:
                os.rmdir(root)
            dirs_removed += 1
        except OSError as e:
            errors.append(f"{root}: {e.strerror or e}")

    remaining = _count_remaining(root)
    status = "success" if not errors and not remaining else "partial"
    return RemovalResult(status, files_removed, dirs_removed, bytes_freed, remaining, tuple(errors))


def _count_remaining(root: Path) -> int:
    if not os.path.lexists(root):
        return 0
    count = 0
    for _, dirnames, filenames in os.walk(root):
        count += len(filenames) + len(dirnames)
    return count + 1


class DeadlineExceeded(Exception):
    """Raised at a phase boundary once the operation's time budget is spent."""

    def __init__(self, failure: TimeoutFailure) -> None:
        super().__init__(failure.message)
        self.failure = failure


def checkpoint(token: CancelSignal | None, deadline: Deadline | None, phase: str, *, operation: str) -> None:
    check_cancelled(token, phase)
    if deadline is not None and deadline.expired:
        raise DeadlineExceeded(TimeoutFailure(operation=operation, timeout_s=deadline.budget_s))


@dataclass(frozen=True)
class CheckedPackage:
    path: Path
    archive: PackageArchive
    root: str
    manifest: Manifest
    file_count: int
    total_size: int
    warnings: tuple[str, ...]


def check_package(package_path: str | Path, *, force: bool = False) -> CheckedPackage | Failure:
    """Open ``package_path`` and run every check that needs only the archive.

    On success the caller owns ``archive`` and must close it; on failure it
    is already closed.
    """
    resolved, invalid = validate_package_file(package_path)
    if invalid is not None:
        return invalid
    assert resolved is not None

    try:
        archive = open_package(resolved)
    except PackageError as e:
        return ValidationFailure(field="package_content", message=str(e))

    try:
        result = _inspect_archive(resolved, archive, force=force)
    except BaseException:
        archive.close()
        raise
    if not isinstance(result, CheckedPackage):
        archive.close()
    return result


def _inspect_archive(path: Path, archive: PackageArchive, *, force: bool) -> CheckedPackage | Failure:
    root, structure = archive.validate_structure()
    if structure is not None:
        return ValidationFailure(field="package_content", message=structure.message)
    assert root is not None

    bad_name = validate_skill_name(root)
    if bad_name is not None:
        return bad_name

    escape = check_zip_entries(archive.names, root)
    if escape is not None:
        return escape

    try:
        text = archive.read_manifest_text(root)
    except PackageError as e:
        return ValidationFailure(field="package_content", message=str(e))
    manifest, issues = validate_manifest_text(text, directory_name=root)
    if issues or manifest is None:
        return ValidationFailure(
            field="package_content",
            message="Package manifest is invalid: " + "; ".join(issues),
            details={"issues": issues},
        )

    file_count, total_size = archive.file_count(), archive.total_uncompressed_size()
    limits, too_big = check_resource_limits(file_count, total_size, force=force)
    if too_big is not None:
        return too_big

    return CheckedPackage(
        path=path,
        archive=archive,
        root=root,
        manifest=manifest,
        file_count=file_count,
        total_size=total_size,
        warnings=limits.warnings,
    )


class SwapError(Exception):
    """Moving the staged tree into place failed.

    When ``parked`` is true the previous tree already sits at the aside path
    and the caller is responsible for putting it back.
    """

    def __init__(self, cause: OSError, *, parked: bool) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.parked = parked


def swap_in(target: Path, staged: Path, aside: Path) -> bool:
    """Move ``staged`` to ``target``, parking any existing ``target`` at ``aside``.

    Returns whether something was parked. Both renames stay on one
    filesystem because ``staged`` and ``aside`` live in the scope directory.
    """
    parked = False
    try:
        if os.path.lexists(target):
            os.rename(target, aside)
            parked = True
        os.rename(staged, target)
    except OSError as e:
        raise SwapError(e, parked=parked) from e
    return parked


def confirm_or_cancel(confirm: ConfirmFn | None, prompt: str, token: CancelSignal | None) -> None:
    check_cancelled(token, "confirmation")
    if confirm is not None and not confirm(prompt):
        raise CancellationError("Cancelled by user")
    check_cancelled(token, "execution")
