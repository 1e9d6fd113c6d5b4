"""Programmatic interface.

Each function runs one pipeline and either returns a plain result or raises
one of the exceptions from :mod:`skillpack.errors`. Pass ``detailed=True`` to
get the pipeline's own outcome record instead of the simplified result (it
still raises on failure).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .discovery import InstalledSkill, list_skills
from .errors import CancellationError, FileSystemError, PackageError, to_exception
from .files import summarize_tree
from .installer import (
    InstallCancelled,
    InstallDryRunPreview,
    InstallFailed,
    InstallOverwriteRequired,
    InstallRollbackFailed,
    InstallRolledBack,
    InstallSuccess,
    install_skill,
)
from .manifest import MANIFEST_FILENAME, ManifestError, read_manifest, validate_skill_directory
from .package import SkillPackage, package_skill
from .pipeline import CancelSignal, ConfirmFn, check_cancelled
from .scope import resolve_scope
from .security import check_tree_limits, scan_symlinks
from .uninstaller import BatchUninstallResult, uninstall_skills
from .updater import (
    UpdateCancelled,
    UpdateDryRunPreview,
    UpdateFailed,
    UpdateRollbackFailed,
    UpdateRolledBack,
    UpdateSuccess,
    update_skill,
)


@dataclass(frozen=True)
class InstallResult:
    installed_path: Path
    skill_name: str
    version: str | None
    dry_run: bool


@dataclass(frozen=True)
class UpdateResult:
    updated_path: Path
    skill_name: str
    previous_version: str | None
    new_version: str | None
    backup_path: Path | None
    dry_run: bool


@dataclass(frozen=True)
class UninstallResult:
    removed: list[str]
    not_found: list[str]
    dry_run: bool


def _target(scope: str | None, target_path: str | Path | None) -> str | None:
    return str(target_path) if target_path is not None else scope


def install(
    file: str | Path,
    *,
    scope: str | None = None,
    target_path: str | Path | None = None,
    force: bool = False,
    dry_run: bool = False,
    signal: CancelSignal | None = None,
    detailed: bool = False,
    **options: Any,
) -> Any:
    check_cancelled(signal)
    outcome = install_skill(
        file, scope=_target(scope, target_path), force=force, dry_run=dry_run, token=signal, **options
    )
    if isinstance(outcome, InstallFailed):
        raise to_exception(outcome.failure)
    if isinstance(outcome, InstallCancelled):
        raise CancellationError(outcome.reason)
    if isinstance(outcome, InstallRolledBack):
        raise PackageError(f"Installation failed and was rolled back: {outcome.failure_reason}")
    if isinstance(outcome, InstallRollbackFailed):
        raise to_exception(outcome.failure)
    if detailed:
        return outcome

    if isinstance(outcome, InstallOverwriteRequired):
        raise FileSystemError(
            f'Skill "{outcome.skill_name}" already exists at {outcome.existing_path}. '
            "Use force=True to overwrite.",
            path=outcome.existing_path,
        )
    if isinstance(outcome, InstallDryRunPreview):
        return InstallResult(
            installed_path=outcome.target_path, skill_name=outcome.skill_name, version=None, dry_run=True
        )
    assert isinstance(outcome, InstallSuccess)
    try:
        version = read_manifest(outcome.skill_path).version
    except ManifestError:
        version = None
    return InstallResult(
        installed_path=outcome.skill_path, skill_name=outcome.skill_name, version=version, dry_run=False
    )


def update(
    name: str,
    file: str | Path,
    *,
    scope: str | None = None,
    target_path: str | Path | None = None,
    force: bool = False,
    dry_run: bool = False,
    keep_backup: bool = False,
    no_backup: bool = False,
    confirm: ConfirmFn | None = None,
    signal: CancelSignal | None = None,
    detailed: bool = False,
    **options: Any,
) -> Any:
    check_cancelled(signal)
    outcome = update_skill(
        name,
        file,
        scope=_target(scope, target_path),
        force=force,
        dry_run=dry_run,
        keep_backup=keep_backup,
        no_backup=no_backup,
        confirm=confirm,
        token=signal,
        **options,
    )
    if isinstance(outcome, (UpdateFailed, UpdateRolledBack, UpdateRollbackFailed)):
        raise to_exception(outcome.failure)
    if isinstance(outcome, UpdateCancelled):
        raise CancellationError(outcome.reason)
    if detailed:
        return outcome

    if isinstance(outcome, UpdateDryRunPreview):
        return UpdateResult(
            updated_path=outcome.skill_path,
            skill_name=outcome.skill_name,
            previous_version=outcome.current.version,
            new_version=outcome.incoming.version,
            backup_path=outcome.backup_path,
            dry_run=True,
        )
    assert isinstance(outcome, UpdateSuccess)
    return UpdateResult(
        updated_path=outcome.skill_path,
        skill_name=outcome.skill_name,
        previous_version=outcome.previous.version,
        new_version=outcome.current.version,
        backup_path=outcome.backup_path if outcome.backup_kept else None,
        dry_run=False,
    )


def uninstall(
    names: str | Iterable[str],
    *,
    scope: str | None = None,
    target_path: str | Path | None = None,
    force: bool = False,
    dry_run: bool = False,
    confirm: ConfirmFn | None = None,
    signal: CancelSignal | None = None,
    detailed: bool = False,
    **options: Any,
) -> Any:
    check_cancelled(signal)
    batch = uninstall_skills(
        [names] if isinstance(names, str) else names,
        scope=_target(scope, target_path),
        force=force,
        dry_run=dry_run,
        confirm=confirm,
        token=signal,
        **options,
    )
    if detailed:
        return batch
    assert isinstance(batch, BatchUninstallResult)
    return UninstallResult(removed=list(batch.removed), not_found=list(batch.not_found), dry_run=batch.dry_run)


def list_installed(
    *,
    scope: str | None = None,
    cwd: str | Path | None = None,
    home: str | Path | None = None,
) -> list[InstalledSkill]:
    """Installed skills; with no scope, project skills then personal skills."""
    selectors = [scope] if scope is not None else ["project", "personal"]
    out: list[InstalledSkill] = []
    for selector in selectors:
        out.extend(list_skills(resolve_scope(selector, cwd=cwd, home=home)))
    return out


def create_package(
    path: str | Path,
    *,
    output: str | Path | None = None,
    force: bool = False,
    skip_validation: bool = False,
) -> SkillPackage:
    return package_skill(Path(path), output_dir=Path(output) if output is not None else None,
                         force=force, skip_validation=skip_validation)


@dataclass(frozen=True)
class ValidateResult:
    valid: bool
    skill_path: Path
    skill_name: str | None
    errors: list[str]
    warnings: list[str]


def validate(path: str | Path) -> ValidateResult:
    """Check a skill directory (or its ``SKILL.md``).

    An invalid skill is reported in the result, not raised.
    """
    target = Path(path).expanduser()
    if target.name == MANIFEST_FILENAME and target.is_file():
        target = target.parent
    target = target.resolve()
    if not target.is_dir():
        return ValidateResult(
            valid=False, skill_path=target, skill_name=None, errors=[f"Not a directory: {target}"], warnings=[]
        )

    errors = validate_skill_directory(target)
    skill_name = None if errors else read_manifest(target).name
    limits, _ = check_tree_limits(summarize_tree(target))
    warnings = list(limits.warnings) + list(scan_symlinks(target).warnings)
    return ValidateResult(
        valid=not errors, skill_path=target, skill_name=skill_name, errors=errors, warnings=warnings
    )
