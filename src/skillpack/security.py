"""Security checks run before any destructive filesystem step.

Each check is independent and returns ``None`` when the subject is safe, or a
failure record describing the problem. Pipelines run them in a fixed order:
symlink escape, hard links, zip entries, resource limits, containment.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import (
    CONTAINMENT_VIOLATION,
    HARD_LINK_DETECTED,
    PATH_TRAVERSAL,
    SYMLINK_ESCAPE,
    ZIP_ENTRY_ESCAPE,
    FilesystemFailure,
    SecurityFailure,
    ValidationFailure,
)
from .files import TreeSummary, iter_tree
from .scope import is_path_within, is_strictly_within

logger = logging.getLogger(__name__)

MAX_SKILL_SIZE = 1024 * 1024 * 1024  # 1 GiB
MAX_FILE_COUNT = 10_000
MAX_REPORTED_HARD_LINKS = 10

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


@dataclass(frozen=True)
class HardLinkReport:
    files: tuple[str, ...]
    total: int
    warning: str | None = None


@dataclass(frozen=True)
class SymlinkReport:
    total: int
    escaping: tuple[str, ...]
    warnings: tuple[str, ...]


@dataclass(frozen=True)
class LimitReport:
    exceeded: bool
    warnings: tuple[str, ...]


def check_zip_entries(names: Iterable[str], root: str) -> SecurityFailure | None:
    """Reject entries that would land outside ``{root}/`` once extracted."""
    prefix = root + "/"
    for raw in names:
        if "\x00" in raw:
            return SecurityFailure(
                reason=PATH_TRAVERSAL,
                message=f"Archive entry contains a NUL byte: {raw!r}",
                details={"entry": raw},
            )
        name = raw.replace("\\", "/")
        if name.startswith("/") or _DRIVE_RE.match(name):
            return _zip_escape(raw, "absolute path")
        if ".." in name.split("/"):
            return _zip_escape(raw, "parent directory reference")
        normalized = posixpath.normpath(name)
        if normalized != root and not normalized.startswith(prefix):
            return _zip_escape(raw, f'outside root directory "{root}"')
    return None


def _zip_escape(entry: str, why: str) -> SecurityFailure:
    return SecurityFailure(
        reason=ZIP_ENTRY_ESCAPE,
        message=f"Archive entry escapes the skill directory ({why}): {entry!r}",
        details={"entry": entry},
    )


def check_symlink_escape(skill_path: Path, scope_path: Path) -> SecurityFailure | FilesystemFailure | None:
    if not os.path.lexists(skill_path):
        return FilesystemFailure(
            operation="symlink-check", path=skill_path, message=f"Path does not exist: {skill_path}"
        )
    real_skill = os.path.realpath(skill_path)
    real_scope = os.path.realpath(scope_path)
    if not is_strictly_within(real_skill, real_scope):
        return SecurityFailure(
            reason=SYMLINK_ESCAPE,
            message=f"Skill directory resolves outside its scope: {skill_path} -> {real_skill}",
            details={"skill_path": str(skill_path), "resolved_path": real_skill, "scope": real_scope},
        )
    return None


def check_hard_links(skill_path: Path, *, force: bool = False) -> tuple[HardLinkReport, SecurityFailure | None]:
    """Find regular files whose link count shows they are shared with another path.

    Deleting or overwriting such a file would leave the content reachable
    elsewhere, so this requires ``force``; with ``force`` it is downgraded to a
    warning on the report.
    """
    linked: list[str] = []
    total = 0
    for info in iter_tree(skill_path):
        if info.is_regular_file and info.link_count > 1:
            total += 1
            if len(linked) < MAX_REPORTED_HARD_LINKS:
                linked.append(info.relative_path)

    if not total:
        return HardLinkReport(files=(), total=0), None

    summary = f"{total} file(s) with multiple hard links: {', '.join(linked)}"
    if total > len(linked):
        summary += f" (and {total - len(linked)} more)"
    if force:
        logger.warning("proceeding despite hard links in %s: %s", skill_path, summary)
        return HardLinkReport(files=tuple(linked), total=total, warning=summary), None
    return HardLinkReport(files=tuple(linked), total=total), SecurityFailure(
        reason=HARD_LINK_DETECTED,
        message=f"{summary}. Use --force to proceed.",
        details={"files": linked, "total": total},
    )


def check_resource_limits(
    file_count: int,
    total_size: int,
    *,
    force: bool = False,
    max_files: int = MAX_FILE_COUNT,
    max_size: int = MAX_SKILL_SIZE,
) -> tuple[LimitReport, ValidationFailure | None]:
    warnings: list[str] = []
    if file_count > max_files:
        warnings.append(f"Skill contains {file_count} files (limit {max_files})")
    if total_size > max_size:
        warnings.append(f"Skill is {total_size} bytes (limit {max_size})")
    if not warnings:
        return LimitReport(exceeded=False, warnings=()), None
    if force:
        for w in warnings:
            logger.warning("resource limit exceeded, continuing: %s", w)
        return LimitReport(exceeded=True, warnings=tuple(warnings)), None
    return LimitReport(exceeded=True, warnings=tuple(warnings)), ValidationFailure(
        field="resource_limits",
        message="; ".join(warnings) + ". Use --force to proceed.",
        details={"file_count": file_count, "total_size": total_size},
    )


def check_tree_limits(summary: TreeSummary, *, force: bool = False) -> tuple[LimitReport, ValidationFailure | None]:
    return check_resource_limits(summary.file_count, summary.total_size, force=force)


def verify_containment(target: Path, scope_path: Path) -> SecurityFailure | None:
    """Second check before delete/overwrite: realpath(target) strictly inside realpath(scope)."""
    real_target = os.path.realpath(target)
    real_scope = os.path.realpath(scope_path)
    if is_strictly_within(real_target, real_scope):
        return None
    return SecurityFailure(
        reason=CONTAINMENT_VIOLATION,
        message=f"Path {target} is not contained in {scope_path}",
        details={"path": real_target, "scope": real_scope},
    )


def scan_symlinks(skill_path: Path) -> SymlinkReport:
    """Summarize symlinks inside the skill; those pointing outside it get a warning."""
    escaping: list[str] = []
    total = 0
    real_root = os.path.realpath(skill_path)
    for info in iter_tree(skill_path):
        if not info.is_symlink:
            continue
        total += 1
        target = os.path.realpath(info.absolute_path)
        if not is_path_within(target, real_root):
            escaping.append(info.relative_path)
    warnings = tuple(f"Symlink {p} points outside the skill directory" for p in escaping)
    return SymlinkReport(total=total, escaping=tuple(escaping), warnings=warnings)
