from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

PROJECT = "project"
PERSONAL = "personal"
CUSTOM = "custom"

SKILLS_SUBDIR = Path(".claude") / "skills"


@dataclass(frozen=True)
class Scope:
    kind: str
    path: Path
    original_input: str

    def __str__(self) -> str:
        return self.original_input if self.kind == CUSTOM else self.kind


@dataclass(frozen=True)
class PathValidation:
    path: Path
    exists: bool
    is_directory: bool
    writable: bool
    parent_exists: bool
    errors: tuple[str, ...]

    @property
    def valid(self) -> bool:
        return not self.errors


def expand_tilde(path: str, *, home: str | Path | None = None) -> str:
    home_dir = str(home) if home is not None else os.path.expanduser("~")
    if path == "~":
        return home_dir
    if path.startswith("~/") or path.startswith("~" + os.sep):
        return os.path.join(home_dir, path[2:])
    return path


def resolve_scope(
    selector: str | None = None,
    *,
    cwd: str | Path | None = None,
    home: str | Path | None = None,
) -> Scope:
    """Map ``project``, ``personal`` or a directory path onto an absolute skills directory.

    Nothing is created or checked here; see :func:`validate_install_path`.
    """
    base = Path(cwd) if cwd is not None else Path.cwd()
    home_dir = Path(home) if home is not None else Path.home()
    raw = selector if selector is not None else PROJECT

    if raw == PROJECT:
        return Scope(kind=PROJECT, path=_absolute(base / SKILLS_SUBDIR), original_input=raw)
    if raw == PERSONAL:
        return Scope(kind=PERSONAL, path=_absolute(home_dir / SKILLS_SUBDIR), original_input=raw)

    expanded = Path(expand_tilde(raw, home=home_dir))
    if not expanded.is_absolute():
        expanded = base / expanded
    return Scope(kind=CUSTOM, path=_absolute(expanded), original_input=raw)


def _absolute(path: Path) -> Path:
    return Path(os.path.normpath(os.path.abspath(path)))


def is_path_within(child: str | Path, parent: str | Path) -> bool:
    """True when ``child`` is ``parent`` itself or lies beneath it (lexically)."""
    c = os.path.normpath(os.path.abspath(child))
    p = os.path.normpath(os.path.abspath(parent))
    if c == p:
        return True
    prefix = p if p.endswith(os.sep) else p + os.sep
    return c.startswith(prefix)


def is_strictly_within(child: str | Path, parent: str | Path) -> bool:
    c = os.path.normpath(os.path.abspath(child))
    p = os.path.normpath(os.path.abspath(parent))
    return c != p and is_path_within(c, p)


def validate_install_path(path: str | Path) -> PathValidation:
    target = Path(path)
    errors: list[str] = []
    exists = target.exists()
    is_directory = target.is_dir()
    parent_exists = target.parent.exists()
    writable = False

    if exists:
        if not is_directory:
            errors.append(f"Path exists but is not a directory: {target}")
        else:
            writable = os.access(target, os.W_OK | os.X_OK)
            if not writable:
                errors.append(f"Directory is not writable: {target}")
    else:
        # The directory will be created; the nearest existing ancestor must be writable.
        ancestor = target.parent
        while not ancestor.exists() and ancestor != ancestor.parent:
            ancestor = ancestor.parent
        if not ancestor.is_dir():
            errors.append(f"Cannot create directory under non-directory: {ancestor}")
        else:
            writable = os.access(ancestor, os.W_OK | os.X_OK)
            if not writable:
                errors.append(f"Cannot create directory, parent is not writable: {ancestor}")

    return PathValidation(
        path=target,
        exists=exists,
        is_directory=is_directory,
        writable=writable,
        parent_exists=parent_exists,
        errors=tuple(errors),
    )


def ensure_directory(path: str | Path) -> Path:
    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)
    return target
