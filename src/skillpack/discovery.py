from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import CASE_MISMATCH, FilesystemFailure, SecurityFailure, SkillNotFound, failure_from_os_error
from .manifest import MANIFEST_FILENAME, ManifestError, read_manifest
from .names import name_error
from .scope import Scope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkillFound:
    name: str
    path: Path
    has_manifest: bool


@dataclass(frozen=True)
class InstalledSkill:
    name: str
    path: Path
    scope: str
    description: str | None
    version: str | None
    has_manifest: bool
    error: str | None = None


def discover_skill(name: str, scope: Scope) -> SkillFound | SkillNotFound | SecurityFailure | FilesystemFailure:
    """Locate ``{scope}/{name}``.

    On case-insensitive filesystems ``Foo`` and ``foo`` open the same
    directory; a directory whose on-disk name differs from ``name`` only by
    case is reported as a security failure rather than silently matched.
    """
    skill_path = scope.path / name
    if not os.path.lexists(skill_path):
        return SkillNotFound(skill_name=name, searched_path=scope.path)

    try:
        siblings = os.listdir(scope.path)
    except OSError as e:
        return failure_from_os_error(e, operation="discover", path=scope.path)
    if name not in siblings:
        actual = next((s for s in siblings if s.lower() == name.lower()), None)
        if actual is not None:
            return SecurityFailure(
                reason=CASE_MISMATCH,
                message=f'Skill "{name}" matched directory "{actual}" with different case',
                details={"expected": name, "actual": actual},
            )
        return SkillNotFound(skill_name=name, searched_path=scope.path)

    if not skill_path.is_dir():
        return SkillNotFound(skill_name=name, searched_path=scope.path)

    return SkillFound(name=name, path=skill_path, has_manifest=(skill_path / MANIFEST_FILENAME).is_file())


def list_skills(scope: Scope) -> list[InstalledSkill]:
    """Installed skills in ``scope``, sorted by name. Takes no lock."""
    if not scope.path.is_dir():
        return []
    out: list[InstalledSkill] = []
    for entry in sorted(scope.path.iterdir(), key=lambda p: p.name):
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        if name_error(entry.name) is not None:
            logger.debug("skipping %s: not a valid skill name", entry)
            continue
        has_manifest = (entry / MANIFEST_FILENAME).is_file()
        description = version = error = None
        if has_manifest:
            try:
                manifest = read_manifest(entry)
                description, version = manifest.description or None, manifest.version
            except ManifestError as e:
                error = str(e)
        out.append(
            InstalledSkill(
                name=entry.name,
                path=entry,
                scope=str(scope),
                description=description,
                version=version,
                has_manifest=has_manifest,
                error=error,
            )
        )
    return out
