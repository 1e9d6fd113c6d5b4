from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .names import name_error

MANIFEST_FILENAME = "SKILL.md"
MAX_DESCRIPTION_LENGTH = 1024

ALLOWED_KEYS = frozenset(
    {
        "name",
        "description",
        "license",
        "compatibility",
        "allowed-tools",
        "metadata",
        "context",
        "agent",
        "hooks",
        "user-invocable",
        "memory",
        "skills",
        "model",
        "permissionMode",
        "disallowedTools",
        "argument-hint",
        "keep-coding-instructions",
        "tools",
        "color",
        "disable-model-invocation",
        "version",
    }
)

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n(.*))?$", re.DOTALL)


class ManifestError(ValueError):
    pass


@dataclass(frozen=True)
class Manifest:
    name: str
    description: str
    version: str | None
    fields: dict[str, Any]
    body: str


def parse_manifest(text: str) -> Manifest:
    """Parse the YAML front matter of a SKILL.md document."""
    text = text.lstrip("\ufeff").replace("\r\n", "\n")
    match = _FRONTMATTER_RE.match(text)
    if match is None:
        raise ManifestError("SKILL.md must start with YAML frontmatter delimited by '---' lines")

    raw, body = match.group(1), match.group(2) or ""
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML frontmatter: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ManifestError("Frontmatter must be a mapping")

    version = data.get("version")
    if version is None and isinstance(data.get("metadata"), dict):
        version = data["metadata"].get("version")

    return Manifest(
        name=_as_text(data.get("name")),
        description=_as_text(data.get("description")),
        version=str(version) if version is not None else None,
        fields=dict(data),
        body=body.strip(),
    )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def validate_manifest(manifest: Manifest, *, directory_name: str | None = None) -> list[str]:
    """Return every problem found in ``manifest`` (empty when valid)."""
    issues: list[str] = []
    if not manifest.fields:
        return ["Frontmatter cannot be empty"]

    unexpected = sorted(k for k in manifest.fields if k not in ALLOWED_KEYS)
    if unexpected:
        issues.append(f"Unexpected frontmatter keys: {', '.join(unexpected)}")

    missing = [k for k in ("name", "description") if not getattr(manifest, k)]
    if missing:
        label = "field" if len(missing) == 1 else "fields"
        issues.append(f"Missing required {label}: {', '.join(missing)}")

    if manifest.name:
        reason = name_error(manifest.name)
        if reason is not None:
            issues.append(reason)
        elif directory_name is not None and manifest.name != directory_name:
            issues.append(
                f'Skill name "{manifest.name}" does not match directory name "{directory_name}"'
            )

    desc = manifest.description
    if desc:
        if len(desc) > MAX_DESCRIPTION_LENGTH:
            issues.append(
                f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less (got {len(desc)})"
            )
        if "<" in desc or ">" in desc:
            issues.append("Description cannot contain angle brackets (< or >)")
    return issues


def validate_manifest_text(text: str, *, directory_name: str | None = None) -> tuple[Manifest | None, list[str]]:
    try:
        manifest = parse_manifest(text)
    except ManifestError as e:
        return None, [str(e)]
    return manifest, validate_manifest(manifest, directory_name=directory_name)


def read_manifest(skill_dir: Path) -> Manifest:
    path = skill_dir / MANIFEST_FILENAME
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ManifestError(f"{MANIFEST_FILENAME} not found in {skill_dir}") from e
    except UnicodeDecodeError as e:
        raise ManifestError(f"{MANIFEST_FILENAME} is not valid UTF-8") from e
    return parse_manifest(text)


def validate_skill_directory(skill_dir: Path) -> list[str]:
    """Validate an unpacked skill directory (manifest present, valid, name matches)."""
    if not (skill_dir / MANIFEST_FILENAME).is_file():
        return [f"{MANIFEST_FILENAME} not found in {skill_dir}"]
    try:
        manifest = read_manifest(skill_dir)
    except ManifestError as e:
        return [str(e)]
    return validate_manifest(manifest, directory_name=skill_dir.name)
