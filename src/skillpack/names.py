from __future__ import annotations

import re
import zipfile
from pathlib import Path

from .errors import PATH_TRAVERSAL, SecurityFailure, ValidationFailure

MAX_NAME_LENGTH = 64
RESERVED_WORDS = ("anthropic", "claude")
PACKAGE_EXTENSION = ".skill"

_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def name_error(name: str) -> str | None:
    """Return a human-readable reason why ``name`` is not a valid skill name."""
    if not name or not name.strip():
        return "Skill name cannot be empty"
    if _CONTROL_RE.search(name):
        return "Skill name cannot contain control characters"
    if not name.isascii():
        return "Skill name must contain only ASCII characters"
    if "/" in name or "\\" in name:
        return "Skill name cannot contain path separators"
    if name in {".", ".."}:
        return "Skill name cannot be '.' or '..'"
    if name.startswith("/") or _DRIVE_RE.match(name):
        return "Skill name cannot be an absolute path"
    if len(name) > MAX_NAME_LENGTH:
        return f"Skill name must be {MAX_NAME_LENGTH} characters or less (got {len(name)})"
    if not _NAME_RE.match(name):
        if name != name.lower():
            return "Skill name must be lowercase"
        if name.startswith("-"):
            return "Skill name cannot start with a hyphen"
        if name.endswith("-"):
            return "Skill name cannot end with a hyphen"
        if "--" in name:
            return "Skill name cannot contain consecutive hyphens"
        return "Skill name may only contain lowercase letters, digits and single hyphens"
    for word in RESERVED_WORDS:
        if word in name:
            return f'Skill name cannot contain the reserved word "{word}"'
    return None


def validate_skill_name(name: str) -> ValidationFailure | SecurityFailure | None:
    """Check ``name`` before it is joined onto any filesystem path.

    Traversal-shaped input is reported as a security failure so callers can
    tell hostile input apart from a merely malformed name.
    """
    if name and looks_like_traversal(name):
        return SecurityFailure(
            reason=PATH_TRAVERSAL,
            message=f'Invalid skill name "{name}": contains path traversal characters',
            details={"name": name},
        )
    reason = name_error(name)
    if reason is None:
        return None
    return ValidationFailure(field="skill_name", message=reason, details={"name": name})


def looks_like_traversal(name: str) -> bool:
    return (
        ".." in name
        or "/" in name
        or "\\" in name
        or "\x00" in name
        or bool(_DRIVE_RE.match(name))
    )


def validate_scope_selector(selector: str | None) -> ValidationFailure | None:
    if selector is None:
        return None
    if not selector.strip():
        return ValidationFailure(field="scope", message="Scope cannot be empty")
    if "\x00" in selector:
        return ValidationFailure(field="scope", message="Scope cannot contain NUL bytes")
    return None


def validate_package_file(path: str | Path) -> tuple[Path | None, ValidationFailure | None]:
    """Check that ``path`` names an existing ``.skill`` file holding a zip archive."""
    raw = str(path)
    if not raw.strip():
        return None, ValidationFailure(field="package_path", message="Package path cannot be empty")

    resolved = Path(raw).expanduser().resolve()
    try:
        if not resolved.is_file():
            if resolved.exists():
                return None, ValidationFailure(
                    field="package_path", message=f"Path is not a file: {resolved}"
                )
            return None, ValidationFailure(
                field="package_path", message=f"Package file not found: {resolved}"
            )
    except PermissionError:
        return None, ValidationFailure(field="package_path", message=f"Permission denied: {resolved}")

    if resolved.suffix.lower() != PACKAGE_EXTENSION:
        return None, ValidationFailure(
            field="package_path",
            message=f"Package must have {PACKAGE_EXTENSION} extension (got {resolved.suffix or 'none'})",
        )

    if not zipfile.is_zipfile(resolved):
        return None, ValidationFailure(
            field="package_content", message=f"Package is not a valid ZIP archive: {resolved}"
        )
    return resolved, None
