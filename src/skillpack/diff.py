from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from .files import FileInfo, regular_files
from .manifest import Manifest, ManifestError, read_manifest

ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"


@dataclass(frozen=True)
class FileChange:
    path: str
    change_type: str
    size_before: int
    size_after: int

    @property
    def size_delta(self) -> int:
        return self.size_after - self.size_before


@dataclass(frozen=True)
class VersionComparison:
    files_added: tuple[FileChange, ...]
    files_removed: tuple[FileChange, ...]
    files_modified: tuple[FileChange, ...]

    @property
    def added_count(self) -> int:
        return len(self.files_added)

    @property
    def removed_count(self) -> int:
        return len(self.files_removed)

    @property
    def modified_count(self) -> int:
        return len(self.files_modified)

    @property
    def size_change(self) -> int:
        return sum(c.size_delta for c in (*self.files_added, *self.files_removed, *self.files_modified))

    @property
    def has_changes(self) -> bool:
        return bool(self.files_added or self.files_removed or self.files_modified)


@dataclass(frozen=True)
class ChangeSummary:
    added_count: int
    removed_count: int
    modified_count: int
    bytes_added: int
    bytes_removed: int
    net_size_change: int


@dataclass(frozen=True)
class TreeInfo:
    path: Path
    file_count: int
    size: int
    version: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class Downgrade:
    installed_version: str
    package_version: str

    @property
    def message(self) -> str:
        return (
            f"Installed version ({self.installed_version}) is newer than "
            f"package version ({self.package_version})"
        )


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _same_content(a: FileInfo, b: FileInfo) -> bool:
    if a.size != b.size:
        return False
    return _sha256(a.absolute_path) == _sha256(b.absolute_path)


def compare_trees(installed: Path, incoming: Path) -> VersionComparison:
    """Diff two skill directories by relative path.

    Files with equal size are compared by SHA-256 so in-place edits that keep
    the size are still reported. Identical files appear in no list. Neither
    tree is modified.
    """
    before = regular_files(Path(installed))
    after = regular_files(Path(incoming))

    added = [FileChange(p, ADDED, 0, after[p].size) for p in sorted(after.keys() - before.keys())]
    removed = [FileChange(p, REMOVED, before[p].size, 0) for p in sorted(before.keys() - after.keys())]
    modified = [
        FileChange(p, MODIFIED, before[p].size, after[p].size)
        for p in sorted(before.keys() & after.keys())
        if not _same_content(before[p], after[p])
    ]
    return VersionComparison(
        files_added=tuple(added),
        files_removed=tuple(removed),
        files_modified=tuple(modified),
    )


def summarize_changes(comparison: VersionComparison) -> ChangeSummary:
    bytes_added = sum(c.size_after for c in comparison.files_added)
    bytes_removed = sum(c.size_before for c in comparison.files_removed)
    for c in comparison.files_modified:
        if c.size_delta > 0:
            bytes_added += c.size_delta
        else:
            bytes_removed += -c.size_delta
    return ChangeSummary(
        added_count=comparison.added_count,
        removed_count=comparison.removed_count,
        modified_count=comparison.modified_count,
        bytes_added=bytes_added,
        bytes_removed=bytes_removed,
        net_size_change=comparison.size_change,
    )


def format_change(change: FileChange) -> str:
    prefix = {ADDED: "+", REMOVED: "-", MODIFIED: "~"}[change.change_type]
    delta = change.size_delta
    sign = "+" if delta > 0 else ""
    return f"{prefix} {change.path} ({sign}{delta} bytes)"


def _manifest_or_none(path: Path) -> Manifest | None:
    try:
        return read_manifest(path)
    except ManifestError:
        return None


def tree_info(path: Path) -> TreeInfo:
    files = regular_files(Path(path))
    manifest = _manifest_or_none(Path(path))
    return TreeInfo(
        path=Path(path),
        file_count=len(files),
        size=sum(f.size for f in files.values()),
        version=manifest.version if manifest else None,
        description=manifest.description if manifest else None,
    )


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...]]:
    raw = version.strip().lstrip("vV").split("+", 1)[0]
    if not raw:
        raise ValueError("empty version")
    main_s, _, pre_s = raw.partition("-")
    parts = main_s.split(".")
    if any(not p.isdigit() for p in parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in parts]
    nums += [0] * (3 - len(nums))
    return tuple(nums), tuple(p for p in pre_s.split(".") if p)


def compare_versions(a: str, b: str) -> int:
    """Order two dotted versions (pre-release sorts before its release).

    Falls back to plain string ordering when either side is not numeric.
    """
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        return (a > b) - (a < b)
    if ma != mb:
        return (ma > mb) - (ma < mb)
    if not pa or not pb:
        # A release outranks any of its pre-releases.
        return (not pa) - (not pb)
    for x, y in zip(pa, pb):
        if x == y:
            continue
        if x.isdigit() and y.isdigit():
            return (int(x) > int(y)) - (int(x) < int(y))
        if x.isdigit() != y.isdigit():
            return -1 if x.isdigit() else 1
        return (x > y) - (x < y)
    return (len(pa) > len(pb)) - (len(pa) < len(pb))


def detect_downgrade(installed: TreeInfo, incoming: TreeInfo) -> Downgrade | None:
    if installed.version and incoming.version and compare_versions(installed.version, incoming.version) > 0:
        return Downgrade(installed_version=installed.version, package_version=incoming.version)
    return None
