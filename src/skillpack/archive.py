from __future__ import annotations

import contextlib
import os
import shutil
import stat
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .errors import PackageError, ValidationFailure
from .manifest import MANIFEST_FILENAME


@dataclass(frozen=True)
class ArchiveEntry:
    name: str  # raw entry name as stored in the archive
    relative_path: str  # with the shared root directory stripped
    size: int
    is_dir: bool


class UnsafeEntryError(PackageError):
    """Raised when an entry would be written outside the extraction directory."""


class PackageArchive:
    """Read-only view of a ``.skill`` zip archive.

    Use as a context manager; the underlying file handle is closed on exit.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        try:
            self._zf = zipfile.ZipFile(self.path, "r")
        except (zipfile.BadZipFile, OSError) as e:
            raise PackageError(f"Failed to open package {self.path}: {e}") from e
        self._infos = [i for i in self._zf.infolist() if i.filename]

    def __enter__(self) -> PackageArchive:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._zf.close()

    @property
    def names(self) -> list[str]:
        return [i.filename for i in self._infos]

    def root_directory(self) -> str | None:
        """Name of the single top-level directory shared by all entries, if any."""
        roots: set[str] = set()
        for info in self._infos:
            name = info.filename.replace("\\", "/")
            head, sep, _ = name.partition("/")
            if not sep and not info.is_dir():
                # A file at the archive root means there is no single root.
                return None
            roots.add(head)
        if len(roots) != 1:
            return None
        root = roots.pop()
        return root or None

    def validate_structure(self) -> tuple[str | None, ValidationFailure | None]:
        root = self.root_directory()
        if root is None:
            return None, ValidationFailure(
                field="package_structure",
                message="Package must contain a single root directory with all skill files",
            )
        if f"{root}/{MANIFEST_FILENAME}" not in self.names:
            return None, ValidationFailure(
                field="package_structure",
                message=f'{MANIFEST_FILENAME} not found in package root directory "{root}"',
            )
        return root, None

    @property
    def entries(self) -> list[ArchiveEntry]:
        root = self.root_directory()
        prefix = f"{root}/" if root else ""
        out: list[ArchiveEntry] = []
        for info in self._infos:
            name = info.filename.replace("\\", "/")
            rel = name[len(prefix):] if prefix and name.startswith(prefix) else name
            rel = rel.rstrip("/")
            if not rel:
                continue
            out.append(ArchiveEntry(name=info.filename, relative_path=rel, size=info.file_size, is_dir=info.is_dir()))
        return out

    def file_count(self) -> int:
        return sum(1 for i in self._infos if not i.is_dir())

    def total_uncompressed_size(self) -> int:
        return sum(i.file_size for i in self._infos if not i.is_dir())

    def read_text(self, name: str) -> str:
        with self._zf.open(name, "r") as f:
            return f.read().decode("utf-8")

    def read_manifest_text(self, root: str) -> str:
        try:
            return self.read_text(f"{root}/{MANIFEST_FILENAME}")
        except KeyError as e:
            raise PackageError(f"{MANIFEST_FILENAME} not found in package root directory \"{root}\"") from e
        except UnicodeDecodeError as e:
            raise PackageError(f"{MANIFEST_FILENAME} is not valid UTF-8") from e

    def extract_to(self, dest: Path) -> Path:
        """Copy every entry under ``dest`` preserving the relative layout."""
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        base = dest.resolve()
        for info in self._infos:
            name = info.filename.replace("\\", "/")
            if name.startswith("/") or "\x00" in name:
                raise UnsafeEntryError(f"Archive contains an invalid path entry: {info.filename!r}")
            target = (base / name).resolve()
            if target != base and not str(target).startswith(str(base) + os.sep):
                raise UnsafeEntryError(f"Archive contains an invalid path entry: {info.filename!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with self._zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            mode = (info.external_attr >> 16) & 0o777
            if mode and not stat.S_ISLNK(info.external_attr >> 16):
                os.chmod(target, mode | stat.S_IRUSR | stat.S_IWUSR)
        return dest


def open_package(path: str | Path) -> PackageArchive:
    return PackageArchive(Path(path))


@contextlib.contextmanager
def staging_directory(prefix: str = "skillpack-", dir: str | Path | None = None) -> Iterator[Path]:
    """Temporary directory removed on every exit path."""
    with tempfile.TemporaryDirectory(prefix=prefix, dir=dir) as td:
        yield Path(td)
