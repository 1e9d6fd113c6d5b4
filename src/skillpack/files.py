from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


@dataclass(frozen=True)
class FileInfo:
    relative_path: str  # always "/"-separated
    absolute_path: Path
    size: int
    is_directory: bool
    is_symlink: bool
    link_count: int
    device: int
    inode: int

    @property
    def is_regular_file(self) -> bool:
        return not self.is_directory and not self.is_symlink


@dataclass(frozen=True)
class TreeSummary:
    file_count: int
    directory_count: int
    total_size: int
    symlink_count: int
    hard_link_count: int


def iter_tree(root: Path, *, unique_inodes: bool = True) -> Iterator[FileInfo]:
    """Walk ``root`` without following symlinks.

    With ``unique_inodes`` every (device, inode) pair is yielded once, so a file
    hard-linked twice inside the tree is only counted once. Entries that vanish
    or cannot be stat'ed mid-walk are skipped.
    """
    seen: set[tuple[int, int]] = set()
    stack: list[tuple[Path, str]] = [(root, "")]
    while stack:
        directory, rel_dir = stack.pop()
        try:
            names = sorted(os.listdir(directory))
        except (FileNotFoundError, NotADirectoryError, PermissionError):
            continue

        for name in names:
            abs_path = directory / name
            rel = f"{rel_dir}/{name}" if rel_dir else name
            try:
                st = os.lstat(abs_path)
            except FileNotFoundError:
                continue

            key = (st.st_dev, st.st_ino)
            if unique_inodes and key in seen:
                continue
            seen.add(key)

            is_link = stat.S_ISLNK(st.st_mode)
            is_dir = stat.S_ISDIR(st.st_mode)
            yield FileInfo(
                relative_path=rel,
                absolute_path=abs_path,
                size=st.st_size,
                is_directory=is_dir,
                is_symlink=is_link,
                link_count=st.st_nlink,
                device=st.st_dev,
                inode=st.st_ino,
            )
            if is_dir and not is_link:
                stack.append((abs_path, rel))


def summarize_tree(root: Path) -> TreeSummary:
    file_count = directory_count = total_size = symlink_count = hard_link_count = 0
    for info in iter_tree(root):
        if info.is_symlink:
            symlink_count += 1
        if info.is_directory:
            directory_count += 1
            continue
        file_count += 1
        total_size += info.size
        if info.is_regular_file and info.link_count > 1:
            hard_link_count += 1
    return TreeSummary(
        file_count=file_count,
        directory_count=directory_count,
        total_size=total_size,
        symlink_count=symlink_count,
        hard_link_count=hard_link_count,
    )


def regular_files(root: Path) -> dict[str, FileInfo]:
    """Map relative path -> info for every regular file under ``root``."""
    return {f.relative_path: f for f in iter_tree(root, unique_inodes=False) if f.is_regular_file}
