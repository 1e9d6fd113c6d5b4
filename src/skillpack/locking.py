from __future__ import annotations

import errno
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import FilesystemFailure, ValidationFailure, failure_from_os_error

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".skillpack.lock"
LOCK_STALE_AFTER_S = 300.0


@dataclass(frozen=True)
class LockRecord:
    pid: int
    timestamp: str
    operation: str
    skill_path: str
    package_path: str | None = None

    def age_s(self, now: float | None = None) -> float | None:
        try:
            ts = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return (now if now is not None else time.time()) - ts.timestamp()


@dataclass(frozen=True)
class LockHandle:
    path: Path
    record: LockRecord


def lock_path_for(skill_path: Path) -> Path:
    """Locks live beside the skill directory so they survive its removal."""
    skill_path = Path(skill_path)
    return skill_path.parent / f"{skill_path.name}{LOCK_SUFFIX}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def read_lock(lock_path: Path) -> LockRecord | None:
    try:
        raw = json.loads(Path(lock_path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(raw, dict):
        return None
    try:
        return LockRecord(
            pid=int(raw.get("pid", 0)),
            timestamp=str(raw.get("timestamp", "")),
            operation=str(raw.get("operationType", "")),
            skill_path=str(raw.get("skillPath", "")),
            package_path=raw.get("packagePath"),
        )
    except (TypeError, ValueError):
        return None


def _lock_age_s(lock_path: Path, record: LockRecord | None) -> float | None:
    if record is not None:
        age = record.age_s()
        if age is not None:
            return age
    # Unreadable or half-written record: fall back to the file's mtime.
    try:
        return time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return None


def _create(lock_path: Path, record: LockRecord) -> None:
    payload = json.dumps(
        {
            "pid": record.pid,
            "timestamp": record.timestamp,
            "operationType": record.operation,
            "skillPath": record.skill_path,
            "packagePath": record.package_path,
        },
        indent=2,
    )
    fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(payload + "\n")


def acquire_lock(
    skill_path: Path,
    *,
    operation: str,
    package_path: Path | None = None,
    stale_after_s: float = LOCK_STALE_AFTER_S,
) -> LockHandle | ValidationFailure | FilesystemFailure:
    """Take the per-skill advisory lock.

    Creation is atomic (``O_CREAT | O_EXCL``), so of two concurrent callers
    exactly one wins. A lock older than ``stale_after_s`` is treated as left
    behind by a crashed process: it is removed and creation retried once.
    A lock that disappears before its age can be read is retried without
    unlinking, since the path may already belong to someone else.
    The lock is not reentrant.
    """
    skill_path = Path(skill_path)
    lock_path = lock_path_for(skill_path)
    record = LockRecord(
        pid=os.getpid(),
        timestamp=_now_iso(),
        operation=operation,
        skill_path=str(skill_path),
        package_path=str(package_path) if package_path is not None else None,
    )

    for attempt in range(2):
        try:
            _create(lock_path, record)
        except FileExistsError:
            existing = read_lock(lock_path)
            age = _lock_age_s(lock_path, existing)
            if attempt == 0 and age is None:
                # Released between the create and the stat; nothing to reclaim.
                continue
            if attempt == 0 and age > stale_after_s:
                logger.warning("removing stale lock %s (age %.0fs)", lock_path, age)
                try:
                    lock_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    return failure_from_os_error(e, operation="acquire-lock", path=lock_path)
                continue
            return _held_failure(skill_path, lock_path, existing)
        except OSError as e:
            if e.errno == errno.ENOENT:
                return FilesystemFailure(
                    operation="acquire-lock",
                    path=lock_path,
                    message=f"Scope directory does not exist: {lock_path.parent}",
                )
            return failure_from_os_error(e, operation="acquire-lock", path=lock_path)
        logger.debug("acquired lock %s for %s", lock_path, operation)
        return LockHandle(path=lock_path, record=record)

    return _held_failure(skill_path, lock_path, read_lock(lock_path))


def _held_failure(skill_path: Path, lock_path: Path, existing: LockRecord | None) -> ValidationFailure:
    pid = existing.pid if existing is not None else "unknown"
    details: dict[str, object] = {
        "lock_path": str(lock_path),
        "hint": f"If no other process is running, remove the lock with: rm {lock_path}",
    }
    if existing is not None:
        details["locked_at"] = existing.timestamp
        details["operation"] = existing.operation
    return ValidationFailure(
        field="skill_name",
        message=f'Skill "{skill_path.name}" is currently being updated by another process (PID: {pid})',
        details=details,
    )


def release_lock(lock: LockHandle | Path | None) -> None:
    """Remove the lock file; a missing file is not an error."""
    if lock is None:
        return
    path = lock.path if isinstance(lock, LockHandle) else Path(lock)
    try:
        path.unlink()
    except FileNotFoundError:
        return
    logger.debug("released lock %s", path)


def has_lock(skill_path: Path, *, stale_after_s: float = LOCK_STALE_AFTER_S) -> bool:
    lock_path = lock_path_for(Path(skill_path))
    if not lock_path.exists():
        return False
    age = _lock_age_s(lock_path, read_lock(lock_path))
    return age is not None and age <= stale_after_s
