from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .locking import LOCK_STALE_AFTER_S

DEFAULT_SCOPE = "project"


@dataclass(frozen=True)
class Config:
    default_scope: str = DEFAULT_SCOPE
    backup_dir: str | None = None  # None -> platform data dir
    lock_stale_after_s: float = LOCK_STALE_AFTER_S
    keep_backup: bool = False
    audit_log: str | None = None  # None -> platform data dir
    audit_enabled: bool = True


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLPACK_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillpack") / "config.json"


def load_config(path_override: str | Path | None = None, *, apply_environment: bool = True) -> Config:
    path = config_path(path_override)
    finish = apply_env if apply_environment else (lambda c: c)
    if not path.exists():
        return finish(Config())

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return finish(Config())

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return finish(Config(**filtered))  # type: ignore[arg-type]


def apply_env(cfg: Config) -> Config:
    """Environment variables win over the config file."""
    changes: dict[str, Any] = {}
    if scope := os.getenv("SKILLPACK_SCOPE"):
        changes["default_scope"] = scope
    if backup_dir := os.getenv("SKILLPACK_BACKUP_DIR"):
        changes["backup_dir"] = backup_dir
    if os.getenv("SKILLPACK_NO_AUDIT"):
        changes["audit_enabled"] = False
    return replace(cfg, **changes) if changes else cfg


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort: the file may name backup locations.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def coerce_value(field_name: str, value: str) -> Any:
    """Turn a ``config set`` string into the field's type."""
    if field_name not in Config.__dataclass_fields__:  # type: ignore[attr-defined]
        raise KeyError(field_name)
    default = getattr(Config(), field_name)
    if isinstance(default, bool):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"Expected a boolean for {field_name}, got {value!r}")
    if isinstance(default, float):
        return float(value)
    if default is None and value.strip().lower() in {"", "none", "null"}:
        return None
    return value
