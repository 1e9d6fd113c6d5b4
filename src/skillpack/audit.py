from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from platformdirs import user_data_path

AUDIT_LOGGER_NAME = "skillpack.audit"

audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


def default_audit_log_path() -> Path:
    return user_data_path("skillpack") / "audit.log"


def _fmt(value: Any) -> str:
    text = str(value)
    if not text or any(c.isspace() for c in text) or '"' in text:
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


def record(operation: str, skill_name: str, scope: str, status: str, **fields: Any) -> None:
    """Write one audit line: ``OPERATION name scope STATUS key=value ...``."""
    extras = " ".join(f"{k}={_fmt(v)}" for k, v in fields.items() if v is not None)
    line = f"{operation.upper()} {skill_name} {scope} {status.upper()}"
    if extras:
        line += " " + extras
    audit_logger.info(line)


def configure_audit_log(path: str | Path | None = None) -> logging.Handler:
    """Attach a file handler for the audit trail (created with mode 0600)."""
    target = Path(path) if path is not None else default_audit_log_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    if not target.exists():
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        os.close(fd)

    for h in audit_logger.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == target.resolve():
            return h

    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    return handler


def read_audit_log(path: str | Path | None = None, *, limit: int | None = None) -> list[str]:
    target = Path(path) if path is not None else default_audit_log_path()
    if not target.exists():
        return []
    lines = target.read_text(encoding="utf-8").splitlines()
    return lines[-limit:] if limit else lines
