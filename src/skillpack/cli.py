from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from dataclasses import asdict, fields, replace
from typing import Any

from ._version import __version__
from .api import create_package, list_installed, validate
from .audit import configure_audit_log, read_audit_log
from .backup import list_backups
from .config import DEFAULT_SCOPE, Config, coerce_value, config_path, load_config, save_config
from .diff import format_change
from .errors import (
    PACKAGE_FIELDS,
    CancellationError,
    CriticalFailure,
    Failure,
    PackageError,
    PackageMismatch,
    RollbackFailure,
    SecurityError,
    SecurityFailure,
    SkillNotFound,
    SkillpackError,
    ValidationError,
    ValidationFailure,
)
from .installer import (
    InstallCancelled,
    InstallDryRunPreview,
    InstallFailed,
    InstallOverwriteRequired,
    InstallRollbackFailed,
    InstallRolledBack,
    InstallSuccess,
    install_skill,
)
from .uninstaller import UninstallDryRunPreview, UninstallSuccess, uninstall_skills
from .updater import (
    UpdateCancelled,
    UpdateDryRunPreview,
    UpdateFailed,
    UpdateRollbackFailed,
    UpdateRolledBack,
    UpdateSuccess,
    update_skill,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_FILESYSTEM = 2
EXIT_CANCELLED = 3
EXIT_INVALID_PACKAGE = 4
EXIT_SECURITY = 5
EXIT_ROLLED_BACK = 6
EXIT_ROLLBACK_FAILED = 7


def exit_code_for(failure: Failure) -> int:
    if isinstance(failure, SecurityFailure):
        return EXIT_SECURITY
    if isinstance(failure, ValidationFailure):
        return EXIT_INVALID_PACKAGE if failure.field in PACKAGE_FIELDS else EXIT_NOT_FOUND
    if isinstance(failure, PackageMismatch):
        return EXIT_INVALID_PACKAGE
    if isinstance(failure, SkillNotFound):
        return EXIT_NOT_FOUND
    if isinstance(failure, RollbackFailure):
        return EXIT_ROLLED_BACK
    if isinstance(failure, CriticalFailure):
        return EXIT_ROLLBACK_FAILED
    return EXIT_FILESYSTEM


def _exit_code_for_error(err: SkillpackError) -> int:
    if isinstance(err, SecurityError):
        return EXIT_SECURITY
    if isinstance(err, CancellationError):
        return EXIT_CANCELLED
    if isinstance(err, PackageError):
        return EXIT_INVALID_PACKAGE
    if isinstance(err, ValidationError):
        return EXIT_NOT_FOUND
    return EXIT_FILESYSTEM


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _human_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    raise AssertionError("unreachable")


def _report_failure(failure: Failure) -> int:
    print(f"error: {failure.message}", file=sys.stderr)
    if isinstance(failure, CriticalFailure):
        print(f"recovery: {failure.recovery_instructions}", file=sys.stderr)
    for issue in getattr(failure, "details", {}).get("issues", []):
        print(f"  - {issue}", file=sys.stderr)
    return exit_code_for(failure)


def _confirm(prompt: str) -> bool:
    if not sys.stdin.isatty():
        print("error: confirmation required but stdin is not a terminal; use --force", file=sys.stderr)
        return False
    answer = input(f"{prompt} [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def _scope(args: argparse.Namespace, cfg: Config) -> str:
    return args.scope or cfg.default_scope


def _pipeline_options(cfg: Config) -> dict[str, Any]:
    return {"stale_after_s": cfg.lock_stale_after_s}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillpack",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install, update and remove agent skills packaged as .skill archives.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLPACK_CONFIG_PATH, SKILLPACK_SCOPE, SKILLPACK_BACKUP_DIR,
              SKILLPACK_NO_AUDIT, SKILLPACK_DEBUG

            Exit codes:
              0 ok, 1 not found / invalid input, 2 filesystem error, 3 cancelled,
              4 invalid package, 5 security error, 6 rolled back, 7 rollback failed
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillpack {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    def _add_common(parser: argparse.ArgumentParser, *, mutating: bool = True) -> None:
        parser.add_argument(
            "--scope",
            help='"project" (.claude/skills), "personal" (~/.claude/skills) or a directory path',
        )
        parser.add_argument("--json", action="store_true", help="Print JSON output")
        parser.add_argument("-q", "--quiet", action="store_true", help="Only print errors")
        if mutating:
            parser.add_argument("--force", action="store_true", help="Skip prompts and override soft checks")
            parser.add_argument("--dry-run", action="store_true", help="Show what would happen; change nothing")

    sub = p.add_subparsers(dest="cmd", required=True)

    install = sub.add_parser("install", help="Install a .skill package")
    install.add_argument("package", help="Path to a .skill file")
    _add_common(install)

    update = sub.add_parser("update", help="Replace an installed skill with a newer package")
    update.add_argument("name", help="Installed skill name")
    update.add_argument("package", help="Path to a .skill file")
    _add_common(update)
    update.add_argument("--keep-backup", action="store_true", default=None, help="Keep the backup after success")
    update.add_argument("--no-backup", action="store_true", help="Do not create a backup first")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove installed skills")
    uninstall.add_argument("names", nargs="+", help="Skill names")
    _add_common(uninstall)

    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills")
    _add_common(ls, mutating=False)

    pkg = sub.add_parser("package", help="Build a .skill archive from a skill directory")
    pkg.add_argument("path", help="Skill directory (must contain SKILL.md)")
    pkg.add_argument("--output", help="Output directory (default: current directory)")
    pkg.add_argument("--force", action="store_true", help="Overwrite an existing archive")
    pkg.add_argument("--skip-validation", action="store_true", help="Do not validate SKILL.md")
    pkg.add_argument("--json", action="store_true", help="Print JSON output")

    val = sub.add_parser("validate", help="Check a skill directory before packaging")
    val.add_argument("path", help="Skill directory or its SKILL.md")
    val.add_argument("--json", action="store_true", help="Print JSON output")
    val.add_argument("-q", "--quiet", action="store_true", help="Only set the exit code")

    backups = sub.add_parser("backups", help="List update backups")
    backups.add_argument("name", nargs="?", help="Only backups of this skill")
    backups.add_argument("--json", action="store_true", help="Print JSON output")

    log = sub.add_parser("log", help="Show the audit log")
    log.add_argument("-n", "--lines", type=int, default=20, help="Number of lines (default: 20)")

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set a config field")
    cfg_set.add_argument("key", choices=[f.name for f in fields(Config)])
    cfg_set.add_argument("value")

    return p


def cmd_install(args: argparse.Namespace, cfg: Config) -> int:
    outcome = install_skill(
        args.package,
        scope=_scope(args, cfg),
        force=args.force,
        dry_run=args.dry_run,
        backup_dir=cfg.backup_dir,
        **_pipeline_options(cfg),
    )

    if isinstance(outcome, InstallFailed):
        return _report_failure(outcome.failure)
    if isinstance(outcome, InstallRollbackFailed):
        return _report_failure(outcome.failure)
    if isinstance(outcome, InstallCancelled):
        print(f"error: {outcome.reason}", file=sys.stderr)
        return EXIT_CANCELLED
    if isinstance(outcome, InstallRolledBack):
        print(f"error: installation rolled back: {outcome.failure_reason}", file=sys.stderr)
        return EXIT_ROLLED_BACK
    if isinstance(outcome, InstallOverwriteRequired):
        print(
            f'error: skill "{outcome.skill_name}" already exists at {outcome.existing_path}; '
            "use --force to overwrite",
            file=sys.stderr,
        )
        return EXIT_NOT_FOUND

    if isinstance(outcome, InstallDryRunPreview):
        if args.json:
            _print_json({"dry_run": True, **asdict(outcome)})
        elif not args.quiet:
            print(f"would install: {outcome.skill_name} -> {outcome.target_path}")
            print(f"files: {len(outcome.files)} ({_human_size(outcome.total_size)})")
            if outcome.would_overwrite:
                print(f"would overwrite existing skill ({len(outcome.conflicts)} conflicting files)")
        return EXIT_OK

    assert isinstance(outcome, InstallSuccess)
    if args.json:
        _print_json({"dry_run": False, **asdict(outcome)})
    elif not args.quiet:
        verb = "reinstalled" if outcome.was_overwritten else "installed"
        print(f"{verb}: {outcome.skill_name} -> {outcome.skill_path}")
        print(f"files: {outcome.file_count} ({_human_size(outcome.size)})")
        for warning in outcome.warnings:
            print(f"warning: {warning}")
    return EXIT_OK


def cmd_update(args: argparse.Namespace, cfg: Config) -> int:
    keep_backup = cfg.keep_backup if args.keep_backup is None else args.keep_backup
    outcome = update_skill(
        args.name,
        args.package,
        scope=_scope(args, cfg),
        force=args.force,
        dry_run=args.dry_run,
        keep_backup=keep_backup,
        no_backup=args.no_backup,
        confirm=_confirm,
        backup_dir=cfg.backup_dir,
        **_pipeline_options(cfg),
    )

    if isinstance(outcome, (UpdateFailed, UpdateRolledBack, UpdateRollbackFailed)):
        return _report_failure(outcome.failure)
    if isinstance(outcome, UpdateCancelled):
        print(f"error: {outcome.reason}", file=sys.stderr)
        return EXIT_CANCELLED

    if isinstance(outcome, UpdateDryRunPreview):
        if args.json:
            _print_json({"dry_run": True, **asdict(outcome)})
        elif not args.quiet:
            current = outcome.current.version or "unversioned"
            incoming = outcome.incoming.version or "unversioned"
            print(f"would update: {outcome.skill_name} ({current} -> {incoming})")
            _print_table(
                [
                    ["CHANGE", "COUNT"],
                    ["added", str(outcome.summary.added_count)],
                    ["removed", str(outcome.summary.removed_count)],
                    ["modified", str(outcome.summary.modified_count)],
                ]
            )
            for change in outcome.comparison.files_added + outcome.comparison.files_removed + outcome.comparison.files_modified:
                print(format_change(change))
            if outcome.backup_path is not None:
                print(f"backup would be written to: {outcome.backup_path}")
            if outcome.downgrade is not None:
                print(f"warning: {outcome.downgrade.message}")
            for warning in outcome.warnings:
                print(f"warning: {warning}")
        return EXIT_OK

    assert isinstance(outcome, UpdateSuccess)
    if args.json:
        _print_json({"dry_run": False, **asdict(outcome)})
    elif not args.quiet:
        print(f"updated: {outcome.skill_name} -> {outcome.skill_path}")
        print(
            f"files: {outcome.previous.file_count} -> {outcome.current.file_count} "
            f"({_human_size(outcome.previous.size)} -> {_human_size(outcome.current.size)})"
        )
        if outcome.backup_kept and outcome.backup_path is not None:
            print(f"backup: {outcome.backup_path}")
        for warning in outcome.warnings:
            print(f"warning: {warning}")
    return EXIT_OK


def cmd_uninstall(args: argparse.Namespace, cfg: Config) -> int:
    batch = uninstall_skills(
        args.names,
        scope=_scope(args, cfg),
        force=args.force,
        dry_run=args.dry_run,
        confirm=_confirm,
        **_pipeline_options(cfg),
    )

    if args.json:
        _print_json(
            {
                "removed": list(batch.removed),
                "not_found": list(batch.not_found),
                "dry_run": batch.dry_run,
                "files_removed": batch.files_removed,
                "bytes_freed": batch.bytes_freed,
            }
        )
    elif not args.quiet:
        for result in batch.results:
            if isinstance(result, UninstallDryRunPreview):
                print(f"would remove: {result.skill_name} ({result.file_count} files, {_human_size(result.total_size)})")
                for warning in result.warnings:
                    print(f"warning: {warning}")
            elif isinstance(result, UninstallSuccess):
                print(f"removed: {result.skill_name} ({result.files_removed} files, {_human_size(result.bytes_freed)})")
                for warning in result.warnings:
                    print(f"warning: {warning}")
    for name in batch.not_found:
        print(f"error: skill not found: {name}", file=sys.stderr)
    return EXIT_NOT_FOUND if batch.not_found else EXIT_OK


def cmd_list(args: argparse.Namespace, cfg: Config) -> int:
    scope = args.scope
    if scope is None and cfg.default_scope != DEFAULT_SCOPE:
        scope = cfg.default_scope
    skills = list_installed(scope=scope)
    if args.json:
        _print_json([asdict(s) for s in skills])
        return EXIT_OK
    if args.quiet:
        return EXIT_OK
    if not skills:
        print("No skills installed.")
        return EXIT_OK
    rows = [["NAME", "VERSION", "SCOPE", "PATH"]]
    for s in skills:
        rows.append([s.name, s.version or "-", s.scope, str(s.path)])
    _print_table(rows)
    for s in skills:
        if s.error:
            print(f"warning: {s.name}: {s.error}")
    return EXIT_OK


def cmd_package(args: argparse.Namespace) -> int:
    pkg = create_package(args.path, output=args.output, force=args.force, skip_validation=args.skip_validation)
    if args.json:
        _print_json(asdict(pkg))
        return EXIT_OK
    print(f"package: {pkg.output_path}")
    print(f"files: {pkg.file_count} ({_human_size(pkg.size_bytes)})")
    print(f"sha256: {pkg.sha256}")
    for warning in pkg.warnings:
        print(f"warning: {warning}")
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    result = validate(args.path)
    if args.json:
        _print_json(asdict(result))
    elif not args.quiet:
        if result.valid:
            print(f"valid: {result.skill_name} ({result.skill_path})")
        else:
            print(f"invalid: {result.skill_path}")
        for error in result.errors:
            print(f"  - {error}")
        for warning in result.warnings:
            print(f"warning: {warning}")
    return EXIT_OK if result.valid else EXIT_NOT_FOUND


def cmd_backups(args: argparse.Namespace, cfg: Config) -> int:
    backups = list_backups(args.name, backup_dir=cfg.backup_dir)
    if args.json:
        _print_json([asdict(b) for b in backups])
        return EXIT_OK
    if not backups:
        print("No backups.")
        return EXIT_OK
    rows = [["SKILL", "CREATED", "SIZE", "PATH"]]
    for b in backups:
        rows.append([b.skill_name, b.created_at.strftime("%Y-%m-%d %H:%M:%S"), _human_size(b.size), str(b.path)])
    _print_table(rows)
    return EXIT_OK


def cmd_log(args: argparse.Namespace, cfg: Config) -> int:
    for line in read_audit_log(cfg.audit_log, limit=args.lines):
        print(line)
    return EXIT_OK


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return EXIT_OK

    if args.subcmd == "show":
        _print_json(asdict(load_config()))
        return EXIT_OK

    if args.subcmd == "set":
        try:
            value = coerce_value(args.key, args.value)
        except ValueError as e:
            print(f"error: {e}", file=sys.stderr)
            return EXIT_NOT_FOUND
        # Start from the file contents, not the env-adjusted view.
        cfg = replace(load_config(apply_environment=False), **{args.key: value})
        path = save_config(cfg)
        print(f"Saved: {path}")
        return EXIT_OK

    raise AssertionError("unreachable")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose or os.getenv("SKILLPACK_DEBUG") else logging.WARNING
    pkg_logger = logging.getLogger("skillpack")
    pkg_logger.setLevel(level)
    if not any(getattr(h, "skillpack_cli", False) for h in pkg_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        handler.skillpack_cli = True  # type: ignore[attr-defined]
        pkg_logger.addHandler(handler)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "package":
            return cmd_package(args)
        if args.cmd == "validate":
            return cmd_validate(args)

        cfg = load_config()
        if cfg.audit_enabled and args.cmd in ("install", "update", "uninstall", "remove", "rm"):
            try:
                configure_audit_log(cfg.audit_log)
            except OSError as e:
                logger.warning("audit log unavailable: %s", e)

        if args.cmd == "install":
            return cmd_install(args, cfg)
        if args.cmd == "update":
            return cmd_update(args, cfg)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args, cfg)
        if args.cmd in ("list", "ls"):
            return cmd_list(args, cfg)
        if args.cmd == "backups":
            return cmd_backups(args, cfg)
        if args.cmd == "log":
            return cmd_log(args, cfg)
        raise AssertionError("unreachable")
    except SkillpackError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return _exit_code_for_error(e)
    except (OSError, json.JSONDecodeError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FILESYSTEM


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
