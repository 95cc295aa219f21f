"""CLI for updating a project's template files from upstream releases."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from kitsync.config import Settings
from kitsync.exceptions import KitsyncError, RollbackError
from kitsync.filesystem.toml_manager import (
    PROJECT_CONFIG_FILE,
    ProjectConfig,
    write_project_config,
)
from kitsync.services.engine import SyncEngine
from kitsync.services.reconcile_service import Action
from kitsync.upstream.directory import DirectoryProvider

if TYPE_CHECKING:
    from kitsync.services.apply_service import ApplyOutcome, UpdatePlan
    from kitsync.services.backup_service import Backup

_ACTION_SYMBOLS = {
    Action.ADD: "+",
    Action.UPDATE: "~",
    Action.REMOVE: "-",
    Action.MERGE: "!",
    Action.PRESERVE: "=",
}


def _configure_logging(debug: bool) -> None:
    """Configure CLI logging."""
    level = logging.DEBUG if debug else logging.WARNING
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _provider(args: argparse.Namespace, settings: Settings) -> DirectoryProvider | None:
    releases = args.releases or settings.releases_dir
    if releases is None:
        return None
    return DirectoryProvider(Path(releases).resolve())


def _require_provider(args: argparse.Namespace, settings: Settings) -> DirectoryProvider:
    provider = _provider(args, settings)
    if provider is None:
        print("Error: No releases directory configured. Use --releases or KITSYNC_RELEASES_DIR.")
        sys.exit(1)
    return provider


def _print_plan(plan: UpdatePlan) -> None:
    summary = plan.reconcile.summary()
    print(f"Update plan: {plan.source_version} -> {plan.target_version}")
    if plan.is_new_manifest:
        print("  (first run: existing files are treated as customized)")
    print(f"  Add:       {summary['add']}")
    print(f"  Update:    {summary['update']}")
    print(f"  Remove:    {summary['remove']}")
    print(f"  Conflicts: {summary['merge']}")
    print(f"  Preserve:  {summary['preserve']}")
    print(f"  Unchanged: {summary['skip']}")

    for action, symbol in _ACTION_SYMBOLS.items():
        for state in plan.reconcile.by_action(action):
            print(f"    {symbol} {state.path} ({action.value})")
    if plan.reconcile.custom_files:
        print(f"  Custom files (never touched): {len(plan.reconcile.custom_files)}")
        for path in plan.reconcile.custom_files:
            print(f"    * {path}")
    if plan.reconcile.out_of_scope:
        print(f"  Ignored (outside tracked directories): {len(plan.reconcile.out_of_scope)}")
        for path in plan.reconcile.out_of_scope:
            print(f"    ? {path}")


def _print_outcome(outcome: ApplyOutcome, target_version: str) -> None:
    for path in outcome.false_positives:
        print(f"  Resolved (matches upstream): {path}")
    for path in outcome.conflicts:
        print(f"  CONFLICT: {path} (resolve the conflict markers manually)")
    if outcome.backup is not None:
        print(f"  Backup: {outcome.backup.storage_path}")
    for backup in outcome.pruned:
        print(f"  Deleted old backup: {backup.name}")
    if outcome.prune_error:
        print(f"  Warning: {outcome.prune_error}")
    print(
        f"Updated to {target_version}. {outcome.changed} file(s) changed, "
        f"{len(outcome.conflicts)} conflict(s)."
    )


def _prune_prompt(assume_yes: bool):
    def confirm(doomed: list[Backup]) -> bool:
        names = ", ".join(backup.name for backup in doomed)
        return _confirm(f"Delete {len(doomed)} old backup(s) ({names})?", assume_yes)

    return confirm


def cmd_init(args: argparse.Namespace, settings: Settings, project_root: Path) -> None:
    if not args.tracked_dir:
        print("Error: at least one --tracked-dir is required for init")
        sys.exit(1)
    config = ProjectConfig(name=args.name or project_root.name, tracked_dirs=args.tracked_dir)
    write_project_config(project_root, config, settings.state_dir)
    print(f"Initialized {project_root / PROJECT_CONFIG_FILE}")


def cmd_status(args: argparse.Namespace, settings: Settings, project_root: Path) -> None:
    engine = SyncEngine(project_root, settings)
    plan = engine.plan_update(
        _require_provider(args, settings), args.version, args.installed_version
    )
    _print_plan(plan)


def cmd_update(args: argparse.Namespace, settings: Settings, project_root: Path) -> None:
    engine = SyncEngine(project_root, settings)
    plan = engine.plan_update(
        _require_provider(args, settings), args.version, args.installed_version
    )
    _print_plan(plan)

    if plan.reconcile.is_noop and not plan.is_new_manifest and plan.source_version == plan.target_version:
        print("Already up to date.")
        return

    if not _confirm(f"Apply update to {plan.target_version}?", args.yes):
        engine.cancel(plan)
        print("Update cancelled. No changes made.")
        return

    outcome = engine.apply(
        plan,
        confirm_prune=_prune_prompt(args.yes),
        backups_enabled=False if args.no_backup else None,
    )
    _print_outcome(outcome, plan.target_version)


def cmd_backups(args: argparse.Namespace, settings: Settings, project_root: Path) -> None:
    engine = SyncEngine(project_root, settings)
    backups = engine.list_backups()
    if not backups:
        print("No backups.")
        return
    for backup in backups:
        print(f"  {backup.name}  {backup.source_version} -> {backup.target_version}")


def cmd_rollback(args: argparse.Namespace, settings: Settings, project_root: Path) -> None:
    engine = SyncEngine(project_root, settings)
    backup = engine.find_backup(args.backup)
    if not _confirm(f"Restore tracked directories from {backup.name}?", args.yes):
        print("Rollback cancelled.")
        return
    engine.rollback_to(backup)
    print(f"Restored from backup {backup.name}.")


def cmd_prune(args: argparse.Namespace, settings: Settings, project_root: Path) -> None:
    if args.keep is not None and args.keep < 1:
        print("Error: --keep must be at least 1")
        sys.exit(1)
    engine = SyncEngine(project_root, settings)
    deleted = engine.prune_backups(_prune_prompt(args.yes), keep=args.keep)
    print(f"Deleted {len(deleted)} backup(s).")


def cmd_rescan(args: argparse.Namespace, settings: Settings, project_root: Path) -> None:
    engine = SyncEngine(project_root, settings)
    if not _confirm("Accept the current files as the new baseline?", args.yes):
        print("Rescan cancelled.")
        return
    manifest = engine.rescan(_provider(args, settings))
    customized = sum(1 for tracked in manifest.tracked_files if tracked.customized)
    print(
        f"Rescanned {len(manifest.tracked_files)} file(s); {customized} differ from "
        f"release {manifest.distribution_version}."
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kitsync",
        description="Update template files from upstream releases, keeping local changes",
    )
    parser.add_argument("--dir", "-d", default=".", help="Project directory (default: current)")
    parser.add_argument("--releases", "-r", help="Directory holding one subdirectory per release")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    init_p = subparsers.add_parser("init", help="Write kitsync.toml")
    init_p.add_argument("--name", help="Distribution name (default: directory name)")
    init_p.add_argument(
        "--tracked-dir", action="append", default=[], help="Managed directory (repeatable)"
    )
    init_p.set_defaults(handler=cmd_init)

    for name, handler, help_text in (
        ("status", cmd_status, "Show what an update would do"),
        ("update", cmd_update, "Apply an upstream release"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--version", help="Release to install (default: latest)")
        sub.add_argument(
            "--installed-version", help="Release the project was installed from (first run only)"
        )
        if name == "update":
            sub.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
            sub.add_argument("--no-backup", action="store_true", help="Skip the pre-update backup")
        sub.set_defaults(handler=handler)

    backups_p = subparsers.add_parser("backups", help="List backups, newest first")
    backups_p.set_defaults(handler=cmd_backups)

    rollback_p = subparsers.add_parser("rollback", help="Restore a backup")
    rollback_p.add_argument("backup", help="Backup name as shown by 'kitsync backups'")
    rollback_p.add_argument("--yes", "-y", action="store_true")
    rollback_p.set_defaults(handler=cmd_rollback)

    prune_p = subparsers.add_parser("prune", help="Delete old backups")
    prune_p.add_argument("--keep", type=int, help="Backups to keep (default: retention setting)")
    prune_p.add_argument("--yes", "-y", action="store_true")
    prune_p.set_defaults(handler=cmd_prune)

    rescan_p = subparsers.add_parser("rescan", help="Reset the baseline to the current files")
    rescan_p.add_argument("--yes", "-y", action="store_true")
    rescan_p.set_defaults(handler=cmd_rescan)

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Error: invalid settings: {exc}")
        sys.exit(1)
    _configure_logging(args.verbose or settings.debug)

    if args.command is None:
        parser.print_help()
        return

    project_root = Path(args.dir).resolve()
    try:
        args.handler(args, settings, project_root)
    except RollbackError as exc:
        print(f"Error: {exc}")
        sys.exit(2)
    except KitsyncError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    except OSError as exc:
        # Failed applies were already rolled back unless backups were disabled
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
