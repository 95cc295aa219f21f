"""Backup manager: whole-directory snapshots taken before any mutation.

Each backup lives in its own directory under the backup root, named by a
sortable UTC stamp, and holds a copy of every tracked directory at its
project-relative location, a copy of the manifest as it was, and a small
``backup.json`` metadata file::

    .kitsync/backups/20260102T030405123456Z/
        backup.json
        manifest.snapshot.json
        templates/...
        .github/prompts/...

A backup is assembled in a ``.partial`` staging directory and renamed into
place only once every copy succeeded, so an interrupted backup is never listed
as valid.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kitsync.exceptions import BackupError
from kitsync.services.datetime_service import (
    format_iso,
    format_stamp,
    next_stamp,
    now_utc,
    parse_stamp,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

logger = logging.getLogger(__name__)

METADATA_FILE = "backup.json"
MANIFEST_SNAPSHOT = "manifest.snapshot.json"
PARTIAL_SUFFIX = ".partial"
_RESERVED_NAMES = frozenset({METADATA_FILE, MANIFEST_SNAPSHOT})


@dataclass(frozen=True)
class Backup:
    """A point-in-time copy of the tracked directories."""

    timestamp: datetime
    source_version: str | None
    target_version: str | None
    storage_path: Path
    tracked_dirs: tuple[str, ...] = ()
    present_dirs: tuple[str, ...] = ()
    has_manifest: bool = False

    @property
    def name(self) -> str:
        return self.storage_path.name


def _metadata(backup: Backup) -> dict[str, Any]:
    return {
        "created_at": format_iso(backup.timestamp),
        "source_version": backup.source_version,
        "target_version": backup.target_version,
        "tracked_dirs": list(backup.tracked_dirs),
        "present_dirs": list(backup.present_dirs),
        "has_manifest": backup.has_manifest,
    }


def _allocate_stamp(backup_root: Path) -> tuple[datetime, str]:
    timestamp = now_utc()
    stamp = format_stamp(timestamp)
    while (backup_root / stamp).exists() or (backup_root / f"{stamp}{PARTIAL_SUFFIX}").exists():
        timestamp = next_stamp(timestamp)
        stamp = format_stamp(timestamp)
    return timestamp, stamp


def create_backup(
    project_root: Path,
    tracked_dirs: Iterable[str],
    backup_root: Path,
    source_version: str | None = None,
    target_version: str | None = None,
    manifest_path: Path | None = None,
) -> Backup:
    """Copy every tracked directory (and the manifest, if given) into a fresh backup.

    Raises BackupError if any part of the copy fails; the incomplete staging
    directory is removed first.
    """
    dirs = tuple(tracked_dirs)
    for directory in dirs:
        if directory.split("/", 1)[0] in _RESERVED_NAMES:
            raise BackupError(f"Tracked directory name clashes with backup metadata: {directory}")

    try:
        backup_root.mkdir(parents=True, exist_ok=True)
        timestamp, stamp = _allocate_stamp(backup_root)
    except OSError as exc:
        raise BackupError(f"Cannot prepare backup directory {backup_root}: {exc}") from exc

    staging = backup_root / f"{stamp}{PARTIAL_SUFFIX}"
    final = backup_root / stamp
    present: list[str] = []
    try:
        staging.mkdir()
        for directory in dirs:
            source = project_root / directory
            if not source.is_dir():
                continue
            shutil.copytree(source, staging / directory, symlinks=True)
            present.append(directory)
        has_manifest = manifest_path is not None and manifest_path.is_file()
        if has_manifest:
            shutil.copy2(manifest_path, staging / MANIFEST_SNAPSHOT)
        backup = Backup(
            timestamp=timestamp,
            source_version=source_version,
            target_version=target_version,
            storage_path=final,
            tracked_dirs=dirs,
            present_dirs=tuple(present),
            has_manifest=has_manifest,
        )
        (staging / METADATA_FILE).write_text(
            json.dumps(_metadata(backup), indent=2) + "\n", encoding="utf-8"
        )
        staging.rename(final)
    except (OSError, shutil.Error) as exc:
        shutil.rmtree(staging, ignore_errors=True)
        raise BackupError(f"Backup of {project_root} failed: {exc}") from exc

    logger.info("Created backup %s (%d directories)", final, len(present))
    return backup


def _read_backup(path: Path) -> Backup | None:
    timestamp = parse_stamp(path.name)
    if timestamp is None or not path.is_dir():
        return None

    data: dict[str, Any] = {}
    metadata_path = path / METADATA_FILE
    if metadata_path.is_file():
        try:
            loaded = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable backup metadata %s: %s", metadata_path, exc)
        else:
            if isinstance(loaded, dict):
                data = loaded

    present = data.get("present_dirs")
    if not isinstance(present, list):
        present = sorted(child.name for child in path.iterdir() if child.is_dir())
    tracked = data.get("tracked_dirs")
    if not isinstance(tracked, list):
        tracked = list(present)

    return Backup(
        timestamp=timestamp,
        source_version=data.get("source_version"),
        target_version=data.get("target_version"),
        storage_path=path,
        tracked_dirs=tuple(str(item) for item in tracked),
        present_dirs=tuple(str(item) for item in present),
        has_manifest=(path / MANIFEST_SNAPSHOT).is_file(),
    )


def list_backups(backup_root: Path) -> list[Backup]:
    """Return all complete backups, newest first."""
    if not backup_root.is_dir():
        return []
    backups: list[Backup] = []
    for child in backup_root.iterdir():
        backup = _read_backup(child)
        if backup is not None:
            backups.append(backup)
    backups.sort(key=lambda backup: backup.timestamp, reverse=True)
    return backups


def find_backup(backup_root: Path, name: str) -> Backup:
    """Look up a backup by directory name."""
    if "/" in name or "\\" in name or name in {"", ".", ".."}:
        raise BackupError(f"Invalid backup name: {name!r}")
    backup = _read_backup(backup_root / name)
    if backup is None:
        raise BackupError(f"No backup named {name!r} in {backup_root}")
    return backup


def restore_backup(project_root: Path, backup: Backup, manifest_path: Path | None = None) -> None:
    """Replace the tracked directories with the backup's copies.

    Tracked directories that did not exist when the backup was taken are
    deleted. With ``manifest_path`` the manifest is put back as well (or
    removed, if none existed at backup time). Safe to call on a partially
    updated working copy: it replaces, it never merges.
    """
    if not backup.storage_path.is_dir():
        raise BackupError(f"Backup directory is missing: {backup.storage_path}")

    for directory in backup.tracked_dirs:
        target = project_root / directory
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
        if directory in backup.present_dirs:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(backup.storage_path / directory, target, symlinks=True)

    if manifest_path is not None:
        if backup.has_manifest:
            manifest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(backup.storage_path / MANIFEST_SNAPSHOT, manifest_path)
        elif manifest_path.exists():
            manifest_path.unlink()
    logger.info("Restored %s from backup %s", project_root, backup.storage_path)


def prune_backups(
    backup_root: Path,
    keep: int,
    confirm: Callable[[list[Backup]], bool],
) -> list[Backup]:
    """Delete all but the newest ``keep`` backups once ``confirm`` agrees.

    ``confirm`` receives the backups that would be deleted, oldest first.
    Returns the backups actually deleted.
    """
    if keep < 1:
        msg = f"keep must be at least 1, got {keep}"
        raise ValueError(msg)

    backups = list_backups(backup_root)
    doomed = list(reversed(backups[keep:]))
    if not doomed:
        return []
    if not confirm(doomed):
        logger.info("Pruning of %d backups declined", len(doomed))
        return []

    for backup in doomed:
        try:
            shutil.rmtree(backup.storage_path)
        except OSError as exc:
            raise BackupError(f"Failed to delete backup {backup.storage_path}: {exc}") from exc
        logger.info("Deleted backup %s", backup.storage_path)
    return doomed
