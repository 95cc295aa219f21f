"""State store: manifest loading, creation, persistence, and baseline rescans."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from kitsync.exceptions import ManifestCorruptError
from kitsync.filesystem.atomic import write_text_atomic
from kitsync.schemas.manifest import Manifest, TrackedFile
from kitsync.services.fingerprint_service import hash_file, hashes_equal

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)


def load_manifest(manifest_path: Path) -> Manifest | None:
    """Load the manifest, returning None when none has been written yet.

    Raises ManifestCorruptError when the file exists but cannot be used.
    """
    if not manifest_path.exists():
        return None
    try:
        raw = manifest_path.read_text(encoding="utf-8")
        data = json.loads(raw)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestCorruptError(manifest_path, str(exc)) from exc
    if not isinstance(data, dict):
        raise ManifestCorruptError(manifest_path, "top-level value is not an object")
    try:
        return Manifest.model_validate(data)
    except ValidationError as exc:
        raise ManifestCorruptError(manifest_path, str(exc)) from exc


def save_manifest(manifest_path: Path, manifest: Manifest) -> None:
    """Atomically write the manifest, replacing any previous version."""
    write_text_atomic(manifest_path, manifest.to_json())
    logger.info(
        "Saved manifest %s (version %s, %d tracked files)",
        manifest_path,
        manifest.distribution_version,
        len(manifest.tracked_files),
    )


def delete_manifest(manifest_path: Path) -> bool:
    """Remove a manifest file and its directory if that leaves it empty."""
    if not manifest_path.exists():
        return False
    manifest_path.unlink()
    try:
        manifest_path.parent.rmdir()
    except OSError:
        # Directory still holds backups or other state
        pass
    logger.info("Removed manifest %s", manifest_path)
    return True


def discover_files(project_root: Path, tracked_dirs: Iterable[str]) -> list[str]:
    """List files under the tracked directories as sorted project-relative posix paths."""
    found: set[str] = set()
    for directory in tracked_dirs:
        base = project_root / directory
        if not base.is_dir():
            continue
        for candidate in base.rglob("*"):
            if candidate.is_file():
                found.add(candidate.relative_to(project_root).as_posix())
    return sorted(found)


def create_manifest(
    project_root: Path,
    version: str,
    tracked_dirs: Iterable[str],
    official_paths: Collection[str] | None = None,
    assume_all_customized: bool = True,
) -> Manifest:
    """Build a first manifest from the files already present in the tracked directories.

    Nothing is written to disk. With ``assume_all_customized`` every discovered
    file is flagged customized regardless of its hash, so that unknown local
    content is never silently overwritten by the first update.
    """
    tracked_files: list[TrackedFile] = []
    for rel_path in discover_files(project_root, tracked_dirs):
        tracked_files.append(
            TrackedFile(
                path=rel_path,
                original_hash=hash_file(project_root / rel_path),
                customized=assume_all_customized,
                is_official=official_paths is None or rel_path in official_paths,
            )
        )
    logger.info(
        "Created manifest for version %s with %d tracked files (assume customized: %s)",
        version,
        len(tracked_files),
        assume_all_customized,
    )
    return Manifest(distribution_version=version, tracked_files=tracked_files)


def update_hashes(
    manifest: Manifest,
    project_root: Path,
    release_hashes: Mapping[str, str] | None = None,
) -> Manifest:
    """Reset the comparison baseline for every tracked file.

    When the release the manifest describes is known, ``originalHash`` becomes
    that release's fingerprint and ``customized`` records whether the local
    file differs from it. Otherwise the current on-disk fingerprint becomes the
    baseline and the customized flag is cleared. Files missing locally keep
    their entry unchanged. Returns a new manifest.
    """
    updated = manifest.model_copy(deep=True)
    for tracked in updated.tracked_files:
        current_hash = hash_file(project_root / tracked.path)
        if current_hash is None:
            continue
        release_hash = release_hashes.get(tracked.path) if release_hashes is not None else None
        if release_hash is not None:
            tracked.original_hash = release_hash
            tracked.customized = not hashes_equal(current_hash, release_hash)
        else:
            tracked.original_hash = current_hash
            tracked.customized = False
    return updated
