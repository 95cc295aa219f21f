"""Apply coordinator: backup, mutate, commit the manifest, roll back on failure.

Phases::

    idle -> backed_up -> applying -> committed
    idle -> backed_up -> applying -> rolled_back
    idle -> aborted                  (backup failed, nothing touched)

A failure that cannot be undone (restore failed, or backups disabled) leaves
the transaction in ``applying``.

The manifest is the last artifact written. Until that write succeeds the
on-disk manifest still describes the pre-update state, which is also the state
the backup restores to.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, assert_never

from kitsync.exceptions import BackupError, PrerequisiteError, RollbackError
from kitsync.filesystem.atomic import write_bytes_atomic, write_text_atomic
from kitsync.filesystem.conflict_markers import decode_text, has_conflict_markers, render_conflict
from kitsync.filesystem.paths import is_within_any, safe_local_path
from kitsync.schemas.manifest import TrackedFile
from kitsync.services.backup_service import create_backup, prune_backups, restore_backup
from kitsync.services.fingerprint_service import hashes_equal, normalized_hash
from kitsync.services.reconcile_service import Action
from kitsync.services.state_service import save_manifest

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from pathlib import Path

    from kitsync.schemas.manifest import Manifest
    from kitsync.services.backup_service import Backup
    from kitsync.services.reconcile_service import FileState, ReconcileResult

logger = logging.getLogger(__name__)

UPSTREAM_SIDECAR_SUFFIX = ".upstream"


class ApplyPhase(StrEnum):
    """Lifecycle of one apply transaction."""

    IDLE = "idle"
    BACKED_UP = "backed_up"
    APPLYING = "applying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


@dataclass
class UpdatePlan:
    """Everything needed to apply one reconciliation."""

    source_version: str | None
    target_version: str
    manifest: Manifest
    reconcile: ReconcileResult
    upstream_files: Mapping[str, bytes]
    is_new_manifest: bool = False


@dataclass
class ApplyOutcome:
    """What an apply did, path by path."""

    phase: ApplyPhase = ApplyPhase.IDLE
    backup: Backup | None = None
    manifest: Manifest | None = None
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    false_positives: list[str] = field(default_factory=list)
    pruned: list[Backup] = field(default_factory=list)
    prune_error: str | None = None

    @property
    def changed(self) -> int:
        return len(self.added) + len(self.updated) + len(self.removed) + len(self.conflicts)


def _write_file(path: Path, content: bytes) -> None:
    write_bytes_atomic(path, content)


def _remove_file(path: Path) -> None:
    if path.exists() or path.is_symlink():
        path.unlink()


def _sidecar_path(path: Path) -> Path:
    """First free ``<name>.upstream[.N]`` next to path; existing files are never reused."""
    candidate = path.with_name(path.name + UPSTREAM_SIDECAR_SUFFIX)
    counter = 1
    while candidate.exists() or candidate.is_symlink():
        candidate = path.with_name(f"{path.name}{UPSTREAM_SIDECAR_SUFFIX}.{counter}")
        counter += 1
    return candidate


def _write_conflict(path: Path, upstream: bytes, label: str) -> None:
    """Write conflict markers in place, or a sidecar copy when markers cannot be used.

    Binary content and files that already hold unresolved markers get the
    upstream version in a sidecar instead, so markers never nest.
    """
    current_text = decode_text(path.read_bytes())
    incoming_text = decode_text(upstream)
    if current_text is None or incoming_text is None or has_conflict_markers(current_text):
        sidecar = _sidecar_path(path)
        _write_file(sidecar, upstream)
        logger.warning("Cannot merge %s in place: upstream version written to %s", path, sidecar)
        return
    write_text_atomic(path, render_conflict(current_text, incoming_text, label))


class ApplyTransaction:
    """Applies one UpdatePlan to a working copy as a single all-or-nothing unit."""

    def __init__(
        self,
        project_root: Path,
        plan: UpdatePlan,
        *,
        tracked_dirs: Iterable[str],
        manifest_path: Path,
        backup_root: Path,
        backups_enabled: bool = True,
    ) -> None:
        self.project_root = project_root
        self.plan = plan
        self.tracked_dirs = tuple(tracked_dirs)
        self.manifest_path = manifest_path
        self.backup_root = backup_root
        self.backups_enabled = backups_enabled
        self.outcome = ApplyOutcome()

    @property
    def phase(self) -> ApplyPhase:
        return self.outcome.phase

    def _transition(self, phase: ApplyPhase) -> None:
        logger.debug("Apply phase %s -> %s", self.outcome.phase.value, phase.value)
        self.outcome.phase = phase

    def _target(self, rel_path: str) -> Path:
        target = safe_local_path(self.project_root, rel_path)
        if target is None:
            msg = f"Path escapes the project root: {rel_path}"
            raise PrerequisiteError(msg)
        return target

    def check_prerequisites(self) -> None:
        """Reject plans that would touch anything the backup cannot restore."""
        if not self.tracked_dirs:
            msg = "No tracked directories configured"
            raise PrerequisiteError(msg)

        for state in self.plan.reconcile.mutating():
            if not is_within_any(state.path, self.tracked_dirs):
                msg = f"{state.path} lies outside the tracked directories {list(self.tracked_dirs)}"
                raise PrerequisiteError(msg)
            self._target(state.path)
            if state.action != Action.REMOVE and state.path not in self.plan.upstream_files:
                msg = f"No upstream content for {state.path}"
                raise PrerequisiteError(msg)

        for directory in self.tracked_dirs:
            path = self.project_root / directory
            existing = path
            while not existing.exists() and existing != self.project_root:
                existing = existing.parent
            if not os.access(existing, os.W_OK):
                msg = f"No write permission for managed directory {existing}"
                raise PrerequisiteError(msg)

    def _apply_state(self, state: FileState) -> None:
        target = self._target(state.path)
        match state.action:
            case Action.ADD:
                _write_file(target, self.plan.upstream_files[state.path])
                self.outcome.added.append(state.path)
            case Action.UPDATE:
                _write_file(target, self.plan.upstream_files[state.path])
                self.outcome.updated.append(state.path)
            case Action.REMOVE:
                _remove_file(target)
                self.outcome.removed.append(state.path)
            case Action.MERGE:
                upstream = self.plan.upstream_files[state.path]
                if target.is_file() and hashes_equal(
                    normalized_hash(target.read_bytes()), state.upstream_hash
                ):
                    logger.warning(
                        "%s was flagged customized but matches upstream; updating instead",
                        state.path,
                    )
                    _write_file(target, upstream)
                    self.outcome.false_positives.append(state.path)
                else:
                    _write_conflict(target, upstream, f"upstream ({self.plan.target_version})")
                    self.outcome.conflicts.append(state.path)
            case Action.PRESERVE:
                self.outcome.preserved.append(state.path)
            case Action.SKIP:
                self.outcome.skipped.append(state.path)
            case _:
                assert_never(state.action)

    def _committed_manifest(self) -> Manifest:
        manifest = self.plan.manifest.model_copy(deep=True)
        tracked_by_path = {tracked.path: tracked for tracked in manifest.tracked_files}
        resolved = set(self.outcome.false_positives)
        conflicted = set(self.outcome.conflicts)
        dropped: set[str] = set()

        for state in self.plan.reconcile.states:
            tracked = tracked_by_path.get(state.path)
            synced = state.action in (Action.ADD, Action.UPDATE) or state.path in resolved
            if synced or state.path in conflicted:
                if tracked is None:
                    tracked = TrackedFile(path=state.path, is_official=True)
                    manifest.tracked_files.append(tracked)
                    tracked_by_path[state.path] = tracked
                tracked.original_hash = state.upstream_hash
                tracked.customized = not synced
            elif (
                state.action == Action.PRESERVE
                and tracked is not None
                and tracked.is_official
                and tracked.customized
                and hashes_equal(state.current_hash, state.upstream_hash)
            ):
                # Flagged customized but identical to upstream: clear the flag
                tracked.original_hash = state.upstream_hash
                tracked.customized = False
                self.outcome.false_positives.append(state.path)
            elif state.action == Action.REMOVE:
                dropped.add(state.path)
            elif state.action == Action.SKIP and state.current_hash is None and state.upstream_hash is None:
                dropped.add(state.path)

        manifest.tracked_files = [t for t in manifest.tracked_files if t.path not in dropped]
        manifest.distribution_version = self.plan.target_version
        return manifest

    def _rollback(self, error: Exception) -> None:
        backup = self.outcome.backup
        if backup is None:
            logger.error(
                "Update to %s failed with backups disabled; %d files may already be changed",
                self.plan.target_version,
                self.outcome.changed,
            )
            return
        logger.error("Update to %s failed: %s; rolling back", self.plan.target_version, error)
        try:
            restore_backup(self.project_root, backup, self.manifest_path)
        except Exception as restore_error:
            logger.error(
                "Rollback from %s failed: %s", backup.storage_path, restore_error
            )
            raise RollbackError(error, restore_error, backup.storage_path) from error
        self._transition(ApplyPhase.ROLLED_BACK)
        logger.info("Rolled back to backup %s", backup.storage_path)

    def run(self) -> ApplyOutcome:
        """Run the transaction. Re-raises the original failure after a rollback."""
        self.check_prerequisites()

        if self.backups_enabled:
            try:
                self.outcome.backup = create_backup(
                    self.project_root,
                    self.tracked_dirs,
                    self.backup_root,
                    source_version=self.plan.source_version,
                    target_version=self.plan.target_version,
                    manifest_path=self.manifest_path,
                )
            except BackupError:
                self._transition(ApplyPhase.ABORTED)
                logger.error("Backup failed; update aborted before touching any file")
                raise
            self._transition(ApplyPhase.BACKED_UP)

        self._transition(ApplyPhase.APPLYING)
        try:
            for state in self.plan.reconcile.states:
                self._apply_state(state)
            manifest = self._committed_manifest()
            save_manifest(self.manifest_path, manifest)
        except Exception as exc:
            self._rollback(exc)
            raise

        self.outcome.manifest = manifest
        self._transition(ApplyPhase.COMMITTED)
        logger.info(
            "Updated to %s: %d added, %d updated, %d removed, %d conflicts, %d false positives",
            self.plan.target_version,
            len(self.outcome.added),
            len(self.outcome.updated),
            len(self.outcome.removed),
            len(self.outcome.conflicts),
            len(self.outcome.false_positives),
        )
        return self.outcome

    def prune(self, keep: int, confirm: Callable[[list[Backup]], bool]) -> None:
        """Retire old backups after a committed apply, with the caller's consent."""
        if self.phase != ApplyPhase.COMMITTED:
            msg = f"Cannot prune backups in phase {self.phase.value}"
            raise RuntimeError(msg)
        try:
            self.outcome.pruned = prune_backups(self.backup_root, keep, confirm)
        except BackupError as exc:
            logger.error("Update committed but pruning old backups failed: %s", exc)
            self.outcome.prune_error = str(exc)


def apply_plan(
    project_root: Path,
    plan: UpdatePlan,
    *,
    tracked_dirs: Iterable[str],
    manifest_path: Path,
    backup_root: Path,
    backups_enabled: bool = True,
    retention: int | None = None,
    confirm_prune: Callable[[list[Backup]], bool] | None = None,
) -> ApplyOutcome:
    """Apply a plan transactionally and optionally prune old backups afterwards."""
    transaction = ApplyTransaction(
        project_root,
        plan,
        tracked_dirs=tracked_dirs,
        manifest_path=manifest_path,
        backup_root=backup_root,
        backups_enabled=backups_enabled,
    )
    outcome = transaction.run()
    if retention is not None and confirm_prune is not None:
        transaction.prune(retention, confirm_prune)
    return outcome


def rollback_to(project_root: Path, backup: Backup, manifest_path: Path | None = None) -> None:
    """Restore the working copy (and manifest) to a backup's state."""
    restore_backup(project_root, backup, manifest_path)
