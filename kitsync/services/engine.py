"""SyncEngine: the public surface over state, reconciliation, backups, and apply.

Any CLI or automation layer is built on these operations::

    engine = SyncEngine(project_root)
    plan = engine.plan_update(provider)          # read-only
    outcome = engine.apply(plan)                 # transactional
    engine.list_backups()
    engine.rollback_to(engine.find_backup(name))
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kitsync.config import Settings
from kitsync.exceptions import PrerequisiteError, UpstreamError
from kitsync.filesystem.toml_manager import ProjectConfig, parse_project_config
from kitsync.services import apply_service, backup_service, state_service
from kitsync.services.reconcile_service import ReconcileResult, reconcile_all, upstream_hashes

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from pathlib import Path

    from kitsync.schemas.manifest import Manifest
    from kitsync.services.apply_service import ApplyOutcome, UpdatePlan
    from kitsync.services.backup_service import Backup
    from kitsync.upstream.base import UpstreamProvider

logger = logging.getLogger(__name__)


class SyncEngine:
    """Synchronizes one project's tracked directories with upstream releases."""

    def __init__(
        self,
        project_root: Path,
        settings: Settings | None = None,
        config: ProjectConfig | None = None,
    ) -> None:
        self.project_root = project_root
        self.settings = settings if settings is not None else Settings()
        self.config = (
            config
            if config is not None
            else parse_project_config(project_root, self.settings.state_dir)
        )

    @property
    def manifest_path(self) -> Path:
        return self.settings.manifest_path(self.project_root)

    @property
    def backup_root(self) -> Path:
        return self.settings.backup_root(self.project_root)

    @property
    def tracked_dirs(self) -> tuple[str, ...]:
        return tuple(self.config.tracked_dirs)

    def _require_tracked_dirs(self) -> None:
        if not self.tracked_dirs:
            msg = "No tracked directories configured; run 'kitsync init' first"
            raise PrerequisiteError(msg)

    def load_manifest(self) -> Manifest | None:
        return state_service.load_manifest(self.manifest_path)

    def reconcile_all(self, manifest: Manifest, upstream_files: Mapping[str, bytes]) -> ReconcileResult:
        """Classify every tracked and every new upstream file."""
        return reconcile_all(manifest, upstream_files, self.project_root, self.tracked_dirs)

    def plan_update(
        self,
        provider: UpstreamProvider,
        version: str | None = None,
        installed_version: str | None = None,
    ) -> UpdatePlan:
        """Fetch a release and reconcile it against the working copy.

        Reads only. On a first run the manifest is built in memory, with every
        existing file flagged customized; it reaches disk only if the plan is
        applied. ``installed_version`` names the release the working copy was
        installed from, when known, so that official files can be told apart
        from user-authored ones.
        """
        self._require_tracked_dirs()
        target = version if version is not None else provider.latest_version()
        if not provider.version_exists(target):
            msg = f"Upstream version {target!r} does not exist"
            raise UpstreamError(msg)
        upstream_files = provider.fetch_files(target)

        manifest = self.load_manifest()
        is_new = manifest is None
        if manifest is None:
            baseline = installed_version if installed_version is not None else target
            if baseline == target:
                official: set[str] | None = set(upstream_files)
            elif provider.version_exists(baseline):
                official = set(provider.fetch_files(baseline))
            else:
                official = None
            manifest = state_service.create_manifest(
                self.project_root,
                baseline,
                self.tracked_dirs,
                official_paths=official,
                assume_all_customized=True,
            )

        result = self.reconcile_all(manifest, upstream_files)
        logger.info(
            "Planned update %s -> %s: %s",
            manifest.distribution_version,
            target,
            result.summary(),
        )
        return apply_service.UpdatePlan(
            source_version=manifest.distribution_version,
            target_version=target,
            manifest=manifest,
            reconcile=result,
            upstream_files=upstream_files,
            is_new_manifest=is_new,
        )

    def apply(
        self,
        plan: UpdatePlan,
        confirm_prune: Callable[[list[Backup]], bool] | None = None,
        backups_enabled: bool | None = None,
    ) -> ApplyOutcome:
        """Apply a plan: backup, mutate, commit the manifest, roll back on failure."""
        self._require_tracked_dirs()
        return apply_service.apply_plan(
            self.project_root,
            plan,
            tracked_dirs=self.tracked_dirs,
            manifest_path=self.manifest_path,
            backup_root=self.backup_root,
            backups_enabled=(
                self.settings.backups_enabled if backups_enabled is None else backups_enabled
            ),
            retention=self.settings.backup_retention,
            confirm_prune=confirm_prune,
        )

    def cancel(self, plan: UpdatePlan) -> None:
        """Abandon a plan before anything was applied.

        Planning writes nothing, so this only has to clean up a first-run
        manifest that something wrote speculatively in the meantime.
        """
        if plan.is_new_manifest and state_service.delete_manifest(self.manifest_path):
            logger.info("Discarded speculative manifest for cancelled update")
        logger.info("Update to %s cancelled; nothing was changed", plan.target_version)

    def list_backups(self) -> list[Backup]:
        return backup_service.list_backups(self.backup_root)

    def find_backup(self, name: str) -> Backup:
        return backup_service.find_backup(self.backup_root, name)

    def rollback_to(self, backup: Backup) -> None:
        """Restore the tracked directories and the manifest from a backup."""
        self._require_tracked_dirs()
        apply_service.rollback_to(self.project_root, backup, self.manifest_path)

    def prune_backups(
        self,
        confirm: Callable[[list[Backup]], bool],
        keep: int | None = None,
    ) -> list[Backup]:
        keep = self.settings.backup_retention if keep is None else keep
        return backup_service.prune_backups(self.backup_root, keep, confirm)

    def rescan(self, provider: UpstreamProvider | None = None) -> Manifest:
        """Reset the manifest baseline after the user confirmed the current files.

        With a provider that still serves the manifest's release, hashes are
        reset to that release and customization is recomputed against it.
        """
        manifest = self.load_manifest()
        if manifest is None:
            msg = f"No manifest at {self.manifest_path}; run an update first"
            raise PrerequisiteError(msg)

        release_hashes: dict[str, str] | None = None
        if provider is not None and provider.version_exists(manifest.distribution_version):
            release_hashes = upstream_hashes(provider.fetch_files(manifest.distribution_version))

        updated = state_service.update_hashes(manifest, self.project_root, release_hashes)
        state_service.save_manifest(self.manifest_path, updated)
        return updated
