"""Engine-level exception types.

Convention:
- ``PrerequisiteError``: the working copy cannot be touched safely (unusable
  manifest, unwritable managed directory, path outside the tracked tree).
  Always raised before any backup or mutation happens.
- ``BackupError``: a snapshot could not be created or located. The apply
  aborts with nothing mutated.
- ``RollbackError``: an apply failed *and* restoring the backup failed too.
  This is the only state in which the working copy may be inconsistent, so the
  error carries the backup location for manual recovery.

Any other exception raised while files are being mutated is re-raised unchanged
after the backup has been restored.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class KitsyncError(Exception):
    """Base class for all errors raised by the sync engine."""


class ConfigError(KitsyncError, ValueError):
    """Raised for invalid settings or an invalid ``kitsync.toml``."""


class PrerequisiteError(KitsyncError):
    """Raised when a precondition for reconciling or applying is not met."""


class ManifestCorruptError(PrerequisiteError):
    """Raised when the manifest exists but cannot be read or validated.

    Never treated as "no manifest": the caller has to decide explicitly whether
    to recreate it, since recreating loses every recorded original hash.
    """

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Manifest {path} is unreadable or corrupt: {reason}")


class BackupError(KitsyncError):
    """Raised when a backup cannot be created, found, or pruned."""


class RollbackError(KitsyncError):
    """Raised when an apply failed and restoring its backup failed as well."""

    def __init__(
        self,
        original_error: BaseException,
        restore_error: BaseException,
        backup_path: Path,
    ) -> None:
        self.original_error = original_error
        self.restore_error = restore_error
        self.backup_path = backup_path
        super().__init__(
            f"Update failed ({original_error!r}) and automatic rollback also failed "
            f"({restore_error!r}). The working copy may be inconsistent; restore it "
            f"manually from the backup at {backup_path}"
        )


class UpstreamError(KitsyncError):
    """Raised when the upstream provider cannot supply the requested release."""
