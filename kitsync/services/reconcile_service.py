"""Reconciliation engine: three-way classification of tracked files.

Every file is compared across three fingerprints:

- ``original``: recorded in the manifest when the file last matched a release
- ``current``: the live file in the working copy
- ``upstream``: the file in the release being installed

and mapped to exactly one action. Classification only reads; nothing here
touches the filesystem except to fingerprint live files.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from kitsync.exceptions import PrerequisiteError
from kitsync.filesystem.paths import is_within_any, normalize_relative_path
from kitsync.services.fingerprint_service import hash_file, hashes_equal, normalized_hash
from kitsync.services.state_service import discover_files

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from pathlib import Path

    from kitsync.schemas.manifest import Manifest

logger = logging.getLogger(__name__)


class Action(StrEnum):
    """What the apply step does with a file."""

    ADD = "add"
    REMOVE = "remove"
    PRESERVE = "preserve"
    UPDATE = "update"
    MERGE = "merge"
    SKIP = "skip"


MUTATING_ACTIONS = frozenset({Action.ADD, Action.REMOVE, Action.UPDATE, Action.MERGE})


@dataclass(frozen=True)
class FileState:
    """Per-file classification computed for one reconciliation run."""

    path: str
    current_hash: str | None
    original_hash: str | None
    upstream_hash: str | None
    is_customized: bool
    has_upstream_changes: bool
    is_official: bool
    action: Action

    @property
    def is_conflict(self) -> bool:
        return self.is_customized and self.has_upstream_changes


@dataclass
class ReconcileResult:
    """Ordered file states plus the paths that must never be touched.

    ``custom_files`` are local files under the tracked directories that the
    distribution does not own. ``out_of_scope`` are upstream files outside every
    tracked directory; they are reported and ignored.
    """

    states: list[FileState] = field(default_factory=list)
    custom_files: list[str] = field(default_factory=list)
    out_of_scope: list[str] = field(default_factory=list)

    def by_action(self, action: Action) -> list[FileState]:
        return [state for state in self.states if state.action == action]

    def mutating(self) -> list[FileState]:
        return [state for state in self.states if state.action in MUTATING_ACTIONS]

    def find(self, path: str) -> FileState | None:
        for state in self.states:
            if state.path == path:
                return state
        return None

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for state in self.states:
            counts[state.action.value] += 1
        return counts

    @property
    def is_noop(self) -> bool:
        return not self.mutating()


def _has_upstream_changes(original_hash: str | None, upstream_hash: str | None) -> bool:
    if original_hash is None and upstream_hash is None:
        return False
    if original_hash is None or upstream_hash is None:
        return True
    return original_hash != upstream_hash


def _decide_action(
    path: str,
    current_hash: str | None,
    original_hash: str | None,
    upstream_hash: str | None,
    is_customized: bool,
    has_upstream_changes: bool,
) -> Action:
    if current_hash is None:
        return Action.ADD if upstream_hash is not None else Action.SKIP

    if upstream_hash is None:
        return Action.PRESERVE if is_customized else Action.REMOVE

    if is_customized:
        return Action.MERGE if has_upstream_changes else Action.PRESERVE

    if has_upstream_changes:
        if hashes_equal(current_hash, original_hash) and hashes_equal(current_hash, upstream_hash):
            # Equal to both sides while the sides differ: should be impossible
            logger.warning(
                "Classification anomaly for %s: matches both original and upstream "
                "although they differ; flagging for review",
                path,
            )
            return Action.MERGE
        return Action.UPDATE

    return Action.SKIP


def classify(
    path: str,
    original_hash: str | None,
    upstream_hash: str | None,
    current_hash: str | None,
    is_official: bool,
    customized_flag: bool = False,
) -> FileState:
    """Classify one file and derive its action.

    A file is customized if its stored flag says so, or if both the current and
    the original fingerprint exist and differ. Without an original fingerprint
    the hash comparison yields "not customized"; only the flag can say otherwise.
    """
    hash_customized = (
        current_hash is not None
        and original_hash is not None
        and not hashes_equal(current_hash, original_hash)
    )
    is_customized = current_hash is not None and (customized_flag or hash_customized)
    has_upstream_changes = _has_upstream_changes(original_hash, upstream_hash)
    action = _decide_action(
        path,
        current_hash,
        original_hash,
        upstream_hash,
        is_customized,
        has_upstream_changes,
    )
    return FileState(
        path=path,
        current_hash=current_hash,
        original_hash=original_hash,
        upstream_hash=upstream_hash,
        is_customized=is_customized,
        has_upstream_changes=has_upstream_changes,
        is_official=is_official,
        action=action,
    )


def upstream_hashes(upstream_files: Mapping[str, bytes]) -> dict[str, str]:
    """Fingerprint every upstream file, validating its path on the way."""
    hashes: dict[str, str] = {}
    for raw_path, content in upstream_files.items():
        try:
            path = normalize_relative_path(raw_path)
        except ValueError as exc:
            raise PrerequisiteError(f"Unsafe upstream path: {exc}") from exc
        if path != raw_path:
            msg = f"Upstream path is not normalized: {raw_path!r}"
            raise PrerequisiteError(msg)
        hashes[path] = normalized_hash(content)
    return hashes


def find_custom_files(
    manifest: Manifest,
    project_root: Path,
    tracked_dirs: Iterable[str],
) -> list[str]:
    """Files living under the managed tree that the distribution does not own."""
    official = manifest.official_paths()
    return [path for path in discover_files(project_root, tracked_dirs) if path not in official]


def _protect_custom(state: FileState, custom: set[str]) -> FileState:
    if state.path not in custom or state.action not in MUTATING_ACTIONS:
        return state
    logger.warning(
        "Not touching custom file %s (would have been %s)", state.path, state.action.value
    )
    return FileState(
        path=state.path,
        current_hash=state.current_hash,
        original_hash=state.original_hash,
        upstream_hash=state.upstream_hash,
        is_customized=state.is_customized,
        has_upstream_changes=state.has_upstream_changes,
        is_official=state.is_official,
        action=Action.PRESERVE,
    )


def reconcile_all(
    manifest: Manifest,
    upstream_files: Mapping[str, bytes],
    project_root: Path,
    tracked_dirs: Iterable[str] = (),
) -> ReconcileResult:
    """Classify every tracked file and every new upstream file.

    Order: tracked files in manifest order, then upstream files missing from the
    manifest in the order the provider listed them. Custom files found under the
    tracked directories are reported separately and any mutating action on them
    is demoted to ``preserve``. New upstream files outside the tracked
    directories are listed in ``out_of_scope`` and not classified.
    """
    tracked_dirs = tuple(tracked_dirs)
    hashes = upstream_hashes(upstream_files)
    custom = find_custom_files(manifest, project_root, tracked_dirs)
    custom_set = set(custom)
    out_of_scope: list[str] = []

    states: list[FileState] = []
    known: set[str] = set()
    for tracked in manifest.tracked_files:
        known.add(tracked.path)
        state = classify(
            tracked.path,
            original_hash=tracked.original_hash,
            upstream_hash=hashes.get(tracked.path),
            current_hash=hash_file(project_root / tracked.path),
            is_official=tracked.is_official,
            customized_flag=tracked.customized,
        )
        if not tracked.is_official:
            custom_set.add(tracked.path)
        states.append(_protect_custom(state, custom_set))

    for path, upstream_hash in hashes.items():
        if path in known:
            continue
        if tracked_dirs and not is_within_any(path, tracked_dirs):
            out_of_scope.append(path)
            continue
        state = classify(
            path,
            original_hash=None,
            upstream_hash=upstream_hash,
            current_hash=hash_file(project_root / path),
            is_official=True,
        )
        states.append(_protect_custom(state, custom_set))

    if out_of_scope:
        logger.warning(
            "Ignoring %d upstream file(s) outside the tracked directories: %s",
            len(out_of_scope),
            ", ".join(out_of_scope),
        )
    result = ReconcileResult(states=states, custom_files=custom, out_of_scope=out_of_scope)
    logger.debug("Reconciled %d files: %s", len(states), result.summary())
    return result
