"""Upstream provider backed by a local directory of releases.

Layout: one subdirectory per version, each holding the release's files at
their project-relative locations::

    releases/
        1.0.0/templates/a.md
        1.1.0/templates/a.md
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from kitsync.exceptions import UpstreamError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_VERSION_PART_RE = re.compile(r"(\d+)")


def version_key(version: str) -> tuple[tuple[int, int | str], ...]:
    """Sort key ordering numeric parts numerically: 1.10.0 sorts after 1.9.0."""
    key: list[tuple[int, int | str]] = []
    for part in _VERSION_PART_RE.split(version.removeprefix("v")):
        if not part:
            continue
        key.append((1, int(part)) if part.isdigit() else (0, part))
    return tuple(key)


class DirectoryProvider:
    """Serves releases from subdirectories of a local folder."""

    def __init__(self, releases_dir: Path) -> None:
        self.releases_dir = releases_dir

    def versions(self) -> list[str]:
        """Return available versions, oldest first."""
        if not self.releases_dir.is_dir():
            return []
        names = [
            child.name
            for child in self.releases_dir.iterdir()
            if child.is_dir() and not child.name.startswith(".")
        ]
        return sorted(names, key=version_key)

    def latest_version(self) -> str:
        versions = self.versions()
        if not versions:
            msg = f"No releases found in {self.releases_dir}"
            raise UpstreamError(msg)
        return versions[-1]

    def version_exists(self, version: str) -> bool:
        return version in self.versions()

    def fetch_files(self, version: str) -> dict[str, bytes]:
        if not self.version_exists(version):
            msg = f"Unknown release {version!r} in {self.releases_dir}"
            raise UpstreamError(msg)

        release_root = self.releases_dir / version
        files: dict[str, bytes] = {}
        for path in sorted(release_root.rglob("*")):
            if not path.is_file():
                continue
            rel = path.relative_to(release_root).as_posix()
            files[rel] = path.read_bytes()
        logger.debug("Fetched %d files for release %s", len(files), version)
        return files
