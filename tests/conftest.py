"""Shared test fixtures for kitsync."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from kitsync.config import Settings
from kitsync.filesystem.toml_manager import ProjectConfig, write_project_config
from kitsync.services.engine import SyncEngine
from kitsync.upstream.directory import DirectoryProvider
from tests.helpers import TRACKED_DIR, write_tree

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep host KITSYNC_* variables and .env files out of the tests."""
    for key in list(os.environ):
        if key.startswith("KITSYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Create an empty project with a tracked templates directory."""
    root = tmp_path / "project"
    (root / TRACKED_DIR).mkdir(parents=True)
    return root


@pytest.fixture
def releases_dir(tmp_path: Path) -> Path:
    releases = tmp_path / "releases"
    releases.mkdir()
    return releases


@pytest.fixture
def make_release(releases_dir: Path) -> Callable[[str, dict[str, str | bytes]], None]:
    """Return a helper that publishes a release into the releases directory."""

    def _make(version: str, files: dict[str, str | bytes]) -> None:
        write_tree(releases_dir / version, files)

    return _make


@pytest.fixture
def provider(releases_dir: Path) -> DirectoryProvider:
    return DirectoryProvider(releases_dir)


@pytest.fixture
def test_settings(releases_dir: Path) -> Settings:
    """Create test settings with temporary paths."""
    return Settings(releases_dir=releases_dir, backup_retention=3, debug=True)


@pytest.fixture
def engine(project_root: Path, test_settings: Settings) -> SyncEngine:
    """Create an engine for a project that tracks the templates directory."""
    write_project_config(
        project_root,
        ProjectConfig(name="test-kit", tracked_dirs=[TRACKED_DIR]),
        test_settings.state_dir,
    )
    return SyncEngine(project_root, test_settings)
