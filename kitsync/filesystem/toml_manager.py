"""TOML configuration reader/writer for kitsync.toml."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import tomli_w

from kitsync.exceptions import ConfigError
from kitsync.filesystem.paths import is_within, normalize_relative_path

if TYPE_CHECKING:
    from pathlib import Path

PROJECT_CONFIG_FILE = "kitsync.toml"


@dataclass
class ProjectConfig:
    """Parsed project configuration from kitsync.toml."""

    name: str = ""
    tracked_dirs: list[str] = field(default_factory=list)


def _validate_tracked_dirs(raw_dirs: Any, state_dir: str) -> list[str]:
    if not isinstance(raw_dirs, list) or any(not isinstance(item, str) for item in raw_dirs):
        msg = "distribution.tracked_dirs must be a list of strings"
        raise ConfigError(msg)

    tracked: list[str] = []
    for raw in raw_dirs:
        try:
            directory = normalize_relative_path(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid tracked directory: {exc}") from exc
        if (
            directory == state_dir
            or is_within(directory, state_dir)
            or is_within(state_dir, directory)
        ):
            msg = f"Tracked directory {directory!r} overlaps the state directory {state_dir!r}"
            raise ConfigError(msg)
        for existing in tracked:
            if directory == existing or is_within(directory, existing) or is_within(existing, directory):
                msg = f"Tracked directories overlap: {existing!r} and {directory!r}"
                raise ConfigError(msg)
        tracked.append(directory)
    return tracked


def parse_project_config(project_root: Path, state_dir: str = ".kitsync") -> ProjectConfig:
    """Parse kitsync.toml from the project root.

    A missing file yields an empty config; invalid content raises ConfigError.
    """
    config_path = project_root / PROJECT_CONFIG_FILE
    if not config_path.exists():
        return ProjectConfig()

    try:
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Invalid {PROJECT_CONFIG_FILE}: {exc}") from exc

    dist_data = data.get("distribution", {})
    if not isinstance(dist_data, dict):
        msg = "[distribution] must be a table"
        raise ConfigError(msg)

    return ProjectConfig(
        name=str(dist_data.get("name", "")),
        tracked_dirs=_validate_tracked_dirs(dist_data.get("tracked_dirs", []), state_dir),
    )


def write_project_config(project_root: Path, config: ProjectConfig, state_dir: str = ".kitsync") -> None:
    """Write the project configuration to kitsync.toml."""
    tracked = _validate_tracked_dirs(list(config.tracked_dirs), state_dir)
    data: dict[str, Any] = {"distribution": {"name": config.name, "tracked_dirs": tracked}}
    config_path = project_root / PROJECT_CONFIG_FILE
    config_path.write_text(tomli_w.dumps(data), encoding="utf-8")
