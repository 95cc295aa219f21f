"""Filesystem helpers shared by the test modules."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

TRACKED_DIR = "templates"


def write_tree(root: Path, files: dict[str, str | bytes]) -> None:
    """Write a mapping of relative path to content below root."""
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_bytes(content.encode("utf-8"))


def read_tree(root: Path, directory: str = TRACKED_DIR) -> dict[str, bytes]:
    """Read every file below root/directory keyed by project-relative posix path."""
    base = root / directory
    if not base.is_dir():
        return {}
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(base.rglob("*"))
        if path.is_file()
    }
