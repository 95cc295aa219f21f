"""Project-relative path handling."""

from __future__ import annotations

from pathlib import Path, PurePosixPath


def normalize_relative_path(raw: str) -> str:
    """Normalize a project-relative path to posix form.

    Backslashes are treated as separators and ``.`` segments are dropped.
    Raises ValueError for empty, absolute, or escaping paths.
    """
    value = raw.strip().replace("\\", "/")
    posix_path = PurePosixPath(value)
    if posix_path.is_absolute() or (len(value) > 1 and value[1] == ":"):
        msg = f"Path must be relative: {raw!r}"
        raise ValueError(msg)

    parts: list[str] = []
    for part in posix_path.parts:
        if part in {"", "."}:
            continue
        if part == "..":
            msg = f"Path cannot escape the project root: {raw!r}"
            raise ValueError(msg)
        parts.append(part)

    if not parts:
        msg = f"Path must name something below the project root: {raw!r}"
        raise ValueError(msg)
    return "/".join(parts)


def safe_local_path(project_root: Path, rel_path: str) -> Path | None:
    """Resolve a relative path within project_root, returning None on traversal."""
    local_path = (project_root / rel_path).resolve()
    if not local_path.is_relative_to(project_root.resolve()):
        return None
    return local_path


def is_within(rel_path: str, directory: str) -> bool:
    """Return True if rel_path lies strictly below the relative directory."""
    return rel_path.startswith(directory.rstrip("/") + "/")


def is_within_any(rel_path: str, directories: tuple[str, ...] | list[str]) -> bool:
    return any(is_within(rel_path, directory) for directory in directories)
