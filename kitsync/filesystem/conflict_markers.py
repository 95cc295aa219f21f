"""Conflict marker blocks for files that need manual resolution.

Markers follow the git convention so that editors with built-in conflict
resolution recognize them without extra tooling::

    <<<<<<< current
    (local content)
    =======
    (incoming upstream content)
    >>>>>>> upstream (1.2.0)
"""

from __future__ import annotations

import re

START_MARKER = "<<<<<<<"
SEPARATOR_MARKER = "======="
END_MARKER = ">>>>>>>"

_MARKER_LINE_RE = re.compile(r"^(<{7}|={7}|>{7})(?: .*)?$", re.MULTILINE)


def _terminated(text: str) -> str:
    if text and not text.endswith("\n"):
        return text + "\n"
    return text


def render_conflict(current: str, incoming: str, incoming_label: str = "upstream") -> str:
    """Render a conflict block containing both versions of a file."""
    return (
        f"{START_MARKER} current\n"
        f"{_terminated(current)}"
        f"{SEPARATOR_MARKER}\n"
        f"{_terminated(incoming)}"
        f"{END_MARKER} {incoming_label}\n"
    )


def has_conflict_markers(text: str) -> bool:
    """Return True if text contains a complete start/separator/end marker sequence."""
    kinds = [match.group(1)[0] for match in _MARKER_LINE_RE.finditer(text)]
    expected = "<=>"
    position = 0
    for kind in kinds:
        if kind == expected[position]:
            position += 1
            if position == len(expected):
                return True
    return False


def decode_text(content: bytes) -> str | None:
    """Decode UTF-8 content for marker rendering, or None for binary content."""
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return None
