"""Fingerprint service: normalized content hashing."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

HASH_ALGORITHM = "sha256"
HASH_PREFIX = f"{HASH_ALGORITHM}:"

_UTF8_BOM = b"\xef\xbb\xbf"


def normalize_content(content: str | bytes) -> bytes:
    """Neutralize line endings, a leading byte-order mark, and trailing whitespace.

    Applied in order: CRLF -> LF, strip the UTF-8 BOM, then right-strip every
    line. Leading whitespace is left alone since indentation is significant.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    data = content.replace(b"\r\n", b"\n")
    data = data.removeprefix(_UTF8_BOM)
    return b"\n".join(line.rstrip() for line in data.split(b"\n"))


def normalized_hash(content: str | bytes) -> str:
    """Compute the prefixed SHA-256 fingerprint of normalized content."""
    digest = hashlib.sha256(normalize_content(content)).hexdigest()
    return f"{HASH_PREFIX}{digest}"


def hash_file(path: Path) -> str | None:
    """Fingerprint a file on disk, or None if it does not exist."""
    if not path.is_file():
        return None
    return normalized_hash(path.read_bytes())


def hashes_equal(first: str | None, second: str | None) -> bool:
    """Compare two fingerprints. Absence is never equal to anything, not even absence."""
    if first is None or second is None:
        return False
    return first == second
