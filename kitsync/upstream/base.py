"""Protocol for upstream release providers."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class UpstreamProvider(Protocol):
    """Source of released template files.

    Calls are synchronous and happen before reconciliation starts; retries,
    pagination, and transport are the provider's own business.
    """

    def latest_version(self) -> str:
        """Return the newest released version identifier."""
        ...

    def version_exists(self, version: str) -> bool:
        """Return True if the given version can be fetched."""
        ...

    def fetch_files(self, version: str) -> dict[str, bytes]:
        """Return a mapping of project-relative posix path to file content."""
        ...
