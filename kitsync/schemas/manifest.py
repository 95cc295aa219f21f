"""Manifest schemas persisted by the state store."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from kitsync.filesystem.paths import normalize_relative_path

SCHEMA_VERSION = "1"

_HASH_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


class TrackedFile(BaseModel):
    """One file under management."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    path: str
    original_hash: str | None = None
    customized: bool = False
    is_official: bool = True

    @field_validator("path")
    @classmethod
    def _path_is_safe(cls, value: str) -> str:
        normalized = normalize_relative_path(value)
        if normalized != value:
            msg = f"path must be a normalized relative posix path, got {value!r}"
            raise ValueError(msg)
        return value

    @field_validator("original_hash")
    @classmethod
    def _hash_is_well_formed(cls, value: str | None) -> str | None:
        if value is not None and not _HASH_RE.match(value):
            msg = f"originalHash must look like 'sha256:<hex>', got {value!r}"
            raise ValueError(msg)
        return value


class Manifest(BaseModel):
    """Persisted sync state for one project."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    schema_version: str = SCHEMA_VERSION
    distribution_version: str
    tracked_files: list[TrackedFile] = Field(default_factory=list)

    @field_validator("schema_version")
    @classmethod
    def _schema_is_supported(cls, value: str) -> str:
        if value != SCHEMA_VERSION:
            msg = f"unsupported schemaVersion {value!r} (expected {SCHEMA_VERSION!r})"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _paths_are_unique(self) -> Manifest:
        seen: set[str] = set()
        for tracked in self.tracked_files:
            if tracked.path in seen:
                msg = f"duplicate tracked path: {tracked.path}"
                raise ValueError(msg)
            seen.add(tracked.path)
        return self

    def find(self, path: str) -> TrackedFile | None:
        for tracked in self.tracked_files:
            if tracked.path == path:
                return tracked
        return None

    def official_paths(self) -> set[str]:
        return {tracked.path for tracked in self.tracked_files if tracked.is_official}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2) + "\n"
