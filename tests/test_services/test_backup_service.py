"""Tests for backup creation, restore, listing, and pruning."""

from __future__ import annotations

import json
import shutil
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from kitsync.exceptions import BackupError
from kitsync.services.backup_service import (
    MANIFEST_SNAPSHOT,
    METADATA_FILE,
    PARTIAL_SUFFIX,
    create_backup,
    find_backup,
    list_backups,
    prune_backups,
    restore_backup,
)
from kitsync.services.datetime_service import format_stamp, parse_stamp
from tests.helpers import TRACKED_DIR, read_tree, write_tree

if TYPE_CHECKING:
    from pathlib import Path

    from kitsync.services.backup_service import Backup


@pytest.fixture
def backup_root(project_root: Path) -> Path:
    return project_root / ".kitsync" / "backups"


class TestCreateBackup:
    def test_copies_tracked_dirs_and_metadata(self, project_root: Path, backup_root: Path) -> None:
        write_tree(project_root, {"templates/a.md": "a\n", "templates/sub/b.md": "b\n"})

        backup = create_backup(project_root, [TRACKED_DIR], backup_root, "1.0.0", "1.1.0")

        assert backup.storage_path.parent == backup_root
        assert parse_stamp(backup.name) is not None
        assert read_tree(backup.storage_path) == read_tree(project_root)
        metadata = json.loads((backup.storage_path / METADATA_FILE).read_text(encoding="utf-8"))
        assert metadata["source_version"] == "1.0.0"
        assert metadata["target_version"] == "1.1.0"
        assert metadata["present_dirs"] == [TRACKED_DIR]

    def test_snapshots_manifest(self, project_root: Path, backup_root: Path) -> None:
        manifest_path = project_root / ".kitsync" / "manifest.json"
        manifest_path.parent.mkdir(parents=True)
        manifest_path.write_text('{"x": 1}', encoding="utf-8")

        backup = create_backup(project_root, [TRACKED_DIR], backup_root, manifest_path=manifest_path)

        assert backup.has_manifest
        assert (backup.storage_path / MANIFEST_SNAPSHOT).read_text(encoding="utf-8") == '{"x": 1}'

    def test_missing_tracked_dir_is_recorded_absent(self, project_root: Path, backup_root: Path) -> None:
        backup = create_backup(project_root, [TRACKED_DIR, "extras"], backup_root)

        assert backup.tracked_dirs == (TRACKED_DIR, "extras")
        assert backup.present_dirs == (TRACKED_DIR,)

    def test_consecutive_backups_get_distinct_names(self, project_root: Path, backup_root: Path) -> None:
        first = create_backup(project_root, [TRACKED_DIR], backup_root)
        second = create_backup(project_root, [TRACKED_DIR], backup_root)

        assert first.name != second.name
        assert second.timestamp > first.timestamp

    def test_copy_failure_leaves_no_partial_backup(self, project_root: Path, backup_root: Path) -> None:
        write_tree(project_root, {"templates/a.md": "a\n"})

        with (
            patch(
                "kitsync.services.backup_service.shutil.copytree",
                side_effect=OSError("disk full"),
            ),
            pytest.raises(BackupError, match="disk full"),
        ):
            create_backup(project_root, [TRACKED_DIR], backup_root)

        assert list(backup_root.iterdir()) == []
        assert list_backups(backup_root) == []

    def test_reserved_directory_name_is_rejected(self, project_root: Path, backup_root: Path) -> None:
        with pytest.raises(BackupError, match="clashes"):
            create_backup(project_root, [METADATA_FILE], backup_root)


class TestListAndFindBackups:
    def test_newest_first(self, project_root: Path, backup_root: Path) -> None:
        created = [create_backup(project_root, [TRACKED_DIR], backup_root) for _ in range(3)]

        listed = list_backups(backup_root)

        assert [b.name for b in listed] == [b.name for b in reversed(created)]

    def test_partial_and_foreign_directories_are_ignored(
        self, project_root: Path, backup_root: Path
    ) -> None:
        backup = create_backup(project_root, [TRACKED_DIR], backup_root)
        (backup_root / f"{backup.name}{PARTIAL_SUFFIX}").mkdir()
        (backup_root / "notes").mkdir()

        assert [b.name for b in list_backups(backup_root)] == [backup.name]

    def test_missing_root_lists_nothing(self, tmp_path: Path) -> None:
        assert list_backups(tmp_path / "none") == []

    def test_find_by_name(self, project_root: Path, backup_root: Path) -> None:
        backup = create_backup(project_root, [TRACKED_DIR], backup_root, "1.0.0", "2.0.0")

        found = find_backup(backup_root, backup.name)

        assert found.source_version == "1.0.0"
        assert found.target_version == "2.0.0"
        assert found.tracked_dirs == (TRACKED_DIR,)

    @pytest.mark.parametrize("name", ["", "..", "a/b", "20990101T000000000000Z"])
    def test_find_unknown_or_invalid_name(self, backup_root: Path, name: str) -> None:
        with pytest.raises(BackupError):
            find_backup(backup_root, name)


class TestRestoreBackup:
    def test_restores_exact_tree(self, project_root: Path, backup_root: Path) -> None:
        write_tree(project_root, {"templates/a.md": "a\n", "templates/sub/b.md": "b\n"})
        before = read_tree(project_root)
        backup = create_backup(project_root, [TRACKED_DIR], backup_root)

        write_tree(project_root, {"templates/a.md": "changed\n", "templates/new.md": "new\n"})
        (project_root / "templates" / "sub" / "b.md").unlink()
        restore_backup(project_root, backup)

        assert read_tree(project_root) == before

    def test_directory_absent_at_backup_time_is_removed(
        self, project_root: Path, backup_root: Path
    ) -> None:
        backup = create_backup(project_root, [TRACKED_DIR, "extras"], backup_root)
        write_tree(project_root, {"extras/added.md": "x"})

        restore_backup(project_root, backup)

        assert not (project_root / "extras").exists()

    def test_restores_and_removes_manifest(self, project_root: Path, backup_root: Path) -> None:
        manifest_path = project_root / ".kitsync" / "manifest.json"
        without_manifest = create_backup(
            project_root, [TRACKED_DIR], backup_root, manifest_path=manifest_path
        )
        manifest_path.write_text("new", encoding="utf-8")

        restore_backup(project_root, without_manifest, manifest_path)
        assert not manifest_path.exists()

        manifest_path.write_text("old", encoding="utf-8")
        with_manifest = create_backup(
            project_root, [TRACKED_DIR], backup_root, manifest_path=manifest_path
        )
        manifest_path.write_text("newer", encoding="utf-8")

        restore_backup(project_root, with_manifest, manifest_path)
        assert manifest_path.read_text(encoding="utf-8") == "old"

    def test_missing_storage_raises(self, project_root: Path, backup_root: Path) -> None:
        backup = create_backup(project_root, [TRACKED_DIR], backup_root)
        shutil.rmtree(backup.storage_path)

        with pytest.raises(BackupError, match="missing"):
            restore_backup(project_root, backup)


class TestPruneBackups:
    def test_keeps_newest_and_passes_doomed_oldest_first(
        self, project_root: Path, backup_root: Path
    ) -> None:
        created = [create_backup(project_root, [TRACKED_DIR], backup_root) for _ in range(4)]
        seen: list[list[Backup]] = []

        def confirm(doomed: list[Backup]) -> bool:
            seen.append(doomed)
            return True

        deleted = prune_backups(backup_root, 2, confirm)

        assert [b.name for b in deleted] == [created[0].name, created[1].name]
        assert [b.name for b in seen[0]] == [created[0].name, created[1].name]
        assert [b.name for b in list_backups(backup_root)] == [created[3].name, created[2].name]

    def test_declined_prune_deletes_nothing(self, project_root: Path, backup_root: Path) -> None:
        for _ in range(3):
            create_backup(project_root, [TRACKED_DIR], backup_root)

        assert prune_backups(backup_root, 1, lambda doomed: False) == []
        assert len(list_backups(backup_root)) == 3

    def test_confirm_not_called_when_within_retention(
        self, project_root: Path, backup_root: Path
    ) -> None:
        create_backup(project_root, [TRACKED_DIR], backup_root)

        def confirm(doomed: list[Backup]) -> bool:
            raise AssertionError("should not be asked")

        assert prune_backups(backup_root, 1, confirm) == []

    def test_keep_must_be_positive(self, backup_root: Path) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            prune_backups(backup_root, 0, lambda doomed: True)


def test_stamp_roundtrip_is_sortable() -> None:
    earlier = parse_stamp("20260102T030405000001Z")
    later = parse_stamp("20260102T030405000002Z")
    assert earlier is not None
    assert later is not None
    assert earlier < later
    assert format_stamp(earlier) == "20260102T030405000001Z"
