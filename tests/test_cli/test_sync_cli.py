"""Tests for the kitsync command line."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from cli.sync_cli import build_parser, main
from kitsync.filesystem.toml_manager import PROJECT_CONFIG_FILE, parse_project_config
from tests.helpers import read_tree, write_tree

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


@pytest.fixture
def cli(project_root: Path, releases_dir: Path) -> Callable[..., None]:
    """Run the CLI against the test project and releases."""

    def _run(*args: str) -> None:
        main(["--dir", str(project_root), "--releases", str(releases_dir), *args])

    return _run


@pytest.fixture
def initialized(cli: Callable[..., None], make_release: Callable[..., None]) -> None:
    make_release("1.0.0", {"templates/a.md": "a v1\n", "templates/b.md": "b v1\n"})
    make_release("1.1.0", {"templates/a.md": "a v2\n", "templates/c.md": "c v2\n"})
    cli("init", "--tracked-dir", "templates", "--name", "kit")


class TestInit:
    def test_writes_project_config(
        self, cli: Callable[..., None], project_root: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        cli("init", "--tracked-dir", "templates", "--tracked-dir", ".github/prompts")

        config = parse_project_config(project_root)
        assert config.name == "project"
        assert config.tracked_dirs == ["templates", ".github/prompts"]
        assert PROJECT_CONFIG_FILE in capsys.readouterr().out

    def test_requires_tracked_dir(self, cli: Callable[..., None]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli("init")
        assert exc_info.value.code == 1

    def test_invalid_tracked_dir(
        self, cli: Callable[..., None], capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli("init", "--tracked-dir", "../escape")

        assert exc_info.value.code == 1
        assert "Error:" in capsys.readouterr().out


class TestUpdate:
    def test_status_writes_nothing(
        self,
        cli: Callable[..., None],
        initialized: None,
        project_root: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        cli("status", "--version", "1.0.0")

        out = capsys.readouterr().out
        assert "Update plan: 1.0.0 -> 1.0.0" in out
        assert "+ templates/a.md (add)" in out
        assert not (project_root / ".kitsync").exists()

    def test_status_lists_release_files_outside_tracked_dirs(
        self,
        cli: Callable[..., None],
        make_release: Callable[..., None],
        project_root: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        make_release("1.0.0", {"templates/a.md": "a v1\n", "LICENSE": "MIT\n"})
        cli("init", "--tracked-dir", "templates")
        capsys.readouterr()

        cli("update", "--version", "1.0.0", "--yes")

        out = capsys.readouterr().out
        assert "Ignored (outside tracked directories): 1" in out
        assert "? LICENSE" in out
        assert not (project_root / "LICENSE").exists()
        assert read_tree(project_root) == {"templates/a.md": b"a v1\n"}

    def test_update_with_yes(
        self,
        cli: Callable[..., None],
        initialized: None,
        project_root: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        cli("update", "--version", "1.0.0", "--yes")

        assert read_tree(project_root) == {
            "templates/a.md": b"a v1\n",
            "templates/b.md": b"b v1\n",
        }
        assert "Updated to 1.0.0. 2 file(s) changed, 0 conflict(s)." in capsys.readouterr().out

    def test_declined_first_update_leaves_no_trace(
        self,
        cli: Callable[..., None],
        initialized: None,
        project_root: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setattr("builtins.input", lambda prompt: "n")

        cli("update")

        assert "Update cancelled" in capsys.readouterr().out
        assert not (project_root / ".kitsync").exists()
        assert read_tree(project_root) == {}

    def test_already_up_to_date(
        self,
        cli: Callable[..., None],
        initialized: None,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        cli("update", "--yes")
        capsys.readouterr()

        cli("update", "--yes")

        assert "Already up to date." in capsys.readouterr().out

    def test_conflicts_are_reported(
        self,
        cli: Callable[..., None],
        initialized: None,
        project_root: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        cli("update", "--version", "1.0.0", "--yes")
        write_tree(project_root, {"templates/a.md": "my a\n"})
        capsys.readouterr()

        cli("update", "--yes", "--no-backup")

        out = capsys.readouterr().out
        assert "CONFLICT: templates/a.md" in out
        assert "Backup:" not in out

    def test_failed_rollback_exits_with_2(
        self,
        cli: Callable[..., None],
        initialized: None,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        with (
            patch("kitsync.services.apply_service._write_file", side_effect=OSError("disk full")),
            patch(
                "kitsync.services.apply_service.restore_backup",
                side_effect=OSError("backup unreadable"),
            ),
            pytest.raises(SystemExit) as exc_info,
        ):
            cli("update", "--yes")

        assert exc_info.value.code == 2
        assert "restore it manually" in capsys.readouterr().out

    def test_rolled_back_failure_exits_with_1(
        self,
        cli: Callable[..., None],
        initialized: None,
        project_root: Path,
    ) -> None:
        with (
            patch("kitsync.services.apply_service._write_file", side_effect=OSError("disk full")),
            pytest.raises(SystemExit) as exc_info,
        ):
            cli("update", "--yes")

        assert exc_info.value.code == 1
        assert read_tree(project_root) == {}

    def test_not_initialized(
        self,
        cli: Callable[..., None],
        make_release: Callable[..., None],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        make_release("1.0.0", {"templates/a.md": "a"})

        with pytest.raises(SystemExit) as exc_info:
            cli("update", "--yes")

        assert exc_info.value.code == 1
        assert "kitsync init" in capsys.readouterr().out

    def test_no_releases_configured(
        self, project_root: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--dir", str(project_root), "status"])

        assert exc_info.value.code == 1
        assert "No releases directory configured" in capsys.readouterr().out


class TestBackupCommands:
    def test_backups_rollback_and_prune(
        self,
        cli: Callable[..., None],
        initialized: None,
        project_root: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        cli("update", "--version", "1.0.0", "--yes")
        tree_v1 = read_tree(project_root)
        cli("update", "--yes")
        capsys.readouterr()

        cli("backups")
        lines = [line.split() for line in capsys.readouterr().out.splitlines()]
        assert [line[1:] for line in lines] == [["1.0.0", "->", "1.1.0"], ["1.0.0", "->", "1.0.0"]]

        cli("rollback", lines[0][0], "--yes")
        assert read_tree(project_root) == tree_v1

        cli("prune", "--keep", "1", "--yes")
        assert "Deleted 1 backup(s)." in capsys.readouterr().out

    def test_declined_rollback(
        self,
        cli: Callable[..., None],
        initialized: None,
        project_root: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        cli("update", "--yes")
        tree = read_tree(project_root)
        capsys.readouterr()
        cli("backups")
        name = capsys.readouterr().out.split()[0]
        monkeypatch.setattr("builtins.input", lambda prompt: "")

        cli("rollback", name)

        assert "Rollback cancelled." in capsys.readouterr().out
        assert read_tree(project_root) == tree

    def test_unknown_backup(
        self, cli: Callable[..., None], initialized: None, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli("rollback", "20200101T000000000000Z", "--yes")

        assert exc_info.value.code == 1
        assert "No backup named" in capsys.readouterr().out


def test_rescan(
    cli: Callable[..., None],
    initialized: None,
    project_root: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    cli("update", "--version", "1.0.0", "--yes")
    write_tree(project_root, {"templates/b.md": "my b\n"})
    capsys.readouterr()

    cli("rescan", "--yes")

    assert "Rescanned 2 file(s); 1 differ from release 1.0.0." in capsys.readouterr().out


def test_parser_requires_backup_name_for_rollback() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["rollback"])
