"""Tests for reclamation of cached working trees and SSH key files."""

import os
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from workspace_sync.cleanup import cleanup_old_entries, run_maintenance
from workspace_sync.system import SystemStrategy

WEEK = 7 * 24 * 3600


@pytest.fixture
def cache(tmp_path: Path) -> tuple[Path, Path]:
    """Creates one fresh and one stale entry in both cache directories."""
    repo_dir = tmp_path / "repos"
    ssh_dir = tmp_path / "ssh-keys"
    stale = time.time() - WEEK - 60

    for name in ("fresh", "stale"):
        tree = repo_dir / name
        (tree / ".git").mkdir(parents=True)
        ssh_dir.mkdir(exist_ok=True)
        (ssh_dir / f"key_{name}").write_text("key")

    os.utime(repo_dir / "stale", (stale, stale))
    os.utime(ssh_dir / "key_stale", (stale, stale))
    return repo_dir, ssh_dir


def test_cleanup_removes_only_stale_entries(cache: tuple[Path, Path]) -> None:
    repo_dir, ssh_dir = cache

    report = cleanup_old_entries(repo_dir, ssh_dir, max_age=WEEK, system=SystemStrategy())

    assert report.repositories == ["stale"]
    assert report.ssh_keys == ["key_stale"]
    assert report.errors == []
    assert sorted(p.name for p in repo_dir.iterdir()) == ["fresh"]
    assert sorted(p.name for p in ssh_dir.iterdir()) == ["key_fresh"]


def test_cleanup_force_removes_everything(cache: tuple[Path, Path]) -> None:
    repo_dir, ssh_dir = cache

    report = cleanup_old_entries(
        repo_dir, ssh_dir, max_age=WEEK, force=True, system=SystemStrategy()
    )

    assert sorted(report.repositories) == ["fresh", "stale"]
    assert sorted(report.ssh_keys) == ["key_fresh", "key_stale"]
    assert list(repo_dir.iterdir()) == []


def test_cleanup_collects_errors(cache: tuple[Path, Path], mocker: MagicMock) -> None:
    """Verifies a failed removal is reported and the pass continues.

    Args:
        cache (tuple[Path, Path]): The populated cache directories.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    repo_dir, ssh_dir = cache
    system = mocker.MagicMock(spec=SystemStrategy)
    system.remove_tree.side_effect = PermissionError("locked")

    report = cleanup_old_entries(repo_dir, ssh_dir, max_age=WEEK, force=True, system=system)

    assert report.repositories == []
    assert len(report.errors) == 2
    assert "locked" in report.errors[0]
    assert sorted(report.ssh_keys) == ["key_fresh", "key_stale"]


def test_cleanup_missing_directories(tmp_path: Path) -> None:
    report = cleanup_old_entries(tmp_path / "none", tmp_path / "nada", system=SystemStrategy())

    assert report.repositories == [] and report.ssh_keys == []


def test_run_maintenance_respects_interval(tmp_path: Path, mocker: MagicMock) -> None:
    mock_cleanup = mocker.patch("workspace_sync.cleanup.cleanup_old_entries")
    state_file = tmp_path / "state" / "last-cleanup"

    first = run_maintenance(state_file, interval=WEEK, force=True)
    second = run_maintenance(state_file, interval=WEEK)

    assert first is mock_cleanup.return_value
    assert second is None
    mock_cleanup.assert_called_once_with(force=True)
    assert state_file.exists()


def test_run_maintenance_runs_when_due(tmp_path: Path, mocker: MagicMock) -> None:
    mock_cleanup = mocker.patch("workspace_sync.cleanup.cleanup_old_entries")
    state_file = tmp_path / "last-cleanup"
    state_file.touch()
    old = time.time() - WEEK - 1
    os.utime(state_file, (old, old))

    run_maintenance(state_file, interval=WEEK)

    mock_cleanup.assert_called_once()
    assert time.time() - state_file.stat().st_mtime < 60
