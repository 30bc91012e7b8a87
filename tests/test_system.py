"""Tests for platform-specific strategies."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from workspace_sync import system


@pytest.mark.parametrize(
    "platform, expected",
    [
        ("darwin", system.MacOSStrategy),
        ("linux", system.LinuxStrategy),
        ("win32", system.WindowsStrategy),
        ("freebsd13", system.SystemStrategy),
    ],
)
def test_get_system(mocker: MagicMock, platform: str, expected: type) -> None:
    mocker.patch("sys.platform", platform)

    assert type(system.get_system()) is expected


def test_windows_git_lookup() -> None:
    """Verifies Windows uses `where` and only probes drive-letter install paths."""
    strategy = system.WindowsStrategy()

    assert strategy.which_command() == ["where", "git"]
    assert all(str(p).startswith("C:") for p in strategy.git_candidates())
    assert strategy.bundled_git() == system.BUNDLED_GIT_DIR / "git" / "bin" / "git.exe"


def test_posix_git_lookup() -> None:
    strategy = system.LinuxStrategy()

    assert strategy.which_command() == ["which", "git"]
    assert Path("/usr/bin/git") in strategy.git_candidates()
    assert strategy.bundled_git() is None


def test_remove_tree(tmp_path: Path) -> None:
    tree = tmp_path / "repo"
    (tree / ".git" / "objects").mkdir(parents=True)
    (tree / "file.json").write_text("{}")

    system.SystemStrategy().remove_tree(tree)

    assert not tree.exists()


def test_windows_remove_tree_retries(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies transient locks are retried before the removal succeeds.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("workspace_sync.system.subprocess.run")
    mock_sleep = mocker.patch("workspace_sync.system.time.sleep")
    mock_rmtree = mocker.patch(
        "workspace_sync.system.shutil.rmtree",
        side_effect=[PermissionError("in use"), None],
    )

    system.WindowsStrategy().remove_tree(tmp_path / "repo")

    assert mock_rmtree.call_count == 2
    mock_sleep.assert_called_once_with(system.WINDOWS_RETRY_DELAY)


def test_windows_remove_tree_gives_up(tmp_path: Path, mocker: MagicMock) -> None:
    mocker.patch("workspace_sync.system.subprocess.run", side_effect=FileNotFoundError)
    mocker.patch("workspace_sync.system.time.sleep")
    mocker.patch(
        "workspace_sync.system.shutil.rmtree", side_effect=PermissionError("in use")
    )

    with pytest.raises(PermissionError, match="in use"):
        system.WindowsStrategy().remove_tree(tmp_path / "repo")
