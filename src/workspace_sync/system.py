import logging
import os
import shutil
import stat
import subprocess
import sys
import time
from pathlib import Path

from .constants import (
    APP_NAME,
    BUNDLED_GIT_DIR,
    COMMON_GIT_PATHS,
    WINDOWS_RETRY_COUNT,
    WINDOWS_RETRY_DELAY,
)

logger = logging.getLogger(APP_NAME)


class SystemStrategy:
    """Base class defining the interface for platform-level interactions."""

    name = sys.platform
    """str: The platform identifier reported in status output."""

    def which_command(self) -> list[str]:
        """Returns the argv used to look up `git` on PATH."""
        return ["which", "git"]

    def git_candidates(self) -> list[Path]:
        """Returns well-known Git install locations for this platform.

        Returns:
            list[Path]: Candidate paths, probed in order after PATH.
        """
        return [Path(p) for p in COMMON_GIT_PATHS if not p.startswith("C:")]

    def bundled_git(self) -> Path | None:
        """Returns the path of a bundled portable Git, if the platform ships one."""
        return None

    def remove_tree(self, path: Path) -> None:
        """Removes a directory tree.

        Args:
            path (Path): The directory to remove.

        Raises:
            OSError: If the tree could not be removed.
        """
        shutil.rmtree(path)


class MacOSStrategy(SystemStrategy):
    """System strategy implementation for macOS."""

    name = "darwin"


class LinuxStrategy(SystemStrategy):
    """System strategy implementation for Linux."""

    name = "linux"


class WindowsStrategy(SystemStrategy):
    """System strategy implementation for Windows.

    Git leaves read-only pack files behind and antivirus scanners hold brief
    locks, so tree removal resets attributes and retries.
    """

    name = "win32"

    def which_command(self) -> list[str]:
        return ["where", "git"]

    def git_candidates(self) -> list[Path]:
        return [Path(p) for p in COMMON_GIT_PATHS if p.startswith("C:")]

    def bundled_git(self) -> Path | None:
        return BUNDLED_GIT_DIR / "git" / "bin" / "git.exe"

    def remove_tree(self, path: Path) -> None:
        try:
            subprocess.run(
                ["attrib", "-r", f"{path}\\*.*", "/s"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"attrib reset failed for {path}: {e}")

        last_error: OSError | None = None
        for attempt in range(WINDOWS_RETRY_COUNT):
            try:
                shutil.rmtree(path, onexc=_clear_readonly)
                return
            except OSError as e:
                last_error = e
                if attempt < WINDOWS_RETRY_COUNT - 1:
                    time.sleep(WINDOWS_RETRY_DELAY)
        if last_error:
            raise last_error


def _clear_readonly(func, path, _exc) -> None:  # type: ignore[no-untyped-def]
    """rmtree error hook: drop the read-only bit and retry once."""
    os.chmod(path, stat.S_IWRITE)
    func(path)


def get_system() -> SystemStrategy:
    """Factory function to retrieve the platform-specific system strategy.

    Returns:
        SystemStrategy: An instance of MacOSStrategy, LinuxStrategy,
        WindowsStrategy, or the base SystemStrategy depending on the OS.
    """
    if sys.platform == "darwin":
        return MacOSStrategy()
    elif sys.platform.startswith("linux"):
        return LinuxStrategy()
    elif sys.platform == "win32":
        return WindowsStrategy()
    else:
        return SystemStrategy()
