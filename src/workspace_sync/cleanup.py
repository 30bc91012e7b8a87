import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from .constants import (
    APP_NAME,
    CLEANUP_MAX_AGE,
    CLEANUP_STATE_FILE,
    REPO_CACHE_DIR,
    SSH_KEY_DIR,
)
from .system import SystemStrategy, get_system

logger = logging.getLogger(APP_NAME)


@dataclass
class CleanupReport:
    """What a cleanup pass removed.

    Attributes:
        repositories (list[str]): Names of removed working trees.
        ssh_keys (list[str]): Names of removed key files.
        errors (list[str]): Per-entry failures; they never abort the pass.
    """

    repositories: list[str] = field(default_factory=list)
    ssh_keys: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def cleanup_old_entries(
    repo_dir: Path = REPO_CACHE_DIR,
    ssh_dir: Path = SSH_KEY_DIR,
    max_age: float = CLEANUP_MAX_AGE,
    force: bool = False,
    system: SystemStrategy | None = None,
) -> CleanupReport:
    """Removes cached working trees and SSH key files that have gone stale.

    Working trees are aged by modification time and keys by access time, so
    a key that is still used for syncing is never reclaimed.

    Args:
        repo_dir (Path): Root of the cached working trees.
        ssh_dir (Path): Directory holding generated key files.
        max_age (float): Age in seconds after which an entry is removed.
        force (bool): Remove everything regardless of age.
        system (SystemStrategy | None): Platform strategy used for tree removal.

    Returns:
        CleanupReport: The removed entries and any failures.
    """
    system = system or get_system()
    report = CleanupReport()
    now = time.time()

    if repo_dir.is_dir():
        for entry in repo_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                if force or now - entry.stat().st_mtime > max_age:
                    system.remove_tree(entry)
                    report.repositories.append(entry.name)
            except OSError as e:
                logger.error(f"CLEANUP ERROR {entry.name}: {e}")
                report.errors.append(f"{entry.name}: {e}")

    if ssh_dir.is_dir():
        for entry in ssh_dir.iterdir():
            if not entry.is_file():
                continue
            try:
                if force or now - entry.stat().st_atime > max_age:
                    entry.unlink()
                    report.ssh_keys.append(entry.name)
            except OSError as e:
                logger.error(f"CLEANUP ERROR {entry.name}: {e}")
                report.errors.append(f"{entry.name}: {e}")

    if report.repositories or report.ssh_keys:
        logger.info(
            f"CLEANUP: Removed {len(report.repositories)} repositories and "
            f"{len(report.ssh_keys)} SSH keys."
        )
    return report


def run_maintenance(
    state_file: Path = CLEANUP_STATE_FILE,
    interval: float = CLEANUP_MAX_AGE,
    **kwargs,
) -> CleanupReport | None:
    """Runs `cleanup_old_entries` if the last pass is older than `interval`.

    Args:
        state_file (Path): Marker whose mtime records the last pass.
        interval (float): Seconds between passes.
        **kwargs: Forwarded to `cleanup_old_entries`.

    Returns:
        CleanupReport | None: The report, or None if no pass was due.
    """
    if state_file.exists():
        age = time.time() - state_file.stat().st_mtime
        if age < interval:
            return None

    logger.info("MAINTENANCE: Running weekly cleanup...")
    report = cleanup_old_entries(**kwargs)

    try:
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.touch()
    except OSError as e:
        logger.error(f"MAINTENANCE ERROR: Could not update state file: {e}")
    return report
