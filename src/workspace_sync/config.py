import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CLEANUP_CHECK_INTERVAL,
    CLEANUP_MAX_AGE,
    CONFIG_FILE,
    CONNECTIVITY_PROBE_TIMEOUT,
    DEFAULT_BRANCH,
    DEFAULT_CONFIG_PATH,
    DEFAULT_SYNC_INTERVAL,
    GIT_CONNECTIVITY_CHECK_INTERVAL,
    LONG_TIMEOUT,
    MAX_BUFFER_SIZE,
    MAX_OFFLINE_DURATION,
    MEDIUM_TIMEOUT,
    SHORT_TIMEOUT,
)

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '10MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m', '7d') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr|d|day)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
        "d": 86400,
        "day": 86400,
    }
    return int(num * multiplier[unit])


_TIME_KEYS = {
    "interval",
    "short_timeout",
    "medium_timeout",
    "long_timeout",
    "offline_ceiling",
    "reachability_ttl",
    "probe_timeout",
    "max_age",
    "check_interval",
}
_SIZE_KEYS = {"max_log_size", "max_buffer"}


@dataclass
class SyncConfig:
    """Scheduling defaults.

    Attributes:
        interval (int): Seconds between automatic syncs of the active workspace.
        default_branch (str): Branch used when a workspace does not name one.
        default_path (str): Config path used when a workspace does not name one.
    """

    interval: int = DEFAULT_SYNC_INTERVAL
    default_branch: str = DEFAULT_BRANCH
    default_path: str = DEFAULT_CONFIG_PATH


@dataclass
class GitConfig:
    """Git executable and timeout tiers.

    Attributes:
        executable (str | None): Explicit path to git, bypassing discovery.
        short_timeout (int): Seconds for remote listing and dry-run pushes.
        medium_timeout (int): Seconds for fetches during pulls.
        long_timeout (int): Seconds for initial fetches and pushes.
    """

    executable: str | None = None
    short_timeout: int = SHORT_TIMEOUT
    medium_timeout: int = MEDIUM_TIMEOUT
    long_timeout: int = LONG_TIMEOUT


@dataclass
class NetworkConfig:
    """Offline handling.

    Attributes:
        offline_ceiling (int): Offline seconds before a direct probe is attempted.
        reachability_ttl (int): Seconds a probe result is reused.
        probe_timeout (int): Upper bound on a single probe.
    """

    offline_ceiling: int = MAX_OFFLINE_DURATION
    reachability_ttl: int = GIT_CONNECTIVITY_CHECK_INTERVAL
    probe_timeout: int = CONNECTIVITY_PROBE_TIMEOUT


@dataclass
class CleanupConfig:
    """Reclamation of cached working trees and key files.

    Attributes:
        max_age (int): Seconds before a cached repo or key is removed.
        check_interval (int): Seconds between the daemon's maintenance checks.
    """

    max_age: int = CLEANUP_MAX_AGE
    check_interval: int = CLEANUP_CHECK_INTERVAL


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
        max_buffer (int): Max bytes read from a single `git archive` payload.
    """

    max_log_size: int = 5 * 1024 * 1024
    max_buffer: int = MAX_BUFFER_SIZE


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        sync (SyncConfig): Scheduling defaults.
        git (GitConfig): Git executable and timeouts.
        network (NetworkConfig): Offline handling.
        cleanup (CleanupConfig): Cache reclamation.
        limits (LimitsConfig): Resource limits.
    """

    sync: SyncConfig = field(default_factory=SyncConfig)
    git: GitConfig = field(default_factory=GitConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the parsed global configuration
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults and the global TOML file.

        Args:
            path (Path | None): An explicit config file. Bypasses the cache.

        Returns:
            Config: The merged configuration object.
        """
        if path is not None:
            instance = cls()
            if path.exists():
                instance._merge_from_file(path)
            return instance

        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        return replace(cls._global_cache)

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            for section in ("sync", "git", "network", "cleanup", "limits"):
                if section in data:
                    current = getattr(self, section)
                    setattr(
                        self,
                        section,
                        self._update_dataclass(section, current, data[section]),
                    )

            unknown = set(data) - {"sync", "git", "network", "cleanup", "limits"}
            if unknown:
                logger.warning(
                    f"Unknown config sections in {path}: {', '.join(sorted(unknown))}."
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k in _SIZE_KEYS:
                    filtered_updates[k] = parse_size(v)
                elif k in _TIME_KEYS:
                    filtered_updates[k] = parse_time(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
