import os
from pathlib import Path

"""Global constants and filesystem layout for workspace-sync.

This module defines where state, logs, cached repositories and SSH keys live
(adhering to XDG standards where applicable), plus the timeouts, defaults and
notification channel names shared by the sync engine.
"""

# --- Identity ---
APP_NAME = "workspace-sync"
"""str: The human-readable application name."""

DEFAULT_WORKSPACE_ID = "default-personal"
"""str: The permanent personal workspace. Never deleted, never synced."""

CONFIG_VERSION = "3.0.0"
"""str: Version tag written into settings and rule storage files."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "workspace-sync"
"""Path: The directory for runtime state data (logs, cached repos, settings)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

REPO_CACHE_DIR = STATE_DIR / "repos"
"""Path: Disposable and cached sparse working trees, keyed by URL hash."""

SSH_KEY_DIR = STATE_DIR / "ssh-keys"
"""Path: Key material written for `ssh-key` authentication (mode 0600)."""

SETTINGS_FILE = STATE_DIR / "workspaces.json"
"""Path: The workspace settings store."""

WORKSPACES_DIR = STATE_DIR / "workspaces"
"""Path: Root of the per-workspace data files."""

CLEANUP_STATE_FILE = STATE_DIR / "last_cleanup"
"""Path: Timestamp marker for the periodic cleanup pass."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/workspace-sync"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- Git Discovery ---
COMMON_GIT_PATHS = [
    "/usr/bin/git",
    "/usr/local/bin/git",
    "/opt/homebrew/bin/git",  # Apple Silicon
    "/opt/local/bin/git",  # MacPorts
    "C:\\Program Files\\Git\\cmd\\git.exe",
    "C:\\Program Files (x86)\\Git\\cmd\\git.exe",
]
"""list[str]: Well-known install locations probed after PATH."""

BUNDLED_GIT_DIR = Path(
    os.environ.get("WORKSPACE_SYNC_BUNDLED_GIT", Path(__file__).parent / "resources")
)
"""Path: Root of a bundled portable Git, used as the last resort."""

GIT_BASE_ARGS = [
    "-c",
    "credential.helper=",
    "-c",
    "core.askpass=",
    "-c",
    "credential.interactive=false",
]
"""list[str]: Global options that stop Git from ever prompting for credentials."""

DEFAULT_SSH_COMMAND = "ssh -o BatchMode=yes -o StrictHostKeyChecking=no"
"""str: GIT_SSH_COMMAND used when no key-based auth is configured."""

# --- Timeouts (seconds) ---
SHORT_TIMEOUT = 15
"""int: Remote listing, archive and dry-run push."""

MEDIUM_TIMEOUT = 30
"""int: Fetch during pull and branch creation."""

LONG_TIMEOUT = 60
"""int: Initial fetch and commit push."""

MAX_BUFFER_SIZE = 10 * 1024 * 1024
"""int: Upper bound on archive payloads read into memory."""

MAX_BUNDLE_ITEMS = 10000
"""int: Upper bound on sources or proxy rules accepted from one bundle."""

# --- Defaults ---
DEFAULT_BRANCH = "main"
DEFAULT_CONFIG_PATH = "config/open-headers.json"
DEFAULT_AUTH_TYPE = "none"
SYNC_TYPES = ("git", "team")
"""tuple[str, ...]: Workspace types eligible for Git sync."""

WRITE_TEST_FILE = ".open-headers-write-test"
"""str: Scratch file committed during the dry-run push probe."""

# --- Scheduler ---
DEFAULT_SYNC_INTERVAL = 60 * 60
SHUTDOWN_TIMEOUT = 30.0
SHUTDOWN_POLL_INTERVAL = 0.5
MAX_OFFLINE_DURATION = 30 * 60
"""int: Offline seconds after which a direct reachability probe is attempted."""

GIT_CONNECTIVITY_CHECK_INTERVAL = 5 * 60
"""int: Seconds a cached reachability result stays valid."""

CONNECTIVITY_PROBE_TIMEOUT = 15
"""int: Upper bound on the direct reachability probe."""

# --- Cleanup ---
CLEANUP_MAX_AGE = 7 * 86400
CLEANUP_CHECK_INTERVAL = 86400
WINDOWS_RETRY_COUNT = 3
WINDOWS_RETRY_DELAY = 0.5

# --- Notification Channels ---
EVENT_DATA_UPDATED = "workspace-data-updated"
EVENT_SYNC_COMPLETED = "workspace-sync-completed"
EVENT_SYNC_STATUS = "workspace-sync-status"
EVENT_ENVIRONMENTS_CHANGED = "environments-structure-changed"
