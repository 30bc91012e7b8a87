"""Persistent workspace settings.

The store is a single JSON document:
`{version, activeWorkspaceId, workspaces: [...], syncStatus: {id: {...}}}`.
The `default-personal` workspace always exists and can never be deleted.
"""

import json
import logging
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_VERSION,
    DEFAULT_AUTH_TYPE,
    DEFAULT_WORKSPACE_ID,
    SETTINGS_FILE,
    SYNC_TYPES,
    WORKSPACES_DIR,
)
from .store import ENVIRONMENTS_FILE, read_json, write_json_atomic

logger = logging.getLogger(APP_NAME)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Workspace:
    """A named set of configuration, optionally backed by a Git repository.

    Attributes:
        id (str): Unique identifier.
        name (str): Display name.
        type (str): 'personal', 'git' or 'team'.
        git_url (str | None): Repository URL for Git-backed workspaces.
        git_branch (str | None): Branch to sync.
        git_path (str | None): Raw configuration path inside the repository.
        auth_type (str): 'none', 'token', 'ssh-key' or 'basic'.
        auth_data (dict): Credentials for the auth type.
        auto_sync (bool): Whether the scheduler syncs this workspace.
        description (str | None): Free-form description.
        is_default (bool): True only for the permanent personal workspace.
        created_at (str | None): ISO timestamp of creation.
        extra (dict): Unrecognized keys, preserved across round trips.
    """

    id: str
    name: str = ""
    type: str = "personal"
    git_url: str | None = None
    git_branch: str | None = None
    git_path: str | None = None
    auth_type: str = DEFAULT_AUTH_TYPE
    auth_data: dict = field(default_factory=dict)
    auto_sync: bool = True
    description: str | None = None
    is_default: bool = False
    created_at: str | None = None
    extra: dict = field(default_factory=dict)

    _KEYS = {
        "id": "id",
        "name": "name",
        "type": "type",
        "gitUrl": "git_url",
        "gitBranch": "git_branch",
        "gitPath": "git_path",
        "authType": "auth_type",
        "authData": "auth_data",
        "autoSync": "auto_sync",
        "description": "description",
        "isDefault": "is_default",
        "createdAt": "created_at",
    }

    @property
    def is_syncable(self) -> bool:
        """Git-backed with automatic sync enabled. Never true for the personal workspace."""
        return (
            self.id != DEFAULT_WORKSPACE_ID
            and self.type in SYNC_TYPES
            and self.auto_sync is not False
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Workspace":
        known = {attr: data[key] for key, attr in cls._KEYS.items() if key in data}
        extra = {k: v for k, v in data.items() if k not in cls._KEYS}
        if known.get("auth_data") is None:
            known.pop("auth_data", None)
        if known.get("auth_type") is None:
            known.pop("auth_type", None)
        return cls(**known, extra=extra)

    def to_dict(self) -> dict:
        data: dict[str, Any] = dict(self.extra)
        for key, attr in self._KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data


def _default_workspace() -> dict:
    return {
        "id": DEFAULT_WORKSPACE_ID,
        "name": "Personal Workspace",
        "type": "personal",
        "description": "Your default personal workspace",
        "isDefault": True,
        "createdAt": _now(),
    }


def default_settings() -> dict:
    """Returns a fresh settings document holding only the personal workspace."""
    return {
        "version": CONFIG_VERSION,
        "activeWorkspaceId": DEFAULT_WORKSPACE_ID,
        "workspaces": [_default_workspace()],
        "syncStatus": {},
    }


class WorkspaceSettings:
    """Reads and writes the workspace settings document.

    Attributes:
        settings_file (Path): The JSON settings store.
        workspaces_dir (Path): Root of the per-workspace data directories.
    """

    def __init__(
        self, settings_file: Path = SETTINGS_FILE, workspaces_dir: Path = WORKSPACES_DIR
    ):
        self.settings_file = settings_file
        self.workspaces_dir = workspaces_dir
        # Serializes read-modify-write cycles from timer and resume threads.
        self._lock = threading.RLock()

    def initialize(self) -> None:
        """Creates the default settings and personal workspace data if missing."""
        self.workspaces_dir.mkdir(parents=True, exist_ok=True)
        if not self.settings_file.exists():
            logger.info("Creating default workspace settings")
            write_json_atomic(self.settings_file, default_settings())
        self._ensure_workspace_dir(DEFAULT_WORKSPACE_ID)

    def _ensure_workspace_dir(self, workspace_id: str) -> None:
        workspace_path = self.workspaces_dir / workspace_id
        workspace_path.mkdir(parents=True, exist_ok=True)
        env_file = workspace_path / ENVIRONMENTS_FILE
        if not env_file.exists():
            write_json_atomic(
                env_file, {"environments": {"Default": {}}, "activeEnvironment": "Default"}
            )

    # --- Document access ---

    def get_settings(self) -> dict:
        """Loads the settings document.

        Returns:
            dict: The stored settings, or fresh defaults if the file is missing
            or corrupt.
        """
        try:
            settings = read_json(self.settings_file)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read workspace settings: {e}")
            return default_settings()
        if not isinstance(settings, dict):
            return default_settings()
        settings.setdefault("workspaces", [])
        settings.setdefault("syncStatus", {})
        return settings

    def save_settings(self, settings: dict) -> None:
        """Writes the settings document, restoring the personal workspace if absent.

        Raises:
            OSError: If the file could not be written.
        """
        workspaces = settings.setdefault("workspaces", [])
        if not any(w.get("id") == DEFAULT_WORKSPACE_ID for w in workspaces):
            workspaces.insert(0, _default_workspace())
        write_json_atomic(self.settings_file, settings)

    # --- Workspaces ---

    def get_workspaces(self) -> list[Workspace]:
        return [Workspace.from_dict(w) for w in self.get_settings()["workspaces"]]

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return next((w for w in self.get_workspaces() if w.id == workspace_id), None)

    def get_active_workspace_id(self) -> str:
        return self.get_settings().get("activeWorkspaceId") or DEFAULT_WORKSPACE_ID

    def add_workspace(self, workspace: Workspace) -> Workspace:
        """Registers a new workspace and creates its data directory.

        Raises:
            ValueError: If a workspace with the same id already exists.
        """
        with self._lock:
            settings = self.get_settings()
            if any(w.get("id") == workspace.id for w in settings["workspaces"]):
                raise ValueError(f"Workspace with ID {workspace.id} already exists")

            workspace.created_at = workspace.created_at or _now()
            settings["workspaces"].append(workspace.to_dict())
            self._ensure_workspace_dir(workspace.id)
            self.save_settings(settings)
        logger.info(f"WORKSPACE: Added '{workspace.id}' ({workspace.type}).")
        return workspace

    def update_workspace(self, workspace_id: str, updates: dict) -> Workspace:
        """Merges camelCase `updates` into a stored workspace.

        Raises:
            KeyError: If the workspace does not exist.
            ValueError: If asked to change the type of the personal workspace.
        """
        if (
            workspace_id == DEFAULT_WORKSPACE_ID
            and "type" in updates
            and updates["type"] != "personal"
        ):
            raise ValueError("Cannot change the type of the default personal workspace")

        with self._lock:
            settings = self.get_settings()
            for index, stored in enumerate(settings["workspaces"]):
                if stored.get("id") == workspace_id:
                    merged = {**stored, **updates, "id": workspace_id, "updatedAt": _now()}
                    settings["workspaces"][index] = merged
                    self.save_settings(settings)
                    return Workspace.from_dict(merged)
        raise KeyError(f"Workspace {workspace_id} not found")

    def delete_workspace(self, workspace_id: str) -> None:
        """Removes a workspace, its sync status and its data directory.

        Raises:
            ValueError: If asked to delete the personal workspace.
        """
        if workspace_id == DEFAULT_WORKSPACE_ID:
            raise ValueError("Cannot delete the default personal workspace")

        with self._lock:
            settings = self.get_settings()
            settings["workspaces"] = [
                w for w in settings["workspaces"] if w.get("id") != workspace_id
            ]
            settings["syncStatus"].pop(workspace_id, None)
            if settings.get("activeWorkspaceId") == workspace_id:
                settings["activeWorkspaceId"] = DEFAULT_WORKSPACE_ID
            self.save_settings(settings)

        workspace_path = self.workspaces_dir / workspace_id
        if workspace_path.exists():
            shutil.rmtree(workspace_path, ignore_errors=True)
        logger.info(f"WORKSPACE: Deleted '{workspace_id}'.")

    def set_active_workspace(self, workspace_id: str) -> None:
        """Marks a workspace as active.

        Raises:
            KeyError: If the workspace does not exist.
        """
        with self._lock:
            settings = self.get_settings()
            if not any(w.get("id") == workspace_id for w in settings["workspaces"]):
                raise KeyError(f"Workspace {workspace_id} not found")
            settings["activeWorkspaceId"] = workspace_id
            self.save_settings(settings)

    # --- Sync status ---

    def get_sync_status(self, workspace_id: str) -> dict:
        return dict(self.get_settings()["syncStatus"].get(workspace_id) or {})

    def update_sync_status(self, workspace_id: str, status: dict) -> None:
        """Merges `status` into the stored sync status of a workspace."""
        with self._lock:
            settings = self.get_settings()
            current = settings["syncStatus"].get(workspace_id) or {}
            settings["syncStatus"][workspace_id] = {**current, **status}
            self.save_settings(settings)

    def load_workspaces_data(self, workspace_id: str) -> dict:
        """Reads the data files of a workspace into one dict.

        Missing or unreadable files are reported as None.
        """
        workspace_path = self.workspaces_dir / workspace_id
        data: dict[str, Any] = {}
        for key, name in (
            ("sources", "sources.json"),
            ("rules", "rules.json"),
            ("proxyRules", "proxy-rules.json"),
            ("environments", ENVIRONMENTS_FILE),
        ):
            try:
                data[key] = read_json(workspace_path / name)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not read {name} for {workspace_id}: {e}")
                data[key] = None
        return data
