"""Periodic, network-aware sync of the active workspace.

A `SyncScheduler` keeps at most one repeating timer per workspace and only
for a workspace that is active, Git-backed and has `autoSync` enabled. Each
tick fetches the remote bundle through the orchestrator, detects whether
anything remotely meaningful changed, merges the bundle into local storage
and reports the outcome through the broadcaster.
"""

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .config import Config
from .constants import (
    APP_NAME,
    DEFAULT_AUTH_TYPE,
    DEFAULT_WORKSPACE_ID,
    EVENT_DATA_UPDATED,
    EVENT_ENVIRONMENTS_CHANGED,
    EVENT_SYNC_COMPLETED,
    EVENT_SYNC_STATUS,
    SHUTDOWN_POLL_INTERVAL,
    SHUTDOWN_TIMEOUT,
    SYNC_TYPES,
)
from .network import NetworkMonitor, NetworkState
from .orchestrator import SyncOrchestrator
from .settings import Workspace, WorkspaceSettings
from .store import LocalWorkspaceStore

logger = logging.getLogger(APP_NAME)

Broadcaster = Callable[[str, dict], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _log_broadcast(channel: str, data: dict) -> None:
    logger.debug(f"EVENT {channel}: {data}")


class RepeatingTimer(threading.Thread):
    """Calls `function` every `interval` seconds on a daemon thread.

    Waiting happens on an Event, so `cancel()` takes effect immediately.

    Attributes:
        interval (float): Seconds between calls.
        function (Callable[[], Any]): The callable to run.
        run_immediately (bool): Call once before the first wait.
    """

    def __init__(
        self,
        interval: float,
        function: Callable[[], Any],
        run_immediately: bool = False,
        name: str | None = None,
    ):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.function = function
        self.run_immediately = run_immediately
        self.finished = threading.Event()

    def cancel(self) -> None:
        self.finished.set()

    def run(self) -> None:
        if self.run_immediately and not self.finished.is_set():
            self._call()
        while not self.finished.wait(self.interval):
            self._call()

    def _call(self) -> None:
        try:
            self.function()
        except Exception:
            logger.exception(f"TIMER ERROR {self.name}")


class SyncScheduler:
    """Owns per-workspace timers, in-flight flags and the offline policy.

    Attributes:
        orchestrator (SyncOrchestrator): Performs the Git side of a sync.
        settings (WorkspaceSettings): Workspace definitions and sync status.
        network (NetworkMonitor): Source of online/offline transitions.
        store (LocalWorkspaceStore): Local data files.
        broadcaster (Broadcaster): Receives `(channel, payload)` notifications.
        config (Config): Interval, offline ceiling and probe settings.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        settings: WorkspaceSettings,
        network: NetworkMonitor,
        store: LocalWorkspaceStore,
        broadcaster: Broadcaster | None = None,
        config: Config | None = None,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self.network = network
        self.store = store
        self.broadcaster = broadcaster or _log_broadcast
        self.config = config or Config.load()

        self.sync_interval = self.config.sync.interval
        self.shutdown_timeout = SHUTDOWN_TIMEOUT
        self.shutdown_poll_interval = SHUTDOWN_POLL_INTERVAL

        self.sync_timers: dict[str, RepeatingTimer] = {}
        self.sync_in_progress: dict[str, bool] = {}
        self.last_sync_time: dict[str, int] = {}

        self.active_workspace_id: str | None = None
        self.active_workspace: Workspace | None = None

        self.network_offline_time: float | None = None
        self.git_connectivity_cache: dict[str, bool] = {}
        self.last_git_connectivity_check: dict[str, float] = {}

        self._lock = threading.Lock()
        self._unsubscribe: Callable[[], None] | None = None

    # --- Lifecycle ---

    def initialize(self) -> None:
        """Subscribes to network state transitions."""
        self._unsubscribe = self.network.subscribe(self._on_network_change)
        logger.info("Sync scheduler initialized")

    def _on_network_change(self, old: NetworkState, new: NetworkState) -> None:
        if old.is_online and not new.is_online:
            logger.info("OFFLINE: Network went offline, recording offline time")
            self.network_offline_time = time.time()
        elif new.is_online and not old.is_online:
            logger.info("Network restored, resuming sync schedules")
            self.network_offline_time = None
            self.resume_all_syncs()

    def shutdown(self) -> None:
        """Stops every timer and waits, bounded, for in-flight syncs to finish."""
        logger.info("Shutting down sync scheduler")
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        with self._lock:
            timers = list(self.sync_timers.values())
            self.sync_timers.clear()
        for timer in timers:
            timer.cancel()

        pending = [w for w, busy in self.sync_in_progress.items() if busy]
        if pending:
            logger.info(f"Waiting for {len(pending)} syncs to complete...")
            deadline = time.monotonic() + self.shutdown_timeout
            while time.monotonic() < deadline:
                if not any(self.sync_in_progress.get(w) for w in pending):
                    break
                time.sleep(self.shutdown_poll_interval)
            else:
                logger.warning("Shutdown timed out with syncs still in progress")

        logger.info("Sync scheduler shutdown complete")

    # --- Workspace events ---

    def on_workspace_switch(self, workspace_id: str) -> None:
        """Moves scheduling to a newly active workspace."""
        logger.info(f"Workspace switched to: {workspace_id}")
        if self.active_workspace_id:
            self.stop_sync(self.active_workspace_id)

        workspace = self.settings.get_workspace(workspace_id)
        if workspace is None:
            logger.warning(f"Workspace {workspace_id} not found")
            return

        self.active_workspace_id = workspace_id
        self.active_workspace = workspace
        if workspace.is_syncable:
            self.start_sync(workspace_id, workspace)
        else:
            logger.info(
                f"Workspace {workspace_id} is not a Git workspace or has autoSync disabled"
            )

    def on_workspace_updated(self, workspace_id: str, workspace: Workspace) -> None:
        """Persists an updated workspace and reschedules it if it is active."""
        logger.info(f"Workspace {workspace_id} updated, autoSync: {workspace.auto_sync}")
        try:
            self.settings.update_workspace(workspace_id, workspace.to_dict())
        except (KeyError, ValueError, OSError) as e:
            logger.error(f"Failed to update workspace in settings: {e}")

        if self.active_workspace_id != workspace_id:
            return

        self.stop_sync(workspace_id)
        self.active_workspace = workspace
        if workspace.is_syncable:
            logger.info(f"Restarting auto-sync for workspace {workspace_id}")
            self.start_sync(workspace_id, workspace)
        else:
            logger.info(f"Auto-sync disabled for workspace {workspace_id}")

    # --- Timers ---

    def start_sync(self, workspace_id: str, workspace: Workspace) -> None:
        """Performs an immediate sync and schedules periodic ones.

        Nothing is scheduled while the network is offline; scheduling resumes
        when it comes back.
        """
        if workspace_id == DEFAULT_WORKSPACE_ID:
            logger.warning("The personal workspace is never auto-synced")
            return

        with self._lock:
            if workspace_id in self.sync_timers:
                logger.debug(f"Sync already scheduled for workspace {workspace_id}")
                return
            if not self.network.get_state().is_online:
                logger.info(
                    f"OFFLINE: Deferring sync schedule for workspace {workspace_id}"
                )
                return

            logger.info(f"Starting auto-sync for workspace {workspace_id} ({workspace.name})")
            timer = RepeatingTimer(
                self.sync_interval,
                lambda: self.perform_sync(workspace_id, workspace),
                run_immediately=True,
                name=f"sync-{workspace_id}",
            )
            self.sync_timers[workspace_id] = timer
        timer.start()

    def stop_sync(self, workspace_id: str) -> None:
        with self._lock:
            timer = self.sync_timers.pop(workspace_id, None)
        if timer:
            timer.cancel()
            logger.info(f"Stopped auto-sync for workspace {workspace_id}")

    # --- Sync ---

    def _claim(self, workspace_id: str) -> bool:
        with self._lock:
            if self.sync_in_progress.get(workspace_id):
                return False
            self.sync_in_progress[workspace_id] = True
            return True

    def _release(self, workspace_id: str) -> None:
        with self._lock:
            self.sync_in_progress[workspace_id] = False

    def _offline_skip_reason(self, workspace_id: str, workspace: Workspace) -> str | None:
        """Applies the offline policy.

        Returns:
            str | None: Why the sync should be skipped, or None to proceed.
        """
        if self.network.get_state().is_online:
            return None
        if self.network_offline_time is None:
            return "Network is offline"

        offline_for = time.time() - self.network_offline_time
        if offline_for <= self.config.network.offline_ceiling:
            logger.debug(f"Network offline for {round(offline_for)}s, waiting before retry")
            return "Network is offline"

        logger.info(
            f"OFFLINE: Network offline for {round(offline_for / 60)}min, "
            "attempting Git connectivity check"
        )
        if self.check_git_connectivity(workspace_id, workspace):
            logger.info("Git server is reachable despite network offline state, forcing sync")
            return None
        return "Git server not reachable"

    def perform_sync(self, workspace_id: str, workspace: Workspace) -> dict:
        """Runs one sync of `workspace`.

        Failures never propagate: they are broadcast and recorded in the
        workspace's sync status.

        Args:
            workspace_id (str): The workspace id.
            workspace (Workspace): Its definition.

        Returns:
            dict: `{success, skipped?, error?, has_changes?}`.
        """
        if self.sync_in_progress.get(workspace_id):
            logger.debug(f"Sync already in progress for workspace {workspace_id}, skipping")
            return {"success": False, "skipped": "Sync already in progress"}

        if reason := self._offline_skip_reason(workspace_id, workspace):
            logger.debug(f"SKIPPED {workspace_id}: {reason}")
            return {"success": False, "skipped": reason}

        if not self.orchestrator.get_git_status()["is_installed"]:
            logger.warning("Git is not installed, skipping sync")
            return {"success": False, "skipped": "Git is not installed"}

        if not self._claim(workspace_id):
            return {"success": False, "skipped": "Sync already in progress"}

        logger.info(f"SYNC: Starting sync for workspace {workspace_id} ({workspace.name})")
        try:
            return self._sync(workspace_id, workspace)
        except Exception as e:
            logger.exception(f"Failed to sync workspace {workspace_id}")
            self._handle_sync_error(workspace_id, str(e))
            return {"success": False, "error": str(e)}
        finally:
            self._release(workspace_id)

    def _sync(self, workspace_id: str, workspace: Workspace) -> dict:
        started = time.monotonic()
        result = self.orchestrator.sync_workspace(
            workspace.git_url or "",
            branch=workspace.git_branch or self.config.sync.default_branch,
            path=workspace.git_path or self.config.sync.default_path,
            auth_type=workspace.auth_type or DEFAULT_AUTH_TYPE,
            auth_data=workspace.auth_data or {},
        )
        if not result.success:
            error = result.error or "Sync failed"
            self._handle_sync_error(workspace_id, error)
            return {"success": False, "error": error}

        had_previous_sync = workspace_id in self.last_sync_time
        self.last_sync_time[workspace_id] = _now_ms()
        logger.info(
            f"SUCCESS {workspace_id}: Synced in {int((time.monotonic() - started) * 1000)}ms"
        )

        has_changes = False
        if result.data:
            has_changes = self.store.has_changes(workspace_id, result.data)
            report = self.store.import_bundle(workspace_id, result.data)
            if report.environments_written:
                self.broadcaster(
                    EVENT_ENVIRONMENTS_CHANGED,
                    {"workspaceId": workspace_id, "timestamp": _now_ms()},
                )
            if has_changes:
                self.broadcaster(
                    EVENT_DATA_UPDATED,
                    {"workspaceId": workspace_id, "timestamp": _now_ms(), "hasChanges": True},
                )
            else:
                logger.info(f"No changes detected for workspace {workspace_id}")
                self.broadcaster(
                    EVENT_SYNC_STATUS,
                    {"workspaceId": workspace_id, "syncing": False, "hasChanges": False},
                )
        else:
            logger.warning(f"Sync succeeded but no data was returned for workspace {workspace_id}")

        commit_info = vars(result.commit_info) if result.commit_info else None
        self.broadcaster(
            EVENT_SYNC_COMPLETED,
            {
                "workspaceId": workspace_id,
                "success": True,
                "timestamp": _now_ms(),
                "commitInfo": commit_info,
                "hasChanges": has_changes,
            },
        )

        if has_changes or not had_previous_sync:
            self._update_sync_status(
                workspace_id,
                {
                    "syncing": False,
                    "lastSync": datetime.now(timezone.utc).isoformat(),
                    "error": None,
                    "lastCommit": result.commit_hash,
                    "commitInfo": commit_info,
                },
            )
        else:
            self._update_sync_status(workspace_id, {"syncing": False, "error": None})

        return {"success": True, "has_changes": has_changes}

    def _handle_sync_error(self, workspace_id: str, error: str) -> None:
        logger.error(f"ERROR {workspace_id}: Failed to sync: {error}")
        self.broadcaster(
            EVENT_SYNC_COMPLETED,
            {
                "workspaceId": workspace_id,
                "success": False,
                "error": error,
                "timestamp": _now_ms(),
            },
        )
        self._update_sync_status(workspace_id, {"syncing": False, "error": error})

    def _update_sync_status(self, workspace_id: str, status: dict) -> None:
        try:
            self.settings.update_sync_status(workspace_id, status)
        except OSError as e:
            logger.error(f"Failed to update sync status: {e}")

    def check_git_connectivity(self, workspace_id: str, workspace: Workspace) -> bool:
        """Probes the workspace's repository directly, with a cached result.

        The probe is a connection test bounded by `network.probe_timeout`;
        its outcome, including failure, is reused for `network.reachability_ttl`.

        Returns:
            bool: True if the repository answered successfully.
        """
        now = time.time()
        last_check = self.last_git_connectivity_check.get(workspace_id, 0.0)
        if now - last_check < self.config.network.reachability_ttl:
            cached = self.git_connectivity_cache.get(workspace_id)
            if cached is not None:
                logger.debug(f"Using cached Git connectivity for {workspace_id}: {cached}")
                return cached

        logger.info(f"Checking Git connectivity for workspace {workspace_id}")
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(
            self.orchestrator.test_connection,
            workspace.git_url or "",
            branch=workspace.git_branch or self.config.sync.default_branch,
            auth_type=workspace.auth_type or DEFAULT_AUTH_TYPE,
            auth_data=workspace.auth_data or {},
            file_path=workspace.git_path or self.config.sync.default_path,
        )
        try:
            reachable = future.result(timeout=self.config.network.probe_timeout).success
        except concurrent.futures.TimeoutError:
            logger.error(f"Git connectivity check timed out for {workspace_id}")
            reachable = False
        except Exception as e:
            logger.error(f"Git connectivity check failed for {workspace_id}: {e}")
            reachable = False
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self.last_git_connectivity_check[workspace_id] = now
        self.git_connectivity_cache[workspace_id] = reachable
        logger.info(
            f"Git connectivity check for {workspace_id}: {'SUCCESS' if reachable else 'FAILED'}"
        )
        return reachable

    def resume_all_syncs(self) -> None:
        """Clears offline state and re-attempts the active workspace."""
        self.network_offline_time = None
        self.git_connectivity_cache.clear()
        self.last_git_connectivity_check.clear()

        workspace_id, workspace = self.active_workspace_id, self.active_workspace
        if not workspace_id or not workspace or not workspace.is_syncable:
            return

        logger.info(f"Resuming sync for active workspace {workspace_id}")
        if workspace_id not in self.sync_timers:
            # Scheduling was deferred while offline; starting it syncs immediately.
            self.start_sync(workspace_id, workspace)
        else:
            threading.Thread(
                target=self.perform_sync,
                args=(workspace_id, workspace),
                name=f"resume-{workspace_id}",
                daemon=True,
            ).start()

    def manual_sync(self, workspace_id: str) -> dict:
        """Syncs a workspace on demand.

        Returns:
            dict: `{success, error?}`.
        """
        workspace = self.settings.get_workspace(workspace_id)
        if workspace is None:
            error = f"Workspace {workspace_id} not found"
            logger.error(f"Manual sync failed for workspace {workspace_id}: {error}")
            return {"success": False, "error": error}
        if workspace.type not in SYNC_TYPES:
            error = "Only Git/Team workspaces can be synced"
            logger.error(f"Manual sync failed for workspace {workspace_id}: {error}")
            return {"success": False, "error": error}

        outcome = self.perform_sync(workspace_id, workspace)
        if outcome.get("success"):
            return {"success": True}
        return {"success": False, "error": outcome.get("error") or outcome.get("skipped")}

    def get_sync_status(self) -> dict:
        return {
            workspace_id: {
                "scheduled": True,
                "syncing": self.sync_in_progress.get(workspace_id, False),
                "last_sync": self.last_sync_time.get(workspace_id),
            }
            for workspace_id in list(self.sync_timers)
        }
