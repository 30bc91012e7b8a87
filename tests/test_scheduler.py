"""Tests for the network-aware sync scheduler."""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from workspace_sync.config import Config
from workspace_sync.constants import (
    DEFAULT_WORKSPACE_ID,
    EVENT_DATA_UPDATED,
    EVENT_ENVIRONMENTS_CHANGED,
    EVENT_SYNC_COMPLETED,
    EVENT_SYNC_STATUS,
)
from workspace_sync.network import NetworkMonitor
from workspace_sync.orchestrator import ConnectionResult, SyncOrchestrator, SyncResult
from workspace_sync.scheduler import RepeatingTimer, SyncScheduler
from workspace_sync.settings import Workspace, WorkspaceSettings
from workspace_sync.store import LocalWorkspaceStore
from workspace_sync.transport import CommitInfo

BUNDLE = {
    "rules": {"header": [{"id": "h1"}]},
    "environments": {"Default": {}, "Dev": {"API": "x"}},
}
OK = SyncResult(
    success=True,
    data=BUNDLE,
    commit_hash="abc123",
    commit_info=CommitInfo("Ann", "ann@team.io", 1700000000000, "Update rules"),
)


@pytest.fixture
def orchestrator(mocker: MagicMock) -> MagicMock:
    orch = mocker.MagicMock(spec=SyncOrchestrator)
    orch.get_git_status.return_value = {
        "git_path": "/usr/bin/git",
        "is_installed": True,
        "platform": "linux",
    }
    orch.sync_workspace.return_value = OK
    return orch


@pytest.fixture
def settings(tmp_path: Path) -> WorkspaceSettings:
    s = WorkspaceSettings(tmp_path / "workspaces.json", tmp_path / "workspaces")
    s.initialize()
    s.add_workspace(
        Workspace(
            id="team",
            name="Team",
            type="git",
            git_url="https://github.com/team/config.git",
            git_branch="main",
            git_path="config/",
            auth_type="token",
            auth_data={"token": "t"},
        )
    )
    s.add_workspace(Workspace(id="manual", name="Manual", type="team", auto_sync=False))
    return s


@pytest.fixture
def events() -> list[tuple[str, dict]]:
    return []


@pytest.fixture
def network() -> NetworkMonitor:
    return NetworkMonitor()


@pytest.fixture
def scheduler(
    orchestrator: MagicMock,
    settings: WorkspaceSettings,
    network: NetworkMonitor,
    events: list[tuple[str, dict]],
) -> SyncScheduler:
    sched = SyncScheduler(
        orchestrator,
        settings,
        network,
        LocalWorkspaceStore(settings.workspaces_dir),
        broadcaster=lambda channel, data: events.append((channel, data)),
        config=Config(),
    )
    sched.shutdown_timeout = 0.2
    sched.shutdown_poll_interval = 0.01
    return sched


@pytest.fixture
def timer_cls(mocker: MagicMock) -> MagicMock:
    """Replaces the timer thread so scheduling never runs in the background."""
    return mocker.patch("workspace_sync.scheduler.RepeatingTimer")


def _team(settings: WorkspaceSettings) -> Workspace:
    workspace = settings.get_workspace("team")
    assert workspace is not None
    return workspace


def _channels(events: list[tuple[str, dict]]) -> list[str]:
    return [channel for channel, _ in events]


# --- Scheduling ---


def test_switch_to_git_workspace_schedules_timer(
    scheduler: SyncScheduler, timer_cls: MagicMock, orchestrator: MagicMock
) -> None:
    """Verifies a qualifying workspace gets one timer that syncs immediately.

    Args:
        scheduler (SyncScheduler): The scheduler under test.
        timer_cls (MagicMock): The patched timer class.
        orchestrator (MagicMock): The mocked orchestrator.
    """
    scheduler.on_workspace_switch("team")

    timer_cls.assert_called_once()
    args, kwargs = timer_cls.call_args
    assert args[0] == Config().sync.interval
    assert kwargs == {"run_immediately": True, "name": "sync-team"}
    timer_cls.return_value.start.assert_called_once()
    assert scheduler.get_sync_status() == {
        "team": {"scheduled": True, "syncing": False, "last_sync": None}
    }

    # The scheduled callable performs a sync of that workspace.
    args[1]()
    orchestrator.sync_workspace.assert_called_once_with(
        "https://github.com/team/config.git",
        branch="main",
        path="config/",
        auth_type="token",
        auth_data={"token": "t"},
    )


def test_start_sync_is_idempotent(
    scheduler: SyncScheduler, timer_cls: MagicMock, settings: WorkspaceSettings
) -> None:
    scheduler.start_sync("team", _team(settings))
    scheduler.start_sync("team", _team(settings))

    timer_cls.assert_called_once()


@pytest.mark.parametrize("workspace_id", ["manual", DEFAULT_WORKSPACE_ID])
def test_non_qualifying_workspace_gets_no_timer(
    scheduler: SyncScheduler, timer_cls: MagicMock, workspace_id: str
) -> None:
    """Verifies autoSync=false and personal workspaces are never scheduled.

    Args:
        scheduler (SyncScheduler): The scheduler under test.
        timer_cls (MagicMock): The patched timer class.
        workspace_id (str): The workspace switched to.
    """
    scheduler.on_workspace_switch(workspace_id)

    timer_cls.assert_not_called()
    assert scheduler.active_workspace_id == workspace_id
    assert scheduler.sync_timers == {}


def test_personal_workspace_never_scheduled_even_with_git_type(
    scheduler: SyncScheduler, timer_cls: MagicMock, settings: WorkspaceSettings
) -> None:
    """Verifies a hand-edited personal workspace pointing at a repo stays unscheduled.

    Args:
        scheduler (SyncScheduler): The scheduler under test.
        timer_cls (MagicMock): The patched timer class.
        settings (WorkspaceSettings): Settings holding the edited workspace.
    """
    document = settings.get_settings()
    document["workspaces"][0].update(
        {"type": "git", "gitUrl": "https://github.com/me/config.git", "autoSync": True}
    )
    settings.save_settings(document)
    personal = settings.get_workspace(DEFAULT_WORKSPACE_ID)
    assert personal is not None and personal.type == "git"

    scheduler.on_workspace_switch(DEFAULT_WORKSPACE_ID)
    scheduler.on_workspace_updated(DEFAULT_WORKSPACE_ID, personal)
    scheduler.start_sync(DEFAULT_WORKSPACE_ID, personal)

    timer_cls.assert_not_called()
    assert DEFAULT_WORKSPACE_ID not in scheduler.sync_timers


def test_switch_away_stops_previous_timer(
    scheduler: SyncScheduler, timer_cls: MagicMock
) -> None:
    scheduler.on_workspace_switch("team")
    scheduler.on_workspace_switch(DEFAULT_WORKSPACE_ID)

    timer_cls.return_value.cancel.assert_called_once()
    assert scheduler.sync_timers == {}


def test_switch_to_unknown_workspace(
    scheduler: SyncScheduler, timer_cls: MagicMock
) -> None:
    scheduler.on_workspace_switch("ghost")

    assert scheduler.active_workspace_id is None
    timer_cls.assert_not_called()


def test_start_sync_deferred_while_offline(
    scheduler: SyncScheduler,
    timer_cls: MagicMock,
    network: NetworkMonitor,
    settings: WorkspaceSettings,
) -> None:
    network.set_online(False)

    scheduler.start_sync("team", _team(settings))

    timer_cls.assert_not_called()


def test_workspace_update_disables_auto_sync(
    scheduler: SyncScheduler, timer_cls: MagicMock, settings: WorkspaceSettings
) -> None:
    """Verifies turning autoSync off persists the change and stops the timer."""
    scheduler.on_workspace_switch("team")
    workspace = _team(settings)
    workspace.auto_sync = False

    scheduler.on_workspace_updated("team", workspace)

    timer_cls.return_value.cancel.assert_called_once()
    assert scheduler.sync_timers == {}
    assert _team(settings).auto_sync is False


def test_workspace_update_of_inactive_workspace(
    scheduler: SyncScheduler, timer_cls: MagicMock, settings: WorkspaceSettings
) -> None:
    workspace = _team(settings)
    workspace.git_branch = "release"

    scheduler.on_workspace_updated("team", workspace)

    timer_cls.assert_not_called()
    assert _team(settings).git_branch == "release"


# --- Sync outcomes ---


def test_successful_sync_imports_and_broadcasts(
    scheduler: SyncScheduler,
    settings: WorkspaceSettings,
    events: list[tuple[str, dict]],
) -> None:
    """Verifies the bundle is merged locally and every channel is notified in order.

    Args:
        scheduler (SyncScheduler): The scheduler under test.
        settings (WorkspaceSettings): Backing settings store.
        events (list[tuple[str, dict]]): Captured broadcasts.
    """
    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome == {"success": True, "has_changes": True}
    assert _channels(events) == [
        EVENT_ENVIRONMENTS_CHANGED,
        EVENT_DATA_UPDATED,
        EVENT_SYNC_COMPLETED,
    ]
    completed = events[-1][1]
    assert completed["success"] is True
    assert completed["hasChanges"] is True
    assert completed["commitInfo"]["message"] == "Update rules"

    status = settings.get_sync_status("team")
    assert status["syncing"] is False
    assert status["error"] is None
    assert status["lastCommit"] == "abc123"
    assert status["lastSync"]

    rules = settings.load_workspaces_data("team")["rules"]
    assert rules["rules"] == BUNDLE["rules"]
    assert scheduler.sync_in_progress["team"] is False
    assert scheduler.last_sync_time["team"] > 0


def test_unchanged_sync_only_clears_status(
    scheduler: SyncScheduler,
    settings: WorkspaceSettings,
    events: list[tuple[str, dict]],
) -> None:
    """Verifies a repeat sync without changes keeps the recorded sync details."""
    scheduler.perform_sync("team", _team(settings))
    settings.update_sync_status("team", {"lastSync": "earlier", "error": "stale"})
    events.clear()

    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome == {"success": True, "has_changes": False}
    assert _channels(events) == [
        EVENT_ENVIRONMENTS_CHANGED,
        EVENT_SYNC_STATUS,
        EVENT_SYNC_COMPLETED,
    ]
    assert events[1][1] == {"workspaceId": "team", "syncing": False, "hasChanges": False}
    status = settings.get_sync_status("team")
    assert status["lastSync"] == "earlier"
    assert status["error"] is None


def test_failed_sync_records_error(
    scheduler: SyncScheduler,
    orchestrator: MagicMock,
    settings: WorkspaceSettings,
    events: list[tuple[str, dict]],
) -> None:
    orchestrator.sync_workspace.return_value = SyncResult(success=False, error="boom")

    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome == {"success": False, "error": "boom"}
    assert _channels(events) == [EVENT_SYNC_COMPLETED]
    assert events[0][1]["success"] is False
    assert events[0][1]["error"] == "boom"
    assert settings.get_sync_status("team") == {"syncing": False, "error": "boom"}
    assert "team" not in scheduler.last_sync_time
    assert scheduler.sync_in_progress["team"] is False


def test_unexpected_exception_is_contained(
    scheduler: SyncScheduler, orchestrator: MagicMock, settings: WorkspaceSettings
) -> None:
    orchestrator.sync_workspace.side_effect = RuntimeError("kaboom")

    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome == {"success": False, "error": "kaboom"}
    assert settings.get_sync_status("team")["error"] == "kaboom"
    assert scheduler.sync_in_progress["team"] is False


def test_sync_in_flight_is_skipped(
    scheduler: SyncScheduler, orchestrator: MagicMock, settings: WorkspaceSettings
) -> None:
    scheduler.sync_in_progress["team"] = True

    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome == {"success": False, "skipped": "Sync already in progress"}
    orchestrator.sync_workspace.assert_not_called()


def test_sync_skipped_without_git(
    scheduler: SyncScheduler, orchestrator: MagicMock, settings: WorkspaceSettings
) -> None:
    orchestrator.get_git_status.return_value = {"is_installed": False}

    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome["skipped"] == "Git is not installed"
    orchestrator.sync_workspace.assert_not_called()


def test_concurrent_syncs_run_once(
    scheduler: SyncScheduler, orchestrator: MagicMock, settings: WorkspaceSettings
) -> None:
    """Verifies the in-flight guard lets only one of two racing syncs through."""
    release = threading.Event()
    entered = threading.Event()

    def slow_sync(*_args: object, **_kwargs: object) -> SyncResult:
        entered.set()
        release.wait(5)
        return OK

    orchestrator.sync_workspace.side_effect = slow_sync
    results: list[dict] = []
    worker = threading.Thread(
        target=lambda: results.append(scheduler.perform_sync("team", _team(settings)))
    )
    worker.start()
    assert entered.wait(5)

    second = scheduler.perform_sync("team", _team(settings))
    release.set()
    worker.join(5)

    assert second["skipped"] == "Sync already in progress"
    assert results == [{"success": True, "has_changes": True}]
    assert orchestrator.sync_workspace.call_count == 1


# --- Offline policy ---


def test_offline_sync_is_skipped(
    scheduler: SyncScheduler,
    orchestrator: MagicMock,
    network: NetworkMonitor,
    settings: WorkspaceSettings,
) -> None:
    scheduler.initialize()
    network.set_online(False)

    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome == {"success": False, "skipped": "Network is offline"}
    assert scheduler.network_offline_time is not None
    orchestrator.test_connection.assert_not_called()
    orchestrator.sync_workspace.assert_not_called()


def test_long_offline_probes_server_and_skips_when_unreachable(
    scheduler: SyncScheduler,
    orchestrator: MagicMock,
    network: NetworkMonitor,
    settings: WorkspaceSettings,
) -> None:
    """Verifies a failed direct probe after the ceiling skips the fetch, and is cached.

    Args:
        scheduler (SyncScheduler): The scheduler under test.
        orchestrator (MagicMock): The mocked orchestrator.
        network (NetworkMonitor): The network state source.
        settings (WorkspaceSettings): Backing settings store.
    """
    network.set_online(False)
    scheduler.network_offline_time = time.time() - 31 * 60
    orchestrator.test_connection.return_value = ConnectionResult(success=False)

    first = scheduler.perform_sync("team", _team(settings))
    second = scheduler.perform_sync("team", _team(settings))

    assert first == {"success": False, "skipped": "Git server not reachable"}
    assert second == first
    orchestrator.test_connection.assert_called_once()
    orchestrator.sync_workspace.assert_not_called()
    assert scheduler.git_connectivity_cache["team"] is False


def test_long_offline_syncs_when_server_reachable(
    scheduler: SyncScheduler,
    orchestrator: MagicMock,
    network: NetworkMonitor,
    settings: WorkspaceSettings,
) -> None:
    network.set_online(False)
    scheduler.network_offline_time = time.time() - 31 * 60
    orchestrator.test_connection.return_value = ConnectionResult(success=True)

    outcome = scheduler.perform_sync("team", _team(settings))

    assert outcome["success"] is True
    orchestrator.sync_workspace.assert_called_once()


def test_connectivity_probe_timeout_counts_as_unreachable(
    scheduler: SyncScheduler, orchestrator: MagicMock, settings: WorkspaceSettings
) -> None:
    hang = threading.Event()
    orchestrator.test_connection.side_effect = lambda *a, **k: hang.wait(5)
    scheduler.config.network.probe_timeout = 0.05  # type: ignore[assignment]

    try:
        assert scheduler.check_git_connectivity("team", _team(settings)) is False
    finally:
        hang.set()


def test_connectivity_cache_expires(
    scheduler: SyncScheduler,
    orchestrator: MagicMock,
    settings: WorkspaceSettings,
    mocker: MagicMock,
) -> None:
    orchestrator.test_connection.return_value = ConnectionResult(success=True)
    clock = mocker.patch("workspace_sync.scheduler.time.time", return_value=10_000.0)

    scheduler.check_git_connectivity("team", _team(settings))
    clock.return_value = 10_000.0 + Config().network.reachability_ttl + 1
    scheduler.check_git_connectivity("team", _team(settings))

    assert orchestrator.test_connection.call_count == 2


def test_network_restore_starts_deferred_schedule(
    scheduler: SyncScheduler, timer_cls: MagicMock, network: NetworkMonitor
) -> None:
    """Verifies coming back online schedules the workspace deferred while offline."""
    scheduler.initialize()
    network.set_online(False)
    scheduler.on_workspace_switch("team")
    timer_cls.assert_not_called()

    network.set_online(True)

    timer_cls.assert_called_once()
    assert scheduler.network_offline_time is None


def test_network_restore_resyncs_scheduled_workspace(
    scheduler: SyncScheduler,
    timer_cls: MagicMock,
    orchestrator: MagicMock,
    network: NetworkMonitor,
) -> None:
    done = threading.Event()

    def record(*_args: object, **_kwargs: object) -> SyncResult:
        done.set()
        return OK

    orchestrator.sync_workspace.side_effect = record
    scheduler.initialize()
    scheduler.on_workspace_switch("team")
    scheduler.git_connectivity_cache["team"] = False

    network.set_online(False)
    network.set_online(True)

    assert done.wait(5)
    assert scheduler.git_connectivity_cache == {}
    timer_cls.assert_called_once()


# --- Manual sync ---


def test_manual_sync_errors(scheduler: SyncScheduler, orchestrator: MagicMock) -> None:
    assert scheduler.manual_sync("ghost") == {
        "success": False,
        "error": "Workspace ghost not found",
    }
    assert scheduler.manual_sync(DEFAULT_WORKSPACE_ID) == {
        "success": False,
        "error": "Only Git/Team workspaces can be synced",
    }

    orchestrator.sync_workspace.return_value = SyncResult(success=False, error="denied")
    assert scheduler.manual_sync("team") == {"success": False, "error": "denied"}


def test_manual_sync_ignores_auto_sync_flag(
    scheduler: SyncScheduler, orchestrator: MagicMock
) -> None:
    assert scheduler.manual_sync("manual") == {"success": True}
    orchestrator.sync_workspace.assert_called_once()


# --- Shutdown ---


def test_shutdown_cancels_timers_and_unsubscribes(
    scheduler: SyncScheduler, timer_cls: MagicMock, network: NetworkMonitor
) -> None:
    scheduler.initialize()
    scheduler.on_workspace_switch("team")

    scheduler.shutdown()

    timer_cls.return_value.cancel.assert_called_once()
    assert scheduler.sync_timers == {}
    network.set_online(False)
    assert scheduler.network_offline_time is None


def test_shutdown_waits_for_in_flight_sync(scheduler: SyncScheduler) -> None:
    scheduler.sync_in_progress["team"] = True
    threading.Timer(0.05, scheduler._release, args=("team",)).start()

    started = time.monotonic()
    scheduler.shutdown()

    assert scheduler.sync_in_progress["team"] is False
    assert time.monotonic() - started < 1.0


def test_shutdown_gives_up_after_timeout(scheduler: SyncScheduler) -> None:
    scheduler.sync_in_progress["team"] = True
    scheduler.shutdown_timeout = 0.05

    scheduler.shutdown()

    assert scheduler.sync_in_progress["team"] is True


# --- Timer ---


def test_repeating_timer_runs_immediately_and_survives_errors() -> None:
    """Verifies exceptions are logged, not raised, and cancel stops the loop."""
    calls: list[int] = []
    timer: RepeatingTimer

    def tick() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")
        timer.cancel()

    timer = RepeatingTimer(0, tick, run_immediately=True, name="test")
    timer.run()

    assert len(calls) == 2
    assert timer.daemon


def test_repeating_timer_cancelled_before_start() -> None:
    calls: list[int] = []
    timer = RepeatingTimer(0, lambda: calls.append(1), run_immediately=True)
    timer.cancel()

    timer.run()

    assert calls == []
