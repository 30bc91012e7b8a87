"""Tests for local workspace data files and the remote-to-local merge."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from workspace_sync.constants import CONFIG_VERSION
from workspace_sync.store import (
    ENVIRONMENTS_FILE,
    PROXY_RULES_FILE,
    RULES_FILE,
    SOURCES_FILE,
    LocalWorkspaceStore,
    count_rules,
    read_json,
    write_json_atomic,
)

WS = "team-1"


@pytest.fixture
def local(tmp_path: Path) -> LocalWorkspaceStore:
    return LocalWorkspaceStore(tmp_path / "workspaces")


def _seed(local: LocalWorkspaceStore, name: str, data: object) -> Path:
    path = local.workspace_path(WS) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def _read(local: LocalWorkspaceStore, name: str) -> object:
    return json.loads((local.workspace_path(WS) / name).read_text())


# --- Atomic writes ---


def test_write_json_atomic(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "data.json"

    write_json_atomic(target, {"a": [1, 2]})

    assert json.loads(target.read_text()) == {"a": [1, 2]}
    assert not (tmp_path / "nested" / "data.json.tmp").exists()


def test_write_json_atomic_retries_with_backoff(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies transient failures are retried with doubling delays.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mock_replace = mocker.patch(
        "workspace_sync.store.os.replace",
        side_effect=[PermissionError("locked"), PermissionError("locked"), None],
    )
    mock_sleep = mocker.patch("workspace_sync.store.time.sleep")

    write_json_atomic(tmp_path / "data.json", {"ok": True})

    assert mock_replace.call_count == 3
    assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]


def test_write_json_atomic_gives_up(tmp_path: Path, mocker: MagicMock) -> None:
    mocker.patch("workspace_sync.store.os.replace", side_effect=OSError("disk full"))
    mocker.patch("workspace_sync.store.time.sleep")
    target = tmp_path / "data.json"

    with pytest.raises(OSError, match="disk full"):
        write_json_atomic(target, {})

    assert not target.exists()
    assert not (tmp_path / "data.json.tmp").exists()


def test_read_json_missing_file(tmp_path: Path) -> None:
    assert read_json(tmp_path / "nope.json") is None


@pytest.mark.parametrize(
    "rules, expected",
    [([1, 2, 3], 3), ({"header": [1, 2], "payload": [3], "meta": "x"}, 3), (None, 0)],
)
def test_count_rules(rules: object, expected: int) -> None:
    assert count_rules(rules) == expected


# --- Change detection ---


def test_has_changes_when_nothing_stored(local: LocalWorkspaceStore) -> None:
    assert local.has_changes(WS, {"sources": []})


def test_has_changes_ignores_local_source_state(local: LocalWorkspaceStore) -> None:
    """Verifies execution state such as fetched content never counts as a change."""
    remote = {"sourceId": "1", "sourcePath": "https://api", "refreshOptions": {"interval": 5}}
    _seed(
        local,
        SOURCES_FILE,
        [
            {
                **remote,
                "sourceContent": "token-123",
                "refreshOptions": {"interval": 5, "lastRefresh": 99},
            }
        ],
    )

    assert not local.has_changes(WS, {"sources": [remote]})
    assert local.has_changes(
        WS, {"sources": [{**remote, "sourcePath": "https://other"}]}
    )


def test_has_changes_compares_rules_and_proxy_rules(local: LocalWorkspaceStore) -> None:
    _seed(local, RULES_FILE, {"version": CONFIG_VERSION, "rules": {"header": [1]}})
    _seed(local, PROXY_RULES_FILE, [{"id": "p"}])

    assert not local.has_changes(WS, {"rules": {"header": [1]}, "proxyRules": [{"id": "p"}]})
    assert local.has_changes(WS, {"rules": {"header": [1, 2]}})
    assert local.has_changes(WS, {"proxyRules": []})


def test_has_changes_compares_environment_structure_only(
    local: LocalWorkspaceStore,
) -> None:
    """Verifies environment values are ignored but names are compared."""
    _seed(
        local,
        ENVIRONMENTS_FILE,
        {"environments": {"Dev": {"API": {"value": "local", "isSecret": False}}}},
    )

    assert not local.has_changes(WS, {"environments": {"Dev": {"API": "remote"}}})
    assert local.has_changes(WS, {"environments": {"Dev": {"API": "", "HOST": ""}}})
    assert not local.has_changes(
        WS,
        {"environmentSchema": {"environments": {"Dev": {"variables": [{"name": "API"}]}}}},
    )


def test_has_changes_treats_corrupt_files_as_changed(local: LocalWorkspaceStore) -> None:
    path = _seed(local, RULES_FILE, {})
    path.write_text("{broken")

    assert local.has_changes(WS, {"rules": []})


# --- Import ---


def test_import_preserves_local_source_state(local: LocalWorkspaceStore) -> None:
    _seed(
        local,
        SOURCES_FILE,
        [
            {
                "sourceId": "1",
                "sourcePath": "https://old",
                "sourceContent": "cached",
                "activationState": "active",
                "refreshOptions": {"interval": 5, "lastRefresh": 10, "nextRefresh": 20},
                "createdAt": "2024-01-01",
            }
        ],
    )

    report = local.import_bundle(
        WS,
        {
            "sources": [
                {"sourceId": "1", "sourcePath": "https://new", "refreshOptions": {"interval": 9}},
                {"sourceId": "2", "sourcePath": "https://added"},
            ]
        },
    )

    assert report.sources == 2
    first, second = _read(local, SOURCES_FILE)  # type: ignore[misc]
    assert first["sourcePath"] == "https://new"
    assert first["sourceContent"] == "cached"
    assert first["activationState"] == "active"
    assert first["refreshOptions"] == {"interval": 9, "lastRefresh": 10, "nextRefresh": 20}
    assert first["createdAt"] == "2024-01-01"
    assert second == {"sourceId": "2", "sourcePath": "https://added"}


def test_import_writes_rules_envelope(local: LocalWorkspaceStore) -> None:
    report = local.import_bundle(WS, {"rules": {"header": [1, 2]}, "proxyRules": [{"id": "p"}]})

    rules = _read(local, RULES_FILE)
    assert report.rules == 2
    assert report.proxy_rules == 1
    assert isinstance(rules, dict)
    assert rules["version"] == CONFIG_VERSION
    assert rules["rules"] == {"header": [1, 2]}
    assert rules["metadata"]["totalRules"] == 2
    assert _read(local, PROXY_RULES_FILE) == [{"id": "p"}]
    assert not report.environments_written


def test_import_environment_values_never_blank_out(local: LocalWorkspaceStore) -> None:
    """Verifies remote blanks keep local values while remote values win.

    Args:
        local (LocalWorkspaceStore): The store under test.
    """
    _seed(
        local,
        ENVIRONMENTS_FILE,
        {
            "environments": {
                "Dev": {
                    "TOKEN": {"value": "local-secret", "isSecret": True},
                    "HOST": {"value": "old", "isSecret": False},
                }
            },
            "activeEnvironment": "Dev",
        },
    )

    report = local.import_bundle(
        WS,
        {"environments": {"Dev": {"TOKEN": "", "HOST": "new", "PORT": ""}, "Prod": {}}},
    )

    saved = _read(local, ENVIRONMENTS_FILE)
    assert isinstance(saved, dict)
    assert saved["activeEnvironment"] == "Dev"
    assert saved["environments"]["Dev"] == {
        "TOKEN": {"value": "local-secret", "isSecret": True},
        "HOST": {"value": "new", "isSecret": False},
        "PORT": {"value": "", "isSecret": False},
    }
    assert saved["environments"]["Prod"] == {}
    assert report.environments_written
    assert report.environment_count == 2
    assert report.variable_count == 3


def test_import_environment_schema_creates_variables(local: LocalWorkspaceStore) -> None:
    _seed(
        local,
        ENVIRONMENTS_FILE,
        {"environments": {"Dev": {"API": "kept"}}},
    )

    local.import_bundle(
        WS,
        {
            "environmentSchema": {
                "environments": {
                    "Dev": {"variables": [{"name": "API", "isSecret": True}, {"name": "KEY"}]},
                    "QA": {"variables": [{"name": "API"}]},
                }
            }
        },
    )

    saved = _read(local, ENVIRONMENTS_FILE)
    assert isinstance(saved, dict)
    assert saved["environments"]["Dev"] == {
        "API": {"value": "kept", "isSecret": True},
        "KEY": {"value": "", "isSecret": False},
    }
    assert saved["environments"]["QA"] == {"API": {"value": "", "isSecret": False}}
    # Without a stored active environment the first one is chosen.
    assert saved["activeEnvironment"] == "Dev"


def test_import_without_environment_data_leaves_file(local: LocalWorkspaceStore) -> None:
    path = _seed(local, ENVIRONMENTS_FILE, {"environments": {"Dev": {}}})
    before = path.read_text()

    local.import_bundle(WS, {"proxyRules": []})

    assert path.read_text() == before
