"""Local per-workspace data files and the remote-to-local merge.

Each workspace owns a directory holding `sources.json`, `rules.json`,
`proxy-rules.json` and `environments.json`. Remote bundles are merged into
these files so that local execution state and non-empty environment values
survive a sync.
"""

import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .constants import APP_NAME, CONFIG_VERSION, WORKSPACES_DIR

logger = logging.getLogger(APP_NAME)

WRITE_RETRIES = 3
WRITE_RETRY_DELAY = 0.1

SOURCES_FILE = "sources.json"
RULES_FILE = "rules.json"
PROXY_RULES_FILE = "proxy-rules.json"
ENVIRONMENTS_FILE = "environments.json"


def write_json_atomic(path: Path, data: Any) -> None:
    """Writes JSON through a temporary file and an atomic rename.

    Transient failures are retried with exponential backoff.

    Args:
        path (Path): The destination file. Parent directories are created.
        data (Any): A JSON-serializable value.

    Raises:
        OSError: If every attempt failed.
        TypeError: If `data` is not JSON-serializable.
    """
    payload = json.dumps(data, indent=2)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.with_suffix(path.suffix + ".tmp")

    for attempt in range(WRITE_RETRIES):
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, path)
            return
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_file.unlink()
            if attempt == WRITE_RETRIES - 1:
                logger.error(f"ERROR: Could not write {path.name}: {e}")
                raise
            delay = WRITE_RETRY_DELAY * (2**attempt)
            logger.warning(
                f"Retry {attempt + 1}/{WRITE_RETRIES} writing {path.name}: {e}"
            )
            time.sleep(delay)


def read_json(path: Path) -> Any | None:
    """Reads a JSON file, returning None when it does not exist.

    Raises:
        json.JSONDecodeError: If the file holds invalid JSON.
        OSError: For read failures other than a missing file.
    """
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def _normalize_source(source: dict) -> dict:
    """Keeps only the fields of a source that are meaningful across machines."""
    refresh = source.get("refreshOptions")
    return {
        "sourceType": source.get("sourceType"),
        "sourcePath": source.get("sourcePath"),
        "sourceMethod": source.get("sourceMethod"),
        "sourceTag": source.get("sourceTag"),
        "requestOptions": source.get("requestOptions"),
        "jsonFilter": source.get("jsonFilter"),
        "refreshOptions": (
            {
                "enabled": refresh.get("enabled"),
                "type": refresh.get("type"),
                "interval": refresh.get("interval"),
            }
            if isinstance(refresh, dict)
            else None
        ),
        "sourceId": source.get("sourceId"),
    }


def _env_structure(environments: Any) -> dict[str, list[str]]:
    if not isinstance(environments, dict):
        return {}
    return {
        name: sorted(variables) if isinstance(variables, dict) else []
        for name, variables in environments.items()
    }


def _schema_structure(schema_environments: Any) -> dict[str, list[str]]:
    structure: dict[str, list[str]] = {}
    if not isinstance(schema_environments, dict):
        return structure
    for name, env_schema in schema_environments.items():
        variables = env_schema.get("variables") if isinstance(env_schema, dict) else None
        names = []
        if isinstance(variables, list):
            names = [v["name"] for v in variables if isinstance(v, dict) and v.get("name")]
        structure[name] = sorted(names)
    return structure


def _var_value(var_data: Any) -> tuple[Any, bool]:
    """Returns (value, is_secret) for a variable in string or object form."""
    if isinstance(var_data, str):
        return var_data, False
    if isinstance(var_data, dict):
        return var_data.get("value", ""), bool(var_data.get("isSecret"))
    return "", False


def _has_value(value: Any) -> bool:
    return value is not None and value != ""


def _merge_env_values(target: dict, remote_environments: dict) -> None:
    """Overlays remote values onto `target`, never replacing a value with an empty one."""
    for env_name, env_vars in remote_environments.items():
        local_vars = target.setdefault(env_name, {})
        if not isinstance(env_vars, dict):
            continue
        for var_name, var_data in env_vars.items():
            value, is_secret = _var_value(var_data)
            if _has_value(value):
                local_vars[var_name] = (
                    var_data
                    if isinstance(var_data, dict)
                    else {"value": value, "isSecret": False}
                )
            elif not local_vars.get(var_name):
                local_vars[var_name] = {"value": "", "isSecret": is_secret}


def count_rules(rules: Any) -> int:
    """Counts rules held in list or type-keyed storage form."""
    if isinstance(rules, list):
        return len(rules)
    if isinstance(rules, dict):
        return sum(len(v) for v in rules.values() if isinstance(v, list))
    return 0


@dataclass
class ImportReport:
    """What `LocalWorkspaceStore.import_bundle` wrote.

    Attributes:
        sources (int | None): Number of sources written, or None if untouched.
        rules (int | None): Total rules written, or None if untouched.
        proxy_rules (int | None): Number of proxy rules written, or None if untouched.
        environments_written (bool): Whether `environments.json` was rewritten.
        environment_count (int): Environments in the written file.
        variable_count (int): Variables across all written environments.
    """

    sources: int | None = None
    rules: int | None = None
    proxy_rules: int | None = None
    environments_written: bool = False
    environment_count: int = 0
    variable_count: int = 0


class LocalWorkspaceStore:
    """Reads, compares and merges the per-workspace data files."""

    def __init__(self, root: Path = WORKSPACES_DIR):
        self.root = root

    def workspace_path(self, workspace_id: str) -> Path:
        return self.root / workspace_id

    # --- Change detection ---

    def has_changes(self, workspace_id: str, bundle: dict) -> bool:
        """Reports whether a remote bundle differs from what is stored locally.

        Only remotely meaningful fields are compared: local execution state of
        sources is ignored, and environments are compared by structure (names
        of environments and variables), never by value. A missing or unreadable
        local file counts as a change.

        Args:
            workspace_id (str): The workspace to compare against.
            bundle (dict): The decoded remote bundle.

        Returns:
            bool: True if importing the bundle would change local data.
        """
        try:
            return self._has_changes(self.workspace_path(workspace_id), bundle)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Change detection for {workspace_id} failed: {e}")
            return True

    def _has_changes(self, workspace_path: Path, bundle: dict) -> bool:
        if (sources := bundle.get("sources")) is not None:
            existing = read_json(workspace_path / SOURCES_FILE)
            if existing is None:
                return True
            if [_normalize_source(s) for s in existing] != [
                _normalize_source(s) for s in sources
            ]:
                logger.info("Sources have changed")
                return True

        if (rules := bundle.get("rules")) is not None:
            existing = read_json(workspace_path / RULES_FILE)
            if existing is None or existing.get("rules") != rules:
                logger.info("Rules have changed")
                return True

        if (proxy_rules := bundle.get("proxyRules")) is not None:
            existing = read_json(workspace_path / PROXY_RULES_FILE)
            if existing is None or existing != proxy_rules:
                logger.info("Proxy rules have changed")
                return True

        schema = bundle.get("environmentSchema")
        if bundle.get("environments") or schema:
            existing = read_json(workspace_path / ENVIRONMENTS_FILE)
            if existing is None:
                return True
            current = _env_structure(existing.get("environments") or {})
            if bundle.get("environments"):
                incoming = _env_structure(bundle["environments"])
            else:
                incoming = _schema_structure(schema.get("environments"))
            if current != incoming:
                logger.info("Environment structure has changed")
                return True

        return False

    # --- Import ---

    def import_bundle(self, workspace_id: str, bundle: dict) -> ImportReport:
        """Merges a remote bundle into the workspace's local files.

        Args:
            workspace_id (str): The target workspace.
            bundle (dict): The decoded remote bundle.

        Returns:
            ImportReport: What was written.

        Raises:
            OSError: If a file could not be written.
        """
        workspace_path = self.workspace_path(workspace_id)
        workspace_path.mkdir(parents=True, exist_ok=True)
        report = ImportReport()

        if isinstance(sources := bundle.get("sources"), list):
            merged = self._merge_sources(workspace_path / SOURCES_FILE, sources)
            write_json_atomic(workspace_path / SOURCES_FILE, merged)
            report.sources = len(merged)
            logger.info(
                f"Imported {len(merged)} sources for workspace {workspace_id} "
                "(preserved local execution data)"
            )

        if (rules := bundle.get("rules")) is not None:
            total = count_rules(rules)
            write_json_atomic(
                workspace_path / RULES_FILE,
                {
                    "version": CONFIG_VERSION,
                    "rules": rules,
                    "metadata": {
                        "lastUpdated": datetime.now(timezone.utc).isoformat(),
                        "totalRules": total,
                    },
                },
            )
            report.rules = total
            logger.info(f"Imported {total} rules for workspace {workspace_id}")

        if isinstance(proxy_rules := bundle.get("proxyRules"), list):
            write_json_atomic(workspace_path / PROXY_RULES_FILE, proxy_rules)
            report.proxy_rules = len(proxy_rules)
            logger.info(
                f"Imported {len(proxy_rules)} proxy rules for workspace {workspace_id}"
            )

        env_path = workspace_path / ENVIRONMENTS_FILE
        merged_envs, active = self._merge_environments(env_path, bundle)
        if merged_envs is not None:
            write_json_atomic(
                env_path,
                {
                    "environments": merged_envs,
                    "activeEnvironment": active or next(iter(merged_envs), "Default"),
                },
            )
            report.environments_written = True
            report.environment_count = len(merged_envs)
            report.variable_count = sum(
                len(v) for v in merged_envs.values() if isinstance(v, dict)
            )
            logger.info(
                f"Imported {report.environment_count} environment(s) with "
                f"{report.variable_count} variables for workspace {workspace_id}"
            )

        return report

    @staticmethod
    def _read_or_empty(path: Path, default: Any) -> Any:
        try:
            existing = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable {path.name}: {e}")
            return default
        return default if existing is None else existing

    def _merge_sources(self, path: Path, remote_sources: list) -> list:
        existing = self._read_or_empty(path, [])
        by_id = {
            s["sourceId"]: s
            for s in existing
            if isinstance(s, dict) and s.get("sourceId")
        }

        merged = []
        for remote in remote_sources:
            local = by_id.get(remote.get("sourceId")) if isinstance(remote, dict) else None
            if not local:
                merged.append(remote)
                continue
            local_refresh = local.get("refreshOptions") or {}
            merged.append(
                {
                    **remote,
                    "sourceContent": local.get("sourceContent") or "",
                    "originalResponse": local.get("originalResponse") or "{}",
                    "isFiltered": local.get("isFiltered"),
                    "filteredWith": local.get("filteredWith"),
                    "activationState": local.get("activationState")
                    or remote.get("activationState"),
                    "missingDependencies": local.get("missingDependencies") or [],
                    "refreshOptions": {
                        **(remote.get("refreshOptions") or {}),
                        "lastRefresh": local_refresh.get("lastRefresh"),
                        "nextRefresh": local_refresh.get("nextRefresh"),
                    },
                    "createdAt": local.get("createdAt") or remote.get("createdAt"),
                    "updatedAt": local.get("updatedAt") or remote.get("updatedAt"),
                }
            )
        return merged

    def _merge_environments(
        self, path: Path, bundle: dict
    ) -> tuple[dict | None, str | None]:
        """Builds the merged environment map.

        Returns:
            tuple[dict | None, str | None]: The merged environments (None when
            the bundle carries no environment data) and the preserved active
            environment name.
        """
        existing = self._read_or_empty(path, {})
        existing = existing if isinstance(existing, dict) else {}
        merged: dict = {
            name: dict(variables) if isinstance(variables, dict) else variables
            for name, variables in (existing.get("environments") or {}).items()
        }
        active = existing.get("activeEnvironment")

        environments = bundle.get("environments")
        schema = bundle.get("environmentSchema")

        if isinstance(environments, dict) and not schema:
            _merge_env_values(merged, environments)
            return merged, active

        if isinstance(schema, dict) and isinstance(schema.get("environments"), dict):
            for env_name, env_schema in schema["environments"].items():
                local_vars = merged.setdefault(env_name, {})
                variables = (
                    env_schema.get("variables") if isinstance(env_schema, dict) else None
                )
                for var_def in variables if isinstance(variables, list) else []:
                    if not isinstance(var_def, dict) or not var_def.get("name"):
                        continue
                    name = var_def["name"]
                    current = local_vars.get(name)
                    if not current:
                        local_vars[name] = {
                            "value": "",
                            "isSecret": bool(var_def.get("isSecret")),
                        }
                        continue
                    if isinstance(current, dict):
                        value, secret = current.get("value"), bool(current.get("isSecret"))
                    else:
                        value, secret = current, False
                    if _has_value(value):
                        logger.debug(
                            f"Preserving existing value for {env_name}.{name} during sync"
                        )
                    local_vars[name] = {
                        "value": value,
                        "isSecret": var_def["isSecret"] if "isSecret" in var_def else secret,
                    }

            if isinstance(environments, dict):
                _merge_env_values(merged, environments)
            return merged, active

        return None, active
