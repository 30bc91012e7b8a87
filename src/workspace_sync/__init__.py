"""workspace-sync: Git-backed sharing of header, proxy and environment configuration.

This package provides the sync engine (path resolution, Git transport,
configuration discovery and validation), the per-workspace scheduler that
merges remote state into local storage, and the command-line interface and
background daemon built on top of them.
"""

from . import (
    auth,
    cleanup,
    cli,
    config,
    constants,
    daemon,
    errors,
    locator,
    network,
    orchestrator,
    paths,
    progress,
    runner,
    scheduler,
    settings,
    store,
    system,
    transport,
    validator,
)

__all__ = [
    "auth",
    "cleanup",
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "locator",
    "network",
    "orchestrator",
    "paths",
    "progress",
    "runner",
    "scheduler",
    "settings",
    "store",
    "system",
    "transport",
    "validator",
]
