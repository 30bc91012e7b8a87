import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType

from rich.console import Console

from .cleanup import run_maintenance
from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .network import NetworkMonitor, get_remote_host, is_remote_reachable
from .orchestrator import SyncOrchestrator
from .scheduler import RepeatingTimer, SyncScheduler
from .settings import WorkspaceSettings
from .store import LocalWorkspaceStore
from .transport import GitTransport

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

console = Console()


def setup_logging(interactive: bool, config: Config | None = None) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to file/stderr
                            with rotation enabled.
        config (Config | None): Supplies the log rotation size.
    """
    config = config or Config.load()
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to stderr (captured by systemd/launchd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        # In daemon mode, rotate logs to file.
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=config.limits.max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def build_scheduler(
    config: Config | None = None, network: NetworkMonitor | None = None
) -> SyncScheduler:
    """Wires the orchestrator, settings and store into a scheduler."""
    config = config or Config.load()
    transport = GitTransport(config=config.git)
    orchestrator = SyncOrchestrator(transport, max_buffer=config.limits.max_buffer)
    settings = WorkspaceSettings()
    settings.initialize()
    return SyncScheduler(
        orchestrator,
        settings,
        network or NetworkMonitor(),
        LocalWorkspaceStore(settings.workspaces_dir),
        config=config,
    )


def probe_network(scheduler: SyncScheduler, timeout: float) -> None:
    """Pushes the reachability of the active workspace's Git host into the monitor.

    Args:
        scheduler (SyncScheduler): Supplies the active workspace and the monitor.
        timeout (float): Per-port connection timeout in seconds.
    """
    workspace = scheduler.active_workspace
    if workspace is None or not workspace.git_url:
        return
    host = get_remote_host(workspace.git_url)
    if host is None:
        return
    scheduler.network.set_online(is_remote_reachable(host, timeout))


def main(interactive: bool = False) -> None:
    """Runs the scheduler for the active workspace until SIGINT or SIGTERM.

    Args:
        interactive (bool, optional): Log to stdout instead of the rotating
                                      log file. Defaults to False.
    """
    config = Config.load()
    setup_logging(interactive, config)

    # PID File Management.
    try:
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))

        # Ensure cleanup on exit.
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")

    scheduler = build_scheduler(config)
    scheduler.initialize()

    stop = threading.Event()

    def handle_signal(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received signal {signum}, stopping.")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    active_id = scheduler.settings.get_active_workspace_id()
    scheduler.on_workspace_switch(active_id)
    if interactive:
        console.print(
            f"Syncing workspace [bold cyan]{active_id}[/bold cyan] (Ctrl+C to stop)..."
        )

    watcher = RepeatingTimer(
        config.network.reachability_ttl,
        lambda: probe_network(scheduler, config.network.probe_timeout),
        name="network-watch",
    )
    watcher.start()

    # Checks on start, then periodically; run_maintenance skips passes not yet due.
    maintenance = RepeatingTimer(
        config.cleanup.check_interval,
        lambda: run_maintenance(
            interval=config.cleanup.max_age, max_age=config.cleanup.max_age
        ),
        run_immediately=True,
        name="maintenance",
    )
    maintenance.start()

    try:
        while not stop.wait(1.0):
            pass
    finally:
        maintenance.cancel()
        watcher.cancel()
        scheduler.shutdown()


if __name__ == "__main__":
    main()
