import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .cleanup import cleanup_old_entries
from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .orchestrator import SyncOrchestrator
from .progress import ERROR, INFO, SUCCESS, WARNING, ProgressLog, ProgressStep
from .settings import WorkspaceSettings
from .transport import GitTransport

logger = logging.getLogger(APP_NAME)
console = Console()

TOKEN_ENV_VAR = "WORKSPACE_SYNC_TOKEN"

_STEP_STYLES = {
    SUCCESS: ("✔", "green"),
    ERROR: ("✘", "bold red"),
    WARNING: ("!", "yellow"),
    INFO: ("i", "cyan"),
}


def build_auth(args: argparse.Namespace) -> tuple[str, dict]:
    """Derives `(auth_type, auth_data)` from command-line flags.

    The token may also come from the WORKSPACE_SYNC_TOKEN environment variable.

    Args:
        args (argparse.Namespace): Parsed arguments carrying the auth flags.

    Returns:
        tuple[str, dict]: The auth type and its data.
    """
    if args.ssh_key_file:
        key = Path(args.ssh_key_file).expanduser().read_text()
        return "ssh-key", {"sshKey": key}
    if args.username or args.password:
        return "basic", {"username": args.username or "", "password": args.password or ""}
    token = args.token or os.environ.get(TOKEN_ENV_VAR)
    if token:
        return "token", {"token": token, "tokenType": args.token_type}
    return "none", {}


def _orchestrator(config: Config) -> SyncOrchestrator:
    return SyncOrchestrator(
        GitTransport(config=config.git), max_buffer=config.limits.max_buffer
    )


def _print_step(step: ProgressStep, _summary: list[ProgressStep]) -> None:
    if step.status not in _STEP_STYLES:
        return
    icon, style = _STEP_STYLES[step.status]
    line = Text()
    line.append(f"{icon} ", style=style)
    line.append(step.label, style="bold")
    if step.detail:
        line.append(f": {step.detail}", style="dim")
    console.print(line)


def run_test(args: argparse.Namespace) -> int:
    """Tests a repository connection and prints a result panel."""
    config = Config.load()
    auth_type, auth_data = build_auth(args)
    result = _orchestrator(config).test_connection(
        args.url,
        branch=args.branch or config.sync.default_branch,
        auth_type=auth_type,
        auth_data=auth_data,
        file_path=args.path or config.sync.default_path,
        check_write_access=args.write,
        progress=ProgressLog(_print_step),
    )

    if result.success:
        body = Text(result.message or "Connection successful")
        console.print(Panel(body, title="Connection Test", border_style="green", expand=False))
        return 0

    body = Text(result.error or "Connection failed", style="bold red")
    if result.alternatives:
        body.append(f"\n\nSimilar branches: {', '.join(result.alternatives)}", style="yellow")
    if result.available_files:
        body.append("\n\nAvailable files:\n", style="bold")
        body.append("\n".join(f"  {f}" for f in result.available_files))
    if result.debug_hint:
        body.append(f"\n\n{result.debug_hint}", style="dim")
    console.print(Panel(body, title="Connection Test", border_style="red", expand=False))
    return 1


def run_commit(args: argparse.Namespace) -> int:
    """Commits local files into a repository directory."""
    config = Config.load()
    files = {}
    for name in args.files:
        path = Path(name)
        try:
            files[path.name] = path.read_text(encoding="utf-8")
        except OSError as e:
            console.print(f"[bold red]ERROR:[/bold red] Cannot read {name}: {e}")
            return 1

    auth_type, auth_data = build_auth(args)
    with console.status("Committing configuration...", spinner="dots"):
        result = _orchestrator(config).commit_configuration(
            args.url,
            files,
            branch=args.branch or config.sync.default_branch,
            path=args.path,
            message=args.message,
            auth_type=auth_type,
            auth_data=auth_data,
        )

    if not result.success:
        console.print(f"[bold red]COMMIT FAILED:[/bold red] {result.error}")
        return 1
    if result.no_changes:
        console.print(f"[yellow]{result.message}[/yellow]")
        return 0
    console.print(
        f"[bold green]✔ Pushed[/bold green] {(result.commit_hash or '')[:8]} "
        f"({', '.join(result.files or [])})"
    )
    return 0


def run_sync(workspace_id: str) -> int:
    """Synchronizes a single workspace through the scheduler."""
    scheduler = daemon.build_scheduler()
    with console.status(f"Syncing {workspace_id}...", spinner="dots"):
        outcome = scheduler.manual_sync(workspace_id)
    if outcome["success"]:
        console.print("[bold green]✔ Sync complete.[/bold green]")
        return 0
    console.print(f"[bold red]SYNC FAILED:[/bold red] {outcome.get('error')}")
    return 1


def list_workspaces(settings: WorkspaceSettings | None = None) -> None:
    """Prints a table of workspaces and their sync state."""
    settings = settings or WorkspaceSettings()
    active_id = settings.get_active_workspace_id()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Repository", style="dim")
    table.add_column("Last Sync", justify="right", style="dim")

    for workspace in settings.get_workspaces():
        status = settings.get_sync_status(workspace.id)
        marker = "* " if workspace.id == active_id else "  "
        if status.get("error"):
            last_sync = f"[red]{status['error']}[/red]"
        else:
            last_sync = status.get("lastSync") or "-"
        repo = "-"
        if workspace.git_url:
            repo = f"{workspace.git_url} ({workspace.git_branch or 'main'})"
        table.add_row(marker + workspace.id, workspace.name, workspace.type, repo, last_sync)

    console.print(table)


def show_status() -> None:
    """Displays Git availability, daemon state and the active workspace."""
    pid_running = False
    if PID_FILE.exists():
        try:
            with open(PID_FILE) as f:
                pid = int(f.read().strip())
            os.kill(pid, 0)
            pid_running = True
        except (ValueError, OSError):
            pid_running = False

    git_status = _orchestrator(Config.load()).get_git_status()

    content = Text()
    content.append("Daemon: ", style="bold")
    if pid_running:
        content.append("Active (Running)\n", style="bold green")
    else:
        content.append("Stopped\n", style="bold red")
    content.append("Git:    ", style="bold")
    if git_status["is_installed"]:
        content.append(f"{git_status['git_path']}\n", style="green")
    else:
        content.append("Not found\n", style="bold red")
    content.append("Platform: ", style="bold")
    content.append(str(git_status["platform"]))

    console.print(Panel(content, title="System Status", expand=False))
    list_workspaces()


def switch_workspace(workspace_id: str) -> int:
    settings = WorkspaceSettings()
    try:
        settings.set_active_workspace(workspace_id)
    except KeyError:
        console.print(f"[bold red]Workspace {workspace_id} not found.[/bold red]")
        return 1
    console.print(f"Active workspace: [bold cyan]{workspace_id}[/bold cyan]")
    return 0


def run_cleanup(force: bool) -> None:
    config = Config.load()
    with console.status("Cleaning up cached repositories...", spinner="dots"):
        report = cleanup_old_entries(max_age=config.cleanup.max_age, force=force)
    console.print(
        f"Removed {len(report.repositories)} repositories and "
        f"{len(report.ssh_keys)} SSH keys."
    )
    for error in report.errors:
        console.print(f"[red]{error}[/red]")


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def _add_auth_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("authentication")
    group.add_argument("--token", help=f"Access token (or set {TOKEN_ENV_VAR})")
    group.add_argument(
        "--token-type",
        default="auto",
        choices=["auto", "github", "gitlab", "bitbucket", "azure", "generic"],
        help="Token provider (default: detected from the URL)",
    )
    group.add_argument("--username", help="Username for basic authentication")
    group.add_argument("--password", help="Password for basic authentication")
    group.add_argument("--ssh-key-file", help="Private key file for SSH authentication")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workspace-sync",
        description="Share header, proxy and environment configuration through Git.",
    )
    subparsers = parser.add_subparsers(dest="command")

    test_parser = subparsers.add_parser("test", help="Test a repository connection")
    test_parser.add_argument("url", help="Repository URL")
    test_parser.add_argument("--branch", help="Branch to check")
    test_parser.add_argument("--path", help="Configuration path inside the repository")
    test_parser.add_argument(
        "--write", action="store_true", help="Also verify write permissions"
    )
    _add_auth_arguments(test_parser)

    sync_parser = subparsers.add_parser("sync", help="Sync a workspace now")
    sync_parser.add_argument("workspace_id", help="Workspace ID")

    commit_parser = subparsers.add_parser("commit", help="Commit configuration files")
    commit_parser.add_argument("url", help="Repository URL")
    commit_parser.add_argument("files", nargs="+", help="Files to commit")
    commit_parser.add_argument("--branch", help="Target branch")
    commit_parser.add_argument(
        "--path", default="config", help="Repository directory (default: config)"
    )
    commit_parser.add_argument("--message", "-m", help="Commit message")
    _add_auth_arguments(commit_parser)

    subparsers.add_parser("list", help="List workspaces")
    subparsers.add_parser("status", help="Show Git, daemon and workspace status")

    switch_parser = subparsers.add_parser("switch", help="Set the active workspace")
    switch_parser.add_argument("workspace_id", help="Workspace ID")

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Remove stale cached repositories and SSH keys"
    )
    cleanup_parser.add_argument(
        "--force", "-f", action="store_true", help="Remove everything regardless of age"
    )

    subparsers.add_parser("daemon", help="Run the sync scheduler in the foreground")
    subparsers.add_parser("log", help="Tail the daemon log file")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the workspace-sync CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "test":
        sys.exit(run_test(args))
    elif args.command == "commit":
        sys.exit(run_commit(args))
    elif args.command == "sync":
        sys.exit(run_sync(args.workspace_id))
    elif args.command == "list":
        list_workspaces()
    elif args.command == "status":
        show_status()
    elif args.command == "switch":
        sys.exit(switch_workspace(args.workspace_id))
    elif args.command == "cleanup":
        run_cleanup(args.force)
    elif args.command == "daemon":
        daemon.main()
    elif args.command == "log":
        tail_log()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
