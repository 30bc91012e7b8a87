import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME
from .errors import GitCommandError, GitTimeoutError

logger = logging.getLogger(APP_NAME)


@dataclass
class CommandResult:
    """Captured output of a finished command.

    Attributes:
        stdout (str): Standard output, undecoded text as emitted.
        stderr (str): Standard error text.
    """

    stdout: str
    stderr: str = ""


class CommandRunner:
    """Base class defining how external commands are executed.

    The sync engine never calls `subprocess` directly; every Git primitive goes
    through a runner so tests can substitute scripted responses.
    """

    def run(
        self,
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Executes a command and returns its output.

        Args:
            args (list[str]): The full argument vector, executable first.
            cwd (Path | None): Working directory. Defaults to the current one.
            env (dict[str, str] | None): Complete environment for the child.
            timeout (float | None): Seconds before the child is killed.

        Returns:
            CommandResult: The captured output.

        Raises:
            GitCommandError: If the command exits with a non-zero status.
            GitTimeoutError: If the timeout expires.
        """
        raise NotImplementedError

    def run_bytes(
        self,
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Executes a command and returns raw stdout bytes (e.g. an archive)."""
        raise NotImplementedError


class SubprocessRunner(CommandRunner):
    """Runs commands as isolated child processes via `subprocess.run`."""

    def run(
        self,
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        try:
            res = subprocess.run(
                args,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout,
            )
            return CommandResult(res.stdout, res.stderr)
        except subprocess.CalledProcessError as e:
            raise GitCommandError(_verb(args), e.stderr or str(e), e.returncode) from e
        except subprocess.TimeoutExpired as e:
            raise GitTimeoutError(_verb(args), timeout or 0) from e
        except OSError as e:
            # Executable vanished or is not runnable.
            raise GitCommandError(_verb(args), str(e)) from e

    def run_bytes(
        self,
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> bytes:
        try:
            res = subprocess.run(
                args,
                cwd=cwd,
                env=env,
                capture_output=True,
                check=True,
                timeout=timeout,
            )
            return res.stdout
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
            raise GitCommandError(_verb(args), stderr, e.returncode) from e
        except subprocess.TimeoutExpired as e:
            raise GitTimeoutError(_verb(args), timeout or 0) from e
        except OSError as e:
            raise GitCommandError(_verb(args), str(e)) from e


def _verb(args: list[str]) -> list[str]:
    """Strips the executable and leading `-c key=value` pairs from an argv."""
    rest = args[1:]
    while len(rest) >= 2 and rest[0] == "-c":
        rest = rest[2:]
    return rest
