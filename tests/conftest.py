"""Shared fixtures: a scripted Git runner and isolated engine components."""

import io
import tarfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from workspace_sync.config import Config, GitConfig
from workspace_sync.errors import GitCommandError
from workspace_sync.orchestrator import SyncOrchestrator
from workspace_sync.runner import CommandResult, CommandRunner
from workspace_sync.transport import GitTransport

GIT = "/usr/bin/git"


@dataclass
class Call:
    """One recorded invocation of the fake runner."""

    args: list[str]
    cwd: Path | None
    env: dict[str, str] | None
    timeout: float | None

    @property
    def line(self) -> str:
        return " ".join(self.args)


@dataclass
class Response:
    needle: str
    stdout: str = ""
    data: bytes = b""
    error: str | None = None
    effect: Callable[[Call], Any] | None = None
    times: int | None = None
    used: int = field(default=0)


class FakeRunner(CommandRunner):
    """Scripts Git output by matching a substring of the joined argv.

    Responses registered later take precedence, so a test can override a
    fixture default. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.responses: list[Response] = []

    def on(
        self,
        needle: str,
        stdout: str = "",
        data: bytes = b"",
        error: str | None = None,
        effect: Callable[[Call], Any] | None = None,
        times: int | None = None,
    ) -> None:
        self.responses.append(Response(needle, stdout, data, error, effect, times))

    def _respond(self, call: Call) -> Response | None:
        self.calls.append(call)
        for response in reversed(self.responses):
            if response.needle not in call.line:
                continue
            if response.times is not None and response.used >= response.times:
                continue
            response.used += 1
            if response.effect:
                response.effect(call)
            if response.error is not None:
                raise GitCommandError(call.args[1:], response.error, 128)
            return response
        return None

    def run(
        self,
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        response = self._respond(Call(list(args), cwd, env, timeout))
        return CommandResult(response.stdout if response else "")

    def run_bytes(
        self,
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> bytes:
        response = self._respond(Call(list(args), cwd, env, timeout))
        return response.data if response else b""

    def called(self, needle: str) -> list[Call]:
        return [c for c in self.calls if needle in c.line]


def make_tar(files: dict[str, str]) -> bytes:
    """Builds an in-memory tar archive like `git archive` emits."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            payload = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def write_files(files: dict[str, str]) -> Callable[[Call], None]:
    """Effect that materializes files in the command's working directory."""

    def effect(call: Call) -> None:
        assert call.cwd is not None
        for name, content in files.items():
            target = call.cwd / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)

    return effect


@pytest.fixture(autouse=True)
def clear_config_cache() -> Any:
    """Ensures every test starts with a clean config cache."""
    Config._global_cache = None
    yield
    Config._global_cache = None


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def transport(fake_runner: FakeRunner) -> GitTransport:
    return GitTransport(runner=fake_runner, config=GitConfig(executable=GIT))


@pytest.fixture
def orchestrator(transport: GitTransport, tmp_path: Path) -> SyncOrchestrator:
    return SyncOrchestrator(
        transport, temp_dir=tmp_path / "repos", ssh_dir=tmp_path / "ssh-keys"
    )
