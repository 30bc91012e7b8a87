import io
import logging
import os
import re
import tarfile
from dataclasses import dataclass
from pathlib import Path

from .config import GitConfig
from .constants import APP_NAME, DEFAULT_SSH_COMMAND, GIT_BASE_ARGS
from .errors import GitCommandError, GitError, GitNotFoundError
from .paths import ParsedConfigPath, get_sparse_patterns
from .runner import CommandRunner, SubprocessRunner
from .system import SystemStrategy, get_system

logger = logging.getLogger(APP_NAME)


@dataclass
class CommitInfo:
    """Metadata of the commit a working tree is at.

    Attributes:
        author (str): Author name.
        email (str): Author email.
        timestamp (int): Author time in milliseconds since the epoch.
        message (str): Commit subject line.
    """

    author: str
    email: str
    timestamp: int
    message: str


@dataclass(frozen=True)
class BranchExists:
    """The requested branch is present on the remote."""

    branch: str


@dataclass(frozen=True)
class EmptyRepository:
    """The remote has no branches at all."""

    branch: str


@dataclass(frozen=True)
class BranchFromDefault:
    """The requested branch is missing; it will be cut from `default_branch`."""

    branch: str
    default_branch: str


BranchResolution = BranchExists | EmptyRepository | BranchFromDefault


def parse_ls_remote(output: str) -> list[str]:
    """Extracts branch names from `git ls-remote --heads` output.

    Args:
        output (str): Raw stdout, one `<sha>\\trefs/heads/<name>` per line.

    Returns:
        list[str]: Branch names in the order listed.
    """
    heads = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1].startswith("refs/heads/"):
            heads.append(parts[1][len("refs/heads/") :])
    return heads


def detect_default_branch(heads: list[str]) -> str:
    """Picks the most likely default branch among remote heads."""
    for name in ("main", "master", "develop", "development"):
        if name in heads:
            return name
    return heads[0] if heads else "main"


def suggest_alternative_branches(requested: str, heads: list[str]) -> list[str]:
    """Suggests up to five branches the user may have meant.

    Case-insensitive exact matches come first, then partial matches, then
    `main`/`master` if present.

    Args:
        requested (str): The branch name that was not found.
        heads (list[str]): Branches that do exist.

    Returns:
        list[str]: At most five suggestions.
    """
    wanted = requested.lower()
    alternatives: list[str] = []
    for head in heads:
        lowered = head.lower()
        if lowered == wanted:
            alternatives.insert(0, head)
        elif wanted in lowered or lowered in wanted:
            alternatives.append(head)
    for default in ("main", "master"):
        if default in heads and default not in alternatives:
            alternatives.append(default)
    return alternatives[:5]


def resolve_branch(heads: list[str], branch: str) -> BranchResolution:
    """Decides how a working tree for `branch` should be produced.

    Args:
        heads (list[str]): Branches present on the remote.
        branch (str): The requested branch.

    Returns:
        BranchResolution: The strategy to materialize the branch.
    """
    if branch in heads:
        return BranchExists(branch)
    if not heads:
        return EmptyRepository(branch)
    if "main" in heads:
        default = "main"
    elif "master" in heads:
        default = "master"
    else:
        default = heads[0]
    return BranchFromDefault(branch, default)


_MISSING_REF = re.compile(r"couldn't find remote ref (\S+)")


class GitTransport:
    """Executes Git primitives against remote repositories and sparse trees.

    Every call goes through the injected `CommandRunner` with the credential
    prompting suppressed, so a missing credential fails fast instead of
    hanging a background sync.

    Attributes:
        runner (CommandRunner): Executes the subprocesses.
        system (SystemStrategy): Platform-specific lookups.
        config (GitConfig): Executable override and timeout tiers.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        system: SystemStrategy | None = None,
        config: GitConfig | None = None,
    ):
        self.runner = runner or SubprocessRunner()
        self.system = system or get_system()
        self.config = config or GitConfig()
        self._git_path: str | None = None

    # --- Discovery ---

    def find_git(self) -> str | None:
        """Locates a usable Git executable, caching the first hit.

        Search order: configured override, PATH, well-known install
        directories, bundled portable Git.

        Returns:
            str | None: The executable path, or None if Git is unavailable.
        """
        if self._git_path:
            return self._git_path

        if self.config.executable:
            self._git_path = self.config.executable
            return self._git_path

        try:
            res = self.runner.run(self.system.which_command(), timeout=5)
            first = res.stdout.strip().splitlines()[0] if res.stdout.strip() else ""
            if first:
                logger.info(f"Found git in PATH: {first}")
                self._git_path = first.strip()
                return self._git_path
        except GitError as e:
            logger.debug(f"git not on PATH: {e}")

        for candidate in self.system.git_candidates():
            if candidate.is_file() and os.access(candidate, os.X_OK):
                logger.info(f"Found git at: {candidate}")
                self._git_path = str(candidate)
                return self._git_path

        bundled = self.system.bundled_git()
        if bundled and bundled.is_file():
            logger.info(f"Using bundled portable Git: {bundled}")
            self._git_path = str(bundled)
            return self._git_path

        logger.warning("Git executable not found.")
        return None

    @property
    def git_path(self) -> str:
        """The discovered executable.

        Raises:
            GitNotFoundError: If discovery failed.
        """
        path = self.find_git()
        if not path:
            raise GitNotFoundError(
                "Git executable not found. Please install Git and ensure it is in your PATH."
            )
        return path

    def is_installed(self) -> bool:
        return self.find_git() is not None

    # --- Execution ---

    def build_env(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        """Returns the child environment with interactive prompts disabled."""
        env = os.environ.copy()
        env.update(
            {
                "GIT_TERMINAL_PROMPT": "0",
                "GIT_ASKPASS": "",
                "SSH_ASKPASS": "",
                "GIT_SSH_COMMAND": DEFAULT_SSH_COMMAND,
            }
        )
        if extra:
            env.update(extra)
        return env

    def _run(
        self,
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Executes a Git command and returns its stripped stdout.

        Args:
            args (list[str]): Arguments after the executable.
            cwd (Path | None): Repository directory.
            env (dict[str, str] | None): Extra environment (e.g. auth overrides).
            timeout (float | None): Seconds before the command is abandoned.

        Returns:
            str: Stripped stdout.

        Raises:
            GitNotFoundError: If no Git executable is available.
            GitCommandError: If the command fails.
            GitTimeoutError: If the command times out.
        """
        argv = [self.git_path, *GIT_BASE_ARGS, *args]
        res = self.runner.run(argv, cwd=cwd, env=self.build_env(env), timeout=timeout)
        return res.stdout.strip()

    # --- Remote primitives ---

    def ls_remote_heads(
        self, remote: str, env: dict[str, str] | None = None, cwd: Path | None = None
    ) -> list[str]:
        """Lists branch names on a remote (URL or configured remote name)."""
        out = self._run(
            ["ls-remote", "--heads", remote],
            cwd=cwd,
            env=env,
            timeout=self.config.short_timeout,
        )
        return parse_ls_remote(out)

    def archive_file(
        self,
        url: str,
        branch: str,
        path: str,
        env: dict[str, str] | None = None,
        max_bytes: int | None = None,
    ) -> str:
        """Reads a single file from a remote branch via `git archive --remote`.

        Args:
            url (str): Repository URL.
            branch (str): Branch to read from.
            path (str): Repository-relative file path.
            env (dict[str, str] | None): Extra environment.
            max_bytes (int | None): Reject payloads larger than this.

        Returns:
            str: The file content, or an empty string if the archive lacks it.

        Raises:
            GitError: If the remote refuses the archive or the payload is too large.
        """
        argv = [self.git_path, *GIT_BASE_ARGS, "archive", f"--remote={url}", branch, path]
        payload = self.runner.run_bytes(
            argv, env=self.build_env(env), timeout=self.config.short_timeout
        )
        if max_bytes is not None and len(payload) > max_bytes:
            raise GitError(f"Archive for {path} exceeds {max_bytes} bytes")

        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:*") as tar:
            for member in tar.getmembers():
                if member.isfile() and member.name.rstrip("/") == path:
                    handle = tar.extractfile(member)
                    return handle.read().decode("utf-8") if handle else ""
        return ""

    # --- Working tree primitives ---

    def init(self, repo: Path, env: dict[str, str] | None = None) -> None:
        repo.mkdir(parents=True, exist_ok=True)
        self._run(["init"], cwd=repo, env=env)

    def enable_sparse_checkout(
        self, repo: Path, patterns: list[str], env: dict[str, str] | None = None
    ) -> None:
        """Turns on sparse checkout and writes the pattern file."""
        self._run(["config", "core.sparseCheckout", "true"], cwd=repo, env=env)
        sparse_file = repo / ".git" / "info" / "sparse-checkout"
        sparse_file.parent.mkdir(parents=True, exist_ok=True)
        sparse_file.write_text("\n".join(patterns) + "\n")

    def ensure_sparse_checkout(
        self, repo: Path, patterns: list[str], env: dict[str, str] | None = None
    ) -> bool:
        """Re-enables sparse checkout and makes the pattern file match `patterns`.

        Returns:
            bool: True when the pattern file was rewritten and the working tree
            needs `reapply_sparse_checkout`.
        """
        self._run(["config", "core.sparseCheckout", "true"], cwd=repo, env=env)
        sparse_file = repo / ".git" / "info" / "sparse-checkout"
        wanted = "\n".join(patterns) + "\n"
        try:
            current = sparse_file.read_text()
        except OSError:
            current = ""
        if current.split() == wanted.split():
            return False
        sparse_file.parent.mkdir(parents=True, exist_ok=True)
        sparse_file.write_text(wanted)
        logger.debug(f"Sparse checkout patterns updated in {repo.name}: {patterns}")
        return True

    def reapply_sparse_checkout(
        self, repo: Path, env: dict[str, str] | None = None
    ) -> None:
        """Re-populates the working tree from HEAD under the current patterns."""
        self._run(["read-tree", "-mu", "HEAD"], cwd=repo, env=env)

    def add_remote(self, repo: Path, url: str, env: dict[str, str] | None = None) -> None:
        self._run(["remote", "add", "origin", url], cwd=repo, env=env)

    def set_remote_url(
        self, repo: Path, url: str, env: dict[str, str] | None = None
    ) -> None:
        self._run(["remote", "set-url", "origin", url], cwd=repo, env=env)

    def fetch(
        self,
        repo: Path,
        ref: str,
        env: dict[str, str] | None = None,
        depth: int | None = 1,
        timeout: float | None = None,
    ) -> None:
        args = ["fetch"]
        if depth:
            args.append(f"--depth={depth}")
        args.extend(["origin", ref])
        self._run(args, cwd=repo, env=env, timeout=timeout or self.config.long_timeout)

    def checkout(
        self,
        repo: Path,
        ref: str | None,
        env: dict[str, str] | None = None,
        new_branch: str | None = None,
        orphan: bool = False,
    ) -> None:
        """Checks out `ref`, optionally creating `new_branch` (or an orphan) from it."""
        args = ["checkout"]
        if orphan and new_branch:
            args.extend(["--orphan", new_branch])
        elif new_branch:
            args.extend(["-b", new_branch])
        if ref and not orphan:
            args.append(ref)
        self._run(args, cwd=repo, env=env)

    def reset_hard(self, repo: Path, ref: str, env: dict[str, str] | None = None) -> None:
        self._run(["reset", "--hard", ref], cwd=repo, env=env)

    def add(self, repo: Path, pathspec: str, env: dict[str, str] | None = None) -> None:
        self._run(["add", "--", pathspec], cwd=repo, env=env)

    def status_porcelain(
        self, repo: Path, env: dict[str, str] | None = None
    ) -> list[str]:
        output = self._run(["status", "--porcelain"], cwd=repo, env=env)
        return output.splitlines() if output else []

    def commit(
        self,
        repo: Path,
        message: str,
        env: dict[str, str] | None = None,
        allow_empty: bool = False,
    ) -> None:
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        self._run(args, cwd=repo, env=env)

    def push(
        self,
        repo: Path,
        branch: str,
        env: dict[str, str] | None = None,
        set_upstream: bool = True,
        timeout: float | None = None,
    ) -> None:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend(["origin", branch])
        self._run(args, cwd=repo, env=env, timeout=timeout or self.config.long_timeout)

    def push_dry_run(
        self, repo: Path, refspec: str, env: dict[str, str] | None = None
    ) -> None:
        """Negotiates a push without transferring anything."""
        self._run(
            ["push", "--dry-run", "origin", refspec],
            cwd=repo,
            env=env,
            timeout=self.config.short_timeout,
        )

    def rev_parse_head(self, repo: Path, env: dict[str, str] | None = None) -> str:
        return self._run(["rev-parse", "HEAD"], cwd=repo, env=env)

    def current_branch(
        self, repo: Path, env: dict[str, str] | None = None
    ) -> str | None:
        try:
            return self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=repo, env=env)
        except GitCommandError:
            # Unborn branch or detached state.
            return None

    def last_commit_info(
        self, repo: Path, env: dict[str, str] | None = None
    ) -> CommitInfo:
        """Reads author, email, time and subject of HEAD."""
        out = self._run(["log", "-1", "--format=%an|%ae|%at|%s"], cwd=repo, env=env)
        author, email, timestamp, message = (out.split("|", 3) + ["", "", "0", ""])[:4]
        try:
            millis = int(timestamp) * 1000
        except ValueError:
            millis = 0
        return CommitInfo(author, email, millis, message)

    def ls_tree_names(
        self, repo: Path, ref: str, env: dict[str, str] | None = None
    ) -> list[str]:
        out = self._run(["ls-tree", "-r", ref, "--name-only"], cwd=repo, env=env)
        return [line for line in out.splitlines() if line.strip()]

    def last_commit_timestamp(
        self, repo: Path, path: str, env: dict[str, str] | None = None
    ) -> float | None:
        """Returns the commit time (seconds) of the last change to `path`."""
        try:
            out = self._run(["log", "-1", "--format=%ct", "--", path], cwd=repo, env=env)
            return float(out) if out else None
        except (GitError, ValueError) as e:
            logger.debug(f"No commit timestamp for {path}: {e}")
            return None

    # --- Composite sparse operations ---

    def sparse_clone(
        self,
        url: str,
        target: Path,
        branch: str,
        parsed: ParsedConfigPath,
        env: dict[str, str] | None = None,
    ) -> BranchResolution:
        """Creates a sparse working tree holding only the configuration paths.

        Handles empty repositories (orphan branch with an empty initial
        commit) and missing branches (cut from the detected default branch).

        Args:
            url (str): Repository URL, already authenticated.
            target (Path): Directory for the new working tree.
            branch (str): The branch to materialize.
            parsed (ParsedConfigPath): Decides the sparse patterns.
            env (dict[str, str] | None): Extra environment.

        Returns:
            BranchResolution: How the branch was produced.

        Raises:
            GitError: With a user-facing message when the clone fails.
        """
        patterns = get_sparse_patterns(parsed)
        try:
            self.init(target, env)
            self.enable_sparse_checkout(target, patterns, env)
            self.add_remote(target, url, env)

            heads = self.ls_remote_heads("origin", env, cwd=target)
            resolution = resolve_branch(heads, branch)

            if isinstance(resolution, BranchExists):
                self.fetch(target, branch, env)
                self.checkout(target, f"origin/{branch}", env, new_branch=branch)
            elif isinstance(resolution, EmptyRepository):
                logger.info(f"Empty repository; creating orphan branch '{branch}'.")
                self.checkout(target, None, env, new_branch=branch, orphan=True)
                self.commit(target, "Initial commit", env, allow_empty=True)
            else:
                logger.info(
                    f"Branch '{branch}' missing; creating it from "
                    f"'{resolution.default_branch}'."
                )
                self.fetch(target, resolution.default_branch, env)
                self.checkout(target, "FETCH_HEAD", env, new_branch=branch)

            logger.info(f"Sparse clone completed: {', '.join(patterns)}")
            return resolution
        except GitError as e:
            raise _rewrite_clone_error(e, branch) from e

    def sparse_pull(
        self,
        repo: Path,
        url: str,
        branch: str,
        parsed: ParsedConfigPath,
        env: dict[str, str] | None = None,
    ) -> BranchResolution:
        """Brings an existing sparse working tree up to date with the remote.

        The tree is hard-reset to the remote branch rather than merged; local
        modifications in the cache are never meant to survive.

        Args:
            repo (Path): Existing sparse working tree.
            url (str): Repository URL, already authenticated.
            branch (str): The branch to track.
            parsed (ParsedConfigPath): Decides the sparse patterns.
            env (dict[str, str] | None): Extra environment.

        Returns:
            BranchResolution: How the branch was produced.

        Raises:
            GitError: With a user-facing message when the update fails.
        """
        try:
            patterns_changed = self.ensure_sparse_checkout(
                repo, get_sparse_patterns(parsed), env
            )
            self.set_remote_url(repo, url, env)

            heads = self.ls_remote_heads("origin", env, cwd=repo)
            resolution = resolve_branch(heads, branch)

            if isinstance(resolution, BranchExists):
                self.fetch(repo, branch, env, timeout=self.config.medium_timeout)
                try:
                    self.checkout(repo, branch, env)
                except GitCommandError:
                    self.checkout(repo, f"origin/{branch}", env, new_branch=branch)
                self.reset_hard(repo, f"origin/{branch}", env)
            elif isinstance(resolution, EmptyRepository):
                if self.current_branch(repo, env) != branch:
                    self.checkout(repo, None, env, new_branch=branch)
            else:
                self.fetch(
                    repo,
                    resolution.default_branch,
                    env,
                    timeout=self.config.medium_timeout,
                )
                if self.current_branch(repo, env) != branch:
                    try:
                        self.checkout(repo, branch, env)
                    except GitCommandError:
                        self.checkout(repo, "FETCH_HEAD", env, new_branch=branch)
            if patterns_changed and not isinstance(resolution, EmptyRepository):
                self.reapply_sparse_checkout(repo, env)
            return resolution
        except GitError as e:
            raise _rewrite_clone_error(e, branch) from e


def _rewrite_clone_error(error: GitError, branch: str) -> GitError:
    """Replaces common clone failures with actionable messages."""
    text = str(error)
    if match := _MISSING_REF.search(text):
        missing = match.group(1)
        return GitError(
            f"The branch '{missing}' does not exist in the repository. "
            "Please check your branch name or create the branch first."
        )
    if "Repository not found" in text or "Authentication failed" in text:
        return GitError(
            "Cannot access repository. Please check the URL and your "
            "authentication credentials."
        )
    return error
