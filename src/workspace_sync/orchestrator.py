"""High-level Git operations behind the interactive and scheduled sync paths.

Every public method of `SyncOrchestrator` returns a result object and never
raises: transport, auth and config errors are caught at this boundary and
turned into user-facing messages.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .auth import AuthContext, get_auth_strategy, sanitize_url
from .constants import (
    APP_NAME,
    DEFAULT_AUTH_TYPE,
    DEFAULT_BRANCH,
    DEFAULT_CONFIG_PATH,
    MAX_BUFFER_SIZE,
    REPO_CACHE_DIR,
    SSH_KEY_DIR,
    WRITE_TEST_FILE,
)
from .errors import (
    AUTH_ERROR,
    NETWORK_ERROR,
    REPO_NOT_FOUND,
    UNKNOWN_ERROR,
    AuthSetupError,
    ConfigNotFoundError,
    ConfigParseError,
    GitCommandError,
    GitError,
    classify_git_error,
    error_hint,
)
from .locator import (
    analyze_config,
    detect_and_validate,
    merge_environment_data,
    validate_bundle,
    validation_details,
    validation_error,
)
from .paths import (
    CommaSeparatedPath,
    FolderPath,
    ParsedConfigPath,
    SinglePath,
    config_directory,
    get_path_error_message,
    get_search_patterns,
    get_sparse_patterns,
    parse_config_path,
    relevant_directories,
)
from .progress import ProgressLog, ProgressStep
from .transport import (
    BranchExists,
    BranchResolution,
    CommitInfo,
    GitTransport,
    detect_default_branch,
    resolve_branch,
    suggest_alternative_branches,
)

logger = logging.getLogger(APP_NAME)

GIT_NOT_FOUND_MESSAGE = (
    "Git executable not found. Please install Git and ensure it is in your PATH."
)
DEBUG_HINT = "See docs/GIT-WORKSPACE-DEBUG.md for manual debugging commands"

_CLASSIFIED_STEPS = {
    AUTH_ERROR: ("Authentication", "Credentials were rejected"),
    NETWORK_ERROR: ("Connection", "Failed to reach Git server"),
    REPO_NOT_FOUND: ("Repository access", "Repository not found or no access"),
}


def repo_hash(url: str) -> str:
    """Stable cache key for a repository URL."""
    return hashlib.md5(url.encode()).hexdigest()


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


@dataclass
class ConnectionResult:
    """Outcome of `SyncOrchestrator.test_connection`."""

    success: bool
    message: str | None = None
    error: str | None = None
    error_type: str | None = None
    debug_hint: str | None = None
    read_access: bool | None = None
    write_access: bool | None = None
    branches: int | None = None
    alternatives: list[str] | None = None
    available_files: list[str] | None = None
    validation_details: dict | None = None
    progress_steps: list[ProgressStep] = field(default_factory=list)

    def to_dict(self) -> dict:
        return _compact(
            {
                "success": self.success,
                "message": self.message,
                "error": self.error,
                "errorType": self.error_type,
                "debugHint": self.debug_hint,
                "readAccess": self.read_access,
                "writeAccess": self.write_access,
                "branches": self.branches,
                "alternatives": self.alternatives,
                "availableFiles": self.available_files,
                "validationDetails": self.validation_details,
                "progressSteps": [s.to_dict() for s in self.progress_steps],
            }
        )


@dataclass
class SyncResult:
    """Outcome of `SyncOrchestrator.sync_workspace`."""

    success: bool
    data: dict | None = None
    commit_hash: str | None = None
    commit_info: CommitInfo | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return _compact(
            {
                "success": self.success,
                "data": self.data,
                "commitHash": self.commit_hash,
                "commitInfo": vars(self.commit_info) if self.commit_info else None,
                "error": self.error,
            }
        )


@dataclass
class CommitResult:
    """Outcome of `SyncOrchestrator.commit_configuration`."""

    success: bool
    commit_hash: str | None = None
    commit_info: CommitInfo | None = None
    files: list[str] | None = None
    no_changes: bool = False
    message: str | None = None
    error: str | None = None
    progress_steps: list[ProgressStep] = field(default_factory=list)

    def to_dict(self) -> dict:
        return _compact(
            {
                "success": self.success,
                "commitHash": self.commit_hash,
                "commitInfo": vars(self.commit_info) if self.commit_info else None,
                "files": self.files,
                "noChanges": self.no_changes or None,
                "message": self.message,
                "error": self.error,
                "progressSteps": [s.to_dict() for s in self.progress_steps],
            }
        )


@dataclass
class OperationResult:
    """Outcome of a simple operation such as branch creation."""

    success: bool
    message: str | None = None
    error: str | None = None
    details: str | None = None

    def to_dict(self) -> dict:
        return _compact(
            {
                "success": self.success,
                "message": self.message,
                "error": self.error,
                "details": self.details,
            }
        )


class SyncOrchestrator:
    """Combines path resolution, auth, transport and validation.

    Attributes:
        transport (GitTransport): Executes Git primitives.
        temp_dir (Path): Root for cached and disposable working trees.
        ssh_dir (Path): Where `ssh-key` auth writes key material.
        max_buffer (int): Upper bound on archive payloads.
    """

    def __init__(
        self,
        transport: GitTransport | None = None,
        temp_dir: Path = REPO_CACHE_DIR,
        ssh_dir: Path = SSH_KEY_DIR,
        max_buffer: int = MAX_BUFFER_SIZE,
    ):
        self.transport = transport or GitTransport()
        self.temp_dir = temp_dir
        self.ssh_dir = ssh_dir
        self.max_buffer = max_buffer
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    # --- Helpers ---

    def _prepare_auth(
        self, url: str, auth_type: str | None, auth_data: dict | None
    ) -> AuthContext:
        strategy = get_auth_strategy(auth_type)
        return strategy.prepare(url, auth_data or {}, self.ssh_dir)

    @staticmethod
    def _scrub(text: str, ctx: AuthContext | None, url: str) -> str:
        """Removes an authenticated URL from error text."""
        if ctx and ctx.url != url:
            return text.replace(ctx.url, sanitize_url(url))
        return text

    def _timestamp_fn(self, repo_dir: Path, env: dict[str, str]):
        def timestamp_of(path: Path) -> float | None:
            relative = path.relative_to(repo_dir).as_posix()
            stamp = self.transport.last_commit_timestamp(repo_dir, relative, env)
            if stamp is not None:
                return stamp
            try:
                return path.stat().st_mtime
            except OSError:
                return None

        return timestamp_of

    def _materialize(
        self,
        url: str,
        repo_dir: Path,
        branch: str,
        parsed: ParsedConfigPath,
        ctx: AuthContext,
        progress: ProgressLog | None = None,
    ) -> BranchResolution:
        """Clones the sparse tree if missing, otherwise brings it up to date."""
        if not (repo_dir / ".git").exists():
            label = "Cloning repository"
            if progress:
                progress.report(label)
            logger.info(f"SYNC: Cloning {sanitize_url(url)} ({branch}) into {repo_dir.name}")
            resolution = self.transport.sparse_clone(
                ctx.url, repo_dir, branch, parsed, ctx.env
            )
            if progress:
                progress.success(label, "Repository cloned")
        else:
            label = "Updating repository"
            if progress:
                progress.report(label)
            logger.info(f"SYNC: Updating {sanitize_url(url)} ({branch})")
            resolution = self.transport.sparse_pull(
                repo_dir, ctx.url, branch, parsed, ctx.env
            )
            if progress:
                progress.success(label, "Repository updated")
        return resolution

    def _remove_tree(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            self.transport.system.remove_tree(path)
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")

    def _classified_failure(
        self, error: Exception, progress: ProgressLog, ctx: AuthContext | None, url: str
    ) -> ConnectionResult:
        raw = self._scrub(str(error), ctx, url)
        classification = classify_git_error(raw)
        label, detail = _CLASSIFIED_STEPS.get(
            classification.error_type, ("Git operation", classification.message)
        )
        progress.error(label, detail)
        return ConnectionResult(
            success=False,
            error=classification.message,
            error_type=classification.error_type,
            debug_hint=classification.hint or None,
            progress_steps=progress.summary(),
        )

    # --- Status ---

    def get_git_status(self) -> dict:
        """Reports whether Git is available and where."""
        path = self.transport.find_git()
        return {
            "git_path": path,
            "is_installed": path is not None,
            "platform": self.transport.system.name,
        }

    # --- Connection testing ---

    def test_connection(
        self,
        url: str,
        branch: str = DEFAULT_BRANCH,
        auth_type: str = DEFAULT_AUTH_TYPE,
        auth_data: dict | None = None,
        file_path: str = DEFAULT_CONFIG_PATH,
        check_write_access: bool = False,
        progress: ProgressLog | None = None,
    ) -> ConnectionResult:
        """Verifies that a repository is reachable and holds a usable configuration.

        With `check_write_access`, a missing branch or directory is acceptable
        (they are created on first commit), existing configuration files in the
        target directory are a conflict, and a dry-run push must succeed.

        Args:
            url (str): Repository URL.
            branch (str): Branch to verify.
            auth_type (str): 'none', 'token', 'basic' or 'ssh-key'.
            auth_data (dict | None): Credentials for the auth type.
            file_path (str): Raw configuration path.
            check_write_access (bool): Verify write permissions as well.
            progress (ProgressLog | None): Receives step updates.

        Returns:
            ConnectionResult: The outcome, including the progress summary.
        """
        progress = progress or ProgressLog()

        def fail(error: str, **extra: Any) -> ConnectionResult:
            return ConnectionResult(
                success=False, error=error, progress_steps=progress.summary(), **extra
            )

        progress.report("Initializing Git service")
        git_path = self.transport.find_git()
        if not git_path:
            progress.error("Git check", "Git executable not found")
            return fail(GIT_NOT_FOUND_MESSAGE)
        progress.success("Initializing Git service", f"Git path: {git_path}")

        progress.report("Setting up authentication", detail=f"Method: {auth_type}")
        try:
            ctx = self._prepare_auth(url, auth_type, auth_data)
        except AuthSetupError as e:
            progress.error("Setting up authentication", "Authentication setup failed")
            return fail(f"Authentication setup failed: {e}")
        progress.success("Setting up authentication", ctx.description)

        try:
            return self._test_connection(
                url, branch, auth_type, auth_data, file_path, check_write_access, ctx, progress
            )
        except (GitError, OSError) as e:
            logger.error(f"Connection test failed: {self._scrub(str(e), ctx, url)}")
            return self._classified_failure(e, progress, ctx, url)

    def _test_connection(
        self,
        url: str,
        branch: str,
        auth_type: str,
        auth_data: dict | None,
        file_path: str,
        check_write_access: bool,
        ctx: AuthContext,
        progress: ProgressLog,
    ) -> ConnectionResult:
        def fail(error: str, **extra: Any) -> ConnectionResult:
            return ConnectionResult(
                success=False, error=error, progress_steps=progress.summary(), **extra
            )

        progress.report(
            "Testing repository connection",
            detail=f"Command: git ls-remote --heads {sanitize_url(url)}",
        )
        try:
            heads = self.transport.ls_remote_heads(ctx.url, ctx.env)
        except GitError as e:
            progress.error("Testing repository connection", "Failed to connect to repository")
            raw = self._scrub(str(e), ctx, url)
            classification = classify_git_error(raw)
            if classification.error_type == UNKNOWN_ERROR:
                return fail(
                    f"Failed to connect to repository: {raw}", debug_hint=error_hint(raw)
                )
            return fail(
                classification.message,
                error_type=classification.error_type,
                debug_hint=classification.hint or None,
            )
        progress.success("Testing repository connection", "Repository is accessible")

        resolution = resolve_branch(heads, branch)
        branch_exists = isinstance(resolution, BranchExists)
        if branch_exists:
            progress.success("Branch validation", f"Branch '{branch}' found")
        elif check_write_access:
            progress.success(
                "Branch validation", f"Branch '{branch}' will be created on first commit"
            )
            progress.info(
                "Write permissions",
                f"Note: The branch '{branch}' does not exist yet and will be created "
                "when you save your configuration",
            )
        elif branch not in ("main", "master"):
            alternatives = suggest_alternative_branches(branch, heads)
            if "master" in heads:
                progress.error(
                    "Branch validation", f"Branch '{branch}' not found, but 'master' exists"
                )
                return fail(
                    f"Branch '{branch}' not found in repository. The repository has a "
                    "'master' branch instead. Please update your branch setting to 'master'.",
                    alternatives=alternatives,
                )
            progress.error("Branch validation", f"Branch '{branch}' not found")
            return fail(
                f"Branch '{branch}' not found in repository", alternatives=alternatives
            )

        progress.report("Parsing configuration path", detail=f"Input: {file_path}")
        parsed = parse_config_path(file_path)
        progress.success("Parsing configuration path", f"Type: {parsed.kind}")

        if branch_exists and isinstance(parsed, (SinglePath, CommaSeparatedPath)):
            outcome = self._archive_fast_path(
                url, branch, auth_type, auth_data, parsed, check_write_access,
                ctx, progress, len(heads),
            )
            if outcome is not None:
                return outcome

        return self._sparse_test(
            url, branch, auth_type, auth_data, parsed, heads, branch_exists,
            check_write_access, ctx, progress,
        )

    def _archive_fast_path(
        self,
        url: str,
        branch: str,
        auth_type: str,
        auth_data: dict | None,
        parsed: SinglePath | CommaSeparatedPath,
        check_write_access: bool,
        ctx: AuthContext,
        progress: ProgressLog,
        branch_count: int,
    ) -> ConnectionResult | None:
        """Reads the configuration with `git archive`, without a working tree.

        Returns:
            ConnectionResult | None: None when the remote does not support
            archives (or, for write checks, lacks the file) and the sparse
            checkout path should be tried instead.
        """
        label = "Fetching configuration file"
        if isinstance(parsed, CommaSeparatedPath):
            file_to_check = parsed.config_path
        else:
            file_to_check = parsed.primary_path

        progress.report(label, detail=f"File: {file_to_check}")
        try:
            content = self.transport.archive_file(
                ctx.url, branch, file_to_check, ctx.env, self.max_buffer
            )
            env_content = ""
            if isinstance(parsed, CommaSeparatedPath):
                env_content = self.transport.archive_file(
                    ctx.url, branch, parsed.env_path, ctx.env, self.max_buffer
                )
        except GitError as e:
            raw = self._scrub(str(e), ctx, url)
            lowered = raw.lower()
            if "not supported" in lowered:
                progress.warning(label, "Archive not supported by remote, using sparse checkout")
                return None
            if check_write_access and ("did not match" in lowered or "not found" in lowered):
                progress.info(label, "File not present yet, checking directory")
                return None
            progress.error(label, f"Git archive failed: {raw}")
            return ConnectionResult(
                success=False, error=raw, progress_steps=progress.summary()
            )

        if not content.strip():
            progress.error(label, "File is empty or not found")
            return ConnectionResult(
                success=False,
                error=f"Configuration file '{file_to_check}' is empty or not found in the repository",
                progress_steps=progress.summary(),
            )
        progress.success(label, f"Content retrieved ({len(content)} bytes)")

        try:
            data = json.loads(content)
            if env_content.strip():
                env_data = json.loads(env_content)
                if isinstance(data, dict) and isinstance(env_data, dict):
                    data = merge_environment_data(data, env_data)
        except json.JSONDecodeError:
            progress.error("Configuration validation", "Invalid JSON")
            return ConnectionResult(
                success=False,
                error="Configuration file contains invalid JSON",
                progress_steps=progress.summary(),
            )

        analysis = analyze_config(data)
        if not analysis.valid:
            progress.error("Configuration validation", analysis.error)
            return ConnectionResult(
                success=False,
                error=analysis.error,
                validation_details=validation_details(analysis, None),
                progress_steps=progress.summary(),
            )

        validation = validate_bundle(data)
        details = validation_details(analysis, validation)
        if not validation.valid:
            progress.error("Configuration validation", "; ".join(validation.errors))
            return ConnectionResult(
                success=False,
                error=validation_error(validation),
                validation_details=details,
                progress_steps=progress.summary(),
            )

        if check_write_access:
            failure = self._probe_write_access(
                url, branch, auth_type, auth_data, details, progress
            )
            if failure:
                return failure

        return ConnectionResult(
            success=True,
            message=analysis.summary_message(
                "Connection successful! Configuration verified with"
            ),
            read_access=True,
            write_access=True if check_write_access else None,
            branches=branch_count,
            validation_details=details,
            progress_steps=progress.summary(),
        )

    def _probe_write_access(
        self,
        url: str,
        branch: str,
        auth_type: str,
        auth_data: dict | None,
        details: dict | None,
        progress: ProgressLog,
    ) -> ConnectionResult | None:
        label = "Checking write permissions"
        progress.report(label)
        check = self.check_write_permissions(url, branch, auth_type, auth_data)
        if not check.success:
            progress.error(label, check.error)
            return ConnectionResult(
                success=False,
                error=f"Write permission check failed: {check.error}",
                read_access=True,
                write_access=False,
                validation_details=details,
                progress_steps=progress.summary(),
            )
        progress.success(label, "Write access confirmed")
        return None

    def _sparse_test(
        self,
        url: str,
        branch: str,
        auth_type: str,
        auth_data: dict | None,
        parsed: ParsedConfigPath,
        heads: list[str],
        branch_exists: bool,
        check_write_access: bool,
        ctx: AuthContext,
        progress: ProgressLog,
    ) -> ConnectionResult:
        label = "Setting up sparse checkout"
        test_dir = self.temp_dir / f"test-{int(time.time() * 1000)}"

        def fail(error: str, **extra: Any) -> ConnectionResult:
            return ConnectionResult(
                success=False, error=error, progress_steps=progress.summary(), **extra
            )

        progress.report(label, detail="Creating temporary repository")
        try:
            self.transport.init(test_dir, ctx.env)
            self.transport.enable_sparse_checkout(
                test_dir, get_sparse_patterns(parsed), ctx.env
            )
            progress.report(label, detail="Configured sparse checkout")
            self.transport.add_remote(test_dir, ctx.url, ctx.env)

            fetch_ref: str | None = branch
            if not branch_exists:
                if "main" in heads:
                    fetch_ref = "main"
                elif "master" in heads:
                    fetch_ref = "master"
                elif heads:
                    fetch_ref = "HEAD"
                else:
                    fetch_ref = None
                if fetch_ref:
                    progress.report(
                        label,
                        detail=f"Fetching '{fetch_ref}' since '{branch}' will be created later",
                    )

            if fetch_ref:
                try:
                    self.transport.fetch(test_dir, fetch_ref, ctx.env)
                except GitError as e:
                    progress.error(label, "Failed to fetch branch")
                    raw = self._scrub(str(e), ctx, url)
                    return fail(f"Failed to fetch branch '{fetch_ref}': {raw}")
                self.transport.checkout(test_dir, "FETCH_HEAD", ctx.env)
                progress.success(label, "Repository checked out")
            else:
                progress.success(label, "Empty repository, nothing to check out")

            check_dir = config_directory(parsed)
            dir_path = test_dir / check_dir
            dir_exists = dir_path.is_dir()

            if dir_exists and check_write_access:
                conflicts = sorted(
                    p.name
                    for p in dir_path.iterdir()
                    if p.is_file() and "open-headers" in p.name and p.name.endswith(".json")
                )
                if conflicts:
                    progress.error(
                        "Verifying checkout", f"Configuration files already exist in {check_dir}"
                    )
                    return fail(
                        f"Configuration files already exist in '{check_dir}' directory: "
                        f"{', '.join(conflicts)}. Please use a different directory path or "
                        "branch to avoid overwriting existing team configuration."
                    )
                progress.success(
                    "Verifying checkout", f"{check_dir} directory found - no conflicting config files"
                )
            elif dir_exists:
                progress.success("Verifying checkout", f"{check_dir} directory found")
            elif check_write_access:
                progress.success(
                    "Verifying checkout", f"{check_dir} directory will be created on first commit"
                )
                progress.info(
                    "Directory validation",
                    f"Note: The directory '{check_dir}' does not exist yet and will be "
                    "created when you save your configuration",
                )
            else:
                progress.error("Verifying checkout", f"{check_dir} directory not found")
                return fail(
                    f"Configuration directory '{check_dir}' not found in the repository. "
                    "The repository may not contain the expected configuration files."
                )

            if check_write_access:
                progress.success("Searching for configuration files", "Ready for new configuration")
                progress.success("Configuration validation", "New workspace ready")
                failure = self._probe_write_access(
                    url, branch, auth_type, auth_data, None, progress
                )
                if failure:
                    return failure

                will_create_branch = not branch_exists
                will_create_dir = not dir_exists
                message = "New workspace - configuration will be created on first commit"
                if will_create_branch or will_create_dir:
                    message = (
                        "Connection successful! Repository is accessible and you have "
                        "write permissions. "
                    )
                    if will_create_branch and will_create_dir:
                        message += (
                            f"Both the branch '{branch}' and configuration directory will be "
                            "created when you save your workspace configuration."
                        )
                    elif will_create_branch:
                        message += (
                            f"The branch '{branch}' will be created when you save your "
                            "workspace configuration."
                        )
                    else:
                        message += (
                            "The configuration directory will be created when you save "
                            "your workspace configuration."
                        )
                return ConnectionResult(
                    success=True,
                    message=message,
                    read_access=True,
                    write_access=True,
                    branches=len(heads),
                    progress_steps=progress.summary(),
                )

            search_label = "Searching for configuration files"
            progress.report(search_label, detail=f"Path type: {parsed.kind}")
            patterns = get_search_patterns(parsed)
            try:
                detection = detect_and_validate(
                    test_dir, patterns, self._timestamp_fn(test_dir, ctx.env)
                )
            except ConfigNotFoundError:
                progress.error(search_label, "Config files not found or invalid")
                available = self._available_files(test_dir, parsed, ctx)
                progress.error("File search patterns", "No matching files found")
                return fail(
                    get_path_error_message(parsed, available),
                    available_files=available or None,
                    debug_hint=DEBUG_HINT,
                )
            except ConfigParseError as e:
                progress.error(search_label, "Config files not found or invalid")
                return fail(f"Configuration file contains invalid JSON: {e}")

            if not detection.success:
                progress.error("Configuration validation", detection.error)
                return fail(
                    detection.error or "Invalid configuration",
                    validation_details=detection.details(),
                )

            progress.success(search_label, "Found valid configuration")
            progress.success("Configuration validation", "Valid Open Headers configuration found")
            return ConnectionResult(
                success=True,
                message=detection.message,
                read_access=True,
                branches=len(heads),
                validation_details=detection.details(),
                progress_steps=progress.summary(),
            )
        finally:
            self._remove_tree(test_dir)

    def _available_files(
        self, repo_dir: Path, parsed: ParsedConfigPath, ctx: AuthContext
    ) -> list[str]:
        """Lists JSON files near the expected location, for error hints."""
        try:
            names = self.transport.ls_tree_names(repo_dir, "FETCH_HEAD", ctx.env)
        except GitError as e:
            logger.debug(f"Could not list repository files: {e}")
            return []
        dirs = relevant_directories(parsed)
        found = []
        for name in names:
            if not name.endswith(".json"):
                continue
            if any((d == "." and "/" not in name) or name.startswith(f"{d}/") for d in dirs):
                found.append(name)
        return found

    # --- Sync ---

    def sync_workspace(
        self,
        url: str,
        branch: str = DEFAULT_BRANCH,
        path: str = DEFAULT_CONFIG_PATH,
        auth_type: str = DEFAULT_AUTH_TYPE,
        auth_data: dict | None = None,
    ) -> SyncResult:
        """Fetches the latest configuration bundle from a repository.

        The sparse working tree is cached under `temp_dir/<md5(url)>` and
        reused by later syncs.

        Args:
            url (str): Repository URL.
            branch (str): Branch to read.
            path (str): Raw configuration path.
            auth_type (str): Auth scheme.
            auth_data (dict | None): Credentials for the auth scheme.

        Returns:
            SyncResult: The bundle and commit metadata, or an error.
        """
        if not self.transport.find_git():
            return SyncResult(success=False, error=GIT_NOT_FOUND_MESSAGE)

        parsed = parse_config_path(path)
        repo_dir = self.temp_dir / repo_hash(url)
        ctx: AuthContext | None = None
        try:
            ctx = self._prepare_auth(url, auth_type, auth_data)
            self._materialize(url, repo_dir, branch, parsed, ctx)

            commit_hash = self.transport.rev_parse_head(repo_dir, ctx.env)
            commit_info = self.transport.last_commit_info(repo_dir, ctx.env)

            try:
                detection = detect_and_validate(
                    repo_dir,
                    get_search_patterns(parsed),
                    self._timestamp_fn(repo_dir, ctx.env),
                )
            except ConfigNotFoundError:
                return SyncResult(
                    success=False,
                    error=get_path_error_message(
                        parsed, self._local_json_files(repo_dir, parsed)
                    ),
                )
            if not detection.success:
                return SyncResult(success=False, error=detection.error)

            logger.info(
                f"SYNC: {sanitize_url(url)}@{branch} at {commit_hash[:8]} "
                f"({commit_info.message})"
            )
            return SyncResult(
                success=True,
                data=detection.data,
                commit_hash=commit_hash,
                commit_info=commit_info,
            )
        except (GitError, AuthSetupError, ConfigParseError, OSError) as e:
            message = self._scrub(str(e), ctx, url) or "Failed to sync workspace"
            logger.error(f"Git sync error: {message}")
            return SyncResult(success=False, error=message)

    @staticmethod
    def _local_json_files(repo_dir: Path, parsed: ParsedConfigPath) -> list[str]:
        found = []
        for directory in relevant_directories(parsed):
            dir_path = repo_dir / directory
            if not dir_path.is_dir():
                continue
            for child in sorted(dir_path.iterdir()):
                if child.suffix == ".json":
                    found.append(child.relative_to(repo_dir).as_posix())
        return found

    # --- Commit ---

    def commit_configuration(
        self,
        url: str,
        files: dict[str, str | dict | list],
        branch: str = DEFAULT_BRANCH,
        path: str = "config",
        message: str | None = None,
        auth_type: str = DEFAULT_AUTH_TYPE,
        auth_data: dict | None = None,
        progress: ProgressLog | None = None,
    ) -> CommitResult:
        """Writes configuration files into the repository and pushes them.

        Args:
            url (str): Repository URL.
            files (dict[str, str | dict | list]): File name to content. Non-string
                content is written as indented JSON.
            branch (str): Target branch, created if missing.
            path (str): Repository directory the files go into.
            message (str | None): Commit message. Defaults to a file listing.
            auth_type (str): Auth scheme.
            auth_data (dict | None): Credentials for the auth scheme.
            progress (ProgressLog | None): Receives step updates.

        Returns:
            CommitResult: Commit metadata, `no_changes`, or an error.
        """
        progress = progress or ProgressLog()
        if not self.transport.find_git():
            return CommitResult(success=False, error="Git executable not found")

        progress.report("Preparing repository")
        repo_dir = self.temp_dir / repo_hash(url)
        directory = path.strip().strip("/") or "."
        parsed = FolderPath(directory if directory != "." else "")
        ctx: AuthContext | None = None
        try:
            progress.report("Setting up authentication")
            ctx = self._prepare_auth(url, auth_type, auth_data)
            progress.success("Setting up authentication", "Authentication configured")

            self._materialize(url, repo_dir, branch, parsed, ctx, progress)
            progress.success("Preparing repository")

            progress.report("Writing configuration files")
            target = repo_dir / directory
            target.mkdir(parents=True, exist_ok=True)
            written = []
            for name, content in files.items():
                text = content if isinstance(content, str) else json.dumps(content, indent=2)
                (target / name).write_text(text, encoding="utf-8")
                written.append(f"{directory}/{name}" if directory != "." else name)
            progress.success("Writing configuration files", f"Wrote {len(written)} files")

            progress.report("Staging changes")
            self.transport.add(repo_dir, directory, ctx.env)
            progress.success("Staging changes", "Changes staged")

            if not self.transport.status_porcelain(repo_dir, ctx.env):
                logger.info("COMMIT: No changes to commit.")
                return CommitResult(
                    success=True,
                    no_changes=True,
                    message="No changes to commit - files are already up to date",
                    files=written,
                    progress_steps=progress.summary(),
                )

            progress.report("Creating commit")
            commit_message = message or (
                "Update Open Headers configuration\n\nUpdated files:\n"
                + "\n".join(f"- {f}" for f in written)
            )
            self.transport.commit(repo_dir, commit_message, ctx.env)
            progress.success("Creating commit", "Commit created")

            progress.report("Pushing changes")
            self.transport.push(repo_dir, branch, ctx.env)
            progress.success("Pushing changes", "Changes pushed successfully")

            commit_hash = self.transport.rev_parse_head(repo_dir, ctx.env)
            logger.info(f"COMMIT: Pushed {commit_hash[:8]} to {sanitize_url(url)}@{branch}")
            return CommitResult(
                success=True,
                commit_hash=commit_hash,
                commit_info=self.transport.last_commit_info(repo_dir, ctx.env),
                files=written,
                progress_steps=progress.summary(),
            )
        except (GitError, AuthSetupError, OSError) as e:
            error = self._scrub(str(e), ctx, url)
            logger.error(f"Commit failed: {error}")
            progress.error("Git operation failed", error)
            return CommitResult(success=False, error=error, progress_steps=progress.summary())

    # --- Branches and permissions ---

    def check_write_permissions(
        self,
        url: str,
        branch: str = DEFAULT_BRANCH,
        auth_type: str = DEFAULT_AUTH_TYPE,
        auth_data: dict | None = None,
    ) -> OperationResult:
        """Verifies push access with a throwaway commit and a dry-run push.

        Nothing is ever pushed; the disposable repository is always removed.

        Returns:
            OperationResult: Success, or the reason write access is missing.
        """
        if not self.transport.find_git():
            return OperationResult(success=False, error="Git executable not found")

        repo_dir = self.temp_dir / f"write-test-{repo_hash(url)}"
        ctx: AuthContext | None = None
        try:
            ctx = self._prepare_auth(url, auth_type, auth_data)
            self.transport.init(repo_dir, ctx.env)
            self.transport.add_remote(repo_dir, ctx.url, ctx.env)

            heads = self.transport.ls_remote_heads(ctx.url, ctx.env)
            if not heads:
                # Empty repository: nothing to fetch, start from an orphan branch.
                logger.info(f"Write check on empty repository {sanitize_url(url)}")
                self.transport.checkout(repo_dir, None, ctx.env, new_branch=branch, orphan=True)
            else:
                branch_exists = branch in heads
                fetch_ref = branch if branch_exists else detect_default_branch(heads)
                self.transport.fetch(
                    repo_dir, fetch_ref, ctx.env, timeout=self.transport.config.medium_timeout
                )
                if branch_exists:
                    self.transport.checkout(
                        repo_dir, f"origin/{branch}", ctx.env, new_branch=branch
                    )
                else:
                    self.transport.checkout(repo_dir, "FETCH_HEAD", ctx.env, new_branch=branch)

            (repo_dir / WRITE_TEST_FILE).write_text(f"Write test at {time.ctime()}")
            try:
                self.transport.add(repo_dir, ".", ctx.env)
                self.transport.commit(repo_dir, "Test write permissions", ctx.env)
                self.transport.push_dry_run(repo_dir, f"HEAD:{branch}", ctx.env)
            except GitCommandError as e:
                details = self._scrub(str(e), ctx, url)
                if "dry run" in details.lower():
                    return OperationResult(success=True)
                logger.warning(f"Write check failed for {sanitize_url(url)}: {details}")
                return OperationResult(
                    success=False,
                    error="No write permissions to repository",
                    details=details,
                )
            return OperationResult(success=True)
        except (GitError, AuthSetupError, OSError) as e:
            return OperationResult(success=False, error=self._scrub(str(e), ctx, url))
        finally:
            self._remove_tree(repo_dir)

    def create_branch(
        self,
        url: str,
        branch: str,
        from_branch: str = DEFAULT_BRANCH,
        auth_type: str = DEFAULT_AUTH_TYPE,
        auth_data: dict | None = None,
    ) -> OperationResult:
        """Creates `branch` on the remote from `from_branch`.

        Works in a disposable repository so branches left in the sync cache
        never collide with the new one.
        """
        if not self.transport.find_git():
            return OperationResult(success=False, error="Git executable not found")

        repo_dir = self.temp_dir / f"branch-{repo_hash(url)}"
        ctx: AuthContext | None = None
        try:
            ctx = self._prepare_auth(url, auth_type, auth_data)
            self._remove_tree(repo_dir)
            self.transport.init(repo_dir, ctx.env)
            self.transport.add_remote(repo_dir, ctx.url, ctx.env)

            medium = self.transport.config.medium_timeout
            self.transport.fetch(repo_dir, from_branch, ctx.env, depth=None, timeout=medium)
            self.transport.checkout(
                repo_dir, f"origin/{from_branch}", ctx.env, new_branch=branch
            )
            self.transport.push(repo_dir, branch, ctx.env, timeout=medium)
            logger.info(f"BRANCH: Created '{branch}' from '{from_branch}'.")
            return OperationResult(
                success=True, message=f"Branch '{branch}' created successfully"
            )
        except (GitError, AuthSetupError, OSError) as e:
            error = self._scrub(str(e), ctx, url)
            logger.error(f"Failed to create branch: {error}")
            return OperationResult(success=False, error=f"Failed to create branch: {error}")
        finally:
            self._remove_tree(repo_dir)

    # --- Cleanup ---

    def cleanup_repository(self, url: str) -> None:
        """Removes the cached tree for `url` and any leftover connection tests.

        Raises:
            OSError: If the cached tree could not be removed.
        """
        repo_dir = self.temp_dir / repo_hash(url)
        if repo_dir.exists():
            self.transport.system.remove_tree(repo_dir)
            logger.info(f"Cleaned up repository: {repo_dir}")

        if not self.temp_dir.is_dir():
            return
        for child in self.temp_dir.iterdir():
            if child.is_dir() and child.name.startswith("test-"):
                try:
                    self.transport.system.remove_tree(child)
                except OSError as e:
                    logger.error(f"Failed to remove test repository {child.name}: {e}")
