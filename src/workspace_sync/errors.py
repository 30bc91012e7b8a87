"""Exception types and Git failure classification.

Internal layers raise these; the orchestrator and scheduler convert them into
structured results at their public boundary.
"""

from dataclasses import dataclass


class GitError(RuntimeError):
    """Base class for failures talking to Git."""


class GitNotFoundError(GitError):
    """Raised when no usable Git executable could be located."""

    def __init__(self, message: str = "Git executable not found") -> None:
        super().__init__(message)


class GitCommandError(GitError):
    """A Git subprocess exited with a non-zero status.

    Attributes:
        command (list[str]): The argument vector that failed.
        stderr (str): The raw diagnostic text emitted by Git.
    """

    def __init__(self, command: list[str], stderr: str, returncode: int = 1):
        self.command = command
        self.stderr = stderr.strip()
        self.returncode = returncode
        super().__init__(f"Git error: {self.stderr or f'exit status {returncode}'}")


class GitTimeoutError(GitError):
    """A Git subprocess exceeded its timeout tier."""

    def __init__(self, command: list[str], timeout: float):
        self.command = command
        self.timeout = timeout
        verb = command[0] if command else "git"
        super().__init__(f"Git {verb} timed out after {timeout:g}s")


class AuthSetupError(ValueError):
    """Authentication material is missing or malformed."""


class ConfigNotFoundError(FileNotFoundError):
    """No configuration file matched the requested search patterns."""


class ConfigParseError(ValueError):
    """A configuration file exists but is not valid JSON."""


AUTH_ERROR = "AUTH_ERROR"
NETWORK_ERROR = "NETWORK_ERROR"
REPO_NOT_FOUND = "REPO_NOT_FOUND"
BRANCH_NOT_FOUND = "BRANCH_NOT_FOUND"
UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class ErrorClassification:
    """A user-facing interpretation of a raw Git failure.

    Attributes:
        error_type (str): One of the module-level error type constants.
        message (str): Short remediation message.
        hint (str): Longer debugging hint, possibly empty.
        raw (str): The original failure text.
    """

    error_type: str
    message: str
    hint: str
    raw: str


def classify_git_error(raw: str) -> ErrorClassification:
    """Maps raw Git diagnostic text to a remediation message.

    Args:
        raw (str): The error text (stderr or exception message).

    Returns:
        ErrorClassification: The classified error.
    """
    if "Permission denied" in raw or "Authentication failed" in raw:
        return ErrorClassification(
            AUTH_ERROR,
            "Authentication failed. Please check your credentials.",
            'For GitHub: Ensure your token has "repo" scope. '
            "For private repos, the token needs read access.",
            raw,
        )
    if "Could not resolve host" in raw:
        return ErrorClassification(
            NETWORK_ERROR,
            "Could not connect to the Git server. Please check the URL.",
            "Verify the repository URL is correct and you have internet connection.",
            raw,
        )
    if "Repository not found" in raw:
        return ErrorClassification(
            REPO_NOT_FOUND,
            "Repository not found. Please check the URL and permissions.",
            "Ensure the repository exists and your token/credentials have access to it.",
            raw,
        )
    if "couldn't find remote ref" in raw:
        return ErrorClassification(
            BRANCH_NOT_FOUND,
            "The requested branch does not exist in the repository.",
            "Check the branch name or create the branch first.",
            raw,
        )
    return ErrorClassification(UNKNOWN_ERROR, raw, "", raw)


def error_hint(raw: str) -> str:
    """Returns a generic hint for a raw error, keyed on broad keywords."""
    message = raw.lower()
    if any(k in message for k in ("permission denied", "authentication", "unauthorized")):
        return "Please check your authentication credentials and repository permissions."
    if any(k in message for k in ("could not resolve host", "network", "timed out")):
        return "Please check your internet connection and the repository URL."
    if "repository not found" in message or "does not exist" in message:
        return "The repository was not found. Please verify the URL is correct."
    if "invalid" in message or "malformed" in message:
        return "The repository URL appears to be invalid. Please check the format."
    return "An unexpected error occurred. Please check the repository URL and try again."
