"""Authentication strategies for remote Git access.

Each strategy turns a workspace's `auth_type` / `auth_data` pair into an
`AuthContext`: the URL to hand to Git and any environment overrides.
"""

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from .constants import APP_NAME
from .errors import AuthSetupError

logger = logging.getLogger(APP_NAME)

# Provider -> (username, password) given a token. "{token}" is substituted.
_TOKEN_CREDENTIALS = {
    "github": ("{token}", "x-oauth-basic"),
    "gitlab": ("oauth2", "{token}"),
    "bitbucket": ("x-token-auth", "{token}"),
    "azure": ("token", "{token}"),
    "generic": ("token", "{token}"),
}


@dataclass
class AuthContext:
    """Prepared authentication for a single operation.

    Attributes:
        url (str): The URL to pass to Git, possibly embedding credentials.
        env (dict[str, str]): Environment overrides (e.g. GIT_SSH_COMMAND).
        key_file (Path | None): SSH key material written for this operation.
        description (str): Human-readable summary for progress output.
    """

    url: str
    env: dict[str, str] = field(default_factory=dict)
    key_file: Path | None = None
    description: str = "Using system Git configuration"


def sanitize_url(url: str) -> str:
    """Removes any embedded credentials from a URL for display or logging."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.netloc or "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def _with_credentials(url: str, username: str, password: str) -> str:
    if not url:
        raise AuthSetupError("Repository URL is required")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise AuthSetupError(f"Failed to parse Git URL: {url}")
    host = parts.netloc.rsplit("@", 1)[-1]
    netloc = f"{quote(username, safe='')}:{quote(password, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def detect_token_type(url: str) -> str:
    """Infers the hosting provider from a repository URL's hostname.

    Args:
        url (str): The repository URL.

    Returns:
        str: One of 'github', 'gitlab', 'bitbucket', 'azure' or 'generic'.
    """
    host = (urlsplit(url).hostname or "").lower()
    if "github" in host:
        return "github"
    if "gitlab" in host:
        return "gitlab"
    if "bitbucket" in host:
        return "bitbucket"
    if "azure" in host or "visualstudio" in host:
        return "azure"
    return "generic"


class AuthStrategy:
    """Base class: no authentication beyond the user's own Git configuration."""

    auth_type = "none"

    def validate(self, auth_data: dict) -> list[str]:
        """Returns a list of problems with the supplied auth data."""
        return []

    def prepare(self, url: str, auth_data: dict, ssh_dir: Path) -> AuthContext:
        """Builds the context for a single Git operation.

        Args:
            url (str): The repository URL.
            auth_data (dict): Scheme-specific credentials.
            ssh_dir (Path): Directory for generated key files.

        Returns:
            AuthContext: The prepared context.

        Raises:
            AuthSetupError: If credentials are missing or malformed.
        """
        return AuthContext(url=url)


class TokenAuthStrategy(AuthStrategy):
    """Personal access token embedded in an HTTPS URL."""

    auth_type = "token"

    def validate(self, auth_data: dict) -> list[str]:
        if not auth_data.get("token"):
            return ["Access token is required for token authentication"]
        return []

    def prepare(self, url: str, auth_data: dict, ssh_dir: Path) -> AuthContext:
        if errors := self.validate(auth_data):
            raise AuthSetupError(errors[0])

        token = auth_data["token"]
        token_type = auth_data.get("tokenType") or "auto"
        if token_type == "auto":
            token_type = detect_token_type(url)

        username, password = _TOKEN_CREDENTIALS.get(
            token_type, _TOKEN_CREDENTIALS["generic"]
        )
        auth_url = _with_credentials(
            url, username.format(token=token), password.format(token=token)
        )
        return AuthContext(
            url=auth_url, description=f"Token authentication configured ({token_type})"
        )


class BasicAuthStrategy(AuthStrategy):
    """Username and password embedded in an HTTPS URL."""

    auth_type = "basic"

    def validate(self, auth_data: dict) -> list[str]:
        if not auth_data.get("username") or not auth_data.get("password"):
            return ["Username and password are required for basic authentication"]
        return []

    def prepare(self, url: str, auth_data: dict, ssh_dir: Path) -> AuthContext:
        if errors := self.validate(auth_data):
            raise AuthSetupError(errors[0])
        auth_url = _with_credentials(url, auth_data["username"], auth_data["password"])
        return AuthContext(url=auth_url, description="Basic authentication configured")


class SSHAuthStrategy(AuthStrategy):
    """Private key written to a restricted file and passed via GIT_SSH_COMMAND."""

    auth_type = "ssh-key"

    @staticmethod
    def _key(auth_data: dict) -> str:
        return auth_data.get("sshKey") or auth_data.get("privateKey") or ""

    def validate(self, auth_data: dict) -> list[str]:
        key = self._key(auth_data)
        if not key.strip():
            return ["SSH key content is required"]
        if "-----BEGIN" not in key or "-----END" not in key:
            return ["Invalid SSH key format"]
        return []

    def prepare(self, url: str, auth_data: dict, ssh_dir: Path) -> AuthContext:
        if errors := self.validate(auth_data):
            raise AuthSetupError(errors[0])

        key = self._key(auth_data)
        if not key.endswith("\n"):
            key += "\n"  # OpenSSH rejects keys without a trailing newline.

        digest = hashlib.md5(key.encode()).hexdigest()
        key_file = ssh_dir / f"git-ssh-key-{digest}"
        try:
            ssh_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(key)
            os.chmod(key_file, 0o600)
        except OSError as e:
            raise AuthSetupError(f"Failed to setup SSH key: {e}") from e

        if auth_data.get("sshPassphrase") or auth_data.get("passphrase"):
            logger.warning("SSH keys with passphrases require an ssh-agent; ignoring.")

        command = (
            f'ssh -i "{key_file}" -o StrictHostKeyChecking=no '
            "-o UserKnownHostsFile=/dev/null -o BatchMode=yes"
        )
        return AuthContext(
            url=url,
            env={"GIT_SSH_COMMAND": command},
            key_file=key_file,
            description="SSH key authentication configured",
        )


def get_auth_strategy(auth_type: str | None) -> AuthStrategy:
    """Factory function to retrieve the strategy for an auth type.

    Args:
        auth_type (str | None): 'none', 'token', 'basic' or 'ssh-key'.

    Returns:
        AuthStrategy: The matching strategy; unknown types fall back to 'none'.
    """
    if auth_type == "token":
        return TokenAuthStrategy()
    elif auth_type == "basic":
        return BasicAuthStrategy()
    elif auth_type == "ssh-key":
        return SSHAuthStrategy()
    else:
        return AuthStrategy()
