import logging
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class NetworkState:
    """A snapshot of connectivity.

    Attributes:
        is_online (bool): Whether the host currently has network access.
    """

    is_online: bool = True


NetworkListener = Callable[[NetworkState, NetworkState], None]


class NetworkMonitor:
    """Holds the current connectivity state and notifies subscribers of changes.

    The state is pushed in from outside (an OS hook, a CLI flag or a test);
    listeners receive `(old_state, new_state)` on every transition.
    """

    def __init__(self, is_online: bool = True):
        self._state = NetworkState(is_online)
        self._listeners: list[NetworkListener] = []
        self._lock = threading.Lock()

    def get_state(self) -> NetworkState:
        return self._state

    def subscribe(self, listener: NetworkListener) -> Callable[[], None]:
        """Registers a listener and returns a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, is_online: bool) -> None:
        with self._lock:
            old = self._state
            if old.is_online == is_online:
                return
            self._state = NetworkState(is_online)
            listeners = list(self._listeners)

        logger.info(f"NETWORK: {'Online' if is_online else 'Offline'}")
        for listener in listeners:
            try:
                listener(old, self._state)
            except Exception:
                logger.exception("Network listener failed")


def get_remote_host(url: str) -> str | None:
    """Extracts the hostname from a git remote URL.

    Supports both SSH (git@...) and HTTPS (https://...) formats.

    Args:
        url (str): The remote URL.

    Returns:
        str | None: The hostname (e.g., 'github.com') or None if parsing fails.
    """
    if "://" in url:
        netloc = url.split("://", 1)[1].split("/", 1)[0]
        host = netloc.rsplit("@", 1)[-1]
        return host.split(":", 1)[0] or None
    # Handle SSH: git@github.com:user/repo.git
    if "@" in url:
        return url.split("@", 1)[1].split(":", 1)[0] or None
    return None


def is_remote_reachable(host: str | None, timeout: float = 3) -> bool:
    """Performs a quick TCP connectivity check on the remote host.

    Args:
        host (str | None): The hostname to check.
        timeout (float): Per-port connection timeout in seconds.

    Returns:
        bool: True if the host accepts connections on port 443 or 22, False otherwise.
    """
    if not host:
        return False

    for port in (443, 22):
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            continue
    return False
