"""
Realtime Client Constants.

Centralized constants with documentation explaining the value of each.
Values that applications may need to tune live in chat_common settings.
"""

from enum import IntEnum
from typing import Final, Protocol

__all__ = [
    "AUTH_CLOSE_CODES",
    "CloseCode",
    "RealtimeConstants",
    "GLOBAL_SCOPE",
    "LOCAL_EVENT_TYPES",
    "HasStats",
    "build_cid",
    "split_cid",
]


class CloseCode(IntEnum):
    """
    WebSocket close codes the client understands.

    Standard codes (1000-1999) from RFC 6455.
    Application codes (4000-4999) sent by the chat backend.
    """

    # Standard codes (RFC 6455)
    NORMAL = 1000  # Normal closure, used by disconnect()
    GOING_AWAY = 1001  # Server shutting down
    POLICY_VIOLATION = 1008  # Generic policy violation
    SERVER_ERROR = 1011  # Unexpected server error

    # Application codes
    HEALTH_CHECK_TIMEOUT = 4000  # Client closed the socket after a missed heartbeat
    AUTH_FAILED = 4001  # Token rejected or expired
    FORBIDDEN = 4003  # Valid token without access to the app


# Close codes that mean the credentials were rejected; never retried
AUTH_CLOSE_CODES: Final[frozenset[int]] = frozenset({
    CloseCode.POLICY_VIOLATION,
    CloseCode.AUTH_FAILED,
    CloseCode.FORBIDDEN,
})


class RealtimeConstants:
    """
    Operational constants of the realtime client.

    Not configurable (internal implementation details):
    - Tracker capacities
    - Snapshot limits
    """

    # MAX_UNKNOWN_EVENT_TYPES: 100
    # Bounds memory if the backend rolls out many new event types before
    # the client is upgraded. 100 unique types costs a few KB at most.
    MAX_UNKNOWN_EVENT_TYPES: Final[int] = 100

    # MAX_SYNCED_WATCHERS: 100
    # Large channels cap the watcher list the backend syncs, which is why
    # watcher_count is read from events instead of counted locally.
    MAX_SYNCED_WATCHERS: Final[int] = 100

    # DROP_LOG_INTERVAL: 100
    # Log every 100th dropped frame after the first to avoid log spam when
    # a misbehaving backend floods the socket with invalid frames.
    DROP_LOG_INTERVAL: Final[int] = 100

    # CLOSE_TIMEOUT: 2 seconds
    # Upper bound on waiting for the closing handshake in disconnect().
    CLOSE_TIMEOUT: Final[float] = 2.0


# Listener scope for events delivered regardless of channel
GLOBAL_SCOPE: Final[str] = "*"

# Event types synthesized by the connection manager. Frames carrying these
# types from the transport are dropped instead of forwarded.
LOCAL_EVENT_TYPES: Final[frozenset[str]] = frozenset({
    "connection.changed",
    "connection.recovered",
})


def build_cid(channel_type: str, channel_id: str) -> str:
    """Channel identifier used as the routing key: ``<type>:<id>``."""
    return f"{channel_type}:{channel_id}"


def split_cid(cid: str) -> tuple[str, str]:
    """
    Inverse of build_cid.

    Raises:
        ValueError: If cid has no type prefix.
    """
    channel_type, sep, channel_id = cid.partition(":")
    if not sep or not channel_type or not channel_id:
        raise ValueError(f"Invalid cid: {cid!r}")
    return channel_type, channel_id


class HasStats(Protocol):
    """
    Protocol for components that provide statistics.

    All stats methods should return a dict with string keys.
    """

    def get_stats(self) -> dict[str, int | float | str]:
        """Return component statistics as a dictionary."""
        ...
