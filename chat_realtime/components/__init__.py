"""
Realtime Client Components.

Organized into domain-specific modules:
- core/       - Constants and cid helpers
- events/     - Event vocabulary, typed events, listeners, dispatcher
- connection/ - Transport, handshake, heartbeat, connection manager
- resilience/ - Reconnect backoff
- state/      - Channel stores and the user cache

Public symbols are re-exported here; internal code imports from the
specific submodules.
"""

# =============================================================================
# Core Components
# =============================================================================
from chat_realtime.components.core.constants import (
    AUTH_CLOSE_CODES,
    GLOBAL_SCOPE,
    CloseCode,
    RealtimeConstants,
    build_cid,
    split_cid,
)

# =============================================================================
# Event Components
# =============================================================================
from chat_realtime.components.events.types import (
    VALID_EVENT_TYPES,
    ChatEvent,
    EventType,
    is_valid_event_type,
    parse_event,
)
from chat_realtime.components.events.timestamps import normalize_timestamp
from chat_realtime.components.events.listeners import ListenerRegistry, Subscription
from chat_realtime.components.events.dispatcher import EventDispatcher

# =============================================================================
# Connection Components
# =============================================================================
from chat_realtime.components.connection.heartbeat import HealthCheckPinger, HealthMonitor
from chat_realtime.components.connection.transport import (
    Handshake,
    Transport,
    WebSocketTransport,
)
from chat_realtime.components.connection.manager import ConnectionManager, ConnectionState

# =============================================================================
# Resilience Components
# =============================================================================
from chat_realtime.components.resilience.retry import Backoff, RetryConfig

# =============================================================================
# State Components
# =============================================================================
from chat_realtime.components.state.channel_state import ChannelState
from chat_realtime.components.state.models import ChannelSnapshot, Member, Message, ReadState
from chat_realtime.components.state.users import User, UserCache

__all__ = [
    # Core
    "AUTH_CLOSE_CODES",
    "GLOBAL_SCOPE",
    "CloseCode",
    "RealtimeConstants",
    "build_cid",
    "split_cid",
    # Events
    "VALID_EVENT_TYPES",
    "ChatEvent",
    "EventType",
    "is_valid_event_type",
    "parse_event",
    "normalize_timestamp",
    "ListenerRegistry",
    "Subscription",
    "EventDispatcher",
    # Connection
    "HealthCheckPinger",
    "HealthMonitor",
    "Handshake",
    "Transport",
    "WebSocketTransport",
    "ConnectionManager",
    "ConnectionState",
    # Resilience
    "Backoff",
    "RetryConfig",
    # State
    "ChannelState",
    "ChannelSnapshot",
    "Member",
    "Message",
    "ReadState",
    "User",
    "UserCache",
]
