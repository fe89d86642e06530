"""
Realtime connection: transport, heartbeat and lifecycle management.
"""

from chat_realtime.components.connection.heartbeat import (
    HealthCheckPinger,
    HealthMonitor,
)
from chat_realtime.components.connection.manager import (
    ConnectionManager,
    ConnectionState,
)
from chat_realtime.components.connection.transport import (
    Handshake,
    Transport,
    TransportFactory,
    WebSocketTransport,
    parse_handshake,
    split_frames,
)

__all__ = [
    # Heartbeat
    "HealthCheckPinger",
    "HealthMonitor",
    # Lifecycle
    "ConnectionManager",
    "ConnectionState",
    # Transport
    "Handshake",
    "Transport",
    "TransportFactory",
    "WebSocketTransport",
    "parse_handshake",
    "split_frames",
]
