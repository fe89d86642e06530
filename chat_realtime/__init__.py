"""
Realtime chat client.

ChatSession is the entry point: it owns the connection, the listener
registry and the local store of every watched channel.
"""

from chat_realtime.session import ChatSession
from chat_realtime.api.rest import ChatAPI
from chat_realtime.components.connection.manager import ConnectionState
from chat_realtime.components.events.types import EventType

__all__ = [
    "ChatSession",
    "ChatAPI",
    "ConnectionState",
    "EventType",
]
