"""
Local state: channel stores and the shared user cache.
"""

from chat_realtime.components.state.channel_state import (
    ChannelState,
    MessageList,
    StateReplacement,
)
from chat_realtime.components.state.models import (
    ChannelSnapshot,
    Member,
    Message,
    ReadState,
)
from chat_realtime.components.state.users import User, UserCache

__all__ = [
    # Stores
    "ChannelState",
    "MessageList",
    "StateReplacement",
    # Value objects
    "ChannelSnapshot",
    "Member",
    "Message",
    "ReadState",
    # Users
    "User",
    "UserCache",
]
