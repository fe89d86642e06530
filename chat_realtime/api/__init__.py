"""
REST API client and schemas.
"""

from chat_realtime.api.rest import ChatAPI
from chat_realtime.api.schemas import (
    ChannelStateResponse,
    QueryChannelsResponse,
    QueryUsersResponse,
    normalize_sort,
)

__all__ = [
    "ChatAPI",
    "ChannelStateResponse",
    "QueryChannelsResponse",
    "QueryUsersResponse",
    "normalize_sort",
]
