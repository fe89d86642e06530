"""
Core components: constants and cid helpers.
"""

from chat_realtime.components.core.constants import (
    AUTH_CLOSE_CODES,
    GLOBAL_SCOPE,
    LOCAL_EVENT_TYPES,
    CloseCode,
    HasStats,
    RealtimeConstants,
    build_cid,
    split_cid,
)

__all__ = [
    "AUTH_CLOSE_CODES",
    "GLOBAL_SCOPE",
    "LOCAL_EVENT_TYPES",
    "CloseCode",
    "HasStats",
    "RealtimeConstants",
    "build_cid",
    "split_cid",
]
