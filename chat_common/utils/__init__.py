"""
Utilities: exceptions.
"""

from chat_common.utils.exceptions import (
    ChatClientError,
    AuthError,
    NetworkError,
    ConnectionClosedError,
    NotConnectedError,
    ValidationError,
    StateConflictError,
    PermissionDeniedError,
    NotFoundError,
    APIError,
)

__all__ = [
    "ChatClientError",
    "AuthError",
    "NetworkError",
    "ConnectionClosedError",
    "NotConnectedError",
    "ValidationError",
    "StateConflictError",
    "PermissionDeniedError",
    "NotFoundError",
    "APIError",
]
