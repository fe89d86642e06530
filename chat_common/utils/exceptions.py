"""
Centralized client exceptions for consistent error handling.

Every failure the SDK surfaces is a ChatClientError. Construction logs the
error with its context, so callers never need to log before raising.

Usage:
    from chat_common.utils.exceptions import NotFoundError, AuthError

    raise NotFoundError("Channel", "messaging:general")
    raise AuthError("token signature is invalid", status_code=401)
"""

from typing import Any

from chat_common.config.logging import get_logger

logger = get_logger(__name__)


class ChatClientError(Exception):
    """
    Base exception with automatic logging.

    Attributes:
        message: Human readable description.
        status_code: HTTP status when the error came from the REST API.
        code: Backend error code when the error came from the REST API.
        context: Structured context that was logged with the error.
    """

    log_level: str = "warning"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        log_level: str | None = None,
        **log_context: Any,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.context = log_context

        log_fn = getattr(logger, log_level or self.log_level, logger.warning)
        log_fn(
            message,
            error=type(self).__name__,
            status_code=status_code,
            code=code,
            **log_context,
        )

        super().__init__(message)


# =============================================================================
# Connection errors
# =============================================================================


class AuthError(ChatClientError):
    """
    Credentials rejected by the transport handshake or the REST API.

    Fatal to the connection attempt: never retried automatically.
    """

    log_level = "error"


class NetworkError(ChatClientError):
    """
    Transport unreachable.

    Retried by the connection manager's backoff policy and surfaced only
    once the attempt budget is exhausted.
    """

    def __init__(self, message: str, *, attempts: int | None = None, **kwargs: Any):
        self.attempts = attempts
        super().__init__(message, attempts=attempts, **kwargs)


class NotConnectedError(ChatClientError):
    """An operation needs a live realtime connection and there is none."""


# =============================================================================
# Event errors
# =============================================================================


class ValidationError(ChatClientError):
    """
    Malformed frame, unknown event type, or invalid client-side payload.

    Raised inside the dispatcher for inbound frames, where it is contained
    and counted; never surfaced as a session-level failure.
    """

    log_level = "debug"


class StateConflictError(ChatClientError):
    """
    An update event references a record that has no local counterpart.

    Advisory: the event is dropped and the store is left untouched.
    """

    log_level = "info"


# =============================================================================
# Per-watch / REST errors
# =============================================================================


class PermissionDeniedError(ChatClientError):
    """The backend rejected access to a channel or resource (403)."""


class NotFoundError(ChatClientError):
    """
    Resource not found (404).

    Usage:
        raise NotFoundError("Channel", "messaging:general")
    """

    def __init__(self, entity: str, entity_id: str | None = None, **kwargs: Any):
        self.entity = entity
        self.entity_id = entity_id
        if entity_id is not None:
            message = f"{entity} {entity_id} not found"
        else:
            message = f"{entity} not found"
        super().__init__(message, entity=entity, entity_id=entity_id, **kwargs)


class APIError(ChatClientError):
    """Any other non-2xx REST response."""


class ConnectionClosedError(NetworkError):
    """The realtime socket closed underneath the client."""

    def __init__(self, message: str, *, close_code: int | None = None, **kwargs: Any):
        self.close_code = close_code
        super().__init__(message, close_code=close_code, **kwargs)
