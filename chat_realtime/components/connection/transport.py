"""
Realtime transport.

A Transport is one socket epoch: open() performs the handshake, recv()
yields raw frames one at a time, close() ends it. The connection manager
creates a fresh transport for every attempt through a factory, so tests
plug in an in-memory transport without touching the manager.

WebSocketTransport is the production implementation on top of the
``websockets`` library.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from chat_common.config.logging import get_logger, mask_token
from chat_common.config.settings import Settings, get_settings
from chat_common.security.tokens import Credentials
from chat_common.utils.exceptions import (
    AuthError,
    ConnectionClosedError,
    NetworkError,
    NotConnectedError,
)
from chat_realtime.components.core.constants import (
    AUTH_CLOSE_CODES,
    CloseCode,
    RealtimeConstants,
)
from chat_realtime.components.events.types import EventType

logger = get_logger(__name__)

# HTTP statuses on the upgrade request that mean the credentials were rejected
AUTH_HTTP_STATUSES = frozenset({401, 403})


@dataclass(frozen=True, slots=True)
class Handshake:
    """
    Result of a successful open().

    Attributes:
        connection_id: Server-assigned id of the socket.
        me: The connected user as returned by the backend.
        recovered: True when the backend resumed the previous session, so
            no event was missed while the socket was down.
        raw: The handshake frame as received.
    """

    connection_id: str
    me: dict[str, Any] = field(default_factory=dict)
    recovered: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


class Transport(Protocol):
    """One realtime socket epoch."""

    async def open(
        self,
        credentials: Credentials,
        resume_connection_id: str | None = None,
    ) -> Handshake:
        """
        Connect and wait for the handshake frame.

        Raises:
            AuthError: Credentials rejected.
            NetworkError: Anything else that prevents the connection.
        """
        ...

    async def recv(self) -> str | bytes:
        """
        Next raw frame.

        Raises:
            AuthError: The backend closed the socket over credentials.
            ConnectionClosedError: The socket closed for any other reason.
        """
        ...

    async def send(self, frame: dict[str, Any]) -> None:
        ...

    async def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        ...


TransportFactory = Callable[[], Transport]


def split_frames(payload: str | bytes) -> list[str | bytes]:
    """
    Split a websocket message carrying newline-delimited JSON documents.

    The backend may batch several events in one message; blank lines are
    skipped.
    """
    separator: str | bytes = b"\n" if isinstance(payload, bytes) else "\n"
    if separator not in payload:
        return [payload]
    return [part for part in payload.split(separator) if part.strip()]


def parse_handshake(frame: str | bytes) -> Handshake:
    """
    Interpret the first frame of a connection.

    Raises:
        AuthError: The frame reports rejected credentials.
        NetworkError: The frame is malformed or not a health check.
    """
    try:
        data = json.loads(frame)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise NetworkError("Handshake frame is not valid JSON", detail=str(e)) from e
    if not isinstance(data, dict):
        raise NetworkError("Handshake frame is not a JSON object")

    error = data.get("error")
    if isinstance(error, dict):
        status = error.get("StatusCode") or error.get("status_code")
        message = error.get("message") or "Connection rejected"
        if status in AUTH_HTTP_STATUSES:
            raise AuthError(message, status_code=status, code=error.get("code"))
        raise NetworkError(message, status_code=status, code=error.get("code"))

    if data.get("type") != EventType.HEALTH_CHECK.value:
        raise NetworkError("Expected health.check as first frame", frame_type=data.get("type"))

    connection_id = data.get("connection_id")
    if not isinstance(connection_id, str) or not connection_id:
        raise NetworkError("Handshake frame carries no connection_id")

    me = data.get("me")
    return Handshake(
        connection_id=connection_id,
        me=me if isinstance(me, dict) else {},
        recovered=bool(data.get("recovered", False)),
        raw=data,
    )


class WebSocketTransport:
    """
    Transport over a websocket to the chat backend.

    Usage:
        transport = WebSocketTransport()
        handshake = await transport.open(credentials)
        frame = await transport.recv()
    """

    def __init__(self, settings: Settings | None = None, api_key: str | None = None):
        self._settings = settings or get_settings()
        self._api_key = api_key if api_key is not None else self._settings.api_key
        self._ws: Any = None
        self._buffer: deque[str | bytes] = deque()

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def build_url(self, credentials: Credentials, resume_connection_id: str | None = None) -> str:
        payload: dict[str, Any] = {
            "user_id": credentials.user_id,
            "user_details": credentials.user_payload(),
            "server_determines_connection_id": True,
        }
        if resume_connection_id:
            payload["connection_id"] = resume_connection_id

        query = urlencode({
            "json": json.dumps(payload, separators=(",", ":")),
            "api_key": self._api_key,
            "authorization": credentials.token,
            "stream-auth-type": "jwt",
        })
        return f"{self._settings.ws_url}?{query}"

    async def open(
        self,
        credentials: Credentials,
        resume_connection_id: str | None = None,
    ) -> Handshake:
        url = self.build_url(credentials, resume_connection_id)
        logger.debug(
            "Opening websocket",
            url=self._settings.ws_url,
            user_id=credentials.user_id,
            token=mask_token(credentials.token),
            resume=resume_connection_id is not None,
        )

        try:
            self._ws = await websockets.connect(
                url,
                max_size=self._settings.max_message_size,
                close_timeout=RealtimeConstants.CLOSE_TIMEOUT,
                # Liveness is tracked by the health.check protocol
                ping_interval=None,
            )
        except InvalidHandshake as e:
            raise self._handshake_error(e) from e
        except (OSError, asyncio.TimeoutError) as e:
            raise NetworkError("Could not reach the realtime endpoint", detail=str(e)) from e

        try:
            first = await self._recv_raw()
        except ConnectionClosed as e:
            self._ws = None
            raise self._closed_error(e) from e

        try:
            return parse_handshake(first)
        except (AuthError, NetworkError):
            await self.close(CloseCode.NORMAL, "handshake failed")
            raise

    async def recv(self) -> str | bytes:
        if self._buffer:
            return self._buffer.popleft()
        if self._ws is None:
            raise NotConnectedError("Transport is not open")

        try:
            message = await self._ws.recv()
        except ConnectionClosed as e:
            self._ws = None
            raise self._closed_error(e) from e

        frames = split_frames(message)
        self._buffer.extend(frames[1:])
        return frames[0]

    async def _recv_raw(self) -> str | bytes:
        message = await self._ws.recv()
        frames = split_frames(message)
        self._buffer.extend(frames[1:])
        return frames[0]

    async def send(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            raise NotConnectedError("Transport is not open")
        try:
            await self._ws.send(json.dumps(frame, separators=(",", ":")))
        except ConnectionClosed as e:
            self._ws = None
            raise self._closed_error(e) from e

    async def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        ws, self._ws = self._ws, None
        self._buffer.clear()
        if ws is None:
            return
        try:
            await ws.close(code=int(code), reason=reason)
        except (ConnectionClosed, OSError) as e:
            logger.debug("Error closing websocket", error=str(e))

    @staticmethod
    def _handshake_error(error: InvalidHandshake) -> Exception:
        # websockets >= 14 exposes the response, older releases the status code
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None) or getattr(error, "status_code", None)
        if status in AUTH_HTTP_STATUSES:
            return AuthError("Realtime endpoint rejected the credentials", status_code=status)
        return NetworkError("Websocket handshake failed", status_code=status, detail=str(error))

    @staticmethod
    def _closed_error(error: ConnectionClosed) -> Exception:
        close = error.rcvd
        code = close.code if close is not None else None
        reason = close.reason if close is not None else ""
        if code in AUTH_CLOSE_CODES:
            return AuthError("Connection closed: credentials rejected", close_code=code, reason=reason)
        return ConnectionClosedError("Connection closed", close_code=code, reason=reason)
