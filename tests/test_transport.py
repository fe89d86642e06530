"""
Tests for the handshake parser and the websocket transport.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.frames import Close

from chat_common.utils.exceptions import (
    AuthError,
    ConnectionClosedError,
    NetworkError,
    NotConnectedError,
)
from chat_realtime.components.connection.transport import (
    WebSocketTransport,
    parse_handshake,
    split_frames,
)

HANDSHAKE = json.dumps({
    "type": "health.check",
    "connection_id": "conn-1",
    "me": {"id": "jane", "total_unread_count": 2},
    "created_at": "2017-04-08T17:36:10.540Z",
})


# =============================================================================
# Handshake parsing
# =============================================================================


class TestParseHandshake:
    def test_valid_handshake(self):
        handshake = parse_handshake(HANDSHAKE)

        assert handshake.connection_id == "conn-1"
        assert handshake.me["id"] == "jane"
        assert handshake.recovered is False

    def test_recovered_flag(self):
        raw = json.dumps({"type": "health.check", "connection_id": "conn-2", "recovered": True})
        assert parse_handshake(raw).recovered is True

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_error_frame(self, status):
        raw = json.dumps({"error": {"StatusCode": status, "code": 40, "message": "token expired"}})

        with pytest.raises(AuthError) as exc_info:
            parse_handshake(raw)

        assert exc_info.value.status_code == status
        assert exc_info.value.message == "token expired"

    def test_other_error_frame(self):
        raw = json.dumps({"error": {"StatusCode": 500, "message": "internal"}})
        with pytest.raises(NetworkError):
            parse_handshake(raw)

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[]",
            json.dumps({"type": "message.new", "connection_id": "conn-1"}),
            json.dumps({"type": "health.check"}),
            json.dumps({"type": "health.check", "connection_id": ""}),
        ],
    )
    def test_malformed_handshake(self, raw):
        with pytest.raises(NetworkError):
            parse_handshake(raw)


class TestSplitFrames:
    def test_single_frame(self):
        assert split_frames('{"type": "health.check"}') == ['{"type": "health.check"}']

    def test_newline_delimited(self):
        assert split_frames('{"a": 1}\n\n{"b": 2}\n') == ['{"a": 1}', '{"b": 2}']

    def test_bytes(self):
        assert split_frames(b'{"a": 1}\n{"b": 2}') == [b'{"a": 1}', b'{"b": 2}']


# =============================================================================
# WebSocketTransport
# =============================================================================


class TestWebSocketTransport:
    def test_build_url(self, settings, credentials):
        transport = WebSocketTransport(settings)

        url = transport.build_url(credentials)

        parts = urlsplit(url)
        query = parse_qs(parts.query)
        payload = json.loads(query["json"][0])
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "wss://chat.test/connect"
        assert query["api_key"] == ["test-key"]
        assert query["authorization"] == [credentials.token]
        assert query["stream-auth-type"] == ["jwt"]
        assert payload["user_id"] == "jane"
        assert payload["user_details"] == {"id": "jane"}
        assert "connection_id" not in payload

    def test_build_url_resumes_connection(self, settings, credentials):
        url = WebSocketTransport(settings).build_url(credentials, resume_connection_id="conn-1")
        payload = json.loads(parse_qs(urlsplit(url).query)["json"][0])
        assert payload["connection_id"] == "conn-1"

    @pytest.mark.asyncio
    async def test_open_returns_handshake_and_buffers_batched_frames(self, settings, credentials):
        socket = AsyncMock()
        socket.recv.side_effect = [HANDSHAKE + '\n{"type": "typing.start"}', '{"type": "typing.stop"}']
        transport = WebSocketTransport(settings)

        with patch(
            "chat_realtime.components.connection.transport.websockets.connect",
            new=AsyncMock(return_value=socket),
        ) as connect:
            handshake = await transport.open(credentials)

        assert handshake.connection_id == "conn-1"
        assert connect.await_args.kwargs["ping_interval"] is None
        assert await transport.recv() == '{"type": "typing.start"}'
        assert await transport.recv() == '{"type": "typing.stop"}'

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, settings, credentials):
        transport = WebSocketTransport(settings)

        with patch(
            "chat_realtime.components.connection.transport.websockets.connect",
            new=AsyncMock(side_effect=OSError("connection refused")),
        ):
            with pytest.raises(NetworkError):
                await transport.open(credentials)

        assert transport.is_open is False

    @pytest.mark.asyncio
    async def test_rejected_handshake_frame_closes_socket(self, settings, credentials):
        socket = AsyncMock()
        socket.recv.return_value = json.dumps({"error": {"StatusCode": 401, "message": "bad token"}})
        transport = WebSocketTransport(settings)

        with patch(
            "chat_realtime.components.connection.transport.websockets.connect",
            new=AsyncMock(return_value=socket),
        ):
            with pytest.raises(AuthError):
                await transport.open(credentials)

        socket.close.assert_awaited_once()
        assert transport.is_open is False

    @pytest.mark.asyncio
    async def test_closed_socket_maps_close_code(self, settings, credentials):
        socket = AsyncMock()
        socket.recv.side_effect = [
            HANDSHAKE,
            ConnectionClosed(Close(4001, "token expired"), None),
        ]
        transport = WebSocketTransport(settings)

        with patch(
            "chat_realtime.components.connection.transport.websockets.connect",
            new=AsyncMock(return_value=socket),
        ):
            await transport.open(credentials)

        with pytest.raises(AuthError):
            await transport.recv()
        assert transport.is_open is False

    def test_closed_error_mapping(self):
        auth = WebSocketTransport._closed_error(ConnectionClosed(Close(1008, "policy"), None))
        dropped = WebSocketTransport._closed_error(ConnectionClosed(Close(1011, "boom"), None))
        abnormal = WebSocketTransport._closed_error(ConnectionClosed(None, None))

        assert isinstance(auth, AuthError)
        assert isinstance(dropped, ConnectionClosedError)
        assert dropped.context["close_code"] == 1011
        assert isinstance(abnormal, ConnectionClosedError)
        assert abnormal.context["close_code"] is None

    def test_handshake_error_mapping(self):
        rejected = InvalidHandshake("server rejected WebSocket connection")
        rejected.response = SimpleNamespace(status_code=401)
        failed = InvalidHandshake("bad upgrade")

        assert isinstance(WebSocketTransport._handshake_error(rejected), AuthError)
        assert isinstance(WebSocketTransport._handshake_error(failed), NetworkError)

    @pytest.mark.asyncio
    async def test_use_before_open(self, settings):
        transport = WebSocketTransport(settings)

        with pytest.raises(NotConnectedError):
            await transport.recv()
        with pytest.raises(NotConnectedError):
            await transport.send({"type": "health.check"})

        await transport.close()
