"""
Pytest configuration and fixtures for client tests.

No test touches the network: the realtime socket is replaced by
FakeTransport and the REST API by an httpx.MockTransport in front of
FakeBackend.
"""

import asyncio
import json
from collections import defaultdict
from typing import Any

import httpx
import pytest

from chat_common.config.settings import Settings
from chat_common.security.tokens import Credentials, dev_token
from chat_common.utils.exceptions import ChatClientError, ConnectionClosedError, NetworkError
from chat_realtime.api.rest import ChatAPI
from chat_realtime.components.connection.manager import ConnectionManager, ConnectionState
from chat_realtime.components.connection.transport import Handshake
from chat_realtime.components.events.types import parse_event
from chat_realtime.components.resilience.retry import RetryConfig
from chat_realtime.components.state.users import UserCache
from chat_realtime.session import ChatSession

CID = "messaging:general"
T0 = "2017-04-08T17:36:10.540Z"


# =============================================================================
# Builders
# =============================================================================


def make_event(event_type: str, **fields: Any):
    """
    Typed event built the way the dispatcher builds it.

    Channel scoped by default; pass cid=None for events without a channel.
    """
    data: dict[str, Any] = {"type": event_type, "created_at": T0, "cid": CID}
    data.update(fields)
    if data["cid"] is None:
        del data["cid"]
    return parse_event(data)


def message_record(
    message_id: str,
    created_at: str = T0,
    user_id: str = "bob",
    text: str = "hello",
    **fields: Any,
) -> dict[str, Any]:
    return {
        "id": message_id,
        "text": text,
        "type": "regular",
        "user": {"id": user_id},
        "created_at": created_at,
        "updated_at": created_at,
        **fields,
    }


def channel_response(
    cid: str = CID,
    messages: list[dict[str, Any]] | None = None,
    members: list[dict[str, Any]] | None = None,
    read: list[dict[str, Any]] | None = None,
    watcher_count: int | None = None,
    **channel: Any,
) -> dict[str, Any]:
    """Body of a channel query response."""
    channel_type, channel_id = cid.split(":", 1)
    body: dict[str, Any] = {
        "channel": {
            "cid": cid,
            "type": channel_type,
            "id": channel_id,
            "created_at": "2017-04-01T10:00:00Z",
            "updated_at": "2017-04-01T10:00:00Z",
            **channel,
        },
        "messages": messages or [],
        "members": members or [],
        "read": read or [],
        "watchers": [],
        "duration": "1.20ms",
    }
    if watcher_count is not None:
        body["watcher_count"] = watcher_count
    return body


def frame(event_type: str, **fields: Any) -> str:
    """JSON frame as the backend sends it."""
    data: dict[str, Any] = {"type": event_type, "created_at": T0, "cid": CID}
    data.update(fields)
    if data["cid"] is None:
        del data["cid"]
    return json.dumps(data)


async def settle(rounds: int = 20) -> None:
    """Let background tasks (receive loop, listeners) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def drop_and_reconnect(
    manager: ConnectionManager,
    transport: "FakeTransport",
    error: ChatClientError | None = None,
) -> None:
    """Break transport and wait until the manager gave up or reconnected."""
    transport.drop(error)
    await manager.wait_for_state(ConnectionState.RECONNECTING, timeout=1)
    await manager.wait_for_reconnect()


# =============================================================================
# Realtime transport doubles
# =============================================================================


class FakeTransport:
    """In-memory Transport: frames are queued by the test."""

    def __init__(self, handshake: Handshake | None = None, open_error: Exception | None = None):
        self.handshake = handshake or Handshake(
            connection_id="conn-1",
            me={"id": "jane", "mutes": [], "channel_mutes": []},
        )
        self.open_error = open_error
        self.frames: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.opened_with: tuple[Credentials, str | None] | None = None
        self.closed = False
        self.close_code: int | None = None

    async def open(self, credentials, resume_connection_id=None):
        self.opened_with = (credentials, resume_connection_id)
        if self.open_error is not None:
            raise self.open_error
        return self.handshake

    async def recv(self):
        item = await self.frames.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, frame):
        self.sent.append(frame)

    async def close(self, code=1000, reason=""):
        self.closed = True
        self.close_code = code

    def push(self, *frames: str | dict[str, Any]) -> None:
        for item in frames:
            self.frames.put_nowait(json.dumps(item) if isinstance(item, dict) else item)

    def drop(self, error: ChatClientError | None = None) -> None:
        self.frames.put_nowait(
            error or ConnectionClosedError("Connection closed", close_code=1006)
        )


class TransportQueue:
    """
    Transport factory handing out queued transports in order.

    Once the queue is empty it builds healthy transports with increasing
    server connection ids.
    """

    def __init__(self) -> None:
        self.pending: list[FakeTransport] = []
        self.created: list[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        if self.pending:
            transport = self.pending.pop(0)
        else:
            transport = FakeTransport(
                Handshake(
                    connection_id=f"conn-{len(self.created) + 1}",
                    me={"id": "jane", "mutes": [], "channel_mutes": []},
                )
            )
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]

    def queue(self, *transports: FakeTransport) -> None:
        self.pending.extend(transports)

    def fail(self, count: int = 1, error: Exception | None = None) -> None:
        for _ in range(count):
            self.pending.append(
                FakeTransport(open_error=error or NetworkError("Endpoint unreachable"))
            )


class RecordingSleep:
    """Backoff sleep that returns immediately and records the delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# REST backend double
# =============================================================================


class FakeBackend:
    """Minimal chat backend behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.channels: dict[str, dict[str, Any]] = {}
        self.errors: dict[str, tuple[int, dict[str, Any]]] = {}
        # cid -> (status, raw body text), for replies that are not valid channel state
        self.raw_replies: dict[str, tuple[int, str]] = {}
        self.requests: list[httpx.Request] = []
        self.queries: dict[str, int] = defaultdict(int)
        # When set, channel queries wait for it before answering
        self.gate: asyncio.Event | None = None

    def add_channel(self, cid: str = CID, **kwargs: Any) -> dict[str, Any]:
        self.channels[cid] = channel_response(cid, **kwargs)
        return self.channels[cid]

    def bodies(self, suffix: str) -> list[dict[str, Any]]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path.endswith(suffix) and request.content
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")

        if parts[0] == "channels" and len(parts) == 4:
            cid = f"{parts[1]}:{parts[2]}"
            if parts[3] == "stop-watching":
                return httpx.Response(200, json={"duration": "0.5ms"})
            if parts[3] == "query":
                self.queries[cid] += 1
                if self.gate is not None:
                    await self.gate.wait()
                if cid in self.raw_replies:
                    status, text = self.raw_replies[cid]
                    return httpx.Response(status, text=text)
                if cid in self.errors:
                    status, body = self.errors[cid]
                    return httpx.Response(status, json=body)
                if cid not in self.channels:
                    return httpx.Response(404, json={"message": "channel not found", "code": 16})
                return httpx.Response(201, json=self.channels[cid])

        if request.url.path == "/channels":
            return httpx.Response(200, json={"channels": list(self.channels.values())})

        return httpx.Response(404, json={"message": f"no route for {request.url.path}"})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings():
    return Settings(
        api_key="test-key",
        api_secret="",
        base_url="https://chat.test",
        ws_url="wss://chat.test/connect",
        connect_timeout=1.0,
    )


@pytest.fixture
def users():
    return UserCache()


@pytest.fixture
def credentials():
    return Credentials(user_id="jane", token=dev_token("jane"))


@pytest.fixture
def transports():
    return TransportQueue()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def connect_retry():
    return RetryConfig(initial_delay=0.5, max_delay=30.0, jitter_factor=0.0, max_attempts=3)


@pytest.fixture
def reconnect_retry():
    return RetryConfig(initial_delay=0.5, max_delay=30.0, jitter_factor=0.0, max_attempts=5)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def api(settings, backend):
    return ChatAPI(settings=settings, transport=httpx.MockTransport(backend.handler))


@pytest.fixture
def session(settings, api, transports, connect_retry, reconnect_retry, recording_sleep):
    return ChatSession(
        settings=settings,
        api=api,
        transport_factory=transports,
        connect_retry=connect_retry,
        reconnect_retry=reconnect_retry,
        sleep=recording_sleep,
        rand=lambda low, high: 0.0,
    )
