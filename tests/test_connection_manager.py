"""
Tests for the connection lifecycle: connect, epochs, reconnection and resync.

Backoff sleeps are recorded instead of awaited, so the reconnect
schedule is asserted exactly.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from chat_common.security.tokens import Credentials, dev_token
from chat_common.utils.exceptions import (
    AuthError,
    ChatClientError,
    NetworkError,
    NotConnectedError,
)
from chat_realtime.components.connection.manager import ConnectionManager, ConnectionState
from chat_realtime.components.connection.transport import Handshake
from chat_realtime.components.events.dispatcher import EventDispatcher
from chat_realtime.components.events.listeners import ListenerRegistry
from chat_realtime.components.resilience.retry import RetryConfig
from tests.conftest import FakeTransport, drop_and_reconnect, frame, message_record, settle


@pytest.fixture
def registry():
    return ListenerRegistry()


@pytest.fixture
def events(registry):
    received = []
    registry.add(received.append)
    return received


@pytest.fixture
def make_manager(settings, registry, transports, connect_retry, reconnect_retry, recording_sleep):
    def build(**overrides):
        kwargs = {
            "transport_factory": transports,
            "settings": settings,
            "connect_retry": connect_retry,
            "reconnect_retry": reconnect_retry,
            "sleep": recording_sleep,
            "rand": lambda low, high: 0.0,
        }
        kwargs.update(overrides)
        return ConnectionManager(EventDispatcher(registry), **kwargs)

    return build


@pytest_asyncio.fixture
async def manager(make_manager):
    manager = make_manager()
    yield manager
    await manager.disconnect()


def connection_events(events):
    return [(e.type, e.online) for e in events if e.type.startswith("connection.")]


# =============================================================================
# connect()
# =============================================================================


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_starts_first_epoch(self, manager, credentials, transports, events):
        handshake = await manager.connect(credentials)

        assert handshake.connection_id == "conn-1"
        assert manager.state is ConnectionState.CONNECTED
        assert manager.is_connected is True
        assert manager.connection_id == 1
        assert manager.server_connection_id == "conn-1"
        assert manager.me["id"] == "jane"
        assert transports.last.opened_with == (credentials, None)
        assert connection_events(events) == [("connection.changed", True)]

    @pytest.mark.asyncio
    async def test_connect_again_with_same_credentials(self, manager, credentials, transports):
        first = await manager.connect(credentials)
        second = await manager.connect(credentials)

        assert first is second
        assert len(transports.created) == 1

    @pytest.mark.asyncio
    async def test_connect_as_other_user_while_connected(self, manager, credentials):
        await manager.connect(credentials)

        with pytest.raises(ChatClientError):
            await manager.connect(Credentials(user_id="bob", token=dev_token("bob")))

        assert manager.credentials == credentials

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self, manager, credentials, transports, recording_sleep):
        transports.fail(1, AuthError("token signature is invalid", status_code=401))

        with pytest.raises(AuthError):
            await manager.connect(credentials)

        assert len(transports.created) == 1
        assert recording_sleep.delays == []
        assert manager.state is ConnectionState.DISCONNECTED
        assert isinstance(manager.last_error, AuthError)

    @pytest.mark.asyncio
    async def test_network_error_after_attempt_budget(
        self, manager, credentials, transports, recording_sleep, events
    ):
        transports.fail(3)

        with pytest.raises(NetworkError) as exc_info:
            await manager.connect(credentials)

        assert exc_info.value.attempts == 3
        assert len(transports.created) == 3
        assert recording_sleep.delays == [0.5, 1.0]
        assert manager.state is ConnectionState.DISCONNECTED
        assert connection_events(events) == []

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, manager, credentials, transports):
        transports.fail(2)

        handshake = await manager.connect(credentials)

        assert handshake.connection_id == "conn-3"
        assert manager.connection_id == 1
        assert manager.last_error is None

    @pytest.mark.asyncio
    async def test_handshake_timeout_is_a_network_error(
        self, make_manager, settings, credentials, transports
    ):
        class HangingTransport(FakeTransport):
            async def open(self, credentials, resume_connection_id=None):
                await asyncio.sleep(10)

        transports.queue(HangingTransport())
        manager = make_manager(
            settings=settings.model_copy(update={"connect_timeout": 0.05}),
            connect_retry=RetryConfig(jitter_factor=0.0, max_attempts=1),
        )

        with pytest.raises(NetworkError):
            await manager.connect(credentials)

        assert transports.created[0].closed is True


# =============================================================================
# Receive loop
# =============================================================================


class TestReceiveLoop:
    @pytest.mark.asyncio
    async def test_frames_dispatched_in_arrival_order(self, manager, credentials, transports, events):
        await manager.connect(credentials)

        transports.last.push(
            frame("message.new", message=message_record("m1")),
            frame("message.new", message=message_record("m2")),
            frame("message.new", message=message_record("m3")),
        )
        await settle()

        received = [e.message["id"] for e in events if e.type == "message.new"]
        assert received == ["m1", "m2", "m3"]
        assert manager.get_stats()["frames_received"] == 3

    @pytest.mark.asyncio
    async def test_invalid_frame_does_not_break_the_loop(self, manager, credentials, transports, events):
        await manager.connect(credentials)

        transports.last.push("{not json", frame("message.new", message=message_record("m1")))
        await settle()

        assert [e.type for e in events if e.type == "message.new"] == ["message.new"]
        assert manager.is_connected is True

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, manager, credentials, transports):
        with pytest.raises(NotConnectedError):
            await manager.send({"type": "health.check"})

        await manager.connect(credentials)
        await manager.send({"type": "health.check", "client_id": "conn-1"})

        assert {"type": "health.check", "client_id": "conn-1"} in transports.last.sent


# =============================================================================
# Reconnection
# =============================================================================


class TestReconnect:
    @pytest.mark.asyncio
    async def test_recovered_session_skips_resync(self, make_manager, credentials, transports, events):
        resync = AsyncMock()
        manager = make_manager(resync=resync)
        await manager.connect(credentials)
        first = transports.last
        transports.queue(FakeTransport(Handshake(connection_id="conn-2", recovered=True)))

        await drop_and_reconnect(manager, first)

        resync.assert_not_awaited()
        assert manager.state is ConnectionState.CONNECTED
        assert manager.connection_id == 2
        assert manager.server_connection_id == "conn-2"
        assert transports.last.opened_with == (credentials, "conn-1")
        assert first.closed is True
        assert connection_events(events) == [
            ("connection.changed", True),
            ("connection.changed", False),
            ("connection.changed", True),
            ("connection.recovered", True),
        ]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_resync_runs_before_new_epoch_receives(
        self, make_manager, credentials, transports, registry
    ):
        order = []
        second = FakeTransport(Handshake(connection_id="conn-2"))
        second.push(frame("message.new", message=message_record("m1")))

        async def resync():
            order.append(("resync", manager.state, second.frames.qsize()))

        registry.add(lambda event: order.append(("event", event.message["id"])), "message.new")
        manager = make_manager(resync=resync)
        await manager.connect(credentials)
        transports.queue(second)

        await drop_and_reconnect(manager, transports.created[0])
        await settle()

        assert order == [
            ("resync", ConnectionState.RECONNECTING, 1),
            ("event", "m1"),
        ]
        assert manager.get_stats()["resyncs"] == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_backoff_schedule_until_reconnected(
        self, manager, credentials, transports, recording_sleep
    ):
        await manager.connect(credentials)
        first = transports.last
        transports.fail(3)

        await drop_and_reconnect(manager, first)

        assert manager.reconnect_delays == [0.5, 1.0, 2.0, 4.0]
        assert recording_sleep.delays == [0.5, 1.0, 2.0, 4.0]
        assert manager.state is ConnectionState.CONNECTED
        assert manager.connection_id == 2
        assert manager.server_connection_id == "conn-5"
        assert all(t.opened_with[1] == "conn-1" for t in transports.created[1:4])
        assert manager.get_stats()["reconnects"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_reconnect_budget(self, manager, credentials, transports, events):
        await manager.connect(credentials)
        transports.fail(5)

        await drop_and_reconnect(manager, transports.created[0])

        assert manager.state is ConnectionState.DISCONNECTED
        assert isinstance(manager.last_error, NetworkError)
        assert manager.last_error.attempts == 5
        assert len(manager.reconnect_delays) == 5
        assert len(transports.created) == 6
        assert connection_events(events) == [
            ("connection.changed", True),
            ("connection.changed", False),
        ]

    @pytest.mark.asyncio
    async def test_rejected_credentials_end_the_connection(
        self, manager, credentials, transports, events
    ):
        await manager.connect(credentials)

        await drop_and_reconnect(
            manager, transports.last, AuthError("token expired", close_code=4001)
        )

        assert manager.state is ConnectionState.DISCONNECTED
        assert isinstance(manager.last_error, AuthError)
        assert len(transports.created) == 1
        assert manager.reconnect_delays == []
        assert connection_events(events)[-1] == ("connection.changed", False)

    @pytest.mark.asyncio
    async def test_failed_resync_retries_connection(self, make_manager, credentials, transports):
        resync = AsyncMock(side_effect=[NetworkError("resync request failed"), None])
        manager = make_manager(resync=resync)
        await manager.connect(credentials)

        await drop_and_reconnect(manager, transports.last)

        assert resync.await_count == 2
        assert manager.state is ConnectionState.CONNECTED
        assert transports.created[1].closed is True
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unexpected_resync_error_retries_connection(
        self, make_manager, credentials, transports
    ):
        resync = AsyncMock(side_effect=[KeyError("channel"), None])
        manager = make_manager(resync=resync)
        await manager.connect(credentials)

        await drop_and_reconnect(manager, transports.last)

        assert resync.await_count == 2
        assert manager.state is ConnectionState.CONNECTED
        assert transports.created[1].closed is True
        assert manager.connection_id == 3
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_health_timeout_triggers_reconnect(self, make_manager, settings, credentials, transports):
        manager = make_manager(
            settings=settings.model_copy(
                update={"health_check_timeout": 0.05, "health_check_interval": 10.0}
            )
        )
        await manager.connect(credentials)
        first = transports.last

        await manager.wait_for_state(ConnectionState.RECONNECTING, timeout=1)
        await manager.wait_for_reconnect()

        assert first.closed is True
        assert manager.connection_id == 2
        assert manager.last_error.message == "Health check timed out"
        await manager.disconnect()


# =============================================================================
# disconnect()
# =============================================================================


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, manager, credentials, transports, events):
        await manager.connect(credentials)

        await manager.disconnect()
        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED
        assert transports.last.closed is True
        assert transports.last.close_code == 1000
        assert connection_events(events) == [
            ("connection.changed", True),
            ("connection.changed", False),
        ]

    @pytest.mark.asyncio
    async def test_disconnect_without_connection_emits_nothing(self, manager, events):
        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED
        assert events == []

    @pytest.mark.asyncio
    async def test_disconnect_interrupts_backoff(self, make_manager, credentials, transports):
        manager = make_manager(
            sleep=asyncio.sleep,
            reconnect_retry=RetryConfig(initial_delay=30.0, max_delay=30.0, jitter_factor=0.0),
        )
        await manager.connect(credentials)
        transports.last.drop()
        await manager.wait_for_state(ConnectionState.RECONNECTING, timeout=1)
        await settle()

        await asyncio.wait_for(manager.disconnect(), timeout=1)

        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.reconnect_delays == [30.0]
        assert len(transports.created) == 1

    @pytest.mark.asyncio
    async def test_connect_after_disconnect_starts_new_epoch(self, manager, credentials):
        await manager.connect(credentials)
        await manager.disconnect()

        await manager.connect(credentials)

        assert manager.connection_id == 2
        assert manager.server_connection_id == "conn-2"
