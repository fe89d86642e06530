"""
Connection Manager.

Owns the lifecycle of the realtime connection:

    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED
                                     |              |
                                     +--------------+--> DISCONNECTED

Every successful open starts a new epoch with a monotonically increasing
local connection_id. One receive loop per epoch feeds frames to the
dispatcher one at a time, so events are processed in arrival order.

Reconnection uses exponential backoff with jitter. Rejected credentials
are never retried. When the backend cannot resume the previous session the
resync hook runs before the receive loop of the new epoch starts, so no
event is applied to stale state.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from enum import Enum
from typing import Any, Awaitable, Callable

from chat_common.config.logging import get_logger
from chat_common.config.settings import Settings, get_settings
from chat_common.infrastructure.correlation import connection_id_var
from chat_common.security.tokens import Credentials
from chat_common.utils.exceptions import (
    AuthError,
    ChatClientError,
    NetworkError,
    NotConnectedError,
)
from chat_realtime.components.connection.heartbeat import HealthCheckPinger, HealthMonitor
from chat_realtime.components.connection.transport import (
    Handshake,
    Transport,
    TransportFactory,
    WebSocketTransport,
)
from chat_realtime.components.core.constants import CloseCode
from chat_realtime.components.events.dispatcher import EventDispatcher
from chat_realtime.components.events.types import ConnectionEvent, EventType
from chat_realtime.components.resilience.retry import (
    Backoff,
    RetryConfig,
    create_connect_retry_config,
    create_reconnect_retry_config,
    should_retry,
)

logger = get_logger(__name__)

ResyncHook = Callable[[], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionManager:
    """
    Realtime connection lifecycle with automatic reconnection.

    Usage:
        manager = ConnectionManager(dispatcher, resync=session.resync)
        await manager.connect(credentials)
        ...
        await manager.disconnect()
    """

    def __init__(
        self,
        dispatcher: EventDispatcher,
        transport_factory: TransportFactory | None = None,
        resync: ResyncHook | None = None,
        settings: Settings | None = None,
        connect_retry: RetryConfig | None = None,
        reconnect_retry: RetryConfig | None = None,
        sleep: SleepFunc = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        """
        Args:
            dispatcher: Receives every inbound frame and the local connection events.
            transport_factory: Builds a fresh transport per attempt.
            resync: Awaited after a reconnect the backend could not resume.
            settings: Client settings, defaults to the environment.
            connect_retry: Attempt budget for an explicit connect().
            reconnect_retry: Backoff policy after an established connection is lost.
            sleep: Backoff sleep, injectable for tests.
            rand: Jitter source, injectable for tests.
        """
        self._settings = settings or get_settings()
        self._dispatcher = dispatcher
        self._transport_factory = transport_factory or (
            lambda: WebSocketTransport(self._settings)
        )
        self._resync = resync
        self._connect_retry = connect_retry or create_connect_retry_config(self._settings)
        self._reconnect_retry = reconnect_retry or create_reconnect_retry_config(self._settings)
        self._sleep = sleep
        self._rand = rand

        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._credentials: Credentials | None = None
        self._transport: Transport | None = None
        self._handshake: Handshake | None = None

        # Local epoch counter; 0 until the first successful open
        self._connection_id = 0
        self._server_connection_id: str | None = None
        self._last_error: ChatClientError | None = None

        # Bumped by disconnect() so in-flight attempts notice they are stale
        self._generation = 0
        self._stop_event = asyncio.Event()

        self._receive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._monitor: HealthMonitor | None = None
        self._pinger: HealthCheckPinger | None = None
        self._state_waiters: list[tuple[ConnectionState, asyncio.Future]] = []

        self._frames_received = 0
        self._reconnects = 0
        self._resyncs = 0
        self.reconnect_delays: list[float] = []

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def connection_id(self) -> int:
        """Local id of the current epoch."""
        return self._connection_id

    @property
    def server_connection_id(self) -> str | None:
        return self._server_connection_id

    @property
    def me(self) -> dict[str, Any]:
        return dict(self._handshake.me) if self._handshake else {}

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    @property
    def last_error(self) -> ChatClientError | None:
        return self._last_error

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self, credentials: Credentials) -> Handshake:
        """
        Open the connection.

        Calling connect() again with the same credentials while connected
        returns the current handshake.

        Raises:
            AuthError: Credentials rejected. Never retried.
            NetworkError: Every attempt of the connect budget failed.
            NotConnectedError: disconnect() was called while connecting.
        """
        async with self._lock:
            if self._state is ConnectionState.CONNECTED:
                if credentials == self._credentials and self._handshake is not None:
                    return self._handshake
                raise ChatClientError(
                    "Already connected as another user, call disconnect() first",
                    user_id=credentials.user_id,
                )
            if self._state is ConnectionState.CONNECTING:
                raise ChatClientError("connect() is already in progress")

            reconnect_task, self._reconnect_task = self._reconnect_task, None
            self._credentials = credentials
            self._last_error = None
            self._stop_event = asyncio.Event()
            generation = self._generation
            self._set_state(ConnectionState.CONNECTING)

        await self._cancel_task(reconnect_task)

        backoff = Backoff(self._connect_retry, self._rand)
        attempt = 0
        while True:
            attempt += 1
            try:
                transport, handshake = await self._open(resume=False)
                break
            except AuthError as e:
                self._fail(e, generation)
                raise
            except NetworkError as e:
                logger.warning(
                    "Connect attempt failed",
                    attempt=attempt,
                    max_attempts=self._connect_retry.max_attempts,
                    error=e.message,
                )
                if generation != self._generation:
                    raise NotConnectedError("connect() aborted by disconnect()") from e
                if not should_retry(attempt, self._connect_retry.max_attempts):
                    error = NetworkError(
                        "Could not connect to the realtime endpoint",
                        attempts=attempt,
                        cause=e.message,
                    )
                    self._fail(error, generation)
                    raise error from e

            if await self._wait(backoff.next_delay()):
                raise NotConnectedError("connect() aborted by disconnect()")

        async with self._lock:
            if generation != self._generation:
                await self._close_transport(transport)
                raise NotConnectedError("connect() aborted by disconnect()")
            await self._establish(transport, handshake, reconnect=False)
        return handshake

    async def disconnect(self) -> None:
        """Close the connection and cancel any pending reconnection. Idempotent."""
        self._generation += 1
        self._stop_event.set()

        reconnect_task, self._reconnect_task = self._reconnect_task, None
        await self._cancel_task(reconnect_task)

        async with self._lock:
            await self._stop_epoch()
            transport, self._transport = self._transport, None
            if transport is not None:
                await self._close_transport(transport, CloseCode.NORMAL)

            if self._state is ConnectionState.DISCONNECTED:
                return
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("Disconnected", connection_id=self._connection_id)
            self._emit(EventType.CONNECTION_CHANGED, online=False)

    async def send(self, frame: dict[str, Any]) -> None:
        """Send a control frame on the current connection."""
        if self._transport is None or self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError("Not connected")
        await self._transport.send(frame)

    async def wait_for_state(self, state: ConnectionState, timeout: float | None = None) -> None:
        """
        Wait until the manager reaches state.

        Raises:
            asyncio.TimeoutError: If timeout elapses first.
        """
        if self._state is state:
            return
        future = asyncio.get_running_loop().create_future()
        self._state_waiters.append((state, future))
        try:
            await asyncio.wait_for(future, timeout)
        finally:
            self._state_waiters = [w for w in self._state_waiters if w[1] is not future]

    async def wait_for_reconnect(self) -> None:
        """Wait for the running reconnection loop, if any, to finish."""
        if self._reconnect_task is not None:
            await asyncio.shield(self._reconnect_task)

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "state": self._state.value,
            "connection_id": self._connection_id,
            "server_connection_id": self._server_connection_id,
            "frames_received": self._frames_received,
            "reconnects": self._reconnects,
            "resyncs": self._resyncs,
            "last_error": self._last_error.message if self._last_error else None,
        }
        if self._monitor is not None:
            stats["health"] = self._monitor.get_stats()
        return stats

    # =========================================================================
    # Epoch lifecycle
    # =========================================================================

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Connection state change", old=self._state.value, new=state.value)
        self._state = state
        for wanted, future in self._state_waiters:
            if wanted is state and not future.done():
                future.set_result(None)

    def _emit(self, event_type: EventType, online: bool) -> None:
        self._dispatcher.emit_local(
            ConnectionEvent.local(event_type, online=online, connection_id=self._connection_id)
        )

    def _fail(self, error: ChatClientError, generation: int) -> None:
        self._last_error = error
        if generation == self._generation:
            self._set_state(ConnectionState.DISCONNECTED)

    async def _open(self, resume: bool) -> tuple[Transport, Handshake]:
        if self._credentials is None:
            raise NotConnectedError("No credentials to connect with")

        transport = self._transport_factory()
        resume_id = self._server_connection_id if resume else None
        try:
            handshake = await asyncio.wait_for(
                transport.open(self._credentials, resume_id),
                timeout=self._settings.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            await self._close_transport(transport)
            raise NetworkError(
                "Timed out waiting for the connection handshake",
                timeout_seconds=self._settings.connect_timeout,
            ) from e
        except (OSError, ConnectionError) as e:
            await self._close_transport(transport)
            raise NetworkError("Transport failed to open", detail=str(e)) from e
        except ChatClientError:
            await self._close_transport(transport)
            raise
        return transport, handshake

    async def _establish(self, transport: Transport, handshake: Handshake, reconnect: bool) -> None:
        """Start a new epoch on an opened transport. Caller holds the lock."""
        self._connection_id += 1
        self._transport = transport
        self._handshake = handshake
        self._server_connection_id = handshake.connection_id
        epoch = self._connection_id

        self._pinger = HealthCheckPinger(
            transport.send,
            interval=self._settings.health_check_interval,
            client_id=lambda: self._server_connection_id,
        )
        self._pinger.start()

        resynced = False
        if reconnect and not handshake.recovered and self._resync is not None:
            logger.info("Session not resumed, running full resync", connection_id=epoch)
            token = connection_id_var.set(str(epoch))
            try:
                await self._resync()
            except ChatClientError:
                raise
            except Exception as e:
                raise NetworkError(
                    "Resync failed", connection_id=epoch, detail=repr(e)
                ) from e
            finally:
                connection_id_var.reset(token)
            self._resyncs += 1
            resynced = True

        self._monitor = HealthMonitor(
            self._settings.health_check_timeout,
            on_timeout=lambda: self._on_connection_lost(
                epoch, NetworkError("Health check timed out", connection_id=epoch)
            ),
        )
        self._monitor.start()
        self._receive_task = asyncio.create_task(
            self._receive_loop(transport, epoch), name=f"receive_loop_{epoch}"
        )

        self._set_state(ConnectionState.CONNECTED)
        logger.info(
            "Connected",
            connection_id=epoch,
            server_connection_id=handshake.connection_id,
            reconnect=reconnect,
            recovered=handshake.recovered,
            resynced=resynced,
        )
        self._emit(EventType.CONNECTION_CHANGED, online=True)
        if reconnect:
            self._emit(EventType.CONNECTION_RECOVERED, online=True)

    async def _stop_epoch(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None
        if self._pinger is not None:
            self._pinger.stop()
            self._pinger = None
        receive_task, self._receive_task = self._receive_task, None
        await self._cancel_task(receive_task)

    async def _receive_loop(self, transport: Transport, epoch: int) -> None:
        connection_id_var.set(str(epoch))
        try:
            while True:
                frame = await transport.recv()
                self._frames_received += 1
                if self._monitor is not None:
                    self._monitor.touch()
                self._dispatcher.handle(frame)
        except ChatClientError as e:
            self._on_connection_lost(epoch, e)

    def _on_connection_lost(self, epoch: int, error: ChatClientError) -> None:
        """Called from the receive loop or the health monitor of an epoch."""
        if epoch != self._connection_id or self._state is not ConnectionState.CONNECTED:
            return

        self._last_error = error
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None
        if self._pinger is not None:
            self._pinger.stop()
            self._pinger = None
        receive_task, self._receive_task = self._receive_task, None
        if receive_task is not None and receive_task is not asyncio.current_task():
            receive_task.cancel()

        transport, self._transport = self._transport, None
        self._set_state(ConnectionState.RECONNECTING)
        self._emit(EventType.CONNECTION_CHANGED, online=False)

        if isinstance(error, AuthError):
            logger.error("Connection closed with rejected credentials", connection_id=epoch)
            self._reconnect_task = asyncio.create_task(
                self._terminate(transport, error, self._generation),
                name="terminate_connection",
            )
            return

        logger.warning("Connection lost", connection_id=epoch, error=error.message)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(transport, self._generation),
            name="reconnect_loop",
        )

    async def _terminate(
        self,
        transport: Transport | None,
        error: ChatClientError,
        generation: int,
    ) -> None:
        if transport is not None:
            await self._close_transport(transport)
        self._fail(error, generation)

    async def _reconnect_loop(self, stale: Transport | None, generation: int) -> None:
        if stale is not None:
            await self._close_transport(stale)

        backoff = Backoff(self._reconnect_retry, self._rand)
        while generation == self._generation:
            if not backoff.can_retry:
                error = NetworkError(
                    "Reconnection attempts exhausted",
                    attempts=backoff.attempt,
                )
                self._fail(error, generation)
                return

            delay = backoff.next_delay()
            self.reconnect_delays.append(delay)
            logger.info("Reconnecting", attempt=backoff.attempt, delay_seconds=round(delay, 3))
            if await self._wait(delay):
                return

            try:
                transport, handshake = await self._open(resume=True)
            except AuthError as e:
                self._fail(e, generation)
                return
            except NetworkError as e:
                logger.warning("Reconnect attempt failed", attempt=backoff.attempt, error=e.message)
                continue

            async with self._lock:
                if generation != self._generation:
                    await self._close_transport(transport)
                    return
                try:
                    await self._establish(transport, handshake, reconnect=True)
                except AuthError as e:
                    await self._abort_epoch(transport)
                    self._fail(e, generation)
                    return
                except ChatClientError as e:
                    logger.warning("Resync failed, retrying connection", error=e.message)
                    await self._abort_epoch(transport)
                    continue

            self._reconnects += 1
            return

    async def _abort_epoch(self, transport: Transport) -> None:
        if self._pinger is not None:
            self._pinger.stop()
            self._pinger = None
        self._transport = None
        await self._close_transport(transport)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _wait(self, delay: float) -> bool:
        """Sleep for delay. Returns True if disconnect() interrupted the wait."""
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
        return stopper in done

    async def _close_transport(self, transport: Transport, code: int = CloseCode.NORMAL) -> None:
        try:
            await transport.close(code)
        except (ChatClientError, OSError, ConnectionError) as e:
            logger.debug("Error closing transport", error=str(e))

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
