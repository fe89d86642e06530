"""
Heartbeat handling for the realtime connection.

Two halves:
- HealthMonitor: liveness watchdog. Every received frame (any type counts)
  pushes the deadline forward; when no frame arrives within the timeout
  the connection is treated as lost.
- HealthCheckPinger: sends the ``health.check`` control frame on a fixed
  cadence so the backend keeps the socket open and answers with its own
  health check.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from chat_common.config.logging import get_logger
from chat_common.utils.exceptions import NetworkError, NotConnectedError

logger = get_logger(__name__)


class HealthMonitor:
    """
    Liveness watchdog for one connection epoch.

    The watchdog is a single task sleeping until the current deadline;
    touch() only moves the deadline, so a frame costs one clock read.

    Usage:
        monitor = HealthMonitor(timeout=35.0, on_timeout=manager.on_health_timeout)
        monitor.start()
        ...
        monitor.touch()   # on every frame
        ...
        monitor.stop()
    """

    def __init__(
        self,
        timeout: float,
        on_timeout: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            timeout: Seconds without any frame before the connection is lost.
            on_timeout: Called once, synchronously, when the deadline passes.
            clock: Monotonic clock, injectable for tests.
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._timeout = timeout
        self._on_timeout = on_timeout
        self._clock = clock
        self._last_activity = clock()
        self._task: asyncio.Task | None = None
        self._fired = False

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def last_activity(self) -> float:
        return self._last_activity

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def fired(self) -> bool:
        return self._fired

    def seconds_since_activity(self) -> float:
        return self._clock() - self._last_activity

    def is_stale(self) -> bool:
        return self.seconds_since_activity() > self._timeout

    def start(self) -> None:
        """Start (or restart) the watchdog from now."""
        self.stop()
        self._fired = False
        self._last_activity = self._clock()
        self._task = asyncio.create_task(self._watch(), name="health_monitor")

    def touch(self) -> None:
        """Record activity; restarts the liveness window."""
        self._last_activity = self._clock()

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _watch(self) -> None:
        while True:
            remaining = self._last_activity + self._timeout - self._clock()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        self._fired = True
        logger.warning(
            "No frame received within health check timeout",
            timeout_seconds=self._timeout,
            seconds_since_activity=round(self.seconds_since_activity(), 2),
        )
        self._on_timeout()

    def get_stats(self) -> dict[str, float | int | str]:
        return {
            "timeout_seconds": self._timeout,
            "seconds_since_activity": round(self.seconds_since_activity(), 3),
            "running": int(self.running),
        }


class HealthCheckPinger:
    """
    Periodically sends the ``health.check`` control frame.

    A failed send stops the pinger quietly: the receive loop sees the
    broken socket and drives reconnection.
    """

    def __init__(
        self,
        send: Callable[[dict[str, Any]], Awaitable[None]],
        interval: float,
        client_id: Callable[[], str | None],
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._send = send
        self._interval = interval
        self._client_id = client_id
        self._task: asyncio.Task | None = None
        self._sent = 0

    @property
    def sent(self) -> int:
        return self._sent

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self._task = asyncio.create_task(self._run(), name="health_check_pinger")

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def build_frame(self) -> dict[str, Any]:
        return {"type": "health.check", "client_id": self._client_id()}

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._send(self.build_frame())
            except (ConnectionError, OSError, NetworkError, NotConnectedError) as e:
                logger.debug("Health check ping failed, stopping pinger", error=str(e))
                return
            self._sent += 1
