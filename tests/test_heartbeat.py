"""
Tests for the liveness watchdog and the health check pinger.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chat_common.utils.exceptions import ConnectionClosedError, NotConnectedError
from chat_realtime.components.connection.heartbeat import HealthCheckPinger, HealthMonitor


class TestHealthMonitor:
    @pytest.mark.asyncio
    async def test_fires_after_silence(self):
        on_timeout = MagicMock()
        monitor = HealthMonitor(timeout=0.05, on_timeout=on_timeout)

        monitor.start()
        await asyncio.sleep(0.15)

        on_timeout.assert_called_once_with()
        assert monitor.fired is True
        assert monitor.running is False

    @pytest.mark.asyncio
    async def test_activity_postpones_deadline(self):
        on_timeout = MagicMock()
        monitor = HealthMonitor(timeout=0.2, on_timeout=on_timeout)

        monitor.start()
        for _ in range(6):
            await asyncio.sleep(0.05)
            monitor.touch()

        on_timeout.assert_not_called()
        monitor.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_watchdog(self):
        on_timeout = MagicMock()
        monitor = HealthMonitor(timeout=0.05, on_timeout=on_timeout)

        monitor.start()
        monitor.stop()
        await asyncio.sleep(0.1)

        on_timeout.assert_not_called()
        assert monitor.running is False

    def test_staleness_uses_injected_clock(self):
        now = [100.0]
        monitor = HealthMonitor(timeout=35.0, on_timeout=MagicMock(), clock=lambda: now[0])

        now[0] = 120.0
        assert monitor.is_stale() is False

        now[0] = 136.0
        assert monitor.is_stale() is True

        monitor.touch()
        assert monitor.seconds_since_activity() == 0.0

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            HealthMonitor(timeout=0, on_timeout=MagicMock())


class TestHealthCheckPinger:
    @pytest.mark.asyncio
    async def test_sends_health_check_frames(self):
        send = AsyncMock()
        pinger = HealthCheckPinger(send, interval=0.01, client_id=lambda: "conn-1")

        pinger.start()
        await asyncio.sleep(0.05)
        pinger.stop()

        assert pinger.sent >= 1
        send.assert_awaited_with({"type": "health.check", "client_id": "conn-1"})

    @pytest.mark.asyncio
    async def test_send_failure_stops_pinger(self):
        send = AsyncMock(side_effect=ConnectionClosedError("Connection closed", close_code=1006))
        pinger = HealthCheckPinger(send, interval=0.01, client_id=lambda: None)

        pinger.start()
        await asyncio.sleep(0.05)

        assert pinger.running is False
        assert pinger.sent == 0
        send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closed_socket_stops_pinger(self):
        send = AsyncMock(side_effect=NotConnectedError("Socket is not open"))
        pinger = HealthCheckPinger(send, interval=0.01, client_id=lambda: "conn-1")

        pinger.start()
        await asyncio.sleep(0.05)

        assert pinger.running is False
        assert pinger._task.exception() is None
        send.assert_awaited_once()

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            HealthCheckPinger(AsyncMock(), interval=0, client_id=lambda: None)
