import asyncio
from typing import Any, Dict

import pytest

from transmission_monitor.distributor import SnapshotDistributor
from transmission_monitor.models import Snapshot
from transmission_monitor.websocket_utils import pump_snapshots, safe_send_json


class DummyWS:
    """
    Minimal async WebSocket-like stub for testing safe_send_json and pump_snapshots.
    """

    def __init__(self, closed: bool = False, raise_exc: BaseException = None):
        self.closed = closed
        self._raise_exc = raise_exc
        self.sent: list[Dict[str, Any]] = []
        self.close_calls = 0

    async def send_json(self, payload):
        if self._raise_exc:
            raise self._raise_exc
        self.sent.append(payload)

    async def close(self):
        self.close_calls += 1
        self.closed = True


@pytest.mark.asyncio
async def test_safe_send_json_success():
    # Arrange
    ws = DummyWS(closed=False)
    payload = {"timestamp": 1, "upload": 0, "download": 0, "details": []}

    # Act
    ok = await safe_send_json(ws, payload)

    # Assert
    assert ok is True
    assert ws.sent == [payload]


@pytest.mark.asyncio
async def test_safe_send_json_closed_socket_returns_false():
    ws = DummyWS(closed=True)

    ok = await safe_send_json(ws, {"timestamp": 2})

    assert ok is False
    assert ws.sent == []


@pytest.mark.asyncio
async def test_safe_send_json_connection_reset_error_is_suppressed():
    # Arrange: safe_send_json catches ConnectionResetError and returns False
    ws = DummyWS(closed=False, raise_exc=ConnectionResetError("connection reset"))

    # Act
    ok = await safe_send_json(ws, {"timestamp": 3})

    # Assert
    assert ok is False
    assert ws.sent == []


@pytest.mark.asyncio
async def test_safe_send_json_unexpected_error_returns_false():
    ws = DummyWS(closed=False, raise_exc=TypeError("not serializable"))

    assert await safe_send_json(ws, {"timestamp": 4}) is False


@pytest.mark.asyncio
async def test_pump_forwards_snapshots_until_channel_closes():
    distributor = SnapshotDistributor(max_pending=5)
    subscription, unsubscribe = distributor.subscribe()
    ws = DummyWS()

    pump = asyncio.create_task(pump_snapshots(ws, subscription))
    distributor.publish(Snapshot(timestamp=1, upload=10, download=20))
    distributor.publish(Snapshot.unavailable(2))
    await asyncio.sleep(0.01)
    unsubscribe()
    await asyncio.wait_for(pump, timeout=1)

    assert ws.sent == [
        {"timestamp": 1, "upload": 10, "download": 20, "details": []},
        {"timestamp": 2, "upload": None, "download": None, "details": []},
    ]
    assert ws.close_calls == 1


@pytest.mark.asyncio
async def test_pump_failed_send_unsubscribes():
    distributor = SnapshotDistributor()
    subscription, _ = distributor.subscribe()
    ws = DummyWS(raise_exc=ConnectionResetError("gone"))

    pump = asyncio.create_task(pump_snapshots(ws, subscription))
    distributor.publish(Snapshot(timestamp=1, upload=1, download=1))
    await asyncio.wait_for(pump, timeout=1)

    assert distributor.subscriber_count == 0
    assert subscription.closed
    assert ws.closed
