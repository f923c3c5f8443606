from unittest.mock import AsyncMock, Mock

import pytest

from transmission_monitor.models import Snapshot
from transmission_monitor.query_service import QueryService, clamp_range, clamp_seconds

DAY = 86400
NOW = 1_700_000_000_000


def test_clamp_seconds_bounds():
    assert clamp_seconds(0) == 1
    assert clamp_seconds(-5) == 1
    assert clamp_seconds(60) == 60
    assert clamp_seconds(DAY) == DAY
    assert clamp_seconds(DAY * 7) == DAY


def test_clamp_range_limits_to_retention_and_now():
    assert clamp_range(0, NOW + 10_000, NOW) == (NOW - DAY * 1000, NOW)
    assert clamp_range(NOW - 5000, NOW - 1000, NOW) == (NOW - 5000, NOW - 1000)


def test_clamp_range_can_invert_window():
    from_ms, to_ms = clamp_range(NOW + 1000, NOW + 2000, NOW)

    assert from_ms > to_ms


@pytest.fixture
def store():
    store = Mock()
    store.query_last = AsyncMock(return_value=[Snapshot(timestamp=NOW, upload=1, download=2)])
    store.query_range = AsyncMock(return_value=[])
    return store


@pytest.mark.asyncio
async def test_get_last_clamps_and_reports(store):
    service = QueryService(store, clock=lambda: NOW)

    result = await service.get_last(10 * DAY)

    store.query_last.assert_awaited_once_with(DAY, now_ms=NOW)
    assert result["count"] == 1
    assert result["seconds"] == DAY
    assert result["snapshots"][0].upload == 1


@pytest.mark.asyncio
async def test_get_range_clamps_before_querying(store):
    service = QueryService(store, clock=lambda: NOW)

    result = await service.get_range(0, NOW + 60_000)

    store.query_range.assert_awaited_once_with(NOW - DAY * 1000, NOW)
    assert result == {"count": 0, "from": NOW - DAY * 1000, "to": NOW, "snapshots": []}


@pytest.mark.asyncio
async def test_future_window_is_empty_without_store_call(store):
    service = QueryService(store, clock=lambda: NOW)

    result = await service.get_range(NOW + 1000, NOW + 2000)

    assert result["count"] == 0
    assert result["snapshots"] == []
    store.query_range.assert_not_awaited()


@pytest.mark.asyncio
async def test_store_errors_propagate(store):
    from transmission_monitor.database import SnapshotStoreError

    store.query_last = AsyncMock(side_effect=SnapshotStoreError("disk"))
    service = QueryService(store, clock=lambda: NOW)

    with pytest.raises(SnapshotStoreError):
        await service.get_last(60)
