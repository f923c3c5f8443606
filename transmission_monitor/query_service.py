import logging
from typing import Any, Callable, Dict

from .config import MAX_QUERY_SECONDS
from .database import SnapshotStore
from .models import current_millis

log = logging.getLogger("TransmissionMonitor.QueryService")


def clamp_seconds(seconds: int, max_seconds: int = MAX_QUERY_SECONDS) -> int:
    return min(max(1, int(seconds)), max_seconds)


def clamp_range(from_ms: int, to_ms: int, now_ms: int, max_seconds: int = MAX_QUERY_SECONDS):
    """Limits a window to the retained history and to 'not in the future'."""
    return max(int(from_ms), now_ms - max_seconds * 1000), min(int(to_ms), now_ms)


class QueryService:
    """Read-only historical queries over the snapshot store, safe to call at any rate."""

    def __init__(self, store: SnapshotStore, max_seconds: int = MAX_QUERY_SECONDS,
                 clock: Callable[[], int] = current_millis):
        self.store = store
        self.max_seconds = max_seconds
        self.clock = clock

    async def get_last(self, seconds: int) -> Dict[str, Any]:
        seconds = clamp_seconds(seconds, self.max_seconds)
        snapshots = await self.store.query_last(seconds, now_ms=self.clock())
        return {'count': len(snapshots), 'seconds': seconds, 'snapshots': snapshots}

    async def get_range(self, from_ms: int, to_ms: int) -> Dict[str, Any]:
        from_ms, to_ms = clamp_range(from_ms, to_ms, self.clock(), self.max_seconds)
        if from_ms > to_ms:
            log.debug(f"Empty window after clamping: from={from_ms} > to={to_ms}")
            snapshots = []
        else:
            snapshots = await self.store.query_range(from_ms, to_ms)
        return {'count': len(snapshots), 'from': from_ms, 'to': to_ms, 'snapshots': snapshots}
