import asyncio
import logging
from typing import Callable, Optional

from .config import PRUNE_INTERVAL_SECONDS, RETENTION_MS, SNAPSHOT_INTERVAL_MS, SOURCE_TIMEOUT_SECONDS
from .database import SnapshotStore
from .distributor import SnapshotDistributor
from .models import Snapshot, current_millis

log = logging.getLogger("TransmissionMonitor.Collector")


def delay_until_next_boundary(now_ms: int, interval_ms: int) -> float:
    """
    Seconds until the next multiple of interval_ms on the wall clock.

    Recomputed before every tick so a slow tick shortens the following wait
    instead of shifting every later tick (no accumulated drift).
    """
    return (interval_ms - (now_ms % interval_ms)) / 1000.0


class Collector:
    """
    Periodic sampler: once per interval boundary it samples the source, stores
    the snapshot and publishes it to live subscribers. A second, hourly timer
    prunes snapshots older than the retention window.

    States: idle -> ticking -> stopped. A failing stage is logged and the
    schedule carries on; nothing raised by a tick ever ends the loop.
    """

    IDLE = 'idle'
    TICKING = 'ticking'
    STOPPED = 'stopped'

    def __init__(self, source, store: SnapshotStore, distributor: SnapshotDistributor,
                 interval_ms: int = SNAPSHOT_INTERVAL_MS,
                 source_timeout: float = SOURCE_TIMEOUT_SECONDS,
                 retention_ms: int = RETENTION_MS,
                 prune_interval: float = PRUNE_INTERVAL_SECONDS,
                 clock: Callable[[], int] = current_millis):
        if source_timeout * 1000 >= interval_ms:
            log.warning(f"Source timeout {source_timeout}s is not shorter than the tick interval "
                        f"{interval_ms}ms; slow samples will skip ticks.")
        self.source = source
        self.store = store
        self.distributor = distributor
        self.interval_ms = interval_ms
        self.source_timeout = source_timeout
        self.retention_ms = retention_ms
        self.prune_interval = prune_interval
        self.clock = clock

        self.state = self.IDLE
        self.tick_count = 0
        self._last_timestamp: Optional[int] = None
        self._tick_lock = asyncio.Lock()
        self._tick_task: Optional[asyncio.Task] = None
        self._prune_task: Optional[asyncio.Task] = None

    def start(self):
        if self.state == self.TICKING:
            log.warning("Collector already running.")
            return
        if self.state == self.STOPPED:
            raise RuntimeError("A stopped collector cannot be restarted")
        self.state = self.TICKING
        self._tick_task = asyncio.create_task(self._tick_loop())
        self._prune_task = asyncio.create_task(self._prune_loop())
        log.info(f"Collector started with {self.interval_ms}ms interval.")

    async def stop(self):
        tasks = [t for t in (self._tick_task, self._prune_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tick_task = self._prune_task = None
        self.state = self.STOPPED
        log.info(f"Collector stopped after {self.tick_count} tick(s).")

    async def tick(self) -> Snapshot:
        """One sample -> persist -> publish cycle. Concurrent calls run one after another."""
        async with self._tick_lock:
            snapshot = self._ensure_monotonic(await self._sample())
            stored = await self._persist(snapshot)
            result = stored or snapshot
            self._distribute(result)
            self.tick_count += 1
            return result

    async def _sample(self) -> Snapshot:
        started = self.clock()
        try:
            return await asyncio.wait_for(self.source.sample(), timeout=self.source_timeout)
        except asyncio.TimeoutError:
            log.warning(f"Source did not answer within {self.source_timeout}s, recording unavailable snapshot.")
        except Exception:
            log.error("Source raised while sampling, recording unavailable snapshot:", exc_info=True)
        return Snapshot.unavailable(started)

    def _ensure_monotonic(self, snapshot: Snapshot) -> Snapshot:
        if self._last_timestamp is not None and snapshot.timestamp < self._last_timestamp:
            log.debug(f"Clock went backwards ({snapshot.timestamp} < {self._last_timestamp}), clamping.")
            snapshot = snapshot.with_timestamp(self._last_timestamp)
        self._last_timestamp = snapshot.timestamp
        return snapshot

    async def _persist(self, snapshot: Snapshot) -> Optional[Snapshot]:
        try:
            return await self.store.append(snapshot)
        except Exception:
            log.error("Error persisting snapshot:", exc_info=True)
            return None

    def _distribute(self, snapshot: Snapshot):
        try:
            self.distributor.publish(snapshot)
        except Exception:
            log.error("Error publishing snapshot:", exc_info=True)

    async def _tick_loop(self):
        log.info("Snapshot collection task started.")
        while True:
            await asyncio.sleep(delay_until_next_boundary(self.clock(), self.interval_ms))
            try:
                await self.tick()
            except Exception:
                log.error("Error in snapshot collection tick:", exc_info=True)

    async def prune_once(self) -> int:
        cutoff = self.clock() - self.retention_ms
        try:
            deleted = await self.store.prune(cutoff)
        except Exception:
            log.error("Error in snapshot retention sweep:", exc_info=True)
            return 0
        if deleted > 0:
            log.info(f"Cleaned up {deleted} old snapshots")
        return deleted

    async def _prune_loop(self):
        log.info("Snapshot retention task started.")
        # First sweep runs immediately to clear any backlog left from downtime
        while True:
            await self.prune_once()
            await asyncio.sleep(self.prune_interval)
