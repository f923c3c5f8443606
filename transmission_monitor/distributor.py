import asyncio
import logging
from typing import Callable, Optional, Set, Tuple

from .config import SUBSCRIBER_QUEUE_SIZE
from .models import Snapshot

log = logging.getLogger("TransmissionMonitor.Distributor")


class Subscription:
    """
    A push channel for one live subscriber.

    Offers never block: when the subscriber has not consumed its pending
    snapshots yet, the oldest pending one is dropped so the channel only ever
    holds the most recent state.
    """

    def __init__(self, distributor: 'SnapshotDistributor', max_pending: int = SUBSCRIBER_QUEUE_SIZE):
        self._distributor = distributor
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, max_pending))
        self.closed = False
        self.dropped = 0

    def offer(self, snapshot: Snapshot):
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(snapshot)

    async def get(self) -> Optional[Snapshot]:
        """Next snapshot, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self):
        """Unsubscribes and wakes up a pending get() with None."""
        if self.closed:
            return
        self.closed = True
        self._distributor.unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Snapshot:
        snapshot = await self.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot


class SnapshotDistributor:
    """Fans every published snapshot out to all current subscribers."""

    def __init__(self, max_pending: int = SUBSCRIBER_QUEUE_SIZE):
        self.max_pending = max_pending
        self._subscribers: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Tuple[Subscription, Callable[[], None]]:
        subscription = Subscription(self, self.max_pending)
        self._subscribers.add(subscription)
        log.debug(f"Subscriber added. Total subscribers: {len(self._subscribers)}")
        return subscription, subscription.close

    def unsubscribe(self, subscription: Subscription):
        if subscription in self._subscribers:
            self._subscribers.discard(subscription)
            log.debug(f"Subscriber removed. Total subscribers: {len(self._subscribers)}")
        if not subscription.closed:
            subscription.close()

    def publish(self, snapshot: Snapshot) -> int:
        """
        Hands the snapshot to every subscriber without awaiting any of them.
        A subscriber that fails to accept it is dropped. Returns the number of
        subscribers that received it.
        """
        delivered = 0
        # Snapshot of the set, offer() failures mutate it
        for subscription in list(self._subscribers):
            try:
                subscription.offer(snapshot)
                delivered += 1
            except Exception:
                log.warning("Dropping subscriber that failed to accept a snapshot:", exc_info=True)
                self.unsubscribe(subscription)
        return delivered

    def close(self):
        """Closes every subscription, ending their consumers."""
        for subscription in list(self._subscribers):
            subscription.close()
        log.info("All subscriber channels closed.")
