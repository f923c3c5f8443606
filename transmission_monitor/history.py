"""
Snapshot History (consumer side)

Keeps a bounded, time-ordered view of the monitor's snapshots for a dashboard
or a terminal watcher. The view is seeded from the REST API, then extended by
the live websocket stream. Panning to a historical window replaces the buffer
with the fetched range; returning to the live edge refetches, so the tail
never holds duplicates or gaps.
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import aiohttp

from .config import (HISTORY_BUFFER_SIZE, HISTORY_DEBOUNCE_SECONDS, HISTORY_INITIAL_SECONDS,
                     HISTORY_RECONNECT_DELAY_SECONDS, HISTORY_REQUEST_TIMEOUT, MONITOR_URL,
                     SNAPSHOT_INTERVAL_MS, WEBSOCKET_HEARTBEAT_SECONDS)
from .models import Snapshot, current_millis

log = logging.getLogger("TransmissionMonitor.History")


class MonitorAPIError(Exception):
    """Raised when the monitor's REST API cannot be queried."""


def parse_snapshots(items: Iterable[Dict[str, Any]]) -> List[Snapshot]:
    snapshots = []
    for item in items:
        try:
            snapshots.append(Snapshot.from_dict(item))
        except (ValueError, KeyError, TypeError) as e:
            log.warning(f"Ignoring malformed snapshot from monitor: {e}")
    return snapshots


class MonitorAPIClient:
    """HTTP and websocket client for a running snapshot monitor."""

    def __init__(self, base_url: str = MONITOR_URL, ws_url: Optional[str] = None,
                 timeout: float = HISTORY_REQUEST_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        if ws_url is None:
            scheme, _, rest = self.base_url.partition('://')
            ws_url = f"{'wss' if scheme == 'https' else 'ws'}://{rest}/ws"
        self.ws_url = ws_url
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(raise_for_status=False)
        return self.session

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _get_snapshots(self, params: Dict[str, str]) -> List[Snapshot]:
        session = await self._ensure_session()
        url = f"{self.base_url}/snapshots"
        try:
            async with session.get(url, params=params,
                                   timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    raise MonitorAPIError(f"Monitor returned HTTP {resp.status} for {url}")
                data = await resp.json()
        except asyncio.TimeoutError:
            raise MonitorAPIError(f"Request to {url} timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise MonitorAPIError(f"Request to {url} failed: {e}") from e
        return parse_snapshots(data.get('snapshots') or [])

    async def fetch_last(self, seconds: int) -> List[Snapshot]:
        return await self._get_snapshots({'seconds': str(int(seconds))})

    async def fetch_range(self, from_ms: int, to_ms: int) -> List[Snapshot]:
        return await self._get_snapshots({'from': str(int(from_ms)), 'to': str(int(to_ms))})

    async def stream(self, on_open: Optional[Callable[[], Awaitable[None]]] = None):
        """
        Yields live snapshots until the connection ends. on_open is awaited once
        the socket is established, before the first message is read.
        """
        session = await self._ensure_session()
        async with session.ws_connect(self.ws_url, heartbeat=WEBSOCKET_HEARTBEAT_SECONDS) as ws:
            if on_open is not None:
                await on_open()
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        yield Snapshot.from_dict(json.loads(msg.data))
                    except (ValueError, KeyError, TypeError) as e:
                        log.warning(f"Ignoring malformed live snapshot: {e}")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.warning(f"Live stream error: {ws.exception()}")
                    break


@dataclass
class HistoryState:
    data: List[Snapshot]
    is_connected: bool
    is_loading: bool
    error: Optional[str]


@dataclass(frozen=True)
class WindowRequest:
    """A visible window: width_seconds ending end_offset_seconds before now."""
    width_seconds: int
    end_offset_seconds: int = 0

    @property
    def live(self) -> bool:
        return self.end_offset_seconds == 0

    def bounds(self, now_ms: int):
        to_ms = now_ms - self.end_offset_seconds * 1000
        return to_ms - self.width_seconds * 1000, to_ms


class SnapshotHistory:
    """
    Merges an initial historical fetch with the live stream into one buffer.

    In live mode every live snapshot is appended to the tail and the oldest one
    is evicted once the buffer is full. A live snapshot whose timestamp is not
    newer than the tail is dropped, so overlapping fetches and stream messages
    never produce duplicates. Window changes are debounced: only the last
    request of a burst is applied.
    """

    def __init__(self, api: MonitorAPIClient,
                 initial_seconds: int = HISTORY_INITIAL_SECONDS,
                 buffer_size: int = HISTORY_BUFFER_SIZE,
                 reconnect_delay: float = HISTORY_RECONNECT_DELAY_SECONDS,
                 debounce_seconds: float = HISTORY_DEBOUNCE_SECONDS,
                 interval_ms: int = SNAPSHOT_INTERVAL_MS,
                 clock: Callable[[], int] = current_millis):
        self.api = api
        self.buffer_size = buffer_size
        self.reconnect_delay = reconnect_delay
        self.debounce_seconds = debounce_seconds
        self.interval_ms = interval_ms
        self.clock = clock

        self.window = WindowRequest(initial_seconds)
        self.live = True
        self.is_connected = False
        self.is_loading = False
        self.error: Optional[str] = None

        self._buffer: Deque[Snapshot] = deque(maxlen=self._capacity_for(self.window))
        self._held: Optional[List[Snapshot]] = None
        self._pending: Optional[WindowRequest] = None
        self._pending_at = 0.0
        self._connected_once = False
        self._requery_task: Optional[asyncio.Task] = None
        self._stream_task: Optional[asyncio.Task] = None

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen

    def _capacity_for(self, window: WindowRequest) -> int:
        # A window wider than the configured bound still has to fit on screen
        samples = window.width_seconds * 1000 // max(1, self.interval_ms) + 5
        return max(self.buffer_size, samples)

    async def start(self):
        await self._load(self.api.fetch_last(self.window.width_seconds), self.window)
        self._stream_task = asyncio.create_task(self._stream_loop())

    async def close(self):
        tasks = [t for t in (self._stream_task, self._requery_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._stream_task = self._requery_task = None
        self.is_connected = False

    # --- Buffer maintenance ---

    def _replace(self, snapshots: Iterable[Snapshot], capacity: Optional[int] = None):
        unique: List[Snapshot] = []
        for snapshot in sorted(snapshots, key=lambda s: s.timestamp):
            if unique and unique[-1].timestamp == snapshot.timestamp:
                continue
            unique.append(snapshot)
        self._buffer = deque(unique, maxlen=capacity or self.capacity)

    def _append_live(self, snapshot: Snapshot) -> bool:
        if self._buffer and snapshot.timestamp <= self._buffer[-1].timestamp:
            log.debug(f"Dropping live snapshot {snapshot.timestamp}, already covered by the buffer.")
            return False
        self._buffer.append(snapshot)
        return True

    def _covers(self, from_ms: int) -> bool:
        """True when the live buffer already reaches back to from_ms, within one sample."""
        return bool(self._buffer) and self._buffer[0].timestamp <= from_ms + self.interval_ms

    def _on_live(self, snapshot: Snapshot):
        if self._held is not None:
            self._held.append(snapshot)
        elif self.live:
            self._append_live(snapshot)

    async def _load(self, fetch: Awaitable[List[Snapshot]], window: WindowRequest) -> bool:
        """
        Replaces the buffer with the fetch result and switches to window. When
        the fetch fails the previous window and its buffer stay in place. Live
        snapshots arriving meanwhile are replayed after, if the result is live.
        """
        self.is_loading = True
        self.error = None
        held = self._held = []
        snapshots = None
        try:
            snapshots = await fetch
        except MonitorAPIError as e:
            self.error = str(e)
            log.warning(f"Failed to load snapshots for {window}: {e}")
        finally:
            self.is_loading = False
            self._held = None

        if snapshots is not None:
            self.window = window
            self.live = window.live
            self._replace(snapshots, self._capacity_for(window))
        if self.live:
            for snapshot in held:
                self._append_live(snapshot)
        return snapshots is not None

    # --- Window re-query ---

    def request_window(self, width_seconds: int, end_offset_seconds: int = 0) -> asyncio.Task:
        """
        Asks for a new visible window. Requests inside the debounce period
        replace each other; the returned task finishes once the last one is applied.
        """
        self._pending = WindowRequest(max(1, int(width_seconds)), max(0, int(end_offset_seconds)))
        self._pending_at = asyncio.get_running_loop().time()
        if self._requery_task is None or self._requery_task.done():
            self._requery_task = asyncio.create_task(self._requery_loop())
        return self._requery_task

    async def _requery_loop(self):
        loop = asyncio.get_running_loop()
        while self._pending is not None:
            quiet = self._pending_at + self.debounce_seconds - loop.time()
            if quiet > 0:
                await asyncio.sleep(quiet)
                continue
            request, self._pending = self._pending, None
            try:
                await self._apply(request)
            except Exception:
                log.error(f"Error applying window {request}:", exc_info=True)

    async def _apply(self, request: WindowRequest):
        from_ms, to_ms = request.bounds(self.clock())
        if request.live and self.live and self._covers(from_ms):
            self.window = request
            capacity = self._capacity_for(request)
            if capacity != self.capacity:
                # Keeps the newest entries
                self._buffer = deque(self._buffer, maxlen=capacity)
            log.debug(f"Live window of {request.width_seconds}s already buffered, no fetch needed.")
            return
        if request.live:
            await self._load(self.api.fetch_last(request.width_seconds), request)
        else:
            await self._load(self.api.fetch_range(from_ms, to_ms), request)

    # --- Live stream ---

    async def _on_open(self):
        reconnected = self._connected_once
        self._connected_once = True
        self.is_connected = True
        self.error = None
        log.info(f"Live stream {'reconnected' if reconnected else 'connected'} at {self.api.ws_url}")
        if reconnected and self.live and self._buffer and self._held is None:
            await self._fill_gap()

    async def _fill_gap(self):
        """Fetches what was published while the stream was down."""
        from_ms = self._buffer[-1].timestamp + 1
        try:
            missed = await self.api.fetch_range(from_ms, self.clock())
        except MonitorAPIError as e:
            log.warning(f"Could not fill the gap after reconnecting: {e}")
            return
        if not self.live:
            return
        added = sum(1 for snapshot in sorted(missed, key=lambda s: s.timestamp) if self._append_live(snapshot))
        if added:
            log.info(f"Filled reconnect gap with {added} snapshot(s).")

    async def _stream_loop(self):
        while True:
            try:
                async for snapshot in self.api.stream(on_open=self._on_open):
                    self._on_live(snapshot)
                log.warning("Live stream closed by the monitor.")
            except asyncio.CancelledError:
                log.info("Live stream task cancelled.")
                break
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                log.warning(f"Live stream unavailable: {e}. Retrying in {self.reconnect_delay}s.")
                self.error = str(e) or type(e).__name__
            except Exception:
                log.error(f"Unexpected error in live stream. Retrying in {self.reconnect_delay}s.", exc_info=True)

            self.is_connected = False
            await asyncio.sleep(self.reconnect_delay)

    # --- Views ---

    def state(self) -> HistoryState:
        return HistoryState(data=list(self._buffer), is_connected=self.is_connected,
                            is_loading=self.is_loading, error=self.error)

    def visible(self) -> List[Snapshot]:
        """Snapshots inside the current window."""
        from_ms, to_ms = self.window.bounds(self.clock())
        return [s for s in self._buffer if from_ms <= s.timestamp <= to_ms]

    def to_graph_points(self) -> List[Dict[str, Any]]:
        """Chart-ready points: peers stripped, unavailable samples drawn as zero."""
        return [{
            'date': s.timestamp,
            'upload': s.upload or 0,
            'download': s.download or 0,
            'details': [{'torrent': d.torrent, 'torrent_id': d.torrent_id,
                         'upload': d.upload, 'download': d.download} for d in s.details],
        } for s in self._buffer]


@dataclass
class PeerSummary:
    ip: str
    port: int
    country: Optional[str]
    client: str
    is_seeder: bool
    total_download_speed: int = 0
    total_upload_speed: int = 0
    snapshot_count: int = 0

    @property
    def avg_download_speed(self) -> float:
        return self.total_download_speed / self.snapshot_count if self.snapshot_count else 0.0

    @property
    def avg_upload_speed(self) -> float:
        return self.total_upload_speed / self.snapshot_count if self.snapshot_count else 0.0


@dataclass
class TorrentSummary:
    torrent: str
    torrent_id: int
    total_upload: int = 0
    total_download: int = 0
    snapshot_count: int = 0
    peers: Dict[str, PeerSummary] = field(default_factory=dict)

    @property
    def avg_upload(self) -> float:
        return self.total_upload / self.snapshot_count if self.snapshot_count else 0.0

    @property
    def avg_download(self) -> float:
        return self.total_download / self.snapshot_count if self.snapshot_count else 0.0


def summarize_selection(snapshots: Iterable[Snapshot], start_ms: Optional[int] = None,
                        end_ms: Optional[int] = None) -> List[TorrentSummary]:
    """
    Per-torrent and per-peer totals and averages over the selected time range,
    busiest torrents first. The bounds may be given in either order.
    """
    if start_ms is not None and end_ms is not None and start_ms > end_ms:
        start_ms, end_ms = end_ms, start_ms

    torrents: Dict[int, TorrentSummary] = {}
    for snapshot in snapshots:
        if start_ms is not None and snapshot.timestamp < start_ms:
            continue
        if end_ms is not None and snapshot.timestamp > end_ms:
            continue
        for detail in snapshot.details:
            summary = torrents.get(detail.torrent_id)
            if summary is None:
                summary = torrents[detail.torrent_id] = TorrentSummary(detail.torrent, detail.torrent_id)
            summary.total_upload += detail.upload
            summary.total_download += detail.download
            summary.snapshot_count += 1

            for peer in detail.peers:
                key = f"{peer.ip}:{peer.port}"
                peer_summary = summary.peers.get(key)
                if peer_summary is None:
                    peer_summary = summary.peers[key] = PeerSummary(
                        peer.ip, peer.port, peer.country, peer.client, peer.is_seeder)
                peer_summary.total_download_speed += peer.download_speed
                peer_summary.total_upload_speed += peer.upload_speed
                peer_summary.snapshot_count += 1

    return sorted(torrents.values(), key=lambda t: t.avg_upload + t.avg_download, reverse=True)


async def watch(base_url: str = MONITOR_URL, report_interval: float = 5.0):
    """Follows a running monitor and logs throughput until cancelled."""
    api = MonitorAPIClient(base_url)
    history = SnapshotHistory(api)
    try:
        await history.start()
        while True:
            state = history.state()
            latest = state.data[-1] if state.data else None
            if latest is None:
                log.info(f"No snapshots yet (connected={state.is_connected}, error={state.error})")
            elif not latest.is_available:
                log.info(f"Transmission unavailable at {latest.timestamp} (connected={state.is_connected})")
            else:
                busiest = summarize_selection(history.visible())[:3]
                top = ', '.join(f"{t.torrent} ({t.avg_download:.0f}/{t.avg_upload:.0f} B/s)" for t in busiest)
                log.info(f"Down {latest.download} B/s, up {latest.upload} B/s, "
                         f"{len(latest.details)} active torrent(s), {len(state.data)} buffered, "
                         f"connected={state.is_connected}. Top: {top or '-'}")
            await asyncio.sleep(report_interval)
    finally:
        await history.close()
        await api.close()
