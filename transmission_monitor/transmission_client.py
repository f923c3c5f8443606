"""
Transmission RPC Client

Minimal asynchronous client for the Transmission daemon's JSON-RPC interface,
limited to what the snapshot collector needs: the list of torrents with their
transfer rates and connected peers.

Default RPC endpoint: http://localhost:9091/transmission/rpc
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .config import TRANSMISSION_URL, TRANSMISSION_USERNAME, TRANSMISSION_PASSWORD, SOURCE_TIMEOUT_SECONDS

log = logging.getLogger("TransmissionMonitor.RPCClient")

SESSION_ID_HEADER = 'X-Transmission-Session-Id'

TORRENT_FIELDS = ['id', 'name', 'status', 'rateDownload', 'rateUpload', 'peers']


class TransmissionError(Exception):
    """Raised for any failure talking to the Transmission daemon."""


class TransmissionClient:
    """
    Client for the Transmission RPC endpoint.

    Transmission protects its RPC endpoint against CSRF: the first request of a
    session is answered with HTTP 409 and a session id header that has to be
    echoed back on every following request. The id is cached and renewed
    transparently whenever the daemon rotates it.
    """

    def __init__(self, url: str = TRANSMISSION_URL, username: str = TRANSMISSION_USERNAME,
                 password: str = TRANSMISSION_PASSWORD, timeout: float = SOURCE_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout
        self.auth = aiohttp.BasicAuth(username, password) if username else None
        self.session: Optional[aiohttp.ClientSession] = None
        self.is_available = False
        self._session_id: Optional[str] = None
        self._last_error: Optional[str] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                auth=self.auth,
                raise_for_status=False  # Status codes are handled manually
            )
        return self.session

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None
            log.info("Transmission RPC session closed")

    async def call(self, method: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Performs one RPC call and returns its 'arguments' object."""
        payload = {'method': method, 'arguments': arguments or {}}
        try:
            data = await self._post(payload)
        except TransmissionError as e:
            self._mark_unavailable(str(e))
            raise
        except asyncio.TimeoutError:
            self._mark_unavailable("request timed out")
            raise TransmissionError(f"RPC call '{method}' timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            self._mark_unavailable(str(e))
            raise TransmissionError(f"RPC call '{method}' failed: {e}") from e

        result = data.get('result') if isinstance(data, dict) else None
        if result != 'success':
            self._mark_unavailable(str(result))
            raise TransmissionError(f"RPC call '{method}' returned result: {result}")

        if not self.is_available:
            log.info(f"Transmission RPC reachable at {self.url}")
        self.is_available = True
        self._last_error = None
        return data.get('arguments') or {}

    async def _post(self, payload: Dict[str, Any], retry_on_conflict: bool = True) -> Any:
        session = await self._ensure_session()
        headers = {SESSION_ID_HEADER: self._session_id} if self._session_id else {}
        async with session.post(self.url, json=payload, headers=headers) as resp:
            if resp.status == 409 and retry_on_conflict:
                self._session_id = resp.headers.get(SESSION_ID_HEADER)
                log.debug("Renewed Transmission session id")
                return await self._post(payload, retry_on_conflict=False)
            if resp.status == 401:
                raise TransmissionError("Transmission rejected the configured credentials (HTTP 401)")
            if resp.status != 200:
                text = await resp.text()
                raise TransmissionError(f"Transmission returned HTTP {resp.status}: {text[:200]}")
            return await resp.json(content_type=None)

    def _mark_unavailable(self, error: str):
        # Logged once per outage, the collector retries every tick
        if self.is_available or self._last_error is None:
            log.warning(f"Transmission RPC unavailable at {self.url}: {error}")
        self.is_available = False
        self._last_error = error

    async def get_torrents(self, fields: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        Get all torrents with the requested fields.

        Returns a list of raw torrent dicts as sent by Transmission, e.g.
        {"id": 1, "name": "...", "status": 4, "rateDownload": 1024, "rateUpload": 0, "peers": [...]}
        """
        arguments = await self.call('torrent-get', {'fields': fields or TORRENT_FIELDS})
        return arguments.get('torrents') or []
