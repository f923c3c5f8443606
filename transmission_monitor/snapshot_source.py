import logging
from typing import Any, Dict, List, Optional

from .config import ACTIVE_TORRENT_STATUSES
from .geoip import CountryLookup
from .models import PeerInfo, Snapshot, TorrentDetail, current_millis
from .transmission_client import TransmissionClient

log = logging.getLogger("TransmissionMonitor.Source")


def normalize_peer(raw: Dict[str, Any], geoip: Optional[CountryLookup] = None) -> PeerInfo:
    ip = raw.get('address') or ''
    return PeerInfo(
        ip=ip,
        port=int(raw.get('port') or 0),
        country=geoip.country(ip) if geoip else None,
        client=raw.get('clientName') or '',
        download_speed=max(0, int(raw.get('rateToClient') or 0)),
        upload_speed=max(0, int(raw.get('rateToPeer') or 0)),
        is_seeder=float(raw.get('progress') or 0) >= 1.0,
        is_downloading=bool(raw.get('isDownloadingFrom')),
        is_uploading=bool(raw.get('isUploadingTo')),
    )


def normalize_torrents(torrents: List[Dict[str, Any]], geoip: Optional[CountryLookup] = None) -> List[TorrentDetail]:
    """Keeps only downloading/seeding torrents, in the order Transmission reported them."""
    details = []
    for raw in torrents:
        if raw.get('status') not in ACTIVE_TORRENT_STATUSES:
            continue
        details.append(TorrentDetail(
            torrent=raw.get('name') or '',
            torrent_id=int(raw['id']),
            upload=max(0, int(raw.get('rateUpload') or 0)),
            download=max(0, int(raw.get('rateDownload') or 0)),
            peers=tuple(normalize_peer(p, geoip) for p in raw.get('peers') or []),
        ))
    return details


class TransmissionSource:
    """
    Samples the current transfer state of a Transmission daemon.

    sample() never raises: any failure reaching the daemon or normalizing its
    answer produces an unavailable snapshot (null aggregates, no details).
    Retrying is left to the caller's sampling cadence.
    """

    def __init__(self, client: TransmissionClient, geoip: Optional[CountryLookup] = None):
        self.client = client
        self.geoip = geoip

    async def sample(self) -> Snapshot:
        timestamp = current_millis()
        try:
            torrents = await self.client.get_torrents()
            return Snapshot.from_details(normalize_torrents(torrents, self.geoip), timestamp=timestamp)
        except Exception as e:
            log.debug(f"Sampling failed, recording unavailable snapshot: {type(e).__name__}: {e}")
            return Snapshot.unavailable(timestamp)

    async def close(self):
        await self.client.close()
        if self.geoip:
            self.geoip.close()
