import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple


def current_millis() -> int:
    """Wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PeerInfo:
    """One remote peer of a torrent as observed at sample time."""
    ip: str
    port: int
    country: Optional[str] = None
    client: str = ''
    download_speed: int = 0
    upload_speed: int = 0
    is_seeder: bool = False
    is_downloading: bool = False
    is_uploading: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ip': self.ip,
            'port': self.port,
            'country': self.country,
            'client': self.client,
            'downloadSpeed': self.download_speed,
            'uploadSpeed': self.upload_speed,
            'isSeeder': self.is_seeder,
            'isDownloading': self.is_downloading,
            'isUploading': self.is_uploading,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PeerInfo':
        return cls(
            ip=str(data['ip']),
            port=int(data['port']),
            country=data.get('country'),
            client=data.get('client') or '',
            download_speed=int(data.get('downloadSpeed') or 0),
            upload_speed=int(data.get('uploadSpeed') or 0),
            is_seeder=bool(data.get('isSeeder')),
            is_downloading=bool(data.get('isDownloading')),
            is_uploading=bool(data.get('isUploading')),
        )


@dataclass(frozen=True)
class TorrentDetail:
    """Transfer state of one active (downloading or seeding) torrent."""
    torrent: str
    torrent_id: int
    upload: int = 0
    download: int = 0
    peers: Tuple[PeerInfo, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'torrent': self.torrent,
            'torrent_id': self.torrent_id,
            'upload': self.upload,
            'download': self.download,
            'peers': [peer.to_dict() for peer in self.peers],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TorrentDetail':
        return cls(
            torrent=str(data['torrent']),
            torrent_id=int(data['torrent_id']),
            upload=int(data.get('upload') or 0),
            download=int(data.get('download') or 0),
            peers=tuple(PeerInfo.from_dict(p) for p in data.get('peers') or []),
        )


@dataclass(frozen=True)
class Snapshot:
    """
    One timestamped sample of aggregate and per-torrent transfer state.

    upload/download are None together exactly when the monitored client could not be
    reached; in that case details is always empty. A reachable client with no traffic
    produces zero aggregates instead, so the two situations stay distinguishable in storage.
    """
    timestamp: int
    upload: Optional[int]
    download: Optional[int]
    details: Tuple[TorrentDetail, ...] = ()
    id: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        if (self.upload is None) != (self.download is None):
            raise ValueError("upload and download must be both null or both set")
        if self.upload is None and self.details:
            raise ValueError("an unavailable snapshot cannot carry torrent details")

    @property
    def is_available(self) -> bool:
        return self.upload is not None

    @classmethod
    def unavailable(cls, timestamp: Optional[int] = None) -> 'Snapshot':
        """Sentinel snapshot recorded when the monitored client is unreachable."""
        return cls(timestamp=current_millis() if timestamp is None else timestamp,
                   upload=None, download=None, details=())

    @classmethod
    def from_details(cls, details, timestamp: Optional[int] = None) -> 'Snapshot':
        """Builds a snapshot whose aggregates are the sums over the given torrent details."""
        details = tuple(details)
        return cls(
            timestamp=current_millis() if timestamp is None else timestamp,
            upload=sum(d.upload for d in details),
            download=sum(d.download for d in details),
            details=details,
        )

    def with_id(self, snapshot_id: int) -> 'Snapshot':
        return replace(self, id=snapshot_id)

    def with_timestamp(self, timestamp: int) -> 'Snapshot':
        return replace(self, timestamp=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'timestamp': self.timestamp,
            'upload': self.upload,
            'download': self.download,
            'details': [detail.to_dict() for detail in self.details],
        }
        if self.id is not None:
            data = {'id': self.id, **data}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Snapshot':
        upload = data.get('upload')
        download = data.get('download')
        return cls(
            id=data.get('id'),
            timestamp=int(data['timestamp']),
            upload=None if upload is None else int(upload),
            download=None if download is None else int(download),
            details=tuple(TorrentDetail.from_dict(d) for d in data.get('details') or []),
        )
