"""
Shared fixtures for Transmission Monitor tests.
"""

import builtins
import contextlib
import os
import tempfile
from unittest.mock import Mock

import pytest

from transmission_monitor.models import PeerInfo, Snapshot, TorrentDetail


@pytest.fixture
def temp_db(monkeypatch):
    """Create temporary test database with full schema."""
    import transmission_monitor.config as config
    import transmission_monitor.database as database

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    monkeypatch.setattr(config, "DATABASE_FILE", path)

    try:
        database.init_db(path)

        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
async def store(temp_db):
    """SnapshotStore on the temporary database, executor shut down afterwards."""
    from transmission_monitor.database import SnapshotStore

    snapshot_store = SnapshotStore(temp_db)
    yield snapshot_store
    snapshot_store.close()


@pytest.fixture
def sample_peer():
    return PeerInfo(
        ip="203.0.113.7",
        port=51413,
        country="DE",
        client="qBittorrent 4.6.2",
        download_speed=2048,
        upload_speed=512,
        is_seeder=True,
        is_downloading=True,
        is_uploading=False,
    )


@pytest.fixture
def sample_detail(sample_peer):
    return TorrentDetail(torrent="debian-12.5.0-amd64-netinst.iso", torrent_id=3,
                         upload=512, download=2048, peers=(sample_peer,))


@pytest.fixture
def sample_snapshot(sample_detail):
    return Snapshot.from_details([sample_detail], timestamp=1_700_000_000_000)


@pytest.fixture
def sample_rpc_torrents():
    """torrent-get payload as returned by Transmission."""
    return [
        {
            "id": 1,
            "name": "ubuntu-24.04-desktop-amd64.iso",
            "status": 4,
            "rateDownload": 150000,
            "rateUpload": 2000,
            "peers": [
                {
                    "address": "198.51.100.20",
                    "port": 6881,
                    "clientName": "Transmission 4.0.5",
                    "rateToClient": 150000,
                    "rateToPeer": 0,
                    "progress": 1.0,
                    "isDownloadingFrom": True,
                    "isUploadingTo": False,
                },
                {
                    "address": "2001:db8::1",
                    "port": 51413,
                    "clientName": "libtorrent 2.0",
                    "rateToClient": 0,
                    "rateToPeer": 2000,
                    "progress": 0.4,
                    "isDownloadingFrom": False,
                    "isUploadingTo": True,
                },
            ],
        },
        {"id": 2, "name": "paused.iso", "status": 0, "rateDownload": 0, "rateUpload": 0, "peers": []},
        {"id": 5, "name": "archlinux-2024.05.01-x86_64.iso", "status": 6,
         "rateDownload": 0, "rateUpload": 8000, "peers": []},
    ]


@pytest.fixture
def mock_geoip_reader():
    """Mock GeoIP2 reader for testing."""
    reader = Mock()

    city_response = Mock()
    city_response.country.iso_code = "US"
    reader.city = Mock(return_value=city_response)

    return reader
