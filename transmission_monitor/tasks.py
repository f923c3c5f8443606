import logging

from .collector import Collector
from .config import DATABASE_FILE, GEOIP_DATABASE_PATH, TRANSMISSION_URL
from .database import SnapshotStore
from .distributor import SnapshotDistributor
from .geoip import CountryLookup
from .query_service import QueryService
from .snapshot_source import TransmissionSource
from .transmission_client import TransmissionClient

log = logging.getLogger("TransmissionMonitor.Tasks")


async def start_background_tasks(app):
    log.info("Starting background tasks...")
    app["store"] = SnapshotStore(app.get("db_path", DATABASE_FILE))
    app["distributor"] = SnapshotDistributor()
    app["query_service"] = QueryService(app["store"])

    client = TransmissionClient(url=app.get("transmission_url", TRANSMISSION_URL))
    app["source"] = TransmissionSource(client, CountryLookup(GEOIP_DATABASE_PATH))
    log.info(f"Monitoring Transmission at {client.url}")

    app["collector"] = Collector(app["source"], app["store"], app["distributor"])
    app["collector"].start()


async def shutdown_subscribers(app):
    # Closing the channels ends each websocket pump, which closes its socket
    if "distributor" in app:
        app["distributor"].close()


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    if "collector" in app:
        await app["collector"].stop()
    if "distributor" in app:
        app["distributor"].close()
    if "source" in app:
        await app["source"].close()
    if "store" in app:
        app["store"].close()
