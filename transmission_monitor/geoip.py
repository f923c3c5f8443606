import logging
from typing import Dict, Optional

import geoip2.database
import geoip2.errors

from .config import GEOIP_DATABASE_PATH, MAX_GEOIP_CACHE_SIZE

log = logging.getLogger("TransmissionMonitor.GeoIP")


class CountryLookup:
    """
    Best-effort peer IP to ISO country code lookup.

    Missing database files disable the lookup instead of failing startup; every
    miss (unknown address, malformed IP, no database) yields None.
    """

    def __init__(self, database_path: str = GEOIP_DATABASE_PATH, reader=None,
                 max_cache_size: int = MAX_GEOIP_CACHE_SIZE):
        self.reader = reader
        self.max_cache_size = max_cache_size
        self._cache: Dict[str, Optional[str]] = {}
        if self.reader is None and database_path:
            try:
                self.reader = geoip2.database.Reader(database_path)
                log.info("GeoIP database loaded successfully.")
            except (OSError, ValueError) as e:
                log.warning(f"GeoIP database not available at '{database_path}' ({e}). "
                            f"Peer countries will be reported as null.")

    def country(self, ip: str) -> Optional[str]:
        if self.reader is None or not ip:
            return None
        if ip in self._cache:
            return self._cache[ip]
        try:
            code = self.reader.city(ip).country.iso_code
        except (geoip2.errors.AddressNotFoundError, ValueError):
            code = None
        if len(self._cache) >= self.max_cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[ip] = code
        return code

    def close(self):
        if self.reader is not None and hasattr(self.reader, 'close'):
            self.reader.close()
            log.info("GeoIP database reader closed.")
