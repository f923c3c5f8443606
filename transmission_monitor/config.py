import os

# --- Configuration ---
# Every setting can be overridden through the environment. The service files
# (systemd, docker) are expected to set DATA_DIR to a persistent location.

# --- Monitored Transmission daemon ---
TRANSMISSION_URL = os.getenv('TRANSMISSION_URL', 'http://localhost:9091/transmission/rpc')
TRANSMISSION_USERNAME = os.getenv('TRANSMISSION_USERNAME', '')
TRANSMISSION_PASSWORD = os.getenv('TRANSMISSION_PASSWORD', '')

# --- Storage ---
DATA_DIR = os.getenv('DATA_DIR', './data')
DATABASE_FILE = os.getenv('TRANSMISSION_MONITOR_DB_PATH', os.path.join(DATA_DIR, 'snapshots.db'))
GEOIP_DATABASE_PATH = os.getenv('GEOIP_DATABASE_PATH', 'GeoLite2-City.mmdb')
MAX_GEOIP_CACHE_SIZE = 5000

# --- Server ---
SERVER_HOST = os.getenv('HOST', '0.0.0.0')
SERVER_PORT = int(os.getenv('PORT', '3000'))
CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*')
WEBSOCKET_HEARTBEAT_SECONDS = 10

# --- Collection ---
SNAPSHOT_INTERVAL_MS = int(os.getenv('SNAPSHOT_INTERVAL_MS', '1000'))
# Must stay below the tick interval, a hung daemon would otherwise starve later ticks
SOURCE_TIMEOUT_SECONDS = float(os.getenv('SOURCE_TIMEOUT_SECONDS', str(SNAPSHOT_INTERVAL_MS * 0.8 / 1000)))
SUBSCRIBER_QUEUE_SIZE = 1  # Only the most recent undelivered snapshot is kept per subscriber

# --- Retention ---
RETENTION_HOURS = 24
RETENTION_MS = RETENTION_HOURS * 60 * 60 * 1000
PRUNE_INTERVAL_SECONDS = 60 * 60  # Hourly retention sweep
MAX_QUERY_SECONDS = RETENTION_HOURS * 60 * 60
DEFAULT_QUERY_SECONDS = 60

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 4
DB_CONNECTION_TIMEOUT = 180.0  # Busy timeout (seconds) while another connection holds the write lock
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)

# --- History client (consumer side) ---
MONITOR_URL = os.getenv('MONITOR_URL', 'http://localhost:3000')
HISTORY_INITIAL_SECONDS = 300
HISTORY_BUFFER_SIZE = 3600  # One hour of samples at the default interval
HISTORY_RECONNECT_DELAY_SECONDS = 3.0
HISTORY_DEBOUNCE_SECONDS = 0.5
HISTORY_REQUEST_TIMEOUT = 10  # seconds

# --- Transmission torrent status codes ---
TORRENT_STATUS_DOWNLOADING = 4
TORRENT_STATUS_SEEDING = 6
ACTIVE_TORRENT_STATUSES = (TORRENT_STATUS_DOWNLOADING, TORRENT_STATUS_SEEDING)
