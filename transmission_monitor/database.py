import asyncio
import concurrent.futures
import json
import logging
import os
import sqlite3
from typing import List, Optional

from .config import (DATABASE_FILE, DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY,
                     DB_RETRY_MAX_DELAY, DB_THREAD_POOL_SIZE)
from .db_utils import retry_on_db_lock, open_connection
from .models import Snapshot, TorrentDetail, current_millis

log = logging.getLogger("TransmissionMonitor.Database")


class SnapshotStoreError(Exception):
    """Raised when the snapshot store cannot be read."""


def init_db(db_path: str = DATABASE_FILE):
    log.info(f"Opening snapshot database at '{db_path}' and checking schema...")
    directory = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(directory, exist_ok=True)

    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.cursor()

        cursor.execute('PRAGMA journal_mode;')
        mode = cursor.fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        # upload/download are NULL when Transmission was unavailable at sample time
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL,
                upload INTEGER,
                download INTEGER,
                details TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots (timestamp);')

    log.info("Database schema is valid and ready.")


def _row_to_snapshot(row: sqlite3.Row) -> Optional[Snapshot]:
    try:
        details = tuple(TorrentDetail.from_dict(d) for d in json.loads(row['details']))
        return Snapshot(id=row['id'], timestamp=row['timestamp'], upload=row['upload'],
                        download=row['download'], details=details)
    except (ValueError, TypeError, KeyError) as e:
        log.warning(f"Skipping malformed snapshot row id={row['id']}: {e}")
        return None


def _rows_to_snapshots(rows) -> List[Snapshot]:
    snapshots = []
    for row in rows:
        snapshot = _row_to_snapshot(row)
        if snapshot is not None:
            snapshots.append(snapshot)
    return snapshots


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_write_snapshot(db_path: str, snapshot: Snapshot) -> int:
    """Inserts one snapshot and returns its row id."""
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.execute(
            'INSERT INTO snapshots (timestamp, upload, download, details) VALUES (?, ?, ?, ?)',
            (snapshot.timestamp, snapshot.upload, snapshot.download,
             json.dumps([detail.to_dict() for detail in snapshot.details])))
        return cursor.lastrowid


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_snapshots_since(db_path: str, since_ms: int) -> List[Snapshot]:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute("""
            SELECT id, timestamp, upload, download, details FROM snapshots
            WHERE timestamp >= ?
            ORDER BY timestamp ASC, id ASC
        """, (since_ms,)).fetchall()
    return _rows_to_snapshots(rows)


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_snapshots_in_range(db_path: str, from_ms: int, to_ms: int) -> List[Snapshot]:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute("""
            SELECT id, timestamp, upload, download, details FROM snapshots
            WHERE timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp ASC, id ASC
        """, (from_ms, to_ms)).fetchall()
    return _rows_to_snapshots(rows)


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_prune_snapshots(db_path: str, cutoff_ms: int) -> int:
    """Deletes every snapshot strictly older than the cutoff and returns how many were removed."""
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.execute("DELETE FROM snapshots WHERE timestamp < ?", (cutoff_ms,))
        deleted = cursor.rowcount
    if deleted > 0:
        log.info(f"[DB_PRUNER] Pruned {deleted} snapshot(s) older than {cutoff_ms}.")
    return deleted


class SnapshotStore:
    """
    Append-only snapshot log backed by SQLite.

    Blocking calls run on a dedicated thread pool so the event loop is never held
    by disk I/O. Mutations (append, prune) are serialized through one lock; reads
    are not, WAL mode guarantees they see either the pre- or post-write state.
    """

    def __init__(self, db_path: str = DATABASE_FILE, executor: Optional[concurrent.futures.Executor] = None):
        self.db_path = db_path
        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=DB_THREAD_POOL_SIZE, thread_name_prefix='snapshot-db')
        self._write_lock = asyncio.Lock()

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, self.db_path, *args)

    async def append(self, snapshot: Snapshot) -> Optional[Snapshot]:
        """
        Persists a snapshot. Returns it with its storage id, or None when the write
        failed; failures are logged and never raised so the collector keeps ticking.
        """
        try:
            async with self._write_lock:
                snapshot_id = await self._run(blocking_write_snapshot, snapshot)
            return snapshot.with_id(snapshot_id)
        except Exception:
            log.error("Failed to save snapshot:", exc_info=True)
            return None

    async def query_last(self, duration_seconds: int, now_ms: Optional[int] = None) -> List[Snapshot]:
        now_ms = current_millis() if now_ms is None else now_ms
        since_ms = now_ms - int(duration_seconds * 1000)
        try:
            return await self._run(blocking_get_snapshots_since, since_ms)
        except sqlite3.Error as e:
            log.error(f"Failed to get snapshots for the last {duration_seconds}s: {e}")
            raise SnapshotStoreError(str(e)) from e

    async def query_range(self, from_ms: int, to_ms: int) -> List[Snapshot]:
        if from_ms > to_ms:
            return []
        try:
            return await self._run(blocking_get_snapshots_in_range, from_ms, to_ms)
        except sqlite3.Error as e:
            log.error(f"Failed to get snapshots in range [{from_ms}, {to_ms}]: {e}")
            raise SnapshotStoreError(str(e)) from e

    async def prune(self, older_than_ms: int) -> int:
        async with self._write_lock:
            return await self._run(blocking_prune_snapshots, older_than_ms)

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=True)
            log.info("Database executor shut down.")
