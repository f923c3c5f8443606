"""
Database Utilities

Provides retry logic and connection management for SQLite operations shared
between the single snapshot writer and concurrent readers.
"""

import contextlib
import functools
import logging
import sqlite3
import time
from typing import Any, Callable, Iterator

log = logging.getLogger("TransmissionMonitor.DbUtils")


def retry_on_db_lock(max_attempts: int = 3, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator to retry database operations on lock/busy errors with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
                    error_msg = str(e).lower()

                    # Only retry on lock/busy errors, not other operational errors
                    if not any(err in error_msg for err in ["locked", "busy"]):
                        raise
                    if attempt == max_attempts:
                        log.error(f"Database operation failed after {max_attempts} attempts: {e}")
                        raise
                    log.warning(
                        f"Database operation failed (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    # Exponential backoff with jitter
                    delay = min(delay * 2 + (time.time() % 0.1), max_delay)

        return wrapper

    return decorator


def get_optimized_connection(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """
    Create an SQLite connection tuned for one writer and many concurrent readers.

    Args:
        db_path: Path to database file
        timeout: Busy timeout in seconds

    Returns:
        Configured SQLite connection
    """
    conn = sqlite3.connect(db_path, timeout=timeout, detect_types=0)
    cursor = conn.cursor()

    # WAL lets readers proceed while a write is in progress (persistent setting)
    cursor.execute("PRAGMA journal_mode=WAL;")
    # Synchronous mode: NORMAL is a good balance (FULL is too slow, OFF is risky)
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA temp_store=MEMORY;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")

    log.debug(f"Created optimized SQLite connection (timeout={timeout}s)")
    return conn


@contextlib.contextmanager
def open_connection(db_path: str, timeout: float = 30.0) -> Iterator[sqlite3.Connection]:
    """Yields a connection that commits on success, rolls back on error and is always closed."""
    conn = get_optimized_connection(db_path, timeout=timeout)
    try:
        with conn:
            yield conn
    finally:
        conn.close()
