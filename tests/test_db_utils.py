"""
Unit tests for db_utils module.

Tests retry logic and connection management.
"""

import sqlite3
import time

import pytest

from transmission_monitor.db_utils import get_optimized_connection, open_connection, retry_on_db_lock


class TestRetryOnDbLock:
    """Test suite for retry_on_db_lock decorator."""

    def test_retry_decorator_success_first_attempt(self):
        """Test function succeeds on first attempt."""
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3)
        def test_function():
            call_count["count"] += 1
            return "success"

        result = test_function()
        assert result == "success"
        assert call_count["count"] == 1

    def test_retry_decorator_success_after_retry(self):
        """Test function succeeds after retries."""
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3, base_delay=0.01)
        def test_function():
            call_count["count"] += 1
            if call_count["count"] < 3:
                raise sqlite3.OperationalError("database is locked")
            return "success"

        result = test_function()
        assert result == "success"
        assert call_count["count"] == 3

    def test_retry_decorator_gives_up_after_max_attempts(self):
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=2, base_delay=0.01)
        def test_function():
            call_count["count"] += 1
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError, match="database is locked"):
            test_function()
        assert call_count["count"] == 2

    def test_retry_decorator_database_busy(self):
        """Test retry on database busy error."""
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=2, base_delay=0.01)
        def test_function():
            call_count["count"] += 1
            raise sqlite3.DatabaseError("database is busy")

        with pytest.raises(sqlite3.DatabaseError):
            test_function()
        assert call_count["count"] == 2

    def test_retry_decorator_non_retryable_error(self):
        """Test non-retryable errors are not retried."""
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3)
        def test_function():
            call_count["count"] += 1
            raise sqlite3.IntegrityError("UNIQUE constraint failed")

        with pytest.raises(sqlite3.IntegrityError):
            test_function()

        # Should only be called once (no retry)
        assert call_count["count"] == 1

    def test_retry_decorator_non_database_error(self):
        """Test non-database errors are not retried."""
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3)
        def test_function():
            call_count["count"] += 1
            raise ValueError("Not a database error")

        with pytest.raises(ValueError):
            test_function()

        assert call_count["count"] == 1

    def test_retry_decorator_exponential_backoff(self):
        """Test exponential backoff timing."""
        call_times = []

        @retry_on_db_lock(max_attempts=3, base_delay=0.05, max_delay=1.0)
        def test_function():
            call_times.append(time.time())
            if len(call_times) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "success"

        test_function()

        assert len(call_times) == 3
        delay1 = call_times[1] - call_times[0]
        delay2 = call_times[2] - call_times[1]
        assert delay2 > delay1


class TestGetOptimizedConnection:
    """Test suite for get_optimized_connection function."""

    def test_get_optimized_connection_basic(self, temp_db):
        conn = get_optimized_connection(temp_db, timeout=10.0)

        assert isinstance(conn, sqlite3.Connection)
        cursor = conn.cursor()
        cursor.execute("SELECT 1")
        assert cursor.fetchone()[0] == 1

        conn.close()

    def test_optimized_connection_wal_mode(self, temp_db):
        """Test that WAL mode is set so readers never block on the writer."""
        conn = get_optimized_connection(temp_db, timeout=10.0)

        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode")
        assert cursor.fetchone()[0].lower() == "wal"

        conn.close()

    def test_optimized_connection_pragmas(self, temp_db):
        conn = get_optimized_connection(temp_db, timeout=10.0)

        cursor = conn.cursor()
        cursor.execute("PRAGMA synchronous")
        assert cursor.fetchone()[0] == 1  # NORMAL
        cursor.execute("PRAGMA temp_store")
        assert cursor.fetchone()[0] == 2  # MEMORY
        cursor.execute("PRAGMA busy_timeout")
        assert cursor.fetchone()[0] == 10000

        conn.close()


class TestOpenConnection:
    def test_commits_on_success(self, temp_db):
        with open_connection(temp_db) as conn:
            conn.execute("INSERT INTO snapshots (timestamp, upload, download, details) VALUES (1, 0, 0, '[]')")

        with open_connection(temp_db) as conn:
            assert conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0] == 1

    def test_rolls_back_on_error(self, temp_db):
        with pytest.raises(RuntimeError):
            with open_connection(temp_db) as conn:
                conn.execute("INSERT INTO snapshots (timestamp, upload, download, details) VALUES (1, 0, 0, '[]')")
                raise RuntimeError("boom")

        with open_connection(temp_db) as conn:
            assert conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0] == 0

    def test_connection_is_closed_afterwards(self, temp_db):
        with open_connection(temp_db) as conn:
            pass

        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
