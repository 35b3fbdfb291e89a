"""
SQLite backend for the persisted store.

- Connection management with PRAGMA configuration
- Transaction context manager
- Retry on "database is locked"
- One JSON-document table per collection, with index columns

Design Principles:
- WAL journal mode so a reader (e.g. the valuation worker) never blocks the writer
- Every write runs inside its own transaction; bulk_put and replace_all are single transactions
- sqlite3 errors are mapped to StorageReadFailure / StorageWriteFailure
"""

import functools
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .store import (
    COLLECTION_INDEXES,
    COLLECTION_KEYS,
    Store,
    StorageReadFailure,
    StorageWriteFailure,
    key_field,
    record_key,
)

logger = logging.getLogger(__name__)


# ============================================================
# Configuration Constants
# ============================================================

PRAGMA_CONFIG = {
    "journal_mode": "WAL",          # Write-Ahead Logging for concurrency
    "synchronous": "NORMAL",        # Balance safety/performance
    "temp_store": "MEMORY",
    "busy_timeout": 5000,           # Wait 5s for lock (milliseconds)
}

RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.5  # seconds
RETRY_MAX_DELAY = 5.0   # seconds

CURSOR_FETCH_SIZE = 500


# ============================================================
# Retry Logic
# ============================================================

def exponential_backoff(attempt: int, base_delay: float = RETRY_BASE_DELAY, max_delay: float = RETRY_MAX_DELAY) -> float:
    """
    Calculate exponential backoff delay.

    Formula: min(base_delay * (2 ** attempt), max_delay)
    Example: 0.5, 1.0, 2.0, 4.0, 5.0 (capped)
    """
    delay = base_delay * (2 ** attempt)
    return min(delay, max_delay)


def retry_on_locked(max_attempts: int = RETRY_MAX_ATTEMPTS):
    """
    Decorator for retrying operations when the database is locked.

    Only use on reads and idempotent writes (puts keyed by primary key are
    idempotent here).

    Error Handling:
    - sqlite3.OperationalError with "locked" → retry with backoff
    - Other exceptions → immediate re-raise
    - After max_attempts → raise OperationalError with context
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            last_exception = None

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)

                except sqlite3.OperationalError as e:
                    if "locked" not in str(e).lower():
                        raise

                    last_exception = e

                    if attempt < max_attempts - 1:
                        delay = exponential_backoff(attempt)
                        logger.warning(
                            f"Database locked, retrying in {delay:.1f}s (attempt {attempt + 1}/{max_attempts})"
                        )
                        time.sleep(delay)

            raise sqlite3.OperationalError(
                f"Database locked after {max_attempts} attempts. Original error: {last_exception}"
            ) from last_exception

        return wrapper
    return decorator


# ============================================================
# Connection Management
# ============================================================

def open_connection(db_path: Path) -> sqlite3.Connection:
    """
    Open SQLite connection with PRAGMA configuration.

    Args:
        db_path: Path to database file (parent directory is created)

    Returns:
        Configured sqlite3.Connection in autocommit mode; use transaction()
        for writes

    Raises:
        StorageReadFailure: Database locked, inaccessible or corrupted
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        conn = sqlite3.connect(
            str(db_path),
            timeout=30.0,
            check_same_thread=False,
            isolation_level=None,  # explicit BEGIN/COMMIT in transaction()
        )
        conn.row_factory = sqlite3.Row

        cursor = conn.cursor()
        for pragma, value in PRAGMA_CONFIG.items():
            cursor.execute(f"PRAGMA {pragma}={value}")

        return conn

    except sqlite3.DatabaseError as e:
        raise StorageReadFailure(f"Cannot open database {db_path}: {e}") from e


@contextmanager
def transaction(conn: sqlite3.Connection, isolation_level: str = "IMMEDIATE"):
    """
    Transaction context manager with automatic commit/rollback.

    Yields:
        sqlite3.Cursor

    Usage:
        >>> with transaction(conn) as cur:
        ...     cur.execute("INSERT ...")
        ...     # COMMIT on success, ROLLBACK on exception
    """
    cursor = conn.cursor()
    cursor.execute(f"BEGIN {isolation_level}")
    try:
        yield cursor
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def _index_column(index: str) -> str:
    return f"idx_{index}"


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create one table per collection (idempotent)."""
    with transaction(conn) as cur:
        for collection in COLLECTION_KEYS:
            index_cols = "".join(f", {_index_column(i)} TEXT" for i in COLLECTION_INDEXES[collection])
            cur.execute(
                f"CREATE TABLE IF NOT EXISTS {collection} ("
                f"pk TEXT PRIMARY KEY, body TEXT NOT NULL{index_cols})"
            )
            for index in COLLECTION_INDEXES[collection]:
                cur.execute(
                    f"CREATE INDEX IF NOT EXISTS {collection}_{index}_idx "
                    f"ON {collection} ({_index_column(index)})"
                )


# ============================================================
# Store
# ============================================================

class SQLiteStore(Store):
    """
    Store backed by a SQLite file.

    Records are stored as JSON text; index fields are copied into dedicated
    columns so get_by_index() does not scan.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.conn = open_connection(self.db_path)
        try:
            ensure_schema(self.conn)
        except sqlite3.Error as e:
            self.conn.close()
            raise StorageWriteFailure(f"Cannot initialize schema in {self.db_path}: {e}") from e

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    @staticmethod
    def _decode(row) -> Dict[str, Any]:
        return json.loads(row["body"])

    def _row_values(self, collection: str, record: Dict[str, Any]) -> List[Any]:
        values = [record_key(collection, record), json.dumps(record, sort_keys=True)]
        for index in COLLECTION_INDEXES[collection]:
            value = record.get(index)
            values.append(str(value) if value is not None else None)
        return values

    def _insert_sql(self, collection: str) -> str:
        columns = ["pk", "body"] + [_index_column(i) for i in COLLECTION_INDEXES[collection]]
        placeholders = ", ".join(["?"] * len(columns))
        return f"INSERT OR REPLACE INTO {collection} ({', '.join(columns)}) VALUES ({placeholders})"

    @retry_on_locked()
    def _read(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def _safe_read(self, collection: str, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        key_field(collection)
        try:
            return self._read(sql, params)
        except sqlite3.Error as e:
            raise StorageReadFailure(f"Read from {collection} failed: {e}") from e

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        rows = self._safe_read(collection, f"SELECT body FROM {collection} ORDER BY pk")
        return [self._decode(r) for r in rows]

    def get_by_index(self, collection: str, index: str, value: Any) -> List[Dict[str, Any]]:
        if index not in COLLECTION_INDEXES.get(collection, ()):
            # Unindexed field: fall back to a filtered scan
            return [r for r in self.get_all(collection) if r.get(index) == value]
        rows = self._safe_read(
            collection,
            f"SELECT body FROM {collection} WHERE {_index_column(index)} = ? ORDER BY pk",
            (str(value),),
        )
        return [self._decode(r) for r in rows]

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        rows = self._safe_read(collection, f"SELECT body FROM {collection} WHERE pk = ?", (str(key),))
        return self._decode(rows[0]) if rows else None

    @retry_on_locked()
    def _write(self, collection: str, records: List[Dict[str, Any]]) -> int:
        sql = self._insert_sql(collection)
        rows = [self._row_values(collection, r) for r in records]
        with transaction(self.conn) as cur:
            cur.executemany(sql, rows)
        return len(rows)

    def put(self, collection: str, record: Dict[str, Any]) -> str:
        key = record_key(collection, record)
        try:
            self._write(collection, [record])
        except sqlite3.Error as e:
            raise StorageWriteFailure(f"Write to {collection} failed for {key}: {e}") from e
        return key

    def bulk_put(self, collection: str, records: Iterable[Dict[str, Any]]) -> int:
        key_field(collection)
        records = list(records)
        if not records:
            return 0
        try:
            return self._write(collection, records)
        except sqlite3.Error as e:
            raise StorageWriteFailure(f"Bulk write to {collection} failed: {e}") from e

    @retry_on_locked()
    def _replace(self, collection: str, records: List[Dict[str, Any]]) -> int:
        sql = self._insert_sql(collection)
        rows = [self._row_values(collection, r) for r in records]
        with transaction(self.conn) as cur:
            cur.execute(f"DELETE FROM {collection}")
            cur.executemany(sql, rows)
        return len(rows)

    def replace_all(self, collection: str, records: Iterable[Dict[str, Any]]) -> int:
        key_field(collection)
        records = list(records)
        try:
            return self._replace(collection, records)
        except sqlite3.Error as e:
            raise StorageWriteFailure(f"Replace of {collection} failed: {e}") from e

    def delete(self, collection: str, key: str) -> bool:
        key_field(collection)
        try:
            with transaction(self.conn) as cur:
                cur.execute(f"DELETE FROM {collection} WHERE pk = ?", (str(key),))
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise StorageWriteFailure(f"Delete from {collection} failed for {key}: {e}") from e

    def count(self, collection: str) -> int:
        rows = self._safe_read(collection, f"SELECT COUNT(*) AS n FROM {collection}")
        return int(rows[0]["n"])

    def open_cursor(self, collection: str) -> Iterator[Dict[str, Any]]:
        key_field(collection)
        try:
            cursor = self.conn.execute(f"SELECT body FROM {collection} ORDER BY pk")
            while True:
                rows = cursor.fetchmany(CURSOR_FETCH_SIZE)
                if not rows:
                    break
                for row in rows:
                    yield self._decode(row)
        except sqlite3.Error as e:
            raise StorageReadFailure(f"Cursor over {collection} failed: {e}") from e
