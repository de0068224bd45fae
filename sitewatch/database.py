"""SQLite store: monitored URL source, owner lookup and result persistence."""

import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


class FetchError(DatabaseError):
    """Raised when the monitored URL list cannot be read."""

    pass


class OwnerNotFoundError(Exception):
    """Raised when no client with an email address owns a URL."""

    pass


# Global lock for thread-safe database access.
# The scheduler may write from several worker threads; SQLite allows one writer.
_db_lock = threading.Lock()


def init_db(db_path: str) -> sqlite3.Connection:
    """Open the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS websites (
                website_url TEXT PRIMARY KEY,
                client INTEGER REFERENCES users(id),
                website_status TEXT,
                response_time_ms INTEGER,
                last_updated TEXT,
                ssl_issuer TEXT,
                ssl_expired_date TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS response_times (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                website_url TEXT NOT NULL,
                response_time_ms INTEGER NOT NULL,
                recorded_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_response_times_url_recorded_at
            ON response_times(website_url, recorded_at)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


def list_monitored_urls(conn: sqlite3.Connection) -> list[str]:
    """Return every monitored URL in insertion order.

    Raises:
        FetchError: If the query fails.
    """
    try:
        with _db_lock:
            rows = conn.execute("SELECT website_url FROM websites ORDER BY rowid").fetchall()
    except sqlite3.Error as e:
        raise FetchError(f"Failed to fetch website URLs: {e}")
    return [row[0] for row in rows]


def lookup_owner_email(conn: sqlite3.Connection, url: str) -> str:
    """Return the email address of the client that owns a URL.

    Raises:
        OwnerNotFoundError: If the URL has no owning client or the client has no email.
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute(
                """
                SELECT users.email FROM websites
                JOIN users ON users.id = websites.client
                WHERE websites.website_url = ?
                """,
                (url,),
            ).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to look up owner of {url}: {e}")

    if row is None or not row[0]:
        raise OwnerNotFoundError(f"No client email configured for {url}")
    return str(row[0])


def record_status(
    conn: sqlite3.Connection,
    url: str,
    status_label: str,
    response_time_ms: int,
) -> None:
    """Upsert the latest status of a URL and stamp the update time.

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO websites (website_url, website_status, response_time_ms, last_updated)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(website_url) DO UPDATE SET
                    website_status = excluded.website_status,
                    response_time_ms = excluded.response_time_ms,
                    last_updated = excluded.last_updated
                """,
                (url, status_label, response_time_ms, datetime.now(UTC).isoformat()),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update website status for {url}: {e}")


def record_latency_sample(conn: sqlite3.Connection, url: str, response_time_ms: int) -> None:
    """Append a response time sample to the time series.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                "INSERT INTO response_times (website_url, response_time_ms, recorded_at) VALUES (?, ?, ?)",
                (url, response_time_ms, datetime.now(UTC).isoformat()),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to save response time for {url}: {e}")


def record_certificate(conn: sqlite3.Connection, url: str, issuer: str, not_after_formatted: str) -> None:
    """Upsert certificate issuer and expiry for a URL.

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO websites (website_url, ssl_issuer, ssl_expired_date)
                VALUES (?, ?, ?)
                ON CONFLICT(website_url) DO UPDATE SET
                    ssl_issuer = excluded.ssl_issuer,
                    ssl_expired_date = excluded.ssl_expired_date
                """,
                (url, issuer, not_after_formatted),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update website ssl info for {url}: {e}")


def cleanup_old_samples(conn: sqlite3.Connection, retention_days: int) -> int:
    """Delete response time samples older than the retention period.

    Args:
        conn: Database connection.
        retention_days: Number of days of samples to keep.

    Returns:
        Number of deleted rows.

    Raises:
        DatabaseError: If the delete fails.
    """
    cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).isoformat()
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM response_times WHERE recorded_at < ?", (cutoff,))
            conn.commit()
            return cursor.rowcount
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to clean up response times: {e}")
