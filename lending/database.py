import logging
import queue
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class PoolTimeout(Exception):
    """No connection became free within the configured wait."""


class PoolClosed(Exception):
    """The pool has been shut down."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_db_time(value: datetime) -> str:
    """Format a datetime the way SQLite's CURRENT_TIMESTAMP does (UTC, second precision)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.strptime(value[:19], DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


class LoggedConnection(sqlite3.Connection):
    """sqlite3 connection that logs statement timing."""

    slow_query_ms: int = 1000

    def execute(self, sql: str, parameters: Any = (), /) -> sqlite3.Cursor:  # type: ignore[override]
        start = time.perf_counter()
        try:
            cursor = super().execute(sql, parameters)
        except sqlite3.Error as e:
            logger.error(f"Database query error: {e} | query={_shorten(sql)}")
            raise
        duration_ms = (time.perf_counter() - start) * 1000
        if duration_ms > self.slow_query_ms:
            logger.warning(
                f"Slow query detected ({duration_ms:.0f} ms, rows={cursor.rowcount}): {_shorten(sql)}"
            )
        elif logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Executed query ({duration_ms:.1f} ms, rows={cursor.rowcount}): {_shorten(sql)}")
        return cursor


def _shorten(sql: str, limit: int = 100) -> str:
    flat = " ".join(sql.split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


class ConnectionPool:
    """Bounded pool of SQLite connections with scoped acquisition.

    Connections are opened lazily up to ``size``. ``connection()`` hands one out
    for the duration of a ``with`` block; ``transaction()`` additionally wraps
    the block in ``BEGIN IMMEDIATE`` / ``COMMIT`` so concurrent writers are
    serialized by SQLite rather than by application code.
    """

    def __init__(
        self,
        database_file: str,
        size: int = 5,
        timeout: float = 2.0,
        busy_timeout: float = 5.0,
        slow_query_ms: int = 1000,
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.database_file = database_file
        self.size = size
        self.timeout = timeout
        self.busy_timeout = busy_timeout
        self.slow_query_ms = slow_query_ms
        self._idle: "queue.Queue[sqlite3.Connection]" = queue.Queue(maxsize=size)
        self._lock = threading.Lock()
        self._created = 0
        self._waiting = 0
        self._closed = False

    @classmethod
    def from_settings(cls, settings) -> "ConnectionPool":
        return cls(
            settings.database_file,
            size=settings.database_pool_size,
            timeout=settings.database_pool_timeout,
            busy_timeout=settings.database_busy_timeout,
            slow_query_ms=settings.slow_query_ms,
        )

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database_file,
            timeout=self.busy_timeout,
            check_same_thread=False,
            isolation_level=None,  # transactions are explicit, see transaction()
            factory=LoggedConnection,
        )
        conn.slow_query_ms = self.slow_query_ms
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        logger.debug(f"New database connection opened ({self.database_file})")
        return conn

    def acquire(self) -> sqlite3.Connection:
        """Take a connection, opening a new one if the pool is not yet full."""
        if self._closed:
            raise PoolClosed("Connection pool is closed")
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass

        with self._lock:
            if self._created < self.size:
                self._created += 1
                create = True
            else:
                create = False
                self._waiting += 1
        if create:
            try:
                return self._open()
            except sqlite3.Error:
                with self._lock:
                    self._created -= 1
                raise

        try:
            return self._idle.get(timeout=self.timeout)
        except queue.Empty:
            raise PoolTimeout(
                f"No database connection available within {self.timeout} seconds"
            ) from None
        finally:
            with self._lock:
                self._waiting -= 1

    def release(self, conn: sqlite3.Connection) -> None:
        """Give a connection back. Any open transaction is rolled back first."""
        if conn.in_transaction:
            logger.warning("Connection released with an open transaction; rolling back")
            conn.rollback()
        if self._closed:
            conn.close()
            with self._lock:
                self._created -= 1
            return
        self._idle.put_nowait(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in one write transaction; commit on success, roll back on error."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def ping(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except (sqlite3.Error, PoolTimeout, PoolClosed) as e:
            logger.error(f"Database ping failed: {e}")
            return False

    def stats(self) -> Dict[str, int]:
        with self._lock:
            idle = self._idle.qsize()
            return {
                "total": self._created,
                "idle": idle,
                "in_use": self._created - idle,
                "waiting": self._waiting,
                "max": self.size,
            }

    def close(self) -> None:
        """Close idle connections; connections still in use close when released."""
        self._closed = True
        closed = 0
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            conn.close()
            closed += 1
        with self._lock:
            self._created -= closed
        logger.info("Database pool closed gracefully")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member' CHECK (role IN ('member', 'librarian')),
        max_books_allowed INTEGER NOT NULL DEFAULT 10 CHECK (max_books_allowed >= 0),
        reset_token_hash TEXT,
        reset_token_expires_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        jti TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        family_id TEXT NOT NULL,
        issued_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        revoked_at TIMESTAMP,
        replaced_by TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        isbn TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        publisher TEXT,
        publication_year INTEGER,
        description TEXT,
        cover_image_url TEXT,
        total_copies INTEGER NOT NULL DEFAULT 1,
        available_copies INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT check_available_copies
            CHECK (available_copies >= 0 AND available_copies <= total_copies)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE COLLATE NOCASE,
        description TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_categories (
        book_id INTEGER NOT NULL,
        category_id INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (book_id, category_id),
        FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
        FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_loans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        loan_date TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        due_date TIMESTAMP NOT NULL,
        return_date TIMESTAMP,
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'returned', 'overdue')),
        notes TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        CONSTRAINT check_loan_dates CHECK (due_date > loan_date),
        CONSTRAINT check_return_date CHECK (return_date IS NULL OR return_date >= loan_date),
        CONSTRAINT check_returned_status CHECK (
            (status = 'returned' AND return_date IS NOT NULL) OR
            (status != 'returned' AND return_date IS NULL)
        )
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user ON refresh_tokens(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_family ON refresh_tokens(family_id)",
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)",
    "CREATE INDEX IF NOT EXISTS idx_books_publisher ON books(publisher)",
    "CREATE INDEX IF NOT EXISTS idx_books_publication_year ON books(publication_year)",
    "CREATE INDEX IF NOT EXISTS idx_books_available ON books(available_copies) WHERE available_copies > 0",
    "CREATE INDEX IF NOT EXISTS idx_books_recent ON books(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_book_categories_category ON book_categories(category_id, book_id)",
    "CREATE INDEX IF NOT EXISTS idx_book_loans_book_id ON book_loans(book_id)",
    "CREATE INDEX IF NOT EXISTS idx_book_loans_user_status ON book_loans(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_book_loans_due_date ON book_loans(due_date) WHERE status = 'active'",
    "CREATE INDEX IF NOT EXISTS idx_book_loans_user_date ON book_loans(user_id, loan_date DESC)",
    # A member may hold at most one unreturned copy of the same book
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_unique_open_user_book_loan
       ON book_loans(user_id, book_id) WHERE status != 'returned'""",
]

TRIGGERS = [
    f"""
    CREATE TRIGGER IF NOT EXISTS update_{table}_updated_at
    AFTER UPDATE ON {table} FOR EACH ROW WHEN NEW.updated_at IS OLD.updated_at
    BEGIN
        UPDATE {table} SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
    END
    """
    for table in ("users", "books", "categories", "book_loans")
]


def create_tables(pool: ConnectionPool) -> None:
    """Create tables, indexes and triggers if they do not exist yet."""
    with pool.transaction() as conn:
        for statement in SCHEMA + INDEXES + TRIGGERS:
            conn.execute(statement)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")


def schema_version(pool: ConnectionPool) -> int:
    with pool.connection() as conn:
        return conn.execute("PRAGMA user_version").fetchone()[0]


def clear_data(pool: ConnectionPool) -> None:
    """Delete all rows, children first. Used by the seeder's reset option and tests."""
    with pool.transaction() as conn:
        for table in ("book_categories", "book_loans", "refresh_tokens", "books", "categories", "users"):
            conn.execute(f"DELETE FROM {table}")
        conn.execute("DELETE FROM sqlite_sequence")
    logger.info("Existing data cleared")


def initialize_database(pool: ConnectionPool) -> None:
    """Prepare the database for use by the application."""
    create_tables(pool)
    logger.info(f"Database ready at {pool.database_file} (schema v{SCHEMA_VERSION})")
