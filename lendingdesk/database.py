import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from lendingdesk.config import settings
from lendingdesk.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def resolve_db_file(db_file: Optional[str] = None) -> str:
    """Pick the database file: explicit argument, then LIBRARY_DB_FILE, then settings."""
    return db_file or os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a new connection. Transactions are managed explicitly (autocommit mode)."""
    conn = sqlite3.connect(
        resolve_db_file(db_file),
        timeout=settings.database_busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute(f"PRAGMA busy_timeout = {int(settings.database_busy_timeout * 1000)};")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block as one all-or-nothing unit holding the write lock.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so a select-then-update inside the block cannot interleave with another
    writer. Any exception rolls back every statement of the block.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()
    finally:
        conn.close()


@contextmanager
def read_connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


def run_read(fn: Callable[[sqlite3.Connection], T], db_file: Optional[str] = None) -> T:
    """Run an idempotent read, retrying once on a store error."""
    for attempt in range(2):
        try:
            with read_connection(db_file) as conn:
                return fn(conn)
        except sqlite3.Error as exc:
            if attempt == 0:
                logger.warning("Read failed, retrying once: %s", exc)
                continue
            logger.error("Read failed after retry: %s", exc)
            raise StoreUnavailable() from exc
    raise StoreUnavailable()  # pragma: no cover - loop always returns or raises


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the schema if it does not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while one writer holds the lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'reader'
                    CHECK(role IN ('reader', 'librarian', 'admin')),
                active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                authors TEXT NOT NULL,
                isbn TEXT,
                total_copies INTEGER NOT NULL DEFAULT 0 CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL DEFAULT 0
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS copies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                inventory_label TEXT UNIQUE NOT NULL,
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK(status IN ('available', 'borrowed', 'damaged', 'lost', 'reserved')),
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                copy_id INTEGER NOT NULL,
                borrowed_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'returned')),
                extensions INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (user_id) REFERENCES users(id),
                FOREIGN KEY (copy_id) REFERENCES copies(id)
            );

            CREATE TABLE IF NOT EXISTS fines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                loan_id INTEGER NOT NULL,
                amount INTEGER NOT NULL CHECK(amount >= 0),
                status TEXT NOT NULL DEFAULT 'accrued'
                    CHECK(status IN ('accrued', 'paid', 'cancelled')),
                reason TEXT,
                accrued_at TEXT NOT NULL,
                settled_at TEXT,
                FOREIGN KEY (loan_id) REFERENCES loans(id)
            );

            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_id INTEGER,
                action TEXT NOT NULL,
                entity TEXT NOT NULL,
                entity_id INTEGER,
                description TEXT,
                before_state TEXT,
                after_state TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                subject TEXT NOT NULL,
                message TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'read')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                read_at TEXT
            );
        """)

        # Storage-enforced invariants: one active loan per copy, one accrued fine per loan
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_loans_active_copy ON loans(copy_id) WHERE status = 'active'"
        )
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_fines_accrued_loan ON fines(loan_id) WHERE status = 'accrued'"
        )

        conn.execute("CREATE INDEX IF NOT EXISTS idx_copies_book_status ON copies(book_id, status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_user ON loans(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_fines_status ON fines(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_created_at ON logs(created_at DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, status)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
