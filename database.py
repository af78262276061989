import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings

# Make sure .env is loaded before LIBRARY_DB_FILE is read, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE from the environment at import time
# 2) settings.database_file (library.db in the working directory)
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    The connection runs in autocommit mode; multi-statement units of work are
    grouped with :func:`transaction`.
    """
    conn = sqlite3.connect(db_file or DATABASE_FILE, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one atomic unit.

    Commits on normal exit and rolls back on any exception, which is re-raised.
    When the connection is already inside a transaction the block joins it and
    the outermost caller decides the outcome.
    """
    if conn.in_transaction:
        yield conn
        return

    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        # SQLite may already have rolled back on its own
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        logger.debug("Transaction rolled back")
        raise
    else:
        conn.execute("COMMIT")


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the books, members and loans tables if they do not exist."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS books (
            book_id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            isbn TEXT NOT NULL,
            publication_year INTEGER,
            total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
            available_copies INTEGER NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CHECK(available_copies >= 0 AND available_copies <= total_copies)
        );

        CREATE TABLE IF NOT EXISTS members (
            member_id INTEGER PRIMARY KEY AUTOINCREMENT,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE COLLATE NOCASE,
            phone_number TEXT,
            join_date TEXT NOT NULL,
            total_fine_due REAL NOT NULL DEFAULT 0 CHECK(total_fine_due >= 0)
        );

        CREATE TABLE IF NOT EXISTS loans (
            loan_id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id INTEGER NOT NULL,
            member_id INTEGER NOT NULL,
            loan_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            return_date TEXT,
            renewed INTEGER NOT NULL DEFAULT 0,
            fine_amount REAL NOT NULL DEFAULT 0 CHECK(fine_amount >= 0),
            fine_paid INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (book_id) REFERENCES books(book_id) ON DELETE CASCADE,
            FOREIGN KEY (member_id) REFERENCES members(member_id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
        CREATE INDEX IF NOT EXISTS idx_books_author ON books(author);
        CREATE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn);
        CREATE INDEX IF NOT EXISTS idx_loans_member ON loans(member_id, return_date);
        CREATE INDEX IF NOT EXISTS idx_loans_book ON loans(book_id, return_date);
        CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(due_date);
    """)


def initialize_database(conn: sqlite3.Connection) -> None:
    """Initialise the schema; safe to call on every start-up."""
    create_tables(conn)
    logger.debug("Database schema ready")
