import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)

# Default database file. Catalog(db_file=...) style callers pass their own path;
# everything else falls back to LIBRARY_DB_FILE from the environment.
DATABASE_FILE = settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction`` which issues ``BEGIN IMMEDIATE`` explicitly.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one write transaction.

    The write lock is taken up front so checks made inside the block see the
    same state the writes apply to. Any exception, cancellation included,
    rolls everything back.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


@contextmanager
def connection(
    db_file: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
    write: bool = True,
) -> Iterator[sqlite3.Connection]:
    """Reuse ``conn`` when the caller already holds one, else open a new one.

    A borrowed connection is neither committed nor closed here; the owner of
    the outer transaction does that. Own connections opened with
    ``write=False`` stay in autocommit mode.
    """
    if conn is not None:
        yield conn
        return
    own = get_db_connection(db_file)
    try:
        if write:
            with transaction(own):
                yield own
        else:
            yield own
    finally:
        own.close()


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the circulation tables and their guards if they do not exist."""
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            isbn TEXT UNIQUE NOT NULL,
            call_number TEXT UNIQUE NOT NULL,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            publisher TEXT,
            year INTEGER,
            copies_total INTEGER NOT NULL DEFAULT 0,
            copies_available INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'Not Available',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_copies (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id INTEGER NOT NULL,
            accession_number TEXT UNIQUE NOT NULL,
            status TEXT NOT NULL DEFAULT 'Available'
                CHECK(status IN ('Available', 'Borrowed', 'Reserve', 'Lost', 'Old', 'Damaged')),
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS patrons (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            school_id TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            patron_type TEXT NOT NULL DEFAULT 'Student'
                CHECK(patron_type IN ('Student', 'Faculty', 'Guest', 'Staff')),
            email TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS issued_books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            patron_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            copy_id INTEGER NOT NULL,
            issued_at TEXT NOT NULL,
            due_at TEXT NOT NULL,
            returned_at TEXT,
            status TEXT NOT NULL DEFAULT 'Issued'
                CHECK(status IN ('Issued', 'Overdue', 'Returned')),
            fine_amount TEXT NOT NULL DEFAULT '0.00',
            fine_status TEXT NOT NULL DEFAULT 'no fine'
                CHECK(fine_status IN ('no fine', 'unpaid', 'cleared')),
            FOREIGN KEY (patron_id) REFERENCES patrons(id),
            FOREIGN KEY (book_id) REFERENCES books(id),
            FOREIGN KEY (copy_id) REFERENCES book_copies(id)
        )
    """)

    # At most one open loan per patron and per copy, enforced by storage too.
    cursor.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_issued_books_active_patron
        ON issued_books(patron_id) WHERE status IN ('Issued', 'Overdue')
    """)
    cursor.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_issued_books_active_copy
        ON issued_books(copy_id) WHERE status IN ('Issued', 'Overdue')
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_copies_book_id ON book_copies(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_issued_books_status ON issued_books(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_issued_books_patron_id ON issued_books(patron_id)")


def initialize_database(db_file: Optional[str] = None) -> None:
    """Create the database file and its tables if needed."""
    conn = get_db_connection(db_file)
    try:
        with transaction(conn):
            create_tables(conn)
    finally:
        conn.close()
    logger.debug(f"Database ready at {db_file or DATABASE_FILE}")
