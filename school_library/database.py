import logging
import sqlite3
from typing import Optional

from .config import settings

logger = logging.getLogger(__name__)

# Default database file. LIBRARY_DB_FILE (via settings) overrides it; callers
# and tests pass an explicit path to Library()/SQLiteStore() instead.
DATABASE_FILE = settings.database_file

LOAN_STATUSES = ("requested", "approved", "rejected", "returned")


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement units of work issue
    BEGIN IMMEDIATE / COMMIT themselves (see store.SQLiteStore.transaction).
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=10.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    # WAL lets readers proceed while a writer holds the lock
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                genre TEXT,
                publisher TEXT,
                total INTEGER NOT NULL DEFAULT 1 CHECK(total >= 0),
                available INTEGER NOT NULL DEFAULT 0,
                cover_url TEXT,
                location TEXT,
                publication_year TEXT,
                pages INTEGER,
                description TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Loans are the audit trail and are never deleted
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                borrower_id TEXT NOT NULL,
                requested_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                status TEXT NOT NULL CHECK(status IN {LOAN_STATUSES!r}),
                FOREIGN KEY (book_id) REFERENCES books(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS waitlist (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                borrower_id TEXT NOT NULL,
                joined_at TEXT NOT NULL,
                UNIQUE (book_id, borrower_id),
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                borrower_id TEXT NOT NULL,
                type TEXT NOT NULL,
                message TEXT NOT NULL,
                loan_id INTEGER,
                book_id INTEGER,
                created_at TEXT NOT NULL,
                read INTEGER NOT NULL DEFAULT 0
            )
        """)

        # approved: NULL = pending, 1 = approved, 0 = rejected
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS comments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                borrower_id TEXT NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                rating INTEGER CHECK(rating IS NULL OR (rating >= 1 AND rating <= 5)),
                created_at TEXT NOT NULL,
                approved INTEGER,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        # Columns added after the first release
        cursor.execute("PRAGMA table_info(loans)")
        loan_columns = [column[1] for column in cursor.fetchall()]
        if "actioned_by" not in loan_columns:
            cursor.execute("ALTER TABLE loans ADD COLUMN actioned_by TEXT")
        # 1 when the loan holds a copy handed over by the waitlist
        if "reserved" not in loan_columns:
            cursor.execute("ALTER TABLE loans ADD COLUMN reserved INTEGER NOT NULL DEFAULT 0")

        cursor.execute("PRAGMA table_info(comments)")
        comment_columns = [column[1] for column in cursor.fetchall()]
        if "approved_at" not in comment_columns:
            cursor.execute("ALTER TABLE comments ADD COLUMN approved_at TEXT")

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrower_status ON loans(borrower_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_waitlist_book_joined ON waitlist(book_id, joined_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_borrower ON notifications(borrower_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_comments_book_approved ON comments(book_id, approved)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables and running column migrations."""
    create_tables(db_file)
    logger.debug("Database ready at %s", db_file or DATABASE_FILE)
