import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings
from errors import InfrastructureError

# Make sure .env values are visible even when this module is imported before config.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override, also used by the test-suite)
# 2) LIBRARY_DATA_FILE / settings.data_file
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.data_file

LOAN_STATUSES = ("Active", "Returned", "Cancelled")
RETURN_CONDITIONS = ("Good", "Fair", "Damaged", "Lost")
FINE_KINDS = ("Overdue", "Damage", "Loss")

DEFAULT_ROLES = ("Member", "Librarian", "Admin")

# (name, permits_loan)
DEFAULT_COPY_STATUSES = (
    ("Available", 1),
    ("On loan", 0),
    ("Damaged", 0),
    ("Lost", 0),
    ("Maintenance", 0),
)


def resolve_database_file(db_file: Optional[str] = None) -> str:
    """Return the database path to use, honouring an explicit argument first."""
    return db_file or os.environ.get("LIBRARY_DB_FILE") or DATABASE_FILE


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction()`` which issues its own BEGIN.
    """
    path = resolve_database_file(db_file)
    try:
        conn = sqlite3.connect(
            path,
            timeout=settings.database_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn
    except sqlite3.Error as e:
        raise InfrastructureError(f"Could not open database {path}") from e


@contextmanager
def db_session(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Per-operation connection for reads and single-statement writes."""
    conn = get_db_connection(db_file)
    try:
        yield conn
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as e:
        raise InfrastructureError("Database operation failed") from e
    finally:
        conn.close()


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one atomic unit.

    BEGIN IMMEDIATE takes the write lock up front so concurrent writers queue
    behind each other instead of failing half-way through.
    """
    conn = get_db_connection(db_file)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise InfrastructureError("Could not start a database transaction") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError:
            _rollback(conn)
            raise
        except sqlite3.Error as e:
            _rollback(conn)
            raise InfrastructureError("Database transaction failed") from e
        except BaseException:
            _rollback(conn)
            raise
    finally:
        conn.close()


@contextmanager
def use_connection(
    conn: Optional[sqlite3.Connection], db_file: Optional[str] = None
) -> Iterator[sqlite3.Connection]:
    """Reuse the caller's connection (and its transaction) or open a fresh session."""
    if conn is not None:
        yield conn
        return
    with db_session(db_file) as own:
        yield own


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the required tables in the database if they don't exist."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while a writer holds the lock.
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()
        cursor.execute("BEGIN")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS roles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                role_id INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (role_id) REFERENCES roles(id) ON DELETE RESTRICT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS copy_statuses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL,
                permits_loan INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS copies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT UNIQUE NOT NULL,
                book_id INTEGER,
                status_id INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (status_id) REFERENCES copy_statuses(id) ON DELETE RESTRICT
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                borrower_id INTEGER NOT NULL,
                copy_id INTEGER NOT NULL,
                agent_id INTEGER NOT NULL,
                loan_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Active' CHECK(status IN {LOAN_STATUSES!r}),
                notes TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK(due_date > loan_date),
                FOREIGN KEY (borrower_id) REFERENCES users(id) ON DELETE RESTRICT,
                FOREIGN KEY (copy_id) REFERENCES copies(id) ON DELETE RESTRICT,
                FOREIGN KEY (agent_id) REFERENCES users(id) ON DELETE RESTRICT
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS returns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                loan_id INTEGER NOT NULL UNIQUE,
                return_date TEXT NOT NULL,
                agent_id INTEGER NOT NULL,
                days_late INTEGER NOT NULL DEFAULT 0 CHECK(days_late >= 0),
                condition TEXT NOT NULL DEFAULT 'Good' CHECK(condition IN {RETURN_CONDITIONS!r}),
                notes TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (loan_id) REFERENCES loans(id) ON DELETE RESTRICT,
                FOREIGN KEY (agent_id) REFERENCES users(id) ON DELETE RESTRICT
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS fines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                return_id INTEGER,
                user_id INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK(kind IN {FINE_KINDS!r}),
                amount_cents INTEGER NOT NULL CHECK(amount_cents >= 0),
                paid INTEGER NOT NULL DEFAULT 0,
                payment_date TEXT,
                description TEXT,
                created_on TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK((paid = 1) = (payment_date IS NOT NULL)),
                FOREIGN KEY (return_id) REFERENCES returns(id) ON DELETE RESTRICT,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE RESTRICT
            )
        """)

        # At most one Active loan per copy, enforced by the store itself.
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_one_active_per_copy "
            "ON loans(copy_id) WHERE status = 'Active'"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrower ON loans(borrower_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_loan_date ON loans(loan_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_returns_return_date ON returns(return_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fines_user_paid ON fines(user_id, paid)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fines_return ON fines(return_id)")

        # Reference data
        for role_name in DEFAULT_ROLES:
            cursor.execute("INSERT OR IGNORE INTO roles (name) VALUES (?)", (role_name,))
        for status_name, permits_loan in DEFAULT_COPY_STATUSES:
            cursor.execute(
                "INSERT OR IGNORE INTO copy_statuses (name, permits_loan) VALUES (?, ?)",
                (status_name, permits_loan),
            )

        cursor.execute("COMMIT")
    except sqlite3.Error as e:
        _rollback(conn)
        raise InfrastructureError("Could not create database schema") from e
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables and reference data if needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {resolve_database_file(db_file)}")
