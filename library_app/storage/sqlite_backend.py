"""Relational backend on SQLite.

Uniqueness is enforced by the schema (unique username, unique ISBN among
non-null values) and records/requests reference users and books through
foreign keys. The connection runs in autocommit mode so each single-row
statement is atomic on its own; ``transaction()`` groups a compound
workflow operation into one SQL transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Type, TypeVar

from library_app.errors import (
    ConfigurationError,
    DuplicateKeyError,
    InvalidStateError,
    NotFoundError,
    StorageIOError,
)
from library_app.models import Book, BorrowingRecord, BorrowingRequest, BorrowingStatus, RequestStatus, User
from library_app.storage.base import Repository
from library_app.storage.seed import sample_books

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREATE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        book_id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        publication_year INTEGER NOT NULL,
        isbn TEXT,
        status TEXT NOT NULL DEFAULT 'Available',
        created_at TEXT NOT NULL,
        last_updated TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrowing_records (
        record_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        book_id TEXT NOT NULL,
        borrow_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT,
        status TEXT NOT NULL DEFAULT 'Active',
        FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
        FOREIGN KEY (book_id) REFERENCES books(book_id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrowing_requests (
        request_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        book_id TEXT NOT NULL,
        request_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Pending',
        admin_response_date TEXT,
        admin_id TEXT,
        FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
        FOREIGN KEY (book_id) REFERENCES books(book_id) ON DELETE CASCADE,
        FOREIGN KEY (admin_id) REFERENCES users(user_id) ON DELETE SET NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_users_username ON users(username)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_books_isbn ON books(isbn) WHERE isbn IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_records_user_book ON borrowing_records(user_id, book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_records_book_status ON borrowing_records(book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_requests_user_book ON borrowing_requests(user_id, book_id, status)",
)

DROP_STATEMENTS = (
    "DROP TABLE IF EXISTS borrowing_requests",
    "DROP TABLE IF EXISTS borrowing_records",
    "DROP TABLE IF EXISTS books",
    "DROP TABLE IF EXISTS users",
)

BOOK_ORDER = "ORDER BY title, book_id"


def parse_database_url(url: Optional[str]) -> str:
    """Turn ``sqlite:///path`` (or a bare path) into the filename sqlite3 expects."""
    if not url or not url.strip():
        raise ConfigurationError("No connection string configured for the relational backend.")
    url = url.strip()
    if url in ("sqlite://", "sqlite:///:memory:", ":memory:"):
        return ":memory:"
    if url.startswith("sqlite:///"):
        return url[len("sqlite:///"):]
    if "://" in url:
        raise ConfigurationError(f"Unsupported connection string: {url}. Use sqlite:///<path>.")
    return url


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value is not None else None


class SQLiteRepository(Repository):
    kind = "relational"

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.database_file = parse_database_url(database_url)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._tx_depth = 0

    def describe(self) -> str:
        return f"relational ({self.database_file})"

    # ------------------------- Connection handling ------------------------- #
    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                conn = sqlite3.connect(self.database_file, check_same_thread=False, isolation_level=None)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON;")
                # Python's lower() so search folds case the same way as the file backend
                conn.create_function("py_lower", 1, _lower, deterministic=True)
            except sqlite3.Error as e:
                raise StorageIOError(f"Could not open database {self.database_file}: {e}") from e
            self._conn = conn
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _execute(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        with self._lock:
            conn = self._connection()
            try:
                return conn.execute(sql, params)
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise NotFoundError(f"Referenced entity does not exist: {e}") from e
                raise DuplicateKeyError(f"Uniqueness constraint violated: {e}") from e
            except sqlite3.Error as e:
                raise StorageIOError(f"Database operation failed: {e}") from e

    def _fetch_all(self, cls: Type[T], sql: str, params: Sequence = ()) -> List[T]:
        with self._lock:
            rows = self._execute(sql, params).fetchall()
        return [cls.from_dict(dict(row)) for row in rows]  # type: ignore[attr-defined]

    def _fetch_one(self, cls: Type[T], sql: str, params: Sequence = ()) -> Optional[T]:
        with self._lock:
            row = self._execute(sql, params).fetchone()
        return cls.from_dict(dict(row)) if row else None  # type: ignore[attr-defined]

    # ------------------------- Lifecycle ------------------------- #
    def initialize(self, seed: bool = False) -> None:
        with self.transaction():
            if seed:
                logger.warning(f"Seeding database {self.database_file}: existing tables are dropped")
                for statement in DROP_STATEMENTS:
                    self._execute(statement)
            for statement in CREATE_STATEMENTS:
                self._execute(statement)
            if seed:
                for book in sample_books():
                    self._insert("books", book)
        logger.info(f"Database ready at {self.database_file}")

    def test_connection(self) -> bool:
        try:
            self._execute("SELECT 1").fetchone()
            return True
        except StorageIOError as e:
            logger.warning(f"Database connection test failed: {e}")
            return False

    @contextmanager
    def transaction(self) -> Iterator["SQLiteRepository"]:
        with self._lock:
            outermost = self._tx_depth == 0
            if outermost:
                self._execute("BEGIN IMMEDIATE")
            self._tx_depth += 1
            try:
                yield self
            except Exception:
                if outermost:
                    self._rollback()
                raise
            else:
                if outermost:
                    try:
                        self._execute("COMMIT")
                    except StorageIOError:
                        # A failed COMMIT leaves the transaction open
                        self._rollback()
                        raise
            finally:
                self._tx_depth -= 1

    def _rollback(self) -> None:
        try:
            self._connection().rollback()
        except (sqlite3.Error, StorageIOError) as e:
            logger.error(f"Rollback failed: {e}")

    # ------------------------- Generic helpers ------------------------- #
    def _insert(self, table: str, entity) -> None:
        data = entity.to_dict()
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" for _ in data)
        self._execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(data.values()))

    def _update(self, table: str, entity, id_column: str) -> None:
        data = entity.to_dict()
        entity_id = data.pop(id_column)
        set_clause = ", ".join(f"{column} = ?" for column in data.keys())
        cursor = self._execute(
            f"UPDATE {table} SET {set_clause} WHERE {id_column} = ?", list(data.values()) + [entity_id]
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"{table} row {entity_id} not found.")

    def _delete(self, table: str, id_column: str, entity_id: str) -> None:
        cursor = self._execute(f"DELETE FROM {table} WHERE {id_column} = ?", (entity_id,))
        if cursor.rowcount == 0:
            raise NotFoundError(f"{table} row {entity_id} not found.")

    # ------------------------- Users ------------------------- #
    def load_users(self) -> List[User]:
        return self._fetch_all(User, "SELECT * FROM users ORDER BY rowid")

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one(User, "SELECT * FROM users WHERE user_id = ?", (user_id,))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one(User, "SELECT * FROM users WHERE username = ?", (username,))

    def add_user(self, user: User) -> None:
        self._insert("users", user)

    def update_user(self, user: User) -> None:
        self._update("users", user, "user_id")

    def delete_user(self, user_id: str) -> None:
        with self._lock:
            row = self._execute(
                "SELECT COUNT(*) FROM borrowing_records WHERE user_id = ? AND status = ?",
                (user_id, BorrowingStatus.ACTIVE.value),
            ).fetchone()
            if row[0]:
                raise InvalidStateError(f"User {user_id} still has books on loan.")
            self._delete("users", "user_id", user_id)

    # ------------------------- Books ------------------------- #
    def load_books(self) -> List[Book]:
        return self._fetch_all(Book, f"SELECT * FROM books {BOOK_ORDER}")

    def get_book(self, book_id: str) -> Optional[Book]:
        return self._fetch_one(Book, "SELECT * FROM books WHERE book_id = ?", (book_id,))

    def get_book_by_isbn(self, isbn: str) -> Optional[Book]:
        if not isbn:
            return None
        return self._fetch_one(Book, "SELECT * FROM books WHERE isbn = ?", (isbn,))

    def search_books(self, term: str) -> List[Book]:
        needle = (term or "").lower()
        return self._fetch_all(
            Book,
            f"""
            SELECT * FROM books
            WHERE instr(py_lower(title), ?) > 0
               OR instr(py_lower(author), ?) > 0
               OR (isbn IS NOT NULL AND instr(py_lower(isbn), ?) > 0)
            {BOOK_ORDER}
            """,
            (needle, needle, needle),
        )

    def add_book(self, book: Book) -> None:
        self._insert("books", book)

    def update_book(self, book: Book) -> None:
        self._update("books", book, "book_id")

    def delete_book(self, book_id: str) -> None:
        with self._lock:
            row = self._execute(
                "SELECT COUNT(*) FROM borrowing_records WHERE book_id = ? AND status = ?",
                (book_id, BorrowingStatus.ACTIVE.value),
            ).fetchone()
            if row[0]:
                raise InvalidStateError(f"Book {book_id} is on loan and cannot be deleted.")
            self._delete("books", "book_id", book_id)

    # ------------------------- Borrowing records ------------------------- #
    def load_records(self) -> List[BorrowingRecord]:
        return self._fetch_all(BorrowingRecord, "SELECT * FROM borrowing_records ORDER BY rowid")

    def get_record(self, record_id: str) -> Optional[BorrowingRecord]:
        return self._fetch_one(BorrowingRecord, "SELECT * FROM borrowing_records WHERE record_id = ?", (record_id,))

    def get_records_by_user(self, user_id: str) -> List[BorrowingRecord]:
        return self._fetch_all(
            BorrowingRecord, "SELECT * FROM borrowing_records WHERE user_id = ? ORDER BY rowid", (user_id,)
        )

    def get_active_record(self, user_id: str, book_id: str) -> Optional[BorrowingRecord]:
        return self._fetch_one(
            BorrowingRecord,
            "SELECT * FROM borrowing_records WHERE user_id = ? AND book_id = ? AND status = ? ORDER BY rowid",
            (user_id, book_id, BorrowingStatus.ACTIVE.value),
        )

    def get_active_records(self, book_id: Optional[str] = None) -> List[BorrowingRecord]:
        if book_id is None:
            return self._fetch_all(
                BorrowingRecord,
                "SELECT * FROM borrowing_records WHERE status = ? ORDER BY rowid",
                (BorrowingStatus.ACTIVE.value,),
            )
        return self._fetch_all(
            BorrowingRecord,
            "SELECT * FROM borrowing_records WHERE book_id = ? AND status = ? ORDER BY rowid",
            (book_id, BorrowingStatus.ACTIVE.value),
        )

    def add_record(self, record: BorrowingRecord) -> None:
        self._insert("borrowing_records", record)

    def update_record(self, record: BorrowingRecord) -> None:
        self._update("borrowing_records", record, "record_id")

    # ------------------------- Borrowing requests ------------------------- #
    def load_requests(self) -> List[BorrowingRequest]:
        return self._fetch_all(BorrowingRequest, "SELECT * FROM borrowing_requests ORDER BY rowid")

    def get_request(self, request_id: str) -> Optional[BorrowingRequest]:
        return self._fetch_one(
            BorrowingRequest, "SELECT * FROM borrowing_requests WHERE request_id = ?", (request_id,)
        )

    def get_pending_requests(self) -> List[BorrowingRequest]:
        return self._fetch_all(
            BorrowingRequest,
            "SELECT * FROM borrowing_requests WHERE status = ? ORDER BY rowid",
            (RequestStatus.PENDING.value,),
        )

    def get_pending_request(self, user_id: str, book_id: str) -> Optional[BorrowingRequest]:
        return self._fetch_one(
            BorrowingRequest,
            "SELECT * FROM borrowing_requests WHERE user_id = ? AND book_id = ? AND status = ? ORDER BY rowid",
            (user_id, book_id, RequestStatus.PENDING.value),
        )

    def add_request(self, request: BorrowingRequest) -> None:
        self._insert("borrowing_requests", request)

    def update_request(self, request: BorrowingRequest) -> None:
        self._update("borrowing_requests", request, "request_id")

    def delete_request(self, request_id: str) -> None:
        self._delete("borrowing_requests", "request_id", request_id)
