"""JSON-file backend.

Each entity kind lives in its own JSON document holding the whole
collection. Every operation loads the full collection, mutates it in memory
and rewrites the file, so all access goes through one re-entrant lock and
compound operations run inside ``transaction()``. The lock is a thread lock
plus an exclusive ``.lock`` file in the data directory, which also makes
separate processes (two CLI runs, say) on the same directory take turns.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Type, TypeVar

from filelock import FileLock, Timeout

from library_app.errors import DuplicateKeyError, InvalidStateError, NotFoundError, StorageIOError
from library_app.models import Book, BorrowingRecord, BorrowingRequest, BorrowingStatus, RequestStatus, User
from library_app.storage.base import Repository, book_sort_key, matches_term
from library_app.storage.seed import sample_books

logger = logging.getLogger(__name__)

USERS = "users"
BOOKS = "books"
RECORDS = "borrowing_records"
REQUESTS = "borrowing_requests"
COLLECTIONS = (USERS, BOOKS, RECORDS, REQUESTS)
LOCK_FILE = ".lock"
LOCK_TIMEOUT = 30

T = TypeVar("T")


class FileRepository(Repository):
    """Flat-file store: ``users.json``, ``books.json``, ``borrowing_records.json``, ``borrowing_requests.json``."""

    kind = "file"

    def __init__(self, data_dir: str | os.PathLike = "data") -> None:
        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()
        self._file_lock = FileLock(str(self.data_dir / LOCK_FILE))
        self._tx_depth = 0

    def describe(self) -> str:
        return f"file ({self.data_dir})"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            try:
                self.data_dir.mkdir(parents=True, exist_ok=True)
                self._file_lock.acquire(timeout=LOCK_TIMEOUT)
            except Timeout as e:
                raise StorageIOError(f"Timed out waiting for the lock on {self.data_dir}") from e
            except OSError as e:
                raise StorageIOError(f"Could not lock data directory {self.data_dir}: {e}") from e
            try:
                yield
            finally:
                self._file_lock.release()

    # ------------------------- Lifecycle ------------------------- #
    def initialize(self, seed: bool = False) -> None:
        with self._locked():
            if seed:
                logger.warning(f"Seeding file store at {self.data_dir}: existing collections are replaced")
                for name in COLLECTIONS:
                    self._write(name, [])
                self._save(BOOKS, sorted(sample_books(), key=book_sort_key))
                return

            for name in COLLECTIONS:
                if not self._path(name).exists():
                    self._write(name, [])
            logger.info(f"File store ready at {self.data_dir}")

    def test_connection(self) -> bool:
        marker = self.data_dir / ".write-test.tmp"
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            marker.write_text("ok", encoding="utf-8")
            marker.unlink()
            return True
        except OSError as e:
            logger.warning(f"Data directory {self.data_dir} is not writable: {e}")
            return False

    @contextmanager
    def transaction(self) -> Iterator["FileRepository"]:
        """Hold the store lock for the whole block; restore all collections if it raises."""
        with self._locked():
            outermost = self._tx_depth == 0
            snapshot = self._take_snapshot() if outermost else None
            self._tx_depth += 1
            try:
                yield self
            except Exception:
                if outermost:
                    self._restore_snapshot(snapshot)
                raise
            finally:
                self._tx_depth -= 1

    def _take_snapshot(self) -> Dict[str, Optional[bytes]]:
        snapshot: Dict[str, Optional[bytes]] = {}
        for name in COLLECTIONS:
            path = self._path(name)
            try:
                snapshot[name] = path.read_bytes() if path.exists() else None
            except OSError as e:
                raise StorageIOError(f"Could not snapshot {path}: {e}") from e
        return snapshot

    def _restore_snapshot(self, snapshot: Optional[Dict[str, Optional[bytes]]]) -> None:
        if not snapshot:
            return
        for name, content in snapshot.items():
            path = self._path(name)
            try:
                if content is None:
                    if path.exists():
                        path.unlink()
                else:
                    self._atomic_write(path, content)
            except OSError as e:
                logger.error(f"Rollback of {path} failed, collection may be inconsistent: {e}")
        logger.info("File store rolled back to the state before the failed operation")

    # ------------------------- Raw file access ------------------------- #
    def _path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def _read(self, name: str) -> List[dict]:
        path = self._path(name)
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StorageIOError(f"{path} is not valid JSON: {e}") from e
        except OSError as e:
            raise StorageIOError(f"Could not read {path}: {e}") from e
        if not isinstance(data, list):
            raise StorageIOError(f"{path} does not hold a list of entities")
        return data

    def _atomic_write(self, path: Path, content: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise

    def _write(self, name: str, items: List[dict]) -> None:
        path = self._path(name)
        content = json.dumps(items, indent=2, ensure_ascii=False).encode("utf-8")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._atomic_write(path, content)
        except OSError as e:
            raise StorageIOError(f"Could not write {path}: {e}") from e

    def _load(self, name: str, cls: Type[T]) -> List[T]:
        try:
            return [cls.from_dict(item) for item in self._read(name)]  # type: ignore[attr-defined]
        except (KeyError, TypeError, ValueError) as e:
            raise StorageIOError(f"Malformed entry in {self._path(name)}: {e}") from e

    def _save(self, name: str, entities: list) -> None:
        self._write(name, [entity.to_dict() for entity in entities])

    # ------------------------- Generic helpers ------------------------- #
    def _insert(self, name: str, cls: Type[T], entity: T, id_attr: str,
                conflicts: Optional[Callable[[T, T], bool]] = None) -> None:
        with self._locked():
            items = self._load(name, cls)
            new_id = getattr(entity, id_attr)
            for existing in items:
                if getattr(existing, id_attr) == new_id:
                    raise DuplicateKeyError(f"{cls.__name__} {new_id} already exists.")
                if conflicts and conflicts(existing, entity):
                    raise DuplicateKeyError(f"{cls.__name__} violates a uniqueness constraint.")
            items.append(entity)
            self._save(name, items)

    def _replace(self, name: str, cls: Type[T], entity: T, id_attr: str,
                 conflicts: Optional[Callable[[T, T], bool]] = None) -> None:
        with self._locked():
            items = self._load(name, cls)
            target_id = getattr(entity, id_attr)
            index = None
            for i, existing in enumerate(items):
                if getattr(existing, id_attr) == target_id:
                    index = i
                elif conflicts and conflicts(existing, entity):
                    raise DuplicateKeyError(f"{cls.__name__} violates a uniqueness constraint.")
            if index is None:
                raise NotFoundError(f"{cls.__name__} {target_id} not found.")
            items[index] = entity
            self._save(name, items)

    def _remove(self, name: str, cls: Type[T], id_attr: str, entity_id: str) -> None:
        with self._locked():
            items = self._load(name, cls)
            remaining = [item for item in items if getattr(item, id_attr) != entity_id]
            if len(remaining) == len(items):
                raise NotFoundError(f"{cls.__name__} {entity_id} not found.")
            self._save(name, remaining)

    def _find(self, name: str, cls: Type[T], predicate: Callable[[T], bool]) -> Optional[T]:
        with self._locked():
            for item in self._load(name, cls):
                if predicate(item):
                    return item
        return None

    def _filter(self, name: str, cls: Type[T], predicate: Callable[[T], bool]) -> List[T]:
        with self._locked():
            return [item for item in self._load(name, cls) if predicate(item)]

    # ------------------------- Users ------------------------- #
    @staticmethod
    def _same_username(existing: User, new: User) -> bool:
        return existing.username == new.username

    def load_users(self) -> List[User]:
        with self._locked():
            return self._load(USERS, User)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._find(USERS, User, lambda u: u.user_id == user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._find(USERS, User, lambda u: u.username == username)

    def add_user(self, user: User) -> None:
        self._insert(USERS, User, user, "user_id", self._same_username)

    def update_user(self, user: User) -> None:
        self._replace(USERS, User, user, "user_id", self._same_username)

    def delete_user(self, user_id: str) -> None:
        with self._locked():
            if any(r.user_id == user_id for r in self.get_active_records()):
                raise InvalidStateError(f"User {user_id} still has books on loan.")
            self._remove(USERS, User, "user_id", user_id)
            # Mirror the relational foreign keys: cascade owned rows, null out admin references
            records = self._load(RECORDS, BorrowingRecord)
            self._save(RECORDS, [r for r in records if r.user_id != user_id])
            requests = [r for r in self._load(REQUESTS, BorrowingRequest) if r.user_id != user_id]
            for request in requests:
                if request.admin_id == user_id:
                    request.admin_id = None
            self._save(REQUESTS, requests)

    # ------------------------- Books ------------------------- #
    @staticmethod
    def _same_isbn(existing: Book, new: Book) -> bool:
        return existing.isbn is not None and existing.isbn == new.isbn

    def load_books(self) -> List[Book]:
        with self._locked():
            return sorted(self._load(BOOKS, Book), key=book_sort_key)

    def get_book(self, book_id: str) -> Optional[Book]:
        return self._find(BOOKS, Book, lambda b: b.book_id == book_id)

    def get_book_by_isbn(self, isbn: str) -> Optional[Book]:
        if not isbn:
            return None
        return self._find(BOOKS, Book, lambda b: b.isbn == isbn)

    def search_books(self, term: str) -> List[Book]:
        return sorted(self._filter(BOOKS, Book, lambda b: matches_term(b, term)), key=book_sort_key)

    def add_book(self, book: Book) -> None:
        self._insert(BOOKS, Book, book, "book_id", self._same_isbn)

    def update_book(self, book: Book) -> None:
        self._replace(BOOKS, Book, book, "book_id", self._same_isbn)

    def delete_book(self, book_id: str) -> None:
        with self._locked():
            if self.get_active_records(book_id):
                raise InvalidStateError(f"Book {book_id} is on loan and cannot be deleted.")
            self._remove(BOOKS, Book, "book_id", book_id)
            records = self._load(RECORDS, BorrowingRecord)
            self._save(RECORDS, [r for r in records if r.book_id != book_id])
            requests = self._load(REQUESTS, BorrowingRequest)
            self._save(REQUESTS, [r for r in requests if r.book_id != book_id])

    # ------------------------- Borrowing records ------------------------- #
    def load_records(self) -> List[BorrowingRecord]:
        with self._locked():
            return self._load(RECORDS, BorrowingRecord)

    def get_record(self, record_id: str) -> Optional[BorrowingRecord]:
        return self._find(RECORDS, BorrowingRecord, lambda r: r.record_id == record_id)

    def get_records_by_user(self, user_id: str) -> List[BorrowingRecord]:
        return self._filter(RECORDS, BorrowingRecord, lambda r: r.user_id == user_id)

    def get_active_record(self, user_id: str, book_id: str) -> Optional[BorrowingRecord]:
        return self._find(
            RECORDS, BorrowingRecord,
            lambda r: r.user_id == user_id and r.book_id == book_id and r.status == BorrowingStatus.ACTIVE,
        )

    def get_active_records(self, book_id: Optional[str] = None) -> List[BorrowingRecord]:
        return self._filter(
            RECORDS, BorrowingRecord,
            lambda r: r.status == BorrowingStatus.ACTIVE and (book_id is None or r.book_id == book_id),
        )

    def _check_references(self, user_id: str, book_id: str, admin_id: Optional[str] = None) -> None:
        # Same rule as the relational foreign keys
        if self.get_user(user_id) is None:
            raise NotFoundError(f"Referenced user {user_id} does not exist.")
        if self.get_book(book_id) is None:
            raise NotFoundError(f"Referenced book {book_id} does not exist.")
        if admin_id is not None and self.get_user(admin_id) is None:
            raise NotFoundError(f"Referenced admin {admin_id} does not exist.")

    def add_record(self, record: BorrowingRecord) -> None:
        with self._locked():
            self._check_references(record.user_id, record.book_id)
            self._insert(RECORDS, BorrowingRecord, record, "record_id")

    def update_record(self, record: BorrowingRecord) -> None:
        with self._locked():
            self._check_references(record.user_id, record.book_id)
            self._replace(RECORDS, BorrowingRecord, record, "record_id")

    # ------------------------- Borrowing requests ------------------------- #
    def load_requests(self) -> List[BorrowingRequest]:
        with self._locked():
            return self._load(REQUESTS, BorrowingRequest)

    def get_request(self, request_id: str) -> Optional[BorrowingRequest]:
        return self._find(REQUESTS, BorrowingRequest, lambda r: r.request_id == request_id)

    def get_pending_requests(self) -> List[BorrowingRequest]:
        return self._filter(REQUESTS, BorrowingRequest, lambda r: r.status == RequestStatus.PENDING)

    def get_pending_request(self, user_id: str, book_id: str) -> Optional[BorrowingRequest]:
        return self._find(
            REQUESTS, BorrowingRequest,
            lambda r: r.user_id == user_id and r.book_id == book_id and r.status == RequestStatus.PENDING,
        )

    def add_request(self, request: BorrowingRequest) -> None:
        with self._locked():
            self._check_references(request.user_id, request.book_id, request.admin_id)
            self._insert(REQUESTS, BorrowingRequest, request, "request_id")

    def update_request(self, request: BorrowingRequest) -> None:
        with self._locked():
            self._check_references(request.user_id, request.book_id, request.admin_id)
            self._replace(REQUESTS, BorrowingRequest, request, "request_id")

    def delete_request(self, request_id: str) -> None:
        self._remove(REQUESTS, BorrowingRequest, "request_id", request_id)
