from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, List, Optional

from library_app.models import Book, BorrowingRecord, BorrowingRequest, User


class Repository(ABC):
    """Storage contract shared by the file and relational backends.

    Lookups return ``None`` on a miss. ``add_*`` raises ``DuplicateKeyError``
    instead of overwriting, ``update_*``/``delete_*`` raise ``NotFoundError``
    instead of creating, and any failure of the underlying store surfaces as
    ``StorageIOError``. Every load/query returns a fresh snapshot; callers
    must re-read after mutating.
    """

    kind: str = ""

    # ------------------------- Lifecycle ------------------------- #
    @abstractmethod
    def initialize(self, seed: bool = False) -> None:
        """Prepare storage. ``seed=True`` wipes everything and loads the sample catalog."""

    @abstractmethod
    def test_connection(self) -> bool:
        ...

    def close(self) -> None:
        return None

    @contextmanager
    def transaction(self) -> Iterator["Repository"]:
        """Serialize a compound read-decide-write sequence against this store."""
        yield self

    def describe(self) -> str:
        return self.kind

    # ------------------------- Users ------------------------- #
    @abstractmethod
    def load_users(self) -> List[User]: ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    def add_user(self, user: User) -> None: ...

    @abstractmethod
    def update_user(self, user: User) -> None: ...

    @abstractmethod
    def delete_user(self, user_id: str) -> None: ...

    # ------------------------- Books ------------------------- #
    @abstractmethod
    def load_books(self) -> List[Book]: ...

    @abstractmethod
    def get_book(self, book_id: str) -> Optional[Book]: ...

    @abstractmethod
    def get_book_by_isbn(self, isbn: str) -> Optional[Book]: ...

    @abstractmethod
    def search_books(self, term: str) -> List[Book]:
        """Case-insensitive substring match over title, author and ISBN."""

    @abstractmethod
    def add_book(self, book: Book) -> None: ...

    @abstractmethod
    def update_book(self, book: Book) -> None: ...

    @abstractmethod
    def delete_book(self, book_id: str) -> None: ...

    # ------------------------- Borrowing records ------------------------- #
    @abstractmethod
    def load_records(self) -> List[BorrowingRecord]: ...

    @abstractmethod
    def get_record(self, record_id: str) -> Optional[BorrowingRecord]: ...

    @abstractmethod
    def get_records_by_user(self, user_id: str) -> List[BorrowingRecord]: ...

    @abstractmethod
    def get_active_record(self, user_id: str, book_id: str) -> Optional[BorrowingRecord]: ...

    @abstractmethod
    def get_active_records(self, book_id: Optional[str] = None) -> List[BorrowingRecord]: ...

    @abstractmethod
    def add_record(self, record: BorrowingRecord) -> None: ...

    @abstractmethod
    def update_record(self, record: BorrowingRecord) -> None: ...

    # ------------------------- Borrowing requests ------------------------- #
    @abstractmethod
    def load_requests(self) -> List[BorrowingRequest]: ...

    @abstractmethod
    def get_request(self, request_id: str) -> Optional[BorrowingRequest]: ...

    @abstractmethod
    def get_pending_requests(self) -> List[BorrowingRequest]: ...

    @abstractmethod
    def get_pending_request(self, user_id: str, book_id: str) -> Optional[BorrowingRequest]: ...

    @abstractmethod
    def add_request(self, request: BorrowingRequest) -> None: ...

    @abstractmethod
    def update_request(self, request: BorrowingRequest) -> None: ...

    @abstractmethod
    def delete_request(self, request_id: str) -> None: ...


def book_sort_key(book: Book):
    return (book.title, book.book_id)


def matches_term(book: Book, term: str) -> bool:
    needle = (term or "").lower()
    return (
        needle in book.title.lower()
        or needle in book.author.lower()
        or (book.isbn is not None and needle in book.isbn.lower())
    )
