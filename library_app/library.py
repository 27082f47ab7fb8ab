import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from library_app.errors import InvalidStateError, LibraryError, NotFoundError, StorageIOError
from library_app.models import (
    LOAN_PERIOD_DAYS,
    Book,
    BookStatus,
    BorrowingRecord,
    BorrowingRequest,
    RequestStatus,
    User,
    utcnow,
)
from library_app.storage.base import Repository

logger = logging.getLogger(__name__)


class Loan(NamedTuple):
    record: BorrowingRecord
    book: Book
    user: Optional[User]


class Library:
    """Book catalog and loan workflow on top of a Repository.

    The Library keeps no state between calls. Every mutating operation runs
    inside ``repository.transaction()`` and re-reads the entities it is about
    to change, so "read, decide, write" never acts on a stale snapshot. The
    public mutators return ``True``/``False``; the reason for a failure is
    logged (storage failures at error level).
    """

    def __init__(self, repository: Repository, loan_days: int = LOAN_PERIOD_DAYS) -> None:
        self.repository = repository
        self.loan_days = loan_days

    # ------------------------- Plumbing ------------------------- #
    def _run(self, action: str, operation: Callable[[], None]) -> bool:
        try:
            with self.repository.transaction():
                operation()
            return True
        except StorageIOError as e:
            logger.error(f"{action} failed due to a storage error: {e}")
            return False
        except LibraryError as e:
            logger.warning(f"{action} rejected: {e}")
            return False

    @staticmethod
    def _blank(value: Optional[str]) -> bool:
        return value is None or not str(value).strip()

    @staticmethod
    def _year(value: Any) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    def _require_user(self, user_id: str) -> User:
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        return user

    def _require_admin(self, admin_id: str) -> User:
        admin = self._require_user(admin_id)
        if not admin.is_admin:
            raise InvalidStateError(f"User {admin.username} is not an administrator.")
        return admin

    def _require_book_by_isbn(self, isbn: str) -> Book:
        book = self.repository.get_book_by_isbn(isbn)
        if book is None:
            raise NotFoundError(f"Book with ISBN {isbn} not found.")
        return book

    # ------------------------- Book CRUD ------------------------- #
    def add_book(self, title: str, author: str, publication_year: int, isbn: Optional[str] = None) -> bool:
        """Add a new Available book. ISBNs, when given, must be unique."""
        if self._blank(title) or self._blank(author):
            logger.warning("Add book rejected: title and author are required")
            return False
        year = self._year(publication_year)
        if year is None:
            logger.warning(f"Add book rejected: publication year {publication_year!r} is not a number")
            return False
        book = Book(title, author, year, isbn)
        return self._run(f"Add book '{book.title}'", lambda: self.repository.add_book(book))

    def update_book(self, isbn: str, *, title: Optional[str] = None, author: Optional[str] = None,
                    publication_year: Optional[int] = None, new_isbn: Optional[str] = None) -> bool:
        """Update the descriptive fields of a book. Availability is never changed here."""
        year = None
        if publication_year is not None:
            year = self._year(publication_year)
            if year is None:
                logger.warning(f"Update book {isbn} rejected: publication year {publication_year!r} is not a number")
                return False

        def operation() -> None:
            book = self._require_book_by_isbn(isbn)
            if title is not None and title.strip():
                book.title = title.strip()
            if author is not None and author.strip():
                book.author = author.strip()
            if year is not None:
                book.publication_year = year
            if new_isbn is not None:
                book.isbn = new_isbn.strip() or None
            book.touch()
            self.repository.update_book(book)

        return self._run(f"Update book {isbn}", operation)

    def delete_book(self, isbn: str) -> bool:
        """Remove a book; refused while it is out on loan."""

        def operation() -> None:
            book = self._require_book_by_isbn(isbn)
            if book.status == BookStatus.BORROWED:
                raise InvalidStateError(f"Book {isbn} is borrowed and cannot be deleted.")
            self.repository.delete_book(book.book_id)

        return self._run(f"Delete book {isbn}", operation)

    def get_book_by_isbn(self, isbn: str) -> Optional[Book]:
        return self.repository.get_book_by_isbn(isbn)

    def get_book(self, book_id: str) -> Optional[Book]:
        return self.repository.get_book(book_id)

    def get_all_books(self) -> List[Book]:
        return self.repository.load_books()

    def search_books(self, term: str) -> List[Book]:
        return self.repository.search_books(term)

    # ------------------------- Lending ------------------------- #
    def _lend(self, user_id: str, book_id: str) -> BorrowingRecord:
        self._require_user(user_id)
        book = self.repository.get_book(book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found.")
        if book.status != BookStatus.AVAILABLE:
            raise InvalidStateError(f"'{book.title}' is already borrowed.")
        if self.repository.get_active_records(book.book_id):
            raise InvalidStateError(f"'{book.title}' already has an active loan.")

        book.status = BookStatus.BORROWED
        book.touch()
        self.repository.update_book(book)
        record = BorrowingRecord(user_id, book.book_id, loan_days=self.loan_days)
        self.repository.add_record(record)
        logger.info(f"'{book.title}' lent to user {user_id}, due {record.due_date:%Y-%m-%d}")
        return record

    def _return(self, user_id: str, isbn: str) -> None:
        book = self._require_book_by_isbn(isbn)
        if book.status == BookStatus.AVAILABLE:
            raise InvalidStateError(f"'{book.title}' is not on loan.")
        record = self.repository.get_active_record(user_id, book.book_id)
        if record is None:
            raise InvalidStateError(f"User {user_id} has no active loan for '{book.title}'.")

        record.mark_returned()
        self.repository.update_record(record)
        book.status = BookStatus.AVAILABLE
        book.touch()
        self.repository.update_book(book)
        logger.info(f"'{book.title}' returned by user {user_id}")

    def lend_book(self, user_id: str, isbn: str) -> bool:
        """Desk loan: mark the book Borrowed and open an Active record, no request needed."""
        if self._blank(user_id) or self._blank(isbn):
            return False
        return self._run(
            f"Lend {isbn} to {user_id}",
            lambda: self._lend(user_id, self._require_book_by_isbn(isbn).book_id),
        )

    def return_book(self, user_id: str, isbn: str) -> bool:
        """Close the user's Active record for this book and make the book Available again."""
        if self._blank(user_id) or self._blank(isbn):
            return False
        return self._run(f"Return {isbn} from {user_id}", lambda: self._return(user_id, isbn))

    def return_book_for(self, username: str, isbn: str) -> bool:
        """Admin desk return, identifying the borrower by username."""
        if self._blank(username) or self._blank(isbn):
            return False

        def operation() -> None:
            user = self.repository.get_user_by_username(username)
            if user is None:
                raise NotFoundError(f"User {username} not found.")
            self._return(user.user_id, isbn)

        return self._run(f"Return {isbn} for {username}", operation)

    # ------------------------- Requests ------------------------- #
    def request_book(self, user_id: str, isbn: str) -> bool:
        """Create a Pending request for an Available book (one per user and book)."""
        if self._blank(user_id) or self._blank(isbn):
            return False

        def operation() -> None:
            self._require_user(user_id)
            book = self._require_book_by_isbn(isbn)
            if book.status != BookStatus.AVAILABLE:
                raise InvalidStateError(f"'{book.title}' is not available.")
            if self.repository.get_pending_request(user_id, book.book_id) is not None:
                raise InvalidStateError(f"User {user_id} already has a pending request for '{book.title}'.")
            self.repository.add_request(BorrowingRequest(user_id, book.book_id))

        return self._run(f"Request {isbn} by {user_id}", operation)

    def approve_request(self, request_id: str, admin_id: str) -> bool:
        """Approve a Pending request and lend the book to the requester.

        Both steps run in one transaction: if the loan cannot be made (the
        book was taken in the meantime) the approval is rolled back, leaving
        the request Pending, and False is returned.
        """
        if self._blank(request_id) or self._blank(admin_id):
            return False

        def operation() -> None:
            self._require_admin(admin_id)
            request = self.repository.get_request(request_id)
            if request is None:
                raise NotFoundError(f"Request {request_id} not found.")
            if request.status != RequestStatus.PENDING:
                raise InvalidStateError(f"Request {request_id} is already {request.status.value}.")
            request.resolve(RequestStatus.APPROVED, admin_id)
            self.repository.update_request(request)
            self._lend(request.user_id, request.book_id)

        return self._run(f"Approve request {request_id}", operation)

    def reject_request(self, request_id: str, admin_id: str) -> bool:
        if self._blank(request_id) or self._blank(admin_id):
            return False

        def operation() -> None:
            self._require_admin(admin_id)
            request = self.repository.get_request(request_id)
            if request is None:
                raise NotFoundError(f"Request {request_id} not found.")
            if request.status != RequestStatus.PENDING:
                raise InvalidStateError(f"Request {request_id} is already {request.status.value}.")
            request.resolve(RequestStatus.REJECTED, admin_id)
            self.repository.update_request(request)

        return self._run(f"Reject request {request_id}", operation)

    # ------------------------- Queries ------------------------- #
    def get_available_books(self) -> List[Book]:
        return [book for book in self.repository.load_books() if book.status == BookStatus.AVAILABLE]

    def get_borrowed_books(self, user_id: str) -> List[Book]:
        books = []
        for record in self.repository.get_records_by_user(user_id):
            if not record.is_active:
                continue
            book = self.repository.get_book(record.book_id)
            if book is not None:
                books.append(book)
        return books

    def get_borrowing_history(self, user_id: str) -> List[BorrowingRecord]:
        return self.repository.get_records_by_user(user_id)

    def get_pending_requests(self) -> List[BorrowingRequest]:
        return self.repository.get_pending_requests()

    def get_active_loans(self) -> List[Loan]:
        loans = []
        for record in self.repository.get_active_records():
            book = self.repository.get_book(record.book_id)
            if book is None:
                continue
            loans.append(Loan(record, book, self.repository.get_user(record.user_id)))
        return loans

    def get_overdue_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        now = now or utcnow()
        return [loan for loan in self.get_active_loans() if loan.record.is_overdue(now)]

    def get_statistics(self) -> Dict[str, Any]:
        books = self.repository.load_books()
        borrowed = sum(1 for b in books if b.status == BookStatus.BORROWED)
        return {
            "total_books": len(books),
            "available_books": len(books) - borrowed,
            "borrowed_books": borrowed,
            "total_users": len(self.repository.load_users()),
            "pending_requests": len(self.repository.get_pending_requests()),
            "overdue_loans": len(self.get_overdue_loans()),
        }
