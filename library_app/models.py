from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

LOAN_PERIOD_DAYS = 14


class BookStatus(str, Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"


class UserRole(str, Enum):
    ADMIN = "Admin"
    REGULAR_USER = "RegularUser"


class BorrowingStatus(str, Enum):
    ACTIVE = "Active"
    RETURNED = "Returned"
    OVERDUE = "Overdue"


class RequestStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through); naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _Record:
    """Shared equality/repr for the plain entity classes."""

    def to_dict(self) -> Dict[str, Any]:  # pragma: no cover - overridden
        raise NotImplementedError

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.to_dict() == other.to_dict()  # type: ignore[attr-defined]

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.to_dict().items())
        return f"{type(self).__name__}({fields})"


class Book(_Record):
    """A single title in the catalog."""

    def __init__(self, title: str, author: str, publication_year: int, isbn: str | None = None,
                 book_id: str | None = None, status: BookStatus = BookStatus.AVAILABLE,
                 created_at: datetime | None = None, last_updated: datetime | None = None) -> None:
        now = utcnow()
        self.book_id = book_id or new_id()
        self.title = (title or "").strip()
        self.author = (author or "").strip()
        self.publication_year = int(publication_year)
        # Empty ISBNs are stored as null so they never collide on the unique index
        self.isbn = isbn.strip() if isbn and isbn.strip() else None
        self.status = BookStatus(status)
        self.created_at = created_at or now
        self.last_updated = last_updated or self.created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.publication_year}, ISBN: {self.isbn or 'N/A'})"

    @property
    def is_available(self) -> bool:
        return self.status == BookStatus.AVAILABLE

    def touch(self) -> None:
        self.last_updated = utcnow()

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "publication_year": self.publication_year,
            "isbn": self.isbn,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "last_updated": format_timestamp(self.last_updated),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            title=data["title"],
            author=data["author"],
            publication_year=data.get("publication_year") or 0,
            isbn=data.get("isbn"),
            book_id=data["book_id"],
            status=BookStatus(data.get("status", BookStatus.AVAILABLE.value)),
            created_at=parse_timestamp(data.get("created_at")),
            last_updated=parse_timestamp(data.get("last_updated")),
        )


class User(_Record):
    """A registered account. Only the salted digest of the password is kept."""

    def __init__(self, username: str, password_hash: str, role: UserRole = UserRole.REGULAR_USER,
                 user_id: str | None = None, created_at: datetime | None = None) -> None:
        self.user_id = user_id or new_id()
        self.username = username
        self.password_hash = password_hash
        self.role = UserRole(role)
        self.created_at = created_at or utcnow()

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.username} ({self.role.value})"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "password_hash": self.password_hash,
            "role": self.role.value,
            "created_at": format_timestamp(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            username=data["username"],
            password_hash=data["password_hash"],
            role=UserRole(data.get("role", UserRole.REGULAR_USER.value)),
            user_id=data["user_id"],
            created_at=parse_timestamp(data.get("created_at")),
        )


class BorrowingRecord(_Record):
    """One loan of one book to one user."""

    def __init__(self, user_id: str, book_id: str, loan_days: int = LOAN_PERIOD_DAYS,
                 record_id: str | None = None, borrow_date: datetime | None = None,
                 due_date: datetime | None = None, return_date: datetime | None = None,
                 status: BorrowingStatus = BorrowingStatus.ACTIVE) -> None:
        self.record_id = record_id or new_id()
        self.user_id = user_id
        self.book_id = book_id
        self.borrow_date = borrow_date or utcnow()
        self.due_date = due_date or self.borrow_date + timedelta(days=loan_days)
        self.return_date = return_date
        self.status = BorrowingStatus(status)

    @property
    def is_active(self) -> bool:
        return self.status == BorrowingStatus.ACTIVE

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Computed from the due date; the stored status is never flipped to Overdue."""
        if self.return_date is not None or self.status == BorrowingStatus.RETURNED:
            return False
        return self.due_date < (now or utcnow())

    def mark_returned(self, when: Optional[datetime] = None) -> None:
        self.return_date = when or utcnow()
        self.status = BorrowingStatus.RETURNED

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrow_date": format_timestamp(self.borrow_date),
            "due_date": format_timestamp(self.due_date),
            "return_date": format_timestamp(self.return_date),
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: dict) -> "BorrowingRecord":
        return BorrowingRecord(
            user_id=data["user_id"],
            book_id=data["book_id"],
            record_id=data["record_id"],
            borrow_date=parse_timestamp(data.get("borrow_date")),
            due_date=parse_timestamp(data.get("due_date")),
            return_date=parse_timestamp(data.get("return_date")),
            status=BorrowingStatus(data.get("status", BorrowingStatus.ACTIVE.value)),
        )


class BorrowingRequest(_Record):
    """A user's request for a loan, resolved once by an admin."""

    def __init__(self, user_id: str, book_id: str, request_id: str | None = None,
                 request_date: datetime | None = None, status: RequestStatus = RequestStatus.PENDING,
                 admin_response_date: datetime | None = None, admin_id: str | None = None) -> None:
        self.request_id = request_id or new_id()
        self.user_id = user_id
        self.book_id = book_id
        self.request_date = request_date or utcnow()
        self.status = RequestStatus(status)
        self.admin_response_date = admin_response_date
        self.admin_id = admin_id

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def resolve(self, status: RequestStatus, admin_id: str, when: Optional[datetime] = None) -> None:
        self.status = RequestStatus(status)
        self.admin_id = admin_id
        self.admin_response_date = when or utcnow()

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "request_date": format_timestamp(self.request_date),
            "status": self.status.value,
            "admin_response_date": format_timestamp(self.admin_response_date),
            "admin_id": self.admin_id,
        }

    @staticmethod
    def from_dict(data: dict) -> "BorrowingRequest":
        return BorrowingRequest(
            user_id=data["user_id"],
            book_id=data["book_id"],
            request_id=data["request_id"],
            request_date=parse_timestamp(data.get("request_date")),
            status=RequestStatus(data.get("status", RequestStatus.PENDING.value)),
            admin_response_date=parse_timestamp(data.get("admin_response_date")),
            admin_id=data.get("admin_id"),
        )
