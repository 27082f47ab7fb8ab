import os
import json
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from library_app.library import Loan
from library_app.models import Book, BorrowingRecord, BorrowingRequest, User

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


def _emit_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False))


def print_books(books: List[Book], empty_message: str = "No books in library.") -> None:
    """Print books in the current output mode.
    - plain: 'ISBN - Title by Author (Year) [Status]' lines
    - json: list of book dicts
    - rich: Rich table
    """
    if not books:
        print(empty_message)
        return

    mode = get_output_mode()
    if mode == "json":
        _emit_json([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Year", justify="right")
        table.add_column("Status")
        for b in books:
            status_style = "green" if b.is_available else "red"
            table.add_row(b.isbn or "N/A", b.title, b.author, str(b.publication_year),
                          f"[{status_style}]{b.status.value}[/]")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.isbn or 'N/A'} - {b.title} by {b.author} ({b.publication_year}) [{b.status.value}]")


def print_book_details(book: Book) -> None:
    if get_output_mode() == "json":
        _emit_json(book.to_dict())
        return
    print("Book Found")
    print(f"Title: {book.title}")
    print(f"Author: {book.author}")
    print(f"Year: {book.publication_year}")
    print(f"ISBN: {book.isbn or 'N/A'}")
    print(f"Status: {book.status.value}")


def print_history(records: List[BorrowingRecord], titles: Dict[str, str]) -> None:
    if not records:
        print("No borrowing history.")
        return

    mode = get_output_mode()
    if mode == "json":
        _emit_json([r.to_dict() for r in records])
    elif mode == "rich":
        table = Table(title="🕮 Borrowing history", header_style="bold cyan")
        for column in ("Title", "Borrowed", "Due", "Returned", "Status"):
            table.add_column(column)
        for r in records:
            status = "Overdue" if r.is_overdue() else r.status.value
            table.add_row(titles.get(r.book_id, r.book_id), _date(r.borrow_date), _date(r.due_date),
                          _date(r.return_date), status)
        _console.print(table)
    else:
        for r in records:
            overdue = " [OVERDUE]" if r.is_overdue() else ""
            print(f"{titles.get(r.book_id, r.book_id)} - borrowed {_date(r.borrow_date)}, "
                  f"due {_date(r.due_date)}, returned {_date(r.return_date)} [{r.status.value}]{overdue}")


def print_loans(loans: List[Loan], empty_message: str = "No books are currently borrowed.") -> None:
    if not loans:
        print(empty_message)
        return

    mode = get_output_mode()
    if mode == "json":
        _emit_json([
            {**loan.record.to_dict(), "title": loan.book.title, "isbn": loan.book.isbn,
             "username": loan.user.username if loan.user else None, "overdue": loan.record.is_overdue()}
            for loan in loans
        ])
    elif mode == "rich":
        table = Table(title="📖 Active loans", header_style="bold cyan")
        for column in ("Title", "ISBN", "Borrower", "Due"):
            table.add_column(column)
        for loan in loans:
            due = _date(loan.record.due_date)
            if loan.record.is_overdue():
                due = f"[bold red]{due} (overdue)[/]"
            table.add_row(loan.book.title, loan.book.isbn or "N/A",
                          loan.user.username if loan.user else "?", due)
        _console.print(table)
    else:
        for loan in loans:
            overdue = " [OVERDUE]" if loan.record.is_overdue() else ""
            borrower = loan.user.username if loan.user else "?"
            print(f"- {loan.book.title} borrowed by {borrower} (Due: {_date(loan.record.due_date)}){overdue}"
                  f" - ISBN: {loan.book.isbn or 'N/A'}")


def print_requests(requests: List[BorrowingRequest], usernames: Dict[str, str], titles: Dict[str, str]) -> None:
    if not requests:
        print("No pending requests.")
        return

    mode = get_output_mode()
    if mode == "json":
        _emit_json([r.to_dict() for r in requests])
    elif mode == "rich":
        table = Table(title="📨 Pending requests", header_style="bold cyan")
        for column in ("Request ID", "User", "Book", "Requested"):
            table.add_column(column)
        for r in requests:
            table.add_row(r.request_id, usernames.get(r.user_id, r.user_id),
                          titles.get(r.book_id, r.book_id), _date(r.request_date))
        _console.print(table)
    else:
        for r in requests:
            print(f"{r.request_id} - {usernames.get(r.user_id, r.user_id)} requested "
                  f"{titles.get(r.book_id, r.book_id)} on {_date(r.request_date)}")


def print_users(users: List[User]) -> None:
    if not users:
        print("No users.")
        return

    mode = get_output_mode()
    if mode == "json":
        # Never echo password digests
        _emit_json([{k: v for k, v in u.to_dict().items() if k != "password_hash"} for u in users])
    elif mode == "rich":
        table = Table(title="👥 Users", header_style="bold cyan")
        for column in ("Username", "Role", "Created"):
            table.add_column(column)
        for u in users:
            table.add_row(u.username, u.role.value, _date(u.created_at))
        _console.print(table)
    else:
        for u in users:
            print(f"{u.username} ({u.role.value}) - joined {_date(u.created_at)}")


def print_stats_result(stats: Dict[str, Any], source: Optional[str] = None) -> None:
    """Print statistics in the current output mode."""
    if not stats:
        print("No statistics available.")
        return

    mode = get_output_mode()
    if mode == "json":
        _emit_json({**stats, "data_source": source})
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {v}" for k, v in stats.items())
        if source:
            content += f"\n[dim]Data source: {source}[/]"
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{key.replace('_', ' ').title()}: {value}")
        if source:
            print(f"Data Source: {source}")
