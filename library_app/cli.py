import dataclasses
import logging
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.prompt import Confirm, IntPrompt, Prompt

from library_app.config import Settings, settings as default_settings
from library_app.errors import LibraryError
from library_app.models import User, UserRole
from library_app.selector import LibraryManager
from library_app.ui import (
    print_book_details,
    print_books,
    print_history,
    print_loans,
    print_requests,
    print_stats_result,
    print_users,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()
logger = logging.getLogger(__name__)

app = typer.Typer(help="Library catalog and loan management")


@dataclasses.dataclass
class CLIState:
    settings: Settings
    source: Optional[str] = None
    manager: Optional[LibraryManager] = None

    def get_manager(self, seed: bool = False) -> LibraryManager:
        """Start the manager on first use (or restart it when seeding)."""
        if self.manager is not None and not seed:
            return self.manager
        if self.manager is not None:
            self.manager.close()
        try:
            self.manager = LibraryManager(self.settings).start(self.source, seed=seed)
        except LibraryError as e:
            print(f"Could not open data source: {e}")
            raise typer.Exit(code=1)
        return self.manager

    def close(self) -> None:
        if self.manager is not None:
            self.manager.close()
            self.manager = None


def _state(ctx: typer.Context) -> CLIState:
    if ctx.obj is None:
        ctx.obj = CLIState(settings=default_settings)
    return ctx.obj


def _manager(ctx: typer.Context) -> LibraryManager:
    return _state(ctx).get_manager()


def _login(manager: LibraryManager, username: str, password: str, admin: bool = False) -> User:
    user = manager.login(username, password)
    if user is None:
        print("Invalid username or password.")
        raise typer.Exit(code=1)
    if admin and not user.is_admin:
        print("Administrator rights required.")
        raise typer.Exit(code=1)
    return user


def _titles(manager: LibraryManager) -> Dict[str, str]:
    return {book.book_id: book.title for book in manager.library.get_all_books()}


def _usernames(manager: LibraryManager) -> Dict[str, str]:
    return {user.user_id: user.username for user in manager.users.get_all_users()}


def _report(ok: bool, success: str, failure: str) -> None:
    print(success if ok else failure)


UserOption = typer.Option(..., "--user", "-u", help="Username to act as")
PasswordOption = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Password")


@app.callback()
def _global_options(
    ctx: typer.Context,
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Data source: file | relational"),
    data_dir: Optional[str] = typer.Option(None, "--data-dir", help="Directory for the JSON files"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help="Connection string (sqlite:///path)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich"),
):
    """Global options (data source and output mode)."""
    logging.basicConfig(level=getattr(logging, default_settings.log_level.upper(), logging.INFO),
                        format="%(levelname)s: %(message)s")
    if output:
        set_output_mode(output)
    overrides = {}
    if data_dir:
        overrides["data_dir"] = data_dir
    if database_url:
        overrides["database_url"] = database_url
    state = CLIState(settings=dataclasses.replace(default_settings, **overrides), source=source)
    ctx.obj = state
    ctx.call_on_close(state.close)


# ------------------------- Setup and accounts ------------------------- #
@app.command("init")
def cli_init(
    ctx: typer.Context,
    seed: bool = typer.Option(False, "--seed", help="DROP all data and load the sample catalog"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Prepare the data source (non-destructive unless --seed)."""
    if seed and not yes and not Confirm.ask("This erases every user, book and loan. Continue?", default=False):
        print("Aborted.")
        return
    manager = _state(ctx).get_manager(seed=seed)
    print(f"Data source ready: {manager.repository.describe()}")
    if seed:
        print(f"Sample catalog loaded: {len(manager.library.get_all_books())} books")


@app.command("register")
def cli_register(
    ctx: typer.Context,
    username: str,
    new_password: str = typer.Option(..., "--new-password", prompt=True, hide_input=True,
                                     confirmation_prompt=True, help="Password for the new account"),
    admin: bool = typer.Option(False, "--admin",
                               help="Create an administrator (requires admin login unless no accounts exist yet)"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Admin username when creating an admin"),
    password: Optional[str] = typer.Option(None, "--password", "-p", help="Admin password"),
):
    """Register a new account."""
    manager = _manager(ctx)
    role = UserRole.REGULAR_USER
    if admin:
        # The very first account may be an administrator
        if manager.users.get_all_users():
            _login(manager, user or "", password or "", admin=True)
        role = UserRole.ADMIN
    _report(manager.users.register(username, new_password, role),
            f"Registered {username}.", f"Could not register {username}: username taken or invalid.")


@app.command("users")
def cli_users(ctx: typer.Context, user: str = UserOption, password: str = PasswordOption):
    """List all accounts (admin)."""
    manager = _manager(ctx)
    _login(manager, user, password, admin=True)
    print_users(manager.users.get_all_users())


# ------------------------- Catalog ------------------------- #
@app.command("books")
def cli_books(ctx: typer.Context, available: bool = typer.Option(False, "--available", "-a", help="Only available books")):
    """List the catalog."""
    library = _manager(ctx).library
    if available:
        print_books(library.get_available_books(), "No available books.")
    else:
        print_books(library.get_all_books())


@app.command("search")
def cli_search(ctx: typer.Context, term: str = typer.Argument(..., help="Text to find in title, author or ISBN")):
    """Case-insensitive search over title, author and ISBN."""
    print_books(_manager(ctx).library.search_books(term), "No books match your search.")


@app.command("find")
def cli_find(ctx: typer.Context, isbn: str):
    """Show one book by ISBN."""
    book = _manager(ctx).library.get_book_by_isbn(isbn)
    if book:
        print_book_details(book)
    else:
        print(f"Book with ISBN {isbn} not found.")


@app.command("add-book")
def cli_add_book(
    ctx: typer.Context,
    title: str,
    author: str,
    year: int,
    isbn: Optional[str] = typer.Option(None, "--isbn", help="ISBN (optional, unique)"),
    user: str = UserOption,
    password: str = PasswordOption,
):
    """Add a book (admin)."""
    manager = _manager(ctx)
    _login(manager, user, password, admin=True)
    _report(manager.library.add_book(title, author, year, isbn),
            f"Added: {title} by {author}", "Could not add book: invalid data or duplicate ISBN.")


@app.command("update-book")
def cli_update_book(
    ctx: typer.Context,
    isbn: str,
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    author: Optional[str] = typer.Option(None, "--author", "-a"),
    year: Optional[int] = typer.Option(None, "--year", "-y"),
    new_isbn: Optional[str] = typer.Option(None, "--new-isbn"),
    user: str = UserOption,
    password: str = PasswordOption,
):
    """Edit a book's details (admin)."""
    if title is None and author is None and year is None and new_isbn is None:
        print("Nothing to update. Provide --title, --author, --year or --new-isbn.")
        return
    manager = _manager(ctx)
    _login(manager, user, password, admin=True)
    _report(manager.library.update_book(isbn, title=title, author=author, publication_year=year, new_isbn=new_isbn),
            f"Book {isbn} updated.", f"Could not update book {isbn}.")


@app.command("delete-book")
def cli_delete_book(ctx: typer.Context, isbn: str, user: str = UserOption, password: str = PasswordOption):
    """Delete a book that is not on loan (admin)."""
    manager = _manager(ctx)
    _login(manager, user, password, admin=True)
    _report(manager.library.delete_book(isbn),
            f"Book with ISBN {isbn} has been removed.", f"Could not delete {isbn}: not found or currently borrowed.")


# ------------------------- Loans ------------------------- #
@app.command("request")
def cli_request(ctx: typer.Context, isbn: str, user: str = UserOption, password: str = PasswordOption):
    """Ask for a loan of an available book."""
    manager = _manager(ctx)
    account = _login(manager, user, password)
    _report(manager.library.request_book(account.user_id, isbn),
            f"Loan request sent for {isbn}.", f"Could not request {isbn}: unavailable or already requested.")


@app.command("requests")
def cli_requests(ctx: typer.Context, user: str = UserOption, password: str = PasswordOption):
    """List pending loan requests (admin)."""
    manager = _manager(ctx)
    _login(manager, user, password, admin=True)
    print_requests(manager.library.get_pending_requests(), _usernames(manager), _titles(manager))


@app.command("approve")
def cli_approve(ctx: typer.Context, request_id: str, user: str = UserOption, password: str = PasswordOption):
    """Approve a pending request and lend the book (admin)."""
    manager = _manager(ctx)
    admin = _login(manager, user, password, admin=True)
    _report(manager.library.approve_request(request_id, admin.user_id),
            f"Request {request_id} approved.", f"Could not approve request {request_id}.")


@app.command("reject")
def cli_reject(ctx: typer.Context, request_id: str, user: str = UserOption, password: str = PasswordOption):
    """Reject a pending request (admin)."""
    manager = _manager(ctx)
    admin = _login(manager, user, password, admin=True)
    _report(manager.library.reject_request(request_id, admin.user_id),
            f"Request {request_id} rejected.", f"Could not reject request {request_id}.")


@app.command("lend")
def cli_lend(ctx: typer.Context, isbn: str, borrower: str, user: str = UserOption, password: str = PasswordOption):
    """Lend a book directly to a user at the desk (admin)."""
    manager = _manager(ctx)
    _login(manager, user, password, admin=True)
    account = manager.users.get_user_by_username(borrower)
    if account is None:
        print(f"User {borrower} not found.")
        return
    _report(manager.library.lend_book(account.user_id, isbn),
            f"{isbn} lent to {borrower}.", f"Could not lend {isbn}: not found or already borrowed.")


@app.command("return")
def cli_return(
    ctx: typer.Context,
    isbn: str,
    borrower: Optional[str] = typer.Option(None, "--for", help="Borrower username (admin desk return)"),
    user: str = UserOption,
    password: str = PasswordOption,
):
    """Return a borrowed book."""
    manager = _manager(ctx)
    account = _login(manager, user, password, admin=borrower is not None)
    if borrower:
        ok = manager.library.return_book_for(borrower, isbn)
    else:
        ok = manager.library.return_book(account.user_id, isbn)
    _report(ok, f"{isbn} returned.", f"Could not return {isbn}: no matching active loan.")


@app.command("borrowed")
def cli_borrowed(ctx: typer.Context, user: str = UserOption, password: str = PasswordOption):
    """Books you currently have on loan."""
    manager = _manager(ctx)
    account = _login(manager, user, password)
    print_books(manager.library.get_borrowed_books(account.user_id), "You have no borrowed books.")


@app.command("history")
def cli_history(ctx: typer.Context, user: str = UserOption, password: str = PasswordOption):
    """Your full borrowing history."""
    manager = _manager(ctx)
    account = _login(manager, user, password)
    print_history(manager.library.get_borrowing_history(account.user_id), _titles(manager))


@app.command("loans")
def cli_loans(
    ctx: typer.Context,
    overdue: bool = typer.Option(False, "--overdue", help="Only overdue loans"),
    user: str = UserOption,
    password: str = PasswordOption,
):
    """All active loans (admin)."""
    manager = _manager(ctx)
    _login(manager, user, password, admin=True)
    if overdue:
        print_loans(manager.library.get_overdue_loans(), "No overdue books.")
    else:
        print_loans(manager.library.get_active_loans())


@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Catalog statistics."""
    manager = _manager(ctx)
    print_stats_result(manager.library.get_statistics(), manager.repository.describe())


# ------------------------- Interactive shell ------------------------- #
def _shell_logged_out(manager: LibraryManager) -> bool:
    choice = Prompt.ask("[1] Login  [2] Register  [3] Switch data source  [0] Exit",
                        choices=["1", "2", "3", "0"], default="1")
    if choice == "1":
        user = manager.login(Prompt.ask("Username"), Prompt.ask("Password", password=True))
        console.print(f"[green]Welcome, {user.username}![/]" if user else "[red]Invalid username or password.[/]")
    elif choice == "2":
        ok = manager.users.register(Prompt.ask("Username"), Prompt.ask("Password", password=True))
        console.print("[green]Registered, you can log in now.[/]" if ok else "[red]Username taken or invalid.[/]")
    elif choice == "3":
        _shell_switch(manager)
    else:
        return False
    return True


def _shell_switch(manager: LibraryManager) -> None:
    console.print(f"Current data source: {manager.repository.describe()}")
    kind = Prompt.ask("New data source", choices=["file", "relational"])
    had_session = manager.current_user_id is not None
    try:
        user = manager.switch_backend(kind)
    except LibraryError as e:
        console.print(f"[red]Failed to switch data source: {e}[/]")
        console.print("Continuing with current data source...")
        return
    console.print(f"[green]Now using {manager.repository.describe()}[/]")
    if had_session and user is None:
        console.print("[yellow]Your session was lost during the switch. Please log in again.[/]")


def _shell_user(manager: LibraryManager, user: User) -> bool:
    library = manager.library
    choice = Prompt.ask("[1] Available books  [2] Request loan  [3] My books  [4] Return  [5] History  "
                        "[6] Switch data source  [7] Logout  [0] Exit",
                        choices=["1", "2", "3", "4", "5", "6", "7", "0"])
    if choice == "1":
        print_books(library.get_available_books(), "No available books.")
    elif choice == "2":
        isbn = Prompt.ask("ISBN")
        ok = library.request_book(user.user_id, isbn)
        console.print("[green]Request sent.[/]" if ok else "[red]Book unavailable or already requested.[/]")
    elif choice == "3":
        print_books(library.get_borrowed_books(user.user_id), "You have no borrowed books.")
    elif choice == "4":
        ok = library.return_book(user.user_id, Prompt.ask("ISBN"))
        console.print("[green]Returned.[/]" if ok else "[red]No matching active loan.[/]")
    elif choice == "5":
        print_history(library.get_borrowing_history(user.user_id), _titles(manager))
    elif choice == "6":
        _shell_switch(manager)
    elif choice == "7":
        manager.logout()
    else:
        return False
    return True


def _shell_admin(manager: LibraryManager, admin: User) -> bool:
    library = manager.library
    choice = Prompt.ask("[1] Books  [2] Add  [3] Edit  [4] Delete  [5] Requests  [6] Returns  [7] Users  "
                        "[8] Switch data source  [9] Logout  [0] Exit",
                        choices=[str(i) for i in range(10)])
    if choice == "1":
        print_books(library.get_all_books())
    elif choice == "2":
        ok = library.add_book(Prompt.ask("Title"), Prompt.ask("Author"), IntPrompt.ask("Year"),
                              Prompt.ask("ISBN", default="") or None)
        console.print("[green]Book added.[/]" if ok else "[red]Invalid data or duplicate ISBN.[/]")
    elif choice == "3":
        isbn = Prompt.ask("ISBN")
        ok = library.update_book(isbn, title=Prompt.ask("New title", default="") or None,
                                 author=Prompt.ask("New author", default="") or None)
        console.print("[green]Book updated.[/]" if ok else "[red]Book not found.[/]")
    elif choice == "4":
        ok = library.delete_book(Prompt.ask("ISBN"))
        console.print("[green]Book deleted.[/]" if ok else "[red]Not found or currently borrowed.[/]")
    elif choice == "5":
        print_requests(library.get_pending_requests(), _usernames(manager), _titles(manager))
        request_id = Prompt.ask("Request ID to handle (blank to skip)", default="")
        if request_id:
            if Confirm.ask("Approve? (No rejects)"):
                ok = library.approve_request(request_id, admin.user_id)
            else:
                ok = library.reject_request(request_id, admin.user_id)
            console.print("[green]Done.[/]" if ok else "[red]Request could not be processed.[/]")
    elif choice == "6":
        print_loans(library.get_active_loans())
        isbn = Prompt.ask("ISBN to return (blank to skip)", default="")
        if isbn:
            ok = library.return_book_for(Prompt.ask("Borrower username"), isbn)
            console.print("[green]Returned.[/]" if ok else "[red]No matching active loan.[/]")
    elif choice == "7":
        print_users(manager.users.get_all_users())
    elif choice == "8":
        _shell_switch(manager)
    elif choice == "9":
        manager.logout()
    else:
        return False
    return True


@app.command("shell")
def cli_shell(ctx: typer.Context):
    """Interactive menu with login, logout and data source switching."""
    manager = _manager(ctx)
    console.print(f"[bold]=== {default_settings.app_name} ===[/]  [dim]{manager.repository.describe()}[/]")
    running = True
    while running:
        try:
            user = manager.current_user
            if user is None:
                running = _shell_logged_out(manager)
            elif user.is_admin:
                running = _shell_admin(manager, user)
            else:
                running = _shell_user(manager, user)
        except LibraryError as e:
            console.print(f"[red]Error: {e}[/]")
    console.print("Goodbye!")


def main() -> None:
    app(prog_name="library-app")


if __name__ == "__main__":
    main()
