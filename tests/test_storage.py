import json

import pytest

from library_app.errors import DuplicateKeyError, InvalidStateError, NotFoundError, StorageIOError
from library_app.models import (
    Book,
    BookStatus,
    BorrowingRecord,
    BorrowingRequest,
    RequestStatus,
    User,
    UserRole,
)
from library_app.storage.file_backend import FileRepository
from library_app.storage.seed import SAMPLE_BOOKS
from library_app.storage.sqlite_backend import SQLiteRepository, parse_database_url


def _populate(repo):
    """Same logical state, with fixed identities, for any backend."""
    alice = User("alice", "d1:s1", user_id="user-alice")
    root = User("root", "d2:s2", UserRole.ADMIN, user_id="user-root")
    for user in (alice, root):
        repo.add_user(user)
    books = [
        Book("The Hobbit", "J.R.R. Tolkien", 1937, "978-0-547-92822-7", book_id="book-hobbit"),
        Book("Brave New World", "Aldous Huxley", 1932, None, book_id="book-bnw"),
        Book("1984", "George Orwell", 1949, "978-0-452-28423-4", book_id="book-1984"),
    ]
    for book in books:
        repo.add_book(book)
    record = BorrowingRecord(alice.user_id, "book-1984", record_id="rec-1")
    repo.add_record(record)
    request = BorrowingRequest(alice.user_id, "book-hobbit", request_id="req-1")
    repo.add_request(request)
    return alice, root, books, record, request


def test_round_trip_every_collection(repo):
    alice, root, books, record, request = _populate(repo)
    assert repo.load_users() == [alice, root]
    assert sorted(repo.load_books(), key=lambda b: b.book_id) == sorted(books, key=lambda b: b.book_id)
    assert repo.load_records() == [record]
    assert repo.load_requests() == [request]


def test_books_are_ordered_by_title(repo):
    _populate(repo)
    assert [b.title for b in repo.load_books()] == ["1984", "Brave New World", "The Hobbit"]


def test_lookups(repo):
    alice, _, _, record, request = _populate(repo)
    assert repo.get_user(alice.user_id) == alice
    assert repo.get_user_by_username("alice") == alice
    assert repo.get_user_by_username("ALICE") is None
    assert repo.get_book_by_isbn("978-0-452-28423-4").book_id == "book-1984"
    assert repo.get_book_by_isbn("") is None
    assert repo.get_active_record(alice.user_id, "book-1984") == record
    assert repo.get_active_record(alice.user_id, "book-hobbit") is None
    assert repo.get_records_by_user(alice.user_id) == [record]
    assert repo.get_pending_requests() == [request]
    assert repo.get_pending_request(alice.user_id, "book-hobbit") == request
    assert repo.get_request("missing") is None


def test_duplicate_username_is_rejected(repo):
    repo.add_user(User("alice", "d:s"))
    with pytest.raises(DuplicateKeyError):
        repo.add_user(User("alice", "other:salt"))
    assert len(repo.load_users()) == 1


def test_duplicate_isbn_is_rejected_but_null_isbns_are_not(repo):
    repo.add_book(Book("One", "A", 2000, "123"))
    with pytest.raises(DuplicateKeyError):
        repo.add_book(Book("Two", "B", 2001, "123"))
    repo.add_book(Book("Three", "C", 2002))
    repo.add_book(Book("Four", "D", 2003))
    assert len(repo.load_books()) == 3


def test_duplicate_identity_is_rejected(repo):
    book = Book("One", "A", 2000)
    repo.add_book(book)
    with pytest.raises(DuplicateKeyError):
        repo.add_book(book)


def test_update_to_taken_isbn_is_rejected(repo):
    repo.add_book(Book("One", "A", 2000, "111"))
    second = Book("Two", "B", 2001, "222")
    repo.add_book(second)
    second.isbn = "111"
    with pytest.raises(DuplicateKeyError):
        repo.update_book(second)
    assert repo.get_book(second.book_id).isbn == "222"


def test_update_and_delete_missing_raise_not_found(repo):
    with pytest.raises(NotFoundError):
        repo.update_book(Book("Ghost", "Nobody", 1900))
    with pytest.raises(NotFoundError):
        repo.delete_book("missing")
    with pytest.raises(NotFoundError):
        repo.update_user(User("ghost", "d:s"))
    with pytest.raises(NotFoundError):
        repo.delete_request("missing")
    assert repo.load_books() == []
    assert repo.load_users() == []


def test_update_persists(repo):
    _, _, books, record, request = _populate(repo)
    record.mark_returned()
    repo.update_record(record)
    request.resolve(RequestStatus.APPROVED, "user-root")
    repo.update_request(request)
    assert repo.get_record("rec-1") == record
    assert repo.get_active_records() == []
    assert repo.get_request("req-1").status == RequestStatus.APPROVED
    assert repo.get_pending_requests() == []


def test_search_is_case_insensitive_over_title_author_and_isbn(repo):
    _populate(repo)
    assert [b.title for b in repo.search_books("HOBBIT")] == ["The Hobbit"]
    assert [b.title for b in repo.search_books("orwell")] == ["1984"]
    assert [b.title for b in repo.search_books("0-547")] == ["The Hobbit"]
    assert [b.title for b in repo.search_books("w")] == ["1984", "Brave New World"]
    assert repo.search_books("no such thing") == []


def test_search_treats_wildcards_literally(repo):
    repo.add_book(Book("100% Pure", "Someone", 2010))
    repo.add_book(Book("Plain", "Other", 2011))
    assert [b.title for b in repo.search_books("%")] == ["100% Pure"]
    assert repo.search_books("_") == []


def test_delete_book_with_active_record_is_rejected(repo):
    _populate(repo)
    with pytest.raises(InvalidStateError):
        repo.delete_book("book-1984")
    assert repo.get_book("book-1984") is not None


def test_delete_book_cascades_history(repo):
    alice, _, _, record, _ = _populate(repo)
    record.mark_returned()
    repo.update_record(record)
    repo.delete_book("book-1984")
    assert repo.get_book("book-1984") is None
    assert repo.get_records_by_user(alice.user_id) == []


def test_delete_user_with_active_record_is_rejected(repo):
    alice, _, _, _, _ = _populate(repo)
    with pytest.raises(InvalidStateError):
        repo.delete_user(alice.user_id)


def test_deleting_an_admin_clears_request_references(repo):
    alice, root, _, _, request = _populate(repo)
    request.resolve(RequestStatus.REJECTED, root.user_id)
    repo.update_request(request)
    repo.delete_user(root.user_id)
    assert repo.get_request("req-1").admin_id is None
    assert repo.get_user(alice.user_id) is not None


def test_transaction_rolls_back_on_error(repo):
    _populate(repo)
    with pytest.raises(RuntimeError):
        with repo.transaction():
            book = repo.get_book("book-hobbit")
            book.status = BookStatus.BORROWED
            repo.update_book(book)
            repo.add_book(Book("Dune", "Frank Herbert", 1965))
            raise RuntimeError("boom")
    assert repo.get_book("book-hobbit").status == BookStatus.AVAILABLE
    assert repo.search_books("dune") == []


def test_nested_transactions_commit_once(repo):
    with repo.transaction():
        repo.add_book(Book("Outer", "A", 2000))
        with repo.transaction():
            repo.add_book(Book("Inner", "B", 2001))
    assert [b.title for b in repo.load_books()] == ["Inner", "Outer"]


def test_initialize_is_non_destructive(repo):
    _populate(repo)
    repo.initialize()
    assert len(repo.load_books()) == 3
    assert len(repo.load_users()) == 2


def test_seed_replaces_everything_with_sample_catalog(repo):
    _populate(repo)
    repo.initialize(seed=True)
    assert repo.load_users() == []
    assert repo.load_records() == []
    books = repo.load_books()
    assert sorted((b.title, b.author, b.publication_year, b.isbn) for b in books) == sorted(SAMPLE_BOOKS)
    assert all(b.status == BookStatus.AVAILABLE for b in books)


def test_test_connection(repo):
    assert repo.test_connection() is True


def test_both_backends_return_identical_results(file_repo, sqlite_repo):
    _populate(file_repo)
    # Copy the exact entities (same identities and timestamps) into the relational store
    for user in file_repo.load_users():
        sqlite_repo.add_user(user)
    for book in file_repo.load_books():
        sqlite_repo.add_book(book)
    for record in file_repo.load_records():
        sqlite_repo.add_record(record)
    for request in file_repo.load_requests():
        sqlite_repo.add_request(request)
    assert file_repo.load_books() == sqlite_repo.load_books()
    assert file_repo.load_users() == sqlite_repo.load_users()
    assert file_repo.load_records() == sqlite_repo.load_records()
    assert file_repo.load_requests() == sqlite_repo.load_requests()
    for term in ("the", "ORW", "978", "zzz"):
        assert file_repo.search_books(term) == sqlite_repo.search_books(term)


# ------------------------- File backend specifics ------------------------- #
def test_file_layout_is_human_readable_json(file_repo):
    file_repo.add_book(Book("Sapiens", "Yuval Noah Harari", 2011, "9780099590088"))
    for name in ("users", "books", "borrowing_records", "borrowing_requests"):
        assert (file_repo.data_dir / f"{name}.json").exists()
    text = (file_repo.data_dir / "books.json").read_text(encoding="utf-8")
    assert "\n  " in text
    assert json.loads(text)[0]["title"] == "Sapiens"


def test_missing_file_reads_as_empty(tmp_path):
    repo = FileRepository(tmp_path / "fresh")
    assert repo.load_books() == []


def test_corrupt_file_raises_storage_error(file_repo):
    (file_repo.data_dir / "books.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageIOError):
        file_repo.load_books()


def test_file_data_survives_new_instance(file_repo):
    file_repo.add_book(Book("Sapiens", "Yuval Noah Harari", 2011, "9780099590088"))
    again = FileRepository(file_repo.data_dir)
    assert again.get_book_by_isbn("9780099590088").title == "Sapiens"


# ------------------------- Relational backend specifics ------------------------- #
@pytest.mark.parametrize("url, expected", [
    ("sqlite:///library.db", "library.db"),
    ("sqlite:////var/data/library.db", "/var/data/library.db"),
    ("sqlite://", ":memory:"),
    (":memory:", ":memory:"),
    ("library.db", "library.db"),
])
def test_parse_database_url(url, expected):
    assert parse_database_url(url) == expected


def test_relational_data_survives_reconnect(tmp_path):
    url = f"sqlite:///{tmp_path / 'persist.db'}"
    repo = SQLiteRepository(url)
    repo.initialize()
    repo.add_user(User("alice", "d:s"))
    repo.close()

    again = SQLiteRepository(url)
    again.initialize()
    assert again.get_user_by_username("alice") is not None
    again.close()


def test_records_and_requests_need_existing_user_and_book(repo):
    alice, root, _, record, request = _populate(repo)
    with pytest.raises(NotFoundError):
        repo.add_record(BorrowingRecord("nobody", "book-1984"))
    with pytest.raises(NotFoundError):
        repo.add_record(BorrowingRecord(alice.user_id, "nothing"))
    with pytest.raises(NotFoundError):
        repo.add_request(BorrowingRequest("nobody", "book-hobbit"))
    with pytest.raises(NotFoundError):
        repo.add_request(BorrowingRequest(alice.user_id, "nothing"))
    request.resolve(RequestStatus.REJECTED, "no-such-admin")
    with pytest.raises(NotFoundError):
        repo.update_request(request)
    assert repo.load_records() == [record]
    assert repo.get_request("req-1").status == RequestStatus.PENDING


def test_failed_commit_does_not_wedge_the_connection(sqlite_repo, monkeypatch):
    execute = sqlite_repo._execute

    def failing_commit(sql, params=()):
        if sql == "COMMIT":
            raise StorageIOError("database is locked")
        return execute(sql, params)

    monkeypatch.setattr(sqlite_repo, "_execute", failing_commit)
    with pytest.raises(StorageIOError):
        with sqlite_repo.transaction():
            sqlite_repo.add_book(Book("Lost", "Nobody", 2000))
    monkeypatch.undo()

    assert sqlite_repo.search_books("lost") == []
    with sqlite_repo.transaction():
        sqlite_repo.add_book(Book("Kept", "Somebody", 2001))
    assert [b.title for b in sqlite_repo.load_books()] == ["Kept"]


def test_unreachable_database_fails_connection_test(tmp_path):
    repo = SQLiteRepository(f"sqlite:///{tmp_path / 'missing-dir' / 'x.db'}")
    assert repo.test_connection() is False
