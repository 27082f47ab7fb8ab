import dataclasses

import pytest

from library_app.config import Settings
from library_app.errors import BackendConnectionError, ConfigurationError, SessionExpiredError
from library_app.models import UserRole
from library_app.selector import FILE, RELATIONAL, LibraryManager, RepositorySelector, create_repository, normalize_kind
from library_app.storage.file_backend import FileRepository
from library_app.storage.sqlite_backend import SQLiteRepository


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_source="file",
        data_dir=str(tmp_path / "data"),
        database_url=f"sqlite:///{tmp_path / 'library.db'}",
        loan_period_days=14,
        admin_username="admin",
        admin_password="admin123",
        create_default_admin=True,
    )


@pytest.fixture
def manager(settings):
    manager = LibraryManager(settings).start()
    yield manager
    manager.close()


@pytest.mark.parametrize("name, expected", [
    ("file", FILE),
    ("JSON", FILE),
    ("", FILE),
    (None, FILE),
    ("relational", RELATIONAL),
    (" sqlite ", RELATIONAL),
    ("Database", RELATIONAL),
])
def test_normalize_kind(name, expected):
    assert normalize_kind(name) == expected


def test_unknown_kind_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        normalize_kind("mongodb")


def test_create_repository_builds_each_backend(settings):
    file_repo = create_repository("file", settings)
    sql_repo = create_repository("relational", settings)
    try:
        assert isinstance(file_repo, FileRepository)
        assert isinstance(sql_repo, SQLiteRepository)
        assert sql_repo.load_books() == []
    finally:
        file_repo.close()
        sql_repo.close()


def test_unsupported_connection_string(settings):
    broken = dataclasses.replace(settings, database_url="postgresql://localhost/library")
    with pytest.raises(ConfigurationError):
        create_repository("relational", broken)


def test_unreachable_backend_raises_connection_error(settings, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    broken = dataclasses.replace(settings, data_dir=str(blocker / "data"))
    with pytest.raises(BackendConnectionError):
        create_repository("file", broken)


def test_selector_opens_configured_backend_lazily(settings):
    selector = RepositorySelector(settings)
    assert selector.kind is None
    assert selector.repository.kind == FILE
    assert selector.kind == FILE
    selector.close()
    assert selector.kind is None


def test_failed_switch_keeps_current_backend(settings):
    selector = RepositorySelector(dataclasses.replace(settings, database_url="mysql://nowhere"))
    current = selector.open("file")
    with pytest.raises(ConfigurationError):
        selector.switch("relational")
    assert selector.repository is current
    selector.close()


def test_start_creates_default_admin(manager):
    admin = manager.users.authenticate("admin", "admin123")
    assert admin is not None
    assert admin.role == UserRole.ADMIN


def test_no_bootstrap_admin_without_a_configured_password(settings):
    manager = LibraryManager(dataclasses.replace(settings, admin_password="")).start()
    try:
        assert manager.users.get_all_users() == []
        assert manager.login("admin", "admin123") is None
    finally:
        manager.close()


def test_default_admin_can_be_disabled(settings):
    manager = LibraryManager(dataclasses.replace(settings, create_default_admin=False)).start()
    try:
        assert manager.users.get_all_users() == []
    finally:
        manager.close()


def test_login_and_logout(manager):
    assert manager.login("admin", "wrong") is None
    assert manager.current_user is None
    user = manager.login("admin", "admin123")
    assert manager.current_user == user
    assert manager.require_admin() == user
    manager.logout()
    assert manager.current_user is None


def test_deleted_user_ends_session(manager):
    assert manager.users.register("alice", "wonderland")
    alice = manager.login("alice", "wonderland")
    assert manager.users.delete_user(alice.user_id)
    assert manager.current_user is None


def test_switch_keeps_session_when_user_exists_in_both(manager):
    admin = manager.login("admin", "admin123")
    other = manager.selector.switch("relational")
    assert other is None
    # Same identity in the relational store
    manager.repository.add_user(admin)
    manager.selector.switch("file")

    restored = manager.switch_backend("relational")
    assert restored == admin
    assert manager.current_user == admin
    assert manager.selector.kind == RELATIONAL
    assert manager.library.repository is manager.repository


def test_switch_drops_session_when_user_is_missing(manager):
    manager.login("admin", "admin123")
    with pytest.raises(SessionExpiredError):
        manager.selector.switch("relational", manager.current_user_id)
    # The switch itself went through
    assert manager.selector.kind == RELATIONAL

    manager.selector.switch("file")
    assert manager.switch_backend("relational") is None
    assert manager.current_user_id is None
    assert manager.users.repository.kind == RELATIONAL


def test_switch_to_same_backend_is_a_no_op(manager):
    before = manager.repository
    admin = manager.login("admin", "admin123")
    assert manager.switch_backend("json") == admin
    assert manager.repository is before


def test_data_written_before_switch_is_kept(manager):
    assert manager.library.add_book("1984", "George Orwell", 1949, "978-0-452-28423-4")
    manager.switch_backend("relational")
    assert manager.library.get_all_books() == []
    manager.switch_backend("file")
    assert manager.library.get_book_by_isbn("978-0-452-28423-4").title == "1984"


def test_seeded_start(settings):
    manager = LibraryManager(settings).start("relational", seed=True)
    try:
        assert len(manager.library.get_all_books()) == 10
        # Seeding wipes users, so the bootstrap admin is recreated
        assert manager.users.authenticate("admin", "admin123") is not None
    finally:
        manager.close()
