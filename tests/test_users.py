from library_app.library import Library
from library_app.models import UserRole


def test_register_and_authenticate(users):
    assert users.register("alice", "wonderland") is True
    user = users.authenticate("alice", "wonderland")
    assert user is not None
    assert user.role == UserRole.REGULAR_USER
    assert user.password_hash != "wonderland"


def test_wrong_password_or_unknown_user(users, member):
    assert users.authenticate("alice", "WONDERLAND") is None
    assert users.authenticate("nobody", "wonderland") is None


def test_duplicate_username_is_rejected(users, member):
    assert users.register("alice", "another") is False
    assert users.register("  alice ", "another") is False
    assert len(users.get_all_users()) == 1
    assert users.authenticate("alice", "wonderland") == member


def test_blank_credentials_are_rejected(users):
    assert users.register("", "pw") is False
    assert users.register("   ", "pw") is False
    assert users.register("carol", "") is False
    assert users.get_all_users() == []


def test_users_by_role(users, member, admin):
    assert users.get_users_by_role(UserRole.ADMIN) == [admin]
    assert users.get_users_by_role(UserRole.REGULAR_USER) == [member]


def test_change_password(users, member):
    assert users.change_password(member.user_id, "wrong", "new-pass") is False
    assert users.change_password(member.user_id, "wonderland", "new-pass") is True
    assert users.authenticate("alice", "wonderland") is None
    assert users.authenticate("alice", "new-pass") is not None
    assert users.change_password("missing", "x", "y") is False


def test_update_user(users, member):
    member.role = UserRole.ADMIN
    assert users.update_user(member) is True
    assert users.get_user(member.user_id).is_admin


def test_delete_user(users, member):
    assert users.delete_user(member.user_id) is True
    assert users.get_user_by_username("alice") is None
    assert users.delete_user(member.user_id) is False


def test_delete_user_with_active_loan_is_refused(repo, users, member):
    lib = Library(repo)
    assert lib.add_book("1984", "George Orwell", 1949, "978-0-452-28423-4")
    assert lib.lend_book(member.user_id, "978-0-452-28423-4")
    assert users.delete_user(member.user_id) is False
    assert users.get_user(member.user_id) is not None

    assert lib.return_book(member.user_id, "978-0-452-28423-4")
    assert users.delete_user(member.user_id) is True
    assert lib.get_borrowing_history(member.user_id) == []


def test_ensure_default_admin_only_on_empty_store(users):
    assert users.ensure_default_admin("admin", "admin123") is True
    assert users.authenticate("admin", "admin123").is_admin
    assert users.ensure_default_admin("admin2", "pw") is False
    assert len(users.get_all_users()) == 1
