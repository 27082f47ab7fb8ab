import pytest

from library_app.library import Library
from library_app.models import UserRole
from library_app.storage.file_backend import FileRepository
from library_app.storage.sqlite_backend import SQLiteRepository
from library_app.users import UserManager


@pytest.fixture
def file_repo(tmp_path):
    # Each test gets its own data directory
    repo = FileRepository(tmp_path / "data")
    repo.initialize()
    yield repo
    repo.close()


@pytest.fixture
def sqlite_repo(tmp_path, request):
    db_file = tmp_path / f"test_{request.node.name[:40]}.db"
    repo = SQLiteRepository(f"sqlite:///{db_file}")
    repo.initialize()
    yield repo
    repo.close()


@pytest.fixture(params=["file", "relational"])
def repo(request):
    """Runs the test once against each backend."""
    name = "file_repo" if request.param == "file" else "sqlite_repo"
    return request.getfixturevalue(name)


@pytest.fixture
def lib(repo):
    return Library(repo)


@pytest.fixture
def users(repo):
    return UserManager(repo)


@pytest.fixture
def member(users):
    assert users.register("alice", "wonderland")
    return users.get_user_by_username("alice")


@pytest.fixture
def other_member(users):
    assert users.register("bob", "builder")
    return users.get_user_by_username("bob")


@pytest.fixture
def admin(users):
    assert users.register("root", "s3cret", UserRole.ADMIN)
    return users.get_user_by_username("root")
