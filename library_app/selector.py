"""Backend selection and the composition root used by the front end.

``RepositorySelector`` owns the single live Repository. ``LibraryManager``
builds the user and loan services on top of it and carries the logged-in
user across backend switches by identity only.
"""

import logging
from typing import Optional

from library_app.config import Settings, settings as default_settings
from library_app.errors import (
    BackendConnectionError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    SessionExpiredError,
)
from library_app.library import Library
from library_app.models import User
from library_app.storage.base import Repository
from library_app.storage.file_backend import FileRepository
from library_app.storage.sqlite_backend import SQLiteRepository
from library_app.users import UserManager

logger = logging.getLogger(__name__)

FILE = "file"
RELATIONAL = "relational"

_ALIASES = {
    "file": FILE,
    "json": FILE,
    "relational": RELATIONAL,
    "sqlite": RELATIONAL,
    "database": RELATIONAL,
    "db": RELATIONAL,
}


def normalize_kind(kind: Optional[str]) -> str:
    """Map a configured backend name onto ``file`` or ``relational``; blank means file."""
    if kind is None or not kind.strip():
        return FILE
    try:
        return _ALIASES[kind.strip().lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown data source '{kind}'. Use 'file' or 'relational'.") from None


def create_repository(kind: Optional[str], settings: Settings, seed: bool = False) -> Repository:
    """Build, check and initialize the requested backend."""
    kind = normalize_kind(kind)
    if kind == FILE:
        if not settings.data_dir:
            raise ConfigurationError("No data directory configured for the file backend.")
        repository: Repository = FileRepository(settings.data_dir)
    else:
        repository = SQLiteRepository(settings.database_url)

    if not repository.test_connection():
        repository.close()
        raise BackendConnectionError(f"Cannot connect to the {repository.describe()} backend.")
    try:
        repository.initialize(seed=seed)
    except Exception:
        repository.close()
        raise
    logger.info(f"Using {repository.describe()} backend")
    return repository


class RepositorySelector:
    """Holds the live backend and swaps it on request."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings
        self._repository: Optional[Repository] = None

    @property
    def repository(self) -> Repository:
        if self._repository is None:
            return self.open()
        return self._repository

    @property
    def kind(self) -> Optional[str]:
        return self._repository.kind if self._repository else None

    def open(self, kind: Optional[str] = None, seed: bool = False) -> Repository:
        self.close()
        self._repository = create_repository(kind or self.settings.data_source, self.settings, seed=seed)
        return self._repository

    def switch(self, kind: str, user_id: Optional[str] = None) -> Optional[User]:
        """Switch to another backend and re-resolve the session user in it.

        The new backend is built and checked before the old one is released,
        so a failed switch leaves the current backend in place. Raises
        SessionExpiredError when ``user_id`` does not exist in the new backend.
        """
        kind = normalize_kind(kind)
        if self._repository is not None and self._repository.kind == kind:
            logger.info(f"Already using the {kind} backend")
        else:
            new_repository = create_repository(kind, self.settings)
            previous, self._repository = self._repository, new_repository
            if previous is not None:
                previous.close()
            logger.info(f"Switched data source to {new_repository.describe()}")

        if user_id is None:
            return None
        user = self.repository.get_user(user_id)
        if user is None:
            raise SessionExpiredError("Your account does not exist in the new data source. Please log in again.")
        return user

    def close(self) -> None:
        if self._repository is not None:
            self._repository.close()
            self._repository = None


class LibraryManager:
    """Services plus the current session, rebuilt whenever the backend changes."""

    def __init__(self, settings: Optional[Settings] = None, selector: Optional[RepositorySelector] = None) -> None:
        self.settings = settings or default_settings
        self.selector = selector or RepositorySelector(self.settings)
        self.current_user_id: Optional[str] = None
        self.library: Optional[Library] = None
        self.users: Optional[UserManager] = None

    def start(self, kind: Optional[str] = None, seed: bool = False) -> "LibraryManager":
        self.selector.open(kind, seed=seed)
        self._build_services()
        if self.settings.create_default_admin and self.settings.admin_password:
            self.users.ensure_default_admin(self.settings.admin_username, self.settings.admin_password)
        return self

    def _build_services(self) -> None:
        repository = self.selector.repository
        self.library = Library(repository, loan_days=self.settings.loan_period_days)
        self.users = UserManager(repository)

    @property
    def repository(self) -> Repository:
        return self.selector.repository

    # ------------------------- Session ------------------------- #
    def login(self, username: str, password: str) -> Optional[User]:
        user = self.users.authenticate(username, password)
        self.current_user_id = user.user_id if user else None
        return user

    def logout(self) -> None:
        self.current_user_id = None

    @property
    def current_user(self) -> Optional[User]:
        """Re-read on every access; a user deleted meanwhile ends the session."""
        if self.current_user_id is None:
            return None
        user = self.users.get_user(self.current_user_id)
        if user is None:
            self.current_user_id = None
        return user

    def require_user(self) -> User:
        user = self.current_user
        if user is None:
            raise NotFoundError("Not logged in.")
        return user

    def require_admin(self) -> User:
        user = self.require_user()
        if not user.is_admin:
            raise InvalidStateError("Administrator rights required.")
        return user

    def switch_backend(self, kind: str) -> Optional[User]:
        """Switch data source. Returns the restored user, or None when the session was dropped."""
        try:
            user = self.selector.switch(kind, self.current_user_id)
        except SessionExpiredError as e:
            logger.warning(str(e))
            self.current_user_id = None
            user = None
        self._build_services()
        return user

    def close(self) -> None:
        self.selector.close()
