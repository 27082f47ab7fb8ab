import logging
from typing import List, Optional

from library_app.errors import DuplicateUsernameError, LibraryError, NotFoundError, StorageIOError
from library_app.models import User, UserRole
from library_app.security import hash_password, verify_password
from library_app.storage.base import Repository

logger = logging.getLogger(__name__)


class UserManager:
    """Registration, authentication and account maintenance."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    def _report(self, action: str, error: LibraryError) -> None:
        if isinstance(error, StorageIOError):
            logger.error(f"{action} failed due to a storage error: {error}")
        else:
            logger.warning(f"{action} rejected: {error}")

    def authenticate(self, username: str, password: str) -> Optional[User]:
        """Return the user when the password matches, otherwise None."""
        try:
            user = self.repository.get_user_by_username(username)
        except StorageIOError as e:
            self._report(f"Login for {username}", e)
            return None
        if user is not None and verify_password(password, user.password_hash):
            return user
        logger.info(f"Failed login attempt for {username}")
        return None

    def register(self, username: str, password: str, role: UserRole = UserRole.REGULAR_USER) -> bool:
        if not username or not username.strip() or not password:
            logger.warning("Registration rejected: username and password are required")
            return False
        username = username.strip()
        try:
            with self.repository.transaction():
                if self.repository.get_user_by_username(username) is not None:
                    raise DuplicateUsernameError(f"Username {username} is already taken.")
                self.repository.add_user(User(username, hash_password(password), role))
        except LibraryError as e:
            self._report(f"Registration of {username}", e)
            return False
        logger.info(f"Registered {role.value} account {username}")
        return True

    def get_user(self, user_id: str) -> Optional[User]:
        return self.repository.get_user(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.repository.get_user_by_username(username)

    def get_all_users(self) -> List[User]:
        return self.repository.load_users()

    def get_users_by_role(self, role: UserRole) -> List[User]:
        return [user for user in self.repository.load_users() if user.role == role]

    def update_user(self, user: User) -> bool:
        try:
            self.repository.update_user(user)
            return True
        except LibraryError as e:
            self._report(f"Update of user {user.user_id}", e)
            return False

    def delete_user(self, user_id: str) -> bool:
        """Delete an account; refused while the user still has books on loan."""
        try:
            with self.repository.transaction():
                self.repository.delete_user(user_id)
            return True
        except LibraryError as e:
            self._report(f"Deletion of user {user_id}", e)
            return False

    def change_password(self, user_id: str, old_password: str, new_password: str) -> bool:
        if not new_password:
            return False
        try:
            with self.repository.transaction():
                user = self.repository.get_user(user_id)
                if user is None:
                    raise NotFoundError(f"User {user_id} not found.")
                if not verify_password(old_password, user.password_hash):
                    logger.warning(f"Password change for {user.username} rejected: wrong password")
                    return False
                user.password_hash = hash_password(new_password)
                self.repository.update_user(user)
            return True
        except LibraryError as e:
            self._report(f"Password change for {user_id}", e)
            return False

    def ensure_default_admin(self, username: str, password: str) -> bool:
        """Create the bootstrap admin account when no users exist yet."""
        if self.repository.load_users():
            return False
        created = self.register(username, password, UserRole.ADMIN)
        if created:
            logger.warning(f"Created default admin account '{username}'; change its password")
        return created
