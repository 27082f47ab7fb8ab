class LibraryError(Exception):
    """Base class for every failure raised by the storage and workflow layers."""


class NotFoundError(LibraryError):
    pass


class DuplicateKeyError(LibraryError):
    pass


class DuplicateUsernameError(DuplicateKeyError):
    pass


class InvalidStateError(LibraryError):
    pass


class ConfigurationError(LibraryError):
    pass


class BackendConnectionError(LibraryError):
    """The selected backend failed its liveness check."""


class StorageIOError(LibraryError):
    """Reading or writing the underlying store failed."""


class SessionExpiredError(LibraryError):
    """The logged-in user no longer exists in the active backend."""
