"""Storage backends behind the Repository contract:
- file_backend: JSON collections rewritten in full on every mutation
- sqlite_backend: relational tables with schema-enforced uniqueness
"""

from library_app.storage.base import Repository
from library_app.storage.file_backend import FileRepository
from library_app.storage.sqlite_backend import SQLiteRepository

__all__ = ["Repository", "FileRepository", "SQLiteRepository"]
