from typing import List

from library_app.models import Book

# (title, author, publication year, ISBN)
SAMPLE_BOOKS = (
    ("1984", "George Orwell", 1949, "978-0-452-28423-4"),
    ("To Kill a Mockingbird", "Harper Lee", 1960, "978-0-06-112008-4"),
    ("The Great Gatsby", "F. Scott Fitzgerald", 1925, "978-0-7432-7356-5"),
    ("Pride and Prejudice", "Jane Austen", 1813, "978-0-14-143951-8"),
    ("The Hobbit", "J.R.R. Tolkien", 1937, "978-0-547-92822-7"),
    ("Brave New World", "Aldous Huxley", 1932, "978-0-06-085052-4"),
    ("The Catcher in the Rye", "J.D. Salinger", 1951, "978-0-316-76948-0"),
    ("Crime and Punishment", "Fyodor Dostoevsky", 1866, "978-0-14-044913-6"),
    ("Sapiens", "Yuval Noah Harari", 2011, "978-0-06-231609-7"),
    ("Ulysses", "James Joyce", 1922, "978-0-19-953567-5"),
)


def sample_books() -> List[Book]:
    """Fresh Book instances for the sample catalog (new identities every call)."""
    return [Book(title, author, year, isbn) for title, author, year, isbn in SAMPLE_BOOKS]
