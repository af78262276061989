from __future__ import annotations


class Book:
    """A catalogue entry together with its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, publication_year: int | None = None,
                 total_copies: int = 1, available_copies: int | None = None,
                 book_id: int | None = None) -> None:
        self.book_id = book_id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.publication_year = publication_year
        self.total_copies = total_copies
        # A new book starts with every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return (f"{self.title} by {self.author} (ISBN: {self.isbn}) "
                f"[{self.available_copies}/{self.total_copies} available]")

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publication_year": self.publication_year,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            book_id=data.get("book_id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            publication_year=data.get("publication_year"),
            total_copies=int(data.get("total_copies", 1)),
            available_copies=data.get("available_copies"),
        )
