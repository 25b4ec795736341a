from __future__ import annotations

from database import DEFAULT_CATEGORY


class Book:
    """A catalog entry and its stock counts."""

    def __init__(self, book_id: str, title: str, author: str, isbn: str = "", quantity: int = 1,
                 available_copies: int | None = None, category: str | None = None,
                 description: str | None = None, cover_image: str | None = None,
                 created_at: str | None = None) -> None:
        self.book_id = book_id.strip()
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = (isbn or "").strip()
        self.quantity = int(quantity)
        # A new book starts with every copy on the shelf
        self.available_copies = self.quantity if available_copies is None else int(available_copies)
        self.category = (category or "").strip() or DEFAULT_CATEGORY
        self.description = description or ""
        self.cover_image = cover_image or ""
        self.created_at = created_at

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.book_id}: {self.title} by {self.author} ({self.available_copies}/{self.quantity})"

    def to_dict(self) -> dict:
        return {
            "bookId": self.book_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "category": self.category,
            "quantity": self.quantity,
            "availableCopies": self.available_copies,
            "isAvailable": self.is_available,
            "description": self.description,
            "coverImage": self.cover_image,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_row(row) -> "Book":
        """Build a Book from a ``books`` table row."""
        return Book(
            book_id=row["book_id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            quantity=row["quantity"],
            available_copies=row["available_copies"],
            category=row["category"],
            description=row["description"],
            cover_image=row["cover_image"],
            created_at=row["created_at"],
        )

    @staticmethod
    def from_dict(data: dict) -> "Book":
        """Build a Book from API/seed data, accepting camelCase or snake_case keys."""
        def pick(*keys, default=None):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return default

        return Book(
            book_id=str(pick("bookId", "book_id", default="")),
            title=str(pick("title", default="")),
            author=str(pick("author", default="")),
            isbn=str(pick("isbn", default="")),
            quantity=pick("quantity", default=1),
            available_copies=pick("availableCopies", "available_copies"),
            category=pick("category"),
            description=pick("description"),
            cover_image=pick("coverImage", "cover_image"),
            created_at=pick("createdAt", "created_at"),
        )
