import logging
import re
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import database
from book import Book
from database import connection, initialize_database, transaction, utcnow_iso
from errors import DuplicateId, LibraryError, NotFound, ValidationError
from utils.validators import BookValidator, TextValidator

logger = logging.getLogger(__name__)

BOOK_COLUMNS = (
    "book_id, title, author, isbn, category, quantity, available_copies, "
    "description, cover_image, created_at"
)

# Patch keys accepted by update_book, mapped to their column
EDITABLE_FIELDS = {
    "title": "title",
    "author": "author",
    "isbn": "isbn",
    "category": "category",
    "description": "description",
    "cover_image": "cover_image",
}


def natural_key(value: str) -> List[Any]:
    """Sort key comparing digit runs numerically, so "B2" sorts before "B10"."""
    parts = re.split(r"(\d+)", value or "")
    return [int(part) if i % 2 else part.casefold() for i, part in enumerate(parts)]


class Library:
    """Catalog store: owns Book records and their stock counts.

    Every public method opens its own connection unless ``conn`` is passed,
    in which case it runs inside the caller's transaction.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Allow tests (and callers) to point the module-level helpers in
        # database.py at another file before the schema is created.
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database()

    @contextmanager
    def _write_scope(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with transaction() as own:
                yield own

    @contextmanager
    def _read_scope(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with connection() as own:
                yield own

    # ------------------------- Core operations ------------------------- #
    def add_book(self, book: Book, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Insert a new book. Raises DuplicateId if the bookId is taken."""
        self._validate_new(book)
        with self._write_scope(conn) as c:
            if self._fetch(c, book.book_id) is not None:
                raise DuplicateId(f"Book with ID {book.book_id} already exists")
            book.created_at = book.created_at or utcnow_iso()
            try:
                c.execute(
                    f"INSERT INTO books ({BOOK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        book.book_id, book.title, book.author, book.isbn, book.category,
                        book.quantity, book.available_copies, book.description,
                        book.cover_image, book.created_at,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateId(f"Book with ID {book.book_id} already exists") from e
        logger.info(f"Book added: {book.book_id} ({book.quantity} copies)")
        return book

    def update_book(self, book_id: str, patch: Dict[str, Any],
                    conn: Optional[sqlite3.Connection] = None) -> Book:
        """Apply a partial update and return the stored book.

        Blank text values leave the field unchanged. A new ``quantity`` shifts
        ``available_copies`` by the same delta, never below zero.
        """
        with self._write_scope(conn) as c:
            current = self._fetch(c, book_id)
            if current is None:
                raise NotFound(f"Book {book_id} not found")

            updates: Dict[str, Any] = {}
            for key, column in EDITABLE_FIELDS.items():
                value = patch.get(key)
                if value is None:
                    continue
                value = str(value).strip()
                if key in ("title", "author", "description") and value:
                    value = TextValidator.sanitize_text(value)
                    if not value and key != "description":
                        raise ValidationError(f"{key} is required")
                if value or key in ("description", "cover_image"):
                    updates[column] = value

            if patch.get("quantity") is not None:
                quantity = BookValidator.parse_quantity(patch["quantity"])
                delta = quantity - current.quantity
                updates["quantity"] = quantity
                updates["available_copies"] = max(0, current.available_copies + delta)

            if updates:
                set_clause = ", ".join(f"{column} = ?" for column in updates)
                c.execute(
                    f"UPDATE books SET {set_clause} WHERE book_id = ?",
                    list(updates.values()) + [book_id],
                )
            updated = self._fetch(c, book_id)
        logger.info(f"Book updated: {book_id} fields={sorted(updates)}")
        return updated

    def remove_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Delete a book and return the removed record. Raises NotFound if absent."""
        with self._write_scope(conn) as c:
            book = self._fetch(c, book_id)
            if book is None:
                raise NotFound(f"Book {book_id} not found")
            c.execute("DELETE FROM books WHERE book_id = ?", (book_id,))
        logger.info(f"Book removed: {book_id}")
        return book

    def find_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self._read_scope(conn) as c:
            return self._fetch(c, book_id)

    def get_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Book:
        book = self.find_book(book_id, conn=conn)
        if book is None:
            raise NotFound(f"Book {book_id} not found")
        return book

    def list_books(self, category: Optional[str] = None) -> List[Book]:
        """All books ordered by bookId, comparing numeric parts as numbers."""
        with connection() as c:
            if category:
                rows = c.execute(
                    f"SELECT {BOOK_COLUMNS} FROM books WHERE category = ? COLLATE NOCASE", (category,)
                ).fetchall()
            else:
                rows = c.execute(f"SELECT {BOOK_COLUMNS} FROM books").fetchall()
        books = [Book.from_row(row) for row in rows]
        return sorted(books, key=lambda b: natural_key(b.book_id))

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title, author or ISBN."""
        term = f"%{query.strip()}%"
        with connection() as c:
            rows = c.execute(
                f"SELECT {BOOK_COLUMNS} FROM books WHERE title LIKE ? OR author LIKE ? OR isbn LIKE ?",
                (term, term, term),
            ).fetchall()
        return sorted((Book.from_row(row) for row in rows), key=lambda b: natural_key(b.book_id))

    def list_categories(self) -> List[Dict[str, Any]]:
        with connection() as c:
            rows = c.execute(
                "SELECT category, COUNT(*) AS books FROM books GROUP BY category ORDER BY category"
            ).fetchall()
        return [{"category": row["category"], "books": row["books"]} for row in rows]

    def get_statistics(self) -> Dict[str, Any]:
        with connection() as c:
            row = c.execute(
                "SELECT COUNT(*) AS titles, COALESCE(SUM(quantity), 0) AS copies, "
                "COALESCE(SUM(available_copies), 0) AS available, COUNT(DISTINCT category) AS categories "
                "FROM books"
            ).fetchone()
        return {
            "total_books": row["titles"],
            "total_copies": row["copies"],
            "available_copies": row["available"],
            "on_loan": row["copies"] - row["available"],
            "categories": row["categories"],
        }

    def import_books(self, records: Iterable[Dict[str, Any]]) -> int:
        """Add every record whose bookId is not yet in the catalog. Returns the count added."""
        added = 0
        for record in records:
            try:
                book = Book.from_dict(record)
                self.add_book(book)
                added += 1
            except DuplicateId:
                logger.info(f"Skipping existing book {record.get('bookId')}")
            except (LibraryError, ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid book record {record!r}: {e}")
        return added

    # ------------------------- Stock changes ------------------------- #
    @staticmethod
    def take_copy(conn: sqlite3.Connection, book_id: str) -> bool:
        """Decrement availability only if a copy is on the shelf. False if none was."""
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies - 1 "
            "WHERE book_id = ? AND available_copies > 0",
            (book_id,),
        )
        return cursor.rowcount == 1

    @staticmethod
    def put_back_copy(conn: sqlite3.Connection, book_id: str) -> None:
        """Increment availability, capped at the owned quantity."""
        conn.execute(
            "UPDATE books SET available_copies = MIN(quantity, available_copies + 1) WHERE book_id = ?",
            (book_id,),
        )

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _fetch(conn: sqlite3.Connection, book_id: str) -> Optional[Book]:
        row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE book_id = ?", (book_id,)).fetchone()
        return Book.from_row(row) if row else None

    @staticmethod
    def _validate_new(book: Book) -> None:
        book.title = TextValidator.sanitize_text(book.title)
        book.author = TextValidator.sanitize_text(book.author)
        if not book.book_id:
            raise ValidationError("bookId is required")
        if not book.title:
            raise ValidationError("title is required")
        if not book.author:
            raise ValidationError("author is required")
        if book.quantity < 0:
            raise ValidationError("quantity cannot be negative")
        if not 0 <= book.available_copies <= book.quantity:
            raise ValidationError("availableCopies must be between 0 and quantity")

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
