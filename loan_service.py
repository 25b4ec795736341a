"""Borrow / return orchestration over the catalog and the loan ledger.

Per (user, book) pair the only cycle is Available -> Borrowed -> Available.
Each transition runs in one ``BEGIN IMMEDIATE`` transaction, so the
eligibility checks, the stock change and the ledger append are applied
together or not at all, and concurrent requests see each other's results.

History-only audit records are appended after the primary commit. They are
diagnostic: a failed audit write is logged and never undoes the mutation.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from access import AccessControl
from book import Book
from config import settings
from database import transaction
from errors import (
    AlreadyBorrowed,
    BookUnavailable,
    ConflictError,
    LibraryError,
    LoanLimitExceeded,
    NoActiveLoan,
)
from ledger import ActiveLoan, AuditRecord, LoanLedger, LoanStatus
from library import Library

logger = logging.getLogger(__name__)


class LoanService:

    def __init__(self, library: Library, ledger: LoanLedger, access: AccessControl,
                 max_active_loans: Optional[int] = None) -> None:
        self.library = library
        self.ledger = ledger
        self.access = access
        self.max_active_loans = max_active_loans if max_active_loans is not None else settings.max_active_loans

    # ------------------------- Loans ------------------------- #
    def borrow(self, username: str, book_id: str) -> Book:
        """Check a copy out to ``username`` and return the updated book.

        Raises AccountBlocked, NotFound, LoanLimitExceeded, AlreadyBorrowed or
        BookUnavailable; on any of them nothing has been written.
        """
        user = self.access.require_active(username)
        with transaction() as conn:
            book = self.library.get_book(book_id, conn=conn)

            current = self.ledger.active_loan_count_for_user(user.username, conn=conn)
            if current >= self.max_active_loans:
                logger.warning(f"Loan limit reached for {user.username}: {current}/{self.max_active_loans}")
                raise LoanLimitExceeded(current, self.max_active_loans)

            if self.ledger.open_loan_for(user.username, book_id, conn=conn) is not None:
                raise AlreadyBorrowed()

            if not self.library.take_copy(conn, book_id):
                logger.warning(f"No copies of {book_id} left for {user.username}")
                raise BookUnavailable()

            self.ledger.open_loan(conn, user.username, book_id, book.title)
            book = self.library.get_book(book_id, conn=conn)

        logger.info(f"Loan opened: {user.username} -> {book_id} ({book.available_copies}/{book.quantity} left)")
        self._audit(user.username, book.book_id, book.title, LoanStatus.BORROWED)
        return book

    def return_book(self, username: str, book_id: str) -> Book:
        """Close the user's open loan for ``book_id`` and put the copy back.

        Raises NotFound if the book is gone and NoActiveLoan if the user holds
        no copy; a second return of the same loan therefore fails.
        """
        name = (username or "").strip().lower()
        with transaction() as conn:
            self.library.get_book(book_id, conn=conn)
            # several open loans for one pair cannot coexist, but the newest is closed if they do
            loan = self.ledger.open_loan_for(name, book_id, conn=conn)
            if loan is None:
                raise NoActiveLoan()
            self.ledger.close_loan(conn, loan)
            self.library.put_back_copy(conn, book_id)
            book = self.library.get_book(book_id, conn=conn)

        logger.info(f"Loan closed: {name} <- {book_id} ({book.available_copies}/{book.quantity} available)")
        self._audit(name, book.book_id, book.title, LoanStatus.RETURNED)
        return book

    # ------------------------- Catalog administration ------------------------- #
    def create_book(self, book: Book, actor: str) -> Book:
        created = self.library.add_book(book)
        self._audit(actor, created.book_id, created.title, LoanStatus.CREATED)
        return created

    def edit_book(self, book_id: str, patch: Dict[str, Any], actor: str) -> Book:
        updated = self.library.update_book(book_id, patch)
        self._audit(actor, updated.book_id, updated.title, LoanStatus.EDITED)
        return updated

    def delete_book(self, book_id: str, actor: str) -> Book:
        """Remove a book; refused with ConflictError while copies are on loan."""
        with transaction() as conn:
            self.library.get_book(book_id, conn=conn)
            open_loans = self.ledger.open_loan_count_for_book(book_id, conn=conn)
            if open_loans:
                raise ConflictError(f"Book {book_id} has {open_loans} active loan(s) and cannot be deleted")
            removed = self.library.remove_book(book_id, conn=conn)
        self._audit(actor, removed.book_id, removed.title, LoanStatus.DELETED)
        return removed

    # ------------------------- Queries ------------------------- #
    def active_loans(self, username: str) -> List[ActiveLoan]:
        return self.ledger.open_loans_for_user(username)

    def user_history(self, username: str) -> List[AuditRecord]:
        return self.ledger.history_for_user(username)

    def full_history(self) -> List[AuditRecord]:
        return self.ledger.full_history()

    # ------------------------- Utilities ------------------------- #
    def _audit(self, username: str, book_id: str, book_title: str, status: LoanStatus) -> None:
        try:
            self.ledger.record_audit(username, book_id, book_title, status)
        except (LibraryError, sqlite3.Error):
            logger.exception(f"Could not write audit record {status.value} for {book_id} by {username}")
