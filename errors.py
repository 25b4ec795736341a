"""Typed errors raised by the catalog, ledger, loan and access layers.

Every error carries the HTTP status the API boundary should answer with and a
message that is safe to show to a client.
"""

from __future__ import annotations

from typing import Any, Dict


class LibraryError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


class ValidationError(LibraryError):
    status_code = 400
    default_message = "Invalid input"


class DuplicateId(LibraryError):
    status_code = 409
    default_message = "Book with this ID already exists"


class DuplicateIdentity(LibraryError):
    status_code = 409
    default_message = "Username or email already exists"


class NotFound(LibraryError):
    status_code = 404
    default_message = "Not found"


class ConflictError(LibraryError):
    status_code = 409
    default_message = "Conflict"


class BookUnavailable(LibraryError):
    status_code = 400
    default_message = "No copies available for loan"


class NoActiveLoan(LibraryError):
    status_code = 400
    default_message = "No active loan for this book"


class AlreadyBorrowed(LibraryError):
    status_code = 400
    default_message = "You already have this book on loan"


class LoanLimitExceeded(LibraryError):
    status_code = 400

    def __init__(self, current_loans: int, max_loans: int) -> None:
        self.current_loans = current_loans
        self.max_loans = max_loans
        super().__init__(f"Loan limit reached ({current_loans}/{max_loans} active loans)")

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "currentLoans": self.current_loans, "maxLoans": self.max_loans}


class InvalidCredentials(LibraryError):
    status_code = 401
    default_message = "Invalid username or password"


class NotAuthenticated(LibraryError):
    status_code = 401
    default_message = "Authentication required"


class AccountBlocked(LibraryError):
    status_code = 403
    default_message = "Account blocked. Contact the administrator."


class AccessDenied(LibraryError):
    status_code = 403
    default_message = "Not allowed"


class StorageUnavailable(LibraryError):
    """Storage did not answer in time; the caller may retry."""

    status_code = 503
    default_message = "Storage temporarily unavailable, please retry"
