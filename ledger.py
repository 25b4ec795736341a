"""Loan ledger: the append-style log of loans, returns and catalog actions.

One table holds two kinds of entry, modelled as a tagged variant:

* ``ActiveLoan`` rows track who currently holds which copy. They are the only
  rows that count towards availability and loan limits, and the only rows
  ever mutated (once, when the copy comes back).
* ``AuditRecord`` rows are history-only: a diagnostic trail of every borrow,
  return and catalog change. They are never read to decide state.

``book_title`` is the title at the time of the event, kept so history stays
readable after the book is renamed or deleted.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Iterator, List, Optional, Union

from config import settings
from database import connection, parse_timestamp, transaction, utcnow_iso

logger = logging.getLogger(__name__)

EVENT_COLUMNS = "id, username, book_id, book_title, status, occurred_at, returned_at, is_history_only"


class LoanStatus(str, Enum):
    BORROWED = "Borrowed"
    RETURNED = "Returned"
    CREATED = "Created"
    EDITED = "Edited"
    DELETED = "Deleted"


@dataclass
class LedgerEntry:
    id: int
    username: str
    book_id: str
    book_title: str
    status: LoanStatus
    occurred_at: str
    returned_at: Optional[str] = None

    kind: ClassVar[str] = ""
    is_history_only: ClassVar[bool] = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "username": self.username,
            "bookId": self.book_id,
            "bookTitle": self.book_title,
            "status": self.status.value,
            "occurredAt": self.occurred_at,
            "returnedAt": self.returned_at,
            "isHistoryOnly": self.is_history_only,
        }


@dataclass
class ActiveLoan(LedgerEntry):
    """A copy checked out to a user; open until ``returned_at`` is set."""

    kind: ClassVar[str] = "loan"
    is_history_only: ClassVar[bool] = False

    @property
    def is_open(self) -> bool:
        return self.returned_at is None and self.status == LoanStatus.BORROWED

    def due_at(self, loan_period_days: Optional[int] = None) -> datetime:
        days = settings.loan_period_days if loan_period_days is None else loan_period_days
        return parse_timestamp(self.occurred_at) + timedelta(days=days)

    def is_overdue(self, now: Optional[datetime] = None, loan_period_days: Optional[int] = None) -> bool:
        """Overdue is informational only; it never blocks a borrow or return."""
        if not self.is_open:
            return False
        now = now or datetime.now(timezone.utc)
        return self.due_at(loan_period_days) < now

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["dueAt"] = self.due_at().isoformat()
        data["isOverdue"] = self.is_overdue()
        return data


@dataclass
class AuditRecord(LedgerEntry):
    """History-only entry describing one action."""

    kind: ClassVar[str] = "audit"
    is_history_only: ClassVar[bool] = True


LedgerEntryType = Union[ActiveLoan, AuditRecord]


def entry_from_row(row) -> LedgerEntryType:
    cls = AuditRecord if row["is_history_only"] else ActiveLoan
    return cls(
        id=row["id"],
        username=row["username"],
        book_id=row["book_id"],
        book_title=row["book_title"],
        status=LoanStatus(row["status"]),
        occurred_at=row["occurred_at"],
        returned_at=row["returned_at"],
    )


def _norm(username: str) -> str:
    return (username or "").strip().lower()


class LoanLedger:
    """Append and query ledger entries.

    Queries are single SELECT statements, so each one sees a consistent
    snapshot: no entry is ever counted as both open and closed.
    """

    @contextmanager
    def _read_scope(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with connection() as own:
                yield own

    # ------------------------- Appends ------------------------- #
    def open_loan(self, conn: sqlite3.Connection, username: str, book_id: str, book_title: str) -> ActiveLoan:
        """Append an open loan. Must run inside the caller's transaction."""
        occurred_at = utcnow_iso()
        cursor = conn.execute(
            "INSERT INTO loan_events (username, book_id, book_title, status, occurred_at, returned_at, is_history_only) "
            "VALUES (?, ?, ?, ?, ?, NULL, 0)",
            (_norm(username), book_id, book_title, LoanStatus.BORROWED.value, occurred_at),
        )
        return ActiveLoan(
            id=cursor.lastrowid,
            username=_norm(username),
            book_id=book_id,
            book_title=book_title,
            status=LoanStatus.BORROWED,
            occurred_at=occurred_at,
        )

    def close_loan(self, conn: sqlite3.Connection, loan: ActiveLoan) -> ActiveLoan:
        """Mark an open loan returned. Must run inside the caller's transaction."""
        returned_at = utcnow_iso()
        conn.execute(
            "UPDATE loan_events SET status = ?, returned_at = ? "
            "WHERE id = ? AND is_history_only = 0 AND returned_at IS NULL",
            (LoanStatus.RETURNED.value, returned_at, loan.id),
        )
        loan.status = LoanStatus.RETURNED
        loan.returned_at = returned_at
        return loan

    def record_audit(self, username: str, book_id: str, book_title: str, status: LoanStatus,
                     conn: Optional[sqlite3.Connection] = None) -> AuditRecord:
        """Append a history-only entry in its own transaction unless ``conn`` is given."""
        occurred_at = utcnow_iso()
        params = (_norm(username), book_id, book_title, status.value, occurred_at)
        sql = (
            "INSERT INTO loan_events (username, book_id, book_title, status, occurred_at, returned_at, is_history_only) "
            "VALUES (?, ?, ?, ?, ?, NULL, 1)"
        )
        if conn is not None:
            cursor = conn.execute(sql, params)
        else:
            with transaction() as c:
                cursor = c.execute(sql, params)
        return AuditRecord(
            id=cursor.lastrowid,
            username=_norm(username),
            book_id=book_id,
            book_title=book_title,
            status=status,
            occurred_at=occurred_at,
        )

    # ------------------------- Queries ------------------------- #
    def active_loan_count_for_user(self, username: str, conn: Optional[sqlite3.Connection] = None) -> int:
        with self._read_scope(conn) as c:
            return c.execute(
                "SELECT COUNT(*) FROM loan_events "
                "WHERE username = ? AND is_history_only = 0 AND returned_at IS NULL AND status = ?",
                (_norm(username), LoanStatus.BORROWED.value),
            ).fetchone()[0]

    def open_loan_for(self, username: str, book_id: str,
                      conn: Optional[sqlite3.Connection] = None) -> Optional[ActiveLoan]:
        """Most recent open loan for the pair, or None."""
        with self._read_scope(conn) as c:
            row = c.execute(
                f"SELECT {EVENT_COLUMNS} FROM loan_events "
                "WHERE username = ? AND book_id = ? AND is_history_only = 0 "
                "AND returned_at IS NULL AND status = ? "
                "ORDER BY occurred_at DESC, id DESC LIMIT 1",
                (_norm(username), book_id, LoanStatus.BORROWED.value),
            ).fetchone()
        return entry_from_row(row) if row else None

    def open_loans_for_user(self, username: str) -> List[ActiveLoan]:
        with connection() as c:
            rows = c.execute(
                f"SELECT {EVENT_COLUMNS} FROM loan_events "
                "WHERE username = ? AND is_history_only = 0 AND returned_at IS NULL AND status = ? "
                "ORDER BY occurred_at DESC, id DESC",
                (_norm(username), LoanStatus.BORROWED.value),
            ).fetchall()
        return [entry_from_row(row) for row in rows]

    def open_loan_count_for_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        with self._read_scope(conn) as c:
            return c.execute(
                "SELECT COUNT(*) FROM loan_events "
                "WHERE book_id = ? AND is_history_only = 0 AND returned_at IS NULL AND status = ?",
                (book_id, LoanStatus.BORROWED.value),
            ).fetchone()[0]

    def history_for_user(self, username: str) -> List[AuditRecord]:
        """History-only entries for one user, newest first."""
        with connection() as c:
            rows = c.execute(
                f"SELECT {EVENT_COLUMNS} FROM loan_events WHERE username = ? AND is_history_only = 1 "
                "ORDER BY occurred_at DESC, id DESC",
                (_norm(username),),
            ).fetchall()
        return [entry_from_row(row) for row in rows]

    def full_history(self) -> List[AuditRecord]:
        """All history-only entries, newest first."""
        with connection() as c:
            rows = c.execute(
                f"SELECT {EVENT_COLUMNS} FROM loan_events WHERE is_history_only = 1 "
                "ORDER BY occurred_at DESC, id DESC"
            ).fetchall()
        return [entry_from_row(row) for row in rows]
