"""Loan lifecycle: ``active -> returned``. A returned loan never reopens."""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from lendingdesk import fines, inventory
from lendingdesk.config import settings
from lendingdesk.errors import (
    AlreadyBorrowed,
    ExtensionLimitReached,
    LoanAlreadyReturned,
    LoanNotFound,
    NoActiveLoanForBook,
    NotAReader,
    PermissionDenied,
    UnpaidFineBlocksExtension,
    UnpaidFinesBlock,
    UserInactive,
    UserNotFound,
    ValidationError,
)
from lendingdesk.models import AuthContext, Loan, LoanStatus, LoanView, Role, User, to_db

logger = logging.getLogger(__name__)

MAX_EXTENSIONS = settings.max_extensions
EXTENSION_DAYS = settings.extension_days
LIST_LIMIT = 500

_VIEW_SELECT = """
    SELECT l.*, c.book_id, c.inventory_label, b.title, b.authors,
           COALESCE((SELECT SUM(f.amount) FROM fines f
                      WHERE f.loan_id = l.id AND f.status = 'accrued'), 0) AS fine
    FROM loans l
    JOIN copies c ON c.id = l.copy_id
    JOIN books b ON b.id = c.book_id
"""


@dataclass
class LoanReceipt:
    loan_id: int
    user_id: int
    book_id: int
    copy_id: int
    title: str
    borrowed_at: datetime
    due_at: datetime

    def to_dict(self) -> dict:
        return {
            "loan_id": self.loan_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "copy_id": self.copy_id,
            "title": self.title,
            "borrowed_at": to_db(self.borrowed_at),
            "due_date": to_db(self.due_at),
        }


@dataclass
class ReturnReceipt:
    loan_id: int
    user_id: int
    book_id: int
    title: str
    returned_at: datetime
    had_fine: bool
    fine_amount: int

    def to_dict(self) -> dict:
        return {
            "loan_id": self.loan_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "title": self.title,
            "returned_at": to_db(self.returned_at),
            "had_fine": self.had_fine,
            "fine_amount": self.fine_amount,
        }


@dataclass
class ExtensionReceipt:
    loan_id: int
    user_id: int
    title: str
    new_due_at: datetime
    extensions_left: int

    def to_dict(self) -> dict:
        return {
            "loan_id": self.loan_id,
            "new_due_date": to_db(self.new_due_at),
            "extensions_left": self.extensions_left,
        }


def get_user(conn: sqlite3.Connection, user_id: int) -> User:
    row = conn.execute("SELECT id, name, email, role, active FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is None:
        raise UserNotFound(f"User {user_id} not found.")
    return User.from_row(row)


def _get_view_row(conn: sqlite3.Connection, loan_id: int) -> sqlite3.Row:
    row = conn.execute(_VIEW_SELECT + " WHERE l.id = ?", (loan_id,)).fetchone()
    if row is None:
        raise LoanNotFound(f"Loan {loan_id} not found.")
    return row


def get_loan(conn: sqlite3.Connection, loan_id: int) -> Loan:
    return Loan.from_row(_get_view_row(conn, loan_id))


def create_loan(
    conn: sqlite3.Connection,
    auth: AuthContext,
    user_id: int,
    *,
    book_id: Optional[int] = None,
    copy_id: Optional[int] = None,
    loan_period_days: Optional[int] = None,
    at: datetime,
) -> LoanReceipt:
    """Check eligibility, claim a copy and open an active loan."""
    if book_id is None and copy_id is None:
        raise ValidationError("Provide a book_id or a copy_id.")
    if loan_period_days is not None and loan_period_days <= 0:
        raise ValidationError("Loan period must be positive.")

    user = get_user(conn, user_id)
    if not user.active:
        raise UserInactive(f"User {user_id} is inactive.")

    self_service = auth.user_id == user.id
    if not self_service:
        if not auth.is_staff:
            raise PermissionDenied("Only staff can lend books to other users.")
        if user.role is not Role.READER:
            raise NotAReader(f"User {user_id} is not a reader.")

    count, owed = fines.unpaid_fines(conn, user.id)
    if count:
        raise UnpaidFinesBlock(f"The user has unpaid fines: {owed}.")

    if copy_id is not None:
        copy = inventory.get_copy(conn, copy_id)
        if book_id is not None and copy.book_id != book_id:
            raise ValidationError(f"Copy {copy_id} does not belong to book {book_id}.")
        book_id = copy.book_id
    if _active_loan_for_book(conn, user.id, book_id) is not None:
        raise AlreadyBorrowed(f"User {user.id} already has a copy of book {book_id} on loan.")

    if copy_id is not None:
        copy_id = inventory.reserve_copy(conn, copy_id).id
    else:
        copy_id = inventory.reserve_one_copy(conn, book_id)

    days = loan_period_days or (settings.self_service_loan_days if self_service else settings.staff_loan_days)
    due_at = at + timedelta(days=days)
    cur = conn.execute(
        """
        INSERT INTO loans (user_id, copy_id, borrowed_at, due_at, status, extensions)
        VALUES (?, ?, ?, ?, 'active', 0)
        """,
        (user.id, copy_id, to_db(at), to_db(due_at)),
    )
    book = inventory.get_book(conn, book_id)
    logger.info("Loan %s opened: user %s, copy %s, due %s", cur.lastrowid, user.id, copy_id, due_at)
    return LoanReceipt(
        loan_id=cur.lastrowid,
        user_id=user.id,
        book_id=book.id,
        copy_id=copy_id,
        title=book.title,
        borrowed_at=at,
        due_at=due_at,
    )


def close_loan(conn: sqlite3.Connection, auth: AuthContext, loan_id: int, at: datetime) -> ReturnReceipt:
    """Mark the loan returned, put the copy back and report any outstanding fine."""
    row = _get_view_row(conn, loan_id)
    loan = Loan.from_row(row)
    if not auth.is_staff and loan.user_id != auth.user_id:
        raise PermissionDenied("Only staff can return other users' loans.")
    if loan.status is LoanStatus.RETURNED:
        raise LoanAlreadyReturned(f"Loan {loan_id} was already returned.")

    cur = conn.execute(
        "UPDATE loans SET status = 'returned', returned_at = ? WHERE id = ? AND status = 'active'",
        (to_db(at), loan_id),
    )
    if cur.rowcount != 1:
        raise LoanAlreadyReturned(f"Loan {loan_id} was already returned.")
    inventory.release_copy(conn, loan.copy_id)

    fine = fines.accrued_fine_for_loan(conn, loan_id)
    logger.info("Loan %s returned (fine: %s)", loan_id, fine.amount if fine else 0)
    return ReturnReceipt(
        loan_id=loan.id,
        user_id=loan.user_id,
        book_id=row["book_id"],
        title=row["title"],
        returned_at=at,
        had_fine=fine is not None,
        fine_amount=fine.amount if fine else 0,
    )


def _active_loan_for_book(conn: sqlite3.Connection, user_id: int, book_id: int) -> Optional[int]:
    # create_loan allows one active loan per user and book
    row = conn.execute(
        """
        SELECT l.id FROM loans l JOIN copies c ON c.id = l.copy_id
        WHERE l.user_id = ? AND c.book_id = ? AND l.status = 'active'
        """,
        (user_id, book_id),
    ).fetchone()
    return row["id"] if row else None


def find_active_loan_for_book(conn: sqlite3.Connection, user_id: int, book_id: int) -> int:
    loan_id = _active_loan_for_book(conn, user_id, book_id)
    if loan_id is None:
        raise NoActiveLoanForBook(f"User {user_id} has no active loan for book {book_id}.")
    return loan_id


def extend_loan(conn: sqlite3.Connection, loan_id: int, requesting_user_id: int, at: datetime) -> ExtensionReceipt:
    row = _get_view_row(conn, loan_id)
    loan = Loan.from_row(row)
    if loan.user_id != requesting_user_id:
        raise LoanNotFound(f"Loan {loan_id} not found.")
    if loan.status is LoanStatus.RETURNED or loan.returned_at is not None:
        raise LoanAlreadyReturned(f"Loan {loan_id} was already returned.")
    if loan.extensions >= MAX_EXTENSIONS:
        raise ExtensionLimitReached(f"Maximum number of extensions ({MAX_EXTENSIONS}) reached.")
    if fines.accrued_fine_for_loan(conn, loan_id) is not None:
        raise UnpaidFineBlocksExtension("The loan has an unpaid fine.")

    new_due_at = max(loan.due_at, at) + timedelta(days=EXTENSION_DAYS)
    cur = conn.execute(
        """
        UPDATE loans SET due_at = ?, extensions = extensions + 1
        WHERE id = ? AND status = 'active' AND extensions < ?
        """,
        (to_db(new_due_at), loan_id, MAX_EXTENSIONS),
    )
    if cur.rowcount != 1:
        raise ExtensionLimitReached(f"Maximum number of extensions ({MAX_EXTENSIONS}) reached.")
    return ExtensionReceipt(
        loan_id=loan.id,
        user_id=loan.user_id,
        title=row["title"],
        new_due_at=new_due_at,
        extensions_left=MAX_EXTENSIONS - loan.extensions - 1,
    )


def list_user_loans(conn: sqlite3.Connection, user_id: int, at: datetime) -> List[LoanView]:
    rows = conn.execute(
        _VIEW_SELECT + " WHERE l.user_id = ? ORDER BY l.borrowed_at DESC, l.id DESC",
        (user_id,),
    ).fetchall()
    return [LoanView.from_row(r, at) for r in rows]


def list_loans(conn: sqlite3.Connection, status: Optional[str], at: datetime) -> List[LoanView]:
    """Staff view of all loans. ``status`` is ACTIVE, OVERDUE, RETURNED or None."""
    clauses, params = [], []
    flt = (status or "").upper()
    if flt == "ACTIVE":
        clauses.append("l.status = 'active' AND l.due_at >= ?")
        params.append(to_db(at))
    elif flt == "OVERDUE":
        clauses.append("l.status = 'active' AND l.due_at < ?")
        params.append(to_db(at))
    elif flt == "RETURNED":
        clauses.append("l.status = 'returned'")
    elif flt:
        raise ValidationError("Status must be one of ACTIVE, OVERDUE, RETURNED.")
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        _VIEW_SELECT + where + " ORDER BY l.borrowed_at DESC, l.id DESC LIMIT ?",
        (*params, LIST_LIMIT),
    ).fetchall()
    return [LoanView.from_row(r, at) for r in rows]
