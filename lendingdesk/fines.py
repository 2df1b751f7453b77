"""Overdue fine accrual and settlement.

A fine is a snapshot: it is created once, the first time an overdue loan is
observed without an accrued fine, and its amount is frozen at that moment.
Later runs neither add a second fine nor grow the first one.
"""

import logging
import math
import sqlite3
from datetime import datetime
from typing import List, Optional

from lendingdesk.config import settings
from lendingdesk.errors import FineAlreadySettled, FineNotFound, ValidationError
from lendingdesk.models import Fine, FineStatus, Loan, to_db

logger = logging.getLogger(__name__)

DAILY_RATE = settings.fine_daily_rate
OVERDUE_REASON = "Overdue return"

_FINE_COLUMNS = "id, loan_id, amount, status, reason, accrued_at, settled_at"


def overdue_days(due_at: datetime, at: datetime) -> int:
    """Whole days past due, counting any started day."""
    seconds = (at - due_at).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def accrued_fine_for_loan(conn: sqlite3.Connection, loan_id: int) -> Optional[Fine]:
    row = conn.execute(
        f"SELECT {_FINE_COLUMNS} FROM fines WHERE loan_id = ? AND status = 'accrued'",
        (loan_id,),
    ).fetchone()
    return Fine.from_row(row) if row else None


def unpaid_fines(conn: sqlite3.Connection, user_id: int) -> tuple[int, int]:
    """Number and total amount of the user's accrued fines."""
    row = conn.execute(
        """
        SELECT COUNT(*) AS n, COALESCE(SUM(f.amount), 0) AS total
        FROM fines f JOIN loans l ON l.id = f.loan_id
        WHERE l.user_id = ? AND f.status = 'accrued'
        """,
        (user_id,),
    ).fetchone()
    return row["n"], row["total"]


def accrue_for_loan(conn: sqlite3.Connection, loan: Loan, at: datetime) -> Optional[Fine]:
    """Create the fine for one overdue loan, unless it already has one."""
    if not loan.is_overdue(at):
        return None
    if accrued_fine_for_loan(conn, loan.id) is not None:
        return None

    amount = overdue_days(loan.due_at, at) * DAILY_RATE
    # The partial unique index on (loan_id) WHERE status = 'accrued' makes this a no-op on a race
    cur = conn.execute(
        """
        INSERT OR IGNORE INTO fines (loan_id, amount, status, reason, accrued_at)
        VALUES (?, ?, 'accrued', ?, ?)
        """,
        (loan.id, amount, OVERDUE_REASON, to_db(at)),
    )
    if cur.rowcount != 1:
        return None
    logger.info("Accrued fine of %s on loan %s", amount, loan.id)
    return Fine(
        id=cur.lastrowid,
        loan_id=loan.id,
        amount=amount,
        status=FineStatus.ACCRUED,
        accrued_at=at,
        reason=OVERDUE_REASON,
    )


def accrue_for_loan_id(conn: sqlite3.Connection, loan_id: int, at: datetime) -> Optional[Fine]:
    row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
    if row is None:
        return None
    return accrue_for_loan(conn, Loan.from_row(row), at)


def reconcile_overdue_fines(conn: sqlite3.Connection, user_id: int, at: datetime) -> List[Fine]:
    """Accrue fines for every overdue, unreturned loan of the user. Returns the new fines."""
    rows = conn.execute(
        """
        SELECT * FROM loans
        WHERE user_id = ? AND status = 'active' AND returned_at IS NULL AND due_at < ?
        """,
        (user_id, to_db(at)),
    ).fetchall()
    created = []
    for row in rows:
        fine = accrue_for_loan(conn, Loan.from_row(row), at)
        if fine:
            created.append(fine)
    return created


def get_fine(conn: sqlite3.Connection, fine_id: int) -> Fine:
    row = conn.execute(f"SELECT {_FINE_COLUMNS} FROM fines WHERE id = ?", (fine_id,)).fetchone()
    if row is None:
        raise FineNotFound(f"Fine {fine_id} not found.")
    return Fine.from_row(row)


def settle_fine(conn: sqlite3.Connection, fine_id: int, status: FineStatus, at: datetime) -> tuple[Fine, Fine]:
    """Accrued -> Paid or Cancelled. Settled fines are final."""
    if status is FineStatus.ACCRUED:
        raise ValidationError("A fine can only be settled as paid or cancelled.")
    before = get_fine(conn, fine_id)
    cur = conn.execute(
        "UPDATE fines SET status = ?, settled_at = ? WHERE id = ? AND status = 'accrued'",
        (status.value, to_db(at), fine_id),
    )
    if cur.rowcount != 1:
        raise FineAlreadySettled(f"Fine {fine_id} is already {before.status.value}.")
    return before, get_fine(conn, fine_id)


def list_fines(
    conn: sqlite3.Connection, user_id: Optional[int] = None, status: Optional[FineStatus] = None
) -> List[dict]:
    clauses, params = [], []
    if user_id is not None:
        clauses.append("l.user_id = ?")
        params.append(user_id)
    if status is not None:
        clauses.append("f.status = ?")
        params.append(status.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"""
        SELECT f.id, f.loan_id, f.amount, f.status, f.reason, f.accrued_at, f.settled_at,
               l.user_id, b.id AS book_id, b.title
        FROM fines f
        JOIN loans l ON l.id = f.loan_id
        JOIN copies c ON c.id = l.copy_id
        JOIN books b ON b.id = c.book_id
        {where}
        ORDER BY f.accrued_at DESC, f.id DESC
        """,
        params,
    ).fetchall()
    return [
        {**Fine.from_row(r).to_dict(), "user_id": r["user_id"], "book_id": r["book_id"], "title": r["title"]}
        for r in rows
    ]
