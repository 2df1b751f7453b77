"""Inventory ledger: copy status and the per-book availability counters.

``books.available_copies`` is a projection of the copies table that is kept
in step incrementally: every statement that moves a copy across the
Available boundary adjusts the counter with an atomic ``+ n`` / ``- n`` in
the same transaction. All functions here expect to run inside
``database.transaction``.
"""

import logging
import sqlite3
import uuid
from typing import Callable, Dict, List

from lendingdesk.errors import (
    BookNotFound,
    CopyNotAvailable,
    CopyNotFound,
    InsufficientAvailableCopies,
    InvalidCopyTransition,
    NoCopyAvailable,
    ValidationError,
)
from lendingdesk.models import Book, Copy, CopyStatus

logger = logging.getLogger(__name__)

# How many candidate rows to try when claiming any available copy
_CLAIM_BATCH = 5


def get_book(conn: sqlite3.Connection, book_id: int) -> Book:
    row = conn.execute(
        """
        SELECT id, title, authors, isbn, total_copies, available_copies
        FROM books WHERE id = ? AND is_deleted = 0
        """,
        (book_id,),
    ).fetchone()
    if row is None:
        raise BookNotFound(f"Book {book_id} not found.")
    return Book.from_row(row)


def get_copy(conn: sqlite3.Connection, copy_id: int) -> Copy:
    row = conn.execute(
        "SELECT id, book_id, inventory_label, status FROM copies WHERE id = ? AND is_deleted = 0",
        (copy_id,),
    ).fetchone()
    if row is None:
        raise CopyNotFound(f"Copy {copy_id} not found.")
    return Copy.from_row(row)


def list_copies(conn: sqlite3.Connection, book_id: int) -> List[Copy]:
    rows = conn.execute(
        """
        SELECT id, book_id, inventory_label, status FROM copies
        WHERE book_id = ? AND is_deleted = 0 ORDER BY id
        """,
        (book_id,),
    ).fetchall()
    return [Copy.from_row(r) for r in rows]


def _new_label(isbn: str | None) -> str:
    prefix = (isbn or "BOOK")[-4:]
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def _shift_available(conn: sqlite3.Connection, book_id: int, delta: int) -> None:
    conn.execute(
        "UPDATE books SET available_copies = available_copies + ? WHERE id = ?",
        (delta, book_id),
    )


def _claim(conn: sqlite3.Connection, copy_id: int) -> bool:
    """Compare-and-swap a copy from Available to Borrowed."""
    cur = conn.execute(
        """
        UPDATE copies SET status = 'borrowed'
        WHERE id = ? AND status = 'available' AND is_deleted = 0
        """,
        (copy_id,),
    )
    return cur.rowcount == 1


# ------------------------- Stock ------------------------- #
def add_copies(conn: sqlite3.Connection, book_id: int, count: int) -> List[int]:
    """Insert ``count`` Available copies and raise both counters by ``count``."""
    if count <= 0:
        raise ValidationError("Copy count must be positive.")
    book = get_book(conn, book_id)

    new_ids: List[int] = []
    for _ in range(count):
        cur = conn.execute(
            "INSERT INTO copies (book_id, inventory_label, status) VALUES (?, ?, 'available')",
            (book.id, _new_label(book.isbn)),
        )
        new_ids.append(cur.lastrowid)

    conn.execute(
        """
        UPDATE books SET total_copies = total_copies + ?, available_copies = available_copies + ?
        WHERE id = ?
        """,
        (count, count, book.id),
    )
    return new_ids


def remove_copies(conn: sqlite3.Connection, book_id: int, count: int) -> List[int]:
    """Soft-delete ``count`` Available copies and lower both counters by ``count``.

    Copies on loan are never touched. The chosen rows are pinned with a
    conditional update; if any of them stopped being Available the whole
    transaction is abandoned.
    """
    if count <= 0:
        raise ValidationError("Copy count must be positive.")
    book = get_book(conn, book_id)
    if book.available_copies < count:
        raise InsufficientAvailableCopies(
            f"Only {book.available_copies} available copies, cannot remove {count}."
        )

    rows = conn.execute(
        """
        SELECT id FROM copies
        WHERE book_id = ? AND status = 'available' AND is_deleted = 0
        ORDER BY id DESC LIMIT ?
        """,
        (book_id, count),
    ).fetchall()
    ids = [r["id"] for r in rows]
    if len(ids) < count:
        logger.warning(
            "Book %s counter says %s available but only %s copies are", book_id, book.available_copies, len(ids)
        )
        raise InsufficientAvailableCopies(f"Only {len(ids)} available copies, cannot remove {count}.")

    placeholders = ", ".join("?" for _ in ids)
    cur = conn.execute(
        f"""
        UPDATE copies SET is_deleted = 1
        WHERE id IN ({placeholders}) AND status = 'available' AND is_deleted = 0
        """,
        ids,
    )
    if cur.rowcount != count:
        raise InsufficientAvailableCopies(f"Could not pin {count} available copies.")

    conn.execute(
        """
        UPDATE books SET total_copies = total_copies - ?, available_copies = available_copies - ?
        WHERE id = ?
        """,
        (count, count, book_id),
    )
    return ids


# ------------------------- Reservation ------------------------- #
def reserve_one_copy(conn: sqlite3.Connection, book_id: int) -> int:
    """Claim any Available copy of the book for a loan and return its id."""
    get_book(conn, book_id)
    while True:
        rows = conn.execute(
            """
            SELECT id FROM copies
            WHERE book_id = ? AND status = 'available' AND is_deleted = 0
            ORDER BY id LIMIT ?
            """,
            (book_id, _CLAIM_BATCH),
        ).fetchall()
        if not rows:
            raise NoCopyAvailable(f"No available copies of book {book_id}.")
        for row in rows:
            if _claim(conn, row["id"]):
                _shift_available(conn, book_id, -1)
                return row["id"]


def reserve_copy(conn: sqlite3.Connection, copy_id: int) -> Copy:
    """Claim one specific copy; it must currently be Available."""
    copy = get_copy(conn, copy_id)
    get_book(conn, copy.book_id)
    if copy.status is not CopyStatus.AVAILABLE or not _claim(conn, copy.id):
        raise CopyNotAvailable(f"Copy {copy.inventory_label} is {copy.status.value}.")
    _shift_available(conn, copy.book_id, -1)
    copy.status = CopyStatus.BORROWED
    return copy


def release_copy(conn: sqlite3.Connection, copy_id: int) -> bool:
    """Borrowed -> Available. A second call on the same copy changes nothing."""
    row = conn.execute("SELECT book_id FROM copies WHERE id = ?", (copy_id,)).fetchone()
    if row is None:
        raise CopyNotFound(f"Copy {copy_id} not found.")
    cur = conn.execute(
        "UPDATE copies SET status = 'available' WHERE id = ? AND status = 'borrowed'",
        (copy_id,),
    )
    if cur.rowcount != 1:
        logger.info("Copy %s was not borrowed; nothing to release", copy_id)
        return False
    _shift_available(conn, row["book_id"], 1)
    return True


def force_release_all(
    conn: sqlite3.Connection, book_id: int, close_loan: Callable[[int], object]
) -> List[int]:
    """Close every active loan on a copy of the book via ``close_loan``."""
    get_book(conn, book_id)
    rows = conn.execute(
        """
        SELECT l.id FROM loans l
        JOIN copies c ON c.id = l.copy_id
        WHERE c.book_id = ? AND l.status = 'active'
        ORDER BY l.id
        """,
        (book_id,),
    ).fetchall()
    closed = []
    for row in rows:
        close_loan(row["id"])
        closed.append(row["id"])
    return closed


# ------------------------- Copy maintenance ------------------------- #
def set_copy_status(conn: sqlite3.Connection, copy_id: int, status: CopyStatus) -> tuple[Copy, Copy]:
    """Move a copy between the shelf states. Borrowed belongs to the loan lifecycle."""
    before = get_copy(conn, copy_id)
    if status is CopyStatus.BORROWED or before.status is CopyStatus.BORROWED:
        raise InvalidCopyTransition(
            f"Copy {before.inventory_label} cannot go from {before.status.value} to {status.value}."
        )
    if status is before.status:
        return before, before

    cur = conn.execute(
        "UPDATE copies SET status = ? WHERE id = ? AND status = ?",
        (status.value, copy_id, before.status.value),
    )
    if cur.rowcount != 1:
        raise InvalidCopyTransition(f"Copy {before.inventory_label} changed concurrently.")

    if before.status is CopyStatus.AVAILABLE:
        _shift_available(conn, before.book_id, -1)
    elif status is CopyStatus.AVAILABLE:
        _shift_available(conn, before.book_id, 1)

    after = Copy(id=before.id, book_id=before.book_id, inventory_label=before.inventory_label, status=status)
    return before, after


def reconcile_counters(conn: sqlite3.Connection) -> List[Dict[str, int]]:
    """Recompute both counters from the copies table and fix any drift."""
    rows = conn.execute(
        """
        SELECT b.id, b.total_copies, b.available_copies,
               (SELECT COUNT(*) FROM copies c
                 WHERE c.book_id = b.id AND c.is_deleted = 0) AS actual_total,
               (SELECT COUNT(*) FROM copies c
                 WHERE c.book_id = b.id AND c.is_deleted = 0 AND c.status = 'available') AS actual_available
        FROM books b WHERE b.is_deleted = 0
        """
    ).fetchall()

    drifts = []
    for r in rows:
        if r["total_copies"] == r["actual_total"] and r["available_copies"] == r["actual_available"]:
            continue
        logger.warning(
            "Counter drift on book %s: total %s -> %s, available %s -> %s",
            r["id"], r["total_copies"], r["actual_total"], r["available_copies"], r["actual_available"],
        )
        conn.execute(
            "UPDATE books SET total_copies = ?, available_copies = ? WHERE id = ?",
            (r["actual_total"], r["actual_available"], r["id"]),
        )
        drifts.append({
            "book_id": r["id"],
            "total_before": r["total_copies"],
            "total_after": r["actual_total"],
            "available_before": r["available_copies"],
            "available_after": r["actual_available"],
        })
    return drifts
