import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from lendingdesk import fines, inventory, loans
from lendingdesk.database import initialize_database, resolve_db_file, run_read, transaction
from lendingdesk.errors import (
    DuplicateEntry,
    LibraryError,
    PermissionDenied,
    StoreUnavailable,
    UserInactive,
    ValidationError,
)
from lendingdesk.loans import ExtensionReceipt, LoanReceipt, ReturnReceipt
from lendingdesk.models import AuthContext, Book, Copy, CopyStatus, Fine, FineStatus, LoanView, Role, User, now
from lendingdesk.services.audit import AuditSink, list_logs
from lendingdesk.services.notifications import NotificationSink, list_notifications, mark_read
from lendingdesk.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Library:
    """Boundary operations of the lending desk.

    Every mutating call runs as one write-locked transaction on its own
    connection; audit entries and notifications are emitted only after that
    transaction commits. The acting user is always passed in explicitly as an
    ``AuthContext``.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db_file = resolve_db_file(db_file)
        initialize_database(self.db_file)
        self.audit = audit or AuditSink(self.db_file)
        self.notifier = notifier or NotificationSink(self.db_file)
        self.clock = clock or now

    # ------------------------- Plumbing ------------------------- #
    def _write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` in a single transaction. Mutations are never retried."""
        try:
            with transaction(self.db_file) as conn:
                return fn(conn)
        except LibraryError as e:
            logger.info("Operation refused [%s]: %s", e.code, e)
            raise
        except sqlite3.Error as e:
            logger.error("Store error during write: %s", e)
            raise StoreUnavailable() from e

    def _read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return run_read(fn, self.db_file)

    @staticmethod
    def _require_staff(auth: AuthContext) -> None:
        if not auth.is_staff:
            raise PermissionDenied("This operation is reserved to librarians and admins.")

    @staticmethod
    def _require_admin(auth: AuthContext) -> None:
        if not auth.is_admin:
            raise PermissionDenied("This operation is reserved to admins.")

    @staticmethod
    def _require_self_or_staff(auth: AuthContext, user_id: int) -> None:
        if auth.user_id != user_id and not auth.is_staff:
            raise PermissionDenied("You can only see your own records.")

    # ------------------------- Users ------------------------- #
    def create_user(self, name: str, email: str, role: Union[Role, str] = Role.READER, active: bool = True) -> User:
        name = TextValidator.sanitize_text(name)
        if not name:
            raise ValidationError("Name is required.")
        if not TextValidator.validate_email(email):
            raise ValidationError(f"Invalid email address: {email}")
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role: {role}")
        email = email.strip().lower()

        def _create(conn: sqlite3.Connection) -> User:
            if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
                raise DuplicateEntry(f"A user with email {email} already exists.")
            cur = conn.execute(
                "INSERT INTO users (name, email, role, active) VALUES (?, ?, ?, ?)",
                (name, email, role.value, int(active)),
            )
            return User(id=cur.lastrowid, name=name, email=email, role=role, active=active)

        user = self._write(_create)
        self.audit.record(None, "create_user", "user", user.id, after=user.to_dict())
        return user

    def get_user(self, user_id: int) -> User:
        return self._read(lambda conn: loans.get_user(conn, user_id))

    def resolve_auth(self, user_id: int) -> AuthContext:
        """Turn a session user id into the ``AuthContext`` the operations expect."""
        user = self.get_user(user_id)
        if not user.active:
            raise UserInactive(f"User {user_id} is inactive.")
        return AuthContext(user_id=user.id, role=user.role)

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: str, authors: str, isbn: Optional[str] = None, copies: int = 0) -> Book:
        """Add a catalog entry, optionally with an initial stock of copies."""
        title = TextValidator.sanitize_text(title)
        authors = TextValidator.sanitize_text(authors)
        if not TextValidator.validate_title(title):
            raise ValidationError("Title is required.")
        if not TextValidator.validate_author(authors):
            raise ValidationError("Authors are required.")
        if isbn:
            if not ISBNValidator.is_valid_isbn(isbn):
                raise ValidationError(f"Invalid ISBN: {isbn}")
            isbn = ISBNValidator.normalize_isbn(isbn)
        else:
            isbn = None
        if copies < 0:
            raise ValidationError("Initial copies cannot be negative.")

        def _add(conn: sqlite3.Connection) -> Book:
            if isbn and conn.execute(
                "SELECT 1 FROM books WHERE isbn = ? AND is_deleted = 0", (isbn,)
            ).fetchone():
                raise DuplicateEntry(f"Book with ISBN {isbn} already exists.")
            cur = conn.execute(
                "INSERT INTO books (title, authors, isbn) VALUES (?, ?, ?)", (title, authors, isbn)
            )
            if copies:
                inventory.add_copies(conn, cur.lastrowid, copies)
            return inventory.get_book(conn, cur.lastrowid)

        book = self._write(_add)
        self.audit.record(None, "create_book", "book", book.id, after=book.to_dict())
        return book

    def get_book(self, book_id: int) -> Book:
        return self._read(lambda conn: inventory.get_book(conn, book_id))

    def list_copies(self, book_id: int) -> List[Copy]:
        def _list(conn: sqlite3.Connection) -> List[Copy]:
            inventory.get_book(conn, book_id)
            return inventory.list_copies(conn, book_id)

        return self._read(_list)

    # ------------------------- Inventory ------------------------- #
    def add_copies(self, auth: AuthContext, book_id: int, count: int) -> List[int]:
        self._require_staff(auth)

        def _add(conn: sqlite3.Connection):
            before = inventory.get_book(conn, book_id)
            ids = inventory.add_copies(conn, book_id, count)
            return before, inventory.get_book(conn, book_id), ids

        before, after, ids = self._write(_add)
        self.audit.record(
            auth.user_id, "add_copies", "book", book_id,
            before=before.to_dict(), after=after.to_dict(),
            description=f"Added {count} copies",
        )
        return ids

    def remove_copies(self, auth: AuthContext, book_id: int, count: int) -> int:
        self._require_staff(auth)

        def _remove(conn: sqlite3.Connection):
            before = inventory.get_book(conn, book_id)
            ids = inventory.remove_copies(conn, book_id, count)
            return before, inventory.get_book(conn, book_id), ids

        before, after, ids = self._write(_remove)
        self.audit.record(
            auth.user_id, "remove_copies", "book", book_id,
            before=before.to_dict(), after=after.to_dict(),
            description=f"Removed copies {ids}",
        )
        return len(ids)

    def adjust_stock(self, auth: AuthContext, book_id: int, delta: int) -> Dict[str, Any]:
        """Add copies for a positive ``delta``, remove available ones for a negative one."""
        if delta == 0:
            raise ValidationError("Stock delta must not be zero.")
        result: Dict[str, Any] = {"book_id": book_id, "delta": delta}
        if delta > 0:
            result["new_copy_ids"] = self.add_copies(auth, book_id, delta)
        else:
            result["removed_count"] = self.remove_copies(auth, book_id, -delta)
        book = self.get_book(book_id)
        result["total_copies"] = book.total_copies
        result["available_copies"] = book.available_copies
        return result

    def set_copy_status(self, auth: AuthContext, copy_id: int, status: Union[CopyStatus, str]) -> Copy:
        self._require_staff(auth)
        try:
            status = CopyStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown copy status: {status}")

        before, after = self._write(lambda conn: inventory.set_copy_status(conn, copy_id, status))
        if before.status is not after.status:
            self.audit.record(
                auth.user_id, "update_copy", "copy", copy_id, before=before.to_dict(), after=after.to_dict()
            )
        return after

    def reconcile_counters(self, auth: AuthContext) -> List[Dict[str, int]]:
        self._require_admin(auth)
        drifts = self._write(inventory.reconcile_counters)
        for d in drifts:
            self.audit.record(
                auth.user_id, "reconcile_counters", "book", d["book_id"],
                before={"total_copies": d["total_before"], "available_copies": d["available_before"]},
                after={"total_copies": d["total_after"], "available_copies": d["available_after"]},
            )
        return drifts

    def force_return_all(self, auth: AuthContext, book_id: int) -> int:
        """Close every active loan on the book's copies in one transaction."""
        self._require_staff(auth)
        at = self.clock()
        receipts: List[ReturnReceipt] = []
        accrued: List[Fine] = []

        def _close(conn: sqlite3.Connection, loan_id: int) -> ReturnReceipt:
            fine = fines.accrue_for_loan_id(conn, loan_id, at)
            if fine is not None:
                accrued.append(fine)
            receipt = loans.close_loan(conn, auth, loan_id, at)
            receipts.append(receipt)
            return receipt

        self._write(lambda conn: inventory.force_release_all(conn, book_id, lambda lid: _close(conn, lid)))
        self._record_accrued(auth, accrued)
        for receipt in receipts:
            self._after_return(auth, receipt, action="force_return")
        return len(receipts)

    # ------------------------- Loans ------------------------- #
    def create_loan(
        self,
        auth: AuthContext,
        user_id: int,
        book_id: Optional[int] = None,
        copy_id: Optional[int] = None,
        loan_period_days: Optional[int] = None,
    ) -> LoanReceipt:
        at = self.clock()
        receipt = self._write(
            lambda conn: loans.create_loan(
                conn, auth, user_id,
                book_id=book_id, copy_id=copy_id, loan_period_days=loan_period_days, at=at,
            )
        )
        self.audit.record(auth.user_id, "create_loan", "loan", receipt.loan_id, after=receipt.to_dict())
        self.notifier.notify(
            receipt.user_id,
            "Book borrowed",
            f"You borrowed '{receipt.title}'. Please return it by {receipt.due_at:%Y-%m-%d}.",
        )
        return receipt

    def close_loan(self, auth: AuthContext, loan_id: int) -> ReturnReceipt:
        at = self.clock()

        def _close(conn: sqlite3.Connection):
            fine = fines.accrue_for_loan_id(conn, loan_id, at)
            return fine, loans.close_loan(conn, auth, loan_id, at)

        fine, receipt = self._write(_close)
        self._record_accrued(auth, [fine] if fine else [])
        self._after_return(auth, receipt)
        return receipt

    def self_return(self, auth: AuthContext, book_id: int) -> ReturnReceipt:
        at = self.clock()

        def _return(conn: sqlite3.Connection):
            loan_id = loans.find_active_loan_for_book(conn, auth.user_id, book_id)
            fine = fines.accrue_for_loan_id(conn, loan_id, at)
            return fine, loans.close_loan(conn, auth, loan_id, at)

        fine, receipt = self._write(_return)
        self._record_accrued(auth, [fine] if fine else [])
        self._after_return(auth, receipt)
        return receipt

    def _record_accrued(self, auth: AuthContext, accrued: List[Fine]) -> None:
        for fine in accrued:
            self.audit.record(auth.user_id, "accrue_fine", "fine", fine.id, after=fine.to_dict())

    def _after_return(self, auth: AuthContext, receipt: ReturnReceipt, action: str = "return_loan") -> None:
        self.audit.record(auth.user_id, action, "loan", receipt.loan_id, after=receipt.to_dict())
        message = f"'{receipt.title}' has been returned."
        if receipt.had_fine:
            message += f" An overdue fine of {receipt.fine_amount} is outstanding."
        self.notifier.notify(receipt.user_id, "Book returned", message)

    def extend_loan(self, auth: AuthContext, loan_id: int) -> ExtensionReceipt:
        at = self.clock()

        # Accrual commits on its own so a refused extension keeps the fine it found
        def _accrue(conn: sqlite3.Connection) -> Optional[Fine]:
            loan = loans.get_loan(conn, loan_id)
            if loan.user_id != auth.user_id:
                return None
            return fines.accrue_for_loan(conn, loan, at)

        fine = self._write(_accrue)
        self._record_accrued(auth, [fine] if fine else [])

        receipt = self._write(lambda conn: loans.extend_loan(conn, loan_id, auth.user_id, at))
        self.audit.record(auth.user_id, "extend_loan", "loan", loan_id, after=receipt.to_dict())
        self.notifier.notify(
            receipt.user_id,
            "Loan extended",
            f"'{receipt.title}' is now due on {receipt.new_due_at:%Y-%m-%d}.",
        )
        return receipt

    def list_loans_with_accrual(self, auth: AuthContext, user_id: Optional[int] = None) -> List[LoanView]:
        """A user's loans, newest first. Accrues any missing overdue fines first."""
        target = auth.user_id if user_id is None else user_id
        self._require_self_or_staff(auth, target)
        at = self.clock()

        def _list(conn: sqlite3.Connection):
            loans.get_user(conn, target)
            created = fines.reconcile_overdue_fines(conn, target, at)
            return created, loans.list_user_loans(conn, target, at)

        created, views = self._write(_list)
        self._record_accrued(auth, created)
        return views

    def reconcile_overdue_fines(self, auth: AuthContext, user_id: int) -> List[Fine]:
        self._require_self_or_staff(auth, user_id)
        at = self.clock()

        def _reconcile(conn: sqlite3.Connection) -> List[Fine]:
            loans.get_user(conn, user_id)
            return fines.reconcile_overdue_fines(conn, user_id, at)

        created = self._write(_reconcile)
        self._record_accrued(auth, created)
        return created

    def list_loans(self, auth: AuthContext, status: Optional[str] = None) -> List[LoanView]:
        self._require_staff(auth)
        at = self.clock()
        return self._read(lambda conn: loans.list_loans(conn, status, at))

    # ------------------------- Fines ------------------------- #
    def settle_fine(self, auth: AuthContext, fine_id: int, status: Union[FineStatus, str]) -> Fine:
        self._require_staff(auth)
        try:
            status = FineStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown fine status: {status}")
        at = self.clock()

        before, after = self._write(lambda conn: fines.settle_fine(conn, fine_id, status, at))
        self.audit.record(auth.user_id, "settle_fine", "fine", fine_id, before=before.to_dict(), after=after.to_dict())
        return after

    def list_fines(
        self, auth: AuthContext, user_id: Optional[int] = None, status: Optional[Union[FineStatus, str]] = None
    ) -> List[Dict[str, Any]]:
        """A user's fines; staff without a user get every accrued fine."""
        if status is not None:
            try:
                status = FineStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown fine status: {status}")
        if user_id is None:
            if auth.is_staff:
                return self._read(lambda conn: fines.list_fines(conn, None, status or FineStatus.ACCRUED))
            user_id = auth.user_id
        self._require_self_or_staff(auth, user_id)
        return self._read(lambda conn: fines.list_fines(conn, user_id, status))

    # ------------------------- Notifications & logs ------------------------- #
    def list_notifications(self, auth: AuthContext, unread_only: bool = False) -> List[Dict[str, Any]]:
        return self._read(lambda conn: list_notifications(conn, auth.user_id, unread_only))

    def mark_notification_read(self, auth: AuthContext, notification_id: int) -> Dict[str, Any]:
        return self._write(lambda conn: mark_read(conn, notification_id, auth.user_id))

    def list_logs(self, auth: AuthContext, limit: int = 100) -> List[Dict[str, Any]]:
        self._require_admin(auth)
        return self._read(lambda conn: list_logs(conn, limit))

    def close(self) -> None:
        """Connections are opened per operation; nothing is held between calls."""
        return None
