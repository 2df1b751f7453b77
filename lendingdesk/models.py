from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


def now() -> datetime:
    return datetime.now().replace(microsecond=0)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Timestamps are stored as ISO strings so they sort lexicographically."""
    return value.isoformat(timespec="seconds") if value is not None else None


def from_db(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Role(str, Enum):
    READER = "reader"
    LIBRARIAN = "librarian"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self in (Role.LIBRARIAN, Role.ADMIN)


class CopyStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    DAMAGED = "damaged"
    LOST = "lost"
    RESERVED = "reserved"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


class FineStatus(str, Enum):
    ACCRUED = "accrued"
    PAID = "paid"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AuthContext:
    """The acting user, resolved by the caller's session layer."""

    user_id: int
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass
class User:
    id: int
    name: str
    email: str
    role: Role = Role.READER
    active: bool = True

    @staticmethod
    def from_row(row: sqlite3.Row) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=Role(row["role"]),
            active=bool(row["active"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "active": self.active,
        }


@dataclass
class Book:
    """A catalog entry. ``available_copies`` is maintained incrementally."""

    id: int
    title: str
    authors: str
    isbn: Optional[str]
    total_copies: int = 0
    available_copies: int = 0

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            authors=row["authors"],
            isbn=row["isbn"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Copy:
    id: int
    book_id: int
    inventory_label: str
    status: CopyStatus = CopyStatus.AVAILABLE

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Copy":
        return Copy(
            id=row["id"],
            book_id=row["book_id"],
            inventory_label=row["inventory_label"],
            status=CopyStatus(row["status"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "inventory_label": self.inventory_label,
            "status": self.status.value,
        }


@dataclass
class Loan:
    id: int
    user_id: int
    copy_id: int
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    status: LoanStatus = LoanStatus.ACTIVE
    extensions: int = 0

    def is_overdue(self, at: Optional[datetime] = None) -> bool:
        at = at or now()
        return self.status is LoanStatus.ACTIVE and self.returned_at is None and at > self.due_at

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Loan":
        return Loan(
            id=row["id"],
            user_id=row["user_id"],
            copy_id=row["copy_id"],
            borrowed_at=from_db(row["borrowed_at"]),
            due_at=from_db(row["due_at"]),
            returned_at=from_db(row["returned_at"]),
            status=LoanStatus(row["status"]),
            extensions=row["extensions"],
        )


@dataclass
class Fine:
    id: int
    loan_id: int
    amount: int
    status: FineStatus
    accrued_at: datetime
    settled_at: Optional[datetime] = None
    reason: Optional[str] = None

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Fine":
        return Fine(
            id=row["id"],
            loan_id=row["loan_id"],
            amount=row["amount"],
            status=FineStatus(row["status"]),
            accrued_at=from_db(row["accrued_at"]),
            settled_at=from_db(row["settled_at"]),
            reason=row["reason"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "amount": self.amount,
            "status": self.status.value,
            "accrued_at": to_db(self.accrued_at),
            "settled_at": to_db(self.settled_at),
            "reason": self.reason,
        }


@dataclass
class LoanView:
    """One row of a user's loan list, joined with book, copy and fine data."""

    id: int
    user_id: int
    book_id: int
    title: str
    authors: str
    copy_id: int
    inventory_label: str
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime]
    status: LoanStatus
    extensions: int
    fine: int
    overdue: bool

    @staticmethod
    def from_row(row: sqlite3.Row, at: datetime) -> "LoanView":
        loan = Loan.from_row(row)
        return LoanView(
            id=loan.id,
            user_id=loan.user_id,
            book_id=row["book_id"],
            title=row["title"],
            authors=row["authors"],
            copy_id=loan.copy_id,
            inventory_label=row["inventory_label"],
            borrowed_at=loan.borrowed_at,
            due_at=loan.due_at,
            returned_at=loan.returned_at,
            status=loan.status,
            extensions=loan.extensions,
            fine=row["fine"],
            overdue=loan.is_overdue(at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "title": self.title,
            "authors": self.authors,
            "copy_id": self.copy_id,
            "inventory_label": self.inventory_label,
            "borrowed_at": to_db(self.borrowed_at),
            "due_at": to_db(self.due_at),
            "returned_at": to_db(self.returned_at),
            "status": self.status.value,
            "extensions": self.extensions,
            "fine": self.fine,
            "overdue": self.overdue,
        }
