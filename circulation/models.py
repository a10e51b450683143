"""Entities handled by the circulation engine.

Rows come out of SQLite as ``sqlite3.Row`` objects; each dataclass offers a
``from_row`` constructor and a ``to_dict`` used by the API and the CLI
output helpers. Instants are stored as ISO strings carrying the library
offset and money as two-place decimal strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from circulation.fines import to_money


class CopyStatus(str, Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"
    RESERVE = "Reserve"
    LOST = "Lost"
    OLD = "Old"
    DAMAGED = "Damaged"


# Copies in these states are not counted in ``Book.copies_available``.
UNAVAILABLE_COPY_STATES = (CopyStatus.BORROWED, CopyStatus.LOST, CopyStatus.OLD, CopyStatus.DAMAGED)
ARCHIVAL_COPY_STATES = (CopyStatus.LOST, CopyStatus.OLD, CopyStatus.DAMAGED)


class BookStatus(str, Enum):
    AVAILABLE = "Available"
    NOT_AVAILABLE = "Not Available"


class PatronType(str, Enum):
    STUDENT = "Student"
    FACULTY = "Faculty"
    GUEST = "Guest"
    STAFF = "Staff"


class LoanStatus(str, Enum):
    ISSUED = "Issued"
    OVERDUE = "Overdue"
    RETURNED = "Returned"


ACTIVE_LOAN_STATES = (LoanStatus.ISSUED, LoanStatus.OVERDUE)


class FineStatus(str, Enum):
    NO_FINE = "no fine"
    UNPAID = "unpaid"
    CLEARED = "cleared"


def _parse_instant(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    return datetime.fromisoformat(raw)


def _format_instant(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Book:
    """A catalog entry with its denormalized copy counts."""
    id: int
    isbn: str
    call_number: str
    title: str
    author: str
    publisher: Optional[str] = None
    year: Optional[int] = None
    copies_total: int = 0
    copies_available: int = 0
    status: BookStatus = BookStatus.NOT_AVAILABLE
    is_active: bool = True

    @staticmethod
    def from_row(row) -> "Book":
        return Book(
            id=row["id"],
            isbn=row["isbn"],
            call_number=row["call_number"],
            title=row["title"],
            author=row["author"],
            publisher=row["publisher"],
            year=row["year"],
            copies_total=row["copies_total"],
            copies_available=row["copies_available"],
            status=BookStatus(row["status"]),
            is_active=bool(row["is_active"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "call_number": self.call_number,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "year": self.year,
            "copies_total": self.copies_total,
            "copies_available": self.copies_available,
            "status": self.status.value,
            "is_active": self.is_active,
        }


@dataclass
class BookCopy:
    """One physical unit of a book."""
    id: int
    book_id: int
    accession_number: str
    status: CopyStatus = CopyStatus.AVAILABLE

    @staticmethod
    def from_row(row) -> "BookCopy":
        return BookCopy(
            id=row["id"],
            book_id=row["book_id"],
            accession_number=row["accession_number"],
            status=CopyStatus(row["status"]),
        )

    @property
    def is_issuable(self) -> bool:
        return self.status == CopyStatus.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "accession_number": self.accession_number,
            "status": self.status.value,
        }


@dataclass
class Patron:
    id: int
    school_id: str
    name: str
    patron_type: PatronType = PatronType.STUDENT
    email: Optional[str] = None

    @staticmethod
    def from_row(row) -> "Patron":
        return Patron(
            id=row["id"],
            school_id=row["school_id"],
            name=row["name"],
            patron_type=PatronType(row["patron_type"]),
            email=row["email"],
        )


@dataclass
class Loan:
    """An issued-book record linking a patron to one specific copy.

    ``fine_amount`` and ``fine_status`` are recomputed by every refresh while
    the loan is open and frozen once it is returned.
    """
    id: int
    patron_id: int
    book_id: int
    copy_id: int
    issued_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    status: LoanStatus = LoanStatus.ISSUED
    fine_amount: Decimal = Decimal("0.00")
    fine_status: FineStatus = FineStatus.NO_FINE

    @staticmethod
    def from_row(row) -> "Loan":
        return Loan(
            id=row["id"],
            patron_id=row["patron_id"],
            book_id=row["book_id"],
            copy_id=row["copy_id"],
            issued_at=_parse_instant(row["issued_at"]),
            due_at=_parse_instant(row["due_at"]),
            returned_at=_parse_instant(row["returned_at"]),
            status=LoanStatus(row["status"]),
            fine_amount=to_money(row["fine_amount"]),
            fine_status=FineStatus(row["fine_status"]),
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_LOAN_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "book_id": self.book_id,
            "copy_id": self.copy_id,
            "issued_at": _format_instant(self.issued_at),
            "due_at": _format_instant(self.due_at),
            "returned_at": _format_instant(self.returned_at),
            "status": self.status.value,
            "fine_amount": str(self.fine_amount),
            "fine_status": self.fine_status.value,
        }
