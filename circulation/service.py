"""Circulation service: issue, return and status refresh.

This is the only component that changes more than one entity at a time.
Each mutation holds the entity locks it touches, always including the
owning book, which also serializes picking a copy by title. All of its
steps run inside one SQLite transaction: either every step lands or none
does. Locks are released before the result is handed back, so nothing
slow (notifications, rendering) runs under them.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from circulation.catalog import Catalog, Identifier
from circulation.clock import Clock
from circulation.database import connection
from circulation.errors import (
    ConsistencyError,
    CopyUnavailable,
    InvalidDueDate,
    InvalidState,
    NotFound,
    PatronHasActiveLoan,
    ValidationError,
)
from circulation.fines import DEFAULT_POLICY, FinePolicy
from circulation.inventory import CopyInventory
from circulation.ledger import LoanLedger
from circulation.locks import EntityLocks
from circulation.models import (
    ARCHIVAL_COPY_STATES,
    Book,
    BookCopy,
    CopyStatus,
    FineStatus,
    Loan,
    LoanStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class ReturnReceipt:
    """What the desk prints when a book comes back."""
    loan: Loan
    fine: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"loan": self.loan.to_dict(), "fine": str(self.fine)}


class CirculationService:
    """Orchestrates the copy inventory, the loan ledger and the fine policy."""

    def __init__(
        self,
        db_file: Optional[str] = None,
        clock: Optional[Clock] = None,
        policy: FinePolicy = DEFAULT_POLICY,
        locks: Optional[EntityLocks] = None,
    ) -> None:
        self.db_file = db_file
        self.clock = clock or Clock()
        self.catalog = Catalog(db_file)
        self.inventory = CopyInventory(db_file)
        self.ledger = LoanLedger(db_file, policy)
        self.locks = locks or EntityLocks()

    def _now(self, now: Optional[datetime]) -> datetime:
        return self.clock.localize(now) if now is not None else self.clock.now()

    # ------------------------- Issue ------------------------- #
    def issue(
        self,
        patron: Identifier,
        book: Optional[Identifier],
        copy: Optional[Identifier],
        due_at: datetime,
        now: Optional[datetime] = None,
    ) -> Loan:
        """Lend one copy to a patron.

        ``book`` and ``copy`` take external identifiers (ISBN / call number,
        accession number) or row ids. Without a copy the first Available copy
        of the book is picked under the book lock; with both, the copy must
        belong to the book. Checks run in order: lookups, due date, the
        patron's open loans, then copy availability.
        """
        now = self._now(now)
        if due_at is None:
            raise InvalidDueDate("A due date is required.")
        due_at = self.clock.localize(due_at)
        if book is None and copy is None:
            raise ValidationError("Provide a book or a copy identifier.")

        resolved_patron = self.catalog.find_patron(patron)
        target_book, target_copy = self._resolve(book, copy)

        if due_at <= now:
            raise InvalidDueDate(f"Due date {self.clock.format(due_at)} must be after {self.clock.format(now)}.")

        keys = [("patron", resolved_patron.id), ("book", target_book.id)]
        if target_copy is not None:
            keys.append(("copy", target_copy.id))
        with self.locks.hold(*keys):
            with connection(self.db_file) as conn:
                if self.ledger.has_active_loan(resolved_patron.id, conn=conn):
                    logger.info(f"Issue rejected: patron {resolved_patron.school_id} has an active loan")
                    raise PatronHasActiveLoan(
                        f"Patron {resolved_patron.school_id} must return their current book first."
                    )
                current_book = self.catalog.get_book(target_book.id, conn=conn)
                if target_copy is not None:
                    current_copy = self.catalog.get_copy(target_copy.id, conn=conn)
                else:
                    current_copy = self._first_issuable(current_book, conn)
                self._check_issuable(current_book, current_copy)
                stale = self.ledger.active_loan_for_copy(current_copy.id, conn=conn)
                if stale is not None:
                    logger.error(
                        f"Copy {current_copy.accession_number} is Available but loan {stale.id} is still open"
                    )
                    raise ConsistencyError(
                        f"Copy {current_copy.accession_number} is shelved but loan {stale.id} is open."
                    )

                loan = self.ledger.create_loan(
                    resolved_patron.id, current_book.id, current_copy.id, now, due_at, conn=conn
                )
                try:
                    self.inventory.mark_borrowed(current_copy.id, conn=conn)
                except InvalidState as e:
                    logger.error(f"Copy {current_copy.accession_number} changed state during issue: {e}")
                    raise ConsistencyError(str(e)) from e

        logger.info(
            f"Issued {current_copy.accession_number} ('{current_book.title}') to {resolved_patron.school_id}, "
            f"due {self.clock.format(due_at)} (loan {loan.id})"
        )
        return loan

    def _resolve(self, book: Optional[Identifier], copy: Optional[Identifier]) -> Tuple[Book, Optional[BookCopy]]:
        if copy is None:
            return self.catalog.find_book(book), None
        target_copy = self.catalog.find_copy(copy)
        target_book = self.catalog.get_book(target_copy.book_id)
        if book is not None and self.catalog.find_book(book).id != target_book.id:
            raise NotFound(f"Copy {copy} does not belong to book {book}.")
        return target_book, target_copy

    def _first_issuable(self, book: Book, conn: sqlite3.Connection) -> BookCopy:
        for candidate in self.catalog.list_copies(book.id, conn=conn):
            if candidate.is_issuable:
                return candidate
        raise CopyUnavailable(f"No available copies of '{book.title}' to issue.")

    @staticmethod
    def _check_issuable(book: Book, copy: BookCopy) -> None:
        if not book.is_active:
            raise CopyUnavailable(f"'{book.title}' is archived and cannot be issued.")
        if not copy.is_issuable:
            raise CopyUnavailable(f"Copy {copy.accession_number} is {copy.status.value}.")
        if book.copies_available <= 1:
            raise CopyUnavailable(f"No available copies of '{book.title}' to issue.")

    # ------------------------- Return ------------------------- #
    def return_book(
        self,
        loan_id: int,
        now: Optional[datetime] = None,
        fine_status: Optional[FineStatus] = None,
    ) -> ReturnReceipt:
        """Close a loan, freeze its fine and put the copy back on the shelf."""
        now = self._now(now)
        loan = self.ledger.get(loan_id)
        if not loan.is_active:
            raise NotFound(f"Loan {loan_id} is already returned.")

        with self.locks.hold(("patron", loan.patron_id), ("copy", loan.copy_id), ("book", loan.book_id)):
            with connection(self.db_file) as conn:
                loan = self.ledger.get(loan_id, conn=conn)
                if not loan.is_active:
                    raise NotFound(f"Loan {loan_id} is already returned.")
                copy = self.catalog.get_copy(loan.copy_id, conn=conn)
                if copy.status not in (CopyStatus.BORROWED, *ARCHIVAL_COPY_STATES):
                    logger.error(
                        f"Loan {loan_id} is open but copy {copy.accession_number} is {copy.status.value}"
                    )
                    raise ConsistencyError(
                        f"Copy {copy.accession_number} is {copy.status.value} while loan {loan_id} is open."
                    )

                closed = self.ledger.close_loan(loan_id, now, fine_status, conn=conn)
                if copy.status == CopyStatus.BORROWED:
                    self.inventory.mark_returned(copy.id, conn=conn)
                else:
                    logger.warning(
                        f"Copy {copy.accession_number} was archived as {copy.status.value} while on loan; "
                        f"leaving it archived"
                    )

        logger.info(f"Returned loan {loan_id}: fine {closed.fine_amount} ({closed.fine_status.value})")
        return ReturnReceipt(loan=closed, fine=closed.fine_amount)

    # ------------------------- Refresh and reads ------------------------- #
    def refresh(self, loan_id: int, now: Optional[datetime] = None) -> Loan:
        return self.ledger.refresh(loan_id, self._now(now))

    def refresh_all(self, now: Optional[datetime] = None) -> int:
        """Refresh every open loan; returns how many were examined."""
        now = self._now(now)
        loan_ids = self.ledger.open_loan_ids()
        for loan_id in loan_ids:
            self.ledger.refresh(loan_id, now)
        logger.debug(f"Refreshed {len(loan_ids)} open loans at {self.clock.format(now)}")
        return len(loan_ids)

    def get_loan(self, loan_id: int, now: Optional[datetime] = None) -> Loan:
        return self.refresh(loan_id, now)

    def list_loans(
        self,
        patron: Optional[Identifier] = None,
        status: Optional[Union[LoanStatus, str]] = None,
        now: Optional[datetime] = None,
    ) -> List[Loan]:
        self.refresh_all(now)
        patron_id = self.catalog.find_patron(patron).id if patron is not None else None
        return self.ledger.list_loans(patron_id=patron_id, status=LoanStatus(status) if status else None)

    def list_overdue(self, now: Optional[datetime] = None) -> List[Loan]:
        return self.list_loans(status=LoanStatus.OVERDUE, now=now)

    def list_fines(
        self, fine_status: Optional[Union[FineStatus, str]] = None, now: Optional[datetime] = None
    ) -> List[Loan]:
        """Loans carrying a fine, optionally filtered by fine status."""
        self.refresh_all(now)
        if fine_status is not None:
            return self.ledger.list_loans(fine_status=FineStatus(fine_status))
        return [loan for loan in self.ledger.list_loans() if loan.fine_status != FineStatus.NO_FINE]

    def update_fine_status(self, loan_id: int, fine_status: Union[FineStatus, str]) -> Loan:
        return self.ledger.update_fine_status(loan_id, FineStatus(fine_status))

    def book_status(self, book: Identifier) -> Dict[str, Any]:
        target = self.catalog.find_book(book)
        payload = target.to_dict()
        payload["copies"] = [c.to_dict() for c in self.catalog.list_copies(target.id)]
        return payload

    # ------------------------- Copy administration ------------------------- #
    def archive_copy(self, copy: Identifier, status: Union[CopyStatus, str]) -> BookCopy:
        target = self.catalog.find_copy(copy)
        with self.locks.hold(("copy", target.id), ("book", target.book_id)):
            return self.inventory.archive(target.id, CopyStatus(status))

    def reserve_copy(self, copy: Identifier) -> BookCopy:
        target = self.catalog.find_copy(copy)
        with self.locks.hold(("copy", target.id), ("book", target.book_id)):
            return self.inventory.mark_reserved(target.id)

    def release_copy(self, copy: Identifier) -> BookCopy:
        target = self.catalog.find_copy(copy)
        with self.locks.hold(("copy", target.id), ("book", target.book_id)):
            return self.inventory.release_reserve(target.id)

    def reserve_single_copy_books(self) -> List[BookCopy]:
        return self.inventory.reserve_single_copy_books()
