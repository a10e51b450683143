"""Loan ledger: issued-book records, their exclusivity rules and fine state.

An open loan (Issued or Overdue) is exclusive per patron and per copy.
While a loan is open its status and fine are derived from the clock by
``refresh``; closing it freezes ``fine_amount`` and ``fine_status`` for good.
Refresh writes are guarded on the loan still being open, so a sweep racing
with a return never touches the returned record.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from circulation.database import connection
from circulation.errors import (
    CopyAlreadyLoaned,
    DuplicateActiveLoan,
    InvalidState,
    NotFound,
    ValidationError,
)
from circulation.fines import DEFAULT_POLICY, ZERO, FinePolicy
from circulation.models import ACTIVE_LOAN_STATES, FineStatus, Loan, LoanStatus

logger = logging.getLogger(__name__)

_ACTIVE = tuple(s.value for s in ACTIVE_LOAN_STATES)
_ACTIVE_SQL = "status IN (?, ?)"


class LoanLedger:
    def __init__(self, db_file: Optional[str] = None, policy: FinePolicy = DEFAULT_POLICY) -> None:
        self.db_file = db_file
        self.policy = policy

    # ------------------------- Queries ------------------------- #
    def has_active_loan(self, patron_id: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        with connection(self.db_file, conn, write=False) as c:
            row = c.execute(
                f"SELECT 1 FROM issued_books WHERE patron_id = ? AND {_ACTIVE_SQL} LIMIT 1",
                (patron_id, *_ACTIVE),
            ).fetchone()
        return row is not None

    def active_loan_for_copy(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Loan]:
        with connection(self.db_file, conn, write=False) as c:
            row = c.execute(
                f"SELECT * FROM issued_books WHERE copy_id = ? AND {_ACTIVE_SQL} LIMIT 1",
                (copy_id, *_ACTIVE),
            ).fetchone()
        return Loan.from_row(row) if row else None

    def get(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> Loan:
        with connection(self.db_file, conn, write=False) as c:
            row = c.execute("SELECT * FROM issued_books WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFound(f"Loan {loan_id} not found.")
        return Loan.from_row(row)

    def list_loans(
        self,
        patron_id: Optional[int] = None,
        status: Optional[LoanStatus] = None,
        fine_status: Optional[FineStatus] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Loan]:
        clauses, params = [], []
        if patron_id is not None:
            clauses.append("patron_id = ?")
            params.append(patron_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(LoanStatus(status).value)
        if fine_status is not None:
            clauses.append("fine_status = ?")
            params.append(FineStatus(fine_status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with connection(self.db_file, conn, write=False) as c:
            rows = c.execute(f"SELECT * FROM issued_books {where} ORDER BY id DESC", params).fetchall()
        return [Loan.from_row(row) for row in rows]

    def open_loan_ids(self, conn: Optional[sqlite3.Connection] = None) -> List[int]:
        with connection(self.db_file, conn, write=False) as c:
            rows = c.execute(
                f"SELECT id FROM issued_books WHERE {_ACTIVE_SQL} ORDER BY id", _ACTIVE
            ).fetchall()
        return [row["id"] for row in rows]

    # ------------------------- Mutations ------------------------- #
    def create_loan(
        self,
        patron_id: int,
        book_id: int,
        copy_id: int,
        issued_at: datetime,
        due_at: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Loan:
        with connection(self.db_file, conn) as c:
            if self.has_active_loan(patron_id, conn=c):
                raise DuplicateActiveLoan(f"Patron {patron_id} already has an active loan.")
            if self.active_loan_for_copy(copy_id, conn=c) is not None:
                raise CopyAlreadyLoaned(f"Copy {copy_id} is already on loan.")
            try:
                cursor = c.execute(
                    """
                    INSERT INTO issued_books
                        (patron_id, book_id, copy_id, issued_at, due_at, status, fine_amount, fine_status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        patron_id,
                        book_id,
                        copy_id,
                        issued_at.isoformat(),
                        due_at.isoformat(),
                        LoanStatus.ISSUED.value,
                        str(ZERO),
                        FineStatus.NO_FINE.value,
                    ),
                )
            except sqlite3.IntegrityError as e:
                # The partial unique indexes caught a concurrent writer.
                if self.has_active_loan(patron_id, conn=c):
                    raise DuplicateActiveLoan(f"Patron {patron_id} already has an active loan.") from e
                raise CopyAlreadyLoaned(f"Copy {copy_id} is already on loan.") from e
            return self.get(cursor.lastrowid, conn=c)

    def close_loan(
        self,
        loan_id: int,
        now: datetime,
        fine_status: Optional[FineStatus] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Loan:
        """Mark a loan returned and freeze its fine.

        A zero fine is always ``cleared``. Otherwise the caller picks between
        ``unpaid`` (the default) and ``cleared`` when the fine was settled at
        the desk.
        """
        if fine_status is not None:
            fine_status = FineStatus(fine_status)
            if fine_status == FineStatus.NO_FINE:
                raise ValidationError("A returned loan's fine is either unpaid or cleared.")
        with connection(self.db_file, conn) as c:
            loan = self.get(loan_id, conn=c)
            if not loan.is_active:
                raise InvalidState(f"Loan {loan_id} is already {loan.status.value}.")
            fine = self.policy.compute(loan.due_at, now)
            if fine == ZERO:
                final_status = FineStatus.CLEARED
            else:
                final_status = fine_status or FineStatus.UNPAID
            c.execute(
                f"""
                UPDATE issued_books
                SET returned_at = ?, status = ?, fine_amount = ?, fine_status = ?
                WHERE id = ? AND {_ACTIVE_SQL}
                """,
                (now.isoformat(), LoanStatus.RETURNED.value, str(fine), final_status.value, loan_id, *_ACTIVE),
            )
            return self.get(loan_id, conn=c)

    def refresh(self, loan_id: int, now: datetime, conn: Optional[sqlite3.Connection] = None) -> Loan:
        """Recompute an open loan's overdue status and fine against ``now``.

        Idempotent, and a no-op for returned loans.
        """
        with connection(self.db_file, conn) as c:
            loan = self.get(loan_id, conn=c)
            if not loan.is_active:
                return loan
            fine = self.policy.compute(loan.due_at, now)
            if fine > ZERO:
                status, fine_status = LoanStatus.OVERDUE, FineStatus.UNPAID
            else:
                status, fine_status, fine = LoanStatus.ISSUED, FineStatus.NO_FINE, ZERO
            if (status, fine, fine_status) == (loan.status, loan.fine_amount, loan.fine_status):
                return loan
            c.execute(
                f"""
                UPDATE issued_books SET status = ?, fine_amount = ?, fine_status = ?
                WHERE id = ? AND {_ACTIVE_SQL}
                """,
                (status.value, str(fine), fine_status.value, loan_id, *_ACTIVE),
            )
            if loan.status != status:
                logger.info(f"Loan {loan_id} is now {status.value} (fine {fine})")
            return self.get(loan_id, conn=c)

    def update_fine_status(
        self, loan_id: int, fine_status: FineStatus, conn: Optional[sqlite3.Connection] = None
    ) -> Loan:
        """Bookkeeping override, e.g. clearing a fine paid out of band.

        A returned loan's fine stays either ``unpaid`` or ``cleared``.
        """
        fine_status = FineStatus(fine_status)
        with connection(self.db_file, conn) as c:
            loan = self.get(loan_id, conn=c)
            if not loan.is_active and fine_status == FineStatus.NO_FINE:
                raise ValidationError("A returned loan's fine is either unpaid or cleared.")
            c.execute("UPDATE issued_books SET fine_status = ? WHERE id = ?", (fine_status.value, loan_id))
            logger.info(f"Loan {loan_id} fine status set to {fine_status.value}")
            return self.get(loan_id, conn=c)

    def total_unpaid(self, patron_id: int, conn: Optional[sqlite3.Connection] = None) -> Decimal:
        loans = self.list_loans(patron_id=patron_id, fine_status=FineStatus.UNPAID, conn=conn)
        return sum((loan.fine_amount for loan in loans), ZERO)
