"""Copy inventory: per-copy states and the book-level aggregates derived from them.

``copies_available`` counts every copy that is not Borrowed, Lost, Old or
Damaged (a Reserve copy still sits on the shelf, so it counts). A book is
``Not Available`` whenever that count is 1 or less.

One reference copy of every title always stays in the building: when a
borrow brings ``copies_available`` down to 1, the remaining Available copy
is withdrawn to Reserve (``withdraw_last_copy``). Reserved copies are
never issuable.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

from circulation.database import connection
from circulation.errors import InvalidState, NotFound
from circulation.models import (
    ARCHIVAL_COPY_STATES,
    UNAVAILABLE_COPY_STATES,
    Book,
    BookCopy,
    BookStatus,
    CopyStatus,
)

logger = logging.getLogger(__name__)

# A title needs more than this many shelf copies to be lendable.
RESERVE_THRESHOLD = 1


def derive_book_status(copies_available: int) -> BookStatus:
    if copies_available > RESERVE_THRESHOLD:
        return BookStatus.AVAILABLE
    return BookStatus.NOT_AVAILABLE


def recompute_book_aggregates(conn: sqlite3.Connection, book_id: int) -> Book:
    """Recount the copies of a book and store ``copies_total``/``copies_available``/``status``."""
    placeholders = ", ".join("?" for _ in UNAVAILABLE_COPY_STATES)
    row = conn.execute(
        f"""
        SELECT COUNT(*) AS total,
               COALESCE(SUM(CASE WHEN status NOT IN ({placeholders}) THEN 1 ELSE 0 END), 0) AS available
        FROM book_copies WHERE book_id = ?
        """,
        (*[s.value for s in UNAVAILABLE_COPY_STATES], book_id),
    ).fetchone()
    available = row["available"]
    conn.execute(
        "UPDATE books SET copies_total = ?, copies_available = ?, status = ? WHERE id = ?",
        (row["total"], available, derive_book_status(available).value, book_id),
    )
    book_row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
    if book_row is None:
        raise NotFound(f"Book {book_id} not found.")
    return Book.from_row(book_row)


def withdraw_last_copy(conn: sqlite3.Connection, book_id: int) -> List[BookCopy]:
    """Move the last Available copy of a book to Reserve once availability hits the threshold.

    Returns the copies that were withdrawn; empty when the book still has
    more than one shelf copy or the remaining copy is already reserved.
    """
    book = recompute_book_aggregates(conn, book_id)
    if book.copies_available > RESERVE_THRESHOLD:
        return []
    rows = conn.execute(
        "SELECT * FROM book_copies WHERE book_id = ? AND status = ? ORDER BY id",
        (book_id, CopyStatus.AVAILABLE.value),
    ).fetchall()
    withdrawn = []
    for row in rows:
        conn.execute(
            "UPDATE book_copies SET status = ? WHERE id = ?",
            (CopyStatus.RESERVE.value, row["id"]),
        )
        copy = BookCopy.from_row(row)
        copy.status = CopyStatus.RESERVE
        withdrawn.append(copy)
        logger.info(f"Copy {copy.accession_number} withdrawn to reserve (last copy of book {book_id})")
    if withdrawn:
        recompute_book_aggregates(conn, book_id)
    return withdrawn


class CopyInventory:
    """State transitions of physical copies.

    Every method accepts an optional ``conn`` so it can join a transaction
    opened by the circulation service; without one it runs in its own.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def _load_copy(self, conn: sqlite3.Connection, copy_id: int) -> BookCopy:
        row = conn.execute("SELECT * FROM book_copies WHERE id = ?", (copy_id,)).fetchone()
        if row is None:
            raise NotFound(f"Copy {copy_id} not found.")
        return BookCopy.from_row(row)

    def _set_status(self, conn: sqlite3.Connection, copy: BookCopy, status: CopyStatus) -> BookCopy:
        conn.execute("UPDATE book_copies SET status = ? WHERE id = ?", (status.value, copy.id))
        copy.status = status
        return copy

    def get_copy(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        with connection(self.db_file, conn, write=False) as c:
            return self._load_copy(c, copy_id)

    def mark_borrowed(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        """Available -> Borrowed, then apply the last-copy reservation."""
        with connection(self.db_file, conn) as c:
            copy = self._load_copy(c, copy_id)
            if copy.status != CopyStatus.AVAILABLE:
                raise InvalidState(
                    f"Copy {copy.accession_number} is {copy.status.value}, expected Available."
                )
            self._set_status(c, copy, CopyStatus.BORROWED)
            withdraw_last_copy(c, copy.book_id)
            return copy

    def mark_returned(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        """Borrowed -> Available."""
        with connection(self.db_file, conn) as c:
            copy = self._load_copy(c, copy_id)
            if copy.status != CopyStatus.BORROWED:
                raise InvalidState(
                    f"Copy {copy.accession_number} is {copy.status.value}, expected Borrowed."
                )
            self._set_status(c, copy, CopyStatus.AVAILABLE)
            recompute_book_aggregates(c, copy.book_id)
            return copy

    def mark_reserved(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        """Administrative withdrawal to Reserve. Borrowed and archived copies cannot be reserved."""
        with connection(self.db_file, conn) as c:
            copy = self._load_copy(c, copy_id)
            if copy.status == CopyStatus.BORROWED or copy.status in ARCHIVAL_COPY_STATES:
                raise InvalidState(f"Copy {copy.accession_number} is {copy.status.value} and cannot be reserved.")
            self._set_status(c, copy, CopyStatus.RESERVE)
            recompute_book_aggregates(c, copy.book_id)
            return copy

    def release_reserve(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        """Librarian override putting a reserved copy back into circulation."""
        with connection(self.db_file, conn) as c:
            copy = self._load_copy(c, copy_id)
            if copy.status != CopyStatus.RESERVE:
                raise InvalidState(f"Copy {copy.accession_number} is {copy.status.value}, expected Reserve.")
            self._set_status(c, copy, CopyStatus.AVAILABLE)
            recompute_book_aggregates(c, copy.book_id)
            return copy

    def archive(self, copy_id: int, status: CopyStatus, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        """Move a copy to Lost, Old or Damaged. Archival states are terminal."""
        if status not in ARCHIVAL_COPY_STATES:
            raise InvalidState(f"{status.value} is not an archival state.")
        with connection(self.db_file, conn) as c:
            copy = self._load_copy(c, copy_id)
            if copy.status in ARCHIVAL_COPY_STATES:
                raise InvalidState(f"Copy {copy.accession_number} is already {copy.status.value}.")
            previous = copy.status
            self._set_status(c, copy, status)
            recompute_book_aggregates(c, copy.book_id)
            logger.info(f"Copy {copy.accession_number} archived: {previous.value} -> {status.value}")
            return copy

    def reserve_single_copy_books(self, conn: Optional[sqlite3.Connection] = None) -> List[BookCopy]:
        """Withdraw the only copy of every active single-copy title to Reserve."""
        with connection(self.db_file, conn) as c:
            rows = c.execute(
                """
                SELECT bc.* FROM book_copies bc
                JOIN books b ON b.id = bc.book_id
                WHERE b.is_active = 1 AND bc.status = ?
                  AND (SELECT COUNT(*) FROM book_copies x WHERE x.book_id = bc.book_id) = 1
                ORDER BY bc.id
                """,
                (CopyStatus.AVAILABLE.value,),
            ).fetchall()
            reserved = []
            for row in rows:
                copy = self._set_status(c, BookCopy.from_row(row), CopyStatus.RESERVE)
                recompute_book_aggregates(c, copy.book_id)
                reserved.append(copy)
                logger.info(f"Single copy {copy.accession_number} of book {copy.book_id} reserved")
            return reserved
