from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, List, Optional, Union

from circulation.database import connection, initialize_database
from circulation.errors import NotFound, ValidationError
from circulation.inventory import recompute_book_aggregates
from circulation.models import Book, BookCopy, Patron, PatronType
from utils.validators import IdentifierValidator, ISBNValidator

logger = logging.getLogger(__name__)

Identifier = Union[int, str]


class Catalog:
    """Registers and resolves books, copies and patrons.

    Lookups accept either the external identifier (ISBN or call number,
    accession number, school id) or the numeric row id, and raise
    ``NotFound`` when nothing matches.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    # ------------------------- Registration ------------------------- #
    def add_book(
        self,
        title: str,
        author: str,
        isbn: str,
        call_number: str,
        copies: int = 1,
        accession_numbers: Optional[Iterable[str]] = None,
        publisher: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Book:
        """Catalog a title together with its physical copies."""
        norm_isbn = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(norm_isbn):
            raise ValidationError(f"Invalid ISBN: {isbn!r}.")
        call_number = IdentifierValidator.normalize(call_number)
        if not call_number:
            raise ValidationError("Call number cannot be empty.")
        if not title or not title.strip() or not author or not author.strip():
            raise ValidationError("Title and author are required.")

        accessions = [IdentifierValidator.normalize(a) for a in accession_numbers] if accession_numbers else [
            f"{call_number}-C{n:03d}" for n in range(1, copies + 1)
        ]
        if not accessions or any(not a for a in accessions):
            raise ValidationError("A book needs at least one copy with an accession number.")

        with connection(self.db_file) as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO books (isbn, call_number, title, author, publisher, year)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (norm_isbn, call_number, title.strip(), author.strip(), publisher, year),
                )
                book_id = cursor.lastrowid
                conn.executemany(
                    "INSERT INTO book_copies (book_id, accession_number) VALUES (?, ?)",
                    [(book_id, a) for a in accessions],
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(
                    f"Book with ISBN {norm_isbn} or call number {call_number} (or one of its accession numbers) already exists."
                ) from e
            book = recompute_book_aggregates(conn, book_id)
        logger.info(f"Cataloged '{book.title}' ({book.isbn}) with {book.copies_total} copies")
        return book

    def add_copy(self, book: Identifier, accession_number: str) -> BookCopy:
        accession_number = IdentifierValidator.normalize(accession_number)
        if not accession_number:
            raise ValidationError("Accession number cannot be empty.")
        with connection(self.db_file) as conn:
            target = self.find_book(book, conn=conn)
            try:
                cursor = conn.execute(
                    "INSERT INTO book_copies (book_id, accession_number) VALUES (?, ?)",
                    (target.id, accession_number),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Accession number {accession_number} already exists.") from e
            recompute_book_aggregates(conn, target.id)
            return self.get_copy(cursor.lastrowid, conn=conn)

    def add_patron(
        self,
        school_id: str,
        name: str,
        patron_type: PatronType = PatronType.STUDENT,
        email: Optional[str] = None,
    ) -> Patron:
        school_id = IdentifierValidator.normalize(school_id)
        if not school_id or not name or not name.strip():
            raise ValidationError("School id and name are required.")
        with connection(self.db_file) as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO patrons (school_id, name, patron_type, email) VALUES (?, ?, ?, ?)",
                    (school_id, name.strip(), PatronType(patron_type).value, email),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Patron with school id {school_id} already exists.") from e
            return self.get_patron(cursor.lastrowid, conn=conn)

    def set_book_active(self, book: Identifier, active: bool) -> Book:
        """Soft-archive (or restore) a title. Inactive titles cannot be issued."""
        with connection(self.db_file) as conn:
            target = self.find_book(book, conn=conn)
            conn.execute("UPDATE books SET is_active = ? WHERE id = ?", (1 if active else 0, target.id))
            return self.get_book(target.id, conn=conn)

    # ------------------------- Lookups ------------------------- #
    def get_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        with connection(self.db_file, conn, write=False) as c:
            row = c.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound(f"Book {book_id} not found.")
        return Book.from_row(row)

    def find_book(self, identifier: Identifier, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Resolve a book by ISBN, call number or row id."""
        with connection(self.db_file, conn, write=False) as c:
            row = None
            if isinstance(identifier, str):
                isbn = ISBNValidator.normalize_isbn(identifier)
                if ISBNValidator.looks_like_isbn(identifier):
                    row = c.execute("SELECT * FROM books WHERE isbn = ?", (isbn,)).fetchone()
                if row is None:
                    row = c.execute(
                        "SELECT * FROM books WHERE call_number = ?",
                        (IdentifierValidator.normalize(identifier),),
                    ).fetchone()
            if row is None:
                row_id = IdentifierValidator.as_row_id(identifier)
                if row_id is not None:
                    row = c.execute("SELECT * FROM books WHERE id = ?", (row_id,)).fetchone()
        if row is None:
            raise NotFound(f"Book {identifier} not found.")
        return Book.from_row(row)

    def list_books(self, conn: Optional[sqlite3.Connection] = None) -> List[Book]:
        with connection(self.db_file, conn, write=False) as c:
            rows = c.execute("SELECT * FROM books ORDER BY title").fetchall()
        return [Book.from_row(row) for row in rows]

    def get_copy(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        with connection(self.db_file, conn, write=False) as c:
            row = c.execute("SELECT * FROM book_copies WHERE id = ?", (copy_id,)).fetchone()
        if row is None:
            raise NotFound(f"Copy {copy_id} not found.")
        return BookCopy.from_row(row)

    def find_copy(self, identifier: Identifier, conn: Optional[sqlite3.Connection] = None) -> BookCopy:
        """Resolve a copy by accession number or row id."""
        with connection(self.db_file, conn, write=False) as c:
            row = None
            if isinstance(identifier, str):
                row = c.execute(
                    "SELECT * FROM book_copies WHERE accession_number = ?",
                    (IdentifierValidator.normalize(identifier),),
                ).fetchone()
            if row is None:
                row_id = IdentifierValidator.as_row_id(identifier)
                if row_id is not None:
                    row = c.execute("SELECT * FROM book_copies WHERE id = ?", (row_id,)).fetchone()
        if row is None:
            raise NotFound(f"Copy {identifier} not found.")
        return BookCopy.from_row(row)

    def list_copies(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> List[BookCopy]:
        with connection(self.db_file, conn, write=False) as c:
            rows = c.execute("SELECT * FROM book_copies WHERE book_id = ? ORDER BY id", (book_id,)).fetchall()
        return [BookCopy.from_row(row) for row in rows]

    def get_patron(self, patron_id: int, conn: Optional[sqlite3.Connection] = None) -> Patron:
        with connection(self.db_file, conn, write=False) as c:
            row = c.execute("SELECT * FROM patrons WHERE id = ?", (patron_id,)).fetchone()
        if row is None:
            raise NotFound(f"Patron {patron_id} not found.")
        return Patron.from_row(row)

    def find_patron(self, identifier: Identifier, conn: Optional[sqlite3.Connection] = None) -> Patron:
        """Resolve a patron by school id or row id."""
        with connection(self.db_file, conn, write=False) as c:
            row = None
            if isinstance(identifier, str):
                row = c.execute(
                    "SELECT * FROM patrons WHERE school_id = ?",
                    (IdentifierValidator.normalize(identifier),),
                ).fetchone()
            if row is None:
                row_id = IdentifierValidator.as_row_id(identifier)
                if row_id is not None:
                    row = c.execute("SELECT * FROM patrons WHERE id = ?", (row_id,)).fetchone()
        if row is None:
            raise NotFound(f"Patron {identifier} not found.")
        return Patron.from_row(row)
