"""Copy availability counters.

Every mutation of ``books.available_copies`` goes through this module and is a
single conditional UPDATE. The affected-row count tells whether the condition
held, so two requests racing for the last copy are serialized by the database
and exactly one of them wins. Nothing here reads a counter and writes it back
in a separate step.
"""

import logging
import sqlite3
from typing import Optional, Tuple

from .database import ConnectionPool
from .errors import BookNotFound, CopiesOnLoan, NoCopiesAvailable, OverReturn, ValidationFailed
from .models import Book

logger = logging.getLogger(__name__)


class AvailabilityLedger:
    """Keeps ``0 <= available_copies <= total_copies`` for every book."""

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    def checkout(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Take one copy off the shelf. Raises NoCopiesAvailable when none is left."""
        book = self._apply(
            conn,
            """
            UPDATE books SET available_copies = available_copies - 1
            WHERE id = ? AND available_copies > 0
            """,
            (book_id,),
            book_id,
            NoCopiesAvailable,
        )
        logger.info(f"Book copy reserved: book_id={book_id} remaining={book.available_copies}")
        return book

    def return_copy(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Put one copy back. Raises OverReturn if every copy is already on the shelf."""
        book = self._apply(
            conn,
            """
            UPDATE books SET available_copies = available_copies + 1
            WHERE id = ? AND available_copies < total_copies
            """,
            (book_id,),
            book_id,
            OverReturn,
        )
        logger.info(f"Book copy released: book_id={book_id} available={book.available_copies}")
        return book

    def adjust_total(self, book_id: int, new_total: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Change the number of owned copies, shifting available copies by the same amount.

        Fails with CopiesOnLoan when the new total is below the copies currently lent out.
        """
        if new_total < 0:
            raise ValidationFailed("Total copies cannot be negative")
        book = self._apply(
            conn,
            """
            UPDATE books
            SET available_copies = available_copies + (? - total_copies),
                total_copies = ?
            WHERE id = ? AND ? >= total_copies - available_copies
            """,
            (new_total, new_total, book_id, new_total),
            book_id,
            CopiesOnLoan,
        )
        logger.info(f"Book copies adjusted: book_id={book_id} total={book.total_copies} "
                    f"available={book.available_copies}")
        return book

    def snapshot(self, book_id: int) -> Tuple[int, int]:
        """Return (total_copies, available_copies)."""
        with self.pool.connection() as conn:
            row = conn.execute(
                "SELECT total_copies, available_copies FROM books WHERE id = ?", (book_id,)
            ).fetchone()
        if row is None:
            raise BookNotFound()
        return row["total_copies"], row["available_copies"]

    def _apply(self, conn, sql, params, book_id, failure) -> Book:
        if conn is None:
            with self.pool.transaction() as own:
                return self._apply(own, sql, params, book_id, failure)
        cursor = conn.execute(sql, params)
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise BookNotFound()
        if cursor.rowcount == 0:
            raise failure()
        return Book.from_row(row)
