"""Loans: borrowing, returning and renewing copies, plus loan reporting.

A borrow takes a copy from the availability ledger and writes the loan row in
the same transaction; a return flips the loan to ``returned`` with a
conditional UPDATE and gives the copy back in that transaction too. If either
half fails, neither is committed.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..config import Settings
from ..database import ConnectionPool, from_db_time, to_db_time, utcnow
from ..errors import (
    AlreadyReturned,
    DuplicateLoan,
    LoanLimitReached,
    LoanNotFound,
    LoanNotRenewable,
    PermissionDenied,
    UserNotFound,
    ValidationFailed,
)
from ..ledger import AvailabilityLedger
from ..models import LOAN_STATUSES, Loan, User
from ..validators import MAX_PERIOD_DAYS, clamp_pagination, page_count

logger = logging.getLogger(__name__)

MAX_RENEWAL_DAYS = 30
SORT_COLUMNS = {
    "loan_date": "l.loan_date",
    "due_date": "l.due_date",
    "return_date": "l.return_date",
    "status": "l.status",
    "book_title": "b.title",
    "user_name": "u.last_name",
}

_LOAN_SELECT = """
    SELECT l.*,
           b.title AS book_title, b.author AS book_author,
           b.isbn AS book_isbn, b.cover_image_url AS book_cover,
           u.first_name || ' ' || u.last_name AS user_name, u.email AS user_email
    FROM book_loans l
    JOIN books b ON b.id = l.book_id
    JOIN users u ON u.id = l.user_id
"""


class LoanService:
    def __init__(self, pool: ConnectionPool, ledger: AvailabilityLedger, settings: Settings,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.pool = pool
        self.ledger = ledger
        self.settings = settings
        self.clock = clock

    # ------------------------- Borrow / return / renew ------------------------- #
    def borrow_book(self, user: User, book_id: int, loan_period_days: Optional[int] = None,
                    notes: Optional[str] = None) -> Loan:
        """Lend one copy of ``book_id`` to ``user``."""
        days = self.settings.default_loan_period_days if loan_period_days is None else int(loan_period_days)
        if not 1 <= days <= MAX_RENEWAL_DAYS * 2:
            raise ValidationFailed(f"Loan period must be between 1 and {MAX_RENEWAL_DAYS * 2} days")
        now = self.clock()

        with self.pool.transaction() as conn:
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM book_loans WHERE user_id = ? AND status != 'returned'", (user.id,)
            ).fetchone()[0]
            if open_loans >= user.max_books_allowed:
                raise LoanLimitReached(f"Maximum loan limit reached ({user.max_books_allowed} books)")
            if conn.execute(
                "SELECT 1 FROM book_loans WHERE user_id = ? AND book_id = ? AND status != 'returned'",
                (user.id, book_id),
            ).fetchone():
                raise DuplicateLoan()

            self.ledger.checkout(book_id, conn=conn)
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO book_loans (book_id, user_id, loan_date, due_date, status, notes)
                    VALUES (?, ?, ?, ?, 'active', ?)
                    """,
                    (book_id, user.id, to_db_time(now), to_db_time(now + timedelta(days=days)), notes),
                )
            except sqlite3.IntegrityError as e:
                # one open loan per (user, book) is also enforced by a partial unique index
                if "UNIQUE" in str(e):
                    raise DuplicateLoan() from e
                raise
            loan_id = cursor.lastrowid

        logger.info(f"Book borrowed: loan_id={loan_id} book_id={book_id} user_id={user.id} "
                    f"open_loans={open_loans + 1}")
        return self._load(loan_id)

    def return_book(self, loan_id: int, user: User, notes: Optional[str] = None,
                    force: bool = False) -> Loan:
        """Close a loan and put its copy back on the shelf.

        Members may only return their own loans; librarians (or ``force``) may return any.
        """
        loan = self._load(loan_id)
        if not (force or user.is_librarian or loan.user_id == user.id):
            raise PermissionDenied("You can only return your own borrowed books")
        if loan.is_returned:
            raise AlreadyReturned()
        was_overdue = loan.is_overdue(self.clock())

        with self.pool.transaction() as conn:
            closed = conn.execute(
                """
                UPDATE book_loans
                SET status = 'returned', return_date = ?,
                    notes = CASE WHEN ? IS NULL THEN notes
                                 WHEN notes IS NULL THEN ?
                                 ELSE notes || '; ' || ? END
                WHERE id = ? AND status != 'returned'
                """,
                (to_db_time(self.clock()), notes, notes, notes, loan_id),
            ).rowcount
            if not closed:
                raise AlreadyReturned()
            self.ledger.return_copy(loan.book_id, conn=conn)

        logger.info(f"Book returned: loan_id={loan_id} book_id={loan.book_id} user_id={loan.user_id} "
                    f"returned_by={user.id} was_overdue={was_overdue}")
        return self._load(loan_id)

    def force_return(self, loan_id: int, librarian: User, notes: Optional[str] = None) -> Loan:
        """Librarian return for lost or damaged copies."""
        if not librarian.is_librarian:
            raise PermissionDenied("Only librarians can force return books")
        return self.return_book(loan_id, librarian, notes=notes or "Force returned by librarian", force=True)

    def renew_loan(self, loan_id: int, user: User, extension_days: Optional[int] = None,
                   notes: Optional[str] = None) -> Loan:
        """Push the due date back. Only active loans that are not yet due may be renewed."""
        days = self.settings.default_loan_period_days if extension_days is None else int(extension_days)
        if not 1 <= days <= MAX_RENEWAL_DAYS:
            raise ValidationFailed(f"Extension must be between 1 and {MAX_RENEWAL_DAYS} days")
        loan = self._load(loan_id)
        if not user.is_librarian and loan.user_id != user.id:
            raise PermissionDenied("You can only renew your own loans")

        with self.pool.transaction() as conn:
            renewed = conn.execute(
                """
                UPDATE book_loans
                SET due_date = datetime(due_date, ?),
                    notes = CASE WHEN ? IS NULL THEN notes
                                 WHEN notes IS NULL THEN ?
                                 ELSE notes || '; ' || ? END
                WHERE id = ? AND status = 'active' AND due_date > ?
                """,
                (f"+{days} days", notes, notes, notes, loan_id, to_db_time(self.clock())),
            ).rowcount
        if not renewed:
            raise LoanNotRenewable()

        renewed_loan = self._load(loan_id)
        logger.info(f"Loan renewed: loan_id={loan_id} renewed_by={user.id} "
                    f"old_due={loan.due_date.isoformat()} new_due={renewed_loan.due_date.isoformat()}")
        return renewed_loan

    def mark_overdue_loans(self) -> int:
        """Flag active loans past their due date as ``overdue``."""
        with self.pool.transaction() as conn:
            count = conn.execute(
                "UPDATE book_loans SET status = 'overdue' WHERE status = 'active' AND due_date < ?",
                (to_db_time(self.clock()),),
            ).rowcount
        if count:
            logger.info(f"Loans marked as overdue: count={count}")
        return count

    # ------------------------- Lookups ------------------------- #
    def get_loan(self, loan_id: int, user: User) -> Loan:
        loan = self._load(loan_id)
        if not user.is_librarian and loan.user_id != user.id:
            raise PermissionDenied()
        return loan

    def _load(self, loan_id: int) -> Loan:
        with self.pool.connection() as conn:
            row = conn.execute(_LOAN_SELECT + " WHERE l.id = ?", (loan_id,)).fetchone()
        if row is None:
            raise LoanNotFound()
        return Loan.from_row(row)

    def user_loans(self, user_id: int, status: Optional[str] = None, page: int = 1,
                   limit: Optional[int] = None) -> Dict[str, Any]:
        conditions, params = ["l.user_id = ?"], [user_id]
        if status:
            self._check_status(status)
            conditions.append("l.status = ?")
            params.append(status)
        return self._page(conditions, params, "l.loan_date DESC, l.id DESC", page, limit)

    def all_loans(self, status: Optional[str] = None, user_id: Optional[int] = None,
                  book_id: Optional[int] = None, overdue_only: bool = False, page: int = 1,
                  limit: Optional[int] = None, sort_by: str = "loan_date",
                  sort_order: str = "desc") -> Dict[str, Any]:
        if sort_by not in SORT_COLUMNS:
            raise ValidationFailed(f"Invalid sort_by. Allowed: {', '.join(SORT_COLUMNS)}")
        if sort_order.lower() not in ("asc", "desc"):
            raise ValidationFailed("Invalid sort_order. Allowed: asc, desc")
        conditions: List[str] = []
        params: List[Any] = []
        if status:
            self._check_status(status)
            conditions.append("l.status = ?")
            params.append(status)
        if user_id is not None:
            conditions.append("l.user_id = ?")
            params.append(user_id)
        if book_id is not None:
            conditions.append("l.book_id = ?")
            params.append(book_id)
        if overdue_only:
            conditions.append(self._overdue_condition())
            params.append(to_db_time(self.clock()))
        order = f"{SORT_COLUMNS[sort_by]} {sort_order.upper()}, l.id DESC"
        return self._page(conditions, params, order, page, limit)

    def overdue_loans(self, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        """Loans flagged overdue plus active loans already past due but not yet flagged."""
        return self._page([self._overdue_condition()], [to_db_time(self.clock())],
                          "l.due_date ASC, l.id ASC", page, limit)

    @staticmethod
    def _overdue_condition() -> str:
        return "(l.status = 'overdue' OR (l.status = 'active' AND l.due_date < ?))"

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in LOAN_STATUSES:
            raise ValidationFailed(f"Invalid status. Allowed: {', '.join(LOAN_STATUSES)}")

    def _page(self, conditions: List[str], params: List[Any], order: str, page: int,
              limit: Optional[int]) -> Dict[str, Any]:
        page, limit, offset = clamp_pagination(page, limit, self.settings.default_page_size,
                                               self.settings.max_page_size)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        with self.pool.connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM book_loans l JOIN books b ON b.id = l.book_id "
                f"JOIN users u ON u.id = l.user_id{where}",
                params,
            ).fetchone()[0]
            rows = conn.execute(
                _LOAN_SELECT + where + f" ORDER BY {order} LIMIT ? OFFSET ?", (*params, limit, offset)
            ).fetchall()
        return {
            "loans": [Loan.from_row(r) for r in rows],
            "total": total,
            "page": page,
            "pages": page_count(total, limit),
            "limit": limit,
        }

    # ------------------------- Reporting ------------------------- #
    def statistics(self) -> Dict[str, Any]:
        now = self.clock()
        with self.pool.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_loans,
                       COALESCE(SUM(status = 'active'), 0) AS active_loans,
                       COALESCE(SUM(status = 'returned'), 0) AS returned_loans,
                       COALESCE(SUM(status = 'overdue'), 0) AS overdue_loans,
                       COALESCE(SUM(status = 'active' AND due_date < ?), 0) AS newly_overdue,
                       COALESCE(SUM(loan_date >= ?), 0) AS loans_this_month,
                       AVG(CASE WHEN return_date IS NOT NULL
                                THEN julianday(return_date) - julianday(loan_date) END) AS avg_loan_duration,
                       COUNT(DISTINCT user_id) AS active_borrowers,
                       COUNT(DISTINCT book_id) AS borrowed_books
                FROM book_loans
                """,
                (to_db_time(now), to_db_time(now - timedelta(days=30))),
            ).fetchone()
        stats = dict(row)
        avg = stats["avg_loan_duration"]
        stats["avg_loan_duration"] = round(avg, 1) if avg is not None else None
        return stats

    def most_borrowed_books(self, limit: int = 10, period_days: int = 30) -> List[Dict[str, Any]]:
        limit = min(max(1, int(limit)), 50)
        since = self.clock() - timedelta(days=min(max(1, int(period_days)), MAX_PERIOD_DAYS))
        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT b.id, b.title, b.author, b.isbn, b.cover_image_url, COUNT(l.id) AS borrow_count
                FROM books b JOIN book_loans l ON l.book_id = b.id
                WHERE l.loan_date >= ?
                GROUP BY b.id
                ORDER BY borrow_count DESC, b.title ASC
                LIMIT ?
                """,
                (to_db_time(since), limit),
            ).fetchall()
        return [dict(r) for r in rows]

    def member_summary(self, user_id: int) -> Dict[str, Any]:
        with self.pool.connection() as conn:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                raise UserNotFound()
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_loans,
                       COALESCE(SUM(status = 'active'), 0) AS active_loans,
                       COALESCE(SUM(status = 'returned'), 0) AS returned_loans,
                       COALESCE(SUM(status = 'overdue'), 0) AS overdue_loans,
                       AVG(julianday(COALESCE(return_date, ?)) - julianday(loan_date)) AS avg_loan_duration,
                       MAX(loan_date) AS last_loan_date,
                       COUNT(DISTINCT book_id) AS unique_books_borrowed
                FROM book_loans WHERE user_id = ?
                """,
                (to_db_time(self.clock()), user_id),
            ).fetchone()
        summary = dict(row)
        avg = summary["avg_loan_duration"]
        summary["avg_loan_duration"] = round(avg, 1) if avg is not None else None
        last = from_db_time(summary["last_loan_date"])
        summary["last_loan_date"] = last.isoformat() if last else None
        summary["user_id"] = user_id
        return summary

    def borrowing_eligibility(self, user_id: int) -> Dict[str, Any]:
        with self.pool.connection() as conn:
            user = conn.execute("SELECT max_books_allowed FROM users WHERE id = ?", (user_id,)).fetchone()
            if user is None:
                return {"can_borrow": False, "active_loans": 0, "max_allowed": 0,
                        "reason": "User not found"}
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM book_loans WHERE user_id = ? AND status != 'returned'", (user_id,)
            ).fetchone()[0]
        max_allowed = user["max_books_allowed"]
        result = {
            "can_borrow": open_loans < max_allowed,
            "active_loans": open_loans,
            "max_allowed": max_allowed,
            "remaining": max(0, max_allowed - open_loans),
        }
        if not result["can_borrow"]:
            result["reason"] = f"Maximum loan limit reached ({max_allowed} books)"
        return result
