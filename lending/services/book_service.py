import logging
import re
import sqlite3
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..config import Settings
from ..database import ConnectionPool, to_db_time, utcnow
from ..errors import BookNotFound, CategoryNotFound, CopiesOnLoan, DuplicateIsbn, ValidationFailed
from ..ledger import AvailabilityLedger
from ..models import Book, Category
from ..validators import (
    LIKE,
    MAX_PERIOD_DAYS,
    ISBNValidator,
    TextValidator,
    clamp_pagination,
    like_pattern,
    page_count,
)

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "title": "b.title",
    "author": "b.author",
    "publication_year": "b.publication_year",
    "created_at": "b.created_at",
    "available_copies": "b.available_copies",
}
ISBN_LIKE = re.compile(r"[0-9Xx\- ]+")
EDITABLE_FIELDS = ("isbn", "title", "author", "publisher", "publication_year",
                   "description", "cover_image_url")


class BookService:
    """Catalogue management and search. Copy counters are delegated to the ledger."""

    def __init__(self, pool: ConnectionPool, ledger: AvailabilityLedger, settings: Settings) -> None:
        self.pool = pool
        self.ledger = ledger
        self.settings = settings

    # ------------------------- Core operations ------------------------- #
    def _clean(self, data: Dict[str, Any]) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        if "isbn" in data:
            cleaned["isbn"] = ISBNValidator.clean(data["isbn"])
        if "title" in data:
            if not TextValidator.validate_title(data["title"]):
                raise ValidationFailed("Title is required")
            cleaned["title"] = TextValidator.sanitize_text(data["title"])
        if "author" in data:
            if not TextValidator.validate_author(data["author"]):
                raise ValidationFailed("Author is required and must contain a letter")
            cleaned["author"] = TextValidator.sanitize_text(data["author"])
        for key in ("publisher", "description"):
            if key in data:
                cleaned[key] = TextValidator.sanitize_text(data[key]) or None
        if "publication_year" in data:
            year = data["publication_year"]
            if year is not None and not 1000 <= int(year) <= utcnow().year + 1:
                raise ValidationFailed("Publication year is out of range")
            cleaned["publication_year"] = year
        if "cover_image_url" in data:
            cleaned["cover_image_url"] = data["cover_image_url"] or None
        return cleaned

    def create_book(self, data: Dict[str, Any], category_ids: Optional[Iterable[int]] = None) -> Book:
        for required in ("isbn", "title", "author"):
            if not data.get(required):
                raise ValidationFailed(f"{required} is required")
        fields = self._clean(data)
        total = int(data.get("total_copies", 1))
        if total < 1:
            raise ValidationFailed("Total copies must be at least 1")
        available = data.get("available_copies")
        available = total if available is None else int(available)
        if available < 0 or available > total:
            raise ValidationFailed("Available copies must be between 0 and total copies")

        with self.pool.transaction() as conn:
            columns = list(fields) + ["total_copies", "available_copies"]
            try:
                cursor = conn.execute(
                    f"INSERT INTO books ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                    (*fields.values(), total, available),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateIsbn() from e
            book_id = cursor.lastrowid
            if category_ids:
                self._set_categories(conn, book_id, category_ids)
        logger.info(f"Book created: book_id={book_id} isbn={fields['isbn']} title={fields['title']!r}")
        return self.get_book(book_id)

    def update_book(self, book_id: int, updates: Dict[str, Any],
                    category_ids: Optional[Iterable[int]] = None) -> Book:
        """Update catalogue fields; a new ``total_copies`` goes through the ledger."""
        if "available_copies" in updates:
            raise ValidationFailed("Available copies change only through checkouts and returns")
        fields = self._clean({k: v for k, v in updates.items() if k in EDITABLE_FIELDS})
        new_total = updates.get("total_copies")
        if new_total is not None and int(new_total) < 1:
            raise ValidationFailed("Total copies must be at least 1")

        with self.pool.transaction() as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise BookNotFound()
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                try:
                    conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", (*fields.values(), book_id))
                except sqlite3.IntegrityError as e:
                    raise DuplicateIsbn() from e
            if new_total is not None:
                try:
                    self.ledger.adjust_total(book_id, int(new_total), conn=conn)
                except CopiesOnLoan:
                    total, available = self._counts(conn, book_id)
                    raise CopiesOnLoan(
                        f"Cannot reduce total copies below currently borrowed copies ({total - available})"
                    ) from None
            if category_ids is not None:
                self._set_categories(conn, book_id, category_ids)
        logger.info(f"Book updated: book_id={book_id} fields={sorted(set(fields) | ({'total_copies'} if new_total is not None else set()))}")
        return self.get_book(book_id)

    def delete_book(self, book_id: int) -> None:
        """Remove a book. Refused while any copy is on loan."""
        with self.pool.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM books WHERE id = ? AND available_copies = total_copies", (book_id,)
            ).rowcount
            if not deleted:
                if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                    raise BookNotFound()
                raise CopiesOnLoan("Cannot delete book with active loans")
        logger.info(f"Book deleted: book_id={book_id}")

    def get_book(self, book_id: int, include_categories: bool = True) -> Book:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                raise BookNotFound()
            book = Book.from_row(row)
            if include_categories:
                book.categories = self._categories_for(conn, [book.id]).get(book.id, [])
        return book

    def check_availability(self, book_id: int) -> Dict[str, Any]:
        try:
            total, available = self.ledger.snapshot(book_id)
        except BookNotFound:
            return {"available": False, "book_id": book_id, "reason": "Book not found"}
        result = {
            "available": available > 0,
            "book_id": book_id,
            "total_copies": total,
            "available_copies": available,
        }
        if available <= 0:
            result["reason"] = "No copies available"
        return result

    # ------------------------- Search ------------------------- #
    def search_books(self, search: Optional[str] = None, author: Optional[str] = None,
                     publisher: Optional[str] = None, category: Optional[str] = None,
                     year_from: Optional[int] = None, year_to: Optional[int] = None,
                     available_only: bool = False, page: int = 1, limit: Optional[int] = None,
                     sort_by: str = "title", sort_order: str = "asc") -> Dict[str, Any]:
        page, limit, offset = clamp_pagination(page, limit, self.settings.default_page_size,
                                               self.settings.max_page_size)
        if year_from is not None and year_to is not None and int(year_from) > int(year_to):
            raise ValidationFailed("Year from cannot be greater than year to")
        if sort_by not in SORT_COLUMNS:
            raise ValidationFailed(f"Invalid sort_by. Allowed: {', '.join(SORT_COLUMNS)}")
        if sort_order.lower() not in ("asc", "desc"):
            raise ValidationFailed("Invalid sort_order. Allowed: asc, desc")

        conditions: List[str] = []
        params: List[Any] = []
        if search:
            conditions.append(f"""(b.title {LIKE} OR b.author {LIKE}
                OR b.isbn {LIKE} OR b.description {LIKE})""")
            isbn_term = ISBNValidator.normalize_isbn(search) if ISBN_LIKE.fullmatch(search) else search
            term = like_pattern(search)
            params += [term, term, like_pattern(isbn_term), term]
        if author:
            conditions.append(f"b.author {LIKE}")
            params.append(like_pattern(author))
        if publisher:
            conditions.append(f"b.publisher {LIKE}")
            params.append(like_pattern(publisher))
        if category:
            conditions.append("""EXISTS (
                SELECT 1 FROM book_categories bc JOIN categories c ON c.id = bc.category_id
                WHERE bc.book_id = b.id AND c.name = ?)""")
            params.append(category)
        if year_from is not None:
            conditions.append("b.publication_year >= ?")
            params.append(int(year_from))
        if year_to is not None:
            conditions.append("b.publication_year <= ?")
            params.append(int(year_to))
        if available_only:
            conditions.append("b.available_copies > 0")

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        order = f"{SORT_COLUMNS[sort_by]} {sort_order.upper()}, b.id ASC"
        return self._page(f"FROM books b{where}", params, order, page, limit, offset)

    def books_by_category(self, category_id: int, page: int = 1, limit: Optional[int] = None,
                          available_only: bool = False) -> Dict[str, Any]:
        page, limit, offset = clamp_pagination(page, limit, self.settings.default_page_size,
                                               self.settings.max_page_size)
        with self.pool.connection() as conn:
            if not conn.execute("SELECT 1 FROM categories WHERE id = ?", (category_id,)).fetchone():
                raise CategoryNotFound()
        where = "FROM books b JOIN book_categories bc ON bc.book_id = b.id WHERE bc.category_id = ?"
        if available_only:
            where += " AND b.available_copies > 0"
        return self._page(where, [category_id], "b.title ASC, b.id ASC", page, limit, offset)

    def _page(self, from_where: str, params: List[Any], order: str,
              page: int, limit: int, offset: int) -> Dict[str, Any]:
        with self.pool.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) {from_where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT b.* {from_where} ORDER BY {order} LIMIT ? OFFSET ?", (*params, limit, offset)
            ).fetchall()
            books = [Book.from_row(r) for r in rows]
            self._attach_categories(conn, books)
        return {
            "books": books,
            "total": total,
            "page": page,
            "pages": page_count(total, limit),
            "limit": limit,
        }

    def popular_books(self, limit: int = 10, period_days: int = 30) -> List[Dict[str, Any]]:
        """Books ranked by number of loans started in the last ``period_days``."""
        limit = min(max(1, int(limit)), 50)
        since = utcnow() - timedelta(days=min(max(1, int(period_days)), MAX_PERIOD_DAYS))
        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT b.*, COUNT(l.id) AS loan_count
                FROM books b JOIN book_loans l ON l.book_id = b.id
                WHERE l.loan_date >= ?
                GROUP BY b.id
                ORDER BY loan_count DESC, b.title ASC
                LIMIT ?
                """,
                (to_db_time(since), limit),
            ).fetchall()
            books = [Book.from_row(r) for r in rows]
            self._attach_categories(conn, books)
        return [{**book.to_dict(), "loan_count": row["loan_count"]} for book, row in zip(books, rows)]

    def recent_books(self, limit: int = 10, available_only: bool = False) -> List[Book]:
        limit = min(max(1, int(limit)), 50)
        where = "WHERE available_copies > 0" if available_only else ""
        with self.pool.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM books {where} ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
            books = [Book.from_row(r) for r in rows]
            self._attach_categories(conn, books)
        return books

    def statistics(self) -> Dict[str, Any]:
        month_ago = to_db_time(utcnow() - timedelta(days=30))
        with self.pool.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_books,
                       COALESCE(SUM(total_copies), 0) AS total_copies,
                       COALESCE(SUM(available_copies), 0) AS available_copies,
                       COALESCE(SUM(CASE WHEN available_copies > 0 THEN 1 ELSE 0 END), 0) AS available_books,
                       COALESCE(SUM(CASE WHEN available_copies = 0 THEN 1 ELSE 0 END), 0) AS unavailable_books,
                       COUNT(DISTINCT author) AS unique_authors,
                       COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) AS new_books_this_month
                FROM books
                """,
                (month_ago,),
            ).fetchone()
        stats = dict(row)
        stats["borrowed_copies"] = stats["total_copies"] - stats["available_copies"]
        return stats

    # ------------------------- Categories ------------------------- #
    def _set_categories(self, conn: sqlite3.Connection, book_id: int, category_ids: Iterable[int]) -> None:
        ids = sorted(set(int(c) for c in category_ids))
        if ids:
            found = conn.execute(
                f"SELECT COUNT(*) FROM categories WHERE id IN ({', '.join('?' for _ in ids)})", ids
            ).fetchone()[0]
            if found != len(ids):
                raise CategoryNotFound("One or more categories do not exist")
        conn.execute("DELETE FROM book_categories WHERE book_id = ?", (book_id,))
        for category_id in ids:
            conn.execute(
                "INSERT INTO book_categories (book_id, category_id) VALUES (?, ?)", (book_id, category_id)
            )

    def _categories_for(self, conn: sqlite3.Connection, book_ids: List[int]) -> Dict[int, List[Category]]:
        if not book_ids:
            return {}
        rows = conn.execute(
            f"""
            SELECT bc.book_id, c.* FROM book_categories bc
            JOIN categories c ON c.id = bc.category_id
            WHERE bc.book_id IN ({', '.join('?' for _ in book_ids)})
            ORDER BY c.name
            """,
            book_ids,
        ).fetchall()
        grouped: Dict[int, List[Category]] = {}
        for row in rows:
            grouped.setdefault(row["book_id"], []).append(Category.from_row(row))
        return grouped

    def _attach_categories(self, conn: sqlite3.Connection, books: List[Book]) -> None:
        grouped = self._categories_for(conn, [b.id for b in books])
        for book in books:
            book.categories = grouped.get(book.id, [])

    @staticmethod
    def _counts(conn: sqlite3.Connection, book_id: int):
        row = conn.execute("SELECT total_copies, available_copies FROM books WHERE id = ?", (book_id,)).fetchone()
        return row["total_copies"], row["available_copies"]
