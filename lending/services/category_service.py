import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..database import ConnectionPool
from ..errors import CategoryNotFound, Conflict, DuplicateCategory, ValidationFailed
from ..models import Category
from ..validators import LIKE, TextValidator, clamp_pagination, like_pattern, page_count

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500

_WITH_COUNT = """
    SELECT c.*, COUNT(bc.book_id) AS book_count
    FROM categories c
    LEFT JOIN book_categories bc ON bc.category_id = c.id
"""


class CategoryService:
    def __init__(self, pool: ConnectionPool, settings: Settings) -> None:
        self.pool = pool
        self.settings = settings

    @staticmethod
    def _clean_name(name: Optional[str]) -> str:
        name = TextValidator.sanitize_text(name)
        if not name:
            raise ValidationFailed("Category name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationFailed(f"Category name must be less than {MAX_NAME_LENGTH} characters")
        return name

    @staticmethod
    def _clean_description(description: Optional[str]) -> Optional[str]:
        if description is None:
            return None
        description = TextValidator.sanitize_text(description)
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationFailed(
                f"Category description must be less than {MAX_DESCRIPTION_LENGTH} characters"
            )
        return description or None

    def create_category(self, name: str, description: Optional[str] = None) -> Category:
        name = self._clean_name(name)
        description = self._clean_description(description)
        with self.pool.transaction() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO categories (name, description) VALUES (?, ?)", (name, description)
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateCategory() from e
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (cursor.lastrowid,)).fetchone()
        logger.info(f"Category created: category_id={row['id']} name={name!r}")
        return Category.from_row(row)

    def update_category(self, category_id: int, name: Optional[str] = None,
                        description: Optional[str] = None) -> Category:
        fields, params = [], []
        if name is not None:
            fields.append("name = ?")
            params.append(self._clean_name(name))
        if description is not None:
            fields.append("description = ?")
            params.append(self._clean_description(description))
        if not fields:
            raise ValidationFailed("Provide a name and/or description to update")
        with self.pool.transaction() as conn:
            try:
                updated = conn.execute(
                    f"UPDATE categories SET {', '.join(fields)} WHERE id = ?", (*params, category_id)
                ).rowcount
            except sqlite3.IntegrityError as e:
                raise DuplicateCategory() from e
            if not updated:
                raise CategoryNotFound()
        return self.get_category(category_id)

    def delete_category(self, category_id: int) -> None:
        with self.pool.transaction() as conn:
            deleted = conn.execute(
                """
                DELETE FROM categories WHERE id = ?
                AND NOT EXISTS (SELECT 1 FROM book_categories WHERE category_id = ?)
                """,
                (category_id, category_id),
            ).rowcount
            if not deleted:
                exists = conn.execute("SELECT 1 FROM categories WHERE id = ?", (category_id,)).fetchone()
                if not exists:
                    raise CategoryNotFound()
                raise Conflict("Cannot delete category that has associated books")
        logger.info(f"Category deleted: category_id={category_id}")

    def get_category(self, category_id: int) -> Category:
        with self.pool.connection() as conn:
            row = conn.execute(
                _WITH_COUNT + " WHERE c.id = ? GROUP BY c.id", (category_id,)
            ).fetchone()
        if row is None:
            raise CategoryNotFound()
        return Category.from_row(row)

    def list_categories(self, page: int = 1, limit: Optional[int] = None,
                        search: Optional[str] = None) -> Dict[str, Any]:
        page, limit, offset = clamp_pagination(page, limit, self.settings.default_page_size,
                                               self.settings.max_page_size)
        where, params = "", []
        if search:
            where = f" WHERE c.name {LIKE} OR c.description {LIKE}"
            params = [like_pattern(search), like_pattern(search)]
        with self.pool.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM categories c{where}", params).fetchone()[0]
            rows = conn.execute(
                _WITH_COUNT + where + " GROUP BY c.id ORDER BY c.name ASC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return {
            "categories": [Category.from_row(r) for r in rows],
            "total": total,
            "page": page,
            "pages": page_count(total, limit),
            "limit": limit,
        }

    def popular_categories(self, limit: int = 10) -> List[Category]:
        limit = min(max(1, int(limit)), 50)
        with self.pool.connection() as conn:
            rows = conn.execute(
                _WITH_COUNT + """
                GROUP BY c.id HAVING COUNT(bc.book_id) > 0
                ORDER BY book_count DESC, c.name ASC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [Category.from_row(r) for r in rows]

    def category_options(self) -> List[Dict[str, Any]]:
        """id/name pairs for select inputs."""
        with self.pool.connection() as conn:
            rows = conn.execute("SELECT id, name FROM categories ORDER BY name ASC").fetchall()
        return [{"id": r["id"], "name": r["name"]} for r in rows]

    def search_categories(self, term: Optional[str], limit: int = 10) -> List[Category]:
        term = (term or "").strip()
        if not term:
            raise ValidationFailed("Search term is required")
        if len(term) < 2:
            raise ValidationFailed("Search term must be at least 2 characters")
        limit = min(max(1, int(limit)), 50)
        with self.pool.connection() as conn:
            rows = conn.execute(
                _WITH_COUNT + f"""
                WHERE c.name {LIKE} GROUP BY c.id
                ORDER BY CASE WHEN c.name {LIKE} THEN 0 ELSE 1 END, c.name ASC LIMIT ?
                """,
                (like_pattern(term), like_pattern(term, prefix=True), limit),
            ).fetchall()
        return [Category.from_row(r) for r in rows]

    def statistics(self) -> Dict[str, Any]:
        with self.pool.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_categories,
                       COALESCE(SUM(CASE WHEN book_count > 0 THEN 1 ELSE 0 END), 0) AS categories_with_books,
                       AVG(book_count) AS avg_books_per_category
                FROM (
                    SELECT c.id, COUNT(bc.book_id) AS book_count
                    FROM categories c LEFT JOIN book_categories bc ON bc.category_id = c.id
                    GROUP BY c.id
                )
                """
            ).fetchone()
        avg = row["avg_books_per_category"]
        return {
            "total_categories": row["total_categories"],
            "categories_with_books": row["categories_with_books"],
            "avg_books_per_category": round(avg, 2) if avg is not None else 0,
        }
