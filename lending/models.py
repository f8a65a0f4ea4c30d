from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Mapping

from .database import from_db_time, utcnow

ROLES = ("member", "librarian")
LOAN_STATUSES = ("active", "returned", "overdue")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class User:
    """A library account: either a member or a librarian."""

    def __init__(self, id: int, email: str, first_name: str, last_name: str, role: str = "member",
                 password_hash: str | None = None, max_books_allowed: int = 10,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.email = email
        self.first_name = first_name
        self.last_name = last_name
        self.role = role
        self.password_hash = password_hash
        self.max_books_allowed = max_books_allowed
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_librarian(self) -> bool:
        return self.role == "librarian"

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User {self.id} {self.email} ({self.role})>"

    def to_token_payload(self) -> dict:
        return {
            "sub": str(self.id),
            "email": self.email,
            "role": self.role,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }

    def to_dict(self) -> dict:
        # password_hash never leaves the service layer
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "role": self.role,
            "max_books_allowed": self.max_books_allowed,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        return User(
            id=row["id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row["role"],
            password_hash=row["password_hash"],
            max_books_allowed=row["max_books_allowed"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )


class Category:
    def __init__(self, id: int, name: str, description: str | None = None, book_count: int | None = None,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.name = name
        self.description = description
        self.book_count = book_count
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if self.book_count is not None:
            data["book_count"] = self.book_count
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Category":
        keys = row.keys()
        return Category(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            book_count=row["book_count"] if "book_count" in keys else None,
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )


class Book:
    """A catalogue entry together with its copy counters."""

    def __init__(self, id: int, isbn: str, title: str, author: str, total_copies: int = 1,
                 available_copies: int = 1, publisher: str | None = None,
                 publication_year: int | None = None, description: str | None = None,
                 cover_image_url: str | None = None, categories: list | None = None,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.isbn = isbn
        self.title = title
        self.author = author
        self.total_copies = total_copies
        self.available_copies = available_copies
        self.publisher = publisher
        self.publication_year = publication_year
        self.description = description
        self.cover_image_url = cover_image_url
        self.categories = categories or []
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    @property
    def borrowed_copies(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "publication_year": self.publication_year,
            "description": self.description,
            "cover_image_url": self.cover_image_url,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "is_available": self.is_available,
            "categories": [c.to_dict() if isinstance(c, Category) else c for c in self.categories],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        return Book(
            id=row["id"],
            isbn=row["isbn"],
            title=row["title"],
            author=row["author"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            publisher=row["publisher"],
            publication_year=row["publication_year"],
            description=row["description"],
            cover_image_url=row["cover_image_url"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )


class Loan:
    """One checkout of one copy by one user."""

    def __init__(self, id: int, book_id: int, user_id: int, loan_date: datetime, due_date: datetime,
                 return_date: datetime | None = None, status: str = "active", notes: str | None = None,
                 book_title: str | None = None, book_author: str | None = None,
                 book_isbn: str | None = None, book_cover: str | None = None,
                 user_name: str | None = None, user_email: str | None = None,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.loan_date = loan_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = status
        self.notes = notes
        # Joined columns, present when the query selected them
        self.book_title = book_title
        self.book_author = book_author
        self.book_isbn = book_isbn
        self.book_cover = book_cover
        self.user_name = user_name
        self.user_email = user_email
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_returned(self) -> bool:
        return self.status == "returned"

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.status == "overdue" or (self.is_active and now > self.due_date)

    def can_renew(self, now: datetime | None = None) -> bool:
        # Only loans that are still active and on time may be extended
        return self.is_active and not self.is_overdue(now)

    def days_until_due(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        return math.ceil((self.due_date - now).total_seconds() / 86400)

    def status_info(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        days = self.days_until_due(now)
        return {
            "status": self.status,
            "is_overdue": self.is_overdue(now),
            "days_until_due": days,
            "days_overdue": -days if days < 0 and not self.is_returned else 0,
            "can_renew": self.can_renew(now),
        }

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "loan_date": _iso(self.loan_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status,
            "notes": self.notes,
            "status_info": self.status_info(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        for key in ("book_title", "book_author", "book_isbn", "book_cover", "user_name", "user_email"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Loan":
        keys = row.keys()

        def joined(name: str):
            return row[name] if name in keys else None

        return Loan(
            id=row["id"],
            book_id=row["book_id"],
            user_id=row["user_id"],
            loan_date=from_db_time(row["loan_date"]),
            due_date=from_db_time(row["due_date"]),
            return_date=from_db_time(row["return_date"]),
            status=row["status"],
            notes=row["notes"],
            book_title=joined("book_title"),
            book_author=joined("book_author"),
            book_isbn=joined("book_isbn"),
            book_cover=joined("book_cover"),
            user_name=joined("user_name"),
            user_email=joined("user_email"),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
