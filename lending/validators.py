import re
from typing import Optional, Tuple

from .errors import ValidationFailed

ISBN_LABEL = re.compile(r"^\s*ISBN(?:-1[03])?:?\s*", re.IGNORECASE)
ISBN_SEPARATORS = re.compile(r"[\s-]+")
ISBN10 = re.compile(r"\d{9}[\dX]")
ISBN13 = re.compile(r"\d{13}")


class ISBNValidator:
    """ISBNs are stored as bare digits; an ISBN-10 may end in ``X``."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        """Drop an ``ISBN:`` label, hyphens and spaces."""
        if not raw:
            return ""
        return ISBN_SEPARATORS.sub("", ISBN_LABEL.sub("", raw)).upper()

    @staticmethod
    def isbn10_checksum_ok(digits: str) -> bool:
        values = [10 if ch == "X" else int(ch) for ch in digits]
        return sum(weight * value for weight, value in zip(range(10, 0, -1), values)) % 11 == 0

    @staticmethod
    def isbn13_checksum_ok(digits: str) -> bool:
        return sum(int(ch) * (3 if i % 2 else 1) for i, ch in enumerate(digits)) % 10 == 0

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if ISBN10.fullmatch(s):
            return ISBNValidator.isbn10_checksum_ok(s)
        if ISBN13.fullmatch(s):
            return ISBNValidator.isbn13_checksum_ok(s)
        return False

    @staticmethod
    def clean(raw: Optional[str]) -> str:
        """Normalize and validate, raising ValidationFailed on a bad ISBN."""
        isbn = ISBNValidator.normalize_isbn(raw)
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValidationFailed(f"Invalid ISBN: {raw!r}")
        return isbn


class TextValidator:
    """Basic text checks and sanitization for catalogue fields."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return bool(title and title.strip())

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        """An author name needs at least one letter."""
        return bool(author) and re.search(r"[^\W\d_]", author) is not None

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        return re.sub(r"<[^>]*>", "", text).strip()


class PasswordValidator:
    MIN_LENGTH = 8

    @staticmethod
    def problems(password: Optional[str]) -> list:
        if not password:
            return ["Password is required"]
        found = []
        if len(password) < PasswordValidator.MIN_LENGTH:
            found.append(f"Password must be at least {PasswordValidator.MIN_LENGTH} characters long")
        if not re.search(r"[A-Za-z]", password):
            found.append("Password must contain a letter")
        if not re.search(r"\d", password):
            found.append("Password must contain a digit")
        return found

    @staticmethod
    def check(password: Optional[str]) -> None:
        found = PasswordValidator.problems(password)
        if found:
            raise ValidationFailed("; ".join(found))


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not EMAIL_RE.match(value):
        raise ValidationFailed("A valid email address is required")
    return value


# SQLite integers are signed 64-bit
SQLITE_MAX_INT = 2**63 - 1
MAX_PAGE = 1_000_000
MAX_PERIOD_DAYS = 3650

LIKE_ESCAPE = "\\"
LIKE = "LIKE ? ESCAPE '\\'"


def like_pattern(term: str, prefix: bool = False) -> str:
    """Build a LIKE pattern that matches ``term`` literally. Use with ``ESCAPE '\\'``."""
    escaped = term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2).replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%" if prefix else f"%{escaped}%"


def clamp_pagination(page, limit, default_limit: int, max_limit: int) -> Tuple[int, int, int]:
    """Return (page, limit, offset) with 1 <= page <= MAX_PAGE and 1 <= limit <= max_limit."""
    try:
        page = min(max(1, int(page)), MAX_PAGE)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit) if limit is not None else default_limit
    except (TypeError, ValueError):
        limit = default_limit
    limit = min(max(1, limit), max_limit)
    return page, limit, (page - 1) * limit


def page_count(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit else 0
