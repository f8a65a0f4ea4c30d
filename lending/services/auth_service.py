import hashlib
import logging
import secrets
import sqlite3
from datetime import timedelta
from typing import Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from ..config import Settings
from ..database import ConnectionPool, to_db_time
from ..errors import (
    EmailAlreadyRegistered,
    InvalidCredentials,
    InvalidToken,
    UserNotFound,
    ValidationFailed,
)
from ..models import ROLES, User
from ..tokens import TokenPair, TokenService
from ..validators import PasswordValidator, normalize_email

logger = logging.getLogger(__name__)


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Registration, login and password management on top of the token service."""

    def __init__(self, pool: ConnectionPool, tokens: TokenService, settings: Settings) -> None:
        self.pool = pool
        self.tokens = tokens
        self.settings = settings

    def hash_password(self, password: str) -> str:
        return generate_password_hash(password, method=self.settings.password_hash_method)

    def create_user(self, email: str, password: str, first_name: str, last_name: str,
                    role: str = "member", conn: Optional[sqlite3.Connection] = None) -> User:
        """Insert a user row. Librarians get a larger loan allowance."""
        email = normalize_email(email)
        if role not in ROLES:
            raise ValidationFailed("Invalid role specified")
        PasswordValidator.check(password)
        first_name, last_name = (first_name or "").strip(), (last_name or "").strip()
        if not first_name or not last_name:
            raise ValidationFailed("First and last name are required")
        max_books = (self.settings.librarian_loan_limit if role == "librarian"
                     else self.settings.member_loan_limit)

        if conn is None:
            with self.pool.transaction() as own:
                return self.create_user(email, password, first_name, last_name, role, own)
        try:
            cursor = conn.execute(
                """
                INSERT INTO users (email, password_hash, first_name, last_name, role, max_books_allowed)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (email, self.hash_password(password), first_name, last_name, role, max_books),
            )
        except sqlite3.IntegrityError as e:
            raise EmailAlreadyRegistered() from e
        row = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return User.from_row(row)

    def register(self, email: str, password: str, first_name: str, last_name: str,
                 role: str = "member") -> Tuple[User, TokenPair]:
        with self.pool.transaction() as conn:
            user = self.create_user(email, password, first_name, last_name, role, conn)
            tokens = self.tokens.issue(user, conn=conn)
        logger.info(f"User registered: user_id={user.id} email={user.email} role={user.role}")
        return user, tokens

    def login(self, email: str, password: str, remember_me: bool = False) -> Tuple[User, TokenPair]:
        with self.pool.connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),)
            ).fetchone()
        if row is None or not check_password_hash(row["password_hash"], password or ""):
            logger.info(f"Failed login attempt for {email!r}")
            raise InvalidCredentials()
        user = User.from_row(row)
        tokens = self.tokens.issue(user, remember_me=remember_me)
        logger.info(f"User logged in: user_id={user.id} remember_me={remember_me}")
        return user, tokens

    def logout(self, user_id: int, refresh_token: Optional[str] = None) -> int:
        """End one session when a refresh token is given, otherwise every session of the user."""
        if refresh_token:
            revoked = self.tokens.revoke(refresh_token, user_id=user_id)
        else:
            revoked = self.tokens.revoke_all(user_id)
        logger.info(f"User logged out: user_id={user_id} revoked_tokens={revoked}")
        return revoked

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.tokens.refresh(refresh_token)

    def get_user(self, user_id: int) -> User:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise UserNotFound()
        return User.from_row(row)

    def authenticate(self, access_token: str) -> User:
        """Resolve an access token to the current user row."""
        claims = self.tokens.verify(access_token)
        return self.get_user(claims.user_id)

    # ------------------------- Passwords ------------------------- #
    def forgot_password(self, email: str) -> Optional[str]:
        """Create a one-hour reset token. Returns None for unknown emails without saying so."""
        now = self.tokens.clock()
        token = secrets.token_hex(32)
        expires = now + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        with self.pool.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE users SET reset_token_hash = ?, reset_token_expires_at = ?
                WHERE email = ?
                """,
                (_hash_reset_token(token), to_db_time(expires), (email or "").strip().lower()),
            ).rowcount
        if not updated:
            return None
        logger.info(f"Password reset requested for {email!r}")
        return token

    def reset_password(self, reset_token: str, new_password: str) -> None:
        PasswordValidator.check(new_password)
        now = to_db_time(self.tokens.clock())
        with self.pool.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM users WHERE reset_token_hash = ? AND reset_token_expires_at > ?",
                (_hash_reset_token(reset_token or ""), now),
            ).fetchone()
            if row is None:
                raise InvalidToken("Invalid or expired reset token")
            conn.execute(
                """
                UPDATE users
                SET password_hash = ?, reset_token_hash = NULL, reset_token_expires_at = NULL
                WHERE id = ?
                """,
                (self.hash_password(new_password), row["id"]),
            )
            self.tokens.revoke_all(row["id"], conn=conn)
        logger.info(f"Password reset completed: user_id={row['id']}")

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        user = self.get_user(user_id)
        if not check_password_hash(user.password_hash, current_password or ""):
            raise InvalidCredentials("Current password is incorrect")
        PasswordValidator.check(new_password)
        with self.pool.transaction() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (self.hash_password(new_password), user_id),
            )
            # Existing sessions end with the old password
            self.tokens.revoke_all(user_id, conn=conn)
        logger.info(f"Password changed: user_id={user_id}")
