"""Access and refresh token lifecycle.

Access tokens are short-lived signed JWTs checked without touching the
database. Refresh tokens are JWTs signed with a separate secret whose ``jti``
is recorded in ``refresh_tokens``; rotating one is a single conditional UPDATE
on that row, so a refresh token can be exchanged at most once. Tokens issued
from one login share a ``family_id``; presenting a token that was already
rotated revokes the whole family.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from .config import Settings
from .database import ConnectionPool, to_db_time, utcnow
from .errors import ExpiredToken, InvalidSignature, InvalidToken
from .models import User

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    role: str
    email: str
    first_name: str
    last_name: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    def __init__(self, pool: ConnectionPool, settings: Settings,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.pool = pool
        self.settings = settings
        self.clock = clock
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)

    def refresh_ttl(self, remember_me: bool = False) -> timedelta:
        days = self.settings.remember_me_ttl_days if remember_me else self.settings.refresh_token_ttl_days
        return timedelta(days=days)

    # ------------------------- Issuing ------------------------- #
    def issue(self, user: User, remember_me: bool = False,
              conn: Optional[sqlite3.Connection] = None) -> TokenPair:
        """Start a new session for ``user`` and return its first token pair."""
        if conn is None:
            with self.pool.transaction() as own:
                return self._issue(own, user, uuid.uuid4().hex, remember_me)
        return self._issue(conn, user, uuid.uuid4().hex, remember_me)

    def _issue(self, conn: sqlite3.Connection, user: User, family_id: str, remember_me: bool,
               jti: Optional[str] = None) -> TokenPair:
        now = self.clock()
        access_exp = now + self.access_ttl
        access_claims = {
            **user.to_token_payload(),
            "type": ACCESS,
            "iat": int(now.timestamp()),
            "exp": int(access_exp.timestamp()),
        }
        access_token = jwt.encode(access_claims, self.settings.jwt_secret_key,
                                  algorithm=self.settings.jwt_algorithm)

        jti = jti or uuid.uuid4().hex
        refresh_exp = now + self.refresh_ttl(remember_me)
        refresh_claims = {
            "sub": str(user.id),
            "jti": jti,
            "fam": family_id,
            "rmb": remember_me,
            "type": REFRESH,
            "iat": int(now.timestamp()),
            "exp": int(refresh_exp.timestamp()),
        }
        refresh_token = jwt.encode(refresh_claims, self.settings.jwt_refresh_secret_key,
                                   algorithm=self.settings.jwt_algorithm)
        conn.execute(
            """
            INSERT INTO refresh_tokens (jti, user_id, family_id, issued_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (jti, user.id, family_id, to_db_time(now), to_db_time(refresh_exp)),
        )
        return TokenPair(access_token, refresh_token, int(self.access_ttl.total_seconds()))

    # ------------------------- Verification ------------------------- #
    def verify(self, access_token: str) -> TokenClaims:
        """Check an access token's signature and lifetime and return its claims."""
        try:
            claims = jwt.decode(access_token, self.settings.jwt_secret_key,
                                algorithms=[self.settings.jwt_algorithm])
        except ExpiredSignatureError:
            raise ExpiredToken() from None
        except JWTError:
            raise InvalidSignature() from None
        if claims.get("type") != ACCESS:
            raise InvalidSignature()
        try:
            return TokenClaims(
                user_id=int(claims["sub"]),
                role=claims["role"],
                email=claims["email"],
                first_name=claims.get("first_name", ""),
                last_name=claims.get("last_name", ""),
                issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidSignature() from None

    def _decode_refresh(self, refresh_token: str, verify_exp: bool = True) -> dict:
        try:
            claims = jwt.decode(refresh_token, self.settings.jwt_refresh_secret_key,
                                algorithms=[self.settings.jwt_algorithm],
                                options={"verify_exp": verify_exp})
        except JWTError:
            # ExpiredSignatureError included: an expired refresh token is simply invalid
            raise InvalidToken() from None
        if claims.get("type") != REFRESH or not claims.get("jti") or not claims.get("fam"):
            raise InvalidToken()
        try:
            claims["sub"] = int(claims["sub"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken() from None
        return claims

    # ------------------------- Rotation ------------------------- #
    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, invalidating the presented one."""
        claims = self._decode_refresh(refresh_token)
        now = self.clock()
        new_jti = uuid.uuid4().hex
        pair = None
        with self.pool.transaction() as conn:
            rotated = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = ?, replaced_by = ?
                WHERE jti = ? AND user_id = ? AND revoked_at IS NULL AND expires_at > ?
                """,
                (to_db_time(now), new_jti, claims["jti"], claims["sub"], to_db_time(now)),
            ).rowcount == 1
            if rotated:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (claims["sub"],)).fetchone()
                if row is None:
                    raise InvalidToken()
                pair = self._issue(conn, User.from_row(row), claims["fam"],
                                   bool(claims.get("rmb")), jti=new_jti)
            else:
                reused = conn.execute(
                    "SELECT 1 FROM refresh_tokens WHERE jti = ? AND replaced_by IS NOT NULL",
                    (claims["jti"],),
                ).fetchone()
                if reused:
                    revoked = self._revoke_family(conn, claims["fam"], now)
                    logger.warning(
                        f"Refresh token replay detected: user_id={claims['sub']} "
                        f"family={claims['fam']} revoked={revoked}"
                    )
        if pair is None:
            raise InvalidToken()
        return pair

    # ------------------------- Revocation ------------------------- #
    def revoke(self, refresh_token: str, user_id: Optional[int] = None) -> int:
        """Revoke the session a refresh token belongs to.

        Unknown tokens revoke nothing, and so do tokens issued to someone other
        than ``user_id`` when it is given.
        """
        try:
            claims = self._decode_refresh(refresh_token, verify_exp=False)
        except InvalidToken:
            return 0
        if user_id is not None and claims["sub"] != user_id:
            logger.warning(f"Revocation refused: token of user_id={claims['sub']} presented by user_id={user_id}")
            return 0
        with self.pool.transaction() as conn:
            return self._revoke_family(conn, claims["fam"], self.clock())

    def revoke_all(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
        """Revoke every live refresh token of a user."""
        if conn is None:
            with self.pool.transaction() as own:
                return self.revoke_all(user_id, own)
        return conn.execute(
            "UPDATE refresh_tokens SET revoked_at = ? WHERE user_id = ? AND revoked_at IS NULL",
            (to_db_time(self.clock()), user_id),
        ).rowcount

    def _revoke_family(self, conn: sqlite3.Connection, family_id: str, now: datetime) -> int:
        return conn.execute(
            "UPDATE refresh_tokens SET revoked_at = ? WHERE family_id = ? AND revoked_at IS NULL",
            (to_db_time(now), family_id),
        ).rowcount

    def purge_expired(self) -> int:
        with self.pool.transaction() as conn:
            count = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= ?", (to_db_time(self.clock()),)
            ).rowcount
        if count:
            logger.info(f"Purged {count} expired refresh tokens")
        return count
