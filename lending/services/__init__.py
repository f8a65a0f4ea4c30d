"""Library Lending - Services Package

This package contains the business services used by the API layer:
- Authentication and account management
- Book catalogue and search
- Categories
- Loans (borrow, return, renew, overdue tracking)
"""

from dataclasses import dataclass
from typing import Optional

from ..config import Settings
from ..database import ConnectionPool, initialize_database
from ..ledger import AvailabilityLedger
from ..tokens import TokenService
from .auth_service import AuthService
from .book_service import BookService
from .category_service import CategoryService
from .loan_service import LoanService


@dataclass
class Services:
    """Everything a request handler or CLI command needs, wired to one pool."""

    settings: Settings
    pool: ConnectionPool
    tokens: TokenService
    ledger: AvailabilityLedger
    auth: AuthService
    books: BookService
    categories: CategoryService
    loans: LoanService

    def close(self) -> None:
        self.pool.close()


def build_services(settings: Settings, pool: Optional[ConnectionPool] = None) -> Services:
    """Open the pool (unless one is given), make sure the schema exists and wire the services."""
    pool = pool or ConnectionPool.from_settings(settings)
    initialize_database(pool)
    tokens = TokenService(pool, settings)
    ledger = AvailabilityLedger(pool)
    return Services(
        settings=settings,
        pool=pool,
        tokens=tokens,
        ledger=ledger,
        auth=AuthService(pool, tokens, settings),
        books=BookService(pool, ledger, settings),
        categories=CategoryService(pool, settings),
        loans=LoanService(pool, ledger, settings),
    )


__all__ = [
    "AuthService",
    "BookService",
    "CategoryService",
    "LoanService",
    "Services",
    "build_services",
]
