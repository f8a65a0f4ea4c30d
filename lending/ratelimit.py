"""Per-client request budgets for the API, backed by the ``limits`` package."""

import logging
from typing import Dict

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from .config import Settings

logger = logging.getLogger(__name__)


class RequestLimiter:
    """Named budgets ("auth", "browse") counted separately for each client address.

    Counters live in process memory, so each API process enforces its own budget.
    """

    def __init__(self, limits: Dict[str, str], enabled: bool = True) -> None:
        self.enabled = enabled
        self._limits = {scope: parse(value) for scope, value in limits.items()}
        self._strategy = MovingWindowRateLimiter(MemoryStorage())

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequestLimiter":
        return cls(
            {"auth": settings.auth_rate_limit, "browse": settings.browse_rate_limit},
            enabled=settings.rate_limit_enabled,
        )

    def hit(self, scope: str, client: str) -> bool:
        """Count one request; False once the client has spent its budget for ``scope``."""
        if not self.enabled:
            return True
        allowed = self._strategy.hit(self._limits[scope], scope, client)
        if not allowed:
            logger.warning(f"Rate limit exceeded: scope={scope} client={client}")
        return allowed
