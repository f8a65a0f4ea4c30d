import logging
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv
from limits import parse

DEFAULT_JWT_SECRET = "your-jwt-secret-key-change-in-production"
DEFAULT_JWT_REFRESH_SECRET = "your-jwt-refresh-secret-key-change-in-production"


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """Application settings, built once at startup and passed to components."""

    # Application
    app_name: str = "Library Lending API"
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:3002",
    ])

    # Database
    database_file: str = "library.db"
    database_pool_size: int = 5
    database_pool_timeout: float = 2.0  # seconds to wait for a free connection
    database_busy_timeout: float = 5.0  # seconds SQLite waits on a locked database
    slow_query_ms: int = 1000

    # Security
    jwt_secret_key: str = DEFAULT_JWT_SECRET
    jwt_refresh_secret_key: str = DEFAULT_JWT_REFRESH_SECRET
    jwt_algorithm: str = "HS256"
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 7
    remember_me_ttl_days: int = 30
    password_reset_ttl_minutes: int = 60
    password_hash_method: str = "scrypt"  # any werkzeug.security method string

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Business rules
    default_loan_period_days: int = 14
    member_loan_limit: int = 10
    librarian_loan_limit: int = 50

    # Rate limiting, per client address, in `limits` notation ("5/15 minutes")
    rate_limit_enabled: bool = True
    auth_rate_limit: str = "5/15 minutes"
    browse_rate_limit: str = "200/minute"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and a .env file if present)."""
        load_dotenv()
        return cls(
            app_name=os.getenv("APP_NAME", "Library Lending API"),
            app_version=os.getenv("APP_VERSION", "1.0.0"),
            environment=os.getenv("ENVIRONMENT", "development"),
            debug=_env_bool("DEBUG"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_host=os.getenv("API_HOST", "127.0.0.1"),
            api_port=int(os.getenv("API_PORT", "8000")),
            cors_origins=_env_list(
                "CORS_ORIGINS",
                "http://localhost:3000,http://localhost:3001,http://localhost:3002",
            ),
            database_file=os.getenv("LIBRARY_DB_FILE", "library.db"),
            database_pool_size=int(os.getenv("DATABASE_POOL_SIZE", "5")),
            database_pool_timeout=float(os.getenv("DATABASE_POOL_TIMEOUT", "2.0")),
            database_busy_timeout=float(os.getenv("DATABASE_BUSY_TIMEOUT", "5.0")),
            slow_query_ms=int(os.getenv("SLOW_QUERY_MS", "1000")),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", DEFAULT_JWT_SECRET),
            jwt_refresh_secret_key=os.getenv("JWT_REFRESH_SECRET_KEY", DEFAULT_JWT_REFRESH_SECRET),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            access_token_ttl_minutes=int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "15")),
            refresh_token_ttl_days=int(os.getenv("REFRESH_TOKEN_TTL_DAYS", "7")),
            remember_me_ttl_days=int(os.getenv("REMEMBER_ME_TTL_DAYS", "30")),
            password_reset_ttl_minutes=int(os.getenv("PASSWORD_RESET_TTL_MINUTES", "60")),
            password_hash_method=os.getenv("PASSWORD_HASH_METHOD", "scrypt"),
            default_page_size=int(os.getenv("DEFAULT_PAGE_SIZE", "20")),
            max_page_size=int(os.getenv("MAX_PAGE_SIZE", "100")),
            default_loan_period_days=int(os.getenv("DEFAULT_LOAN_PERIOD_DAYS", "14")),
            member_loan_limit=int(os.getenv("MEMBER_LOAN_LIMIT", "10")),
            librarian_loan_limit=int(os.getenv("LIBRARIAN_LOAN_LIMIT", "50")),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", "True"),
            auth_rate_limit=os.getenv("AUTH_RATE_LIMIT", "5/15 minutes"),
            browse_rate_limit=os.getenv("BROWSE_RATE_LIMIT", "200/minute"),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> "Settings":
        """Reject settings the service cannot run with. Returns self for chaining."""
        if self.database_pool_size < 1:
            raise ValueError("database_pool_size must be at least 1")
        if self.database_pool_timeout <= 0:
            raise ValueError("database_pool_timeout must be positive")
        if self.access_token_ttl_minutes < 1 or self.refresh_token_ttl_days < 1:
            raise ValueError("token lifetimes must be positive")
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        if self.is_production and (
            self.jwt_secret_key == DEFAULT_JWT_SECRET
            or self.jwt_refresh_secret_key == DEFAULT_JWT_REFRESH_SECRET
        ):
            raise ValueError("JWT secrets must be set explicitly in production")
        for name in ("auth_rate_limit", "browse_rate_limit"):
            try:
                parse(getattr(self, name))
            except ValueError:
                raise ValueError(f"{name} is not a valid rate limit: {getattr(self, name)!r}") from None
        return self


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> None:
    """Set up root logging once for the API process or a CLI run."""
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("lending").setLevel(level)
