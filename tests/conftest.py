import pytest
from fastapi.testclient import TestClient

from lending.api import create_app
from lending.config import Settings
from lending.services import build_services

# Cheap hashing keeps the suite fast; production uses scrypt
FAST_HASH = "pbkdf2:sha256:1000"
PASSWORD = "Passw0rd!"

VALID_ISBNS = [
    "9780132350884",
    "9780135957059",
    "9780201633610",
    "9780134757599",
    "9781593279509",
    "9781491946008",
    "9781491957660",
    "9780262033848",
]


@pytest.fixture
def settings(tmp_path, request):
    # one database file per test
    return Settings(
        database_file=str(tmp_path / f"test_{request.node.name}.db"),
        database_pool_size=8,
        database_pool_timeout=5.0,
        password_hash_method=FAST_HASH,
        log_level="WARNING",
        auth_rate_limit="1000/minute",
        browse_rate_limit="1000/minute",
    )


@pytest.fixture
def services(settings):
    services = build_services(settings)
    yield services
    services.close()


@pytest.fixture
def pool(services):
    return services.pool


@pytest.fixture
def ledger(services):
    return services.ledger


@pytest.fixture
def member(services):
    return services.auth.create_user("member@example.com", PASSWORD, "Mia", "Member")


@pytest.fixture
def other_member(services):
    return services.auth.create_user("other@example.com", PASSWORD, "Otto", "Other")


@pytest.fixture
def librarian(services):
    return services.auth.create_user("librarian@example.com", PASSWORD, "Lena", "Librarian", role="librarian")


@pytest.fixture
def make_book(services):
    isbns = iter(VALID_ISBNS)

    def _make(total_copies=1, **fields):
        data = {
            "isbn": next(isbns),
            "title": fields.pop("title", "Test Book"),
            "author": fields.pop("author", "Test Author"),
            "total_copies": total_copies,
            **fields,
        }
        return services.books.create_book(data)

    return _make


@pytest.fixture
def client(settings):
    app = create_app(settings)
    # Entering the client runs the lifespan, which opens the pool
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_services(client):
    return client.app.state.services