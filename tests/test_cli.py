from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from lending.cli import app
from lending.config import Settings
from lending.services import build_services

runner = CliRunner()


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("PASSWORD_HASH_METHOD", "pbkdf2:sha256:1000")
    return str(tmp_path / "cli.db")


def invoke(db, *args):
    return runner.invoke(app, ["--db", db, *args])


def test_init_db(db):
    result = invoke(db, "init-db")
    assert result.exit_code == 0
    assert "Database initialized" in result.stdout


def test_seed_and_reseed(db):
    result = invoke(db, "seed")
    assert result.exit_code == 0
    assert "Seeded" in result.stdout
    assert "Books: 8" in result.stdout

    result = invoke(db, "seed")
    assert result.exit_code == 0
    assert "already has data" in result.stdout

    result = invoke(db, "seed", "--reset")
    assert result.exit_code == 0
    assert "Seeded" in result.stdout


def test_create_librarian(db):
    result = invoke(db, "create-user", "head@example.com", "--role", "librarian",
                    "--first-name", "Head", "--last-name", "Librarian", "--password", "Passw0rd!")
    assert result.exit_code == 0
    assert "Created librarian" in result.stdout

    result = invoke(db, "create-user", "head@example.com", "--first-name", "Head",
                    "--last-name", "Again", "--password", "Passw0rd!")
    assert result.exit_code == 1
    assert "already exists" in result.stdout

    services = build_services(Settings(database_file=db))
    try:
        _, tokens = services.auth.login("head@example.com", "Passw0rd!")
        assert services.tokens.verify(tokens.access_token).role == "librarian"
    finally:
        services.close()


def test_create_user_rejects_weak_password(db):
    result = invoke(db, "create-user", "weak@example.com", "--first-name", "Weak",
                    "--last-name", "Password", "--password", "short")
    assert result.exit_code == 1
    assert "Could not create user" in result.stdout


def test_maintenance_commands(db):
    invoke(db, "seed")

    result = invoke(db, "mark-overdue")
    assert result.exit_code == 0
    assert "0 loans marked as overdue" in result.stdout

    result = invoke(db, "purge-tokens")
    assert result.exit_code == 0
    assert "Purged 0 expired refresh tokens" in result.stdout


def test_stats(db):
    invoke(db, "seed")
    result = invoke(db, "stats")
    assert result.exit_code == 0
    assert "Library statistics" in result.stdout
    assert "Available copies" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run, db):
    result = invoke(db, "serve", "--port", "8123")
    assert result.exit_code == 0
    assert "Starting API on http://127.0.0.1:8123/" in result.stdout

    args = mock_subprocess_run.call_args.args[0]
    assert "lending.api:create_app" in args
    assert "--factory" in args
    assert mock_subprocess_run.call_args.kwargs["env"]["LIBRARY_DB_FILE"] == db
