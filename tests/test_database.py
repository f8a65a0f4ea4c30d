import sqlite3
from datetime import datetime, timezone

import pytest

from lending.database import (
    SCHEMA_VERSION,
    ConnectionPool,
    PoolClosed,
    PoolTimeout,
    from_db_time,
    initialize_database,
    schema_version,
    to_db_time,
)


@pytest.fixture
def small_pool(tmp_path):
    pool = ConnectionPool(str(tmp_path / "pool.db"), size=2, timeout=0.2)
    yield pool
    pool.close()


def test_pool_opens_connections_lazily(small_pool):
    assert small_pool.stats()["total"] == 0
    with small_pool.connection() as conn:
        conn.execute("SELECT 1")
        stats = small_pool.stats()
        assert stats["total"] == 1
        assert stats["in_use"] == 1
    stats = small_pool.stats()
    assert stats["idle"] == 1
    assert stats["in_use"] == 0
    assert stats["max"] == 2


def test_pool_times_out_when_exhausted(small_pool):
    first = small_pool.acquire()
    second = small_pool.acquire()
    try:
        with pytest.raises(PoolTimeout):
            small_pool.acquire()
    finally:
        small_pool.release(first)
        small_pool.release(second)
    # a released connection can be handed out again
    with small_pool.connection() as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1


def test_closed_pool_refuses_acquire(small_pool):
    small_pool.close()
    with pytest.raises(PoolClosed):
        small_pool.acquire()
    assert small_pool.ping() is False


def test_transaction_rolls_back_on_error(pool):
    with pytest.raises(ValueError):
        with pool.transaction() as conn:
            conn.execute("INSERT INTO categories (name) VALUES ('Poetry')")
            raise ValueError("boom")

    with pool.connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0] == 0


def test_initialize_is_idempotent(pool):
    initialize_database(pool)
    initialize_database(pool)
    assert schema_version(pool) == SCHEMA_VERSION


def test_available_copies_check_constraint(pool, make_book):
    book = make_book(total_copies=2)
    with pytest.raises(sqlite3.IntegrityError):
        with pool.transaction() as conn:
            conn.execute("UPDATE books SET available_copies = 3 WHERE id = ?", (book.id,))
    with pytest.raises(sqlite3.IntegrityError):
        with pool.transaction() as conn:
            conn.execute("UPDATE books SET available_copies = -1 WHERE id = ?", (book.id,))


def test_one_open_loan_per_user_and_book(pool, member, make_book):
    book = make_book(total_copies=2)
    insert = (
        "INSERT INTO book_loans (book_id, user_id, loan_date, due_date) "
        "VALUES (?, ?, '2024-01-01 10:00:00', '2024-01-15 10:00:00')"
    )
    with pool.transaction() as conn:
        conn.execute(insert, (book.id, member.id))
    with pytest.raises(sqlite3.IntegrityError):
        with pool.transaction() as conn:
            conn.execute(insert, (book.id, member.id))


def test_updated_at_trigger(pool, make_book):
    book = make_book()
    with pool.transaction() as conn:
        conn.execute("UPDATE books SET updated_at = '2000-01-01 00:00:00' WHERE id = ?", (book.id,))
        conn.execute("UPDATE books SET title = 'Renamed' WHERE id = ?", (book.id,))
        row = conn.execute("SELECT updated_at FROM books WHERE id = ?", (book.id,)).fetchone()
    assert row["updated_at"] != "2000-01-01 00:00:00"


def test_db_time_helpers():
    moment = datetime(2024, 3, 1, 12, 30, 15, tzinfo=timezone.utc)
    assert to_db_time(moment) == "2024-03-01 12:30:15"
    assert from_db_time("2024-03-01 12:30:15") == moment
    assert from_db_time(None) is None
