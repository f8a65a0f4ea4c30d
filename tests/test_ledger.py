from concurrent.futures import ThreadPoolExecutor

import pytest

from lending.errors import BookNotFound, CopiesOnLoan, NoCopiesAvailable, OverReturn, ValidationFailed


def _in_range(ledger, book_id):
    total, available = ledger.snapshot(book_id)
    return 0 <= available <= total


def test_checkout_and_return_stay_within_bounds(ledger, make_book):
    book = make_book(total_copies=2)

    ledger.checkout(book.id)
    ledger.checkout(book.id)
    assert ledger.snapshot(book.id) == (2, 0)
    with pytest.raises(NoCopiesAvailable):
        ledger.checkout(book.id)
    assert _in_range(ledger, book.id)

    ledger.return_copy(book.id)
    ledger.return_copy(book.id)
    assert ledger.snapshot(book.id) == (2, 2)
    with pytest.raises(OverReturn):
        ledger.return_copy(book.id)
    assert ledger.snapshot(book.id) == (2, 2)


def test_checkout_returns_updated_book(ledger, make_book):
    book = make_book(total_copies=3)
    updated = ledger.checkout(book.id)
    assert updated.available_copies == 2
    assert updated.total_copies == 3


def test_return_at_full_shelf_is_over_return(ledger, make_book):
    book = make_book(total_copies=1)
    with pytest.raises(OverReturn):
        ledger.return_copy(book.id)


def test_missing_book(ledger):
    with pytest.raises(BookNotFound):
        ledger.checkout(12345)
    with pytest.raises(BookNotFound):
        ledger.return_copy(12345)
    with pytest.raises(BookNotFound):
        ledger.snapshot(12345)


def test_concurrent_checkouts_of_last_copy(ledger, make_book):
    book = make_book(total_copies=1)

    def attempt(_):
        try:
            ledger.checkout(book.id)
            return "ok"
        except NoCopiesAvailable:
            return "none"

    with ThreadPoolExecutor(max_workers=6) as executor:
        results = list(executor.map(attempt, range(6)))

    assert results.count("ok") == 1
    assert results.count("none") == 5
    assert ledger.snapshot(book.id) == (1, 0)


def test_concurrent_mixed_operations_keep_invariant(ledger, make_book):
    book = make_book(total_copies=3)

    def worker(i):
        try:
            if i % 2:
                ledger.checkout(book.id)
            else:
                ledger.return_copy(book.id)
        except (NoCopiesAvailable, OverReturn):
            pass

    with ThreadPoolExecutor(max_workers=6) as executor:
        list(executor.map(worker, range(40)))

    assert _in_range(ledger, book.id)


def test_adjust_total_shifts_available(ledger, make_book):
    book = make_book(total_copies=3)
    ledger.checkout(book.id)
    ledger.checkout(book.id)

    with pytest.raises(CopiesOnLoan):
        ledger.adjust_total(book.id, 1)
    assert ledger.snapshot(book.id) == (3, 1)

    ledger.adjust_total(book.id, 2)
    assert ledger.snapshot(book.id) == (2, 0)

    ledger.adjust_total(book.id, 5)
    assert ledger.snapshot(book.id) == (5, 3)


def test_adjust_total_rejects_negative(ledger, make_book):
    book = make_book(total_copies=1)
    with pytest.raises(ValidationFailed):
        ledger.adjust_total(book.id, -1)


def test_checkout_in_caller_transaction_rolls_back(ledger, pool, make_book):
    book = make_book(total_copies=1)

    with pytest.raises(RuntimeError):
        with pool.transaction() as conn:
            ledger.checkout(book.id, conn=conn)
            raise RuntimeError("loan row could not be written")

    assert ledger.snapshot(book.id) == (1, 1)
