import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from lending.database import utcnow
from lending.errors import (
    AlreadyReturned,
    DuplicateLoan,
    LoanLimitReached,
    LoanNotFound,
    LoanNotRenewable,
    NoCopiesAvailable,
    PermissionDenied,
    UserNotFound,
    ValidationFailed,
)
from lending.models import User
from lending.services import LoanService


@pytest.fixture
def later_loans(services, settings):
    """Loan service whose clock runs three weeks ahead, past the default due date."""
    return LoanService(services.pool, services.ledger, settings, clock=lambda: utcnow() + timedelta(days=21))


def test_borrow_takes_a_copy(services, ledger, member, make_book):
    book = make_book(total_copies=2)
    loan = services.loans.borrow_book(member, book.id, notes="first loan")

    assert loan.status == "active"
    assert loan.user_id == member.id
    assert loan.book_title == "Test Book"
    assert loan.due_date - loan.loan_date == timedelta(days=14)
    assert loan.notes == "first loan"
    assert ledger.snapshot(book.id) == (2, 1)


def test_duplicate_borrow_leaves_counter_alone(services, ledger, member, make_book):
    book = make_book(total_copies=2)
    services.loans.borrow_book(member, book.id)

    with pytest.raises(DuplicateLoan):
        services.loans.borrow_book(member, book.id)
    assert ledger.snapshot(book.id) == (2, 1)


def test_borrow_without_copies(services, member, other_member, make_book):
    book = make_book(total_copies=1)
    services.loans.borrow_book(member, book.id)
    with pytest.raises(NoCopiesAvailable):
        services.loans.borrow_book(other_member, book.id)


def test_loan_limit(services, pool, member, make_book):
    with pool.transaction() as conn:
        conn.execute("UPDATE users SET max_books_allowed = 1 WHERE id = ?", (member.id,))
    member = services.auth.get_user(member.id)
    services.loans.borrow_book(member, make_book().id)

    with pytest.raises(LoanLimitReached):
        services.loans.borrow_book(member, make_book().id)


def test_borrow_rolls_back_counter_when_loan_insert_fails(services, ledger, make_book):
    book = make_book(total_copies=1)
    ghost = User(id=999, email="ghost@example.com", first_name="No", last_name="Body")

    with pytest.raises(sqlite3.IntegrityError):
        services.loans.borrow_book(ghost, book.id)
    assert ledger.snapshot(book.id) == (1, 1)


def test_borrow_rejects_bad_period(services, member, make_book):
    with pytest.raises(ValidationFailed):
        services.loans.borrow_book(member, make_book().id, loan_period_days=0)


def test_concurrent_borrow_of_last_copy(services, ledger, make_book):
    book = make_book(total_copies=1)
    readers = [
        services.auth.create_user(f"reader{i}@example.com", "Passw0rd!", "Reader", str(i))
        for i in range(4)
    ]

    def attempt(user):
        try:
            services.loans.borrow_book(user, book.id)
            return "ok"
        except NoCopiesAvailable:
            return "none"

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(attempt, readers))

    assert results.count("ok") == 1
    assert ledger.snapshot(book.id) == (1, 0)


def test_return_by_owner(services, ledger, member, make_book):
    book = make_book()
    loan = services.loans.borrow_book(member, book.id)

    returned = services.loans.return_book(loan.id, member, notes="good condition")

    assert returned.status == "returned"
    assert returned.return_date is not None
    assert returned.notes == "good condition"
    assert ledger.snapshot(book.id) == (1, 1)
    with pytest.raises(AlreadyReturned):
        services.loans.return_book(loan.id, member)


def test_return_permissions(services, member, other_member, librarian, make_book):
    loan = services.loans.borrow_book(member, make_book().id)

    with pytest.raises(PermissionDenied):
        services.loans.return_book(loan.id, other_member)
    assert services.loans.return_book(loan.id, librarian).is_returned


def test_force_return(services, ledger, member, librarian, make_book):
    book = make_book()
    loan = services.loans.borrow_book(member, book.id)

    with pytest.raises(PermissionDenied):
        services.loans.force_return(loan.id, member)

    returned = services.loans.force_return(loan.id, librarian)
    assert returned.notes == "Force returned by librarian"
    assert ledger.snapshot(book.id) == (1, 1)


def test_renew_extends_due_date(services, member, make_book):
    loan = services.loans.borrow_book(member, make_book().id)
    renewed = services.loans.renew_loan(loan.id, member, extension_days=7)
    assert renewed.due_date - loan.due_date == timedelta(days=7)


def test_renew_refused_when_overdue_or_returned(services, later_loans, member, other_member, make_book):
    overdue = services.loans.borrow_book(member, make_book().id)
    returned = services.loans.borrow_book(member, make_book().id)
    services.loans.return_book(returned.id, member)

    with pytest.raises(LoanNotRenewable):
        later_loans.renew_loan(overdue.id, member)
    with pytest.raises(LoanNotRenewable):
        services.loans.renew_loan(returned.id, member)
    with pytest.raises(PermissionDenied):
        services.loans.renew_loan(overdue.id, other_member)
    with pytest.raises(ValidationFailed):
        services.loans.renew_loan(overdue.id, member, extension_days=90)


def test_mark_overdue(services, ledger, later_loans, member, make_book):
    book = make_book()
    loan = services.loans.borrow_book(member, book.id)

    assert services.loans.mark_overdue_loans() == 0
    assert later_loans.mark_overdue_loans() == 1
    assert services.loans.get_loan(loan.id, member).status == "overdue"
    assert services.loans.overdue_loans()["total"] == 1

    # overdue loans can still be returned
    later_loans.return_book(loan.id, member)
    assert ledger.snapshot(book.id) == (1, 1)


def test_get_loan_permissions(services, member, other_member, librarian, make_book):
    loan = services.loans.borrow_book(member, make_book().id)

    assert services.loans.get_loan(loan.id, member).id == loan.id
    assert services.loans.get_loan(loan.id, librarian).id == loan.id
    with pytest.raises(PermissionDenied):
        services.loans.get_loan(loan.id, other_member)
    with pytest.raises(LoanNotFound):
        services.loans.get_loan(999, librarian)


def test_listings(services, member, other_member, make_book):
    first = services.loans.borrow_book(member, make_book().id)
    services.loans.borrow_book(member, make_book().id)
    services.loans.borrow_book(other_member, make_book().id)
    services.loans.return_book(first.id, member)

    assert services.loans.user_loans(member.id)["total"] == 2
    assert services.loans.user_loans(member.id, status="returned")["total"] == 1
    assert services.loans.all_loans()["total"] == 3
    assert services.loans.all_loans(user_id=other_member.id)["total"] == 1
    assert services.loans.all_loans(status="active", sort_by="due_date", sort_order="asc")["total"] == 2
    with pytest.raises(ValidationFailed):
        services.loans.all_loans(status="lost")
    with pytest.raises(ValidationFailed):
        services.loans.all_loans(sort_by="title; DROP TABLE books")


def test_statistics_and_most_borrowed(services, member, other_member, make_book):
    popular = make_book(title="Popular", total_copies=2)
    loan = services.loans.borrow_book(member, popular.id)
    services.loans.borrow_book(other_member, popular.id)
    services.loans.borrow_book(member, make_book(title="Quiet").id)
    services.loans.return_book(loan.id, member)

    stats = services.loans.statistics()
    assert stats["total_loans"] == 3
    assert stats["active_loans"] == 2
    assert stats["returned_loans"] == 1
    assert stats["active_borrowers"] == 2

    top = services.loans.most_borrowed_books()
    assert top[0]["title"] == "Popular"
    assert top[0]["borrow_count"] == 2


def test_member_summary_and_eligibility(services, member, make_book):
    services.loans.borrow_book(member, make_book().id)

    summary = services.loans.member_summary(member.id)
    assert summary["total_loans"] == 1
    assert summary["active_loans"] == 1
    assert summary["unique_books_borrowed"] == 1

    eligibility = services.loans.borrowing_eligibility(member.id)
    assert eligibility == {"can_borrow": True, "active_loans": 1, "max_allowed": 10, "remaining": 9}

    with pytest.raises(UserNotFound):
        services.loans.member_summary(999)
    assert services.loans.borrowing_eligibility(999)["reason"] == "User not found"
