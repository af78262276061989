import sqlite3
from datetime import date, timedelta

import pytest

from lending import (
    AlreadyRenewed,
    AlreadyReturned,
    DuplicateLoan,
    FailureReason,
    LendingPolicy,
    LoanLimitExceeded,
    NotAvailable,
    OverdueRenewalBlocked,
    PersistenceFailure,
    UnknownBook,
    UnknownLoan,
    UnknownMember,
)

DAY = date(2024, 1, 5)

# Valid ISBN-13 check digits
VOLUME_ISBNS = ["9780000000002", "9780000000019", "9780000000026", "9780000000033", "9780000000040"]


def _copies(lib, book_id):
    return lib.find_book(book_id).available_copies


def test_borrow_creates_loan_and_takes_a_copy(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    assert loan.loan_id is not None
    assert loan.loan_date == DAY
    assert loan.due_date == date(2024, 1, 10)
    assert loan.renewed is False
    assert loan.return_date is None
    assert _copies(lib, dune.book_id) == 1
    assert [l.loan_id for l in lib.borrowed_books(member.member_id)] == [loan.loan_id]


def test_borrow_unknown_member_is_checked_first(lib, stocked):
    _, dune, _ = stocked
    with pytest.raises(UnknownMember) as exc_info:
        lib.borrow_book(999, 12345, today=DAY)
    assert exc_info.value.reason is FailureReason.UNKNOWN_MEMBER
    assert _copies(lib, dune.book_id) == 2


def test_borrow_unknown_book(lib, stocked):
    member, _, _ = stocked
    with pytest.raises(UnknownBook):
        lib.borrow_book(member.member_id, 999, today=DAY)
    assert lib.borrowed_books(member.member_id) == []


def test_borrow_refused_when_no_copy_on_shelf(lib, stocked):
    member, _, hobbit = stocked
    other = lib.add_member("Grace", "Hopper", "grace@example.com")
    lib.borrow_book(other.member_id, hobbit.book_id, today=DAY)

    with pytest.raises(NotAvailable) as exc_info:
        lib.borrow_book(member.member_id, hobbit.book_id, today=DAY)
    assert exc_info.value.to_dict()["reason"] == "not_available"
    assert _copies(lib, hobbit.book_id) == 0
    assert lib.borrowed_books(member.member_id) == []


def test_borrow_refused_at_loan_limit(lib, stocked):
    member, _, _ = stocked
    books = [lib.add_book(f"Volume {i}", "Various", VOLUME_ISBNS[i]) for i in range(5)]
    for book in books[:4]:
        lib.borrow_book(member.member_id, book.book_id, today=DAY)

    with pytest.raises(LoanLimitExceeded):
        lib.borrow_book(member.member_id, books[4].book_id, today=DAY)
    assert len(lib.borrowed_books(member.member_id)) == 4
    assert _copies(lib, books[4].book_id) == 1


def test_limit_is_checked_before_duplicate(lib, stocked):
    member, dune, _ = stocked
    lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    for i in range(3):
        book = lib.add_book(f"Volume {i}", "Various", VOLUME_ISBNS[i])
        lib.borrow_book(member.member_id, book.book_id, today=DAY)

    with pytest.raises(LoanLimitExceeded):
        lib.borrow_book(member.member_id, dune.book_id, today=DAY)


def test_borrow_refused_for_second_copy_of_same_title(lib, stocked):
    member, dune, _ = stocked
    lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    with pytest.raises(DuplicateLoan):
        lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    assert _copies(lib, dune.book_id) == 1
    assert len(lib.borrowed_books(member.member_id)) == 1


def test_same_title_can_be_borrowed_again_after_return(lib, stocked):
    member, dune, _ = stocked
    first = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    lib.return_book(first.loan_id, today=DAY)

    second = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    assert second.loan_id != first.loan_id


def test_same_day_return_has_no_fine(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    assert lib.return_book(loan.loan_id, today=DAY) == 0.0
    returned = lib.find_loan(loan.loan_id)
    assert returned.return_date == DAY
    assert returned.fine_amount == 0.0
    assert _copies(lib, dune.book_id) == 2
    assert lib.find_member(member.member_id).total_fine_due == 0.0


def test_return_on_due_date_has_no_fine(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    assert lib.return_book(loan.loan_id, today=loan.due_date) == 0.0


def test_late_return_posts_fine_to_member(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    fine = lib.return_book(loan.loan_id, today=date(2024, 1, 13))
    assert fine == 30.0
    assert lib.find_loan(loan.loan_id).fine_amount == 30.0
    assert lib.find_loan(loan.loan_id).fine_paid is False
    assert lib.find_member(member.member_id).total_fine_due == 30.0


def test_return_is_idempotent(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    assert lib.return_book(loan.loan_id, today=date(2024, 1, 13)) == 30.0

    # a second return a week later changes nothing
    assert lib.return_book(loan.loan_id, today=date(2024, 1, 20)) == 30.0
    assert _copies(lib, dune.book_id) == 2
    assert lib.find_member(member.member_id).total_fine_due == 30.0
    assert lib.find_loan(loan.loan_id).return_date == date(2024, 1, 13)


def test_return_unknown_loan(lib):
    with pytest.raises(UnknownLoan):
        lib.return_book(42, today=DAY)


def test_renew_extends_due_date_once(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    renewed = lib.renew_book(loan.loan_id, today=date(2024, 1, 8))
    assert renewed.renewed is True
    assert renewed.due_date == date(2024, 1, 13)
    assert lib.find_loan(loan.loan_id).due_date == date(2024, 1, 13)

    with pytest.raises(AlreadyRenewed):
        lib.renew_book(loan.loan_id, today=date(2024, 1, 9))
    assert lib.find_loan(loan.loan_id).due_date == date(2024, 1, 13)


def test_renewed_loan_fine_counts_from_new_due_date(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    lib.renew_book(loan.loan_id, today=DAY)

    assert lib.return_book(loan.loan_id, today=date(2024, 1, 15)) == 20.0


def test_renew_returned_loan_refused(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    lib.return_book(loan.loan_id, today=DAY)

    with pytest.raises(AlreadyReturned):
        lib.renew_book(loan.loan_id, today=DAY)


def test_renew_unknown_loan(lib):
    with pytest.raises(UnknownLoan):
        lib.renew_book(7, today=DAY)


def test_overdue_renewal_allowed_by_default(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    renewed = lib.renew_book(loan.loan_id, today=date(2024, 1, 12))
    assert renewed.due_date == date(2024, 1, 13)


def test_overdue_renewal_can_be_blocked(lib, stocked):
    member, dune, _ = stocked
    lib.engine.policy = LendingPolicy(allow_overdue_renewal=False)
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    with pytest.raises(OverdueRenewalBlocked):
        lib.renew_book(loan.loan_id, today=date(2024, 1, 11))
    assert lib.find_loan(loan.loan_id).renewed is False
    # on the due date itself the loan is not overdue yet
    assert lib.renew_book(loan.loan_id, today=date(2024, 1, 10)).renewed is True


def test_pay_fines_clears_balance_and_loans(lib, stocked):
    member, dune, hobbit = stocked
    first = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    second = lib.borrow_book(member.member_id, hobbit.book_id, today=DAY)
    lib.return_book(first.loan_id, today=date(2024, 1, 13))
    lib.return_book(second.loan_id, today=date(2024, 1, 11))

    details = lib.fine_details(member.member_id)
    assert details.balance == 40.0
    assert {l.loan_id for l in details.unpaid_loans} == {first.loan_id, second.loan_id}

    assert lib.pay_fines(member.member_id) == 40.0
    assert lib.find_member(member.member_id).total_fine_due == 0.0
    assert lib.find_loan(first.loan_id).fine_paid is True
    assert lib.find_loan(second.loan_id).fine_paid is True
    assert lib.fine_details(member.member_id).unpaid_loans == []


def test_pay_fines_with_zero_balance_is_a_no_op(lib, stocked):
    member, _, _ = stocked
    assert lib.pay_fines(member.member_id) == 0.0
    assert lib.find_member(member.member_id).total_fine_due == 0.0


def test_pay_fines_repairs_balance_without_unpaid_loans(lib, stocked):
    member, _, _ = stocked
    lib.members.update_balance(member.member_id, 25.0)

    assert lib.pay_fines(member.member_id) == 25.0
    assert lib.find_member(member.member_id).total_fine_due == 0.0


def test_pay_fines_unknown_member(lib):
    with pytest.raises(UnknownMember):
        lib.pay_fines(404)


def test_borrow_rolled_back_when_copy_update_fails(lib, stocked, monkeypatch):
    member, dune, _ = stocked
    monkeypatch.setattr(lib.books, "adjust_copies", lambda book_id, delta: False)

    with pytest.raises(PersistenceFailure) as exc_info:
        lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    assert exc_info.value.reason is FailureReason.PERSISTENCE_FAILURE
    assert lib.loan_history(member.member_id) == []
    assert _copies(lib, dune.book_id) == 2


def test_return_rolled_back_when_balance_update_fails(lib, stocked, monkeypatch):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    def broken(member_id, new_balance):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(lib.members, "update_balance", broken)
    with pytest.raises(PersistenceFailure):
        lib.return_book(loan.loan_id, today=date(2024, 1, 13))

    after = lib.find_loan(loan.loan_id)
    assert after.is_open
    assert after.fine_amount == 0.0
    assert _copies(lib, dune.book_id) == 1
    assert lib.find_member(member.member_id).total_fine_due == 0.0


def test_pay_fines_rolled_back_on_failure(lib, stocked, monkeypatch):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    lib.return_book(loan.loan_id, today=date(2024, 1, 13))
    monkeypatch.setattr(lib.members, "update_balance", lambda member_id, new_balance: False)

    with pytest.raises(PersistenceFailure):
        lib.pay_fines(member.member_id)
    assert lib.find_loan(loan.loan_id).fine_paid is False
    assert lib.find_member(member.member_id).total_fine_due == 30.0


def test_return_rolled_back_when_loan_close_fails(lib, stocked, monkeypatch):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    monkeypatch.setattr(lib.loans, "set_return", lambda *args, **kwargs: False)

    with pytest.raises(PersistenceFailure):
        lib.return_book(loan.loan_id, today=date(2024, 1, 13))
    assert lib.find_loan(loan.loan_id).is_open
    assert _copies(lib, dune.book_id) == 1
    assert lib.find_member(member.member_id).total_fine_due == 0.0


def test_pay_fines_rolled_back_when_second_loan_update_fails(lib, stocked, monkeypatch):
    member, dune, hobbit = stocked
    first = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    second = lib.borrow_book(member.member_id, hobbit.book_id, today=DAY)
    lib.return_book(first.loan_id, today=date(2024, 1, 13))
    lib.return_book(second.loan_id, today=date(2024, 1, 12))
    assert lib.find_member(member.member_id).total_fine_due == 50.0

    real_set_fine_paid = lib.loans.set_fine_paid
    calls = []

    def fail_on_second(loan_id, paid):
        calls.append(loan_id)
        if len(calls) == 2:
            return False
        return real_set_fine_paid(loan_id, paid)

    monkeypatch.setattr(lib.loans, "set_fine_paid", fail_on_second)
    with pytest.raises(PersistenceFailure):
        lib.pay_fines(member.member_id)

    assert len(calls) == 2
    assert lib.find_member(member.member_id).total_fine_due == 50.0
    assert lib.find_loan(first.loan_id).fine_paid is False
    assert lib.find_loan(second.loan_id).fine_paid is False


def test_overdue_report(lib, stocked):
    member, dune, hobbit = stocked
    late = lib.borrow_book(member.member_id, dune.book_id, today=DAY)
    lib.borrow_book(member.member_id, hobbit.book_id, today=date(2024, 1, 9))

    report = lib.overdue_report(today=date(2024, 1, 13))
    assert len(report) == 1
    entry = report[0]
    assert entry.loan.loan_id == late.loan_id
    assert entry.book.title == "Dune"
    assert entry.member.member_id == member.member_id
    assert entry.days_overdue == 3
    assert entry.fine == 30.0

    assert lib.overdue_report(today=date(2024, 1, 10)) == []


def test_member_status(lib, stocked):
    member, dune, _ = stocked
    lib.borrow_book(member.member_id, dune.book_id, today=DAY)

    status = lib.member_status(member.member_id)
    assert status.member.email == "ada@example.com"
    assert status.balance == 0.0
    assert status.max_loans == 4
    assert len(status.open_loans) == 1

    with pytest.raises(UnknownMember):
        lib.member_status(999)


def test_active_loans_unknown_member(lib):
    with pytest.raises(UnknownMember):
        lib.borrowed_books(12)


def test_check_availability_hides_books_out_on_loan(lib, stocked):
    member, _, hobbit = stocked
    assert [b.title for b in lib.check_availability("hobbit")] == ["The Hobbit"]

    lib.borrow_book(member.member_id, hobbit.book_id, today=DAY)
    assert lib.check_availability("hobbit") == []
    assert [b.title for b in lib.search_books("hobbit")] == ["The Hobbit"]
    assert [b.title for b in lib.available_books()] == ["Dune"]


def test_default_due_date_uses_today(lib, stocked):
    member, dune, _ = stocked
    loan = lib.borrow_book(member.member_id, dune.book_id)
    assert loan.due_date - loan.loan_date == timedelta(days=5)
