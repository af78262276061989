import sqlite3
from datetime import date

import pytest

from book import Book
from database import get_db_connection, initialize_database, transaction
from loan import Loan
from member import Member
from repositories import CatalogRepository, LoanRepository, MemberRepository


@pytest.fixture
def conn(tmp_path):
    conn = get_db_connection(str(tmp_path / "repo.db"))
    initialize_database(conn)
    yield conn
    conn.close()


@pytest.fixture
def repos(conn):
    return CatalogRepository(conn), MemberRepository(conn), LoanRepository(conn)


def _seed(repos):
    books, members, loans = repos
    book = books.create(Book("Emma", "Jane Austen", "9780141439587", total_copies=2))
    member = members.create(Member("Alan", "Turing", "Alan@Example.com", join_date=date(2024, 1, 1)))
    return book, member


def test_initialize_database_is_idempotent(conn):
    initialize_database(conn)
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"books", "members", "loans"} <= tables


def test_book_round_trip_and_search(repos):
    books, _, _ = repos
    book, _ = _seed(repos)

    found = books.get_by_id(book.book_id)
    assert found.title == "Emma"
    assert found.available_copies == 2
    assert [b.book_id for b in books.search("austen")] == [book.book_id]
    assert [b.book_id for b in books.search("439587")] == [book.book_id]
    assert books.search("tolstoy") == []
    assert books.get_by_id(999) is None


def test_adjust_copies_stays_within_bounds(repos):
    books, _, _ = repos
    book, _ = _seed(repos)

    assert books.adjust_copies(book.book_id, 1) is False
    assert books.adjust_copies(book.book_id, -1) is True
    assert books.adjust_copies(book.book_id, -1) is True
    assert books.adjust_copies(book.book_id, -1) is False
    assert books.get_by_id(book.book_id).available_copies == 0
    assert books.get_available() == []


def test_add_copies_grows_total_and_available(repos):
    books, _, _ = repos
    book, _ = _seed(repos)
    books.adjust_copies(book.book_id, -1)

    assert books.add_copies(book.book_id, 3) is True
    updated = books.get_by_id(book.book_id)
    assert (updated.available_copies, updated.total_copies) == (4, 5)
    assert books.add_copies(999, 1) is False


def test_member_email_is_unique_ignoring_case(repos):
    _, members, _ = repos
    _, member = _seed(repos)

    assert member.email == "alan@example.com"
    assert members.get_by_email("ALAN@example.com").member_id == member.member_id
    with pytest.raises(sqlite3.IntegrityError):
        members.create(Member("Other", "Alan", "alan@EXAMPLE.com"))


def test_update_balance_rounds_to_cents(repos):
    _, members, _ = repos
    _, member = _seed(repos)

    assert members.update_balance(member.member_id, 20.004 + 10) is True
    assert members.get_by_id(member.member_id).total_fine_due == 30.0
    assert members.update_balance(999, 1.0) is False


def test_loan_lifecycle_guards(repos):
    _, _, loans = repos
    book, member = _seed(repos)
    loan = loans.create(Loan(book.book_id, member.member_id, date(2024, 1, 5), date(2024, 1, 10)))

    assert loans.count_active_by_book(book.book_id) == 1
    assert [l.loan_id for l in loans.get_overdue(date(2024, 1, 11))] == [loan.loan_id]
    assert loans.get_overdue(date(2024, 1, 10)) == []

    assert loans.set_renewed(loan.loan_id, date(2024, 1, 13)) is True
    assert loans.set_renewed(loan.loan_id, date(2024, 1, 16)) is False
    assert loans.get_by_id(loan.loan_id).due_date == date(2024, 1, 13)

    assert loans.set_return(loan.loan_id, date(2024, 1, 15), 20.0, False) is True
    assert loans.set_return(loan.loan_id, date(2024, 1, 20), 70.0, False) is False
    closed = loans.get_by_id(loan.loan_id)
    assert closed.return_date == date(2024, 1, 15)
    assert closed.fine_amount == 20.0
    assert loans.get_active_by_member(member.member_id) == []
    assert loans.count_unpaid_by_book(book.book_id) == 1

    assert loans.set_fine_paid(loan.loan_id, True) is True
    assert loans.count_unpaid_by_book(book.book_id) == 0
    assert len(loans.get_all_by_member(member.member_id)) == 1


def test_transaction_rolls_back_every_statement(conn, repos):
    books, members, _ = repos
    book, member = _seed(repos)

    with pytest.raises(RuntimeError):
        with transaction(conn):
            books.adjust_copies(book.book_id, -1)
            members.update_balance(member.member_id, 50.0)
            raise RuntimeError("boom")

    assert books.get_by_id(book.book_id).available_copies == 2
    assert members.get_by_id(member.member_id).total_fine_due == 0.0


def test_nested_transaction_joins_outer(conn, repos):
    books, _, _ = repos
    book, _ = _seed(repos)

    with pytest.raises(RuntimeError):
        with transaction(conn):
            with transaction(conn):
                books.adjust_copies(book.book_id, -1)
            raise RuntimeError("outer fails")

    assert books.get_by_id(book.book_id).available_copies == 2


def test_error_survives_rollback_already_done_by_sqlite(conn, repos):
    books, _, _ = repos
    book, _ = _seed(repos)

    # SQLite ends the transaction itself on some errors (disk full, I/O)
    with pytest.raises(RuntimeError, match="disk full"):
        with transaction(conn):
            books.adjust_copies(book.book_id, -1)
            conn.execute("ROLLBACK")
            raise RuntimeError("disk full")

    assert not conn.in_transaction
    assert books.get_by_id(book.book_id).available_copies == 2


def test_deleting_book_removes_its_loan_history(conn, repos):
    books, _, loans = repos
    book, member = _seed(repos)
    loan = loans.create(Loan(book.book_id, member.member_id, date(2024, 1, 5), date(2024, 1, 10)))
    loans.set_return(loan.loan_id, date(2024, 1, 6), 0.0, False)

    assert books.delete(book.book_id) is True
    assert loans.get_by_id(loan.loan_id) is None
