"""SQLite data access for books, members and loans.

Repositories only run statements on the connection they are given; they never
commit. Grouping statements into a unit of work is the caller's job (see
``database.transaction``). Update methods report whether a row was affected;
store errors propagate as ``sqlite3.Error``.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import List, Optional

from book import Book
from loan import Loan
from member import Member

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = "book_id, title, author, isbn, publication_year, total_copies, available_copies"
_MEMBER_COLUMNS = "member_id, first_name, last_name, email, phone_number, join_date, total_fine_due"
_LOAN_COLUMNS = ("loan_id, book_id, member_id, loan_date, due_date, return_date, "
                 "renewed, fine_amount, fine_paid")


class CatalogRepository:
    """Book records and their copy counts."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, book: Book) -> Book:
        cursor = self.conn.execute(
            "INSERT INTO books (title, author, isbn, publication_year, total_copies, available_copies) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (book.title, book.author, book.isbn, book.publication_year,
             book.total_copies, book.available_copies),
        )
        book.book_id = cursor.lastrowid
        logger.info(f"Book created: id={book.book_id} title={book.title!r}")
        return book

    def get_by_id(self, book_id: int) -> Optional[Book]:
        row = self.conn.execute(
            f"SELECT {_BOOK_COLUMNS} FROM books WHERE book_id = ?", (book_id,)
        ).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def get_all(self) -> List[Book]:
        rows = self.conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY title").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def get_available(self) -> List[Book]:
        rows = self.conn.execute(
            f"SELECT {_BOOK_COLUMNS} FROM books WHERE available_copies > 0 ORDER BY title"
        ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def search(self, text: str) -> List[Book]:
        """Case-insensitive substring match on title, author or ISBN."""
        pattern = f"%{text.strip()}%"
        rows = self.conn.execute(
            f"SELECT {_BOOK_COLUMNS} FROM books "
            "WHERE title LIKE ? OR author LIKE ? OR isbn LIKE ? ORDER BY title",
            (pattern, pattern, pattern),
        ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def adjust_copies(self, book_id: int, delta: int) -> bool:
        """Shift the available count by ``delta``.

        Refuses (returns False) when the result would leave ``0..total_copies``.
        """
        cursor = self.conn.execute(
            "UPDATE books SET available_copies = available_copies + ? "
            "WHERE book_id = ? AND available_copies + ? BETWEEN 0 AND total_copies",
            (delta, book_id, delta),
        )
        return cursor.rowcount > 0

    def add_copies(self, book_id: int, additional: int) -> bool:
        cursor = self.conn.execute(
            "UPDATE books SET total_copies = total_copies + ?, available_copies = available_copies + ? "
            "WHERE book_id = ?",
            (additional, additional, book_id),
        )
        return cursor.rowcount > 0

    def delete(self, book_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM books WHERE book_id = ?", (book_id,))
        return cursor.rowcount > 0


class MemberRepository:
    """Member records and their accumulated fine balance."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, member: Member) -> Member:
        cursor = self.conn.execute(
            "INSERT INTO members (first_name, last_name, email, phone_number, join_date, total_fine_due) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (member.first_name, member.last_name, member.email, member.phone_number,
             member.join_date.isoformat(), member.total_fine_due),
        )
        member.member_id = cursor.lastrowid
        logger.info(f"Member created: id={member.member_id} email={member.email}")
        return member

    def get_by_id(self, member_id: int) -> Optional[Member]:
        row = self.conn.execute(
            f"SELECT {_MEMBER_COLUMNS} FROM members WHERE member_id = ?", (member_id,)
        ).fetchone()
        return Member.from_dict(dict(row)) if row else None

    def get_by_email(self, email: str) -> Optional[Member]:
        row = self.conn.execute(
            f"SELECT {_MEMBER_COLUMNS} FROM members WHERE email = ?", (email.strip(),)
        ).fetchone()
        return Member.from_dict(dict(row)) if row else None

    def get_all(self) -> List[Member]:
        rows = self.conn.execute(
            f"SELECT {_MEMBER_COLUMNS} FROM members ORDER BY last_name, first_name"
        ).fetchall()
        return [Member.from_dict(dict(row)) for row in rows]

    def update(self, member: Member) -> bool:
        """Update contact details. The balance is left alone."""
        cursor = self.conn.execute(
            "UPDATE members SET first_name = ?, last_name = ?, email = ?, phone_number = ? "
            "WHERE member_id = ?",
            (member.first_name, member.last_name, member.email, member.phone_number, member.member_id),
        )
        return cursor.rowcount > 0

    def update_balance(self, member_id: int, new_balance: float) -> bool:
        cursor = self.conn.execute(
            "UPDATE members SET total_fine_due = ? WHERE member_id = ?",
            (round(new_balance, 2), member_id),
        )
        return cursor.rowcount > 0

    def delete(self, member_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM members WHERE member_id = ?", (member_id,))
        return cursor.rowcount > 0


class LoanRepository:
    """Loan records, open and closed."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, loan: Loan) -> Loan:
        cursor = self.conn.execute(
            "INSERT INTO loans (book_id, member_id, loan_date, due_date, renewed, fine_amount, fine_paid) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (loan.book_id, loan.member_id, loan.loan_date.isoformat(), loan.due_date.isoformat(),
             int(loan.renewed), loan.fine_amount, int(loan.fine_paid)),
        )
        loan.loan_id = cursor.lastrowid
        return loan

    def get_by_id(self, loan_id: int) -> Optional[Loan]:
        row = self.conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM loans WHERE loan_id = ?", (loan_id,)
        ).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def get_all_by_member(self, member_id: int) -> List[Loan]:
        rows = self.conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM loans WHERE member_id = ? ORDER BY loan_date, loan_id",
            (member_id,),
        ).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def get_active_by_member(self, member_id: int) -> List[Loan]:
        rows = self.conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM loans WHERE member_id = ? AND return_date IS NULL "
            "ORDER BY due_date, loan_id",
            (member_id,),
        ).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def count_active_by_book(self, book_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM loans WHERE book_id = ? AND return_date IS NULL", (book_id,)
        ).fetchone()
        return row[0]

    def count_unpaid_by_book(self, book_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM loans WHERE book_id = ? AND fine_amount > 0 AND fine_paid = 0",
            (book_id,),
        ).fetchone()
        return row[0]

    def get_overdue(self, as_of: date) -> List[Loan]:
        """Open loans whose due date is strictly before ``as_of``."""
        rows = self.conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM loans WHERE return_date IS NULL AND due_date < ? "
            "ORDER BY due_date, loan_id",
            (as_of.isoformat(),),
        ).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def set_return(self, loan_id: int, return_date: date, fine_amount: float, fine_paid: bool) -> bool:
        # Only an open loan can be closed; a second close affects no rows
        cursor = self.conn.execute(
            "UPDATE loans SET return_date = ?, fine_amount = ?, fine_paid = ? "
            "WHERE loan_id = ? AND return_date IS NULL",
            (return_date.isoformat(), round(fine_amount, 2), int(fine_paid), loan_id),
        )
        return cursor.rowcount > 0

    def set_renewed(self, loan_id: int, new_due_date: date) -> bool:
        cursor = self.conn.execute(
            "UPDATE loans SET due_date = ?, renewed = 1 WHERE loan_id = ? AND renewed = 0",
            (new_due_date.isoformat(), loan_id),
        )
        return cursor.rowcount > 0

    def set_fine_paid(self, loan_id: int, paid: bool) -> bool:
        cursor = self.conn.execute(
            "UPDATE loans SET fine_paid = ? WHERE loan_id = ?", (int(paid), loan_id)
        )
        return cursor.rowcount > 0
