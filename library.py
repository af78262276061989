import logging
import sqlite3
from datetime import date
from typing import Any, Dict, List, Optional

import database
from book import Book
from database import get_db_connection, initialize_database, transaction
from lending import FineDetails, LendingEngine, LendingPolicy, MemberStatus, OverdueEntry
from loan import Loan
from member import Member
from repositories import CatalogRepository, LoanRepository, MemberRepository
from utils.validators import ContactValidator, ISBNValidator, TextValidator

logger = logging.getLogger(__name__)


class Library:
    """Entry point for the console and the API.

    Owns one database connection, the three repositories and the lending
    engine. Librarian actions (catalogue and membership upkeep) live here;
    everything that moves copies or balances is delegated to the engine.
    """

    def __init__(self, db_file: Optional[str] = None, policy: Optional[LendingPolicy] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self.conn: sqlite3.Connection = get_db_connection(self.db_file)
        # Make sure the schema exists on every start-up
        initialize_database(self.conn)

        self.books = CatalogRepository(self.conn)
        self.members = MemberRepository(self.conn)
        self.loans = LoanRepository(self.conn)
        self.engine = LendingEngine(self.conn, self.books, self.members, self.loans, policy)

    @property
    def policy(self) -> LendingPolicy:
        return self.engine.policy

    # ------------------------- Catalogue ------------------------- #
    def add_book(self, title: str, author: str, isbn: str, publication_year: Optional[int] = None,
                 total_copies: int = 1) -> Book:
        """Add a new title with every copy on the shelf."""
        if not TextValidator.validate_title(title):
            raise ValueError("Title cannot be empty.")
        if not TextValidator.validate_author(author):
            raise ValueError("Invalid author name.")
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValueError("Invalid ISBN format.")
        if not TextValidator.validate_publication_year(publication_year):
            raise ValueError(f"Invalid publication year: {publication_year}.")
        if total_copies < 1:
            raise ValueError("A book needs at least one copy.")

        book = Book(title=title, author=author, isbn=isbn, publication_year=publication_year,
                    total_copies=total_copies)
        with transaction(self.conn):
            return self.books.create(book)

    def add_copies(self, book_id: int, additional: int) -> Optional[Book]:
        """Add copies of an existing title. Returns the updated book or None if not found."""
        if additional < 1:
            raise ValueError("Number of copies to add must be positive.")
        with transaction(self.conn):
            if not self.books.add_copies(book_id, additional):
                return None
        logger.info(f"Added {additional} copies to book {book_id}")
        return self.books.get_by_id(book_id)

    def remove_book(self, book_id: int) -> bool:
        """Delete a title.

        Refused while copies are out on loan or a loan of it still carries an
        unpaid fine; its returned-loan history goes with it.
        """
        if self.books.get_by_id(book_id) is None:
            return False
        if self.loans.count_active_by_book(book_id) > 0:
            logger.warning(f"Book {book_id} not deleted: it has active loans")
            return False
        if self.loans.count_unpaid_by_book(book_id) > 0:
            logger.warning(f"Book {book_id} not deleted: loans of it carry unpaid fines")
            return False
        with transaction(self.conn):
            deleted = self.books.delete(book_id)
        if deleted:
            logger.info(f"Book {book_id} deleted")
        return deleted

    def find_book(self, book_id: int) -> Optional[Book]:
        return self.books.get_by_id(book_id)

    def list_books(self) -> List[Book]:
        return self.books.get_all()

    def search_books(self, query: str) -> List[Book]:
        """Every title matching ``query``, available or not."""
        return self.books.search(query)

    def check_availability(self, query: str) -> List[Book]:
        return self.engine.check_availability(query)

    def available_books(self) -> List[Book]:
        return self.engine.available_books()

    # ------------------------- Members ------------------------- #
    def add_member(self, first_name: str, last_name: str, email: str, phone_number: Optional[str] = None,
                   join_date: Optional[date] = None) -> Member:
        if not TextValidator.validate_name(first_name) or not TextValidator.validate_name(last_name):
            raise ValueError("First and last name are required.")
        if not ContactValidator.validate_email(email):
            raise ValueError(f"Invalid email address: {email}")
        if not ContactValidator.validate_phone(phone_number):
            raise ValueError(f"Invalid phone number: {phone_number}")
        if self.members.get_by_email(email) is not None:
            raise ValueError(f"Member with email {email.strip().lower()} already exists.")

        member = Member(first_name=first_name, last_name=last_name, email=email,
                        phone_number=phone_number, join_date=join_date or date.today())
        try:
            with transaction(self.conn):
                return self.members.create(member)
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Member with email {member.email} already exists.") from e

    def update_member(self, member_id: int, *, first_name: Optional[str] = None,
                      last_name: Optional[str] = None, email: Optional[str] = None,
                      phone_number: Optional[str] = None) -> Optional[Member]:
        """Update contact details. Returns the updated member or None if not found."""
        if all(v is None for v in (first_name, last_name, email, phone_number)):
            raise ValueError("Nothing to update.")
        member = self.members.get_by_id(member_id)
        if member is None:
            return None

        if first_name is not None and first_name.strip():
            member.first_name = first_name.strip()
        if last_name is not None and last_name.strip():
            member.last_name = last_name.strip()
        if email is not None:
            if not ContactValidator.validate_email(email):
                raise ValueError(f"Invalid email address: {email}")
            member.email = email.strip().lower()
        if phone_number is not None:
            if not ContactValidator.validate_phone(phone_number):
                raise ValueError(f"Invalid phone number: {phone_number}")
            member.phone_number = phone_number.strip() or None

        try:
            with transaction(self.conn):
                self.members.update(member)
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Member with email {member.email} already exists.") from e
        return member

    def remove_member(self, member_id: int) -> bool:
        """Delete a member; refused while they hold books or owe fines."""
        member = self.members.get_by_id(member_id)
        if member is None:
            return False
        if self.loans.get_active_by_member(member_id):
            logger.warning(f"Member {member_id} not deleted: they have active loans")
            return False
        if member.total_fine_due > 0:
            logger.warning(f"Member {member_id} not deleted: outstanding fines {member.total_fine_due:.2f}")
            return False
        with transaction(self.conn):
            return self.members.delete(member_id)

    def find_member(self, member_id: int) -> Optional[Member]:
        return self.members.get_by_id(member_id)

    def find_member_by_email(self, email: str) -> Optional[Member]:
        return self.members.get_by_email(email)

    def list_members(self) -> List[Member]:
        return self.members.get_all()

    # ------------------------- Lending ------------------------- #
    def borrow_book(self, member_id: int, book_id: int, today: Optional[date] = None) -> Loan:
        return self.engine.borrow(member_id, book_id, today)

    def return_book(self, loan_id: int, today: Optional[date] = None) -> float:
        return self.engine.return_loan(loan_id, today)

    def renew_book(self, loan_id: int, today: Optional[date] = None) -> Loan:
        return self.engine.renew(loan_id, today)

    def pay_fines(self, member_id: int, today: Optional[date] = None) -> float:
        return self.engine.pay_fines(member_id, today)

    def find_loan(self, loan_id: int) -> Optional[Loan]:
        return self.loans.get_by_id(loan_id)

    def borrowed_books(self, member_id: int) -> List[Loan]:
        return self.engine.active_loans(member_id)

    def loan_history(self, member_id: int) -> List[Loan]:
        return self.loans.get_all_by_member(member_id)

    def overdue_report(self, today: Optional[date] = None) -> List[OverdueEntry]:
        return self.engine.overdue_report(today)

    def member_status(self, member_id: int) -> MemberStatus:
        return self.engine.member_status(member_id)

    def fine_details(self, member_id: int) -> FineDetails:
        return self.engine.fine_details(member_id)

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) FROM books")
        total_books, total_copies, available_copies = cursor.fetchone()

        cursor.execute("SELECT COUNT(*), COALESCE(SUM(total_fine_due), 0) FROM members")
        total_members, outstanding_fines = cursor.fetchone()

        cursor.execute("SELECT COUNT(*) FROM loans WHERE return_date IS NULL")
        active_loans = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM loans WHERE return_date IS NULL AND due_date < ?",
                       (today.isoformat(),))
        overdue_loans = cursor.fetchone()[0]

        return {
            "total_books": total_books,
            "total_copies": total_copies,
            "available_copies": available_copies,
            "total_members": total_members,
            "active_loans": active_loans,
            "overdue_loans": overdue_loans,
            "outstanding_fines": round(outstanding_fines, 2),
        }

    def close(self) -> None:
        self.conn.close()
