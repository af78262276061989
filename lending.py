"""Loan lifecycle and fine reconciliation.

``LendingEngine`` is the only code that moves a book's available-copy counter
or a member's fine balance. Every operation that touches more than one record
runs inside a single ``database.transaction`` so that a failure part way
through leaves nothing behind.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Iterator, List, Optional

from book import Book
from config import Settings, settings
from database import transaction
from loan import Loan, calculate_fine
from member import Member
from repositories import CatalogRepository, LoanRepository, MemberRepository

logger = logging.getLogger(__name__)


class FailureReason(str, Enum):
    UNKNOWN_MEMBER = "unknown_member"
    UNKNOWN_BOOK = "unknown_book"
    UNKNOWN_LOAN = "unknown_loan"
    NOT_AVAILABLE = "not_available"
    LOAN_LIMIT_EXCEEDED = "loan_limit_exceeded"
    DUPLICATE_LOAN = "duplicate_loan"
    ALREADY_RETURNED = "already_returned"
    ALREADY_RENEWED = "already_renewed"
    OVERDUE_RENEWAL_BLOCKED = "overdue_renewal_blocked"
    PERSISTENCE_FAILURE = "persistence_failure"


class LendingError(Exception):
    """Base class for refused lending operations.

    ``reason`` is the machine-checkable code; the message is for people.
    """

    reason: FailureReason

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"reason": self.reason.value, "message": self.message}


class UnknownMember(LendingError):
    reason = FailureReason.UNKNOWN_MEMBER


class UnknownBook(LendingError):
    reason = FailureReason.UNKNOWN_BOOK


class UnknownLoan(LendingError):
    reason = FailureReason.UNKNOWN_LOAN


class NotAvailable(LendingError):
    reason = FailureReason.NOT_AVAILABLE


class LoanLimitExceeded(LendingError):
    reason = FailureReason.LOAN_LIMIT_EXCEEDED


class DuplicateLoan(LendingError):
    reason = FailureReason.DUPLICATE_LOAN


class AlreadyReturned(LendingError):
    reason = FailureReason.ALREADY_RETURNED


class AlreadyRenewed(LendingError):
    reason = FailureReason.ALREADY_RENEWED


class OverdueRenewalBlocked(LendingError):
    reason = FailureReason.OVERDUE_RENEWAL_BLOCKED


class PersistenceFailure(LendingError):
    """A repository step failed; the whole operation was rolled back."""

    reason = FailureReason.PERSISTENCE_FAILURE


@dataclass
class LendingPolicy:
    max_loans: int = 4
    loan_days: int = 5
    renewal_days: int = 3
    fine_per_day: float = 10.0
    max_fine: Optional[float] = None
    allow_overdue_renewal: bool = True

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "LendingPolicy":
        return cls(
            max_loans=cfg.max_loans,
            loan_days=cfg.loan_days,
            renewal_days=cfg.renewal_days,
            fine_per_day=cfg.fine_per_day,
            max_fine=cfg.max_fine,
            allow_overdue_renewal=cfg.allow_overdue_renewal,
        )


@dataclass
class OverdueEntry:
    loan: Loan
    book: Optional[Book]
    member: Optional[Member]
    fine: float
    days_overdue: int


@dataclass
class MemberStatus:
    member: Member
    open_loans: List[Loan]
    max_loans: int

    @property
    def balance(self) -> float:
        return self.member.total_fine_due


@dataclass
class FineDetails:
    member: Member
    unpaid_loans: List[Loan] = field(default_factory=list)

    @property
    def balance(self) -> float:
        return self.member.total_fine_due


class LendingEngine:
    """Borrow, return, renew and fine settlement over the three repositories."""

    def __init__(self, conn: sqlite3.Connection, books: CatalogRepository, members: MemberRepository,
                 loans: LoanRepository, policy: Optional[LendingPolicy] = None) -> None:
        self.conn = conn
        self.books = books
        self.members = members
        self.loans = loans
        self.policy = policy or LendingPolicy.from_settings()

    # ------------------------- Helpers ------------------------- #
    @contextmanager
    def _unit_of_work(self, operation: str) -> Iterator[None]:
        """One transaction; store errors become PersistenceFailure after rollback."""
        try:
            with transaction(self.conn):
                yield
        except PersistenceFailure as exc:
            logger.error(f"{operation} rolled back: {exc}")
            raise
        except sqlite3.Error as exc:
            logger.error(f"{operation} failed and was rolled back: {exc}")
            raise PersistenceFailure(f"{operation} failed: {exc}") from exc

    def _require_member(self, member_id: int) -> Member:
        member = self.members.get_by_id(member_id)
        if member is None:
            raise UnknownMember(f"Member with ID {member_id} not found.")
        return member

    def _require_loan(self, loan_id: int) -> Loan:
        loan = self.loans.get_by_id(loan_id)
        if loan is None:
            raise UnknownLoan(f"Loan with ID {loan_id} not found.")
        return loan

    def fine_for(self, loan: Loan, reference_date: date) -> float:
        return calculate_fine(loan.due_date, reference_date, self.policy.fine_per_day, self.policy.max_fine)

    # ------------------------- Lifecycle ------------------------- #
    def borrow(self, member_id: int, book_id: int, today: Optional[date] = None) -> Loan:
        """Lend one copy of ``book_id`` to ``member_id``.

        Checks run in a fixed order and stop at the first failure: member
        exists, book exists, a copy is on the shelf, the member is under the
        loan limit, and the member does not already hold this title.
        """
        today = today or date.today()
        member = self._require_member(member_id)

        book = self.books.get_by_id(book_id)
        if book is None:
            raise UnknownBook(f"Book with ID {book_id} not found.")

        if book.available_copies <= 0:
            logger.warning(f"Borrow refused: '{book.title}' has no available copies")
            raise NotAvailable(f"Book '{book.title}' is currently not available.")

        active = self.loans.get_active_by_member(member_id)
        if len(active) >= self.policy.max_loans:
            logger.warning(f"Borrow refused: member {member_id} at limit of {self.policy.max_loans}")
            raise LoanLimitExceeded(
                f"Member {member.first_name} has reached the maximum limit of {self.policy.max_loans} borrowed books."
            )

        if any(loan.book_id == book_id for loan in active):
            raise DuplicateLoan(f"Member {member.first_name} already has an active loan for '{book.title}'.")

        loan = Loan(
            book_id=book_id,
            member_id=member_id,
            loan_date=today,
            due_date=today + timedelta(days=self.policy.loan_days),
        )
        with self._unit_of_work("Borrow"):
            self.loans.create(loan)
            if not self.books.adjust_copies(book_id, -1):
                raise PersistenceFailure(f"Could not take a copy of book {book_id}.")

        logger.info(f"Loan {loan.loan_id}: book {book_id} lent to member {member_id}, due {loan.due_date}")
        return loan

    def return_loan(self, loan_id: int, today: Optional[date] = None) -> float:
        """Close a loan and return the fine it incurred.

        Returning an already closed loan changes nothing and reports the fine
        recorded the first time.
        """
        today = today or date.today()
        loan = self._require_loan(loan_id)
        if not loan.is_open:
            logger.info(f"Loan {loan_id} already returned on {loan.return_date}")
            return loan.fine_amount

        fine = self.fine_for(loan, today)
        with self._unit_of_work("Return"):
            if not self.loans.set_return(loan_id, today, fine, False):
                raise PersistenceFailure(f"Could not record return of loan {loan_id}.")
            if not self.books.adjust_copies(loan.book_id, 1):
                raise PersistenceFailure(f"Could not shelve a copy of book {loan.book_id}.")
            if fine > 0:
                member = self.members.get_by_id(loan.member_id)
                if member is None or not self.members.update_balance(member.member_id,
                                                                      member.total_fine_due + fine):
                    raise PersistenceFailure(f"Could not post fine to member {loan.member_id}.")

        if fine > 0:
            logger.info(f"Loan {loan_id} returned late, fine {fine:.2f} posted to member {loan.member_id}")
        else:
            logger.info(f"Loan {loan_id} returned, no fine")
        return fine

    def renew(self, loan_id: int, today: Optional[date] = None) -> Loan:
        """Extend an open loan once by the renewal period."""
        today = today or date.today()
        loan = self._require_loan(loan_id)
        if not loan.is_open:
            raise AlreadyReturned(f"Loan {loan_id} has already been returned.")
        if loan.renewed:
            raise AlreadyRenewed(f"Loan {loan_id} has already been renewed once.")
        if not self.policy.allow_overdue_renewal and loan.is_overdue(today):
            raise OverdueRenewalBlocked(f"Loan {loan_id} is overdue; return it before renewing.")

        new_due_date = loan.due_date + timedelta(days=self.policy.renewal_days)
        with self._unit_of_work("Renew"):
            if not self.loans.set_renewed(loan_id, new_due_date):
                raise PersistenceFailure(f"Could not renew loan {loan_id}.")

        loan.due_date = new_due_date
        loan.renewed = True
        logger.info(f"Loan {loan_id} renewed, new due date {new_due_date}")
        return loan

    def pay_fines(self, member_id: int, today: Optional[date] = None) -> float:
        """Settle every unpaid loan fine of a member and zero their balance.

        Returns the amount cleared. A zero balance is a no-op. A positive
        balance with no unpaid loan behind it is repaired by zeroing it.
        """
        member = self._require_member(member_id)
        balance = member.total_fine_due
        if balance <= 0:
            logger.info(f"Member {member_id} has no outstanding fines")
            return 0.0

        unpaid = [loan for loan in self.loans.get_all_by_member(member_id) if loan.has_unpaid_fine]
        with self._unit_of_work("Pay fines"):
            for loan in unpaid:
                if not self.loans.set_fine_paid(loan.loan_id, True):
                    raise PersistenceFailure(f"Could not mark fine on loan {loan.loan_id} as paid.")
            if not self.members.update_balance(member_id, 0.0):
                raise PersistenceFailure(f"Could not reset balance of member {member_id}.")

        if not unpaid:
            logger.warning(
                f"Member {member_id} owed {balance:.2f} with no unpaid loan fines; balance reset to 0"
            )
        else:
            logger.info(f"Member {member_id} paid {balance:.2f} across {len(unpaid)} loan(s)")
        return balance

    # ------------------------- Queries ------------------------- #
    def check_availability(self, text: str) -> List[Book]:
        return [book for book in self.books.search(text) if book.available_copies > 0]

    def available_books(self) -> List[Book]:
        return self.books.get_available()

    def active_loans(self, member_id: int) -> List[Loan]:
        self._require_member(member_id)
        return self.loans.get_active_by_member(member_id)

    def overdue_report(self, today: Optional[date] = None) -> List[OverdueEntry]:
        today = today or date.today()
        return [
            OverdueEntry(
                loan=loan,
                book=self.books.get_by_id(loan.book_id),
                member=self.members.get_by_id(loan.member_id),
                fine=self.fine_for(loan, today),
                days_overdue=(today - loan.due_date).days,
            )
            for loan in self.loans.get_overdue(today)
        ]

    def member_status(self, member_id: int) -> MemberStatus:
        member = self._require_member(member_id)
        return MemberStatus(
            member=member,
            open_loans=self.loans.get_active_by_member(member_id),
            max_loans=self.policy.max_loans,
        )

    def fine_details(self, member_id: int) -> FineDetails:
        member = self._require_member(member_id)
        unpaid = [loan for loan in self.loans.get_all_by_member(member_id) if loan.has_unpaid_fine]
        return FineDetails(member=member, unpaid_loans=unpaid)
