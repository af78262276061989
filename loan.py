from __future__ import annotations

from datetime import date
from typing import Optional


def calculate_fine(due_date: date, reference_date: date, daily_rate: float,
                   max_fine: Optional[float] = None) -> float:
    """Fine owed for a loan due on ``due_date`` when inspected on ``reference_date``.

    One ``daily_rate`` per whole day past the due date, nothing on or before it.
    ``max_fine`` caps the result when given; by default fines are unbounded.
    """
    days_late = max(0, (reference_date - due_date).days)
    fine = days_late * daily_rate
    if max_fine is not None:
        fine = min(fine, max_fine)
    return round(fine, 2)


class Loan:
    """One copy of a book held by one member."""

    def __init__(self, book_id: int, member_id: int, loan_date: date, due_date: date,
                 return_date: date | None = None, renewed: bool = False,
                 fine_amount: float = 0.0, fine_paid: bool = False,
                 loan_id: int | None = None) -> None:
        self.loan_id = loan_id
        self.book_id = book_id
        self.member_id = member_id
        self.loan_date = loan_date
        self.due_date = due_date
        self.return_date = return_date
        self.renewed = renewed
        self.fine_amount = round(float(fine_amount), 2)
        self.fine_paid = fine_paid

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    @property
    def has_unpaid_fine(self) -> bool:
        return self.fine_amount > 0 and not self.fine_paid

    def is_overdue(self, today: Optional[date] = None) -> bool:
        today = today or date.today()
        return self.is_open and self.due_date < today

    def calculate_fine(self, reference_date: date, daily_rate: float,
                       max_fine: Optional[float] = None) -> float:
        return calculate_fine(self.due_date, reference_date, daily_rate, max_fine)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        returned = self.return_date.isoformat() if self.return_date else "Not Returned"
        return (f"Loan {self.loan_id} | Book {self.book_id} | Member {self.member_id} | "
                f"Due: {self.due_date.isoformat()} | Returned: {returned} | Renewed: {self.renewed}")

    def to_dict(self) -> dict:
        return {
            "loan_id": self.loan_id,
            "book_id": self.book_id,
            "member_id": self.member_id,
            "loan_date": self.loan_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "renewed": self.renewed,
            "fine_amount": self.fine_amount,
            "fine_paid": self.fine_paid,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        # SQLite hands back dates as ISO text and booleans as 0/1
        def _as_date(value):
            if value is None or isinstance(value, date):
                return value
            return date.fromisoformat(value)

        return Loan(
            loan_id=data.get("loan_id"),
            book_id=data["book_id"],
            member_id=data["member_id"],
            loan_date=_as_date(data["loan_date"]),
            due_date=_as_date(data["due_date"]),
            return_date=_as_date(data.get("return_date")),
            renewed=bool(data.get("renewed")),
            fine_amount=data.get("fine_amount") or 0.0,
            fine_paid=bool(data.get("fine_paid")),
        )
