from __future__ import annotations

from datetime import date


class Member:
    """A library member and the fines they currently owe."""

    def __init__(self, first_name: str, last_name: str, email: str, phone_number: str | None = None,
                 join_date: date | None = None, total_fine_due: float = 0.0,
                 member_id: int | None = None) -> None:
        self.member_id = member_id
        self.first_name = first_name.strip()
        self.last_name = last_name.strip()
        self.email = email.strip().lower()
        self.phone_number = phone_number.strip() if phone_number and phone_number.strip() else None
        self.join_date = join_date or date.today()
        self.total_fine_due = round(float(total_fine_due), 2)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.full_name} <{self.email}>"

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone_number": self.phone_number,
            "join_date": self.join_date.isoformat(),
            "total_fine_due": self.total_fine_due,
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        join_date = data.get("join_date")
        if isinstance(join_date, str):
            join_date = date.fromisoformat(join_date)
        return Member(
            member_id=data.get("member_id"),
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            phone_number=data.get("phone_number"),
            join_date=join_date,
            total_fine_due=data.get("total_fine_due") or 0.0,
        )
