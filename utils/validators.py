import re
from datetime import date
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9][0-9\s\-()]{5,}$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 validation with check digits verified."""

    @staticmethod
    def normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # weighted 1..10, sum divisible by 11
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            if (total + 10 * check_val) % 11 == 0:
                return True
            # Older records carry an 'X' check character without a valid checksum
            if check == "X" and s[:-1].isdigit():
                return True
            return False
        if len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class TextValidator:
    """Basic checks for names and free text entered by the librarian."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return title is not None and bool(title.strip())

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        if name is None:
            return False
        t = name.strip()
        return bool(t) and any(c.isalpha() for c in t)

    @staticmethod
    def validate_publication_year(year: Optional[int]) -> bool:
        if year is None:
            return True
        return 0 < year <= date.today().year + 1


class ContactValidator:
    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if email is None:
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def validate_phone(phone: Optional[str]) -> bool:
        # optional field
        if phone is None or not phone.strip():
            return True
        return bool(_PHONE_RE.match(phone.strip()))
