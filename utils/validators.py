import re
from typing import Optional, Union


class ISBNValidator:
    """ISBN helpers used when books are registered and looked up.

    Validation is lenient: the check digit is not verified, only the shape
    of ISBN-10 (nine digits and a digit or 'X') and ISBN-13 (thirteen digits).
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            return s[:9].isdigit() and (s[9].isdigit() or s[9] == "X")
        if len(s) == 13:
            return s.isdigit()
        return False

    @staticmethod
    def looks_like_isbn(raw: Optional[str]) -> bool:
        """True when ``raw`` is written like an ISBN, dashes and spaces allowed."""
        if raw is None or not re.fullmatch(r"[0-9Xx\- ]+", raw.strip()):
            return False
        return ISBNValidator.is_valid_isbn(raw)


class IdentifierValidator:
    """Normalization for school ids, call numbers and accession numbers."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"\s+", " ", raw).strip()

    @staticmethod
    def as_row_id(raw: Union[int, str, None]) -> Optional[int]:
        """Return ``raw`` as a numeric row id if it is one, else None."""
        if isinstance(raw, bool):
            return None
        if isinstance(raw, int):
            return raw
        if isinstance(raw, str) and raw.strip().isdigit():
            return int(raw.strip())
        return None

