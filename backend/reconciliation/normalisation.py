"""
Normalisation helpers shared by the index, the cascade and the repair pass.

Money is always compared as Decimal with an explicit tolerance, and dates
as whole-day differences.
"""

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

Number = Union[Decimal, int, float, str]

_NON_ALNUM = re.compile(r"[^a-z0-9 ]+")
_WHITESPACE = re.compile(r"\s+")

# Composite order ids look like "<hash>-<sequence>"
ORDER_ID_COMPOSITE_MIN_LENGTH = 8


def to_decimal(value: Number) -> Decimal:
    """Convert numbers without going through binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize_order_id(value: Optional[str]) -> Optional[str]:
    """
    Lower-case an order id and strip the sequence suffix from composite ids.

    "ABC1234-5" -> "abc1234"; ids of 8 characters or fewer keep their dash.
    """
    if value is None:
        return None
    key = str(value).strip().lower()
    if not key:
        return None
    if "-" in key and len(key) > ORDER_ID_COMPOSITE_MIN_LENGTH:
        key = key.split("-", 1)[0]
    return key or None


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    email = str(value).strip().lower()
    return email if "@" in email else None


def email_domain(value: Optional[str]) -> Optional[str]:
    """Part after the first `@`, or None when there is no usable domain."""
    email = normalize_email(value)
    if not email:
        return None
    domain = email.split("@")[1].strip()
    return domain or None


def normalize_name(value: Optional[str]) -> str:
    """
    Lower-case, strip diacritics, drop non-alphanumerics, collapse spaces.

    "  José  Pérez-Gómez, S.L. " -> "jose perezgomez sl"
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    lowered = _WHITESPACE.sub(" ", stripped.lower())
    cleaned = _NON_ALNUM.sub("", lowered)
    return _WHITESPACE.sub(" ", cleaned).strip()


def amount_bucket(value: Number) -> int:
    """Integer currency-unit bucket, rounding half away from zero."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def amounts_within(a: Number, b: Number, tolerance: Number) -> bool:
    """True when |a - b| is strictly below the tolerance."""
    return abs(to_decimal(a) - to_decimal(b)) < to_decimal(tolerance)


def as_day(value: Union[date, datetime, str, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def day_diff(a: Union[date, datetime, str, None], b: Union[date, datetime, str, None]) -> Optional[int]:
    """Absolute whole-day difference, or None when either side is missing."""
    da, db = as_day(a), as_day(b)
    if da is None or db is None:
        return None
    return abs((da - db).days)


def parse_locale_number(value: Optional[str]) -> Decimal:
    """
    Parse an accounting-export number with `.` thousands and `,` decimals.

    "4.000,50" -> 4000.50, "(1.234,56)" -> -1234.56, "-" -> 0.

    Raises:
        ValueError: empty or unreadable input
    """
    if value is None:
        raise ValueError("empty number")
    text = str(value).strip()
    if not text:
        raise ValueError("empty number")
    if text == "-":
        return Decimal("0")

    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1].strip()
    elif text.startswith("-"):
        negative = True
        text = text[1:].strip()

    cleaned = text.replace(" ", "").replace("\u00a0", "").replace(".", "").replace(",", ".")
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"unreadable number: {value!r}")
    if not number.is_finite():
        raise ValueError(f"unreadable number: {value!r}")
    return -number if negative else number


def parse_day_first_date(value: Optional[str]) -> date:
    """
    Parse a dd/mm/yyyy date.

    Raises:
        ValueError: malformed date
    """
    text = (value or "").strip()
    parts = text.split("/")
    if len(parts) != 3:
        raise ValueError(f"malformed date: {value!r}")
    day, month, year = (int(p) for p in parts)
    return date(year, month, day)


def normalize_description_prefix(value: Optional[str], length: int = 25) -> str:
    """Upper-case, collapse whitespace, keep the first `length` characters."""
    return _WHITESPACE.sub(" ", (value or "").strip().upper())[:length]
