"""Parsing and normalization helpers for bank statement values.

Handles Russian-specific number formatting used in statements:
- Decimal separator: comma (,)
- Thousand separator: space ( ) or non-breaking space
- Currency suffix/prefix: р., руб.
- Date formats: DD.MM.YYYY, DD/MM/YYYY, YYYY-MM-DD

Example:
    >>> parse_amount("1 000,25")
    Decimal('1000.25')

    >>> parse_statement_date("15.01.2025")
    datetime.date(2025, 1, 15)

    >>> normalize_phone("+7 (916) 123-45-67")
    '79161234567'
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

CENT = Decimal("0.01")

_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y")
_CURRENCY_TOKENS = ("руб.", "руб", "р.", "₽")


def money(value: Decimal | int | str) -> Decimal:
    """Quantize a value to kopecks with half-up rounding."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse a Russian-formatted money amount to Decimal.

    Args:
        value: Amount string (e.g., "1 000,25", "р.5 000,00") or None/empty

    Returns:
        Decimal quantized to kopecks, or None if input is empty

    Raises:
        ValueError: If value cannot be parsed as a number

    Examples:
        >>> parse_amount("1 000,25")
        Decimal('1000.25')
        >>> parse_amount("5000")
        Decimal('5000.00')
        >>> parse_amount("")
        None
    """
    if value is None:
        return None
    if isinstance(value, (int, Decimal)):
        return money(value)
    if not isinstance(value, str):
        raise ValueError(f"Cannot parse amount from {type(value).__name__}")

    value = value.strip()
    if not value:
        return None

    normalized = value.lower()
    for token in _CURRENCY_TOKENS:
        normalized = normalized.replace(token, "")
    normalized = normalized.replace(" ", "").replace("\xa0", "").replace(",", ".")

    try:
        return money(Decimal(normalized))
    except (ValueError, InvalidOperation) as e:
        raise ValueError(f"Cannot parse amount '{value}'") from e


def parse_statement_date(value: Optional[str]) -> Optional[date]:
    """Parse a statement date string to a date object.

    Accepts "YYYY-MM-DD", "DD.MM.YYYY" and "DD/MM/YYYY". A trailing time part
    ("2025-01-15T10:00:00" or "15.01.2025 10:00") is ignored.

    Raises:
        ValueError: If no supported format matches
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    value = str(value).strip()
    if not value:
        return None

    head = re.split(r"[T ]", value, maxsplit=1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(head, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Cannot parse date '{value}' (expected DD.MM.YYYY or YYYY-MM-DD)")


def normalize_phone(value: Optional[str]) -> str:
    """Digits-only phone; a leading 8 of an 11-digit Russian number becomes 7."""
    digits = re.sub(r"\D", "", value or "")
    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    return digits


def normalize_name(value: Optional[str]) -> str:
    """Lower-case, ё→е, collapsed whitespace."""
    text = (value or "").strip().lower().replace("ё", "е")
    return re.sub(r"\s+", " ", text)


def normalize_text(value: Optional[str]) -> str:
    """Stripped text with collapsed whitespace (case preserved)."""
    return re.sub(r"\s+", " ", (value or "").strip())


def month_key(day: date) -> str:
    """Month key "YYYY-MM" for a date."""
    return day.strftime("%Y-%m")


__all__ = [
    "CENT",
    "money",
    "parse_amount",
    "parse_statement_date",
    "normalize_phone",
    "normalize_name",
    "normalize_text",
    "month_key",
]
