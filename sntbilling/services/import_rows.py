"""Canonical payment import row and bank statement CSV reader.

Every source (CSV statement, manual form, API) is converted into ImportRow at
the boundary. Rows that do not conform raise ValidationError and never reach
matching or reconciliation.
"""

import csv
import io
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from sntbilling.models.accrual import AccrualCategory
from sntbilling.services.errors import ValidationError
from sntbilling.services.parsers import normalize_text, parse_amount, parse_statement_date


class ImportRow(BaseModel):
    """Strict canonical payment row."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    row_number: int = Field(..., ge=0, description="1-based line number in the source file")
    paid_at: date = Field(..., description="Payment date")
    amount: Decimal = Field(..., gt=0, description="Payment amount in rubles")
    plot_ref: str | None = Field(None, description="Free-text plot label or number")
    payer_name: str | None = Field(None, description="Payer full name")
    payer_phone: str | None = Field(None, description="Payer phone, any format")
    comment: str | None = Field(None, description="Payment purpose / free-text comment")
    external_id: str | None = Field(None, description="Bank transaction id")
    category: AccrualCategory | None = Field(None, description="Explicit debt category")

    @field_validator("paid_at", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_statement_date(value)
        return value

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Any:
        if isinstance(value, (str, int, float)):
            return parse_amount(str(value))
        return value

    @field_validator("category", mode="before")
    @classmethod
    def _parse_category(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        category = AccrualCategory.normalize(value)
        if category is None:
            raise ValueError(f"unknown category '{value}'")
        return category

    @field_validator("plot_ref", "payer_name", "payer_phone", "comment", "external_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = normalize_text(str(value))
        return text or None


def parse_import_row(raw: dict[str, Any], row_number: int) -> ImportRow:
    """Validate a loose dict into an ImportRow.

    Raises:
        ValidationError: Missing/invalid date or amount, unknown category
    """
    missing = [key for key in ("paid_at", "amount") if raw.get(key) in (None, "")]
    if missing:
        raise ValidationError(f"Row {row_number}: missing {', '.join(missing)}")
    try:
        return ImportRow(**{**raw, "row_number": row_number})
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Row {row_number}: {problems}") from e


# Header aliases, checked as substrings of the lower-cased header cell
HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "paid_at": ("paid_at", "date", "дата"),
    "amount": ("amount", "сумма", "sum"),
    "plot_ref": ("plot", "участок"),
    "payer_name": ("payer", "owner", "name", "fio", "фио", "плательщик"),
    "payer_phone": ("phone", "телефон", "tel"),
    "comment": ("comment", "комментарий", "purpose", "назначение"),
    "external_id": ("external_id", "transaction", "операци", "txn"),
    "category": ("category", "категория", "вид"),
}

REQUIRED_COLUMNS = ("paid_at", "amount")


def map_header(header: Iterable[str]) -> dict[str, int]:
    """Map canonical field names to column indexes.

    Exact header matches are assigned first, so "payer_phone" is not taken
    by the substring alias "payer" of the name column.
    """
    cells = [str(h or "").strip().lower() for h in header]
    mapping: dict[str, int] = {}
    used: set[int] = set()

    for field in HEADER_ALIASES:
        if field in cells:
            mapping[field] = cells.index(field)
            used.add(mapping[field])

    for field, aliases in HEADER_ALIASES.items():
        if field in mapping:
            continue
        for index, cell in enumerate(cells):
            if index in used:
                continue
            if any(alias in cell for alias in aliases):
                mapping[field] = index
                used.add(index)
                break
    return mapping


def read_statement_csv(content: str) -> list[tuple[int, dict[str, str]]]:
    """
    Read a statement CSV into (row_number, raw dict) pairs.

    The delimiter (';', ',' or tab) is sniffed from the header line, a UTF-8
    BOM is stripped and fully empty lines are skipped.

    Raises:
        ValidationError: No data rows, or the date/amount columns are missing
    """
    content = content.lstrip("\ufeff")
    lines = content.splitlines()
    if len(lines) < 2:
        raise ValidationError("Statement needs a header line and at least one data row")

    try:
        dialect = csv.Sniffer().sniff(lines[0], delimiters=";,\t")
        delimiter = dialect.delimiter
    except csv.Error:
        delimiter = ";"

    reader = csv.reader(io.StringIO(content), delimiter=delimiter)
    header = next(reader)
    mapping = map_header(header)
    missing = [c for c in REQUIRED_COLUMNS if c not in mapping]
    if missing:
        raise ValidationError(
            f"Required columns missing: {', '.join(missing)}. Found: {', '.join(header)}"
        )

    rows: list[tuple[int, dict[str, str]]] = []
    for line_number, cells in enumerate(reader, start=2):
        if not any(cell.strip() for cell in cells):
            continue
        raw = {
            field: cells[index].strip() if index < len(cells) else ""
            for field, index in mapping.items()
        }
        rows.append((line_number, raw))
    return rows


__all__ = [
    "ImportRow",
    "parse_import_row",
    "map_header",
    "read_statement_csv",
    "HEADER_ALIASES",
]
