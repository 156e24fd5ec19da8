"""Unit tests for the canonical import row and statement CSV reader."""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from sntbilling.models import AccrualCategory
from sntbilling.services.errors import ValidationError
from sntbilling.services.import_rows import ImportRow, map_header, parse_import_row, read_statement_csv


class TestParseImportRow:
    def test_valid_row(self):
        row = parse_import_row(
            {
                "paid_at": "15.01.2025",
                "amount": "5 000,00",
                "plot_ref": " 12 ",
                "payer_name": "Иванов Иван",
                "payer_phone": "",
                "category": "membership_fee",
            },
            row_number=2,
        )
        assert row.row_number == 2
        assert row.paid_at == date(2025, 1, 15)
        assert row.amount == Decimal("5000.00")
        assert row.plot_ref == "12"
        assert row.payer_phone is None
        assert row.category == AccrualCategory.MEMBERSHIP

    def test_missing_amount(self):
        with pytest.raises(ValidationError, match="missing amount"):
            parse_import_row({"paid_at": "15.01.2025", "amount": ""}, row_number=3)

    def test_missing_date_and_amount(self):
        with pytest.raises(ValidationError, match="missing paid_at, amount"):
            parse_import_row({}, row_number=4)

    def test_bad_amount_format(self):
        with pytest.raises(ValidationError, match="Row 5"):
            parse_import_row({"paid_at": "15.01.2025", "amount": "abc"}, row_number=5)

    def test_non_positive_amount(self):
        with pytest.raises(ValidationError):
            parse_import_row({"paid_at": "15.01.2025", "amount": "0"}, row_number=6)

    def test_unknown_category(self):
        with pytest.raises(ValidationError, match="unknown category"):
            parse_import_row({"paid_at": "15.01.2025", "amount": "100", "category": "water"}, row_number=7)

    def test_row_is_frozen(self):
        row = ImportRow(row_number=1, paid_at=date(2025, 1, 15), amount=Decimal("10"))
        with pytest.raises(PydanticValidationError):
            row.amount = Decimal("20")


class TestStatementCsv:
    def test_map_header_aliases(self):
        mapping = map_header(["Дата", "Сумма", "Участок", "ФИО", "Телефон", "Назначение"])
        assert mapping == {
            "paid_at": 0,
            "amount": 1,
            "plot_ref": 2,
            "payer_name": 3,
            "payer_phone": 4,
            "comment": 5,
        }

    def test_map_header_exact_names_win(self):
        mapping = map_header(["payer_name", "payer_phone", "paid_at", "amount"])
        assert mapping["payer_name"] == 0
        assert mapping["payer_phone"] == 1

    def test_read_semicolon_csv_with_bom(self):
        content = (
            "\ufeffДата;Сумма;Участок;ФИО\n"
            "15.01.2025;5 000,00;12;Иванов Иван\n"
            "\n"
            "16.01.2025;1 500,00;7;Петров Петр\n"
        )
        rows = read_statement_csv(content)
        assert [number for number, _ in rows] == [2, 4]
        assert rows[0][1] == {
            "paid_at": "15.01.2025",
            "amount": "5 000,00",
            "plot_ref": "12",
            "payer_name": "Иванов Иван",
        }

    def test_read_comma_csv(self):
        content = "date,amount,plot,comment\n2025-01-15,5000,12,membership\n"
        rows = read_statement_csv(content)
        assert rows == [
            (2, {"paid_at": "2025-01-15", "amount": "5000", "plot_ref": "12", "comment": "membership"})
        ]

    def test_missing_required_columns(self):
        with pytest.raises(ValidationError, match="Required columns missing: amount"):
            read_statement_csv("Дата;Участок\n15.01.2025;12\n")

    def test_header_only(self):
        with pytest.raises(ValidationError, match="at least one data row"):
            read_statement_csv("Дата;Сумма\n")
