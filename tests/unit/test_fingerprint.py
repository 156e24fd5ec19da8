"""Unit tests for payment fingerprinting."""

from datetime import date
from decimal import Decimal

from sntbilling.services.fingerprint import (
    FINGERPRINT_VERSION,
    canonical_string,
    compute_fingerprint,
    external_fingerprint,
)
from sntbilling.services.import_rows import ImportRow


def make_row(**overrides) -> ImportRow:
    values = {
        "row_number": 1,
        "paid_at": date(2025, 1, 15),
        "amount": Decimal("5000"),
        "plot_ref": "12",
        "payer_name": "Иванов Иван",
        "payer_phone": "+7 916 123-45-67",
        "comment": "Членский взнос",
    }
    values.update(overrides)
    return ImportRow(**values)


class TestFingerprint:
    def test_canonical_string_field_order(self):
        assert canonical_string(make_row()) == (
            "v1|2025-01-15|5000.00|12|79161234567|иванов иван|Членский взнос"
        )
        assert FINGERPRINT_VERSION == "v1"

    def test_deterministic(self):
        assert compute_fingerprint(make_row()) == compute_fingerprint(make_row(row_number=99))

    def test_length(self):
        assert len(compute_fingerprint(make_row())) == 32

    def test_normalization_ignores_formatting(self):
        reformatted = make_row(
            payer_name="  ИВАНОВ   иван ",
            payer_phone="8 (916) 1234567",
            amount=Decimal("5000.00"),
        )
        assert compute_fingerprint(reformatted) == compute_fingerprint(make_row())

    def test_content_change_changes_fingerprint(self):
        base = compute_fingerprint(make_row())
        assert compute_fingerprint(make_row(amount=Decimal("5000.01"))) != base
        assert compute_fingerprint(make_row(paid_at=date(2025, 1, 16))) != base
        assert compute_fingerprint(make_row(comment="Целевой взнос")) != base

    def test_external_id_takes_priority(self):
        first = make_row(external_id="TX-1")
        second = make_row(external_id="TX-2")
        assert compute_fingerprint(first) != compute_fingerprint(second)
        assert compute_fingerprint(first) == external_fingerprint("TX-1")
        assert compute_fingerprint(make_row(external_id="TX-1", amount=Decimal("1"))) == compute_fingerprint(first)

    def test_identical_content_without_external_id_collides(self):
        assert compute_fingerprint(make_row(row_number=1)) == compute_fingerprint(make_row(row_number=2))
