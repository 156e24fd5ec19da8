"""Payment fingerprinting for at-most-once import.

The canonical field order below is part of the stored data: every existing
Payment.fingerprint was computed with it. Changing the order, the field set
or the normalization requires a new FINGERPRINT_VERSION; fingerprints of
different versions are never compared.

Known limitation: two distinct payments with the same date, amount, plot
reference, payer and comment and no external id produce the same
fingerprint, and the second one is skipped as a duplicate. Sources that
supply a bank transaction id avoid this, because the external id replaces the
content hash.
"""

import hashlib

from sntbilling.services.import_rows import ImportRow
from sntbilling.services.parsers import money, normalize_name, normalize_phone, normalize_text

FINGERPRINT_VERSION = "v1"

# Canonical field order for FINGERPRINT_VERSION "v1"
CANONICAL_FIELDS = ("paid_at", "amount", "plot_ref", "payer_phone", "payer_name", "comment")

_DIGEST_LENGTH = 32


def canonical_string(row: ImportRow) -> str:
    """Join the normalized canonical fields of a row with '|'."""
    parts = [
        FINGERPRINT_VERSION,
        row.paid_at.isoformat(),
        f"{money(row.amount):.2f}",
        normalize_text(row.plot_ref),
        normalize_phone(row.payer_phone),
        normalize_name(row.payer_name),
        normalize_text(row.comment),
    ]
    return "|".join(parts)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]


def compute_fingerprint(row: ImportRow) -> str:
    """Stable fingerprint of a row.

    An external transaction id, when present, takes priority over the content.
    """
    if row.external_id:
        return external_fingerprint(row.external_id)
    return _digest(canonical_string(row))


def external_fingerprint(external_id: str) -> str:
    """Fingerprint derived from a bank transaction id only."""
    return _digest(f"ext|{normalize_text(external_id)}")


__all__ = [
    "FINGERPRINT_VERSION",
    "CANONICAL_FIELDS",
    "canonical_string",
    "compute_fingerprint",
    "external_fingerprint",
]
