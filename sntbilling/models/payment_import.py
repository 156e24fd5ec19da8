"""Payment import journal: one row per applied statement file."""

from enum import Enum
from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from sntbilling.models import Base, BaseModel


class ImportStatus(str, Enum):
    """Status of an import batch."""

    PENDING = "pending"
    APPLIED = "applied"


class PaymentImport(Base, BaseModel):
    """Import batch with the exact counts reported to the operator."""

    __tablename__ = "payment_imports"

    file_name: Mapped[str] = mapped_column(String(255), nullable=False, default="import.csv")
    status: Mapped[ImportStatus] = mapped_column(
        SQLEnum(ImportStatus),
        nullable=False,
        default=ImportStatus.PENDING,
    )
    total_rows: Mapped[int] = mapped_column(default=0, nullable=False)
    inserted_rows: Mapped[int] = mapped_column(default=0, nullable=False)
    skipped_rows: Mapped[int] = mapped_column(default=0, nullable=False)
    matched_rows: Mapped[int] = mapped_column(default=0, nullable=False)
    unmatched_rows: Mapped[int] = mapped_column(default=0, nullable=False)
    error_rows: Mapped[int] = mapped_column(default=0, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    errors: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Row-level errors: [{row_number, code, message}]",
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentImport(id={self.id}, file_name={self.file_name!r}, status={self.status}, "
            f"inserted={self.inserted_rows}, skipped={self.skipped_rows}, errors={self.error_rows})>"
        )


__all__ = ["ImportStatus", "PaymentImport"]
