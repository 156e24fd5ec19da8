"""Registry ORM models: plots and the legal persons who own them.

Both tables are master data maintained outside the billing engine; billing
only reads them.
"""

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sntbilling.models import Base, BaseModel


class Person(Base, BaseModel):
    """Canonical legal person record (one person may own several plots)."""

    __tablename__ = "persons"

    full_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Full name as registered in the association",
    )
    phone: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Contact phone (free format)",
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Contact email",
    )

    plots: Mapped[list["Plot"]] = relationship(
        "Plot",
        back_populates="person",
    )

    def __repr__(self) -> str:
        return f"<Person(id={self.id}, full_name={self.full_name!r})>"


class Plot(Base, BaseModel):
    """Land plot with its street, number and owner contact snapshot.

    person_id links to the canonical Person when the registry has resolved one;
    owner_name/owner_phone are the raw registry values used as fallback.
    """

    __tablename__ = "plots"

    street: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="",
        comment="Street (line) number or name inside the association",
    )
    number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="Plot number as printed on receipts",
    )
    owner_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Owner full name from the registry",
    )
    owner_phone: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Owner phone from the registry",
    )
    owner_email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    person_id: Mapped[int | None] = mapped_column(
        ForeignKey("persons.id"),
        nullable=True,
        index=True,
        comment="Canonical person owning the plot, if resolved",
    )

    person: Mapped["Person | None"] = relationship(
        "Person",
        back_populates="plots",
        foreign_keys=[person_id],
    )

    __table_args__ = (
        UniqueConstraint("street", "number", name="uq_plot_street_number"),
    )

    @property
    def label(self) -> str:
        """Human readable plot label used in reports."""
        if self.street and self.number:
            return f"Линия {self.street}, участок {self.number}"
        if self.number:
            return f"Участок {self.number}"
        return "-"

    def __repr__(self) -> str:
        return f"<Plot(id={self.id}, street={self.street!r}, number={self.number!r})>"


__all__ = ["Person", "Plot"]
