"""Pytest configuration: in-memory database and billing data builders."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sntbilling.models import AccrualCategory, AccrualItem, Base, BillingPeriod, PeriodStatus, Person, Plot
from sntbilling.services.config import get_settings


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch):
    """Default settings for every test, independent of the host environment."""
    monkeypatch.setenv("BILLING_PENALTY_ANNUAL_RATE", "0.1")
    monkeypatch.setenv("BILLING_PENALTY_MIN_AMOUNT", "0")
    monkeypatch.setenv("BILLING_PENALTY_POLICY_VERSION", "v1.0")
    monkeypatch.setenv("BILLING_DEFAULT_PAYMENT_CATEGORY", "membership")
    monkeypatch.setenv("BILLING_RECALC_SAMPLE_SIZE", "5")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create test database session."""
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_person(db_session):
    def _make(full_name: str, phone: str | None = None, email: str | None = None) -> Person:
        person = Person(full_name=full_name, phone=phone, email=email)
        db_session.add(person)
        db_session.commit()
        return person

    return _make


@pytest.fixture
def make_plot(db_session):
    def _make(
        number: str,
        street: str = "",
        owner_name: str | None = None,
        owner_phone: str | None = None,
        person: Person | None = None,
    ) -> Plot:
        plot = Plot(
            number=number,
            street=street,
            owner_name=owner_name,
            owner_phone=owner_phone,
            person_id=person.id if person else None,
        )
        db_session.add(plot)
        db_session.commit()
        return plot

    return _make


@pytest.fixture
def make_period(db_session):
    def _make(
        start: date,
        end: date,
        title: str | None = None,
        status: PeriodStatus = PeriodStatus.DRAFT,
    ) -> BillingPeriod:
        period = BillingPeriod(
            title=title or start.strftime("%Y-%m"),
            start_date=start,
            end_date=end,
            status=status,
        )
        db_session.add(period)
        db_session.commit()
        return period

    return _make


@pytest.fixture
def make_accrual(db_session):
    def _make(
        period: BillingPeriod,
        plot: Plot,
        amount: str | Decimal,
        category: AccrualCategory = AccrualCategory.MEMBERSHIP,
        amount_paid: str | Decimal = "0.00",
        accrued_on: date | None = None,
    ) -> AccrualItem:
        accrual = AccrualItem(
            period_id=period.id,
            plot_id=plot.id,
            category=category,
            amount_accrued=Decimal(str(amount)),
            amount_paid=Decimal(str(amount_paid)),
            accrued_on=accrued_on or period.start_date,
        )
        db_session.add(accrual)
        db_session.commit()
        return accrual

    return _make


@pytest.fixture
def january(make_period) -> BillingPeriod:
    """Billing period 2025-01."""
    return make_period(date(2025, 1, 1), date(2025, 1, 31))


@pytest.fixture
def plot_12(make_plot) -> Plot:
    """Plot 12 on line 1, owner Ivanov."""
    return make_plot(
        "12",
        street="1",
        owner_name="Иванов Иван Иванович",
        owner_phone="+7 (916) 123-45-67",
    )
