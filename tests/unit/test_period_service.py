"""Unit tests for billing period lifecycle and the period-close guard."""

from datetime import date
from decimal import Decimal

import pytest

from sntbilling.models import BillingPeriod, PeriodStatus
from sntbilling.services.audit_service import AuditService
from sntbilling.services.errors import InvalidTransition, NotFound, PeriodClosed, ValidationError
from sntbilling.services.period_service import BillingPeriodService, assert_open_or_reason, period_months


class TestAssertOpenOrReason:
    def test_open_period_passes(self):
        period = BillingPeriod(title="2025-01", status=PeriodStatus.APPROVED)
        check = assert_open_or_reason(period)
        assert check.closed is False

    def test_no_period_passes(self):
        assert assert_open_or_reason(None).closed is False
        assert assert_open_or_reason([None]).closed is False

    def test_closed_period_without_reason(self):
        period = BillingPeriod(title="2025-01", status=PeriodStatus.CLOSED)
        with pytest.raises(PeriodClosed) as exc_info:
            assert_open_or_reason(period, "   ")
        assert exc_info.value.period_title == "2025-01"
        assert exc_info.value.code == "period_closed"

    def test_closed_period_with_reason(self):
        period = BillingPeriod(title="2025-01", status=PeriodStatus.CLOSED)
        check = assert_open_or_reason(period, " bank correction ")
        assert check.closed is True
        assert check.reason == "bank correction"
        assert check.periods == ("2025-01",)

    def test_any_closed_period_in_list(self):
        periods = [
            BillingPeriod(title="2025-01", status=PeriodStatus.DRAFT),
            BillingPeriod(title="2025-02", status=PeriodStatus.CLOSED),
        ]
        with pytest.raises(PeriodClosed, match="2025-02"):
            assert_open_or_reason(periods)


class TestPeriodMonths:
    def test_single_month(self):
        period = BillingPeriod(start_date=date(2025, 1, 1), end_date=date(2025, 1, 31))
        assert period_months(period) == ["2025-01"]

    def test_across_year_end(self):
        period = BillingPeriod(start_date=date(2024, 11, 15), end_date=date(2025, 2, 1))
        assert period_months(period) == ["2024-11", "2024-12", "2025-01", "2025-02"]


class TestBillingPeriodService:
    def test_create_period_default_title(self, db_session):
        service = BillingPeriodService(db_session)
        period = service.create_period(date(2025, 1, 1), date(2025, 1, 31), actor_id="admin")

        assert period.id is not None
        assert period.title == "2025-01"
        assert period.status == PeriodStatus.DRAFT
        events = AuditService.list_events(db_session, "period.create")
        assert events[0].target_ids == [str(period.id)]
        assert events[0].actor_id == "admin"

    def test_create_multi_month_title(self, db_session):
        period = BillingPeriodService(db_session).create_period(date(2025, 1, 1), date(2025, 3, 31))
        assert period.title == "01.01.2025 - 31.03.2025"

    def test_create_invalid_dates(self, db_session):
        with pytest.raises(ValidationError, match="start_date"):
            BillingPeriodService(db_session).create_period(date(2025, 2, 1), date(2025, 1, 1))

    def test_get_unknown_period(self, db_session):
        with pytest.raises(NotFound):
            BillingPeriodService(db_session).get_period(404)

    def test_list_periods_filtered(self, db_session, make_period):
        make_period(date(2025, 2, 1), date(2025, 2, 28), status=PeriodStatus.CLOSED)
        make_period(date(2025, 1, 1), date(2025, 1, 31))

        service = BillingPeriodService(db_session)
        assert [p.title for p in service.list_periods()] == ["2025-01", "2025-02"]
        assert [p.title for p in service.list_periods([PeriodStatus.CLOSED])] == ["2025-02"]

    def test_lifecycle(self, db_session, january):
        service = BillingPeriodService(db_session)
        assert service.lock_period(january.id).status == PeriodStatus.LOCKED
        assert service.approve_period(january.id).status == PeriodStatus.APPROVED

        closed = service.close_period(january.id, actor_id="chair")
        assert closed.status == PeriodStatus.CLOSED
        assert closed.closed_by == "chair"
        assert closed.closed_at is not None

        actions = [e.action for e in AuditService.list_events(db_session)]
        assert actions[:3] == ["period.closed", "period.approved", "period.locked"]

    def test_invalid_transition(self, db_session, january):
        with pytest.raises(InvalidTransition):
            BillingPeriodService(db_session).approve_period(january.id)

    def test_close_stores_snapshot(self, db_session, january, plot_12, make_accrual):
        make_accrual(january, plot_12, "5000.00", amount_paid="1000.00")

        period = BillingPeriodService(db_session).close_period(january.id)

        assert period.close_snapshot == {
            "accrued_total": "5000.00",
            "paid_total": "1000.00",
            "debt_total": "4000.00",
            "penalty_total": "0.00",
            "payments_count": 0,
            "debtors_count": 1,
        }
        assert Decimal(period.close_snapshot["debt_total"]) == Decimal("4000")

    def test_close_twice_is_noop(self, db_session, january):
        service = BillingPeriodService(db_session)
        first = service.close_period(january.id)
        closed_at = first.closed_at
        assert service.close_period(january.id).closed_at == closed_at

    def test_reopen_requires_reason(self, db_session, january):
        service = BillingPeriodService(db_session)
        service.close_period(january.id)
        with pytest.raises(ValidationError, match="reason"):
            service.reopen_period(january.id, "  ")

    def test_reopen(self, db_session, january):
        service = BillingPeriodService(db_session)
        service.close_period(january.id)
        period = service.reopen_period(january.id, "late bank statement", actor_id="chair")

        assert period.status == PeriodStatus.APPROVED
        assert period.closed_at is None
        event = AuditService.list_events(db_session, "period.reopen")[0]
        assert event.details["reason"] == "late bank statement"

    def test_reopen_open_period(self, db_session, january):
        with pytest.raises(InvalidTransition):
            BillingPeriodService(db_session).reopen_period(january.id, "reason")
