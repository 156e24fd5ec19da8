"""Unit tests for penalty accrual."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from sntbilling.models import AccrualCategory, PenaltyAccrual, PenaltyStatus, PeriodStatus
from sntbilling.services.audit_service import AuditService
from sntbilling.services.errors import InvalidTransition, NotFound, PeriodClosed, ValidationError
from sntbilling.services.payment_service import PaymentLedgerService
from sntbilling.services.penalty_service import MAX_UPSERT_ATTEMPTS, PenaltyOutcome, PenaltyService

AS_OF = date(2025, 1, 19)  # 18 days after accrual


@pytest.fixture
def debt_5000(january, plot_12, make_accrual):
    """5000 accrued on 2025-01-01, unpaid."""
    return make_accrual(january, plot_12, "5000")


def pay(db_session, plot, amount, paid_at=date(2025, 1, 10)):
    return PaymentLedgerService(db_session).record_manual_payment(
        plot.id, amount, paid_at, category="membership", comment=f"payment {amount}"
    )


def penalty_rows(db_session):
    return db_session.query(PenaltyAccrual).all()


class TestPreview:
    def test_interest_on_overdue_debt(self, db_session, debt_5000, plot_12):
        preview = PenaltyService(db_session).preview_penalty(AS_OF)

        assert preview.period == "2025-01"
        assert len(preview.plots) == 1
        plot_penalty = preview.plots[0]
        assert plot_penalty.plot_id == plot_12.id
        assert plot_penalty.amount == Decimal("24.66")
        assert plot_penalty.base_debt == Decimal("5000.00")
        assert plot_penalty.days_overdue == 18
        assert preview.total == Decimal("24.66")
        assert penalty_rows(db_session) == []

    def test_rate_override(self, db_session, debt_5000):
        preview = PenaltyService(db_session).preview_penalty(AS_OF, annual_rate="0.2")
        assert preview.total == Decimal("49.32")

    def test_negative_rate_rejected(self, db_session, debt_5000):
        with pytest.raises(ValidationError):
            PenaltyService(db_session).preview_penalty(AS_OF, annual_rate="-0.1")

    def test_no_penalty_on_due_date(self, db_session, debt_5000):
        assert PenaltyService(db_session).preview_penalty(date(2025, 1, 1)).plots == []

    def test_items_summed_per_plot(self, db_session, january, plot_12, make_accrual):
        make_accrual(january, plot_12, "5000")
        make_accrual(january, plot_12, "5000", category=AccrualCategory.ELECTRIC, accrued_on=date(2025, 1, 10))

        plot_penalty = PenaltyService(db_session).preview_penalty(AS_OF).plots[0]

        # 5000*0.1*18/365 = 24.66 and 5000*0.1*9/365 = 12.33
        assert [line.amount for line in plot_penalty.lines] == [Decimal("24.66"), Decimal("12.33")]
        assert plot_penalty.amount == Decimal("36.99")
        assert plot_penalty.base_debt == Decimal("10000.00")

    def test_date_window(self, db_session, debt_5000):
        service = PenaltyService(db_session)
        assert service.preview_penalty(AS_OF, date_from=date(2025, 1, 10)).plots == []
        assert service.preview_penalty(AS_OF, date_to=date(2025, 1, 10)).total == Decimal("24.66")


class TestApply:
    def test_apply_creates_row(self, db_session, debt_5000, plot_12):
        result = PenaltyService(db_session).apply_penalty(AS_OF, actor_id="admin")

        assert result.created_count == 1
        assert result.total_penalty == Decimal("24.66")
        assert result.charges[0].action == PenaltyOutcome.CREATED

        row = penalty_rows(db_session)[0]
        assert row.plot_id == plot_12.id
        assert row.period == "2025-01"
        assert row.amount == Decimal("24.66")
        assert row.status == PenaltyStatus.ACTIVE
        assert row.created_by == "admin"
        assert row.calculation["as_of"] == "2025-01-19"
        assert row.calculation["annual_rate"] == "0.1"
        assert row.calculation["base_debt"] == "5000.00"
        assert row.calculation["days_overdue"] == 18
        assert row.calculation["policy_version"] == "v1.0"

    def test_second_apply_is_unchanged(self, db_session, debt_5000):
        service = PenaltyService(db_session)
        service.apply_penalty(AS_OF)

        second = service.apply_penalty(AS_OF)

        assert second.created_count == 0
        assert second.updated_count == 0
        assert second.unchanged_count == 1
        rows = penalty_rows(db_session)
        assert len(rows) == 1
        assert rows[0].amount == Decimal("24.66")

    def test_reapply_after_payment_replaces_amount(self, db_session, debt_5000, plot_12):
        service = PenaltyService(db_session)
        service.apply_penalty(AS_OF)
        pay(db_session, plot_12, "2500")

        result = service.apply_penalty(AS_OF)

        assert result.updated_count == 1
        rows = penalty_rows(db_session)
        assert len(rows) == 1
        assert rows[0].amount == Decimal("12.33")

    def test_frozen_row_untouched(self, db_session, debt_5000, plot_12):
        service = PenaltyService(db_session)
        service.apply_penalty(AS_OF)
        penalty = penalty_rows(db_session)[0]
        service.freeze(penalty.id, actor_id="admin", reason="agreed with owner")
        pay(db_session, plot_12, "2500")

        result = service.apply_penalty(AS_OF)

        assert result.skipped_frozen == 1
        db_session.refresh(penalty)
        assert penalty.amount == Decimal("24.66")
        assert penalty.status == PenaltyStatus.FROZEN

    def test_voided_row_skipped_unless_included(self, db_session, debt_5000):
        service = PenaltyService(db_session)
        service.apply_penalty(AS_OF)
        penalty = penalty_rows(db_session)[0]
        service.void(penalty.id, reason="duplicate charge")

        skipped = service.apply_penalty(AS_OF)
        assert skipped.skipped_voided == 1
        db_session.refresh(penalty)
        assert penalty.status == PenaltyStatus.VOIDED

        reactivated = service.apply_penalty(AS_OF, include_voided=True)
        assert reactivated.updated_count == 1
        db_session.refresh(penalty)
        assert penalty.status == PenaltyStatus.ACTIVE
        assert penalty.amount == Decimal("24.66")

    def test_min_penalty_drops_small_items(self, db_session, debt_5000):
        result = PenaltyService(db_session).apply_penalty(AS_OF, min_penalty="30")

        assert result.created_count == 0
        assert penalty_rows(db_session) == []

    def test_apply_audited(self, db_session, debt_5000, plot_12):
        result = PenaltyService(db_session).apply_penalty(AS_OF, actor_id="admin", request_id="req-1")

        event = AuditService.list_events(db_session, action="penalty.apply")[0]
        assert event.actor_id == "admin"
        assert event.request_id == "req-1" == result.request_id
        assert event.target_ids == [f"{plot_12.id}:2025-01"]
        assert event.details["policy_version"] == "v1.0"
        assert event.details["post_close"] is False
        assert event.details["override_reason"] is None
        assert event.details["outcomes"] == {str(plot_12.id): "created"}

    def test_closed_period_rejected_without_reason(self, db_session, make_period, plot_12, make_accrual):
        closed = make_period(date(2025, 1, 1), date(2025, 1, 31), status=PeriodStatus.CLOSED)
        make_accrual(closed, plot_12, "5000")
        service = PenaltyService(db_session)

        with pytest.raises(PeriodClosed):
            service.apply_penalty(AS_OF)
        assert penalty_rows(db_session) == []
        assert AuditService.list_events(db_session, action="penalty.apply") == []

        result = service.apply_penalty(AS_OF, override_reason="court decision")
        assert result.post_close is True
        assert result.created_count == 1
        event = AuditService.list_events(db_session, action="penalty.apply")[0]
        assert event.details["post_close"] is True
        assert event.details["override_reason"] == "court decision"


class TestRecalc:
    def test_fixed_point(self, db_session, debt_5000):
        service = PenaltyService(db_session)
        first = service.recalc_penalties(AS_OF)
        second = service.recalc_penalties(AS_OF)

        assert first.created == 1
        assert second.created == 0
        assert second.updated == 0
        assert second.unchanged == 1
        assert second.sample == []

    def test_paid_off_plot_is_skipped_not_zeroed(self, db_session, debt_5000, plot_12):
        service = PenaltyService(db_session)
        service.recalc_penalties(AS_OF)
        pay(db_session, plot_12, "5000")

        result = service.recalc_penalties(AS_OF)

        assert result.outcomes == {plot_12.id: PenaltyOutcome.SKIPPED_ZERO_DEBT}
        assert penalty_rows(db_session)[0].amount == Decimal("24.66")

    def test_sample_is_bounded(self, db_session, january, make_plot, make_accrual):
        for number in range(1, 8):
            make_accrual(january, make_plot(str(number), street="2"), "1000")

        result = PenaltyService(db_session).recalc_penalties(AS_OF)

        assert result.created == 7
        assert len(result.sample) == 5
        assert all(s.before is None for s in result.sample)

    def test_explicit_plots_and_limit(self, db_session, january, make_plot, make_accrual):
        plots = [make_plot(str(number), street="2") for number in range(1, 4)]
        for plot in plots:
            make_accrual(january, plot, "1000")
        service = PenaltyService(db_session)

        result = service.recalc_penalties(AS_OF, plot_ids=[plots[2].id, plots[0].id], limit=1)

        assert list(result.outcomes) == [plots[0].id]
        assert len(penalty_rows(db_session)) == 1

    def test_recalc_audited(self, db_session, debt_5000):
        PenaltyService(db_session).recalc_penalties(AS_OF, limit=10)

        event = AuditService.list_events(db_session, action="penalty.recalc")[0]
        assert event.details["limit"] == 10
        assert event.details["include_voided"] is False


class TestLifecycle:
    @pytest.fixture
    def penalty(self, db_session, debt_5000):
        PenaltyService(db_session).apply_penalty(AS_OF)
        return penalty_rows(db_session)[0]

    def test_freeze_unfreeze(self, db_session, penalty):
        service = PenaltyService(db_session)

        frozen = service.freeze(penalty.id, actor_id="admin", reason="installment plan")
        assert frozen.status == PenaltyStatus.FROZEN
        assert frozen.frozen_by == "admin"
        assert frozen.freeze_reason == "installment plan"

        with pytest.raises(InvalidTransition):
            service.freeze(penalty.id)

        unfrozen = service.unfreeze(penalty.id, actor_id="admin")
        assert unfrozen.status == PenaltyStatus.ACTIVE
        assert unfrozen.unfrozen_by == "admin"

    def test_void_requires_reason(self, db_session, penalty):
        with pytest.raises(ValidationError):
            PenaltyService(db_session).void(penalty.id, reason="  ")

    def test_void_unvoid(self, db_session, penalty):
        service = PenaltyService(db_session)

        assert service.void(penalty.id, reason="error").status == PenaltyStatus.VOIDED
        with pytest.raises(InvalidTransition):
            service.unfreeze(penalty.id)
        assert service.unvoid(penalty.id).status == PenaltyStatus.ACTIVE

        actions = [e.action for e in AuditService.list_events(db_session) if e.action.startswith("penalty.")]
        assert actions[:2] == ["penalty.unvoid", "penalty.void"]

    def test_lifecycle_respects_closed_period(self, db_session, penalty, january):
        january.status = PeriodStatus.CLOSED
        db_session.commit()
        service = PenaltyService(db_session)

        with pytest.raises(PeriodClosed):
            service.freeze(penalty.id)
        assert service.freeze(penalty.id, override_reason="board decision").status == PenaltyStatus.FROZEN

    def test_unknown_penalty(self, db_session):
        with pytest.raises(NotFound):
            PenaltyService(db_session).get_penalty(999)


class TestReads:
    def test_summary_and_list(self, db_session, january, plot_12, make_plot, make_accrual):
        other = make_plot("13", street="1")
        make_accrual(january, plot_12, "5000")
        make_accrual(january, other, "5000")
        service = PenaltyService(db_session)
        service.apply_penalty(AS_OF)
        service.freeze(service.list_penalties(plot_id=other.id)[0].id)

        summary = service.summary("2025-01")

        assert summary.count_by_status[PenaltyStatus.ACTIVE] == 1
        assert summary.count_by_status[PenaltyStatus.FROZEN] == 1
        assert summary.count_by_status[PenaltyStatus.VOIDED] == 0
        assert summary.active_amount == Decimal("24.66")
        assert summary.frozen_amount == Decimal("24.66")
        assert service.summary(["2024-12"]).active_amount == Decimal("0.00")
        assert len(service.list_penalties(period="2025-01", status=PenaltyStatus.ACTIVE)) == 1


class TestConcurrentWrites:
    def test_stale_write_is_retried(self, db_session, debt_5000, plot_12, monkeypatch):
        service = PenaltyService(db_session)
        service.apply_penalty(AS_OF)
        pay(db_session, plot_12, "2500")

        original = service._upsert_once
        calls = []

        def stale_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise StaleDataError("row changed by another writer")
            return original(*args, **kwargs)

        monkeypatch.setattr(service, "_upsert_once", stale_once)
        result = service.recalc_penalties(AS_OF)

        assert len(calls) == 2
        assert result.outcomes == {plot_12.id: PenaltyOutcome.UPDATED}
        rows = penalty_rows(db_session)
        assert len(rows) == 1
        assert rows[0].amount == Decimal("12.33")

    def test_gives_up_after_max_attempts(self, db_session, debt_5000, monkeypatch):
        service = PenaltyService(db_session)
        calls = []

        def always_stale(*args, **kwargs):
            calls.append(args)
            raise StaleDataError("row changed by another writer")

        monkeypatch.setattr(service, "_upsert_once", always_stale)

        with pytest.raises(StaleDataError):
            service.apply_penalty(AS_OF)
        assert len(calls) == MAX_UPSERT_ATTEMPTS
