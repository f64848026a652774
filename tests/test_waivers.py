"""
Test suite for installment waivers
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from repayment_ledger.aggregator import LedgerAggregator
from repayment_ledger.currency import Currency
from repayment_ledger.errors import NotFoundError, StateConflictError, ValidationError
from repayment_ledger.models import InstallmentStatus, LedgerStatus, LoanRepaymentLedger
from repayment_ledger.schedule import AmortizationScheduleBuilder
from repayment_ledger.waivers import WaiverAdjustmentProcessor


def make_ledger():
    builder = AmortizationScheduleBuilder()
    start = date(2024, 2, 1)
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return LoanRepaymentLedger(
        id="LEDGER001",
        created_at=now,
        updated_at=now,
        loan_submission_id="SUB001",
        loan_product_id="PROD001",
        user_id="USER001",
        currency=Currency.INR,
        disbursed_amount=Decimal("120000"),
        agreed_interest_rate_pa=Decimal("12"),
        original_tenure_months=12,
        initial_calculated_emi=Decimal("10661.85"),
        disbursement_date=date(2024, 1, 1),
        repayment_start_date=start,
        original_expected_closure_date=builder.expected_closure_date(start, 12),
        scheduled_installments=builder.build(Decimal("120000"), Decimal("12"), 12, start),
    )


class TestWaiverAdjustmentProcessor:
    """Test waiving installment amounts"""

    def setup_method(self):
        self.processor = WaiverAdjustmentProcessor()
        self.aggregator = LedgerAggregator()
        self.ledger = make_ledger()

    def test_full_waiver_of_installment(self):
        inst = self.ledger.get_installment(3)
        event = self.processor.waive_installment(
            self.ledger, 3,
            principal=inst.principal_due, interest=inst.interest_due,
            notes="Hardship relief", applied_by="MANAGER1",
            waiver_scheme_id="SCHEME1", waiver_submission_id="WSUB1",
            applied_at=datetime(2024, 1, 20, tzinfo=timezone.utc),
        )

        assert event.installment_number == 3
        assert event.total == inst.total_emi_due
        assert event.waiver_scheme_id == "SCHEME1"
        assert self.ledger.waiver_history == [event]

        totals = self.aggregator.recompute(self.ledger, date(2024, 1, 20))
        assert inst.status == InstallmentStatus.WAIVED
        assert totals.total_principal_waived == inst.principal_due
        assert totals.total_interest_waived == inst.interest_due
        # Installment 3 no longer counts as open
        assert 3 not in [i.installment_number for i in self.ledger.open_installments]

    def test_partial_waiver(self):
        self.processor.waive_installment(self.ledger, 1, interest=Decimal("200"))
        self.processor.waive_installment(self.ledger, 1, interest="100.50")

        inst = self.ledger.get_installment(1)
        assert inst.interest_waived == Decimal("300.50")
        assert inst.remaining('interest') == Decimal("899.50")
        assert len(self.ledger.waiver_history) == 2

        self.aggregator.recompute(self.ledger, date(2024, 1, 20))
        assert inst.status == InstallmentStatus.PARTIALLY_PAID

    def test_waiving_more_than_remaining(self):
        with pytest.raises(ValidationError, match="only 1200.00 remains"):
            self.processor.waive_installment(self.ledger, 1, interest=Decimal("1200.02"))
        assert self.ledger.get_installment(1).interest_waived == Decimal("0")
        assert self.ledger.waiver_history == []

    def test_nothing_to_waive(self):
        with pytest.raises(ValidationError, match="At least one"):
            self.processor.waive_installment(self.ledger, 1)

    def test_negative_waiver(self):
        with pytest.raises(ValidationError, match="cannot be negative"):
            self.processor.waive_installment(self.ledger, 1, principal=Decimal("-1"))

    def test_unknown_installment(self):
        with pytest.raises(NotFoundError):
            self.processor.waive_installment(self.ledger, 99, interest=Decimal("1"))

    def test_cancelled_installment(self):
        self.ledger.get_installment(5).status = InstallmentStatus.CANCELLED
        with pytest.raises(StateConflictError, match="cancelled"):
            self.processor.waive_installment(self.ledger, 5, interest=Decimal("1"))

    def test_terminal_ledger(self):
        self.ledger.loan_repayment_status = LedgerStatus.FORECLOSED
        with pytest.raises(StateConflictError, match="waivers not allowed"):
            self.processor.waive_installment(self.ledger, 1, interest=Decimal("1"))


class TestSchemeWaiver:
    """Test percentage-of-interest waivers granted under a scheme"""

    def setup_method(self):
        self.processor = WaiverAdjustmentProcessor()
        self.aggregator = LedgerAggregator()
        self.ledger = make_ledger()
        self.applied_at = datetime(2024, 1, 20, tzinfo=timezone.utc)

    def test_waives_interest_on_pending_installments(self):
        first = self.ledger.get_installment(1)
        first.add_paid('principal', first.principal_due)
        first.add_paid('interest', first.interest_due)
        first.status = InstallmentStatus.PAID

        events = self.processor.apply_scheme_waiver(
            self.ledger, Decimal("10"), waiver_scheme_id="SCHEME1",
            waiver_submission_id="WSUB1", applied_by="ADMIN1", applied_at=self.applied_at,
        )

        assert [e.installment_number for e in events] == list(range(2, 13))
        assert events[0].interest_waived == Decimal("110.54")
        assert all(e.principal_waived == Decimal("0") and e.penalty_waived == Decimal("0") for e in events)
        assert all(e.waiver_scheme_id == "SCHEME1" for e in events)
        assert self.ledger.get_installment(1).interest_waived == Decimal("0")
        assert self.ledger.waiver_history == events
        assert "WSUB1" in self.ledger.internal_notes[-1].text
        assert self.ledger.internal_notes[-1].added_by == "ADMIN1"

        totals = self.aggregator.recompute(self.ledger, date(2024, 1, 20))
        assert totals.total_interest_waived == sum(e.interest_waived for e in events)
        assert self.ledger.get_installment(2).status == InstallmentStatus.PARTIALLY_PAID

        with pytest.raises(StateConflictError, match="no pending interest"):
            self.processor.apply_scheme_waiver(self.ledger, Decimal("10"))

    def test_capped_at_remaining_interest(self):
        inst = self.ledger.get_installment(2)
        inst.add_waived('interest', Decimal("1000.00"))

        events = self.processor.apply_scheme_waiver(self.ledger, Decimal("100"), applied_at=self.applied_at)

        by_number = {e.installment_number: e for e in events}
        assert by_number[1].interest_waived == Decimal("1200.00")
        assert by_number[2].interest_waived == Decimal("105.38")
        assert inst.remaining('interest') == Decimal("0")

    @pytest.mark.parametrize("percentage", ["0", "-5", "100.01", "ten"])
    def test_invalid_percentage(self, percentage):
        with pytest.raises(ValidationError):
            self.processor.apply_scheme_waiver(self.ledger, percentage)
        assert self.ledger.waiver_history == []

    def test_terminal_ledger(self):
        self.ledger.loan_repayment_status = LedgerStatus.FULLY_REPAID
        with pytest.raises(StateConflictError, match="waivers not allowed"):
            self.processor.apply_scheme_waiver(self.ledger, Decimal("10"))
