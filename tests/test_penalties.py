"""
Test suite for late payment fees
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from repayment_ledger.aggregator import LedgerAggregator
from repayment_ledger.currency import Currency
from repayment_ledger.models import (
    LateFeeType, LedgerStatus, LoanRepaymentLedger, PenaltyConfiguration
)
from repayment_ledger.penalties import LateFeeProcessor
from repayment_ledger.schedule import AmortizationScheduleBuilder


def make_ledger(fee_type, fee_value, grace_days=5):
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
        penalty_configuration=PenaltyConfiguration(
            late_payment_fee_type=fee_type,
            late_payment_fee_value=Decimal(fee_value),
            late_payment_grace_period_days=grace_days,
        ),
        scheduled_installments=builder.build(Decimal("120000"), Decimal("12"), 12, start),
    )


class TestLateFeeProcessor:
    """Test late fee levying"""

    def setup_method(self):
        self.processor = LateFeeProcessor()

    def test_fixed_fee_after_grace(self):
        ledger = make_ledger(LateFeeType.FIXED_AMOUNT, "500")

        assert self.processor.apply_late_fees(ledger, date(2024, 2, 6)) == 0
        assert ledger.get_installment(1).penalty_due == Decimal("0")

        assert self.processor.apply_late_fees(ledger, date(2024, 2, 7)) == 1
        inst = ledger.get_installment(1)
        assert inst.penalty_due == Decimal("500.00")
        assert inst.is_penalty_applied

    def test_fee_is_levied_once(self):
        ledger = make_ledger(LateFeeType.FIXED_AMOUNT, "500")

        self.processor.apply_late_fees(ledger, date(2024, 2, 7))
        assert self.processor.apply_late_fees(ledger, date(2024, 2, 20)) == 0
        assert ledger.get_installment(1).penalty_due == Decimal("500.00")

        # A new installment falls past its grace period
        assert self.processor.apply_late_fees(ledger, date(2024, 3, 7)) == 1
        assert ledger.get_installment(2).penalty_due == Decimal("500.00")

    def test_percentage_of_overdue_emi(self):
        ledger = make_ledger(LateFeeType.PERCENTAGE_OF_OVERDUE_EMI, "2")

        self.processor.apply_late_fees(ledger, date(2024, 2, 7))
        assert ledger.get_installment(1).penalty_due == Decimal("213.24")

    def test_percentage_of_overdue_principal(self):
        ledger = make_ledger(LateFeeType.PERCENTAGE_OF_OVERDUE_PRINCIPAL, "2")

        self.processor.apply_late_fees(ledger, date(2024, 2, 7))
        assert ledger.get_installment(1).penalty_due == Decimal("189.24")

    def test_no_fee_configured(self):
        ledger = make_ledger(LateFeeType.NONE, "0")
        assert self.processor.apply_late_fees(ledger, date(2024, 6, 1)) == 0

    def test_terminal_ledger_is_not_charged(self):
        ledger = make_ledger(LateFeeType.FIXED_AMOUNT, "500")
        ledger.loan_repayment_status = LedgerStatus.WRITE_OFF
        assert self.processor.apply_late_fees(ledger, date(2024, 6, 1)) == 0

    def test_paid_installment_is_not_charged(self):
        ledger = make_ledger(LateFeeType.FIXED_AMOUNT, "500")
        inst = ledger.get_installment(1)
        inst.principal_paid = inst.principal_due
        inst.interest_paid = inst.interest_due
        LedgerAggregator().recompute(ledger, date(2024, 1, 30))

        assert self.processor.apply_late_fees(ledger, date(2024, 2, 7)) == 0

    def test_fee_shows_in_totals(self):
        ledger = make_ledger(LateFeeType.FIXED_AMOUNT, "500")
        self.processor.apply_late_fees(ledger, date(2024, 2, 7))

        totals = LedgerAggregator().compute_for(ledger, date(2024, 2, 7))
        assert totals.total_penalties_levied == Decimal("500.00")
        assert totals.current_overdue_penalties == Decimal("500.00")
        assert totals.total_current_overdue_amount == Decimal("11161.85")
