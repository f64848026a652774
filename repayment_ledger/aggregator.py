"""
Ledger Aggregation Module

A single pure fold from installments and transactions to every aggregate
figure stored on the ledger: repaid and waived totals, outstanding principal,
overdue amounts, days past due, the next-due pointer and the derived status
of each installment. Nothing here mutates its inputs except apply_totals.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Sequence

from .currency import ZERO, CENT, round_money
from .models import (
    COMPONENTS, InstallmentStatus, LoanRepaymentLedger, PaymentTransaction,
    ScheduledInstallment, SETTLED_INSTALLMENT_STATUSES, WaiverStatusPolicy
)


DAYS_IN_YEAR = Decimal('365')


@dataclass
class LedgerTotals:
    """Result of one aggregation pass"""
    total_principal_repaid: Decimal = ZERO
    total_interest_repaid: Decimal = ZERO
    total_penalties_paid: Decimal = ZERO
    total_penalties_levied: Decimal = ZERO
    total_principal_waived: Decimal = ZERO
    total_interest_waived: Decimal = ZERO
    total_penalties_waived: Decimal = ZERO
    current_outstanding_principal: Decimal = ZERO
    accrued_interest_not_due: Decimal = ZERO
    current_overdue_principal: Decimal = ZERO
    current_overdue_interest: Decimal = ZERO
    current_overdue_penalties: Decimal = ZERO
    total_current_overdue_amount: Decimal = ZERO
    days_past_due: int = 0
    consecutive_missed_payments: int = 0
    last_payment_amount: Optional[Decimal] = None
    last_payment_date: Optional[date] = None
    next_due_date: Optional[date] = None
    next_emi_amount: Optional[Decimal] = None
    installment_statuses: Dict[int, InstallmentStatus] = field(default_factory=dict)


def classify_settled(
    installment: ScheduledInstallment,
    policy: WaiverStatusPolicy,
    tolerance: Decimal = CENT
) -> InstallmentStatus:
    """Paid or Waived for an installment with nothing left to settle"""
    paid = installment.total_paid
    waived = installment.total_waived

    if policy == WaiverStatusPolicy.WAIVED_COVERS_EMI:
        waived_wins = waived > ZERO and waived >= installment.total_emi_due - tolerance
    elif policy == WaiverStatusPolicy.PAID_IF_ANY_PAYMENT:
        waived_wins = paid <= ZERO and waived > ZERO
    else:
        waived_wins = waived > paid

    return InstallmentStatus.WAIVED if waived_wins else InstallmentStatus.PAID


def derive_installment_status(
    installment: ScheduledInstallment,
    as_of: date,
    grace_days: int = 0,
    policy: WaiverStatusPolicy = WaiverStatusPolicy.WAIVED_MAJORITY,
    tolerance: Decimal = CENT
) -> InstallmentStatus:
    """
    Apply the installment decision table

    Settled (all remainders within tolerance) -> Waived / Paid per policy, or
    Paid Late when the last payment came after due date + grace.
    Otherwise past due + grace -> Overdue, any money applied -> Partially
    Paid, else Pending. Cancelled installments keep their status.
    """
    if installment.status == InstallmentStatus.CANCELLED:
        return InstallmentStatus.CANCELLED

    grace_end = installment.due_date + timedelta(days=grace_days)

    if all(installment.remaining(c) <= tolerance for c in COMPONENTS):
        status = classify_settled(installment, policy, tolerance)
        if (status == InstallmentStatus.PAID and installment.last_payment_date
                and installment.last_payment_date > grace_end):
            return InstallmentStatus.PAID_LATE
        return status

    if as_of > grace_end:
        return InstallmentStatus.OVERDUE
    if installment.total_paid > ZERO or installment.total_waived > ZERO:
        return InstallmentStatus.PARTIALLY_PAID
    return InstallmentStatus.PENDING


class LedgerAggregator:
    """Recomputes ledger aggregates from scratch on every call"""

    def __init__(
        self,
        policy: WaiverStatusPolicy = WaiverStatusPolicy.WAIVED_MAJORITY,
        tolerance: Decimal = CENT
    ):
        self.policy = policy
        self.tolerance = tolerance

    def compute(
        self,
        installments: Sequence[ScheduledInstallment],
        transactions: Sequence[PaymentTransaction],
        disbursed_amount: Decimal,
        annual_rate_pct: Decimal,
        disbursement_date: date,
        as_of: date,
        grace_days: int = 0,
        written_off_principal: Decimal = ZERO
    ) -> LedgerTotals:
        """
        Fold installments and transactions into ledger totals

        Args:
            installments: Scheduled installments (any order)
            transactions: All transactions; only cleared ones are counted
            disbursed_amount: Principal disbursed
            annual_rate_pct: Current annual interest rate in percent
            disbursement_date: Start of interest accrual
            as_of: Date the figures are computed for
            grace_days: Late payment grace period
            written_off_principal: Principal covered by an active write-off

        Returns:
            LedgerTotals including the derived status per installment number
        """
        totals = LedgerTotals()
        ordered = sorted(installments, key=lambda i: (i.due_date, i.installment_number))

        for inst in ordered:
            totals.installment_statuses[inst.installment_number] = derive_installment_status(
                inst, as_of, grace_days, self.policy, self.tolerance
            )
        open_installments = [
            inst for inst in ordered
            if totals.installment_statuses[inst.installment_number] not in SETTLED_INSTALLMENT_STATUSES
        ]

        cleared = [t for t in transactions if t.is_cleared]
        totals.total_principal_repaid = round_money(sum((t.principal_component for t in cleared), ZERO))
        totals.total_interest_repaid = round_money(sum((t.interest_component for t in cleared), ZERO))
        totals.total_penalties_paid = round_money(sum((t.penalty_component for t in cleared), ZERO))

        totals.total_penalties_levied = round_money(sum((i.penalty_due for i in ordered), ZERO))
        totals.total_principal_waived = round_money(sum((i.principal_waived for i in ordered), ZERO))
        totals.total_interest_waived = round_money(sum((i.interest_waived for i in ordered), ZERO))
        totals.total_penalties_waived = round_money(sum((i.penalty_waived for i in ordered), ZERO))

        if open_installments:
            outstanding = (disbursed_amount - totals.total_principal_repaid
                           - totals.total_principal_waived - written_off_principal)
            totals.current_outstanding_principal = round_money(max(ZERO, outstanding))

        self._fold_overdue(totals, open_installments, as_of)

        if cleared:
            latest = max(cleared, key=lambda t: t.transaction_date)
            totals.last_payment_amount = latest.amount_received
            totals.last_payment_date = latest.transaction_date.date()

        totals.accrued_interest_not_due = self._accrued_interest(
            totals.current_outstanding_principal, annual_rate_pct,
            ordered, disbursement_date, as_of
        )

        if open_installments:
            totals.next_due_date = open_installments[0].due_date
            totals.next_emi_amount = open_installments[0].total_emi_due

        return totals

    def compute_for(self, ledger: LoanRepaymentLedger, as_of: date) -> LedgerTotals:
        """Aggregate a ledger's own installments and transactions"""
        return self.compute(
            installments=ledger.scheduled_installments,
            transactions=ledger.payment_transactions,
            disbursed_amount=ledger.disbursed_amount,
            annual_rate_pct=ledger.current_interest_rate_pa,
            disbursement_date=ledger.disbursement_date,
            as_of=as_of,
            grace_days=ledger.penalty_configuration.late_payment_grace_period_days,
            written_off_principal=ledger.written_off_principal,
        )

    def apply_totals(self, ledger: LoanRepaymentLedger, totals: LedgerTotals) -> None:
        """Write an aggregation result onto the ledger and its installments"""
        for f in fields(LedgerTotals):
            if f.name != 'installment_statuses':
                setattr(ledger, f.name, getattr(totals, f.name))

        for inst in ledger.scheduled_installments:
            status = totals.installment_statuses.get(inst.installment_number)
            if status is not None:
                inst.status = status

        if ledger.is_terminal:
            ledger.next_due_date = None
            ledger.next_emi_amount = None

    def recompute(self, ledger: LoanRepaymentLedger, as_of: date) -> LedgerTotals:
        totals = self.compute_for(ledger, as_of)
        self.apply_totals(ledger, totals)
        return totals

    def _fold_overdue(
        self,
        totals: LedgerTotals,
        open_installments: List[ScheduledInstallment],
        as_of: date
    ) -> None:
        past_due = [inst for inst in open_installments if inst.due_date < as_of]
        unpaid = [inst for inst in past_due if inst.total_remaining > self.tolerance]

        totals.current_overdue_principal = round_money(sum((i.remaining('principal') for i in unpaid), ZERO))
        totals.current_overdue_interest = round_money(sum((i.remaining('interest') for i in unpaid), ZERO))
        totals.current_overdue_penalties = round_money(sum((i.remaining('penalty') for i in unpaid), ZERO))
        totals.total_current_overdue_amount = (totals.current_overdue_principal
                                               + totals.current_overdue_interest
                                               + totals.current_overdue_penalties)

        if unpaid:
            totals.days_past_due = (as_of - unpaid[0].due_date).days

        # Run of unpaid installments ending at the most recent past due one
        missed = 0
        for inst in reversed(past_due):
            if inst.total_remaining <= self.tolerance:
                break
            missed += 1
        totals.consecutive_missed_payments = missed

    def _accrued_interest(
        self,
        outstanding: Decimal,
        annual_rate_pct: Decimal,
        installments: List[ScheduledInstallment],
        disbursement_date: date,
        as_of: date
    ) -> Decimal:
        """Interest accrued on outstanding principal since the last due date"""
        if outstanding <= ZERO:
            return ZERO

        past_due_dates = [
            inst.due_date for inst in installments
            if inst.status != InstallmentStatus.CANCELLED and inst.due_date <= as_of
        ]
        accrual_start = max(past_due_dates) if past_due_dates else disbursement_date
        days = max(0, (as_of - accrual_start).days)

        daily_rate = annual_rate_pct / Decimal('100') / DAYS_IN_YEAR
        return round_money(outstanding * daily_rate * Decimal(days))
