"""
Late Fee Module

Levies a one-time late payment fee on each installment still unsettled after
its due date plus the grace period, per the ledger's penalty configuration.
"""

from decimal import Decimal
from datetime import date, timedelta

from .currency import ZERO, round_money
from .logging_config import get_logger
from .models import LateFeeType, LoanRepaymentLedger, ScheduledInstallment


logger = get_logger("repayment_ledger.penalties")


class LateFeeProcessor:
    """Applies late payment fees to overdue installments"""

    def calculate_fee(self, ledger: LoanRepaymentLedger, installment: ScheduledInstallment) -> Decimal:
        config = ledger.penalty_configuration
        value = config.late_payment_fee_value

        if config.late_payment_fee_type == LateFeeType.FIXED_AMOUNT:
            return round_money(value)
        if config.late_payment_fee_type == LateFeeType.PERCENTAGE_OF_OVERDUE_EMI:
            overdue_emi = installment.remaining('principal') + installment.remaining('interest')
            return round_money(overdue_emi * value / Decimal('100'))
        if config.late_payment_fee_type == LateFeeType.PERCENTAGE_OF_OVERDUE_PRINCIPAL:
            return round_money(installment.remaining('principal') * value / Decimal('100'))
        return ZERO

    def apply_late_fees(self, ledger: LoanRepaymentLedger, as_of: date) -> int:
        """
        Charge late fees as of a date

        Args:
            ledger: Ledger to charge (mutated in place)
            as_of: Date the grace period is measured against

        Returns:
            Number of installments charged
        """
        if ledger.is_terminal:
            return 0
        if ledger.penalty_configuration.late_payment_fee_type == LateFeeType.NONE:
            return 0

        grace = timedelta(days=ledger.penalty_configuration.late_payment_grace_period_days)
        charged = 0
        for inst in ledger.open_installments:
            if inst.is_penalty_applied or inst.due_date + grace >= as_of:
                continue
            fee = self.calculate_fee(ledger, inst)
            if fee <= ZERO:
                continue
            inst.penalty_due += fee
            inst.is_penalty_applied = True
            charged += 1
            logger.info(
                f"Late fee {fee} levied on installment {inst.installment_number} of ledger {ledger.id}"
            )

        return charged
