"""
Foreclosure Module

Quotes and confirms early full settlement of a loan. A quote is the
outstanding principal plus interest accrued since the last due date plus the
prepayment fee from the loan's prepayment configuration.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import uuid

from .currency import ZERO, CENT, Money, round_money, to_decimal
from .errors import StateConflictError, ValidationError
from .logging_config import get_logger
from .models import (
    ForeclosureDetails, InstallmentStatus, LedgerStatus, LoanRepaymentLedger,
    PaymentMethod, PaymentTransaction, PrepaymentFeeType, TransactionStatus
)
from .schedule import add_months
from .status import StatusStateMachine


logger = get_logger("repayment_ledger.foreclosure")


@dataclass
class ForeclosureQuote:
    """Amount required to close a loan early"""
    ledger_id: str
    quote_date: datetime
    valid_until: datetime
    outstanding_principal: Decimal
    accrued_interest: Decimal
    foreclosure_fee: Decimal
    total_amount: Decimal
    currency_code: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'ledger_id': self.ledger_id,
            'quote_date': self.quote_date.isoformat(),
            'valid_until': self.valid_until.isoformat(),
            'outstanding_principal': str(self.outstanding_principal),
            'accrued_interest': str(self.accrued_interest),
            'foreclosure_fee': str(self.foreclosure_fee),
            'total_amount': str(self.total_amount),
            'currency': self.currency_code,
        }


class ForeclosureCalculator:
    """Foreclosure quotes and settlement"""

    def __init__(
        self,
        quote_validity_hours: int = 24,
        tolerance: Decimal = CENT,
        state_machine: Optional[StatusStateMachine] = None
    ):
        self.quote_validity_hours = quote_validity_hours
        self.tolerance = tolerance
        self.state_machine = state_machine or StatusStateMachine()

    def check_eligibility(self, ledger: LoanRepaymentLedger, now: datetime) -> None:
        """
        Raise StateConflictError unless the ledger may be foreclosed at `now`

        The ledger must be open, allow prepayment, and be past its lock-in
        period counted from the repayment start date.
        """
        if ledger.is_terminal:
            raise StateConflictError(
                f"Ledger {ledger.id} is already {ledger.loan_repayment_status.value}"
            )
        prepayment = ledger.prepayment_configuration
        if not prepayment.allow_prepayment:
            raise StateConflictError(f"Prepayment is not allowed for ledger {ledger.id}")

        lock_in_ends = add_months(ledger.repayment_start_date, prepayment.lock_in_period_months)
        if now.date() < lock_in_ends:
            raise StateConflictError(
                f"Ledger {ledger.id} is within its lock-in period until {lock_in_ends.isoformat()}"
            )

    def calculate_fee(self, ledger: LoanRepaymentLedger, outstanding: Decimal) -> Decimal:
        """Prepayment fee; both percentage variants apply to outstanding principal"""
        config = ledger.prepayment_configuration
        if config.prepayment_fee_type == PrepaymentFeeType.FIXED_AMOUNT:
            return round_money(config.prepayment_fee_value)
        if config.prepayment_fee_type in (
            PrepaymentFeeType.PERCENTAGE_OF_OUTSTANDING_PRINCIPAL,
            PrepaymentFeeType.PERCENTAGE_OF_PREPAID_AMOUNT,
        ):
            return round_money(outstanding * config.prepayment_fee_value / Decimal('100'))
        return ZERO

    def quote(self, ledger: LoanRepaymentLedger, now: Optional[datetime] = None) -> ForeclosureQuote:
        """
        Build a foreclosure quote from the ledger's current aggregates

        Callers refresh the aggregates as of `now` first so that accrued
        interest is current.
        """
        now = now or datetime.now(timezone.utc)
        self.check_eligibility(ledger, now)

        outstanding = round_money(ledger.current_outstanding_principal)
        accrued = round_money(ledger.accrued_interest_not_due)
        fee = self.calculate_fee(ledger, outstanding)

        return ForeclosureQuote(
            ledger_id=ledger.id,
            quote_date=now,
            valid_until=now + timedelta(hours=self.quote_validity_hours),
            outstanding_principal=outstanding,
            accrued_interest=accrued,
            foreclosure_fee=fee,
            total_amount=outstanding + accrued + fee,
            currency_code=ledger.currency.code,
        )

    def confirm(
        self,
        ledger: LoanRepaymentLedger,
        amount,
        method: PaymentMethod,
        now: Optional[datetime] = None,
        reference_id: Optional[str] = None,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Tuple[PaymentTransaction, ForeclosureQuote]:
        """
        Settle the loan in full

        Args:
            ledger: Ledger to foreclose (mutated in place)
            amount: Amount received
            method: Payment method
            now: Settlement time
            reference_id: External payment reference
            processed_by: Actor confirming the foreclosure
            notes: Recorded on the foreclosure details

        Returns:
            Tuple of (cleared transaction, quote it was settled against)

        Raises:
            ValidationError: Missing method or non-positive amount
            StateConflictError: Ledger not eligible, or amount below
                outstanding principal plus accrued interest
        """
        if method is None:
            raise ValidationError("Foreclosure requires a payment method")
        try:
            amount = round_money(to_decimal(amount, "foreclosure amount"))
        except ValueError as e:
            raise ValidationError(str(e))
        if amount <= ZERO:
            raise ValidationError(f"Foreclosure amount must be positive, got {amount}")

        now = now or datetime.now(timezone.utc)
        quote = self.quote(ledger, now)

        minimum = quote.outstanding_principal + quote.accrued_interest
        if amount < minimum - self.tolerance:
            raise StateConflictError(
                f"Foreclosure amount {amount} does not cover outstanding principal and "
                f"accrued interest {minimum}"
            )

        principal = min(quote.outstanding_principal, amount)
        interest = min(quote.accrued_interest, amount - principal)
        fee = min(quote.foreclosure_fee, amount - principal - interest)

        transaction = PaymentTransaction(
            id=str(uuid.uuid4()),
            transaction_date=now,
            amount_received=amount,
            payment_method=method,
            principal_component=principal,
            interest_component=interest,
            fee_component=fee,
            unallocated_amount=amount - principal - interest - fee,
            reference_id=reference_id,
            status=TransactionStatus.CLEARED,
            notes=notes or "Foreclosure settlement",
            processed_by=processed_by,
        )
        ledger.payment_transactions.append(transaction)

        for inst in ledger.open_installments:
            inst.status = InstallmentStatus.CANCELLED
            inst.notes = "Cancelled on foreclosure"

        ledger.foreclosure_details = ForeclosureDetails(
            is_foreclosed=True,
            foreclosure_date=now,
            foreclosure_amount_paid=amount,
            foreclosure_fee_paid=fee,
            foreclosure_notes=notes,
            processed_by=processed_by,
        )
        self.state_machine.transition(
            ledger, LedgerStatus.FORECLOSED, "Foreclosure settled", changed_by=processed_by, at=now
        )
        ledger.current_outstanding_principal = ZERO
        ledger.next_due_date = None
        ledger.next_emi_amount = None

        logger.info(
            f"Ledger {ledger.id} foreclosed for "
            f"{Money(amount, ledger.currency).to_string()} (fee {fee})"
        )
        return transaction, quote
