"""
Payment Allocation Module

Applies incoming money to open installments in due-date order using a
per-installment waterfall (interest, principal, penalty by default). Also
records admin transactions with explicit components and confirms pending
transactions. Aggregates are not touched here; callers re-run the
aggregator after every allocation.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import uuid

from .currency import ZERO, CENT, round_money, to_decimal
from .errors import NotFoundError, StateConflictError, ValidationError
from .logging_config import get_logger
from .models import (
    COMPONENTS, CreatedByType, LoanRepaymentLedger, PaymentMethod,
    PaymentTransaction, TransactionStatus
)


logger = get_logger("repayment_ledger.allocation")

DEFAULT_ALLOCATION_ORDER = ("interest", "principal", "penalty")

CONFIRMABLE_STATUSES = frozenset({
    TransactionStatus.PENDING_CONFIRMATION,
    TransactionStatus.PROCESSING,
})


def parse_allocation_order(value: str) -> Tuple[str, ...]:
    """Parse "interest,principal,penalty" into a validated component order"""
    order = tuple(part.strip().lower() for part in value.split(",") if part.strip())
    if sorted(order) != sorted(COMPONENTS):
        raise ValidationError(
            f"Allocation order must name each of {', '.join(COMPONENTS)} exactly once, got {value!r}"
        )
    return order


@dataclass
class AllocationResult:
    """Amounts applied by one allocation pass"""
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    penalty: Decimal = ZERO
    unallocated: Decimal = ZERO
    installments_touched: List[int] = field(default_factory=list)

    def add(self, component: str, amount: Decimal) -> None:
        setattr(self, component, getattr(self, component) + amount)


class PaymentAllocationEngine:
    """Waterfall allocation of payments across open installments"""

    def __init__(
        self,
        allocation_order: Sequence[str] = DEFAULT_ALLOCATION_ORDER,
        tolerance: Decimal = CENT
    ):
        self.allocation_order = tuple(allocation_order)
        self.tolerance = tolerance

    def total_remaining_due(self, ledger: LoanRepaymentLedger) -> Decimal:
        """Everything still owed across unsettled installments"""
        return round_money(sum((inst.total_remaining for inst in ledger.open_installments), ZERO))

    def remaining_by_component(self, ledger: LoanRepaymentLedger) -> Dict[str, Decimal]:
        return {
            component: round_money(sum((inst.remaining(component) for inst in ledger.open_installments), ZERO))
            for component in COMPONENTS
        }

    def apply_payment(
        self,
        ledger: LoanRepaymentLedger,
        amount,
        method: PaymentMethod,
        reference_id: Optional[str] = None,
        payment_date: Optional[datetime] = None,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None,
        created_by_type: CreatedByType = CreatedByType.USER
    ) -> PaymentTransaction:
        """
        Allocate a cleared payment and append it to the ledger

        Args:
            ledger: Ledger to pay into (mutated in place)
            amount: Amount received, must be positive
            method: Payment method
            reference_id: External reference (UTR, cheque number, ...)
            payment_date: When the money was received (defaults to now)
            processed_by: Actor recording the payment
            notes: Free text

        Returns:
            The cleared PaymentTransaction

        Raises:
            ValidationError: If amount is not positive
            StateConflictError: If the ledger is closed or the amount exceeds
                everything still due
        """
        amount = self._positive_amount(amount)
        payment_date = payment_date or datetime.now(timezone.utc)
        self._check_payable(ledger, amount)

        result = self.allocate(ledger, amount, payment_date)
        transaction = PaymentTransaction(
            id=str(uuid.uuid4()),
            transaction_date=payment_date,
            amount_received=amount,
            payment_method=method,
            principal_component=result.principal,
            interest_component=result.interest,
            penalty_component=result.penalty,
            unallocated_amount=result.unallocated,
            reference_id=reference_id,
            status=TransactionStatus.CLEARED,
            notes=notes,
            processed_by=processed_by,
            created_by_type=created_by_type,
        )
        ledger.payment_transactions.append(transaction)

        logger.info(
            f"Payment {transaction.id} of {amount} applied to ledger {ledger.id}: "
            f"principal {result.principal}, interest {result.interest}, "
            f"penalty {result.penalty}, unallocated {result.unallocated}"
        )
        return transaction

    def allocate(
        self,
        ledger: LoanRepaymentLedger,
        amount: Decimal,
        payment_date: datetime
    ) -> AllocationResult:
        """Single forward pass over open installments; leftover stays unallocated"""
        result = AllocationResult()
        left = amount

        for inst in ledger.open_installments:
            if left <= ZERO:
                break
            applied = False
            for component in self.allocation_order:
                take = min(inst.remaining(component), left)
                if take <= ZERO:
                    continue
                inst.add_paid(component, take)
                result.add(component, take)
                left -= take
                applied = True
            if applied:
                inst.last_payment_date = payment_date.date()
                result.installments_touched.append(inst.installment_number)

        result.unallocated = left
        return result

    def apply_components(
        self,
        ledger: LoanRepaymentLedger,
        components: Dict[str, Decimal],
        payment_date: datetime
    ) -> AllocationResult:
        """Apply each component separately across open installments in due order"""
        result = AllocationResult()
        for component in COMPONENTS:
            left = components.get(component, ZERO)
            for inst in ledger.open_installments:
                if left <= ZERO:
                    break
                take = min(inst.remaining(component), left)
                if take <= ZERO:
                    continue
                inst.add_paid(component, take)
                result.add(component, take)
                left -= take
                inst.last_payment_date = payment_date.date()
                if inst.installment_number not in result.installments_touched:
                    result.installments_touched.append(inst.installment_number)
        return result

    def record_admin_transaction(
        self,
        ledger: LoanRepaymentLedger,
        amount,
        method: PaymentMethod,
        status: TransactionStatus = TransactionStatus.CLEARED,
        transaction_date: Optional[datetime] = None,
        principal_component=None,
        interest_component=None,
        penalty_component=None,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        processed_by: Optional[str] = None,
        created_by_type: CreatedByType = CreatedByType.USER
    ) -> PaymentTransaction:
        """
        Record a transaction entered by an operator

        When any component is given the split is taken as-is (validated
        against the amount and the remaining dues), otherwise the waterfall
        decides. Only cleared transactions are applied to installments, and
        their whole amount must fit within the total remaining due; other
        statuses are recorded for later confirmation. Closed ledgers accept
        nothing.
        """
        amount = self._positive_amount(amount)
        self._check_open(ledger)
        transaction_date = transaction_date or datetime.now(timezone.utc)
        components = self._explicit_components(principal_component, interest_component, penalty_component)

        if components is not None:
            self._check_components(ledger, amount, components)

        transaction = PaymentTransaction(
            id=str(uuid.uuid4()),
            transaction_date=transaction_date,
            amount_received=amount,
            payment_method=method,
            unallocated_amount=amount,
            reference_id=reference_id,
            status=status,
            notes=notes,
            processed_by=processed_by,
            created_by_type=created_by_type,
        )
        if components is not None:
            self._set_components(transaction, components)

        if status == TransactionStatus.CLEARED:
            self._clear(ledger, transaction, components)
        else:
            logger.info(f"Transaction {transaction.id} recorded on ledger {ledger.id} as {status.value}, not applied")

        ledger.payment_transactions.append(transaction)
        return transaction

    def confirm_pending_transaction(
        self,
        ledger: LoanRepaymentLedger,
        transaction_id: str,
        new_status: TransactionStatus,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None
    ) -> PaymentTransaction:
        """
        Move a transaction to a new status

        Pending Confirmation / Processing -> Cleared applies the money.
        Any other target only records the status and reason.

        Raises:
            NotFoundError: Unknown transaction
            StateConflictError: Transaction already cleared, or cannot be cleared
        """
        transaction = ledger.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found on ledger {ledger.id}")
        if transaction.is_cleared:
            raise StateConflictError(f"Transaction {transaction_id} is already cleared")

        if new_status == TransactionStatus.CLEARED:
            if transaction.status not in CONFIRMABLE_STATUSES:
                raise StateConflictError(
                    f"Transaction {transaction_id} in status {transaction.status.value} cannot be cleared"
                )
            explicit = any(getattr(transaction, f"{c}_component") > ZERO for c in COMPONENTS)
            components = None
            if explicit:
                components = {c: getattr(transaction, f"{c}_component") for c in COMPONENTS}
                self._check_components(ledger, transaction.amount_received, components)
            self._clear(ledger, transaction, components)
        else:
            transaction.status = new_status

        transaction.status_reason = reason
        if processed_by:
            transaction.processed_by = processed_by

        logger.info(f"Transaction {transaction_id} on ledger {ledger.id} moved to {new_status.value}")
        return transaction

    def _clear(
        self,
        ledger: LoanRepaymentLedger,
        transaction: PaymentTransaction,
        components: Optional[Dict[str, Decimal]]
    ) -> None:
        amount = transaction.amount_received
        self._check_payable(ledger, amount)
        if components is None:
            result = self.allocate(ledger, amount, transaction.transaction_date)
            self._set_components(transaction, {
                'principal': result.principal,
                'interest': result.interest,
                'penalty': result.penalty,
            })
        else:
            self.apply_components(ledger, components, transaction.transaction_date)
        transaction.status = TransactionStatus.CLEARED

    def _set_components(self, transaction: PaymentTransaction, components: Dict[str, Decimal]) -> None:
        transaction.principal_component = components.get('principal', ZERO)
        transaction.interest_component = components.get('interest', ZERO)
        transaction.penalty_component = components.get('penalty', ZERO)
        transaction.unallocated_amount = (transaction.amount_received - transaction.principal_component
                                          - transaction.interest_component - transaction.penalty_component
                                          - transaction.fee_component)

    def _explicit_components(self, principal, interest, penalty) -> Optional[Dict[str, Decimal]]:
        if principal is None and interest is None and penalty is None:
            return None
        components = {}
        for name, value in (('principal', principal), ('interest', interest), ('penalty', penalty)):
            try:
                amount = round_money(to_decimal(value, f"{name} component")) if value is not None else ZERO
            except ValueError as e:
                raise ValidationError(str(e))
            if amount < ZERO:
                raise ValidationError(f"{name} component cannot be negative, got {amount}")
            components[name] = amount
        return components

    def _check_components(
        self,
        ledger: LoanRepaymentLedger,
        amount: Decimal,
        components: Dict[str, Decimal]
    ) -> None:
        total = sum(components.values(), ZERO)
        if total > amount + self.tolerance:
            raise ValidationError(f"Components total {total} exceeds amount received {amount}")
        remaining = self.remaining_by_component(ledger)
        for component, value in components.items():
            if value > remaining[component] + self.tolerance:
                raise ValidationError(
                    f"{component} component {value} exceeds remaining {component} due {remaining[component]}"
                )

    def _check_open(self, ledger: LoanRepaymentLedger) -> None:
        if ledger.is_terminal:
            raise StateConflictError(
                f"Ledger {ledger.id} is {ledger.loan_repayment_status.value}; no further payments accepted"
            )

    def _check_payable(self, ledger: LoanRepaymentLedger, amount: Decimal) -> None:
        """Whole amount received, not just the split, must fit the remaining dues"""
        self._check_open(ledger)
        remaining = self.total_remaining_due(ledger)
        if amount > remaining + self.tolerance:
            raise StateConflictError(
                f"Payment {amount} exceeds total remaining due {remaining}"
            )

    def _positive_amount(self, amount) -> Decimal:
        try:
            amount = round_money(to_decimal(amount, "payment amount"))
        except ValueError as e:
            raise ValidationError(str(e))
        if amount <= ZERO:
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        return amount
