"""
Ledger Status Module

Transition table for the overall repayment status, derivation of the
Active-family status from days past due, and the privileged override used by
operations staff (including write-off and its reversal).
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Optional

from .currency import ZERO, round_money, to_decimal
from .errors import StateConflictError, ValidationError
from .logging_config import get_logger
from .models import (
    ACTIVE_FAMILY, TERMINAL_STATUSES, InternalNote, LedgerStatus,
    LoanRepaymentLedger, StatusChange, WriteOffDetails
)


logger = get_logger("repayment_ledger.status")

_CLOSING = frozenset({
    LedgerStatus.FULLY_REPAID,
    LedgerStatus.FORECLOSED,
    LedgerStatus.RESTRUCTURED,
})

# Regular (non-override) transitions
TRANSITIONS = {
    LedgerStatus.ACTIVE: ACTIVE_FAMILY | _CLOSING,
    LedgerStatus.ACTIVE_GRACE_PERIOD: ACTIVE_FAMILY | _CLOSING,
    LedgerStatus.ACTIVE_OVERDUE: ACTIVE_FAMILY | _CLOSING,
    LedgerStatus.RESTRUCTURED: _CLOSING,
    LedgerStatus.DEFAULTED: _CLOSING,
    LedgerStatus.LEGAL_ACTION_PENDING: _CLOSING,
    LedgerStatus.FULLY_REPAID: frozenset(),
    LedgerStatus.FORECLOSED: frozenset(),
    LedgerStatus.WRITE_OFF: frozenset(),
}


def derive_active_status(days_past_due: int, grace_days: int) -> LedgerStatus:
    """Active, grace period or overdue from days past due"""
    if days_past_due <= 0:
        return LedgerStatus.ACTIVE
    if days_past_due <= grace_days:
        return LedgerStatus.ACTIVE_GRACE_PERIOD
    return LedgerStatus.ACTIVE_OVERDUE


class StatusStateMachine:
    """Guards every change of a ledger's overall status"""

    def can_transition(self, from_status: LedgerStatus, to_status: LedgerStatus) -> bool:
        return to_status in TRANSITIONS.get(from_status, frozenset())

    def transition(
        self,
        ledger: LoanRepaymentLedger,
        to_status: LedgerStatus,
        reason: str,
        changed_by: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> bool:
        """
        Apply a regular transition

        Returns:
            True if the status changed, False if it already was to_status

        Raises:
            StateConflictError: If the transition is not in the table
        """
        from_status = ledger.loan_repayment_status
        if from_status == to_status:
            return False
        if not self.can_transition(from_status, to_status):
            raise StateConflictError(
                f"Cannot move ledger {ledger.id} from {from_status.value} to {to_status.value}"
            )

        at = at or datetime.now(timezone.utc)
        self._record(ledger, from_status, to_status, reason, changed_by, at, is_override=False)
        if to_status in TERMINAL_STATUSES:
            ledger.actual_closure_date = at.date()
        return True

    def refresh(self, ledger: LoanRepaymentLedger, at: Optional[datetime] = None) -> LedgerStatus:
        """
        Re-derive the status from the ledger's current aggregates

        Terminal ledgers are left alone. A ledger with no open installments
        becomes Fully Repaid; an Active-family ledger follows days past due;
        Restructured, Defaulted and Legal Action Pending are otherwise sticky.
        """
        status = ledger.loan_repayment_status
        if status in TERMINAL_STATUSES:
            return status

        if not ledger.open_installments:
            self.transition(ledger, LedgerStatus.FULLY_REPAID, "All installments settled", at=at)
            ledger.current_outstanding_principal = ZERO
            ledger.next_due_date = None
            ledger.next_emi_amount = None
        elif status in ACTIVE_FAMILY:
            derived = derive_active_status(
                ledger.days_past_due,
                ledger.penalty_configuration.late_payment_grace_period_days
            )
            self.transition(ledger, derived, f"{ledger.days_past_due} days past due", at=at)

        return ledger.loan_repayment_status

    def override(
        self,
        ledger: LoanRepaymentLedger,
        to_status: LedgerStatus,
        actor: str,
        reason: str,
        write_off_amount=None,
        at: Optional[datetime] = None
    ) -> StatusChange:
        """
        Privileged status change that bypasses the transition table

        Args:
            ledger: Ledger to change (mutated in place)
            to_status: Any status
            actor: Staff member performing the override
            reason: Mandatory justification
            write_off_amount: Principal written off when moving to Write-Off,
                defaults to the outstanding principal
            at: Time of the change

        Returns:
            The StatusChange appended to the ledger's status history

        Raises:
            ValidationError: Missing actor or reason, or a negative write-off amount
        """
        if not actor or not str(actor).strip():
            raise ValidationError("Status override requires an actor")
        if not reason or not str(reason).strip():
            raise ValidationError("Status override requires a reason")

        at = at or datetime.now(timezone.utc)
        from_status = ledger.loan_repayment_status

        if from_status == LedgerStatus.WRITE_OFF and to_status != LedgerStatus.WRITE_OFF:
            if ledger.write_off_details and ledger.write_off_details.is_active:
                ledger.write_off_details.reversed_at = at

        if to_status == LedgerStatus.WRITE_OFF:
            ledger.write_off_details = WriteOffDetails(
                write_off_date=at,
                amount=self._write_off_amount(ledger, write_off_amount),
                reason=reason,
                approved_by=actor,
            )

        if to_status in TERMINAL_STATUSES:
            ledger.actual_closure_date = at.date()
        elif from_status in TERMINAL_STATUSES:
            ledger.actual_closure_date = None

        change = self._record(ledger, from_status, to_status, reason, actor, at, is_override=True)
        ledger.internal_notes.append(InternalNote(
            note_date=at,
            text=f"Status overridden from {from_status.value} to {to_status.value}: {reason}",
            added_by=actor,
        ))
        logger.warning(
            f"Status override on ledger {ledger.id} by {actor}: "
            f"{from_status.value} -> {to_status.value} ({reason})"
        )
        return change

    def _write_off_amount(self, ledger: LoanRepaymentLedger, amount) -> Decimal:
        if amount is None:
            return ledger.current_outstanding_principal
        try:
            amount = round_money(to_decimal(amount, "write-off amount"))
        except ValueError as e:
            raise ValidationError(str(e))
        if amount < ZERO:
            raise ValidationError(f"Write-off amount cannot be negative, got {amount}")
        return amount

    def _record(
        self,
        ledger: LoanRepaymentLedger,
        from_status: LedgerStatus,
        to_status: LedgerStatus,
        reason: str,
        changed_by: Optional[str],
        at: datetime,
        is_override: bool
    ) -> StatusChange:
        change = StatusChange(
            changed_at=at,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            changed_by=changed_by,
            is_override=is_override,
        )
        ledger.status_history.append(change)
        ledger.loan_repayment_status = to_status
        logger.info(f"Ledger {ledger.id} status {from_status.value} -> {to_status.value}")
        return change
