"""
Restructure Module

Regenerates the untouched tail of a schedule with new terms. Installments
before the effective point keep their amounts and history; the principal
still scheduled from the effective point onward is re-amortized at the new
rate over the new tenure, starting on the effective installment's due date.
"""

from datetime import datetime, timezone
from typing import Optional

from .currency import ZERO, round_money, to_decimal
from .errors import InvalidTermsError, NotFoundError, StateConflictError, ValidationError
from .logging_config import get_logger
from .models import InstallmentStatus, LedgerStatus, LoanRepaymentLedger, RestructureEvent
from .schedule import AmortizationScheduleBuilder
from .status import StatusStateMachine


logger = get_logger("repayment_ledger.restructure")


class RestructureProcessor:
    """Applies approved restructures to a ledger"""

    def __init__(
        self,
        schedule_builder: Optional[AmortizationScheduleBuilder] = None,
        state_machine: Optional[StatusStateMachine] = None
    ):
        self.schedule_builder = schedule_builder or AmortizationScheduleBuilder()
        self.state_machine = state_machine or StatusStateMachine()

    def restructure(
        self,
        ledger: LoanRepaymentLedger,
        reason: str,
        approved_by: Optional[str] = None,
        new_interest_rate_pa=None,
        new_tenure_months: Optional[int] = None,
        effective_from_installment: Optional[int] = None,
        notes: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> RestructureEvent:
        """
        Re-amortize the remaining schedule

        Args:
            ledger: Ledger to restructure (mutated in place)
            reason: Mandatory justification
            approved_by: Actor approving the restructure
            new_interest_rate_pa: New annual rate in percent (unchanged if None)
            new_tenure_months: Installments in the new tail (unchanged if None)
            effective_from_installment: First installment to regenerate,
                defaults to the first open installment
            notes: Free text recorded on the event

        Returns:
            The RestructureEvent appended to the ledger's history

        Raises:
            ValidationError: Missing reason
            InvalidTermsError: New terms cannot be amortized
            NotFoundError: Unknown effective installment
            StateConflictError: Ledger closed, nothing left to restructure, or
                money already applied from the effective point onward
        """
        if not reason or not str(reason).strip():
            raise ValidationError("Restructure requires a reason")
        if ledger.is_terminal:
            raise StateConflictError(
                f"Ledger {ledger.id} is {ledger.loan_repayment_status.value}; cannot restructure"
            )

        open_installments = ledger.open_installments
        if not open_installments:
            raise StateConflictError(f"Ledger {ledger.id} has no open installments to restructure")

        if effective_from_installment is None:
            effective_from_installment = open_installments[0].installment_number
        elif ledger.get_installment(effective_from_installment) is None:
            raise NotFoundError(
                f"Installment {effective_from_installment} not found on ledger {ledger.id}"
            )

        ordered = ledger.ordered_installments
        head = [i for i in ordered if i.installment_number < effective_from_installment]
        tail = [i for i in ordered if i.installment_number >= effective_from_installment]

        for inst in tail:
            if inst.status == InstallmentStatus.CANCELLED or inst.total_paid > ZERO or inst.total_waived > ZERO:
                raise StateConflictError(
                    f"Installment {inst.installment_number} already has money applied; "
                    f"restructure must start after it"
                )

        if new_interest_rate_pa is None:
            rate = ledger.current_interest_rate_pa
        else:
            try:
                rate = to_decimal(new_interest_rate_pa, "interest rate")
            except ValueError as e:
                raise InvalidTermsError(str(e))
        tenure = len(tail) if new_tenure_months is None else new_tenure_months

        principal = round_money(sum((i.principal_due for i in tail), ZERO))
        carried_penalty = round_money(sum((i.penalty_due for i in tail), ZERO))
        previous_terms = {
            'interest_rate_pa': str(ledger.current_interest_rate_pa),
            'emi': str(ledger.current_emi),
            'remaining_tenure_months': str(len(tail)),
            'remaining_principal': str(principal),
        }

        new_tail = self.schedule_builder.build(
            principal, rate, tenure,
            first_due_date=tail[0].due_date,
            start_number=effective_from_installment,
        )
        if carried_penalty > ZERO:
            new_tail[0].penalty_due = carried_penalty
            new_tail[0].is_penalty_applied = True

        new_emi = self.schedule_builder.calculate_emi(principal, rate, tenure)
        ledger.scheduled_installments = head + new_tail
        ledger.current_interest_rate_pa = rate
        ledger.current_emi = new_emi
        ledger.is_restructured = True

        at = at or datetime.now(timezone.utc)
        event = RestructureEvent(
            restructure_date=at,
            reason=reason,
            previous_terms=previous_terms,
            new_terms={
                'interest_rate_pa': str(rate),
                'emi': str(new_emi),
                'remaining_tenure_months': str(tenure),
                'remaining_principal': str(principal),
            },
            effective_from_installment=effective_from_installment,
            approved_by=approved_by,
            notes=notes,
        )
        ledger.restructure_history.append(event)
        self.state_machine.transition(ledger, LedgerStatus.RESTRUCTURED, reason, changed_by=approved_by, at=at)

        logger.info(
            f"Ledger {ledger.id} restructured from installment {effective_from_installment}: "
            f"{principal} over {tenure} months at {rate}% (EMI {new_emi})"
        )
        return event
