"""
Waiver Module

Partial or full waivers of principal, interest and penalty on a single
installment, and percentage-of-interest waivers granted under a waiver
scheme across every pending installment. Waived amounts are cumulative and
never retracted.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import List, Optional

from .currency import ZERO, CENT, round_money, to_decimal
from .errors import NotFoundError, StateConflictError, ValidationError
from .logging_config import get_logger
from .models import (
    COMPONENTS, InstallmentStatus, InternalNote, LoanRepaymentLedger, WaiverEvent
)


logger = get_logger("repayment_ledger.waivers")

HUNDRED = Decimal("100")


class WaiverAdjustmentProcessor:
    """Applies approved waivers to installments"""

    def __init__(self, tolerance: Decimal = CENT):
        self.tolerance = tolerance

    def waive_installment(
        self,
        ledger: LoanRepaymentLedger,
        installment_number: int,
        principal=ZERO,
        interest=ZERO,
        penalty=ZERO,
        notes: Optional[str] = None,
        applied_by: Optional[str] = None,
        waiver_scheme_id: Optional[str] = None,
        waiver_submission_id: Optional[str] = None,
        applied_at: Optional[datetime] = None
    ) -> WaiverEvent:
        """
        Waive amounts on one installment

        Args:
            ledger: Ledger owning the installment (mutated in place)
            installment_number: Installment to waive
            principal: Principal amount to waive
            interest: Interest amount to waive
            penalty: Penalty amount to waive
            notes: Justification recorded with the waiver
            applied_by: Actor applying the waiver
            waiver_scheme_id: Scheme the waiver was granted under
            waiver_submission_id: Approved waiver request

        Returns:
            The WaiverEvent appended to the ledger's waiver history

        Raises:
            ValidationError: Negative amounts, nothing to waive, or more than
                the remaining amount of a component
            NotFoundError: No such installment
            StateConflictError: Ledger closed or installment cancelled
        """
        amounts = {}
        for component, value in (('principal', principal), ('interest', interest), ('penalty', penalty)):
            try:
                amount = round_money(to_decimal(value if value is not None else ZERO, f"{component} waiver"))
            except ValueError as e:
                raise ValidationError(str(e))
            if amount < ZERO:
                raise ValidationError(f"{component} waiver cannot be negative, got {amount}")
            amounts[component] = amount

        if all(amount == ZERO for amount in amounts.values()):
            raise ValidationError("At least one waiver amount must be positive")

        if ledger.is_terminal:
            raise StateConflictError(
                f"Ledger {ledger.id} is {ledger.loan_repayment_status.value}; waivers not allowed"
            )

        installment = ledger.get_installment(installment_number)
        if installment is None:
            raise NotFoundError(f"Installment {installment_number} not found on ledger {ledger.id}")
        if installment.status == InstallmentStatus.CANCELLED:
            raise StateConflictError(f"Installment {installment_number} is cancelled")

        for component in COMPONENTS:
            remaining = installment.remaining(component)
            if amounts[component] > remaining + self.tolerance:
                raise ValidationError(
                    f"Cannot waive {amounts[component]} of {component} on installment "
                    f"{installment_number}; only {remaining} remains"
                )

        for component in COMPONENTS:
            if amounts[component] > ZERO:
                installment.add_waived(component, amounts[component])

        event = WaiverEvent(
            date_applied=applied_at or datetime.now(timezone.utc),
            installment_number=installment_number,
            principal_waived=amounts['principal'],
            interest_waived=amounts['interest'],
            penalty_waived=amounts['penalty'],
            applied_by=applied_by,
            notes=notes,
            waiver_scheme_id=waiver_scheme_id,
            waiver_submission_id=waiver_submission_id,
        )
        ledger.waiver_history.append(event)

        logger.info(
            f"Waived {event.total} on installment {installment_number} of ledger {ledger.id}"
        )
        return event

    def apply_scheme_waiver(
        self,
        ledger: LoanRepaymentLedger,
        percentage,
        waiver_scheme_id: Optional[str] = None,
        waiver_submission_id: Optional[str] = None,
        applied_by: Optional[str] = None,
        applied_at: Optional[datetime] = None
    ) -> List[WaiverEvent]:
        """
        Waive a percentage of scheduled interest on every pending installment

        Each installment gets its own WaiverEvent, capped at the interest it
        still owes. Installments already paid into, overdue, settled or
        cancelled are left alone. An internal note records the total.

        Raises:
            ValidationError: Percentage outside (0, 100]
            StateConflictError: Ledger closed, or no pending interest to waive
        """
        try:
            percentage = to_decimal(percentage, "waiver percentage")
        except ValueError as e:
            raise ValidationError(str(e))
        if percentage <= ZERO or percentage > HUNDRED:
            raise ValidationError(f"Waiver percentage must be above 0 and at most 100, got {percentage}")

        if ledger.is_terminal:
            raise StateConflictError(
                f"Ledger {ledger.id} is {ledger.loan_repayment_status.value}; waivers not allowed"
            )

        applied_at = applied_at or datetime.now(timezone.utc)
        events = []
        for installment in ledger.ordered_installments:
            if installment.status != InstallmentStatus.PENDING:
                continue
            interest = min(
                round_money(installment.interest_due * percentage / HUNDRED),
                installment.remaining('interest')
            )
            if interest <= ZERO:
                continue

            installment.add_waived('interest', interest)
            events.append(WaiverEvent(
                date_applied=applied_at,
                installment_number=installment.installment_number,
                principal_waived=ZERO,
                interest_waived=interest,
                penalty_waived=ZERO,
                applied_by=applied_by,
                notes=f"{percentage}% interest waiver",
                waiver_scheme_id=waiver_scheme_id,
                waiver_submission_id=waiver_submission_id,
            ))

        if not events:
            raise StateConflictError(f"Ledger {ledger.id} has no pending interest to waive")

        total = sum((event.interest_waived for event in events), ZERO)
        ledger.waiver_history.extend(events)
        ledger.internal_notes.append(InternalNote(
            note_date=applied_at,
            text=(f"Waiver approved via submission {waiver_submission_id or '-'}: "
                  f"{total} of interest waived across {len(events)} installments"),
            added_by=applied_by,
        ))

        logger.info(
            f"Scheme waiver {waiver_scheme_id} waived {total} of interest on "
            f"{len(events)} installments of ledger {ledger.id}"
        )
        return events
