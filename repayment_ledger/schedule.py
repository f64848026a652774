"""
Amortization Schedule Module

Computes the EMI for an equal-installment loan and builds the installment
schedule by simulating a declining balance month by month.
"""

from decimal import Decimal
from datetime import date
from typing import List
import calendar

from .currency import ZERO, round_money, to_decimal
from .errors import InvalidTermsError
from .logging_config import get_logger
from .models import ScheduledInstallment


logger = get_logger("repayment_ledger.schedule")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_pct: Decimal) -> Decimal:
    """Periodic rate r = R / 12 / 100 for an annual percentage rate R"""
    return annual_rate_pct / Decimal('12') / Decimal('100')


class AmortizationScheduleBuilder:
    """
    Builds equal monthly installment (EMI) schedules.

    Rates are annual percentages (12 means 12% p.a.). Every amount on the
    produced installments is rounded to 2 decimals, and the final installment
    carries whatever principal is left so the schedule always ends at 0.00.
    """

    def validate_terms(self, principal, annual_rate_pct, tenure_months) -> None:
        try:
            principal = to_decimal(principal, "principal")
            annual_rate_pct = to_decimal(annual_rate_pct, "annual interest rate")
        except ValueError as e:
            raise InvalidTermsError(str(e))

        if principal <= ZERO:
            raise InvalidTermsError(f"Principal must be positive, got {principal}")
        if annual_rate_pct < ZERO:
            raise InvalidTermsError(f"Interest rate cannot be negative, got {annual_rate_pct}")
        if isinstance(tenure_months, bool) or not isinstance(tenure_months, int) or tenure_months < 1:
            raise InvalidTermsError(f"Tenure must be a whole number of months >= 1, got {tenure_months!r}")

    def calculate_emi(self, principal, annual_rate_pct, tenure_months: int) -> Decimal:
        """
        Calculate the equated monthly installment

        Args:
            principal: Amount to amortize
            annual_rate_pct: Annual interest rate in percent
            tenure_months: Number of monthly installments

        Returns:
            EMI rounded to 2 decimals

        Raises:
            InvalidTermsError: If the terms cannot produce a positive EMI
        """
        self.validate_terms(principal, annual_rate_pct, tenure_months)
        principal = to_decimal(principal, "principal")
        rate = monthly_rate(to_decimal(annual_rate_pct, "annual interest rate"))

        if rate == ZERO:
            emi = principal / Decimal(tenure_months)
        else:
            # P * r * (1+r)^n / ((1+r)^n - 1)
            factor = (Decimal('1') + rate) ** tenure_months
            emi = principal * rate * factor / (factor - Decimal('1'))

        if not emi.is_finite():
            raise InvalidTermsError("EMI calculation did not produce a finite amount")
        emi = round_money(emi)
        if emi <= ZERO:
            raise InvalidTermsError(
                f"Principal {principal} over {tenure_months} months rounds to a zero EMI"
            )
        return emi

    def build(
        self,
        principal,
        annual_rate_pct,
        tenure_months: int,
        first_due_date: date,
        start_number: int = 1
    ) -> List[ScheduledInstallment]:
        """
        Generate the installment schedule

        Args:
            principal: Amount to amortize
            annual_rate_pct: Annual interest rate in percent
            tenure_months: Number of monthly installments
            first_due_date: Due date of the first installment; later ones
                fall on the same day of each following month (clamped)
            start_number: Installment number of the first row, used when a
                restructure regenerates the tail of an existing schedule

        Returns:
            List of pending installments ordered by due date
        """
        emi = self.calculate_emi(principal, annual_rate_pct, tenure_months)
        balance = round_money(to_decimal(principal, "principal"))
        rate = monthly_rate(to_decimal(annual_rate_pct, "annual interest rate"))

        installments = []
        for i in range(tenure_months):
            interest = round_money(balance * rate)
            if i == tenure_months - 1:
                principal_part = balance
            else:
                principal_part = min(max(emi - interest, ZERO), balance)

            installments.append(ScheduledInstallment(
                installment_number=start_number + i,
                due_date=add_months(first_due_date, i),
                principal_due=principal_part,
                interest_due=interest,
                total_emi_due=principal_part + interest,
            ))
            balance -= principal_part

        logger.debug(
            f"Built {tenure_months}-month schedule: EMI {emi}, "
            f"final installment {installments[-1].total_emi_due}"
        )
        return installments

    def expected_closure_date(self, first_due_date: date, tenure_months: int) -> date:
        """Due date of the last installment"""
        return add_months(first_due_date, tenure_months - 1)
