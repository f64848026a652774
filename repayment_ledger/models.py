"""
Ledger Data Model

The repayment ledger aggregate and the records it owns: scheduled
installments, payment transactions, configuration blocks and the append-only
history entries (waivers, restructures, status changes, notes, communications).
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum

from .currency import Currency, ZERO
from .storage import StorageRecord


class LedgerStatus(Enum):
    """Overall repayment status of a ledger"""
    ACTIVE = "Active"
    ACTIVE_GRACE_PERIOD = "Active - Grace Period"
    ACTIVE_OVERDUE = "Active - Overdue"
    FULLY_REPAID = "Fully Repaid"
    FORECLOSED = "Foreclosed"
    RESTRUCTURED = "Restructured"
    DEFAULTED = "Defaulted"
    WRITE_OFF = "Write-Off"
    LEGAL_ACTION_PENDING = "Legal Action Pending"


ACTIVE_FAMILY = frozenset({
    LedgerStatus.ACTIVE,
    LedgerStatus.ACTIVE_GRACE_PERIOD,
    LedgerStatus.ACTIVE_OVERDUE,
})

TERMINAL_STATUSES = frozenset({
    LedgerStatus.FULLY_REPAID,
    LedgerStatus.FORECLOSED,
    LedgerStatus.WRITE_OFF,
})


class InstallmentStatus(Enum):
    """Status of a single scheduled installment"""
    PENDING = "Pending"
    PARTIALLY_PAID = "Partially Paid"
    OVERDUE = "Overdue"
    PAID = "Paid"
    PAID_LATE = "Paid Late"
    WAIVED = "Waived"
    CANCELLED = "Cancelled"


SETTLED_INSTALLMENT_STATUSES = frozenset({
    InstallmentStatus.PAID,
    InstallmentStatus.PAID_LATE,
    InstallmentStatus.WAIVED,
    InstallmentStatus.CANCELLED,
})


class TransactionStatus(Enum):
    """Lifecycle of a payment transaction"""
    PENDING_CONFIRMATION = "Pending Confirmation"
    PROCESSING = "Processing"
    CLEARED = "Cleared"
    FAILED = "Failed"
    BOUNCED = "Bounced"
    REFUNDED = "Refunded"
    CANCELLED = "Cancelled"


class PaymentMethod(Enum):
    """How the money was received"""
    BANK_TRANSFER = "Bank Transfer"
    UPI = "UPI"
    CARD = "Card"
    CASH = "Cash"
    CHEQUE = "Cheque"
    AUTO_DEBIT = "Auto-Debit"
    INTERNAL_ADJUSTMENT = "Internal Adjustment"
    WAIVER_ADJUSTMENT = "Waiver Adjustment"
    OTHER = "Other"


class CreatedByType(Enum):
    """Origin of a transaction"""
    USER = "User"
    SYSTEM = "System"


class LateFeeType(Enum):
    """How a late payment fee is computed"""
    NONE = "None"
    FIXED_AMOUNT = "FixedAmount"
    PERCENTAGE_OF_OVERDUE_EMI = "PercentageOfOverdueEMI"
    PERCENTAGE_OF_OVERDUE_PRINCIPAL = "PercentageOfOverduePrincipal"


class PrepaymentFeeType(Enum):
    """How a prepayment / foreclosure fee is computed"""
    NONE = "None"
    FIXED_AMOUNT = "FixedAmount"
    PERCENTAGE_OF_OUTSTANDING_PRINCIPAL = "PercentageOfOutstandingPrincipal"
    PERCENTAGE_OF_PREPAID_AMOUNT = "PercentageOfPrepaidAmount"


class CommunicationType(Enum):
    """Channel of a borrower communication"""
    SMS = "SMS"
    EMAIL = "Email"
    CALL = "Call"
    LETTER = "Letter"
    SYSTEM_ALERT = "System Alert"


class CommunicationStatus(Enum):
    """Delivery state of a borrower communication"""
    SENT = "Sent"
    DELIVERED = "Delivered"
    FAILED = "Failed"
    READ = "Read"


class WaiverStatusPolicy(Enum):
    """Decides Paid vs Waived for an installment settled by a mix of both"""
    WAIVED_MAJORITY = "waived_majority"          # Waived if waived total > paid total
    WAIVED_COVERS_EMI = "waived_covers_emi"      # Waived if waived >= total EMI due
    PAID_IF_ANY_PAYMENT = "paid_if_any_payment"  # Paid if any payment was made


COMPONENTS = ("principal", "interest", "penalty")


@dataclass
class ScheduledInstallment:
    """One row of the amortization schedule"""
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_emi_due: Decimal
    penalty_due: Decimal = ZERO
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    penalty_paid: Decimal = ZERO
    principal_waived: Decimal = ZERO
    interest_waived: Decimal = ZERO
    penalty_waived: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    is_penalty_applied: bool = False
    last_payment_date: Optional[date] = None
    notes: Optional[str] = None

    def due(self, component: str) -> Decimal:
        return getattr(self, f"{component}_due")

    def paid(self, component: str) -> Decimal:
        return getattr(self, f"{component}_paid")

    def waived(self, component: str) -> Decimal:
        return getattr(self, f"{component}_waived")

    def remaining(self, component: str) -> Decimal:
        """Unsettled amount of a component, never negative"""
        return max(ZERO, self.due(component) - self.paid(component) - self.waived(component))

    @property
    def total_remaining(self) -> Decimal:
        return sum((self.remaining(c) for c in COMPONENTS), ZERO)

    @property
    def total_paid(self) -> Decimal:
        return sum((self.paid(c) for c in COMPONENTS), ZERO)

    @property
    def total_waived(self) -> Decimal:
        return sum((self.waived(c) for c in COMPONENTS), ZERO)

    @property
    def is_open(self) -> bool:
        """Not yet settled (paid, waived or cancelled)"""
        return self.status not in SETTLED_INSTALLMENT_STATUSES

    def add_paid(self, component: str, amount: Decimal) -> None:
        setattr(self, f"{component}_paid", self.paid(component) + amount)

    def add_waived(self, component: str, amount: Decimal) -> None:
        setattr(self, f"{component}_waived", self.waived(component) + amount)


@dataclass
class PaymentTransaction:
    """
    Append-only record of money received against the ledger.

    principal + interest + penalty + fee + unallocated always equals
    amount_received. Only CLEARED transactions affect the ledger totals.
    """
    id: str
    transaction_date: datetime
    amount_received: Decimal
    payment_method: PaymentMethod
    principal_component: Decimal = ZERO
    interest_component: Decimal = ZERO
    penalty_component: Decimal = ZERO
    fee_component: Decimal = ZERO
    unallocated_amount: Decimal = ZERO
    reference_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING_CONFIRMATION
    status_reason: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[str] = None
    created_by_type: CreatedByType = CreatedByType.USER

    @property
    def allocated_total(self) -> Decimal:
        return (self.principal_component + self.interest_component + self.penalty_component
                + self.fee_component + self.unallocated_amount)

    @property
    def is_cleared(self) -> bool:
        return self.status == TransactionStatus.CLEARED


@dataclass
class PenaltyConfiguration:
    """Late payment fee rules copied from the loan product"""
    late_payment_fee_type: LateFeeType = LateFeeType.NONE
    late_payment_fee_value: Decimal = ZERO
    late_payment_grace_period_days: int = 0


@dataclass
class PrepaymentConfiguration:
    """Prepayment / foreclosure rules copied from the loan product"""
    allow_prepayment: bool = True
    allow_part_prepayment: bool = True
    prepayment_fee_type: PrepaymentFeeType = PrepaymentFeeType.NONE
    prepayment_fee_value: Decimal = ZERO
    lock_in_period_months: int = 0


@dataclass
class ForeclosureDetails:
    is_foreclosed: bool
    foreclosure_date: datetime
    foreclosure_amount_paid: Decimal
    foreclosure_fee_paid: Decimal
    foreclosure_notes: Optional[str] = None
    processed_by: Optional[str] = None


@dataclass
class WriteOffDetails:
    write_off_date: datetime
    amount: Decimal
    reason: str
    approved_by: str
    reversed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.reversed_at is None


@dataclass
class RestructureEvent:
    """Snapshot of terms before and after a restructure"""
    restructure_date: datetime
    reason: str
    previous_terms: Dict[str, str]
    new_terms: Dict[str, str]
    effective_from_installment: int
    approved_by: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class WaiverEvent:
    """One waiver applied to one installment"""
    date_applied: datetime
    installment_number: int
    principal_waived: Decimal
    interest_waived: Decimal
    penalty_waived: Decimal
    applied_by: Optional[str] = None
    notes: Optional[str] = None
    waiver_scheme_id: Optional[str] = None
    waiver_submission_id: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.principal_waived + self.interest_waived + self.penalty_waived


@dataclass
class StatusChange:
    changed_at: datetime
    from_status: LedgerStatus
    to_status: LedgerStatus
    reason: str
    changed_by: Optional[str] = None
    is_override: bool = False


@dataclass
class InternalNote:
    note_date: datetime
    text: str
    added_by: Optional[str] = None


@dataclass
class CommunicationLogEntry:
    log_date: datetime
    type: CommunicationType
    summary: str
    subject: Optional[str] = None
    recipient: Optional[str] = None
    sent_by: Optional[str] = None
    status: Optional[CommunicationStatus] = None


@dataclass
class LoanRepaymentLedger(StorageRecord):
    """Repayment ledger for one disbursed loan submission"""
    loan_submission_id: str
    loan_product_id: str
    user_id: str
    currency: Currency

    # Terms agreed at disbursement
    disbursed_amount: Decimal
    agreed_interest_rate_pa: Decimal
    original_tenure_months: int
    initial_calculated_emi: Decimal
    disbursement_date: date
    repayment_start_date: date
    original_expected_closure_date: date
    processing_fee_paid: Decimal = ZERO
    current_interest_rate_pa: Optional[Decimal] = None
    current_emi: Optional[Decimal] = None

    penalty_configuration: PenaltyConfiguration = field(default_factory=PenaltyConfiguration)
    prepayment_configuration: PrepaymentConfiguration = field(default_factory=PrepaymentConfiguration)

    scheduled_installments: List[ScheduledInstallment] = field(default_factory=list)
    payment_transactions: List[PaymentTransaction] = field(default_factory=list)

    # Aggregates, written only by the aggregator
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

    loan_repayment_status: LedgerStatus = LedgerStatus.ACTIVE
    actual_closure_date: Optional[date] = None

    foreclosure_details: Optional[ForeclosureDetails] = None
    write_off_details: Optional[WriteOffDetails] = None
    is_restructured: bool = False
    restructure_history: List[RestructureEvent] = field(default_factory=list)
    waiver_history: List[WaiverEvent] = field(default_factory=list)
    status_history: List[StatusChange] = field(default_factory=list)
    internal_notes: List[InternalNote] = field(default_factory=list)
    communication_log: List[CommunicationLogEntry] = field(default_factory=list)

    version: int = 0

    def __post_init__(self):
        if self.current_interest_rate_pa is None:
            self.current_interest_rate_pa = self.agreed_interest_rate_pa
        if self.current_emi is None:
            self.current_emi = self.initial_calculated_emi

    @property
    def is_terminal(self) -> bool:
        return self.loan_repayment_status in TERMINAL_STATUSES

    @property
    def open_installments(self) -> List[ScheduledInstallment]:
        """Unsettled installments in due-date order"""
        return [inst for inst in self.ordered_installments if inst.is_open]

    @property
    def ordered_installments(self) -> List[ScheduledInstallment]:
        return sorted(self.scheduled_installments, key=lambda i: (i.due_date, i.installment_number))

    @property
    def written_off_principal(self) -> Decimal:
        """Principal covered by an active (not reversed) write-off"""
        if self.write_off_details and self.write_off_details.is_active:
            return self.write_off_details.amount
        return ZERO

    def get_installment(self, installment_number: int) -> Optional[ScheduledInstallment]:
        for inst in self.scheduled_installments:
            if inst.installment_number == installment_number:
                return inst
        return None

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        for txn in self.payment_transactions:
            if txn.id == transaction_id:
                return txn
        return None
