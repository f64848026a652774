"""
Pydantic schemas for ledger service requests
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field

from .models import (
    CommunicationStatus, CommunicationType, CreatedByType, LateFeeType,
    LedgerStatus, PaymentMethod, PenaltyConfiguration, PrepaymentConfiguration,
    PrepaymentFeeType, TransactionStatus
)


class PenaltyConfigurationModel(BaseModel):
    late_payment_fee_type: LateFeeType = LateFeeType.NONE
    late_payment_fee_value: Decimal = Field(Decimal('0'), ge=0)
    late_payment_grace_period_days: int = Field(0, ge=0)

    def to_config(self) -> PenaltyConfiguration:
        return PenaltyConfiguration(
            late_payment_fee_type=self.late_payment_fee_type,
            late_payment_fee_value=self.late_payment_fee_value,
            late_payment_grace_period_days=self.late_payment_grace_period_days
        )


class PrepaymentConfigurationModel(BaseModel):
    allow_prepayment: bool = True
    allow_part_prepayment: bool = True
    prepayment_fee_type: PrepaymentFeeType = PrepaymentFeeType.NONE
    prepayment_fee_value: Decimal = Field(Decimal('0'), ge=0)
    lock_in_period_months: int = Field(0, ge=0)

    def to_config(self) -> PrepaymentConfiguration:
        return PrepaymentConfiguration(
            allow_prepayment=self.allow_prepayment,
            allow_part_prepayment=self.allow_part_prepayment,
            prepayment_fee_type=self.prepayment_fee_type,
            prepayment_fee_value=self.prepayment_fee_value,
            lock_in_period_months=self.lock_in_period_months
        )


# Collaborator inputs
class LoanProductTerms(BaseModel):
    """Terms of the loan product the submission was approved under"""
    loan_product_id: str = Field(..., min_length=1)
    interest_rate_pa: Decimal = Field(..., ge=0, description="Annual rate in percent")
    tenure_months: int = Field(..., ge=1)
    processing_fee: Decimal = Field(Decimal('0'), ge=0)
    min_principal: Optional[Decimal] = Field(None, ge=0)
    max_principal: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = None  # LedgerConfig.currency when omitted
    penalty: PenaltyConfigurationModel = Field(default_factory=PenaltyConfigurationModel)
    prepayment: PrepaymentConfigurationModel = Field(default_factory=PrepaymentConfigurationModel)


class DisbursementRequest(BaseModel):
    """An approved submission whose funds have been disbursed"""
    loan_submission_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    disbursed_amount: Decimal = Field(..., gt=0)
    disbursement_date: date
    repayment_start_date: Optional[date] = None  # Defaults to one month after disbursement


# Money movements
class PaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    reference_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    processed_by: Optional[str] = None
    notes: Optional[str] = None


class ForeclosureRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    reference_id: Optional[str] = None
    processed_by: Optional[str] = None
    notes: Optional[str] = None


class AdminTransactionRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    status: TransactionStatus = TransactionStatus.CLEARED
    transaction_date: Optional[datetime] = None
    principal_component: Optional[Decimal] = Field(None, ge=0)
    interest_component: Optional[Decimal] = Field(None, ge=0)
    penalty_component: Optional[Decimal] = Field(None, ge=0)
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[str] = None
    created_by_type: CreatedByType = CreatedByType.USER


class TransactionStatusUpdate(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    status: TransactionStatus
    reason: Optional[str] = None
    processed_by: Optional[str] = None


# Adjustments
class WaiverRequest(BaseModel):
    installment_number: int = Field(..., ge=1)
    principal: Decimal = Field(Decimal('0'), ge=0)
    interest: Decimal = Field(Decimal('0'), ge=0)
    penalty: Decimal = Field(Decimal('0'), ge=0)
    notes: Optional[str] = None
    applied_by: Optional[str] = None
    waiver_scheme_id: Optional[str] = None
    waiver_submission_id: Optional[str] = None


class SchemeWaiverRequest(BaseModel):
    percentage: Decimal = Field(..., gt=0, le=100)
    waiver_scheme_id: Optional[str] = None
    waiver_submission_id: Optional[str] = None
    applied_by: Optional[str] = None


class RestructureRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    approved_by: Optional[str] = None
    new_interest_rate_pa: Optional[Decimal] = Field(None, ge=0)
    new_tenure_months: Optional[int] = Field(None, ge=1)
    effective_from_installment: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None


class StatusOverrideRequest(BaseModel):
    status: LedgerStatus
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    write_off_amount: Optional[Decimal] = Field(None, ge=0)


# Servicing records
class InternalNoteRequest(BaseModel):
    text: str = Field(..., min_length=1)
    added_by: Optional[str] = None


class CommunicationLogRequest(BaseModel):
    type: CommunicationType
    summary: str = Field(..., min_length=1)
    subject: Optional[str] = None
    recipient: Optional[str] = None
    sent_by: Optional[str] = None
    status: Optional[CommunicationStatus] = None
