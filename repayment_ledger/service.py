"""
Ledger Service Module

Facade over the ledger components. Every mutating operation loads a private
copy of one ledger under its lock, runs the component, re-aggregates and
re-derives status, then commits the ledger and its audit events atomically.
Notifications go out only after the commit.

Hosts start the engine with create_service(), which also applies the
configured log level, format and file.
"""

from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from functools import wraps
import uuid

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .aggregator import LedgerAggregator
from .allocation import PaymentAllocationEngine, parse_allocation_order
from .audit import AuditEvent, AuditEventType, AuditTrail
from .config import LedgerConfig, get_config
from .currency import ZERO, Currency, Money, round_money, to_decimal
from .errors import InternalError, LedgerError, NotFoundError, StateConflictError, ValidationError
from .foreclosure import ForeclosureCalculator, ForeclosureQuote
from .logging_config import configure_logging, get_logger, log_action
from .models import (
    CommunicationLogEntry, InternalNote, LedgerStatus, LoanRepaymentLedger,
    PaymentTransaction, RestructureEvent, StatusChange, TransactionStatus,
    WaiverEvent, WaiverStatusPolicy
)
from .notifications import NotificationDispatcher, NotificationType, Notifier, create_notifier
from .penalties import LateFeeProcessor
from .repository import LedgerMutation, LedgerRepository
from .restructure import RestructureProcessor
from .schedule import AmortizationScheduleBuilder, add_months
from .schemas import (
    AdminTransactionRequest, CommunicationLogRequest, DisbursementRequest,
    ForeclosureRequest, InternalNoteRequest, LoanProductTerms, PaymentRequest,
    RestructureRequest, SchemeWaiverRequest, StatusOverrideRequest, TransactionStatusUpdate, WaiverRequest
)
from .status import StatusStateMachine
from .storage import StorageInterface, create_storage
from .waivers import WaiverAdjustmentProcessor


logger = get_logger("repayment_ledger.service")

SORTABLE_LEDGER_FIELDS = (
    "created_at", "updated_at", "disbursement_date", "next_due_date",
    "days_past_due", "current_outstanding_principal",
)


def ledger_operation(action: str):
    """
    Translate failures of a service operation into the ledger error taxonomy

    LedgerErrors pass through, pydantic validation failures become
    ValidationError, anything else is logged and raised as InternalError.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except LedgerError:
                raise
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid {action} request: {e}") from e
            except Exception as e:
                logger.exception(f"Unexpected failure in {action}")
                raise InternalError(f"{action} failed: {e}") from e
        return wrapper
    return decorator


class LedgerService:
    """
    Repayment ledger operations

    Request arguments accept either the pydantic request model or a plain
    dict with the same fields.
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LedgerConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        try:
            tolerance = to_decimal(self.config.amount_tolerance, "amount tolerance")
            policy = WaiverStatusPolicy(self.config.waiver_status_policy)
        except ValueError as e:
            raise ValidationError(f"Invalid ledger configuration: {e}") from e

        self.repository = LedgerRepository(self.storage)
        self.audit_trail = AuditTrail(self.storage)
        self.schedule_builder = AmortizationScheduleBuilder()
        self.aggregator = LedgerAggregator(policy=policy, tolerance=tolerance)
        self.status_machine = StatusStateMachine()
        self.allocation = PaymentAllocationEngine(
            allocation_order=parse_allocation_order(self.config.allocation_order),
            tolerance=tolerance
        )
        self.waivers = WaiverAdjustmentProcessor(tolerance=tolerance)
        self.foreclosure = ForeclosureCalculator(
            quote_validity_hours=self.config.foreclosure_quote_validity_hours,
            tolerance=tolerance,
            state_machine=self.status_machine
        )
        self.restructurer = RestructureProcessor(self.schedule_builder, self.status_machine)
        self.late_fees = LateFeeProcessor()
        self.notifications = NotificationDispatcher(
            notifier or create_notifier(self.config.notification_webhook_url, self.config.notification_timeout),
            enabled=self.config.notifications_enabled
        )

    # Helpers

    def _now(self) -> datetime:
        return self._aware(self.clock())

    def _aware(self, value: Optional[datetime]) -> Optional[datetime]:
        """Treat naive datetimes as UTC"""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _parse(self, model_cls, request):
        if isinstance(request, model_cls):
            return request
        if isinstance(request, BaseModel):
            request = request.model_dump()
        try:
            return model_cls.model_validate(request)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid {model_cls.__name__}: {e}") from e

    def _finalize(self, ledger: LoanRepaymentLedger, at: datetime) -> bool:
        """Re-aggregate and re-derive status; True when the ledger just closed"""
        was_terminal = ledger.is_terminal
        self.aggregator.recompute(ledger, at.date())
        self.status_machine.refresh(ledger, at)
        return ledger.is_terminal and not was_terminal

    def _audit(
        self,
        mutation: LedgerMutation,
        event_type: AuditEventType,
        metadata: Dict[str, Any],
        user_id: Optional[str] = None
    ) -> None:
        if not self.config.enable_audit_logging:
            return
        ledger_id = mutation.ledger.id
        mutation.on_commit(lambda: self.audit_trail.log_event(
            event_type=event_type,
            entity_type="ledger",
            entity_id=ledger_id,
            metadata=metadata,
            user_id=user_id
        ))

    def _notify_closure(self, mutation: LedgerMutation) -> None:
        ledger = mutation.ledger
        mutation.after_commit(lambda: self.notifications.loan_closed(ledger))
        self._audit(mutation, AuditEventType.LEDGER_CLOSED, {
            "status": ledger.loan_repayment_status,
            "closure_date": ledger.actual_closure_date,
        })

    # Creation and queries

    @ledger_operation("create ledger")
    def create_ledger(self, product, disbursement) -> LoanRepaymentLedger:
        """
        Create the repayment ledger for a disbursed loan submission

        Args:
            product: LoanProductTerms of the approved product
            disbursement: DisbursementRequest for the submission

        Returns:
            The persisted ledger with its full schedule

        Raises:
            ValidationError: Bad payload or amount outside the product's bounds
            InvalidTermsError: Terms that cannot be amortized
            StateConflictError: A ledger already exists for the submission
        """
        product = self._parse(LoanProductTerms, product)
        disbursement = self._parse(DisbursementRequest, disbursement)

        amount = round_money(disbursement.disbursed_amount)
        if product.min_principal is not None and amount < product.min_principal:
            raise ValidationError(f"Disbursed amount {amount} is below the product minimum {product.min_principal}")
        if product.max_principal is not None and amount > product.max_principal:
            raise ValidationError(f"Disbursed amount {amount} exceeds the product maximum {product.max_principal}")
        currency_code = product.currency or self.config.currency
        try:
            currency = Currency[currency_code.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency {currency_code}")

        repayment_start = disbursement.repayment_start_date or add_months(disbursement.disbursement_date, 1)
        if repayment_start < disbursement.disbursement_date:
            raise ValidationError("Repayment start date cannot be before the disbursement date")

        installments = self.schedule_builder.build(
            amount, product.interest_rate_pa, product.tenure_months, repayment_start
        )
        emi = self.schedule_builder.calculate_emi(amount, product.interest_rate_pa, product.tenure_months)

        now = self._now()
        ledger = LoanRepaymentLedger(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_submission_id=disbursement.loan_submission_id,
            loan_product_id=product.loan_product_id,
            user_id=disbursement.user_id,
            currency=currency,
            disbursed_amount=amount,
            agreed_interest_rate_pa=product.interest_rate_pa,
            original_tenure_months=product.tenure_months,
            initial_calculated_emi=emi,
            disbursement_date=disbursement.disbursement_date,
            repayment_start_date=repayment_start,
            original_expected_closure_date=self.schedule_builder.expected_closure_date(
                repayment_start, product.tenure_months
            ),
            processing_fee_paid=product.processing_fee,
            penalty_configuration=product.penalty.to_config(),
            prepayment_configuration=product.prepayment.to_config(),
            scheduled_installments=installments,
        )
        self._finalize(ledger, now)

        with self.storage.atomic():
            if self.repository.get_by_submission(ledger.loan_submission_id) is not None:
                raise StateConflictError(
                    f"A repayment ledger already exists for submission {ledger.loan_submission_id}"
                )
            self.repository.insert(ledger)
            if self.config.enable_audit_logging:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LEDGER_CREATED,
                    entity_type="ledger",
                    entity_id=ledger.id,
                    metadata={
                        "loan_submission_id": ledger.loan_submission_id,
                        "disbursed_amount": Money(amount, currency).to_string(),
                        "interest_rate_pa": product.interest_rate_pa,
                        "tenure_months": product.tenure_months,
                        "emi": emi,
                    },
                    user_id=ledger.user_id
                )

        log_action(
            logger, "info", "Repayment ledger created",
            user_id=ledger.user_id, action="create_ledger", resource=f"ledger:{ledger.id}",
            extra={"emi": str(emi), "installments": len(installments)}
        )
        self.notifications.notify(
            NotificationType.LEDGER_CREATED, ledger,
            "Your repayment schedule",
            f"Your EMI is {Money(emi, currency).to_string()} for {product.tenure_months} months, "
            f"first due on {repayment_start.isoformat()}.",
            emi=emi,
        )
        return ledger

    @ledger_operation("get ledger")
    def get_ledger(self, ledger_id: str) -> LoanRepaymentLedger:
        return self.repository.require(ledger_id)

    @ledger_operation("get ledger by submission")
    def get_ledger_by_submission(self, loan_submission_id: str) -> LoanRepaymentLedger:
        ledger = self.repository.get_by_submission(loan_submission_id)
        if ledger is None:
            raise NotFoundError(f"No repayment ledger for submission {loan_submission_id}")
        return ledger

    @ledger_operation("get ledgers for user")
    def get_ledgers_for_user(self, user_id: str) -> List[LoanRepaymentLedger]:
        return self.repository.find(user_id=user_id)

    @ledger_operation("list ledgers")
    def list_ledgers(
        self,
        status: Optional[LedgerStatus] = None,
        user_id: Optional[str] = None,
        loan_product_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True
    ) -> List[LoanRepaymentLedger]:
        """
        Admin listing: filter, sort (newest first by default) and page

        Raises:
            ValidationError: Unknown status or sort field, bad limit/offset
        """
        filters: Dict[str, Any] = {}
        if status is not None:
            if not isinstance(status, LedgerStatus):
                try:
                    status = LedgerStatus(status)
                except ValueError:
                    raise ValidationError(f"Unknown ledger status {status!r}")
            filters['loan_repayment_status'] = status
        if user_id:
            filters['user_id'] = user_id
        if loan_product_id:
            filters['loan_product_id'] = loan_product_id

        if sort_by not in SORTABLE_LEDGER_FIELDS:
            raise ValidationError(
                f"Cannot sort by {sort_by!r}; choose one of {', '.join(SORTABLE_LEDGER_FIELDS)}"
            )
        if offset < 0 or (limit is not None and limit < 1):
            raise ValidationError(f"Invalid page: limit={limit}, offset={offset}")

        ledgers = self.repository.find(**filters)
        # None sorts after every value, in either direction
        present = [ledger for ledger in ledgers if getattr(ledger, sort_by) is not None]
        missing = [ledger for ledger in ledgers if getattr(ledger, sort_by) is None]
        present.sort(key=lambda ledger: getattr(ledger, sort_by), reverse=descending)
        ordered = present + missing

        end = offset + limit if limit is not None else None
        return ordered[offset:end]

    @ledger_operation("get audit history")
    def get_audit_history(self, ledger_id: str) -> List[AuditEvent]:
        return self.audit_trail.get_events_for_entity("ledger", ledger_id)

    # Money movements

    @ledger_operation("make payment")
    def make_payment(self, ledger_id: str, request) -> PaymentTransaction:
        """
        Apply a borrower payment through the waterfall

        Raises:
            ValidationError: Non-positive amount or bad payload
            NotFoundError: Unknown ledger
            StateConflictError: Ledger closed or payment exceeds the remaining dues
        """
        request = self._parse(PaymentRequest, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            transaction = self.allocation.apply_payment(
                ledger,
                request.amount,
                request.payment_method,
                reference_id=request.reference_id,
                payment_date=self._aware(request.payment_date) or now,
                processed_by=request.processed_by,
                notes=request.notes,
            )
            closed = self._finalize(ledger, now)

            self._audit(mutation, AuditEventType.PAYMENT_APPLIED, {
                "transaction_id": transaction.id,
                "amount": transaction.amount_received,
                "principal": transaction.principal_component,
                "interest": transaction.interest_component,
                "penalty": transaction.penalty_component,
                "unallocated": transaction.unallocated_amount,
                "outstanding_principal": ledger.current_outstanding_principal,
            }, user_id=request.processed_by or ledger.user_id)
            mutation.after_commit(lambda: self.notifications.payment_received(ledger, transaction.amount_received))
            if closed:
                self._notify_closure(mutation)

        log_action(
            logger, "info", "Payment applied",
            user_id=request.processed_by, action="make_payment", resource=f"ledger:{ledger_id}",
            extra={"transaction_id": transaction.id, "amount": str(transaction.amount_received)}
        )
        return transaction

    @ledger_operation("foreclosure quote")
    def get_foreclosure_quote(self, ledger_id: str) -> ForeclosureQuote:
        """Quote early settlement as of now; nothing is persisted"""
        now = self._now()
        ledger = self.repository.require(ledger_id)
        self.aggregator.recompute(ledger, now.date())
        quote = self.foreclosure.quote(ledger, now)
        logger.info(f"Foreclosure quote for ledger {ledger_id}: {quote.total_amount}")
        return quote

    @ledger_operation("confirm foreclosure")
    def confirm_foreclosure(self, ledger_id: str, request) -> Tuple[PaymentTransaction, ForeclosureQuote]:
        """
        Settle the loan in full and close it as Foreclosed

        Returns:
            Tuple of (cleared transaction, quote it was settled against)
        """
        request = self._parse(ForeclosureRequest, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            self.aggregator.recompute(ledger, now.date())
            transaction, quote = self.foreclosure.confirm(
                ledger,
                request.amount,
                request.payment_method,
                now=now,
                reference_id=request.reference_id,
                processed_by=request.processed_by,
                notes=request.notes,
            )
            self._finalize(ledger, now)

            self._audit(mutation, AuditEventType.FORECLOSURE_CONFIRMED, {
                "transaction_id": transaction.id,
                "amount": transaction.amount_received,
                "outstanding_principal": quote.outstanding_principal,
                "accrued_interest": quote.accrued_interest,
                "fee": transaction.fee_component,
            }, user_id=request.processed_by)
            mutation.after_commit(lambda: self.notifications.notify(
                NotificationType.FORECLOSURE_CONFIRMED, ledger,
                "Loan foreclosed",
                f"Your loan has been foreclosed for "
                f"{Money(transaction.amount_received, ledger.currency).to_string()}.",
                amount=transaction.amount_received,
            ))

        log_action(
            logger, "info", "Ledger foreclosed",
            user_id=request.processed_by, action="confirm_foreclosure", resource=f"ledger:{ledger_id}",
            extra={"amount": str(transaction.amount_received), "fee": str(transaction.fee_component)}
        )
        return transaction, quote

    @ledger_operation("record admin transaction")
    def record_admin_transaction(self, ledger_id: str, request) -> PaymentTransaction:
        """Record an operator-entered transaction; only cleared ones move money"""
        request = self._parse(AdminTransactionRequest, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            transaction = self.allocation.record_admin_transaction(
                ledger,
                request.amount,
                request.payment_method,
                status=request.status,
                transaction_date=self._aware(request.transaction_date) or now,
                principal_component=request.principal_component,
                interest_component=request.interest_component,
                penalty_component=request.penalty_component,
                reference_id=request.reference_id,
                notes=request.notes,
                processed_by=request.processed_by,
                created_by_type=request.created_by_type,
            )
            closed = self._finalize(ledger, now)

            self._audit(mutation, AuditEventType.ADMIN_TRANSACTION_RECORDED, {
                "transaction_id": transaction.id,
                "amount": transaction.amount_received,
                "status": transaction.status,
                "principal": transaction.principal_component,
                "interest": transaction.interest_component,
                "penalty": transaction.penalty_component,
            }, user_id=request.processed_by)
            if closed:
                self._notify_closure(mutation)

        return transaction

    @ledger_operation("update transaction status")
    def update_transaction_status(self, ledger_id: str, request) -> PaymentTransaction:
        """Confirm, fail or cancel a pending transaction"""
        request = self._parse(TransactionStatusUpdate, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            previous = ledger.get_transaction(request.transaction_id)
            previous_status = previous.status if previous else None
            transaction = self.allocation.confirm_pending_transaction(
                ledger,
                request.transaction_id,
                request.status,
                reason=request.reason,
                processed_by=request.processed_by,
            )
            closed = self._finalize(ledger, now)

            self._audit(mutation, AuditEventType.TRANSACTION_STATUS_CHANGED, {
                "transaction_id": transaction.id,
                "from_status": previous_status,
                "to_status": transaction.status,
                "reason": request.reason,
            }, user_id=request.processed_by)
            if transaction.status == TransactionStatus.CLEARED:
                mutation.after_commit(
                    lambda: self.notifications.payment_received(ledger, transaction.amount_received)
                )
            if closed:
                self._notify_closure(mutation)

        return transaction

    # Adjustments

    @ledger_operation("waive installment")
    def waive_installment(self, ledger_id: str, request) -> WaiverEvent:
        """Waive principal, interest and/or penalty on one installment"""
        request = self._parse(WaiverRequest, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            event = self.waivers.waive_installment(
                ledger,
                request.installment_number,
                principal=request.principal,
                interest=request.interest,
                penalty=request.penalty,
                notes=request.notes,
                applied_by=request.applied_by,
                waiver_scheme_id=request.waiver_scheme_id,
                waiver_submission_id=request.waiver_submission_id,
                applied_at=now,
            )
            closed = self._finalize(ledger, now)

            self._audit(mutation, AuditEventType.WAIVER_APPLIED, {
                "installment_number": event.installment_number,
                "principal": event.principal_waived,
                "interest": event.interest_waived,
                "penalty": event.penalty_waived,
                "waiver_scheme_id": event.waiver_scheme_id,
                "waiver_submission_id": event.waiver_submission_id,
            }, user_id=request.applied_by)
            mutation.after_commit(lambda: self.notifications.notify(
                NotificationType.WAIVER_APPLIED, ledger,
                "Waiver applied",
                f"A waiver of {Money(event.total, ledger.currency).to_string()} was applied to "
                f"installment {event.installment_number}.",
                installment_number=event.installment_number,
            ))
            if closed:
                self._notify_closure(mutation)

        return event

    @ledger_operation("apply scheme waiver")
    def apply_scheme_waiver(self, ledger_id: str, request) -> List[WaiverEvent]:
        """
        Apply an approved waiver scheme: a percentage of interest on every
        installment that is still pending as of now
        """
        request = self._parse(SchemeWaiverRequest, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            self.aggregator.recompute(ledger, now.date())
            events = self.waivers.apply_scheme_waiver(
                ledger,
                request.percentage,
                waiver_scheme_id=request.waiver_scheme_id,
                waiver_submission_id=request.waiver_submission_id,
                applied_by=request.applied_by,
                applied_at=now,
            )
            closed = self._finalize(ledger, now)
            total = sum((event.interest_waived for event in events), ZERO)

            self._audit(mutation, AuditEventType.WAIVER_APPLIED, {
                "percentage": request.percentage,
                "installments": [event.installment_number for event in events],
                "interest": total,
                "waiver_scheme_id": request.waiver_scheme_id,
                "waiver_submission_id": request.waiver_submission_id,
            }, user_id=request.applied_by)
            mutation.after_commit(lambda: self.notifications.notify(
                NotificationType.WAIVER_APPLIED, ledger,
                "Waiver applied",
                f"Interest of {Money(total, ledger.currency).to_string()} was waived across "
                f"{len(events)} upcoming installments.",
                waiver_scheme_id=request.waiver_scheme_id,
            ))
            if closed:
                self._notify_closure(mutation)

        log_action(
            logger, "info", "Scheme waiver applied",
            user_id=request.applied_by, action="apply_scheme_waiver", resource=f"ledger:{ledger_id}",
            extra={"installments": len(events), "interest": str(total)}
        )
        return events

    @ledger_operation("restructure")
    def restructure(self, ledger_id: str, request) -> RestructureEvent:
        """Re-amortize the untouched tail of the schedule with new terms"""
        request = self._parse(RestructureRequest, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            event = self.restructurer.restructure(
                ledger,
                request.reason,
                approved_by=request.approved_by,
                new_interest_rate_pa=request.new_interest_rate_pa,
                new_tenure_months=request.new_tenure_months,
                effective_from_installment=request.effective_from_installment,
                notes=request.notes,
                at=now,
            )
            self._finalize(ledger, now)

            self._audit(mutation, AuditEventType.LEDGER_RESTRUCTURED, {
                "reason": event.reason,
                "effective_from_installment": event.effective_from_installment,
                "previous_terms": event.previous_terms,
                "new_terms": event.new_terms,
            }, user_id=request.approved_by)
            mutation.after_commit(lambda: self.notifications.notify(
                NotificationType.LOAN_RESTRUCTURED, ledger,
                "Loan restructured",
                f"Your new EMI is {Money(ledger.current_emi, ledger.currency).to_string()} from "
                f"installment {event.effective_from_installment}.",
                emi=ledger.current_emi,
            ))

        return event

    @ledger_operation("apply late fees")
    def apply_late_fees(self, ledger_id: str, as_of: Optional[date] = None) -> int:
        """Levy late fees on installments overdue beyond grace; returns the count charged"""
        now = self._now()
        as_of = as_of or now.date()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            charged = self.late_fees.apply_late_fees(ledger, as_of)
            self._finalize(ledger, now)
            if charged:
                self._audit(mutation, AuditEventType.LATE_FEES_APPLIED, {
                    "installments_charged": charged,
                    "as_of": as_of,
                    "total_penalties_levied": ledger.total_penalties_levied,
                })

        return charged

    @ledger_operation("process overdue ledgers")
    def process_overdue_ledgers(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """
        Daily batch: levy late fees and refresh every open ledger

        Returns:
            Counts of ledgers processed, ledgers charged and ledgers overdue
        """
        results = {'processed': 0, 'charged': 0, 'overdue': 0}
        for ledger in self.repository.find():
            if ledger.is_terminal:
                continue
            if self.apply_late_fees(ledger.id, as_of):
                results['charged'] += 1
            refreshed = self.refresh(ledger.id, as_of)
            results['processed'] += 1
            if refreshed.days_past_due > 0:
                results['overdue'] += 1

        logger.info(f"Overdue processing complete: {results}")
        return results

    # Status

    @ledger_operation("update status")
    def update_status(self, ledger_id: str, request) -> StatusChange:
        """
        Privileged status override

        Raises:
            ValidationError: Missing actor or reason
        """
        request = self._parse(StatusOverrideRequest, request)
        now = self._now()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            self.aggregator.recompute(ledger, now.date())
            change = self.status_machine.override(
                ledger,
                request.status,
                actor=request.actor,
                reason=request.reason,
                write_off_amount=request.write_off_amount,
                at=now,
            )
            self.aggregator.recompute(ledger, now.date())

            self._audit(mutation, AuditEventType.STATUS_OVERRIDDEN, {
                "from_status": change.from_status,
                "to_status": change.to_status,
                "reason": change.reason,
            }, user_id=request.actor)
            if request.status == LedgerStatus.WRITE_OFF:
                self._audit(mutation, AuditEventType.LEDGER_WRITTEN_OFF, {
                    "amount": ledger.write_off_details.amount,
                    "reason": request.reason,
                }, user_id=request.actor)
            mutation.after_commit(lambda: self.notifications.notify(
                NotificationType.STATUS_CHANGED, ledger,
                "Loan status updated",
                f"Your loan status is now {change.to_status.value}.",
                status=change.to_status.value,
            ))

        log_action(
            logger, "warning", "Ledger status overridden",
            user_id=request.actor, action="update_status", resource=f"ledger:{ledger_id}",
            extra={"from": change.from_status.value, "to": change.to_status.value, "reason": change.reason}
        )
        return change

    @ledger_operation("refresh")
    def refresh(self, ledger_id: str, as_of: Optional[date] = None) -> LoanRepaymentLedger:
        """Re-run aggregation and status derivation as of a date"""
        now = self._now()
        as_of = as_of or now.date()

        with self.repository.mutate(ledger_id) as mutation:
            ledger = mutation.ledger
            previous_status = ledger.loan_repayment_status
            self.aggregator.recompute(ledger, as_of)
            self.status_machine.refresh(ledger, now)
            if ledger.loan_repayment_status != previous_status:
                self._audit(mutation, AuditEventType.LEDGER_REFRESHED, {
                    "as_of": as_of,
                    "from_status": previous_status,
                    "to_status": ledger.loan_repayment_status,
                    "days_past_due": ledger.days_past_due,
                })
                if ledger.is_terminal:
                    self._notify_closure(mutation)

        return ledger

    # Servicing records

    @ledger_operation("add internal note")
    def add_internal_note(self, ledger_id: str, request) -> InternalNote:
        request = self._parse(InternalNoteRequest, request)

        with self.repository.mutate(ledger_id) as mutation:
            note = InternalNote(note_date=self._now(), text=request.text, added_by=request.added_by)
            mutation.ledger.internal_notes.append(note)
            self._audit(mutation, AuditEventType.INTERNAL_NOTE_ADDED, {"text": request.text},
                        user_id=request.added_by)

        return note

    @ledger_operation("add communication log")
    def add_communication_log(self, ledger_id: str, request) -> CommunicationLogEntry:
        request = self._parse(CommunicationLogRequest, request)

        with self.repository.mutate(ledger_id) as mutation:
            entry = CommunicationLogEntry(
                log_date=self._now(),
                type=request.type,
                summary=request.summary,
                subject=request.subject,
                recipient=request.recipient,
                sent_by=request.sent_by,
                status=request.status,
            )
            mutation.ledger.communication_log.append(entry)
            self._audit(mutation, AuditEventType.COMMUNICATION_LOGGED, {
                "type": request.type,
                "summary": request.summary,
            }, user_id=request.sent_by)

        return entry


def create_service(
    config: Optional[LedgerConfig] = None,
    storage: Optional[StorageInterface] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Callable[[], datetime]] = None
) -> LedgerService:
    """Configure engine logging from the config, then build the service"""
    config = config or get_config()
    configure_logging(config)
    return LedgerService(storage=storage, config=config, notifier=notifier, clock=clock)
