"""
Notification Module

Borrower-facing messages emitted after a ledger mutation commits (payment
received, loan closed, foreclosure, waiver, status change). Delivery is
best effort: a failing channel is logged and never undoes the mutation.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid
import requests
from abc import ABC, abstractmethod

from .currency import Money
from .logging_config import get_logger
from .models import LoanRepaymentLedger


logger = get_logger("repayment_ledger.notifications")


class NotificationType(Enum):
    """Types of ledger notifications"""
    LEDGER_CREATED = "ledger_created"
    PAYMENT_RECEIVED = "payment_received"
    LOAN_CLOSED = "loan_closed"
    FORECLOSURE_CONFIRMED = "foreclosure_confirmed"
    WAIVER_APPLIED = "waiver_applied"
    LOAN_RESTRUCTURED = "loan_restructured"
    STATUS_CHANGED = "status_changed"


@dataclass
class Notification:
    """Single message for a borrower"""
    notification_type: NotificationType
    ledger_id: str
    recipient_id: str
    subject: str
    body: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    """Abstract base class for notification channels"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogNotifier(Notifier):
    """Logging channel for development and tests"""

    def __init__(self):
        self.sent: List[Notification] = []

    def send(self, notification: Notification) -> bool:
        """Log the notification instead of actually sending"""
        self.sent.append(notification)
        logger.info(
            f"{notification.notification_type.value} to {notification.recipient_id}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookNotifier(Notifier):
    """Webhook channel for the external messaging service"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "ledger_id": notification.ledger_id,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }

        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()
        return True


class NotificationDispatcher:
    """Builds ledger messages and hands them to a channel, downgrading failures to warnings"""

    def __init__(self, notifier: Optional[Notifier] = None, enabled: bool = True):
        self.notifier = notifier or LogNotifier()
        self.enabled = enabled

    def dispatch(self, notification: Notification) -> bool:
        if not self.enabled:
            return False
        try:
            delivered = self.notifier.send(notification)
        except Exception as e:
            logger.warning(
                f"Notification {notification.notification_type.value} for ledger "
                f"{notification.ledger_id} failed: {e}",
                exc_info=True
            )
            return False
        if not delivered:
            logger.warning(
                f"Notification {notification.notification_type.value} for ledger "
                f"{notification.ledger_id} was not delivered"
            )
        return delivered

    def notify(
        self,
        notification_type: NotificationType,
        ledger: LoanRepaymentLedger,
        subject: str,
        body: str,
        **metadata
    ) -> bool:
        return self.dispatch(Notification(
            notification_type=notification_type,
            ledger_id=ledger.id,
            recipient_id=ledger.user_id,
            subject=subject,
            body=body,
            metadata={key: str(value) for key, value in metadata.items()},
        ))

    def payment_received(self, ledger: LoanRepaymentLedger, amount) -> bool:
        money = Money(amount, ledger.currency)
        return self.notify(
            NotificationType.PAYMENT_RECEIVED, ledger,
            "Payment received",
            f"We received your payment of {money.to_string()}. "
            f"Outstanding principal: {Money(ledger.current_outstanding_principal, ledger.currency).to_string()}.",
            amount=amount,
        )

    def loan_closed(self, ledger: LoanRepaymentLedger) -> bool:
        return self.notify(
            NotificationType.LOAN_CLOSED, ledger,
            "Loan closed",
            f"Your loan has been closed with status {ledger.loan_repayment_status.value}.",
            status=ledger.loan_repayment_status.value,
        )


def create_notifier(webhook_url: str = "", timeout: float = 5.0) -> Notifier:
    """Webhook channel when a URL is configured, else log only"""
    if webhook_url:
        return WebhookNotifier(webhook_url, timeout=timeout)
    return LogNotifier()
