"""
Tests for Notification Module

Tests message building, channel selection, webhook delivery and that a
failing channel is downgraded to a warning.
"""

import logging
import pytest
import requests
from datetime import datetime, timezone, date
from decimal import Decimal
from unittest.mock import MagicMock, patch

from repayment_ledger.currency import Currency
from repayment_ledger.models import LedgerStatus, LoanRepaymentLedger
from repayment_ledger.notifications import (
    LogNotifier,
    Notification,
    NotificationDispatcher,
    NotificationType,
    Notifier,
    WebhookNotifier,
    create_notifier,
)


class FailingNotifier(Notifier):
    """Channel that always raises"""

    def __init__(self):
        self.call_count = 0

    def send(self, notification: Notification) -> bool:
        self.call_count += 1
        raise ConnectionError("messaging service unavailable")


def make_ledger():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return LoanRepaymentLedger(
        id="LEDGER001",
        created_at=now,
        updated_at=now,
        loan_submission_id="SUB001",
        loan_product_id="PROD001",
        user_id="USER001",
        currency=Currency.INR,
        disbursed_amount=Decimal("120000"),
        agreed_interest_rate_pa=Decimal("12"),
        original_tenure_months=12,
        initial_calculated_emi=Decimal("10661.85"),
        disbursement_date=date(2024, 1, 1),
        repayment_start_date=date(2024, 2, 1),
        original_expected_closure_date=date(2025, 1, 1),
        current_outstanding_principal=Decimal("110538.15"),
    )


class TestNotificationDispatcher:
    """Test building and dispatching ledger messages"""

    def setup_method(self):
        self.notifier = LogNotifier()
        self.dispatcher = NotificationDispatcher(self.notifier)
        self.ledger = make_ledger()

    def test_payment_received(self):
        assert self.dispatcher.payment_received(self.ledger, Decimal("10661.85"))

        sent = self.notifier.sent[0]
        assert sent.notification_type == NotificationType.PAYMENT_RECEIVED
        assert sent.recipient_id == "USER001"
        assert sent.ledger_id == "LEDGER001"
        assert "INR 10,661.85" in sent.body
        assert "INR 110,538.15" in sent.body
        assert sent.metadata == {"amount": "10661.85"}

    def test_loan_closed(self):
        self.ledger.loan_repayment_status = LedgerStatus.FULLY_REPAID
        self.dispatcher.loan_closed(self.ledger)

        sent = self.notifier.sent[0]
        assert sent.notification_type == NotificationType.LOAN_CLOSED
        assert "Fully Repaid" in sent.body

    def test_disabled_dispatcher_sends_nothing(self):
        dispatcher = NotificationDispatcher(self.notifier, enabled=False)
        assert not dispatcher.payment_received(self.ledger, Decimal("1"))
        assert self.notifier.sent == []

    def test_failure_is_a_warning(self, caplog):
        failing = FailingNotifier()
        dispatcher = NotificationDispatcher(failing)

        with caplog.at_level(logging.WARNING, logger="repayment_ledger.notifications"):
            assert dispatcher.loan_closed(self.ledger) is False

        assert failing.call_count == 1
        assert "failed" in caplog.text

    def test_undelivered_is_a_warning(self, caplog):
        notifier = MagicMock(spec=Notifier)
        notifier.send.return_value = False
        dispatcher = NotificationDispatcher(notifier)

        with caplog.at_level(logging.WARNING, logger="repayment_ledger.notifications"):
            assert dispatcher.loan_closed(self.ledger) is False

        assert "not delivered" in caplog.text


class TestWebhookNotifier:
    """Test webhook delivery"""

    def setup_method(self):
        self.notification = Notification(
            notification_type=NotificationType.PAYMENT_RECEIVED,
            ledger_id="LEDGER001",
            recipient_id="USER001",
            subject="Payment received",
            body="Thanks",
            metadata={"amount": "100.00"},
        )

    def test_posts_payload(self):
        with patch("repayment_ledger.notifications.requests.post") as post:
            post.return_value = MagicMock(status_code=200)
            notifier = WebhookNotifier("https://messaging.example.com/hook", timeout=2.0)

            assert notifier.send(self.notification)

        args, kwargs = post.call_args
        assert args[0] == "https://messaging.example.com/hook"
        assert kwargs["timeout"] == 2.0
        assert kwargs["json"]["type"] == "payment_received"
        assert kwargs["json"]["ledger_id"] == "LEDGER001"
        assert kwargs["json"]["metadata"] == {"amount": "100.00"}

    def test_http_error_propagates_to_dispatcher(self):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("503 Service Unavailable")

        with patch("repayment_ledger.notifications.requests.post", return_value=response):
            notifier = WebhookNotifier("https://messaging.example.com/hook")
            with pytest.raises(requests.HTTPError):
                notifier.send(self.notification)

            assert NotificationDispatcher(notifier).dispatch(self.notification) is False


class TestCreateNotifier:
    """Test channel selection from configuration"""

    def test_log_channel_by_default(self):
        assert isinstance(create_notifier(""), LogNotifier)

    def test_webhook_channel(self):
        notifier = create_notifier("https://messaging.example.com/hook", timeout=3.0)
        assert isinstance(notifier, WebhookNotifier)
        assert notifier.timeout == 3.0
