"""
Tests for storage backends, transaction support and the record codec
"""

import pytest
import tempfile
from decimal import Decimal
from datetime import datetime, timezone, date
from pathlib import Path
from typing import List, Optional

from repayment_ledger.currency import Currency
from repayment_ledger.models import (
    InstallmentStatus, LedgerStatus, LoanRepaymentLedger, PaymentMethod,
    PaymentTransaction, ScheduledInstallment, TransactionStatus, WriteOffDetails
)
from repayment_ledger.storage import (
    InMemoryStorage, SQLiteStorage, create_storage, decode_value, encode_value
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


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
        disbursed_amount=Decimal("12000.00"),
        agreed_interest_rate_pa=Decimal("0"),
        original_tenure_months=2,
        initial_calculated_emi=Decimal("6000.00"),
        disbursement_date=date(2024, 1, 1),
        repayment_start_date=date(2024, 2, 1),
        original_expected_closure_date=date(2024, 3, 1),
        scheduled_installments=[
            ScheduledInstallment(1, date(2024, 2, 1), Decimal("6000.00"), Decimal("0.00"), Decimal("6000.00"),
                                 principal_paid=Decimal("6000.00"), status=InstallmentStatus.PAID,
                                 last_payment_date=date(2024, 1, 30)),
            ScheduledInstallment(2, date(2024, 3, 1), Decimal("6000.00"), Decimal("0.00"), Decimal("6000.00")),
        ],
        payment_transactions=[
            PaymentTransaction(
                id="TXN001",
                transaction_date=datetime(2024, 1, 30, 8, 15, tzinfo=timezone.utc),
                amount_received=Decimal("6000.00"),
                payment_method=PaymentMethod.AUTO_DEBIT,
                principal_component=Decimal("6000.00"),
                status=TransactionStatus.CLEARED,
            )
        ],
        loan_repayment_status=LedgerStatus.ACTIVE_GRACE_PERIOD,
        write_off_details=WriteOffDetails(
            write_off_date=datetime(2024, 6, 1, tzinfo=timezone.utc),
            amount=Decimal("100.00"),
            reason="test",
            approved_by="ADMIN",
        ),
    )


class TestStorageInterface:
    """Test basic storage operations"""

    def test_in_memory_storage_basic_operations(self):
        """Test basic CRUD operations with InMemoryStorage"""
        storage = InMemoryStorage()

        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data

        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")

        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"id": "test_001"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        assert storage.count("test_table") == 2
        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

        storage.close()

    def test_in_memory_returns_copies(self):
        storage = InMemoryStorage()
        storage.save("test_table", "record_1", {"id": "record_1", "items": [1, 2]})

        loaded = storage.load("test_table", "record_1")
        loaded["items"].append(3)
        assert storage.load("test_table", "record_1")["items"] == [1, 2]

    def test_sqlite_storage_basic_operations(self):
        """Test basic CRUD operations with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)

            storage.save("test_table", "record_1", test_data)
            assert storage.load("test_table", "record_1") == test_data
            assert storage.exists("test_table", "record_1")

            storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
            assert storage.count("test_table") == 2
            assert len(storage.find("test_table", {"data": "test"})) == 1

            assert storage.delete("test_table", "record_2")
            assert storage.count("test_table") == 1

            storage.close()

    def test_sqlite_persists_across_connections(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"

            storage = SQLiteStorage(db_path)
            storage.save("test_table", "record_1", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("test_table", "record_1") == test_data
            reopened.close()


class TestTransactions:
    """Test atomic() commit and rollback"""

    @pytest.mark.parametrize("factory", [InMemoryStorage, SQLiteStorage])
    def test_atomic_commit(self, factory):
        storage = factory()

        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
            storage.save("test_table", "record_2", {"id": "record_2"})

        assert storage.count("test_table") == 2

    @pytest.mark.parametrize("factory", [InMemoryStorage, SQLiteStorage])
    def test_atomic_rollback(self, factory):
        storage = factory()
        storage.save("test_table", "record_1", {"id": "record_1", "value": "original"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("test_table", "record_1", {"id": "record_1", "value": "changed"})
                storage.save("test_table", "record_2", {"id": "record_2"})
                raise RuntimeError("boom")

        assert storage.load("test_table", "record_1")["value"] == "original"
        assert not storage.exists("test_table", "record_2")


class TestFind:
    """Test filtering on stored document fields"""

    @pytest.mark.parametrize("factory", [InMemoryStorage, SQLiteStorage])
    def test_all_filters_must_match(self, factory):
        storage = factory()
        storage.save("ledgers", "L1", {"id": "L1", "user_id": "U1", "loan_repayment_status": "Active - Current"})
        storage.save("ledgers", "L2", {"id": "L2", "user_id": "U1", "loan_repayment_status": "Fully Repaid"})
        storage.save("ledgers", "L3", {"id": "L3", "user_id": "U2", "loan_repayment_status": "Active - Current"})

        matches = storage.find("ledgers", {"user_id": "U1", "loan_repayment_status": "Active - Current"})
        assert [m["id"] for m in matches] == ["L1"]
        assert len(storage.find("ledgers", {})) == 3
        assert storage.find("ledgers", {"missing_key": "x"}) == []
        storage.close()

    def test_sqlite_rejects_unsafe_filter_keys(self):
        storage = SQLiteStorage()
        storage.save("ledgers", "L1", {"id": "L1"})

        with pytest.raises(ValueError):
            storage.find("ledgers", {"id') OR 1=1 --": "x"})
        storage.close()


class TestCreateStorage:
    """Test database URL handling"""

    def test_urls(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)
        assert isinstance(create_storage("sqlite:///:memory:"), SQLiteStorage)

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported"):
            create_storage("postgresql://localhost/ledger")


class TestRecordCodec:
    """Test encoding of ledger records to JSON-ready dictionaries"""

    def test_encode_scalars(self):
        assert encode_value(Decimal("10.50")) == "10.50"
        assert encode_value(date(2024, 2, 29)) == "2024-02-29"
        assert encode_value(Currency.JPY) == "JPY"
        assert encode_value(LedgerStatus.WRITE_OFF) == "Write-Off"

    def test_decode_optional_and_list(self):
        assert decode_value(Optional[Decimal], None) is None
        assert decode_value(Optional[Decimal], "1.10") == Decimal("1.10")
        assert decode_value(List[date], ["2024-01-31"]) == [date(2024, 1, 31)]
        assert decode_value(Currency, "USD") == Currency.USD

    def test_ledger_survives_storage(self):
        storage = InMemoryStorage()
        ledger = make_ledger()

        storage.save("repayment_ledgers", ledger.id, ledger.to_dict())
        restored = LoanRepaymentLedger.from_dict(storage.load("repayment_ledgers", ledger.id))

        assert restored == ledger
        assert restored.currency is Currency.INR
        assert restored.scheduled_installments[0].status == InstallmentStatus.PAID
        assert restored.payment_transactions[0].payment_method == PaymentMethod.AUTO_DEBIT
        assert restored.write_off_details.amount == Decimal("100.00")
        assert restored.current_interest_rate_pa == Decimal("0")

    def test_ledger_survives_sqlite(self):
        storage = SQLiteStorage()
        ledger = make_ledger()

        storage.save("repayment_ledgers", ledger.id, ledger.to_dict())
        restored = LoanRepaymentLedger.from_dict(storage.load("repayment_ledgers", ledger.id))

        assert restored == ledger
        storage.close()

    def test_unknown_keys_are_ignored(self):
        data = make_ledger().to_dict()
        data["legacy_field"] = "ignored"

        restored = LoanRepaymentLedger.from_dict(data)
        assert restored.id == "LEDGER001"
