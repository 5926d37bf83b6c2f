"""
Tests for the transaction service: creation, editing, deletion and the
non-negative balance invariant
"""

import pytest
import tempfile
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from cycle_ledger.config import LedgerConfig
from cycle_ledger.currency import Currency
from cycle_ledger.errors import (
    ImmutabilityError, InsufficientBalanceError, NotFoundError, SettlementEndpointError,
    ValidationError,
)
from cycle_ledger.ledger import TransactionType
from cycle_ledger.storage import InMemoryStorage, SQLiteStorage
from cycle_ledger.system import LedgerSystem
from cycle_ledger.transactions import (
    BalanceCorrectionInput, BuyInput, Counterparty, SellInput, SettlementInput,
)


def deposit(cycle, amount, occurred_at=None):
    return BalanceCorrectionInput(
        cycle=cycle,
        transaction_type=TransactionType.DEPOSIT_BALANCE_CORRECTION,
        amount=amount,
        occurred_at=occurred_at,
    )


def withdraw(cycle, amount, occurred_at=None):
    return BalanceCorrectionInput(
        cycle=cycle,
        transaction_type=TransactionType.WITHDRAW_BALANCE_CORRECTION,
        amount=amount,
        occurred_at=occurred_at,
    )


class LedgerTestCase:
    """Fresh in-memory ledger per test"""

    def make_storage(self):
        return InMemoryStorage()

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = LedgerConfig(
            database_url="memory://",
            upload_dir=str(Path(self.temp_dir.name) / "uploads"),
        )
        self.storage = self.make_storage()
        self.system = LedgerSystem(storage=self.storage, config=self.config)
        self.service = self.system.transaction_service
        self.cycles = self.system.cycle_manager

    def teardown_method(self):
        self.system.close()
        self.temp_dir.cleanup()

    def balance(self, name):
        cycle = self.cycles.get_cycle_by_name(name)
        return self.cycles.get_cycle_balance(cycle.id)

    def count(self):
        return len(self.service.list_transactions())


class TestBuyAndSell(LedgerTestCase):
    """BUY and SELL creation"""

    def test_try_buy_creates_cycle(self):
        transaction = self.service.create_transaction(BuyInput(
            cycle="  Loop 1 ",
            transaction_value="3000",
            transaction_currency="TRY",
            amount_received="100",
        ))

        cycle = self.cycles.get_cycle_by_name("Loop 1")
        assert cycle is not None
        assert transaction.cycle_id == cycle.id
        assert transaction.transaction_type == TransactionType.BUY
        assert transaction.received_currency == Currency.TRY
        assert transaction.effective_rate_try == Decimal("30")
        assert self.balance("Loop 1") == Decimal("100")

    def test_usd_buy_without_rate_is_rejected(self):
        with pytest.raises(ValidationError):
            self.service.create_transaction(BuyInput(
                cycle="Loop 1",
                transaction_value="100",
                transaction_currency="USD",
                amount_received="99",
            ))

        assert self.count() == 0
        assert self.cycles.list_cycles() == []

    def test_usd_buy_derives_commission(self):
        transaction = self.service.create_transaction(BuyInput(
            cycle="Loop 1",
            transaction_value="100",
            transaction_currency="USD",
            amount_received="99",
            usd_try_rate_at_buy="30",
        ))

        assert transaction.commission_percent == Decimal("1")
        assert transaction.effective_rate_try == Decimal("30")

    def test_sell_within_balance(self):
        self.service.create_transaction(deposit("Loop 1", "100"))
        sell = self.service.create_transaction(SellInput(
            cycle="Loop 1", amount_sold="40", price_per_unit="31",
        ))

        assert sell.amount_received == Decimal("1240")
        assert sell.price_per_unit == Decimal("31")
        assert sell.effective_rate_try == sell.price_per_unit
        assert self.balance("Loop 1") == Decimal("60")

    def test_sell_beyond_balance_is_rejected(self):
        self.service.create_transaction(deposit("Loop 1", "10"))

        with pytest.raises(InsufficientBalanceError, match="Sell amount"):
            self.service.create_transaction(SellInput(
                cycle="Loop 1", amount_sold="10.01", amount_received="300",
            ))
        assert self.count() == 1

    def test_recipient_institution_resolved_by_name(self):
        transaction = self.service.create_transaction(BuyInput(
            cycle="Loop 1",
            transaction_value="3000",
            transaction_currency="TRY",
            amount_received="100",
            counterparty=Counterparty(
                sender_name="  Alice ",
                recipient_institution=" Bank A ",
                recipient_iban="",
            ),
        ))

        institutions = self.system.institution_manager.list_institutions()
        assert [i.name for i in institutions] == ["Bank A"]
        assert transaction.recipient_institution_id == institutions[0].id
        assert transaction.sender_name == "Alice"
        assert transaction.recipient_iban is None

        view = self.service.to_view(transaction)
        assert view["recipient_institution"] == "Bank A"
        assert view["cycle"] == "Loop 1"
        assert view["type"] == "BUY"
        assert view["amount_received"] == "100"

    def test_invalid_occurred_at(self):
        with pytest.raises(ValidationError):
            self.service.create_transaction(deposit("Loop 1", "1", occurred_at="yesterday"))

    def test_list_is_chronological(self):
        self.service.create_transaction(deposit("Loop 1", "1", occurred_at="2024-03-01T00:00:00Z"))
        self.service.create_transaction(deposit("Loop 1", "2", occurred_at="2024-01-01T00:00:00Z"))
        self.service.create_transaction(deposit("Loop 2", "3", occurred_at="2024-02-01T00:00:00Z"))

        amounts = [t.amount_received for t in self.service.list_transactions()]
        assert amounts == [Decimal("2"), Decimal("3"), Decimal("1")]

        views = self.service.list_transaction_views()
        assert [v["cycle"] for v in views] == ["Loop 1", "Loop 2", "Loop 1"]


class TestBalanceCorrections(LedgerTestCase):
    """Manual corrections and the non-negative balance invariant"""

    def test_withdraw_exceeding_balance_is_rejected(self):
        self.service.create_transaction(deposit("Loop 1", "50"))

        with pytest.raises(InsufficientBalanceError) as exc_info:
            self.service.create_transaction(withdraw("Loop 1", "50.5"))

        assert "exceeds cycle balance" in exc_info.value.message
        assert self.count() == 1
        assert self.balance("Loop 1") == Decimal("50")

    def test_withdraw_entire_balance(self):
        self.service.create_transaction(deposit("Loop 1", "50"))
        self.service.create_transaction(withdraw("Loop 1", "50"))

        assert self.balance("Loop 1") == Decimal("0")

    def test_correction_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            self.service.create_transaction(deposit("Loop 1", "0"))

    def test_correction_type_checked(self):
        with pytest.raises(ValidationError):
            BalanceCorrectionInput(cycle="Loop 1", transaction_type="BUY", amount="1")


class TestSettlements(LedgerTestCase):
    """Cycle settlements"""

    def test_settlement_creates_two_legs(self):
        self.service.create_transaction(deposit("A", "100"))

        debit, credit = self.service.create_transaction(
            SettlementInput(from_cycle="A", to_cycle="B", amount="40")
        )

        assert debit.amount_sold == credit.amount_received == Decimal("40")
        assert debit.amount_received == Decimal("0")
        assert credit.amount_sold is None
        assert debit.settlement_id == credit.settlement_id
        assert debit.occurred_at == credit.occurred_at
        assert debit.created_at == credit.created_at
        assert self.balance("A") == Decimal("60")
        assert self.balance("B") == Decimal("40")

    def test_insufficient_settlement_writes_nothing(self):
        self.service.create_transaction(deposit("A", "10"))

        with pytest.raises(InsufficientBalanceError, match="Settlement amount"):
            self.service.create_cycle_settlement(
                SettlementInput(from_cycle="A", to_cycle="B", amount="10.5")
            )
        assert self.count() == 1

    def test_identical_endpoints(self):
        with pytest.raises(SettlementEndpointError):
            self.service.create_cycle_settlement(
                SettlementInput(from_cycle="A", to_cycle=" A ", amount="1")
            )

    def test_failure_between_legs_rolls_back(self, monkeypatch):
        self.service.create_transaction(deposit("A", "100"))
        original_save = self.service.repository.save
        calls = []

        def failing_save(transaction):
            calls.append(transaction)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            original_save(transaction)

        monkeypatch.setattr(self.service.repository, "save", failing_save)

        with pytest.raises(RuntimeError):
            self.service.create_cycle_settlement(
                SettlementInput(from_cycle="A", to_cycle="B", amount="40")
            )

        monkeypatch.undo()
        assert self.count() == 1
        assert self.balance("A") == Decimal("100")

    def test_settlement_legs_are_immutable(self):
        self.service.create_transaction(deposit("A", "100"))
        debit, _ = self.service.create_cycle_settlement(
            SettlementInput(from_cycle="A", to_cycle="B", amount="40")
        )

        with pytest.raises(ImmutabilityError):
            self.service.update_transaction(debit.id, deposit("A", "1"))

    def test_update_cannot_create_settlement(self):
        created = self.service.create_transaction(deposit("A", "100"))

        with pytest.raises(ValidationError):
            self.service.update_transaction(
                created.id, SettlementInput(from_cycle="A", to_cycle="B", amount="1")
            )

    def test_deleting_one_leg_keeps_the_other(self):
        self.service.create_transaction(deposit("A", "100"))
        debit, credit = self.service.create_cycle_settlement(
            SettlementInput(from_cycle="A", to_cycle="B", amount="40")
        )

        result = self.service.delete_transaction(debit.id)

        assert result == {"success": True, "deleted_transaction_id": debit.id}
        assert self.service.get_transaction(credit.id) is not None
        assert self.balance("A") == Decimal("100")


class TestUpdates(LedgerTestCase):
    """Editing transactions"""

    def test_update_keeps_identity(self):
        created = self.service.create_transaction(deposit("A", "10"))

        updated = self.service.update_transaction(created.id, BuyInput(
            cycle="A",
            transaction_value="600",
            transaction_currency="TRY",
            amount_received="20",
        ))

        assert updated.id == created.id
        assert updated.created_at == created.created_at
        assert updated.occurred_at == created.occurred_at
        assert updated.transaction_type == TransactionType.BUY
        assert self.count() == 1
        assert self.balance("A") == Decimal("20")

    def test_withdraw_edit_excludes_itself(self):
        self.service.create_transaction(deposit("A", "100"))
        correction = self.service.create_transaction(withdraw("A", "50"))

        self.service.update_transaction(correction.id, withdraw("A", "100"))
        assert self.balance("A") == Decimal("0")

        with pytest.raises(InsufficientBalanceError):
            self.service.update_transaction(correction.id, withdraw("A", "100.01"))
        assert self.balance("A") == Decimal("0")

    def test_lowering_a_buy_below_later_sells(self):
        buy = self.service.create_transaction(BuyInput(
            cycle="A", transaction_value="3000", transaction_currency="TRY", amount_received="100",
        ))
        self.service.create_transaction(SellInput(cycle="A", amount_sold="80", price_per_unit="31"))

        with pytest.raises(InsufficientBalanceError):
            self.service.update_transaction(buy.id, BuyInput(
                cycle="A", transaction_value="1500", transaction_currency="TRY", amount_received="50",
            ))
        assert self.balance("A") == Decimal("20")

    def test_moving_a_buy_away(self):
        buy = self.service.create_transaction(deposit("A", "100"))
        self.service.create_transaction(withdraw("A", "60"))

        with pytest.raises(InsufficientBalanceError):
            self.service.update_transaction(buy.id, deposit("B", "100"))

        assert self.balance("A") == Decimal("40")
        assert self.cycles.get_cycle_by_name("B") is None

    def test_update_missing(self):
        with pytest.raises(NotFoundError):
            self.service.update_transaction("missing", deposit("A", "1"))

    def test_update_occurred_at(self):
        created = self.service.create_transaction(deposit("A", "1"))
        updated = self.service.update_transaction(
            created.id, deposit("A", "1", occurred_at="2023-05-06T07:08:09+00:00")
        )
        assert updated.occurred_at == datetime(2023, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


class TestDeletes(LedgerTestCase):

    def test_delete_missing(self):
        with pytest.raises(NotFoundError):
            self.service.delete_transaction("missing")

    def test_delete(self):
        created = self.service.create_transaction(deposit("A", "1"))
        self.service.delete_transaction(created.id)
        assert self.service.get_transaction(created.id) is None

    def test_delete_that_would_overdraw_is_rejected(self):
        buy = self.service.create_transaction(deposit("A", "100"))
        self.service.create_transaction(withdraw("A", "60"))

        with pytest.raises(InsufficientBalanceError, match="Delete would leave"):
            self.service.delete_transaction(buy.id)

        assert self.service.get_transaction(buy.id) is not None
        assert self.balance("A") == Decimal("40")

    def test_deleting_a_spent_settlement_credit(self):
        self.service.create_transaction(deposit("A", "10"))
        _, credit = self.service.create_cycle_settlement(
            SettlementInput(from_cycle="A", to_cycle="B", amount="10")
        )
        self.service.create_transaction(withdraw("B", "4"))

        with pytest.raises(InsufficientBalanceError):
            self.service.delete_transaction(credit.id)

        assert self.balance("B") == Decimal("6")
        assert len(self.service.list_transactions()) == 4


class TestSQLiteLedger(TestSettlements):
    """Settlement and concurrency behaviour on the SQLite backend"""

    def make_storage(self):
        self.db_dir = tempfile.TemporaryDirectory()
        return SQLiteStorage(Path(self.db_dir.name) / "ledger.db")

    def teardown_method(self):
        super().teardown_method()
        self.db_dir.cleanup()

    def test_round_trips_decimals(self):
        created = self.service.create_transaction(deposit("A", "0.123456789012345678901234567"))
        loaded = self.service.get_transaction(created.id)
        assert loaded.amount_received == Decimal("0.123456789012345678901234567")

    def test_concurrent_withdrawals_across_connections(self):
        self.service.create_transaction(deposit("A", "10"))
        db_path = Path(self.db_dir.name) / "ledger.db"
        workers = 6
        barrier = threading.Barrier(workers)
        outcomes = []
        systems = [
            LedgerSystem(storage=SQLiteStorage(db_path), config=self.config)
            for _ in range(workers)
        ]

        def withdraw_six(system):
            barrier.wait()
            try:
                system.transaction_service.create_transaction(withdraw("A", "6"))
                outcomes.append("ok")
            except InsufficientBalanceError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=withdraw_six, args=(system,)) for system in systems]
        try:
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        finally:
            for system in systems:
                system.close()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == workers - 1
        assert self.balance("A") == Decimal("4")
