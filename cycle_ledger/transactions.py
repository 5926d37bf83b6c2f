"""
Transaction Ledger Module

Records BUY, SELL, balance-correction and cycle-settlement transactions and
enforces the non-negative unit balance on every write that can lower one.

Every create, update and delete runs inside a single storage.atomic() scope
together with its balance check, so a concurrent writer cannot slip in
between the check and the write. A settlement writes its two legs in the same
scope: both are persisted or neither is.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union
import uuid

from .currency import LOCAL_CURRENCY, Currency, quantize_money
from .cycles import Cycle, CycleManager
from .errors import ImmutabilityError, NotFoundError, ValidationError
from .institutions import InstitutionManager
from .ledger import (
    BalanceChecker, TransactionType, derive_buy, derive_sell, unit_delta,
    validate_correction_amount, validate_settlement,
)
from .logging_config import get_logger, log_action
from .numeric import ZERO
from .storage import StorageInterface, StorageRecord, parse_timestamp, utc_now

COUNTERPARTY_MAX_LENGTH = 255

CORRECTION_TYPES = (
    TransactionType.DEPOSIT_BALANCE_CORRECTION,
    TransactionType.WITHDRAW_BALANCE_CORRECTION,
)

_DECIMAL_FIELDS = (
    'transaction_value', 'usd_try_rate_at_buy', 'amount_received', 'amount_sold',
    'price_per_unit', 'commission_percent', 'effective_rate_try',
)


def normalize_text(value: Optional[str], field_name: str) -> Optional[str]:
    """Trim optional free text; blank becomes None"""
    if value is None:
        return None
    clean_value = str(value).strip()
    if not clean_value:
        return None
    if len(clean_value) > COUNTERPARTY_MAX_LENGTH:
        raise ValidationError(
            f"{field_name} must be at most {COUNTERPARTY_MAX_LENGTH} characters",
            field=field_name
        )
    return clean_value


def resolve_occurred_at(value: Union[str, datetime, None],
                        default: Optional[datetime] = None) -> datetime:
    """Parse a client-supplied occurrence time, falling back to default or now"""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default or utc_now()
    try:
        return parse_timestamp(value)
    except ValueError:
        raise ValidationError(f"Invalid occurred_at timestamp '{value}'", field="occurred_at")


@dataclass
class Transaction(StorageRecord):
    """
    One ledger row

    amount_received is units for BUY and corrections, TRY for SELL, and the
    credited units on a settlement's destination leg. amount_sold is the
    debited units for SELL, withdraw corrections and a settlement's source leg.
    """
    cycle_id: str
    transaction_type: TransactionType
    occurred_at: datetime
    amount_received: Decimal
    received_currency: Currency = LOCAL_CURRENCY
    amount_sold: Optional[Decimal] = None
    transaction_value: Optional[Decimal] = None
    transaction_currency: Optional[Currency] = None
    usd_try_rate_at_buy: Optional[Decimal] = None
    price_per_unit: Optional[Decimal] = None
    commission_percent: Optional[Decimal] = None
    effective_rate_try: Optional[Decimal] = None
    sender_institution: Optional[str] = None
    sender_iban: Optional[str] = None
    sender_name: Optional[str] = None
    recipient_institution_id: Optional[str] = None
    recipient_iban: Optional[str] = None
    recipient_name: Optional[str] = None
    settlement_id: Optional[str] = None

    def __post_init__(self):
        if self.amount_received < ZERO:
            raise ValidationError("amount_received cannot be negative")
        if self.amount_sold is not None and self.amount_sold < ZERO:
            raise ValidationError("amount_sold cannot be negative")

    @property
    def is_settlement(self) -> bool:
        return self.transaction_type == TransactionType.CYCLE_SETTLEMENT

    @property
    def unit_delta(self) -> Decimal:
        """Effect of this row on its cycle's unit balance"""
        return unit_delta(self.transaction_type, self.amount_received, self.amount_sold)


@dataclass
class Counterparty:
    """Optional sender/recipient details attached to BUY and SELL"""
    sender_institution: Optional[str] = None
    sender_iban: Optional[str] = None
    sender_name: Optional[str] = None
    recipient_institution: Optional[str] = None
    recipient_iban: Optional[str] = None
    recipient_name: Optional[str] = None


@dataclass
class BuyInput:
    cycle: str
    transaction_value: Any
    transaction_currency: Any
    amount_received: Any
    usd_try_rate_at_buy: Any = None
    commission_percent: Any = None
    occurred_at: Union[str, datetime, None] = None
    counterparty: Counterparty = field(default_factory=Counterparty)


@dataclass
class SellInput:
    cycle: str
    amount_sold: Any
    amount_received: Any = None
    price_per_unit: Any = None
    commission_percent: Any = None
    occurred_at: Union[str, datetime, None] = None
    counterparty: Counterparty = field(default_factory=Counterparty)


@dataclass
class BalanceCorrectionInput:
    cycle: str
    transaction_type: TransactionType
    amount: Any
    occurred_at: Union[str, datetime, None] = None

    def __post_init__(self):
        if isinstance(self.transaction_type, str):
            try:
                self.transaction_type = TransactionType(self.transaction_type)
            except ValueError:
                raise ValidationError(
                    f"Invalid correction type '{self.transaction_type}'", field="type"
                )
        if self.transaction_type not in CORRECTION_TYPES:
            raise ValidationError(
                f"{self.transaction_type.value} is not a balance correction", field="type"
            )


@dataclass
class SettlementInput:
    from_cycle: str
    to_cycle: str
    amount: Any
    occurred_at: Union[str, datetime, None] = None


TransactionInput = Union[BuyInput, SellInput, BalanceCorrectionInput, SettlementInput]


class TransactionRepository:
    """Storage access for transaction rows"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def save(self, transaction: Transaction) -> None:
        self.storage.save(self.table_name, transaction.id, self.to_dict(transaction))

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return self._from_dict(data) if data else None

    def delete(self, transaction_id: str) -> bool:
        return self.storage.delete(self.table_name, transaction_id)

    def delete_for_cycle(self, cycle_id: str) -> int:
        return self.storage.delete_where(self.table_name, {"cycle_id": cycle_id})

    def list_all(self) -> List[Transaction]:
        """All transactions in chronological order"""
        return self._chronological(self.storage.load_all(self.table_name))

    def list_for_cycle(self, cycle_id: str) -> List[Transaction]:
        """One cycle's transactions in chronological order"""
        return self._chronological(self.storage.find(self.table_name, {"cycle_id": cycle_id}))

    def _chronological(self, rows: List[Dict[str, Any]]) -> List[Transaction]:
        transactions = [self._from_dict(row) for row in rows]
        return sorted(transactions, key=lambda t: (t.occurred_at, t.created_at))

    def to_dict(self, transaction: Transaction) -> Dict[str, Any]:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['transaction_type'] = transaction.transaction_type.value
        result['occurred_at'] = transaction.occurred_at.isoformat()
        result['received_currency'] = transaction.received_currency.code
        if transaction.transaction_currency:
            result['transaction_currency'] = transaction.transaction_currency.code
        return result

    def _from_dict(self, data: Dict[str, Any]) -> Transaction:
        """Convert dictionary to Transaction"""
        decimals = {
            name: Decimal(data[name]) if data.get(name) is not None else None
            for name in _DECIMAL_FIELDS
        }
        amount_received = decimals.pop('amount_received') or ZERO
        return Transaction(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            cycle_id=data['cycle_id'],
            transaction_type=TransactionType(data['transaction_type']),
            occurred_at=parse_timestamp(data['occurred_at']),
            received_currency=Currency.from_code(data.get('received_currency') or LOCAL_CURRENCY),
            transaction_currency=(
                Currency.from_code(data['transaction_currency'])
                if data.get('transaction_currency') else None
            ),
            amount_received=amount_received,
            sender_institution=data.get('sender_institution'),
            sender_iban=data.get('sender_iban'),
            sender_name=data.get('sender_name'),
            recipient_institution_id=data.get('recipient_institution_id'),
            recipient_iban=data.get('recipient_iban'),
            recipient_name=data.get('recipient_name'),
            settlement_id=data.get('settlement_id'),
            **decimals,
        )


class TransactionService:
    """
    Transaction Service

    Validates input, derives implicit fields, resolves cycles and recipient
    institutions by name, and applies the balance guard before persisting.
    """

    def __init__(
        self,
        storage: StorageInterface,
        repository: TransactionRepository,
        cycle_manager: CycleManager,
        institution_manager: InstitutionManager
    ):
        self.storage = storage
        self.repository = repository
        self.cycle_manager = cycle_manager
        self.institution_manager = institution_manager
        self.balance_checker = BalanceChecker(repository.list_for_cycle)
        self.logger = get_logger("cycle_ledger.transactions")

    def create_transaction(
        self, request: TransactionInput
    ) -> Union[Transaction, Tuple[Transaction, Transaction]]:
        """
        Create a transaction of any type

        Returns:
            The created Transaction, or (source leg, destination leg) for a
            settlement

        Raises:
            ValidationError: On invalid input (nothing is written)
            InsufficientBalanceError: If a debit exceeds the cycle balance
        """
        if isinstance(request, SettlementInput):
            return self.create_cycle_settlement(request)

        fields = self._derive_fields(request)
        occurred_at = resolve_occurred_at(request.occurred_at)
        now = utc_now()

        with self.storage.atomic():
            cycle = self.cycle_manager.get_or_create_cycle(request.cycle)
            fields.update(self._counterparty_fields(request))
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                cycle_id=cycle.id,
                occurred_at=occurred_at,
                **fields
            )
            self._guard_debit(transaction)
            self.repository.save(transaction)

        self._log_write("Created", "create_transaction", transaction, cycle)
        return transaction

    def create_cycle_settlement(self, request: SettlementInput) -> Tuple[Transaction, Transaction]:
        """
        Move units from one cycle to another as two linked rows

        The source leg debits amount via amount_sold, the destination leg
        credits it via amount_received. Both share occurred_at, created_at
        and settlement_id.
        """
        from_name, to_name, amount = validate_settlement(
            request.from_cycle, request.to_cycle, request.amount
        )
        occurred_at = resolve_occurred_at(request.occurred_at)
        now = utc_now()
        settlement_id = str(uuid.uuid4())

        with self.storage.atomic():
            source = self.cycle_manager.get_or_create_cycle(from_name)
            destination = self.cycle_manager.get_or_create_cycle(to_name)
            self.balance_checker.ensure_sufficient_balance(
                source.id, amount, operation="Settlement"
            )

            legs = (
                (source.id, ZERO, amount),
                (destination.id, amount, None),
            )
            debit, credit = [
                Transaction(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    cycle_id=cycle_id,
                    transaction_type=TransactionType.CYCLE_SETTLEMENT,
                    occurred_at=occurred_at,
                    amount_received=received,
                    amount_sold=sold,
                    settlement_id=settlement_id,
                )
                for cycle_id, received, sold in legs
            ]
            self.repository.save(debit)
            self.repository.save(credit)

        log_action(
            self.logger, "info",
            f"Settled {amount} units from '{from_name}' to '{to_name}'",
            action="create_cycle_settlement", resource=settlement_id,
            extra={"from_cycle_id": source.id, "to_cycle_id": destination.id}
        )
        return debit, credit

    def update_transaction(self, transaction_id: str, request: TransactionInput) -> Transaction:
        """
        Replace a transaction's fields, keeping its id and created_at

        The type may change. Settlement rows cannot be edited, and no row can
        be turned into a settlement. Any edit that lowers a cycle's balance is
        checked against that cycle's balance with this row excluded.
        """
        if isinstance(request, SettlementInput):
            raise ValidationError("Cycle settlements cannot be created by editing a transaction")

        fields = self._derive_fields(request)

        with self.storage.atomic():
            existing = self.repository.get(transaction_id)
            if not existing:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if existing.is_settlement:
                raise ImmutabilityError("Cycle settlement transactions cannot be edited")

            cycle = self.cycle_manager.get_or_create_cycle(request.cycle)
            fields.update(self._counterparty_fields(request))
            updated = Transaction(
                id=existing.id,
                created_at=existing.created_at,
                updated_at=utc_now(),
                cycle_id=cycle.id,
                occurred_at=resolve_occurred_at(request.occurred_at, default=existing.occurred_at),
                **fields
            )
            self._guard_debit(updated, exclude_transaction_id=existing.id)
            self._guard_edit(existing, updated)
            self.repository.save(updated)

        self._log_write("Updated", "update_transaction", updated, cycle)
        return updated

    def delete_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """
        Delete one transaction

        Deleting a settlement leg removes only that leg. A delete that would
        leave the cycle negative is rejected.
        """
        with self.storage.atomic():
            existing = self.repository.get(transaction_id)
            if not existing:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            self.balance_checker.ensure_removable(existing.cycle_id, existing.id)
            self.repository.delete(transaction_id)

        log_action(
            self.logger, "info", f"Deleted {existing.transaction_type.value} transaction",
            action="delete_transaction", resource=transaction_id,
            extra={"cycle_id": existing.cycle_id}
        )
        return {"success": True, "deleted_transaction_id": transaction_id}

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.repository.get(transaction_id)

    def list_transactions(self, cycle_id: Optional[str] = None) -> List[Transaction]:
        if cycle_id is not None:
            return self.repository.list_for_cycle(cycle_id)
        return self.repository.list_all()

    def to_view(self, transaction: Transaction,
                cycles: Optional[Dict[str, Cycle]] = None,
                institution_names: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Presentation dict: decimals as strings, cycle and institution names joined in"""
        if cycles is None:
            cycle = self.cycle_manager.get_cycle(transaction.cycle_id)
        else:
            cycle = cycles.get(transaction.cycle_id)

        recipient_institution = None
        if transaction.recipient_institution_id:
            if institution_names is None:
                institution = self.institution_manager.get_institution(
                    transaction.recipient_institution_id
                )
                recipient_institution = institution.name if institution else None
            else:
                recipient_institution = institution_names.get(transaction.recipient_institution_id)

        view = self.repository.to_dict(transaction)
        view['type'] = view.pop('transaction_type')
        view['cycle'] = cycle.name if cycle else None
        view['recipient_institution'] = recipient_institution
        view['unit_delta'] = str(transaction.unit_delta)
        return view

    def list_transaction_views(self, cycle_id: Optional[str] = None) -> List[Dict[str, Any]]:
        cycles = {cycle.id: cycle for cycle in self.cycle_manager.list_cycles()}
        institution_names = {
            institution.id: institution.name
            for institution in self.institution_manager.list_institutions()
        }
        return [
            self.to_view(transaction, cycles, institution_names)
            for transaction in self.list_transactions(cycle_id)
        ]

    def _derive_fields(self, request: TransactionInput) -> Dict[str, Any]:
        """Validate a non-settlement request and return its stored fields"""
        if isinstance(request, BuyInput):
            buy = derive_buy(
                request.transaction_value,
                request.transaction_currency,
                request.amount_received,
                request.usd_try_rate_at_buy,
                request.commission_percent,
            )
            return {
                'transaction_type': TransactionType.BUY,
                'transaction_value': buy.transaction_value,
                'transaction_currency': buy.transaction_currency,
                'usd_try_rate_at_buy': buy.usd_try_rate_at_buy,
                'amount_received': buy.amount_received,
                'commission_percent': buy.commission_percent,
                'effective_rate_try': buy.effective_rate_try,
            }

        if isinstance(request, SellInput):
            sell = derive_sell(
                request.amount_sold,
                request.amount_received,
                request.price_per_unit,
                request.commission_percent,
            )
            return {
                'transaction_type': TransactionType.SELL,
                'amount_sold': sell.amount_sold,
                'amount_received': sell.amount_received,
                'price_per_unit': sell.price_per_unit,
                'commission_percent': sell.commission_percent,
                'effective_rate_try': sell.price_per_unit,
            }

        if isinstance(request, BalanceCorrectionInput):
            amount = validate_correction_amount(request.amount)
            if request.transaction_type == TransactionType.DEPOSIT_BALANCE_CORRECTION:
                return {
                    'transaction_type': request.transaction_type,
                    'amount_received': amount,
                }
            return {
                'transaction_type': request.transaction_type,
                'amount_received': ZERO,
                'amount_sold': amount,
            }

        raise ValidationError(f"Unsupported transaction request {type(request).__name__}")

    def _counterparty_fields(self, request: TransactionInput) -> Dict[str, Any]:
        """Counterparty details; resolves the recipient institution by name"""
        counterparty = getattr(request, 'counterparty', None)
        if counterparty is None:
            return {}
        institution_name = normalize_text(
            counterparty.recipient_institution, "recipient_institution"
        )
        return {
            'sender_institution': normalize_text(counterparty.sender_institution, "sender_institution"),
            'sender_iban': normalize_text(counterparty.sender_iban, "sender_iban"),
            'sender_name': normalize_text(counterparty.sender_name, "sender_name"),
            'recipient_institution_id': self.institution_manager.resolve_institution_id(institution_name),
            'recipient_iban': normalize_text(counterparty.recipient_iban, "recipient_iban"),
            'recipient_name': normalize_text(counterparty.recipient_name, "recipient_name"),
        }

    def _guard_debit(self, transaction: Transaction,
                     exclude_transaction_id: Optional[str] = None) -> None:
        """SELL and withdraw corrections may not exceed the cycle balance"""
        if transaction.transaction_type == TransactionType.SELL:
            operation = "Sell"
        elif transaction.transaction_type == TransactionType.WITHDRAW_BALANCE_CORRECTION:
            operation = "Withdraw correction"
        else:
            return
        self.balance_checker.ensure_sufficient_balance(
            transaction.cycle_id,
            transaction.amount_sold,
            exclude_transaction_id=exclude_transaction_id,
            operation=operation
        )

    def _guard_edit(self, existing: Transaction, updated: Transaction) -> None:
        """An edit may not push any affected cycle below zero"""
        for cycle_id in dict.fromkeys((existing.cycle_id, updated.cycle_id)):
            before = self.balance_checker.cycle_balance(cycle_id)
            after = self.balance_checker.cycle_balance(cycle_id, exclude_transaction_id=existing.id)
            if updated.cycle_id == cycle_id:
                after += updated.unit_delta
            self.balance_checker.ensure_not_lowered_below_zero(cycle_id, before, after)

    def _log_write(self, verb: str, action: str, transaction: Transaction, cycle: Cycle) -> None:
        extra = {
            "cycle_id": cycle.id,
            "transaction_type": transaction.transaction_type.value,
            "unit_delta": str(transaction.unit_delta),
        }
        if transaction.transaction_value is not None and transaction.transaction_currency:
            extra["transaction_value"] = str(
                quantize_money(transaction.transaction_value, transaction.transaction_currency)
            )
        log_action(
            self.logger, "info",
            f"{verb} {transaction.transaction_type.value} transaction in cycle '{cycle.name}'",
            action=action, resource=transaction.id, extra=extra
        )
