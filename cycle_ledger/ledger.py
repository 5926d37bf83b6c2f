"""
Ledger Invariant Engine

Derives the implicit fields of each transaction type (commission, gross and
net units, effective TRY rate, price per unit) and guards the one invariant
the ledger has: a cycle's unit balance never goes below zero.

Balances are never stored. They are folded from the cycle's transactions on
demand, through an accessor supplied by the caller, so the engine itself is
stateless with respect to storage.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple

from .currency import Currency, quantize_units
from .errors import InsufficientBalanceError, SettlementEndpointError, ValidationError
from .logging_config import get_logger, log_action
from .numeric import (
    BALANCE_EPSILON, HUNDRED, ONE, ZERO, parse_optional_percentage,
    parse_optional_positive, parse_positive, percent_to_ratio, safe_divide,
)

logger = get_logger("cycle_ledger.ledger")


class TransactionType(Enum):
    """Kinds of ledger transactions"""
    BUY = "BUY"                                                  # Units bought with TRY or USD
    SELL = "SELL"                                                # Units sold for TRY
    CYCLE_SETTLEMENT = "CYCLE_SETTLEMENT"                        # Units moved between cycles
    DEPOSIT_BALANCE_CORRECTION = "DEPOSIT_BALANCE_CORRECTION"    # Manual credit
    WITHDRAW_BALANCE_CORRECTION = "WITHDRAW_BALANCE_CORRECTION"  # Manual debit


@dataclass(frozen=True)
class BuyDerivation:
    """Validated BUY inputs plus the derived fields"""
    transaction_value: Decimal
    transaction_currency: Currency
    amount_received: Decimal
    usd_try_rate_at_buy: Optional[Decimal]
    commission_percent: Optional[Decimal]
    gross_units: Decimal
    effective_rate_try: Optional[Decimal]


@dataclass(frozen=True)
class SellDerivation:
    """Validated SELL inputs plus the derived fields"""
    amount_sold: Decimal
    amount_received: Decimal
    price_per_unit: Decimal
    commission_percent: Optional[Decimal]
    net_units: Decimal


def derive_buy(
    transaction_value,
    transaction_currency,
    amount_received,
    usd_try_rate_at_buy=None,
    commission_percent=None
) -> BuyDerivation:
    """
    Validate a BUY and derive commission, gross units and effective rate

    Args:
        transaction_value: Amount paid, in transaction_currency
        transaction_currency: USD or TRY
        amount_received: Units credited to the cycle (net of commission)
        usd_try_rate_at_buy: USD/TRY rate, required when paying in USD
        commission_percent: Explicit commission; derived from the USD
            paid/received spread when omitted

    Returns:
        BuyDerivation

    Raises:
        ValidationError: On missing or out-of-range input
    """
    currency = Currency.from_code(transaction_currency)
    paid = parse_positive(transaction_value, "transaction_value")
    received = parse_positive(amount_received, "amount_received")
    rate = parse_optional_positive(usd_try_rate_at_buy, "usd_try_rate_at_buy")
    commission = parse_optional_percentage(commission_percent, "commission_percent")

    if currency == Currency.USD and rate is None:
        raise ValidationError(
            "For USD BUY transactions, usd_try_rate_at_buy is required",
            field="usd_try_rate_at_buy"
        )

    if commission is None and currency == Currency.USD:
        commission = (paid - received) / paid * HUNDRED

    ratio = percent_to_ratio(commission)
    if ZERO < ratio < ONE:
        gross_units = received / (ONE - ratio)
    else:
        gross_units = received

    if currency == Currency.TRY:
        effective_rate = safe_divide(paid, gross_units, "effective rate")
    elif rate is not None:
        effective_rate = safe_divide(paid * rate, gross_units, "effective rate")
    else:
        effective_rate = None

    return BuyDerivation(
        transaction_value=paid,
        transaction_currency=currency,
        amount_received=received,
        usd_try_rate_at_buy=rate,
        commission_percent=commission,
        gross_units=gross_units,
        effective_rate_try=effective_rate,
    )


def derive_sell(
    amount_sold,
    amount_received=None,
    price_per_unit=None,
    commission_percent=None
) -> SellDerivation:
    """
    Validate a SELL and derive whichever of amount_received / price_per_unit
    was not supplied. Exactly one of the two must be given.
    """
    sold = parse_positive(amount_sold, "amount_sold")
    commission = parse_optional_percentage(commission_percent, "commission_percent")
    received = parse_optional_positive(amount_received, "amount_received")
    price = parse_optional_positive(price_per_unit, "price_per_unit")

    if received is None and price is None:
        raise ValidationError(
            "For SELL transactions, amount_received or price_per_unit must be provided"
        )
    if received is not None and price is not None:
        raise ValidationError(
            "For SELL transactions, provide amount_received or price_per_unit, not both"
        )

    net_units = sold * (ONE - percent_to_ratio(commission))

    if received is not None:
        price = safe_divide(received, net_units, "price per unit")
    else:
        received = price * net_units

    return SellDerivation(
        amount_sold=sold,
        amount_received=received,
        price_per_unit=price,
        commission_percent=commission,
        net_units=net_units,
    )


def validate_correction_amount(amount) -> Decimal:
    """Balance corrections move a strictly positive amount"""
    return parse_positive(amount, "amount")


def validate_settlement(from_cycle: str, to_cycle: str, amount) -> Tuple[str, str, Decimal]:
    """
    Validate settlement endpoints and amount

    Returns:
        (trimmed source name, trimmed destination name, amount)
    """
    from_name = (from_cycle or "").strip()
    to_name = (to_cycle or "").strip()

    if not from_name or not to_name:
        raise ValidationError("Both source and destination cycles are required")
    if from_name == to_name:
        log_action(
            logger, "warning", "Rejected settlement with identical endpoints",
            action="settlement_rejected", resource=from_name
        )
        raise SettlementEndpointError("Source and destination cycles must be different")

    return from_name, to_name, parse_positive(amount, "amount")


def unit_delta(
    transaction_type: TransactionType,
    amount_received: Decimal,
    amount_sold: Optional[Decimal]
) -> Decimal:
    """
    Change in a cycle's unit balance caused by one transaction

    A SELL's amount_received is TRY, not units, so only its amount_sold counts.
    """
    sold = amount_sold if amount_sold is not None else ZERO
    if transaction_type == TransactionType.BUY:
        return amount_received
    if transaction_type == TransactionType.SELL:
        return -sold
    return amount_received - sold


def fold_balance(rows: Iterable, exclude_transaction_id: Optional[str] = None) -> Decimal:
    """Fold transactions (objects with id, transaction_type, amount_received, amount_sold)"""
    balance = ZERO
    for row in rows:
        if exclude_transaction_id is not None and row.id == exclude_transaction_id:
            continue
        balance += unit_delta(row.transaction_type, row.amount_received, row.amount_sold)
    return balance


class BalanceChecker:
    """
    Balance sufficiency checks over a cycle's transactions

    The accessor returns the transactions of one cycle. Callers run the check
    and the write that depends on it inside one storage.atomic() scope.
    """

    def __init__(self, accessor: Callable[[str], Iterable]):
        self._accessor = accessor

    def cycle_balance(self, cycle_id: str, exclude_transaction_id: Optional[str] = None) -> Decimal:
        """Current unit balance, optionally ignoring one transaction"""
        return fold_balance(self._accessor(cycle_id), exclude_transaction_id)

    def ensure_sufficient_balance(
        self,
        cycle_id: str,
        required_amount: Decimal,
        exclude_transaction_id: Optional[str] = None,
        operation: str = "Withdraw correction"
    ) -> Decimal:
        """
        Fail if required_amount exceeds the balance (plus machine epsilon)

        Returns:
            The balance the check was made against

        Raises:
            InsufficientBalanceError: carrying the attempted amount and balance
        """
        balance = self.cycle_balance(cycle_id, exclude_transaction_id)
        if required_amount > balance + BALANCE_EPSILON:
            self._reject(
                cycle_id,
                f"{operation} amount ({quantize_units(required_amount)}) "
                f"exceeds cycle balance ({quantize_units(balance)})",
                required_amount, balance
            )
        return balance

    def ensure_not_lowered_below_zero(
        self,
        cycle_id: str,
        balance_before: Decimal,
        balance_after: Decimal,
        operation: str = "Edit"
    ) -> None:
        """Reject a change that lowers a cycle's balance to below zero"""
        if balance_after < balance_before and balance_after < -BALANCE_EPSILON:
            self._reject(
                cycle_id,
                f"{operation} would leave cycle balance negative ({quantize_units(balance_after)})",
                balance_before - balance_after, balance_before
            )

    def ensure_removable(self, cycle_id: str, transaction_id: str) -> None:
        """Reject deleting a row that later debits of its cycle rely on"""
        self.ensure_not_lowered_below_zero(
            cycle_id,
            self.cycle_balance(cycle_id),
            self.cycle_balance(cycle_id, exclude_transaction_id=transaction_id),
            operation="Delete"
        )

    def _reject(self, cycle_id: str, message: str, attempted: Decimal, balance: Decimal) -> None:
        log_action(
            logger, "warning", message,
            action="balance_check_rejected", resource=cycle_id,
            extra={"attempted": str(attempted), "balance": str(balance)}
        )
        raise InsufficientBalanceError(message, attempted=attempted, balance=balance)
