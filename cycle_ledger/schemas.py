"""
Pydantic schemas for API requests

Amounts cross the boundary as decimal strings (JSON numbers are accepted and
coerced to strings) so nothing passes through float. Fields may be sent in
snake_case or camelCase.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .ledger import TransactionType
from .transactions import (
    BalanceCorrectionInput, BuyInput, Counterparty, SellInput, SettlementInput,
)

CycleName = Annotated[str, Field(min_length=1, max_length=100)]
PartyText = Annotated[Optional[str], Field(max_length=255)]
Amount = Annotated[str, Field(description="Decimal amount as string")]
OptionalAmount = Annotated[Optional[str], Field(description="Decimal amount as string")]


class LedgerModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class CounterpartyModel(LedgerModel):
    sender_institution: PartyText = None
    sender_iban: PartyText = None
    sender_name: PartyText = None
    recipient_institution: PartyText = None
    recipient_iban: PartyText = None
    recipient_name: PartyText = None

    def to_counterparty(self) -> Counterparty:
        return Counterparty(
            sender_institution=self.sender_institution,
            sender_iban=self.sender_iban,
            sender_name=self.sender_name,
            recipient_institution=self.recipient_institution,
            recipient_iban=self.recipient_iban,
            recipient_name=self.recipient_name,
        )


# Transaction schemas
class BuyTransactionRequest(CounterpartyModel):
    type: Literal["BUY"]
    cycle: CycleName
    transaction_value: Amount
    transaction_currency: Literal["USD", "TRY"]
    amount_received: Amount
    usd_try_rate_at_buy: OptionalAmount = None
    commission_percent: OptionalAmount = None
    occurred_at: Optional[str] = None  # ISO-8601

    def to_input(self) -> BuyInput:
        return BuyInput(
            cycle=self.cycle,
            transaction_value=self.transaction_value,
            transaction_currency=self.transaction_currency,
            amount_received=self.amount_received,
            usd_try_rate_at_buy=self.usd_try_rate_at_buy,
            commission_percent=self.commission_percent,
            occurred_at=self.occurred_at,
            counterparty=self.to_counterparty(),
        )


class SellTransactionRequest(CounterpartyModel):
    type: Literal["SELL"]
    cycle: CycleName
    amount_sold: Amount
    amount_received: OptionalAmount = None
    price_per_unit: OptionalAmount = None
    commission_percent: OptionalAmount = None
    occurred_at: Optional[str] = None

    def to_input(self) -> SellInput:
        return SellInput(
            cycle=self.cycle,
            amount_sold=self.amount_sold,
            amount_received=self.amount_received,
            price_per_unit=self.price_per_unit,
            commission_percent=self.commission_percent,
            occurred_at=self.occurred_at,
            counterparty=self.to_counterparty(),
        )


class CycleSettlementRequest(LedgerModel):
    type: Literal["CYCLE_SETTLEMENT"]
    from_cycle: CycleName
    to_cycle: CycleName
    amount: Amount
    occurred_at: Optional[str] = None

    def to_input(self) -> SettlementInput:
        return SettlementInput(
            from_cycle=self.from_cycle,
            to_cycle=self.to_cycle,
            amount=self.amount,
            occurred_at=self.occurred_at,
        )


class BalanceCorrectionRequest(LedgerModel):
    type: Literal["DEPOSIT_BALANCE_CORRECTION", "WITHDRAW_BALANCE_CORRECTION"]
    cycle: CycleName
    amount: Amount
    occurred_at: Optional[str] = None

    def to_input(self) -> BalanceCorrectionInput:
        return BalanceCorrectionInput(
            cycle=self.cycle,
            transaction_type=TransactionType(self.type),
            amount=self.amount,
            occurred_at=self.occurred_at,
        )


CreateTransactionRequest = Annotated[
    Union[
        BuyTransactionRequest,
        SellTransactionRequest,
        CycleSettlementRequest,
        BalanceCorrectionRequest,
    ],
    Field(discriminator="type"),
]

# Settlements are not editable
UpdateTransactionRequest = Annotated[
    Union[
        BuyTransactionRequest,
        SellTransactionRequest,
        BalanceCorrectionRequest,
    ],
    Field(discriminator="type"),
]


# Cycle schemas
class CycleRequest(LedgerModel):
    name: CycleName


# Simulator schemas
class SimulationRequest(LedgerModel):
    starting_capital: OptionalAmount = None
    sell_rate: OptionalAmount = None
    exchange_rate: OptionalAmount = None
    loop_count: OptionalAmount = None
    use_exchange_rate: bool = True
    apply_commission: bool = False
    buy_commission: OptionalAmount = None
    exchange_tax_percent: OptionalAmount = None
    compound_profits: bool = False

    def to_raw(self) -> dict:
        return self.model_dump()
