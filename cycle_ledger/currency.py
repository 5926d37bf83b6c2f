"""
Currency Support Module

The ledger deals in exactly two fiat currencies: TRY (local, the settlement
currency every cycle reports in) and USD (hard currency). Units of the traded
asset (USDT) are tracked separately as plain Decimal quantities.
"""

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Union

from .errors import ValidationError


class Currency(Enum):
    """ISO 4217 codes used by the ledger, with display precision"""
    USD = ("USD", 2)  # Hard currency
    TRY = ("TRY", 2)  # Local currency, also the ledger's received currency

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: Union[str, "Currency"]) -> "Currency":
        """Look up a currency by its ISO code"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValidationError(
                f"Unsupported currency '{code}' (expected USD or TRY)",
                field="transaction_currency"
            )


LOCAL_CURRENCY = Currency.TRY
HARD_CURRENCY = Currency.USD

# Units of the traded asset are shown with more precision than fiat
UNIT_DISPLAY_PRECISION = 4


def quantize_money(value: Optional[Decimal], currency: Currency) -> Optional[Decimal]:
    """Round a fiat amount to its currency precision for presentation"""
    if value is None:
        return None
    return value.quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )


def quantize_units(value: Optional[Decimal]) -> Optional[Decimal]:
    """Round a unit quantity for presentation"""
    if value is None:
        return None
    return value.quantize(
        Decimal('0.1') ** UNIT_DISPLAY_PRECISION,
        rounding=ROUND_HALF_UP
    )
