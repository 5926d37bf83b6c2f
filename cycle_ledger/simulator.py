"""
Arbitrage Loop Simulator

Projects N repeated buy/sell iterations before any real transaction is
recorded. The projection is a pure function of its parameters: no storage,
no randomness, Decimal arithmetic throughout.

Two mutually exclusive modes are selected once, at entry:

- LocalCurrencyMode ("buy-in-lira"): the capital is converted to TRY and the
  units are bought with TRY at the (commission-adjusted) exchange rate.
- HardCurrencyMode ("buy-in-dollars"): the units are bought directly with USD,
  losing the buy commission, then sold for TRY and converted back to USD at
  the exchange rate plus the exchange tax.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .currency import Currency, HARD_CURRENCY, LOCAL_CURRENCY
from .errors import ValidationError
from .numeric import (
    ONE, ZERO, HUNDRED, parse_flag, parse_loop_count, parse_optional_percentage,
    parse_percentage, parse_positive,
)


MODE_LOCAL = "buy-in-lira"
MODE_HARD = "buy-in-dollars"


@dataclass(frozen=True)
class SimulationParams:
    """Validated simulator inputs"""
    starting_capital: Decimal
    sell_rate: Decimal
    exchange_rate: Decimal
    loop_count: int
    use_exchange_rate: bool = True
    apply_commission: bool = False
    buy_commission: Optional[Decimal] = None
    exchange_tax_percent: Optional[Decimal] = None
    compound_profits: bool = False

    def __post_init__(self):
        for name in ("starting_capital", "sell_rate", "exchange_rate"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                raise ValidationError(f"{name} must be a Decimal", field=name)
            if value <= ZERO:
                raise ValidationError(f"{name} must be greater than 0", field=name)
        if self.loop_count < 1:
            raise ValidationError("loop_count must be a positive whole number", field="loop_count")
        if self.commission_applies:
            if self.buy_commission is None or not (ZERO <= self.buy_commission < HUNDRED):
                raise ValidationError("buy_commission must be between 0 and 100", field="buy_commission")
        if self.exchange_tax_percent is not None and not (ZERO <= self.exchange_tax_percent < HUNDRED):
            raise ValidationError("exchange_tax_percent must be between 0 and 100",
                                  field="exchange_tax_percent")

    @property
    def commission_applies(self) -> bool:
        """Hard-currency mode always pays the buy commission"""
        return not self.use_exchange_rate or self.apply_commission

    def mode(self) -> "SimulationMode":
        """Select the computation mode for these parameters"""
        if self.use_exchange_rate:
            return LocalCurrencyMode(
                starting_usd=self.starting_capital,
                exchange_rate=self.exchange_rate,
                sell_rate=self.sell_rate,
                commission_percent=self.buy_commission if self.apply_commission else None,
                compound=self.compound_profits,
            )
        return HardCurrencyMode(
            starting_usd=self.starting_capital,
            exchange_rate=self.exchange_rate,
            sell_rate=self.sell_rate,
            commission_percent=self.buy_commission,
            exchange_tax_percent=self.exchange_tax_percent or ZERO,
            compound=self.compound_profits,
        )


@dataclass(frozen=True)
class LoopResult:
    """One simulated buy/sell iteration"""
    loop: int
    buy_amount: Decimal
    buy_currency: Currency
    buy_rate_try: Decimal
    sell_rate_try: Decimal
    usdt_bought: Decimal
    sell_try: Decimal
    proceeds_usd: Decimal
    profit_try: Decimal
    profit_usd: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loop": self.loop,
            "buy_amount": str(self.buy_amount),
            "buy_currency": self.buy_currency.code,
            "buy_rate_try": str(self.buy_rate_try),
            "sell_rate_try": str(self.sell_rate_try),
            "usdt_bought": str(self.usdt_bought),
            "sell_try": str(self.sell_try),
            "proceeds_usd": str(self.proceeds_usd),
            "profit_try": str(self.profit_try),
            "profit_usd": str(self.profit_usd),
        }


@dataclass(frozen=True)
class Projection:
    """Outcome of a full simulation run"""
    mode: str
    loops: Tuple[LoopResult, ...]
    starting_usd: Decimal
    final_usd: Decimal
    total_profit_usd: Decimal
    final_try: Decimal
    total_profit_try: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "loops": [loop.to_dict() for loop in self.loops],
            "starting_usd": str(self.starting_usd),
            "final_usd": str(self.final_usd),
            "total_profit_usd": str(self.total_profit_usd),
            "final_try": str(self.final_try),
            "total_profit_try": str(self.total_profit_try),
        }


@dataclass(frozen=True)
class LoopState:
    """Carry between iterations: next loop index, working amount, profit so far"""
    loop: int
    working: Decimal
    total_profit: Decimal = ZERO


class SimulationMode(ABC):
    """A computation mode: one step function plus how to summarize the run"""
    name: str

    @abstractmethod
    def initial_state(self) -> LoopState:
        pass

    @abstractmethod
    def iterate(self, state: LoopState) -> Tuple[LoopState, LoopResult]:
        pass

    @abstractmethod
    def summarize(self, state: LoopState, loops: List[LoopResult]) -> Projection:
        pass


@dataclass(frozen=True)
class LocalCurrencyMode(SimulationMode):
    """Buy units with TRY obtained at the exchange rate"""
    starting_usd: Decimal
    exchange_rate: Decimal
    sell_rate: Decimal
    commission_percent: Optional[Decimal] = None
    compound: bool = False
    name: str = field(default=MODE_LOCAL, init=False)

    @property
    def base_try(self) -> Decimal:
        return self.starting_usd * self.exchange_rate

    @property
    def effective_buy_rate(self) -> Decimal:
        if self.commission_percent is None:
            return self.exchange_rate
        return self.exchange_rate * (ONE + self.commission_percent / HUNDRED)

    def initial_state(self) -> LoopState:
        return LoopState(loop=1, working=self.base_try)

    def iterate(self, state: LoopState) -> Tuple[LoopState, LoopResult]:
        buy_try = state.working if self.compound else self.base_try
        buy_rate = self.effective_buy_rate
        usdt_bought = buy_try / buy_rate
        sell_try = usdt_bought * self.sell_rate
        profit_try = sell_try - buy_try

        record = LoopResult(
            loop=state.loop,
            buy_amount=buy_try,
            buy_currency=LOCAL_CURRENCY,
            buy_rate_try=buy_rate,
            sell_rate_try=self.sell_rate,
            usdt_bought=usdt_bought,
            sell_try=sell_try,
            proceeds_usd=sell_try / self.exchange_rate,
            profit_try=profit_try,
            profit_usd=profit_try / self.exchange_rate,
        )
        next_state = LoopState(
            loop=state.loop + 1,
            working=sell_try if self.compound else self.base_try,
            total_profit=state.total_profit + profit_try,
        )
        return next_state, record

    def summarize(self, state: LoopState, loops: List[LoopResult]) -> Projection:
        final_try = state.working if self.compound else self.base_try + state.total_profit
        final_usd = final_try / self.exchange_rate
        return Projection(
            mode=self.name,
            loops=tuple(loops),
            starting_usd=self.starting_usd,
            final_usd=final_usd,
            total_profit_usd=final_usd - self.starting_usd,
            final_try=final_try,
            total_profit_try=state.total_profit,
        )


@dataclass(frozen=True)
class HardCurrencyMode(SimulationMode):
    """Buy units directly with USD and convert the TRY proceeds back to USD"""
    starting_usd: Decimal
    exchange_rate: Decimal
    sell_rate: Decimal
    commission_percent: Decimal = ZERO
    exchange_tax_percent: Decimal = ZERO
    compound: bool = False
    name: str = field(default=MODE_HARD, init=False)

    @property
    def back_conversion_rate(self) -> Decimal:
        return self.exchange_rate * (ONE + self.exchange_tax_percent / HUNDRED)

    def initial_state(self) -> LoopState:
        return LoopState(loop=1, working=self.starting_usd)

    def iterate(self, state: LoopState) -> Tuple[LoopState, LoopResult]:
        buy_usd = state.working if self.compound else self.starting_usd
        usdt_bought = buy_usd * (ONE - self.commission_percent / HUNDRED)
        sell_try = usdt_bought * self.sell_rate
        usd_after_cycle = sell_try / self.back_conversion_rate
        profit_usd = usd_after_cycle - buy_usd

        record = LoopResult(
            loop=state.loop,
            buy_amount=buy_usd,
            buy_currency=HARD_CURRENCY,
            buy_rate_try=self.exchange_rate,
            sell_rate_try=self.sell_rate,
            usdt_bought=usdt_bought,
            sell_try=sell_try,
            proceeds_usd=usd_after_cycle,
            profit_try=profit_usd * self.exchange_rate,
            profit_usd=profit_usd,
        )
        next_state = LoopState(
            loop=state.loop + 1,
            working=usd_after_cycle if self.compound else self.starting_usd,
            total_profit=state.total_profit + profit_usd,
        )
        return next_state, record

    def summarize(self, state: LoopState, loops: List[LoopResult]) -> Projection:
        final_usd = state.working if self.compound else self.starting_usd + state.total_profit
        final_try = final_usd * self.exchange_rate
        return Projection(
            mode=self.name,
            loops=tuple(loops),
            starting_usd=self.starting_usd,
            final_usd=final_usd,
            total_profit_usd=state.total_profit,
            final_try=final_try,
            total_profit_try=final_try - self.starting_usd * self.exchange_rate,
        )


def simulate(params: SimulationParams) -> Projection:
    """
    Run the loop projection

    Args:
        params: Validated parameters (see parse_simulation_params)

    Returns:
        Projection with exactly params.loop_count iteration records
    """
    mode = params.mode()
    state = mode.initial_state()
    loops: List[LoopResult] = []
    for _ in range(params.loop_count):
        state, record = mode.iterate(state)
        loops.append(record)
    return mode.summarize(state, loops)


_ALIASES = {
    "starting_capital": "startingCapital",
    "sell_rate": "sellRate",
    "exchange_rate": "exchangeRate",
    "loop_count": "loopCount",
    "use_exchange_rate": "useExchangeRate",
    "apply_commission": "applyCommission",
    "buy_commission": "buyCommission",
    "exchange_tax_percent": "exchangeTaxPercent",
    "compound_profits": "compoundProfits",
}


def _pick(raw: Mapping[str, Any], key: str) -> Any:
    if key in raw:
        return raw[key]
    return raw.get(_ALIASES[key])


def parse_simulation_params(raw: Mapping[str, Any],
                            max_loop_count: Optional[int] = None) -> SimulationParams:
    """
    Validate raw form values into SimulationParams

    Accepts snake_case or camelCase keys. Fails on the first invalid field,
    before any iteration is computed.

    Raises:
        ValidationError: naming the offending field
    """
    starting_capital = parse_positive(_pick(raw, "starting_capital"), "starting_capital")
    sell_rate = parse_positive(_pick(raw, "sell_rate"), "sell_rate")
    loop_count = parse_loop_count(_pick(raw, "loop_count"), "loop_count", maximum=max_loop_count)
    exchange_rate = parse_positive(_pick(raw, "exchange_rate"), "exchange_rate")

    use_exchange_rate = parse_flag(_pick(raw, "use_exchange_rate"), "use_exchange_rate")
    apply_commission = parse_flag(_pick(raw, "apply_commission"), "apply_commission")
    compound_profits = parse_flag(_pick(raw, "compound_profits"), "compound_profits")

    buy_commission = None
    if not use_exchange_rate or apply_commission:
        buy_commission = parse_percentage(_pick(raw, "buy_commission"), "buy_commission")

    exchange_tax_percent = None
    if not use_exchange_rate:
        exchange_tax_percent = parse_optional_percentage(
            _pick(raw, "exchange_tax_percent"), "exchange_tax_percent"
        )

    return SimulationParams(
        starting_capital=starting_capital,
        sell_rate=sell_rate,
        exchange_rate=exchange_rate,
        loop_count=loop_count,
        use_exchange_rate=use_exchange_rate,
        apply_commission=apply_commission,
        buy_commission=buy_commission,
        exchange_tax_percent=exchange_tax_percent,
        compound_profits=compound_profits,
    )
