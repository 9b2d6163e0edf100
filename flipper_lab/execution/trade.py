"""
Trade: an entry/exit signal pair with quantity and fee-adjusted economics.

**Conceptual**: A strategy only decides *when* to be in an instrument; it
knows nothing about money. A Trade turns one enter/exit pair into economics
once the portfolio has decided *how much* to buy:
  - quantity and fee are set through `set_quantity` / `set_fee`, which return
    the trade so allocation code can chain them;
  - every derived value is a property, recomputed from the current quantity
    and fee, so nothing can go stale after a mutation.

**Fee adjustment**: Fees are spread over the shares of the transaction.
    entry_price = price + fee(price * q) / q
    exit_price  = price - fee(price * q) / q
With no fee (or q == 0) the raw signal prices are used.

**Rounding**: Cash-like values are rounded to 10 decimals to hide binary
floating point noise (34.43 * 123 would otherwise print 4234.889999...).
"""

import math
from numbers import Integral
from typing import Optional, Sequence

import pandas as pd

from flipper_lab.data.schemas import Bar, Instrument
from flipper_lab.execution.fee import Fee
from flipper_lab.execution.signal import Signal
from flipper_lab.utils.date_search import search_for_date
from flipper_lab.utils.errors import ValidationError


ROUNDING_DECIMALS = 10


def round_number(value: float) -> float:
    return round(value, ROUNDING_DECIMALS)


class Trade:
    """
    One position: entry signal, exit signal, quantity and optional fee.

    Args:
        entry: Executed entry signal (price and date set).
        exit: Exit signal. May be a synthesized, pending-status close.
        instrument: Defaults to the entry signal's instrument.
        quantity: Number of shares (>= 0). Defaults to 1.
        fee: Optional Fee applied to both transactions.

    Raises:
        ValidationError: If either signal lacks price/date, or the entry date is
            not strictly before the exit date.
    """

    def __init__(
        self,
        entry: Signal,
        exit: Signal,
        instrument: Optional[Instrument] = None,
        quantity: int = 1,
        fee: Optional[Fee] = None,
    ):
        for label, signal in (("entry", entry), ("exit", exit)):
            if signal is None or signal.price is None or signal.date is None:
                raise ValidationError(f"Trade {label} signal must have a price and a date")

        if entry.date >= exit.date:
            raise ValidationError(
                f"Trade entry date {entry.date} must precede exit date {exit.date}"
            )

        self.entry = entry
        self.exit = exit
        self.instrument = instrument if instrument is not None else entry.instrument
        self.quantity = 1
        self.fee: Optional[Fee] = None
        self.set_quantity(quantity)
        self.set_fee(fee)

    def __repr__(self) -> str:
        return (
            f"Trade(instrument={self.instrument.id!r}, entry={self.entry_date.date()} @ {self.entry.price}, "
            f"exit={self.exit_date.date()} @ {self.exit.price}, quantity={self.quantity})"
        )

    def set_quantity(self, quantity: int) -> "Trade":
        if isinstance(quantity, bool) or not isinstance(quantity, Integral) or quantity < 0:
            raise ValidationError(f"Quantity must be a non-negative integer, got {quantity!r}")
        self.quantity = int(quantity)
        return self

    def set_fee(self, fee: Optional[Fee]) -> "Trade":
        self.fee = fee
        return self

    def calculate_quantity(self, amount: float) -> int:
        """Whole shares affordable for `amount` at the raw entry price."""
        return math.floor(amount / self.entry.price)

    def _fee_for(self, price: float) -> float:
        if self.fee is None or self.quantity == 0:
            return 0.0
        return self.fee.calculate(price * self.quantity)

    @property
    def entry_date(self) -> pd.Timestamp:
        return self.entry.date

    @property
    def exit_date(self) -> pd.Timestamp:
        return self.exit.date

    @property
    def entry_price(self) -> float:
        if self.quantity == 0:
            return self.entry.price
        return self.entry.price + self._fee_for(self.entry.price) / self.quantity

    @property
    def exit_price(self) -> float:
        if self.quantity == 0:
            return self.exit.price
        return self.exit.price - self._fee_for(self.exit.price) / self.quantity

    @property
    def result_per_stock(self) -> float:
        return round_number(self.exit_price - self.entry_price)

    @property
    def result_percent(self) -> float:
        return self.exit_price / self.entry_price - 1

    @property
    def initial_value(self) -> float:
        return round_number(self.quantity * self.entry_price)

    @property
    def final_value(self) -> float:
        return round_number(self.quantity * self.exit_price)

    @property
    def result_in_cash(self) -> float:
        return round_number(self.quantity * self.result_per_stock)

    @property
    def total_fees(self) -> float:
        return round_number(self._fee_for(self.entry.price) + self._fee_for(self.exit.price))

    def get_trade_performance(
        self,
        bars: Sequence[Bar],
        searcher=search_for_date,
    ) -> pd.Series:
        """
        Daily mark-to-market value of the position while it is held.

        Covers bars from the entry date (inclusive) up to the exit date
        (exclusive); on the exit date the proceeds are already cash. The first
        value is the fee-adjusted initial value rather than close * quantity,
        so the equity curve shows no jump on the entry day.

        Args:
            bars: Ascending bars of this trade's instrument.
            searcher: Date search function (defaults to search_for_date).

        Returns:
            Series of values indexed by bar date (empty if entry and exit
            resolve to the same bar).

        Raises:
            OutOfRangeError: If the trade dates fall outside the bars.
        """
        start_index = searcher(bars, self.entry_date)
        end_index = searcher(bars, self.exit_date)
        held = bars[start_index:end_index]

        values = [bar.close * self.quantity for bar in held]
        if values:
            values[0] = self.initial_value

        return pd.Series(
            values,
            index=pd.DatetimeIndex([bar.date for bar in held], name='date'),
            name=self.instrument.id,
            dtype=float,
        )

    def to_dict(self) -> dict:
        """JSON-ready summary used by the document store."""
        return {
            'instrument': self.instrument.to_dict(),
            'entry': self.entry.to_dict(),
            'exit': self.exit.to_dict(),
            'quantity': self.quantity,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'result_per_stock': self.result_per_stock,
            'result_percent': self.result_percent,
            'initial_value': self.initial_value,
            'final_value': self.final_value,
            'result_in_cash': self.result_in_cash,
            'total_fees': self.total_fees,
        }
