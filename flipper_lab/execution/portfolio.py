"""
Portfolio: capital- and slot-constrained replay of cross-instrument trades.

**Conceptual**: Each instrument's strategy test produces trades as if money
were unlimited. The portfolio answers "what if all of them competed for the
same account?" It has a fixed starting cash and a fixed number of position
slots, and replays every trade's entry and exit date in chronological order:

  for each date (ascending):
    1. exits first: close matured positions, credit the fee-adjusted final
       value, free one slot each
    2. entries: rank the day's candidates, size each one with
           max_spend = (cash - fee(cash)) / available_slots
           quantity  = floor(max_spend / raw entry price)
       fill the ones with quantity > 0, withdraw the fee-adjusted initial
       value, take a slot
    3. snapshot cash for the date

The per-slot budget is recomputed after each fill, so the second candidate on
a date sees (remaining cash) / (remaining slots). A cheaper, lower-ranked
candidate can therefore be bought on a date where a pricier one was skipped.

**Invariants** (checked by tests):
  - available_slots + open positions == max_number_of_stocks at every step.
  - cash_available never goes negative: q * p <= max_spend and the fee is
    monotone, so q * p + fee(q * p) <= cash.

**Selection methods**:
  - 'random': shuffle (seedable); the only causal method.
  - 'best' / 'worst': sort by realized result_percent. These peek at each
    trade's outcome and exist purely as a benchmarking aid in tests; never use
    them to judge a strategy.

After the replay, `generate_timeline()` marks every closed trade to market day
by day (fetching each instrument's history once, in parallel through the task
queue) and merges the cash ledger to give a daily equity curve.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from functools import partial
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from flipper_lab.data.schemas import InstrumentId
from flipper_lab.execution.fee import Fee
from flipper_lab.execution.trade import Trade
from flipper_lab.utils.task_queue import TaskQueue
from flipper_lab.venues.base import PriceProvider


logger = logging.getLogger(__name__)

SELECTION_METHODS = ('random', 'best', 'worst')


@dataclass
class SignalDay:
    """Trades entering and exiting on one date."""
    entries: list[Trade] = field(default_factory=list)
    exits: list[Trade] = field(default_factory=list)


@dataclass
class PositionValue:
    instrument_id: InstrumentId
    value: float


@dataclass
class TimelineEntry:
    """
    Portfolio state on one date of the equity timeline.

    total == cash_available + total_position_value.
    """
    date: pd.Timestamp
    cash_available: float = 0.0
    total_position_value: float = 0.0
    number_of_positions_open: int = 0
    positions: list[PositionValue] = field(default_factory=list)
    total: float = 0.0


@dataclass
class PortfolioBacktestResult:
    """Outcome of `Portfolio.backtest`."""
    cash_available: float
    available_slots: int
    historical_trades: list[Trade]
    open_trades: list[Trade]
    signals_not_taken: int
    cash_ledger: dict[pd.Timestamp, float]


class Portfolio:
    """
    Multi-instrument allocator with a fixed cash and position-count budget.

    Args:
        start_capital: Cash at the start of every backtest.
        max_number_of_stocks: Number of position slots.
        selection_method: 'random' (default), or the hindsight-only 'best'/'worst'.
        fee: Fee charged on every fill; defaults to 0.25% with a minimum of 1.
        price_provider: PriceProvider used by generate_timeline.
        task_queue: Scheduler for per-instrument timeline fetches (cap 10 default).
        reference_instrument_id: Instrument whose history defines timeline dates.
        seed: Seed for the 'random' selection shuffle.
    """

    def __init__(
        self,
        start_capital: float = 100_000,
        max_number_of_stocks: int = 20,
        selection_method: str = 'random',
        fee: Optional[Fee] = None,
        price_provider: Optional[PriceProvider] = None,
        task_queue: Optional[TaskQueue] = None,
        reference_instrument_id: InstrumentId = 19002,
        seed: Optional[int] = None,
    ):
        if start_capital <= 0:
            raise ValueError(f"start_capital must be > 0, got {start_capital}")
        if max_number_of_stocks < 1:
            raise ValueError(f"max_number_of_stocks must be >= 1, got {max_number_of_stocks}")
        if selection_method not in SELECTION_METHODS:
            raise ValueError(
                f"Unknown selection method '{selection_method}'. Supported: {SELECTION_METHODS}"
            )

        self.start_capital = start_capital
        self.max_number_of_stocks = max_number_of_stocks
        self.selection_method = selection_method
        self.fee = fee if fee is not None else Fee()
        self.price_provider = price_provider
        self.task_queue = task_queue or TaskQueue(concurrency=10)
        self.reference_instrument_id = reference_instrument_id
        self._rng = np.random.default_rng(seed)

        self.cash_available = start_capital
        self.available_slots = max_number_of_stocks
        self.historical_trades: list[Trade] = []
        self.open_trades: list[Trade] = []
        self.signals_not_taken = 0
        self.cash_ledger: dict[pd.Timestamp, float] = {}
        self.timeline: list[TimelineEntry] = []

    @property
    def open_position_count(self) -> int:
        return self.max_number_of_stocks - self.available_slots

    def _reset(self) -> None:
        self.cash_available = self.start_capital
        self.available_slots = self.max_number_of_stocks
        self.historical_trades = []
        self.open_trades = []
        self.signals_not_taken = 0
        self.cash_ledger = {}
        self.timeline = []

    @staticmethod
    def generate_signal_map(trades: Sequence[Trade]) -> dict[pd.Timestamp, SignalDay]:
        """
        Index trades by entry and exit date, in ascending date order.

        Within a date, trades keep their input order.
        """
        signal_map: dict[pd.Timestamp, SignalDay] = defaultdict(SignalDay)
        for trade in trades:
            signal_map[trade.entry_date].entries.append(trade)
            signal_map[trade.exit_date].exits.append(trade)
        return {date: signal_map[date] for date in sorted(signal_map)}

    def rank_trades(self, trades: Sequence[Trade], slots: int) -> list[Trade]:
        """Order candidates by the selection method and keep at most `slots`."""
        if len(trades) <= slots:
            return list(trades)

        if self.selection_method == 'random':
            ranked = [trades[i] for i in self._rng.permutation(len(trades))]
        elif self.selection_method == 'best':
            ranked = sorted(trades, key=lambda trade: trade.result_percent, reverse=True)
        else:
            ranked = sorted(trades, key=lambda trade: trade.result_percent)
        return ranked[:slots]

    def backtest(self, trades: Sequence[Trade]) -> PortfolioBacktestResult:
        """
        Replay trades chronologically under the cash and slot budgets.

        Filled trades get their quantity and this portfolio's fee set; skipped
        trades are left untouched. Every entry candidate is either filled or
        counted in signals_not_taken, including those on dates with no free slot.
        """
        self._reset()
        signal_map = self.generate_signal_map(trades)
        currently_holding: dict[pd.Timestamp, list[Trade]] = defaultdict(list)

        for date, day in signal_map.items():
            for trade in currently_holding.pop(date, []):
                self.historical_trades.append(trade)
                self.cash_available += trade.final_value
                self.available_slots += 1

            if self.available_slots > 0 and day.entries:
                taken = 0
                for trade in self.rank_trades(day.entries, self.available_slots):
                    max_spend = (self.cash_available - self.fee.calculate(self.cash_available)) / self.available_slots
                    quantity = trade.calculate_quantity(max_spend)
                    if quantity <= 0:
                        continue
                    trade.set_quantity(quantity).set_fee(self.fee)
                    self.cash_available -= trade.initial_value
                    self.available_slots -= 1
                    currently_holding[trade.exit_date].append(trade)
                    taken += 1
                self.signals_not_taken += len(day.entries) - taken
            elif day.entries:
                self.signals_not_taken += len(day.entries)

            self.cash_ledger[date] = self.cash_available

        self.open_trades = [trade for held in currently_holding.values() for trade in held]
        logger.info(
            "Portfolio backtest: %d closed, %d open, %d signals not taken, cash %.2f",
            len(self.historical_trades),
            len(self.open_trades),
            self.signals_not_taken,
            self.cash_available,
        )
        return PortfolioBacktestResult(
            cash_available=self.cash_available,
            available_slots=self.available_slots,
            historical_trades=list(self.historical_trades),
            open_trades=list(self.open_trades),
            signals_not_taken=self.signals_not_taken,
            cash_ledger=dict(self.cash_ledger),
        )

    async def get_date_map(self) -> dict[pd.Timestamp, TimelineEntry]:
        """One empty timeline entry per date of the reference instrument's history."""
        bars = await self.price_provider.fetch_price_history(self.reference_instrument_id, fields=('date',))
        return {bar.date: TimelineEntry(date=bar.date) for bar in bars}

    @staticmethod
    def group_trades_by_instrument(trades: Sequence[Trade]) -> dict[InstrumentId, list[Trade]]:
        grouped: dict[InstrumentId, list[Trade]] = defaultdict(list)
        for trade in trades:
            grouped[trade.instrument.id].append(trade)
        return dict(grouped)

    async def _instrument_performance(self, instrument_id: InstrumentId, trades: Sequence[Trade]) -> list[pd.Series]:
        bars = await self.price_provider.fetch_price_history(instrument_id, fields=('date', 'close'))
        return [trade.get_trade_performance(bars) for trade in trades]

    @staticmethod
    def add_values(timeline: dict[pd.Timestamp, TimelineEntry], performance: pd.Series) -> None:
        """Accumulate one trade's daily values into the timeline."""
        for date, value in performance.items():
            entry = timeline.get(date)
            if entry is None:
                entry = timeline[date] = TimelineEntry(date=date)
            entry.total_position_value += value
            entry.number_of_positions_open += 1
            entry.positions.append(PositionValue(instrument_id=performance.name, value=value))

    def add_cash_balance_history(self, timeline: dict[pd.Timestamp, TimelineEntry]) -> list[TimelineEntry]:
        """
        Carry the cash ledger forward over every timeline date and set totals.

        Dates before the first ledger entry hold the start capital.
        """
        for date in self.cash_ledger:
            if date not in timeline:
                timeline[date] = TimelineEntry(date=date)

        cash = self.start_capital
        entries = [timeline[date] for date in sorted(timeline)]
        for entry in entries:
            if entry.date in self.cash_ledger:
                cash = self.cash_ledger[entry.date]
            entry.cash_available = cash
            entry.total = cash + entry.total_position_value
        return entries

    async def generate_timeline(self, trades: Optional[Sequence[Trade]] = None) -> list[TimelineEntry]:
        """
        Build the daily equity timeline for the last backtest.

        Args:
            trades: Trades to value; defaults to the backtest's closed trades.

        Returns:
            Timeline entries sorted ascending by date. Instruments whose price
            fetch or valuation failed are logged and left out.
        """
        if self.price_provider is None:
            raise ValueError("generate_timeline requires a price_provider")

        trades = self.historical_trades if trades is None else trades
        timeline = await self.get_date_map()

        grouped = self.group_trades_by_instrument(trades)
        instrument_ids = list(grouped)
        tasks = [partial(self._instrument_performance, instrument_id, grouped[instrument_id]) for instrument_id in instrument_ids]
        results = await self.task_queue.run(tasks)

        for instrument_id, result in zip(instrument_ids, results):
            if isinstance(result, Exception):
                logger.error("Timeline valuation failed for %s: %s", instrument_id, result)
                continue
            for performance in result:
                self.add_values(timeline, performance)

        self.timeline = self.add_cash_balance_history(timeline)
        return self.timeline

    def timeline_frame(self) -> pd.DataFrame:
        """Timeline as a DataFrame (timestamp, cash_available, total_position_value, number_of_positions_open, total)."""
        return pd.DataFrame(
            [
                {
                    'timestamp': entry.date,
                    'cash_available': entry.cash_available,
                    'total_position_value': entry.total_position_value,
                    'number_of_positions_open': entry.number_of_positions_open,
                    'total': entry.total,
                }
                for entry in self.timeline
            ],
            columns=['timestamp', 'cash_available', 'total_position_value', 'number_of_positions_open', 'total'],
        )
