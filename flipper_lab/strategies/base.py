"""
Strategy engine: walks one instrument's bars through a rule set.

**Conceptual**: A rule set is a per-bar state machine. The engine feeds it one
bar pair at a time and collects what it emits:

    Init -> for each bar i: evaluate(context, bars[i-1], bars[i]) -> (signal?, context')
         -> Final: probe for a pending signal, close any open position, pair into trades

**No look-ahead discipline**: The rule set decides on `prior_bar` (bar i-1),
whose close is known, and may only use `current_bar` (bar i) for the execution
price (its open) and date. A decision can therefore never depend on data that
was not available when it was made.

**Why a capability interface instead of a base class?**
  - The engine only needs `evaluate` (plus an initial context and an optional
    regime requirement), so any object with those members plugs in.
  - Rule sets stay pure functions of their inputs and are trivial to test
    without an engine, a price provider or an event loop.

**Teaching note**: The end of a series is where backtests usually lie. Two
mechanisms keep it honest:
  1. The *pending signal*: after the last real bar, the rule set is evaluated
     once more against an empty bar. A signal emitted there is what would
     execute at the next session's open.
  2. The *open-position policy*: a position still open at the end is closed
     synthetically, valued optimistically (last close) or conservatively (the
     live trigger price, i.e. where the stop currently sits), or excluded.
     A position entered on the final bar has not been held over any bar yet:
     it gets the closing signal but no trade.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Protocol, Sequence

from flipper_lab.data.schemas import Bar, Instrument
from flipper_lab.execution.signal import Signal, SignalAction, SignalStatus, SignalType
from flipper_lab.execution.trade import Trade
from flipper_lab.strategies.context import StrategyContext
from flipper_lab.strategies.regime import RegimeFilter, RegimeSpec, build_regime_filter
from flipper_lab.utils.date_search import find_window, search_for_date
from flipper_lab.utils.errors import LogicError
from flipper_lab.venues.base import PriceProvider


logger = logging.getLogger(__name__)


class OpenPositionPolicy(str, Enum):
    """
    Valuation rule for a position still open when the test window ends.

    - OPTIMISTIC: close at the final bar's close.
    - CONSERVATIVE: close at the context's live trigger price.
    - EXCLUDE: value like CONSERVATIVE, but drop the trade from the result.
    """
    OPTIMISTIC = "optimistic"
    CONSERVATIVE = "conservative"
    EXCLUDE = "exclude"


class BarEvaluator(Protocol):
    """
    Capability a rule set must provide to be driven by the Strategy engine.

    `regime_spec` is None for rule sets that do not need a regime filter.
    """

    regime_spec: Optional[RegimeSpec]

    def initial_context(self) -> StrategyContext:
        ...

    def evaluate(
        self,
        context: StrategyContext,
        prior_bar: Bar,
        current_bar: Bar,
        instrument: Instrument,
    ) -> tuple[Optional[Signal], StrategyContext]:
        """
        Decide on `prior_bar`, execute on `current_bar`.

        `current_bar` may be the empty bar (all fields None) when the engine
        probes for a pending signal; a signal emitted then carries no price
        or date. Implementations return a new context rather than mutating
        the one passed in.
        """
        ...


@dataclass
class StrategyResult:
    """
    Outcome of one instrument's strategy test.

    Attributes:
        instrument: Instrument tested.
        signals: Signals on real bars, in order.
        trades: Signals paired into trades (includes the synthetic close unless
            the policy is EXCLUDE or the position was entered on the final bar).
        context: Context after the last real bar.
        pending_signal: Signal that would execute on the next bar, if any.
        close_open_position: Synthesized closing signal for an open position.
        open_trade: Trade built from the open position and its synthetic close
            (None when the position was entered on the final bar).
        bars: Full price history the test ran on.
    """
    instrument: Instrument
    signals: list[Signal] = field(default_factory=list)
    trades: list[Trade] = field(default_factory=list)
    context: Optional[StrategyContext] = None
    pending_signal: Optional[Signal] = None
    close_open_position: Optional[Signal] = None
    open_trade: Optional[Trade] = None
    bars: list[Bar] = field(default_factory=list)


def group_signals(signals: Sequence[Signal], group_size: int = 2) -> list[tuple[Signal, ...]]:
    """
    Split signals into consecutive (enter, exit) pairs.

    Raises:
        LogicError: If the count is not a multiple of the group size or a pair is
            not exactly (enter, exit).
    """
    groups = [tuple(signals[i:i + group_size]) for i in range(0, len(signals), group_size)]
    for group in groups:
        if (
            len(group) != group_size
            or group[0].type != SignalType.ENTER
            or group[1].type != SignalType.EXIT
        ):
            raise LogicError("Invalid sequence or number of signals")
    return groups


def holds_open_position(signals: Sequence[Signal], close_open_position: Optional[Signal]) -> bool:
    """
    True if the synthetic close ends a position held over at least one bar.

    A position entered on the final bar shares its date with the close and
    cannot form a trade.
    """
    return close_open_position is not None and close_open_position.date > signals[-1].date


class Strategy:
    """
    Drives a rule set over an instrument's price history.

    A Strategy instance owns its regime filter: it is built on first use and
    reused for every later test, including concurrent ones.

    Args:
        rule_set: Object implementing BarEvaluator.
        price_provider: PriceProvider used by `test` (not needed for `run`).
        open_position_policy: How to value a position open at the end.
        initial_context: Context to start every test from. Defaults to the
            rule set's own initial context.
        date_searcher: Function resolving dates to bar indices.
        regime_filter: Prebuilt filter; skips the lazy build when given.
    """

    def __init__(
        self,
        rule_set: BarEvaluator,
        price_provider: Optional[PriceProvider] = None,
        open_position_policy: OpenPositionPolicy | str = OpenPositionPolicy.OPTIMISTIC,
        initial_context: Optional[StrategyContext] = None,
        date_searcher=search_for_date,
        regime_filter: Optional[RegimeFilter] = None,
    ):
        self.rule_set = rule_set
        self.price_provider = price_provider
        self.open_position_policy = OpenPositionPolicy(open_position_policy)
        self.initial_context = initial_context
        self.date_searcher = date_searcher
        self.regime_filter = regime_filter
        self._regime_lock: Optional[asyncio.Lock] = None

    async def test(
        self,
        instrument: Instrument,
        start_date=None,
        end_date=None,
        initial_context: Optional[StrategyContext] = None,
    ) -> StrategyResult:
        """
        Fetch the instrument's history and run the rule set over it.

        Raises:
            ValueError: If no price provider was configured.
            OutOfRangeError: If a window bound lies outside the history.
            LogicError: If the rule set emits an invalid signal sequence.
        """
        if self.price_provider is None:
            raise ValueError("Strategy.test requires a price_provider")

        bars = await self.price_provider.fetch_price_history(instrument.id)
        await self.ensure_regime_filter()
        return self.run(instrument, bars, start_date, end_date, initial_context)

    async def ensure_regime_filter(self) -> Optional[RegimeFilter]:
        """Build and cache the regime filter if the rule set needs one."""
        spec = getattr(self.rule_set, 'regime_spec', None)
        if spec is None or self.regime_filter is not None:
            return self.regime_filter

        if self._regime_lock is None:
            self._regime_lock = asyncio.Lock()
        async with self._regime_lock:
            if self.regime_filter is None:
                if self.price_provider is None:
                    raise ValueError("A price_provider is required to build the regime filter")
                self.regime_filter = await build_regime_filter(self.price_provider, spec)
        return self.regime_filter

    def run(
        self,
        instrument: Instrument,
        bars: Sequence[Bar],
        start_date=None,
        end_date=None,
        initial_context: Optional[StrategyContext] = None,
    ) -> StrategyResult:
        """
        Synchronous core of `test` for bars already in hand.

        Uses the cached regime filter if one exists; otherwise the rule set
        sees regime None on every bar.
        """
        bars = list(bars)
        result = StrategyResult(instrument=instrument, bars=bars)
        if not bars:
            result.context = self._starting_context(initial_context)
            return result

        start_index, end_index = find_window(bars, start_date, end_date, self.date_searcher)
        window = bars[start_index:end_index + 1]

        context = self._starting_context(initial_context)
        signals: list[Signal] = []
        pending_signal = None
        close_open_position = None

        for index in range(1, len(window)):
            prior_bar, current_bar = window[index - 1], window[index]
            signal, context = self._evaluate(context, prior_bar, current_bar, instrument)
            if signal is not None:
                signals.append(signal)

            if index == len(window) - 1:
                pending_signal, _ = self._evaluate(context, current_bar, Bar.empty(), instrument)
                close_open_position = self.handle_open_positions(signals, current_bar, context, instrument)

        trades = self.summarize_signals(signals, close_open_position, instrument)
        open_trade = None
        if holds_open_position(signals, close_open_position):
            if self.open_position_policy == OpenPositionPolicy.EXCLUDE:
                open_trade = Trade(signals[-1], close_open_position, instrument)
            elif trades:
                open_trade = trades[-1]

        result.signals = signals
        result.trades = trades
        result.context = context
        result.pending_signal = pending_signal
        result.close_open_position = close_open_position
        result.open_trade = open_trade
        logger.debug(
            "%s: %d signals, %d trades, pending=%s",
            instrument.id,
            len(signals),
            len(trades),
            pending_signal.type.value if pending_signal is not None else None,
        )
        return result

    def _starting_context(self, initial_context: Optional[StrategyContext]) -> StrategyContext:
        base = initial_context or self.initial_context or self.rule_set.initial_context()
        return replace(base)

    def _evaluate(
        self,
        context: StrategyContext,
        prior_bar: Bar,
        current_bar: Bar,
        instrument: Instrument,
    ) -> tuple[Optional[Signal], StrategyContext]:
        if self.regime_filter is not None:
            context = replace(context, regime=self.regime_filter.lookup(prior_bar.date))
        return self.rule_set.evaluate(context, prior_bar, current_bar, instrument)

    def handle_open_positions(
        self,
        signals: Sequence[Signal],
        current_bar: Bar,
        context: StrategyContext,
        instrument: Instrument,
    ) -> Optional[Signal]:
        """
        Synthesize a closing signal if the series ends with a position open.

        Returns:
            A pending-status sell/exit dated on the final bar, or None when the
            signal count is even.

        Raises:
            LogicError: If the count is odd but the last signal is an exit.
        """
        if len(signals) % 2 == 0:
            return None

        if signals[-1].type != SignalType.ENTER:
            raise LogicError(
                "Logic error found: odd number of signals and the last signal is not an entry"
            )

        if self.open_position_policy == OpenPositionPolicy.OPTIMISTIC:
            price = current_bar.close
        else:
            price = context.trigger_price

        return Signal(
            instrument=instrument,
            price=price,
            date=current_bar.date,
            action=SignalAction.SELL,
            type=SignalType.EXIT,
            status=SignalStatus.PENDING,
            trigger_date=current_bar.date,
        )

    def summarize_signals(
        self,
        signals: Sequence[Signal],
        close_open_position: Optional[Signal],
        instrument: Instrument,
    ) -> list[Trade]:
        """
        Pair signals (plus the synthetic close, if any) into trades.

        Raises:
            LogicError: If a position is left open without a closing signal, or
                the sequence does not pair up as (enter, exit).
        """
        if not signals:
            return []

        odd = len(signals) % 2 == 1
        ends_with_entry = signals[-1].type == SignalType.ENTER
        if (odd and close_open_position is None) or (not odd and ends_with_entry):
            raise LogicError("No exit signal for open position provided")

        all_signals = list(signals)
        held = holds_open_position(signals, close_open_position)
        if held:
            all_signals.append(close_open_position)
        elif close_open_position is not None:
            logger.debug("%s: entered on the final bar, no trade yet", instrument.id)
            all_signals.pop()

        trades = [Trade(entry, exit, instrument) for entry, exit in group_signals(all_signals)]

        if held and self.open_position_policy == OpenPositionPolicy.EXCLUDE:
            trades.pop()
        return trades
