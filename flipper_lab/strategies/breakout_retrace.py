"""
Breakout/retrace rule set ("flipper").

**Conceptual**: The rule set flips between a bullish and a bearish bias on
percentage moves away from the most recent extreme:
  - While bearish (or neutral), it tracks the running low. A close at or above
    low * entry_factor (default +20%) is a breakout: flip to bull and buy at the
    next open, provided the market regime is bullish.
  - While bullish, it tracks the running high. A close at or below
    high * exit_factor (default -16.7%) is a retrace: flip to bear and sell at
    the next open, provided a position was actually entered. In a bearish
    regime the tighter bearish_regime_exit_factor applies instead.

The trigger price (where the next flip would happen) is recomputed on every
bar, flip or not, and is what the conservative open-position policy uses to
value a position still open at the end of a test.

**Mathematical** (defaults):
    entry: close_{i-1} >= low  * 6/5
    exit:  close_{i-1} <= high * 5/6     (regime bull)
           close_{i-1} <= high * 11/12   (regime bear or unknown)
"""

from dataclasses import dataclass, replace
from typing import Optional

from flipper_lab.data.schemas import Bar, Instrument, InstrumentId
from flipper_lab.execution.signal import Signal, SignalAction, SignalType
from flipper_lab.strategies.context import Bias, StrategyContext
from flipper_lab.strategies.regime import RegimeSpec
from flipper_lab.utils.errors import LogicError


@dataclass(frozen=True)
class BreakoutRetraceRules:
    """
    Parameters of the breakout/retrace rule set.

    Attributes:
        entry_factor: Multiple of the running low that triggers an entry.
        exit_factor: Multiple of the running high that triggers an exit in a
            bullish regime.
        entry_in_bearish_regime: Emit entries even when the regime is not bull.
        bearish_regime_exit_factor: Exit multiple used when the regime is not bull.
        regime_instrument_id: Reference instrument for the regime filter; None
            disables the filter (regime is then always unknown).
        regime_lookback: Moving-average window for the regime filter.
        regime_operator: BULL when `close <op> average`.
        regime_type: 'SMA' or 'EMA'.
        use_high_and_low: Track extremes from bar highs/lows instead of closes.
    """
    entry_factor: float = 6 / 5
    exit_factor: float = 5 / 6
    entry_in_bearish_regime: bool = False
    bearish_regime_exit_factor: float = 11 / 12
    regime_instrument_id: Optional[InstrumentId] = 19002
    regime_lookback: int = 200
    regime_operator: str = '>='
    regime_type: str = 'SMA'
    use_high_and_low: bool = False

    def __post_init__(self):
        if self.entry_factor <= 1:
            raise ValueError(f"entry_factor must be > 1, got {self.entry_factor}")
        if not 0 < self.exit_factor < 1:
            raise ValueError(f"exit_factor must be in (0, 1), got {self.exit_factor}")
        if not 0 < self.bearish_regime_exit_factor < 1:
            raise ValueError(
                f"bearish_regime_exit_factor must be in (0, 1), got {self.bearish_regime_exit_factor}"
            )


class BreakoutRetraceRuleSet:
    """
    Per-bar evaluator implementing the breakout/retrace rules.

    Stateless apart from its parameters: all per-instrument state travels in
    the StrategyContext, so one instance can serve many concurrent tests.
    """

    def __init__(self, rules: Optional[BreakoutRetraceRules] = None):
        self.rules = rules or BreakoutRetraceRules()
        if self.rules.regime_instrument_id is None:
            self.regime_spec = None
        else:
            self.regime_spec = RegimeSpec(
                instrument_id=self.rules.regime_instrument_id,
                lookback=self.rules.regime_lookback,
                operator=self.rules.regime_operator,
                average_type=self.rules.regime_type,
            )

    def initial_context(self) -> StrategyContext:
        return StrategyContext(bias=Bias.NEUTRAL)

    def evaluate(
        self,
        context: StrategyContext,
        prior_bar: Bar,
        current_bar: Bar,
        instrument: Instrument,
    ) -> tuple[Optional[Signal], StrategyContext]:
        high_price, low_price = self.update_extremes(context, prior_bar)
        context = replace(context, high_price=high_price, low_price=low_price)

        signal, context = self.check_for_trigger(context, prior_bar, current_bar, instrument)
        if signal is not None:
            context = replace(context, last_signal=signal)
        return signal, context

    def update_extremes(self, context: StrategyContext, bar: Bar) -> tuple[float, float]:
        """Running (high, low) after seeing `bar`; unset or zero extremes are replaced."""
        if self.rules.use_high_and_low:
            bar_high, bar_low = bar.high, bar.low
        else:
            bar_high = bar_low = bar.close

        high_price = bar_high if not context.high_price else max(context.high_price, bar_high)
        low_price = bar_low if not context.low_price else min(context.low_price, bar_low)
        return high_price, low_price

    def check_for_trigger(
        self,
        context: StrategyContext,
        prior_bar: Bar,
        current_bar: Bar,
        instrument: Instrument,
    ) -> tuple[Optional[Signal], StrategyContext]:
        """
        Apply the flip rules for the current bias.

        Raises:
            LogicError: If the context carries an unknown bias.
        """
        rules = self.rules
        close = prior_bar.close
        regime_is_bull = context.regime == Bias.BULL

        if context.bias in (Bias.BEAR, Bias.NEUTRAL):
            if close >= context.low_price * rules.entry_factor:
                high_price = close
                context = replace(
                    context,
                    bias=Bias.BULL,
                    high_price=high_price,
                    trigger_price=high_price * rules.exit_factor,
                )
                if regime_is_bull or rules.entry_in_bearish_regime:
                    return self._signal(instrument, current_bar, prior_bar, SignalAction.BUY, SignalType.ENTER), context
                return None, context

            return None, replace(context, trigger_price=context.low_price * rules.entry_factor)

        if context.bias == Bias.BULL:
            exit_factor = rules.exit_factor if regime_is_bull else rules.bearish_regime_exit_factor
            if close <= context.high_price * exit_factor:
                low_price = close
                context = replace(
                    context,
                    bias=Bias.BEAR,
                    low_price=low_price,
                    trigger_price=low_price * rules.entry_factor,
                )
                last_signal = context.last_signal
                if last_signal is not None and last_signal.type == SignalType.ENTER:
                    return self._signal(instrument, current_bar, prior_bar, SignalAction.SELL, SignalType.EXIT), context
                return None, context

            return None, replace(context, trigger_price=context.high_price * rules.exit_factor)

        raise LogicError(f"Invalid bias value: {context.bias!r}")

    @staticmethod
    def _signal(
        instrument: Instrument,
        current_bar: Bar,
        prior_bar: Bar,
        action: SignalAction,
        signal_type: SignalType,
    ) -> Signal:
        # Executes at the next bar's open; None/None on the empty probe bar.
        return Signal(
            instrument=instrument,
            price=current_bar.open,
            date=current_bar.date,
            action=action,
            type=signal_type,
            trigger_date=prior_bar.date,
        )
