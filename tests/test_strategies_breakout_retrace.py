"""
Tests for flipper_lab/strategies/breakout_retrace.py

**Purpose**: Exercise the flip rules one bar pair at a time, then run whole
series through the Strategy engine:
  - Breakouts enter only in a bull regime (unless bearish entries are allowed).
  - Retraces exit only after an entry, with the tighter factor when the
    regime is not bull.
  - Decisions use bar i-1; execution uses bar i's open and date.
"""

from dataclasses import replace

import pandas as pd
import pytest

from flipper_lab.data.schemas import Bar, Instrument
from flipper_lab.execution.signal import Signal, SignalAction, SignalType
from flipper_lab.strategies.base import Strategy
from flipper_lab.strategies.breakout_retrace import BreakoutRetraceRules, BreakoutRetraceRuleSet
from flipper_lab.strategies.context import Bias, StrategyContext
from flipper_lab.strategies.regime import RegimeFilter
from flipper_lab.utils.errors import LogicError


@pytest.fixture
def instrument():
    return Instrument(id='TEST', name='Test AB')


@pytest.fixture
def rule_set():
    return BreakoutRetraceRuleSet(BreakoutRetraceRules(regime_instrument_id=None))


def constant_regime(bars, bias):
    return RegimeFilter(pd.Series([bias] * len(bars), index=pd.DatetimeIndex([bar.date for bar in bars])))


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

def test_default_rules():
    rules = BreakoutRetraceRules()
    assert rules.entry_factor == pytest.approx(1.2)
    assert rules.exit_factor == pytest.approx(5 / 6)
    assert rules.bearish_regime_exit_factor == pytest.approx(11 / 12)
    assert rules.entry_in_bearish_regime is False
    assert rules.use_high_and_low is False


def test_default_regime_spec():
    spec = BreakoutRetraceRuleSet().regime_spec
    assert spec.instrument_id == 19002
    assert spec.lookback == 200
    assert spec.operator == '>='
    assert spec.average_type == 'SMA'


def test_regime_spec_disabled(rule_set):
    assert rule_set.regime_spec is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {'entry_factor': 1.0},
        {'exit_factor': 1.2},
        {'exit_factor': 0},
        {'bearish_regime_exit_factor': 1.0},
    ],
)
def test_invalid_rules_raise(kwargs):
    with pytest.raises(ValueError):
        BreakoutRetraceRules(**kwargs)


def test_initial_context_is_neutral(rule_set):
    context = rule_set.initial_context()
    assert context.bias is Bias.NEUTRAL
    assert context.high_price is None
    assert context.low_price is None


# ---------------------------------------------------------------------------
# Extremes
# ---------------------------------------------------------------------------

def test_update_extremes_from_closes(rule_set):
    bar = Bar(date=pd.Timestamp('2021-01-01'), open=100.0, high=130.0, low=90.0, close=110.0)

    assert rule_set.update_extremes(StrategyContext(), bar) == (110.0, 110.0)
    assert rule_set.update_extremes(StrategyContext(high_price=120.0, low_price=100.0), bar) == (120.0, 100.0)
    assert rule_set.update_extremes(StrategyContext(high_price=105.0, low_price=115.0), bar) == (110.0, 110.0)


def test_update_extremes_replaces_zero(rule_set):
    bar = Bar(date=pd.Timestamp('2021-01-01'), open=10.0, high=10.0, low=10.0, close=10.0)
    assert rule_set.update_extremes(StrategyContext(high_price=0, low_price=0), bar) == (10.0, 10.0)


def test_update_extremes_from_high_and_low():
    rule_set = BreakoutRetraceRuleSet(BreakoutRetraceRules(regime_instrument_id=None, use_high_and_low=True))
    bar = Bar(date=pd.Timestamp('2021-01-01'), open=100.0, high=130.0, low=90.0, close=110.0)

    assert rule_set.update_extremes(StrategyContext(), bar) == (130.0, 90.0)


# ---------------------------------------------------------------------------
# Entry rules
# ---------------------------------------------------------------------------

def test_breakout_in_bull_regime_enters_at_next_open(rule_set, instrument, bar_factory):
    prior_bar, current_bar = bar_factory([121, 126], opens=[121, 125])
    context = StrategyContext(bias=Bias.NEUTRAL, high_price=110.0, low_price=100.0, regime=Bias.BULL)

    signal, new_context = rule_set.evaluate(context, prior_bar, current_bar, instrument)

    assert signal.action is SignalAction.BUY
    assert signal.type is SignalType.ENTER
    assert signal.price == 125.0
    assert signal.date == current_bar.date
    assert signal.trigger_date == prior_bar.date
    assert new_context.bias is Bias.BULL
    assert new_context.high_price == 121.0
    assert new_context.trigger_price == pytest.approx(121.0 * 5 / 6)
    assert new_context.last_signal is signal
    # Input context is left untouched
    assert context.bias is Bias.NEUTRAL
    assert context.last_signal is None


@pytest.mark.parametrize("regime", [Bias.BEAR, None])
def test_breakout_without_bull_regime_flips_silently(rule_set, instrument, bar_factory, regime):
    prior_bar, current_bar = bar_factory([121, 126])
    context = StrategyContext(bias=Bias.BEAR, low_price=100.0, regime=regime)

    signal, new_context = rule_set.evaluate(context, prior_bar, current_bar, instrument)

    assert signal is None
    assert new_context.bias is Bias.BULL
    assert new_context.high_price == 121.0


def test_breakout_in_bearish_regime_when_allowed(instrument, bar_factory):
    rule_set = BreakoutRetraceRuleSet(
        BreakoutRetraceRules(regime_instrument_id=None, entry_in_bearish_regime=True)
    )
    prior_bar, current_bar = bar_factory([121, 126])
    context = StrategyContext(bias=Bias.BEAR, low_price=100.0, regime=Bias.BEAR)

    signal, _ = rule_set.evaluate(context, prior_bar, current_bar, instrument)

    assert signal.type is SignalType.ENTER


def test_no_breakout_updates_trigger(rule_set, instrument, bar_factory):
    prior_bar, current_bar = bar_factory([110, 111])
    context = StrategyContext(bias=Bias.NEUTRAL, low_price=100.0, regime=Bias.BULL)

    signal, new_context = rule_set.evaluate(context, prior_bar, current_bar, instrument)

    assert signal is None
    assert new_context.bias is Bias.NEUTRAL
    assert new_context.trigger_price == pytest.approx(120.0)


# ---------------------------------------------------------------------------
# Exit rules
# ---------------------------------------------------------------------------

@pytest.fixture
def bull_context(instrument):
    entry = Signal(instrument, 100.0, pd.Timestamp('2020-12-01'), 'buy', 'enter')
    return StrategyContext(bias=Bias.BULL, high_price=100.0, low_price=80.0, last_signal=entry)


def test_retrace_in_bull_regime_exits(rule_set, instrument, bar_factory, bull_context):
    prior_bar, current_bar = bar_factory([83, 82], opens=[83, 81.5])
    context = replace(bull_context, regime=Bias.BULL)

    signal, new_context = rule_set.evaluate(context, prior_bar, current_bar, instrument)

    assert signal.action is SignalAction.SELL
    assert signal.type is SignalType.EXIT
    assert signal.price == 81.5
    assert signal.date == current_bar.date
    assert new_context.bias is Bias.BEAR
    assert new_context.low_price == 83.0
    assert new_context.trigger_price == pytest.approx(83.0 * 1.2)
    assert new_context.last_signal is signal


def test_bear_regime_uses_tighter_exit(rule_set, instrument, bar_factory, bull_context):
    prior_bar, current_bar = bar_factory([90, 89])

    signal, _ = rule_set.evaluate(replace(bull_context, regime=Bias.BEAR), prior_bar, current_bar, instrument)
    assert signal.type is SignalType.EXIT

    signal, context = rule_set.evaluate(replace(bull_context, regime=Bias.BULL), prior_bar, current_bar, instrument)
    assert signal is None
    assert context.bias is Bias.BULL
    assert context.trigger_price == pytest.approx(100.0 * 5 / 6)


def test_retrace_without_entry_flips_silently(rule_set, instrument, bar_factory, bull_context):
    prior_bar, current_bar = bar_factory([80, 79])
    context = replace(bull_context, regime=Bias.BULL, last_signal=None)

    signal, new_context = rule_set.evaluate(context, prior_bar, current_bar, instrument)

    assert signal is None
    assert new_context.bias is Bias.BEAR
    assert new_context.low_price == 80.0


def test_invalid_bias_raises(rule_set, instrument, bar_factory):
    prior_bar, current_bar = bar_factory([100, 101])
    context = StrategyContext(bias='sideways', high_price=100.0, low_price=100.0)

    with pytest.raises(LogicError, match="Invalid bias"):
        rule_set.evaluate(context, prior_bar, current_bar, instrument)


def test_probe_bar_gives_pending_signal(rule_set, instrument, bar_factory):
    (prior_bar,) = bar_factory([121])
    context = StrategyContext(bias=Bias.NEUTRAL, low_price=100.0, regime=Bias.BULL)

    signal, _ = rule_set.evaluate(context, prior_bar, Bar.empty(), instrument)

    assert signal.is_pending
    assert signal.price is None
    assert signal.date is None
    assert signal.type is SignalType.ENTER


# ---------------------------------------------------------------------------
# Whole series through the engine
# ---------------------------------------------------------------------------

def test_rising_series_enters_once(rule_set, instrument, bar_factory):
    closes = list(range(100, 201))
    bars = bar_factory(closes)
    strategy = Strategy(rule_set, regime_filter=constant_regime(bars, Bias.BULL))

    result = strategy.run(instrument, bars)

    entries = [s for s in result.signals if s.type is SignalType.ENTER]
    assert len(entries) == 1
    assert len(result.signals) == 1
    decision_index = next(i for i, close in enumerate(closes) if close >= 100 * (6 / 5))
    assert entries[0].date == bars[decision_index + 1].date
    # Still open at the end: closed provisionally at the last close
    assert result.close_open_position.price == 200.0
    assert result.close_open_position.is_pending
    assert len(result.trades) == 1


def test_flat_series_emits_nothing(rule_set, instrument, bar_factory):
    bars = bar_factory([100.0] * 50)
    strategy = Strategy(rule_set, regime_filter=constant_regime(bars, Bias.BULL))

    result = strategy.run(instrument, bars)

    assert result.signals == []
    assert result.trades == []
    assert result.pending_signal is None
    assert result.close_open_position is None


def test_round_trip_executes_at_next_open(rule_set, instrument, bar_factory):
    closes = [100, 100, 100, 110, 121, 130, 125, 115, 105, 100]
    bars = bar_factory(closes, opens=[c + 0.5 for c in closes])
    strategy = Strategy(rule_set, regime_filter=constant_regime(bars, Bias.BULL))

    result = strategy.run(instrument, bars)

    assert [s.type for s in result.signals] == [SignalType.ENTER, SignalType.EXIT]
    entry, exit_signal = result.signals
    # Decided on the close of 121, executed on the following open
    assert entry.trigger_date == bars[4].date
    assert entry.date == bars[5].date
    assert entry.price == 130.5
    # 105 <= 130 * 5/6
    assert exit_signal.trigger_date == bars[8].date
    assert exit_signal.date == bars[9].date
    assert exit_signal.price == 100.5

    assert len(result.trades) == 1
    assert result.trades[0].result_per_stock == pytest.approx(-30.0)
    assert result.open_trade is None
    assert result.pending_signal is None
    assert result.context.bias is Bias.BEAR


def test_bear_regime_blocks_entries(rule_set, instrument, bar_factory):
    bars = bar_factory(list(range(100, 201)))
    strategy = Strategy(rule_set, regime_filter=constant_regime(bars, Bias.BEAR))

    result = strategy.run(instrument, bars)

    assert result.signals == []
    assert result.context.bias is Bias.BULL


def test_no_look_ahead(rule_set, instrument, bar_factory):
    """Changing bars after a decision never changes the decision."""
    closes = [100, 100, 110, 121, 130, 125, 115, 105, 100]
    bars = bar_factory(closes)
    altered = bars[:4] + bar_factory([500, 600, 700, 800, 900], start=bars[4].date)
    regime = constant_regime(bars, Bias.BULL)

    original = Strategy(rule_set, regime_filter=regime).run(instrument, bars)
    changed = Strategy(rule_set, regime_filter=regime).run(instrument, altered)

    assert original.signals[0].trigger_date == changed.signals[0].trigger_date == bars[3].date
    assert original.signals[0].date == changed.signals[0].date == bars[4].date


def test_pending_entry_on_last_bar(rule_set, instrument, bar_factory):
    bars = bar_factory([100, 100, 100, 130])
    strategy = Strategy(rule_set, regime_filter=constant_regime(bars, Bias.BULL))

    result = strategy.run(instrument, bars)

    assert result.signals == []
    assert result.pending_signal is not None
    assert result.pending_signal.is_pending
    assert result.pending_signal.type is SignalType.ENTER
