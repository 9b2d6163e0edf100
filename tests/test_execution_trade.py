"""
Tests for flipper_lab/execution/trade.py

**Purpose**: Pin the trade economics with hand-checked numbers:
  - 34.43 -> 43.53 gives 9.1 per share and a 26.43% return.
  - Quantity and fee changes are reflected in every derived value.
  - The mark-to-market series starts at the fee-adjusted initial value and
    stops the bar before the exit.
"""

import pandas as pd
import pytest

from flipper_lab.data.schemas import Instrument
from flipper_lab.execution.fee import Fee
from flipper_lab.execution.signal import Signal
from flipper_lab.execution.trade import Trade, round_number
from flipper_lab.utils.errors import ValidationError


@pytest.fixture
def instrument():
    return Instrument(id=1001, name='Golden AB')


@pytest.fixture
def entry(instrument):
    return Signal(instrument, 34.43, pd.Timestamp('2019-01-20'), 'buy', 'enter')


@pytest.fixture
def exit_signal(instrument):
    return Signal(instrument, 43.53, pd.Timestamp('2020-01-19'), 'sell', 'exit')


@pytest.fixture
def trade(entry, exit_signal):
    return Trade(entry, exit_signal)


def test_result_per_stock_and_percent(trade):
    assert trade.result_per_stock == pytest.approx(9.1)
    assert trade.result_percent == pytest.approx(0.2643043857101366)


def test_defaults(trade, instrument):
    assert trade.quantity == 1
    assert trade.fee is None
    assert trade.instrument == instrument
    assert trade.total_fees == 0


def test_values_with_quantity(trade):
    trade.set_quantity(123)

    assert trade.initial_value == pytest.approx(4234.89)
    assert trade.final_value == pytest.approx(5354.19)
    assert trade.result_in_cash == pytest.approx(123 * 9.1)


def test_values_with_fee(trade):
    trade.set_quantity(100).set_fee(Fee(percentage=0.01, minimum=25))

    assert trade.total_fees == pytest.approx(77.96)
    assert trade.entry_price == pytest.approx(34.7743)
    assert trade.exit_price == pytest.approx(43.0947)
    assert trade.result_per_stock == pytest.approx(8.3204)
    assert trade.initial_value == pytest.approx(3477.43)
    assert trade.final_value == pytest.approx(4309.47)
    assert trade.result_in_cash == pytest.approx(832.04)


def test_fee_is_spread_over_quantity(trade):
    trade.set_quantity(123).set_fee(Fee(percentage=0.01, minimum=25))

    # 1% of 4234.89 and of 5354.19, spread over 123 shares
    assert trade.entry_price == pytest.approx(34.7743)
    assert trade.exit_price == pytest.approx(43.0947)
    assert trade.initial_value == pytest.approx(4277.2389)
    assert trade.final_value == pytest.approx(5300.6481)


def test_derived_values_follow_quantity_changes(trade):
    """No stale values: changing quantity after the fee recomputes everything."""
    trade.set_fee(Fee(percentage=0.01, minimum=25)).set_quantity(100)
    assert trade.total_fees == pytest.approx(77.96)

    trade.set_quantity(200)
    assert trade.total_fees == pytest.approx(155.92)
    assert trade.initial_value == pytest.approx(200 * 34.43 * 1.01)


def test_minimum_fee_is_spread_over_shares(trade):
    trade.set_quantity(5).set_fee(Fee(percentage=0.0025, minimum=1))

    assert trade.entry_price == pytest.approx(34.43 + 0.2)
    assert trade.exit_price == pytest.approx(43.53 - 0.2)
    assert trade.total_fees == pytest.approx(2.0)


def test_setters_return_trade(trade):
    assert trade.set_quantity(5) is trade
    assert trade.set_fee(Fee()) is trade


def test_zero_quantity(trade):
    trade.set_quantity(0).set_fee(Fee())

    assert trade.initial_value == 0
    assert trade.final_value == 0
    assert trade.total_fees == 0
    assert trade.entry_price == 34.43


@pytest.mark.parametrize("quantity", [-1, 1.5, '10', True])
def test_invalid_quantity_raises(trade, quantity):
    with pytest.raises(ValidationError):
        trade.set_quantity(quantity)


@pytest.mark.parametrize(
    "amount, expected",
    [
        (100_000, 2904),
        (154654.234645345, 4491),
        (34.42, 0),
    ],
)
def test_calculate_quantity(trade, amount, expected):
    assert trade.calculate_quantity(amount) == expected


def test_entry_after_exit_raises(instrument):
    entry = Signal(instrument, 10.0, pd.Timestamp('2020-02-01'), 'buy', 'enter')
    exit_signal = Signal(instrument, 12.0, pd.Timestamp('2020-01-01'), 'sell', 'exit')
    with pytest.raises(ValidationError, match="must precede"):
        Trade(entry, exit_signal)


def test_same_date_executed_exit_raises(instrument):
    entry = Signal(instrument, 10.0, pd.Timestamp('2020-01-01'), 'buy', 'enter')
    exit_signal = Signal(instrument, 12.0, pd.Timestamp('2020-01-01'), 'sell', 'exit')
    with pytest.raises(ValidationError):
        Trade(entry, exit_signal)


def test_same_date_provisional_close_raises(instrument):
    entry = Signal(instrument, 10.0, pd.Timestamp('2020-01-01'), 'buy', 'enter')
    close = Signal(instrument, 11.0, pd.Timestamp('2020-01-01'), 'sell', 'exit', status='pending')
    with pytest.raises(ValidationError, match="must precede"):
        Trade(entry, close)


def test_pending_signal_without_price_raises(instrument, entry):
    pending = Signal(instrument, None, None, 'sell', 'exit')
    with pytest.raises(ValidationError, match="price and a date"):
        Trade(entry, pending)


def test_get_trade_performance(bar_factory, instrument):
    bars = bar_factory([10, 11, 12, 13, 14, 15, 16, 17, 18, 19], start='2021-01-01')
    entry = Signal(instrument, 12.0, bars[2].date, 'buy', 'enter')
    exit_signal = Signal(instrument, 16.0, bars[6].date, 'sell', 'exit')
    trade = Trade(entry, exit_signal, quantity=10, fee=Fee(percentage=0.01, minimum=0))

    performance = trade.get_trade_performance(bars)

    assert list(performance.index) == [bar.date for bar in bars[2:6]]
    assert performance.index.name == 'date'
    assert performance.name == 1001
    assert performance.iloc[0] == pytest.approx(trade.initial_value)
    assert performance.iloc[0] == pytest.approx(121.2)
    assert list(performance.iloc[1:]) == pytest.approx([130.0, 140.0, 150.0])


def test_get_trade_performance_empty_when_same_bar(bar_factory, instrument):
    """A weekend entry and the following Monday exit resolve to the same bar."""
    bars = bar_factory([10, 11, 12], start='2021-01-01', freq='B')
    entry = Signal(instrument, 11.0, pd.Timestamp('2021-01-02'), 'buy', 'enter')
    exit_signal = Signal(instrument, 11.0, bars[1].date, 'sell', 'exit')

    performance = Trade(entry, exit_signal).get_trade_performance(bars)

    assert performance.empty


def test_to_dict(trade):
    data = trade.set_quantity(123).to_dict()

    assert data['instrument']['id'] == 1001
    assert data['quantity'] == 123
    assert data['entry']['price'] == 34.43
    assert data['initial_value'] == pytest.approx(4234.89)


def test_round_number_hides_float_noise():
    assert round_number(34.43 * 123) == 4234.89
