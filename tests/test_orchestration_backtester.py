"""
Tests for flipper_lab/orchestration/backtester.py and pipeline.py

**Purpose**: Run the breakout/retrace strategy over a tiny in-memory universe
end to end:
  - AAA makes one complete round trip.
  - BBB enters late and is still open at the end (optimistic close).
  - CCC has no price history and must fail in isolation.
"""

import asyncio

import pytest

from flipper_lab.config.settings import BacktestSettings
from flipper_lab.data.schemas import Instrument
from flipper_lab.execution.fee import Fee
from flipper_lab.execution.portfolio import Portfolio
from flipper_lab.orchestration.backtester import Backtester
from flipper_lab.orchestration.pipeline import build_portfolio, build_strategy, run_full_backtest
from flipper_lab.strategies.base import OpenPositionPolicy, Strategy
from flipper_lab.strategies.breakout_retrace import BreakoutRetraceRules, BreakoutRetraceRuleSet
from flipper_lab.utils.task_queue import TaskQueue
from flipper_lab.venues.document_store import JsonDocumentStore


@pytest.fixture
def provider(bar_factory, price_provider_factory):
    histories = {
        'REF': bar_factory([100 + i for i in range(10)]),
        'AAA': bar_factory([100, 100, 100, 110, 121, 130, 125, 115, 105, 100]),
        'BBB': bar_factory([100, 100, 100, 100, 130, 131, 132, 133, 134, 135]),
    }
    instruments = [Instrument(id='AAA'), Instrument(id='BBB'), Instrument(id='CCC')]
    return price_provider_factory(histories, instruments=instruments)


@pytest.fixture
def strategy(provider):
    rules = BreakoutRetraceRules(regime_instrument_id='REF', regime_lookback=3)
    return Strategy(BreakoutRetraceRuleSet(rules), price_provider=provider)


def test_backtester_runs_universe_and_isolates_failures(provider, strategy, tmp_path):
    store = JsonDocumentStore(tmp_path)
    store.write_document('pending-signals', 'OLD', {'signal': {}})
    backtester = Backtester(strategy, provider, document_sink=store, task_queue=TaskQueue(concurrency=2))

    summary = asyncio.run(backtester.run())

    assert [result.instrument.id for result in summary.results] == ['AAA', 'BBB']
    assert list(summary.failures) == ['CCC']
    assert isinstance(summary.failures['CCC'], FileNotFoundError)
    assert provider.calls['REF'] == 1

    aaa, bbb = summary.results
    assert [signal.type.value for signal in aaa.signals] == ['enter', 'exit']
    assert len(bbb.signals) == 1
    assert bbb.close_open_position.price == 135.0
    assert len(summary.all_trades()) == 2
    assert summary.pending_signals() == []

    assert store.read_document('pending-signals', 'OLD') is None
    assert len(store.read_document('signals', 'AAA')['signals']) == 2
    assert len(store.read_document('trades', 'BBB')['trades']) == 1
    assert store.read_document('context', 'AAA')['context']['bias'] == 'bear'


def test_backtester_without_sink(provider, strategy):
    summary = asyncio.run(Backtester(strategy, provider).run(instruments=[Instrument(id='AAA')]))

    assert len(summary.results) == 1
    assert summary.failures == {}


def test_run_full_backtest(provider, strategy, tmp_path):
    settings = BacktestSettings(regime_instrument_id='REF', max_number_of_stocks=2, seed=1)
    store = JsonDocumentStore(tmp_path)

    result = asyncio.run(run_full_backtest(settings, provider, document_sink=store, strategy=strategy))

    assert list(result.run.failures) == ['CCC']
    assert len(result.portfolio.historical_trades) == 2
    assert result.portfolio.signals_not_taken == 0
    assert len(result.timeline) == 10
    for row in result.timeline.itertuples():
        assert row.total == pytest.approx(row.cash_available + row.total_position_value)
    assert result.timeline['total'].iloc[0] == pytest.approx(100_000)

    statistics = store.read_document('statistics', 'portfolio')
    assert statistics['closed_trades'] == 2
    assert statistics['final_total'] == pytest.approx(result.timeline['total'].iloc[-1])
    assert statistics['start_capital'] == 100_000


def test_build_strategy_and_portfolio_follow_settings(provider):
    settings = BacktestSettings(
        regime_instrument_id='REF',
        open_position_policy='exclude',
        max_number_of_stocks=5,
        selection_method='worst',
        fee_percentage=0.001,
        fee_minimum=0,
        timeline_concurrency=3,
    )

    strategy = build_strategy(settings, provider)
    portfolio = build_portfolio(settings, provider)

    assert strategy.open_position_policy is OpenPositionPolicy.EXCLUDE
    assert strategy.rule_set.regime_spec.instrument_id == 'REF'
    assert portfolio.max_number_of_stocks == 5
    assert portfolio.selection_method == 'worst'
    assert portfolio.fee.percentage == 0.001
    assert portfolio.task_queue.concurrency == 3
    assert portfolio.reference_instrument_id == 'REF'


def test_entry_on_final_bar_leaves_portfolio_and_timeline_intact(bar_factory, price_provider_factory):
    provider = price_provider_factory({
        'REF': bar_factory([100 + i for i in range(10)]),
        'AAA': bar_factory([100, 100, 100, 110, 121, 130, 125, 115, 105, 100]),
        'LATE': bar_factory([100] * 8 + [130, 131]),
    })
    rules = BreakoutRetraceRules(regime_instrument_id=None, entry_in_bearish_regime=True)
    strategy = Strategy(BreakoutRetraceRuleSet(rules), price_provider=provider)
    portfolio = Portfolio(
        start_capital=1000,
        max_number_of_stocks=2,
        fee=Fee(percentage=0, minimum=0),
        price_provider=provider,
        reference_instrument_id='REF',
    )

    async def run():
        aaa = await strategy.test(Instrument(id='AAA'))
        late = await strategy.test(Instrument(id='LATE'))
        backtest = portfolio.backtest(aaa.trades + late.trades)
        timeline = await portfolio.generate_timeline()
        return aaa, late, backtest, timeline

    aaa, late, backtest, timeline = asyncio.run(run())

    # LATE enters at the final bar's open: reported, but not a trade
    assert late.signals[0].date == late.bars[-1].date
    assert late.close_open_position is not None
    assert late.trades == []
    assert late.open_trade is None

    assert len(aaa.trades) == 1
    assert backtest.open_trades == []
    assert backtest.available_slots == 2
    assert backtest.historical_trades == aaa.trades

    expected_total = 1000 + aaa.trades[0].result_in_cash
    last = timeline[-1]
    assert last.date == late.bars[-1].date
    assert last.total_position_value == 0
    assert last.cash_available == pytest.approx(expected_total)
    assert last.total == pytest.approx(expected_total)
