"""
End-to-end pipeline: universe backtest -> portfolio replay -> equity timeline.

Wires settings into the concrete components so entry points (main.py,
actions/) stay a few lines long.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from flipper_lab.config.settings import BacktestSettings
from flipper_lab.execution.fee import Fee
from flipper_lab.execution.portfolio import Portfolio, PortfolioBacktestResult
from flipper_lab.orchestration.backtester import Backtester, BacktestRunSummary
from flipper_lab.strategies.base import Strategy
from flipper_lab.strategies.breakout_retrace import BreakoutRetraceRules, BreakoutRetraceRuleSet
from flipper_lab.utils.task_queue import TaskQueue
from flipper_lab.venues.base import DocumentSink, PriceProvider


logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    run: BacktestRunSummary
    portfolio: PortfolioBacktestResult
    timeline: pd.DataFrame


def build_strategy(settings: BacktestSettings, price_provider: PriceProvider, rules: Optional[BreakoutRetraceRules] = None) -> Strategy:
    """Breakout/retrace strategy using the configured regime instrument and policy."""
    if rules is None:
        rules = BreakoutRetraceRules(regime_instrument_id=settings.regime_instrument_id)
    return Strategy(
        BreakoutRetraceRuleSet(rules),
        price_provider=price_provider,
        open_position_policy=settings.open_position_policy,
    )


def build_portfolio(settings: BacktestSettings, price_provider: PriceProvider) -> Portfolio:
    return Portfolio(
        start_capital=settings.start_capital,
        max_number_of_stocks=settings.max_number_of_stocks,
        selection_method=settings.selection_method,
        fee=Fee(percentage=settings.fee_percentage, minimum=settings.fee_minimum),
        price_provider=price_provider,
        task_queue=TaskQueue(concurrency=settings.timeline_concurrency),
        reference_instrument_id=settings.regime_instrument_id,
        seed=settings.seed,
    )


def summarize(portfolio: Portfolio, result: PortfolioBacktestResult, timeline: pd.DataFrame) -> dict:
    """Statistics document for the document store."""
    final_total = float(timeline['total'].iloc[-1]) if not timeline.empty else result.cash_available
    return {
        'start_capital': portfolio.start_capital,
        'final_total': final_total,
        'total_return': final_total / portfolio.start_capital - 1,
        'closed_trades': len(result.historical_trades),
        'open_trades': len(result.open_trades),
        'signals_not_taken': result.signals_not_taken,
        'total_fees': sum(trade.total_fees for trade in result.historical_trades),
        'selection_method': portfolio.selection_method,
        'max_number_of_stocks': portfolio.max_number_of_stocks,
    }


async def run_full_backtest(
    settings: BacktestSettings,
    price_provider: PriceProvider,
    document_sink: Optional[DocumentSink] = None,
    strategy: Optional[Strategy] = None,
    start_date=None,
    end_date=None,
) -> PipelineResult:
    """
    Backtest the universe, replay it through the portfolio and build the timeline.

    The statistics document is written as "portfolio" when a sink is given.
    """
    strategy = strategy or build_strategy(settings, price_provider)
    backtester = Backtester(
        strategy,
        price_provider,
        document_sink=document_sink,
        task_queue=TaskQueue(concurrency=settings.concurrent_tests),
    )
    run = await backtester.run(start_date=start_date, end_date=end_date)

    portfolio = build_portfolio(settings, price_provider)
    portfolio_result = portfolio.backtest(run.all_trades())
    await portfolio.generate_timeline()
    timeline = portfolio.timeline_frame()

    if document_sink is not None:
        await document_sink.save_statistics('portfolio', summarize(portfolio, portfolio_result, timeline))

    return PipelineResult(run=run, portfolio=portfolio_result, timeline=timeline)
