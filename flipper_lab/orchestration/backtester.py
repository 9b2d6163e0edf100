"""
Universe-wide strategy backtest.

**Conceptual**: Runs one Strategy over every instrument in the universe:

    fetch universe -> clear stale pending signals
      -> for each instrument (at most N in parallel via TaskQueue):
           strategy.test(instrument) -> persist signals, pending signal,
                                        context and trades
      -> collect results; failed instruments are logged and skipped

An instrument failing (missing history, malformed data, a LogicError from the
rule set) never aborts the run; it shows up in `BacktestRunSummary.failures`.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Optional, Sequence

from flipper_lab.data.schemas import Instrument, InstrumentId
from flipper_lab.execution.signal import Signal
from flipper_lab.execution.trade import Trade
from flipper_lab.strategies.base import Strategy, StrategyResult
from flipper_lab.utils.task_queue import TaskQueue
from flipper_lab.venues.base import DocumentSink, PriceProvider


logger = logging.getLogger(__name__)


@dataclass
class BacktestRunSummary:
    """
    Results of a universe run.

    Attributes:
        results: Successful strategy results, in universe order.
        failures: Instrument id -> exception for instruments that failed.
    """
    results: list[StrategyResult] = field(default_factory=list)
    failures: dict[InstrumentId, Exception] = field(default_factory=dict)

    def all_trades(self) -> list[Trade]:
        return [trade for result in self.results for trade in result.trades]

    def pending_signals(self) -> list[Signal]:
        return [result.pending_signal for result in self.results if result.pending_signal is not None]


class Backtester:
    """
    Runs a Strategy across an instrument universe and persists the results.

    Args:
        strategy: Strategy to test every instrument with.
        price_provider: Source of the universe (the strategy fetches bars itself).
        document_sink: Optional DocumentSink; results are not persisted when None.
        task_queue: Scheduler bounding parallel instrument tests (cap 8 default).
    """

    def __init__(
        self,
        strategy: Strategy,
        price_provider: PriceProvider,
        document_sink: Optional[DocumentSink] = None,
        task_queue: Optional[TaskQueue] = None,
    ):
        self.strategy = strategy
        self.price_provider = price_provider
        self.document_sink = document_sink
        self.task_queue = task_queue or TaskQueue(concurrency=8)

    async def run(
        self,
        instruments: Optional[Sequence[Instrument]] = None,
        start_date=None,
        end_date=None,
    ) -> BacktestRunSummary:
        """
        Test every instrument and persist the outcome.

        Args:
            instruments: Universe to test; fetched from the price provider when None.
            start_date: Optional window start passed to every test.
            end_date: Optional window end passed to every test.
        """
        if instruments is None:
            instruments = await self.price_provider.fetch_instruments()
        logger.info("Backtesting %d instruments", len(instruments))

        if self.document_sink is not None:
            await self.document_sink.clear_pending_signals()

        # Build the shared regime filter before fanning out.
        await self.strategy.ensure_regime_filter()

        tasks = [
            partial(self.test_instrument, instrument, start_date, end_date)
            for instrument in instruments
        ]
        outcomes = await self.task_queue.run(tasks)

        summary = BacktestRunSummary()
        for instrument, outcome in zip(instruments, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Backtest failed for %s: %s", instrument.id, outcome)
                summary.failures[instrument.id] = outcome
            else:
                summary.results.append(outcome)

        logger.info(
            "Backtest finished: %d succeeded, %d failed, %d pending signals",
            len(summary.results),
            len(summary.failures),
            len(summary.pending_signals()),
        )
        return summary

    async def test_instrument(self, instrument: Instrument, start_date=None, end_date=None) -> StrategyResult:
        """Test one instrument and persist its documents."""
        logger.info("Testing %s (%s)", instrument.id, instrument.name or "-")
        result = await self.strategy.test(instrument, start_date, end_date)

        if self.document_sink is not None:
            await asyncio.gather(
                self.document_sink.save_signals(instrument.id, result.signals),
                self.document_sink.save_pending_signal(instrument.id, result.pending_signal),
                self.document_sink.save_context(instrument.id, result.context),
                self.document_sink.save_trades(instrument.id, result.trades),
            )
        return result
