#!/usr/bin/env python3
"""
Run the breakout/retrace strategy over the universe and replay it as a portfolio.

**Purpose**: End-to-end run:
  1. Test every instrument in the universe (CSV directory or price API).
  2. Persist signals, pending signals, contexts and trades as JSON documents.
  3. Replay all trades through the cash/slot-limited portfolio.
  4. Build the daily equity timeline and save it as CSV.

**Usage**:
    From project root:
    ```bash
    # Offline, from data/prices/ (see fetch_price_history.py)
    python actions/run_breakout_backtest.py

    # Live from the price API, 10 slots, conservative end-of-test valuation
    python actions/run_breakout_backtest.py --source api --max-stocks 10 --policy conservative

    # Restrict the test window
    python actions/run_breakout_backtest.py --start 2015-01-01 --end 2020-12-31
    ```

**Outputs**:
  - DOCUMENT_STORE_DIR/{signals,pending-signals,context,trades,statistics}/*.json
  - data/results/breakout_equity_timeline.csv (or --timeline-path)
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

# Ensure project root is on path for imports
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from flipper_lab.config.settings import (
    OPEN_POSITION_POLICIES,
    SELECTION_METHODS,
    BacktestSettings,
    get_settings,
)
from flipper_lab.data.io import write_normalized_csv
from flipper_lab.orchestration.pipeline import run_full_backtest
from flipper_lab.utils.log import setup_logging
from flipper_lab.venues.csv_price_provider import CsvPriceProvider
from flipper_lab.venues.document_store import JsonDocumentStore
from flipper_lab.venues.price_api_provider import PriceApiProvider


logger = logging.getLogger("flipper_lab.actions.run_breakout_backtest")

DEFAULT_TIMELINE_PATH = Path("data/results/breakout_equity_timeline.csv")


def parse_args(argv=None):
    """
    Parse command line arguments.

    Every portfolio option defaults to the value from settings (.env), so the
    flags only need to be given to override a run.
    """
    parser = argparse.ArgumentParser(
        description="Backtest the breakout/retrace strategy across the universe",
    )
    parser.add_argument("--source", choices=("csv", "api"), default="csv",
                        help="Price source (default: csv)")
    parser.add_argument("--price-dir", type=Path, default=None,
                        help="CSV price directory (default: PRICE_DATA_DIR)")
    parser.add_argument("--start", type=str, default=None, help="Window start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, default=None, help="Window end date (YYYY-MM-DD)")
    parser.add_argument("--start-capital", type=float, default=None)
    parser.add_argument("--max-stocks", type=int, default=None, help="Position slots")
    parser.add_argument("--selection", choices=SELECTION_METHODS, default=None,
                        help="Candidate ranking; best/worst use hindsight and are for benchmarking only")
    parser.add_argument("--policy", choices=OPEN_POSITION_POLICIES, default=None,
                        help="Valuation of positions open at the end of the test")
    parser.add_argument("--seed", type=int, default=None, help="Seed for random selection")
    parser.add_argument("--timeline-path", type=Path, default=DEFAULT_TIMELINE_PATH)
    parser.add_argument("--no-persist", action="store_true", help="Skip writing JSON documents")
    return parser.parse_args(argv)


def apply_overrides(settings: BacktestSettings, args) -> BacktestSettings:
    """Return settings with any CLI overrides applied."""
    overrides = {
        'start_capital': args.start_capital,
        'max_number_of_stocks': args.max_stocks,
        'selection_method': args.selection,
        'open_position_policy': args.policy,
        'seed': args.seed,
    }
    return dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})


async def run(args) -> int:
    settings = get_settings(require_price_api=args.source == "api")
    backtest_settings = apply_overrides(settings.backtest, args)

    if args.source == "api":
        price_provider = PriceApiProvider(settings.price_api)
    else:
        price_provider = CsvPriceProvider(args.price_dir or settings.storage.price_data_dir)

    document_sink = None if args.no_persist else JsonDocumentStore(settings.storage.document_dir)

    result = await run_full_backtest(
        backtest_settings,
        price_provider,
        document_sink=document_sink,
        start_date=args.start,
        end_date=args.end,
    )

    write_normalized_csv(result.timeline, args.timeline_path)

    final_total = result.timeline['total'].iloc[-1] if not result.timeline.empty else result.portfolio.cash_available
    logger.info("Timeline saved to %s", args.timeline_path)
    logger.info(
        "Final total %.2f (start %.2f), %d closed trades, %d open, %d signals not taken, %d instruments failed",
        final_total,
        backtest_settings.start_capital,
        len(result.portfolio.historical_trades),
        len(result.portfolio.open_trades),
        result.portfolio.signals_not_taken,
        len(result.run.failures),
    )
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings.logging.level, settings.logging.log_file)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
