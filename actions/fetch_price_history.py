#!/usr/bin/env python3
"""
Fetch price histories from the price API into local CSV files.

**Purpose**: Snapshot the instrument universe and every instrument's history
into PRICE_DATA_DIR so backtests can run offline and reproducibly with
`run_breakout_backtest.py --source csv`.

**Usage**:
    From project root:
    ```bash
    # Whole universe plus the regime reference instrument
    python actions/fetch_price_history.py --universe

    # Specific instruments
    python actions/fetch_price_history.py 19002 1234 5678
    ```

**Outputs** (in PRICE_DATA_DIR, default data/prices/):
  - instruments.csv: universe (id, name, list_name), with --universe
  - <id>.csv: canonical price history per instrument, newest first
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import pandas as pd

# Ensure project root is on path for imports
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from flipper_lab.config.settings import get_settings
from flipper_lab.data.io import write_price_history_csv, write_universe_csv
from flipper_lab.data.schemas import Instrument, bars_to_frame
from flipper_lab.utils.log import setup_logging
from flipper_lab.utils.task_queue import TaskQueue
from flipper_lab.venues.price_api_provider import PriceApiProvider


logger = logging.getLogger("flipper_lab.actions.fetch_price_history")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Fetch price histories from the price API into CSV files",
    )
    parser.add_argument(
        "instrument_ids",
        nargs="*",
        help="Instrument ids to fetch (e.g., 19002 1234)",
    )
    parser.add_argument(
        "--universe",
        action="store_true",
        help="Fetch the whole universe and write instruments.csv",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Target directory (default: PRICE_DATA_DIR)",
    )
    args = parser.parse_args(argv)
    if not args.instrument_ids and not args.universe:
        parser.error("Provide instrument ids or --universe")
    return args


async def fetch_and_save(provider, instrument_id, output_dir: Path) -> int:
    bars = await provider.fetch_price_history(instrument_id)
    if not bars:
        logger.warning("No price data for %s", instrument_id)
        return 0
    write_price_history_csv(bars_to_frame(bars), output_dir / f"{instrument_id}.csv")
    return len(bars)


async def run(args) -> int:
    settings = get_settings(require_price_api=True)
    output_dir = args.output_dir or settings.storage.price_data_dir

    with PriceApiProvider(settings.price_api) as provider:
        instrument_ids = list(args.instrument_ids)
        if args.universe:
            instruments: list[Instrument] = await provider.fetch_instruments()
            write_universe_csv(
                pd.DataFrame([instrument.to_dict() for instrument in instruments]),
                output_dir / "instruments.csv",
            )
            instrument_ids.extend(instrument.id for instrument in instruments)

        reference_id = settings.backtest.regime_instrument_id
        if reference_id not in {str(i) for i in instrument_ids}:
            instrument_ids.append(reference_id)

        queue = TaskQueue(concurrency=settings.backtest.concurrent_tests)
        results = await queue.run([
            lambda instrument_id=instrument_id: fetch_and_save(provider, instrument_id, output_dir)
            for instrument_id in instrument_ids
        ])

    failures = 0
    for instrument_id, result in zip(instrument_ids, results):
        if isinstance(result, Exception):
            failures += 1
            logger.error("Failed to fetch %s: %s", instrument_id, result)
        else:
            logger.info("Saved %d bars for %s", result, instrument_id)
    return 1 if failures else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings.logging.level, settings.logging.log_file)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
