"""
flipper_lab – Main entry point.

Loads settings from the environment, configures logging and runs the full
universe backtest: against the price API when PRICE_API_URL is set, otherwise
against the CSV files in PRICE_DATA_DIR. For per-run options use
actions/run_breakout_backtest.py.
"""

import asyncio

from flipper_lab.config.settings import get_settings
from flipper_lab.orchestration.pipeline import run_full_backtest
from flipper_lab.utils.log import setup_logging
from flipper_lab.venues.csv_price_provider import CsvPriceProvider
from flipper_lab.venues.document_store import JsonDocumentStore
from flipper_lab.venues.price_api_provider import PriceApiProvider


async def run() -> None:
    settings = get_settings()
    if settings.price_api is not None:
        price_provider = PriceApiProvider(settings.price_api)
    else:
        price_provider = CsvPriceProvider(settings.storage.price_data_dir)

    await run_full_backtest(
        settings.backtest,
        price_provider,
        document_sink=JsonDocumentStore(settings.storage.document_dir),
    )


def main() -> None:
    settings = get_settings()
    setup_logging(settings.logging.level, settings.logging.log_file)
    asyncio.run(run())


if __name__ == "__main__":
    main()
