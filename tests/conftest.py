"""
Pytest configuration file.

Ensures the repo root is on sys.path so that 'import flipper_lab...' works,
and provides shared fixtures for synthetic bar series and an in-memory
price provider.
"""
import asyncio
import sys
from collections import Counter
from pathlib import Path

import pandas as pd
import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from flipper_lab.data.schemas import Bar, Instrument  # noqa: E402


def make_bars(closes, start='2021-01-04', opens=None, freq='D'):
    """
    Build an ascending Bar list from closing prices.

    Args:
        closes: Closing prices, one per bar.
        start: Date of the first bar.
        opens: Optional opening prices (default: same as closes).
        freq: pandas frequency string for the dates.
    """
    dates = pd.date_range(start=start, periods=len(closes), freq=freq)
    opens = list(opens) if opens is not None else list(closes)
    return [
        Bar(
            date=date,
            open=float(open_),
            high=float(max(open_, close)),
            low=float(min(open_, close)),
            close=float(close),
            volume=1_000.0,
        )
        for date, open_, close in zip(dates, opens, closes)
    ]


class InMemoryPriceProvider:
    """
    PriceProvider test double serving fixed histories.

    Counts fetches per instrument id and raises for ids listed in `failing`.
    """

    def __init__(self, histories=None, instruments=None, failing=()):
        self.histories = {str(key): bars for key, bars in (histories or {}).items()}
        self.instruments = list(instruments) if instruments is not None else [
            Instrument(id=key) for key in self.histories
        ]
        self.failing = {str(key) for key in failing}
        self.calls = Counter()

    async def fetch_price_history(self, instrument_id, fields=None):
        key = str(instrument_id)
        self.calls[key] += 1
        await asyncio.sleep(0)
        if key in self.failing:
            raise RuntimeError(f"price source unavailable for {key}")
        if key not in self.histories:
            raise FileNotFoundError(f"no history for {key}")
        return self.histories[key]

    async def fetch_instruments(self):
        return list(self.instruments)


@pytest.fixture
def bar_factory():
    """Factory building ascending Bar lists (see make_bars)."""
    return make_bars


@pytest.fixture
def price_provider_factory():
    """Factory building InMemoryPriceProvider instances."""
    return InMemoryPriceProvider
