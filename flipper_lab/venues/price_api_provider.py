"""
PriceProvider implementation backed by the price API.

**Conceptual**: PriceApiClient speaks HTTP and returns JSON; this adapter turns
that JSON into the Bars and Instruments the core consumes:
  - builds the GraphQL field selection from the requested bar fields,
  - maps API field names onto the canonical price frame,
  - validates and orders the bars through data/schemas.frame_to_bars.

The client is blocking (requests), so each call runs in a worker thread via
asyncio.to_thread. Concurrency is bounded by whoever awaits us (TaskQueue).
"""

import asyncio
from typing import Any, Iterable, Optional

import pandas as pd

from flipper_lab.config.settings import PriceApiSettings
from flipper_lab.data.schemas import (
    BAR_FIELD_TO_COLUMN,
    RAW_PRICE_REQUIRED_COLUMNS,
    Bar,
    Instrument,
    InstrumentId,
    SchemaValidationError,
    frame_to_bars,
)
from flipper_lab.venues.price_api_client import PriceApiClient


ALL_BAR_FIELDS = ('date', 'open', 'high', 'low', 'close', 'volume')


class PriceApiProviderError(Exception):
    """Raised when an API response cannot be turned into bars."""
    pass


def build_field_string(fields: Optional[Iterable[str]] = None) -> str:
    """
    GraphQL selection for a stock query. 'date' and 'close' are always included.

    Raises:
        ValueError: For a field that is not a bar field.
    """
    requested = list(fields) if fields is not None else list(ALL_BAR_FIELDS)
    unknown = [name for name in requested if name not in ALL_BAR_FIELDS]
    if unknown:
        raise ValueError(f"Unknown bar fields: {unknown}. Supported: {ALL_BAR_FIELDS}")

    selected = [name for name in ALL_BAR_FIELDS if name in requested or name in ('date', 'close')]
    return f"id, name, list, priceData{{{', '.join(selected)}}}"


def price_data_to_frame(price_data: list[dict[str, Any]]) -> pd.DataFrame:
    """
    Map API priceData records onto the canonical price frame.

    Fields the query did not select become NaN columns.
    """
    df = pd.DataFrame(price_data)
    df = df.rename(columns=BAR_FIELD_TO_COLUMN)
    if 'timestamp' in df.columns:
        df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True, format='ISO8601')
    return df.reindex(columns=RAW_PRICE_REQUIRED_COLUMNS)


class PriceApiProvider:
    """
    Async PriceProvider over PriceApiClient.

    Args:
        settings: Price API settings (ignored when a client is injected).
        client: Optional pre-built client, mainly for tests.
    """

    def __init__(self, settings: Optional[PriceApiSettings] = None, client: Optional[PriceApiClient] = None):
        if client is None:
            if settings is None:
                raise ValueError("Either settings or client must be provided")
            client = PriceApiClient(settings)
        self.client = client

    async def fetch_price_history(
        self,
        instrument_id: InstrumentId,
        fields: Optional[Iterable[str]] = None,
    ) -> list[Bar]:
        field_string = build_field_string(fields)
        stock = await asyncio.to_thread(self.client.fetch_stock, instrument_id, field_string)

        price_data = stock.get('priceData') or []
        if not isinstance(price_data, list):
            raise PriceApiProviderError(
                f"Expected 'priceData' to be a list for {instrument_id}, got {type(price_data)}"
            )
        if not price_data:
            return []

        try:
            return frame_to_bars(price_data_to_frame(price_data), context=f"instrument {instrument_id}")
        except (SchemaValidationError, ValueError) as e:
            raise PriceApiProviderError(f"Invalid price data for {instrument_id}: {e}") from e

    async def fetch_instruments(self) -> list[Instrument]:
        stocks = await asyncio.to_thread(self.client.fetch_stocks)
        return [
            Instrument(id=stock['id'], name=stock.get('name'), list_name=stock.get('list'))
            for stock in stocks
        ]

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
