"""
Bar and instrument schemas, and the canonical price-frame contract.

**Conceptual**: Two representations of price history exist in the system:
  - The canonical price frame: a pandas DataFrame with `timestamp`, OHLC and
    `volume` columns. This is what CSV files and HTTP adapters produce, and
    on disk it is stored newest-first like every other time series here.
  - A list of `Bar` objects in strictly ascending date order. This is what the
    strategy engine, the date searcher and trade valuation walk bar by bar.

`frame_to_bars` is the single bridge between them. It validates the frame,
normalizes timestamps (UTC, timezone-naive), drops duplicate dates and returns
bars oldest-first, so everything downstream can assume a clean ordering.

**Schema philosophy** (shared with data/io.py):
  - Column names are snake_case: timestamp, open_price, high_price, low_price,
    closing_price, volume.
  - Validation raises SchemaValidationError with actionable messages.
"""

from dataclasses import dataclass
from datetime import date as date_type, datetime
from typing import Optional, Union

import numpy as np
import pandas as pd


InstrumentId = Union[int, str]


class SchemaValidationError(Exception):
    """
    Raised when a DataFrame does not conform to the canonical price schema.

    **Usage**: Catch this in orchestration code to log and skip the instrument,
    or let it propagate with a clear error message.
    """
    pass


# Canonical price frame columns
RAW_PRICE_REQUIRED_COLUMNS = [
    'timestamp',
    'open_price',
    'high_price',
    'low_price',
    'closing_price',
    'volume',
]

# Bar attribute -> canonical column
BAR_FIELD_TO_COLUMN = {
    'date': 'timestamp',
    'open': 'open_price',
    'high': 'high_price',
    'low': 'low_price',
    'close': 'closing_price',
    'volume': 'volume',
}


def coerce_timestamp(value) -> Optional[pd.Timestamp]:
    """
    Convert a date-like value to a timezone-naive UTC pd.Timestamp.

    Timezone-aware inputs are converted to UTC and then made naive, matching
    how price frames are stored. `None` passes through unchanged.

    Raises:
        ValueError: If the value cannot be parsed or is NaT.
    """
    if value is None:
        return None
    ts = pd.Timestamp(value)
    if pd.isna(ts):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_convert('UTC').tz_localize(None)
    return ts


def is_datetime_like(value) -> bool:
    """True for datetime/date/pd.Timestamp/np.datetime64 instances (never strings)."""
    if isinstance(value, (datetime, date_type, np.datetime64)):
        return not pd.isna(value)
    return False


@dataclass(frozen=True)
class Instrument:
    """
    One tradable instrument in the universe.

    Attributes:
        id: Provider identifier (numeric ids from the price API, or file stems
            for CSV sources).
        name: Human-readable name.
        list_name: Name of the list/exchange segment the instrument belongs to.
    """
    id: InstrumentId
    name: Optional[str] = None
    list_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {'id': self.id, 'name': self.name, 'list_name': self.list_name}


@dataclass(frozen=True)
class Bar:
    """
    One instrument's OHLCV record for a single date.

    The all-`None` bar (see `Bar.empty()`) stands in for the next, not yet
    available bar when the engine probes for a pending signal.
    """
    date: Optional[pd.Timestamp]
    open: Optional[float]
    high: Optional[float]
    low: Optional[float]
    close: Optional[float]
    volume: Optional[float] = None

    @classmethod
    def empty(cls) -> "Bar":
        return cls(date=None, open=None, high=None, low=None, close=None, volume=None)

    @property
    def is_empty(self) -> bool:
        return self.date is None


def validate_price_frame(df: pd.DataFrame, context: str | None = None) -> None:
    """
    Validate that a DataFrame carries the canonical price columns.

    **Functionally**:
      - Checks that all required columns are present.
      - Verifies that `timestamp` is parseable as datetime.
      - Verifies that closing prices are numeric.

    Sort order is not enforced here: frame_to_bars sorts ascending itself and
    data/io.py enforces the on-disk descending order separately.

    Args:
        df: DataFrame to validate.
        context: Optional description of the source, prefixed to error messages.

    Raises:
        SchemaValidationError: If a column is missing or a value is unparseable.
    """
    ctx = f"{context}: " if context else ""

    missing_cols = set(RAW_PRICE_REQUIRED_COLUMNS) - set(df.columns)
    if missing_cols:
        raise SchemaValidationError(
            f"{ctx}Missing required columns: {sorted(missing_cols)}. "
            f"Expected columns: {RAW_PRICE_REQUIRED_COLUMNS}. "
            f"Found columns: {list(df.columns)}."
        )

    if not pd.api.types.is_datetime64_any_dtype(df['timestamp']):
        try:
            pd.to_datetime(df['timestamp'], format='ISO8601')
        except (ValueError, TypeError) as e:
            raise SchemaValidationError(
                f"{ctx}'timestamp' column contains non-parseable values. "
                f"Expected ISO 8601 date-time strings. Error: {e}"
            )

    if not pd.api.types.is_numeric_dtype(df['closing_price']):
        raise SchemaValidationError(
            f"{ctx}'closing_price' column must be numeric, got {df['closing_price'].dtype}."
        )


def validate_strictly_descending(timestamps: pd.Series, context: str | None = None) -> None:
    """
    Enforce the on-disk convention: timestamps strictly descending (newest first).

    Raises:
        SchemaValidationError: With the first offending row indices.
    """
    ctx = f"{context}: " if context else ""
    if len(timestamps) < 2:
        return
    diffs = timestamps.diff().iloc[1:]
    if not (diffs < pd.Timedelta(0)).all():
        bad_indices = diffs[diffs >= pd.Timedelta(0)].index.tolist()
        raise SchemaValidationError(
            f"{ctx}Timestamps are not in strictly descending order. "
            f"Violations found at row indices: {bad_indices[:5]} (showing first 5). "
            f"Hint: Sort your CSV by timestamp in descending order (newest first) "
            f"and ensure no duplicate timestamps."
        )


def frame_to_bars(df: pd.DataFrame, context: str | None = None) -> list[Bar]:
    """
    Convert a canonical price frame into an ascending list of Bars.

    **Functionally**:
      - Validates the frame (validate_price_frame).
      - Parses and normalizes timestamps to timezone-naive UTC.
      - Drops rows without a closing price.
      - Keeps the last row per duplicate timestamp.
      - Sorts oldest-first.

    Args:
        df: Canonical price frame (any sort order).
        context: Optional source description for error messages.

    Returns:
        Bars with unique, strictly ascending dates. Empty list for an empty frame.
    """
    if df.empty:
        return []

    validate_price_frame(df, context=context)

    frame = df.copy()
    timestamps = frame['timestamp']
    if not pd.api.types.is_datetime64_any_dtype(timestamps):
        timestamps = pd.to_datetime(timestamps, format='ISO8601')
    if getattr(timestamps.dt, 'tz', None) is not None:
        timestamps = timestamps.dt.tz_convert('UTC').dt.tz_localize(None)
    frame['timestamp'] = timestamps

    frame = frame.dropna(subset=['closing_price'])
    frame = frame.drop_duplicates(subset='timestamp', keep='last')
    frame = frame.sort_values('timestamp', ascending=True).reset_index(drop=True)

    def _value(raw):
        return None if pd.isna(raw) else float(raw)

    return [
        Bar(
            date=row.timestamp,
            open=_value(row.open_price),
            high=_value(row.high_price),
            low=_value(row.low_price),
            close=_value(row.closing_price),
            volume=_value(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]


def bars_to_frame(bars: list[Bar]) -> pd.DataFrame:
    """
    Convert Bars back into a canonical price frame (ascending, as given).

    Useful for analytics on a fetched series and for writing CSV fixtures.
    """
    records = [
        {column: getattr(bar, field) for field, column in BAR_FIELD_TO_COLUMN.items()}
        for bar in bars
    ]
    return pd.DataFrame(records, columns=RAW_PRICE_REQUIRED_COLUMNS)
